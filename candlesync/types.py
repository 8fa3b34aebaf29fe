from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


class Granularity(str, Enum):
    """Candle bucket sizes supported by the sync (OANDA granularity codes)."""

    DAILY = "D"
    WEEKLY = "W"
    MONTHLY = "M"

    @classmethod
    def parse(cls, value: str) -> "Granularity":
        """Accept a code ("d", "W") or a name ("daily") case-insensitively."""
        raw = value.strip()
        for member in cls:
            if raw.upper() == member.value or raw.upper() == member.name:
                return member
        raise ValueError(f"Unsupported granularity: {value!r} (expected one of D, W, M)")


ALL_GRANULARITIES: tuple[Granularity, ...] = (
    Granularity.DAILY,
    Granularity.WEEKLY,
    Granularity.MONTHLY,
)


@dataclass(frozen=True)
class Candle:
    instrument: str
    granularity: Granularity
    timestamp: datetime  # UTC, aligned by the provider
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: int = 0
    complete: bool = False

    @property
    def key(self) -> tuple[str, str, datetime]:
        return (self.instrument, self.granularity.value, self.timestamp)


@dataclass(frozen=True)
class Credentials:
    """Static OANDA credential pair. Passed by value into each client."""

    account_id: str
    access_token: str = field(repr=False)


@dataclass(frozen=True)
class SyncJob:
    instrument: str
    granularity: Granularity
    resume_from: Optional[datetime] = None

    @property
    def label(self) -> str:
        return f"{self.instrument}:{self.granularity.value}"


class JobStatus(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    PERSISTING = "persisting"
    SUCCEEDED = "succeeded"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class SyncResult:
    instrument: str
    granularity: Granularity
    status: JobStatus
    candles_fetched: int = 0
    candles_written: int = 0
    dropped_records: int = 0
    cursor: Optional[datetime] = None  # last fetched candle timestamp
    error: Optional[str] = None

    @property
    def label(self) -> str:
        return f"{self.instrument}:{self.granularity.value}"

    @property
    def succeeded(self) -> bool:
        return self.status is JobStatus.SUCCEEDED


@dataclass(frozen=True)
class SyncSummary:
    results: tuple[SyncResult, ...]
    aborted: bool = False

    @property
    def ok(self) -> bool:
        return not self.aborted and all(r.succeeded for r in self.results)

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def count(self, status: JobStatus) -> int:
        return sum(1 for r in self.results if r.status is status)

    @property
    def candles_written(self) -> int:
        return sum(r.candles_written for r in self.results)
