from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class StoreConfig:
    """Connection and write-policy configuration.

    `database_url` may embed credentials. Do not log it.
    """

    database_url: str
    # Keep only the newest N candles per (instrument, granularity); None keeps all
    max_candles_per_series: Optional[int] = None
    # Skip candles whose period has not elapsed yet
    complete_only: bool = False
    sqlite_timeout_s: float = 30.0

    def __post_init__(self) -> None:
        if not self.database_url:
            raise ValueError("database_url is required")
        if self.max_candles_per_series is not None and self.max_candles_per_series <= 0:
            raise ValueError("max_candles_per_series must be > 0")
