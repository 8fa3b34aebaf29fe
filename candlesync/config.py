"""Runtime configuration.

Credentials come from explicit overrides first, then the environment
(OANDA_ACCOUNT_ID / OANDA_ACCESS_TOKEN). Neither the token nor the database
URL is ever logged.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Mapping, Optional, Sequence

from candlesync.errors import ConfigError
from candlesync.market_data.oanda_client import DEFAULT_BATCH_SIZE, DEFAULT_HISTORY_START, MAX_BATCH_SIZE
from candlesync.market_data.retry import RetryPolicy
from candlesync.types import ALL_GRANULARITIES, Credentials, Granularity


ACCOUNT_ID_ENV = "OANDA_ACCOUNT_ID"
ACCESS_TOKEN_ENV = "OANDA_ACCESS_TOKEN"
DATABASE_URL_ENV = "DATABASE_URL"
DEFAULT_DATABASE = "oanda.db"


def load_credentials(
    *,
    account_id: Optional[str] = None,
    access_token: Optional[str] = None,
    environ: Mapping[str, str] | None = None,
) -> Credentials:
    env = os.environ if environ is None else environ

    resolved_account = (account_id or env.get(ACCOUNT_ID_ENV) or "").strip()
    resolved_token = (access_token or env.get(ACCESS_TOKEN_ENV) or "").strip()

    missing = []
    if not resolved_account:
        missing.append(f"{ACCOUNT_ID_ENV} (or --oanda-account-id)")
    if not resolved_token:
        missing.append(f"{ACCESS_TOKEN_ENV} (or --oanda-access-token)")
    if missing:
        raise ConfigError("missing OANDA credentials: " + ", ".join(missing))

    return Credentials(account_id=resolved_account, access_token=resolved_token)


def resolve_database_url(target: Optional[str], environ: Mapping[str, str] | None = None) -> str:
    """Turn the --db value into a SQLAlchemy URL.

    A value containing "://" is used as-is; anything else is a SQLite file
    path. Without a value, DATABASE_URL is used, then the default file.
    """

    env = os.environ if environ is None else environ
    value = (target or "").strip() or env.get(DATABASE_URL_ENV, "").strip() or DEFAULT_DATABASE
    if "://" in value:
        return value
    return f"sqlite:///{value}"


def parse_tickers(value: Optional[str]) -> tuple[str, ...]:
    """Split a comma-separated whitelist into trimmed, lower-cased prefixes."""
    if not value:
        return ()
    seen: dict[str, None] = {}
    for part in value.split(","):
        item = part.strip().lower()
        if item:
            seen.setdefault(item, None)
    return tuple(seen)


def parse_dt(value: str) -> datetime:
    """Parse ISO date/datetime and return timezone-aware UTC datetime."""

    # Accept YYYY-MM-DD
    if len(value) == 10 and value[4] == "-" and value[7] == "-":
        dt = datetime.fromisoformat(value)
        return dt.replace(tzinfo=timezone.utc)

    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class SyncConfig:
    """Everything one sync run needs besides credentials and the store."""

    granularities: tuple[Granularity, ...] = ALL_GRANULARITIES
    tickers: tuple[str, ...] = ()  # empty means the whole account universe
    environment: str = "live"
    batch_size: int = DEFAULT_BATCH_SIZE
    history_start: datetime = DEFAULT_HISTORY_START
    resume: bool = True
    workers: int = 1
    requests_per_second: float = 100.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        if not self.granularities:
            raise ConfigError("at least one granularity is required")
        if not 1 <= self.batch_size <= MAX_BATCH_SIZE:
            raise ConfigError(f"batch size must be between 1 and {MAX_BATCH_SIZE}")
        if self.workers < 1:
            raise ConfigError("workers must be >= 1")
        if self.requests_per_second <= 0:
            raise ConfigError("requests per second must be > 0")


def dedupe_granularities(values: Sequence[Granularity]) -> tuple[Granularity, ...]:
    seen: dict[Granularity, None] = {}
    for g in values:
        seen.setdefault(g, None)
    return tuple(seen)
