from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Sequence

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from candlesync.errors import PersistError
from candlesync.storage.config import StoreConfig
from candlesync.storage.interfaces import CandleStore
from candlesync.types import Candle, Granularity


logger = logging.getLogger(__name__)


_CREATE_CANDLES = """
CREATE TABLE IF NOT EXISTS candles (
    instrument TEXT NOT NULL,
    granularity TEXT NOT NULL,
    timestamp BIGINT NOT NULL,
    open DOUBLE PRECISION NOT NULL,
    high DOUBLE PRECISION NOT NULL,
    low DOUBLE PRECISION NOT NULL,
    close DOUBLE PRECISION NOT NULL,
    volume BIGINT NOT NULL DEFAULT 0,
    complete BOOLEAN NOT NULL,
    updated_at BIGINT NOT NULL,
    PRIMARY KEY (instrument, granularity, timestamp),
    CHECK (high >= low)
)
"""

_UPSERT_CANDLES = """
INSERT INTO candles (
    instrument, granularity, timestamp,
    open, high, low, close,
    volume, complete, updated_at
)
VALUES (
    :instrument, :granularity, :timestamp,
    :open, :high, :low, :close,
    :volume, :complete, :updated_at
)
ON CONFLICT (instrument, granularity, timestamp)
DO UPDATE SET
    open = excluded.open,
    high = excluded.high,
    low = excluded.low,
    close = excluded.close,
    volume = excluded.volume,
    complete = excluded.complete,
    updated_at = excluded.updated_at
WHERE candles.open <> excluded.open
   OR candles.high <> excluded.high
   OR candles.low <> excluded.low
   OR candles.close <> excluded.close
   OR candles.volume <> excluded.volume
   OR candles.complete <> excluded.complete
"""

_TRIM_SERIES = """
DELETE FROM candles
WHERE instrument = :instrument
  AND granularity = :granularity
  AND timestamp < (
      SELECT MIN(timestamp) FROM (
          SELECT timestamp
          FROM candles
          WHERE instrument = :instrument
            AND granularity = :granularity
          ORDER BY timestamp DESC
          LIMIT :keep
      ) newest
  )
"""


def _to_epoch(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def _from_epoch(value: int) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _to_decimal(value: Any) -> Decimal:
    # Floats read back through str() keep their shortest round-trip form
    return Decimal(str(value))


class SqlCandleStore(CandleStore):
    """SQLAlchemy-backed candle store.

    Every `upsert_candles` call is one transaction: either all of its rows
    (and the optional retention trim) commit, or none do.
    """

    def __init__(self, *, config: StoreConfig) -> None:
        self._config = config
        self._engine: Engine | None = None

    def _get_engine(self) -> Engine:
        if self._engine is None:
            connect_args: dict[str, Any] = {}
            if self._config.database_url.startswith("sqlite"):
                connect_args = {"timeout": self._config.sqlite_timeout_s, "check_same_thread": False}
            # Do not log the URL (it may contain secrets).
            self._engine = create_engine(
                self._config.database_url,
                echo=False,
                pool_pre_ping=True,
                connect_args=connect_args,
            )
        return self._engine

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def ensure_schema(self) -> None:
        engine = self._get_engine()
        try:
            with engine.begin() as conn:
                conn.execute(text(_CREATE_CANDLES))
        except SQLAlchemyError as exc:
            raise PersistError(f"could not create candles table: {type(exc).__name__}: {exc}") from exc

    # ---- CandleStore

    def upsert_candles(self, *, candles: Sequence[Candle]) -> int:
        if self._config.complete_only:
            skipped = sum(1 for c in candles if not c.complete)
            if skipped:
                logger.debug("Skipping %d incomplete candle(s)", skipped)
            candles = [c for c in candles if c.complete]

        if not candles:
            return 0

        updated_at = int(time.time())
        payload = [
            {
                "instrument": candle.instrument,
                "granularity": candle.granularity.value,
                "timestamp": _to_epoch(candle.timestamp),
                "open": float(candle.open),
                "high": float(candle.high),
                "low": float(candle.low),
                "close": float(candle.close),
                "volume": int(candle.volume),
                "complete": bool(candle.complete),
                "updated_at": updated_at,
            }
            for candle in candles
        ]
        series = sorted({(row["instrument"], row["granularity"]) for row in payload})

        engine = self._get_engine()
        try:
            with engine.begin() as conn:
                conn.execute(text(_UPSERT_CANDLES), payload)
                if self._config.max_candles_per_series is not None:
                    for instrument, granularity in series:
                        conn.execute(
                            text(_TRIM_SERIES),
                            {
                                "instrument": instrument,
                                "granularity": granularity,
                                "keep": self._config.max_candles_per_series,
                            },
                        )
        except (SQLAlchemyError, OverflowError, ValueError, TypeError) as exc:
            # sqlite3 raises OverflowError for ints beyond 64 bits without a DBAPI wrapper
            labels = ", ".join(f"{i}:{g}" for i, g in series)
            raise PersistError(f"upsert rolled back for {labels}: {type(exc).__name__}") from exc

        return len(payload)

    def get_candles(
        self,
        *,
        instrument: str,
        granularity: Granularity,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Sequence[Candle]:
        filters = ["instrument = :instrument", "granularity = :granularity"]
        params: dict[str, Any] = {"instrument": instrument, "granularity": granularity.value}
        if start is not None:
            filters.append("timestamp >= :start")
            params["start"] = _to_epoch(start)
        if end is not None:
            filters.append("timestamp <= :end")
            params["end"] = _to_epoch(end)

        stmt = text(
            f"""
            SELECT
                instrument, granularity, timestamp,
                open, high, low, close,
                volume, complete
            FROM candles
            WHERE {" AND ".join(filters)}
            ORDER BY timestamp ASC
            """
        )

        with self._get_engine().connect() as conn:
            rows = conn.execute(stmt, params).fetchall()

        return [
            Candle(
                instrument=row[0],
                granularity=Granularity(row[1]),
                timestamp=_from_epoch(row[2]),
                open=_to_decimal(row[3]),
                high=_to_decimal(row[4]),
                low=_to_decimal(row[5]),
                close=_to_decimal(row[6]),
                volume=int(row[7]),
                complete=bool(row[8]),
            )
            for row in rows
        ]

    def get_resume_cursor(self, *, instrument: str, granularity: Granularity) -> Optional[datetime]:
        stmt = text(
            """
            SELECT MAX(timestamp)
            FROM candles
            WHERE instrument = :instrument
              AND granularity = :granularity
              AND complete = :complete
            """
        )
        try:
            with self._get_engine().connect() as conn:
                row = conn.execute(
                    stmt,
                    {"instrument": instrument, "granularity": granularity.value, "complete": True},
                ).fetchone()
        except SQLAlchemyError as exc:
            raise PersistError(
                f"could not read resume cursor for {instrument}:{granularity.value}: {type(exc).__name__}"
            ) from exc

        if row is None or row[0] is None:
            return None
        return _from_epoch(row[0])

