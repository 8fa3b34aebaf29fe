from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, Sequence

from candlesync.types import Candle, Granularity


class CandleStore(Protocol):
    def ensure_schema(self) -> None:
        """Create the candles table if it does not exist."""

    def upsert_candles(self, *, candles: Sequence[Candle]) -> int:
        """Insert or overwrite candles in one transaction. Returns rows written."""

    def get_candles(
        self,
        *,
        instrument: str,
        granularity: Granularity,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Sequence[Candle]:
        """Fetch stored candles for one series, oldest first."""

    def get_resume_cursor(self, *, instrument: str, granularity: Granularity) -> Optional[datetime]:
        """Timestamp of the newest complete candle for one series."""
