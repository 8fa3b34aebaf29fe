"""Normalize OANDA candle records into the canonical Candle.

Payloads are validated against strict pydantic models before any value is
trusted. A bad record raises MalformedRecordError; callers drop it and move on.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from candlesync.errors import MalformedRecordError
from candlesync.types import Candle, Granularity


MAX_VOLUME = 2**63 - 1  # BIGINT column


class OandaPriceBlock(BaseModel):
    model_config = ConfigDict(extra="ignore")

    o: Union[str, float, int]
    h: Union[str, float, int]
    l: Union[str, float, int]  # noqa: E741
    c: Union[str, float, int]


class OandaCandleRecord(BaseModel):
    """One element of the `candles` array (price=M)."""

    model_config = ConfigDict(extra="ignore")

    time: Union[str, float, int]
    complete: bool = False
    volume: Optional[Union[int, float]] = 0
    mid: OandaPriceBlock


class OandaCandlesEnvelope(BaseModel):
    """Top-level body of GET /instruments/{instrument}/candles."""

    model_config = ConfigDict(extra="ignore")

    instrument: Optional[str] = None
    granularity: Optional[str] = None
    candles: list[dict[str, Any]] = Field(default_factory=list)


def parse_timestamp(value: Union[str, float, int]) -> datetime:
    """Parse RFC3339 (nanosecond fractions allowed) or UNIX seconds into UTC."""

    if isinstance(value, bool):
        raise ValueError("timestamp must not be a boolean")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)

    s = value.strip()
    if not s:
        raise ValueError("timestamp is empty")

    # Accept "1704146400.000000000" (Accept-Datetime-Format: UNIX)
    try:
        return datetime.fromtimestamp(float(s), tz=timezone.utc)
    except ValueError:
        pass

    if s.endswith("Z") or s.endswith("z"):
        s = s[:-1] + "+00:00"

    # datetime.fromisoformat only takes up to microseconds
    if "." in s:
        head, _, rest = s.partition(".")
        digits = ""
        i = 0
        while i < len(rest) and rest[i].isdigit():
            digits += rest[i]
            i += 1
        s = f"{head}.{(digits[:6] or '0').ljust(6, '0')}{rest[i:]}"

    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _to_decimal(name: str, value: Union[str, float, int]) -> Decimal:
    if isinstance(value, bool):
        raise MalformedRecordError(f"{name} is not numeric: {value!r}")
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise MalformedRecordError(f"{name} is not numeric: {value!r}") from exc
    if not d.is_finite():
        raise MalformedRecordError(f"{name} is not finite: {value!r}")
    return d


def normalize(raw_record: Mapping[str, Any], instrument: str, granularity: Granularity) -> Candle:
    """Convert one provider record into a Candle.

    Raises:
        MalformedRecordError: timestamp or a price is missing/non-numeric,
            or high < low.
    """

    try:
        record = OandaCandleRecord.model_validate(raw_record)
    except ValidationError as exc:
        raise MalformedRecordError(f"invalid candle record: {exc.error_count()} validation error(s)") from exc

    try:
        timestamp = parse_timestamp(record.time)
    except (ValueError, OverflowError, OSError) as exc:
        raise MalformedRecordError(f"unparseable timestamp: {record.time!r}") from exc

    open_ = _to_decimal("open", record.mid.o)
    high = _to_decimal("high", record.mid.h)
    low = _to_decimal("low", record.mid.l)
    close = _to_decimal("close", record.mid.c)

    if high < low:
        raise MalformedRecordError(f"high < low at {timestamp.isoformat()} ({high} < {low})")

    volume_raw = record.volume if record.volume is not None else 0
    try:
        volume = int(volume_raw)
    except (OverflowError, ValueError) as exc:
        raise MalformedRecordError(f"volume is not finite: {volume_raw!r}") from exc
    if volume < 0 or volume != volume_raw:
        raise MalformedRecordError(f"volume must be a non-negative integer: {volume_raw!r}")
    if volume > MAX_VOLUME:
        raise MalformedRecordError(f"volume out of range: {volume_raw!r}")

    return Candle(
        instrument=instrument,
        granularity=granularity,
        timestamp=timestamp,
        open=open_,
        high=high,
        low=low,
        close=close,
        volume=volume,
        complete=record.complete,
    )
