"""OANDA v20 REST client for paginated candle history.

`iter_candles` walks the candles endpoint oldest-first, one page of at most
`batch_size` records at a time, starting strictly after the last candle it
has yielded. A short page means the provider has no more data.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Optional, TypeVar

import requests
from pydantic import BaseModel, ConfigDict, ValidationError

from candlesync.errors import (
    FetchError,
    FetchMalformedError,
    FetchUnavailableError,
    MalformedRecordError,
    classify_http_status,
)
from candlesync.market_data.normalizer import OandaCandlesEnvelope, normalize
from candlesync.market_data.retry import RequestThrottle, RetryPolicy
from candlesync.types import Candle, Credentials, Granularity


logger = logging.getLogger(__name__)

T = TypeVar("T")

OANDA_BASE_URLS: dict[str, str] = {
    "live": "https://api-fxtrade.oanda.com/v3",
    "practice": "https://api-fxpractice.oanda.com/v3",
}

DEFAULT_BATCH_SIZE = 500
MAX_BATCH_SIZE = 5000  # provider-imposed cap on `count`
DEFAULT_HISTORY_START = datetime(2000, 1, 1, tzinfo=timezone.utc)
PRICE_COMPONENT = "M"  # mid prices


class OandaInstrument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str


class OandaInstrumentsEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    instruments: list[OandaInstrument]


@dataclass
class FetchStats:
    """Counters for one iter_candles() pass, readable after a failure."""

    pages: int = 0
    candles: int = 0
    dropped_records: int = 0
    duplicates: int = 0
    cursor: Optional[datetime] = None


def _format_time(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _api_instrument(instrument: str) -> str:
    """OANDA instrument names are upper case (EUR_USD)."""
    s = instrument.strip().upper()
    if not s:
        raise ValueError("instrument is required")
    return s


def _retry_after_seconds(resp: Any) -> float:
    headers = getattr(resp, "headers", None) or {}
    try:
        return max(0.0, float(headers.get("Retry-After")))
    except (TypeError, ValueError, AttributeError):
        return 0.0


class OandaClient:
    """Candle and instrument fetches for one account.

    Credentials are held as a value; the client never reads the environment.
    The session and throttle may be shared by several worker threads.
    """

    def __init__(
        self,
        *,
        credentials: Credentials,
        environment: str = "live",
        session: requests.Session | None = None,
        retry_policy: RetryPolicy | None = None,
        throttle: RequestThrottle | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        history_start: datetime = DEFAULT_HISTORY_START,
        timeout_s: float = 20.0,
    ) -> None:
        if environment not in OANDA_BASE_URLS:
            raise ValueError(f"Unknown OANDA environment: {environment!r}")
        if not 1 <= batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}")

        self.credentials = credentials
        self.base_url = OANDA_BASE_URLS[environment]
        self._owns_session = session is None
        self.session = session if session is not None else requests.Session()
        self.retry_policy = retry_policy or RetryPolicy()
        self.throttle = throttle or RequestThrottle()
        self.batch_size = batch_size
        self.history_start = history_start
        self.timeout_s = timeout_s

    def close(self) -> None:
        if self._owns_session:
            self.session.close()

    def __enter__(self) -> "OandaClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.credentials.access_token}",
            "Accept-Datetime-Format": "RFC3339",
        }

    def _get_json(
        self,
        path: str,
        params: dict[str, str],
        *,
        validate: Callable[[Any], T],
        cursor: Optional[datetime] = None,
    ) -> T:
        """GET one resource with bounded retries.

        Network errors, 429, 5xx and invalid bodies are retried; 401/403 and
        other 4xx are raised immediately.
        """

        url = f"{self.base_url}{path}"
        state = self.retry_policy.start()

        while True:
            state.record_attempt()
            min_delay = 0.0
            last_exc: Exception | None = None

            try:
                self.throttle.acquire()
                resp = self.session.get(url, params=params, headers=self._headers(), timeout=self.timeout_s)
            except requests.RequestException as exc:
                last_err: FetchError = FetchUnavailableError(
                    f"request to {path} failed: {type(exc).__name__}", cursor=cursor
                )
                last_exc = exc
            else:
                if resp.status_code >= 400:
                    last_err = classify_http_status(resp.status_code, f"HTTP {resp.status_code} from {path}")
                    last_err.cursor = cursor
                    if not last_err.retryable:
                        raise last_err
                    if resp.status_code == 429:
                        min_delay = _retry_after_seconds(resp)
                else:
                    try:
                        return validate(resp.json())
                    except (ValueError, ValidationError) as exc:
                        last_err = FetchMalformedError(f"malformed response from {path}", cursor=cursor)
                        last_exc = exc

            delay = state.next_delay(min_delay)
            if delay is None:
                logger.error("Giving up on %s after %d attempt(s): %s", path, state.attempts, last_err)
                raise last_err from last_exc

            logger.warning(
                "Transient error on %s (attempt %d/%d): %s. Retrying in %.2fs",
                path,
                state.attempts,
                self.retry_policy.max_retries,
                last_err,
                delay,
            )
            time.sleep(delay)

    def list_instruments(self) -> list[str]:
        """Names of every instrument tradeable on the account."""

        envelope = self._get_json(
            f"/accounts/{self.credentials.account_id}/instruments",
            {},
            validate=OandaInstrumentsEnvelope.model_validate,
        )
        return [inst.name for inst in envelope.instruments]

    def _fetch_page(
        self,
        *,
        instrument: str,
        granularity: Granularity,
        after: Optional[datetime],
        cursor: Optional[datetime],
    ) -> list[dict[str, Any]]:
        params = {
            "price": PRICE_COMPONENT,
            "granularity": granularity.value,
            "count": str(self.batch_size),
        }
        if after is None:
            params["from"] = _format_time(self.history_start)
        else:
            params["from"] = _format_time(after)
            params["includeFirst"] = "false"

        envelope = self._get_json(
            f"/instruments/{_api_instrument(instrument)}/candles",
            params,
            validate=OandaCandlesEnvelope.model_validate,
            cursor=cursor,
        )
        return envelope.candles

    def iter_candles(
        self,
        instrument: str,
        granularity: Granularity,
        resume_from: Optional[datetime] = None,
        stats: FetchStats | None = None,
    ) -> Iterator[Candle]:
        """Yield candles oldest to newest, strictly increasing by timestamp.

        Raises FetchError subclasses on job-level failure; `stats.cursor`
        (and the error's `cursor`) hold the last candle yielded so far.
        """

        if stats is None:
            stats = FetchStats()
        last_yielded = resume_from
        after = resume_from

        while True:
            records = self._fetch_page(
                instrument=instrument,
                granularity=granularity,
                after=after,
                cursor=stats.cursor,
            )
            stats.pages += 1
            progressed = False

            for raw in records:
                try:
                    candle = normalize(raw, instrument, granularity)
                except MalformedRecordError as exc:
                    stats.dropped_records += 1
                    logger.warning("Dropping malformed %s %s record: %s", instrument, granularity.value, exc)
                    continue

                # Provider overlap: never go backwards or repeat a key
                if last_yielded is not None and candle.timestamp <= last_yielded:
                    stats.duplicates += 1
                    logger.debug("Skipping overlapping %s candle at %s", instrument, candle.timestamp.isoformat())
                    continue

                last_yielded = candle.timestamp
                stats.cursor = candle.timestamp
                stats.candles += 1
                progressed = True
                yield candle

            if len(records) < self.batch_size:
                logger.debug(
                    "%s:%s reached end of data after %d page(s)", instrument, granularity.value, stats.pages
                )
                return

            if not progressed:
                raise FetchMalformedError(
                    f"pagination stalled for {instrument}:{granularity.value} (full page without new candles)",
                    cursor=stats.cursor,
                )
            after = last_yielded
