"""Shared test fixtures for pytest.

Provides raw OANDA records, fake HTTP responses and a SQLite-backed store.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
import sys
from typing import Any, Callable
from unittest.mock import Mock

import pytest
from sqlalchemy import text

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from candlesync.market_data.oanda_client import OandaClient
from candlesync.market_data.retry import RequestThrottle, RetryPolicy
from candlesync.storage import SqlCandleStore, StoreConfig
from candlesync.types import Candle, Credentials, Granularity


BASE_TIME = datetime(2020, 1, 1, 22, 0, 0, tzinfo=timezone.utc)


def _rfc3339(ts: datetime) -> str:
    return ts.strftime("%Y-%m-%dT%H:%M:%S.000000000Z")


@pytest.fixture
def make_record() -> Callable[..., dict[str, Any]]:
    """Factory for one raw OANDA candle record (price=M)."""

    def factory(
        ts: datetime,
        *,
        complete: bool = True,
        o: str = "1.10000",
        h: str = "1.11000",
        l: str = "1.09000",
        c: str = "1.10500",
        volume: int = 100,
    ) -> dict[str, Any]:
        return {
            "time": _rfc3339(ts),
            "complete": complete,
            "volume": volume,
            "mid": {"o": o, "h": h, "l": l, "c": c},
        }

    return factory


@pytest.fixture
def daily_records(make_record: Callable[..., dict[str, Any]]) -> Callable[[int, int], list[dict[str, Any]]]:
    """Factory for `count` consecutive daily records starting at day `offset`."""

    def factory(count: int, offset: int = 0) -> list[dict[str, Any]]:
        return [make_record(BASE_TIME + timedelta(days=offset + i)) for i in range(count)]

    return factory


@pytest.fixture
def make_response() -> Callable[..., Mock]:
    """Factory for a mocked requests.Response."""

    def factory(status_code: int = 200, payload: Any = None, headers: dict[str, str] | None = None) -> Mock:
        resp = Mock()
        resp.status_code = status_code
        resp.headers = headers or {}
        if isinstance(payload, Exception):
            resp.json.side_effect = payload
        else:
            resp.json.return_value = payload
        return resp

    return factory


@pytest.fixture
def candles_page(make_response: Callable[..., Mock]) -> Callable[[list[dict[str, Any]]], Mock]:
    def factory(records: list[dict[str, Any]]) -> Mock:
        return make_response(200, {"instrument": "EUR_USD", "granularity": "D", "candles": records})

    return factory


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(account_id="101-001-0000000-001", access_token="secret-token")


@pytest.fixture
def session() -> Mock:
    return Mock()


@pytest.fixture
def make_client(credentials: Credentials, session: Mock) -> Callable[..., OandaClient]:
    """Factory for an OandaClient over the mocked session (no jitter, fast backoff)."""

    def factory(**kwargs: Any) -> OandaClient:
        kwargs.setdefault("retry_policy", RetryPolicy(max_retries=3, initial_backoff_seconds=0.5, max_backoff_seconds=2.0))
        kwargs.setdefault("throttle", RequestThrottle(rate_per_second=1000.0))
        return OandaClient(credentials=credentials, session=session, **kwargs)

    return factory


@pytest.fixture
def store(tmp_path: Path) -> SqlCandleStore:
    s = SqlCandleStore(config=StoreConfig(database_url=f"sqlite:///{tmp_path / 'candles.db'}"))
    s.ensure_schema()
    yield s
    s.close()


@pytest.fixture
def make_candle() -> Callable[..., Candle]:
    def factory(
        day: int = 0,
        *,
        instrument: str = "EUR_USD",
        granularity: Granularity = Granularity.DAILY,
        complete: bool = True,
        close: str = "1.10500",
        high: str = "1.11000",
        low: str = "1.09000",
        volume: int = 100,
    ) -> Candle:
        return Candle(
            instrument=instrument,
            granularity=granularity,
            timestamp=BASE_TIME + timedelta(days=day),
            open=Decimal("1.10000"),
            high=Decimal(high),
            low=Decimal(low),
            close=Decimal(close),
            volume=volume,
            complete=complete,
        )

    return factory


@pytest.fixture
def count_candles() -> Callable[..., int]:
    """Row count helper: count_candles(store, instrument=..., granularity=...)."""

    def factory(
        store: SqlCandleStore,
        *,
        instrument: str | None = None,
        granularity: Granularity | None = None,
    ) -> int:
        filters = ["1 = 1"]
        params: dict[str, Any] = {}
        if instrument is not None:
            filters.append("instrument = :instrument")
            params["instrument"] = instrument
        if granularity is not None:
            filters.append("granularity = :granularity")
            params["granularity"] = granularity.value

        with store._get_engine().connect() as conn:
            stmt = text(f"SELECT COUNT(*) FROM candles WHERE {' AND '.join(filters)}")
            return int(conn.execute(stmt, params).scalar_one())

    return factory
