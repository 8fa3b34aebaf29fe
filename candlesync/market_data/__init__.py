"""Market data ingestion from the OANDA REST API."""

from candlesync.market_data.normalizer import normalize
from candlesync.market_data.oanda_client import FetchStats, OandaClient
from candlesync.market_data.retry import RequestThrottle, RetryPolicy

__all__ = [
    "FetchStats",
    "OandaClient",
    "RequestThrottle",
    "RetryPolicy",
    "normalize",
]
