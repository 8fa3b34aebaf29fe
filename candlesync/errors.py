"""Error taxonomy for the candle sync pipeline.

Record-level errors are absorbed by the client, job-level errors end up in a
SyncResult, and only FetchUnauthorizedError aborts the whole run.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional


class CandleSyncError(Exception):
    """Base exception for candlesync."""


class ConfigError(CandleSyncError):
    """Invalid or missing configuration (credentials, arguments)."""


class NormalizationError(CandleSyncError):
    """A single provider record could not be normalized."""


class MalformedRecordError(NormalizationError):
    """Missing/non-numeric timestamp or price, or high < low."""


class FetchError(CandleSyncError):
    """Job-level failure while fetching pages from the provider."""

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        cursor: Optional[datetime] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.cursor = cursor


class FetchUnavailableError(FetchError):
    """Network error, 5xx or rate limiting (retried before surfacing)."""

    retryable = True


class FetchMalformedError(FetchError):
    """Unparseable or invalid response envelope (retried before surfacing)."""

    retryable = True


class FetchUnauthorizedError(FetchError):
    """401/403. Credentials are shared, so this aborts the whole run."""


class FetchRejectedError(FetchError):
    """Non-retryable client error (e.g. unknown instrument)."""


class PersistError(CandleSyncError):
    """Storage failure; the job's transaction was rolled back."""


def classify_http_status(status_code: int, message: str) -> FetchError:
    """Map an HTTP error status to the fetch error taxonomy."""
    if status_code in {401, 403}:
        return FetchUnauthorizedError(message, status_code=status_code)
    if status_code == 429 or 500 <= status_code < 600:
        return FetchUnavailableError(message, status_code=status_code)
    if 400 <= status_code < 500:
        return FetchRejectedError(message, status_code=status_code)
    # Unknown - treat as transient
    return FetchUnavailableError(message, status_code=status_code)
