"""Job orchestration: instruments x granularities -> fetch -> upsert.

Each job moves Pending -> Fetching -> Persisting -> Succeeded /
PartiallyFailed / Failed. Job errors are collected into SyncResults; only a
rejected credential aborts the run, cancelling every job not yet started.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Sequence

from candlesync.config import SyncConfig
from candlesync.errors import ConfigError, FetchError, FetchUnauthorizedError, PersistError
from candlesync.market_data.oanda_client import FetchStats, OandaClient
from candlesync.storage.interfaces import CandleStore
from candlesync.types import Candle, Granularity, JobStatus, SyncJob, SyncResult, SyncSummary


logger = logging.getLogger(__name__)


def resolve_instruments(universe: Iterable[str], tickers: Sequence[str] = ()) -> list[str]:
    """Filter the account universe by case-insensitive whitelist prefixes.

    An empty whitelist keeps every instrument. Order follows the universe;
    duplicates are dropped.
    """

    prefixes = [t.strip().lower() for t in tickers if t.strip()]
    selected: dict[str, None] = {}
    for name in universe:
        lowered = name.lower()
        if not prefixes or any(lowered.startswith(p) for p in prefixes):
            selected.setdefault(name, None)
    return list(selected)


def build_jobs(instruments: Sequence[str], granularities: Sequence[Granularity]) -> list[SyncJob]:
    return [SyncJob(instrument=i, granularity=g) for i in instruments for g in granularities]


class SyncOrchestrator:
    """Drives the client and the store for each job and aggregates results.

    The client (credentials, HTTP session, throttle) and the store (engine)
    are shared across jobs; jobs write disjoint key ranges.
    """

    def __init__(self, *, client: OandaClient, store: CandleStore, config: SyncConfig) -> None:
        self._client = client
        self._store = store
        self._config = config
        self._cancel = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def plan(self) -> list[SyncJob]:
        """Resolve the instrument universe and build the job list."""

        universe = self._client.list_instruments()
        instruments = resolve_instruments(universe, self._config.tickers)
        if not instruments:
            wanted = ", ".join(self._config.tickers) or "<all>"
            raise ConfigError(f"no instruments on the account match the whitelist ({wanted})")

        logger.info(
            "Resolved %d instrument(s) x %d granularity(ies)",
            len(instruments),
            len(self._config.granularities),
        )
        return build_jobs(instruments, self._config.granularities)

    def sync(self) -> SyncSummary:
        return self.run(self.plan())

    def run(self, jobs: Sequence[SyncJob]) -> SyncSummary:
        self._cancel = threading.Event()

        if self._config.workers == 1 or len(jobs) <= 1:
            results = [self._run_unless_cancelled(job) for job in jobs]
        else:
            with ThreadPoolExecutor(max_workers=self._config.workers, thread_name_prefix="candlesync") as pool:
                results = list(pool.map(self._run_unless_cancelled, jobs))

        summary = SyncSummary(results=tuple(results), aborted=self._cancel.is_set())
        logger.info(
            "Sync finished: %d succeeded, %d partial, %d failed, %d cancelled",
            summary.count(JobStatus.SUCCEEDED),
            summary.count(JobStatus.PARTIALLY_FAILED),
            summary.count(JobStatus.FAILED),
            summary.count(JobStatus.CANCELLED),
        )
        return summary

    def _run_unless_cancelled(self, job: SyncJob) -> SyncResult:
        if self._cancel.is_set():
            logger.info("%s cancelled before start", job.label)
            return SyncResult(
                instrument=job.instrument,
                granularity=job.granularity,
                status=JobStatus.CANCELLED,
                error="not attempted: credentials were rejected",
            )
        return self.run_job(job)

    def run_job(self, job: SyncJob) -> SyncResult:
        stats = FetchStats()

        def result(status: JobStatus, *, written: int = 0, error: str | None = None) -> SyncResult:
            return SyncResult(
                instrument=job.instrument,
                granularity=job.granularity,
                status=status,
                candles_fetched=stats.candles,
                candles_written=written,
                dropped_records=stats.dropped_records,
                cursor=stats.cursor,
                error=error,
            )

        resume_from = job.resume_from
        if resume_from is None and self._config.resume:
            try:
                resume_from = self._store.get_resume_cursor(instrument=job.instrument, granularity=job.granularity)
            except PersistError as exc:
                logger.error("%s failed reading resume cursor: %s", job.label, exc)
                return result(JobStatus.FAILED, error=str(exc))

        logger.info(
            "%s fetching from %s",
            job.label,
            resume_from.isoformat() if resume_from else "start of history",
        )

        candles: list[Candle] = []
        fetch_error: FetchError | None = None
        try:
            for candle in self._client.iter_candles(
                job.instrument, job.granularity, resume_from=resume_from, stats=stats
            ):
                candles.append(candle)
        except FetchUnauthorizedError as exc:
            self._cancel.set()
            logger.error("%s unauthorized (%s); cancelling remaining jobs", job.label, exc)
            return result(JobStatus.FAILED, error=f"unauthorized: {exc}")
        except FetchError as exc:
            fetch_error = exc
            logger.error("%s fetch failed after %d candle(s): %s", job.label, len(candles), exc)

        if fetch_error is not None and not candles:
            return result(JobStatus.FAILED, error=str(fetch_error))

        logger.debug("%s persisting %d candle(s)", job.label, len(candles))
        try:
            written = self._store.upsert_candles(candles=candles)
        except PersistError as exc:
            logger.error("%s persist failed: %s", job.label, exc)
            return result(JobStatus.FAILED, error=str(exc))

        if fetch_error is not None:
            return result(JobStatus.PARTIALLY_FAILED, written=written, error=str(fetch_error))

        logger.info("%s synced: fetched=%d written=%d", job.label, stats.candles, written)
        return result(JobStatus.SUCCEEDED, written=written)
