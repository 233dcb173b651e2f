"""Reconcile the record store with the remote catalog."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable, Iterable
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from ..errors import FetchError
from ..models import Category, SeriesRecord, SeriesSummary, TrackedSeriesEntry
from ..utils import utcnow
from .freshness import FreshnessPolicy
from .store import RecordStore

logger = logging.getLogger(__name__)


class SeriesClient(Protocol):
    """What the orchestrator needs from a catalog client."""

    async def fetch_series(self, series_id: str) -> SeriesRecord: ...

    async def search(self, query: str) -> list[SeriesSummary]: ...


@dataclass(slots=True)
class SyncResult:
    """A record handed back by the orchestrator.

    ``degraded`` is set when the record is stale because the refresh attempt
    failed; ``error`` then carries the failure.
    """

    record: SeriesRecord
    degraded: bool = False
    fetched: bool = False
    error: FetchError | None = None


@dataclass(slots=True)
class BatchReport:
    """Per-id outcome of a batch refresh."""

    results: dict[str, SyncResult] = field(default_factory=dict)
    failures: dict[str, FetchError] = field(default_factory=dict)
    errors: dict[str, Exception] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def degraded(self) -> list[str]:
        return [series_id for series_id, result in self.results.items() if result.degraded]

    def outcome(self, series_id: str) -> SyncResult | Exception | None:
        if series_id in self.results:
            return self.results[series_id]
        if series_id in self.failures:
            return self.failures[series_id]
        return self.errors.get(series_id)


class SyncOrchestrator:
    """Serve fresh-or-freshly-attempted records, fetching at most once per id.

    Concurrent requests for the same series id share one in-flight task.
    The task is shielded from its callers, so a caller giving up never
    abandons a fetch that is already on its way or the merge that follows.
    """

    def __init__(
        self,
        store: RecordStore,
        client: SeriesClient,
        policy: FreshnessPolicy,
        *,
        concurrency: int = 4,
        refresh_interval_seconds: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._store = store
        self._client = client
        self._policy = policy
        self._concurrency = concurrency
        self._fetch_slots = asyncio.Semaphore(concurrency)
        self._refresh_interval = refresh_interval_seconds
        self._clock = clock
        self._inflight: dict[str, asyncio.Task[SyncResult]] = {}
        self._forced: set[str] = set()
        self._refresh_task: asyncio.Task[None] | None = None

    @property
    def store(self) -> RecordStore:
        return self._store

    def is_fetching(self, series_id: str) -> bool:
        task = self._inflight.get(series_id)
        return task is not None and not task.done()

    async def get_series(self, series_id: str, *, force: bool = False) -> SyncResult:
        """Return the record for ``series_id``, refreshing it when stale.

        Raises the client's :class:`FetchError` only when nothing is cached.
        A forced request arriving while an unforced one is in flight waits
        for it and then fetches, unless that pass already went to the catalog.
        """

        while True:
            task = self._inflight.get(series_id)
            if task is None or task.done():
                task = asyncio.create_task(self._resolve(series_id, force=force))
                self._inflight[series_id] = task
                if force:
                    self._forced.add(series_id)
                task.add_done_callback(lambda done, key=series_id: self._release(key, done))
                return await asyncio.shield(task)
            if not force or series_id in self._forced:
                return await asyncio.shield(task)
            result = await asyncio.shield(task)
            if result.fetched or result.degraded:
                return result

    def _release(self, series_id: str, task: asyncio.Task[SyncResult]) -> None:
        if self._inflight.get(series_id) is task:
            del self._inflight[series_id]
            self._forced.discard(series_id)
        if not task.cancelled():
            # Mark the exception retrieved; callers that are still waiting re-raise it.
            task.exception()

    async def _resolve(self, series_id: str, *, force: bool) -> SyncResult:
        cached = await self._store.get_series(series_id)
        if (
            cached is not None
            and not force
            and not self._policy.is_stale(cached, self._clock())
        ):
            return SyncResult(cached)

        try:
            async with self._fetch_slots:
                logger.info("Fetching series %s from catalog", series_id)
                fetched = await self._client.fetch_series(series_id)
        except FetchError as exc:
            if cached is None:
                logger.warning("Fetching series %s failed: %s", series_id, exc)
                raise
            logger.warning(
                "Serving stale series %s after failed refresh (%s): %s",
                series_id,
                exc.kind.value,
                exc,
            )
            return SyncResult(cached, degraded=True, error=exc)

        merged = await self._store.put_series(fetched)
        return SyncResult(merged, fetched=True)

    async def refresh_many(
        self,
        series_ids: Iterable[str],
        *,
        force: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> BatchReport:
        """Refresh several series with bounded concurrency.

        A failed fetch is recorded and the batch carries on, as does any
        other per-id failure such as a store error during the merge. Setting
        ``cancel_event`` stops new fetches from being issued while the ones
        already dispatched still complete and merge.
        """

        report = BatchReport()
        queue = deque(dict.fromkeys(series_ids))

        async def worker() -> None:
            while queue:
                if cancel_event is not None and cancel_event.is_set():
                    return
                series_id = queue.popleft()
                try:
                    report.results[series_id] = await self.get_series(series_id, force=force)
                except FetchError as exc:
                    report.failures[series_id] = exc
                except Exception as exc:
                    logger.exception("Refreshing series %s failed: %s", series_id, exc)
                    report.errors[series_id] = exc

        workers = [
            asyncio.create_task(worker())
            for _ in range(min(self._concurrency, len(queue)))
        ]
        try:
            await asyncio.gather(*workers)
        finally:
            report.skipped = list(queue)
            report.cancelled = bool(cancel_event is not None and cancel_event.is_set())

        logger.info(
            "Batch refresh finished: %d ok, %d degraded, %d failed, %d skipped",
            len(report.results) - len(report.degraded),
            len(report.degraded),
            len(report.failures) + len(report.errors),
            len(report.skipped),
        )
        return report

    async def refresh_tracked(
        self,
        category: Category | None = Category.RUNNING,
        *,
        force: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> BatchReport:
        """Refresh every tracked series in ``category`` (all when ``None``)."""

        entries = await self._store.list_tracked(category)
        return await self.refresh_many(
            [entry.series_id for entry in entries],
            force=force,
            cancel_event=cancel_event,
        )

    async def track(
        self, series_id: str, category: Category | None = None
    ) -> tuple[TrackedSeriesEntry, SyncResult | None]:
        """Sync a series, then add it to the watch list.

        The entry is created even when the catalog cannot be reached, so a
        series can be tracked before its metadata is available.
        """

        result: SyncResult | None
        try:
            result = await self.get_series(series_id)
        except FetchError as exc:
            logger.warning("Tracking %s without metadata: %s", series_id, exc)
            result = None
        entry = await self._store.track_series(series_id, category)
        return entry, result

    async def search(self, query: str, *, cache_results: bool = True) -> list[SeriesSummary]:
        """Pass a search through to the catalog, caching unseen results."""

        summaries = await self._client.search(query)
        if cache_results:
            for summary in summaries:
                await self._store.cache_summary(summary)
        return summaries

    async def start(self) -> None:
        """Launch the periodic refresh of tracked running series."""

        if self._refresh_interval is None or self._refresh_task is not None:
            return
        self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def stop(self) -> None:
        """Stop the refresh loop and wait for dispatched fetches to merge."""

        if self._refresh_task is not None:
            self._refresh_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._refresh_task
            self._refresh_task = None
        pending = [task for task in self._inflight.values() if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _refresh_loop(self) -> None:
        assert self._refresh_interval is not None
        while True:
            await asyncio.sleep(self._refresh_interval)
            try:
                await self.refresh_tracked()
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Scheduled refresh failed: %s", exc)
