"""Durable record store for cached series metadata and watch progress."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Iterator, Mapping
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from ..db_models import (
    EpisodeRow,
    SeasonRow,
    SeriesRow,
    TrackedSeriesRow,
    WatchMarkerRow,
)
from ..errors import (
    InUseError,
    NotFoundError,
    StoreCorruptionError,
)
from ..models import (
    Category,
    Episode,
    EpisodeKey,
    Season,
    SeriesRecord,
    SeriesStatus,
    SeriesSummary,
    StoreSnapshot,
    TrackedSeriesEntry,
    WatchMarker,
)
from ..snapshot import SNAPSHOT_SCHEMA_VERSION, check_schema_version, parse_snapshot
from ..utils import as_naive_utc, utcnow

logger = logging.getLogger(__name__)

ChangeListener = Callable[[str | None], Awaitable[None]]


@contextmanager
def _decoding(what: str) -> Iterator[None]:
    """Translate conversion failures on persisted rows into corruption errors."""

    try:
        yield
    except (TypeError, ValueError) as exc:
        raise StoreCorruptionError(f"Unreadable {what} in store: {exc}") from exc


class WriteGate:
    """Shared/exclusive gate between per-series writes and bulk writes."""

    def __init__(self) -> None:
        self._condition = asyncio.Condition()
        self._shared = 0
        self._exclusive = False

    @asynccontextmanager
    async def shared(self) -> AsyncIterator[None]:
        async with self._condition:
            await self._condition.wait_for(lambda: not self._exclusive)
            self._shared += 1
        try:
            yield
        finally:
            async with self._condition:
                self._shared -= 1
                self._condition.notify_all()

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        async with self._condition:
            await self._condition.wait_for(
                lambda: not self._exclusive and self._shared == 0
            )
            self._exclusive = True
        try:
            yield
        finally:
            async with self._condition:
                self._exclusive = False
                self._condition.notify_all()


class RecordStore:
    """Persist series, episodes, watched markers and the tracked list.

    Every write commits before returning. Writes touching a single series are
    serialised through a per-series lock so writers to different series never
    wait on each other; reads take no lock. Bulk writes (clearing the cache,
    importing a snapshot) hold the write gate exclusively, which waits out
    every per-series writer and keeps new ones out until the bulk write ends.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._gate = WriteGate()
        self._locks: dict[str, asyncio.Lock] = {}
        self._listeners: list[ChangeListener] = []

    def add_listener(self, listener: ChangeListener) -> None:
        """Register a coroutine called with the series id after each write."""

        self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @asynccontextmanager
    async def _writing(self, series_id: str) -> AsyncIterator[None]:
        async with self._gate.shared():
            async with self._locks.setdefault(series_id, asyncio.Lock()):
                yield

    async def _notify(self, series_id: str | None) -> None:
        for listener in list(self._listeners):
            try:
                await listener(series_id)
            except Exception:  # pragma: no cover - listener safety net
                logger.exception("Store change listener failed for %s", series_id)

    # ------------------------------------------------------------------
    # Series metadata

    async def get_series(self, series_id: str) -> SeriesRecord | None:
        """Return the cached record for ``series_id`` or ``None``."""

        async with self._session_factory() as session:
            with _decoding(f"series {series_id}"):
                row = await self._load_series_row(session, series_id)
                if row is None:
                    return None
                return self._row_to_record(row)

    async def get_many_series(self, series_ids: Iterable[str]) -> dict[str, SeriesRecord]:
        """Return cached records for the ids that are present."""

        ids = list(dict.fromkeys(series_ids))
        if not ids:
            return {}
        async with self._session_factory() as session:
            with _decoding("series collection"):
                stmt = (
                    select(SeriesRow)
                    .where(SeriesRow.id.in_(ids))
                    .options(
                        selectinload(SeriesRow.seasons),
                        selectinload(SeriesRow.episodes),
                    )
                )
                rows = (await session.scalars(stmt)).all()
                return {row.id: self._row_to_record(row) for row in rows}

    async def put_series(self, record: SeriesRecord) -> SeriesRecord:
        """Merge ``record`` into the store and return the merged result.

        Existing watched markers are never touched. New episodes are added,
        changed episodes updated, and episodes missing from ``record`` are
        pruned only when they were never watched. A record without an episode
        list only refreshes display metadata.
        """

        async with self._writing(record.id):
            async with self._session_factory() as session:
                row = await self._load_series_row(session, record.id)
                created = row is None
                if row is None:
                    row = SeriesRow(
                        id=record.id,
                        episodes_fetched=False,
                        seasons=[],
                        episodes=[],
                        watch_markers=[],
                    )
                    session.add(row)

                self._apply_metadata(row, record, include_cast=record.episodes_fetched or created)
                added = pruned = 0
                if record.episodes_fetched:
                    watched_keys = {
                        (marker.season, marker.number) for marker in row.watch_markers
                    }
                    self._merge_seasons(row, record.seasons)
                    added, pruned = self._merge_episodes(row, record.episodes, watched_keys)
                    row.episodes_fetched = True
                    row.last_fetched_at = record.last_fetched_at or utcnow()
                elif created:
                    row.last_fetched_at = record.last_fetched_at

                tracked = await session.get(TrackedSeriesRow, record.id)
                if tracked is not None and tracked.auto_category:
                    derived = Category.for_status(record.status).value
                    if tracked.category != derived:
                        logger.info(
                            "Series %s moved from %s to %s", record.id, tracked.category, derived
                        )
                        tracked.category = derived

                await session.commit()
                with _decoding(f"series {record.id}"):
                    merged = self._row_to_record(row)

        if added or pruned:
            logger.info(
                "Merged series %s: %d new episodes, %d pruned", record.id, added, pruned
            )
        await self._notify(record.id)
        return merged

    async def cache_summary(self, summary: SeriesSummary) -> bool:
        """Cache a search result unless a record for the id already exists."""

        async with self._writing(summary.id):
            async with self._session_factory() as session:
                if await session.get(SeriesRow, summary.id) is not None:
                    return False
                row = SeriesRow(id=summary.id, episodes_fetched=False)
                self._apply_metadata(row, SeriesRecord.from_summary(summary))
                session.add(row)
                await session.commit()
        await self._notify(summary.id)
        return True

    async def delete_series(self, series_id: str, *, cascade_untrack: bool = False) -> None:
        """Remove a cached series with its seasons, episodes and watched markers.

        Raises :class:`InUseError` while the series is tracked unless
        ``cascade_untrack`` is set, in which case the tracked entry goes too.
        """

        async with self._writing(series_id):
            async with self._session_factory() as session:
                tracked = await session.get(TrackedSeriesRow, series_id)
                if tracked is not None and not cascade_untrack:
                    raise InUseError(series_id)
                row = await self._load_series_row(session, series_id)
                if row is None and tracked is None:
                    raise NotFoundError(f"Series {series_id} is not cached")
                if tracked is not None:
                    await session.delete(tracked)
                if row is not None:
                    await session.delete(row)
                await session.commit()
        logger.info("Deleted series %s (untracked: %s)", series_id, tracked is not None)
        await self._notify(series_id)

    async def clear_cache(self, *, untrack: bool = False) -> int:
        """Delete every cached series nobody tracks; with ``untrack`` delete everything."""

        doomed = select(SeriesRow.id)
        if not untrack:
            doomed = doomed.where(SeriesRow.id.not_in(select(TrackedSeriesRow.series_id)))
        async with self._gate.exclusive(), self._session_factory() as session:
            series_ids = list(await session.scalars(doomed))
            if series_ids:
                for model in (WatchMarkerRow, EpisodeRow, SeasonRow):
                    await session.execute(
                        delete(model).where(model.series_id.in_(series_ids))
                    )
                await session.execute(delete(SeriesRow).where(SeriesRow.id.in_(series_ids)))
            if untrack:
                await session.execute(delete(TrackedSeriesRow))
            await session.commit()
        logger.info("Cleared %d cached series (untrack=%s)", len(series_ids), untrack)
        await self._notify(None)
        return len(series_ids)

    # ------------------------------------------------------------------
    # Watched markers

    async def set_watched(
        self,
        series_id: str,
        season: int,
        episode: int,
        watched: bool,
        *,
        watched_at: datetime | None = None,
    ) -> bool:
        """Mark a cached episode watched or unwatched.

        Returns ``True`` when the stored state changed. Re-applying the same
        value is a no-op and keeps the original watch timestamp.
        """

        async with self._writing(series_id):
            async with self._session_factory() as session:
                episode_id = await session.scalar(
                    select(EpisodeRow.id).where(
                        EpisodeRow.series_id == series_id,
                        EpisodeRow.season == season,
                        EpisodeRow.number == episode,
                    )
                )
                if episode_id is None:
                    raise NotFoundError(
                        f"Episode S{season:02d}E{episode:02d} of series {series_id} is not cached"
                    )
                marker = await session.scalar(
                    select(WatchMarkerRow).where(
                        WatchMarkerRow.series_id == series_id,
                        WatchMarkerRow.season == season,
                        WatchMarkerRow.number == episode,
                    )
                )
                if watched == (marker is not None):
                    return False
                if watched:
                    session.add(
                        WatchMarkerRow(
                            series_id=series_id,
                            season=season,
                            number=episode,
                            watched_at=as_naive_utc(watched_at) or utcnow(),
                        )
                    )
                else:
                    await session.delete(marker)
                await session.commit()
        await self._notify(series_id)
        return True

    async def set_season_watched(
        self,
        series_id: str,
        season: int,
        watched: bool,
        *,
        aired_before: datetime | None = None,
        watched_at: datetime | None = None,
    ) -> int:
        """Mark every episode of a season; returns how many markers changed.

        With ``aired_before`` only episodes known to have aired by then are
        marked watched, so future episodes are not ticked off by accident.
        """

        async with self._writing(series_id):
            async with self._session_factory() as session:
                episodes = (
                    await session.scalars(
                        select(EpisodeRow).where(
                            EpisodeRow.series_id == series_id,
                            EpisodeRow.season == season,
                        )
                    )
                ).all()
                if not episodes:
                    raise NotFoundError(
                        f"Season {season} of series {series_id} has no cached episodes"
                    )
                markers = {
                    marker.number: marker
                    for marker in await session.scalars(
                        select(WatchMarkerRow).where(
                            WatchMarkerRow.series_id == series_id,
                            WatchMarkerRow.season == season,
                        )
                    )
                }
                cutoff = as_naive_utc(aired_before)
                stamp = as_naive_utc(watched_at) or utcnow()
                changed = 0
                for episode in episodes:
                    marker = markers.get(episode.number)
                    if watched:
                        if marker is not None:
                            continue
                        if cutoff is not None and (
                            episode.airstamp is None or episode.airstamp > cutoff
                        ):
                            continue
                        session.add(
                            WatchMarkerRow(
                                series_id=series_id,
                                season=season,
                                number=episode.number,
                                watched_at=stamp,
                            )
                        )
                        changed += 1
                    elif marker is not None:
                        await session.delete(marker)
                        changed += 1
                if changed:
                    await session.commit()
        if changed:
            await self._notify(series_id)
        return changed

    async def get_watched(self, series_id: str) -> dict[EpisodeKey, datetime]:
        """Return watched markers of a series keyed by ``(season, episode)``."""

        markers = await self.get_watched_many([series_id])
        return markers.get(series_id, {})

    async def get_watched_many(
        self, series_ids: Iterable[str]
    ) -> dict[str, dict[EpisodeKey, datetime]]:
        ids = list(dict.fromkeys(series_ids))
        result: dict[str, dict[EpisodeKey, datetime]] = {series_id: {} for series_id in ids}
        if not ids:
            return result
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(WatchMarkerRow).where(WatchMarkerRow.series_id.in_(ids))
            )
            for marker in rows:
                result[marker.series_id][(marker.season, marker.number)] = marker.watched_at
        return result

    # ------------------------------------------------------------------
    # Tracked series

    async def track_series(
        self, series_id: str, category: Category | None = None
    ) -> TrackedSeriesEntry:
        """Add ``series_id`` to the watch list or update its category.

        Without an explicit ``category`` the entry follows the cached series
        status (ended series are filed under ended, everything else under
        running) and keeps following it on later refreshes.
        """

        async with self._writing(series_id):
            async with self._session_factory() as session:
                row = await session.get(TrackedSeriesRow, series_id)
                if category is None:
                    if row is not None and not row.auto_category:
                        return self._tracked_to_entry(row)
                    series = await session.get(SeriesRow, series_id)
                    status = SeriesStatus.from_catalog(series.status) if series else None
                    resolved = Category.for_status(status)
                    auto = True
                else:
                    resolved = category
                    auto = False
                if row is None:
                    row = TrackedSeriesRow(
                        series_id=series_id,
                        category=resolved.value,
                        auto_category=auto,
                        added_at=utcnow(),
                    )
                    session.add(row)
                    logger.info("Tracking series %s as %s", series_id, resolved.value)
                else:
                    row.category = resolved.value
                    row.auto_category = auto
                await session.commit()
                with _decoding(f"tracked entry {series_id}"):
                    entry = self._tracked_to_entry(row)
        await self._notify(series_id)
        return entry

    async def set_category(self, series_id: str, category: Category) -> TrackedSeriesEntry:
        """Assign a user chosen category to an already tracked series."""

        if await self.get_tracked(series_id) is None:
            raise NotFoundError(f"Series {series_id} is not tracked")
        return await self.track_series(series_id, category)

    async def untrack_series(self, series_id: str) -> bool:
        """Remove a tracked entry; cached metadata and markers are kept."""

        async with self._writing(series_id):
            async with self._session_factory() as session:
                row = await session.get(TrackedSeriesRow, series_id)
                if row is None:
                    return False
                await session.delete(row)
                await session.commit()
        logger.info("Untracked series %s", series_id)
        await self._notify(series_id)
        return True

    async def get_tracked(self, series_id: str) -> TrackedSeriesEntry | None:
        async with self._session_factory() as session:
            row = await session.get(TrackedSeriesRow, series_id)
            if row is None:
                return None
            with _decoding(f"tracked entry {series_id}"):
                return self._tracked_to_entry(row)

    async def list_tracked(
        self, category: Category | None = None
    ) -> list[TrackedSeriesEntry]:
        """Return tracked entries, optionally restricted to one category."""

        stmt = select(TrackedSeriesRow).order_by(
            TrackedSeriesRow.added_at, TrackedSeriesRow.series_id
        )
        if category is not None:
            stmt = stmt.where(TrackedSeriesRow.category == category.value)
        async with self._session_factory() as session:
            rows = (await session.scalars(stmt)).all()
            with _decoding("tracked entries"):
                return [self._tracked_to_entry(row) for row in rows]

    # ------------------------------------------------------------------
    # Snapshots

    async def export_snapshot(self) -> StoreSnapshot:
        """Return a complete copy of every entity held by the store."""

        async with self._session_factory() as session:
            with _decoding("snapshot"):
                series_rows = (
                    await session.scalars(
                        select(SeriesRow)
                        .order_by(SeriesRow.id)
                        .options(
                            selectinload(SeriesRow.seasons),
                            selectinload(SeriesRow.episodes),
                        )
                    )
                ).all()
                marker_rows = (
                    await session.scalars(
                        select(WatchMarkerRow).order_by(
                            WatchMarkerRow.series_id,
                            WatchMarkerRow.season,
                            WatchMarkerRow.number,
                        )
                    )
                ).all()
                tracked_rows = (
                    await session.scalars(
                        select(TrackedSeriesRow).order_by(
                            TrackedSeriesRow.added_at, TrackedSeriesRow.series_id
                        )
                    )
                ).all()
                return StoreSnapshot(
                    schema_version=SNAPSHOT_SCHEMA_VERSION,
                    exported_at=utcnow(),
                    series=[self._row_to_record(row) for row in series_rows],
                    watched=[
                        WatchMarker(
                            series_id=row.series_id,
                            season=row.season,
                            number=row.number,
                            watched_at=row.watched_at,
                        )
                        for row in marker_rows
                    ],
                    tracked=[self._tracked_to_entry(row) for row in tracked_rows],
                )

    async def import_snapshot(
        self, payload: StoreSnapshot | Mapping[str, Any] | str | bytes
    ) -> StoreSnapshot:
        """Replace the whole store with ``payload`` in a single transaction.

        The payload is fully validated before anything is written, and a
        failure part way through the write rolls everything back, so the
        previous contents stay observable until the new ones are committed.
        """

        if isinstance(payload, StoreSnapshot):
            check_schema_version(payload.schema_version)
            snapshot = payload
        else:
            snapshot = parse_snapshot(payload)

        async with self._gate.exclusive(), self._session_factory() as session:
            for model in (
                WatchMarkerRow,
                EpisodeRow,
                SeasonRow,
                SeriesRow,
                TrackedSeriesRow,
            ):
                await session.execute(delete(model))
            for record in snapshot.series:
                row = SeriesRow(id=record.id, episodes_fetched=record.episodes_fetched)
                self._apply_metadata(row, record)
                row.last_fetched_at = record.last_fetched_at
                row.seasons = [self._season_row(season) for season in record.seasons]
                row.episodes = [self._episode_row(episode) for episode in record.episodes]
                session.add(row)
            for marker in snapshot.watched:
                session.add(
                    WatchMarkerRow(
                        series_id=marker.series_id,
                        season=marker.season,
                        number=marker.number,
                        watched_at=marker.watched_at,
                    )
                )
            for entry in snapshot.tracked:
                session.add(
                    TrackedSeriesRow(
                        series_id=entry.series_id,
                        category=entry.category.value,
                        auto_category=entry.auto_category,
                        added_at=entry.added_at,
                    )
                )
            await session.commit()

        logger.info(
            "Imported snapshot with %d series, %d watched markers, %d tracked entries",
            len(snapshot.series),
            len(snapshot.watched),
            len(snapshot.tracked),
        )
        await self._notify(None)
        return snapshot

    # ------------------------------------------------------------------
    # Row helpers

    @staticmethod
    async def _load_series_row(session: AsyncSession, series_id: str) -> SeriesRow | None:
        stmt = (
            select(SeriesRow)
            .where(SeriesRow.id == series_id)
            .options(
                selectinload(SeriesRow.seasons),
                selectinload(SeriesRow.episodes),
                selectinload(SeriesRow.watch_markers),
            )
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _apply_metadata(
        row: SeriesRow, record: SeriesRecord, *, include_cast: bool = True
    ) -> None:
        row.name = record.name
        row.summary = record.summary
        row.status = record.status.value
        row.genres = list(record.genres)
        row.language = record.language
        row.premiered = record.premiered
        row.ended = record.ended
        row.average_runtime = record.average_runtime
        row.image_url = record.image_url
        if include_cast:
            row.cast_members = [member.model_dump() for member in record.cast]

    @staticmethod
    def _season_row(season: Season) -> SeasonRow:
        return SeasonRow(
            number=season.number,
            name=season.name,
            episode_order=season.episode_order,
            premiere_date=season.premiere_date,
            end_date=season.end_date,
        )

    @staticmethod
    def _episode_row(episode: Episode) -> EpisodeRow:
        return EpisodeRow(
            season=episode.season,
            number=episode.number,
            name=episode.name,
            summary=episode.summary,
            airstamp=episode.airstamp,
            runtime_minutes=episode.runtime_minutes,
        )

    def _merge_seasons(self, row: SeriesRow, seasons: list[Season]) -> None:
        existing = {season.number: season for season in row.seasons}
        incoming = {season.number: season for season in seasons}
        for number, season in incoming.items():
            target = existing.get(number)
            if target is None:
                row.seasons.append(self._season_row(season))
                continue
            target.name = season.name
            target.episode_order = season.episode_order
            target.premiere_date = season.premiere_date
            target.end_date = season.end_date
        for number, target in existing.items():
            if number not in incoming:
                row.seasons.remove(target)

    def _merge_episodes(
        self,
        row: SeriesRow,
        episodes: list[Episode],
        watched_keys: set[EpisodeKey],
    ) -> tuple[int, int]:
        existing = {(episode.season, episode.number): episode for episode in row.episodes}
        incoming = {episode.key: episode for episode in episodes}
        added = pruned = 0
        for key, episode in incoming.items():
            target = existing.get(key)
            if target is None:
                row.episodes.append(self._episode_row(episode))
                added += 1
                continue
            target.name = episode.name
            target.summary = episode.summary
            target.airstamp = episode.airstamp
            target.runtime_minutes = episode.runtime_minutes
        for key, target in existing.items():
            if key in incoming:
                continue
            if key in watched_keys:
                # Upstream dropped an episode the user already watched; keep it.
                continue
            row.episodes.remove(target)
            pruned += 1
        return added, pruned

    @staticmethod
    def _row_to_record(row: SeriesRow) -> SeriesRecord:
        return SeriesRecord(
            id=row.id,
            name=row.name,
            summary=row.summary,
            status=row.status,
            genres=row.genres if row.genres is not None else [],
            language=row.language,
            premiered=row.premiered,
            ended=row.ended,
            average_runtime=row.average_runtime,
            image_url=row.image_url,
            cast=row.cast_members if row.cast_members is not None else [],
            seasons=[
                Season(
                    number=season.number,
                    name=season.name,
                    episode_order=season.episode_order,
                    premiere_date=season.premiere_date,
                    end_date=season.end_date,
                )
                for season in row.seasons
            ],
            episodes=[
                Episode(
                    season=episode.season,
                    number=episode.number,
                    name=episode.name,
                    summary=episode.summary,
                    airstamp=episode.airstamp,
                    runtime_minutes=episode.runtime_minutes,
                )
                for episode in row.episodes
            ],
            last_fetched_at=row.last_fetched_at,
            episodes_fetched=bool(row.episodes_fetched),
        )

    @staticmethod
    def _tracked_to_entry(row: TrackedSeriesRow) -> TrackedSeriesEntry:
        return TrackedSeriesEntry(
            series_id=row.series_id,
            category=Category(row.category),
            auto_category=bool(row.auto_category),
            added_at=row.added_at,
        )
