"""Feed of upcoming unwatched episodes for the notification scheduler."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ..models import Category, Episode, SeriesRecord
from ..utils import utcnow
from .progress import compute_progress
from .store import RecordStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class UpcomingEpisode:
    series_id: str
    series_name: str
    season: int
    number: int
    name: str | None
    airstamp: datetime

    @classmethod
    def from_episode(cls, record: SeriesRecord, episode: Episode) -> "UpcomingEpisode":
        assert episode.airstamp is not None
        return cls(
            series_id=record.id,
            series_name=record.name,
            season=episode.season,
            number=episode.number,
            name=episode.name,
            airstamp=episode.airstamp,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "series_id": self.series_id,
            "series_name": self.series_name,
            "season": self.season,
            "episode": self.number,
            "name": self.name,
            "airstamp": self.airstamp.isoformat(),
        }


FeedSubscriber = Callable[[list[UpcomingEpisode]], Awaitable[None]]
Schedule = tuple[UpcomingEpisode, ...]


class NotificationFeed:
    """Keep the next airing unwatched episode of every tracked series.

    Attached to a :class:`RecordStore` the feed recomputes the affected
    series after every write and pushes the updated feed to subscribers
    whenever an entry changes. Series filed under the untracked category
    are left out.

    Each series keeps its whole schedule of unwatched future episodes, so
    once the head of the schedule airs the following episode takes its
    place without waiting for another store write.
    """

    def __init__(self, store: RecordStore, *, clock: Callable[[], datetime] = utcnow):
        self._store = store
        self._clock = clock
        self._schedules: dict[str, Schedule] = {}
        self._subscribers: list[FeedSubscriber] = []
        self._attached = False

    def attach(self) -> None:
        if not self._attached:
            self._store.add_listener(self._on_store_change)
            self._attached = True

    def detach(self) -> None:
        if self._attached:
            self._store.remove_listener(self._on_store_change)
            self._attached = False

    def subscribe(self, subscriber: FeedSubscriber) -> None:
        self._subscribers.append(subscriber)

    def upcoming(self, now: datetime | None = None) -> list[UpcomingEpisode]:
        """Return the next unaired episode of each series, soonest first."""

        moment = now or self._clock()
        entries = []
        for schedule in self._schedules.values():
            pending = next((entry for entry in schedule if entry.airstamp > moment), None)
            if pending is not None:
                entries.append(pending)
        return sorted(entries, key=lambda entry: (entry.airstamp, entry.series_id))

    async def rebuild(self) -> bool:
        """Recompute the feed for the whole tracked set."""

        now = self._clock()
        entries = [
            entry
            for entry in await self._store.list_tracked()
            if entry.category is not Category.UNTRACKED
        ]
        series_ids = [entry.series_id for entry in entries]
        records = await self._store.get_many_series(series_ids)
        markers = await self._store.get_watched_many(series_ids)

        rebuilt: dict[str, Schedule] = {}
        for series_id, record in records.items():
            schedule = self._schedule_for(record, markers.get(series_id, {}), now)
            if schedule:
                rebuilt[series_id] = schedule
        changed = rebuilt != self._schedules
        self._schedules = rebuilt
        return changed

    async def refresh_series(self, series_id: str) -> bool:
        """Recompute the schedule of one series; returns whether it changed."""

        entry = await self._store.get_tracked(series_id)
        schedule: Schedule = ()
        if entry is not None and entry.category is not Category.UNTRACKED:
            record = await self._store.get_series(series_id)
            if record is not None:
                markers = await self._store.get_watched(series_id)
                schedule = self._schedule_for(record, markers, self._clock())

        previous = self._schedules.get(series_id, ())
        if schedule:
            self._schedules[series_id] = schedule
        else:
            self._schedules.pop(series_id, None)
        return previous != schedule

    @staticmethod
    def _schedule_for(
        record: SeriesRecord, markers: dict[tuple[int, int], datetime], now: datetime
    ) -> Schedule:
        progress = compute_progress(record, markers, now)
        pending = [
            item.episode
            for item in progress.episodes
            if not item.watched and not item.aired and item.episode.airstamp is not None
        ]
        pending.sort(key=lambda episode: (episode.airstamp, episode.key))
        return tuple(UpcomingEpisode.from_episode(record, episode) for episode in pending)

    async def _on_store_change(self, series_id: str | None) -> None:
        if series_id is None:
            changed = await self.rebuild()
        else:
            changed = await self.refresh_series(series_id)
        if not changed:
            return
        feed = self.upcoming()
        logger.debug("Upcoming feed changed; %d entries", len(feed))
        for subscriber in list(self._subscribers):
            await subscriber(feed)
