"""Aggregate watch statistics across the tracked series set."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, NamedTuple

from ..models import Category, SeriesRecord, TrackedSeriesEntry
from ..utils import utcnow
from .progress import EpisodeProgress, SeriesProgress, compute_progress
from .store import RecordStore

UNKNOWN_GROUP = "unknown"


class GroupBy(str, Enum):
    SERIES = "series"
    YEAR = "year"
    AIR_YEAR = "air_year"
    CATEGORY = "category"
    GENRE = "genre"


class WatchTimeUnit(str, Enum):
    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


_MINUTES_PER_UNIT = {
    WatchTimeUnit.SECONDS: 1 / 60,
    WatchTimeUnit.MINUTES: 1,
    WatchTimeUnit.HOURS: 60,
    WatchTimeUnit.DAYS: 60 * 24,
}


class StatisticsInput(NamedTuple):
    entry: TrackedSeriesEntry
    record: SeriesRecord | None
    progress: SeriesProgress | None


@dataclass(slots=True)
class GroupTotals:
    key: str
    label: str
    series_ids: set[str] = field(default_factory=set)
    season_keys: set[tuple[str, int]] = field(default_factory=set)
    episodes_watched: int = 0
    runtime_minutes: int = 0
    unknown_runtime_episodes: int = 0

    def add(self, series_id: str, item: EpisodeProgress) -> None:
        self.series_ids.add(series_id)
        self.season_keys.add((series_id, item.episode.season))
        self.episodes_watched += 1
        if item.episode.runtime_minutes is None:
            self.unknown_runtime_episodes += 1
        else:
            self.runtime_minutes += item.episode.runtime_minutes

    def to_payload(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "label": self.label,
            "series": len(self.series_ids),
            "seasons": len(self.season_keys),
            "episodes_watched": self.episodes_watched,
            "runtime_minutes": self.runtime_minutes,
            "unknown_runtime_episodes": self.unknown_runtime_episodes,
        }


@dataclass(slots=True)
class WatchStatistics:
    """Totals across the tracked set, optionally partitioned into groups."""

    tracked_series: int = 0
    series_watched: int = 0
    seasons_watched: int = 0
    episodes_watched: int = 0
    runtime_minutes: int = 0
    unknown_runtime_episodes: int = 0
    missing_metadata: int = 0
    group_by: GroupBy | None = None
    groups: dict[str, GroupTotals] = field(default_factory=dict)

    def watch_time(self, unit: WatchTimeUnit = WatchTimeUnit.MINUTES) -> float:
        """Return the known watched runtime expressed in ``unit``."""

        return self.runtime_minutes / _MINUTES_PER_UNIT[WatchTimeUnit(unit)]

    def to_payload(self) -> dict[str, Any]:
        return {
            "tracked_series": self.tracked_series,
            "series_watched": self.series_watched,
            "seasons_watched": self.seasons_watched,
            "episodes_watched": self.episodes_watched,
            "runtime_minutes": self.runtime_minutes,
            "watch_time_hours": round(self.watch_time(WatchTimeUnit.HOURS), 2),
            "unknown_runtime_episodes": self.unknown_runtime_episodes,
            "missing_metadata": self.missing_metadata,
            "group_by": self.group_by.value if self.group_by else None,
            "groups": [
                self.groups[key].to_payload() for key in sorted(self.groups)
            ],
        }


def _group_keys(
    group_by: GroupBy,
    data: StatisticsInput,
    item: EpisodeProgress,
) -> list[tuple[str, str]]:
    record = data.record
    assert record is not None
    if group_by is GroupBy.SERIES:
        return [(record.id, record.name)]
    if group_by is GroupBy.YEAR:
        year = str(item.watched_at.year) if item.watched_at else UNKNOWN_GROUP
        return [(year, year)]
    if group_by is GroupBy.AIR_YEAR:
        airstamp = item.episode.airstamp
        year = str(airstamp.year) if airstamp else UNKNOWN_GROUP
        return [(year, year)]
    if group_by is GroupBy.CATEGORY:
        category = data.entry.category.value
        return [(category, category.title())]
    genres = record.genres or [UNKNOWN_GROUP]
    return [(genre.casefold(), genre) for genre in genres]


def aggregate(
    items: Iterable[StatisticsInput],
    *,
    group_by: GroupBy | None = None,
    watched_only: bool = False,
) -> WatchStatistics:
    """Fold per-series progress into cross-series totals.

    Series without cached metadata count as tracked but contribute nothing
    else. With ``watched_only`` series without a watched episode are left
    out entirely. Episodes without a known runtime are counted separately
    rather than silently adding zero minutes.
    """

    stats = WatchStatistics(group_by=group_by)
    for data in items:
        progress = data.progress
        watched = progress.watched_count if progress is not None else 0
        if watched_only and not watched:
            continue
        stats.tracked_series += 1
        if data.record is None or progress is None:
            stats.missing_metadata += 1
            continue
        if watched:
            stats.series_watched += 1
        stats.seasons_watched += progress.seasons_watched
        stats.episodes_watched += watched
        stats.runtime_minutes += progress.watched_runtime_minutes
        stats.unknown_runtime_episodes += progress.unknown_runtime_watched

        if group_by is None:
            continue
        for item in progress.episodes:
            if not item.watched:
                continue
            for key, label in _group_keys(group_by, data, item):
                totals = stats.groups.get(key)
                if totals is None:
                    totals = stats.groups[key] = GroupTotals(key=key, label=label)
                totals.add(data.record.id, item)
    return stats


class StatisticsService:
    """Load the tracked set from the store and aggregate it."""

    def __init__(self, store: RecordStore):
        self._store = store

    async def collect(
        self,
        *,
        now: datetime | None = None,
        group_by: GroupBy | None = None,
        watched_only: bool = False,
        category: Category | None = None,
    ) -> WatchStatistics:
        moment = now or utcnow()
        entries = await self._store.list_tracked(category)
        series_ids = [entry.series_id for entry in entries]
        records = await self._store.get_many_series(series_ids)
        markers = await self._store.get_watched_many(series_ids)

        items: list[StatisticsInput] = []
        for entry in entries:
            record = records.get(entry.series_id)
            progress = (
                compute_progress(record, markers.get(entry.series_id, {}), moment)
                if record is not None
                else None
            )
            items.append(StatisticsInput(entry, record, progress))
        return aggregate(items, group_by=group_by, watched_only=watched_only)
