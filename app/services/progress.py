"""Per-series watch progress computed from cached episodes and watched markers."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from ..errors import NotFoundError
from ..models import Episode, EpisodeKey, SeriesRecord

if TYPE_CHECKING:
    from .store import RecordStore


@dataclass(slots=True)
class EpisodeProgress:
    episode: Episode
    watched: bool
    watched_at: datetime | None
    aired: bool
    watched_so_far: int

    @property
    def key(self) -> EpisodeKey:
        return self.episode.key


@dataclass(slots=True)
class SeasonProgress:
    number: int
    total_count: int = 0
    watched_count: int = 0
    watched_runtime_minutes: int = 0

    @property
    def is_complete(self) -> bool:
        return self.total_count > 0 and self.watched_count == self.total_count


@dataclass(slots=True)
class SeriesProgress:
    """Ordered view of a series with running totals and the next episodes."""

    series_id: str
    episodes: list[EpisodeProgress] = field(default_factory=list)
    seasons: list[SeasonProgress] = field(default_factory=list)
    watched_count: int = 0
    total_count: int = 0
    aired_count: int = 0
    unwatched_aired_count: int = 0
    watched_runtime_minutes: int = 0
    unknown_runtime_watched: int = 0
    last_watched: Episode | None = None
    next_to_watch: Episode | None = None
    next_to_air: Episode | None = None

    @property
    def unwatched_count(self) -> int:
        return self.total_count - self.watched_count

    @property
    def percent_watched(self) -> float:
        if not self.total_count:
            return 0.0
        return round(100 * self.watched_count / self.total_count, 1)

    @property
    def seasons_watched(self) -> int:
        """Number of seasons with at least one watched episode."""

        return sum(1 for season in self.seasons if season.watched_count)

    @property
    def is_caught_up(self) -> bool:
        return self.unwatched_aired_count == 0

    def to_payload(self, *, include_episodes: bool = True) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "series_id": self.series_id,
            "watched": self.watched_count,
            "total": self.total_count,
            "aired": self.aired_count,
            "unwatched_aired": self.unwatched_aired_count,
            "percent_watched": self.percent_watched,
            "watched_runtime_minutes": self.watched_runtime_minutes,
            "unknown_runtime_watched": self.unknown_runtime_watched,
            "last_watched": _episode_ref(self.last_watched),
            "next_to_watch": _episode_ref(self.next_to_watch),
            "next_to_air": _episode_ref(self.next_to_air),
            "seasons": [
                {
                    "number": season.number,
                    "watched": season.watched_count,
                    "total": season.total_count,
                    "watched_runtime_minutes": season.watched_runtime_minutes,
                    "complete": season.is_complete,
                }
                for season in self.seasons
            ],
        }
        if include_episodes:
            payload["episodes"] = [
                {
                    **(_episode_ref(item.episode) or {}),
                    "watched": item.watched,
                    "watched_at": item.watched_at.isoformat() if item.watched_at else None,
                    "aired": item.aired,
                    "watched_so_far": item.watched_so_far,
                }
                for item in self.episodes
            ]
        return payload


def _episode_ref(episode: Episode | None) -> dict[str, Any] | None:
    if episode is None:
        return None
    return {
        "season": episode.season,
        "episode": episode.number,
        "label": episode.label(),
        "name": episode.name,
        "airstamp": episode.airstamp.isoformat() if episode.airstamp else None,
        "runtime_minutes": episode.runtime_minutes,
    }


def _air_order(episode: Episode) -> tuple[datetime, int, int]:
    assert episode.airstamp is not None
    return (episode.airstamp, episode.season, episode.number)


def compute_progress(
    record: SeriesRecord,
    markers: Mapping[EpisodeKey, datetime],
    now: datetime,
) -> SeriesProgress:
    """Fold ``record``'s episodes and watched ``markers`` into a progress view.

    Episodes without an air date count towards the totals but can be neither
    the next episode to watch nor the next episode to air. Markers pointing
    at episodes the record does not contain are ignored.
    """

    progress = SeriesProgress(series_id=record.id)
    seasons: dict[int, SeasonProgress] = {
        number: SeasonProgress(number=number) for number in record.season_numbers()
    }
    aired_unwatched: list[Episode] = []
    upcoming_unwatched: list[Episode] = []

    for episode in sorted(record.episodes, key=lambda item: item.key):
        watched_at = markers.get(episode.key)
        watched = watched_at is not None
        aired = episode.airstamp is not None and episode.airstamp <= now
        season = seasons[episode.season]

        progress.total_count += 1
        season.total_count += 1
        if aired:
            progress.aired_count += 1
        if watched:
            progress.watched_count += 1
            season.watched_count += 1
            progress.last_watched = episode
            if episode.runtime_minutes is None:
                progress.unknown_runtime_watched += 1
            else:
                progress.watched_runtime_minutes += episode.runtime_minutes
                season.watched_runtime_minutes += episode.runtime_minutes
        elif aired:
            progress.unwatched_aired_count += 1
            aired_unwatched.append(episode)
        elif episode.airstamp is not None:
            upcoming_unwatched.append(episode)

        progress.episodes.append(
            EpisodeProgress(
                episode=episode,
                watched=watched,
                watched_at=watched_at,
                aired=aired,
                watched_so_far=progress.watched_count,
            )
        )

    progress.seasons = [seasons[number] for number in sorted(seasons)]
    if aired_unwatched:
        progress.next_to_watch = min(aired_unwatched, key=_air_order)
    if upcoming_unwatched:
        progress.next_to_air = min(upcoming_unwatched, key=_air_order)
    return progress


async def load_progress(store: RecordStore, series_id: str, now: datetime) -> SeriesProgress:
    """Read a cached series and its markers from ``store`` and compute progress."""

    record = await store.get_series(series_id)
    if record is None:
        raise NotFoundError(f"Series {series_id} is not cached")
    markers = await store.get_watched(series_id)
    return compute_progress(record, markers, now)
