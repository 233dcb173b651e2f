"""Pydantic models describing cached series, episodes and tracking state."""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

from .utils import as_naive_utc

EpisodeKey = tuple[int, int]


class SeriesStatus(str, Enum):
    """Lifecycle state reported by the catalog."""

    RUNNING = "Running"
    ENDED = "Ended"
    TO_BE_DETERMINED = "To Be Determined"

    @classmethod
    def from_catalog(cls, value: object) -> "SeriesStatus":
        """Map a raw catalog status onto the three states the tracker knows."""

        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().casefold()
        if normalized == "running":
            return cls.RUNNING
        if normalized == "ended":
            return cls.ENDED
        return cls.TO_BE_DETERMINED


class Category(str, Enum):
    """User facing grouping of tracked series."""

    RUNNING = "running"
    ENDED = "ended"
    UNTRACKED = "untracked"

    @classmethod
    def for_status(cls, status: SeriesStatus | None) -> "Category":
        if status is SeriesStatus.ENDED:
            return cls.ENDED
        return cls.RUNNING


class CastMember(BaseModel):
    """A single cast credit."""

    person_id: int | None = None
    name: str
    character: str | None = None


class Season(BaseModel):
    number: int = Field(ge=0)
    name: str | None = None
    episode_order: int | None = None
    premiere_date: date | None = None
    end_date: date | None = None


class Episode(BaseModel):
    """Episode metadata as supplied by the catalog.

    Watched state is deliberately absent: it lives in :class:`WatchMarker`
    so refetching metadata can never discard progress.
    """

    season: int = Field(ge=0)
    number: int = Field(ge=0)
    name: str | None = None
    summary: str | None = None
    airstamp: datetime | None = None
    runtime_minutes: int | None = Field(default=None, ge=0)

    @field_validator("airstamp")
    @classmethod
    def _normalise_airstamp(cls, value: datetime | None) -> datetime | None:
        return as_naive_utc(value)

    @property
    def key(self) -> EpisodeKey:
        return (self.season, self.number)

    def label(self) -> str:
        return f"S{self.season:02d}E{self.number:02d}"


class SeriesSummary(BaseModel):
    """Display metadata returned by catalog searches."""

    id: str = Field(min_length=1)
    name: str
    summary: str | None = None
    status: SeriesStatus = SeriesStatus.TO_BE_DETERMINED
    genres: list[str] = Field(default_factory=list)
    language: str | None = None
    premiered: date | None = None
    ended: date | None = None
    average_runtime: int | None = None
    image_url: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: object) -> object:
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value: object) -> SeriesStatus:
        return SeriesStatus.from_catalog(value)


class SeriesRecord(SeriesSummary):
    """Complete cached view of a series including its seasons and episodes."""

    cast: list[CastMember] = Field(default_factory=list)
    seasons: list[Season] = Field(default_factory=list)
    episodes: list[Episode] = Field(default_factory=list)
    last_fetched_at: datetime | None = None
    episodes_fetched: bool = True

    @field_validator("last_fetched_at")
    @classmethod
    def _normalise_fetched_at(cls, value: datetime | None) -> datetime | None:
        return as_naive_utc(value)

    @model_validator(mode="after")
    def _order_children(self) -> "SeriesRecord":
        """Keep seasons and episodes sorted and reject duplicate episode keys."""

        seen: set[EpisodeKey] = set()
        for episode in self.episodes:
            if episode.key in seen:
                raise ValueError(
                    f"Duplicate episode {episode.label()} for series {self.id}"
                )
            seen.add(episode.key)
        season_numbers = [season.number for season in self.seasons]
        if len(set(season_numbers)) != len(season_numbers):
            raise ValueError(f"Duplicate season numbers for series {self.id}")
        self.seasons.sort(key=lambda season: season.number)
        self.episodes.sort(key=lambda episode: episode.key)
        return self

    @classmethod
    def from_summary(cls, summary: SeriesSummary) -> "SeriesRecord":
        """Build a partial record (no episode list) from a search result."""

        return cls(**summary.model_dump(), episodes_fetched=False)

    def episode(self, season: int, number: int) -> Episode | None:
        for episode in self.episodes:
            if episode.season == season and episode.number == number:
                return episode
        return None

    def season_numbers(self) -> list[int]:
        numbers = {season.number for season in self.seasons}
        numbers.update(episode.season for episode in self.episodes)
        return sorted(numbers)


class WatchMarker(BaseModel):
    """A watched flag for one episode, stored apart from episode metadata."""

    series_id: str
    season: int
    number: int
    watched_at: datetime

    @field_validator("watched_at")
    @classmethod
    def _normalise_watched_at(cls, value: datetime) -> datetime:
        return as_naive_utc(value)  # type: ignore[return-value]

    @property
    def key(self) -> EpisodeKey:
        return (self.season, self.number)


class TrackedSeriesEntry(BaseModel):
    """The user's subscription to a series id."""

    series_id: str
    category: Category = Category.RUNNING
    auto_category: bool = True
    added_at: datetime

    @field_validator("added_at")
    @classmethod
    def _normalise_added_at(cls, value: datetime) -> datetime:
        return as_naive_utc(value)  # type: ignore[return-value]


class StoreSnapshot(BaseModel):
    """Complete, versioned copy of every entity held by the store."""

    schema_version: int
    exported_at: datetime
    series: list[SeriesRecord] = Field(default_factory=list)
    watched: list[WatchMarker] = Field(default_factory=list)
    tracked: list[TrackedSeriesEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_references(self) -> "StoreSnapshot":
        """Watched markers must point at an episode contained in the snapshot."""

        episodes: dict[str, set[EpisodeKey]] = {}
        for record in self.series:
            if record.id in episodes:
                raise ValueError(f"Series {record.id} appears twice in snapshot")
            episodes[record.id] = {episode.key for episode in record.episodes}
        seen_markers: set[tuple[str, int, int]] = set()
        for marker in self.watched:
            if marker.key not in episodes.get(marker.series_id, set()):
                raise ValueError(
                    f"Watched marker for unknown episode {marker.series_id} "
                    f"S{marker.season}E{marker.number}"
                )
            identity = (marker.series_id, marker.season, marker.number)
            if identity in seen_markers:
                raise ValueError(f"Duplicate watched marker {identity}")
            seen_markers.add(identity)
        tracked_ids = [entry.series_id for entry in self.tracked]
        if len(set(tracked_ids)) != len(tracked_ids):
            raise ValueError("Duplicate tracked entries in snapshot")
        return self
