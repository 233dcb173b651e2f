"""SQLAlchemy ORM models backing the persistent state."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


class SeriesRow(Base):
    """Cached series metadata mirrored from the catalog."""

    __tablename__ = "series"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32))
    genres: Mapped[list[str]] = mapped_column(JSON, default=list)
    language: Mapped[str | None] = mapped_column(String(64), nullable=True)
    premiered: Mapped[date | None] = mapped_column(Date, nullable=True)
    ended: Mapped[date | None] = mapped_column(Date, nullable=True)
    average_runtime: Mapped[int | None] = mapped_column(Integer, nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    cast_members: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    episodes_fetched: Mapped[bool] = mapped_column(Boolean, default=False)
    last_fetched_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    seasons: Mapped[list["SeasonRow"]] = relationship(
        back_populates="series",
        cascade="all, delete-orphan",
    )
    episodes: Mapped[list["EpisodeRow"]] = relationship(
        back_populates="series",
        cascade="all, delete-orphan",
    )
    watch_markers: Mapped[list["WatchMarkerRow"]] = relationship(
        back_populates="series",
        cascade="all, delete-orphan",
    )


class SeasonRow(Base):
    __tablename__ = "seasons"
    __table_args__ = (
        UniqueConstraint("series_id", "number", name="uq_season_series"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    series_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("series.id", ondelete="CASCADE")
    )
    number: Mapped[int] = mapped_column(Integer)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    episode_order: Mapped[int | None] = mapped_column(Integer, nullable=True)
    premiere_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    series: Mapped[SeriesRow] = relationship(back_populates="seasons")


class EpisodeRow(Base):
    """Episode metadata; never carries watched state."""

    __tablename__ = "episodes"
    __table_args__ = (
        UniqueConstraint("series_id", "season", "number", name="uq_episode_series"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    series_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("series.id", ondelete="CASCADE")
    )
    season: Mapped[int] = mapped_column(Integer)
    number: Mapped[int] = mapped_column(Integer)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    airstamp: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    runtime_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    series: Mapped[SeriesRow] = relationship(back_populates="episodes")


class WatchMarkerRow(Base):
    """Watched flag for an episode, kept apart from refetched metadata."""

    __tablename__ = "watch_markers"
    __table_args__ = (
        UniqueConstraint("series_id", "season", "number", name="uq_marker_episode"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    series_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("series.id", ondelete="CASCADE")
    )
    season: Mapped[int] = mapped_column(Integer)
    number: Mapped[int] = mapped_column(Integer)
    watched_at: Mapped[datetime] = mapped_column(DateTime)

    series: Mapped[SeriesRow] = relationship(back_populates="watch_markers")


class TrackedSeriesRow(Base):
    """The user's watch list; deliberately not a foreign key to ``series``."""

    __tablename__ = "tracked_series"

    series_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    category: Mapped[str] = mapped_column(String(16))
    auto_category: Mapped[bool] = mapped_column(Boolean, default=True)
    added_at: Mapped[datetime] = mapped_column(DateTime)
