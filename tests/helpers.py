"""Builders shared by the tracker test modules."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import AsyncIterator

from app.database import Database
from app.errors import FetchError
from app.models import Episode, Season, SeriesRecord, SeriesStatus, SeriesSummary
from app.services.store import RecordStore

NOW = datetime(2024, 6, 1, 12, 0, 0)


def build_episode(
    season: int,
    number: int,
    *,
    aired_days_ago: float | None = 30,
    runtime: int | None = 30,
) -> Episode:
    airstamp = None if aired_days_ago is None else NOW - timedelta(days=aired_days_ago)
    return Episode(
        season=season,
        number=number,
        name=f"Episode {season}x{number}",
        airstamp=airstamp,
        runtime_minutes=runtime,
    )


def build_record(
    series_id: str = "1",
    *,
    name: str = "Example Show",
    status: SeriesStatus = SeriesStatus.RUNNING,
    episodes: list[Episode] | None = None,
    genres: list[str] | None = None,
    fetched_at: datetime | None = NOW,
) -> SeriesRecord:
    if episodes is None:
        episodes = [build_episode(1, number) for number in (1, 2, 3)]
    seasons = sorted({episode.season for episode in episodes})
    return SeriesRecord(
        id=series_id,
        name=name,
        status=status,
        genres=genres or ["Drama"],
        seasons=[Season(number=number) for number in seasons],
        episodes=episodes,
        last_fetched_at=fetched_at,
    )


@asynccontextmanager
async def open_store(tmp_path: Path, name: str = "store.db") -> AsyncIterator[RecordStore]:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / name}")
    await database.create_all()
    try:
        yield RecordStore(database.session_factory)
    finally:
        await database.dispose()


class FakeCatalogClient:
    """In-memory catalog that records how often each series was fetched."""

    def __init__(self, records: dict[str, SeriesRecord] | None = None):
        self.records = dict(records or {})
        self.errors: dict[str, FetchError] = {}
        self.fetch_calls: dict[str, int] = {}
        self.search_results: list[SeriesSummary] = []
        self.delay: float = 0.0

    async def fetch_series(self, series_id: str) -> SeriesRecord:
        self.fetch_calls[series_id] = self.fetch_calls.get(series_id, 0) + 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if series_id in self.errors:
            raise self.errors[series_id]
        return self.records[series_id]

    async def search(self, query: str) -> list[SeriesSummary]:
        return list(self.search_results)
