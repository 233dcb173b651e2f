"""Cross-series statistics aggregation."""

from __future__ import annotations

from datetime import datetime

import pytest

from app.models import Category, SeriesStatus, TrackedSeriesEntry
from app.services.progress import compute_progress
from app.services.statistics import (
    GroupBy,
    StatisticsInput,
    StatisticsService,
    WatchTimeUnit,
    aggregate,
)
from helpers import NOW, build_episode, build_record, open_store


def _entry(series_id: str, category: Category = Category.RUNNING) -> TrackedSeriesEntry:
    return TrackedSeriesEntry(series_id=series_id, category=category, added_at=NOW)


def _inputs() -> list[StatisticsInput]:
    drama = build_record(
        "1",
        name="Drama Show",
        genres=["Drama"],
        episodes=[
            build_episode(1, 1, runtime=60),
            build_episode(1, 2, runtime=60),
            build_episode(2, 1, runtime=None),
        ],
    )
    comedy = build_record(
        "2",
        name="Comedy Show",
        status=SeriesStatus.ENDED,
        genres=["Comedy", "Drama"],
        episodes=[build_episode(1, 1, runtime=30), build_episode(1, 2, runtime=30)],
    )
    drama_markers = {
        (1, 1): datetime(2023, 12, 31),
        (1, 2): datetime(2024, 1, 2),
        (2, 1): datetime(2024, 1, 3),
    }
    comedy_markers = {(1, 1): datetime(2024, 2, 1)}
    return [
        StatisticsInput(_entry("1"), drama, compute_progress(drama, drama_markers, NOW)),
        StatisticsInput(
            _entry("2", Category.ENDED),
            comedy,
            compute_progress(comedy, comedy_markers, NOW),
        ),
        StatisticsInput(_entry("3"), None, None),
        StatisticsInput(
            _entry("4"), build_record("4"), compute_progress(build_record("4"), {}, NOW)
        ),
    ]


def test_totals_match_per_series_progress() -> None:
    items = _inputs()

    stats = aggregate(items)

    assert stats.tracked_series == 4
    assert stats.missing_metadata == 1
    assert stats.series_watched == 2
    assert stats.episodes_watched == sum(
        item.progress.watched_count for item in items if item.progress
    )
    assert stats.episodes_watched == 4
    assert stats.seasons_watched == 3
    assert stats.runtime_minutes == 150
    assert stats.unknown_runtime_episodes == 1


def test_watch_time_units() -> None:
    stats = aggregate(_inputs())

    assert stats.watch_time(WatchTimeUnit.MINUTES) == 150
    assert stats.watch_time(WatchTimeUnit.HOURS) == 2.5
    assert stats.watch_time(WatchTimeUnit.SECONDS) == pytest.approx(9000)
    assert stats.watch_time("days") == pytest.approx(150 / 1440)


def test_watched_only_skips_series_without_progress() -> None:
    stats = aggregate(_inputs(), watched_only=True)

    assert stats.tracked_series == 2
    assert stats.missing_metadata == 0


def test_group_by_watched_year() -> None:
    stats = aggregate(_inputs(), group_by=GroupBy.YEAR)

    assert set(stats.groups) == {"2023", "2024"}
    assert stats.groups["2023"].episodes_watched == 1
    assert stats.groups["2024"].episodes_watched == 3
    assert sum(group.episodes_watched for group in stats.groups.values()) == (
        stats.episodes_watched
    )


def test_group_by_genre_counts_each_genre() -> None:
    stats = aggregate(_inputs(), group_by=GroupBy.GENRE)

    assert stats.groups["drama"].episodes_watched == 4
    assert stats.groups["comedy"].episodes_watched == 1
    assert stats.groups["drama"].to_payload()["series"] == 2


def test_group_by_series_and_category() -> None:
    by_series = aggregate(_inputs(), group_by=GroupBy.SERIES)
    by_category = aggregate(_inputs(), group_by=GroupBy.CATEGORY)

    assert by_series.groups["1"].label == "Drama Show"
    assert by_series.groups["1"].runtime_minutes == 120
    assert by_series.groups["1"].unknown_runtime_episodes == 1
    assert by_category.groups["ended"].episodes_watched == 1
    assert by_category.groups["running"].to_payload()["seasons"] == 2


@pytest.mark.anyio("asyncio")
async def test_service_collects_from_store(tmp_path) -> None:
    async with open_store(tmp_path) as store:
        await store.put_series(build_record("1"))
        await store.put_series(build_record("2", status=SeriesStatus.ENDED))
        await store.track_series("1")
        await store.track_series("2")
        await store.track_series("3")
        await store.set_season_watched("1", 1, True)
        await store.set_watched("2", 1, 1, True)

        service = StatisticsService(store)
        stats = await service.collect(now=NOW)
        ended = await service.collect(now=NOW, category=Category.ENDED)

    assert stats.tracked_series == 3
    assert stats.missing_metadata == 1
    assert stats.episodes_watched == 4
    assert stats.runtime_minutes == 120
    assert ended.tracked_series == 1
    assert ended.episodes_watched == 1
    assert stats.to_payload()["watch_time_hours"] == 2.0
