from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from app.models import (
    Category,
    Episode,
    SeriesRecord,
    SeriesStatus,
    SeriesSummary,
    StoreSnapshot,
    WatchMarker,
)


def test_series_summary_coerces_numeric_id_and_status():
    summary = SeriesSummary(id=82, name="Game of Thrones", status="Ended")

    assert summary.id == "82"
    assert summary.status is SeriesStatus.ENDED


def test_unknown_status_maps_to_undetermined():
    assert SeriesStatus.from_catalog("In Development") is SeriesStatus.TO_BE_DETERMINED
    assert SeriesStatus.from_catalog(None) is SeriesStatus.TO_BE_DETERMINED
    assert SeriesStatus.from_catalog("running") is SeriesStatus.RUNNING


def test_category_for_status():
    assert Category.for_status(SeriesStatus.ENDED) is Category.ENDED
    assert Category.for_status(SeriesStatus.RUNNING) is Category.RUNNING
    assert Category.for_status(SeriesStatus.TO_BE_DETERMINED) is Category.RUNNING
    assert Category.for_status(None) is Category.RUNNING


def test_record_sorts_episodes_and_rejects_duplicates():
    record = SeriesRecord(
        id="1",
        name="Show",
        episodes=[
            Episode(season=2, number=1),
            Episode(season=1, number=2),
            Episode(season=1, number=1),
        ],
    )
    assert [episode.key for episode in record.episodes] == [(1, 1), (1, 2), (2, 1)]
    assert record.season_numbers() == [1, 2]
    assert record.episode(1, 2) is not None
    assert record.episode(3, 1) is None

    with pytest.raises(ValidationError, match="Duplicate episode S01E01"):
        SeriesRecord(
            id="1",
            name="Show",
            episodes=[Episode(season=1, number=1), Episode(season=1, number=1)],
        )


def test_episode_airstamp_normalised_to_naive_utc():
    aware = datetime(2024, 1, 1, 2, 0, tzinfo=timezone(timedelta(hours=2)))
    episode = Episode(season=1, number=1, airstamp=aware)

    assert episode.airstamp == datetime(2024, 1, 1, 0, 0)
    assert episode.label() == "S01E01"


def test_from_summary_is_partial():
    record = SeriesRecord.from_summary(SeriesSummary(id="5", name="Partial"))

    assert record.episodes_fetched is False
    assert record.episodes == []


def test_snapshot_rejects_marker_for_unknown_episode():
    record = SeriesRecord(id="1", name="Show", episodes=[Episode(season=1, number=1)])

    with pytest.raises(ValidationError, match="unknown episode"):
        StoreSnapshot(
            schema_version=1,
            exported_at=datetime(2024, 1, 1),
            series=[record],
            watched=[
                WatchMarker(
                    series_id="1", season=1, number=2, watched_at=datetime(2024, 1, 1)
                )
            ],
        )
