from __future__ import annotations

from datetime import timedelta

import pytest

from app.errors import NotFoundError
from app.services.progress import compute_progress, load_progress
from helpers import NOW, build_episode, build_record, open_store


def test_progress_counts_and_next_episodes() -> None:
    """Three watched, one aired gap and one future episode."""

    record = build_record(
        episodes=[
            build_episode(1, 1, aired_days_ago=40),
            build_episode(1, 2, aired_days_ago=33),
            build_episode(1, 3, aired_days_ago=26),
            build_episode(2, 1, aired_days_ago=5, runtime=None),
            build_episode(2, 2, aired_days_ago=-2),
        ]
    )
    watched_at = NOW - timedelta(days=1)
    markers = {(1, 1): watched_at, (1, 2): watched_at, (1, 3): watched_at}

    progress = compute_progress(record, markers, NOW)

    assert progress.watched_count == 3
    assert progress.total_count == 5
    assert progress.aired_count == 4
    assert progress.unwatched_aired_count == 1
    assert progress.watched_runtime_minutes == 90
    assert progress.next_to_watch.key == (2, 1)
    assert progress.next_to_air.key == (2, 2)
    assert progress.last_watched.key == (1, 3)
    assert progress.percent_watched == 60.0
    assert progress.seasons_watched == 1
    assert [season.is_complete for season in progress.seasons] == [True, False]
    assert [item.watched_so_far for item in progress.episodes] == [1, 2, 3, 3, 3]


def test_episodes_without_air_date_only_count_in_totals() -> None:
    record = build_record(
        episodes=[
            build_episode(1, 1),
            build_episode(1, 2, aired_days_ago=None),
        ]
    )

    progress = compute_progress(record, {(1, 1): NOW}, NOW)

    assert progress.total_count == 2
    assert progress.next_to_watch is None
    assert progress.next_to_air is None
    assert progress.is_caught_up is True


def test_next_to_watch_follows_air_order() -> None:
    """A late-numbered episode that aired first is watched first."""

    record = build_record(
        episodes=[
            build_episode(1, 1, aired_days_ago=10),
            build_episode(1, 2, aired_days_ago=20),
        ]
    )

    progress = compute_progress(record, {}, NOW)

    assert progress.next_to_watch.key == (1, 2)


def test_markers_for_unknown_episodes_are_ignored() -> None:
    progress = compute_progress(build_record(), {(9, 9): NOW}, NOW)

    assert progress.watched_count == 0
    assert progress.unwatched_count == 3


def test_payload_can_omit_episode_rows() -> None:
    payload = compute_progress(build_record(), {(1, 1): NOW}, NOW).to_payload(
        include_episodes=False
    )

    assert payload["watched"] == 1
    assert payload["next_to_watch"]["label"] == "S01E02"
    assert "episodes" not in payload


@pytest.mark.anyio("asyncio")
async def test_load_progress_reads_store(tmp_path) -> None:
    async with open_store(tmp_path) as store:
        await store.put_series(build_record("1"))
        await store.set_watched("1", 1, 1, True)
        progress = await load_progress(store, "1", NOW)

        with pytest.raises(NotFoundError):
            await load_progress(store, "2", NOW)

    assert progress.watched_count == 1
