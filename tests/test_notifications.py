from __future__ import annotations

from datetime import timedelta

import pytest

from app.models import Category
from app.services.notifications import NotificationFeed, UpcomingEpisode
from helpers import NOW, build_episode, build_record, open_store


def _upcoming_record(series_id: str, days_ahead: float):
    return build_record(
        series_id,
        name=f"Show {series_id}",
        episodes=[
            build_episode(1, 1),
            build_episode(1, 2, aired_days_ago=-days_ahead),
            build_episode(1, 3, aired_days_ago=-(days_ahead + 7)),
        ],
    )


@pytest.mark.anyio("asyncio")
async def test_rebuild_lists_next_airing_episode_per_series(tmp_path) -> None:
    async with open_store(tmp_path) as store:
        await store.put_series(_upcoming_record("1", 5))
        await store.put_series(_upcoming_record("2", 2))
        await store.put_series(_upcoming_record("3", 1))
        await store.track_series("1")
        await store.track_series("2")
        await store.track_series("3", Category.UNTRACKED)

        feed = NotificationFeed(store, clock=lambda: NOW)
        assert await feed.rebuild() is True
        upcoming = feed.upcoming()

    assert [(entry.series_id, entry.season, entry.number) for entry in upcoming] == [
        ("2", 1, 2),
        ("1", 1, 2),
    ]
    assert upcoming[0].to_payload()["series_name"] == "Show 2"


@pytest.mark.anyio("asyncio")
async def test_store_changes_push_updates_to_subscribers(tmp_path) -> None:
    received: list[list[UpcomingEpisode]] = []

    async def subscriber(entries: list[UpcomingEpisode]) -> None:
        received.append(entries)

    async with open_store(tmp_path) as store:
        feed = NotificationFeed(store, clock=lambda: NOW)
        feed.attach()
        feed.subscribe(subscriber)

        await store.put_series(_upcoming_record("1", 3))
        assert received == []

        await store.track_series("1")
        assert [entry.number for entry in received[-1]] == [2]

        # Watching the upcoming episode early moves the feed to the next one.
        await store.set_watched("1", 1, 2, True)
        assert [entry.number for entry in received[-1]] == [3]

        await store.untrack_series("1")
        assert received[-1] == []

        feed.detach()
        await store.track_series("1")

    assert len(received) == 3


@pytest.mark.anyio("asyncio")
async def test_feed_advances_once_the_next_episode_airs(tmp_path) -> None:
    clock = [NOW]
    record = build_record(
        "1",
        episodes=[
            build_episode(1, 1, aired_days_ago=-1 / 24),
            build_episode(1, 2, aired_days_ago=-8),
        ],
    )
    async with open_store(tmp_path) as store:
        await store.put_series(record)
        await store.track_series("1")
        feed = NotificationFeed(store, clock=lambda: clock[0])
        await feed.rebuild()

        assert [(entry.season, entry.number) for entry in feed.upcoming()] == [(1, 1)]

        clock[0] = NOW + timedelta(hours=2)
        assert [(entry.season, entry.number) for entry in feed.upcoming()] == [(1, 2)]

        clock[0] = NOW + timedelta(days=9)
        assert feed.upcoming() == []
