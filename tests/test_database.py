from __future__ import annotations

import asyncio

from sqlalchemy import create_engine, inspect, text

from app.database import Database


def _run_create_all(database_path) -> None:
    database = Database(f"sqlite+aiosqlite:///{database_path}")

    async def runner() -> None:
        try:
            await database.create_all()
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_create_all_builds_every_table(tmp_path) -> None:
    database_path = tmp_path / "fresh.db"
    _run_create_all(database_path)

    engine = create_engine(f"sqlite:///{database_path}")
    try:
        inspector = inspect(engine)
        tables = set(inspector.get_table_names())
        series_columns = {column["name"] for column in inspector.get_columns("series")}
        tracked_columns = {
            column["name"] for column in inspector.get_columns("tracked_series")
        }
    finally:
        engine.dispose()

    assert tables == {"series", "seasons", "episodes", "watch_markers", "tracked_series"}
    assert {"episodes_fetched", "cast_members", "last_fetched_at"} <= series_columns
    assert {"category", "auto_category", "added_at"} <= tracked_columns


def test_create_all_is_idempotent_and_keeps_rows(tmp_path) -> None:
    database_path = tmp_path / "existing.db"
    _run_create_all(database_path)

    engine = create_engine(f"sqlite:///{database_path}")
    try:
        with engine.begin() as connection:
            connection.execute(
                text(
                    "INSERT INTO tracked_series (series_id, category, auto_category, added_at) "
                    "VALUES ('82', 'ended', 0, '2024-01-01 00:00:00')"
                )
            )

        _run_create_all(database_path)

        with engine.connect() as connection:
            rows = connection.execute(
                text("SELECT series_id, category FROM tracked_series")
            ).all()
    finally:
        engine.dispose()

    assert [tuple(row) for row in rows] == [("82", "ended")]
