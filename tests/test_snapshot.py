from __future__ import annotations

from datetime import datetime

import pytest

from app.errors import IncompatibleVersionError, InvalidSnapshotError
from app.models import StoreSnapshot, TrackedSeriesEntry
from app.snapshot import SNAPSHOT_SCHEMA_VERSION, dump_snapshot, load_snapshot, parse_snapshot
from helpers import build_record


def _snapshot() -> StoreSnapshot:
    return StoreSnapshot(
        schema_version=SNAPSHOT_SCHEMA_VERSION,
        exported_at=datetime(2024, 6, 1),
        series=[build_record("1")],
        tracked=[TrackedSeriesEntry(series_id="1", added_at=datetime(2024, 5, 1))],
    )


def test_dump_and_load_file(tmp_path) -> None:
    path = dump_snapshot(_snapshot(), tmp_path / "backup.json")

    assert load_snapshot(path) == _snapshot()
    assert not (tmp_path / ".backup.json.tmp").exists()


@pytest.mark.parametrize("version", [None, "1", True, 0, SNAPSHOT_SCHEMA_VERSION + 1])
def test_unsupported_versions_rejected(version) -> None:
    payload = _snapshot().model_dump(mode="json")
    payload["schema_version"] = version

    with pytest.raises(IncompatibleVersionError):
        parse_snapshot(payload)


def test_structural_errors_rejected() -> None:
    with pytest.raises(InvalidSnapshotError):
        parse_snapshot("[1, 2]")
    with pytest.raises(InvalidSnapshotError):
        parse_snapshot({"schema_version": 1, "series": "nope"})
