"""Serialisation of complete store snapshots for export and import."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .errors import IncompatibleVersionError, InvalidSnapshotError
from .models import StoreSnapshot

logger = logging.getLogger(__name__)

# Bump when the snapshot layout changes in a way older builds cannot read.
SNAPSHOT_SCHEMA_VERSION = 1


def check_schema_version(version: Any) -> int:
    """Return ``version`` when this build can read it, else raise."""

    if isinstance(version, bool) or not isinstance(version, int):
        raise IncompatibleVersionError(version, SNAPSHOT_SCHEMA_VERSION)
    if version < 1 or version > SNAPSHOT_SCHEMA_VERSION:
        raise IncompatibleVersionError(version, SNAPSHOT_SCHEMA_VERSION)
    return version


def parse_snapshot(payload: Mapping[str, Any] | str | bytes) -> StoreSnapshot:
    """Validate a raw snapshot, checking its schema version before anything else."""

    if isinstance(payload, (str, bytes)):
        try:
            data = json.loads(payload)
        except ValueError as exc:
            raise InvalidSnapshotError("Snapshot is not valid JSON") from exc
    else:
        data = payload
    if not isinstance(data, Mapping):
        raise InvalidSnapshotError("Snapshot must be a JSON object")

    check_schema_version(data.get("schema_version"))

    try:
        return StoreSnapshot.model_validate(dict(data))
    except ValidationError as exc:
        raise InvalidSnapshotError(f"Snapshot failed validation: {exc}") from exc


def dump_snapshot(snapshot: StoreSnapshot, path: str | Path) -> Path:
    """Write ``snapshot`` as JSON, replacing ``path`` only once fully written."""

    target = Path(path)
    temporary = target.with_name(f".{target.name}.tmp")
    temporary.write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")
    temporary.replace(target)
    logger.info("Wrote snapshot with %d series to %s", len(snapshot.series), target)
    return target


def load_snapshot(path: str | Path) -> StoreSnapshot:
    """Read and validate a snapshot previously written by :func:`dump_snapshot`."""

    return parse_snapshot(Path(path).read_text(encoding="utf-8"))
