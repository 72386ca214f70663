"""JSON state files with atomic replace-on-write."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from taskflow.errors import StoreError, StoreErrorKind


def read_json(path: Path) -> Any | None:
    """Return the decoded document, or None if the file does not exist.

    Raises:
        StoreError: PERSISTENCE_FAILURE if the file can't be read or decoded.
    """

    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise StoreError(
            StoreErrorKind.PERSISTENCE_FAILURE, f"Failed to read state file {path}: {e}"
        ) from e


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON to ``path`` via a sibling temp file and ``os.replace``.

    A crash mid-write leaves the previous file intact.
    """

    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(json.dumps(data, indent=2, ensure_ascii=False) + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError as e:
        raise StoreError(
            StoreErrorKind.PERSISTENCE_FAILURE, f"Failed to write state file {path}: {e}"
        ) from e
