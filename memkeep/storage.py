"""Atomic JSON persistence shared by the version store and the registry."""

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import portalocker

from .exceptions import StorageError

LOCK_TIMEOUT = 5


def _lock_path(path: Path) -> Path:
    return path.with_name(path.name + ".lock")


def write_json_atomic(path: Path, data: Any) -> None:
    """Write ``data`` as JSON to ``path`` without ever exposing a partial file.

    The payload goes to ``<path>.tmp``, is flushed and fsynced, then renamed
    over the target. An exclusive lock on ``<path>.lock`` keeps other
    processes from interleaving their own replace.

    Args:
        path: Target file
        data: JSON-serializable data

    Raises:
        StorageError: If serialization, write, rename or locking fails
    """
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        payload = json.dumps(data, indent=2, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise StorageError(f"Failed to serialize {path.name}: {e}") from e

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with portalocker.Lock(str(_lock_path(path)), mode="a", timeout=LOCK_TIMEOUT):
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
    except portalocker.exceptions.LockException as e:
        raise StorageError(f"Failed to acquire lock on {path} (timeout after {LOCK_TIMEOUT}s)") from e
    except OSError as e:
        try:
            tmp_path.unlink()
        except OSError:
            pass
        raise StorageError(f"Failed to write {path}: {e}") from e


def quarantine(path: Path) -> Path:
    """Move an unreadable data file aside so the next save can't overwrite it.

    Returns:
        The new location, ``<path>.corrupt-<UTC timestamp>``

    Raises:
        StorageError: If the file can't be moved
    """
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    target = path.with_name(f"{path.name}.corrupt-{stamp}")
    try:
        os.replace(path, target)
    except OSError as e:
        raise StorageError(f"Failed to move unreadable {path} aside: {e}") from e
    return target


def read_json(path: Path) -> Optional[Any]:
    """Read JSON from ``path``.

    Returns:
        Parsed data, or None if the file is missing or empty

    Raises:
        json.JSONDecodeError: If the file is corrupt
        StorageError: If the file can't be read
    """
    if not path.exists():
        return None

    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except OSError as e:
        raise StorageError(f"Failed to read {path}: {e}") from e

    if not text.strip():
        return None
    return json.loads(text)
