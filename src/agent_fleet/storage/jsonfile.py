"""JSON document helpers with atomic replace and advisory locking."""

from __future__ import annotations

import contextlib
import json
import os
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from filelock import FileLock


class CorruptDocumentError(ValueError):
    """Stored document exists but cannot be decoded as expected."""


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def read_json_mapping(path: Path) -> dict[str, Any]:
    """Read a JSON object; missing file is an empty mapping.

    Raises ``CorruptDocumentError`` when the file is not UTF-8 JSON or its top
    level is not an object.
    """

    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except UnicodeDecodeError as error:
        raise CorruptDocumentError(f"Undecodable bytes in {path}: {error}") from error
    if not raw.strip():
        raise CorruptDocumentError(f"Empty JSON document: {path}")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise CorruptDocumentError(f"Invalid JSON in {path}: {error}") from error
    if not isinstance(payload, dict):
        raise CorruptDocumentError(
            f"Expected JSON object in {path}, got {type(payload).__name__}",
        )
    return payload


def write_json_atomic(path: Path, data: Any) -> None:
    """Write to a unique temp file in the same directory, then ``os.replace``."""

    ensure_parent(path)
    payload = json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False) + "\n"
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise


@contextlib.contextmanager
def locked(path: Path, *, timeout_seconds: float) -> Iterator[None]:
    """Hold the advisory lock guarding ``path`` (``<path>.lock``).

    Raises ``filelock.Timeout`` when the lock cannot be taken in time.
    """

    ensure_parent(path)
    lock = FileLock(str(path.with_name(path.name + ".lock")), timeout=timeout_seconds)
    with lock:
        yield
