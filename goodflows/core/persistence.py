"""
goodflows.core.persistence — Durable JSON documents on local disk.

Writes are atomic: the payload goes to ``<file>.tmp``, is fsynced, and
then replaces the live file with ``os.replace``.  A crash mid-write
leaves the previous document intact plus a stray temp file, which
``discard_stale_temp`` removes on the next load.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from goodflows.core.errors import PersistenceError
from goodflows.core.filelock import FileLock

log = logging.getLogger(__name__)


def _temp_path(path: Path) -> Path:
    return path.with_suffix(path.suffix + ".tmp")


def discard_stale_temp(path: Path) -> bool:
    """Delete a leftover ``<file>.tmp`` from an interrupted write."""
    tmp = _temp_path(Path(path))
    if not tmp.exists():
        return False
    log.warning("Discarding partially-written %s", tmp)
    try:
        tmp.unlink()
    except OSError as exc:
        raise PersistenceError(f"Cannot remove stale temp file: {exc}", str(tmp)) from exc
    return True


def atomic_write_json(path: Path, data: Dict[str, Any], lock_timeout: float = 5.0) -> None:
    """Serialise *data* and atomically replace *path* with it.

    Raises ``PersistenceError`` on any I/O, lock or serialisation
    failure; the live file is untouched in that case.
    """
    path = Path(path)
    tmp = _temp_path(path)
    try:
        payload = json.dumps(data, indent=2, ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise PersistenceError(f"Document is not JSON-serialisable: {exc}", str(path)) from exc

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with FileLock(path, timeout=lock_timeout):
            with open(tmp, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, path)
    except (OSError, TimeoutError) as exc:
        try:
            tmp.unlink()
        except OSError:
            pass
        raise PersistenceError(f"Failed to write {path.name}: {exc}", str(path)) from exc


def read_json(path: Path) -> Optional[Dict[str, Any]]:
    """Load a JSON document, or ``None`` if it does not exist.

    A document that fails to parse is moved aside to ``<file>.corrupt``
    (so it can be inspected) and ``None`` is returned; the caller then
    starts from an empty store.
    """
    path = Path(path)
    discard_stale_temp(path)
    if not path.exists():
        return None
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PersistenceError(f"Failed to read {path.name}: {exc}", str(path)) from exc
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        quarantine = path.with_suffix(path.suffix + ".corrupt")
        try:
            os.replace(path, quarantine)
        except OSError as exc:
            raise PersistenceError(
                f"Cannot move corrupt {path.name} aside: {exc}", str(path)
            ) from exc
        log.warning("Corrupt store file %s moved to %s", path, quarantine, exc_info=True)
        return None
    if not isinstance(data, dict):
        raise PersistenceError(f"{path.name} does not hold a JSON object", str(path))
    return data
