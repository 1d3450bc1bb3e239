"""
goodflows.core.filelock — Advisory sidecar lock for store files.

Each persisted JSON document (``findings.json``, ``patterns.json``,
``sessions/<id>.json``) is written under a ``<file>.lock`` sidecar so
two writers never interleave their temp-file/replace cycles.  The lock
file is created with ``O_CREAT | O_EXCL``, which is atomic on POSIX and
Windows alike.

Usage::

    with FileLock(path):
        tmp.write_text(payload)
        os.replace(tmp, path)
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from types import TracebackType
from typing import Optional, Type

log = logging.getLogger(__name__)


class FileLock:
    """Exclusive advisory lock on ``path`` via ``path.lock``.

    Parameters
    ----------
    path : Path
        The store file to protect.
    timeout : float
        Seconds to wait before giving up with ``TimeoutError``.
    poll : float
        Seconds between acquisition attempts.
    stale_after : float | None
        Age in seconds beyond which an existing lock file is assumed to
        belong to a crashed writer and is broken.  Defaults to twice
        the timeout.
    """

    def __init__(
        self,
        path: Path,
        timeout: float = 5.0,
        poll: float = 0.02,
        stale_after: Optional[float] = None,
    ) -> None:
        self.lock_path = Path(str(path) + ".lock")
        self.timeout = timeout
        self.poll = poll
        self.stale_after = stale_after if stale_after is not None else timeout * 2
        self._fd: Optional[int] = None

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        self.release()

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """Block until the lock is held or *timeout* expires."""
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                self._fd = os.open(
                    str(self.lock_path),
                    os.O_CREAT | os.O_EXCL | os.O_WRONLY,
                )
                os.write(self._fd, str(os.getpid()).encode("ascii"))
                return
            except FileExistsError:
                if self._break_if_stale():
                    continue
                if time.monotonic() >= deadline:
                    raise TimeoutError(
                        f"Could not acquire {self.lock_path} within {self.timeout}s"
                    )
                time.sleep(self.poll)

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            os.close(self._fd)
        except OSError:
            log.debug("Closing lock fd failed for %s", self.lock_path, exc_info=True)
        self._fd = None
        try:
            os.unlink(str(self.lock_path))
        except FileNotFoundError:
            pass

    def _break_if_stale(self) -> bool:
        try:
            age = time.time() - os.path.getmtime(str(self.lock_path))
        except OSError:
            # Vanished between open() and stat(); retry immediately.
            return True
        if age <= self.stale_after:
            return False
        log.warning("Breaking stale lock (%.1fs old): %s", age, self.lock_path)
        try:
            os.unlink(str(self.lock_path))
        except OSError:
            return False
        return True
