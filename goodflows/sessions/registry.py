"""
goodflows.sessions.registry -- Thread-safe map of live session managers.

Several agents in one process can each drive their own session; the
registry hands out one ``SessionContextManager`` per session id and
loads persisted sessions on first access.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from goodflows.sessions.manager import (
    DEFAULT_MAX_EVENTS,
    DEFAULT_RETENTION_HOURS,
    SessionContextManager,
)

log = logging.getLogger("goodflows.sessions")


class SessionRegistry:
    """Thread-safe registry of session managers sharing one directory."""

    def __init__(
        self,
        sessions_dir: Path,
        max_events: int = DEFAULT_MAX_EVENTS,
        retention_hours: float = DEFAULT_RETENTION_HOURS,
        lock_timeout: float = 5.0,
    ) -> None:
        self.sessions_dir = Path(sessions_dir)
        self.max_events = max_events
        self.retention_hours = retention_hours
        self.lock_timeout = lock_timeout
        self._sessions: Dict[str, SessionContextManager] = {}
        self._lock = threading.Lock()

    def _new_manager(self) -> SessionContextManager:
        return SessionContextManager(
            self.sessions_dir,
            max_events=self.max_events,
            retention_hours=self.retention_hours,
            lock_timeout=self.lock_timeout,
        )

    def start(self, metadata: Optional[Dict[str, Any]] = None) -> SessionContextManager:
        """Create a new session and register its manager."""
        manager = self._new_manager()
        session_id = manager.start(metadata)
        with self._lock:
            self._sessions[session_id] = manager
        return manager

    def resume(self, session_id: str) -> SessionContextManager:
        """Return the cached manager, or load the session from disk.

        Raises ``NotFoundError`` when the session does not exist or is
        past retention.
        """
        with self._lock:
            cached = self._sessions.get(session_id)
        if cached is not None:
            return cached

        manager = self._new_manager()
        manager.resume(session_id)
        with self._lock:
            # another thread may have loaded it meanwhile
            return self._sessions.setdefault(session_id, manager)

    def get(self, session_id: str) -> Optional[SessionContextManager]:
        """Cached manager for *session_id*, without touching disk."""
        with self._lock:
            return self._sessions.get(session_id)

    def evict(self, session_id: str) -> Optional[SessionContextManager]:
        """Drop a manager from the cache.  The session file is kept."""
        with self._lock:
            return self._sessions.pop(session_id, None)

    def list_sessions(self) -> List[Dict[str, Any]]:
        """Summaries of the cached sessions (for diagnostics)."""
        with self._lock:
            managers = list(self._sessions.values())
        return [
            {
                "id": m.id,
                "state": m.get_state(),
                "metadata": m.get_metadata(),
                "events": len(m.get_events()),
            }
            for m in managers
        ]

    def count(self) -> int:
        """Number of cached sessions."""
        with self._lock:
            return len(self._sessions)

    def cleanup_finished(self) -> int:
        """Evict every cached session that has completed or failed.

        Returns number of sessions removed.
        """
        removed = 0
        with self._lock:
            finished = [
                sid for sid, m in self._sessions.items()
                if m.get_state() in ("completed", "failed")
            ]
            for sid in finished:
                del self._sessions[sid]
                removed += 1
        if removed:
            log.info("Evicted %d finished sessions", removed)
        return removed
