"""
goodflows.sessions.manager — Shared state for one agent work session.

A session holds a nested context tree addressed by dot paths, a
bounded event log, named checkpoints, and work units that group the
files, issues and findings touched by one piece of work.  Every
mutation is written through to ``sessions/<id>.json``; if the write
fails the in-memory session is restored to its previous state.

Lifecycle::

    active --complete()--> completed
       \\------fail()-----> failed

Terminal sessions stay readable but reject every mutation.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from goodflows.core.errors import InvalidStateError, NotFoundError, ValidationError
from goodflows.core.persistence import atomic_write_json, read_json
from goodflows.core.types import (
    FILE_ACTIONS,
    ISSUE_ACTIONS,
    Checkpoint,
    Session,
    WorkUnit,
    generate_id,
    now_iso,
    parse_iso,
)
from goodflows.sessions.tree import ABSENT, get_path, set_path

log = logging.getLogger("goodflows.sessions")

DEFAULT_MAX_EVENTS = 1000
DEFAULT_RETENTION_HOURS = 168.0


def new_session_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    return f"session_{stamp}_{uuid.uuid4().hex[:8]}"


def _duration(start: str, end: Optional[str] = None) -> float:
    finish = parse_iso(end) if end else datetime.now(timezone.utc)
    return round((finish - parse_iso(start)).total_seconds(), 3)


def summarize_tracked(
    files: List[Dict[str, Any]],
    issues: List[Dict[str, Any]],
    findings: List[Dict[str, Any]],
) -> Dict[str, int]:
    """Count tracked entries by action."""
    counts: Dict[str, int] = {}
    for action in FILE_ACTIONS:
        counts[f"files_{action}"] = sum(1 for f in files if f["action"] == action)
    counts["files_total"] = len(files)
    for action in ISSUE_ACTIONS:
        counts[f"issues_{action}"] = sum(1 for i in issues if i["action"] == action)
    counts["findings_tracked"] = len(findings)
    return counts


def _fingerprint(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=repr)


def _require_str(name: str, value: Any) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} must be a non-empty string", [f"{name}={value!r}"])


def _require_mapping(name: str, value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(f"{name} must be a mapping", [f"{name}={value!r}"])
    return value


class SessionContextManager:
    """Context tree, event log and work tracking for one session.

    A manager starts unbound; ``start`` creates a new session and
    ``resume`` loads an existing one.  Every other operation needs a
    bound session and raises ``InvalidStateError`` otherwise.

    Parameters
    ----------
    sessions_dir : Path
        Directory holding one ``<session id>.json`` per session.
    max_events : int
        Size of the event log; the oldest events are dropped first.
    retention_hours : float
        How long a completed or failed session stays resumable.
    lock_timeout : float
        Seconds to wait for the session file lock when writing.
    """

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
        self._lock = threading.RLock()
        self._session: Optional[Session] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def id(self) -> Optional[str]:
        return self._session.id if self._session else None

    @property
    def path(self) -> Optional[Path]:
        return self._file_for(self._session.id) if self._session else None

    def start(self, metadata: Optional[Dict[str, Any]] = None) -> str:
        """Create and persist a new active session; returns its id."""
        metadata = _require_mapping("metadata", metadata)
        with self._lock:
            if self._session is not None:
                raise InvalidStateError(
                    "Manager is already bound to a session", {"session_id": self._session.id}
                )
            session = Session(id=new_session_id(), metadata=copy.deepcopy(metadata))
            self._append_event(session, "session_started", {"metadata": session.metadata})
            self._write(session)
            self._session = session
        log.info("Session started: %s", session.id)
        return session.id

    def resume(self, session_id: str) -> str:
        """Load a persisted session into this manager.

        Raises ``NotFoundError`` if no file exists for *session_id*, or
        if the session is terminal and finished more than
        ``retention_hours`` ago.
        """
        _require_str("session_id", session_id)
        path = self._file_for(session_id)
        data = read_json(path)
        if data is None:
            raise NotFoundError("Session", session_id)
        session = Session.from_dict(data)
        if session.is_terminal and session.completed_at:
            expires = parse_iso(session.completed_at) + timedelta(hours=self.retention_hours)
            if expires < datetime.now(timezone.utc):
                log.info("Session %s is past retention", session_id)
                raise NotFoundError("Session", session_id)
        with self._lock:
            self._session = session
        log.info("Session resumed: %s (%s)", session.id, session.state)
        return session.id

    def complete(self, summary: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Finish the session and store its summary.

        The session becomes ``failed`` when ``summary["success"]`` is
        ``False`` or ``summary["status"] == "failed"``, ``completed``
        otherwise.  An open work unit is closed first.  The stored
        summary merges the derived tracking counts with *summary* and
        reports context paths written with conflicting values since the
        last checkpoint.
        """
        summary = _require_mapping("summary", summary)
        failed = summary.get("success") is False or summary.get("status") == "failed"
        return self._finish("failed" if failed else "completed", summary)

    def fail(self, error: Any) -> Dict[str, Any]:
        """Finish the session as ``failed`` with *error* as the reason."""
        reason = str(error)
        return self._finish("failed", {"success": False, "error": reason}, reason)

    # ------------------------------------------------------------------
    # Context tree
    # ------------------------------------------------------------------

    def get(self, path: str, default: Any = ABSENT) -> Any:
        with self._lock:
            value = get_path(self._bound().context, path, ABSENT)
            if value is ABSENT:
                return default
            return copy.deepcopy(value)

    def has(self, path: str) -> bool:
        with self._lock:
            return get_path(self._bound().context, path) is not ABSENT

    def set(self, path: str, value: Any) -> None:
        """Write *value* at *path*, creating intermediate mappings."""
        with self._mutation() as session:
            self._assign(session, path, copy.deepcopy(value))

    def append(self, path: str, value: Any) -> List[Any]:
        """Append *value* to the list at *path* (created if missing)."""
        with self._mutation() as session:
            current = get_path(session.context, path)
            if current is ABSENT:
                current = []
            elif not isinstance(current, list):
                raise ValidationError(f"Context value at {path!r} is not a list")
            updated = current + [copy.deepcopy(value)]
            self._assign(session, path, updated)
            return copy.deepcopy(updated)

    def merge(self, path: str, values: Dict[str, Any]) -> Dict[str, Any]:
        """Shallow-merge *values* into the mapping at *path*."""
        if not isinstance(values, dict):
            raise ValidationError("merge values must be a mapping", [f"values={values!r}"])
        with self._mutation() as session:
            current = get_path(session.context, path)
            if current is ABSENT:
                current = {}
            elif not isinstance(current, dict):
                raise ValidationError(f"Context value at {path!r} is not a mapping")
            updated = {**current, **copy.deepcopy(values)}
            self._assign(session, path, updated)
            return copy.deepcopy(updated)

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def checkpoint(self, name: str = "") -> str:
        """Snapshot the context tree and counters; returns ``chk_<n>``."""
        with self._mutation() as session:
            session.checkpoint_seq += 1
            chk = Checkpoint(
                id=f"chk_{session.checkpoint_seq}",
                name=name or f"checkpoint {session.checkpoint_seq}",
                context=copy.deepcopy(session.context),
                stats=dict(session.stats),
            )
            session.checkpoints.append(chk)
            session.writes = {}
            self._append_event(session, "checkpoint_created", {"id": chk.id, "name": chk.name})
        log.debug("Checkpoint %s in %s", chk.id, session.id)
        return chk.id

    def rollback(self, checkpoint_id: str) -> Dict[str, Any]:
        """Restore context and counters from a checkpoint.

        Later checkpoints are kept, so rolling forward again is
        possible.
        """
        with self._mutation() as session:
            chk = next((c for c in session.checkpoints if c.id == checkpoint_id), None)
            if chk is None:
                raise NotFoundError("Checkpoint", checkpoint_id)
            session.context = copy.deepcopy(chk.context)
            session.stats.update(chk.stats)
            session.writes = {}
            self._append_event(session, "rollback", {"checkpoint_id": chk.id})
            log.info("Session %s rolled back to %s", session.id, chk.id)
            return {"checkpoint_id": chk.id, "name": chk.name, "created_at": chk.created_at}

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def track_file(
        self,
        path: str,
        action: str = "modified",
        meta: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return self.track_files([path], action, meta)[0]

    def track_files(
        self,
        paths: List[str],
        action: str = "modified",
        meta: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        if action not in FILE_ACTIONS:
            raise ValidationError(f"Unknown file action {action!r}", [f"allowed={list(FILE_ACTIONS)}"])
        meta = _require_mapping("meta", meta)
        if isinstance(paths, str):
            raise ValidationError("paths must be a list of strings", [f"paths={paths!r}"])
        for p in paths:
            _require_str("path", p)
        entries = [{"path": p, "action": action, **copy.deepcopy(meta)} for p in paths]
        with self._mutation() as session:
            for entry in entries:
                self._track(session, "files", "file_tracked", entry)
                session.stats["files_tracked"] += 1
        return copy.deepcopy(entries)

    def track_issue(
        self,
        issue_id: str,
        action: str = "created",
        meta: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return self.track_issues([issue_id], action, meta)[0]

    def track_issues(
        self,
        issue_ids: List[str],
        action: str = "created",
        meta: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        if action not in ISSUE_ACTIONS:
            raise ValidationError(f"Unknown issue action {action!r}", [f"allowed={list(ISSUE_ACTIONS)}"])
        meta = _require_mapping("meta", meta)
        if isinstance(issue_ids, str):
            raise ValidationError("issue_ids must be a list of strings", [f"issue_ids={issue_ids!r}"])
        for issue_id in issue_ids:
            _require_str("issue_id", issue_id)
        entries = [{"id": i, "action": action, **copy.deepcopy(meta)} for i in issue_ids]
        with self._mutation() as session:
            for entry in entries:
                self._track(session, "issues", "issue_tracked", entry)
                if action == "created":
                    session.stats["issues_created"] += 1
                elif action == "fixed":
                    session.stats["issues_fixed"] += 1
        return copy.deepcopy(entries)

    def track_finding(self, finding: Dict[str, Any]) -> Dict[str, Any]:
        return self.track_findings([finding])[0]

    def track_findings(self, findings: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        for finding in findings:
            if not isinstance(finding, dict):
                raise ValidationError("finding must be a mapping", [f"finding={finding!r}"])
        entries = [copy.deepcopy(f) for f in findings]
        with self._mutation() as session:
            for entry in entries:
                self._track(session, "findings", "finding_tracked", entry)
                session.stats["findings_processed"] += 1
        return copy.deepcopy(entries)

    # ------------------------------------------------------------------
    # Work units
    # ------------------------------------------------------------------

    def start_work(self, type: str, meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Open a work unit, closing any unit still open (marked implicit)."""
        _require_str("type", type)
        meta = _require_mapping("meta", meta)
        with self._mutation() as session:
            if session.current_work is not None:
                self._close_work(session, {"implicit": True})
            unit = WorkUnit(type=type, metadata=copy.deepcopy(meta))
            session.current_work = unit
            self._append_event(session, "work_started", {"work_id": unit.id, "type": type})
            log.debug("Work unit %s (%s) started in %s", unit.id, type, session.id)
            return unit.to_dict()

    def complete_work(self, result: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Close the open work unit and return its summary."""
        result = _require_mapping("result", result)
        with self._mutation() as session:
            if session.current_work is None:
                raise InvalidStateError("No work unit in progress", {"session_id": session.id})
            return copy.deepcopy(self._close_work(session, result))

    # ------------------------------------------------------------------
    # Agent invocations
    # ------------------------------------------------------------------

    def record_invocation(
        self,
        agent: str,
        input: Any = None,
        parent: Optional[str] = None,
    ) -> str:
        """Record that *agent* was called (by *parent*, if any); returns ``inv_<id>``."""
        _require_str("agent", agent)
        if parent is not None:
            _require_str("parent", parent)
        invocation = {
            "id": f"inv_{generate_id()}",
            "agent": agent,
            "parent": parent,
            "input": copy.deepcopy(input),
            "status": "running",
            "result": None,
            "started_at": now_iso(),
            "completed_at": None,
        }
        with self._mutation() as session:
            session.invocations.append(invocation)
            session.stats["agents_invoked"] += 1
            self._append_event(
                session,
                "agent_invoked",
                {"agent": agent, "invocation_id": invocation["id"], "parent": parent},
            )
        log.debug("Agent %s invoked in %s (%s)", agent, session.id, invocation["id"])
        return invocation["id"]

    def record_invocation_result(
        self,
        invocation_id: str,
        result: Any = None,
        status: str = "success",
    ) -> Dict[str, Any]:
        """Close a running invocation with *result* and a final *status*.

        Raises ``NotFoundError`` for an unknown id and
        ``InvalidStateError`` if the invocation already has a result.
        """
        _require_str("invocation_id", invocation_id)
        _require_str("status", status)
        if status == "running":
            raise ValidationError("status must be a final status", [f"status={status!r}"])
        with self._mutation() as session:
            invocation = next((i for i in session.invocations if i["id"] == invocation_id), None)
            if invocation is None:
                raise NotFoundError("Invocation", invocation_id)
            if invocation["status"] != "running":
                raise InvalidStateError(
                    "Invocation already finished",
                    {"invocation_id": invocation_id, "status": invocation["status"]},
                )
            invocation["status"] = status
            invocation["result"] = copy.deepcopy(result)
            invocation["completed_at"] = now_iso()
            self._append_event(
                session,
                "agent_completed",
                {"agent": invocation["agent"], "invocation_id": invocation_id, "status": status},
            )
            return copy.deepcopy(invocation)

    def get_invocation_chain(self) -> List[Dict[str, Any]]:
        """Every recorded invocation, in call order."""
        with self._lock:
            return copy.deepcopy(self._bound().invocations)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def add_event(self, type: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        _require_str("type", type)
        data = _require_mapping("data", data)
        with self._mutation() as session:
            event = self._append_event(session, type, copy.deepcopy(data))
            return copy.deepcopy(event)

    def record_error(
        self,
        error: Any,
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Log an error to the ``errors`` context list and the event log."""
        context = _require_mapping("context", context)
        entry = {
            "message": str(error),
            "kind": type(error).__name__ if isinstance(error, BaseException) else "error",
            "context": copy.deepcopy(context),
            "timestamp": now_iso(),
        }
        with self._mutation() as session:
            errors = get_path(session.context, "errors")
            if not isinstance(errors, list):
                errors = []
            set_path(session.context, "errors", errors + [entry])
            session.stats["errors_encountered"] += 1
            self._append_event(session, "error", entry)
        log.debug("Error recorded in %s: %s", session.id, entry["message"])
        return copy.deepcopy(entry)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_events(
        self,
        type: Optional[str] = None,
        last: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        if last is not None and (not isinstance(last, int) or isinstance(last, bool) or last < 0):
            raise ValidationError("last must be a non-negative integer", [f"last={last!r}"])
        with self._lock:
            events = self._bound().events
            if type is not None:
                events = [e for e in events if e["type"] == type]
            if last is not None:
                events = events[-last:] if last else []
            return copy.deepcopy(events)

    def get_state(self) -> str:
        with self._lock:
            return self._bound().state

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._bound().stats)

    def get_checkpoints(self) -> List[Dict[str, Any]]:
        """Checkpoint headers (without the snapshots), oldest first."""
        with self._lock:
            return [
                {"id": c.id, "name": c.name, "created_at": c.created_at}
                for c in self._bound().checkpoints
            ]

    def get_context(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._bound().context)

    def get_metadata(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._bound().metadata)

    def get_summary(self) -> Dict[str, Any]:
        """Overview of the session; ``summary`` is set once it has finished."""
        with self._lock:
            session = self._bound()
            return {
                "id": session.id,
                "state": session.state,
                "metadata": copy.deepcopy(session.metadata),
                "created_at": session.created_at,
                "updated_at": session.updated_at,
                "completed_at": session.completed_at,
                "failure_reason": session.failure_reason,
                "stats": dict(session.stats),
                "tracking": self._tracking_summary(session),
                "checkpoints": len(session.checkpoints),
                "events": len(session.events),
                "invocations": len(session.invocations),
                "summary": copy.deepcopy(session.summary),
            }

    def get_tracking_summary(self) -> Dict[str, Any]:
        """Tracked counts across session-level lists and every work unit."""
        with self._lock:
            return self._tracking_summary(self._bound())

    def get_current_work(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            unit = self._bound().current_work
            return unit.to_dict() if unit else None

    def get_completed_work(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(u.to_dict()) for u in self._bound().work_units]

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._bound().to_dict())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _bound(self) -> Session:
        if self._session is None:
            raise InvalidStateError("No session started or resumed")
        return self._session

    def _file_for(self, session_id: str) -> Path:
        if "/" in session_id or "\\" in session_id or session_id.startswith("."):
            raise ValidationError("Invalid session id", [f"session_id={session_id!r}"])
        return self.sessions_dir / f"{session_id}.json"

    @contextmanager
    def _mutation(self) -> Iterator[Session]:
        """Yield the live session; persist on success, restore on failure."""
        with self._lock:
            session = self._bound()
            if session.is_terminal:
                raise InvalidStateError(
                    f"Session is {session.state}", {"session_id": session.id}
                )
            snapshot = copy.deepcopy(session)
            try:
                yield session
                session.updated_at = now_iso()
                self._write(session)
            except Exception:
                self._session = snapshot
                raise

    def _write(self, session: Session) -> None:
        atomic_write_json(
            self._file_for(session.id), session.to_dict(), lock_timeout=self.lock_timeout
        )

    def _assign(self, session: Session, path: str, value: Any) -> None:
        set_path(session.context, path, value)
        session.writes.setdefault(path, []).append(_fingerprint(value))
        session.stats["context_writes"] += 1

    def _append_event(self, session: Session, type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        event = {"type": type, "data": data, "timestamp": now_iso()}
        session.events.append(event)
        overflow = len(session.events) - self.max_events
        if overflow > 0:
            del session.events[:overflow]
        return event

    def _track(self, session: Session, kind: str, event_type: str, entry: Dict[str, Any]) -> None:
        entry["timestamp"] = now_iso()
        unit = session.current_work
        if unit is not None:
            entry["work_id"] = unit.id
            getattr(unit, f"tracked_{kind}").append(entry)
        else:
            session.tracked[kind].append(entry)
        self._append_event(session, event_type, copy.deepcopy(entry))

    def _close_work(self, session: Session, result: Dict[str, Any]) -> Dict[str, Any]:
        unit = session.current_work
        unit.completed_at = now_iso()
        summary = summarize_tracked(unit.tracked_files, unit.tracked_issues, unit.tracked_findings)
        summary["duration_seconds"] = _duration(unit.started_at, unit.completed_at)
        summary.update(copy.deepcopy(result))
        unit.summary = summary
        session.work_units.append(unit)
        session.current_work = None
        self._append_event(session, "work_completed", {"work_id": unit.id, "summary": summary})
        log.debug("Work unit %s closed in %s", unit.id, session.id)
        return summary

    def _tracking_summary(self, session: Session) -> Dict[str, Any]:
        units = list(session.work_units)
        if session.current_work is not None:
            units.append(session.current_work)
        files = list(session.tracked["files"])
        issues = list(session.tracked["issues"])
        findings = list(session.tracked["findings"])
        for unit in units:
            files.extend(unit.tracked_files)
            issues.extend(unit.tracked_issues)
            findings.extend(unit.tracked_findings)
        counts: Dict[str, Any] = summarize_tracked(files, issues, findings)
        counts["work_units"] = len(session.work_units)
        counts["work_in_progress"] = session.current_work is not None
        return counts

    def _conflicts(self, session: Session) -> List[str]:
        return sorted(path for path, values in session.writes.items() if len(set(values)) >= 2)

    def _finish(
        self,
        state: str,
        summary: Dict[str, Any],
        failure_reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        with self._mutation() as session:
            if session.current_work is not None:
                self._close_work(session, {"implicit": True})
            session.completed_at = now_iso()
            derived = self._tracking_summary(session)
            derived.update(
                {
                    "checkpoints": len(session.checkpoints),
                    "errors": session.stats["errors_encountered"],
                    "duration_seconds": _duration(session.created_at, session.completed_at),
                }
            )
            conflicts = self._conflicts(session)
            session.summary = {
                **derived,
                **copy.deepcopy(summary),
                "_derived": derived,
                "_has_conflicts": bool(conflicts),
                "_conflicts": conflicts,
            }
            if state == "failed" and failure_reason is None:
                failure_reason = summary.get("error") or summary.get("reason")
            session.failure_reason = failure_reason
            self._append_event(session, f"session_{state}", {"conflicts": conflicts})
            session.state = state
            log.info("Session %s %s", session.id, state)
            return copy.deepcopy(session.summary)
