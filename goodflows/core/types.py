"""
goodflows.core.types — Data types shared by the GoodFlows services.

Every structure here is a plain dataclass: no ORM, no magic,
serialisable to dict/JSON in one call.
"""

from __future__ import annotations

import hashlib
import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def generate_id() -> str:
    """12-hex-char unique identifier."""
    return uuid.uuid4().hex[:12]


def now_iso() -> str:
    """Current UTC timestamp, fixed-width so strings sort chronologically."""
    return (
        datetime.now(timezone.utc)
        .isoformat(timespec="microseconds")
        .replace("+00:00", "Z")
    )


def parse_iso(value: str) -> datetime:
    """Inverse of ``now_iso`` (also accepts offsets other than Z)."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


# ---------------------------------------------------------------------------
# Finding
# ---------------------------------------------------------------------------

FINDING_STATUSES = frozenset({"open", "in_progress", "fixed", "wont_fix"})

#: Statuses counted as closed in statistics.
CLOSED_STATUSES = frozenset({"fixed", "wont_fix"})

_WS = re.compile(r"\s+")


def normalize_path(path: str) -> str:
    """Canonical form of a file path used for hashing and indexing."""
    norm = path.strip().replace("\\", "/")
    while norm.startswith("./"):
        norm = norm[2:]
    return norm


def finding_hash(file: str, type: str, description: str) -> str:
    """Deterministic dedup key for a finding.

    SHA-256 over the canonical JSON of the normalized
    ``(file, type, description)`` triple, truncated to 16 hex chars.
    """
    normalized = json.dumps(
        {
            "file": normalize_path(file),
            "type": type.strip().lower(),
            "description": _WS.sub(" ", description.strip().lower()),
        },
        sort_keys=True,
    )
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]


@dataclass
class Finding:
    """One reported issue with its location and lifecycle status."""

    hash: str
    file: str
    type: str
    description: str
    status: str = "open"
    line_range: Optional[List[int]] = None
    severity: Optional[str] = None
    proposed_fix: Optional[str] = None
    issue_id: Optional[str] = None
    source: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = ""

    def __post_init__(self) -> None:
        if not self.updated_at:
            self.updated_at = self.created_at

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hash": self.hash,
            "file": self.file,
            "line_range": list(self.line_range) if self.line_range else None,
            "type": self.type,
            "description": self.description,
            "severity": self.severity,
            "proposed_fix": self.proposed_fix,
            "status": self.status,
            "issue_id": self.issue_id,
            "source": self.source,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Finding":
        return cls(
            hash=d["hash"],
            file=d["file"],
            type=d["type"],
            description=d["description"],
            status=d.get("status", "open"),
            line_range=d.get("line_range"),
            severity=d.get("severity"),
            proposed_fix=d.get("proposed_fix"),
            issue_id=d.get("issue_id"),
            source=d.get("source"),
            created_at=d.get("created_at", now_iso()),
            updated_at=d.get("updated_at", ""),
        )


# ---------------------------------------------------------------------------
# Pattern
# ---------------------------------------------------------------------------


@dataclass
class Pattern:
    """A reusable fix template scored by historical outcomes."""

    id: str
    type: str
    description: str = ""
    template: Optional[str] = None
    before: Optional[str] = None
    after: Optional[str] = None
    keywords: set = field(default_factory=set)
    confidence: float = 0.5
    success_count: int = 0
    failure_count: int = 0
    last_used_at: Optional[str] = None
    builtin: bool = False
    created_at: str = field(default_factory=now_iso)
    history: List[Dict[str, Any]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.keywords = {str(k).lower() for k in self.keywords}
        self.confidence = max(0.0, min(1.0, self.confidence))

    @property
    def applications(self) -> int:
        return self.success_count + self.failure_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "description": self.description,
            "template": self.template,
            "before": self.before,
            "after": self.after,
            "keywords": sorted(self.keywords),
            "confidence": round(self.confidence, 6),
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "last_used_at": self.last_used_at,
            "builtin": self.builtin,
            "created_at": self.created_at,
            "history": [dict(h) for h in self.history],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Pattern":
        return cls(
            id=d["id"],
            type=d["type"],
            description=d.get("description", ""),
            template=d.get("template"),
            before=d.get("before"),
            after=d.get("after"),
            keywords=set(d.get("keywords", [])),
            confidence=d.get("confidence", 0.5),
            success_count=d.get("success_count", 0),
            failure_count=d.get("failure_count", 0),
            last_used_at=d.get("last_used_at"),
            builtin=d.get("builtin", False),
            created_at=d.get("created_at", now_iso()),
            history=list(d.get("history", [])),
        )


# ---------------------------------------------------------------------------
# Session pieces
# ---------------------------------------------------------------------------

SESSION_STATES = frozenset({"active", "completed", "failed"})
TERMINAL_STATES = frozenset({"completed", "failed"})

FILE_ACTIONS = ("created", "modified", "deleted")
ISSUE_ACTIONS = ("created", "fixed", "skipped", "failed")


@dataclass
class Checkpoint:
    """Immutable snapshot of a session's context tree and counters."""

    id: str
    name: str
    context: Dict[str, Any]
    stats: Dict[str, int]
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "created_at": self.created_at,
            "context": self.context,
            "stats": dict(self.stats),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Checkpoint":
        return cls(
            id=d["id"],
            name=d.get("name", ""),
            context=d.get("context", {}),
            stats=d.get("stats", {}),
            created_at=d.get("created_at", now_iso()),
        )


@dataclass
class WorkUnit:
    """A sub-interval of a session grouping related tracked actions."""

    type: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"work_{generate_id()}")
    started_at: str = field(default_factory=now_iso)
    completed_at: Optional[str] = None
    tracked_files: List[Dict[str, Any]] = field(default_factory=list)
    tracked_issues: List[Dict[str, Any]] = field(default_factory=list)
    tracked_findings: List[Dict[str, Any]] = field(default_factory=list)
    summary: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "metadata": self.metadata,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "tracked_files": self.tracked_files,
            "tracked_issues": self.tracked_issues,
            "tracked_findings": self.tracked_findings,
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "WorkUnit":
        return cls(
            id=d["id"],
            type=d["type"],
            metadata=d.get("metadata", {}),
            started_at=d.get("started_at", now_iso()),
            completed_at=d.get("completed_at"),
            tracked_files=list(d.get("tracked_files", [])),
            tracked_issues=list(d.get("tracked_issues", [])),
            tracked_findings=list(d.get("tracked_findings", [])),
            summary=d.get("summary"),
        )


def default_session_stats() -> Dict[str, int]:
    """Tracking counters captured by checkpoints."""
    return {
        "context_writes": 0,
        "files_tracked": 0,
        "issues_created": 0,
        "issues_fixed": 0,
        "findings_processed": 0,
        "errors_encountered": 0,
        "agents_invoked": 0,
    }


@dataclass
class Session:
    """Full persisted state of one agent work session."""

    id: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    state: str = "active"
    context: Dict[str, Any] = field(default_factory=dict)
    checkpoints: List[Checkpoint] = field(default_factory=list)
    events: List[Dict[str, Any]] = field(default_factory=list)
    work_units: List[WorkUnit] = field(default_factory=list)
    current_work: Optional[WorkUnit] = None
    invocations: List[Dict[str, Any]] = field(default_factory=list)
    stats: Dict[str, int] = field(default_factory=default_session_stats)
    tracked: Dict[str, List[Dict[str, Any]]] = field(
        default_factory=lambda: {"files": [], "issues": [], "findings": []}
    )
    writes: Dict[str, List[str]] = field(default_factory=dict)
    summary: Optional[Dict[str, Any]] = None
    failure_reason: Optional[str] = None
    checkpoint_seq: int = 0
    created_at: str = field(default_factory=now_iso)
    updated_at: str = ""
    completed_at: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.updated_at:
            self.updated_at = self.created_at

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state,
            "metadata": self.metadata,
            "context": self.context,
            "checkpoints": [c.to_dict() for c in self.checkpoints],
            "events": self.events,
            "work_units": [w.to_dict() for w in self.work_units],
            "current_work": self.current_work.to_dict() if self.current_work else None,
            "invocations": self.invocations,
            "stats": dict(self.stats),
            "tracked": self.tracked,
            "writes": self.writes,
            "summary": self.summary,
            "failure_reason": self.failure_reason,
            "checkpoint_seq": self.checkpoint_seq,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Session":
        stats = default_session_stats()
        stats.update(d.get("stats", {}))
        tracked = {"files": [], "issues": [], "findings": []}
        tracked.update(d.get("tracked", {}))
        current = d.get("current_work")
        return cls(
            id=d["id"],
            state=d.get("state", "active"),
            metadata=d.get("metadata", {}),
            context=d.get("context", {}),
            checkpoints=[Checkpoint.from_dict(c) for c in d.get("checkpoints", [])],
            events=list(d.get("events", [])),
            work_units=[WorkUnit.from_dict(w) for w in d.get("work_units", [])],
            current_work=WorkUnit.from_dict(current) if current else None,
            invocations=list(d.get("invocations", [])),
            stats=stats,
            tracked=tracked,
            writes=d.get("writes", {}),
            summary=d.get("summary"),
            failure_reason=d.get("failure_reason"),
            checkpoint_seq=d.get("checkpoint_seq", len(d.get("checkpoints", []))),
            created_at=d.get("created_at", now_iso()),
            updated_at=d.get("updated_at", ""),
            completed_at=d.get("completed_at"),
        )
