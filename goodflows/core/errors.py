"""
goodflows.core.errors — Typed failures raised by the core services.

Every public operation either returns plain data or raises exactly one
of the subclasses below.  The dispatcher layer turns them into its own
response format via ``to_dict()``.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from goodflows.core.types import now_iso


class GoodFlowsError(Exception):
    """Base class: carries a stable ``code`` and a context mapping."""

    code: str = "GOODFLOWS_ERROR"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})
        self.timestamp = now_iso()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "context": dict(self.context),
            "timestamp": self.timestamp,
        }


class ValidationError(GoodFlowsError):
    """Malformed or missing required input."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        self.errors: List[str] = list(errors or [])
        super().__init__(message, {"errors": self.errors})


class NotFoundError(GoodFlowsError):
    """A referenced hash, id, checkpoint, pattern or session is absent."""

    code = "NOT_FOUND"

    def __init__(self, kind: str, key: str) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}", {"kind": kind, "key": key})


class ConflictError(GoodFlowsError):
    """Create with an id that already exists."""

    code = "CONFLICT"

    def __init__(self, kind: str, key: str) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} already exists: {key}", {"kind": kind, "key": key})


class InvalidStateError(GoodFlowsError):
    """Operation is illegal in the current state."""

    code = "INVALID_STATE"


class PersistenceError(GoodFlowsError):
    """A durable write (or read of a store file) failed."""

    code = "PERSISTENCE_ERROR"

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        self.path = path
        super().__init__(message, {"path": path})
