"""
GoodFlows -- Stateful core for an AI code-review workflow.

    from goodflows import GoodFlows

    flows = GoodFlows(base_dir=".goodflows/context")
    result = flows.findings.add_finding({"file": "src/api.py",
                                         "type": "potential_issue",
                                         "description": "Unchecked None"})
    fixes = flows.patterns.recommend("potential_issue", "Unchecked None")
"""

from goodflows.core.config import Config
from goodflows.core.errors import (
    ConflictError,
    GoodFlowsError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from goodflows.findings.store import FindingStore
from goodflows.patterns.tracker import PatternTracker
from goodflows.priority_queue import PRIORITY, PriorityQueue
from goodflows.sessions.manager import SessionContextManager
from goodflows.sessions.registry import SessionRegistry
from goodflows.sessions.tree import ABSENT
from goodflows.system import GoodFlows

__version__ = "0.1.0"

__all__ = [
    "GoodFlows",
    "Config",
    "FindingStore",
    "PatternTracker",
    "SessionContextManager",
    "SessionRegistry",
    "PriorityQueue",
    "PRIORITY",
    "ABSENT",
    "GoodFlowsError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "InvalidStateError",
    "PersistenceError",
]
