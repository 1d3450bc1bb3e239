"""goodflows.sessions — Per-session context trees, checkpoints and work tracking."""

from goodflows.sessions.manager import SessionContextManager, summarize_tracked
from goodflows.sessions.registry import SessionRegistry
from goodflows.sessions.tree import ABSENT

__all__ = ["ABSENT", "SessionContextManager", "SessionRegistry", "summarize_tracked"]
