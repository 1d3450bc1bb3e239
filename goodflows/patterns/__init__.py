"""goodflows.patterns — Fix-pattern registry with outcome-driven confidence."""

from goodflows.patterns.builtins import BUILTIN_PATTERNS
from goodflows.patterns.tracker import (
    INITIAL_CONFIDENCE,
    LEARNED_CONFIDENCE,
    PatternTracker,
    extract_template,
)

__all__ = [
    "BUILTIN_PATTERNS",
    "INITIAL_CONFIDENCE",
    "LEARNED_CONFIDENCE",
    "PatternTracker",
    "extract_template",
]
