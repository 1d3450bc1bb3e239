"""
goodflows.patterns.builtins — Fix patterns installed on first start.

These ship with higher starting confidence than user-added patterns
(0.5) because they are well-established fixes.  Once installed they
are ordinary records and learn from outcomes like any other pattern.
"""

from __future__ import annotations

from typing import Any, Dict, List

BUILTIN_PATTERNS: List[Dict[str, Any]] = [
    {
        "id": "env-var-secret",
        "type": "critical_security",
        "description": "Replace hardcoded secrets with environment variables",
        "template": 'os.environ["${SECRET_NAME}"]',
        "keywords": ["secret", "api", "key", "token", "password", "hardcoded", "credential"],
        "confidence": 0.95,
    },
    {
        "id": "input-validation",
        "type": "potential_issue",
        "description": "Add input validation before use",
        "template": "if not isinstance(${input}, ${type}):\n    raise ValueError(\"Invalid ${input}\")",
        "keywords": ["input", "validation", "validate", "unchecked", "sanitize"],
        "confidence": 0.85,
    },
    {
        "id": "null-check",
        "type": "potential_issue",
        "description": "Add null check before attribute access",
        "template": "if ${object} is not None:\n    ${object}.${attribute}",
        "keywords": ["null", "none", "undefined", "check", "missing"],
        "confidence": 0.9,
    },
    {
        "id": "async-lock",
        "type": "potential_issue",
        "description": "Wrap mutable shared state access in a lock",
        "template": "async with self._lock:\n    ${mutation}",
        "keywords": ["race", "condition", "lock", "concurrent", "shared", "state"],
        "confidence": 0.85,
    },
    {
        "id": "try-catch-async",
        "type": "potential_issue",
        "description": "Handle errors raised by awaited calls",
        "template": "try:\n    ${call}\nexcept ${error} as exc:\n    log.error(\"failed: %s\", exc)\n    raise",
        "keywords": ["async", "await", "exception", "error", "unhandled"],
        "confidence": 0.8,
    },
]
