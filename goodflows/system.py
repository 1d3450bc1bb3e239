"""
goodflows.system -- Top-level GoodFlows object wiring the core services.

    from goodflows import GoodFlows

    flows = GoodFlows(base_dir=".goodflows/context")
    flows.findings.add_finding({"file": "src/auth.py", "type": "critical_security",
                                "description": "Hardcoded API key"})
    session = flows.sessions.start({"trigger": "code-review"})
    queue = flows.create_queue(flows.findings.query(status="open"))

Every service handle is built once here from a single ``Config``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from goodflows.core.config import Config
from goodflows.core.logging import configure_logging
from goodflows.findings.store import FindingStore
from goodflows.patterns.tracker import PatternTracker
from goodflows.priority_queue import PriorityQueue
from goodflows.sessions.registry import SessionRegistry

log = logging.getLogger("goodflows.system")


class GoodFlows:
    """Composition root exposing ``findings``, ``patterns`` and ``sessions``.

    Parameters
    ----------
    config:
        Full ``Config`` object.  If not given, ``base_dir`` and
        ``**kwargs`` are forwarded to ``Config``.
    base_dir:
        Shortcut -- if you just want to point at a directory and go.
    **kwargs:
        Extra keyword args forwarded to ``Config()``.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        base_dir: Optional[str | Path] = None,
        **kwargs: Any,
    ) -> None:
        # -- Resolve config ------------------------------------------------
        if config is not None:
            self.config = config
        elif base_dir is not None:
            self.config = Config.from_base_dir(base_dir, **kwargs)
        else:
            self.config = Config(**kwargs)

        self.config.ensure_directories()

        if self.config.structured_logging:
            configure_logging(structured=True, level=self.config.log_level)

        # -- Persisted services --------------------------------------------
        self.findings = FindingStore(
            self.config.findings_path,
            default_limit=self.config.query_limit,
            similarity_threshold=self.config.similarity_threshold,
            lock_timeout=self.config.lock_timeout,
        )
        self.patterns = PatternTracker(
            self.config.patterns_path,
            learning_rate=self.config.learning_rate,
            history_limit=self.config.pattern_history_limit,
            seed_builtins=self.config.seed_builtin_patterns,
            lock_timeout=self.config.lock_timeout,
            min_confidence=self.config.min_confidence,
        )
        self.sessions = SessionRegistry(
            self.config.sessions_dir,
            max_events=self.config.max_events,
            retention_hours=self.config.session_retention_hours,
            lock_timeout=self.config.lock_timeout,
        )

        log.info(
            "GoodFlows initialized: base_dir=%s, findings=%d, patterns=%d",
            self.config.base_dir,
            len(self.findings),
            len(self.patterns),
        )

    def create_queue(
        self,
        findings: Optional[Iterable[Dict[str, Any]]] = None,
    ) -> PriorityQueue:
        """New process-local queue using the configured threshold and retries."""
        queue = PriorityQueue(
            priority_threshold=self.config.priority_threshold,
            max_retries=self.config.max_retries,
        )
        if findings is not None:
            queue.enqueue_all(findings)
        return queue

    def get_stats(self) -> Dict[str, Any]:
        """Statistics of the three persisted services."""
        return {
            "findings": self.findings.get_stats(),
            "patterns": self.patterns.get_stats(),
            "sessions": {
                "cached": self.sessions.count(),
                "on_disk": len(list(self.config.sessions_dir.glob("*.json"))),
            },
        }
