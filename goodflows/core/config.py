"""
goodflows.core.config — Configuration for the GoodFlows core services.

Supports loading from YAML, environment variables, and programmatic
construction.  Every value has a documented default so the services
run with no configuration at all.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

#: Environment variable overriding the default base directory.
BASE_DIR_ENV = "GOODFLOWS_BASE_DIR"

DEFAULT_BASE_DIR = ".goodflows/context"


@dataclass
class Config:
    """
    Central configuration object.

    Construct directly, via ``Config.from_yaml(path)``, or via
    ``Config.from_base_dir(path)`` for quick bootstrap.
    """

    # -- storage ------------------------------------------------------------
    base_dir: Path = field(
        default_factory=lambda: Path(os.environ.get(BASE_DIR_ENV, DEFAULT_BASE_DIR))
    )
    lock_timeout: float = 5.0  # seconds to wait for a store file lock

    # -- findings -----------------------------------------------------------
    similarity_threshold: float = 0.85  # find_similar default
    query_limit: int = 20  # query default page size

    # -- patterns -----------------------------------------------------------
    min_confidence: float = 0.5  # recommend default floor
    learning_rate: float = 0.1  # alpha in the confidence update rule
    pattern_history_limit: int = 20  # outcome entries kept per pattern
    seed_builtin_patterns: bool = True

    # -- queue --------------------------------------------------------------
    priority_threshold: Optional[int] = None  # None = accept all buckets
    max_retries: int = 3

    # -- sessions -----------------------------------------------------------
    session_retention_hours: float = 168.0  # terminal sessions resumable for 1 week
    max_events: int = 1000  # per-session event log cap (oldest dropped)

    # -- logging ------------------------------------------------------------
    structured_logging: bool = False
    log_level: str = "INFO"

    # -----------------------------------------------------------------------
    # Derived paths (all relative to base_dir)
    # -----------------------------------------------------------------------

    @property
    def findings_path(self) -> Path:
        return self.base_dir / "findings.json"

    @property
    def patterns_path(self) -> Path:
        return self.base_dir / "patterns.json"

    @property
    def sessions_dir(self) -> Path:
        return self.base_dir / "sessions"

    # -----------------------------------------------------------------------
    # Construction helpers
    # -----------------------------------------------------------------------

    def __post_init__(self) -> None:
        self.base_dir = Path(self.base_dir).resolve()
        if self.priority_threshold is not None and not 1 <= self.priority_threshold <= 4:
            raise ValueError(
                f"priority_threshold must be 1..4 or None, got {self.priority_threshold!r}"
            )
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {self.max_retries!r}")
        if not 0.0 < self.learning_rate <= 1.0:
            raise ValueError(f"learning_rate must be in (0, 1], got {self.learning_rate!r}")

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Config":
        """Load configuration from a YAML file.

        Keys may sit at the top level or under a ``goodflows:`` section.
        Unknown keys are silently ignored so the file can carry
        dispatcher-level settings alongside core config.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "r", encoding="utf-8") as fh:
            raw: Dict[str, Any] = yaml.safe_load(fh) or {}

        data = raw.get("goodflows", raw)

        if "base_dir" in data:
            data["base_dir"] = Path(data["base_dir"])

        known = {f.name for f in fields(cls)}
        filtered = {k: v for k, v in data.items() if k in known}

        return cls(**filtered)

    @classmethod
    def from_base_dir(cls, base_dir: str | Path, **overrides: Any) -> "Config":
        """Quick constructor — just point at a directory."""
        return cls(base_dir=Path(base_dir), **overrides)

    def ensure_directories(self) -> None:
        """Create the base and sessions directories if missing."""
        for d in (self.base_dir, self.sessions_dir):
            d.mkdir(parents=True, exist_ok=True)

    # -----------------------------------------------------------------------
    # Serialisation
    # -----------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialise to a plain dict (YAML/JSON-safe)."""
        out: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            out[f.name] = str(value) if isinstance(value, Path) else value
        return out
