"""Shared fixtures for GoodFlows tests."""

import pytest

from goodflows.core.config import Config
from goodflows.findings.store import FindingStore
from goodflows.patterns.tracker import PatternTracker
from goodflows.priority_queue import PriorityQueue
from goodflows.sessions.manager import SessionContextManager
from goodflows.sessions.registry import SessionRegistry


@pytest.fixture
def tmp_dir(tmp_path):
    """Provide a temporary directory that persists for the test."""
    return tmp_path


@pytest.fixture
def config(tmp_dir):
    """Provide a Config pointing at a temp directory."""
    cfg = Config.from_base_dir(tmp_dir / "context")
    cfg.ensure_directories()
    return cfg


@pytest.fixture
def findings(config):
    """Provide an empty FindingStore."""
    return FindingStore(config.findings_path)


@pytest.fixture
def patterns(config):
    """Provide a PatternTracker with the built-in patterns installed."""
    return PatternTracker(config.patterns_path)


@pytest.fixture
def empty_patterns(config):
    """Provide a PatternTracker with no patterns at all."""
    return PatternTracker(config.patterns_path, seed_builtins=False)


@pytest.fixture
def session(config):
    """Provide a manager bound to a freshly started session."""
    mgr = SessionContextManager(config.sessions_dir)
    mgr.start({"trigger": "test"})
    return mgr


@pytest.fixture
def registry(config):
    return SessionRegistry(config.sessions_dir)


@pytest.fixture
def queue():
    return PriorityQueue()


@pytest.fixture
def sample_finding():
    return {
        "file": "src/auth/login.py",
        "type": "critical_security",
        "description": "SQL injection in login handler",
        "line_range": [42, 48],
        "severity": "high",
    }
