"""goodflows.core — Configuration, error types, shared data types and persistence."""

from goodflows.core.config import Config
from goodflows.core.errors import (
    ConflictError,
    GoodFlowsError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from goodflows.core.types import (
    Checkpoint,
    Finding,
    Pattern,
    Session,
    WorkUnit,
    finding_hash,
    generate_id,
    normalize_path,
    now_iso,
)

__all__ = [
    "Config",
    "GoodFlowsError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "InvalidStateError",
    "PersistenceError",
    "Checkpoint",
    "Finding",
    "Pattern",
    "Session",
    "WorkUnit",
    "finding_hash",
    "generate_id",
    "normalize_path",
    "now_iso",
]
