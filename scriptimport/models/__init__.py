"""Data models for the import engine."""

from .unit import (
    FolderCategory,
    ObjectType,
    Unit,
    classify_user_principal,
)
from .outcome import (
    ExecutionOutcome,
    IntegrityViolation,
    OutcomeStatus,
)
from .config import (
    FileGroupStrategy,
    ImportConfig,
    ImportMode,
    RetrySettings,
    TransformContext,
)
from .ledger import (
    ExecutionLedger,
    FailureEntry,
    ImportStatus,
    StageRecord,
)

__all__ = [
    "FolderCategory",
    "ObjectType",
    "Unit",
    "classify_user_principal",
    "ExecutionOutcome",
    "IntegrityViolation",
    "OutcomeStatus",
    "FileGroupStrategy",
    "ImportConfig",
    "ImportMode",
    "RetrySettings",
    "TransformContext",
    "ExecutionLedger",
    "FailureEntry",
    "ImportStatus",
    "StageRecord",
]
