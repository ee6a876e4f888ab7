"""Services for cataloguing, rewriting and retrying SQL units."""

from .catalog import Catalog, ScriptCatalogBuilder, SkippedFolder
from .preflight import PreflightReport, PreflightValidator
from .retry_policy import (
    LoggingRetrySink,
    MemoryRetrySink,
    RetryEvent,
    TransientCategory,
    TransientRetryPolicy,
    classify_error,
)
from .transformer import Batch, SqlUnitTransformer, TransformResult, split_batches

__all__ = [
    "Catalog",
    "ScriptCatalogBuilder",
    "SkippedFolder",
    "PreflightReport",
    "PreflightValidator",
    "LoggingRetrySink",
    "MemoryRetrySink",
    "RetryEvent",
    "TransientCategory",
    "TransientRetryPolicy",
    "classify_error",
    "Batch",
    "SqlUnitTransformer",
    "TransformResult",
    "split_batches",
]
