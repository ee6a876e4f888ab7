"""Executors that apply SQL units to the target database."""

from .base import SequenceResult, UnitExecutor
from .fixpoint import FixpointResult, FixpointRetryExecutor
from .referential import (
    BrokenEdge,
    DependencyGraph,
    ForeignKeyConstraint,
    ReferentialIntegrityCoordinator,
    ReferentialLoadResult,
)

__all__ = [
    "SequenceResult",
    "UnitExecutor",
    "FixpointResult",
    "FixpointRetryExecutor",
    "BrokenEdge",
    "DependencyGraph",
    "ForeignKeyConstraint",
    "ReferentialIntegrityCoordinator",
    "ReferentialLoadResult",
]
