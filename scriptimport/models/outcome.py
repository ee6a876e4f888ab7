"""Outcome models for applied units."""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from ..errors import ErrorKind
from .unit import Unit


class OutcomeStatus(str, Enum):
    """Terminal state of a unit."""
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


_ODBC_PREFIX = re.compile(r"^(\[[^\]]*\]\s*)+")
_ODBC_TUPLE = re.compile(r"^\(\s*'[^']*'\s*,\s*['\"](.*)['\"]\s*\)$", re.DOTALL)
_ODBC_TRAILER = re.compile(r"\s*\(\d+\)\s*\(SQL\w+\)\s*$")


def innermost_message(error: str) -> str:
    """
    Reduce a driver error to the message the server produced.

    pyodbc renders errors as ``('42S02', "[42S02] [Microsoft][ODBC Driver 18 for
    SQL Server][SQL Server]Invalid object name 'dbo.X'. (208) (SQLExecDirectW)")``.
    """
    message = error.strip()
    match = _ODBC_TUPLE.match(message)
    if match:
        message = match.group(1)
    message = _ODBC_PREFIX.sub("", message)
    message = _ODBC_TRAILER.sub("", message)
    return message.strip()


def short_error(error: Optional[str], limit: int = 200) -> str:
    """First line of the innermost message, trimmed to ``limit`` characters."""
    if not error:
        return ""
    lines = innermost_message(error).splitlines()
    first = lines[0] if lines else ""
    if len(first) > limit:
        return first[:limit - 3] + "..."
    return first


@dataclass(frozen=True)
class ExecutionOutcome:
    """Result of applying one unit. Never mutated after creation."""
    unit: Unit
    status: OutcomeStatus
    reason: Optional[str] = None  # Skip reason
    error: Optional[str] = None  # Full error text
    error_kind: Optional[ErrorKind] = None
    attempts: int = 0
    batches_executed: int = 0
    round: Optional[int] = None  # Fixpoint round that settled the unit
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    warnings: tuple = field(default_factory=tuple)

    @classmethod
    def succeeded(cls, unit: Unit, **kwargs) -> "ExecutionOutcome":
        return cls(unit=unit, status=OutcomeStatus.SUCCEEDED, **kwargs)

    @classmethod
    def skipped(cls, unit: Unit, reason: str, **kwargs) -> "ExecutionOutcome":
        return cls(unit=unit, status=OutcomeStatus.SKIPPED, reason=reason, **kwargs)

    @classmethod
    def failed(
        cls,
        unit: Unit,
        error: str,
        error_kind: ErrorKind = ErrorKind.STRUCTURAL_SQL,
        **kwargs
    ) -> "ExecutionOutcome":
        return cls(unit=unit, status=OutcomeStatus.FAILED, error=error, error_kind=error_kind, **kwargs)

    @property
    def success(self) -> bool:
        return self.status == OutcomeStatus.SUCCEEDED

    @property
    def short_error(self) -> str:
        return short_error(self.error)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "unit": self.unit.relative_path,
            "folder": self.unit.folder,
            "category": self.unit.category.value,
            "status": self.status.value,
            "reason": self.reason,
            "short_error": self.short_error or None,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "attempts": self.attempts,
            "batches_executed": self.batches_executed,
            "round": self.round,
            "duration_seconds": self.duration_seconds,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class IntegrityViolation:
    """A foreign key that failed re-validation after the data load."""
    schema: str
    table: str
    constraint: str
    error: str

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.table}.{self.constraint}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema": self.schema,
            "table": self.table,
            "constraint": self.constraint,
            "short_error": short_error(self.error),
            "error": self.error,
        }
