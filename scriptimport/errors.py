"""Error hierarchy for the import engine."""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    """Failure classes reported to the operator."""
    TRANSIENT_INFRASTRUCTURE = "transient_infrastructure"
    STRUCTURAL_SQL = "structural_sql_error"
    REFERENTIAL_INTEGRITY = "referential_integrity_violation"
    CONFIGURATION = "configuration_error"


class ScriptImportError(Exception):
    """Base class for all import engine exceptions."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.STRUCTURAL_SQL,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.details = details or {}


class ConfigurationError(ScriptImportError):
    """Raised before any unit executes when the run cannot be set up."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorKind.CONFIGURATION, details)


class EmptyCatalogError(ConfigurationError):
    """Raised when filtering leaves no units to apply."""

    def __init__(self, source_dir: str, skipped_folders: Optional[List[str]] = None):
        super().__init__(
            f"No SQL units to apply under {source_dir}",
            {"source_dir": source_dir, "skipped_folders": skipped_folders or []},
        )


class OperationFailedError(ScriptImportError):
    """
    Raised by the retry policy once an operation is terminally failed.

    The driver exception is chained as ``__cause__``.
    """

    def __init__(
        self,
        description: str,
        category: "Any",
        attempts: int,
        error: str,
        delays: Optional[List[float]] = None
    ):
        kind = (
            ErrorKind.STRUCTURAL_SQL
            if getattr(category, "value", category) == "non_transient"
            else ErrorKind.TRANSIENT_INFRASTRUCTURE
        )
        super().__init__(
            f"{description} failed after {attempts} attempt(s): {error}",
            kind,
            {"category": getattr(category, "value", category), "attempts": attempts},
        )
        self.description = description
        self.category = category
        self.attempts = attempts
        self.error = error
        self.delays = list(delays or [])


class ConnectionFailedError(ScriptImportError):
    """Raised when the target server cannot be reached."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorKind.TRANSIENT_INFRASTRUCTURE, details)
