"""Execution ledger: the auditable record of an import run."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
import uuid

from ..errors import ErrorKind
from .outcome import ExecutionOutcome, IntegrityViolation, OutcomeStatus, short_error
from .unit import FolderCategory


class ImportStatus(str, Enum):
    """Status of an import run or stage."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class FailureEntry:
    """One terminal failure as shown to the operator."""
    unit_name: str
    folder: str
    short_error: str
    full_error: str
    kind: ErrorKind

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unit_name": self.unit_name,
            "folder": self.folder,
            "short_error": self.short_error,
            "full_error": self.full_error,
            "kind": self.kind.value,
        }


@dataclass
class StageRecord:
    """Progress of one import stage."""
    stage: FolderCategory
    status: ImportStatus = ImportStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    units_total: int = 0
    units_succeeded: int = 0
    units_failed: int = 0
    units_skipped: int = 0
    warnings: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "stage": self.stage.value,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "units_total": self.units_total,
            "units_succeeded": self.units_succeeded,
            "units_failed": self.units_failed,
            "units_skipped": self.units_skipped,
            "warnings": self.warnings,
            "metadata": self.metadata,
        }


class ExecutionLedger:
    """
    Append-only record of every unit outcome in a run.

    Outcomes are only ever appended; the counts, the failure report and the
    process exit code are all derived from them.
    """

    def __init__(self, name: str = "", dry_run: bool = False):
        self.id = str(uuid.uuid4())
        self.name = name
        self.dry_run = dry_run
        self.status = ImportStatus.PENDING
        self.created_at = datetime.utcnow()
        self.started_at: Optional[datetime] = None
        self.completed_at: Optional[datetime] = None

        self.stages: List[StageRecord] = []
        self.skipped_folders: List[str] = []
        self.warnings: List[str] = []
        self.errors: List[Dict[str, Any]] = []  # Run-level errors (configuration, connection)
        self.metadata: Dict[str, Any] = {}

        self._outcomes: List[ExecutionOutcome] = []
        self._violations: List[IntegrityViolation] = []

    # Recording

    def add_stage(self, stage: FolderCategory) -> StageRecord:
        record = StageRecord(stage=stage)
        self.stages.append(record)
        return record

    def get_stage(self, stage: FolderCategory) -> Optional[StageRecord]:
        for record in self.stages:
            if record.stage == stage:
                return record
        return None

    def record(self, outcome: ExecutionOutcome, stage: Optional[StageRecord] = None) -> None:
        """Append a unit outcome."""
        self._outcomes.append(outcome)
        if stage is not None:
            if outcome.status == OutcomeStatus.SUCCEEDED:
                stage.units_succeeded += 1
            elif outcome.status == OutcomeStatus.FAILED:
                stage.units_failed += 1
            else:
                stage.units_skipped += 1

    def record_violation(self, violation: IntegrityViolation) -> None:
        """Append a foreign key that failed re-validation."""
        self._violations.append(violation)

    def record_error(self, error: str, kind: ErrorKind, stage: Optional[str] = None) -> None:
        """Record a run-level error that is not tied to a unit."""
        self.errors.append({
            "stage": stage,
            "kind": kind.value,
            "error": error,
            "timestamp": datetime.utcnow().isoformat(),
        })

    # Derived views

    @property
    def outcomes(self) -> List[ExecutionOutcome]:
        return list(self._outcomes)

    @property
    def integrity_violations(self) -> List[IntegrityViolation]:
        return list(self._violations)

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self._outcomes if o.status == status)

    @property
    def succeeded_count(self) -> int:
        return self.count(OutcomeStatus.SUCCEEDED)

    @property
    def skipped_count(self) -> int:
        return self.count(OutcomeStatus.SKIPPED)

    @property
    def failed_count(self) -> int:
        """Terminal failures: failed units, integrity violations and run errors."""
        return self.count(OutcomeStatus.FAILED) + len(self._violations) + len(self.errors)

    @property
    def failures(self) -> List[FailureEntry]:
        """Every terminal failure, unit failures first."""
        entries = [
            FailureEntry(
                unit_name=o.unit.name,
                folder=o.unit.folder,
                short_error=o.short_error,
                full_error=o.error or "",
                kind=o.error_kind or ErrorKind.STRUCTURAL_SQL,
            )
            for o in self._outcomes
            if o.status == OutcomeStatus.FAILED
        ]
        entries.extend(
            FailureEntry(
                unit_name=v.qualified_name,
                folder=FolderCategory.DATA.value,
                short_error=short_error(v.error),
                full_error=v.error,
                kind=ErrorKind.REFERENTIAL_INTEGRITY,
            )
            for v in self._violations
        )
        entries.extend(
            FailureEntry(
                unit_name=e.get("stage") or "import",
                folder="",
                short_error=short_error(e["error"]),
                full_error=e["error"],
                kind=ErrorKind(e["kind"]),
            )
            for e in self.errors
        )
        return entries

    @property
    def exit_code(self) -> int:
        return 1 if self.failed_count else 0

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def finalize(self) -> None:
        """Set the final run status from the recorded outcomes."""
        self.completed_at = datetime.utcnow()
        if self.errors:
            self.status = ImportStatus.FAILED
        elif self.failed_count:
            self.status = ImportStatus.COMPLETED_WITH_ERRORS
        else:
            self.status = ImportStatus.COMPLETED

    # Reporting

    def summary_lines(self) -> List[str]:
        lines = [
            f"Status: {self.status.value}",
            f"Succeeded: {self.succeeded_count}",
            f"Failed: {self.failed_count}",
            f"Skipped: {self.skipped_count}",
        ]
        if self._violations:
            lines.append(f"Referential integrity violations: {len(self._violations)}")
        if self.skipped_folders:
            lines.append(f"Folders skipped by mode/filters: {', '.join(self.skipped_folders)}")
        if self.duration_seconds is not None:
            lines.append(f"Duration: {self.duration_seconds:.2f} seconds")
        return lines

    def write_error_log(self, path: str) -> Optional[Path]:
        """
        Write one plain-text entry per terminal failure.

        Nothing is written when the run has no failures.
        """
        failures = self.failures
        if not failures:
            return None

        filepath = Path(path)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, "w", encoding="utf-8") as f:
            f.write(f"Import {self.name or self.id} - {len(failures)} failure(s)\n")
            f.write(f"Generated: {datetime.utcnow().isoformat()}\n\n")
            for i, entry in enumerate(failures, 1):
                f.write(f"[{i}] {entry.folder}/{entry.unit_name} ({entry.kind.value})\n")
                f.write(f"    {entry.short_error}\n")
                for line in entry.full_error.splitlines():
                    f.write(f"      {line}\n")
                f.write("\n")
        return filepath

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "dry_run": self.dry_run,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "succeeded": self.succeeded_count,
            "failed": self.failed_count,
            "skipped": self.skipped_count,
            "exit_code": self.exit_code,
            "stages": [s.to_dict() for s in self.stages],
            "skipped_folders": self.skipped_folders,
            "failures": [f.to_dict() for f in self.failures],
            "integrity_violations": [v.to_dict() for v in self._violations],
            "outcomes": [o.to_dict() for o in self._outcomes],
            "warnings": self.warnings,
            "errors": self.errors,
            "metadata": self.metadata,
        }
