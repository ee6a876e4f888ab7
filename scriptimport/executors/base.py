"""Executes individual SQL units against the target connection."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging

from ..connections.base import BaseConnection
from ..errors import ErrorKind, OperationFailedError
from ..models.config import TransformContext
from ..models.outcome import ExecutionOutcome, OutcomeStatus
from ..models.unit import Unit
from ..services.retry_policy import TransientRetryPolicy
from ..services.transformer import SqlUnitTransformer

logger = logging.getLogger(__name__)

NO_BATCHES_REASON = "no executable batches after transformation"
ABORTED_REASON = "aborted after earlier failure"


@dataclass
class SequenceResult:
    """Result of running units one after another."""
    outcomes: List[ExecutionOutcome] = field(default_factory=list)
    not_attempted: List[Unit] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def aborted(self) -> bool:
        return bool(self.not_attempted)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.status == OutcomeStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == OutcomeStatus.FAILED)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": len(self.outcomes),
            "succeeded": self.succeeded,
            "failed": self.failed,
            "not_attempted": len(self.not_attempted),
            "duration_seconds": self.duration_seconds,
        }


class UnitExecutor:
    """
    Applies one unit: transform, split into batches, run each batch through
    the retry policy.

    Batches run in order and stop at the first failing batch. Batches already
    executed are not rolled back.
    """

    def __init__(
        self,
        connection: BaseConnection,
        context: TransformContext,
        retry_policy: Optional[TransientRetryPolicy] = None,
        transformer: Optional[SqlUnitTransformer] = None
    ):
        """
        Initialize the executor.

        Args:
            connection: Open connection to the target database
            context: Transform context of the run
            retry_policy: Policy wrapping every batch
            transformer: SQL rewriting pipeline
        """
        self.connection = connection
        self.context = context
        self.retry_policy = retry_policy or TransientRetryPolicy()
        self.transformer = transformer or SqlUnitTransformer()

    def execute(self, unit: Unit, round_number: Optional[int] = None) -> ExecutionOutcome:
        """
        Apply a single unit.

        Args:
            unit: Unit to apply
            round_number: Fixpoint round, recorded on the outcome

        Returns:
            ExecutionOutcome; never raises for SQL or transport errors
        """
        started_at = datetime.utcnow()

        try:
            text = unit.text
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"Cannot read {unit.relative_path}: {e}")
            return ExecutionOutcome.failed(
                unit,
                f"Cannot read unit file: {e}",
                ErrorKind.CONFIGURATION,
                round=round_number,
                started_at=started_at,
                completed_at=datetime.utcnow(),
            )

        result = self.transformer.transform(text, self.context, unit.name)
        warnings = tuple(result.warnings)

        if not result.executable:
            logger.info(f"Skipping {unit.name}: {NO_BATCHES_REASON}")
            return ExecutionOutcome.skipped(
                unit,
                NO_BATCHES_REASON,
                round=round_number,
                started_at=started_at,
                completed_at=datetime.utcnow(),
                warnings=warnings,
            )

        executed = 0
        attempts = 0
        total = len(result.batches)

        for index, batch in enumerate(result.batches, 1):
            for repeat in range(batch.repeat):
                description = f"{unit.name} batch {index}/{total}"
                if batch.repeat > 1:
                    description += f" (repeat {repeat + 1}/{batch.repeat})"
                try:
                    retry_result = self.retry_policy.execute(
                        self._batch_operation(batch.sql), description
                    )
                    attempts = max(attempts, retry_result.attempts)
                except OperationFailedError as e:
                    logger.error(f"Failed {unit.relative_path} at batch {index} (line {batch.line})")
                    return ExecutionOutcome.failed(
                        unit,
                        e.error,
                        e.kind,
                        attempts=max(attempts, e.attempts),
                        batches_executed=executed,
                        round=round_number,
                        started_at=started_at,
                        completed_at=datetime.utcnow(),
                        warnings=warnings,
                    )
            executed += 1

        logger.debug(f"Applied {unit.name} ({executed} batch(es))")
        return ExecutionOutcome.succeeded(
            unit,
            attempts=attempts,
            batches_executed=executed,
            round=round_number,
            started_at=started_at,
            completed_at=datetime.utcnow(),
            warnings=warnings,
        )

    def _batch_operation(self, sql: str) -> Callable[[], None]:
        def run() -> None:
            self.connection.execute_batch(sql)
        return run

    def execute_sequence(
        self,
        units: List[Unit],
        stop_on_failure: bool = True,
        on_outcome: Optional[Callable[[ExecutionOutcome], None]] = None
    ) -> SequenceResult:
        """
        Apply units in order.

        Args:
            units: Units in execution order
            stop_on_failure: Stop at the first failed unit
            on_outcome: Called with each outcome as it is produced

        Returns:
            SequenceResult; units after an abort are listed as not attempted
        """
        result = SequenceResult(started_at=datetime.utcnow())

        for position, unit in enumerate(units):
            outcome = self.execute(unit)
            result.outcomes.append(outcome)
            if on_outcome:
                on_outcome(outcome)

            if outcome.status == OutcomeStatus.FAILED and stop_on_failure:
                result.not_attempted = list(units[position + 1:])
                logger.warning(
                    f"Stopping after failure in {unit.name}; "
                    f"{len(result.not_attempted)} unit(s) not attempted"
                )
                break

        result.completed_at = datetime.utcnow()
        return result
