"""Round-based retry for units whose mutual order is unknown."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging

from ..errors import ConfigurationError
from ..models.outcome import ExecutionOutcome, OutcomeStatus
from ..models.unit import Unit
from .base import UnitExecutor

logger = logging.getLogger(__name__)


@dataclass
class FixpointResult:
    """Final outcomes of a fixpoint run."""
    outcomes: List[ExecutionOutcome] = field(default_factory=list)
    rounds: int = 0
    successes_per_round: List[int] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def converged(self) -> bool:
        return all(o.status != OutcomeStatus.FAILED for o in self.outcomes)

    @property
    def failed(self) -> List[ExecutionOutcome]:
        return [o for o in self.outcomes if o.status == OutcomeStatus.FAILED]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rounds": self.rounds,
            "successes_per_round": self.successes_per_round,
            "converged": self.converged,
            "failed": len(self.failed),
        }


class FixpointRetryExecutor:
    """
    Applies a set of units by repeated rounds until no further progress.

    Each round attempts every pending unit once. Successes leave the pending
    set for good; failures keep their latest error. The run stops when
    nothing is pending, when ``max_rounds`` is reached, or when a round
    produces no success. Units still pending are terminal failures.
    """

    def __init__(self, executor: UnitExecutor, max_rounds: int = 10):
        """
        Initialize the fixpoint executor.

        Args:
            executor: Executor for single units
            max_rounds: Upper bound on rounds
        """
        if max_rounds < 1:
            raise ConfigurationError(f"max_rounds must be at least 1, got {max_rounds}")
        self.executor = executor
        self.max_rounds = max_rounds

    def run(
        self,
        units: List[Unit],
        on_outcome: Optional[Callable[[ExecutionOutcome], None]] = None
    ) -> FixpointResult:
        """
        Run rounds until the fixpoint.

        Args:
            units: Units in catalog order
            on_outcome: Called once per unit with its final outcome

        Returns:
            FixpointResult with one final outcome per unit
        """
        result = FixpointResult(started_at=datetime.utcnow())
        pending: List[Unit] = list(units)
        settled: Dict[Unit, ExecutionOutcome] = {}
        last_failure: Dict[Unit, ExecutionOutcome] = {}

        round_number = 0
        while pending and round_number < self.max_rounds:
            round_number += 1
            successes = 0
            still_pending: List[Unit] = []

            for unit in pending:
                outcome = self.executor.execute(unit, round_number=round_number)
                if outcome.status == OutcomeStatus.FAILED:
                    last_failure[unit] = outcome
                    still_pending.append(unit)
                    continue

                settled[unit] = outcome
                last_failure.pop(unit, None)
                if outcome.status == OutcomeStatus.SUCCEEDED:
                    successes += 1
                if on_outcome:
                    on_outcome(outcome)

            result.successes_per_round.append(successes)
            logger.info(
                f"Fixpoint round {round_number}: {successes} succeeded, "
                f"{len(still_pending)} pending"
            )
            pending = still_pending

            if successes == 0:
                break

        result.rounds = round_number

        for unit in pending:
            outcome = last_failure[unit]
            settled[unit] = outcome
            logger.error(f"{unit.name} still failing after {round_number} round(s): {outcome.short_error}")
            if on_outcome:
                on_outcome(outcome)

        result.outcomes = [settled[u] for u in units]
        result.completed_at = datetime.utcnow()
        return result
