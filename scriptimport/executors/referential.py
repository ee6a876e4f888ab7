"""Foreign-key bracketing and dependency ordering for data loads."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
import logging

from ..connections.base import BaseConnection
from ..errors import OperationFailedError
from ..models.outcome import ExecutionOutcome, IntegrityViolation, OutcomeStatus
from ..models.unit import Unit
from ..services.retry_policy import TransientRetryPolicy
from ..services.transformer import quote_identifier
from .base import UnitExecutor

logger = logging.getLogger(__name__)


FOREIGN_KEYS_QUERY = """
SELECT s.name, t.name, fk.name, rs.name, rt.name, fk.is_disabled
FROM sys.foreign_keys AS fk
JOIN sys.tables AS t ON fk.parent_object_id = t.object_id
JOIN sys.schemas AS s ON t.schema_id = s.schema_id
JOIN sys.tables AS rt ON fk.referenced_object_id = rt.object_id
JOIN sys.schemas AS rs ON rt.schema_id = rs.schema_id
ORDER BY s.name, t.name, fk.name
"""


@dataclass(frozen=True)
class ForeignKeyConstraint:
    """A foreign key as read from the target database."""
    schema: str
    table: str
    name: str
    referenced_schema: str
    referenced_table: str
    is_disabled: bool = False

    @property
    def table_key(self) -> str:
        return f"{self.schema}.{self.table}".lower()

    @property
    def referenced_key(self) -> str:
        return f"{self.referenced_schema}.{self.referenced_table}".lower()

    @property
    def qualified_table(self) -> str:
        return f"{quote_identifier(self.schema)}.{quote_identifier(self.table)}"

    def disable_sql(self) -> str:
        return f"ALTER TABLE {self.qualified_table} NOCHECK CONSTRAINT {quote_identifier(self.name)}"

    def enable_sql(self) -> str:
        return f"ALTER TABLE {self.qualified_table} WITH CHECK CHECK CONSTRAINT {quote_identifier(self.name)}"

    @classmethod
    def from_row(cls, row) -> "ForeignKeyConstraint":
        return cls(
            schema=row[0],
            table=row[1],
            name=row[2],
            referenced_schema=row[3],
            referenced_table=row[4],
            is_disabled=bool(row[5]),
        )


@dataclass(frozen=True)
class BrokenEdge:
    """A dependency dropped to break a cycle: ``before`` may load after ``after``."""
    before: str
    after: str

    def __str__(self) -> str:
        return f"{self.before} -> {self.after}"


class DependencyGraph:
    """
    Load-order graph over data units.

    Nodes are table keys; an edge ``A -> B`` means A loads before B because
    B references A. Cycles are tolerated: the topological sort breaks back
    edges and reports them.
    """

    def __init__(self):
        self.nodes: List[str] = []
        self._dependencies: Dict[str, List[str]] = {}

    def add_node(self, node: str) -> None:
        if node not in self._dependencies:
            self.nodes.append(node)
            self._dependencies[node] = []

    def add_edge(self, before: str, after: str) -> None:
        """Record that ``before`` must load before ``after``."""
        if before == after or before not in self._dependencies or after not in self._dependencies:
            return
        if before not in self._dependencies[after]:
            self._dependencies[after].append(before)

    def dependencies(self, node: str) -> List[str]:
        return list(self._dependencies.get(node, []))

    def topological_order(self) -> Tuple[List[str], List[BrokenEdge]]:
        """
        Depth-first topological sort; referenced tables come first.

        Returns:
            (ordered nodes, edges broken to resolve cycles)
        """
        visiting, done = 1, 2
        position = {node: i for i, node in enumerate(self.nodes)}
        state: Dict[str, int] = {}
        order: List[str] = []
        broken: List[BrokenEdge] = []

        for start in self.nodes:
            if start in state:
                continue
            state[start] = visiting
            stack = [(start, iter(sorted(self._dependencies[start], key=position.get)))]

            while stack:
                node, remaining = stack[-1]
                descended = False
                for dependency in remaining:
                    current = state.get(dependency)
                    if current is None:
                        state[dependency] = visiting
                        deps = sorted(self._dependencies[dependency], key=position.get)
                        stack.append((dependency, iter(deps)))
                        descended = True
                        break
                    if current == visiting:
                        broken.append(BrokenEdge(before=dependency, after=node))
                if not descended:
                    stack.pop()
                    state[node] = done
                    order.append(node)

        return order, broken


@dataclass
class ReferentialLoadResult:
    """Result of a bracketed data load."""
    outcomes: List[ExecutionOutcome] = field(default_factory=list)
    not_attempted: List[Unit] = field(default_factory=list)
    disabled_count: int = 0
    reenabled_count: int = 0
    violations: List[IntegrityViolation] = field(default_factory=list)
    broken_edges: List[BrokenEdge] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loaded": sum(1 for o in self.outcomes if o.status == OutcomeStatus.SUCCEEDED),
            "failed": sum(1 for o in self.outcomes if o.status == OutcomeStatus.FAILED),
            "not_attempted": len(self.not_attempted),
            "constraints_disabled": self.disabled_count,
            "constraints_reenabled": self.reenabled_count,
            "integrity_violations": [v.to_dict() for v in self.violations],
            "broken_edges": [str(e) for e in self.broken_edges],
            "warnings": self.warnings,
        }


class ReferentialIntegrityCoordinator:
    """
    Loads data units with foreign keys disabled.

    Disables every enabled foreign key, loads data in dependency order, and
    re-validates every disabled constraint afterwards, whatever happened in
    between. A constraint that fails re-validation is reported as an
    integrity violation.
    """

    def __init__(
        self,
        connection: BaseConnection,
        executor: UnitExecutor,
        retry_policy: Optional[TransientRetryPolicy] = None
    ):
        """
        Initialize the coordinator.

        Args:
            connection: Connection to the target database
            executor: Executor for data units
            retry_policy: Policy wrapping constraint statements
        """
        self.connection = connection
        self.executor = executor
        self.retry_policy = retry_policy or executor.retry_policy

    def fetch_constraints(self) -> List[ForeignKeyConstraint]:
        """Read every foreign key in the target database."""
        retry_result = self.retry_policy.execute(
            lambda: self.connection.query(FOREIGN_KEYS_QUERY), "fetch foreign keys"
        )
        return [ForeignKeyConstraint.from_row(row) for row in retry_result.value]

    def disable(
        self,
        constraints: List[ForeignKeyConstraint],
        warnings: List[str]
    ) -> List[ForeignKeyConstraint]:
        """
        Disable enabled constraints.

        Returns:
            Constraints actually disabled; failures are added to ``warnings``
        """
        disabled = []
        for constraint in constraints:
            if constraint.is_disabled:
                continue
            try:
                self.retry_policy.execute(
                    self._statement(constraint.disable_sql()), f"disable {constraint.name}"
                )
                disabled.append(constraint)
            except OperationFailedError as e:
                message = f"Could not disable {constraint.table_key}.{constraint.name}: {e.error}"
                warnings.append(message)
                logger.warning(message)
        logger.info(f"Disabled {len(disabled)} foreign key constraint(s)")
        return disabled

    def enable(self, constraints: List[ForeignKeyConstraint]) -> Tuple[int, List[IntegrityViolation]]:
        """
        Re-enable constraints with validation of existing rows.

        Returns:
            (number re-enabled, violations)
        """
        enabled = 0
        violations = []
        for constraint in constraints:
            try:
                self.retry_policy.execute(
                    self._statement(constraint.enable_sql()), f"re-enable {constraint.name}"
                )
                enabled += 1
            except OperationFailedError as e:
                violation = IntegrityViolation(
                    schema=constraint.schema,
                    table=constraint.table,
                    constraint=constraint.name,
                    error=e.error,
                )
                violations.append(violation)
                logger.error(f"Referential integrity violation on {violation.qualified_name}: {e.error}")
        logger.info(f"Re-enabled {enabled} foreign key constraint(s), {len(violations)} violation(s)")
        return enabled, violations

    def _statement(self, sql: str) -> Callable[[], None]:
        def run() -> None:
            self.connection.execute_batch(sql)
        return run

    def build_graph(self, units: List[Unit], constraints: List[ForeignKeyConstraint]) -> DependencyGraph:
        """Build the load-order graph for data units from live constraints."""
        graph = DependencyGraph()
        for unit in units:
            graph.add_node(self._node(unit))
        for constraint in constraints:
            graph.add_edge(constraint.referenced_key, constraint.table_key)
        return graph

    @staticmethod
    def _node(unit: Unit) -> str:
        return unit.table_key or unit.relative_path.lower()

    def order(
        self,
        units: List[Unit],
        constraints: List[ForeignKeyConstraint]
    ) -> Tuple[List[Unit], List[BrokenEdge]]:
        """
        Order data units so referenced tables load first.

        Returns:
            (ordered units, edges broken to resolve cycles)
        """
        graph = self.build_graph(units, constraints)
        node_order, broken = graph.topological_order()

        by_node: Dict[str, List[Unit]] = {}
        for unit in units:
            by_node.setdefault(self._node(unit), []).append(unit)

        ordered = [unit for node in node_order for unit in by_node[node]]
        return ordered, broken

    def load(
        self,
        units: List[Unit],
        continue_on_error: bool = False,
        on_outcome: Optional[Callable[[ExecutionOutcome], None]] = None
    ) -> ReferentialLoadResult:
        """
        Disable constraints, load data units in dependency order, re-enable.

        Args:
            units: Data units in catalog order
            continue_on_error: Keep loading after a failed unit
            on_outcome: Called with each unit outcome

        Returns:
            ReferentialLoadResult
        """
        result = ReferentialLoadResult(started_at=datetime.utcnow())

        try:
            constraints = self.fetch_constraints()
        except OperationFailedError as e:
            constraints = []
            message = f"Could not read foreign keys, loading without bracketing: {e.error}"
            result.warnings.append(message)
            logger.warning(message)

        ordered, result.broken_edges = self.order(units, constraints)
        for edge in result.broken_edges:
            message = f"Dependency cycle: {edge.before} may load after {edge.after}"
            result.warnings.append(message)
            logger.warning(message)

        disabled: List[ForeignKeyConstraint] = []
        try:
            disabled = self.disable(constraints, result.warnings)
            result.disabled_count = len(disabled)

            sequence = self.executor.execute_sequence(
                ordered, stop_on_failure=not continue_on_error, on_outcome=on_outcome
            )
            result.outcomes = sequence.outcomes
            result.not_attempted = sequence.not_attempted
        finally:
            result.reenabled_count, result.violations = self.enable(disabled)
            result.completed_at = datetime.utcnow()

        return result
