"""Import orchestrator - applies a script tree to the target database stage by stage."""

import json
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Set, Tuple

from .connections.base import BaseConnection
from .connections.dry_run import DryRunConnection
from .connections.sqlserver import SqlServerConnection
from .errors import (
    ConnectionFailedError,
    ErrorKind,
    OperationFailedError,
    ScriptImportError,
)
from .executors.base import ABORTED_REASON, UnitExecutor
from .executors.fixpoint import FixpointRetryExecutor
from .executors.referential import ReferentialIntegrityCoordinator
from .models.config import FileGroupStrategy, ImportConfig, TransformContext
from .models.ledger import ExecutionLedger, ImportStatus, StageRecord
from .models.outcome import ExecutionOutcome
from .models.unit import FolderCategory, Unit, read_sql_text
from .services.catalog import Catalog, ScriptCatalogBuilder, filegroup_scripts
from .services.preflight import PreflightReport, PreflightValidator
from .services.retry_policy import RetryEventSink, TransientRetryPolicy
from .services.transformer import SqlUnitTransformer, discover_filegroups

logger = logging.getLogger(__name__)


# Stages run strictly in this order; each waits for the previous one
STAGE_ORDER = [
    FolderCategory.SECURITY,
    FolderCategory.DATABASE_CONFIG,
    FolderCategory.SCHEMA,
    FolderCategory.PROGRAMMABILITY,
    FolderCategory.SECURITY_POLICY,
    FolderCategory.DATA,
]


class ImportOrchestrator:
    """
    Orchestrates a complete import.

    Handles:
    - Catalog building and preflight checks
    - Connecting (and optionally creating the target database)
    - Stage-ordered execution with fixpoint retry for programmability
    - Foreign-key bracketing around the data load
    - Ledger, error log and JSON report
    """

    def __init__(
        self,
        config: ImportConfig,
        connection: Optional[BaseConnection] = None,
        retry_sink: Optional[RetryEventSink] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Import configuration
            connection: Connection to use instead of one built from config
            retry_sink: Receiver of retry events (defaults to logging)
            sleep: Sleep function used between retries
        """
        self.config = config
        self.connection = connection
        self.transformer = SqlUnitTransformer()
        self.preflight = PreflightValidator(self.transformer)
        self.retry_sink = retry_sink
        self._sleep = sleep

        self.ledger: Optional[ExecutionLedger] = None
        self.catalog: Optional[Catalog] = None
        self.context: Optional[TransformContext] = None

    # Setup

    def create_retry_policy(self) -> TransientRetryPolicy:
        return TransientRetryPolicy.from_settings(
            self.config.retry, sink=self.retry_sink, sleep=self._sleep
        )

    def build_catalog(self) -> Catalog:
        """Scan the source tree with the configured mode and filters."""
        builder = ScriptCatalogBuilder(
            mode=self.config.mode,
            include_types=self.config.include_object_types,
            exclude_types=self.config.exclude_object_types,
            include_schemas=self.config.include_schemas,
            exclude_schemas=self.config.exclude_schemas,
        )
        return builder.build(self.config.source_dir)

    def build_context(self, connection: Optional[BaseConnection] = None) -> TransformContext:
        """
        Create the run's transform context.

        Filegroup kinds are discovered from the FileGroups scripts even when
        the mode leaves that folder out. The default data path is probed from
        the server for autoRemap.
        """
        context = self.config.build_transform_context()

        filestream: Set[str] = set()
        memory_optimized: Set[str] = set()
        for path in filegroup_scripts(self.config.source_dir):
            found_filestream, found_memory = discover_filegroups(read_sql_text(path))
            filestream |= found_filestream
            memory_optimized |= found_memory

        data_path = None
        if connection is not None and context.file_group_strategy == FileGroupStrategy.AUTO_REMAP:
            data_path = self._probe_data_path(connection)

        return context.with_discovered(
            default_data_path=data_path,
            filestream_filegroups=frozenset(filestream),
            memory_optimized_filegroups=frozenset(memory_optimized),
        )

    def _probe_data_path(self, connection: BaseConnection) -> Optional[str]:
        try:
            path = self.create_retry_policy().execute(
                connection.default_data_path, "probe default data path"
            ).value
        except OperationFailedError as e:
            logger.warning(f"Could not read the default data path: {e.error}")
            return None
        if path:
            logger.info(f"Default data path: {path}")
        else:
            logger.warning("Server reported no default data path; autoRemap leaves FILENAME unchanged")
        return path

    def _create_connection(self) -> BaseConnection:
        if self.connection is not None:
            return self.connection
        if self.config.dry_run:
            return DryRunConnection(self.config.database, self.config.command_timeout)
        return SqlServerConnection(
            server=self.config.server,
            database=self.config.database,
            driver=self.config.driver,
            username=self.config.username,
            password=self.config.resolved_password,
            trusted_connection=self.config.trusted_connection,
            encrypt=self.config.encrypt,
            trust_server_certificate=self.config.trust_server_certificate,
            connect_timeout=self.config.connect_timeout,
            command_timeout=self.config.command_timeout,
            initial_database="master" if self.config.create_database else None,
        )

    def _connect(self, connection: BaseConnection, policy: TransientRetryPolicy) -> None:
        target = self.config.server or "dry-run target"
        try:
            policy.execute(connection.connect, f"connect to {target}")
        except OperationFailedError as e:
            raise ConnectionFailedError(
                f"Cannot connect to {target}: {e.error}", {"attempts": e.attempts}
            ) from e

        if self.config.create_database and not self.config.dry_run:
            if not connection.database_exists():
                logger.info(f"Creating database {self.config.database}")
                policy.execute(connection.create_database, f"create database {self.config.database}")
            connection.use_database()

    # Run

    def run_import(self) -> ExecutionLedger:
        """
        Run the complete import.

        Returns:
            ExecutionLedger with every outcome; its exit_code is the process status
        """
        self.ledger = ExecutionLedger(name=self.config.database, dry_run=self.config.dry_run)
        self.ledger.metadata["config"] = self.config.to_dict()
        self.ledger.started_at = datetime.utcnow()
        self.ledger.status = ImportStatus.RUNNING

        connection: Optional[BaseConnection] = None
        phase = "prepare"

        try:
            logger.info("=== PREPARE ===")
            self.config.validate()
            self.catalog = self.build_catalog()
            self.ledger.skipped_folders = [str(s) for s in self.catalog.skipped_folders]
            self.ledger.metadata["catalog"] = self.catalog.counts()

            phase = "connect"
            policy = self.create_retry_policy()
            connection = self._create_connection()
            self._connect(connection, policy)

            phase = "preflight"
            self.context = self.build_context(connection)
            report = self.preflight.check(self.catalog, self.context)
            self.preflight.enforce(report, strict_secrets=self.config.strict_secrets)
            self._record_preflight(report)

            phase = "execute"
            executor = UnitExecutor(connection, self.context, policy, self.transformer)
            self._run_stages(connection, executor)

            logger.info("=== IMPORT FINISHED ===")

        except ScriptImportError as e:
            logger.error(f"Import failed during {phase}: {e.message}")
            self.ledger.record_error(e.message, e.kind, phase)

        except Exception as e:
            logger.exception(f"Import failed during {phase}: {e}")
            self.ledger.record_error(str(e), ErrorKind.STRUCTURAL_SQL, phase)

        finally:
            if connection is not None:
                connection.disconnect()
            self.ledger.finalize()
            self._write_outputs()
            for line in self.ledger.summary_lines():
                logger.info(line)

        return self.ledger

    def _record_preflight(self, report: PreflightReport) -> None:
        self.ledger.metadata["preflight"] = report.to_dict()
        for key in report.missing_secrets:
            self.ledger.warnings.append(f"No secret configured for {key}")
        for name, units in sorted(report.unresolved_variables.items()):
            self.ledger.warnings.append(f"Unresolved variable $({name}) in {len(units)} unit(s)")

    def _run_stages(self, connection: BaseConnection, executor: UnitExecutor) -> None:
        aborted = False

        for stage in STAGE_ORDER:
            units = self.catalog.by_category(stage)
            record = self.ledger.add_stage(stage)
            record.units_total = len(units)

            if not units:
                record.status = ImportStatus.SKIPPED
                continue

            if aborted:
                self._skip_units(units, record)
                record.status = ImportStatus.SKIPPED
                continue

            logger.info(f"=== STAGE: {stage.value} ({len(units)} units) ===")
            record.status = ImportStatus.RUNNING
            record.started_at = datetime.utcnow()

            try:
                if stage == FolderCategory.PROGRAMMABILITY:
                    stopped = self._run_fixpoint_stage(units, executor, record)
                elif stage == FolderCategory.DATA:
                    stopped = self._run_data_stage(units, connection, executor, record)
                else:
                    stopped = self._run_sequential_stage(units, executor, record)
            finally:
                record.completed_at = datetime.utcnow()

            if stopped:
                record.status = ImportStatus.FAILED
                aborted = True
                logger.error(f"Stage {stage.value} failed; later stages will not run")
            elif record.units_failed:
                record.status = ImportStatus.COMPLETED_WITH_ERRORS
            else:
                record.status = ImportStatus.COMPLETED

            logger.info(
                f"Stage {stage.value}: {record.units_succeeded} succeeded, "
                f"{record.units_failed} failed, {record.units_skipped} skipped"
            )

    def _recorder(self, record: StageRecord) -> Callable[[ExecutionOutcome], None]:
        def on_outcome(outcome: ExecutionOutcome) -> None:
            self.ledger.record(outcome, record)
        return on_outcome

    def _skip_units(self, units: List[Unit], record: StageRecord) -> None:
        for unit in units:
            self.ledger.record(ExecutionOutcome.skipped(unit, ABORTED_REASON), record)

    def _run_sequential_stage(self, units: List[Unit], executor: UnitExecutor, record: StageRecord) -> bool:
        """Run units in catalog order. Returns True when the stage stopped on a failure."""
        result = executor.execute_sequence(
            units,
            stop_on_failure=not self.config.continue_on_error,
            on_outcome=self._recorder(record),
        )
        self._skip_units(result.not_attempted, record)
        record.metadata = result.to_dict()
        return result.failed > 0 and not self.config.continue_on_error

    def _run_fixpoint_stage(self, units: List[Unit], executor: UnitExecutor, record: StageRecord) -> bool:
        """Run units by fixpoint rounds. Remaining failures never stop later stages."""
        fixpoint = FixpointRetryExecutor(executor, max_rounds=self.config.max_fixpoint_rounds)
        result = fixpoint.run(units, on_outcome=self._recorder(record))
        record.metadata = result.to_dict()
        if not result.converged:
            record.warnings.append(
                f"{len(result.failed)} unit(s) still failing after {result.rounds} round(s)"
            )
        return False

    def _run_data_stage(
        self,
        units: List[Unit],
        connection: BaseConnection,
        executor: UnitExecutor,
        record: StageRecord
    ) -> bool:
        """Load data with foreign keys disabled. Returns True when the load stopped on a failure."""
        coordinator = ReferentialIntegrityCoordinator(connection, executor)
        result = coordinator.load(
            units,
            continue_on_error=self.config.continue_on_error,
            on_outcome=self._recorder(record),
        )
        self._skip_units(result.not_attempted, record)
        for violation in result.violations:
            self.ledger.record_violation(violation)
        record.units_failed += len(result.violations)
        record.warnings.extend(result.warnings)
        record.metadata = result.to_dict()
        return bool(result.not_attempted)

    # Outputs

    def _write_outputs(self) -> None:
        timestamp = datetime.utcnow().strftime("%Y%m%d_%H%M%S")
        output_dir = Path(self.config.output_dir) if self.config.output_dir else None

        error_log = self.config.error_log_path
        if not error_log and output_dir is not None:
            error_log = str(output_dir / f"import_errors_{timestamp}.log")
        if error_log:
            written = self.ledger.write_error_log(error_log)
            if written:
                self.ledger.metadata["error_log"] = str(written)
                logger.info(f"Wrote error log to {written}")

        if output_dir is not None:
            self._save_report(output_dir / f"import_report_{timestamp}.json")

    def _save_report(self, filepath: Path) -> None:
        """Save the import report."""
        filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, 'w') as f:
            json.dump(self.ledger.to_dict(), f, indent=2, default=str)
        logger.info(f"Saved import report to {filepath}")

    # Operator helpers

    def plan(self) -> Catalog:
        """Build the catalog without connecting."""
        self.catalog = self.build_catalog()
        return self.catalog

    def check(self) -> Tuple[Catalog, PreflightReport]:
        """Build the catalog and run preflight without connecting."""
        self.catalog = self.build_catalog()
        self.context = self.build_context()
        report = self.preflight.check(self.catalog, self.context)
        return self.catalog, report


def stage_units(catalog: Catalog) -> List[Tuple[FolderCategory, List[Unit]]]:
    """Catalog units grouped by stage, in execution order."""
    return [(stage, catalog.by_category(stage)) for stage in STAGE_ORDER]
