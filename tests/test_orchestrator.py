"""End-to-end tests for ImportOrchestrator against a scripted connection."""

import json

import pytest

from conftest import END_TO_END_TREE, ORDERS_CUSTOMERS_FK, FakeConnection, write_tree
from scriptimport.executors.base import ABORTED_REASON
from scriptimport.models.config import ImportConfig, ImportMode, RetrySettings
from scriptimport.models.ledger import ImportStatus
from scriptimport.models.outcome import OutcomeStatus
from scriptimport.models.unit import FolderCategory
from scriptimport.orchestrator import STAGE_ORDER, ImportOrchestrator, stage_units
from scriptimport.services.retry_policy import MemoryRetrySink


@pytest.fixture
def output_dir(tmp_path):
    return tmp_path / "output"


@pytest.fixture
def make_config(source_tree, output_dir):
    def factory(**kwargs):
        values = {
            "source_dir": str(source_tree),
            "server": "localhost",
            "database": "TestDb",
            "output_dir": str(output_dir),
        }
        values.update(kwargs)
        return ImportConfig(**values)
    return factory


def run(config, connection, no_sleep):
    orchestrator = ImportOrchestrator(config, connection=connection, retry_sink=MemoryRetrySink(), sleep=no_sleep)
    return orchestrator.run_import()


def stage_status(ledger, stage):
    return ledger.get_stage(stage).status


class TestImportOrchestrator:
    """Tests for a complete import run."""

    def test_dev_import_succeeds(self, make_config, fake_connection, no_sleep, output_dir):
        """Test a clean Dev run applies every unit and brackets the foreign key."""
        ledger = run(make_config(), fake_connection, no_sleep)

        assert ledger.exit_code == 0
        assert ledger.status == ImportStatus.COMPLETED
        assert ledger.succeeded_count == 10
        assert ledger.failed_count == 0
        assert ledger.skipped_folders == [
            "00_FileGroups (excluded in Dev mode)",
            "19_Security (excluded in Dev mode)",
            "99_Notes (unrecognised)",
        ]
        assert [s.stage for s in ledger.stages] == STAGE_ORDER
        assert stage_status(ledger, FolderCategory.DATABASE_CONFIG) == ImportStatus.SKIPPED
        assert stage_status(ledger, FolderCategory.DATA) == ImportStatus.COMPLETED

        data_stage = ledger.get_stage(FolderCategory.DATA)
        assert data_stage.metadata["constraints_disabled"] == 1
        assert data_stage.metadata["constraints_reenabled"] == 1

        assert fake_connection.executed[0] == "CREATE ROLE [AppReader];"
        assert fake_connection.disconnect_calls == 1
        assert list(output_dir.glob("import_errors_*.log")) == []
        assert len(list(output_dir.glob("import_report_*.json"))) == 1

    def test_dev_mode_moves_tables_to_primary(self, make_config, fake_connection, no_sleep):
        run(make_config(), fake_connection, no_sleep)

        customers = fake_connection.executed_matching("CREATE TABLE [dbo].[Customers]")
        assert len(customers) == 1
        assert ") ON [PRIMARY];" in customers[0]

    def test_data_loads_in_dependency_order(self, make_config, fake_connection, no_sleep):
        run(make_config(), fake_connection, no_sleep)

        inserts = fake_connection.executed_matching("INSERT INTO")
        assert inserts == [
            "INSERT INTO [dbo].[Customers] VALUES (1);",
            "INSERT INTO [Sales].[Orders] VALUES (1, 1);",
        ]

    def test_schema_failure_aborts_later_stages(self, make_config, fake_connection, no_sleep, output_dir):
        """Test a structural failure stops the run and skips everything after it."""
        fake_connection.fail_when("CREATE TABLE [Sales].[Orders]", "Incorrect syntax near 'NOT'. (102)")

        ledger = run(make_config(), fake_connection, no_sleep)

        assert ledger.exit_code == 1
        assert ledger.status == ImportStatus.COMPLETED_WITH_ERRORS
        assert ledger.succeeded_count == 4
        assert ledger.failed_count == 1
        assert ledger.skipped_count == 5
        assert stage_status(ledger, FolderCategory.SCHEMA) == ImportStatus.FAILED
        assert stage_status(ledger, FolderCategory.PROGRAMMABILITY) == ImportStatus.SKIPPED
        assert stage_status(ledger, FolderCategory.DATA) == ImportStatus.SKIPPED

        skipped = [o for o in ledger.outcomes if o.status == OutcomeStatus.SKIPPED]
        assert all(o.reason == ABORTED_REASON for o in skipped)
        assert fake_connection.executed_matching("INSERT INTO") == []

        [failure] = ledger.failures
        assert failure.unit_name == "Sales.Orders.sql"
        assert failure.folder == "08_Tables_PrimaryKey"

        [error_log] = list(output_dir.glob("import_errors_*.log"))
        assert "Sales.Orders.sql" in error_log.read_text(encoding="utf-8")

    def test_continue_on_error_keeps_going(self, make_config, fake_connection, no_sleep):
        fake_connection.fail_when("CREATE TABLE [Sales].[Orders]", "Incorrect syntax near 'NOT'. (102)")

        ledger = run(make_config(continue_on_error=True), fake_connection, no_sleep)

        assert ledger.exit_code == 1
        assert ledger.failed_count == 1
        assert stage_status(ledger, FolderCategory.SCHEMA) == ImportStatus.COMPLETED_WITH_ERRORS
        assert stage_status(ledger, FolderCategory.DATA) == ImportStatus.COMPLETED

    def test_programmability_failure_does_not_abort(self, make_config, fake_connection, no_sleep):
        """Test a permanently broken function still lets the data load run."""
        fake_connection.fail_when("fn_OrderCount", "Incorrect syntax near 'END'. (102)")

        ledger = run(make_config(), fake_connection, no_sleep)

        assert ledger.exit_code == 1
        assert stage_status(ledger, FolderCategory.PROGRAMMABILITY) == ImportStatus.COMPLETED_WITH_ERRORS
        assert stage_status(ledger, FolderCategory.DATA) == ImportStatus.COMPLETED
        assert len(fake_connection.executed_matching("INSERT INTO")) == 2

    def test_programmability_order_resolved_by_rounds(self, make_config, fake_connection, no_sleep):
        fake_connection.require("fn_OrderCount", "CREATE VIEW [dbo].[vw_Orders]", "Invalid object name 'dbo.vw_Orders'. (208)")

        ledger = run(make_config(), fake_connection, no_sleep)

        assert ledger.exit_code == 0
        assert ledger.get_stage(FolderCategory.PROGRAMMABILITY).metadata["rounds"] == 2

    def test_integrity_violation_fails_run(self, make_config, fake_connection, no_sleep):
        fake_connection.fail_when("WITH CHECK CHECK CONSTRAINT", "conflicted with the FOREIGN KEY constraint (547)")

        ledger = run(make_config(), fake_connection, no_sleep)

        assert ledger.exit_code == 1
        assert len(ledger.integrity_violations) == 1
        assert ledger.get_stage(FolderCategory.DATA).units_failed == 1

    def test_prod_import_auto_remaps_filegroups(self, make_config, no_sleep):
        """Test Prod mode runs every stage and points files at the server data path."""
        connection = FakeConnection(data_path="/var/opt/mssql/data/")

        ledger = run(make_config(mode=ImportMode.PROD), connection, no_sleep)

        assert ledger.exit_code == 0
        assert ledger.succeeded_count == 12
        [add_file] = connection.executed_matching("ADD FILE (")
        assert "FILENAME = N'/var/opt/mssql/data/TestDb_FG_DATA.ndf'" in add_file
        assert "SIZE = 1024KB" in add_file
        assert connection.executed_matching("CREATE SECURITY POLICY")

    def test_missing_secret_fails_its_unit(self, make_config, fake_connection, no_sleep, source_tree):
        """Test a missing secret is a warning up front and a failure at execution."""
        write_tree(source_tree, {
            "01_Security/MasterKey.masterkey.sql": "CREATE MASTER KEY ENCRYPTION BY PASSWORD = 'x';\nGO\n",
        })
        fake_connection.fail_when("$(Secret:", "Incorrect syntax near '$'. (102)")

        ledger = run(make_config(), fake_connection, no_sleep)

        assert ledger.exit_code == 1
        assert "No secret configured for MasterKey" in ledger.warnings
        [failure] = ledger.failures
        assert failure.unit_name == "MasterKey.masterkey.sql"
        assert fake_connection.executed_matching("PASSWORD = 'x'") == []

    def test_strict_secrets_stop_before_execution(self, make_config, fake_connection, no_sleep, source_tree):
        """Test strict secrets turn a missing secret into a configuration failure."""
        write_tree(source_tree, {
            "01_Security/MasterKey.masterkey.sql": "CREATE MASTER KEY ENCRYPTION BY PASSWORD = 'x';\nGO\n",
        })

        ledger = run(make_config(strict_secrets=True), fake_connection, no_sleep)

        assert ledger.exit_code == 1
        assert ledger.status == ImportStatus.FAILED
        assert ledger.errors[0]["kind"] == "configuration_error"
        assert ledger.errors[0]["stage"] == "preflight"
        assert fake_connection.executed == []
        assert fake_connection.disconnect_calls == 1

    def test_secret_injected(self, make_config, fake_connection, no_sleep, source_tree, monkeypatch):
        write_tree(source_tree, {
            "01_Security/MasterKey.masterkey.sql": "CREATE MASTER KEY ENCRYPTION BY PASSWORD = 'x';\nGO\n",
        })
        monkeypatch.setenv("TEST_MASTER_KEY", "s3cret")

        ledger = run(make_config(secrets={"MasterKey": "env:TEST_MASTER_KEY"}, strict_secrets=True),
                     fake_connection, no_sleep)

        assert ledger.exit_code == 0
        assert fake_connection.executed_matching("PASSWORD = 's3cret'")

    def test_dry_run_uses_simulated_connection(self, source_tree, output_dir, no_sleep):
        config = ImportConfig(source_dir=str(source_tree), database="TestDb", dry_run=True)
        orchestrator = ImportOrchestrator(config, sleep=no_sleep)

        ledger = orchestrator.run_import()

        assert ledger.exit_code == 0
        assert ledger.dry_run
        assert ledger.succeeded_count == 10

    def test_invalid_config_never_connects(self, tmp_path, fake_connection, no_sleep):
        config = ImportConfig(source_dir=str(tmp_path / "missing"), server="localhost", database="TestDb")

        ledger = run(config, fake_connection, no_sleep)

        assert ledger.exit_code == 1
        assert ledger.errors[0]["stage"] == "prepare"
        assert ledger.errors[0]["kind"] == "configuration_error"
        assert fake_connection.connect_calls == 0

    def test_connection_failure(self, make_config, no_sleep):
        """Test an unreachable server is retried then reported."""

        class Unreachable(FakeConnection):
            def connect(self):
                self.connect_calls += 1
                raise ConnectionError("Login timeout expired")

        connection = Unreachable()
        config = make_config(retry=RetrySettings(max_attempts=2, initial_delay=1))

        ledger = run(config, connection, no_sleep)

        assert connection.connect_calls == 2
        assert ledger.errors[0]["stage"] == "connect"
        assert ledger.errors[0]["kind"] == "transient_infrastructure"
        assert ledger.status == ImportStatus.FAILED

    def test_create_database(self, make_config, no_sleep):
        class MissingDatabase(FakeConnection):
            def query(self, sql):
                if "sys.databases" in sql:
                    self.queries.append(sql)
                    return []
                return super().query(sql)

        connection = MissingDatabase()
        ledger = run(make_config(create_database=True), connection, no_sleep)

        assert ledger.exit_code == 0
        assert connection.executed[0] == "CREATE DATABASE [TestDb]"
        assert connection.executed[1] == "USE [TestDb]"


class TestOperatorHelpers:
    """Tests for plan and check."""

    def test_plan(self, make_config):
        catalog = ImportOrchestrator(make_config()).plan()
        grouped = dict(stage_units(catalog))

        assert len(catalog) == 10
        assert [u.name for u in grouped[FolderCategory.DATA]] == ["Sales.Orders.data.sql", "dbo.Customers.data.sql"]
        assert grouped[FolderCategory.SECURITY_POLICY] == []

    def test_check_reports_unresolved_variables(self, make_config, source_tree):
        write_tree(source_tree, {"02_Schemas/Audit.sql": "CREATE SCHEMA [$(AuditSchema)];\nGO\n"})

        catalog, report = ImportOrchestrator(make_config()).check()

        assert report.units_checked == len(catalog) == 11
        assert report.unresolved_variables == {"AuditSchema": ["02_Schemas/Audit.sql"]}
        assert not report.clean

    def test_check_clean_tree(self, make_config):
        _, report = ImportOrchestrator(make_config()).check()

        assert report.clean
        assert json.loads(json.dumps(report.to_dict()))["units_checked"] == 10


class TestEndToEnd:
    """A security, schema and data run over a small three-table tree."""

    def test_three_tables_one_foreign_key(self, tmp_path, no_sleep):
        source = write_tree(tmp_path / "export", END_TO_END_TREE)
        connection = FakeConnection(foreign_keys=[ORDERS_CUSTOMERS_FK])
        config = ImportConfig(source_dir=str(source), server="localhost", database="TestDb")

        ledger = run(config, connection, no_sleep)

        assert ledger.exit_code == 0
        assert ledger.succeeded_count == 7
        assert ledger.get_stage(FolderCategory.SCHEMA).units_succeeded == 4

        data_stage = ledger.get_stage(FolderCategory.DATA)
        assert data_stage.metadata["constraints_disabled"] == 1
        assert data_stage.metadata["constraints_reenabled"] == 1
        assert connection.executed_matching("INSERT INTO") == [
            "INSERT INTO [dbo].[Customers] VALUES (1)",
            "INSERT INTO [Sales].[Orders] VALUES (1, 1)",
        ]
