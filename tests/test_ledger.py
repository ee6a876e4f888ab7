"""Tests for outcomes and the execution ledger."""

import json
from pathlib import Path

import pytest

from scriptimport.errors import ErrorKind
from scriptimport.models.ledger import ExecutionLedger, ImportStatus
from scriptimport.models.outcome import (
    ExecutionOutcome,
    IntegrityViolation,
    innermost_message,
    short_error,
)
from scriptimport.models.unit import FolderCategory, ObjectType, Unit


PYODBC_ERROR = (
    "('42S02', \"[42S02] [Microsoft][ODBC Driver 18 for SQL Server][SQL Server]"
    "Invalid object name 'dbo.Missing'. (208) (SQLExecDirectW)\")"
)


def make_unit(name, folder="08_Tables_PrimaryKey", category=FolderCategory.SCHEMA):
    root = Path("/export")
    return Unit(
        path=root / folder / name,
        category=category,
        object_type=ObjectType.TABLE,
        folder=folder,
        root=root,
    )


@pytest.fixture
def ledger():
    return ExecutionLedger(name="TestDb")


class TestShortError:
    """Tests for driver message reduction."""

    def test_pyodbc_error_reduced_to_server_message(self):
        assert innermost_message(PYODBC_ERROR) == "Invalid object name 'dbo.Missing'."

    def test_first_line_only(self):
        assert short_error("first line\nsecond line") == "first line"

    def test_truncated(self):
        result = short_error("x" * 300, limit=50)
        assert len(result) == 50
        assert result.endswith("...")

    def test_empty(self):
        assert short_error(None) == ""


class TestExecutionLedger:
    """Tests for ExecutionLedger."""

    def test_counts_and_exit_code(self, ledger):
        """Test counts derive from appended outcomes."""
        stage = ledger.add_stage(FolderCategory.SCHEMA)
        ledger.record(ExecutionOutcome.succeeded(make_unit("dbo.A.sql")), stage)
        ledger.record(ExecutionOutcome.skipped(make_unit("dbo.B.sql"), "no executable batches"), stage)

        assert ledger.succeeded_count == 1
        assert ledger.skipped_count == 1
        assert ledger.failed_count == 0
        assert ledger.exit_code == 0
        assert stage.units_succeeded == 1
        assert stage.units_skipped == 1

        ledger.record(ExecutionOutcome.failed(make_unit("dbo.C.sql"), PYODBC_ERROR), stage)

        assert ledger.failed_count == 1
        assert ledger.exit_code == 1
        assert stage.units_failed == 1

    def test_outcomes_are_a_copy(self, ledger):
        ledger.record(ExecutionOutcome.succeeded(make_unit("dbo.A.sql")))
        ledger.outcomes.clear()
        assert len(ledger.outcomes) == 1

    def test_failures_cover_units_violations_and_errors(self, ledger):
        """Test every terminal failure is listed with its kind."""
        ledger.record(ExecutionOutcome.failed(make_unit("dbo.C.sql"), PYODBC_ERROR))
        ledger.record_violation(IntegrityViolation("Sales", "Orders", "FK_Orders_Customers", "conflict (547)"))
        ledger.record_error("Cannot connect", ErrorKind.TRANSIENT_INFRASTRUCTURE, "connect")

        failures = ledger.failures

        assert [f.unit_name for f in failures] == ["dbo.C.sql", "Sales.Orders.FK_Orders_Customers", "connect"]
        assert failures[0].folder == "08_Tables_PrimaryKey"
        assert failures[0].short_error == "Invalid object name 'dbo.Missing'."
        assert failures[0].full_error == PYODBC_ERROR
        assert failures[1].kind == ErrorKind.REFERENTIAL_INTEGRITY
        assert failures[2].kind == ErrorKind.TRANSIENT_INFRASTRUCTURE
        assert ledger.failed_count == 3

    @pytest.mark.parametrize("record, expected", [
        (None, ImportStatus.COMPLETED),
        ("failure", ImportStatus.COMPLETED_WITH_ERRORS),
        ("error", ImportStatus.FAILED),
    ])
    def test_finalize_status(self, ledger, record, expected):
        if record == "failure":
            ledger.record(ExecutionOutcome.failed(make_unit("dbo.C.sql"), "boom"))
        elif record == "error":
            ledger.record_error("bad config", ErrorKind.CONFIGURATION)

        ledger.finalize()

        assert ledger.status == expected
        assert ledger.completed_at is not None

    def test_summary_lines(self, ledger):
        ledger.skipped_folders = ["00_FileGroups (excluded in Dev mode)"]
        ledger.record(ExecutionOutcome.succeeded(make_unit("dbo.A.sql")))
        ledger.record_violation(IntegrityViolation("Sales", "Orders", "FK", "conflict"))
        ledger.finalize()

        lines = ledger.summary_lines()

        assert "Succeeded: 1" in lines
        assert "Failed: 1" in lines
        assert "Referential integrity violations: 1" in lines
        assert "Folders skipped by mode/filters: 00_FileGroups (excluded in Dev mode)" in lines

    def test_write_error_log(self, ledger, tmp_path):
        """Test one entry per failure with short and full error."""
        ledger.record(ExecutionOutcome.failed(make_unit("dbo.C.sql"), PYODBC_ERROR))

        path = ledger.write_error_log(str(tmp_path / "logs" / "errors.log"))
        content = path.read_text(encoding="utf-8")

        assert "1 failure(s)" in content
        assert "[1] 08_Tables_PrimaryKey/dbo.C.sql (structural_sql_error)" in content
        assert "    Invalid object name 'dbo.Missing'." in content
        assert "(SQLExecDirectW)" in content

    def test_no_error_log_without_failures(self, ledger, tmp_path):
        assert ledger.write_error_log(str(tmp_path / "errors.log")) is None
        assert not (tmp_path / "errors.log").exists()

    def test_to_dict_is_json_serialisable(self, ledger):
        stage = ledger.add_stage(FolderCategory.DATA)
        ledger.record(ExecutionOutcome.failed(make_unit("dbo.C.data.sql", "20_Data", FolderCategory.DATA), "boom"), stage)
        ledger.finalize()

        data = json.loads(json.dumps(ledger.to_dict()))

        assert data["status"] == "completed_with_errors"
        assert data["exit_code"] == 1
        assert data["stages"][0]["stage"] == "Data"
        assert data["outcomes"][0]["unit"] == "20_Data/dbo.C.data.sql"
        assert data["failures"][0]["kind"] == "structural_sql_error"
