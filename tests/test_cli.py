"""Tests for the command line interface."""

import json

import pytest

from conftest import write_tree
from scriptimport.cli import build_parser, config_overrides, main


class TestParser:
    """Tests for argument parsing."""

    def test_flags_map_to_config_keys(self):
        args = build_parser().parse_args([
            "import", "--source-dir", "export", "--database", "Db",
            "--include-types", "Table, View", "--var", "Env=dev", "--retry-attempts", "4",
        ])
        overrides = config_overrides(args)

        assert overrides["include_object_types"] == ["Table", "View"]
        assert overrides["variables"] == {"Env": "dev"}
        assert overrides["retry"] == {"max_attempts": 4, "initial_delay": None}
        assert overrides["dry_run"] is None

    def test_plan_has_no_connection_flags(self):
        args = build_parser().parse_args(["plan", "--source-dir", "export"])
        overrides = config_overrides(args)

        assert "server" not in overrides


class TestCommands:
    """Tests for the plan, check and import commands."""

    def test_no_command(self, capsys):
        assert main([]) == 1

    def test_plan(self, source_tree, capsys):
        exit_code = main(["plan", "--source-dir", str(source_tree), "--database", "TestDb"])
        out = capsys.readouterr().out

        assert exit_code == 0
        assert "Schema (3 units)" in out
        assert "  20_Data/dbo.Customers.data.sql  [TableData]" in out
        assert "  - 99_Notes (unrecognised)" in out

    def test_plan_json(self, source_tree, capsys):
        exit_code = main(["plan", "--source-dir", str(source_tree), "--mode", "Prod", "--json"])
        data = json.loads(capsys.readouterr().out)

        assert exit_code == 0
        assert data["mode"] == "Prod"
        assert data["total_units"] == 12

    def test_check_reports_unresolved(self, source_tree, capsys):
        write_tree(source_tree, {"02_Schemas/Audit.sql": "CREATE SCHEMA [$(AuditSchema)];\nGO\n"})

        exit_code = main(["check", "--source-dir", str(source_tree), "--database", "TestDb"])
        out = capsys.readouterr().out

        assert exit_code == 0
        assert "$(AuditSchema): 02_Schemas/Audit.sql" in out

    def test_check_with_variable(self, source_tree, capsys):
        write_tree(source_tree, {"02_Schemas/Audit.sql": "CREATE SCHEMA [$(AuditSchema)];\nGO\n"})

        main(["check", "--source-dir", str(source_tree), "--database", "TestDb", "--var", "AuditSchema=Audit"])

        assert "Unresolved variables" not in capsys.readouterr().out

    def test_dry_run_import(self, source_tree, tmp_path, capsys):
        exit_code = main([
            "import", "--source-dir", str(source_tree), "--database", "TestDb",
            "--dry-run", "--output-dir", str(tmp_path / "out"),
        ])
        out = capsys.readouterr().out

        assert exit_code == 0
        assert "IMPORT COMPLETE (dry run)" in out
        assert "Succeeded: 10" in out
        assert list((tmp_path / "out").glob("import_report_*.json"))

    def test_import_reports_configuration_failure(self, tmp_path, capsys):
        exit_code = main(["import", "--source-dir", str(tmp_path / "missing"), "--database", "Db", "--dry-run"])
        out = capsys.readouterr().out

        assert exit_code == 1
        assert "[configuration_error]" in out

    @pytest.mark.parametrize("argv", [
        ["plan", "--source-dir", "x", "--mode", "Staging"],
        ["plan", "--source-dir", "x", "--var", "missing-equals"],
        ["plan", "--config", "does-not-exist.yaml"],
    ])
    def test_configuration_errors_exit_1(self, argv):
        assert main(argv) == 1
