"""Command line interface for the script import engine."""

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from .config import load_config
from .errors import ConfigurationError
from .orchestrator import ImportOrchestrator, stage_units

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _split_list(value: Optional[str]) -> Optional[List[str]]:
    if value is None:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_variables(pairs: Optional[List[str]]) -> Optional[Dict[str, str]]:
    if not pairs:
        return None
    variables = {}
    for pair in pairs:
        if "=" not in pair:
            raise ConfigurationError(f"Variable must be NAME=VALUE, got {pair!r}")
        name, value = pair.split("=", 1)
        variables[name.strip()] = value
    return variables


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", help="Path to YAML or JSON config file")
    parser.add_argument("--source-dir", help="Root of the generated script tree")
    parser.add_argument("--database", help="Target database name")
    parser.add_argument("--mode", help="Dev or Prod")
    parser.add_argument("--include-types", help="Comma-separated object types to include")
    parser.add_argument("--exclude-types", help="Comma-separated object types to exclude")
    parser.add_argument("--include-schemas", help="Comma-separated schemas to include")
    parser.add_argument("--exclude-schemas", help="Comma-separated schemas to exclude")
    parser.add_argument("--var", action="append", metavar="NAME=VALUE", help="Substitution variable")
    parser.add_argument("--file-group-strategy", help="explicitMapping, autoRemap or removeToPrimary")
    parser.add_argument("--strip-filestream", action="store_true", default=None,
                        help="Remove FILESTREAM clauses")
    parser.add_argument("--strip-always-encrypted", action="store_true", default=None,
                        help="Remove Always Encrypted clauses")
    parser.add_argument("--convert-logins", action="store_true", default=None,
                        help="Convert login-mapped users to users without login")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    parser.add_argument("--log-file", help="Also write the log to this file")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Script Import - Apply a generated SQL script tree to SQL Server"
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Run an import
    import_parser = subparsers.add_parser("import", help="Run an import")
    _add_common_arguments(import_parser)
    import_parser.add_argument("--server", help="Target server")
    import_parser.add_argument("--username", help="SQL login")
    import_parser.add_argument("--password-env", help="Environment variable holding the password")
    import_parser.add_argument("--trusted-connection", action="store_true", default=None,
                               help="Use integrated authentication")
    import_parser.add_argument("--dry-run", action="store_true", default=None,
                               help="Simulate without changes")
    import_parser.add_argument("--continue-on-error", action="store_true", default=None,
                               help="Keep going after a failed unit")
    import_parser.add_argument("--create-database", action="store_true", default=None,
                               help="Create the database when missing")
    import_parser.add_argument("--strict-secrets", action="store_true", default=None,
                               help="Fail before executing when secrets are missing")
    import_parser.add_argument("--max-rounds", type=int, help="Fixpoint round limit")
    import_parser.add_argument("--retry-attempts", type=int, help="Attempts per batch")
    import_parser.add_argument("--retry-delay", type=float, help="Initial retry delay in seconds")
    import_parser.add_argument("--command-timeout", type=int, help="Per-batch timeout in seconds")
    import_parser.add_argument("--error-log", help="Path of the plain-text error log")
    import_parser.add_argument("--output-dir", help="Directory for the JSON report")

    # Show what would run
    plan_parser = subparsers.add_parser("plan", help="List units per stage without connecting")
    _add_common_arguments(plan_parser)
    plan_parser.add_argument("--json", action="store_true", help="Print the catalog as JSON")

    # Preflight only
    check_parser = subparsers.add_parser("check", help="Transform every unit and report problems")
    _add_common_arguments(check_parser)

    return parser


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """Configure root logging for command line use."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
    )


def config_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Map command line flags onto configuration keys."""
    overrides = {
        "source_dir": args.source_dir,
        "database": args.database,
        "mode": args.mode,
        "include_object_types": _split_list(args.include_types),
        "exclude_object_types": _split_list(args.exclude_types),
        "include_schemas": _split_list(args.include_schemas),
        "exclude_schemas": _split_list(args.exclude_schemas),
        "variables": _parse_variables(args.var),
        "file_group_strategy": args.file_group_strategy,
        "strip_filestream": args.strip_filestream,
        "strip_always_encrypted": args.strip_always_encrypted,
        "convert_logins_to_contained": args.convert_logins,
    }
    if args.command == "import":
        overrides.update({
            "server": args.server,
            "username": args.username,
            "password_env": args.password_env,
            "trusted_connection": args.trusted_connection,
            "dry_run": args.dry_run,
            "continue_on_error": args.continue_on_error,
            "create_database": args.create_database,
            "strict_secrets": args.strict_secrets,
            "max_fixpoint_rounds": args.max_rounds,
            "retry": {"max_attempts": args.retry_attempts, "initial_delay": args.retry_delay},
            "command_timeout": args.command_timeout,
            "error_log_path": args.error_log,
            "output_dir": args.output_dir,
        })
    return overrides


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI. Returns the process exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    setup_logging(args.verbose, args.log_file)

    try:
        config = load_config(args.config, config_overrides(args))
        if args.command == "import":
            return run_import(config)
        if args.command == "plan":
            return run_plan(config, as_json=args.json)
        return run_check(config)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e.message}")
        return 1


def run_import(config) -> int:
    """Run an import and print the summary."""
    orchestrator = ImportOrchestrator(config)
    ledger = orchestrator.run_import()

    print("\n" + "=" * 60)
    print("IMPORT COMPLETE" + (" (dry run)" if ledger.dry_run else ""))
    print("=" * 60)
    for line in ledger.summary_lines():
        print(line)

    failures = ledger.failures
    if failures:
        print(f"\nFailures ({len(failures)}):")
        for entry in failures:
            print(f"  [{entry.kind.value}] {entry.folder}/{entry.unit_name}: {entry.short_error}")
    if ledger.metadata.get("error_log"):
        print(f"\nError log: {ledger.metadata['error_log']}")

    return ledger.exit_code


def run_plan(config, as_json: bool = False) -> int:
    """Print the catalog grouped by stage."""
    catalog = ImportOrchestrator(config).plan()

    if as_json:
        print(json.dumps(catalog.to_dict(), indent=2))
        return 0

    print(f"\n=== Import plan for {catalog.source_dir} ({catalog.mode.value} mode) ===")
    for stage, units in stage_units(catalog):
        print(f"\n{stage.value} ({len(units)} units)")
        for unit in units:
            print(f"  {unit.relative_path}  [{unit.object_type.value}]")

    if catalog.skipped_folders:
        print("\nSkipped folders:")
        for skipped in catalog.skipped_folders:
            print(f"  - {skipped}")
    return 0


def run_check(config) -> int:
    """Run preflight and print what needs fixing."""
    catalog, report = ImportOrchestrator(config).check()

    print(f"\n=== Preflight for {catalog.source_dir} ===")
    for line in report.summary_lines():
        print(line)
    for name, units in sorted(report.unresolved_variables.items()):
        print(f"  $({name}): {', '.join(units)}")
    for issue in report.warnings:
        print(f"  [{issue.severity}] {issue.unit}: {issue.message}")

    if report.missing_secrets and config.strict_secrets:
        return 1
    return 0 if not any(i.severity == "error" for i in report.warnings) else 1


if __name__ == "__main__":
    sys.exit(main())
