"""Preflight checks run before any unit executes."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..errors import ConfigurationError
from ..models.config import TransformContext
from .catalog import Catalog
from .transformer import SqlUnitTransformer

logger = logging.getLogger(__name__)


@dataclass
class PreflightIssue:
    """A problem found while transforming a unit ahead of execution."""
    unit: str
    message: str
    severity: str = "warning"  # "error" or "warning"

    def to_dict(self) -> Dict[str, Any]:
        return {"unit": self.unit, "message": self.message, "severity": self.severity}


@dataclass
class PreflightReport:
    """Everything preflight found across the catalog."""
    units_checked: int = 0
    missing_secrets: List[str] = field(default_factory=list)
    unresolved_variables: Dict[str, List[str]] = field(default_factory=dict)  # variable -> units
    warnings: List[PreflightIssue] = field(default_factory=list)
    empty_units: List[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not (self.missing_secrets or self.unresolved_variables or self.warnings)

    def summary_lines(self) -> List[str]:
        lines = [f"Units checked: {self.units_checked}"]
        if self.missing_secrets:
            lines.append(f"Missing secrets: {', '.join(self.missing_secrets)}")
        if self.unresolved_variables:
            lines.append(
                "Unresolved variables: "
                + ", ".join(f"$({name})" for name in sorted(self.unresolved_variables))
            )
        if self.empty_units:
            lines.append(f"Units with no executable batches: {len(self.empty_units)}")
        lines.append(f"Warnings: {len(self.warnings)}")
        return lines

    def to_dict(self) -> Dict[str, Any]:
        return {
            "units_checked": self.units_checked,
            "missing_secrets": self.missing_secrets,
            "unresolved_variables": self.unresolved_variables,
            "warnings": [w.to_dict() for w in self.warnings],
            "empty_units": self.empty_units,
        }


class PreflightValidator:
    """
    Transforms every unit without executing it.

    Collects every missing secret and unresolved variable in one pass so the
    operator can fix the configuration before the run starts.
    """

    def __init__(self, transformer: Optional[SqlUnitTransformer] = None):
        self.transformer = transformer or SqlUnitTransformer()

    def check(self, catalog: Catalog, context: TransformContext) -> PreflightReport:
        """
        Check all units of a catalog.

        Args:
            catalog: Units to check
            context: Transform context of the run

        Returns:
            PreflightReport
        """
        report = PreflightReport()

        for unit in catalog:
            report.units_checked += 1
            try:
                result = self.transformer.transform(unit.text, context, unit.name)
            except (OSError, UnicodeDecodeError) as e:
                report.warnings.append(PreflightIssue(
                    unit=unit.relative_path,
                    message=f"Cannot read unit: {e}",
                    severity="error",
                ))
                continue

            for key in result.missing_secrets:
                if key not in report.missing_secrets:
                    report.missing_secrets.append(key)
            for variable in result.unresolved_variables:
                report.unresolved_variables.setdefault(variable, []).append(unit.relative_path)
            for warning in result.warnings:
                report.warnings.append(PreflightIssue(unit=unit.relative_path, message=warning))
            if not result.executable:
                report.empty_units.append(unit.relative_path)

        logger.info(
            f"Preflight checked {report.units_checked} unit(s): "
            f"{len(report.missing_secrets)} missing secret(s), "
            f"{len(report.unresolved_variables)} unresolved variable(s)"
        )
        return report

    def enforce(self, report: PreflightReport, strict_secrets: bool = False) -> None:
        """
        Raise for problems that must stop the run.

        Raises:
            ConfigurationError: when ``strict_secrets`` is set and secrets are missing
        """
        if strict_secrets and report.missing_secrets:
            raise ConfigurationError(
                f"Missing secrets: {', '.join(report.missing_secrets)}",
                {"missing_secrets": list(report.missing_secrets)},
            )
        for key in report.missing_secrets:
            logger.warning(f"No secret configured for {key}")
