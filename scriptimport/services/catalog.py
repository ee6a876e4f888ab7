"""Discovery and filtering of SQL units in a source tree."""

import re
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from ..errors import ConfigurationError, EmptyCatalogError
from ..models.config import ImportMode
from ..models.unit import (
    SCHEMA_BOUND_TYPES,
    SECURITY_TYPES,
    FolderCategory,
    ObjectType,
    Unit,
)

logger = logging.getLogger(__name__)


_ORDER_PREFIX = re.compile(r"^\d+[_\-\s.]*")

# Folder name (prefix stripped, lower-cased) -> (category, type, included in Dev)
FOLDER_MAP: Dict[str, Tuple[FolderCategory, Optional[ObjectType], bool]] = {
    "filegroups": (FolderCategory.DATABASE_CONFIG, ObjectType.FILE_GROUP, False),
    "databaseconfiguration": (FolderCategory.DATABASE_CONFIG, ObjectType.DATABASE_CONFIGURATION, False),
    "externaldata": (FolderCategory.DATABASE_CONFIG, ObjectType.EXTERNAL_DATA, False),
    "security": (FolderCategory.SECURITY, None, True),
    "schemas": (FolderCategory.SCHEMA, ObjectType.SCHEMA, True),
    "types": (FolderCategory.SCHEMA, ObjectType.USER_DEFINED_TYPE, True),
    "xmlschemacollections": (FolderCategory.SCHEMA, ObjectType.XML_SCHEMA_COLLECTION, True),
    "sequences": (FolderCategory.SCHEMA, ObjectType.SEQUENCE, True),
    "partitionfunctions": (FolderCategory.SCHEMA, ObjectType.PARTITION_FUNCTION, True),
    "partitionschemes": (FolderCategory.SCHEMA, ObjectType.PARTITION_SCHEME, True),
    "tables": (FolderCategory.SCHEMA, ObjectType.TABLE, True),
    "tables_primarykey": (FolderCategory.SCHEMA, ObjectType.TABLE, True),
    "tables_foreignkeys": (FolderCategory.SCHEMA, ObjectType.FOREIGN_KEY, True),
    "indexes": (FolderCategory.SCHEMA, ObjectType.INDEX, True),
    "defaults": (FolderCategory.SCHEMA, ObjectType.DEFAULT, True),
    "synonyms": (FolderCategory.SCHEMA, ObjectType.SYNONYM, True),
    "fulltextcatalogs": (FolderCategory.SCHEMA, ObjectType.FULL_TEXT_CATALOG, True),
    "programmability": (FolderCategory.PROGRAMMABILITY, None, True),
    "views": (FolderCategory.PROGRAMMABILITY, ObjectType.VIEW, True),
    "planguides": (FolderCategory.PROGRAMMABILITY, ObjectType.PLAN_GUIDE, True),
    "securitypolicies": (FolderCategory.SECURITY_POLICY, ObjectType.SECURITY_POLICY, False),
    "data": (FolderCategory.DATA, ObjectType.TABLE_DATA, True),
}

PROGRAMMABILITY_SUBFOLDERS: Dict[str, ObjectType] = {
    "functions": ObjectType.FUNCTION,
    "storedprocedures": ObjectType.STORED_PROCEDURE,
    "triggers": ObjectType.TRIGGER,
    "views": ObjectType.VIEW,
    "assemblies": ObjectType.ASSEMBLY,
    "planguides": ObjectType.PLAN_GUIDE,
}

# Last name segment of a Security file -> type
SECURITY_SUFFIXES: Dict[str, ObjectType] = {
    "role": ObjectType.DATABASE_ROLE,
    "approle": ObjectType.APPLICATION_ROLE,
    "user": ObjectType.USER,
    "schema": ObjectType.SCHEMA,
    "certificate": ObjectType.CERTIFICATE,
    "symmetrickey": ObjectType.SYMMETRIC_KEY,
    "asymmetrickey": ObjectType.ASYMMETRIC_KEY,
    "masterkey": ObjectType.MASTER_KEY,
    "login": ObjectType.LOGIN,
}

# Principals every security filter pulls in
IMPLICIT_SECURITY_TYPES = frozenset({ObjectType.DATABASE_ROLE, ObjectType.APPLICATION_ROLE})

# Folders the mode gate excludes in Dev, by the type that decides it
DEV_EXCLUDED_TYPES = frozenset({
    ObjectType.FILE_GROUP,
    ObjectType.DATABASE_CONFIGURATION,
    ObjectType.EXTERNAL_DATA,
    ObjectType.SECURITY_POLICY,
})


def strip_order_prefix(folder: str) -> str:
    """``13_Programmability`` -> ``Programmability``."""
    return _ORDER_PREFIX.sub("", folder)


def parse_object_types(names: Sequence[str]) -> Set[ObjectType]:
    """
    Resolve object-type names from configuration.

    Raises:
        ConfigurationError: for a name that is not a known object type
    """
    lookup = {t.value.lower(): t for t in ObjectType}
    lookup.update({t.name.lower(): t for t in ObjectType})
    types = set()
    for name in names:
        object_type = lookup.get(str(name).strip().lower())
        if object_type is None:
            raise ConfigurationError(
                f"Unknown object type in filter: {name!r}",
                {"valid_types": sorted(t.value for t in ObjectType)},
            )
        types.add(object_type)
    return types


def filegroup_scripts(source_dir: str) -> List[Path]:
    """FileGroups scripts under ``source_dir``, whether or not the mode includes them."""
    root = Path(source_dir)
    if not root.is_dir():
        return []
    scripts: List[Path] = []
    for folder in sorted(p for p in root.iterdir() if p.is_dir()):
        if strip_order_prefix(folder.name).lower() == "filegroups":
            scripts.extend(sorted(p for p in folder.rglob("*.sql") if p.is_file()))
    return scripts


@dataclass(frozen=True)
class SkippedFolder:
    """A top-level folder that contributed no units."""
    folder: str
    reason: str

    def __str__(self) -> str:
        return f"{self.folder} ({self.reason})"

    def to_dict(self) -> Dict[str, Any]:
        return {"folder": self.folder, "reason": self.reason}


@dataclass
class Catalog:
    """Ordered, filtered set of units for one import run."""
    source_dir: Path
    mode: ImportMode
    units: List[Unit] = field(default_factory=list)
    skipped_folders: List[SkippedFolder] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.units)

    def __iter__(self) -> Iterator[Unit]:
        return iter(self.units)

    def by_category(self, category: FolderCategory) -> List[Unit]:
        return [u for u in self.units if u.category == category]

    def counts(self) -> Dict[str, int]:
        """Number of units per category, in stage order."""
        return {c.value: len(self.by_category(c)) for c in FolderCategory}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "source_dir": str(self.source_dir),
            "mode": self.mode.value,
            "total_units": len(self.units),
            "counts": self.counts(),
            "units": [u.to_dict() for u in self.units],
            "skipped_folders": [s.to_dict() for s in self.skipped_folders],
        }


class ScriptCatalogBuilder:
    """
    Builds the unit catalog from a generated script tree.

    Folder classification ignores numeric ordering prefixes. The mode decides
    which folders are included by default; explicit type filters override
    it, and schema filters narrow schema-bound units.
    """

    def __init__(
        self,
        mode: ImportMode = ImportMode.DEV,
        include_types: Optional[Sequence[str]] = None,
        exclude_types: Optional[Sequence[str]] = None,
        include_schemas: Optional[Sequence[str]] = None,
        exclude_schemas: Optional[Sequence[str]] = None
    ):
        """
        Initialize the builder.

        Args:
            mode: Dev or Prod folder defaults
            include_types: Object types to keep (overrides the mode gate)
            exclude_types: Object types to drop
            include_schemas: Schemas to keep for schema-bound units
            exclude_schemas: Schemas to drop for schema-bound units
        """
        self.mode = mode
        self.include_types = parse_object_types(include_types or [])
        self.exclude_types = parse_object_types(exclude_types or [])
        self.include_schemas = {s.lower() for s in include_schemas or []}
        self.exclude_schemas = {s.lower() for s in exclude_schemas or []}

        if self.include_types & SECURITY_TYPES:
            self.include_types |= IMPLICIT_SECURITY_TYPES

    def build(self, source_dir: str) -> Catalog:
        """
        Scan ``source_dir`` and return the filtered catalog.

        Raises:
            ConfigurationError: if the directory does not exist
            EmptyCatalogError: if nothing is left after filtering
        """
        root = Path(source_dir)
        if not root.exists():
            raise ConfigurationError(f"Source directory does not exist: {source_dir}")
        if not root.is_dir():
            raise ConfigurationError(f"Source path is not a directory: {source_dir}")

        catalog = Catalog(source_dir=root, mode=self.mode)

        for folder in sorted(p for p in root.iterdir() if p.is_dir()):
            key = strip_order_prefix(folder.name).lower()
            if key not in FOLDER_MAP:
                catalog.skipped_folders.append(SkippedFolder(folder.name, "unrecognised"))
                logger.warning(f"Skipping unrecognised folder: {folder.name}")
                continue

            discovered = self._discover(root, folder, key)
            if not discovered:
                continue

            selected = [u for u in discovered if self._selected(u)]
            if not selected:
                reason = self._skip_reason(discovered)
                catalog.skipped_folders.append(SkippedFolder(folder.name, reason))
                logger.info(f"Skipping folder {folder.name}: {reason}")
                continue

            catalog.units.extend(selected)
            logger.debug(f"{folder.name}: {len(selected)}/{len(discovered)} unit(s) selected")

        catalog.units.sort(key=lambda u: u.relative_path)

        if not catalog.units:
            raise EmptyCatalogError(str(root), [str(s) for s in catalog.skipped_folders])

        logger.info(
            f"Catalog built from {root}: {len(catalog.units)} unit(s), "
            f"{len(catalog.skipped_folders)} folder(s) skipped"
        )
        return catalog

    def _discover(self, root: Path, folder: Path, key: str) -> List[Unit]:
        category, object_type, _ = FOLDER_MAP[key]
        units = []
        for path in sorted(folder.rglob("*")):
            if not path.is_file() or path.suffix.lower() != ".sql":
                continue
            unit_category, unit_type = self._classify(folder, path, category, object_type)
            units.append(Unit(
                path=path,
                category=unit_category,
                object_type=unit_type,
                folder=folder.name,
                root=root,
            ))
        return units

    def _classify(
        self,
        folder: Path,
        path: Path,
        category: FolderCategory,
        object_type: Optional[ObjectType]
    ) -> Tuple[FolderCategory, ObjectType]:
        if category == FolderCategory.SECURITY:
            stem = path.name[:-4] if path.name.lower().endswith(".sql") else path.name
            suffix = stem.rsplit(".", 1)[-1].lower() if "." in stem else ""
            if suffix == "securitypolicy":
                return FolderCategory.SECURITY_POLICY, ObjectType.SECURITY_POLICY
            return category, SECURITY_SUFFIXES.get(suffix, ObjectType.SECURITY_OBJECT)

        if category == FolderCategory.PROGRAMMABILITY and object_type is None:
            relative = path.relative_to(folder).parts
            if len(relative) > 1:
                sub = strip_order_prefix(relative[0]).lower()
                return category, PROGRAMMABILITY_SUBFOLDERS.get(sub, ObjectType.UNKNOWN)
            return category, ObjectType.UNKNOWN

        return category, object_type or ObjectType.UNKNOWN

    def _mode_allows(self, unit: Unit) -> bool:
        if self.mode == ImportMode.PROD:
            return True
        return unit.object_type not in DEV_EXCLUDED_TYPES

    def _selected(self, unit: Unit) -> bool:
        if self.include_types:
            if not unit.matches_type(self.include_types):
                return False
        elif not self._mode_allows(unit):
            return False

        if self.exclude_types and unit.matches_type(self.exclude_types):
            return False

        schema = unit.schema_name
        if schema is not None:
            if self.include_schemas and schema.lower() not in self.include_schemas:
                return False
            if schema.lower() in self.exclude_schemas:
                return False
        return True

    def _skip_reason(self, units: List[Unit]) -> str:
        if not self.include_types and not any(self._mode_allows(u) for u in units):
            return f"excluded in {self.mode.value} mode"
        return "excluded by filters"
