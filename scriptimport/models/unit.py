"""SQL unit models."""

import re
from dataclasses import dataclass
from enum import Enum
from functools import cached_property
from pathlib import Path
from typing import Any, Dict, Optional


class FolderCategory(str, Enum):
    """Execution class of a unit; maps one-to-one onto an import stage."""
    SECURITY = "Security"
    DATABASE_CONFIG = "DatabaseConfig"
    SCHEMA = "Schema"
    PROGRAMMABILITY = "Programmability"
    SECURITY_POLICY = "SecurityPolicy"
    DATA = "Data"


class ObjectType(str, Enum):
    """Object-type tag of a unit."""
    # Database configuration
    FILE_GROUP = "FileGroup"
    DATABASE_CONFIGURATION = "DatabaseConfiguration"
    EXTERNAL_DATA = "ExternalData"

    # Security principals and keys
    DATABASE_ROLE = "DatabaseRole"
    APPLICATION_ROLE = "ApplicationRole"
    USER = "User"
    WINDOWS_USER = "WindowsUser"
    SQL_USER = "SqlUser"
    EXTERNAL_USER = "ExternalUser"
    CERTIFICATE_USER = "CertificateUser"
    LOGIN = "Login"
    CERTIFICATE = "Certificate"
    SYMMETRIC_KEY = "SymmetricKey"
    ASYMMETRIC_KEY = "AsymmetricKey"
    MASTER_KEY = "MasterKey"
    SECURITY_OBJECT = "SecurityObject"

    # Structural schema objects
    SCHEMA = "Schema"
    USER_DEFINED_TYPE = "UserDefinedType"
    XML_SCHEMA_COLLECTION = "XmlSchemaCollection"
    SEQUENCE = "Sequence"
    PARTITION_FUNCTION = "PartitionFunction"
    PARTITION_SCHEME = "PartitionScheme"
    TABLE = "Table"
    FOREIGN_KEY = "ForeignKey"
    INDEX = "Index"
    DEFAULT = "Default"
    SYNONYM = "Synonym"
    FULL_TEXT_CATALOG = "FullTextCatalog"

    # Programmability
    FUNCTION = "Function"
    STORED_PROCEDURE = "StoredProcedure"
    TRIGGER = "Trigger"
    VIEW = "View"
    ASSEMBLY = "Assembly"
    PLAN_GUIDE = "PlanGuide"

    SECURITY_POLICY = "SecurityPolicy"
    TABLE_DATA = "TableData"
    UNKNOWN = "Unknown"


# Sub-types a user file can be classified into by its content
USER_SUBTYPES = frozenset({
    ObjectType.WINDOWS_USER,
    ObjectType.SQL_USER,
    ObjectType.EXTERNAL_USER,
    ObjectType.CERTIFICATE_USER,
})

SECURITY_TYPES = frozenset({
    ObjectType.DATABASE_ROLE,
    ObjectType.APPLICATION_ROLE,
    ObjectType.USER,
    ObjectType.LOGIN,
    ObjectType.CERTIFICATE,
    ObjectType.SYMMETRIC_KEY,
    ObjectType.ASYMMETRIC_KEY,
    ObjectType.MASTER_KEY,
    ObjectType.SECURITY_OBJECT,
}) | USER_SUBTYPES

# Types whose file names start with a schema segment
SCHEMA_BOUND_TYPES = frozenset({
    ObjectType.USER_DEFINED_TYPE,
    ObjectType.XML_SCHEMA_COLLECTION,
    ObjectType.SEQUENCE,
    ObjectType.TABLE,
    ObjectType.FOREIGN_KEY,
    ObjectType.INDEX,
    ObjectType.DEFAULT,
    ObjectType.SYNONYM,
    ObjectType.FUNCTION,
    ObjectType.STORED_PROCEDURE,
    ObjectType.TRIGGER,
    ObjectType.VIEW,
    ObjectType.SECURITY_POLICY,
    ObjectType.TABLE_DATA,
})


_EXTERNAL_PROVIDER = re.compile(r"\bEXTERNAL\s+PROVIDER\b", re.IGNORECASE)
_CERTIFICATE_MAPPED = re.compile(r"\bFOR\s+(CERTIFICATE|ASYMMETRIC\s+KEY)\b", re.IGNORECASE)
_FOR_LOGIN = re.compile(r"\b(?:FOR|FROM)\s+LOGIN\s+(\[[^\]]*\]|\S+)", re.IGNORECASE)
_WITHOUT_LOGIN = re.compile(r"\bWITHOUT\s+LOGIN\b", re.IGNORECASE)
_IMPLICIT_DOMAIN_USER = re.compile(r"\bCREATE\s+USER\s+\[[^\]]*\\[^\]]*\]", re.IGNORECASE)


def classify_user_principal(text: str) -> ObjectType:
    """
    Classify a user-principal script by its content.

    The file name is never consulted; generated user files are all named
    ``<name>.user.sql`` whatever kind of principal they create.
    """
    if _EXTERNAL_PROVIDER.search(text):
        return ObjectType.EXTERNAL_USER
    if _CERTIFICATE_MAPPED.search(text):
        return ObjectType.CERTIFICATE_USER

    login = _FOR_LOGIN.search(text)
    if login:
        if "\\" in login.group(1):
            return ObjectType.WINDOWS_USER
        return ObjectType.SQL_USER
    if _WITHOUT_LOGIN.search(text):
        return ObjectType.SQL_USER
    if _IMPLICIT_DOMAIN_USER.search(text):
        return ObjectType.WINDOWS_USER
    return ObjectType.SQL_USER


def read_sql_text(path: Path) -> str:
    """Read a script file, honouring UTF-16 and UTF-8 byte order marks."""
    raw = path.read_bytes()
    if raw.startswith((b"\xff\xfe", b"\xfe\xff")):
        return raw.decode("utf-16")
    return raw.decode("utf-8-sig")


@dataclass(frozen=True)
class Unit:
    """One SQL file to apply."""
    path: Path
    category: FolderCategory
    object_type: ObjectType
    folder: str  # Top-level folder as found on disk, e.g. "08_Tables_PrimaryKey"
    root: Optional[Path] = None

    @property
    def name(self) -> str:
        """Unit name shown to the operator."""
        return self.path.name

    @property
    def relative_path(self) -> str:
        """Path relative to the source root, in POSIX form."""
        if self.root is not None:
            try:
                return self.path.relative_to(self.root).as_posix()
            except ValueError:
                pass
        return self.path.as_posix()

    @cached_property
    def text(self) -> str:
        """Raw SQL text, read on first access."""
        return read_sql_text(self.path)

    @property
    def name_segments(self):
        """Dot-separated segments of the file name without the .sql suffix."""
        stem = self.path.name
        if stem.lower().endswith(".sql"):
            stem = stem[:-4]
        return stem.split(".")

    @property
    def schema_name(self) -> Optional[str]:
        """Schema of a schema-bound object, taken from the first name segment."""
        if self.object_type not in SCHEMA_BOUND_TYPES:
            return None
        segments = self.name_segments
        if len(segments) < 2:
            return None
        return segments[0]

    @property
    def table_key(self) -> Optional[str]:
        """Case-insensitive ``schema.table`` key of a data unit."""
        if self.object_type != ObjectType.TABLE_DATA:
            return None
        segments = self.name_segments
        if segments and segments[-1].lower() == "data":
            segments = segments[:-1]
        if len(segments) < 2:
            return None
        return f"{segments[0]}.{segments[1]}".lower()

    @cached_property
    def principal_subtype(self) -> Optional[ObjectType]:
        """Content-derived sub-type of a user principal file."""
        if self.object_type != ObjectType.USER:
            return None
        return classify_user_principal(self.text)

    def matches_type(self, types) -> bool:
        """Check whether the unit's type or principal sub-type is in ``types``."""
        if self.object_type in types:
            return True
        return self.principal_subtype is not None and self.principal_subtype in types

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "path": self.relative_path,
            "folder": self.folder,
            "category": self.category.value,
            "object_type": self.object_type.value,
        }
