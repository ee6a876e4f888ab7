"""Import configuration models."""

import os
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from ..errors import ConfigurationError


class ImportMode(str, Enum):
    """Target environment profile."""
    DEV = "Dev"
    PROD = "Prod"

    @classmethod
    def parse(cls, value: Any) -> "ImportMode":
        if isinstance(value, cls):
            return value
        for mode in cls:
            if str(value).lower() == mode.value.lower():
                return mode
        raise ConfigurationError(f"Unknown import mode: {value!r} (expected Dev or Prod)")


class FileGroupStrategy(str, Enum):
    """How physical filegroup placement is adapted to the target server."""
    EXPLICIT_MAPPING = "explicitMapping"
    AUTO_REMAP = "autoRemap"
    REMOVE_TO_PRIMARY = "removeToPrimary"

    @classmethod
    def parse(cls, value: Any) -> "FileGroupStrategy":
        if isinstance(value, cls):
            return value
        for strategy in cls:
            if str(value).lower() == strategy.value.lower():
                return strategy
        raise ConfigurationError(
            f"Unknown file group strategy: {value!r} "
            f"(expected one of {', '.join(s.value for s in cls)})"
        )


ENV_PREFIX = "env:"


def resolve_env_reference(value: Optional[str]) -> Optional[str]:
    """Resolve an ``env:NAME`` reference; other values pass through."""
    if value is None or not isinstance(value, str) or not value.startswith(ENV_PREFIX):
        return value
    return os.environ.get(value[len(ENV_PREFIX):])


@dataclass
class RetrySettings:
    """Transient retry configuration."""
    max_attempts: int = 3
    initial_delay: float = 2.0

    MIN_ATTEMPTS = 1
    MAX_ATTEMPTS = 10
    MIN_DELAY = 1.0
    MAX_DELAY = 60.0

    def validate(self) -> None:
        if not self.MIN_ATTEMPTS <= self.max_attempts <= self.MAX_ATTEMPTS:
            raise ConfigurationError(
                f"retry.max_attempts must be between {self.MIN_ATTEMPTS} and "
                f"{self.MAX_ATTEMPTS}, got {self.max_attempts}"
            )
        if not self.MIN_DELAY <= self.initial_delay <= self.MAX_DELAY:
            raise ConfigurationError(
                f"retry.initial_delay must be between {self.MIN_DELAY:g} and "
                f"{self.MAX_DELAY:g} seconds, got {self.initial_delay}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {"max_attempts": self.max_attempts, "initial_delay": self.initial_delay}


@dataclass(frozen=True)
class TransformContext:
    """
    Everything the SQL rewriting pipeline needs for one import run.

    Built once per run and shared by reference with every executor call.
    Secret values must never be logged.
    """
    database: str = ""
    variables: Dict[str, str] = field(default_factory=dict)
    file_group_strategy: FileGroupStrategy = FileGroupStrategy.EXPLICIT_MAPPING
    file_group_variables: Dict[str, str] = field(default_factory=dict)
    default_data_path: Optional[str] = None
    auto_remap_size: str = "1024KB"
    auto_remap_growth: str = "10240KB"
    strip_filestream: bool = False
    strip_always_encrypted: bool = False
    convert_logins_to_contained: bool = False
    secrets: Dict[str, str] = field(default_factory=dict, repr=False)
    filestream_filegroups: FrozenSet[str] = frozenset()
    memory_optimized_filegroups: FrozenSet[str] = frozenset()

    def with_discovered(self, **changes) -> "TransformContext":
        """Copy with fields discovered from the target server or the catalog."""
        return replace(self, **changes)


@dataclass
class ImportConfig:
    """Configuration for an import run."""
    source_dir: str = ""
    server: str = ""
    database: str = ""

    # Connection
    driver: str = "ODBC Driver 18 for SQL Server"
    username: Optional[str] = None
    password: Optional[str] = None
    password_env: Optional[str] = None
    trusted_connection: bool = False
    encrypt: bool = True
    trust_server_certificate: bool = False
    connect_timeout: int = 15
    command_timeout: int = 0  # Seconds per batch; 0 disables the limit

    # Catalog selection
    mode: ImportMode = ImportMode.DEV
    include_object_types: List[str] = field(default_factory=list)
    exclude_object_types: List[str] = field(default_factory=list)
    include_schemas: List[str] = field(default_factory=list)
    exclude_schemas: List[str] = field(default_factory=list)

    # Execution options
    dry_run: bool = False
    continue_on_error: bool = False
    create_database: bool = False
    max_fixpoint_rounds: int = 10
    retry: RetrySettings = field(default_factory=RetrySettings)

    # Transformation
    variables: Dict[str, str] = field(default_factory=dict)
    file_group_strategy: Optional[FileGroupStrategy] = None
    file_group_variables: Dict[str, str] = field(default_factory=dict)
    auto_remap_size: str = "1024KB"
    auto_remap_growth: str = "10240KB"
    strip_filestream: bool = False
    strip_always_encrypted: bool = False
    convert_logins_to_contained: bool = False
    secrets: Dict[str, str] = field(default_factory=dict, repr=False)
    strict_secrets: bool = False

    # Output
    error_log_path: Optional[str] = None
    output_dir: Optional[str] = None

    @property
    def resolved_password(self) -> Optional[str]:
        if self.password_env:
            return os.environ.get(self.password_env)
        return resolve_env_reference(self.password)

    @property
    def effective_file_group_strategy(self) -> FileGroupStrategy:
        """Configured strategy, or the mode default."""
        if self.file_group_strategy is not None:
            return self.file_group_strategy
        if self.mode == ImportMode.DEV:
            return FileGroupStrategy.REMOVE_TO_PRIMARY
        if self.file_group_variables:
            return FileGroupStrategy.EXPLICIT_MAPPING
        return FileGroupStrategy.AUTO_REMAP

    def validate(self) -> None:
        """Check the configuration; raises ConfigurationError."""
        if not self.source_dir:
            raise ConfigurationError("source_dir is required")
        if not self.dry_run and not self.server:
            raise ConfigurationError("server is required unless dry_run is set")
        if not self.database:
            raise ConfigurationError("database is required")
        if self.max_fixpoint_rounds < 1:
            raise ConfigurationError("max_fixpoint_rounds must be at least 1")
        if self.connect_timeout < 0 or self.command_timeout < 0:
            raise ConfigurationError("timeouts must not be negative")
        self.retry.validate()

    def build_transform_context(self) -> TransformContext:
        """Create the run's TransformContext from configuration values."""
        return TransformContext(
            database=self.database,
            variables=dict(self.variables),
            file_group_strategy=self.effective_file_group_strategy,
            file_group_variables=dict(self.file_group_variables),
            auto_remap_size=self.auto_remap_size,
            auto_remap_growth=self.auto_remap_growth,
            strip_filestream=self.strip_filestream,
            strip_always_encrypted=self.strip_always_encrypted,
            convert_logins_to_contained=self.convert_logins_to_contained,
            secrets={
                key: value
                for key, value in ((k, resolve_env_reference(v)) for k, v in self.secrets.items())
                if value is not None
            },
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation (credentials and secrets omitted)."""
        return {
            "source_dir": self.source_dir,
            "server": self.server,
            "database": self.database,
            "driver": self.driver,
            "username": self.username,
            "trusted_connection": self.trusted_connection,
            "encrypt": self.encrypt,
            "trust_server_certificate": self.trust_server_certificate,
            "connect_timeout": self.connect_timeout,
            "command_timeout": self.command_timeout,
            "mode": self.mode.value,
            "include_object_types": self.include_object_types,
            "exclude_object_types": self.exclude_object_types,
            "include_schemas": self.include_schemas,
            "exclude_schemas": self.exclude_schemas,
            "dry_run": self.dry_run,
            "continue_on_error": self.continue_on_error,
            "create_database": self.create_database,
            "max_fixpoint_rounds": self.max_fixpoint_rounds,
            "retry": self.retry.to_dict(),
            "variables": self.variables,
            "file_group_strategy": self.effective_file_group_strategy.value,
            "file_group_variables": self.file_group_variables,
            "auto_remap_size": self.auto_remap_size,
            "auto_remap_growth": self.auto_remap_growth,
            "strip_filestream": self.strip_filestream,
            "strip_always_encrypted": self.strip_always_encrypted,
            "convert_logins_to_contained": self.convert_logins_to_contained,
            "secret_keys": sorted(self.secrets),
            "strict_secrets": self.strict_secrets,
            "error_log_path": self.error_log_path,
            "output_dir": self.output_dir,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImportConfig":
        """Create from dictionary representation."""
        retry_data = data.get("retry") or {}
        strategy = data.get("file_group_strategy")

        return cls(
            source_dir=str(data.get("source_dir", "")),
            server=data.get("server", ""),
            database=data.get("database", ""),
            driver=data.get("driver", "ODBC Driver 18 for SQL Server"),
            username=data.get("username"),
            password=data.get("password"),
            password_env=data.get("password_env"),
            trusted_connection=bool(data.get("trusted_connection", False)),
            encrypt=bool(data.get("encrypt", True)),
            trust_server_certificate=bool(data.get("trust_server_certificate", False)),
            connect_timeout=int(data.get("connect_timeout", 15)),
            command_timeout=int(data.get("command_timeout", 0)),
            mode=ImportMode.parse(data.get("mode", ImportMode.DEV.value)),
            include_object_types=list(data.get("include_object_types") or []),
            exclude_object_types=list(data.get("exclude_object_types") or []),
            include_schemas=list(data.get("include_schemas") or []),
            exclude_schemas=list(data.get("exclude_schemas") or []),
            dry_run=bool(data.get("dry_run", False)),
            continue_on_error=bool(data.get("continue_on_error", False)),
            create_database=bool(data.get("create_database", False)),
            max_fixpoint_rounds=int(data.get("max_fixpoint_rounds", 10)),
            retry=RetrySettings(
                max_attempts=int(retry_data.get("max_attempts", 3)),
                initial_delay=float(retry_data.get("initial_delay", 2.0)),
            ),
            variables={str(k): str(v) for k, v in (data.get("variables") or {}).items()},
            file_group_strategy=FileGroupStrategy.parse(strategy) if strategy else None,
            file_group_variables={
                str(k): str(v) for k, v in (data.get("file_group_variables") or {}).items()
            },
            auto_remap_size=str(data.get("auto_remap_size", "1024KB")),
            auto_remap_growth=str(data.get("auto_remap_growth", "10240KB")),
            strip_filestream=bool(data.get("strip_filestream", False)),
            strip_always_encrypted=bool(data.get("strip_always_encrypted", False)),
            convert_logins_to_contained=bool(data.get("convert_logins_to_contained", False)),
            secrets={str(k): str(v) for k, v in (data.get("secrets") or {}).items()},
            strict_secrets=bool(data.get("strict_secrets", False)),
            error_log_path=data.get("error_log_path"),
            output_dir=data.get("output_dir"),
        )
