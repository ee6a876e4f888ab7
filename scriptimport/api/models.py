"""Pydantic models for API requests and responses."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from enum import Enum
from datetime import datetime


class ImportModeEnum(str, Enum):
    DEV = "Dev"
    PROD = "Prod"


class ImportStatusEnum(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    SKIPPED = "skipped"


# Request Models
class CatalogPreviewRequest(BaseModel):
    source_dir: str
    mode: ImportModeEnum = ImportModeEnum.DEV
    include_object_types: List[str] = Field(default_factory=list)
    exclude_object_types: List[str] = Field(default_factory=list)
    include_schemas: List[str] = Field(default_factory=list)
    exclude_schemas: List[str] = Field(default_factory=list)


class ImportCreate(CatalogPreviewRequest):
    database: str
    server: str = ""
    username: Optional[str] = None
    password_env: Optional[str] = None
    trusted_connection: bool = False
    trust_server_certificate: bool = False
    dry_run: bool = True
    continue_on_error: bool = False
    create_database: bool = False
    max_fixpoint_rounds: int = 10
    retry_max_attempts: int = 3
    retry_initial_delay: float = 2.0
    command_timeout: int = 0
    variables: Dict[str, str] = Field(default_factory=dict)
    file_group_strategy: Optional[str] = None
    file_group_variables: Dict[str, str] = Field(default_factory=dict)
    strip_filestream: bool = False
    strip_always_encrypted: bool = False
    convert_logins_to_contained: bool = False
    secrets: Dict[str, str] = Field(default_factory=dict)  # Values should be env:NAME references
    strict_secrets: bool = False
    output_dir: Optional[str] = None

    def to_config_dict(self) -> Dict[str, Any]:
        """Convert to the dictionary form accepted by ImportConfig.from_dict."""
        data = self.model_dump(exclude={"retry_max_attempts", "retry_initial_delay"})
        data["mode"] = self.mode.value
        data["retry"] = {
            "max_attempts": self.retry_max_attempts,
            "initial_delay": self.retry_initial_delay,
        }
        return data


# Response Models
class UnitResponse(BaseModel):
    name: str
    path: str
    folder: str
    category: str
    object_type: str


class SkippedFolderResponse(BaseModel):
    folder: str
    reason: str


class CatalogPreviewResponse(BaseModel):
    source_dir: str
    mode: ImportModeEnum
    total_units: int
    counts: Dict[str, int]
    units: List[UnitResponse]
    skipped_folders: List[SkippedFolderResponse] = Field(default_factory=list)


class StageResponse(BaseModel):
    stage: str
    status: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    units_total: int = 0
    units_succeeded: int = 0
    units_failed: int = 0
    units_skipped: int = 0
    warnings: List[str] = Field(default_factory=list)


class FailureResponse(BaseModel):
    unit_name: str
    folder: str
    short_error: str
    full_error: str
    kind: str


class ImportResponse(BaseModel):
    id: str
    database: str
    source_dir: str
    status: ImportStatusEnum
    dry_run: bool
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    exit_code: Optional[int] = None
    stages: List[StageResponse] = Field(default_factory=list)
    skipped_folders: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class ImportListResponse(BaseModel):
    imports: List[ImportResponse]
    total: int


class FailureListResponse(BaseModel):
    import_id: str
    failures: List[FailureResponse]
    total: int
