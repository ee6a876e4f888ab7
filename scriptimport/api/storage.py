"""In-memory storage for import runs started through the API."""

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from ..models.ledger import ExecutionLedger, ImportStatus
from .models import (
    FailureResponse,
    ImportCreate,
    ImportResponse,
    ImportStatusEnum,
    StageResponse,
)


@dataclass
class ImportRecord:
    """A requested import and, once it ran, its ledger."""
    id: str
    request: ImportCreate
    created_at: datetime
    status: ImportStatus = ImportStatus.PENDING
    ledger: Optional[ExecutionLedger] = None

    def to_response(self) -> ImportResponse:
        response = ImportResponse(
            id=self.id,
            database=self.request.database,
            source_dir=self.request.source_dir,
            status=ImportStatusEnum(self.status.value),
            dry_run=self.request.dry_run,
            created_at=self.created_at,
        )
        if self.ledger is None:
            return response

        ledger = self.ledger
        response.started_at = ledger.started_at
        response.completed_at = ledger.completed_at
        response.succeeded = ledger.succeeded_count
        response.failed = ledger.failed_count
        response.skipped = ledger.skipped_count
        response.exit_code = ledger.exit_code if ledger.completed_at else None
        response.stages = [
            StageResponse(
                stage=s.stage.value,
                status=s.status.value,
                started_at=s.started_at,
                completed_at=s.completed_at,
                units_total=s.units_total,
                units_succeeded=s.units_succeeded,
                units_failed=s.units_failed,
                units_skipped=s.units_skipped,
                warnings=s.warnings,
            )
            for s in ledger.stages
        ]
        response.skipped_folders = list(ledger.skipped_folders)
        response.warnings = list(ledger.warnings)
        return response

    def failures(self) -> List[FailureResponse]:
        if self.ledger is None:
            return []
        return [FailureResponse(**f.to_dict()) for f in self.ledger.failures]


class ImportStorage:
    """Thread-safe map of import id to ImportRecord."""

    def __init__(self):
        self._records: Dict[str, ImportRecord] = {}
        self._lock = threading.Lock()

    def create(self, request: ImportCreate) -> ImportRecord:
        record = ImportRecord(
            id=str(uuid.uuid4()),
            request=request,
            created_at=datetime.utcnow(),
        )
        with self._lock:
            self._records[record.id] = record
        return record

    def get(self, import_id: str) -> Optional[ImportRecord]:
        with self._lock:
            return self._records.get(import_id)

    def list_all(self) -> List[ImportRecord]:
        with self._lock:
            return sorted(self._records.values(), key=lambda r: r.created_at, reverse=True)

    def update_status(self, import_id: str, status: ImportStatus) -> None:
        with self._lock:
            record = self._records.get(import_id)
            if record:
                record.status = status

    def attach_ledger(self, import_id: str, ledger: ExecutionLedger) -> None:
        with self._lock:
            record = self._records.get(import_id)
            if record:
                record.ledger = ledger
                record.status = ledger.status

    def clear(self) -> None:
        with self._lock:
            self._records.clear()


import_storage = ImportStorage()
