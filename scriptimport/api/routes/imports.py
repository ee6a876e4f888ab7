"""Import run endpoints."""

import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException

from ...errors import ConfigurationError
from ...models.config import ImportConfig
from ...models.ledger import ImportStatus
from ...orchestrator import ImportOrchestrator
from ..models import (
    FailureListResponse,
    ImportCreate,
    ImportListResponse,
    ImportResponse,
)
from ..storage import import_storage

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=ImportResponse, status_code=202)
async def create_import(data: ImportCreate, background_tasks: BackgroundTasks):
    """Validate the request and start the import in the background."""
    try:
        config = ImportConfig.from_dict(data.to_config_dict())
        config.validate()
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail={"message": e.message, **e.details})

    record = import_storage.create(data)
    background_tasks.add_task(run_import_task, record.id, config)
    return record.to_response()


@router.get("", response_model=ImportListResponse)
async def list_imports():
    """List all imports."""
    records = import_storage.list_all()
    return ImportListResponse(imports=[r.to_response() for r in records], total=len(records))


@router.get("/{import_id}", response_model=ImportResponse)
async def get_import(import_id: str):
    """Get a specific import."""
    record = import_storage.get(import_id)
    if not record:
        raise HTTPException(status_code=404, detail="Import not found")
    return record.to_response()


@router.get("/{import_id}/failures", response_model=FailureListResponse)
async def get_import_failures(import_id: str):
    """Get the terminal failures of an import."""
    record = import_storage.get(import_id)
    if not record:
        raise HTTPException(status_code=404, detail="Import not found")
    failures = record.failures()
    return FailureListResponse(import_id=import_id, failures=failures, total=len(failures))


def run_import_task(import_id: str, config: ImportConfig) -> None:
    """Background task running one import to completion."""
    import_storage.update_status(import_id, ImportStatus.RUNNING)
    orchestrator = ImportOrchestrator(config)
    ledger = orchestrator.run_import()
    import_storage.attach_ledger(import_id, ledger)
    logger.info(f"Import {import_id} finished with status {ledger.status.value}")
