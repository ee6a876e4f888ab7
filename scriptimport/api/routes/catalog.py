"""Catalog preview endpoint."""

from fastapi import APIRouter, HTTPException

from ...errors import ConfigurationError
from ...models.config import ImportMode
from ...services.catalog import ScriptCatalogBuilder
from ..models import CatalogPreviewRequest, CatalogPreviewResponse

router = APIRouter()


@router.post("/preview", response_model=CatalogPreviewResponse)
async def preview_catalog(data: CatalogPreviewRequest):
    """List the units an import would apply, without connecting."""
    try:
        builder = ScriptCatalogBuilder(
            mode=ImportMode.parse(data.mode.value),
            include_types=data.include_object_types,
            exclude_types=data.exclude_object_types,
            include_schemas=data.include_schemas,
            exclude_schemas=data.exclude_schemas,
        )
        catalog = builder.build(data.source_dir)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail={"message": e.message, **e.details})

    return CatalogPreviewResponse(**catalog.to_dict())
