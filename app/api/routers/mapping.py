"""
Field mapping endpoints: catalog browsing, suggestions and manual mapping.
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query

from app.api.dependencies import get_catalog, get_pipeline_runner, raise_for_error, to_state_response
from app.api.schemas.shared import (
    AddCustomFieldRequest,
    CatalogResponse,
    DatabaseField,
    MappingConflict,
    MappingSuggestionsResponse,
    UpdateMappingRequest,
    WorkflowStateResponse,
)
from app.core.errors import DataIntakeError, Err, NotFound
from app.domain.imports.catalog import DestinationCatalog
from app.domain.imports.mapper import get_mapping_suggestions
from app.domain.workflows.executor import PipelineRunner

router = APIRouter(tags=["mapping"])
logger = logging.getLogger(__name__)


def _state_or_404(runner: PipelineRunner, file_id: str):
    try:
        return runner.get_state(file_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.get("/catalog", response_model=CatalogResponse)
async def get_catalog_endpoint(catalog: DestinationCatalog = Depends(get_catalog)):
    """List every destination table and field available for mapping."""
    return CatalogResponse(
        version=catalog.version,
        tables=catalog.get_all_table_names(),
        fields=catalog.get_all_database_fields(),
    )


@router.post("/catalog/fields", response_model=DatabaseField)
async def add_custom_field_endpoint(
    request: AddCustomFieldRequest,
    catalog: DestinationCatalog = Depends(get_catalog),
):
    """
    Add a custom field to an existing destination table.

    The field becomes available to mapping and suggestions immediately.
    """
    try:
        return catalog.add_custom_field(
            request.table,
            request.field,
            request.type,
            required=request.required,
            description=request.description,
            category=request.category,
            max_length=request.max_length,
            enum_values=request.enum_values,
        )
    except DataIntakeError as e:
        raise_for_error(Err.from_exception(e))


@router.put("/uploads/{file_id}/mapping", response_model=WorkflowStateResponse)
async def update_mapping_endpoint(
    file_id: str,
    request: UpdateMappingRequest,
    runner: PipelineRunner = Depends(get_pipeline_runner),
):
    """Set one column's destination. Empty table and field clear the mapping."""
    result = await runner.update_mapping(file_id, request.source_column, request.target_table, request.target_field)
    if not result.ok:
        raise_for_error(result)
    return to_state_response(result.value, runner)


@router.post("/uploads/{file_id}/mapping/auto", response_model=WorkflowStateResponse)
async def auto_map_endpoint(file_id: str, runner: PipelineRunner = Depends(get_pipeline_runner)):
    """Map still-unmapped columns using the looser auto-map threshold."""
    result = await runner.auto_map_remaining(file_id)
    if not result.ok:
        raise_for_error(result)
    return to_state_response(result.value, runner)


@router.get("/uploads/{file_id}/mapping/suggestions", response_model=MappingSuggestionsResponse)
async def mapping_suggestions_endpoint(
    file_id: str,
    source_column: str = Query(...),
    limit: int = Query(5, ge=1, le=50),
    runner: PipelineRunner = Depends(get_pipeline_runner),
):
    state = _state_or_404(runner, file_id)
    if state.file_data is None or source_column not in state.file_data.headers:
        raise HTTPException(status_code=404, detail=f"Unknown source column '{source_column}'")

    fields = runner.orchestrator.catalog.get_all_database_fields()
    return MappingSuggestionsResponse(
        source_column=source_column,
        suggestions=get_mapping_suggestions(source_column, fields, limit=limit),
    )


@router.get("/uploads/{file_id}/mapping/conflicts", response_model=List[MappingConflict])
async def mapping_conflicts_endpoint(file_id: str, runner: PipelineRunner = Depends(get_pipeline_runner)):
    """Destination fields claimed by more than one source column."""
    return runner.orchestrator.mapping_conflicts(_state_or_404(runner, file_id))
