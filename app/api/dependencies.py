"""
Shared dependencies, state, and utility functions for the API.

The pipeline runner and destination catalog are process-wide singletons;
routers obtain them through ``Depends`` so tests can override them.
"""
import logging
import os
from typing import Optional

from fastapi import HTTPException

from app.api.schemas.shared import WorkflowStateResponse
from app.core.config import settings
from app.core.errors import Err, ErrorKind
from app.db.destination_tables import InMemoryDestinationStore, SqlDestinationStore
from app.domain.imports.catalog import DestinationCatalog
from app.domain.imports.quality import (
    calculate_data_quality,
    calculate_mapping_progress,
    calculate_validation_progress,
    summarize_validation,
)
from app.domain.uploads.uploaded_files import InMemoryUploadStore, SqlUploadStore
from app.domain.workflows.executor import PipelineRunner
from app.domain.workflows.models import WorkflowState
from app.domain.workflows.orchestrator import WorkflowOrchestrator
from app.integrations.storage import InMemoryBlobStore, S3BlobStore

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    ErrorKind.PARSE_ERROR: 422,
    ErrorKind.TYPE_DETECTION_AMBIGUOUS: 422,
    ErrorKind.MAPPING_CONFLICT: 409,
    ErrorKind.VALIDATION_ERROR: 422,
    ErrorKind.DEPLOYMENT_ERROR: 502,
    ErrorKind.INVALID_TRANSITION: 409,
    ErrorKind.PRECONDITION_FAILED: 400,
    ErrorKind.PIPELINE_BUSY: 409,
    ErrorKind.CANCELLED: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.STORAGE_ERROR: 502,
}

_catalog: Optional[DestinationCatalog] = None
_runner: Optional[PipelineRunner] = None


def _storage_configured() -> bool:
    return all([settings.storage_access_key_id, settings.storage_secret_access_key, settings.storage_bucket_name])


def get_catalog() -> DestinationCatalog:
    global _catalog
    if _catalog is None:
        _catalog = DestinationCatalog.load()
    return _catalog


def build_pipeline_runner(catalog: Optional[DestinationCatalog] = None, use_database: Optional[bool] = None) -> PipelineRunner:
    """
    Assemble a runner with SQL/S3 backends, or in-memory ones when the
    database is skipped or storage credentials are missing.
    """
    if use_database is None:
        use_database = os.getenv("SKIP_DB_INIT") != "1"

    blob_store = S3BlobStore() if _storage_configured() else InMemoryBlobStore()
    if use_database:
        upload_store, destination_store = SqlUploadStore(), SqlDestinationStore()
    else:
        upload_store, destination_store = InMemoryUploadStore(), InMemoryDestinationStore()

    logger.info(
        "Pipeline backends: blobs=%s uploads=%s destinations=%s",
        type(blob_store).__name__,
        type(upload_store).__name__,
        type(destination_store).__name__,
    )
    return PipelineRunner(
        WorkflowOrchestrator(catalog or get_catalog()),
        blob_store=blob_store,
        upload_store=upload_store,
        destination_store=destination_store,
    )


def get_pipeline_runner() -> PipelineRunner:
    global _runner
    if _runner is None:
        _runner = build_pipeline_runner()
    return _runner


def raise_for_error(result: Err) -> None:
    """Translate an Err into an HTTPException carrying the error kind."""
    raise HTTPException(
        status_code=ERROR_STATUS_CODES.get(result.kind, 400),
        detail={"error": result.message, "error_kind": result.kind.value, "details": result.details},
    )


def to_state_response(state: WorkflowState, runner: Optional[PipelineRunner] = None) -> WorkflowStateResponse:
    file_data = state.file_data
    column_types = list(file_data.column_types) if file_data else []
    results = list(state.validation_results)
    return WorkflowStateResponse(
        success=state.error is None,
        message=state.success,
        error=state.error,
        current_step=state.current_step,
        progress=state.progress,
        file=state.file,
        column_types=column_types,
        field_mappings=list(state.field_mappings),
        mapping_conflicts=runner.orchestrator.mapping_conflicts(state) if runner else [],
        validation_results=results,
        preview_rows=file_data.rows[: settings.preview_row_limit] if file_data else [],
        validation_summary=summarize_validation(state.field_mappings, results),
        data_quality=calculate_data_quality(column_types, results),
        mapping_progress=calculate_mapping_progress(state.field_mappings),
        validation_progress=calculate_validation_progress(state.field_mappings, results),
    )
