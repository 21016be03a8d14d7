"""
File upload endpoints: store a file and stage it for mapping.
"""
import logging

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from app.api.dependencies import get_pipeline_runner, raise_for_error, to_state_response
from app.api.schemas.shared import WorkflowStateResponse
from app.core.config import settings
from app.domain.workflows.executor import PipelineRunner

router = APIRouter(tags=["uploads"])
logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = settings.upload_max_file_size_mb * 1024 * 1024


def _ensure_within_size_limit(file_size: int, file_name: str) -> None:
    """Raise an HTTPException if a file exceeds the configured upload limit."""
    if file_size > MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=413,
            detail=(
                f"{file_name} is too large. "
                f"Maximum allowed upload size is {settings.upload_max_file_size_mb}MB."
            ),
        )


@router.post("/uploads", response_model=WorkflowStateResponse)
async def upload_file(
    file: UploadFile = File(...),
    runner: PipelineRunner = Depends(get_pipeline_runner),
):
    """
    Upload a CSV or Excel file.

    The raw bytes go to blob storage and an upload record is created with
    status ``uploaded``. Call ``/uploads/{file_id}/process`` next.
    """
    content = await file.read()
    _ensure_within_size_limit(len(content), file.filename)
    logger.info("Upload received: %s (%d bytes)", file.filename, len(content))

    result = await runner.upload(file.filename, content, content_type=file.content_type)
    if not result.ok:
        raise_for_error(result)
    return to_state_response(result.value, runner)


@router.post("/uploads/{file_id}/process", response_model=WorkflowStateResponse)
async def process_file(file_id: str, runner: PipelineRunner = Depends(get_pipeline_runner)):
    """Parse the stored file, detect column types and propose initial mappings."""
    result = await runner.process(file_id)
    if not result.ok:
        raise_for_error(result)
    return to_state_response(result.value, runner)


@router.get("/uploads/{file_id}")
async def get_upload(file_id: str, runner: PipelineRunner = Depends(get_pipeline_runner)):
    """Return the persisted upload record."""
    upload = runner.upload_store.get(file_id)
    if upload is None:
        raise HTTPException(status_code=404, detail=f"Upload {file_id} not found")
    return upload
