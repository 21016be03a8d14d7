"""
Workflow step endpoints.

These endpoints move an uploaded file through the import steps: navigate
between steps, run validation, deploy to the destination tables and
cancel a long-running operation.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException

from app.api.dependencies import get_pipeline_runner, raise_for_error, to_state_response
from app.api.schemas.shared import (
    NavigateStepRequest,
    ValidateRequest,
    ValidationSettings,
    WorkflowStateResponse,
)
from app.core.errors import NotFound
from app.domain.workflows.executor import PipelineRunner

router = APIRouter(prefix="/uploads/{file_id}", tags=["workflows"])
logger = logging.getLogger(__name__)


@router.get("/state", response_model=WorkflowStateResponse)
async def get_state_endpoint(file_id: str, runner: PipelineRunner = Depends(get_pipeline_runner)):
    try:
        state = runner.get_state(file_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    return to_state_response(state, runner)


@router.post("/navigate", response_model=WorkflowStateResponse)
async def navigate_endpoint(
    file_id: str,
    request: NavigateStepRequest,
    runner: PipelineRunner = Depends(get_pipeline_runner),
):
    """
    Move to another workflow step.

    Forward moves are one step at a time and check the target step's
    preconditions; moving back to a step already reached is always allowed.
    """
    result = await runner.navigate(file_id, request.step)
    if not result.ok:
        raise_for_error(result)
    return to_state_response(result.value, runner)


@router.put("/validation-settings", response_model=WorkflowStateResponse)
async def update_validation_settings_endpoint(
    file_id: str,
    request: ValidationSettings,
    runner: PipelineRunner = Depends(get_pipeline_runner),
):
    result = await runner.update_validation_settings(file_id, request)
    if not result.ok:
        raise_for_error(result)
    return to_state_response(result.value, runner)


@router.post("/validate", response_model=WorkflowStateResponse)
async def validate_endpoint(
    file_id: str,
    request: ValidateRequest = ValidateRequest(),
    runner: PipelineRunner = Depends(get_pipeline_runner),
):
    """
    Validate the mapped data.

    Validation errors do not fail the request: the response carries the
    per-field results and ``error`` summarizes the error count.
    """
    result = await runner.validate(file_id, request.settings)
    if not result.ok:
        raise_for_error(result)
    return to_state_response(result.value, runner)


@router.post("/deploy", response_model=WorkflowStateResponse)
async def deploy_endpoint(file_id: str, runner: PipelineRunner = Depends(get_pipeline_runner)):
    """Write the validated rows into their destination tables."""
    result = await runner.deploy(file_id)
    if not result.ok:
        raise_for_error(result)
    return to_state_response(result.value, runner)


@router.post("/cancel")
async def cancel_endpoint(file_id: str, runner: PipelineRunner = Depends(get_pipeline_runner)):
    """Request cancellation of a running validation or deployment."""
    cancelled = runner.cancel(file_id)
    return {"success": cancelled, "file_id": file_id}
