"""
Pure orchestration of the import workflow.

Every operation takes the current ``WorkflowState`` plus its input and
returns ``Ok(Transition)`` or ``Err``. Nothing here performs I/O: blob
writes, status updates and row writes are returned as intents for
``PipelineRunner`` to execute.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

from app.api.schemas.shared import (
    FileData,
    UploadStatus,
    UploadedFile,
    ValidationResult,
    ValidationSettings,
    WorkflowStep,
)
from app.core.config import settings
from app.core.errors import (
    DataIntakeError,
    Err,
    InvalidTransition,
    MappingConflict as MappingConflictError,
    Ok,
    OperationCancelled,
    ParseError,
    PreconditionFailed,
    Result,
    ValidationError,
)
from app.domain.imports.catalog import DestinationCatalog
from app.domain.imports.deployment import plan_deployment
from app.domain.imports.mapper import (
    auto_map_remaining_fields,
    detect_mapping_conflicts,
    generate_smart_mappings,
    update_mapping as apply_mapping_update,
)
from app.domain.imports.processors.csv_processor import detect_file_type, parse_file
from app.domain.imports.type_detection import detect_column_types
from app.domain.imports.validators import (
    ValidationEngine,
    count_errors,
    find_incomplete_rows,
    has_blocking_errors,
)
from app.domain.workflows.models import (
    TERMINAL_STATUSES,
    CancellationToken,
    DeploymentSummary,
    PersistStatus,
    RecordUpload,
    StoreBlob,
    Transition,
    WorkflowState,
    status_index,
    step_index,
)
from app.integrations.storage import build_storage_key

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowOrchestrator:
    """Decides workflow transitions for a single uploaded file."""

    def __init__(self, catalog: DestinationCatalog):
        self.catalog = catalog

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _cleared(state: WorkflowState) -> WorkflowState:
        return state.evolve(error=None, success=None)

    @staticmethod
    def _reject(state: WorkflowState, error: DataIntakeError) -> Err:
        """Refuse an operation, keeping the state but surfacing the message."""
        logger.info("Rejected workflow operation: %s (%s)", error.message, error.kind.value)
        fallback = Transition(state.evolve(error=error.message, success=None, is_processing=False))
        return Err.from_exception(error, fallback=fallback)

    @staticmethod
    def _advance_status(state: WorkflowState, status: UploadStatus, **persist) -> Transition:
        """
        Move the file status forward; statuses never move backwards and
        terminal statuses never change here.
        """
        upload = state.file
        if upload is None or upload.upload_status in TERMINAL_STATUSES:
            return Transition(state)
        if status_index(status) <= status_index(upload.upload_status) and not persist:
            return Transition(state)

        new_status = status if status_index(status) > status_index(upload.upload_status) else upload.upload_status
        changes = {"upload_status": new_status, "last_modified": _utcnow()}
        if persist.get("total_rows") is not None:
            changes["total_rows"] = persist["total_rows"]
        if new_status in (UploadStatus.STAGED, UploadStatus.DEPLOYED):
            changes["processed_at"] = changes["last_modified"]
        updated = upload.model_copy(update=changes)
        intent = PersistStatus(file_id=upload.file_id, status=new_status, **persist)
        return Transition(state.evolve(file=updated), (intent,))

    @staticmethod
    def _require_active_file(state: WorkflowState) -> Optional[DataIntakeError]:
        if state.file is None:
            return PreconditionFailed("No file has been uploaded")
        if state.file.upload_status in TERMINAL_STATUSES:
            return InvalidTransition(f"File is already {state.file.upload_status.value}")
        return None

    def _invalidate_validation(self, state: WorkflowState, step: WorkflowStep) -> Transition:
        """
        Discard validation results after an input to validation changed.

        Steps past ``step`` become unreachable until validation runs again, and
        a ``validated`` or ``ready`` file drops back to ``mapped``.
        """
        state = state.evolve(validation_results=())
        if step_index(state.furthest_step) > step_index(step):
            state = state.evolve(furthest_step=step)
        if step_index(state.current_step) > step_index(step):
            state = state.evolve(current_step=step)

        upload = state.file
        if upload is None or upload.upload_status not in (UploadStatus.VALIDATED, UploadStatus.READY):
            return Transition(state)
        updated = upload.model_copy(update={"upload_status": UploadStatus.MAPPED, "last_modified": _utcnow()})
        intent = PersistStatus(file_id=upload.file_id, status=UploadStatus.MAPPED)
        return Transition(state.evolve(file=updated), (intent,))

    def _move_to(self, state: WorkflowState, target: WorkflowStep) -> WorkflowState:
        furthest = target if step_index(target) > step_index(state.furthest_step) else state.furthest_step
        return state.evolve(current_step=target, furthest_step=furthest, progress=0)

    def _auto_advance_to_staging(self, state: WorkflowState) -> WorkflowState:
        """Leave the upload step once the file is staged and its data is present."""
        if (
            state.current_step == WorkflowStep.UPLOAD
            and state.file_data is not None
            and state.status is not None
            and state.status != UploadStatus.FAILED
            and status_index(state.status) >= status_index(UploadStatus.STAGED)
        ):
            return self._move_to(state, WorkflowStep.STAGING)
        return state

    def _check_step_preconditions(self, state: WorkflowState, target: WorkflowStep) -> Optional[DataIntakeError]:
        if target in (WorkflowStep.STAGING, WorkflowStep.MAPPING):
            if state.file_data is None:
                return PreconditionFailed("Process a file before continuing")
        elif target == WorkflowStep.VALIDATION:
            if state.file_data is None:
                return PreconditionFailed("Process a file before continuing")
            if not any(m.is_mapped for m in state.field_mappings):
                return PreconditionFailed("Map at least one column before validating")
            conflicts = detect_mapping_conflicts(state.field_mappings)
            if conflicts:
                return MappingConflictError(
                    "Resolve mapping conflicts before validating: "
                    + "; ".join(f"{c.target_table}.{c.target_field}" for c in conflicts),
                    details=[c.model_dump() for c in conflicts],
                )
        elif target in (WorkflowStep.REVIEW, WorkflowStep.DEPLOY):
            if state.file is None or state.file.total_rows is None:
                return PreconditionFailed("A processed file with a known row count is required")
            if not state.validation_results:
                return PreconditionFailed("Run validation before reviewing the import")
            if has_blocking_errors(state.validation_results):
                return ValidationError(
                    f"Validation found {count_errors(state.validation_results)} errors; fix them before continuing"
                )
        return None

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------

    def upload(
        self,
        state: WorkflowState,
        file_name: str,
        content: bytes,
        content_type: Optional[str] = None,
        file_id: Optional[str] = None,
    ) -> Result:
        """Register a new file; any previous workflow for this session is replaced."""
        try:
            kind = detect_file_type(file_name)
            if not content:
                raise ParseError("File is empty")
        except ParseError as e:
            return self._reject(state, e)

        file_id = file_id or uuid.uuid4().hex
        storage_key = build_storage_key(file_id, file_name)
        upload = UploadedFile(
            file_id=file_id,
            original_filename=file_name,
            file_size=len(content),
            file_type=content_type or kind,
            upload_status=UploadStatus.UPLOADED,
            storage_key=storage_key,
            uploaded_at=_utcnow(),
        )
        new_state = WorkflowState(
            file=upload,
            validation_settings=state.validation_settings,
            success=f"Uploaded {file_name}",
        )
        logger.info("Upload registered: %s (%d bytes) as %s", file_name, len(content), file_id)
        return Ok(Transition(new_state, (StoreBlob(storage_key, content), RecordUpload(upload))))

    def process(self, state: WorkflowState, content: bytes) -> Result:
        """Parse the raw file, detect column types and run the initial auto-map."""
        problem = self._require_active_file(state)
        if problem:
            return self._reject(state, problem)

        state = self._cleared(state)
        try:
            file_type, headers, rows = parse_file(content, state.file.original_filename)
        except ParseError as e:
            logger.warning("Parsing %s failed: %s", state.file.original_filename, e.message)
            failed = self.fail(state, e.message)
            return Err.from_exception(e, fallback=failed.value if failed.ok else None)

        column_types = detect_column_types(headers, rows)
        file_data = FileData(
            headers=headers,
            rows=rows,
            column_types=column_types,
            file_name=state.file.original_filename,
            file_type=file_type,
        )
        mappings = generate_smart_mappings(headers, self.catalog.get_all_database_fields())

        state = state.evolve(
            file_data=file_data,
            field_mappings=tuple(mappings),
            validation_results=(),
            success=f"Processed {len(rows)} rows and {len(headers)} columns",
        )
        metadata = {
            "headers": headers,
            "column_types": [c.model_dump(mode="json") for c in column_types],
            "preview_rows": rows[: settings.preview_row_limit],
        }
        transition = self._advance_status(state, UploadStatus.STAGED, total_rows=len(rows), metadata=metadata)
        return Ok(Transition(self._auto_advance_to_staging(transition.state), transition.intents))

    def update_mapping(self, state: WorkflowState, source_column: str, target_table: str, target_field: str) -> Result:
        """Manually set or clear one column's destination; invalidates earlier validation."""
        problem = self._require_active_file(state) or (
            PreconditionFailed("Process a file before mapping") if state.file_data is None else None
        )
        if problem:
            return self._reject(state, problem)

        try:
            mappings = apply_mapping_update(
                state.field_mappings, source_column, target_table, target_field, self.catalog
            )
        except KeyError:
            return self._reject(state, PreconditionFailed(f"Unknown source column '{source_column}'"))
        except ValueError as e:
            return self._reject(state, PreconditionFailed(str(e)))

        state = self._cleared(state).evolve(field_mappings=tuple(mappings))
        return Ok(self._invalidate_validation(state, WorkflowStep.MAPPING))

    def auto_map_remaining(self, state: WorkflowState) -> Result:
        problem = self._require_active_file(state) or (
            PreconditionFailed("Process a file before mapping") if state.file_data is None else None
        )
        if problem:
            return self._reject(state, problem)

        before = sum(1 for m in state.field_mappings if m.is_mapped)
        mappings = auto_map_remaining_fields(state.field_mappings, self.catalog.get_all_database_fields())
        added = sum(1 for m in mappings if m.is_mapped) - before
        state = self._cleared(state).evolve(
            field_mappings=tuple(mappings),
            success=f"Auto-mapped {added} additional columns",
        )
        return Ok(Transition(state))

    def update_validation_settings(self, state: WorkflowState, validation_settings: ValidationSettings) -> Result:
        """Replace the validation settings; earlier validation results no longer apply."""
        problem = self._require_active_file(state)
        if problem:
            return self._reject(state, problem)
        state = self._cleared(state).evolve(validation_settings=validation_settings)
        return Ok(self._invalidate_validation(state, WorkflowStep.VALIDATION))

    def navigate_step(self, state: WorkflowState, target: WorkflowStep) -> Result:
        """
        Move to an adjacent step, or jump back to any step already reached.

        Entering validation marks the file ``mapped`` and entering review
        marks it ``ready``.
        """
        target = WorkflowStep(target)
        current, reached = step_index(state.current_step), step_index(state.furthest_step)
        wanted = step_index(target)

        if wanted == current:
            return Ok(Transition(self._cleared(state)))
        if abs(wanted - current) != 1 and wanted > reached:
            return self._reject(
                state,
                InvalidTransition(f"Cannot jump from {state.current_step.value} to {target.value}"),
            )

        problem = self._check_step_preconditions(state, target)
        if problem:
            return self._reject(state, problem)

        state = self._move_to(self._cleared(state), target)
        if target == WorkflowStep.VALIDATION:
            return Ok(self._advance_status(state, UploadStatus.MAPPED))
        if target == WorkflowStep.REVIEW:
            return Ok(self._advance_status(state, UploadStatus.READY))
        return Ok(Transition(state))

    def validate(
        self,
        state: WorkflowState,
        validation_settings: Optional[ValidationSettings] = None,
        progress: Optional[Callable[[int], None]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Result:
        """Run the validation engine; the file becomes ``validated`` only with zero errors."""
        problem = self._require_active_file(state)
        if problem is None and state.current_step != WorkflowStep.VALIDATION:
            problem = InvalidTransition("Validation can only run from the validation step")
        if problem is None:
            problem = self._check_step_preconditions(state, WorkflowStep.VALIDATION)
        if problem:
            return self._reject(state, problem)

        validation_settings = validation_settings or state.validation_settings
        state = self._cleared(state).evolve(validation_settings=validation_settings)
        engine = ValidationEngine(validation_settings)
        try:
            results = engine.validate_data(
                state.file_data.headers,
                state.file_data.rows,
                state.field_mappings,
                self.catalog,
                progress=progress,
                cancel_token=cancel_token,
            )
        except OperationCancelled as e:
            return self._reject(state, e)

        return Ok(self.complete_validation(state, results))

    def complete_validation(self, state: WorkflowState, results: Sequence[ValidationResult]) -> Transition:
        state = state.evolve(validation_results=tuple(results), is_processing=False, progress=100)
        errors = count_errors(results)
        if errors:
            return Transition(state.evolve(error=f"Validation found {errors} errors"))
        warnings = sum(len(r.warnings) for r in results)
        state = state.evolve(success=f"Validation passed with {warnings} warnings")
        return self._advance_status(state, UploadStatus.VALIDATED)

    def deploy(self, state: WorkflowState) -> Result:
        """Plan the deployment; the returned intents are the per-table row writes."""
        problem = self._require_active_file(state)
        if problem is None and state.current_step != WorkflowStep.DEPLOY:
            problem = InvalidTransition("Deployment can only run from the deploy step")
        if problem is None:
            problem = self._check_step_preconditions(state, WorkflowStep.DEPLOY)
        if problem:
            return self._reject(state, problem)

        file_data = state.file_data
        excluded = []
        if state.validation_settings.handle_missing_data == "remove_row":
            excluded = find_incomplete_rows(
                file_data.headers, file_data.rows, state.field_mappings, state.validation_settings
            )
        default_value = None
        if state.validation_settings.handle_missing_data == "default":
            default_value = state.validation_settings.default_value or None
        plan = plan_deployment(
            file_data.headers,
            file_data.rows,
            state.field_mappings,
            exclude_rows=excluded,
            default_value=default_value,
        )
        if not plan:
            return self._reject(state, PreconditionFailed("No mapped columns to deploy"))
        state = self._cleared(state).evolve(is_processing=True, progress=0)
        return Ok(Transition(state, tuple(plan)))

    def complete_deploy(self, state: WorkflowState, summary: DeploymentSummary) -> Result:
        state = self._cleared(state).evolve(is_processing=False, progress=100)
        tables = ", ".join(f"{table} ({count})" for table, count in summary.records_per_table.items())
        state = state.evolve(success=f"Deployed {summary.total_records} records: {tables}")
        return Ok(
            self._advance_status(
                state,
                UploadStatus.DEPLOYED,
                metadata={"records_per_table": dict(summary.records_per_table)},
            )
        )

    def fail(self, state: WorkflowState, message: str) -> Result:
        """Mark the file failed; allowed from any non-terminal status."""
        if state.file is None:
            return self._reject(state, PreconditionFailed("No file to mark as failed"))
        if state.file.upload_status in TERMINAL_STATUSES:
            return self._reject(state, InvalidTransition(f"File is already {state.file.upload_status.value}"))

        now = _utcnow()
        updated = state.file.model_copy(
            update={
                "upload_status": UploadStatus.FAILED,
                "error_message": message,
                "last_modified": now,
                "processed_at": now,
            }
        )
        new_state = state.evolve(file=updated, error=message, success=None, is_processing=False)
        logger.warning("File %s marked failed: %s", updated.file_id, message)
        return Ok(
            Transition(
                new_state,
                (PersistStatus(file_id=updated.file_id, status=UploadStatus.FAILED, error_message=message),),
            )
        )

    def mapping_conflicts(self, state: WorkflowState) -> List:
        return detect_mapping_conflicts(state.field_mappings)
