"""
State and side-effect descriptions for the import workflow.

``WorkflowState`` is an immutable snapshot; orchestrator operations return a
new snapshot together with the intents the runner must carry out.
"""
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple, Union

from app.api.schemas.shared import (
    FieldMapping,
    FileData,
    UploadStatus,
    UploadedFile,
    ValidationResult,
    ValidationSettings,
    WorkflowStep,
)

STEP_ORDER: Tuple[WorkflowStep, ...] = (
    WorkflowStep.UPLOAD,
    WorkflowStep.STAGING,
    WorkflowStep.MAPPING,
    WorkflowStep.VALIDATION,
    WorkflowStep.REVIEW,
    WorkflowStep.DEPLOY,
)

STATUS_ORDER: Tuple[UploadStatus, ...] = (
    UploadStatus.UPLOADED,
    UploadStatus.STAGED,
    UploadStatus.MAPPED,
    UploadStatus.VALIDATED,
    UploadStatus.READY,
    UploadStatus.DEPLOYED,
)

TERMINAL_STATUSES = {UploadStatus.DEPLOYED, UploadStatus.FAILED}


def step_index(step: WorkflowStep) -> int:
    return STEP_ORDER.index(WorkflowStep(step))


def status_index(status: UploadStatus) -> int:
    return STATUS_ORDER.index(UploadStatus(status))


@dataclass(frozen=True)
class StoreBlob:
    key: str
    content: bytes


@dataclass(frozen=True)
class RecordUpload:
    upload: UploadedFile


@dataclass(frozen=True)
class PersistStatus:
    file_id: str
    status: UploadStatus
    total_rows: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class WriteRows:
    table: str
    records: Tuple[Dict[str, Any], ...]


Intent = Union[StoreBlob, RecordUpload, PersistStatus, WriteRows]


@dataclass(frozen=True)
class WorkflowState:
    current_step: WorkflowStep = WorkflowStep.UPLOAD
    furthest_step: WorkflowStep = WorkflowStep.UPLOAD
    file: Optional[UploadedFile] = None
    file_data: Optional[FileData] = None
    field_mappings: Tuple[FieldMapping, ...] = ()
    validation_results: Tuple[ValidationResult, ...] = ()
    validation_settings: ValidationSettings = field(default_factory=ValidationSettings)
    progress: int = 0
    is_processing: bool = False
    error: Optional[str] = None
    success: Optional[str] = None

    @property
    def file_id(self) -> Optional[str]:
        return self.file.file_id if self.file else None

    @property
    def status(self) -> Optional[UploadStatus]:
        return self.file.upload_status if self.file else None

    def evolve(self, **changes) -> "WorkflowState":
        return replace(self, **changes)


@dataclass(frozen=True)
class Transition:
    state: WorkflowState
    intents: Tuple[Intent, ...] = ()


class CancellationToken:
    """Cooperative cancellation flag checked between batches."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class DeploymentSummary:
    records_per_table: Dict[str, int] = field(default_factory=dict)

    @property
    def total_records(self) -> int:
        return sum(self.records_per_table.values())
