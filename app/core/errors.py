"""
Error taxonomy and the Result convention used between pipeline stages.

Stages raise the typed exceptions below internally; the workflow orchestrator
converts them into ``Err`` values so callers can branch on ``ErrorKind``
without catching broad exceptions.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar, Union


T = TypeVar("T")


class ErrorKind(str, Enum):
    PARSE_ERROR = "parse_error"
    TYPE_DETECTION_AMBIGUOUS = "type_detection_ambiguous"
    MAPPING_CONFLICT = "mapping_conflict"
    VALIDATION_ERROR = "validation_error"
    DEPLOYMENT_ERROR = "deployment_error"
    INVALID_TRANSITION = "invalid_transition"
    PRECONDITION_FAILED = "precondition_failed"
    PIPELINE_BUSY = "pipeline_busy"
    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"
    STORAGE_ERROR = "storage_error"


class DataIntakeError(Exception):
    """Base class for all pipeline errors."""

    kind: ErrorKind = ErrorKind.PRECONDITION_FAILED

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ParseError(DataIntakeError):
    """Raised when a file cannot be turned into headers and data rows."""

    kind = ErrorKind.PARSE_ERROR


class TypeDetectionAmbiguous(DataIntakeError):
    """Signals that no detector was confident enough; callers fall back to text."""

    kind = ErrorKind.TYPE_DETECTION_AMBIGUOUS


class MappingConflict(DataIntakeError):
    """Two or more source columns target the same destination field."""

    kind = ErrorKind.MAPPING_CONFLICT


class ValidationError(DataIntakeError):
    """Validation produced blocking errors."""

    kind = ErrorKind.VALIDATION_ERROR


class DeploymentError(DataIntakeError):
    """A destination batch write failed."""

    kind = ErrorKind.DEPLOYMENT_ERROR


class InvalidTransition(DataIntakeError):
    kind = ErrorKind.INVALID_TRANSITION


class PreconditionFailed(DataIntakeError):
    kind = ErrorKind.PRECONDITION_FAILED


class PipelineBusy(DataIntakeError):
    """Another upload, validation or deployment run holds the file."""

    kind = ErrorKind.PIPELINE_BUSY


class OperationCancelled(DataIntakeError):
    kind = ErrorKind.CANCELLED


class NotFound(DataIntakeError):
    kind = ErrorKind.NOT_FOUND


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str
    details: Optional[Any] = None
    # State change that must still be applied (e.g. marking the file failed).
    fallback: Optional[Any] = None

    @property
    def ok(self) -> bool:
        return False

    @classmethod
    def from_exception(cls, error: DataIntakeError, fallback: Optional[Any] = None) -> "Err":
        return cls(kind=error.kind, message=error.message, details=error.details, fallback=fallback)


Result = Union[Ok[T], Err]
