import logging
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from typing_extensions import Annotated

from app.core.config import settings


RESERVED_SYSTEM_TABLES = {
    # Upload tracking infrastructure
    "uploads",
}

_RESERVED_TABLES_LOWER = {name.lower() for name in RESERVED_SYSTEM_TABLES}
logger = logging.getLogger(__name__)


def is_reserved_system_table(table_name: str) -> bool:
    """Return True when the supplied table name collides with a reserved system table."""
    if not table_name:
        return False
    return table_name.strip().lower() in _RESERVED_TABLES_LOWER


def _clamp_confidence(value: float) -> float:
    if value is None:
        return 0.0
    return max(0.0, min(1.0, float(value)))


Confidence = Annotated[float, AfterValidator(_clamp_confidence)]


class FieldType(str, Enum):
    """Semantic types shared by detected columns and catalog fields."""
    TEXT = "text"
    NUMBER = "number"
    DECIMAL = "decimal"
    DATE = "date"
    EMAIL = "email"
    PHONE = "phone"
    POSTAL_CODE = "postal_code"
    BOOLEAN = "boolean"
    ENUM = "enum"
    SSN = "ssn"
    TAX_ID = "tax_id"


class UploadStatus(str, Enum):
    UPLOADED = "uploaded"
    STAGED = "staged"
    MAPPED = "mapped"
    VALIDATED = "validated"
    READY = "ready"
    DEPLOYED = "deployed"
    FAILED = "failed"


class WorkflowStep(str, Enum):
    UPLOAD = "upload"
    STAGING = "staging"
    MAPPING = "mapping"
    VALIDATION = "validation"
    REVIEW = "review"
    DEPLOY = "deploy"


class UploadedFile(BaseModel):
    file_id: str
    original_filename: str
    file_size: int
    file_type: str
    upload_status: UploadStatus = UploadStatus.UPLOADED
    total_rows: Optional[int] = None
    storage_key: Optional[str] = None
    uploaded_at: datetime
    processed_at: Optional[datetime] = None
    last_modified: Optional[datetime] = None
    error_message: Optional[str] = None


class ColumnType(BaseModel):
    name: str
    type: FieldType = FieldType.TEXT
    confidence: Confidence = 0.0
    sample: List[str] = Field(default_factory=list)
    null_count: int = 0
    detected_patterns: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)


class FileData(BaseModel):
    model_config = ConfigDict(frozen=True)

    headers: List[str]
    rows: List[List[str]]
    column_types: List[ColumnType] = Field(default_factory=list)
    file_name: str = ""
    file_type: Literal["csv", "excel"] = "csv"

    @property
    def total_rows(self) -> int:
        return len(self.rows)


class FieldMapping(BaseModel):
    source_column: str
    target_table: str = ""
    target_field: str = ""
    required: bool = False
    confidence: Confidence = 0.0
    validated: bool = False

    @property
    def is_mapped(self) -> bool:
        return bool(self.target_table) and bool(self.target_field)


class DatabaseField(BaseModel):
    table: str
    field: str
    type: FieldType = FieldType.TEXT
    required: bool = False
    description: str = ""
    category: str = ""
    max_length: Optional[int] = None
    enum_values: Optional[List[str]] = None
    is_custom_field: bool = False


class ScoredField(DatabaseField):
    """A catalog field paired with the confidence of matching a source column."""
    confidence: Confidence = 0.0


class MappingConflict(BaseModel):
    target_table: str
    target_field: str
    source_columns: List[str]


class ValidationIssue(BaseModel):
    field: str
    row: int
    rule: str
    message: str
    value: Optional[Any] = None
    severity: Literal["error", "warning"] = "error"


class ValidationResult(BaseModel):
    field: str
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)
    record_count: int = 0
    valid_count: int = 0


class DuplicateGroup(BaseModel):
    key: str
    rows: List[int]


class ValidationSettings(BaseModel):
    validate_emails: bool = True
    validate_phones: bool = True
    validate_dates: bool = True
    validate_postal_codes: bool = True
    validate_currency: bool = True
    validate_ssn: bool = True
    validate_tax_id: bool = True

    enable_duplicate_detection: bool = False
    duplicate_match_type: Literal["100_percent"] = "100_percent"
    duplicate_action: Literal["skip", "error", "merge", "flag"] = "skip"
    duplicate_columns: List[str] = Field(default_factory=list)

    handle_missing_data: Literal["skip", "error", "default", "remove_row"] = "skip"
    default_value: str = ""
    trim_whitespace: bool = True
    standardize_case: Literal["none", "upper", "lower", "title"] = "none"
    remove_special_characters: bool = False

    max_errors: int = Field(default_factory=lambda: settings.validation_max_errors, ge=1)
    batch_size: int = Field(default_factory=lambda: settings.validation_batch_size, ge=1)


class ValidationSummary(BaseModel):
    total_fields: int = 0
    validated_fields: int = 0
    passed_fields: int = 0
    warning_fields: int = 0
    error_fields: int = 0
    total_errors: int = 0
    total_warnings: int = 0
    validation_score: float = 0.0
    can_proceed: bool = False


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------

class WorkflowStateResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    current_step: WorkflowStep
    progress: int = 0
    file: Optional[UploadedFile] = None
    column_types: List[ColumnType] = Field(default_factory=list)
    field_mappings: List[FieldMapping] = Field(default_factory=list)
    mapping_conflicts: List[MappingConflict] = Field(default_factory=list)
    validation_results: List[ValidationResult] = Field(default_factory=list)
    preview_rows: List[List[str]] = Field(default_factory=list)
    validation_summary: ValidationSummary = Field(default_factory=ValidationSummary)
    data_quality: float = 0.0
    mapping_progress: int = 0
    validation_progress: int = 0


class UpdateMappingRequest(BaseModel):
    source_column: str
    target_table: str = ""
    target_field: str = ""


class NavigateStepRequest(BaseModel):
    step: WorkflowStep


class ValidateRequest(BaseModel):
    settings: Optional[ValidationSettings] = None


class MappingSuggestionsResponse(BaseModel):
    source_column: str
    suggestions: List[ScoredField]


class CatalogResponse(BaseModel):
    version: str
    tables: List[str]
    fields: List[DatabaseField]


class AddCustomFieldRequest(BaseModel):
    table: str
    field: str
    type: FieldType = FieldType.TEXT
    required: bool = False
    description: str = ""
    category: str = "Custom Fields"
    max_length: Optional[int] = 255
    enum_values: List[str] = Field(default_factory=list)
