"""
Validation rules and the validation engine for mapped data.

Rules are small frozen dataclasses, one per rule kind, each knowing how to
check a single cleaned value. ``ValidationEngine`` selects rules for every
mapped destination field and runs them over the rows in batches.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

from app.api.schemas.shared import (
    DatabaseField,
    FieldMapping,
    FieldType,
    ValidationIssue,
    ValidationResult,
    ValidationSettings,
)
from app.core.errors import OperationCancelled
from app.domain.imports.cleaning import clean_value
from app.domain.imports.duplicates import FIRST_DATA_ROW_NUMBER, detect_duplicates
from app.utils.date import is_parseable_date
from app.utils.phone import is_zip_code_length, strip_phone_formatting

logger = logging.getLogger(__name__)


# Preset regex patterns for the identifier and contact formats we validate
PRESET_PATTERNS = {
    "email": r"^[^\s@]+@[^\s@]+\.[^\s@]+$",
    "phone_us": (
        r"^(\+?1?[-.\s]?\(?[0-9]{3}\)?[-.\s]?[0-9]{3}[-.\s]?[0-9]{4}"
        r"|\([0-9]{3}\)\s?[0-9]{3}-[0-9]{4}"
        r"|[0-9]{3}-[0-9]{3}-[0-9]{4})$"
    ),
    "ssn": r"^\d{3}-\d{2}-\d{4}$",
    "ein": r"^\d{2}-\d{7}$",
    "tax_id": r"^(\d{2}-\d{7}|\d{3}-\d{2}-\d{4}|\d{9})$",
    "postal_code_us": r"^\d{5}(\d{4})?$",
    "postal_code_ca": r"^[A-Za-z]\d[A-Za-z]\s?\d[A-Za-z]\d$",
    "postal_code_uk": r"^[A-Za-z]{1,2}\d[A-Za-z\d]?\s?\d[A-Za-z]{2}$",
}

BOOLEAN_ENUM_VALUES = ("true", "false", "yes", "no", "1", "0", "y", "n")
POSTAL_FORMATS = ("us_zip", "canadian_postal", "uk_postal")

_CURRENCY_CHARS = re.compile(r"[$,\s]")

ProgressCallback = Callable[[int], None]


def _to_number(text: str) -> Optional[float]:
    cleaned = _CURRENCY_CHARS.sub("", text)
    if not cleaned:
        return None
    try:
        number = float(cleaned)
    except ValueError:
        return None
    if number != number:  # NaN
        return None
    return number


class ValidationRuleType(str, Enum):
    REQUIRED = "required"
    FORMAT = "format"
    POSTAL_CODE = "postal_code"
    ENUM = "enum"
    LENGTH = "length"
    RANGE = "range"


@dataclass(frozen=True)
class RequiredRule:
    field: str
    message: str
    kind = ValidationRuleType.REQUIRED

    def is_valid(self, text: str) -> bool:
        return text != ""


@dataclass(frozen=True)
class FormatRule:
    """Regex, date or numeric format check; empty values are left to RequiredRule."""

    field: str
    message: str
    pattern: Optional[str] = None
    exclude_zip_lengths: bool = False
    date_format: bool = False
    numeric: bool = False
    kind = ValidationRuleType.FORMAT

    def is_valid(self, text: str) -> bool:
        if not text:
            return True
        if self.pattern:
            if self.exclude_zip_lengths:
                cleaned = strip_phone_formatting(text)
                if cleaned.isdigit() and is_zip_code_length(cleaned):
                    return False
            if not re.match(self.pattern, text):
                return False
        if self.date_format and not is_parseable_date(text):
            return False
        if self.numeric and _to_number(text) is None:
            return False
        return True


@dataclass(frozen=True)
class PostalCodeRule:
    field: str
    message: str
    formats: Tuple[str, ...] = POSTAL_FORMATS
    kind = ValidationRuleType.POSTAL_CODE

    def is_valid(self, text: str) -> bool:
        if not text:
            return True
        for postal_format in self.formats:
            if postal_format == "us_zip" and re.match(PRESET_PATTERNS["postal_code_us"], re.sub(r"[-\s]", "", text)):
                return True
            if postal_format == "canadian_postal" and re.match(PRESET_PATTERNS["postal_code_ca"], text):
                return True
            if postal_format == "uk_postal" and re.match(PRESET_PATTERNS["postal_code_uk"], text):
                return True
        return False


@dataclass(frozen=True)
class EnumRule:
    field: str
    message: str
    values: Tuple[str, ...] = ()
    kind = ValidationRuleType.ENUM

    def is_valid(self, text: str) -> bool:
        if not text:
            return True
        lowered = text.lower()
        return any(lowered == allowed.lower() for allowed in self.values)


@dataclass(frozen=True)
class LengthRule:
    field: str
    message: str
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    kind = ValidationRuleType.LENGTH

    def is_valid(self, text: str) -> bool:
        if not text:
            return True
        if self.min_length is not None and len(text) < self.min_length:
            return False
        if self.max_length is not None and len(text) > self.max_length:
            return False
        return True


@dataclass(frozen=True)
class RangeRule:
    field: str
    message: str
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    kind = ValidationRuleType.RANGE

    def is_valid(self, text: str) -> bool:
        if not text:
            return True
        number = _to_number(text)
        if number is None:
            return False
        if self.minimum is not None and number < self.minimum:
            return False
        if self.maximum is not None and number > self.maximum:
            return False
        return True


ValidationRule = Union[RequiredRule, FormatRule, PostalCodeRule, EnumRule, LengthRule, RangeRule]


def _type_rule(field_name: str, data_type: FieldType):
    if data_type == FieldType.EMAIL:
        return FormatRule(field_name, f"{field_name} must be a valid email address", pattern=PRESET_PATTERNS["email"])
    if data_type == FieldType.PHONE:
        return FormatRule(
            field_name,
            f"{field_name} must be a valid phone number (not a zip code)",
            pattern=PRESET_PATTERNS["phone_us"],
            exclude_zip_lengths=True,
        )
    if data_type == FieldType.POSTAL_CODE:
        return PostalCodeRule(field_name, f"{field_name} must be a valid postal code")
    if data_type == FieldType.DATE:
        return FormatRule(field_name, f"{field_name} must be a valid date", date_format=True)
    if data_type in (FieldType.NUMBER, FieldType.DECIMAL):
        return FormatRule(field_name, f"{field_name} must be a valid number", numeric=True)
    if data_type == FieldType.BOOLEAN:
        return EnumRule(field_name, f"{field_name} must be a boolean value", values=BOOLEAN_ENUM_VALUES)
    if data_type == FieldType.SSN:
        return FormatRule(field_name, f"{field_name} must be a valid SSN (###-##-####)", pattern=PRESET_PATTERNS["ssn"])
    if data_type == FieldType.TAX_ID:
        return FormatRule(field_name, f"{field_name} must be a valid tax ID", pattern=PRESET_PATTERNS["tax_id"])
    return None


def create_validation_rules(
    field_name: str,
    data_type: FieldType,
    is_required: bool = False,
    max_length: Optional[int] = None,
    enum_values: Optional[Sequence[str]] = None,
) -> List[ValidationRule]:
    """
    Build the ordered rule list for a field.

    ``required`` comes first, then the rule implied by the data type, then the
    enum and length constraints carried by the destination field.
    """
    rules = []
    if is_required:
        rules.append(RequiredRule(field_name, f"{field_name} is required"))

    type_rule = _type_rule(field_name, FieldType(data_type))
    if type_rule is not None:
        rules.append(type_rule)

    if enum_values and FieldType(data_type) != FieldType.BOOLEAN:
        rules.append(
            EnumRule(
                field_name,
                f"{field_name} must be one of: {', '.join(enum_values)}",
                values=tuple(enum_values),
            )
        )
    if max_length:
        rules.append(
            LengthRule(field_name, f"{field_name} must be at most {max_length} characters", max_length=max_length)
        )
    return rules


def validate_value(value, rules: Sequence[ValidationRule], row_index: int = 0) -> List[ValidationIssue]:
    """Apply every rule in order and return the issues raised by the value."""
    text = "" if value is None else str(value).strip()
    issues = []
    for rule in rules:
        if not rule.is_valid(text):
            issues.append(
                ValidationIssue(
                    field=rule.field or "unknown_field",
                    row=row_index,
                    rule=rule.kind.value,
                    message=rule.message,
                    value=value,
                )
            )
    return issues


# Validator toggles on ValidationSettings keyed by the semantic kind they cover
_TOGGLES = {
    FieldType.EMAIL: "validate_emails",
    FieldType.PHONE: "validate_phones",
    FieldType.DATE: "validate_dates",
    FieldType.POSTAL_CODE: "validate_postal_codes",
    FieldType.DECIMAL: "validate_currency",
    FieldType.NUMBER: "validate_currency",
    FieldType.SSN: "validate_ssn",
    FieldType.TAX_ID: "validate_tax_id",
}


def resolve_validation_type(destination: DatabaseField) -> FieldType:
    """
    Work out which format a destination field should be validated as.

    The catalog stores identifiers and postal codes as plain text, so the
    field name decides for those.
    """
    name = destination.field.lower()
    if destination.type != FieldType.TEXT:
        return destination.type
    if "zip" in name or "postal" in name:
        return FieldType.POSTAL_CODE
    if "ssn" in name:
        return FieldType.SSN
    if name == "ein" or name.startswith("tax_id"):
        return FieldType.TAX_ID
    return FieldType.TEXT


@dataclass
class _FieldPlan:
    mapping: FieldMapping
    column_index: int
    rules: list
    required: bool
    is_phone: bool
    result: ValidationResult
    invalid_rows: int = 0
    issues_seen: int = 0


@dataclass
class ValidationEngine:
    """Validate mapped rows against the destination catalog and validation settings."""

    settings: ValidationSettings = field(default_factory=ValidationSettings)

    def _is_enabled(self, validation_type: FieldType) -> bool:
        toggle = _TOGGLES.get(validation_type)
        return True if toggle is None else bool(getattr(self.settings, toggle))

    def _plan_field(self, mapping: FieldMapping, column_index: int, destination: Optional[DatabaseField]) -> _FieldPlan:
        destination = destination or DatabaseField(
            table=mapping.target_table, field=mapping.target_field, required=mapping.required
        )
        validation_type = resolve_validation_type(destination)
        if not self._is_enabled(validation_type):
            logger.debug("Validator for %s disabled by settings", mapping.source_column)
            validation_type = FieldType.TEXT

        rules = create_validation_rules(
            mapping.source_column,
            validation_type,
            destination.required,
            max_length=destination.max_length,
            enum_values=destination.enum_values,
        )
        return _FieldPlan(
            mapping=mapping,
            column_index=column_index,
            rules=rules,
            required=destination.required,
            is_phone=validation_type == FieldType.PHONE,
            result=ValidationResult(field=mapping.source_column),
        )

    def _record(self, plan: _FieldPlan, issue: ValidationIssue) -> None:
        target = plan.result.errors if issue.severity == "error" else plan.result.warnings
        plan.issues_seen += 1
        if len(target) < self.settings.max_errors:
            target.append(issue)

    def _check_cell(self, plan: _FieldPlan, row: Sequence[str], row_number: int) -> bool:
        raw = row[plan.column_index] if plan.column_index < len(row) else ""
        value = clean_value(raw, self.settings, is_phone=plan.is_phone)

        # The missing-data policy only applies to optional fields; an empty
        # required cell always reaches RequiredRule.
        if value == "" and not plan.required:
            if self.settings.handle_missing_data != "default":
                return True
            value = clean_value(self.settings.default_value, self.settings, is_phone=plan.is_phone)

        issues = validate_value(value, plan.rules, row_number)
        for issue in issues:
            self._record(plan, issue)
        return not issues

    def _missing_columns(self, plans: Sequence[_FieldPlan], row: Sequence[str]) -> List[_FieldPlan]:
        missing = []
        for plan in plans:
            raw = row[plan.column_index] if plan.column_index < len(row) else ""
            if clean_value(raw, self.settings) == "":
                missing.append(plan)
        return missing

    def validate_data(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        mappings: Sequence[FieldMapping],
        catalog,
        progress: Optional[ProgressCallback] = None,
        cancel_token=None,
    ) -> List[ValidationResult]:
        """
        Validate every mapped column and, when enabled, detect duplicate rows.

        Rows are processed in ``batch_size`` chunks; ``progress`` receives a
        percentage after each chunk and ``cancel_token`` is checked between
        chunks.

        Raises:
            OperationCancelled: If the token is cancelled between batches
        """
        header_positions: Dict[str, int] = {header: index for index, header in enumerate(headers)}
        plans: List[_FieldPlan] = []
        results: List[ValidationResult] = []

        for mapping in mappings:
            if not mapping.is_mapped:
                continue
            column_index = header_positions.get(mapping.source_column)
            if column_index is None:
                results.append(
                    ValidationResult(
                        field=mapping.source_column,
                        errors=[
                            ValidationIssue(
                                field=mapping.source_column,
                                row=0,
                                rule="column",
                                message=f"Column '{mapping.source_column}' not found",
                            )
                        ],
                    )
                )
                continue
            destination = catalog.find_field(mapping.target_table, mapping.target_field) if catalog else None
            plans.append(self._plan_field(mapping, column_index, destination))

        total = len(rows)
        batch_size = max(1, self.settings.batch_size)
        removed_rows: Set[int] = set()

        for start in range(0, total, batch_size):
            if cancel_token is not None and cancel_token.is_cancelled():
                raise OperationCancelled("Validation cancelled")

            for offset, row in enumerate(rows[start:start + batch_size]):
                row_index = start + offset
                row_number = row_index + FIRST_DATA_ROW_NUMBER

                if self.settings.handle_missing_data == "remove_row":
                    missing = self._missing_columns(plans, row)
                    if missing:
                        removed_rows.add(row_index)
                        for plan in missing:
                            self._record(
                                plan,
                                ValidationIssue(
                                    field=plan.mapping.source_column,
                                    row=row_number,
                                    rule="missing_data",
                                    message=f"Row {row_number} removed: missing value for {plan.mapping.source_column}",
                                    severity="warning",
                                ),
                            )
                        continue

                for plan in plans:
                    if not self._check_cell(plan, row, row_number):
                        plan.invalid_rows += 1

            if progress is not None:
                progress(int(min(start + batch_size, total) * 100 / total))

        for plan in plans:
            plan.result.record_count = total
            plan.result.valid_count = total - len(removed_rows) - plan.invalid_rows
            if plan.issues_seen > self.settings.max_errors:
                logger.info(
                    "Field %s produced %d issues; reporting the first %d",
                    plan.mapping.source_column,
                    plan.issues_seen,
                    self.settings.max_errors,
                )
            results.append(plan.result)

        if self.settings.enable_duplicate_detection:
            duplicate_result = detect_duplicates(headers, rows, self.settings, exclude_rows=removed_rows)
            if duplicate_result is not None:
                results.append(duplicate_result)

        error_count = count_errors(results)
        logger.info("Validated %d rows across %d fields: %d errors", total, len(plans), error_count)
        return results


def count_errors(results: Sequence[ValidationResult]) -> int:
    return sum(len(result.errors) for result in results)


def has_blocking_errors(results: Sequence[ValidationResult]) -> bool:
    """Deployment requires zero errors; warnings never block."""
    return count_errors(results) > 0


def find_incomplete_rows(
    headers: Sequence[str],
    rows: Sequence[Sequence[str]],
    mappings: Sequence[FieldMapping],
    validation_settings: ValidationSettings,
) -> List[int]:
    """Indices of rows with an empty mapped cell, as dropped by the ``remove_row`` policy."""
    header_positions = {header: index for index, header in enumerate(headers)}
    indices = [
        header_positions[m.source_column]
        for m in mappings
        if m.is_mapped and m.source_column in header_positions
    ]
    incomplete = []
    for row_index, row in enumerate(rows):
        for index in indices:
            raw = row[index] if index < len(row) else ""
            if clean_value(raw, validation_settings) == "":
                incomplete.append(row_index)
                break
    return incomplete
