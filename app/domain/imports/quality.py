"""
Summary figures for the mapping and validation steps.

These are derived on demand from the workflow state and never stored.
"""
import math
from typing import Sequence

from app.api.schemas.shared import ColumnType, FieldMapping, ValidationResult, ValidationSummary

# Warnings weigh half as much as errors in the quality score.
WARNING_WEIGHT = 0.5
# Issue budget per column before the issue score reaches zero.
MAX_ISSUES_PER_COLUMN = 2


def _percent(part: int, whole: int) -> int:
    # rounds half up
    return min(100, math.floor(part * 100 / whole + 0.5))


def summarize_validation(
    mappings: Sequence[FieldMapping],
    results: Sequence[ValidationResult],
) -> ValidationSummary:
    """
    Count how the validated fields came out.

    Args:
        mappings: Current column mappings; only mapped ones count as fields
        results: Validation results, one per validated field

    Returns:
        ValidationSummary where ``validation_score`` is the share of fields
        that passed without errors or warnings (0-100), and ``can_proceed``
        is true once something was validated and no field has errors
    """
    total_fields = sum(1 for m in mappings if m.is_mapped)
    error_fields = sum(1 for r in results if r.errors)
    warning_fields = sum(1 for r in results if r.warnings and not r.errors)
    passed_fields = sum(1 for r in results if not r.errors and not r.warnings)
    validated_fields = len(results)

    return ValidationSummary(
        total_fields=total_fields,
        validated_fields=validated_fields,
        passed_fields=passed_fields,
        warning_fields=warning_fields,
        error_fields=error_fields,
        total_errors=sum(len(r.errors) for r in results),
        total_warnings=sum(len(r.warnings) for r in results),
        validation_score=passed_fields * 100 / total_fields if total_fields else 0.0,
        can_proceed=error_fields == 0 and validated_fields > 0,
    )


def calculate_data_quality(column_types: Sequence[ColumnType], results: Sequence[ValidationResult]) -> float:
    """
    Score the data between 0 and 1.

    The score averages the mean type-detection confidence with an issue
    score that falls from 1 to 0 as weighted issues approach
    ``MAX_ISSUES_PER_COLUMN`` per column.

    Args:
        column_types: Detected column types
        results: Validation results so far (may be empty)

    Returns:
        0.0 when no columns were detected, otherwise the combined score
    """
    if not column_types:
        return 0.0

    average_confidence = sum(c.confidence for c in column_types) / len(column_types)
    errors = sum(len(r.errors) for r in results)
    warnings = sum(len(r.warnings) for r in results)
    weighted_issues = errors + warnings * WARNING_WEIGHT
    issue_score = max(0.0, 1 - weighted_issues / (len(column_types) * MAX_ISSUES_PER_COLUMN))
    return (average_confidence + issue_score) / 2


def calculate_mapping_progress(mappings: Sequence[FieldMapping]) -> int:
    """Percentage of source columns that have a destination."""
    if not mappings:
        return 0
    return _percent(sum(1 for m in mappings if m.is_mapped), len(mappings))


def calculate_validation_progress(mappings: Sequence[FieldMapping], results: Sequence[ValidationResult]) -> int:
    """Percentage of mapped fields with a validation result, capped at 100."""
    mapped = sum(1 for m in mappings if m.is_mapped)
    if not mapped:
        return 0
    return _percent(len(results), mapped)
