"""
Duplicate row detection over a set of key columns.

Rows are bucketed by their composite key in a single pass, so the cost is
linear in the number of rows.
"""
import logging
from typing import AbstractSet, Dict, List, Optional, Sequence

from app.api.schemas.shared import DuplicateGroup, ValidationIssue, ValidationResult, ValidationSettings
from app.domain.imports.cleaning import standardize_case

logger = logging.getLogger(__name__)

DUPLICATE_RESULT_FIELD = "Duplicate Detection"
KEY_SEPARATOR = "|"

# Data rows start on spreadsheet row 2; row 1 is the header.
FIRST_DATA_ROW_NUMBER = 2


def build_duplicate_key(row: Sequence[str], key_indices: Sequence[int], validation_settings: ValidationSettings) -> str:
    """
    Build the composite key of one row.

    Args:
        row: Raw cell values of the row
        key_indices: Column positions that make up the key, in order
        validation_settings: Supplies the case standardisation applied to each part

    Returns:
        The trimmed, case-standardised key parts joined with ``KEY_SEPARATOR``
    """
    parts = []
    for index in key_indices:
        value = row[index] if index < len(row) else ""
        value = (value or "").strip()
        parts.append(standardize_case(value, validation_settings.standardize_case))
    return KEY_SEPARATOR.join(parts)


def find_duplicate_groups(
    rows: Sequence[Sequence[str]],
    key_indices: Sequence[int],
    validation_settings: ValidationSettings,
    exclude_rows: AbstractSet[int] = frozenset(),
) -> List[DuplicateGroup]:
    """
    Group row numbers by composite key; buckets with two or more rows are duplicates.

    Rows whose index is in ``exclude_rows`` are ignored, and the remaining rows
    keep their spreadsheet row numbers.
    """
    buckets: Dict[str, List[int]] = {}
    for offset, row in enumerate(rows):
        if offset in exclude_rows:
            continue
        key = build_duplicate_key(row, key_indices, validation_settings)
        buckets.setdefault(key, []).append(offset + FIRST_DATA_ROW_NUMBER)

    # dicts keep insertion order, so groups come out in first-seen order
    return [DuplicateGroup(key=key, rows=row_numbers) for key, row_numbers in buckets.items() if len(row_numbers) > 1]


def detect_duplicates(
    headers: Sequence[str],
    rows: Sequence[Sequence[str]],
    validation_settings: ValidationSettings,
    exclude_rows: AbstractSet[int] = frozenset(),
) -> Optional[ValidationResult]:
    """
    Run duplicate detection as configured and summarise it as a ValidationResult.

    Returns None when no key columns are configured.
    """
    if not validation_settings.duplicate_columns:
        logger.debug("Duplicate detection enabled without key columns; skipping")
        return None

    header_positions = {header: index for index, header in enumerate(headers)}
    key_indices = [header_positions[c] for c in validation_settings.duplicate_columns if c in header_positions]
    missing = [c for c in validation_settings.duplicate_columns if c not in header_positions]

    if not key_indices:
        return ValidationResult(
            field=DUPLICATE_RESULT_FIELD,
            errors=[
                ValidationIssue(
                    field=DUPLICATE_RESULT_FIELD,
                    row=0,
                    rule="duplicate",
                    message="Selected duplicate columns not found in data",
                    value=missing,
                )
            ],
            record_count=0,
            valid_count=0,
        )
    if missing:
        logger.warning("Duplicate key columns not found and ignored: %s", missing)

    groups = find_duplicate_groups(rows, key_indices, validation_settings, exclude_rows)
    severity = "error" if validation_settings.duplicate_action == "error" else "warning"
    issues = [
        ValidationIssue(
            field=DUPLICATE_RESULT_FIELD,
            row=group.rows[0],
            rule="duplicate",
            message=f"Duplicate found in rows {', '.join(str(r) for r in group.rows)}: \"{group.key}\"",
            value=group.rows,
            severity=severity,
        )
        for group in groups
    ]
    issues = issues[: validation_settings.max_errors]

    record_count = len(rows) - len(exclude_rows)
    duplicate_rows = sum(len(group.rows) - 1 for group in groups)
    if groups:
        logger.info("Found %d duplicate groups covering %d extra rows", len(groups), duplicate_rows)

    return ValidationResult(
        field=DUPLICATE_RESULT_FIELD,
        errors=issues if severity == "error" else [],
        warnings=issues if severity == "warning" else [],
        record_count=record_count,
        valid_count=record_count - duplicate_rows,
    )
