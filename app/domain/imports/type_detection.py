"""
Column type detection for staged files.

Every column is scored by a fixed sequence of detectors; the highest
confidence wins, and weak winners fall back to ``text``.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from app.api.schemas.shared import ColumnType, FieldType
from app.core.config import settings
from app.core.errors import TypeDetectionAmbiguous
from app.utils.date import classify_date_value
from app.utils.phone import classify_phone_value

logger = logging.getLogger(__name__)

POSTAL_NAME_HINTS = ("zip", "zipcode", "zip_code", "postal", "postalcode", "postal_code", "postcode")
BOOLEAN_VALUES = {"true", "false", "yes", "no", "y", "n", "1", "0"}

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
US_ZIP_5 = re.compile(r"^\d{5}$")
US_ZIP_9 = re.compile(r"^\d{9}$")
CANADIAN_POSTAL = re.compile(r"^[A-Z]\d[A-Z]\s?\d[A-Z]\d$", re.IGNORECASE)
UK_POSTAL = re.compile(r"^[A-Z]{1,2}\d[A-Z\d]?\s?\d[A-Z]{2}$", re.IGNORECASE)


@dataclass
class DetectionResult:
    type: FieldType
    confidence: float
    patterns: List[str] = field(default_factory=list)


def _unique(items: Sequence[str]) -> List[str]:
    return list(dict.fromkeys(items))


def _fraction(matches: int, total: int) -> float:
    return matches / total if total else 0.0


def detect_postal_code(values: List[str], column_name: str) -> DetectionResult:
    """US ZIP / ZIP+4, Canadian and UK postal codes. Stored as text."""
    lower_name = column_name.lower()
    named_like_postal = any(hint in lower_name for hint in POSTAL_NAME_HINTS)

    found: List[str] = []
    matches = 0
    for value in values:
        cleaned = re.sub(r"[-\s]", "", value)
        if US_ZIP_5.match(cleaned):
            found.append("us_zip_5")
        elif US_ZIP_9.match(cleaned):
            found.append("us_zip_9")
        elif CANADIAN_POSTAL.match(value):
            found.append("canadian_postal")
        elif UK_POSTAL.match(value):
            found.append("uk_postal")
        else:
            continue
        matches += 1

    confidence = _fraction(matches, len(values))
    if named_like_postal and confidence > settings.postal_name_boost_floor:
        confidence = min(confidence + settings.postal_name_boost, 1.0)

    return DetectionResult(FieldType.TEXT, confidence, ["postal_code"] + _unique(found))


def detect_email(values: List[str]) -> DetectionResult:
    found: List[str] = []
    matches = 0
    for value in values:
        if not EMAIL_PATTERN.match(value):
            continue
        matches += 1
        domain = value.split("@", 1)[1]
        if domain:
            found.append(f"domain_{domain.split('.')[0]}")

    return DetectionResult(FieldType.EMAIL, _fraction(matches, len(values)), ["email_format"] + _unique(found))


def detect_phone(values: List[str]) -> DetectionResult:
    found = [classify_phone_value(value) for value in values]
    hits = [pattern for pattern in found if pattern]
    return DetectionResult(FieldType.PHONE, _fraction(len(hits), len(values)), ["phone_format"] + _unique(hits))


def _is_number(text: str) -> bool:
    if not text:
        return False
    try:
        float(text)
    except ValueError:
        return False
    # float() accepts these but they are not tabular numbers
    return text.lower().lstrip("+-") not in {"nan", "inf", "infinity"}


def detect_number(values: List[str]) -> DetectionResult:
    found: List[str] = []
    decimal_count = integer_count = matches = 0

    for value in values:
        cleaned = re.sub(r"[$,\s]", "", value)
        if not _is_number(cleaned):
            continue
        matches += 1
        if "." in cleaned:
            decimal_count += 1
            found.append("decimal")
        else:
            integer_count += 1
            found.append("integer")
        if "$" in value:
            found.append("currency")
        if "," in value:
            found.append("thousands_separator")

    detected = FieldType.DECIMAL if decimal_count > integer_count else FieldType.NUMBER
    return DetectionResult(detected, _fraction(matches, len(values)), _unique(found))


def detect_date(values: List[str]) -> DetectionResult:
    found: List[str] = []
    matches = 0
    for value in values:
        patterns = classify_date_value(value)
        if patterns is None:
            continue
        matches += 1
        found.extend(patterns)
    return DetectionResult(FieldType.DATE, _fraction(matches, len(values)), ["date_format"] + _unique(found))


def detect_boolean(values: List[str]) -> DetectionResult:
    found: List[str] = []
    matches = 0
    for value in values:
        lower = value.lower()
        if lower not in BOOLEAN_VALUES:
            continue
        matches += 1
        if lower in ("true", "false"):
            found.append("true_false")
        elif lower in ("yes", "no"):
            found.append("yes_no")
        elif lower in ("1", "0"):
            found.append("binary")
        else:
            found.append("y_n")
    return DetectionResult(FieldType.BOOLEAN, _fraction(matches, len(values)), _unique(found))


def generate_suggestions(column_name: str, detected_type: FieldType, patterns: List[str]) -> List[str]:
    suggestions: List[str] = []
    lower_name = column_name.lower()

    if detected_type == FieldType.TEXT and "no_data" in patterns:
        suggestions.append("Column appears to be empty - consider removing or providing sample data")
    if detected_type == FieldType.EMAIL and any(p.startswith("domain_") for p in patterns):
        suggestions.append("Email domain detected - consider validation rules")
    if detected_type == FieldType.PHONE and "length_10" in patterns:
        suggestions.append("US phone number format detected")
    if detected_type == FieldType.NUMBER and "currency" in patterns:
        suggestions.append("Currency values detected - consider decimal type")
    if detected_type == FieldType.DATE and "iso_format" in patterns:
        suggestions.append("ISO date format detected - good for database storage")

    if "postal_code" in patterns:
        if "us_zip_5" in patterns:
            suggestions.append("US 5-digit ZIP code detected")
        if "us_zip_9" in patterns:
            suggestions.append("US ZIP+4 format detected")
        if "canadian_postal" in patterns:
            suggestions.append("Canadian postal code format detected")
        suggestions.append("Store as text to preserve leading zeros")

    if "email" in lower_name:
        suggestions.append("Maps well to email fields in database")
    if "phone" in lower_name or "cell" in lower_name:
        suggestions.append("Maps well to phone fields in database")
    if "zip" in lower_name or "postal" in lower_name:
        suggestions.append("Maps well to zip_code fields in database")
    if "name" in lower_name:
        suggestions.append("Maps well to name fields in database")

    return suggestions


def _run_detectors(values: List[str], column_name: str) -> List[DetectionResult]:
    # Postal codes must be scored before phones so ZIP columns are not taken for phone numbers
    detectors: List[Callable[[], DetectionResult]] = [
        lambda: detect_postal_code(values, column_name),
        lambda: detect_email(values),
        lambda: detect_phone(values),
        lambda: detect_number(values),
        lambda: detect_date(values),
        lambda: detect_boolean(values),
    ]
    return [detector() for detector in detectors]


def detect_column_type(column_name: str, column_values: Sequence[Optional[str]]) -> ColumnType:
    """
    Infer the semantic type of a single column.

    Args:
        column_name: Header of the column
        column_values: Every cell of the column, in row order

    Returns:
        ColumnType with type, confidence (two decimals), sample and suggestions
    """
    non_empty = [str(value).strip() for value in column_values if value is not None and str(value).strip() != ""]
    null_count = len(column_values) - len(non_empty)

    if not non_empty:
        return ColumnType(
            name=column_name,
            type=FieldType.TEXT,
            confidence=0.0,
            sample=[],
            null_count=null_count,
            detected_patterns=["no_data"],
            suggestions=["Consider removing this column or providing sample data"],
        )

    results = _run_detectors(non_empty, column_name)
    best = results[0]
    for result in results[1:]:
        if result.confidence > best.confidence:
            best = result

    cutoff = settings.type_detection_cutoff
    if best.confidence >= cutoff:
        final_type, final_confidence = best.type, best.confidence
    else:
        ambiguous = TypeDetectionAmbiguous(
            f"Column '{column_name}' has no confident type (best {best.type.value} at {best.confidence:.2f})",
            details={"column": column_name, "best_type": best.type.value, "confidence": best.confidence},
        )
        logger.debug("%s; defaulting to text", ambiguous.message)
        final_type, final_confidence = FieldType.TEXT, settings.type_detection_text_confidence

    return ColumnType(
        name=column_name,
        type=final_type,
        confidence=round(final_confidence, 2),
        sample=non_empty[: settings.type_detection_sample_size],
        null_count=null_count,
        detected_patterns=best.patterns,
        suggestions=generate_suggestions(column_name, final_type, best.patterns),
    )


def detect_column_types(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> List[ColumnType]:
    """Detect the type of every column of a parsed file, in header order."""
    column_types = []
    for index, header in enumerate(headers):
        values = [row[index] if index < len(row) else None for row in rows]
        column_types.append(detect_column_type(header, values))

    logger.info(
        "Detected column types: %s",
        ", ".join(f"{c.name}={c.type.value}({c.confidence})" for c in column_types),
    )
    return column_types
