"""
Date recognition helpers for flexible date format handling.

Values are first screened by shape (reference IDs such as ``CA-2024-001`` are
rejected outright) and only then handed to pandas for an actual parse.
"""

import pandas as pd
from typing import Any, List, Optional
import re
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

REFERENCE_ID_PATTERN = re.compile(r"^[A-Z]{2,3}-\d{4}-\d+$", re.IGNORECASE)
ALPHANUMERIC_ID_PATTERN = re.compile(r"^[A-Z]+[-_]?\d+[-_]?[A-Z\d]*$", re.IGNORECASE)

DATE_SHAPES = [
    re.compile(r"^\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4}$"),  # MM/DD/YYYY, MM-DD-YYYY, MM/DD/YY
    re.compile(r"^\d{4}[/\-]\d{1,2}[/\-]\d{1,2}$"),  # YYYY/MM/DD, YYYY-MM-DD
    re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}"),  # ISO datetime
    re.compile(r"^(Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)", re.IGNORECASE),
]

_NUMERIC_DATE_PREFIX = re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-]\d{2,4}")


def is_reference_id(value: str) -> bool:
    """
    Check whether a value is an identifier that only resembles a date.

    Args:
        value: Cell value to check, e.g. ``2024-001234`` or ``CASE-2024-01``

    Returns:
        True for case numbers and similar reference ids
    """
    return bool(REFERENCE_ID_PATTERN.match(value) or ALPHANUMERIC_ID_PATTERN.match(value))


def could_be_date(value: str) -> bool:
    """Cheap shape test run before any real date parsing."""
    return any(shape.match(value) for shape in DATE_SHAPES)


def _dayfirst_preference(value: str) -> bool:
    """Decide whether day-first is the more plausible reading of a numeric date."""
    match = _NUMERIC_DATE_PREFIX.match(value)
    if not match:
        return settings.date_default_dayfirst

    first, second = int(match.group(1)), int(match.group(2))
    if first > 12 and second <= 31:
        return True
    if second > 12 and first <= 12:
        return False
    return settings.date_default_dayfirst


def parse_flexible_date(value: Any) -> Optional[pd.Timestamp]:
    """
    Parse a date value with pandas, trying the plausible day/month order first.

    Returns:
        A UTC ``pandas.Timestamp`` or None if the value cannot be parsed
    """
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None

    text = str(value).strip()
    if not text:
        return None

    attempts = []
    if _NUMERIC_DATE_PREFIX.match(text):
        preferred = _dayfirst_preference(text)
        attempts.append({"dayfirst": preferred})
        attempts.append({"dayfirst": not preferred})
    attempts.append({})

    for options in attempts:
        try:
            parsed = pd.to_datetime(text, utc=True, errors="raise", **options)
        except (ValueError, TypeError, OverflowError):
            continue
        if parsed is not pd.NaT:
            return parsed

    logger.debug("Unable to parse date value '%s'", text)
    return None


def is_parseable_date(value: Any) -> bool:
    return parse_flexible_date(value) is not None


def classify_date_value(value: str) -> Optional[List[str]]:
    """
    Classify a value for column type detection.

    Returns:
        The list of date format patterns the value exhibits (possibly empty)
        when it is a real date, or None when it is not a date.
    """
    text = (value or "").strip()
    if not text or is_reference_id(text) or not could_be_date(text):
        return None
    if not is_parseable_date(text):
        return None

    patterns = []
    if re.match(r"^\d{4}-\d{2}-\d{2}", text):
        patterns.append("iso_format")
    if re.match(r"^\d{1,2}/\d{1,2}/\d{4}$", text):
        patterns.append("us_format")
    if re.match(r"^\d{1,2}-\d{1,2}-\d{4}$", text):
        patterns.append("dash_format")
    if "T" in text and ":" in text:
        patterns.append("datetime")
    return patterns
