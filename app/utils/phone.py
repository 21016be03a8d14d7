"""
Phone number helpers shared by column type detection and validation.

Detection and validation deliberately use different rules: detection looks at
the digit count of a cleaned value and skips ZIP-shaped lengths, validation
checks the value against the accepted North American formats.
"""

import re
from typing import Any, Optional
import logging

logger = logging.getLogger(__name__)

# Lengths of US ZIP (5) and ZIP+4 (9) codes once separators are removed.
ZIP_CODE_LENGTHS = (5, 9)
PHONE_MIN_DIGITS = 10
PHONE_MAX_DIGITS = 15

_FORMATTING_CHARS = re.compile(r"[-.\s()+]")

PHONE_FORMAT_PATTERNS = [
    re.compile(r"^\+?1?[-.\s]?\(?[0-9]{3}\)?[-.\s]?[0-9]{3}[-.\s]?[0-9]{4}$"),  # US
    re.compile(r"^\+[1-9]\d{1,14}$"),  # E.164 international, plus sign required
    re.compile(r"^\([0-9]{3}\)\s?[0-9]{3}-[0-9]{4}$"),  # (415) 555-1234
    re.compile(r"^[0-9]{3}-[0-9]{3}-[0-9]{4}$"),  # 415-555-1234
]

PHONE_VALIDATION_PATTERN = re.compile(
    r"^(\+?1?[-.\s]?\(?[0-9]{3}\)?[-.\s]?[0-9]{3}[-.\s]?[0-9]{4}"
    r"|\([0-9]{3}\)\s?[0-9]{3}-[0-9]{4}"
    r"|[0-9]{10})$"
)


def strip_phone_formatting(value: Any) -> str:
    """Remove dashes, dots, spaces, parentheses and plus signs."""
    if value is None:
        return ""
    return _FORMATTING_CHARS.sub("", str(value).strip())


def is_zip_code_length(digits: str) -> bool:
    return len(digits) in ZIP_CODE_LENGTHS


def classify_phone_value(value: Any) -> Optional[str]:
    """
    Classify a raw value as a phone number for column type detection.

    Returns:
        ``length_<N>`` for a purely numeric value with a phone-like digit count,
        ``formatted_phone`` when the raw text matches a known phone layout,
        or None when the value does not look like a phone number.
    """
    text = "" if value is None else str(value).strip()
    if not text:
        return None

    cleaned = strip_phone_formatting(text)
    if cleaned.isdigit() and not is_zip_code_length(cleaned):
        if PHONE_MIN_DIGITS <= len(cleaned) <= PHONE_MAX_DIGITS:
            return f"length_{len(cleaned)}"

    for pattern in PHONE_FORMAT_PATTERNS:
        if pattern.match(text):
            return "formatted_phone"
    return None


def clean_phone_characters(value: str) -> str:
    """Keep only digits and a plus sign, used when special characters are stripped."""
    return re.sub(r"[^\d+]", "", value or "")


def validate_phone(value: Any) -> bool:
    """
    Validate a phone number against the accepted formats.

    Args:
        value: Value to validate

    Returns:
        True if the value is a phone number in an accepted format
    """
    if value is None:
        return False
    text = str(value).strip()
    if not text:
        return False
    return bool(PHONE_VALIDATION_PATTERN.match(text))
