"""Value cleaning applied before validation and duplicate key construction."""
import re

from app.api.schemas.shared import ValidationSettings
from app.utils.phone import clean_phone_characters

_WORD = re.compile(r"\w\S*")


def standardize_case(value: str, mode: str) -> str:
    """
    Change the letter case of a value.

    Args:
        value: Text to convert
        mode: One of ``none``, ``upper``, ``lower`` or ``title``; title case
            capitalises the first letter of each whitespace-separated word

    Returns:
        The converted text, or ``value`` unchanged for ``none`` or an unknown mode
    """
    if mode == "upper":
        return value.upper()
    if mode == "lower":
        return value.lower()
    if mode == "title":
        return _WORD.sub(lambda m: m.group(0)[0].upper() + m.group(0)[1:].lower(), value)
    return value


def clean_value(value, validation_settings: ValidationSettings, *, is_phone: bool = False) -> str:
    """
    Apply trimming, case standardization and (for phone columns) special
    character removal according to the validation settings.

    Args:
        value: Raw cell value; None counts as empty
        validation_settings: Supplies the trim, case and special-character options
        is_phone: Whether the value belongs to a phone column

    Returns:
        The cleaned value as a string
    """
    text = "" if value is None else str(value)
    if validation_settings.trim_whitespace:
        text = text.strip()
    text = standardize_case(text, validation_settings.standardize_case)
    if is_phone and validation_settings.remove_special_characters:
        text = clean_phone_characters(text)
    return text
