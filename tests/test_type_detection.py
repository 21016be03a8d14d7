"""
Tests for column type detection.

Covers the detector ordering (postal codes before phones), the confidence
cutoff that falls back to text, and the phone/ZIP helpers the detectors use.
"""

import pytest

from app.api.schemas.shared import FieldType
from app.domain.imports.type_detection import (
    detect_column_type,
    detect_column_types,
    detect_phone,
    detect_postal_code,
)
from app.utils.phone import classify_phone_value, validate_phone


class TestPostalVersusPhone:

    def test_zip_column_is_text_not_phone(self):
        result = detect_column_type("zip", ["97123"])
        assert result.type == FieldType.TEXT
        assert result.confidence == 1.0
        assert "us_zip_5" in result.detected_patterns
        assert "postal_code" in result.detected_patterns

    def test_ten_digit_numbers_are_phones(self):
        values = [f"503555120{i}" for i in range(10)]
        result = detect_column_type("contact", values)
        assert result.type == FieldType.PHONE
        assert result.confidence == 1.0
        assert "length_10" in result.detected_patterns

    def test_zip_plus_four_is_not_a_phone(self):
        assert classify_phone_value("97123-4567") is None
        assert detect_postal_code(["97123-4567"], "code").patterns == ["postal_code", "us_zip_9"]

    def test_postal_name_boost(self):
        values = ["97123", "unknown", "n/a"]
        plain = detect_postal_code(values, "code")
        boosted = detect_postal_code(values, "Postal Code")
        assert plain.confidence == pytest.approx(1 / 3)
        assert boosted.confidence == pytest.approx(1 / 3 + 0.3)

    def test_canadian_and_uk_postal_codes(self):
        result = detect_column_type("postcode", ["K1A 0B1", "SW1A 1AA"])
        assert result.type == FieldType.TEXT
        assert result.confidence == 1.0
        assert "canadian_postal" in result.detected_patterns
        assert "uk_postal" in result.detected_patterns

    def test_short_integers_are_not_phones(self):
        assert detect_phone(["34", "27", "51"]).confidence == 0.0

    @pytest.mark.parametrize("value", ["(415) 555-1234", "415-555-1234", "+1 415 555 1234", "+442079461234"])
    def test_formatted_phones(self, value):
        assert classify_phone_value(value) is not None


class TestDetectColumnType:

    def test_empty_column(self):
        result = detect_column_type("notes", ["", None, "  "])
        assert result.type == FieldType.TEXT
        assert result.confidence == 0.0
        assert result.null_count == 3
        assert result.detected_patterns == ["no_data"]

    def test_email(self):
        result = detect_column_type("Email", ["a@x.com", "b@y.org"])
        assert result.type == FieldType.EMAIL
        assert result.confidence == 1.0
        assert "domain_x" in result.detected_patterns
        assert "Maps well to email fields in database" in result.suggestions

    def test_integers(self):
        result = detect_column_type("age", ["34", "27", "51"])
        assert result.type == FieldType.NUMBER
        assert result.confidence == 1.0

    def test_currency_decimals(self):
        result = detect_column_type("amount", ["$1,200.50", "3.75", "$10.00"])
        assert result.type == FieldType.DECIMAL
        assert "currency" in result.detected_patterns

    def test_iso_dates(self):
        result = detect_column_type("dob", ["2024-01-15", "2023-12-31"])
        assert result.type == FieldType.DATE
        assert "iso_format" in result.detected_patterns

    def test_reference_ids_are_not_dates(self):
        result = detect_column_type("case", ["CA-2024-001", "TX-2023-114"])
        assert result.type != FieldType.DATE

    def test_booleans(self):
        result = detect_column_type("active", ["yes", "no", "Yes"])
        assert result.type == FieldType.BOOLEAN
        assert result.confidence == 1.0

    def test_ambiguous_falls_back_to_text(self):
        result = detect_column_type("mixed", ["abc", "def", "123"])
        assert result.type == FieldType.TEXT
        assert result.confidence == 0.8

    def test_sample_and_null_count(self):
        result = detect_column_type("name", ["Ann", "", "Bob", "Cy", "Di", "Ed", "Flo"])
        assert result.sample == ["Ann", "Bob", "Cy", "Di", "Ed"]
        assert result.null_count == 1


def test_detect_column_types_clients_file():
    headers = ["Email", "Phone", "Zip"]
    rows = [["a@x.com", "5035551234", "97123"]]

    email, phone, zip_code = detect_column_types(headers, rows)

    assert (email.type, email.confidence) == (FieldType.EMAIL, 1.0)
    assert (phone.type, phone.confidence) == (FieldType.PHONE, 1.0)
    assert "length_10" in phone.detected_patterns
    assert (zip_code.type, zip_code.confidence) == (FieldType.TEXT, 1.0)
    assert "us_zip_5" in zip_code.detected_patterns


class TestValidatePhone:

    @pytest.mark.parametrize("value", ["4155551234", "(415) 555-1234", "415-555-1234", "+1 415 555 1234"])
    def test_valid(self, value):
        assert validate_phone(value)

    @pytest.mark.parametrize("value", ["", None, "555-1234", "hello"])
    def test_invalid(self, value):
        assert not validate_phone(value)
