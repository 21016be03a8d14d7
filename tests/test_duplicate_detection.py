"""
Tests for duplicate row detection.
"""

from app.api.schemas.shared import ValidationSettings
from app.domain.imports import duplicates
from app.domain.imports.duplicates import (
    DUPLICATE_RESULT_FIELD,
    build_duplicate_key,
    detect_duplicates,
    find_duplicate_groups,
)


def _settings(**overrides):
    values = {"enable_duplicate_detection": True, "duplicate_columns": ["Email"]}
    values.update(overrides)
    return ValidationSettings(**values)


def test_single_duplicate_pair_in_large_file():
    headers = ["Email", "Name"]
    rows = [[f"user{i}@example.com", f"User {i}"] for i in range(1000)]
    rows[999][0] = "user10@example.com"

    result = detect_duplicates(headers, rows, _settings())

    assert result.field == DUPLICATE_RESULT_FIELD
    assert len(result.warnings) == 1
    assert result.warnings[0].value == [12, 1001]
    assert result.errors == []
    assert result.record_count == 1000
    assert result.valid_count == 999


def test_one_key_built_per_row(monkeypatch):
    calls = []
    original = duplicates.build_duplicate_key

    def counting(row, key_indices, settings):
        calls.append(1)
        return original(row, key_indices, settings)

    monkeypatch.setattr(duplicates, "build_duplicate_key", counting)
    rows = [[f"user{i}@example.com"] for i in range(1000)]
    detect_duplicates(["Email"], rows, _settings())

    assert len(calls) == 1000


def test_error_action_reports_errors():
    rows = [["a@x.com"], ["a@x.com"], ["b@x.com"], ["a@x.com"]]
    result = detect_duplicates(["Email"], rows, _settings(duplicate_action="error"))
    assert len(result.errors) == 1
    assert result.errors[0].severity == "error"
    assert result.errors[0].value == [2, 3, 5]
    assert result.valid_count == 2


def test_composite_key_respects_case_and_whitespace():
    settings = _settings(duplicate_columns=["First", "Last"], standardize_case="lower")
    rows = [[" Ann ", "Lee"], ["ann", "LEE"], ["Ann", "Li"]]
    groups = find_duplicate_groups(rows, [0, 1], settings)
    assert len(groups) == 1
    assert groups[0].key == "ann|lee"
    assert groups[0].rows == [2, 3]


def test_key_pads_missing_cells():
    assert build_duplicate_key(["a"], [0, 3], ValidationSettings()) == "a|"


def test_no_key_columns_configured():
    assert detect_duplicates(["Email"], [["a@x.com"]], _settings(duplicate_columns=[])) is None


def test_missing_key_columns_yield_single_error():
    result = detect_duplicates(["Email"], [["a@x.com"]], _settings(duplicate_columns=["Phone"]))
    assert len(result.errors) == 1
    assert result.errors[0].message == "Selected duplicate columns not found in data"


def test_no_duplicates():
    result = detect_duplicates(["Email"], [["a@x.com"], ["b@x.com"]], _settings())
    assert result.warnings == []
    assert result.valid_count == 2


def test_excluded_rows_do_not_form_groups():
    rows = [["a@x.com"], ["a@x.com"], ["b@x.com"], ["b@x.com"], ["b@x.com"]]

    groups = find_duplicate_groups(rows, [0], _settings(), exclude_rows={1, 2})

    assert [g.rows for g in groups] == [[5, 6]]


def test_excluded_rows_leave_record_count():
    rows = [["a@x.com"], ["a@x.com"], ["c@x.com"]]

    result = detect_duplicates(["Email"], rows, _settings(), exclude_rows={1})

    assert result.warnings == []
    assert result.record_count == 2
    assert result.valid_count == 2
