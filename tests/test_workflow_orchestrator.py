"""
Tests for the pure workflow orchestrator: step navigation, preconditions,
status progression and the intents each operation emits.
"""

import pytest

from app.api.schemas.shared import UploadStatus, ValidationSettings, WorkflowStep
from app.core.errors import ErrorKind
from app.domain.workflows.models import (
    DeploymentSummary,
    PersistStatus,
    RecordUpload,
    StoreBlob,
    WorkflowState,
    WriteRows,
)

CLIENTS_CSV = b"Email,Phone,Zip\na@x.com,5035551234,97123\n"
BAD_EMAIL_CSV = b"Email,Zip\nnot-an-email,97123\n"


def _ok(result):
    assert result.ok, getattr(result, "message", result)
    return result.value


def _uploaded(orchestrator, content=CLIENTS_CSV, name="clients.csv"):
    return _ok(orchestrator.upload(WorkflowState(), name, content, file_id="file-1")).state


def _processed(orchestrator, content=CLIENTS_CSV):
    state = _uploaded(orchestrator, content)
    return _ok(orchestrator.process(state, content)).state


def _at_validation(orchestrator, content=CLIENTS_CSV):
    state = _processed(orchestrator, content)
    state = _ok(orchestrator.navigate_step(state, WorkflowStep.MAPPING)).state
    return _ok(orchestrator.navigate_step(state, WorkflowStep.VALIDATION)).state


def _at_deploy(orchestrator):
    state = _at_validation(orchestrator)
    state = _ok(orchestrator.validate(state)).state
    state = _ok(orchestrator.navigate_step(state, WorkflowStep.REVIEW)).state
    return _ok(orchestrator.navigate_step(state, WorkflowStep.DEPLOY)).state


class TestUploadAndProcess:

    def test_upload_emits_blob_and_record(self, orchestrator):
        transition = _ok(orchestrator.upload(WorkflowState(), "clients.csv", CLIENTS_CSV, file_id="file-1"))
        store_blob, record = transition.intents

        assert isinstance(store_blob, StoreBlob)
        assert store_blob.key == "uploads/file-1/clients.csv"
        assert store_blob.content == CLIENTS_CSV
        assert isinstance(record, RecordUpload)
        assert transition.state.status == UploadStatus.UPLOADED
        assert transition.state.current_step == WorkflowStep.UPLOAD

    def test_upload_rejects_unsupported_type(self, orchestrator):
        result = orchestrator.upload(WorkflowState(), "notes.pdf", b"%PDF")
        assert not result.ok
        assert result.kind == ErrorKind.PARSE_ERROR
        assert result.fallback.state.error == result.message

    def test_upload_rejects_empty_file(self, orchestrator):
        result = orchestrator.upload(WorkflowState(), "clients.csv", b"")
        assert result.kind == ErrorKind.PARSE_ERROR

    def test_process_stages_and_advances(self, orchestrator):
        state = _uploaded(orchestrator)
        transition = _ok(orchestrator.process(state, CLIENTS_CSV))
        new_state = transition.state

        assert new_state.status == UploadStatus.STAGED
        assert new_state.current_step == WorkflowStep.STAGING
        assert new_state.file.total_rows == 1
        assert [c.type.value for c in new_state.file_data.column_types] == ["email", "phone", "text"]
        assert all(m.is_mapped for m in new_state.field_mappings)

        (persist,) = transition.intents
        assert isinstance(persist, PersistStatus)
        assert persist.status == UploadStatus.STAGED
        assert persist.total_rows == 1
        assert persist.metadata["headers"] == ["Email", "Phone", "Zip"]

    def test_process_parse_failure_marks_file_failed(self, orchestrator):
        state = _uploaded(orchestrator, b"Email,Phone\n")
        result = orchestrator.process(state, b"Email,Phone\n")

        assert result.kind == ErrorKind.PARSE_ERROR
        failed = result.fallback.state
        assert failed.status == UploadStatus.FAILED
        assert failed.file.error_message == result.message
        assert failed.current_step == WorkflowStep.UPLOAD
        assert result.fallback.intents[0].status == UploadStatus.FAILED


class TestNavigation:

    def test_staging_requires_file_data(self, orchestrator):
        result = orchestrator.navigate_step(WorkflowState(), WorkflowStep.STAGING)
        assert result.kind == ErrorKind.PRECONDITION_FAILED

    def test_cannot_skip_ahead(self, orchestrator):
        state = _processed(orchestrator)
        result = orchestrator.navigate_step(state, WorkflowStep.VALIDATION)
        assert result.kind == ErrorKind.INVALID_TRANSITION
        assert result.fallback.state.current_step == WorkflowStep.STAGING

    def test_same_step_is_a_no_op(self, orchestrator):
        state = _processed(orchestrator)
        assert _ok(orchestrator.navigate_step(state, WorkflowStep.STAGING)).state.current_step == WorkflowStep.STAGING

    def test_entering_validation_marks_mapped(self, orchestrator):
        state = _at_validation(orchestrator)
        assert state.current_step == WorkflowStep.VALIDATION
        assert state.status == UploadStatus.MAPPED

    def test_jump_back_and_forward_to_reached_step(self, orchestrator):
        state = _at_validation(orchestrator)
        state = _ok(orchestrator.navigate_step(state, WorkflowStep.UPLOAD)).state
        assert state.furthest_step == WorkflowStep.VALIDATION

        state = _ok(orchestrator.navigate_step(state, WorkflowStep.VALIDATION)).state
        assert state.current_step == WorkflowStep.VALIDATION

    def test_transition_clears_messages(self, orchestrator):
        state = _processed(orchestrator).evolve(error="old", success="older")
        state = _ok(orchestrator.navigate_step(state, WorkflowStep.MAPPING)).state
        assert state.error is None
        assert state.success is None

    def test_mapping_conflicts_block_validation(self, orchestrator):
        state = _processed(orchestrator)
        state = _ok(orchestrator.navigate_step(state, WorkflowStep.MAPPING)).state
        state = _ok(orchestrator.update_mapping(state, "Zip", "individual_parties", "email_address")).state

        assert len(orchestrator.mapping_conflicts(state)) == 1
        result = orchestrator.navigate_step(state, WorkflowStep.VALIDATION)
        assert result.kind == ErrorKind.MAPPING_CONFLICT
        assert result.details[0]["source_columns"] == ["Email", "Zip"]

    def test_validation_requires_a_mapping(self, orchestrator):
        state = _processed(orchestrator)
        state = _ok(orchestrator.navigate_step(state, WorkflowStep.MAPPING)).state
        for column in ("Email", "Phone", "Zip"):
            state = _ok(orchestrator.update_mapping(state, column, "", "")).state

        result = orchestrator.navigate_step(state, WorkflowStep.VALIDATION)
        assert result.kind == ErrorKind.PRECONDITION_FAILED

    def test_review_requires_validation(self, orchestrator):
        state = _at_validation(orchestrator)
        result = orchestrator.navigate_step(state, WorkflowStep.REVIEW)
        assert result.kind == ErrorKind.PRECONDITION_FAILED


class TestValidation:

    def test_only_from_validation_step(self, orchestrator):
        state = _processed(orchestrator)
        result = orchestrator.validate(state)
        assert result.kind == ErrorKind.INVALID_TRANSITION

    def test_clean_data_is_validated(self, orchestrator):
        state = _ok(orchestrator.validate(_at_validation(orchestrator))).state
        assert state.status == UploadStatus.VALIDATED
        assert state.error is None
        assert state.success.startswith("Validation passed")
        assert state.progress == 100

    def test_errors_keep_file_mapped_and_block_review(self, orchestrator):
        state = _at_validation(orchestrator, BAD_EMAIL_CSV)
        state = _ok(orchestrator.validate(state)).state

        assert state.status == UploadStatus.MAPPED
        assert state.error == "Validation found 1 errors"

        result = orchestrator.navigate_step(state, WorkflowStep.REVIEW)
        assert result.kind == ErrorKind.VALIDATION_ERROR

    def test_remapping_discards_validation(self, orchestrator):
        state = _ok(orchestrator.validate(_at_validation(orchestrator))).state
        state = _ok(orchestrator.update_mapping(state, "Phone", "individual_parties", "cell_phone")).state

        assert state.validation_results == ()
        assert state.current_step == WorkflowStep.MAPPING
        assert state.furthest_step == WorkflowStep.MAPPING
        assert state.status == UploadStatus.MAPPED

    def test_new_settings_discard_validation(self, orchestrator):
        state = _at_deploy(orchestrator)
        transition = _ok(orchestrator.update_validation_settings(state, ValidationSettings(validate_emails=False)))
        new_state = transition.state

        assert new_state.validation_settings.validate_emails is False
        assert new_state.validation_results == ()
        assert new_state.current_step == WorkflowStep.VALIDATION
        assert new_state.furthest_step == WorkflowStep.VALIDATION
        assert new_state.status == UploadStatus.MAPPED
        (persist,) = transition.intents
        assert persist.status == UploadStatus.MAPPED

        result = orchestrator.navigate_step(new_state, WorkflowStep.REVIEW)
        assert result.kind == ErrorKind.PRECONDITION_FAILED

    def test_settings_before_validation_keep_status(self, orchestrator):
        state = _processed(orchestrator)
        transition = _ok(orchestrator.update_validation_settings(state, ValidationSettings(trim_whitespace=False)))
        assert transition.state.status == UploadStatus.STAGED
        assert transition.state.current_step == WorkflowStep.STAGING
        assert transition.intents == ()

    def test_settings_rejected_for_finished_files(self, orchestrator):
        state = _ok(orchestrator.fail(_processed(orchestrator), "boom")).state
        result = orchestrator.update_validation_settings(state, ValidationSettings())
        assert result.kind == ErrorKind.INVALID_TRANSITION

    def test_status_never_regresses(self, orchestrator):
        state = _ok(orchestrator.validate(_at_validation(orchestrator))).state
        state = _ok(orchestrator.navigate_step(state, WorkflowStep.MAPPING)).state
        state = _ok(orchestrator.navigate_step(state, WorkflowStep.VALIDATION)).state
        assert state.status == UploadStatus.VALIDATED


class TestDeploy:

    def test_review_marks_ready(self, orchestrator):
        state = _at_deploy(orchestrator)
        assert state.status == UploadStatus.READY
        assert state.current_step == WorkflowStep.DEPLOY

    def test_deploy_plans_row_writes(self, orchestrator):
        transition = _ok(orchestrator.deploy(_at_deploy(orchestrator)))
        (write,) = transition.intents

        assert isinstance(write, WriteRows)
        assert write.table == "individual_parties"
        assert write.records == ({"email_address": "a@x.com", "home_phone": "5035551234", "zip_code": "97123"},)
        assert transition.state.is_processing

    def test_deploy_only_from_deploy_step(self, orchestrator):
        result = orchestrator.deploy(_at_validation(orchestrator))
        assert result.kind == ErrorKind.INVALID_TRANSITION

    def test_complete_deploy(self, orchestrator):
        state = _at_deploy(orchestrator)
        transition = _ok(orchestrator.complete_deploy(state, DeploymentSummary({"individual_parties": 1})))

        assert transition.state.status == UploadStatus.DEPLOYED
        assert transition.intents[0].metadata == {"records_per_table": {"individual_parties": 1}}

    def test_terminal_files_cannot_fail_again(self, orchestrator):
        state = _ok(orchestrator.fail(_processed(orchestrator), "boom")).state
        assert state.status == UploadStatus.FAILED

        result = orchestrator.fail(state, "again")
        assert result.kind == ErrorKind.INVALID_TRANSITION

    @pytest.mark.parametrize("operation", ["auto_map_remaining", "deploy"])
    def test_failed_files_reject_operations(self, orchestrator, operation):
        state = _ok(orchestrator.fail(_processed(orchestrator), "boom")).state
        result = getattr(orchestrator, operation)(state)
        assert result.kind == ErrorKind.INVALID_TRANSITION
