"""
End-to-end tests for the pipeline runner over in-memory stores.
"""

import asyncio

from app.api.schemas.shared import UploadStatus, ValidationSettings, WorkflowStep
from app.core.errors import ErrorKind
from app.domain.workflows.executor import PipelineRunner

CLIENTS_CSV = b"Email,Phone,Zip\na@x.com,5035551234,97123\n"


def _run(coro):
    return asyncio.run(coro)


def _upload(runner, content=CLIENTS_CSV, name="clients.csv"):
    result = _run(runner.upload(name, content, content_type="text/csv"))
    assert result.ok
    return result.value.file_id


def _to_deploy_step(runner, file_id):
    assert _run(runner.process(file_id)).ok
    for step in (WorkflowStep.MAPPING, WorkflowStep.VALIDATION):
        assert _run(runner.navigate(file_id, step)).ok
    assert _run(runner.validate(file_id)).ok
    for step in (WorkflowStep.REVIEW, WorkflowStep.DEPLOY):
        assert _run(runner.navigate(file_id, step)).ok


def test_clients_csv_end_to_end(runner, blob_store, upload_store, destination_store):
    file_id = _upload(runner)
    state = runner.get_state(file_id)
    assert state.file.storage_key in blob_store
    assert upload_store.get(file_id).upload_status == UploadStatus.UPLOADED

    processed = _run(runner.process(file_id)).value
    email, phone, zip_code = processed.file_data.column_types
    assert (email.type.value, email.confidence) == ("email", 1.0)
    assert (phone.type.value, phone.confidence) == ("phone", 1.0)
    assert "length_10" in phone.detected_patterns
    assert (zip_code.type.value, zip_code.confidence) == ("text", 1.0)
    assert "us_zip_5" in zip_code.detected_patterns
    assert processed.field_mappings[0].target_field == "email_address"
    assert processed.field_mappings[0].confidence == 1.0
    assert upload_store.get(file_id).upload_status == UploadStatus.STAGED
    assert upload_store.get(file_id).total_rows == 1

    for step in (WorkflowStep.MAPPING, WorkflowStep.VALIDATION):
        assert _run(runner.navigate(file_id, step)).ok
    validated = _run(runner.validate(file_id)).value
    assert validated.status == UploadStatus.VALIDATED
    for step in (WorkflowStep.REVIEW, WorkflowStep.DEPLOY):
        assert _run(runner.navigate(file_id, step)).ok

    progress = []
    deployed = _run(runner.deploy(file_id, progress=progress.append))
    assert deployed.ok
    assert deployed.value.status == UploadStatus.DEPLOYED
    assert deployed.value.is_processing is False
    assert progress[-1] == 100
    assert destination_store.tables["individual_parties"] == [
        {"email_address": "a@x.com", "home_phone": "5035551234", "zip_code": "97123"}
    ]
    assert upload_store.get(file_id).upload_status == UploadStatus.DEPLOYED
    assert upload_store.metadata[file_id] == {"records_per_table": {"individual_parties": 1}}


def test_deployment_failure_marks_file_failed(orchestrator, blob_store, upload_store, failing_destination_store):
    runner = PipelineRunner(
        orchestrator,
        blob_store=blob_store,
        upload_store=upload_store,
        destination_store=failing_destination_store("individual_parties"),
    )
    file_id = _upload(runner)
    _to_deploy_step(runner, file_id)

    result = _run(runner.deploy(file_id))

    assert result.kind == ErrorKind.DEPLOYMENT_ERROR
    assert runner.get_state(file_id).status == UploadStatus.FAILED
    assert runner.get_state(file_id).error == result.message
    stored = upload_store.get(file_id)
    assert stored.upload_status == UploadStatus.FAILED
    assert "connection reset" in stored.error_message


def test_parse_failure_is_persisted(runner, upload_store):
    file_id = _upload(runner, b"Email,Phone\n")
    result = _run(runner.process(file_id))

    assert result.kind == ErrorKind.PARSE_ERROR
    assert upload_store.get(file_id).upload_status == UploadStatus.FAILED


def test_missing_blob_fails_processing(runner, blob_store, upload_store):
    file_id = _upload(runner)
    blob_store._blobs.clear()

    result = _run(runner.process(file_id))

    assert result.kind == ErrorKind.STORAGE_ERROR
    assert upload_store.get(file_id).upload_status == UploadStatus.FAILED


def test_validation_errors_are_returned_as_state(runner):
    file_id = _upload(runner, b"Email,Zip\nnot-an-email,97123\n")
    assert _run(runner.process(file_id)).ok
    for step in (WorkflowStep.MAPPING, WorkflowStep.VALIDATION):
        assert _run(runner.navigate(file_id, step)).ok

    result = _run(runner.validate(file_id))
    assert result.ok
    assert result.value.error == "Validation found 1 errors"
    assert result.value.status == UploadStatus.MAPPED

    assert _run(runner.navigate(file_id, WorkflowStep.REVIEW)).kind == ErrorKind.VALIDATION_ERROR


def test_validation_settings_are_kept(runner):
    file_id = _upload(runner)
    assert _run(runner.process(file_id)).ok

    result = _run(runner.update_validation_settings(file_id, ValidationSettings(validate_emails=False)))
    assert result.ok
    assert runner.get_state(file_id).validation_settings.validate_emails is False


def test_busy_file_is_rejected(runner):
    file_id = _upload(runner)
    with runner.locks.acquire(file_id, "test"):
        result = _run(runner.process(file_id))
    assert result.kind == ErrorKind.PIPELINE_BUSY
    assert not runner.locks.is_locked(file_id)


def test_unknown_file(runner):
    assert _run(runner.process("missing")).kind == ErrorKind.NOT_FOUND
    assert _run(runner.navigate("missing", WorkflowStep.MAPPING)).kind == ErrorKind.NOT_FOUND
    assert "missing" not in runner.locks._locks


def test_cancel_without_running_operation(runner):
    assert runner.cancel("missing") is False


def test_remove_row_policy_skips_incomplete_rows(runner, destination_store):
    file_id = _upload(runner, b"Email,Zip\na@x.com,97123\n,97124\n")
    assert _run(runner.process(file_id)).ok
    assert _run(runner.update_validation_settings(file_id, ValidationSettings(handle_missing_data="remove_row"))).ok
    for step in (WorkflowStep.MAPPING, WorkflowStep.VALIDATION):
        assert _run(runner.navigate(file_id, step)).ok
    assert _run(runner.validate(file_id)).value.status == UploadStatus.VALIDATED
    for step in (WorkflowStep.REVIEW, WorkflowStep.DEPLOY):
        assert _run(runner.navigate(file_id, step)).ok

    assert _run(runner.deploy(file_id)).ok
    assert destination_store.tables["individual_parties"] == [{"email_address": "a@x.com", "zip_code": "97123"}]


def test_progress_is_stored_on_the_state(runner):
    content = ("Email\n" + "".join(f"user{i}@x.com\n" for i in range(5))).encode()
    file_id = _upload(runner, content)
    assert _run(runner.process(file_id)).ok
    for step in (WorkflowStep.MAPPING, WorkflowStep.VALIDATION):
        assert _run(runner.navigate(file_id, step)).ok

    seen = []
    result = _run(
        runner.validate(
            file_id,
            ValidationSettings(batch_size=2),
            progress=lambda value: seen.append((value, runner.get_state(file_id).progress)),
        )
    )

    assert result.ok
    assert seen == [(40, 40), (80, 80), (100, 100)]
    assert runner.get_state(file_id).progress == 100


def test_deployed_file_releases_rows_and_lock(runner):
    file_id = _upload(runner)
    _to_deploy_step(runner, file_id)

    assert _run(runner.deploy(file_id)).ok

    state = runner.get_state(file_id)
    assert state.status == UploadStatus.DEPLOYED
    assert state.file_data.rows == []
    assert state.file_data.headers == ["Email", "Phone", "Zip"]
    assert file_id not in runner.locks._locks


def test_finished_workflows_are_bounded(orchestrator, blob_store, upload_store, destination_store):
    runner = PipelineRunner(
        orchestrator,
        blob_store=blob_store,
        upload_store=upload_store,
        destination_store=destination_store,
        state_retention=1,
    )
    pending = _upload(runner)
    first = _upload(runner)
    _to_deploy_step(runner, first)
    assert _run(runner.deploy(first)).ok
    second = _upload(runner)
    _to_deploy_step(runner, second)
    assert _run(runner.deploy(second)).ok

    assert _run(runner.navigate(first, WorkflowStep.MAPPING)).kind == ErrorKind.NOT_FOUND
    assert upload_store.get(first).upload_status == UploadStatus.DEPLOYED
    assert runner.get_state(second).status == UploadStatus.DEPLOYED
    assert runner.get_state(pending).status == UploadStatus.UPLOADED
