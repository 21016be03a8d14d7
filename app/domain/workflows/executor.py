"""
Workflow execution engine.

``PipelineRunner`` owns the per-file workflow state, asks the orchestrator
for transitions and carries out the resulting intents against the blob
store, the upload store and the destination store. Blocking calls run in
worker threads so the event loop stays responsive.
"""
import asyncio
import logging
from collections import OrderedDict
from contextlib import contextmanager
from typing import Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.api.schemas.shared import ValidationSettings, WorkflowStep
from app.core.config import settings
from app.core.errors import (
    DataIntakeError,
    DeploymentError,
    Err,
    ErrorKind,
    NotFound,
    Ok,
    OperationCancelled,
    PipelineBusy,
    Result,
)
from app.db.destination_tables import DestinationStore
from app.domain.imports.deployment import DeploymentExecutor
from app.domain.uploads.uploaded_files import UploadStore
from app.domain.workflows.models import (
    TERMINAL_STATUSES,
    CancellationToken,
    PersistStatus,
    RecordUpload,
    StoreBlob,
    Transition,
    WorkflowState,
    WriteRows,
)
from app.domain.workflows.orchestrator import WorkflowOrchestrator
from app.integrations.storage import BlobStore
from app.utils.locks import FileLockManager

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


class PipelineRunner:
    """Runs workflow operations for uploaded files, one operation per file at a time."""

    def __init__(
        self,
        orchestrator: WorkflowOrchestrator,
        blob_store: BlobStore,
        upload_store: UploadStore,
        destination_store: DestinationStore,
        lock_manager: Optional[FileLockManager] = None,
        deployment_batch_size: Optional[int] = None,
        state_retention: Optional[int] = None,
    ):
        self.orchestrator = orchestrator
        self.blob_store = blob_store
        self.upload_store = upload_store
        self.destination_store = destination_store
        self.locks = lock_manager or FileLockManager()
        self.deployment_batch_size = deployment_batch_size or settings.deployment_batch_size
        self.state_retention = state_retention or settings.workflow_state_retention
        self._states: Dict[str, WorkflowState] = {}
        # deployed or failed files, oldest first
        self._finished: "OrderedDict[str, None]" = OrderedDict()
        self._tokens: Dict[str, CancellationToken] = {}

    # ------------------------------------------------------------------
    # state
    # ------------------------------------------------------------------

    def get_state(self, file_id: str) -> WorkflowState:
        state = self._states.get(file_id)
        if state is None:
            raise NotFound(f"No workflow for file {file_id}")
        return state

    def _save(self, state: WorkflowState) -> WorkflowState:
        """
        Store the latest state of a file.

        Finished files keep their summary but drop the parsed rows, and only
        the most recent ``state_retention`` of them stay in memory.
        """
        file_id = state.file_id
        if not file_id:
            return state
        if state.status in TERMINAL_STATUSES:
            if state.file_data is not None and state.file_data.rows:
                state = state.evolve(file_data=state.file_data.model_copy(update={"rows": []}))
            self._finished[file_id] = None
            self._finished.move_to_end(file_id)
        self._states[file_id] = state

        while len(self._finished) > self.state_retention:
            evicted, _ = self._finished.popitem(last=False)
            self._states.pop(evicted, None)
            self.locks.discard(evicted)
            logger.debug("Evicted finished workflow %s", evicted)
        return state

    def _progress_recorder(self, file_id: str, progress: Optional[ProgressCallback]) -> ProgressCallback:
        """
        Build a callback that stores each percentage on the file's state
        before forwarding it to ``progress``.

        Runs on worker threads; the file lock keeps other writers out.
        """

        def record(value: int) -> None:
            value = max(0, min(100, int(value)))
            state = self._states.get(file_id)
            if state is not None:
                self._states[file_id] = state.evolve(progress=value)
            if progress is not None:
                progress(value)

        return record

    @contextmanager
    def _running(self, file_id: str, operation: str):
        """Hold the file lock; locks of finished or unknown files are dropped afterwards."""
        try:
            with self.locks.acquire(file_id, operation):
                yield
        finally:
            state = self._states.get(file_id)
            if state is None or state.status in TERMINAL_STATUSES:
                self.locks.discard(file_id)

    async def _execute_intents(self, transition: Transition) -> None:
        for intent in transition.intents:
            if isinstance(intent, StoreBlob):
                await asyncio.to_thread(self.blob_store.put, intent.key, intent.content)
            elif isinstance(intent, RecordUpload):
                await asyncio.to_thread(self.upload_store.create, intent.upload)
            elif isinstance(intent, PersistStatus):
                await asyncio.to_thread(
                    self.upload_store.update_status,
                    intent.file_id,
                    intent.status,
                    total_rows=intent.total_rows,
                    metadata=intent.metadata,
                    error_message=intent.error_message,
                )
            elif isinstance(intent, WriteRows):
                raise TypeError("Row writes are executed by the deployment executor")

    async def _commit(self, result: Result) -> Result:
        """
        Apply an orchestrator result.

        For ``Ok`` the intents run and the new state is stored; for ``Err`` the
        fallback transition (if any) is applied and the error is returned.
        """
        transition = result.value if result.ok else result.fallback
        if transition is None:
            return result
        try:
            await self._execute_intents(transition)
        except DataIntakeError as e:
            logger.error("Side effect failed: %s", e.message)
            return Err.from_exception(e)
        except SQLAlchemyError as e:
            logger.error("Database error while persisting workflow state: %s", e)
            return Err(kind=ErrorKind.STORAGE_ERROR, message=f"Database error: {e}")

        state = self._save(transition.state)
        return Ok(state) if result.ok else result

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------

    async def upload(self, file_name: str, content: bytes, content_type: Optional[str] = None) -> Result:
        """Store the raw file and create its upload record."""
        result = self.orchestrator.upload(WorkflowState(), file_name, content, content_type=content_type)
        return await self._commit(result)

    async def process(self, file_id: str, progress: Optional[ProgressCallback] = None) -> Result:
        """Fetch the stored file, parse it, detect column types and auto-map."""
        try:
            with self._running(file_id, "process"):
                state = self.get_state(file_id)
                report = self._progress_recorder(file_id, progress)
                report(0)
                try:
                    content = await asyncio.to_thread(self.blob_store.get, state.file.storage_key)
                except DataIntakeError as e:
                    failed = self.orchestrator.fail(state, e.message)
                    await self._commit(failed)
                    return Err.from_exception(e, fallback=failed.value if failed.ok else None)
                report(30)
                result = await asyncio.to_thread(self.orchestrator.process, state, content)
                committed = await self._commit(result)
                report(100)
                return committed
        except (PipelineBusy, NotFound) as e:
            return Err.from_exception(e)

    async def _run_sync(self, file_id: str, operation: str, func: Callable[[WorkflowState], Result]) -> Result:
        try:
            with self._running(file_id, operation):
                return await self._commit(func(self.get_state(file_id)))
        except (PipelineBusy, NotFound) as e:
            return Err.from_exception(e)

    async def update_mapping(self, file_id: str, source_column: str, target_table: str, target_field: str) -> Result:
        return await self._run_sync(
            file_id,
            "update_mapping",
            lambda state: self.orchestrator.update_mapping(state, source_column, target_table, target_field),
        )

    async def auto_map_remaining(self, file_id: str) -> Result:
        return await self._run_sync(file_id, "auto_map", self.orchestrator.auto_map_remaining)

    async def update_validation_settings(self, file_id: str, validation_settings: ValidationSettings) -> Result:
        return await self._run_sync(
            file_id,
            "validation_settings",
            lambda state: self.orchestrator.update_validation_settings(state, validation_settings),
        )

    async def navigate(self, file_id: str, step: WorkflowStep) -> Result:
        return await self._run_sync(file_id, "navigate", lambda state: self.orchestrator.navigate_step(state, step))

    async def validate(
        self,
        file_id: str,
        validation_settings: Optional[ValidationSettings] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> Result:
        """Validate the mapped data in a worker thread; cancellable between batches."""
        try:
            with self._running(file_id, "validate"):
                state = self.get_state(file_id)
                token = self._tokens[file_id] = CancellationToken()
                self._save(state.evolve(is_processing=True, progress=0))
                report = self._progress_recorder(file_id, progress)
                try:
                    result = await asyncio.to_thread(
                        self.orchestrator.validate, state, validation_settings, report, token
                    )
                finally:
                    self._tokens.pop(file_id, None)
                return await self._commit(result)
        except (PipelineBusy, NotFound) as e:
            return Err.from_exception(e)

    async def deploy(self, file_id: str, progress: Optional[ProgressCallback] = None) -> Result:
        """
        Write the mapped rows to their destination tables.

        A failed or cancelled write marks the file failed; tables that were
        already written keep their rows.
        """
        try:
            with self._running(file_id, "deploy"):
                state = self.get_state(file_id)
                planned = self.orchestrator.deploy(state)
                if not planned.ok:
                    return await self._commit(planned)

                transition = planned.value
                plan = [intent for intent in transition.intents if isinstance(intent, WriteRows)]
                running = self._save(transition.state)
                token = self._tokens[file_id] = CancellationToken()
                executor = DeploymentExecutor(self.destination_store, batch_size=self.deployment_batch_size)
                try:
                    summary = await asyncio.to_thread(
                        executor.execute, plan, self._progress_recorder(file_id, progress), token
                    )
                except (DeploymentError, OperationCancelled) as e:
                    failed = self.orchestrator.fail(running, e.message)
                    await self._commit(failed)
                    return Err.from_exception(e, fallback=failed.value if failed.ok else None)
                finally:
                    self._tokens.pop(file_id, None)

                return await self._commit(self.orchestrator.complete_deploy(running, summary))
        except (PipelineBusy, NotFound) as e:
            return Err.from_exception(e)

    def cancel(self, file_id: str) -> bool:
        """Request cancellation of the running validation or deployment, if any."""
        token = self._tokens.get(file_id)
        if token is None:
            return False
        token.cancel()
        logger.info("Cancellation requested for file %s", file_id)
        return True
