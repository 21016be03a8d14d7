"""
Persistence of upload records and their pipeline status.
"""
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Protocol, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import ProgrammingError

from app.api.schemas.shared import UploadStatus, UploadedFile
from app.core.errors import NotFound
from app.db.session import get_engine

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UploadStore(Protocol):
    def create(self, upload: UploadedFile) -> UploadedFile:
        ...

    def get(self, file_id: str) -> Optional[UploadedFile]:
        ...

    def update_status(
        self,
        file_id: str,
        status: UploadStatus,
        total_rows: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> UploadedFile:
        ...


_UPLOAD_COLUMNS = """
    file_id, original_filename, file_size, file_type, upload_status,
    total_rows, storage_key, error_message, uploaded_at, processed_at, last_modified
"""

# Statuses after which the file counts as processed
_PROCESSED_STATUSES = {UploadStatus.STAGED, UploadStatus.DEPLOYED, UploadStatus.FAILED}


def _row_to_upload(row) -> UploadedFile:
    return UploadedFile(
        file_id=str(row[0]),
        original_filename=row[1],
        file_size=row[2],
        file_type=row[3],
        upload_status=UploadStatus(row[4]),
        total_rows=row[5],
        storage_key=row[6],
        error_message=row[7],
        uploaded_at=row[8],
        processed_at=row[9],
        last_modified=row[10],
    )


class SqlUploadStore:
    """Upload records kept in the ``uploads`` table via SQLAlchemy Core."""

    def __init__(self, engine=None):
        self._engine = engine
        self._table_initialized = False
        self._table_init_lock = threading.Lock()

    @property
    def engine(self):
        if self._engine is None:
            self._engine = get_engine()
        return self._engine

    def ensure_table(self) -> None:
        """Create the uploads table on-demand if it is missing."""
        if self._table_initialized:
            return
        with self._table_init_lock:
            if self._table_initialized:
                return
            self._create_table()
            self._table_initialized = True

    def _create_table(self) -> None:
        ddl_statements = [
            """
            CREATE TABLE IF NOT EXISTS uploads (
                file_id VARCHAR(64) PRIMARY KEY,
                original_filename VARCHAR(255) NOT NULL,
                file_size BIGINT NOT NULL,
                file_type VARCHAR(100),
                upload_status VARCHAR(20) NOT NULL DEFAULT 'uploaded',
                total_rows INTEGER,
                storage_key VARCHAR(500),
                metadata JSONB,
                error_message TEXT,
                uploaded_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                processed_at TIMESTAMPTZ,
                last_modified TIMESTAMPTZ DEFAULT NOW()
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_uploads_status ON uploads(upload_status)",
            "CREATE INDEX IF NOT EXISTS idx_uploads_uploaded_at ON uploads(uploaded_at DESC)",
        ]
        with self.engine.begin() as conn:
            for ddl in ddl_statements:
                conn.execute(text(ddl))
        logger.info("uploads table ready")

    @staticmethod
    def _is_missing_table_error(error: ProgrammingError) -> bool:
        origin = getattr(error, "orig", None)
        return getattr(origin, "pgcode", None) == "42P01"

    def _run_with_table_retry(self, operation: Callable[[], _T]) -> _T:
        """Execute a database operation and recreate uploads if it vanished."""
        self.ensure_table()
        try:
            return operation()
        except ProgrammingError as error:
            if not self._is_missing_table_error(error):
                raise
            with self._table_init_lock:
                self._table_initialized = False
            self.ensure_table()
            return operation()

    def create(self, upload: UploadedFile) -> UploadedFile:
        insert_sql = f"""
        INSERT INTO uploads (
            file_id, original_filename, file_size, file_type, upload_status,
            total_rows, storage_key, uploaded_at, last_modified
        )
        VALUES (
            :file_id, :original_filename, :file_size, :file_type, :upload_status,
            :total_rows, :storage_key, :uploaded_at, :uploaded_at
        )
        RETURNING {_UPLOAD_COLUMNS}
        """
        params = {
            "file_id": upload.file_id,
            "original_filename": upload.original_filename,
            "file_size": upload.file_size,
            "file_type": upload.file_type,
            "upload_status": upload.upload_status.value,
            "total_rows": upload.total_rows,
            "storage_key": upload.storage_key,
            "uploaded_at": upload.uploaded_at,
        }

        def _insert() -> UploadedFile:
            with self.engine.begin() as conn:
                row = conn.execute(text(insert_sql), params).fetchone()
                return _row_to_upload(row)

        return self._run_with_table_retry(_insert)

    def get(self, file_id: str) -> Optional[UploadedFile]:
        query_sql = f"SELECT {_UPLOAD_COLUMNS} FROM uploads WHERE file_id = :file_id"

        def _fetch() -> Optional[UploadedFile]:
            with self.engine.connect() as conn:
                row = conn.execute(text(query_sql), {"file_id": file_id}).fetchone()
                return _row_to_upload(row) if row else None

        return self._run_with_table_retry(_fetch)

    def update_status(
        self,
        file_id: str,
        status: UploadStatus,
        total_rows: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> UploadedFile:
        """Update status; ``total_rows`` and ``metadata`` are only overwritten when given."""
        status = UploadStatus(status)
        update_sql = f"""
        UPDATE uploads
        SET upload_status = :status,
            total_rows = COALESCE(:total_rows, total_rows),
            metadata = COALESCE(CAST(:metadata AS JSONB), metadata),
            error_message = :error_message,
            processed_at = CASE WHEN :mark_processed THEN NOW() ELSE processed_at END,
            last_modified = NOW()
        WHERE file_id = :file_id
        RETURNING {_UPLOAD_COLUMNS}
        """
        params = {
            "file_id": file_id,
            "status": status.value,
            "total_rows": total_rows,
            "metadata": json.dumps(metadata, default=str) if metadata is not None else None,
            "error_message": error_message,
            "mark_processed": status in _PROCESSED_STATUSES,
        }

        def _update() -> UploadedFile:
            with self.engine.begin() as conn:
                row = conn.execute(text(update_sql), params).fetchone()
                if row is None:
                    raise NotFound(f"Upload {file_id} not found")
                return _row_to_upload(row)

        updated = self._run_with_table_retry(_update)
        logger.info("Upload %s status -> %s", file_id, status.value)
        return updated


class InMemoryUploadStore:
    """Upload records held in process memory."""

    def __init__(self):
        self._uploads: Dict[str, UploadedFile] = {}
        self.metadata: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def create(self, upload: UploadedFile) -> UploadedFile:
        with self._lock:
            stored = upload.model_copy(update={"last_modified": upload.uploaded_at})
            self._uploads[upload.file_id] = stored
            return stored

    def get(self, file_id: str) -> Optional[UploadedFile]:
        return self._uploads.get(file_id)

    def update_status(
        self,
        file_id: str,
        status: UploadStatus,
        total_rows: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> UploadedFile:
        status = UploadStatus(status)
        with self._lock:
            current = self._uploads.get(file_id)
            if current is None:
                raise NotFound(f"Upload {file_id} not found")
            now = _utcnow()
            changes: Dict[str, Any] = {
                "upload_status": status,
                "error_message": error_message,
                "last_modified": now,
            }
            if total_rows is not None:
                changes["total_rows"] = total_rows
            if status in _PROCESSED_STATUSES:
                changes["processed_at"] = now
            if metadata is not None:
                self.metadata[file_id] = metadata
            updated = current.model_copy(update=changes)
            self._uploads[file_id] = updated
            return updated
