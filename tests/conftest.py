"""
Pytest configuration and fixtures for the data intake tests.

Tests run against in-memory blob, upload and destination stores, so no
database or object storage is needed. Export SKIP_DB_INIT=0 explicitly to
exercise the application startup against a real database.
"""

import os

os.environ.setdefault("SKIP_DB_INIT", "1")

import pytest
from fastapi.testclient import TestClient

from app.api.dependencies import get_catalog, get_pipeline_runner
from app.db.destination_tables import InMemoryDestinationStore
from app.domain.imports.catalog import DestinationCatalog
from app.domain.uploads.uploaded_files import InMemoryUploadStore
from app.domain.workflows.executor import PipelineRunner
from app.domain.workflows.orchestrator import WorkflowOrchestrator
from app.integrations.storage import InMemoryBlobStore


class FailingDestinationStore(InMemoryDestinationStore):
    """Fails every write to one table."""

    def __init__(self, failing_table):
        super().__init__()
        self.failing_table = failing_table

    def insert_rows(self, table, records):
        if table == self.failing_table:
            raise RuntimeError("connection reset")
        return super().insert_rows(table, records)


@pytest.fixture
def catalog():
    """A fresh catalog per test so custom fields never leak between tests."""
    return DestinationCatalog.load()


@pytest.fixture
def orchestrator(catalog):
    return WorkflowOrchestrator(catalog)


@pytest.fixture
def destination_store():
    return InMemoryDestinationStore()


@pytest.fixture
def failing_destination_store():
    """Factory for destination stores that reject writes to one table."""
    return FailingDestinationStore


@pytest.fixture
def upload_store():
    return InMemoryUploadStore()


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def runner(orchestrator, blob_store, upload_store, destination_store):
    return PipelineRunner(
        orchestrator,
        blob_store=blob_store,
        upload_store=upload_store,
        destination_store=destination_store,
    )


@pytest.fixture
def client(runner, catalog):
    from app.main import app

    app.dependency_overrides[get_pipeline_runner] = lambda: runner
    app.dependency_overrides[get_catalog] = lambda: catalog
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
