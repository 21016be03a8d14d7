"""
Tests for deployment planning and the chunked deployment executor.
"""

import pytest

from app.api.schemas.shared import FieldMapping
from app.core.errors import DeploymentError, OperationCancelled
from app.db.destination_tables import InMemoryDestinationStore
from app.domain.imports.deployment import DeploymentExecutor, plan_deployment
from app.domain.workflows.models import CancellationToken, WriteRows


HEADERS = ["Amount", "First", "Check", "Notes"]
ROWS = [["10.00", "Ann", "1001", "x"], ["", "Bob", "1002", "y"]]
MAPPINGS = [
    FieldMapping(source_column="Amount", target_table="payments", target_field="amount_due"),
    FieldMapping(source_column="First", target_table="individual_parties", target_field="first_name"),
    FieldMapping(source_column="Check", target_table="payments", target_field="check_number"),
    FieldMapping(source_column="Notes"),
]


class TestPlanDeployment:

    def test_groups_by_table_in_first_seen_order(self):
        plan = plan_deployment(HEADERS, ROWS, MAPPINGS)
        assert [group.table for group in plan] == ["payments", "individual_parties"]

    def test_records_only_carry_mapped_columns(self):
        payments, people = plan_deployment(HEADERS, ROWS, MAPPINGS)
        assert payments.records == (
            {"amount_due": "10.00", "check_number": "1001"},
            {"amount_due": None, "check_number": "1002"},
        )
        assert people.records == ({"first_name": "Ann"}, {"first_name": "Bob"})

    def test_excluded_rows(self):
        payments, _ = plan_deployment(HEADERS, ROWS, MAPPINGS, exclude_rows=[1])
        assert len(payments.records) == 1

    def test_default_value_fills_empty_cells(self):
        payments, _ = plan_deployment(HEADERS, ROWS, MAPPINGS, default_value="0.00")
        assert payments.records[1] == {"amount_due": "0.00", "check_number": "1002"}

    def test_nothing_mapped(self):
        assert plan_deployment(HEADERS, ROWS, [FieldMapping(source_column="Notes")]) == []


def _plan(*tables, rows=3):
    return [WriteRows(table=table, records=tuple({"n": i} for i in range(rows))) for table in tables]


class TestDeploymentExecutor:

    def test_writes_every_group_in_chunks(self):
        store = InMemoryDestinationStore()
        summary = DeploymentExecutor(store, batch_size=2).execute(_plan("parties", "payments", rows=5))

        assert summary.records_per_table == {"parties": 5, "payments": 5}
        assert summary.total_records == 10
        assert store.write_calls == [("parties", 2), ("parties", 2), ("parties", 1),
                                     ("payments", 2), ("payments", 2), ("payments", 1)]

    def test_progress(self):
        seen = []
        DeploymentExecutor(InMemoryDestinationStore(), batch_size=3).execute(_plan("a", "b"), progress=seen.append)
        assert seen == [50, 100]

    def test_failure_keeps_earlier_groups(self, failing_destination_store):
        store = failing_destination_store("payments")
        executor = DeploymentExecutor(store, batch_size=10)

        with pytest.raises(DeploymentError) as exc_info:
            executor.execute(_plan("individual_parties", "payments", "parties"))

        assert len(store.tables["individual_parties"]) == 3
        assert "payments" not in store.tables
        assert "parties" not in store.tables
        assert exc_info.value.details["table"] == "payments"
        assert exc_info.value.details["records_per_table"] == {"individual_parties": 3, "payments": 0}

    def test_cancellation_stops_further_writes(self):
        store = InMemoryDestinationStore()
        token = CancellationToken()

        with pytest.raises(OperationCancelled):
            DeploymentExecutor(store, batch_size=2).execute(
                _plan("parties", rows=6), progress=lambda _: token.cancel(), cancel_token=token
            )

        assert store.write_calls == [("parties", 2)]

    def test_reserved_table_is_rejected(self):
        with pytest.raises(DeploymentError):
            DeploymentExecutor(InMemoryDestinationStore()).execute(_plan("uploads"))
