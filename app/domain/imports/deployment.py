"""
Deployment of validated rows into destination tables.

Rows are grouped per destination table (in the order tables first appear in
the mappings) and written in chunks. A failed chunk stops the deployment;
tables written before it keep their rows.
"""
import logging
from collections import OrderedDict
from typing import Callable, Iterable, List, Optional, Sequence

from app.api.schemas.shared import FieldMapping
from app.core.config import settings
from app.core.errors import DeploymentError, OperationCancelled
from app.db.destination_tables import DestinationStore
from app.domain.workflows.models import CancellationToken, DeploymentSummary, WriteRows

logger = logging.getLogger(__name__)


def plan_deployment(
    headers: Sequence[str],
    rows: Sequence[Sequence[str]],
    mappings: Sequence[FieldMapping],
    exclude_rows: Iterable[int] = (),
    default_value: Optional[str] = None,
) -> List[WriteRows]:
    """
    Build one WriteRows per destination table.

    Each record only carries the mapped columns of its table; empty cells
    take ``default_value`` when one is given and become NULL otherwise. Rows
    whose index is in ``exclude_rows`` are left out.
    """
    excluded = set(exclude_rows)
    header_positions = {header: index for index, header in enumerate(headers)}
    columns_by_table: "OrderedDict[str, List[tuple]]" = OrderedDict()
    for mapping in mappings:
        if not mapping.is_mapped or mapping.source_column not in header_positions:
            continue
        columns_by_table.setdefault(mapping.target_table, []).append(
            (mapping.target_field, header_positions[mapping.source_column])
        )

    plan = []
    for table, columns in columns_by_table.items():
        records = []
        for row_index, row in enumerate(rows):
            if row_index in excluded:
                continue
            record = {}
            for target_field, index in columns:
                value = row[index] if index < len(row) else ""
                record[target_field] = value if value != "" else default_value
            records.append(record)
        plan.append(WriteRows(table=table, records=tuple(records)))
    return plan


class DeploymentExecutor:
    """Write a deployment plan through a DestinationStore in fixed-size chunks."""

    def __init__(self, store: DestinationStore, batch_size: Optional[int] = None):
        self.store = store
        self.batch_size = max(1, batch_size or settings.deployment_batch_size)

    def execute(
        self,
        plan: Sequence[WriteRows],
        progress: Optional[Callable[[int], None]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> DeploymentSummary:
        """
        Execute every WriteRows in order.

        Raises:
            DeploymentError: When a chunk write fails; earlier writes are kept
            OperationCancelled: When the token is set between chunks
        """
        summary = DeploymentSummary()
        total = sum(len(group.records) for group in plan) or 1
        written = 0

        for group in plan:
            summary.records_per_table.setdefault(group.table, 0)
            for start in range(0, len(group.records), self.batch_size):
                if cancel_token is not None and cancel_token.is_cancelled():
                    logger.warning("Deployment cancelled after %d records", summary.total_records)
                    raise OperationCancelled(
                        f"Deployment cancelled after {summary.total_records} records",
                        details={"records_per_table": dict(summary.records_per_table)},
                    )

                chunk = list(group.records[start:start + self.batch_size])
                try:
                    self.store.insert_rows(group.table, chunk)
                except Exception as e:
                    logger.error("Write to %s failed after %d records: %s", group.table, summary.total_records, e)
                    raise DeploymentError(
                        f"Failed to write rows to {group.table}: {e}",
                        details={"table": group.table, "records_per_table": dict(summary.records_per_table)},
                    ) from e

                summary.records_per_table[group.table] += len(chunk)
                written += len(chunk)
                if progress is not None:
                    progress(int(written * 100 / total))

            logger.info("Deployed %d records to %s", summary.records_per_table[group.table], group.table)

        return summary
