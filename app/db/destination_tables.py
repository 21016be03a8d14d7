"""
Writes of deployed records into destination tables.
"""
import logging
import re
import threading
from typing import Any, Dict, List, Protocol, Sequence

from sqlalchemy import text

from app.api.schemas.shared import is_reserved_system_table
from app.db.session import get_engine

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class DestinationStore(Protocol):
    def insert_rows(self, table: str, records: Sequence[Dict[str, Any]]) -> int:
        ...


def _check_identifier(name: str, kind: str) -> str:
    if not _IDENTIFIER.match(name or ""):
        raise ValueError(f"Invalid {kind} name: {name!r}")
    return name


def _check_destination_table(table: str) -> str:
    _check_identifier(table, "table")
    if is_reserved_system_table(table):
        raise ValueError(f"'{table}' is a reserved system table and cannot receive imported rows")
    return table


class SqlDestinationStore:
    """Insert records into existing destination tables with SQLAlchemy Core."""

    def __init__(self, engine=None):
        self._engine = engine

    @property
    def engine(self):
        if self._engine is None:
            self._engine = get_engine()
        return self._engine

    def insert_rows(self, table: str, records: Sequence[Dict[str, Any]]) -> int:
        if not records:
            return 0
        _check_destination_table(table)
        columns = [_check_identifier(column, "column") for column in records[0].keys()]

        column_sql = ", ".join(f'"{column}"' for column in columns)
        value_sql = ", ".join(f":{column}" for column in columns)
        insert_sql = f'INSERT INTO "{table}" ({column_sql}) VALUES ({value_sql})'

        with self.engine.begin() as conn:
            conn.execute(text(insert_sql), [dict(record) for record in records])

        logger.info("Inserted %d records into %s", len(records), table)
        return len(records)


class InMemoryDestinationStore:
    """Destination tables held as lists of dicts."""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.write_calls: List[tuple] = []
        self._lock = threading.Lock()

    def insert_rows(self, table: str, records: Sequence[Dict[str, Any]]) -> int:
        _check_destination_table(table)
        with self._lock:
            self.tables.setdefault(table, []).extend(dict(record) for record in records)
            self.write_calls.append((table, len(records)))
        return len(records)
