"""
Destination catalog and field-name pattern rules.

Both are shipped as versioned JSON resources under ``rules/`` so the matching
vocabulary can be extended without touching the mapping code.
"""
import json
import logging
import re
import threading
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from app.api.schemas.shared import DatabaseField, FieldType
from app.core.errors import NotFound, PreconditionFailed

logger = logging.getLogger(__name__)

RULES_DIR = Path(__file__).resolve().parent / "rules"
CATALOG_PATH = RULES_DIR / "destination_catalog.json"
PATTERN_RULES_PATH = RULES_DIR / "pattern_rules.json"


def _load_json(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def clean_field_name(name: str) -> str:
    """
    Make a user supplied field name database-safe.

    Args:
        name: Field name as typed, e.g. ``"Loyalty Tier!"``

    Returns:
        Lowercase name with runs of other characters collapsed to single
        underscores (``loyalty_tier``); empty if nothing usable remains
    """
    cleaned = re.sub(r"[^a-z0-9_]", "_", (name or "").lower())
    cleaned = re.sub(r"_{2,}", "_", cleaned)
    return cleaned.strip("_")


@dataclass(frozen=True)
class PatternRule:
    field: str
    confidence: float
    variants: Tuple[str, ...]
    category: str


@dataclass(frozen=True)
class PatternRuleSet:
    version: str
    rules: Tuple[PatternRule, ...]
    common_fields: frozenset

    def rules_for(self, field_name: str) -> List[PatternRule]:
        return [rule for rule in self.rules if rule.field == field_name]

    def is_common_field(self, field_name: str) -> bool:
        return field_name in self.common_fields


def parse_pattern_rules(payload: dict) -> PatternRuleSet:
    rules = []
    for category, entries in payload.get("categories", {}).items():
        for entry in entries:
            rules.append(
                PatternRule(
                    field=entry["field"],
                    confidence=float(entry["confidence"]),
                    variants=tuple(v.lower() for v in entry.get("variants", [])),
                    category=category,
                )
            )
    return PatternRuleSet(
        version=str(payload.get("version", "0")),
        rules=tuple(rules),
        common_fields=frozenset(payload.get("common_fields", [])),
    )


@lru_cache(maxsize=4)
def load_pattern_rules(path: Optional[str] = None) -> PatternRuleSet:
    """Load and cache the pattern rule set (defaults to the bundled resource)."""
    rule_path = Path(path) if path else PATTERN_RULES_PATH
    rule_set = parse_pattern_rules(_load_json(rule_path))
    logger.info("Loaded %d mapping pattern rules (version %s)", len(rule_set.rules), rule_set.version)
    return rule_set


class DestinationCatalog:
    """In-memory view of the destination tables and their fields."""

    def __init__(self, tables: Iterable[dict], version: str = "0"):
        self.version = version
        self._lock = threading.Lock()
        self._tables: Dict[str, List[DatabaseField]] = {}
        for table in tables:
            name = table["name"]
            self._tables[name] = [
                DatabaseField(table=name, **field_spec) for field_spec in table.get("fields", [])
            ]

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "DestinationCatalog":
        payload = _load_json(path or CATALOG_PATH)
        catalog = cls(payload.get("tables", []), version=str(payload.get("version", "0")))
        logger.info(
            "Loaded destination catalog version %s: %d tables, %d fields",
            catalog.version,
            len(catalog._tables),
            len(catalog.get_all_database_fields()),
        )
        return catalog

    def get_all_database_fields(self) -> List[DatabaseField]:
        return [field for fields in self._tables.values() for field in fields]

    def get_fields_by_table(self, table_name: str) -> List[DatabaseField]:
        """
        List the fields of one destination table.

        Args:
            table_name: Catalog table name

        Returns:
            The table's fields in catalog order; empty for an unknown table
        """
        return list(self._tables.get(table_name, []))

    def get_all_table_names(self) -> List[str]:
        return list(self._tables.keys())

    def get_all_categories(self) -> List[str]:
        """Sorted, de-duplicated field categories across all tables."""
        return sorted({field.category for field in self.get_all_database_fields()})

    def get_fields_by_category(self, category: str) -> List[DatabaseField]:
        return [field for field in self.get_all_database_fields() if field.category == category]

    def get_required_fields(self) -> List[DatabaseField]:
        """Fields that must be filled in on every imported row."""
        return [field for field in self.get_all_database_fields() if field.required]

    def find_field(self, table_name: str, field_name: str) -> Optional[DatabaseField]:
        """
        Look up a single destination field.

        Args:
            table_name: Catalog table name
            field_name: Field name within that table

        Returns:
            The matching DatabaseField, or None if the table or field is unknown
        """
        for field in self._tables.get(table_name, []):
            if field.field == field_name:
                return field
        return None

    def add_custom_field(
        self,
        table: str,
        field: str,
        field_type: FieldType = FieldType.TEXT,
        *,
        required: bool = False,
        description: str = "",
        category: str = "Custom Fields",
        max_length: Optional[int] = 255,
        enum_values: Optional[List[str]] = None,
    ) -> DatabaseField:
        """
        Register a user-created field on an existing destination table.

        Raises:
            NotFound: If the table is not part of the catalog
            PreconditionFailed: If the name is unusable, already taken, or an
                enum field has no options
        """
        if table not in self._tables:
            raise NotFound(f"Unknown destination table '{table}'")

        clean_name = clean_field_name(field)
        if not clean_name:
            raise PreconditionFailed("Field name must contain at least one letter or number")
        if field_type == FieldType.ENUM and not enum_values:
            raise PreconditionFailed("Please add at least one option for dropdown fields")

        new_field = DatabaseField(
            table=table,
            field=clean_name,
            type=field_type,
            required=required,
            description=description or f"Custom {field_type.value} field",
            category=category,
            max_length=max_length if field_type == FieldType.TEXT else None,
            enum_values=list(enum_values) if field_type == FieldType.ENUM else None,
            is_custom_field=True,
        )

        with self._lock:
            if self.find_field(table, clean_name) is not None:
                raise PreconditionFailed(f"Field '{clean_name}' already exists on table '{table}'")
            self._tables[table].append(new_field)

        logger.info("Added custom field %s.%s (%s)", table, clean_name, field_type.value)
        return new_field
