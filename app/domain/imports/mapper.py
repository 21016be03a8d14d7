"""
Field mapping recommendation.

Scores every (source column, catalog field) pair and proposes the best
destination for each column. Scores combine direct name similarity with the
data-driven pattern rules loaded from ``rules/pattern_rules.json``.
"""
import logging
import re
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence, Tuple

from app.api.schemas.shared import DatabaseField, FieldMapping, MappingConflict, ScoredField
from app.core.config import settings
from app.domain.imports.catalog import DestinationCatalog, PatternRuleSet, load_pattern_rules

logger = logging.getLogger(__name__)

_LEADING_ARTICLE = re.compile(r"^(the|a|an)[\s_\-]+")
_NON_ALPHANUMERIC = re.compile(r"[^a-z0-9]")


def normalize_field_name(name: str) -> str:
    """Lowercase, drop a leading article and strip every non-alphanumeric character."""
    lowered = (name or "").strip().lower()
    lowered = _LEADING_ARTICLE.sub("", lowered)
    return _NON_ALPHANUMERIC.sub("", lowered)


def _pattern_confidence(source_lower: str, normalized_source: str, field_name: str, rules: PatternRuleSet) -> float:
    best = 0.0
    for rule in rules.rules_for(field_name):
        for variant in rule.variants:
            for candidate in (source_lower, normalized_source):
                if not candidate:
                    continue
                if candidate == variant:
                    score = rule.confidence
                elif variant in candidate:
                    score = rule.confidence * 0.9
                elif candidate in variant:
                    score = rule.confidence * 0.8
                else:
                    continue
                best = max(best, score)
    return best


def calculate_match_confidence(
    source_column: str,
    field: DatabaseField,
    rules: Optional[PatternRuleSet] = None,
) -> float:
    """
    Score how well a source column name matches a catalog field.

    Returns:
        Confidence in [0, 1]
    """
    rules = rules or load_pattern_rules()
    normalized_source = normalize_field_name(source_column)
    if not normalized_source:
        return 0.0

    normalized_field = normalize_field_name(field.field)
    source_lower = source_column.strip().lower()

    if normalized_source == normalized_field:
        confidence = 1.0
    else:
        confidence = 0.0
        if normalized_field and (normalized_field in normalized_source or normalized_source in normalized_field):
            confidence = 0.9
        confidence = max(confidence, _pattern_confidence(source_lower, normalized_source, field.field, rules))

    if rules.is_common_field(field.field):
        confidence *= settings.mapping_common_field_boost

    if field.is_custom_field and confidence < settings.mapping_custom_field_strong_match:
        confidence *= settings.mapping_custom_field_penalty

    return min(confidence, 1.0)


def find_best_field_match(
    source_column: str,
    fields: Sequence[DatabaseField],
    rules: Optional[PatternRuleSet] = None,
) -> Optional[ScoredField]:
    """Return the highest scoring field above the discard floor; earlier fields win ties."""
    rules = rules or load_pattern_rules()
    best: Optional[ScoredField] = None
    highest = 0.0

    for field in fields:
        confidence = calculate_match_confidence(source_column, field, rules)
        if confidence > highest and confidence > settings.mapping_discard_floor:
            highest = confidence
            best = ScoredField(**field.model_dump(), confidence=confidence)
    return best


def _mapping_from_match(source_column: str, match: Optional[ScoredField]) -> FieldMapping:
    if match is None:
        return FieldMapping(source_column=source_column)
    return FieldMapping(
        source_column=source_column,
        target_table=match.table,
        target_field=match.field,
        required=match.required,
        confidence=match.confidence,
        validated=False,
    )


def generate_smart_mappings(headers: Sequence[str], fields: Sequence[DatabaseField]) -> List[FieldMapping]:
    """
    Build the initial mapping for every header.

    Only matches above the initial threshold are accepted; other columns stay
    unmapped for manual review or ``auto_map_remaining_fields``.
    """
    rules = load_pattern_rules()
    mappings = []
    for header in headers:
        match = find_best_field_match(header, fields, rules)
        if match is not None and match.confidence <= settings.mapping_initial_threshold:
            match = None
        mappings.append(_mapping_from_match(header, match))

    mapped = sum(1 for m in mappings if m.is_mapped)
    logger.info("Generated smart mappings: %d of %d columns mapped", mapped, len(mappings))
    return mappings


def auto_map_remaining_fields(mappings: Sequence[FieldMapping], fields: Sequence[DatabaseField]) -> List[FieldMapping]:
    """Fill in unmapped columns whose best match clears the lower auto-map threshold."""
    rules = load_pattern_rules()
    updated = []
    for mapping in mappings:
        if mapping.is_mapped:
            updated.append(mapping)
            continue
        match = find_best_field_match(mapping.source_column, fields, rules)
        if match is not None and match.confidence > settings.mapping_remaining_threshold:
            updated.append(
                mapping.model_copy(
                    update={
                        "target_table": match.table,
                        "target_field": match.field,
                        "required": match.required,
                        "confidence": match.confidence,
                    }
                )
            )
        else:
            updated.append(mapping)
    return updated


def get_mapping_suggestions(
    source_column: str,
    fields: Sequence[DatabaseField],
    limit: int = 5,
) -> List[ScoredField]:
    """Rank catalog fields for a column, best first."""
    rules = load_pattern_rules()
    scored = []
    for field in fields:
        confidence = calculate_match_confidence(source_column, field, rules)
        if confidence > settings.mapping_suggestion_floor:
            scored.append(ScoredField(**field.model_dump(), confidence=confidence))
    # sorted() is stable so equal scores keep catalog order
    scored = sorted(scored, key=lambda candidate: candidate.confidence, reverse=True)
    return scored[:limit]


def update_mapping(
    mappings: Sequence[FieldMapping],
    source_column: str,
    target_table: str,
    target_field: str,
    catalog: DestinationCatalog,
) -> List[FieldMapping]:
    """
    Manually point a source column at a destination field, or clear it.

    Passing empty table and field clears the mapping.

    Raises:
        KeyError: If the source column is not part of the mappings
        ValueError: If the destination field is not in the catalog
    """
    if not any(m.source_column == source_column for m in mappings):
        raise KeyError(source_column)

    cleared = not target_table and not target_field
    destination = None
    if not cleared:
        destination = catalog.find_field(target_table, target_field)
        if destination is None:
            raise ValueError(f"Unknown destination field {target_table}.{target_field}")

    updated = []
    for mapping in mappings:
        if mapping.source_column != source_column:
            updated.append(mapping)
        elif cleared:
            updated.append(FieldMapping(source_column=source_column))
        else:
            updated.append(
                FieldMapping(
                    source_column=source_column,
                    target_table=destination.table,
                    target_field=destination.field,
                    required=destination.required,
                    confidence=settings.mapping_manual_confidence,
                    validated=False,
                )
            )
    return updated


def detect_mapping_conflicts(mappings: Sequence[FieldMapping]) -> List[MappingConflict]:
    """Report every destination field targeted by more than one source column."""
    targets: Dict[Tuple[str, str], List[str]] = OrderedDict()
    for mapping in mappings:
        if not mapping.is_mapped:
            continue
        targets.setdefault((mapping.target_table, mapping.target_field), []).append(mapping.source_column)

    conflicts = [
        MappingConflict(target_table=table, target_field=field, source_columns=columns)
        for (table, field), columns in targets.items()
        if len(columns) > 1
    ]
    if conflicts:
        logger.warning(
            "Mapping conflicts detected: %s",
            "; ".join(f"{c.target_table}.{c.target_field} <- {c.source_columns}" for c in conflicts),
        )
    return conflicts
