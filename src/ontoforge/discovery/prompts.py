"""
Prompt templates for LLM classification and arbitration.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from ontoforge.models import ColumnFeatures, SchemaRelationship, TableMetadata

SYSTEM_PROMPT = (
    "You are a database analyst helping build a semantic model of an unfamiliar "
    "relational schema. Answer with a single JSON object and nothing else."
)

COLUMN_FEATURES_TEMPLATE = """Classify every column of the table `{table}`.

Columns (name, type, nullable, heuristic role):
{columns}

For each column return:
- "role": one of "primary_key", "foreign_key", "ordinal", "attribute"
- "purpose": one of "identifier", "timestamp", "flag", "measure", "enum", "text", "json", "ordinal"
- "description": one short sentence

Rules:
- Columns that count or order things (names ending in _number, _offset, _step,
  _position, _sequence, _index, _rank) are "ordinal", never "foreign_key".
- Only mark "foreign_key" when the column plausibly stores the identifier of a row in another table.

Respond as:
{{"columns": [{{"column": "...", "role": "...", "purpose": "...", "description": "..."}}]}}
"""

RELATIONSHIP_TEMPLATE = """Decide whether this is a real foreign key relationship.

Source column: {source_table}.{source_column} ({source_type}){source_description}
Target column: {target_table}.{target_column} ({target_type}, primary or unique key){target_description}
Discovered by: {method}
Deterministic confidence: {confidence:.2f}

Join statistics (distinct non-null values):
{statistics}

Source table columns: {source_columns}
Target table columns: {target_columns}

Guidance:
- Small sequential integers (1, 2, 3, ...) overlap the primary keys of many
  unrelated tables. A high match rate on such values is coincidental, not evidence.
- Columns that count, rank or order things (names ending in _number, _offset,
  _step, _position, _sequence, _index, _rank) are never foreign keys.
- A foreign key should reference a meaningful share of the target's keys and its
  name or the table semantics should make the reference plausible.

Respond as:
{{"is_valid_fk": true|false, "confidence": 0.0-1.0, "cardinality": "N:1"|"1:1", "reasoning": "..."}}
"""

RELATIONSHIP_ENRICHMENT_TEMPLATE = """Describe this accepted relationship for a business user.

Source column: {source_table}.{source_column}{source_description}
Target column: {target_table}.{target_column}{target_description}
Cardinality: {cardinality}

Return:
- "description": one or two sentences explaining what the reference means
- "association": a short snake_case verb phrase read from source to target,
  such as "placed_by", "belongs_to" or "as_author"

Respond as:
{{"description": "...", "association": "..."}}
"""


def _describe(features: Optional[ColumnFeatures]) -> str:
    if features is None or not features.description:
        return ""
    return f" - {features.description}"


def build_column_features_prompt(table: TableMetadata, heuristics: List[ColumnFeatures]) -> str:
    """Prompt asking the LLM to classify one table's columns."""
    by_column = {f.column.lower(): f for f in heuristics}
    lines = []
    for col in table.columns:
        feature = by_column.get(col.name.lower())
        role = feature.role.value if feature else "attribute"
        lines.append(
            f"- {col.name}: {col.raw_type or col.data_type.value}, "
            f"{'nullable' if col.nullable else 'not null'}, {role}"
        )
    return COLUMN_FEATURES_TEMPLATE.format(table=table.name, columns="\n".join(lines))


def build_relationship_prompt(
    relationship: SchemaRelationship,
    source_table: Optional[TableMetadata],
    target_table: Optional[TableMetadata],
    source_features: Optional[ColumnFeatures] = None,
    target_features: Optional[ColumnFeatures] = None,
) -> str:
    """Prompt asking the LLM to arbitrate one relationship."""
    def col_type(table: Optional[TableMetadata], name: str) -> str:
        col = table.get_column(name) if table else None
        return (col.raw_type or col.data_type.value) if col else "unknown"

    def col_list(table: Optional[TableMetadata]) -> str:
        return ", ".join(table.column_names) if table else "unknown"

    stats: Dict[str, Any] = relationship.validation_results.get("join_statistics", {})

    return RELATIONSHIP_TEMPLATE.format(
        source_table=relationship.source_table,
        source_column=relationship.source_column,
        source_type=col_type(source_table, relationship.source_column),
        source_description=_describe(source_features),
        target_table=relationship.target_table,
        target_column=relationship.target_column,
        target_type=col_type(target_table, relationship.target_column),
        target_description=_describe(target_features),
        method=relationship.inference_method.value,
        confidence=relationship.confidence,
        statistics=json.dumps(stats, indent=2, sort_keys=True) if stats else "not available",
        source_columns=col_list(source_table),
        target_columns=col_list(target_table),
    )


def build_relationship_enrichment_prompt(
    relationship: SchemaRelationship,
    source_features: Optional[ColumnFeatures] = None,
    target_features: Optional[ColumnFeatures] = None,
) -> str:
    """Prompt asking the LLM to describe one accepted relationship."""
    return RELATIONSHIP_ENRICHMENT_TEMPLATE.format(
        source_table=relationship.source_table,
        source_column=relationship.source_column,
        source_description=_describe(source_features),
        target_table=relationship.target_table,
        target_column=relationship.target_column,
        target_description=_describe(target_features),
        cardinality=relationship.cardinality.value,
    )
