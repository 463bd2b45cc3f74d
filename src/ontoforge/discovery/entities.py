"""
Entity Discoverer - one business entity per identifiable table.

A table becomes an entity when its DDL names an identifying column:
- a primary key (confidence 1.0)
- otherwise the first unique, not-null column (confidence 0.9)

Tables whose names differ only by a test, sample or staging prefix
(s1_users, test_users, users) describe the same concept. They collapse into a
single entity backed by the unprefixed table, the others becoming aliases.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ontoforge.models import IdentifierSource, OntologyEntity, SchemaSnapshot, TableMetadata

logger = logging.getLogger(__name__)

PRIMARY_KEY_CONFIDENCE = 1.0
UNIQUE_NOT_NULL_CONFIDENCE = 0.9

TEST_PREFIXES = [
    re.compile(p) for p in (
        r"^s\d+_",
        r"^test_",
        r"^tmp_",
        r"^temp_",
        r"^staging_",
        r"^dev_",
        r"^sample_",
        r"^demo_",
        r"^backup_",
        r"^old_",
        r"^copy_of_",
        r"^archive_",
        r"^_",
    )
]


def has_test_prefix(table_name: str) -> bool:
    return any(p.match(table_name.lower()) for p in TEST_PREFIXES)


def core_concept(table_name: str) -> str:
    """Table name without test/sample prefixes: s1_users -> users."""
    name = table_name.lower()
    for pattern in TEST_PREFIXES:
        name = pattern.sub("", name)
    return name or table_name.lower()


def singularize(word: str) -> str:
    if len(word) <= 3:
        return word
    if word.endswith("ies"):
        return word[:-3] + "y"
    if word.endswith("s") and not word.endswith(("ss", "us", "is")):
        return word[:-1]
    return word


def display_name(table_name: str) -> str:
    """content_posts -> Content Post"""
    words = core_concept(table_name).split("_")
    words[-1] = singularize(words[-1])
    return " ".join(w.capitalize() for w in words if w)


def identifying_columns(table: TableMetadata) -> Optional[Tuple[List[str], IdentifierSource, float]]:
    """The table's identifier, how it qualified, and the resulting confidence."""
    pk = [c.name for c in table.get_pk_columns()] or list(table.primary_key)
    if pk:
        return pk, IdentifierSource.PRIMARY_KEY, PRIMARY_KEY_CONFIDENCE
    for col in table.columns:
        if col.is_unique and not col.nullable:
            return [col.name], IdentifierSource.UNIQUE_NOT_NULL, UNIQUE_NOT_NULL_CONFIDENCE
    return None


@dataclass
class DiscoveryResult:
    """Entities found in a snapshot and the tables that yielded none."""
    entities: List[OntologyEntity] = field(default_factory=list)
    skipped_tables: List[str] = field(default_factory=list)


class EntityDiscoverer:
    """
    Derive entities from DDL alone.

    Example:
        result = EntityDiscoverer().discover("sales", snapshot)
        for entity in result.entities:
            print(entity.primary_table, entity.identifier, entity.aliases)
    """

    def discover(self, project_id: str, snapshot: SchemaSnapshot) -> DiscoveryResult:
        result = DiscoveryResult()

        groups: Dict[str, List[TableMetadata]] = {}
        for key in sorted(snapshot.tables):
            table = snapshot.tables[key]
            groups.setdefault(core_concept(table.name), []).append(table)

        for concept in sorted(groups):
            tables = groups[concept]
            primary = next((t for t in tables if not has_test_prefix(t.name)), tables[0])

            identifier = identifying_columns(primary)
            if identifier is None:
                # Borrow the identifier of an alias table with the same shape
                for alt in tables:
                    if alt is not primary:
                        identifier = identifying_columns(alt)
                        if identifier is not None:
                            break
            if identifier is None:
                logger.debug(f"No identifying column for concept {concept}, tables {[t.name for t in tables]}")
                result.skipped_tables.extend(t.name for t in tables)
                continue

            columns, source, confidence = identifier
            result.entities.append(OntologyEntity(
                project_id=project_id,
                name=primary.name,
                primary_table=primary.name,
                identifier=columns,
                identifier_source=source,
                display_name=display_name(primary.name),
                description=primary.comment,
                confidence=confidence,
                aliases=sorted(t.name for t in tables if t is not primary),
            ))

        logger.info(
            f"Discovered {len(result.entities)} entities from {len(snapshot.tables)} tables "
            f"({len(result.skipped_tables)} without identifier)"
        )
        return result
