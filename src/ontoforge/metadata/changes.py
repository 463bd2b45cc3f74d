"""
Schema change detection by snapshot comparison.

Change detection is poll-based: the stored snapshot of a project is compared
with a fresh catalog snapshot and the differences become a ChangeSet for the
incremental refresh planner.
"""

from __future__ import annotations

import logging
from typing import Optional

from ontoforge.models import Change, ChangeSet, ChangeType, SchemaSnapshot

logger = logging.getLogger(__name__)


def diff_snapshots(previous: Optional[SchemaSnapshot], current: SchemaSnapshot) -> ChangeSet:
    """
    Compute the structural differences between two snapshots.

    Args:
        previous: Stored snapshot (None means nothing was extracted yet)
        current: Fresh snapshot from the catalog

    Returns:
        ChangeSet of table, column and foreign key changes
    """
    changes = ChangeSet()
    previous = previous or SchemaSnapshot()

    if previous.fingerprint() == current.fingerprint():
        return changes

    old_tables = set(previous.tables)
    new_tables = set(current.tables)

    for name in sorted(new_tables - old_tables):
        changes.add(Change(ChangeType.TABLE_ADDED, table=current.tables[name].name))
    for name in sorted(old_tables - new_tables):
        changes.add(Change(ChangeType.TABLE_REMOVED, table=previous.tables[name].name))

    for name in sorted(old_tables & new_tables):
        old = previous.tables[name]
        new = current.tables[name]
        old_cols = {c.name.lower(): c for c in old.columns}
        new_cols = {c.name.lower(): c for c in new.columns}

        for col in sorted(set(new_cols) - set(old_cols)):
            changes.add(Change(ChangeType.COLUMN_ADDED, table=new.name, column=new_cols[col].name))
        for col in sorted(set(old_cols) - set(new_cols)):
            changes.add(Change(ChangeType.COLUMN_REMOVED, table=old.name, column=old_cols[col].name))
        for col in sorted(set(old_cols) & set(new_cols)):
            before, after = old_cols[col], new_cols[col]
            if (
                before.data_type != after.data_type
                or before.is_primary_key != after.is_primary_key
                or before.is_unique != after.is_unique
            ):
                changes.add(Change(
                    ChangeType.COLUMN_TYPE_CHANGED,
                    table=new.name,
                    column=after.name,
                    payload={"from": before.data_type.value, "to": after.data_type.value},
                ))

    old_fks = {fk.key.lower(): fk for fk in previous.foreign_keys}
    new_fks = {fk.key.lower(): fk for fk in current.foreign_keys}
    for key in sorted(set(new_fks) - set(old_fks)):
        fk = new_fks[key]
        changes.add(Change(
            ChangeType.FK_ADDED, table=fk.source_table, column=fk.source_column, payload=fk.to_dict()
        ))
    for key in sorted(set(old_fks) - set(new_fks)):
        fk = old_fks[key]
        changes.add(Change(
            ChangeType.FK_REMOVED, table=fk.source_table, column=fk.source_column, payload=fk.to_dict()
        ))

    if changes.changes:
        logger.info(f"Detected {len(changes.changes)} schema changes")
    return changes
