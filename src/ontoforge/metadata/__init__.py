"""
Schema catalog module.

Provides a unified interface to list tables, columns and declared foreign
keys, compute join statistics, and detect schema changes between snapshots.
"""

from ontoforge.metadata.catalog import SchemaCatalog, normalize_type
from ontoforge.metadata.changes import diff_snapshots
from ontoforge.metadata.frame_catalog import FrameCatalog
from ontoforge.metadata.sql_catalog import SQLAlchemyCatalog

__all__ = [
    "SchemaCatalog",
    "SQLAlchemyCatalog",
    "FrameCatalog",
    "normalize_type",
    "diff_snapshots",
]
