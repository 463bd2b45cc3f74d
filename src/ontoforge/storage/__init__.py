"""
Persistence layer for runs, stages, relationships and ontology state.

Backed by SQLAlchemy; SQLite for local use and tests, PostgreSQL in production.
"""

from ontoforge.storage.database import Database, upsert_statement
from ontoforge.storage.repository import (
    ColumnFeatureRepository,
    CorrectionRepository,
    EntityRepository,
    OntologyRepository,
    ProjectRepository,
    RelationshipRepository,
    RunRepository,
)

__all__ = [
    "Database",
    "upsert_statement",
    "RunRepository",
    "RelationshipRepository",
    "ColumnFeatureRepository",
    "ProjectRepository",
    "CorrectionRepository",
    "EntityRepository",
    "OntologyRepository",
]
