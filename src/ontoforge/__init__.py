"""
Ontoforge - Crash-Recoverable Ontology Extraction

Extracts an ontology (entities, column roles, relationships) from a
relational schema through a persisted stage pipeline.

Features:
- Durable runs that survive crashes and are recovered by heartbeat staleness
- Foreign-key discovery for schemas without naming conventions
- Coincidental-match rejection with bidirectional join statistics
- Confidence-gated LLM arbitration with deterministic fallback
- Incremental refresh that re-runs only invalidated stages
"""

__version__ = "0.1.0"
__author__ = "Ontoforge Team"

from ontoforge.config import EngineConfig, load_config
from ontoforge.models import (
    ChangeSet,
    RunKind,
    RunRecord,
    RunStatus,
    SchemaRelationship,
    SchemaSnapshot,
    StageName,
)

# Import pipeline module
from ontoforge.pipeline import (
    IncrementalRefresher,
    Orchestrator,
    RefreshPlanner,
)

# Import storage module
from ontoforge.storage import Database

__all__ = [
    # Configuration
    "EngineConfig",
    "load_config",
    # Core models
    "ChangeSet",
    "RunKind",
    "RunRecord",
    "RunStatus",
    "SchemaRelationship",
    "SchemaSnapshot",
    "StageName",
    # Pipeline
    "IncrementalRefresher",
    "Orchestrator",
    "RefreshPlanner",
    # Storage
    "Database",
]
