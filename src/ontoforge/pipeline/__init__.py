"""
Extraction pipeline module.

Executes the stage DAG with durable, crash-recoverable state:
- Orchestrator: start, resume, cancel and recover runs
- Ownership: heartbeats and orphan reclamation
- Incremental refresh: minimal stage sets for change sets

Usage:
    from ontoforge.pipeline import IncrementalRefresher, Orchestrator

    orchestrator = Orchestrator(db, catalog, config, llm)
    orchestrator.recover_orphaned_runs()
    run = orchestrator.start_run("sales")
"""

from ontoforge.pipeline.incremental import (
    CHANGE_STAGE_MAP,
    IncrementalRefresher,
    RefreshPlan,
    RefreshPlanner,
)
from ontoforge.pipeline.orchestrator import Orchestrator
from ontoforge.pipeline.ownership import Heartbeat, OwnershipManager, generate_owner_id
from ontoforge.pipeline.stage import (
    CancellationToken,
    Stage,
    StageContext,
    StageOutcome,
    StageServices,
)
from ontoforge.pipeline.stages import build_stages

__all__ = [
    # Orchestration
    "Orchestrator",
    "OwnershipManager",
    "Heartbeat",
    "generate_owner_id",
    # Refresh
    "CHANGE_STAGE_MAP",
    "IncrementalRefresher",
    "RefreshPlan",
    "RefreshPlanner",
    # Stage framework
    "CancellationToken",
    "Stage",
    "StageContext",
    "StageOutcome",
    "StageServices",
    "build_stages",
]
