"""
Incremental refresh.

Maps a ChangeSet to the stages it invalidates and runs only those, recording
the rest as skipped. Each change invalidates an entry stage and everything
downstream of it; an empty change set only bumps the project's refresh
timestamp.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional

from ontoforge.metadata.changes import diff_snapshots
from ontoforge.models import (
    ChangeSet,
    ChangeType,
    Correction,
    RunKind,
    RunRecord,
    StageName,
    downstream_closure,
    topological_stage_order,
)

logger = logging.getLogger(__name__)

_SCHEMA_ENTRY = frozenset({StageName.SCHEMA_SNAPSHOT})
_FK_ENTRY = frozenset({StageName.FK_DISCOVERY})

# change type -> stages it invalidates directly; their dependents follow
CHANGE_STAGE_MAP: Dict[ChangeType, FrozenSet[StageName]] = {
    ChangeType.TABLE_ADDED: _SCHEMA_ENTRY,
    ChangeType.TABLE_REMOVED: _SCHEMA_ENTRY,
    ChangeType.COLUMN_ADDED: _SCHEMA_ENTRY,
    ChangeType.COLUMN_REMOVED: _SCHEMA_ENTRY,
    ChangeType.COLUMN_TYPE_CHANGED: _SCHEMA_ENTRY,
    ChangeType.FK_ADDED: _FK_ENTRY,
    ChangeType.FK_REMOVED: _FK_ENTRY,
    ChangeType.COLUMN_ROLE_OVERRIDE: frozenset({StageName.COLUMN_FEATURES}),
    ChangeType.RELATIONSHIP_OVERRIDE: frozenset({StageName.RELATIONSHIP_VALIDATION}),
    ChangeType.ATTRIBUTE_EDIT: frozenset({StageName.ONTOLOGY_FINALIZATION}),
}


@dataclass
class RefreshPlan:
    """Stages a refresh must execute, with the change types that require each."""
    stages: List[StageName] = field(default_factory=list)
    reasons: Dict[StageName, List[ChangeType]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.stages

    @property
    def skipped(self) -> List[StageName]:
        return [s for s in topological_stage_order(StageName) if s not in self.stages]


class RefreshPlanner:
    """Computes the minimal stage set for a change set."""

    def __init__(self, stage_map: Optional[Dict[ChangeType, FrozenSet[StageName]]] = None):
        self.stage_map = stage_map or CHANGE_STAGE_MAP

    def stages_for(self, change_type: ChangeType) -> FrozenSet[StageName]:
        """
        Entry stages of a change type closed over their dependents.

        Catalog changes also re-capture the schema snapshot so later
        refreshes diff against the new schema. The snapshot's own dependents
        are only pulled in when the change enters at the snapshot.
        """
        stages = downstream_closure(self.stage_map[change_type])
        if not change_type.is_correction:
            stages.add(StageName.SCHEMA_SNAPSHOT)
        return frozenset(stages)

    def plan(self, change_set: ChangeSet) -> RefreshPlan:
        """
        Union of the stages invalidated by each change.

        Args:
            change_set: Schema diffs and corrections

        Returns:
            RefreshPlan in dependency order
        """
        reasons: Dict[StageName, List[ChangeType]] = {}
        for change_type in sorted(change_set.change_types, key=lambda c: c.value):
            for stage in self.stages_for(change_type):
                reasons.setdefault(stage, []).append(change_type)
        return RefreshPlan(stages=topological_stage_order(reasons), reasons=reasons)


class IncrementalRefresher:
    """
    Entry point for refreshes driven by schema changes or corrections.

    Example:
        refresher = IncrementalRefresher(orchestrator)
        changes = refresher.detect_changes("sales")
        run = refresher.refresh("sales", changes, background=False)
    """

    def __init__(self, orchestrator, planner: Optional[RefreshPlanner] = None):
        self.orchestrator = orchestrator
        self.planner = planner or RefreshPlanner()

    def detect_changes(self, project_id: str) -> ChangeSet:
        """Diff the stored snapshot against the live catalog."""
        state = self.orchestrator.projects.get(project_id)
        previous = state.schema_snapshot if state is not None else None
        current = self.orchestrator.catalog.snapshot()
        changes = diff_snapshots(previous, current)
        logger.info(f"Detected {len(changes.changes)} schema changes for project {project_id}")
        return changes

    def refresh(
        self,
        project_id: str,
        change_set: ChangeSet,
        background: bool = True,
    ) -> Optional[RunRecord]:
        """
        Apply a change set.

        Args:
            project_id: Project to refresh
            change_set: Schema diffs and corrections
            background: Execute on a worker thread

        Returns:
            The refresh run, or None when the change set was empty
        """
        if change_set.is_empty:
            self.orchestrator.projects.touch_refreshed(project_id)
            logger.info(f"Empty change set for project {project_id}, refresh timestamp updated")
            return None

        plan = self.planner.plan(change_set)
        corrections = [
            Correction(
                project_id=project_id,
                kind=change.change_type,
                table=change.table,
                column=change.column,
                payload=dict(change.payload),
            )
            for change in change_set.corrections
        ]
        if corrections:
            self.orchestrator.corrections.add_many(corrections)

        logger.info(
            f"Refreshing project {project_id}: running {[s.value for s in plan.stages]}, "
            f"skipping {[s.value for s in plan.skipped]}"
        )
        return self.orchestrator.start_run(
            project_id,
            kind=RunKind.REFRESH,
            change_set=change_set,
            plan=plan.stages,
            background=background,
        )
