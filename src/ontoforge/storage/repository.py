"""
Repositories over the ORM tables.

Every state transition that can race with another process (claiming,
heartbeating, reclaiming, finishing and cancelling a run) is a single
conditional UPDATE whose success is decided by the affected row count.
Callers receive plain dataclasses from ontoforge.models, never ORM rows.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from sqlalchemy import and_, delete, func, or_, select, update

from ontoforge.models import (
    Cardinality,
    ChangeType,
    ColumnFeatures,
    ColumnPurpose,
    ColumnRole,
    Correction,
    FeatureSource,
    IdentifierSource,
    InferenceMethod,
    Ontology,
    OntologyEntity,
    ProjectState,
    RelationshipStatus,
    RunKind,
    RunRecord,
    RunStatus,
    SchemaRelationship,
    SchemaSnapshot,
    StageName,
    StageProgress,
    StageRecord,
    StageStatus,
)
from ontoforge.storage.database import Database, upsert_statement
from ontoforge.storage.tables import (
    ColumnFeatureRow,
    CorrectionRow,
    EntityRow,
    OntologyRow,
    ProjectRow,
    RelationshipRow,
    RunRow,
    StageRow,
    utcnow,
)

logger = logging.getLogger(__name__)

ACTIVE_RUN_STATUSES = (RunStatus.PENDING.value, RunStatus.RUNNING.value)


def _stage_from_row(row: StageRow) -> StageRecord:
    return StageRecord(
        run_id=row.run_id,
        name=StageName(row.name),
        order=row.stage_order,
        status=StageStatus(row.status),
        progress=StageProgress(
            current=row.progress_current,
            total=row.progress_total,
            message=row.progress_message or "",
        ),
        error=row.error,
        warnings=list(row.warnings or []),
        retry_count=row.retry_count,
        started_at=row.started_at,
        completed_at=row.completed_at,
        duration_ms=row.duration_ms,
    )


def _run_from_row(row: RunRow, with_stages: bool = True) -> RunRecord:
    return RunRecord(
        id=row.id,
        project_id=row.project_id,
        kind=RunKind(row.kind),
        status=RunStatus(row.status),
        owner_id=row.owner_id,
        last_heartbeat=row.last_heartbeat,
        current_stage=StageName(row.current_stage) if row.current_stage else None,
        error=row.error,
        change_set=row.change_set,
        created_at=row.created_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
        stages=[_stage_from_row(s) for s in row.stages] if with_stages else [],
    )


class RunRepository:
    """Durable run and stage state."""

    def __init__(self, db: Database):
        self.db = db

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        with self.db.session() as session:
            row = session.get(RunRow, run_id)
            return _run_from_row(row) if row else None

    def get_run_status(self, run_id: str) -> Optional[RunStatus]:
        """Read only the status column."""
        with self.db.session() as session:
            value = session.execute(
                select(RunRow.status).where(RunRow.id == run_id)
            ).scalar_one_or_none()
            return RunStatus(value) if value else None

    def find_active_run(self, project_id: str) -> Optional[RunRecord]:
        with self.db.session() as session:
            row = session.execute(
                select(RunRow)
                .where(RunRow.project_id == project_id, RunRow.status.in_(ACTIVE_RUN_STATUSES))
                .order_by(RunRow.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _run_from_row(row) if row else None

    def latest_run(self, project_id: str) -> Optional[RunRecord]:
        with self.db.session() as session:
            row = session.execute(
                select(RunRow)
                .where(RunRow.project_id == project_id)
                .order_by(RunRow.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _run_from_row(row) if row else None

    def list_runs(self, project_id: Optional[str] = None, limit: int = 20) -> List[RunRecord]:
        with self.db.session() as session:
            query = select(RunRow).order_by(RunRow.created_at.desc()).limit(limit)
            if project_id is not None:
                query = query.where(RunRow.project_id == project_id)
            return [_run_from_row(r) for r in session.execute(query).scalars()]

    def find_orphaned(self, stale_before: datetime, project_id: Optional[str] = None) -> List[RunRecord]:
        """Runs marked running whose heartbeat is older than `stale_before` or missing."""
        with self.db.session() as session:
            query = select(RunRow).where(
                RunRow.status == RunStatus.RUNNING.value,
                or_(RunRow.last_heartbeat.is_(None), RunRow.last_heartbeat < stale_before),
            )
            if project_id is not None:
                query = query.where(RunRow.project_id == project_id)
            rows = session.execute(query.order_by(RunRow.created_at)).scalars()
            return [_run_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Run transitions
    # ------------------------------------------------------------------

    def create_run(
        self,
        project_id: str,
        run_id: str,
        kind: RunKind,
        stages: Sequence[StageName],
        change_set: Optional[Dict[str, Any]] = None,
    ) -> RunRecord:
        """Insert a pending run together with every stage row."""
        with self.db.session() as session:
            row = RunRow(
                id=run_id,
                project_id=project_id,
                kind=kind.value,
                status=RunStatus.PENDING.value,
                change_set=change_set,
            )
            for stage in stages:
                row.stages.append(
                    StageRow(
                        name=stage.value,
                        stage_order=stage.order,
                        status=StageStatus.PENDING.value,
                        progress_current=0,
                        progress_total=0,
                        warnings=[],
                        retry_count=0,
                    )
                )
            session.add(row)
            session.flush()
            return _run_from_row(row)

    def _conditional_run_update(self, conditions: Iterable[Any], values: Dict[str, Any]) -> bool:
        with self.db.session() as session:
            result = session.execute(
                update(RunRow)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def claim_run(self, run_id: str, owner_id: str) -> bool:
        """pending -> running under `owner_id`."""
        now = utcnow()
        return self._conditional_run_update(
            [RunRow.id == run_id, RunRow.status == RunStatus.PENDING.value],
            {
                "status": RunStatus.RUNNING.value,
                "owner_id": owner_id,
                "last_heartbeat": now,
                "started_at": now,
            },
        )

    def heartbeat(self, run_id: str, owner_id: str) -> bool:
        """Refresh the heartbeat. False means this owner no longer holds the run."""
        return self._conditional_run_update(
            [
                RunRow.id == run_id,
                RunRow.owner_id == owner_id,
                RunRow.status == RunStatus.RUNNING.value,
            ],
            {"last_heartbeat": utcnow()},
        )

    def reclaim_ownership(self, run_id: str, new_owner: str, stale_before: datetime) -> bool:
        """Take over a running run whose heartbeat is stale. Exactly one caller wins."""
        return self._conditional_run_update(
            [
                RunRow.id == run_id,
                RunRow.status == RunStatus.RUNNING.value,
                or_(RunRow.last_heartbeat.is_(None), RunRow.last_heartbeat < stale_before),
            ],
            {"owner_id": new_owner, "last_heartbeat": utcnow()},
        )

    def release_ownership(self, run_id: str, owner_id: str) -> bool:
        """Drop ownership without changing status; the run becomes immediately reclaimable."""
        return self._conditional_run_update(
            [RunRow.id == run_id, RunRow.owner_id == owner_id],
            {"owner_id": None, "last_heartbeat": None},
        )

    def finish_run(
        self,
        run_id: str,
        owner_id: str,
        status: RunStatus,
        error: Optional[str] = None,
    ) -> bool:
        """running -> completed/failed. Never overwrites a concurrent cancel."""
        return self._conditional_run_update(
            [
                RunRow.id == run_id,
                RunRow.owner_id == owner_id,
                RunRow.status == RunStatus.RUNNING.value,
            ],
            {
                "status": status.value,
                "error": error,
                "completed_at": utcnow(),
                "owner_id": None,
                "last_heartbeat": None,
                "current_stage": None,
            },
        )

    def cancel_run(self, run_id: str) -> bool:
        """pending/running -> cancelled, skipping every pending stage."""
        with self.db.session() as session:
            result = session.execute(
                update(RunRow)
                .where(RunRow.id == run_id, RunRow.status.in_(ACTIVE_RUN_STATUSES))
                .values(status=RunStatus.CANCELLED.value, completed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False
            session.execute(
                update(StageRow)
                .where(StageRow.run_id == run_id, StageRow.status == StageStatus.PENDING.value)
                .values(status=StageStatus.SKIPPED.value, error="run cancelled")
                .execution_options(synchronize_session=False)
            )
            return True

    def release_cancelled(self, run_id: str, owner_id: str) -> bool:
        """Clear ownership of a cancelled run once its worker has stopped."""
        return self._conditional_run_update(
            [
                RunRow.id == run_id,
                RunRow.owner_id == owner_id,
                RunRow.status == RunStatus.CANCELLED.value,
            ],
            {"owner_id": None, "last_heartbeat": None, "current_stage": None},
        )

    def reopen_failed_run(self, run_id: str, owner_id: str) -> bool:
        """failed -> running under `owner_id`, resetting failed stages to pending."""
        with self.db.session() as session:
            now = utcnow()
            result = session.execute(
                update(RunRow)
                .where(RunRow.id == run_id, RunRow.status == RunStatus.FAILED.value)
                .values(
                    status=RunStatus.RUNNING.value,
                    owner_id=owner_id,
                    last_heartbeat=now,
                    error=None,
                    completed_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False
            session.execute(
                update(StageRow)
                .where(
                    StageRow.run_id == run_id,
                    StageRow.status.in_([StageStatus.FAILED.value, StageStatus.RUNNING.value]),
                )
                .values(status=StageStatus.PENDING.value, error=None)
                .execution_options(synchronize_session=False)
            )
            return True

    def set_current_stage(self, run_id: str, owner_id: str, stage: Optional[StageName]) -> None:
        with self.db.session() as session:
            session.execute(
                update(RunRow)
                .where(RunRow.id == run_id, RunRow.owner_id == owner_id)
                .values(current_stage=stage.value if stage else None)
                .execution_options(synchronize_session=False)
            )

    # ------------------------------------------------------------------
    # Stage transitions (only the current owner may move a stage)
    # ------------------------------------------------------------------

    def _conditional_stage_update(
        self,
        run_id: str,
        owner_id: str,
        name: StageName,
        from_statuses: Sequence[StageStatus],
        values: Dict[str, Any],
    ) -> bool:
        owned = select(RunRow.id).where(RunRow.id == run_id, RunRow.owner_id == owner_id)
        with self.db.session() as session:
            result = session.execute(
                update(StageRow)
                .where(
                    StageRow.run_id.in_(owned),
                    StageRow.name == name.value,
                    StageRow.status.in_([s.value for s in from_statuses]),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def start_stage(self, run_id: str, owner_id: str, name: StageName) -> bool:
        return self._conditional_stage_update(
            run_id,
            owner_id,
            name,
            [StageStatus.PENDING],
            {"status": StageStatus.RUNNING.value, "started_at": utcnow(), "error": None},
        )

    def complete_stage(self, run_id: str, owner_id: str, name: StageName, duration_ms: int) -> bool:
        return self._conditional_stage_update(
            run_id,
            owner_id,
            name,
            [StageStatus.RUNNING],
            {
                "status": StageStatus.COMPLETED.value,
                "error": None,
                "completed_at": utcnow(),
                "duration_ms": duration_ms,
            },
        )

    def fail_stage(
        self, run_id: str, owner_id: str, name: StageName, error: str, duration_ms: int
    ) -> bool:
        return self._conditional_stage_update(
            run_id,
            owner_id,
            name,
            [StageStatus.RUNNING],
            {
                "status": StageStatus.FAILED.value,
                "error": error,
                "completed_at": utcnow(),
                "duration_ms": duration_ms,
            },
        )

    def skip_stage(
        self, run_id: str, owner_id: str, name: StageName, reason: Optional[str] = None
    ) -> bool:
        return self._conditional_stage_update(
            run_id,
            owner_id,
            name,
            [StageStatus.PENDING, StageStatus.RUNNING],
            {"status": StageStatus.SKIPPED.value, "error": reason, "completed_at": utcnow()},
        )

    def skip_stages(self, run_id: str, names: Iterable[StageName], reason: str) -> int:
        with self.db.session() as session:
            result = session.execute(
                update(StageRow)
                .where(
                    StageRow.run_id == run_id,
                    StageRow.name.in_([n.value for n in names]),
                    StageRow.status == StageStatus.PENDING.value,
                )
                .values(status=StageStatus.SKIPPED.value, error=reason)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    def reset_running_stages(self, run_id: str) -> int:
        """Stages left running by a dead owner go back to pending."""
        with self.db.session() as session:
            result = session.execute(
                update(StageRow)
                .where(StageRow.run_id == run_id, StageRow.status == StageStatus.RUNNING.value)
                .values(status=StageStatus.PENDING.value)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    def record_retry(self, run_id: str, name: StageName, error: str) -> None:
        with self.db.session() as session:
            session.execute(
                update(StageRow)
                .where(StageRow.run_id == run_id, StageRow.name == name.value)
                .values(retry_count=StageRow.retry_count + 1, error=error)
                .execution_options(synchronize_session=False)
            )

    def update_progress(
        self, run_id: str, name: StageName, current: int, total: int, message: str = ""
    ) -> None:
        with self.db.session() as session:
            session.execute(
                update(StageRow)
                .where(StageRow.run_id == run_id, StageRow.name == name.value)
                .values(progress_current=current, progress_total=total, progress_message=message)
                .execution_options(synchronize_session=False)
            )

    def add_warning(self, run_id: str, name: StageName, warning: str) -> None:
        with self.db.session() as session:
            row = session.execute(
                select(StageRow).where(StageRow.run_id == run_id, StageRow.name == name.value)
            ).scalar_one()
            row.warnings = list(row.warnings or []) + [warning]


class RelationshipRepository:
    """Idempotent persistence of schema relationships."""

    KEY_COLUMNS = (
        "project_id",
        "source_table",
        "source_column",
        "target_table",
        "target_column",
        "inference_method",
    )

    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _from_row(row: RelationshipRow) -> SchemaRelationship:
        return SchemaRelationship(
            id=row.id,
            project_id=row.project_id,
            source_table=row.source_table,
            source_column=row.source_column,
            target_table=row.target_table,
            target_column=row.target_column,
            inference_method=InferenceMethod(row.inference_method),
            confidence=row.confidence,
            cardinality=Cardinality(row.cardinality),
            validation_results=dict(row.validation_results or {}),
            is_validated=row.is_validated,
            status=RelationshipStatus(row.status),
            description=row.description,
            association=row.association,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def upsert(self, relationship: SchemaRelationship) -> None:
        """
        Insert or overwrite by (project, source, target, method).

        Re-activates stale rows. Description and association are left as they are.
        """
        self.upsert_many([relationship])

    def upsert_many(self, relationships: Sequence[SchemaRelationship]) -> int:
        if not relationships:
            return 0
        now = utcnow()
        values = [
            {
                "project_id": r.project_id,
                "source_table": r.source_table,
                "source_column": r.source_column,
                "target_table": r.target_table,
                "target_column": r.target_column,
                "inference_method": r.inference_method.value,
                "confidence": r.confidence,
                "cardinality": r.cardinality.value,
                "validation_results": r.validation_results,
                "is_validated": r.is_validated,
                "status": r.status.value,
                "created_at": now,
                "updated_at": now,
            }
            for r in relationships
        ]
        update_columns = [
            c for c in values[0] if c not in self.KEY_COLUMNS and c != "created_at"
        ]
        stmt = upsert_statement(
            self.db.dialect_name,
            RelationshipRow.__table__,
            values,
            self.KEY_COLUMNS,
            update_columns,
        )
        with self.db.session() as session:
            session.execute(stmt)
        return len(values)

    def list_for_project(
        self,
        project_id: str,
        status: Optional[RelationshipStatus] = None,
        is_validated: Optional[bool] = None,
        methods: Optional[Sequence[InferenceMethod]] = None,
    ) -> List[SchemaRelationship]:
        with self.db.session() as session:
            query = select(RelationshipRow).where(RelationshipRow.project_id == project_id)
            if status is not None:
                query = query.where(RelationshipRow.status == status.value)
            if is_validated is not None:
                query = query.where(RelationshipRow.is_validated == is_validated)
            if methods:
                query = query.where(RelationshipRow.inference_method.in_([m.value for m in methods]))
            query = query.order_by(RelationshipRow.confidence.desc(), RelationshipRow.id)
            return [self._from_row(r) for r in session.execute(query).scalars()]

    def mark_stale(
        self,
        project_id: str,
        methods: Optional[Sequence[InferenceMethod]] = None,
    ) -> int:
        """Mark relationships stale ahead of re-discovery."""
        conditions = [
            RelationshipRow.project_id == project_id,
            RelationshipRow.status == RelationshipStatus.ACTIVE.value,
        ]
        if methods:
            conditions.append(RelationshipRow.inference_method.in_([m.value for m in methods]))
        with self.db.session() as session:
            result = session.execute(
                update(RelationshipRow)
                .where(*conditions)
                .values(status=RelationshipStatus.STALE.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    def record_validation(
        self,
        relationship_id: int,
        accepted: bool,
        confidence: float,
        validation_results: Dict[str, Any],
        cardinality: Optional[Cardinality] = None,
    ) -> None:
        """Store an arbitration outcome. Rejected relationships become stale."""
        values: Dict[str, Any] = {
            "is_validated": True,
            "confidence": confidence,
            "validation_results": validation_results,
            "status": (RelationshipStatus.ACTIVE if accepted else RelationshipStatus.STALE).value,
            "updated_at": utcnow(),
        }
        if cardinality is not None:
            values["cardinality"] = cardinality.value
        with self.db.session() as session:
            session.execute(
                update(RelationshipRow)
                .where(RelationshipRow.id == relationship_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    def set_enrichment(self, relationship_id: int, description: str, association: Optional[str]) -> None:
        with self.db.session() as session:
            session.execute(
                update(RelationshipRow)
                .where(RelationshipRow.id == relationship_id)
                .values(description=description, association=association, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )

    def count(self, project_id: str, status: Optional[RelationshipStatus] = None) -> int:
        with self.db.session() as session:
            query = select(func.count(RelationshipRow.id)).where(
                RelationshipRow.project_id == project_id
            )
            if status is not None:
                query = query.where(RelationshipRow.status == status.value)
            return session.execute(query).scalar_one()


class ColumnFeatureRepository:
    """Column role/purpose classifications."""

    def __init__(self, db: Database):
        self.db = db

    def upsert_many(self, project_id: str, features: Sequence[ColumnFeatures]) -> int:
        if not features:
            return 0
        now = utcnow()
        values = [
            {
                "project_id": project_id,
                "table_name": f.table,
                "column_name": f.column,
                "role": f.role.value,
                "purpose": f.purpose.value,
                "fk_eligible": f.fk_eligible,
                "source": f.source.value,
                "confidence": f.confidence,
                "description": f.description,
                "updated_at": now,
            }
            for f in features
        ]
        stmt = upsert_statement(
            self.db.dialect_name,
            ColumnFeatureRow.__table__,
            values,
            ("project_id", "table_name", "column_name"),
        )
        with self.db.session() as session:
            session.execute(stmt)
        return len(values)

    def list_for_project(self, project_id: str) -> Dict[tuple, ColumnFeatures]:
        """Features keyed by (table, column), lower-cased."""
        with self.db.session() as session:
            rows = session.execute(
                select(ColumnFeatureRow).where(ColumnFeatureRow.project_id == project_id)
            ).scalars()
            features = [
                ColumnFeatures(
                    table=r.table_name,
                    column=r.column_name,
                    role=ColumnRole(r.role),
                    purpose=ColumnPurpose(r.purpose),
                    fk_eligible=r.fk_eligible,
                    source=FeatureSource(r.source),
                    confidence=r.confidence,
                    description=r.description,
                )
                for r in rows
            ]
        return {f.key: f for f in features}


class EntityRepository:
    """Discovered entities, one per primary table."""

    def __init__(self, db: Database):
        self.db = db

    def replace_all(self, project_id: str, entities: Sequence[OntologyEntity]) -> int:
        """
        Upsert the project's entities and delete those whose primary table is gone.

        Returns:
            Number of entities deleted
        """
        now = utcnow()
        values = [
            {
                "project_id": project_id,
                "name": e.name,
                "primary_table": e.primary_table,
                "identifier": list(e.identifier),
                "identifier_source": e.identifier_source.value,
                "display_name": e.display_name,
                "description": e.description,
                "confidence": e.confidence,
                "aliases": list(e.aliases),
                "updated_at": now,
            }
            for e in entities
        ]
        keep = [e.primary_table for e in entities]
        with self.db.session() as session:
            if values:
                session.execute(upsert_statement(
                    self.db.dialect_name,
                    EntityRow.__table__,
                    values,
                    ("project_id", "primary_table"),
                ))
            conditions = [EntityRow.project_id == project_id]
            if keep:
                conditions.append(EntityRow.primary_table.not_in(keep))
            result = session.execute(
                delete(EntityRow).where(*conditions).execution_options(synchronize_session=False)
            )
            return result.rowcount

    def list_for_project(self, project_id: str) -> List[OntologyEntity]:
        with self.db.session() as session:
            rows = session.execute(
                select(EntityRow)
                .where(EntityRow.project_id == project_id)
                .order_by(EntityRow.primary_table)
            ).scalars()
            return [
                OntologyEntity(
                    id=r.id,
                    project_id=r.project_id,
                    name=r.name,
                    primary_table=r.primary_table,
                    identifier=list(r.identifier or []),
                    identifier_source=IdentifierSource(r.identifier_source),
                    display_name=r.display_name,
                    description=r.description,
                    confidence=r.confidence,
                    aliases=list(r.aliases or []),
                    updated_at=r.updated_at,
                )
                for r in rows
            ]


class ProjectRepository:
    """Schema snapshots and refresh bookkeeping."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, project_id: str) -> Optional[ProjectState]:
        with self.db.session() as session:
            row = session.get(ProjectRow, project_id)
            if row is None:
                return None
            return ProjectState(
                project_id=row.project_id,
                schema_snapshot=(
                    SchemaSnapshot.from_dict(row.schema_snapshot) if row.schema_snapshot else None
                ),
                schema_fingerprint=row.schema_fingerprint,
                last_extracted_at=row.last_extracted_at,
                last_refreshed_at=row.last_refreshed_at,
            )

    def save_snapshot(self, project_id: str, snapshot: SchemaSnapshot) -> None:
        values = {
            "project_id": project_id,
            "schema_snapshot": snapshot.to_dict(),
            "schema_fingerprint": snapshot.fingerprint(),
            "created_at": utcnow(),
        }
        stmt = upsert_statement(
            self.db.dialect_name,
            ProjectRow.__table__,
            values,
            ("project_id",),
            ("schema_snapshot", "schema_fingerprint"),
        )
        with self.db.session() as session:
            session.execute(stmt)

    def _touch(self, project_id: str, column: str) -> None:
        now = utcnow()
        stmt = upsert_statement(
            self.db.dialect_name,
            ProjectRow.__table__,
            {"project_id": project_id, column: now, "created_at": now},
            ("project_id",),
            (column,),
        )
        with self.db.session() as session:
            session.execute(stmt)

    def touch_extracted(self, project_id: str) -> None:
        self._touch(project_id, "last_extracted_at")

    def touch_refreshed(self, project_id: str) -> None:
        """One statement: the only write an empty refresh performs."""
        self._touch(project_id, "last_refreshed_at")


class CorrectionRepository:
    """Pending user/agent corrections."""

    def __init__(self, db: Database):
        self.db = db

    def add_many(self, corrections: Sequence[Correction]) -> List[int]:
        with self.db.session() as session:
            rows = [
                CorrectionRow(
                    project_id=c.project_id,
                    kind=c.kind.value,
                    table_name=c.table,
                    column_name=c.column,
                    payload=c.payload,
                )
                for c in corrections
            ]
            session.add_all(rows)
            session.flush()
            return [r.id for r in rows]

    def pending(
        self,
        project_id: str,
        kinds: Optional[Set[ChangeType]] = None,
    ) -> List[Correction]:
        with self.db.session() as session:
            query = (
                select(CorrectionRow)
                .where(CorrectionRow.project_id == project_id, CorrectionRow.applied_at.is_(None))
                .order_by(CorrectionRow.id)
            )
            if kinds:
                query = query.where(CorrectionRow.kind.in_([k.value for k in kinds]))
            return [
                Correction(
                    id=r.id,
                    project_id=r.project_id,
                    kind=ChangeType(r.kind),
                    table=r.table_name,
                    column=r.column_name,
                    payload=dict(r.payload or {}),
                    created_at=r.created_at,
                )
                for r in session.execute(query).scalars()
            ]

    def all_for_project(self, project_id: str, kind: ChangeType) -> List[Correction]:
        """Applied and pending corrections of one kind, oldest first."""
        with self.db.session() as session:
            rows = session.execute(
                select(CorrectionRow)
                .where(CorrectionRow.project_id == project_id, CorrectionRow.kind == kind.value)
                .order_by(CorrectionRow.id)
            ).scalars()
            return [
                Correction(
                    id=r.id,
                    project_id=r.project_id,
                    kind=ChangeType(r.kind),
                    table=r.table_name,
                    column=r.column_name,
                    payload=dict(r.payload or {}),
                    created_at=r.created_at,
                    applied_at=r.applied_at,
                )
                for r in rows
            ]

    def mark_applied(self, ids: Sequence[int]) -> int:
        if not ids:
            return 0
        with self.db.session() as session:
            result = session.execute(
                update(CorrectionRow)
                .where(and_(CorrectionRow.id.in_(list(ids)), CorrectionRow.applied_at.is_(None)))
                .values(applied_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount


class OntologyRepository:
    """Finalized ontology documents."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, project_id: str) -> Optional[Ontology]:
        with self.db.session() as session:
            row = session.get(OntologyRow, project_id)
            if row is None:
                return None
            return Ontology(
                project_id=row.project_id,
                version=row.version,
                document=dict(row.document or {}),
                run_id=row.run_id,
                updated_at=row.updated_at,
            )

    def save(self, project_id: str, document: Dict[str, Any], run_id: Optional[str]) -> int:
        """Replace the document, bumping the version. Returns the new version."""
        with self.db.session() as session:
            row = session.get(OntologyRow, project_id)
            if row is None:
                row = OntologyRow(project_id=project_id, version=1, document=document, run_id=run_id)
                session.add(row)
            else:
                row.version += 1
                row.document = document
                row.run_id = run_id
            session.flush()
            logger.debug(f"Saved ontology for {project_id} at version {row.version}")
            return row.version
