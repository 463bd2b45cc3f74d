"""
The extraction stages.

Order and dependencies:
1. schema_snapshot          read the catalog, persist snapshot + fingerprint
2. entity_discovery         entities from primary and unique keys (after 1)
3. column_features          classify columns (after 1)
4. fk_discovery             declared foreign keys with join statistics (after 1)
5. pk_match_discovery       statistical candidate collection (after 3 and 4)
6. relationship_validation  confidence-gated arbitration (after 5)
7. relationship_enrichment  descriptions of accepted relationships (after 3 and 6)
8. ontology_finalization    build the ontology document (after 2, 3 and 7)

Every stage reads its inputs from the database and writes with upserts, so a
stage interrupted by a crash can simply run again.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from ontoforge.discovery.enrichment import EnrichmentOutcome
from ontoforge.discovery.join_validation import JoinValidator
from ontoforge.discovery.validator import ValidationOutcome, override_key
from ontoforge.errors import InvariantViolation
from ontoforge.models import (
    ChangeType,
    ColumnFeatures,
    InferenceMethod,
    OntologyEntity,
    RelationshipStatus,
    RunKind,
    SchemaRelationship,
    SchemaSnapshot,
    StageName,
)
from ontoforge.pipeline.stage import Stage, StageContext, StageOutcome

logger = logging.getLogger(__name__)

DECLARED_FK_CONFIDENCE = 1.0


def load_snapshot(ctx: StageContext) -> SchemaSnapshot:
    """The project's last persisted snapshot."""
    state = ctx.services.projects.get(ctx.project_id)
    if state is None or state.schema_snapshot is None:
        raise InvariantViolation(
            f"Project {ctx.project_id} has no schema snapshot; run a full extraction first"
        )
    return state.schema_snapshot


class SchemaSnapshotStage(Stage):
    """Capture the catalog and persist it."""

    name = StageName.SCHEMA_SNAPSHOT

    def execute(self, ctx: StageContext) -> StageOutcome:
        ctx.check_cancelled()
        snapshot = ctx.services.catalog.snapshot()
        ctx.check_cancelled()
        ctx.services.projects.save_snapshot(ctx.project_id, snapshot)
        ctx.report_progress(1, 1, f"Captured {len(snapshot.tables)} tables")
        return StageOutcome({
            "tables": len(snapshot.tables),
            "columns": sum(len(t.columns) for t in snapshot.tables.values()),
            "foreign_keys": len(snapshot.foreign_keys),
            "fingerprint": snapshot.fingerprint(),
        })


class EntityDiscoveryStage(Stage):
    """One entity per identifiable table; test-prefixed copies become aliases."""

    name = StageName.ENTITY_DISCOVERY

    def execute(self, ctx: StageContext) -> StageOutcome:
        services = ctx.services
        snapshot = load_snapshot(ctx)

        result = services.discoverer.discover(ctx.project_id, snapshot)
        if result.skipped_tables:
            ctx.warn(
                "No primary key or unique not-null column, left out of the entities: "
                f"{', '.join(result.skipped_tables)}"
            )

        ctx.check_cancelled()
        removed = services.entities.replace_all(ctx.project_id, result.entities)
        ctx.report_progress(1, 1, f"Discovered {len(result.entities)} entities")
        return StageOutcome({
            "entities": len(result.entities),
            "aliases": sum(len(e.aliases) for e in result.entities),
            "skipped_tables": len(result.skipped_tables),
            "removed": removed,
        })


class ColumnFeaturesStage(Stage):
    """Classify every column; user overrides win over heuristics and the LLM."""

    name = StageName.COLUMN_FEATURES

    def execute(self, ctx: StageContext) -> StageOutcome:
        services = ctx.services
        snapshot = load_snapshot(ctx)
        overrides = services.corrections.all_for_project(
            ctx.project_id, ChangeType.COLUMN_ROLE_OVERRIDE
        )

        result = services.classifier.classify(
            snapshot,
            overrides=overrides,
            check_cancelled=ctx.check_cancelled,
            progress=ctx.report_progress,
        )
        for warning in result.warnings:
            ctx.warn(warning)

        ctx.check_cancelled()
        services.features.upsert_many(ctx.project_id, list(result.features.values()))
        return StageOutcome({
            "columns": len(result.features),
            "fk_eligible": sum(1 for f in result.features.values() if f.fk_eligible),
        })


class FKDiscoveryStage(Stage):
    """Turn declared foreign keys into relationships, measuring how well the data agrees."""

    name = StageName.FK_DISCOVERY

    def execute(self, ctx: StageContext) -> StageOutcome:
        services = ctx.services
        snapshot = load_snapshot(ctx)
        min_rate = services.config.discovery.min_match_rate

        # Constraints dropped from the catalog must not survive as active relationships
        services.relationships.mark_stale(ctx.project_id, [InferenceMethod.FK_CONSTRAINT])

        relationships: List[SchemaRelationship] = []
        total = len(snapshot.foreign_keys)
        for idx, fk in enumerate(snapshot.foreign_keys, 1):
            ctx.check_cancelled()
            source = snapshot.get_table(fk.source_table)
            target = snapshot.get_table(fk.target_table)
            if source is None or target is None:
                missing = fk.source_table if source is None else fk.target_table
                raise InvariantViolation(
                    f"Foreign key {fk.key} references table '{missing}' missing from the schema snapshot"
                )
            if source.get_column(fk.source_column) is None or target.get_column(fk.target_column) is None:
                raise InvariantViolation(f"Foreign key {fk.key} references an unknown column")

            stats = services.catalog.analyze_join(
                fk.source_table, fk.source_column, fk.target_table, fk.target_column
            )
            if stats.source_distinct and stats.match_rate < min_rate:
                ctx.warn(
                    f"Declared foreign key {fk.key} matches only {stats.match_rate:.1%} of source values"
                )

            relationships.append(SchemaRelationship(
                project_id=ctx.project_id,
                source_table=source.name,
                source_column=fk.source_column,
                target_table=target.name,
                target_column=fk.target_column,
                inference_method=InferenceMethod.FK_CONSTRAINT,
                confidence=DECLARED_FK_CONFIDENCE,
                cardinality=JoinValidator.infer_cardinality(stats),
                validation_results={
                    "join_statistics": stats.to_dict(),
                    "constraint_name": fk.constraint_name,
                },
                is_validated=True,
            ))
            ctx.report_progress(idx, total, f"Checked {fk.key}")

        services.relationships.upsert_many(relationships)
        return StageOutcome({"declared_foreign_keys": len(relationships)})


class PKMatchDiscoveryStage(Stage):
    """Statistical discovery of undeclared relationships."""

    name = StageName.PK_MATCH_DISCOVERY

    def execute(self, ctx: StageContext) -> StageOutcome:
        services = ctx.services
        snapshot = load_snapshot(ctx)
        features = services.features.list_for_project(ctx.project_id)
        covered = {
            (fk.source_table.lower(), fk.source_column.lower()) for fk in snapshot.foreign_keys
        }

        services.relationships.mark_stale(
            ctx.project_id, [InferenceMethod.COLUMN_FEATURES, InferenceMethod.PK_MATCH]
        )
        result = services.collector.collect(
            snapshot,
            features,
            covered=covered,
            check_cancelled=ctx.check_cancelled,
            progress=ctx.report_progress,
        )

        ctx.check_cancelled()
        relationships = [
            SchemaRelationship.from_candidate(ctx.project_id, c, is_validated=False)
            for c in result.accepted
        ]
        services.relationships.upsert_many(relationships)
        return StageOutcome({
            "pairs_evaluated": result.pairs_evaluated,
            "accepted": len(result.accepted),
            "rejected": len(result.rejected),
            "suppressed": len(result.suppressed),
        })


class RelationshipValidationStage(Stage):
    """Arbitrate unvalidated relationships and those targeted by new overrides."""

    name = StageName.RELATIONSHIP_VALIDATION

    def execute(self, ctx: StageContext) -> StageOutcome:
        services = ctx.services
        snapshot = load_snapshot(ctx)
        features = services.features.list_for_project(ctx.project_id)

        overrides = {}
        for correction in services.corrections.all_for_project(
            ctx.project_id, ChangeType.RELATIONSHIP_OVERRIDE
        ):
            key = override_key(correction)
            if key is None:
                ctx.warn(f"Relationship override {correction.id} is missing its target")
                continue
            overrides[key] = correction

        pending_keys = {
            override_key(c)
            for c in services.corrections.pending(ctx.project_id, {ChangeType.RELATIONSHIP_OVERRIDE})
        }

        to_decide: Dict[Tuple[str, str, str, str], SchemaRelationship] = {}
        for rel in services.relationships.list_for_project(ctx.project_id):
            key = _key(rel)
            unvalidated = rel.status == RelationshipStatus.ACTIVE and not rel.is_validated
            if not (unvalidated or key in pending_keys):
                continue
            current = to_decide.get(key)
            if current is None or (
                current.status != RelationshipStatus.ACTIVE and rel.status == RelationshipStatus.ACTIVE
            ):
                to_decide[key] = rel

        for key in sorted(k for k in pending_keys if k is not None and k not in to_decide):
            ctx.warn(f"Relationship override targets unknown relationship {'.'.join(key[:2])}->{'.'.join(key[2:])}")

        def persist(outcome: ValidationOutcome) -> None:
            services.relationships.record_validation(
                outcome.relationship.id,
                accepted=outcome.accepted,
                confidence=outcome.confidence,
                validation_results=outcome.validation_results(),
                cardinality=outcome.cardinality,
            )

        report = services.validator.validate_all(
            list(to_decide.values()),
            snapshot,
            features,
            overrides=overrides,
            check_cancelled=ctx.check_cancelled,
            on_outcome=persist,
            progress=ctx.report_progress,
        )
        for warning in report.warnings:
            ctx.warn(warning)

        decided_by: Dict[str, int] = {}
        for outcome in report.outcomes:
            decided_by[outcome.decided_by] = decided_by.get(outcome.decided_by, 0) + 1
        return StageOutcome({
            "decided": len(report.outcomes),
            "accepted": len(report.accepted),
            "decided_by": decided_by,
        })


class RelationshipEnrichmentStage(Stage):
    """Describe accepted relationships that have no description yet."""

    name = StageName.RELATIONSHIP_ENRICHMENT

    def execute(self, ctx: StageContext) -> StageOutcome:
        services = ctx.services
        features = services.features.list_for_project(ctx.project_id)
        undescribed = [
            r for r in services.relationships.list_for_project(
                ctx.project_id, status=RelationshipStatus.ACTIVE, is_validated=True
            )
            if not r.description
        ]

        def persist(outcome: EnrichmentOutcome) -> None:
            services.relationships.set_enrichment(
                outcome.relationship.id, outcome.description, outcome.association
            )

        report = services.enricher.enrich_all(
            undescribed,
            features,
            check_cancelled=ctx.check_cancelled,
            on_outcome=persist,
            progress=ctx.report_progress,
        )
        for warning in report.warnings:
            ctx.warn(warning)

        by_source: Dict[str, int] = {}
        for outcome in report.outcomes:
            by_source[outcome.source] = by_source.get(outcome.source, 0) + 1
        return StageOutcome({"described": len(report.outcomes), "by_source": by_source})


class OntologyFinalizationStage(Stage):
    """Assemble entities, column roles and active relationships into the ontology."""

    name = StageName.ONTOLOGY_FINALIZATION

    def execute(self, ctx: StageContext) -> StageOutcome:
        services = ctx.services
        snapshot = load_snapshot(ctx)
        entities = services.entities.list_for_project(ctx.project_id)
        features = services.features.list_for_project(ctx.project_id)
        relationships = [
            r for r in services.relationships.list_for_project(
                ctx.project_id, status=RelationshipStatus.ACTIVE
            )
            if r.is_validated
        ]

        document = build_ontology_document(
            ctx.project_id, ctx.run_id, snapshot, entities, features, relationships
        )

        edits = services.corrections.all_for_project(ctx.project_id, ChangeType.ATTRIBUTE_EDIT)
        for edit in edits:
            if not apply_attribute_edit(document, edit.table, edit.column, edit.payload):
                ctx.warn(f"Attribute edit {edit.id} targets unknown {edit.table}.{edit.column or ''}")

        ctx.check_cancelled()
        version = services.ontologies.save(ctx.project_id, document, ctx.run_id)

        pending = services.corrections.pending(ctx.project_id)
        services.corrections.mark_applied([c.id for c in pending])

        if ctx.run_kind == RunKind.EXTRACTION:
            services.projects.touch_extracted(ctx.project_id)
        else:
            services.projects.touch_refreshed(ctx.project_id)

        ctx.report_progress(1, 1, f"Ontology version {version}")
        return StageOutcome({
            "version": version,
            "entities": len(document["entities"]),
            "relationships": len(document["relationships"]),
            "corrections_applied": len(pending),
        })


def _key(rel: SchemaRelationship) -> Tuple[str, str, str, str]:
    return (
        rel.source_table.lower(),
        rel.source_column.lower(),
        rel.target_table.lower(),
        rel.target_column.lower(),
    )


def build_ontology_document(
    project_id: str,
    run_id: Optional[str],
    snapshot: SchemaSnapshot,
    entities: List[OntologyEntity],
    features: Dict[Tuple[str, str], ColumnFeatures],
    relationships: List[SchemaRelationship],
) -> Dict[str, Any]:
    """Ontology document: discovered entities with their attributes, one edge per active relationship."""
    documents = []
    for entity in sorted(entities, key=lambda e: e.primary_table.lower()):
        table = snapshot.get_table(entity.primary_table)
        if table is None:
            continue
        attributes = []
        for col in table.columns:
            feature = features.get((table.name.lower(), col.name.lower()))
            attributes.append({
                "name": col.name,
                "data_type": col.data_type.value,
                "nullable": col.nullable,
                "role": feature.role.value if feature else "attribute",
                "purpose": feature.purpose.value if feature else None,
                "description": feature.description if feature else None,
            })
        documents.append({
            "name": entity.name,
            "display_name": entity.display_name,
            "primary_key": list(table.primary_key),
            "identifier": list(entity.identifier),
            "identifier_source": entity.identifier_source.value,
            "confidence": entity.confidence,
            "aliases": list(entity.aliases),
            "row_count": table.row_count_estimate,
            "description": entity.description,
            "attributes": attributes,
        })

    edges = [
        {
            "source": f"{r.source_table}.{r.source_column}",
            "target": f"{r.target_table}.{r.target_column}",
            "method": r.inference_method.value,
            "confidence": r.confidence,
            "cardinality": r.cardinality.value,
            "description": r.description,
            "association": r.association,
        }
        for r in sorted(relationships, key=lambda r: r.key)
    ]

    return {
        "project_id": project_id,
        "run_id": run_id,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "entities": documents,
        "relationships": edges,
    }


EDITABLE_FIELDS = ("description", "display_name", "synonyms")


def apply_attribute_edit(
    document: Dict[str, Any],
    table: Optional[str],
    column: Optional[str],
    payload: Dict[str, Any],
) -> bool:
    """Apply an edit to an entity (no column) or one of its attributes. False if the target is unknown."""
    if not table:
        return False
    entity = next((e for e in document["entities"] if e["name"].lower() == table.lower()), None)
    if entity is None:
        return False

    target = entity
    if column:
        target = next(
            (a for a in entity["attributes"] if a["name"].lower() == column.lower()), None
        )
        if target is None:
            return False

    for name in EDITABLE_FIELDS:
        if name in payload:
            target[name] = payload[name]
    return True


STAGE_CLASSES = (
    SchemaSnapshotStage,
    EntityDiscoveryStage,
    ColumnFeaturesStage,
    FKDiscoveryStage,
    PKMatchDiscoveryStage,
    RelationshipValidationStage,
    RelationshipEnrichmentStage,
    OntologyFinalizationStage,
)


def build_stages() -> Dict[StageName, Stage]:
    """One instance of every stage, keyed by name."""
    return {cls.name: cls() for cls in STAGE_CLASSES}
