"""
Tests for incremental refresh planning and execution.
"""

import pandas as pd
import pytest

from conftest import CONTENT_PRIMARY_KEYS, PROJECT, CountingCatalog, FakeLLM, content_frames
from ontoforge.models import (
    STAGE_ORDER,
    Change,
    ChangeSet,
    ChangeType,
    ForeignKeyMetadata,
    InferenceMethod,
    RelationshipStatus,
    RunKind,
    RunStatus,
    StageName,
    StageStatus,
    downstream_closure,
)
from ontoforge.pipeline import CHANGE_STAGE_MAP, IncrementalRefresher, Orchestrator, RefreshPlanner

AUTHOR_FK = ForeignKeyMetadata("content_posts", "author_id", "users", "user_id", "fk_posts_author")


def change_set(*changes):
    return ChangeSet(changes=list(changes))


@pytest.fixture
def extracted(db, content_catalog, fast_config):
    """Orchestrator for a project that has completed one full extraction."""
    orchestrator = Orchestrator(db, content_catalog, config=fast_config, owner_id="owner-a")
    run = orchestrator.start_run(PROJECT, background=False)
    assert run.status == RunStatus.COMPLETED
    content_catalog.calls.clear()
    return orchestrator


class TestRefreshPlanner:
    """Tests for mapping change types to stage sets."""

    @pytest.mark.parametrize("change_type", [
        ChangeType.TABLE_ADDED,
        ChangeType.TABLE_REMOVED,
        ChangeType.COLUMN_ADDED,
        ChangeType.COLUMN_REMOVED,
        ChangeType.COLUMN_TYPE_CHANGED,
    ])
    def test_schema_changes_run_everything(self, change_type):
        plan = RefreshPlanner().plan(change_set(Change(change_type, table="t")))
        assert plan.stages == STAGE_ORDER
        assert plan.skipped == []

    @pytest.mark.parametrize("change_type", [ChangeType.FK_ADDED, ChangeType.FK_REMOVED])
    def test_fk_change(self, change_type):
        plan = RefreshPlanner().plan(change_set(Change(change_type, table="t", column="c")))
        assert plan.stages == [
            StageName.SCHEMA_SNAPSHOT,
            StageName.FK_DISCOVERY,
            StageName.PK_MATCH_DISCOVERY,
            StageName.RELATIONSHIP_VALIDATION,
            StageName.RELATIONSHIP_ENRICHMENT,
            StageName.ONTOLOGY_FINALIZATION,
        ]
        assert plan.skipped == [StageName.ENTITY_DISCOVERY, StageName.COLUMN_FEATURES]

    def test_column_role_override(self):
        plan = RefreshPlanner().plan(change_set(Change(ChangeType.COLUMN_ROLE_OVERRIDE, table="t", column="c")))
        assert plan.stages == [
            StageName.COLUMN_FEATURES,
            StageName.PK_MATCH_DISCOVERY,
            StageName.RELATIONSHIP_VALIDATION,
            StageName.RELATIONSHIP_ENRICHMENT,
            StageName.ONTOLOGY_FINALIZATION,
        ]

    def test_relationship_override(self):
        plan = RefreshPlanner().plan(change_set(Change(ChangeType.RELATIONSHIP_OVERRIDE, table="t", column="c")))
        assert plan.stages == [
            StageName.RELATIONSHIP_VALIDATION,
            StageName.RELATIONSHIP_ENRICHMENT,
            StageName.ONTOLOGY_FINALIZATION,
        ]

    def test_attribute_edit(self):
        plan = RefreshPlanner().plan(change_set(Change(ChangeType.ATTRIBUTE_EDIT, table="t")))
        assert plan.stages == [StageName.ONTOLOGY_FINALIZATION]
        assert plan.reasons == {StageName.ONTOLOGY_FINALIZATION: [ChangeType.ATTRIBUTE_EDIT]}
        assert plan.skipped == STAGE_ORDER[:-1]

    @pytest.mark.parametrize("change_type", list(ChangeType))
    def test_plan_includes_every_dependent_stage(self, change_type):
        plan = RefreshPlanner().plan(change_set(Change(change_type, table="t", column="c")))
        for stage in plan.stages:
            if stage == StageName.SCHEMA_SNAPSHOT:
                continue
            assert downstream_closure([stage]) <= set(plan.stages)

    def test_fk_entry_does_not_pull_in_snapshot_dependents(self):
        stages = RefreshPlanner().stages_for(ChangeType.FK_REMOVED)
        assert StageName.SCHEMA_SNAPSHOT in stages
        assert StageName.ENTITY_DISCOVERY not in stages
        assert StageName.COLUMN_FEATURES not in stages

    def test_union_of_changes(self):
        plan = RefreshPlanner().plan(change_set(
            Change(ChangeType.ATTRIBUTE_EDIT, table="t"),
            Change(ChangeType.RELATIONSHIP_OVERRIDE, table="t", column="c"),
        ))
        assert plan.stages == [
            StageName.RELATIONSHIP_VALIDATION,
            StageName.RELATIONSHIP_ENRICHMENT,
            StageName.ONTOLOGY_FINALIZATION,
        ]
        assert plan.reasons[StageName.ONTOLOGY_FINALIZATION] == [
            ChangeType.ATTRIBUTE_EDIT,
            ChangeType.RELATIONSHIP_OVERRIDE,
        ]

    def test_empty_change_set(self):
        assert RefreshPlanner().plan(ChangeSet()).is_empty

    def test_every_change_type_is_mapped(self):
        assert set(CHANGE_STAGE_MAP) == set(ChangeType)


class TestIncrementalRefresher:
    """Tests for refresh runs against an extracted project."""

    def test_empty_refresh_is_one_write(self, db, extracted, content_catalog, fast_config, write_counter):
        llm = FakeLLM(response="{}")
        orchestrator = Orchestrator(db, content_catalog, config=fast_config, llm=llm)
        runs_before = len(extracted.runs.list_runs(PROJECT))
        writes = write_counter.count

        result = IncrementalRefresher(orchestrator).refresh(PROJECT, ChangeSet(), background=False)

        assert result is None
        assert write_counter.count - writes == 1
        assert content_catalog.calls == []
        assert llm.calls == 0
        assert len(extracted.runs.list_runs(PROJECT)) == runs_before
        assert extracted.projects.get(PROJECT).last_refreshed_at is not None

    def test_attribute_edit_runs_only_finalization(self, extracted, content_catalog):
        changes = change_set(Change(
            ChangeType.ATTRIBUTE_EDIT,
            table="users",
            column="username",
            payload={"description": "Public handle", "synonyms": ["handle"]},
        ))

        run = IncrementalRefresher(extracted).refresh(PROJECT, changes, background=False)

        assert run.kind == RunKind.REFRESH
        assert run.status == RunStatus.COMPLETED
        for stage in run.stages:
            expected = (
                StageStatus.COMPLETED if stage.name == StageName.ONTOLOGY_FINALIZATION
                else StageStatus.SKIPPED
            )
            assert stage.status == expected
        assert content_catalog.calls == []

        ontology = extracted.ontologies.get(PROJECT)
        assert ontology.version == 2
        users = next(e for e in ontology.entities if e["name"] == "users")
        username = next(a for a in users["attributes"] if a["name"] == "username")
        assert username["description"] == "Public handle"
        assert username["synonyms"] == ["handle"]
        assert extracted.corrections.pending(PROJECT) == []

    def test_attribute_edit_on_unknown_table_warns(self, extracted):
        changes = change_set(Change(ChangeType.ATTRIBUTE_EDIT, table="missing", payload={"description": "x"}))

        run = IncrementalRefresher(extracted).refresh(PROJECT, changes, background=False)

        assert run.status == RunStatus.COMPLETED
        assert run.get_stage(StageName.ONTOLOGY_FINALIZATION).warnings

    def test_relationship_override_rejects(self, extracted):
        changes = change_set(Change(
            ChangeType.RELATIONSHIP_OVERRIDE,
            table="content_posts",
            column="author_id",
            payload={"target_table": "users", "target_column": "user_id", "accepted": False},
        ))

        run = IncrementalRefresher(extracted).refresh(PROJECT, changes, background=False)

        assert run.status == RunStatus.COMPLETED
        assert extracted.relationships.count(PROJECT, RelationshipStatus.ACTIVE) == 0
        rel = extracted.relationships.list_for_project(PROJECT)[0]
        assert rel.validation_results["arbitration"]["decided_by"] == "user_override"
        assert extracted.ontologies.get(PROJECT).relationships == []

    def test_override_for_unknown_relationship_warns(self, extracted):
        changes = change_set(Change(
            ChangeType.RELATIONSHIP_OVERRIDE,
            table="content_posts",
            column="week_number",
            payload={"target_table": "users", "target_column": "user_id", "accepted": True},
        ))

        run = IncrementalRefresher(extracted).refresh(PROJECT, changes, background=False)

        assert run.status == RunStatus.COMPLETED
        assert run.get_stage(StageName.RELATIONSHIP_VALIDATION).warnings
        assert extracted.relationships.count(PROJECT, RelationshipStatus.ACTIVE) == 1

    def test_column_role_override_removes_relationship(self, extracted):
        changes = change_set(Change(
            ChangeType.COLUMN_ROLE_OVERRIDE,
            table="content_posts",
            column="author_id",
            payload={"role": "attribute", "purpose": "identifier"},
        ))

        run = IncrementalRefresher(extracted).refresh(PROJECT, changes, background=False)

        assert run.status == RunStatus.COMPLETED
        assert run.get_stage(StageName.SCHEMA_SNAPSHOT).status == StageStatus.SKIPPED
        assert run.get_stage(StageName.FK_DISCOVERY).status == StageStatus.SKIPPED
        features = extracted.features.list_for_project(PROJECT)
        assert not features[("content_posts", "author_id")].fk_eligible
        assert extracted.relationships.count(PROJECT, RelationshipStatus.ACTIVE) == 0

    def test_detect_and_refresh_schema_change(self, db, extracted, fast_config):
        frames = content_frames()
        frames["comments"] = pd.DataFrame({
            "comment_id": list(range(1, 11)),
            "post_id": list(range(1, 11)),
            "body": [f"Comment {i}" for i in range(1, 11)],
        })
        keys = dict(CONTENT_PRIMARY_KEYS, comments=["comment_id"])
        catalog = CountingCatalog(frames, primary_keys=keys)
        orchestrator = Orchestrator(db, catalog, config=fast_config, owner_id="owner-b")
        refresher = IncrementalRefresher(orchestrator)

        changes = refresher.detect_changes(PROJECT)

        assert [(c.change_type, c.table) for c in changes.changes] == [(ChangeType.TABLE_ADDED, "comments")]

        run = refresher.refresh(PROJECT, changes, background=False)

        assert run.status == RunStatus.COMPLETED
        assert all(s.status == StageStatus.COMPLETED for s in run.stages)
        assert len(orchestrator.ontologies.get(PROJECT).entities) == 6
        assert refresher.detect_changes(PROJECT).is_empty

    def test_fk_added_replaces_discovered_relationship(self, db, extracted, fast_config):
        discovered = extracted.relationships.list_for_project(PROJECT, status=RelationshipStatus.ACTIVE)
        assert len(discovered) == 1
        assert discovered[0].inference_method != InferenceMethod.FK_CONSTRAINT

        catalog = CountingCatalog(
            content_frames(), primary_keys=CONTENT_PRIMARY_KEYS, foreign_keys=[AUTHOR_FK]
        )
        orchestrator = Orchestrator(db, catalog, config=fast_config, owner_id="owner-b")
        refresher = IncrementalRefresher(orchestrator)

        changes = refresher.detect_changes(PROJECT)
        assert [c.change_type for c in changes.changes] == [ChangeType.FK_ADDED]

        run = refresher.refresh(PROJECT, changes, background=False)

        assert run.status == RunStatus.COMPLETED
        assert run.get_stage(StageName.PK_MATCH_DISCOVERY).status == StageStatus.COMPLETED
        active = orchestrator.relationships.list_for_project(PROJECT, status=RelationshipStatus.ACTIVE)
        assert len(active) == 1
        assert active[0].inference_method == InferenceMethod.FK_CONSTRAINT
        assert active[0].is_validated
        assert active[0].description

        edges = orchestrator.ontologies.get(PROJECT).relationships
        assert len(edges) == 1
        assert edges[0]["method"] == "fk_constraint"
        assert edges[0]["association"] == "as_author"

    def test_fk_removed_falls_back_to_discovery(self, db, fast_config):
        declared = CountingCatalog(
            content_frames(), primary_keys=CONTENT_PRIMARY_KEYS, foreign_keys=[AUTHOR_FK]
        )
        first = Orchestrator(db, declared, config=fast_config, owner_id="owner-a")
        assert first.start_run(PROJECT, background=False).status == RunStatus.COMPLETED
        before = first.relationships.list_for_project(PROJECT, status=RelationshipStatus.ACTIVE)
        assert [r.inference_method for r in before] == [InferenceMethod.FK_CONSTRAINT]

        catalog = CountingCatalog(content_frames(), primary_keys=CONTENT_PRIMARY_KEYS)
        orchestrator = Orchestrator(db, catalog, config=fast_config, owner_id="owner-b")
        refresher = IncrementalRefresher(orchestrator)

        changes = refresher.detect_changes(PROJECT)
        assert [c.change_type for c in changes.changes] == [ChangeType.FK_REMOVED]

        run = refresher.refresh(PROJECT, changes, background=False)

        assert run.status == RunStatus.COMPLETED
        active = orchestrator.relationships.list_for_project(PROJECT, status=RelationshipStatus.ACTIVE)
        assert len(active) == 1
        assert active[0].inference_method != InferenceMethod.FK_CONSTRAINT
        assert active[0].is_validated

        edges = orchestrator.ontologies.get(PROJECT).relationships
        assert len(edges) == 1
        assert edges[0]["source"] == "content_posts.author_id"
        assert edges[0]["target"] == "users.user_id"
        assert refresher.detect_changes(PROJECT).is_empty
