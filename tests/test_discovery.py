"""
Tests for the relationship discovery module.

Tests column classification, join validation, candidate collection and
confidence-gated arbitration.
"""

import json

import pandas as pd
import pytest

from conftest import CONTENT_PRIMARY_KEYS, FakeLLM, content_frames
from ontoforge.config import ConfidencePolicy, DiscoveryConfig
from ontoforge.discovery import (
    CandidateCollector,
    EntityDiscoverer,
    ColumnFeatureClassifier,
    JoinValidator,
    RelationshipEnricher,
    RelationshipValidator,
    column_references_table,
    is_ordinal_name,
)
from ontoforge.discovery.validator import (
    DECIDED_BY_BYPASS,
    DECIDED_BY_FALLBACK,
    DECIDED_BY_LLM,
    DECIDED_BY_OVERRIDE,
)
from ontoforge.discovery.enrichment import SOURCE_HEURISTIC, SOURCE_LLM, heuristic_association
from ontoforge.metadata import FrameCatalog
from ontoforge.models import (
    Cardinality,
    ChangeType,
    ColumnMetadata,
    ColumnRole,
    Correction,
    DataType,
    IdentifierSource,
    InferenceMethod,
    JoinStatistics,
    RelationshipCandidate,
    SchemaRelationship,
    SchemaSnapshot,
    TableMetadata,
)


def stats(source_distinct, target_distinct, forward_orphans, reverse_orphans, rows=None, nulls=0):
    return JoinStatistics(
        source_distinct=source_distinct,
        target_distinct=target_distinct,
        forward_orphan_count=forward_orphans,
        reverse_orphan_count=reverse_orphans,
        source_row_count=rows if rows is not None else source_distinct,
        source_null_count=nulls,
    )


@pytest.fixture
def content_snapshot():
    return FrameCatalog(content_frames(), primary_keys=CONTENT_PRIMARY_KEYS).snapshot()


class TestOrdinalNames:
    """Tests for ordinal column detection."""

    @pytest.mark.parametrize("name", [
        "week_number", "step_offset", "page_num", "sort_position", "line_seq",
        "event_sequence", "row_index", "popularity_rank", "position", "WEEK_NUMBER",
    ])
    def test_ordinal_names(self, name):
        assert is_ordinal_name(name)

    @pytest.mark.parametrize("name", ["user_id", "number_of_items", "category_code", "ranking_source"])
    def test_non_ordinal_names(self, name):
        assert not is_ordinal_name(name)


class TestColumnFeatureClassifier:
    """Tests for heuristic and LLM-refined column classification."""

    def test_heuristic_roles(self, content_snapshot):
        """Test PK, FK-shaped, ordinal and text columns."""
        result = ColumnFeatureClassifier().classify(content_snapshot)

        assert result.get("content_posts", "post_id").role == ColumnRole.PRIMARY_KEY
        assert not result.get("content_posts", "post_id").fk_eligible

        author = result.get("content_posts", "author_id")
        assert author.role == ColumnRole.FOREIGN_KEY
        assert author.fk_eligible

        week = result.get("content_posts", "week_number")
        assert week.role == ColumnRole.ORDINAL
        assert not week.fk_eligible

        assert not result.get("content_posts", "title").fk_eligible

    def test_unnamed_integer_is_eligible(self):
        """Test integer columns without key naming are still tested against PKs."""
        table = TableMetadata(
            name="events",
            columns=[ColumnMetadata(name="legacy_ref", data_type=DataType.BIGINT)],
        )
        features = ColumnFeatureClassifier().classify_column(table, table.columns[0])

        assert features.fk_eligible
        assert features.role == ColumnRole.ATTRIBUTE

    def test_llm_refinement(self, content_snapshot):
        """Test LLM output refines roles and descriptions."""
        def responder(prompt):
            columns = []
            if "`content_posts`" in prompt:
                columns = [
                    {"column": "author_id", "role": "foreign_key", "purpose": "identifier",
                     "description": "User who wrote the post"},
                    {"column": "title", "role": "attribute", "purpose": "text",
                     "description": "Headline"},
                ]
            return json.dumps({"columns": columns})

        llm = FakeLLM(responder=responder)
        result = ColumnFeatureClassifier(llm=llm, max_concurrency=2).classify(content_snapshot)

        assert llm.calls == len(content_snapshot.tables)
        assert result.get("content_posts", "author_id").description == "User who wrote the post"
        assert result.get("content_posts", "title").description == "Headline"
        assert result.warnings == []

    def test_llm_cannot_make_ordinal_a_foreign_key(self, content_snapshot):
        """Test the ordinal rule holds against LLM output."""
        llm = FakeLLM(response=json.dumps({
            "columns": [{"column": "week_number", "role": "foreign_key", "purpose": "identifier"}],
        }))
        result = ColumnFeatureClassifier(llm=llm).classify(content_snapshot)

        week = result.get("content_posts", "week_number")
        assert not week.fk_eligible
        assert week.role == ColumnRole.ORDINAL

    def test_malformed_llm_output_falls_back(self, content_snapshot):
        """Test malformed LLM output becomes a warning and heuristics are kept."""
        llm = FakeLLM(response="Sure! Here are the columns: author_id is a key")
        result = ColumnFeatureClassifier(llm=llm).classify(content_snapshot)

        assert len(result.warnings) == len(content_snapshot.tables)
        assert "not valid JSON" in result.warnings[0]
        assert result.get("content_posts", "author_id").fk_eligible

    def test_user_override(self, content_snapshot):
        """Test column_role_override corrections win over heuristics."""
        override = Correction(
            project_id="p",
            kind=ChangeType.COLUMN_ROLE_OVERRIDE,
            table="content_posts",
            column="author_id",
            payload={"role": "attribute", "fk_eligible": False, "description": "Free-text author"},
        )
        result = ColumnFeatureClassifier().classify(content_snapshot, overrides=[override])

        author = result.get("content_posts", "author_id")
        assert author.role == ColumnRole.ATTRIBUTE
        assert not author.fk_eligible
        assert author.description == "Free-text author"

    def test_override_cannot_make_ordinal_eligible(self, content_snapshot):
        """Test an override marking an ordinal column FK-eligible is refused with a warning."""
        override = Correction(
            project_id="p",
            kind=ChangeType.COLUMN_ROLE_OVERRIDE,
            table="content_posts",
            column="week_number",
            payload={"role": "foreign_key", "fk_eligible": True},
        )
        result = ColumnFeatureClassifier().classify(content_snapshot, overrides=[override])

        assert not result.get("content_posts", "week_number").fk_eligible
        assert any("week_number" in w for w in result.warnings)

    def test_override_unknown_column(self, content_snapshot):
        override = Correction(
            project_id="p",
            kind=ChangeType.COLUMN_ROLE_OVERRIDE,
            table="content_posts",
            column="missing",
            payload={"role": "attribute"},
        )
        result = ColumnFeatureClassifier().classify(content_snapshot, overrides=[override])

        assert any("unknown column" in w for w in result.warnings)


class TestJoinValidator:
    """Tests for the bidirectional acceptance rule."""

    def test_small_set_against_large_range_rejected(self):
        """Test {1,2,3} against PKs 1..25: 100% forward match, still rejected."""
        s = stats(source_distinct=3, target_distinct=25, forward_orphans=0, reverse_orphans=22)
        assert s.match_rate == 1.0

        accepted, reason = JoinValidator().evaluate(s)

        assert not accepted
        assert "coincidental" in reason

    def test_symmetry_from_live_data(self):
        """Test the same rejection when statistics come from a catalog."""
        catalog = FrameCatalog(
            {
                "steps": pd.DataFrame({"step_id": [1, 2, 3, 4, 5, 6], "stage_ref": [1, 2, 3, 1, 2, 3]}),
                "stages": pd.DataFrame({"stage_id": list(range(1, 26))}),
            },
            primary_keys={"steps": ["step_id"], "stages": ["stage_id"]},
        )
        s = catalog.analyze_join("steps", "stage_ref", "stages", "stage_id")

        assert (s.source_distinct, s.target_distinct) == (3, 25)
        assert s.reverse_orphan_count == 22
        assert not JoinValidator().evaluate(s)[0]

    def test_high_cardinality_source_survives_reverse_orphans(self):
        """Test reverse orphans alone do not reject a large source."""
        s = stats(source_distinct=200, target_distinct=1000, forward_orphans=0, reverse_orphans=800)
        assert JoinValidator().evaluate(s) == (True, None)

    def test_low_match_rate_rejected(self):
        s = stats(source_distinct=100, target_distinct=100, forward_orphans=10, reverse_orphans=10)
        accepted, reason = JoinValidator().evaluate(s)

        assert not accepted
        assert "match rate" in reason

    def test_no_overlap_rejected(self):
        s = stats(source_distinct=5, target_distinct=5, forward_orphans=5, reverse_orphans=5)
        assert not JoinValidator().evaluate(s)[0]

    def test_full_coverage_accepted(self):
        s = stats(source_distinct=10, target_distinct=10, forward_orphans=0, reverse_orphans=0, rows=50)
        assert JoinValidator().evaluate(s) == (True, None)

    def test_multi_target_suppression(self):
        """Test a source matching three tables loses every candidate."""
        candidates = [
            RelationshipCandidate("events", "legacy_ref", t, "id", InferenceMethod.PK_MATCH)
            for t in ("alpha", "beta", "gamma")
        ]
        candidates.append(RelationshipCandidate("events", "user_id", "users", "id", InferenceMethod.PK_MATCH))

        kept, suppressed = JoinValidator().filter_coincidences(candidates)

        assert [c.source_column for c in kept] == ["user_id"]
        assert len(suppressed) == 3
        assert all("3 target tables" in c.rejection_reason for c in suppressed)

    def test_two_targets_kept(self):
        candidates = [
            RelationshipCandidate("events", "owner_id", t, "id", InferenceMethod.PK_MATCH)
            for t in ("users", "admins")
        ]
        kept, suppressed = JoinValidator().filter_coincidences(candidates)

        assert len(kept) == 2
        assert suppressed == []

    def test_score_naming_bonus(self):
        """Test confidence includes the naming bonus and stays within [0, 1]."""
        validator = JoinValidator()
        full = stats(source_distinct=30, target_distinct=30, forward_orphans=0, reverse_orphans=0)

        named = RelationshipCandidate(
            "posts", "user_id", "users", "id", InferenceMethod.COLUMN_FEATURES, stats=full
        )
        unnamed = RelationshipCandidate(
            "posts", "author_id", "users", "id", InferenceMethod.COLUMN_FEATURES, stats=full
        )

        assert validator.score(named) == 1.0
        assert validator.score(unnamed) == pytest.approx(0.9)

    def test_infer_cardinality(self):
        one_to_one = stats(source_distinct=10, target_distinct=10, forward_orphans=0, reverse_orphans=0, rows=12, nulls=2)
        many_to_one = stats(source_distinct=10, target_distinct=10, forward_orphans=0, reverse_orphans=0, rows=40)

        assert JoinValidator.infer_cardinality(one_to_one) == Cardinality.ONE_TO_ONE
        assert JoinValidator.infer_cardinality(many_to_one) == Cardinality.MANY_TO_ONE
        assert JoinValidator.infer_cardinality(None) == Cardinality.UNKNOWN


class TestColumnReferencesTable:
    """Tests for column-name to table-name matching."""

    def test_matches(self):
        assert column_references_table("user_id", "users")
        assert column_references_table("category_id", "categories")
        assert column_references_table("parent_category_id", "categories")
        assert column_references_table("fk_address", "addresses")
        assert column_references_table("customerid", "customer")

    def test_non_matches(self):
        assert not column_references_table("author_id", "users")
        assert not column_references_table("week_number", "weeks")
        assert not column_references_table("user", "users")


class TestCandidateCollector:
    """Tests for statistical candidate collection."""

    def test_week_number_scenario(self, content_snapshot):
        """Test week_number (1..10) against four auto-increment tables yields nothing."""
        catalog = FrameCatalog(content_frames(), primary_keys=CONTENT_PRIMARY_KEYS)
        features = ColumnFeatureClassifier().classify(content_snapshot).features

        # Forward-only validation would accept all four
        for target, pk in (("users", "user_id"), ("categories", "category_id"),
                           ("tags", "tag_id"), ("regions", "region_id")):
            assert catalog.analyze_join("content_posts", "week_number", target, pk).match_rate == 1.0

        result = CandidateCollector(catalog).collect(content_snapshot, features)

        assert not any(c.source_column == "week_number" for c in result.accepted)
        assert not any(c.source_column == "week_number" for c in result.rejected)
        assert [c.key for c in result.accepted] == ["content_posts.author_id->users.user_id"]

    def test_week_number_excluded_even_without_ordinal_rule_on_features(self, content_snapshot):
        """Test the statistical rule alone also rejects week_number."""
        catalog = FrameCatalog(content_frames(), primary_keys=CONTENT_PRIMARY_KEYS)
        validator = JoinValidator()
        for target, pk in (("users", "user_id"), ("categories", "category_id"),
                           ("tags", "tag_id"), ("regions", "region_id")):
            s = catalog.analyze_join("content_posts", "week_number", target, pk)
            assert not validator.evaluate(s)[0]

    def test_accepted_candidate_details(self, content_snapshot):
        catalog = FrameCatalog(content_frames(), primary_keys=CONTENT_PRIMARY_KEYS)
        features = ColumnFeatureClassifier().classify(content_snapshot).features

        result = CandidateCollector(catalog).collect(content_snapshot, features)
        author = result.accepted[0]

        assert author.inference_method == InferenceMethod.COLUMN_FEATURES
        assert author.cardinality == Cardinality.MANY_TO_ONE
        assert author.stats.match_rate == 1.0
        assert author.confidence == pytest.approx(0.9)
        # categories, tags and regions hold only 25 of the 30 author ids
        assert len(result.rejected) == 3

    def test_covered_sources_skipped(self, content_snapshot):
        catalog = FrameCatalog(content_frames(), primary_keys=CONTENT_PRIMARY_KEYS)
        features = ColumnFeatureClassifier().classify(content_snapshot).features

        result = CandidateCollector(catalog).collect(
            content_snapshot, features, covered={("content_posts", "author_id")}
        )

        assert result.accepted == []
        assert result.pairs_evaluated == 0

    def test_multi_target_suppression_end_to_end(self):
        """Test an unnamed integer matching three tables' keys yields no candidates."""
        frames = {
            "events": pd.DataFrame({"event_id": list(range(1, 31)), "legacy_ref": list(range(1, 31))}),
            "alpha": pd.DataFrame({"alpha_id": list(range(1, 31))}),
            "beta": pd.DataFrame({"beta_id": list(range(1, 31))}),
            "gamma": pd.DataFrame({"gamma_id": list(range(1, 31))}),
        }
        catalog = FrameCatalog(
            frames,
            primary_keys={"events": ["event_id"], "alpha": ["alpha_id"], "beta": ["beta_id"], "gamma": ["gamma_id"]},
        )
        snapshot = catalog.snapshot()
        features = ColumnFeatureClassifier().classify(snapshot).features

        result = CandidateCollector(catalog).collect(snapshot, features)

        assert result.accepted == []
        assert {c.target_table for c in result.suppressed} == {"alpha", "beta", "gamma"}

    def test_type_incompatible_pairs_skipped(self):
        frames = {
            "orders": pd.DataFrame({"order_id": [1, 2, 3], "customer_code": ["a", "b", "c"]}),
            "customers": pd.DataFrame({"customer_id": [1, 2, 3]}),
        }
        catalog = FrameCatalog(frames, primary_keys={"orders": ["order_id"], "customers": ["customer_id"]})
        snapshot = catalog.snapshot()
        features = ColumnFeatureClassifier().classify(snapshot).features

        pairs = CandidateCollector(catalog).candidate_pairs(snapshot, features)

        assert all(p.source_column != "customer_code" or p.target_column != "customer_id" for p in pairs)

    def test_cancellation_checkpoint(self, content_snapshot):
        catalog = FrameCatalog(content_frames(), primary_keys=CONTENT_PRIMARY_KEYS)
        features = ColumnFeatureClassifier().classify(content_snapshot).features

        class Stop(Exception):
            pass

        def check_cancelled():
            raise Stop()

        with pytest.raises(Stop):
            CandidateCollector(catalog).collect(content_snapshot, features, check_cancelled=check_cancelled)


def make_relationship(confidence, source_column="author_id"):
    return SchemaRelationship(
        project_id="p",
        source_table="content_posts",
        source_column=source_column,
        target_table="users",
        target_column="user_id",
        inference_method=InferenceMethod.PK_MATCH,
        confidence=confidence,
        cardinality=Cardinality.MANY_TO_ONE,
        validation_results={"join_statistics": {"match_rate": 1.0}},
        id=1,
    )


class TestRelationshipValidator:
    """Tests for confidence-gated arbitration."""

    def test_bypass_skips_llm(self, content_snapshot):
        llm = FakeLLM(response="{}")
        outcome = RelationshipValidator(ConfidencePolicy(), llm).decide(
            make_relationship(0.95), content_snapshot, {}
        )

        assert outcome.accepted
        assert outcome.decided_by == DECIDED_BY_BYPASS
        assert llm.calls == 0

    def test_llm_verdict(self, content_snapshot):
        llm = FakeLLM(response='```json\n{"is_valid_fk": false, "confidence": 0.2, "reasoning": "coincidence"}\n```')
        outcome = RelationshipValidator(ConfidencePolicy(), llm).decide(
            make_relationship(0.8), content_snapshot, {}
        )

        assert not outcome.accepted
        assert outcome.decided_by == DECIDED_BY_LLM
        assert outcome.confidence == 0.2
        assert outcome.reasoning == "coincidence"
        assert llm.calls == 1

    def test_llm_accept_requires_threshold(self, content_snapshot):
        """Test a positive verdict below the accept threshold is still rejected."""
        llm = FakeLLM(response='{"is_valid_fk": true, "confidence": 0.5}')
        outcome = RelationshipValidator(ConfidencePolicy(), llm).decide(
            make_relationship(0.8), content_snapshot, {}
        )
        assert not outcome.accepted

    def test_malformed_llm_response_falls_back(self, content_snapshot):
        """Test malformed output yields a warning and the deterministic decision."""
        llm = FakeLLM(response='{"is_valid_fk": "maybe"}')
        validator = RelationshipValidator(ConfidencePolicy(), llm)

        outcome = validator.decide(make_relationship(0.8), content_snapshot, {})

        assert outcome.decided_by == DECIDED_BY_FALLBACK
        assert outcome.accepted
        assert outcome.warning is not None

        low = validator.decide(make_relationship(0.5), content_snapshot, {})
        assert not low.accepted

    def test_non_finite_llm_confidence_falls_back(self, content_snapshot):
        llm = FakeLLM(response='{"is_valid_fk": true, "confidence": NaN}')

        outcome = RelationshipValidator(ConfidencePolicy(), llm).decide(
            make_relationship(0.5), content_snapshot, {}
        )

        assert outcome.decided_by == DECIDED_BY_FALLBACK
        assert not outcome.accepted
        assert outcome.confidence == 0.5
        assert "finite" in outcome.warning

    def test_no_llm_uses_policy(self, content_snapshot):
        validator = RelationshipValidator(ConfidencePolicy(bypass_threshold=0.9, accept_threshold=0.7))

        assert validator.decide(make_relationship(0.75), content_snapshot, {}).accepted
        assert not validator.decide(make_relationship(0.65), content_snapshot, {}).accepted

    def test_override_wins(self, content_snapshot):
        llm = FakeLLM(response='{"is_valid_fk": true, "confidence": 0.99}')
        override = Correction(
            project_id="p",
            kind=ChangeType.RELATIONSHIP_OVERRIDE,
            table="content_posts",
            column="author_id",
            payload={"target_table": "users", "target_column": "user_id", "accepted": False},
        )
        outcome = RelationshipValidator(ConfidencePolicy(), llm).decide(
            make_relationship(0.95), content_snapshot, {}, override
        )

        assert not outcome.accepted
        assert outcome.decided_by == DECIDED_BY_OVERRIDE
        assert llm.calls == 0

    def test_validate_all_reports_warnings(self, content_snapshot):
        llm = FakeLLM(response="not json")
        seen = []
        report = RelationshipValidator(ConfidencePolicy(), llm, max_concurrency=2).validate_all(
            [make_relationship(0.8), make_relationship(0.8, source_column="editor_id")],
            content_snapshot,
            {},
            on_outcome=seen.append,
        )

        assert len(report.outcomes) == 2
        assert len(report.warnings) == 2
        assert len(seen) == 2
        assert all(o.validation_results()["arbitration"]["decided_by"] == DECIDED_BY_FALLBACK for o in seen)


class TestDiscoveryConfig:
    """Tests for threshold configuration effects."""

    def test_stricter_match_rate(self):
        s = stats(source_distinct=100, target_distinct=100, forward_orphans=3, reverse_orphans=3)

        assert JoinValidator(DiscoveryConfig(min_match_rate=0.95)).evaluate(s)[0]
        assert not JoinValidator(DiscoveryConfig(min_match_rate=0.99)).evaluate(s)[0]


def table(name, *columns, primary_key=None, comment=None):
    return TableMetadata(name=name, columns=list(columns), primary_key=primary_key or [], comment=comment)


class TestEntityDiscoverer:
    """Tests for DDL-based entity discovery."""

    def test_one_entity_per_table(self, content_snapshot):
        result = EntityDiscoverer().discover("p", content_snapshot)

        assert [e.primary_table for e in result.entities] == [
            "categories", "content_posts", "regions", "tags", "users"
        ]
        assert result.skipped_tables == []
        posts = next(e for e in result.entities if e.name == "content_posts")
        assert posts.identifier == ["post_id"]
        assert posts.identifier_source == IdentifierSource.PRIMARY_KEY
        assert posts.display_name == "Content Post"
        assert posts.aliases == []

    def test_prefixed_copies_become_aliases(self):
        snapshot = SchemaSnapshot()
        for name in ("users", "test_users", "s1_users"):
            snapshot.add_table(table(
                name,
                ColumnMetadata("user_id", DataType.BIGINT, nullable=False, is_primary_key=True),
                primary_key=["user_id"],
                comment="People" if name == "users" else None,
            ))

        result = EntityDiscoverer().discover("p", snapshot)

        assert len(result.entities) == 1
        entity = result.entities[0]
        assert entity.primary_table == "users"
        assert entity.aliases == ["s1_users", "test_users"]
        assert entity.description == "People"

    def test_unique_not_null_identifier(self):
        snapshot = SchemaSnapshot()
        snapshot.add_table(table(
            "currencies",
            ColumnMetadata("label", DataType.STRING),
            ColumnMetadata("iso_code", DataType.STRING, nullable=False, is_unique=True),
        ))

        entity = EntityDiscoverer().discover("p", snapshot).entities[0]

        assert entity.identifier == ["iso_code"]
        assert entity.identifier_source == IdentifierSource.UNIQUE_NOT_NULL
        assert entity.confidence == 0.9

    def test_table_without_identifier_is_skipped(self):
        snapshot = SchemaSnapshot()
        snapshot.add_table(table(
            "page_views",
            ColumnMetadata("path", DataType.STRING),
            ColumnMetadata("session", DataType.STRING, is_unique=True),
        ))

        result = EntityDiscoverer().discover("p", snapshot)

        assert result.entities == []
        assert result.skipped_tables == ["page_views"]


class TestRelationshipEnricher:
    """Tests for relationship descriptions."""

    @pytest.mark.parametrize("source_column,target_table,expected", [
        ("author_id", "users", "as_author"),
        ("user_id", "users", "belongs_to"),
        ("category_id", "categories", "belongs_to"),
        ("region_code", "regions", "belongs_to"),
    ])
    def test_heuristic_association(self, source_column, target_table, expected):
        rel = make_relationship(0.9, source_column=source_column)
        rel.target_table = target_table
        assert heuristic_association(rel) == expected

    def test_without_llm(self):
        outcome = RelationshipEnricher().describe(make_relationship(0.9), {})

        assert outcome.source == SOURCE_HEURISTIC
        assert outcome.association == "as_author"
        assert outcome.description == "Each content_posts row references one users row through author_id."

    def test_llm_description(self):
        llm = FakeLLM(response='{"description": "Who wrote the post.", "association": "written by"}')

        outcome = RelationshipEnricher(llm=llm).describe(make_relationship(0.9), {})

        assert outcome.source == SOURCE_LLM
        assert outcome.description == "Who wrote the post."
        assert outcome.association == "written_by"
        assert "content_posts.author_id" in llm.prompts[0]

    def test_malformed_answer_falls_back(self):
        llm = FakeLLM(response="Sure! It links posts to users.")

        outcome = RelationshipEnricher(llm=llm).describe(make_relationship(0.9), {})

        assert outcome.source == SOURCE_HEURISTIC
        assert outcome.association == "as_author"
        assert outcome.warning.startswith("Malformed enrichment")

    def test_llm_disabled_by_flag(self):
        llm = FakeLLM(response="{}")

        report = RelationshipEnricher(llm=llm, use_llm=False).enrich_all([make_relationship(0.9)], {})

        assert llm.calls == 0
        assert [o.source for o in report.outcomes] == [SOURCE_HEURISTIC]
        assert report.warnings == []
