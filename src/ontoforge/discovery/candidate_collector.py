"""
Relationship Candidate Collector - finds FK candidates by joining data.

Pairs every FK-eligible source column with every single-column primary key or
unique column in another table of a compatible type, runs one join-statistics
query per pair, applies the acceptance rule and the coincidence filter, and
returns survivors ordered by confidence.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

from ontoforge.config import DiscoveryConfig
from ontoforge.discovery.join_validation import JoinValidator
from ontoforge.metadata.catalog import SchemaCatalog
from ontoforge.models import (
    ColumnFeatures,
    ColumnMetadata,
    ColumnRole,
    InferenceMethod,
    RelationshipCandidate,
    SchemaSnapshot,
    TableMetadata,
    types_compatible,
)

logger = logging.getLogger(__name__)

ProgressFn = Callable[[int, int, str], None]


@dataclass
class CollectionResult:
    """Outcome of one collection pass."""
    accepted: List[RelationshipCandidate] = field(default_factory=list)
    rejected: List[RelationshipCandidate] = field(default_factory=list)
    suppressed: List[RelationshipCandidate] = field(default_factory=list)
    pairs_evaluated: int = 0


class CandidateCollector:
    """
    Collects statistically validated relationship candidates.

    Example:
        collector = CandidateCollector(catalog, DiscoveryConfig())
        result = collector.collect(snapshot, features)
        for candidate in result.accepted:
            print(candidate.key, candidate.confidence)
    """

    def __init__(
        self,
        catalog: SchemaCatalog,
        config: Optional[DiscoveryConfig] = None,
        validator: Optional[JoinValidator] = None,
    ):
        self.catalog = catalog
        self.config = config or DiscoveryConfig()
        self.validator = validator or JoinValidator(self.config)

    def eligible_sources(
        self,
        snapshot: SchemaSnapshot,
        features: Dict[Tuple[str, str], ColumnFeatures],
        covered: Optional[Set[Tuple[str, str]]] = None,
    ) -> List[Tuple[TableMetadata, ColumnMetadata, ColumnFeatures]]:
        """FK-eligible, non-PK columns not already covered by a declared foreign key."""
        covered = covered or set()
        sources = []
        for table_name in sorted(snapshot.tables):
            table = snapshot.tables[table_name]
            for col in table.columns:
                key = (table.name.lower(), col.name.lower())
                feature = features.get(key)
                if feature is None or not feature.fk_eligible:
                    continue
                if col.is_primary_key or key in covered:
                    continue
                sources.append((table, col, feature))
        return sources

    def eligible_targets(self, snapshot: SchemaSnapshot) -> List[Tuple[TableMetadata, ColumnMetadata]]:
        """Single-column primary keys and unique columns."""
        targets = []
        for table_name in sorted(snapshot.tables):
            table = snapshot.tables[table_name]
            pk = table.single_column_pk
            for col in table.columns:
                if (pk is not None and col is pk) or (col.is_unique and not col.is_primary_key):
                    targets.append((table, col))
        return targets

    def candidate_pairs(
        self,
        snapshot: SchemaSnapshot,
        features: Dict[Tuple[str, str], ColumnFeatures],
        covered: Optional[Set[Tuple[str, str]]] = None,
    ) -> List[RelationshipCandidate]:
        """Type-compatible source/target pairs across distinct tables, without statistics."""
        targets = self.eligible_targets(snapshot)
        pairs = []
        for src_table, src_col, feature in self.eligible_sources(snapshot, features, covered):
            method = (
                InferenceMethod.COLUMN_FEATURES
                if feature.role == ColumnRole.FOREIGN_KEY
                else InferenceMethod.PK_MATCH
            )
            for tgt_table, tgt_col in targets:
                if tgt_table.name.lower() == src_table.name.lower():
                    continue
                if not types_compatible(src_col.data_type, tgt_col.data_type):
                    continue
                pairs.append(RelationshipCandidate(
                    source_table=src_table.name,
                    source_column=src_col.name,
                    target_table=tgt_table.name,
                    target_column=tgt_col.name,
                    inference_method=method,
                ))
        return pairs

    def collect(
        self,
        snapshot: SchemaSnapshot,
        features: Dict[Tuple[str, str], ColumnFeatures],
        covered: Optional[Set[Tuple[str, str]]] = None,
        check_cancelled: Optional[Callable[[], None]] = None,
        progress: Optional[ProgressFn] = None,
    ) -> CollectionResult:
        """
        Evaluate every candidate pair against live data.

        Args:
            snapshot: Current schema
            features: Column classifications keyed by (table, column)
            covered: Source columns already explained by declared foreign keys
            check_cancelled: Raises RunCancelled when the run was cancelled
            progress: Callback(current, total, message)

        Returns:
            CollectionResult with accepted candidates ordered by confidence
        """
        pairs = self.candidate_pairs(snapshot, features, covered)
        result = CollectionResult()
        total = len(pairs)
        logger.info(f"Evaluating {total} candidate column pairs")

        passing: List[RelationshipCandidate] = []
        for idx, candidate in enumerate(pairs, 1):
            if check_cancelled:
                check_cancelled()

            candidate.stats = self.catalog.analyze_join(
                candidate.source_table,
                candidate.source_column,
                candidate.target_table,
                candidate.target_column,
            )
            result.pairs_evaluated += 1

            accepted, reason = self.validator.evaluate(candidate.stats)
            if accepted:
                passing.append(candidate)
            else:
                candidate.rejection_reason = reason
                result.rejected.append(candidate)
                logger.debug(f"Rejected {candidate.key}: {reason}")

            if progress:
                progress(idx, total, f"Validated {candidate.key}")

        kept, suppressed = self.validator.filter_coincidences(passing)
        result.suppressed = suppressed

        for candidate in kept:
            candidate.confidence = self.validator.score(candidate)
            candidate.cardinality = self.validator.infer_cardinality(candidate.stats)
        kept.sort(key=lambda c: (-c.confidence, c.key))
        result.accepted = kept

        logger.info(
            f"Candidates: {len(kept)} accepted, {len(result.rejected)} rejected, "
            f"{len(suppressed)} suppressed as coincidental"
        )
        return result
