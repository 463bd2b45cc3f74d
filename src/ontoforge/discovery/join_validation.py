"""
Statistical join validation.

Decides whether join statistics support a relationship, suppresses source
columns that "match" too many unrelated tables, and scores survivors.

Acceptance rule for a source -> target pair:
- at least one source value matches
- match rate (matched / distinct source values) >= min_match_rate
- reject when more than max_reverse_orphan_ratio of the target's values are
  never referenced AND the source has at most small_cardinality_limit distinct
  values. Small sequential integers {1, 2, 3} trivially match the keys of any
  table with ids 1..N; without the reverse check they would be accepted.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, List, Optional, Set, Tuple

from ontoforge.config import DiscoveryConfig
from ontoforge.models import (
    Cardinality,
    InferenceMethod,
    JoinStatistics,
    RelationshipCandidate,
)

logger = logging.getLogger(__name__)

METHOD_BASE_CONFIDENCE = {
    InferenceMethod.FK_CONSTRAINT: 1.0,
    InferenceMethod.COLUMN_FEATURES: 0.85,
    InferenceMethod.PK_MATCH: 0.7,
}
NAMING_BONUS = 0.1
COVERAGE_BONUS = 0.05

_KEY_SUFFIXES = ("_id", "_code", "_key", "_uuid", "id")


def table_variants(table_name: str) -> List[str]:
    """Get the name plus singular/plural variants of a table name."""
    table_lower = table_name.lower()
    variants = [table_lower]

    # Plural -> singular
    if table_lower.endswith("ies"):
        variants.append(table_lower[:-3] + "y")
    elif table_lower.endswith("es"):
        variants.append(table_lower[:-2])
        variants.append(table_lower[:-1])
    elif table_lower.endswith("s"):
        variants.append(table_lower[:-1])

    # Singular -> plural
    if table_lower.endswith("y"):
        variants.append(table_lower[:-1] + "ies")
    elif table_lower.endswith(("s", "x", "z", "ch", "sh")):
        variants.append(table_lower + "es")
    else:
        variants.append(table_lower + "s")

    return variants


def column_references_table(column_name: str, table_name: str) -> bool:
    """True when a column name like `user_id` or `fk_user` names the table `users`."""
    name = column_name.lower()
    if name.startswith("fk_"):
        stem = name[3:]
    else:
        stem = name
        for suffix in _KEY_SUFFIXES:
            if name.endswith(suffix) and len(name) > len(suffix):
                stem = name[: -len(suffix)]
                break
        else:
            return False
    stem = stem.rstrip("_")
    if not stem:
        return False
    variants = table_variants(table_name)
    # author_user_id -> users, parent_category_id -> categories
    return any(stem == v or stem.endswith("_" + v) for v in variants)


class JoinValidator:
    """Applies the acceptance rule, coincidence filter and confidence scoring."""

    def __init__(self, config: Optional[DiscoveryConfig] = None):
        self.config = config or DiscoveryConfig()

    def evaluate(self, stats: JoinStatistics) -> Tuple[bool, Optional[str]]:
        """
        Apply the acceptance rule.

        Returns:
            (accepted, rejection reason)
        """
        cfg = self.config
        if stats.source_distinct == 0:
            return False, "source column has no non-null values"
        if stats.matched_count <= 0:
            return False, "no source values found in target"
        if stats.match_rate < cfg.min_match_rate:
            return False, (
                f"match rate {stats.match_rate:.2%} below {cfg.min_match_rate:.0%} "
                f"({stats.forward_orphan_count} orphaned source values)"
            )
        if (
            stats.reverse_orphan_ratio > cfg.max_reverse_orphan_ratio
            and stats.source_distinct <= cfg.small_cardinality_limit
        ):
            return False, (
                f"coincidental overlap: {stats.source_distinct} distinct source values "
                f"cover only {stats.target_coverage:.0%} of {stats.target_distinct} target values"
            )
        return True, None

    def filter_coincidences(
        self,
        candidates: List[RelationshipCandidate],
    ) -> Tuple[List[RelationshipCandidate], List[RelationshipCandidate]]:
        """
        Drop every candidate of a source column accepted against too many tables.

        Returns:
            (kept, suppressed)
        """
        targets_by_source: Dict[Tuple[str, str], Set[str]] = defaultdict(set)
        for c in candidates:
            targets_by_source[c.source_key].add(c.target_table.lower())

        noisy = {
            source for source, targets in targets_by_source.items()
            if len(targets) > self.config.max_target_tables
        }
        kept, suppressed = [], []
        for c in candidates:
            if c.source_key in noisy:
                c.rejection_reason = (
                    f"matches {len(targets_by_source[c.source_key])} target tables "
                    f"(limit {self.config.max_target_tables})"
                )
                suppressed.append(c)
            else:
                kept.append(c)

        for table, column in sorted(noisy):
            logger.info(
                f"Suppressed {table}.{column}: matched "
                f"{len(targets_by_source[(table, column)])} target tables"
            )
        return kept, suppressed

    def score(self, candidate: RelationshipCandidate) -> float:
        """Deterministic confidence in [0, 1]."""
        base = METHOD_BASE_CONFIDENCE[candidate.inference_method]
        if candidate.stats is None:
            return base
        confidence = base * candidate.stats.match_rate
        if column_references_table(candidate.source_column, candidate.target_table):
            confidence += NAMING_BONUS
        confidence += COVERAGE_BONUS * candidate.stats.target_coverage
        return round(max(0.0, min(1.0, confidence)), 4)

    @staticmethod
    def infer_cardinality(stats: Optional[JoinStatistics]) -> Cardinality:
        """1:1 when every non-null source value is distinct, otherwise N:1."""
        if stats is None or stats.source_row_count == 0:
            return Cardinality.UNKNOWN
        non_null = stats.source_row_count - stats.source_null_count
        return Cardinality.ONE_TO_ONE if non_null == stats.source_distinct else Cardinality.MANY_TO_ONE
