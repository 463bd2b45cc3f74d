"""
Relationship Validator - confidence-gated semantic arbitration.

For each unvalidated relationship, in priority order:
1. A relationship_override correction decides outright
2. Confidence at or above the bypass threshold accepts without an LLM call
3. Otherwise the LLM arbitrates; its verdict must reach the accept threshold
4. When the LLM is disabled or its answer is malformed, the deterministic
   confidence is compared with the accept threshold instead
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ontoforge.config import ConfidencePolicy
from ontoforge.discovery.prompts import SYSTEM_PROMPT, build_relationship_prompt
from ontoforge.errors import LLMResponseError
from ontoforge.llm.client import LLMClient
from ontoforge.llm.json_response import parse_llm_json
from ontoforge.models import (
    Cardinality,
    ColumnFeatures,
    Correction,
    SchemaRelationship,
    SchemaSnapshot,
)

logger = logging.getLogger(__name__)

DECIDED_BY_OVERRIDE = "user_override"
DECIDED_BY_BYPASS = "confidence_bypass"
DECIDED_BY_LLM = "llm"
DECIDED_BY_FALLBACK = "deterministic_fallback"

RelationshipKey = Tuple[str, str, str, str]


def relationship_key(source_table: str, source_column: str, target_table: str, target_column: str) -> RelationshipKey:
    return (source_table.lower(), source_column.lower(), target_table.lower(), target_column.lower())


def override_key(correction: Correction) -> Optional[RelationshipKey]:
    """Key of the relationship a relationship_override correction targets."""
    payload = correction.payload
    if not correction.table or not correction.column:
        return None
    if not payload.get("target_table") or not payload.get("target_column"):
        return None
    return relationship_key(
        correction.table, correction.column, payload["target_table"], payload["target_column"]
    )


@dataclass
class ValidationOutcome:
    """Arbitration result for one relationship."""
    relationship: SchemaRelationship
    accepted: bool
    confidence: float
    decided_by: str
    cardinality: Optional[Cardinality] = None
    reasoning: Optional[str] = None
    warning: Optional[str] = None

    def validation_results(self) -> Dict[str, Any]:
        """Join statistics snapshot plus the arbitration record."""
        results = dict(self.relationship.validation_results)
        results["arbitration"] = {
            "accepted": self.accepted,
            "decided_by": self.decided_by,
            "confidence": self.confidence,
            "prior_confidence": self.relationship.confidence,
            "reasoning": self.reasoning,
        }
        return results


@dataclass
class ValidationReport:
    outcomes: List[ValidationOutcome] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def accepted(self) -> List[ValidationOutcome]:
        return [o for o in self.outcomes if o.accepted]


class RelationshipValidator:
    """Arbitrates relationships under a single ConfidencePolicy."""

    def __init__(
        self,
        policy: Optional[ConfidencePolicy] = None,
        llm: Optional[LLMClient] = None,
        max_concurrency: int = 4,
    ):
        self.policy = policy or ConfidencePolicy()
        self.llm = llm
        self.max_concurrency = max(1, max_concurrency)

    def _fallback(self, relationship: SchemaRelationship, warning: Optional[str]) -> ValidationOutcome:
        accepted = self.policy.accepts(relationship.confidence)
        return ValidationOutcome(
            relationship=relationship,
            accepted=accepted,
            confidence=relationship.confidence,
            decided_by=DECIDED_BY_FALLBACK,
            cardinality=relationship.cardinality,
            reasoning=(
                f"deterministic confidence {relationship.confidence:.2f} "
                f"{'meets' if accepted else 'is below'} accept threshold {self.policy.accept_threshold:.2f}"
            ),
            warning=warning,
        )

    def decide(
        self,
        relationship: SchemaRelationship,
        snapshot: SchemaSnapshot,
        features: Dict[Tuple[str, str], ColumnFeatures],
        override: Optional[Correction] = None,
    ) -> ValidationOutcome:
        """
        Decide a single relationship.

        Args:
            relationship: Unvalidated relationship with join statistics
            snapshot: Schema for prompt context
            features: Column classifications for prompt context
            override: relationship_override correction for this relationship

        Returns:
            ValidationOutcome

        Raises:
            TransientError: When the LLM call times out (retried by the stage)
        """
        if override is not None:
            accepted = bool(override.payload.get("accepted", True))
            return ValidationOutcome(
                relationship=relationship,
                accepted=accepted,
                confidence=1.0 if accepted else 0.0,
                decided_by=DECIDED_BY_OVERRIDE,
                cardinality=relationship.cardinality,
                reasoning=override.payload.get("reason", "user override"),
            )

        if self.policy.bypasses_arbitration(relationship.confidence):
            return ValidationOutcome(
                relationship=relationship,
                accepted=True,
                confidence=relationship.confidence,
                decided_by=DECIDED_BY_BYPASS,
                cardinality=relationship.cardinality,
                reasoning=f"confidence {relationship.confidence:.2f} at or above bypass threshold",
            )

        if self.llm is None:
            return self._fallback(relationship, None)

        prompt = build_relationship_prompt(
            relationship,
            snapshot.get_table(relationship.source_table),
            snapshot.get_table(relationship.target_table),
            features.get((relationship.source_table.lower(), relationship.source_column.lower())),
            features.get((relationship.target_table.lower(), relationship.target_column.lower())),
        )
        raw = self.llm.generate(prompt, SYSTEM_PROMPT)
        try:
            verdict = parse_llm_json(raw, "relationship_verdict")
        except LLMResponseError as e:
            warning = f"Malformed arbitration for {relationship.key}: {e}"
            logger.warning(warning)
            return self._fallback(relationship, warning)

        confidence = max(0.0, min(1.0, float(verdict["confidence"])))
        accepted = bool(verdict["is_valid_fk"]) and self.policy.accepts(confidence)
        cardinality = relationship.cardinality
        if verdict.get("cardinality") in (Cardinality.ONE_TO_ONE.value, Cardinality.MANY_TO_ONE.value):
            cardinality = Cardinality(verdict["cardinality"])

        return ValidationOutcome(
            relationship=relationship,
            accepted=accepted,
            confidence=round(confidence, 4),
            decided_by=DECIDED_BY_LLM,
            cardinality=cardinality,
            reasoning=verdict.get("reasoning"),
        )

    def validate_all(
        self,
        relationships: Sequence[SchemaRelationship],
        snapshot: SchemaSnapshot,
        features: Dict[Tuple[str, str], ColumnFeatures],
        overrides: Optional[Dict[RelationshipKey, Correction]] = None,
        check_cancelled: Optional[Callable[[], None]] = None,
        on_outcome: Optional[Callable[[ValidationOutcome], None]] = None,
        progress: Optional[Callable[[int, int, str], None]] = None,
    ) -> ValidationReport:
        """
        Decide every relationship, running LLM requests in parallel.

        `on_outcome` is called from the calling thread as each decision lands,
        so it may persist results without extra locking.
        """
        overrides = overrides or {}
        report = ValidationReport()
        total = len(relationships)

        def run(rel: SchemaRelationship) -> ValidationOutcome:
            if check_cancelled:
                check_cancelled()
            key = relationship_key(rel.source_table, rel.source_column, rel.target_table, rel.target_column)
            return self.decide(rel, snapshot, features, overrides.get(key))

        with ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="arbitrate") as pool:
            futures = [pool.submit(run, rel) for rel in relationships]
            try:
                for done, future in enumerate(as_completed(futures), 1):
                    outcome = future.result()
                    report.outcomes.append(outcome)
                    if outcome.warning:
                        report.warnings.append(outcome.warning)
                    if on_outcome:
                        on_outcome(outcome)
                    if progress:
                        progress(done, total, f"Validated {outcome.relationship.key}")
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

        accepted = len(report.accepted)
        logger.info(f"Arbitrated {total} relationships: {accepted} accepted, {total - accepted} rejected")
        return report
