"""
Relationship Enricher - business descriptions for accepted relationships.

Each relationship gets a one or two sentence description and a short
association verb ("belongs_to", "as_author") read from source to target.
The LLM writes them when enabled; otherwise, or when its answer is malformed,
they are derived from the column and table names.
"""

from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ontoforge.discovery.entities import core_concept, singularize
from ontoforge.discovery.prompts import SYSTEM_PROMPT, build_relationship_enrichment_prompt
from ontoforge.errors import LLMResponseError
from ontoforge.llm.client import LLMClient
from ontoforge.llm.json_response import parse_llm_json
from ontoforge.models import Cardinality, ColumnFeatures, SchemaRelationship

logger = logging.getLogger(__name__)

SOURCE_LLM = "llm"
SOURCE_HEURISTIC = "heuristic"

_KEY_SUFFIXES = ("_id", "_key", "_code", "_fk", "id")
_ASSOCIATION = re.compile(r"^[a-z][a-z0-9_]*$")


def heuristic_association(relationship: SchemaRelationship) -> str:
    """author_id -> users gives as_author; category_id -> categories gives belongs_to."""
    stem = relationship.source_column.lower()
    for suffix in _KEY_SUFFIXES:
        if stem.endswith(suffix) and len(stem) > len(suffix):
            stem = stem[: -len(suffix)]
            break
    stem = stem.strip("_")
    target = core_concept(relationship.target_table)
    if not stem or stem in (target, singularize(target)):
        return "belongs_to"
    return f"as_{stem}"


def heuristic_description(relationship: SchemaRelationship) -> str:
    source, target = relationship.source_table, relationship.target_table
    column = relationship.source_column
    if relationship.cardinality == Cardinality.MANY_TO_ONE:
        return f"Each {source} row references one {target} row through {column}."
    if relationship.cardinality == Cardinality.ONE_TO_ONE:
        return f"Each {source} row corresponds to at most one {target} row through {column}."
    return f"{source}.{column} references {target}.{relationship.target_column}."


def normalize_association(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    normalized = re.sub(r"[\s\-]+", "_", value.strip().lower())
    return normalized if _ASSOCIATION.match(normalized) else None


@dataclass
class EnrichmentOutcome:
    relationship: SchemaRelationship
    description: str
    association: str
    source: str
    warning: Optional[str] = None


@dataclass
class EnrichmentReport:
    outcomes: List[EnrichmentOutcome] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class RelationshipEnricher:
    """
    Describes accepted relationships.

    Example:
        enricher = RelationshipEnricher(llm=OllamaClient(), max_concurrency=4)
        report = enricher.enrich_all(relationships, features)
    """

    def __init__(
        self,
        llm: Optional[LLMClient] = None,
        max_concurrency: int = 4,
        use_llm: bool = True,
    ):
        self.llm = llm if use_llm else None
        self.max_concurrency = max(1, max_concurrency)

    def _heuristic(self, relationship: SchemaRelationship, warning: Optional[str]) -> EnrichmentOutcome:
        return EnrichmentOutcome(
            relationship=relationship,
            description=heuristic_description(relationship),
            association=heuristic_association(relationship),
            source=SOURCE_HEURISTIC,
            warning=warning,
        )

    def describe(
        self,
        relationship: SchemaRelationship,
        features: Dict[Tuple[str, str], ColumnFeatures],
    ) -> EnrichmentOutcome:
        """
        Describe one relationship.

        Raises:
            TransientError: When the LLM call times out (retried by the stage)
        """
        if self.llm is None:
            return self._heuristic(relationship, None)

        prompt = build_relationship_enrichment_prompt(
            relationship,
            features.get((relationship.source_table.lower(), relationship.source_column.lower())),
            features.get((relationship.target_table.lower(), relationship.target_column.lower())),
        )
        try:
            payload = parse_llm_json(self.llm.generate(prompt, SYSTEM_PROMPT), "relationship_enrichment")
        except LLMResponseError as e:
            warning = f"Malformed enrichment for {relationship.key}: {e}"
            logger.warning(warning)
            return self._heuristic(relationship, warning)

        description = payload["description"].strip()
        if not description:
            return self._heuristic(relationship, f"Empty enrichment for {relationship.key}")
        return EnrichmentOutcome(
            relationship=relationship,
            description=description,
            association=normalize_association(payload.get("association")) or heuristic_association(relationship),
            source=SOURCE_LLM,
        )

    def enrich_all(
        self,
        relationships: Sequence[SchemaRelationship],
        features: Dict[Tuple[str, str], ColumnFeatures],
        check_cancelled: Optional[Callable[[], None]] = None,
        on_outcome: Optional[Callable[[EnrichmentOutcome], None]] = None,
        progress: Optional[Callable[[int, int, str], None]] = None,
    ) -> EnrichmentReport:
        """Describe every relationship; `on_outcome` runs on the calling thread."""
        report = EnrichmentReport()
        total = len(relationships)

        def run(rel: SchemaRelationship) -> EnrichmentOutcome:
            if check_cancelled:
                check_cancelled()
            return self.describe(rel, features)

        with ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="enrich") as pool:
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
                        progress(done, total, f"Described {outcome.relationship.key}")
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

        logger.info(f"Enriched {total} relationships")
        return report
