"""
Relationship discovery module.

Discovers foreign-key relationships in schemas without reliable naming
conventions:
- Column feature classification (heuristics, optional LLM refinement)
- Candidate collection with bidirectional join statistics
- Coincidence filtering of columns that match many unrelated tables
- Confidence-gated LLM arbitration
- Entity discovery from DDL and relationship descriptions

Usage:
    from ontoforge.discovery import CandidateCollector, ColumnFeatureClassifier

    features = ColumnFeatureClassifier().classify(snapshot)
    result = CandidateCollector(catalog).collect(snapshot, features.features)
"""

from ontoforge.discovery.candidate_collector import CandidateCollector, CollectionResult
from ontoforge.discovery.enrichment import EnrichmentOutcome, EnrichmentReport, RelationshipEnricher
from ontoforge.discovery.entities import DiscoveryResult, EntityDiscoverer
from ontoforge.discovery.features import (
    ClassificationResult,
    ColumnFeatureClassifier,
    is_ordinal_name,
)
from ontoforge.discovery.join_validation import JoinValidator, column_references_table
from ontoforge.discovery.validator import (
    RelationshipValidator,
    ValidationOutcome,
    ValidationReport,
)

__all__ = [
    "CandidateCollector",
    "CollectionResult",
    "ClassificationResult",
    "ColumnFeatureClassifier",
    "DiscoveryResult",
    "EntityDiscoverer",
    "EnrichmentOutcome",
    "EnrichmentReport",
    "RelationshipEnricher",
    "is_ordinal_name",
    "JoinValidator",
    "column_references_table",
    "RelationshipValidator",
    "ValidationOutcome",
    "ValidationReport",
]
