"""
Column Feature Classifier - decides each column's role and FK eligibility.

Classification happens in three layers, later layers refining earlier ones:
1. Naming and type heuristics (always)
2. Optional per-table LLM refinement, run in parallel under a concurrency cap
3. User column_role_override corrections

Two rules hold regardless of layer: primary keys are never FK-eligible, and
ordinal-named columns (week_number, step_position, ...) are never FK-eligible.
"""

from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ontoforge.discovery.prompts import SYSTEM_PROMPT, build_column_features_prompt
from ontoforge.errors import LLMResponseError
from ontoforge.llm.client import LLMClient
from ontoforge.llm.json_response import parse_llm_json
from ontoforge.models import (
    TYPE_FAMILIES,
    ColumnFeatures,
    ColumnMetadata,
    ColumnPurpose,
    ColumnRole,
    Correction,
    DataType,
    FeatureSource,
    SchemaSnapshot,
    TableMetadata,
)

logger = logging.getLogger(__name__)

# Names that count, order or position things. Never foreign keys.
ORDINAL_SUFFIXES = (
    "_number",
    "_num",
    "_offset",
    "_step",
    "_position",
    "_sequence",
    "_seq",
    "_index",
    "_rank",
)
ORDINAL_NAMES = {"position", "offset", "step", "sequence", "rank", "ordinal", "sort_order"}

# Common FK column patterns
FK_PATTERNS = [
    r"^[a-z0-9_]+_id$",
    r"^[a-z0-9_]+id$",
    r"^fk_[a-z0-9_]+$",
    r"^[a-z0-9_]+_code$",
    r"^[a-z0-9_]+_key$",
    r"^[a-z0-9_]+_uuid$",
]

MEASURE_HINTS = (
    "amount", "price", "total", "count", "qty", "quantity", "balance",
    "score", "rate", "pct", "percent", "sum", "avg", "views", "size",
)
TEXT_HINTS = ("name", "title", "description", "email", "comment", "note", "body", "url", "label")
TIMESTAMP_SUFFIXES = ("_at", "_date", "_time", "_ts", "_on")
FLAG_PREFIXES = ("is_", "has_", "can_", "should_")

ProgressFn = Callable[[int, int, str], None]


def is_ordinal_name(column_name: str) -> bool:
    """True for names like week_number, step_offset or position."""
    name = column_name.lower()
    return name in ORDINAL_NAMES or name.endswith(ORDINAL_SUFFIXES)


def looks_like_fk(column_name: str) -> bool:
    name = column_name.lower()
    return any(re.match(p, name) for p in FK_PATTERNS)


def is_key_type(data_type: DataType) -> bool:
    """Types that can carry a join key."""
    return data_type in TYPE_FAMILIES


@dataclass
class ClassificationResult:
    """Features for every column plus non-fatal warnings."""
    features: Dict[Tuple[str, str], ColumnFeatures] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def get(self, table: str, column: str) -> Optional[ColumnFeatures]:
        return self.features.get((table.lower(), column.lower()))


class ColumnFeatureClassifier:
    """
    Classifies columns into roles and purposes.

    Example:
        classifier = ColumnFeatureClassifier(llm=OllamaClient(), max_concurrency=4)
        result = classifier.classify(snapshot)
        eligible = [f for f in result.features.values() if f.fk_eligible]
    """

    def __init__(
        self,
        llm: Optional[LLMClient] = None,
        max_concurrency: int = 4,
        use_llm: bool = True,
    ):
        """
        Initialize the classifier.

        Args:
            llm: Optional LLM collaborator for per-table refinement
            max_concurrency: Maximum concurrent LLM requests
            use_llm: Disable LLM refinement even when a client is given
        """
        self.llm = llm
        self.max_concurrency = max(1, max_concurrency)
        self.use_llm = use_llm and llm is not None

    def classify_column(self, table: TableMetadata, column: ColumnMetadata) -> ColumnFeatures:
        """Heuristic classification of a single column."""
        name = column.name.lower()
        features = ColumnFeatures(table=table.name, column=column.name)

        if column.is_primary_key:
            features.role = ColumnRole.PRIMARY_KEY
            features.purpose = ColumnPurpose.IDENTIFIER
            features.confidence = 1.0
            return features

        if is_ordinal_name(name):
            features.role = ColumnRole.ORDINAL
            features.purpose = ColumnPurpose.ORDINAL
            features.confidence = 0.9
            return features

        if column.data_type == DataType.BOOLEAN or name.startswith(FLAG_PREFIXES):
            features.purpose = ColumnPurpose.FLAG
            features.confidence = 0.8
            return features

        if column.data_type in (DataType.DATE, DataType.TIMESTAMP) or name.endswith(TIMESTAMP_SUFFIXES):
            features.purpose = ColumnPurpose.TIMESTAMP
            features.confidence = 0.8
            return features

        if column.data_type == DataType.JSON:
            features.purpose = ColumnPurpose.JSON
            features.confidence = 0.9
            return features

        if column.data_type in (DataType.FLOAT, DataType.DOUBLE):
            features.purpose = ColumnPurpose.MEASURE
            features.confidence = 0.7
            return features

        if is_key_type(column.data_type) and (
            looks_like_fk(name) or column.data_type == DataType.UUID
        ):
            features.role = ColumnRole.FOREIGN_KEY
            features.purpose = ColumnPurpose.IDENTIFIER
            features.fk_eligible = True
            features.confidence = 0.8
            return features

        if column.data_type != DataType.STRING and any(hint in name for hint in MEASURE_HINTS):
            features.purpose = ColumnPurpose.MEASURE
            features.confidence = 0.6
            return features

        if column.data_type == DataType.STRING:
            features.purpose = ColumnPurpose.TEXT if any(h in name for h in TEXT_HINTS) else ColumnPurpose.ENUM
            features.confidence = 0.5
            return features

        # Unnamed integer keys are still worth testing against primary keys
        if is_key_type(column.data_type):
            features.purpose = ColumnPurpose.IDENTIFIER
            features.fk_eligible = True
            features.confidence = 0.4

        return features

    def classify_table(self, table: TableMetadata) -> List[ColumnFeatures]:
        return [self.classify_column(table, col) for col in table.columns]

    def refine_with_llm(
        self,
        table: TableMetadata,
        heuristics: List[ColumnFeatures],
    ) -> List[ColumnFeatures]:
        """
        Ask the LLM to refine one table's classifications.

        Raises:
            LLMResponseError: If the response cannot be parsed
        """
        prompt = build_column_features_prompt(table, heuristics)
        payload = parse_llm_json(self.llm.generate(prompt, SYSTEM_PROMPT), "column_features")

        by_column = {item["column"].lower(): item for item in payload["columns"]}
        refined = []
        for features in heuristics:
            item = by_column.get(features.column.lower())
            column = table.get_column(features.column)
            if item is None or column is None or features.role == ColumnRole.PRIMARY_KEY:
                refined.append(features)
                continue
            refined.append(self._merge_llm(features, column, item))
        return refined

    def _merge_llm(
        self,
        features: ColumnFeatures,
        column: ColumnMetadata,
        item: Dict[str, str],
    ) -> ColumnFeatures:
        try:
            role = ColumnRole(item["role"])
        except ValueError:
            return features
        # The LLM cannot promote a non-key column to primary key
        if role == ColumnRole.PRIMARY_KEY:
            return features

        purpose = features.purpose
        if item.get("purpose"):
            try:
                purpose = ColumnPurpose(item["purpose"])
            except ValueError:
                logger.debug(f"Keeping heuristic purpose for {features.column}: {item['purpose']!r}")

        merged = ColumnFeatures(
            table=features.table,
            column=features.column,
            role=role,
            purpose=purpose,
            fk_eligible=role == ColumnRole.FOREIGN_KEY and is_key_type(column.data_type),
            source=FeatureSource.LLM,
            confidence=max(features.confidence, 0.7),
            description=item.get("description") or features.description,
        )
        # Attributes keep heuristic eligibility so unnamed keys are still tested
        if role == ColumnRole.ATTRIBUTE and features.fk_eligible:
            merged.fk_eligible = True
        return self._enforce_invariants(merged)

    def apply_overrides(
        self,
        result: ClassificationResult,
        overrides: Sequence[Correction],
        snapshot: SchemaSnapshot,
    ) -> None:
        """Apply column_role_override corrections in creation order."""
        for correction in overrides:
            if not correction.table or not correction.column:
                result.warnings.append(f"Ignoring column override without target: {correction.id}")
                continue
            table = snapshot.get_table(correction.table)
            column = table.get_column(correction.column) if table else None
            if column is None:
                result.warnings.append(
                    f"Column override targets unknown column {correction.table}.{correction.column}"
                )
                continue

            key = (table.name.lower(), column.name.lower())
            current = result.features.get(key) or self.classify_column(table, column)
            payload = correction.payload
            try:
                role = ColumnRole(payload.get("role", current.role.value))
                purpose = ColumnPurpose(payload.get("purpose", current.purpose.value))
            except ValueError as e:
                result.warnings.append(f"Invalid column override for {table.name}.{column.name}: {e}")
                continue

            updated = ColumnFeatures(
                table=table.name,
                column=column.name,
                role=role,
                purpose=purpose,
                fk_eligible=bool(payload.get("fk_eligible", role == ColumnRole.FOREIGN_KEY)),
                source=FeatureSource.USER,
                confidence=1.0,
                description=payload.get("description", current.description),
            )
            enforced = self._enforce_invariants(updated)
            if updated.fk_eligible and not enforced.fk_eligible:
                result.warnings.append(
                    f"{table.name}.{column.name} is an ordinal or key column and cannot be FK-eligible"
                )
            result.features[key] = enforced

    def _enforce_invariants(self, features: ColumnFeatures) -> ColumnFeatures:
        if is_ordinal_name(features.column):
            features.fk_eligible = False
            if features.role == ColumnRole.FOREIGN_KEY:
                features.role = ColumnRole.ORDINAL
                features.purpose = ColumnPurpose.ORDINAL
        if features.role == ColumnRole.PRIMARY_KEY:
            features.fk_eligible = False
        return features

    def classify(
        self,
        snapshot: SchemaSnapshot,
        overrides: Optional[Sequence[Correction]] = None,
        check_cancelled: Optional[Callable[[], None]] = None,
        progress: Optional[ProgressFn] = None,
    ) -> ClassificationResult:
        """
        Classify every column in the snapshot.

        Args:
            snapshot: Schema to classify
            overrides: column_role_override corrections to apply last
            check_cancelled: Raises RunCancelled when the run was cancelled
            progress: Callback(current, total, message)

        Returns:
            ClassificationResult
        """
        tables = [snapshot.tables[name] for name in sorted(snapshot.tables)]
        result = ClassificationResult()
        total = len(tables)

        heuristics = {t.name: self.classify_table(t) for t in tables}

        if self.use_llm and tables:
            def refine(table: TableMetadata) -> Tuple[str, List[ColumnFeatures], Optional[str]]:
                if check_cancelled:
                    check_cancelled()
                try:
                    return table.name, self.refine_with_llm(table, heuristics[table.name]), None
                except LLMResponseError as e:
                    return table.name, heuristics[table.name], f"Column classification for {table.name}: {e}"

            with ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="classify") as pool:
                for done, (table_name, features, warning) in enumerate(pool.map(refine, tables), 1):
                    heuristics[table_name] = features
                    if warning:
                        logger.warning(warning)
                        result.warnings.append(warning)
                    if progress:
                        progress(done, total, f"Classified {table_name}")
        elif progress:
            progress(total, total, "Classified columns heuristically")

        for table_name, features in heuristics.items():
            for f in features:
                result.features[f.key] = self._enforce_invariants(f)

        if overrides:
            self.apply_overrides(result, overrides, snapshot)

        eligible = sum(1 for f in result.features.values() if f.fk_eligible)
        logger.info(
            f"Classified {len(result.features)} columns in {total} tables ({eligible} FK-eligible)"
        )
        return result
