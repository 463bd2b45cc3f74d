"""
Core data models for the ontoforge package.

Defines the fundamental data structures used throughout the system including
schema metadata, column features, relationship candidates, run/stage records
and change sets.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple


class DataType(str, Enum):
    """Normalized data types across source databases."""
    STRING = "string"
    INTEGER = "integer"
    BIGINT = "bigint"
    DECIMAL = "decimal"
    FLOAT = "float"
    DOUBLE = "double"
    DATE = "date"
    TIMESTAMP = "timestamp"
    BOOLEAN = "boolean"
    BINARY = "binary"
    UUID = "uuid"
    JSON = "json"
    UNKNOWN = "unknown"


# Types that can hold join keys of each other
TYPE_FAMILIES: Dict[DataType, str] = {
    DataType.INTEGER: "integer",
    DataType.BIGINT: "integer",
    DataType.DECIMAL: "integer",  # Oracle NUMBER keys
    DataType.STRING: "string",
    DataType.UUID: "uuid",
}


def types_compatible(source: DataType, target: DataType) -> bool:
    """Return True if a source column of type `source` can reference `target`."""
    source_family = TYPE_FAMILIES.get(source)
    target_family = TYPE_FAMILIES.get(target)
    if source_family is None or target_family is None:
        return False
    if source_family == target_family:
        return True
    # UUIDs are frequently stored as text
    return {source_family, target_family} == {"uuid", "string"}


class RunStatus(str, Enum):
    """Lifecycle of an extraction run."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class StageStatus(str, Enum):
    """Lifecycle of a single stage within a run."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_resolved(self) -> bool:
        """Resolved stages satisfy their dependents."""
        return self in (StageStatus.COMPLETED, StageStatus.SKIPPED)


class RunKind(str, Enum):
    """What triggered a run."""
    EXTRACTION = "extraction"
    REFRESH = "refresh"


class StageName(str, Enum):
    """The closed set of pipeline stages."""
    SCHEMA_SNAPSHOT = "schema_snapshot"
    ENTITY_DISCOVERY = "entity_discovery"
    COLUMN_FEATURES = "column_features"
    FK_DISCOVERY = "fk_discovery"
    PK_MATCH_DISCOVERY = "pk_match_discovery"
    RELATIONSHIP_VALIDATION = "relationship_validation"
    RELATIONSHIP_ENRICHMENT = "relationship_enrichment"
    ONTOLOGY_FINALIZATION = "ontology_finalization"

    @property
    def order(self) -> int:
        return STAGE_ORDER.index(self) + 1


STAGE_ORDER: List[StageName] = [
    StageName.SCHEMA_SNAPSHOT,
    StageName.ENTITY_DISCOVERY,
    StageName.COLUMN_FEATURES,
    StageName.FK_DISCOVERY,
    StageName.PK_MATCH_DISCOVERY,
    StageName.RELATIONSHIP_VALIDATION,
    StageName.RELATIONSHIP_ENRICHMENT,
    StageName.ONTOLOGY_FINALIZATION,
]

# stage -> stages that must be resolved before it may run
STAGE_DEPENDENCIES: Dict[StageName, Tuple[StageName, ...]] = {
    StageName.SCHEMA_SNAPSHOT: (),
    StageName.ENTITY_DISCOVERY: (StageName.SCHEMA_SNAPSHOT,),
    StageName.COLUMN_FEATURES: (StageName.SCHEMA_SNAPSHOT,),
    StageName.FK_DISCOVERY: (StageName.SCHEMA_SNAPSHOT,),
    StageName.PK_MATCH_DISCOVERY: (StageName.COLUMN_FEATURES, StageName.FK_DISCOVERY),
    StageName.RELATIONSHIP_VALIDATION: (StageName.PK_MATCH_DISCOVERY, StageName.FK_DISCOVERY),
    StageName.RELATIONSHIP_ENRICHMENT: (
        StageName.RELATIONSHIP_VALIDATION,
        StageName.COLUMN_FEATURES,
    ),
    StageName.ONTOLOGY_FINALIZATION: (
        StageName.RELATIONSHIP_ENRICHMENT,
        StageName.ENTITY_DISCOVERY,
        StageName.COLUMN_FEATURES,
    ),
}


def downstream_closure(stages: Iterable[StageName]) -> Set[StageName]:
    """Return the given stages plus every stage that transitively depends on them."""
    closure: Set[StageName] = set(stages)
    changed = True
    while changed:
        changed = False
        for stage, deps in STAGE_DEPENDENCIES.items():
            if stage not in closure and any(d in closure for d in deps):
                closure.add(stage)
                changed = True
    return closure


def topological_stage_order(stages: Iterable[StageName]) -> List[StageName]:
    """Sort stages by dependencies, breaking ties by declared order."""
    selected = set(stages)
    in_degree: Dict[StageName, int] = {s: 0 for s in selected}
    adj: Dict[StageName, List[StageName]] = {s: [] for s in selected}

    for stage in selected:
        for dep in STAGE_DEPENDENCIES[stage]:
            if dep in selected:
                adj[dep].append(stage)
                in_degree[stage] += 1

    # Kahn's algorithm
    queue = [s for s in selected if in_degree[s] == 0]
    result: List[StageName] = []

    while queue:
        queue.sort(key=lambda s: s.order)
        node = queue.pop(0)
        result.append(node)
        for neighbor in adj[node]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)

    return result


class InferenceMethod(str, Enum):
    """How a relationship was found."""
    FK_CONSTRAINT = "fk_constraint"
    COLUMN_FEATURES = "column_features"
    PK_MATCH = "pk_match"


class RelationshipStatus(str, Enum):
    ACTIVE = "active"
    STALE = "stale"


class Cardinality(str, Enum):
    ONE_TO_ONE = "1:1"
    MANY_TO_ONE = "N:1"
    UNKNOWN = "unknown"


class ColumnRole(str, Enum):
    """Structural role of a column."""
    PRIMARY_KEY = "primary_key"
    FOREIGN_KEY = "foreign_key"
    ORDINAL = "ordinal"
    ATTRIBUTE = "attribute"


class ColumnPurpose(str, Enum):
    """Semantic purpose of a column."""
    IDENTIFIER = "identifier"
    TIMESTAMP = "timestamp"
    FLAG = "flag"
    MEASURE = "measure"
    ENUM = "enum"
    TEXT = "text"
    JSON = "json"
    ORDINAL = "ordinal"


class FeatureSource(str, Enum):
    HEURISTIC = "heuristic"
    LLM = "llm"
    USER = "user"


class ChangeType(str, Enum):
    """Kinds of change that can trigger an incremental refresh."""
    TABLE_ADDED = "table_added"
    TABLE_REMOVED = "table_removed"
    COLUMN_ADDED = "column_added"
    COLUMN_REMOVED = "column_removed"
    COLUMN_TYPE_CHANGED = "column_type_changed"
    FK_ADDED = "fk_added"
    FK_REMOVED = "fk_removed"
    ATTRIBUTE_EDIT = "attribute_edit"
    COLUMN_ROLE_OVERRIDE = "column_role_override"
    RELATIONSHIP_OVERRIDE = "relationship_override"

    @property
    def is_correction(self) -> bool:
        """Corrections are user/agent edits rather than schema diffs."""
        return self in (
            ChangeType.ATTRIBUTE_EDIT,
            ChangeType.COLUMN_ROLE_OVERRIDE,
            ChangeType.RELATIONSHIP_OVERRIDE,
        )


@dataclass
class ColumnMetadata:
    """Metadata for a single column."""
    name: str
    data_type: DataType
    nullable: bool = True
    is_primary_key: bool = False
    is_unique: bool = False
    raw_type: Optional[str] = None
    comment: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "data_type": self.data_type.value,
            "nullable": self.nullable,
            "is_primary_key": self.is_primary_key,
            "is_unique": self.is_unique,
            "raw_type": self.raw_type,
            "comment": self.comment,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ColumnMetadata:
        """Create from dictionary."""
        return cls(
            name=data["name"],
            data_type=DataType(data.get("data_type", "unknown")),
            nullable=data.get("nullable", True),
            is_primary_key=data.get("is_primary_key", False),
            is_unique=data.get("is_unique", False),
            raw_type=data.get("raw_type"),
            comment=data.get("comment"),
        )


@dataclass
class TableMetadata:
    """Metadata for a database table."""
    name: str
    schema: Optional[str] = None
    columns: List[ColumnMetadata] = field(default_factory=list)
    primary_key: List[str] = field(default_factory=list)
    comment: Optional[str] = None
    row_count_estimate: Optional[int] = None

    @property
    def column_names(self) -> List[str]:
        """Return list of column names."""
        return [c.name for c in self.columns]

    def get_column(self, name: str) -> Optional[ColumnMetadata]:
        """Get column by name (case-insensitive)."""
        name_lower = name.lower()
        for col in self.columns:
            if col.name.lower() == name_lower:
                return col
        return None

    def get_pk_columns(self) -> List[ColumnMetadata]:
        """Get primary key columns."""
        return [c for c in self.columns if c.is_primary_key]

    @property
    def single_column_pk(self) -> Optional[ColumnMetadata]:
        """The primary key column when the key is not composite."""
        pks = self.get_pk_columns()
        return pks[0] if len(pks) == 1 else None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "schema": self.schema,
            "columns": [c.to_dict() for c in self.columns],
            "primary_key": self.primary_key,
            "comment": self.comment,
            "row_count_estimate": self.row_count_estimate,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TableMetadata:
        """Create from dictionary."""
        return cls(
            name=data["name"],
            schema=data.get("schema"),
            columns=[ColumnMetadata.from_dict(c) for c in data.get("columns", [])],
            primary_key=data.get("primary_key", []),
            comment=data.get("comment"),
            row_count_estimate=data.get("row_count_estimate"),
        )


@dataclass(frozen=True)
class ForeignKeyMetadata:
    """A foreign key constraint declared in the source catalog."""
    source_table: str
    source_column: str
    target_table: str
    target_column: str
    constraint_name: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.source_table}.{self.source_column}->{self.target_table}.{self.target_column}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_table": self.source_table,
            "source_column": self.source_column,
            "target_table": self.target_table,
            "target_column": self.target_column,
            "constraint_name": self.constraint_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ForeignKeyMetadata:
        return cls(
            source_table=data["source_table"],
            source_column=data["source_column"],
            target_table=data["target_table"],
            target_column=data["target_column"],
            constraint_name=data.get("constraint_name"),
        )


@dataclass
class SchemaSnapshot:
    """Point-in-time view of a project's tables and declared foreign keys."""
    tables: Dict[str, TableMetadata] = field(default_factory=dict)
    foreign_keys: List[ForeignKeyMetadata] = field(default_factory=list)

    def add_table(self, table: TableMetadata) -> None:
        self.tables[table.name.lower()] = table

    def get_table(self, name: str) -> Optional[TableMetadata]:
        """Get table by name (case-insensitive)."""
        return self.tables.get(name.lower())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "tables": {name: t.to_dict() for name, t in sorted(self.tables.items())},
            "foreign_keys": [fk.to_dict() for fk in sorted(self.foreign_keys, key=lambda f: f.key)],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SchemaSnapshot:
        """Create from dictionary."""
        snapshot = cls()
        for tdata in (data or {}).get("tables", {}).values():
            snapshot.add_table(TableMetadata.from_dict(tdata))
        snapshot.foreign_keys = [
            ForeignKeyMetadata.from_dict(f) for f in (data or {}).get("foreign_keys", [])
        ]
        return snapshot

    def fingerprint(self) -> str:
        """Stable hash of the structural content, used to skip no-op refreshes."""
        payload = json.dumps(self.to_dict(), sort_keys=True, default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class ColumnFeatures:
    """Classification of a column's role and purpose."""
    table: str
    column: str
    role: ColumnRole = ColumnRole.ATTRIBUTE
    purpose: ColumnPurpose = ColumnPurpose.TEXT
    fk_eligible: bool = False
    source: FeatureSource = FeatureSource.HEURISTIC
    confidence: float = 0.5
    description: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.table.lower(), self.column.lower())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "column": self.column,
            "role": self.role.value,
            "purpose": self.purpose.value,
            "fk_eligible": self.fk_eligible,
            "source": self.source.value,
            "confidence": self.confidence,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ColumnFeatures:
        return cls(
            table=data["table"],
            column=data["column"],
            role=ColumnRole(data.get("role", "attribute")),
            purpose=ColumnPurpose(data.get("purpose", "text")),
            fk_eligible=data.get("fk_eligible", False),
            source=FeatureSource(data.get("source", "heuristic")),
            confidence=data.get("confidence", 0.5),
            description=data.get("description"),
        )


@dataclass
class JoinStatistics:
    """Bidirectional join statistics between a source column and a target column."""
    source_distinct: int
    target_distinct: int
    forward_orphan_count: int  # distinct source values missing from target
    reverse_orphan_count: int  # distinct target values never referenced
    source_row_count: int = 0
    source_null_count: int = 0
    max_source_value: Optional[Any] = None

    @property
    def matched_count(self) -> int:
        return self.source_distinct - self.forward_orphan_count

    @property
    def match_rate(self) -> float:
        """Fraction of distinct source values found in the target."""
        if self.source_distinct == 0:
            return 0.0
        return self.matched_count / self.source_distinct

    @property
    def reverse_orphan_ratio(self) -> float:
        """Fraction of distinct target values that no source row references."""
        if self.target_distinct == 0:
            return 0.0
        return self.reverse_orphan_count / self.target_distinct

    @property
    def target_coverage(self) -> float:
        return 1.0 - self.reverse_orphan_ratio if self.target_distinct else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_distinct": self.source_distinct,
            "target_distinct": self.target_distinct,
            "forward_orphan_count": self.forward_orphan_count,
            "reverse_orphan_count": self.reverse_orphan_count,
            "matched_count": self.matched_count,
            "match_rate": round(self.match_rate, 4),
            "source_row_count": self.source_row_count,
            "source_null_count": self.source_null_count,
            "max_source_value": self.max_source_value if self.max_source_value is None
            else str(self.max_source_value),
        }


@dataclass
class RelationshipCandidate:
    """A source→target column pair being evaluated. Never persisted directly."""
    source_table: str
    source_column: str
    target_table: str
    target_column: str
    inference_method: InferenceMethod
    stats: Optional[JoinStatistics] = None
    confidence: float = 0.0
    cardinality: Cardinality = Cardinality.UNKNOWN
    rejection_reason: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.source_table}.{self.source_column}->{self.target_table}.{self.target_column}"

    @property
    def source_key(self) -> Tuple[str, str]:
        return (self.source_table.lower(), self.source_column.lower())

    @property
    def match_rate(self) -> float:
        return self.stats.match_rate if self.stats else 0.0


@dataclass
class SchemaRelationship:
    """A persisted relationship between two columns."""
    project_id: str
    source_table: str
    source_column: str
    target_table: str
    target_column: str
    inference_method: InferenceMethod
    confidence: float
    cardinality: Cardinality = Cardinality.UNKNOWN
    validation_results: Dict[str, Any] = field(default_factory=dict)
    is_validated: bool = False
    status: RelationshipStatus = RelationshipStatus.ACTIVE
    description: Optional[str] = None
    association: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return f"{self.source_table}.{self.source_column}->{self.target_table}.{self.target_column}"

    @classmethod
    def from_candidate(
        cls,
        project_id: str,
        candidate: RelationshipCandidate,
        is_validated: bool = False,
    ) -> SchemaRelationship:
        """Build the persistable form of an accepted candidate."""
        results: Dict[str, Any] = {}
        if candidate.stats is not None:
            results["join_statistics"] = candidate.stats.to_dict()
        return cls(
            project_id=project_id,
            source_table=candidate.source_table,
            source_column=candidate.source_column,
            target_table=candidate.target_table,
            target_column=candidate.target_column,
            inference_method=candidate.inference_method,
            confidence=round(candidate.confidence, 4),
            cardinality=candidate.cardinality,
            validation_results=results,
            is_validated=is_validated,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "source_table": self.source_table,
            "source_column": self.source_column,
            "target_table": self.target_table,
            "target_column": self.target_column,
            "inference_method": self.inference_method.value,
            "confidence": self.confidence,
            "cardinality": self.cardinality.value,
            "validation_results": self.validation_results,
            "is_validated": self.is_validated,
            "status": self.status.value,
            "description": self.description,
            "association": self.association,
        }


class IdentifierSource(str, Enum):
    """What qualifies a table's identifying column."""
    PRIMARY_KEY = "primary_key"
    UNIQUE_NOT_NULL = "unique_not_null"


@dataclass
class OntologyEntity:
    """A business entity backed by one primary table and optional alias tables."""
    project_id: str
    name: str
    primary_table: str
    identifier: List[str] = field(default_factory=list)
    identifier_source: IdentifierSource = IdentifierSource.PRIMARY_KEY
    display_name: Optional[str] = None
    description: Optional[str] = None
    confidence: float = 0.5
    aliases: List[str] = field(default_factory=list)
    id: Optional[int] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "primary_table": self.primary_table,
            "identifier": list(self.identifier),
            "identifier_source": self.identifier_source.value,
            "display_name": self.display_name,
            "description": self.description,
            "confidence": self.confidence,
            "aliases": list(self.aliases),
        }


@dataclass
class StageProgress:
    current: int = 0
    total: int = 0
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"current": self.current, "total": self.total, "message": self.message}


@dataclass
class StageRecord:
    """Durable state of one stage of a run."""
    run_id: str
    name: StageName
    order: int
    status: StageStatus = StageStatus.PENDING
    progress: StageProgress = field(default_factory=StageProgress)
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    retry_count: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None


@dataclass
class RunRecord:
    """Durable state of an extraction or refresh run."""
    id: str
    project_id: str
    kind: RunKind
    status: RunStatus
    owner_id: Optional[str] = None
    last_heartbeat: Optional[datetime] = None
    current_stage: Optional[StageName] = None
    error: Optional[str] = None
    change_set: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    stages: List[StageRecord] = field(default_factory=list)

    def get_stage(self, name: StageName) -> Optional[StageRecord]:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    @property
    def warnings(self) -> List[str]:
        return [w for s in self.stages for w in s.warnings]


@dataclass
class Change:
    """A single schema diff or correction."""
    change_type: ChangeType
    table: Optional[str] = None
    column: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "change_type": self.change_type.value,
            "table": self.table,
            "column": self.column,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Change:
        return cls(
            change_type=ChangeType(data["change_type"]),
            table=data.get("table"),
            column=data.get("column"),
            payload=data.get("payload") or {},
        )


@dataclass
class ChangeSet:
    """Changes accumulated since the last extraction or refresh."""
    changes: List[Change] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.changes

    @property
    def change_types(self) -> Set[ChangeType]:
        return {c.change_type for c in self.changes}

    @property
    def corrections(self) -> List[Change]:
        return [c for c in self.changes if c.change_type.is_correction]

    def add(self, change: Change) -> None:
        self.changes.append(change)

    def to_dict(self) -> Dict[str, Any]:
        return {"changes": [c.to_dict() for c in self.changes]}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> ChangeSet:
        return cls(changes=[Change.from_dict(c) for c in (data or {}).get("changes", [])])


@dataclass
class Correction:
    """A pending user or agent edit applied during refresh."""
    project_id: str
    kind: ChangeType
    table: Optional[str] = None
    column: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    applied_at: Optional[datetime] = None


@dataclass
class ProjectState:
    """Per-project extraction bookkeeping."""
    project_id: str
    schema_snapshot: Optional[SchemaSnapshot] = None
    schema_fingerprint: Optional[str] = None
    last_extracted_at: Optional[datetime] = None
    last_refreshed_at: Optional[datetime] = None


@dataclass
class Ontology:
    """Finalized ontology document for a project."""
    project_id: str
    version: int
    document: Dict[str, Any] = field(default_factory=dict)
    run_id: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def entities(self) -> List[Dict[str, Any]]:
        return self.document.get("entities", [])

    @property
    def relationships(self) -> List[Dict[str, Any]]:
        return self.document.get("relationships", [])
