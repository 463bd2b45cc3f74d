"""
SQLAlchemy ORM tables for durable engine state.

The runs table is the only cross-process coordination point: ownership,
heartbeat and status all live there and are changed with conditional UPDATEs.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class ProjectRow(Base):
    """Latest schema snapshot and refresh timestamps for a project."""

    __tablename__ = "extraction_projects"

    project_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    schema_snapshot: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    schema_fingerprint: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    last_extracted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_refreshed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class RunRow(Base):
    """One extraction or refresh run."""

    __tablename__ = "extraction_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    owner_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_heartbeat: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    current_stage: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    change_set: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    stages: Mapped[List["StageRow"]] = relationship(
        "StageRow",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="StageRow.stage_order",
    )

    def __repr__(self) -> str:
        return f"<RunRow(id={self.id!r}, project_id={self.project_id!r}, status={self.status!r})>"


class StageRow(Base):
    """One stage of a run. Created eagerly for the full pipeline."""

    __tablename__ = "extraction_stages"
    __table_args__ = (UniqueConstraint("run_id", "name", name="uq_stage_run_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("extraction_runs.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    stage_order: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    progress_current: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    warnings: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    run: Mapped[RunRow] = relationship("RunRow", back_populates="stages")


class RelationshipRow(Base):
    """A discovered or declared relationship between two columns."""

    __tablename__ = "schema_relationships"
    __table_args__ = (
        UniqueConstraint(
            "project_id",
            "source_table",
            "source_column",
            "target_table",
            "target_column",
            "inference_method",
            name="uq_schema_relationship",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    source_table: Mapped[str] = mapped_column(String(255), nullable=False)
    source_column: Mapped[str] = mapped_column(String(255), nullable=False)
    target_table: Mapped[str] = mapped_column(String(255), nullable=False)
    target_column: Mapped[str] = mapped_column(String(255), nullable=False)
    inference_method: Mapped[str] = mapped_column(String(30), nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    cardinality: Mapped[str] = mapped_column(String(10), nullable=False, default="unknown")
    validation_results: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    is_validated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    association: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class EntityRow(Base):
    """A discovered entity, keyed by its primary table."""

    __tablename__ = "ontology_entities"
    __table_args__ = (
        UniqueConstraint("project_id", "primary_table", name="uq_ontology_entity"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    primary_table: Mapped[str] = mapped_column(String(255), nullable=False)
    identifier: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    identifier_source: Mapped[str] = mapped_column(String(30), nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    aliases: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class ColumnFeatureRow(Base):
    """Role/purpose classification of one column."""

    __tablename__ = "column_features"
    __table_args__ = (
        UniqueConstraint("project_id", "table_name", "column_name", name="uq_column_feature"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    table_name: Mapped[str] = mapped_column(String(255), nullable=False)
    column_name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    purpose: Mapped[str] = mapped_column(String(20), nullable=False)
    fk_eligible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class CorrectionRow(Base):
    """A user or agent correction waiting to be applied by a refresh."""

    __tablename__ = "ontology_corrections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(30), nullable=False)
    table_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    column_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    applied_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class OntologyRow(Base):
    """The finalized ontology document, one per project."""

    __tablename__ = "ontologies"

    project_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    document: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    run_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
