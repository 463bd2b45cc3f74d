"""
SQL catalog backed by SQLAlchemy reflection.

Extracts table metadata, column definitions and PK/FK/unique constraints with
the SQLAlchemy inspector, and computes join statistics with a single
aggregate query per column pair.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Set

from sqlalchemy import column, create_engine, distinct, func, inspect, select, table
from sqlalchemy.engine import Engine
from sqlalchemy.exc import CompileError

from ontoforge.metadata.catalog import SchemaCatalog, normalize_type
from ontoforge.models import (
    ColumnMetadata,
    ForeignKeyMetadata,
    JoinStatistics,
    TableMetadata,
)

logger = logging.getLogger(__name__)


class SQLAlchemyCatalog(SchemaCatalog):
    """
    Catalog for any database SQLAlchemy can reflect.

    Uses the inspector for:
    - table and column listing
    - primary key and unique constraints (plus unique indexes)
    - declared foreign keys
    """

    def __init__(
        self,
        url: Optional[str] = None,
        schema: Optional[str] = None,
        engine: Optional[Engine] = None,
        include_tables: Optional[List[str]] = None,
    ):
        """
        Initialize the catalog.

        Args:
            url: SQLAlchemy URL of the datasource (ignored when engine is given)
            schema: Schema/owner to read, default schema when omitted
            engine: Existing engine to reuse
            include_tables: Optional allow-list of table names
        """
        if engine is None and url is None:
            raise ValueError("Either url or engine is required")
        self.engine = engine or create_engine(url)
        self._owns_engine = engine is None
        self.schema = schema
        self.include_tables = {t.lower() for t in include_tables} if include_tables else None
        self._table_names: Dict[str, str] = {}

    def close(self) -> None:
        if self._owns_engine:
            self.engine.dispose()

    def _type_name(self, sa_type) -> str:
        try:
            return sa_type.compile(dialect=self.engine.dialect)
        except CompileError:
            return type(sa_type).__name__.upper()

    def list_tables(self) -> List[TableMetadata]:
        inspector = inspect(self.engine)
        tables = []

        for table_name in sorted(inspector.get_table_names(schema=self.schema)):
            if self.include_tables is not None and table_name.lower() not in self.include_tables:
                continue

            pk = inspector.get_pk_constraint(table_name, schema=self.schema) or {}
            pk_columns = [c for c in pk.get("constrained_columns") or []]

            unique_columns: Set[str] = set()
            for constraint in inspector.get_unique_constraints(table_name, schema=self.schema):
                if len(constraint["column_names"]) == 1:
                    unique_columns.add(constraint["column_names"][0])
            for index in inspector.get_indexes(table_name, schema=self.schema):
                if index.get("unique") and len(index["column_names"]) == 1:
                    unique_columns.add(index["column_names"][0])

            columns = []
            for col in inspector.get_columns(table_name, schema=self.schema):
                raw_type = self._type_name(col["type"])
                columns.append(ColumnMetadata(
                    name=col["name"],
                    data_type=normalize_type(raw_type),
                    nullable=bool(col.get("nullable", True)),
                    is_primary_key=col["name"] in pk_columns,
                    is_unique=col["name"] in unique_columns or pk_columns == [col["name"]],
                    raw_type=raw_type,
                    comment=col.get("comment"),
                ))

            self._table_names[table_name.lower()] = table_name
            tables.append(TableMetadata(
                name=table_name,
                schema=self.schema,
                columns=columns,
                primary_key=pk_columns,
            ))

        logger.info(f"Reflected {len(tables)} tables from {self.engine.dialect.name}")
        return tables

    def list_foreign_keys(self) -> List[ForeignKeyMetadata]:
        inspector = inspect(self.engine)
        foreign_keys = []

        for table_name in sorted(inspector.get_table_names(schema=self.schema)):
            if self.include_tables is not None and table_name.lower() not in self.include_tables:
                continue
            for fk in inspector.get_foreign_keys(table_name, schema=self.schema):
                constrained = fk.get("constrained_columns") or []
                referred = fk.get("referred_columns") or []
                # Composite keys are outside the single-column relationship model
                if len(constrained) != 1 or len(referred) != 1:
                    logger.debug(f"Skipping composite foreign key on {table_name}: {fk.get('name')}")
                    continue
                foreign_keys.append(ForeignKeyMetadata(
                    source_table=table_name,
                    source_column=constrained[0],
                    target_table=fk["referred_table"],
                    target_column=referred[0],
                    constraint_name=fk.get("name"),
                ))

        return foreign_keys

    def _resolve(self, name: str) -> str:
        return self._table_names.get(name.lower(), name)

    def analyze_join(
        self,
        source_table: str,
        source_column: str,
        target_table: str,
        target_column: str,
    ) -> JoinStatistics:
        src = table(self._resolve(source_table), column(source_column), schema=self.schema).alias("src")
        tgt = table(self._resolve(target_table), column(target_column), schema=self.schema).alias("tgt")
        sc = src.c[source_column]
        tc = tgt.c[target_column]

        source_distinct = select(func.count(distinct(sc))).select_from(src).scalar_subquery()
        source_rows = select(func.count()).select_from(src).scalar_subquery()
        source_nulls = select(func.count()).select_from(src).where(sc.is_(None)).scalar_subquery()
        source_max = select(func.max(sc)).select_from(src).scalar_subquery()
        target_distinct = select(func.count(distinct(tc))).select_from(tgt).scalar_subquery()
        forward_orphans = (
            select(func.count(distinct(sc)))
            .select_from(src.outerjoin(tgt, sc == tc))
            .where(sc.is_not(None), tc.is_(None))
            .scalar_subquery()
        )
        reverse_orphans = (
            select(func.count(distinct(tc)))
            .select_from(tgt.outerjoin(src, tc == sc))
            .where(tc.is_not(None), sc.is_(None))
            .scalar_subquery()
        )

        query = select(
            source_distinct.label("source_distinct"),
            target_distinct.label("target_distinct"),
            forward_orphans.label("forward_orphans"),
            reverse_orphans.label("reverse_orphans"),
            source_rows.label("source_rows"),
            source_nulls.label("source_nulls"),
            source_max.label("source_max"),
        )

        with self.engine.connect() as conn:
            row = conn.execute(query).one()

        return JoinStatistics(
            source_distinct=int(row.source_distinct or 0),
            target_distinct=int(row.target_distinct or 0),
            forward_orphan_count=int(row.forward_orphans or 0),
            reverse_orphan_count=int(row.reverse_orphans or 0),
            source_row_count=int(row.source_rows or 0),
            source_null_count=int(row.source_nulls or 0),
            max_source_value=row.source_max,
        )
