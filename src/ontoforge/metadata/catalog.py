"""
Schema catalog interface.

A catalog lists a datasource's tables and declared foreign keys and answers
join-statistics questions about column pairs. Concrete catalogs:
- SQLAlchemyCatalog: any database SQLAlchemy can reflect
- FrameCatalog: pandas DataFrames or a directory of Parquet/CSV samples
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import List

from ontoforge.models import (
    DataType,
    ForeignKeyMetadata,
    JoinStatistics,
    SchemaSnapshot,
    TableMetadata,
)

logger = logging.getLogger(__name__)


# Source type name -> normalized type. Covers Oracle, PostgreSQL, MSSQL and SQLite spellings.
SQL_TYPE_MAP = {
    "NUMBER": DataType.DECIMAL,
    "NUMERIC": DataType.DECIMAL,
    "DECIMAL": DataType.DECIMAL,
    "MONEY": DataType.DECIMAL,
    "INTEGER": DataType.INTEGER,
    "INT": DataType.INTEGER,
    "INT4": DataType.INTEGER,
    "SMALLINT": DataType.INTEGER,
    "INT2": DataType.INTEGER,
    "TINYINT": DataType.INTEGER,
    "SERIAL": DataType.INTEGER,
    "BIGINT": DataType.BIGINT,
    "INT8": DataType.BIGINT,
    "BIGSERIAL": DataType.BIGINT,
    "FLOAT": DataType.FLOAT,
    "REAL": DataType.FLOAT,
    "BINARY_FLOAT": DataType.FLOAT,
    "DOUBLE": DataType.DOUBLE,
    "DOUBLE PRECISION": DataType.DOUBLE,
    "BINARY_DOUBLE": DataType.DOUBLE,
    "FLOAT8": DataType.DOUBLE,
    "VARCHAR": DataType.STRING,
    "VARCHAR2": DataType.STRING,
    "NVARCHAR": DataType.STRING,
    "NVARCHAR2": DataType.STRING,
    "CHAR": DataType.STRING,
    "NCHAR": DataType.STRING,
    "CHARACTER": DataType.STRING,
    "CHARACTER VARYING": DataType.STRING,
    "TEXT": DataType.STRING,
    "NTEXT": DataType.STRING,
    "CLOB": DataType.STRING,
    "NCLOB": DataType.STRING,
    "CITEXT": DataType.STRING,
    "LONG": DataType.STRING,
    "DATE": DataType.DATE,
    "DATETIME": DataType.TIMESTAMP,
    "DATETIME2": DataType.TIMESTAMP,
    "SMALLDATETIME": DataType.TIMESTAMP,
    "DATETIMEOFFSET": DataType.TIMESTAMP,
    "TIMESTAMP": DataType.TIMESTAMP,
    "TIMESTAMPTZ": DataType.TIMESTAMP,
    "TIMESTAMP WITH TIME ZONE": DataType.TIMESTAMP,
    "TIMESTAMP WITHOUT TIME ZONE": DataType.TIMESTAMP,
    "TIMESTAMP WITH LOCAL TIME ZONE": DataType.TIMESTAMP,
    "BOOLEAN": DataType.BOOLEAN,
    "BOOL": DataType.BOOLEAN,
    "BIT": DataType.BOOLEAN,
    "RAW": DataType.BINARY,
    "BLOB": DataType.BINARY,
    "BYTEA": DataType.BINARY,
    "VARBINARY": DataType.BINARY,
    "LONG RAW": DataType.BINARY,
    "UUID": DataType.UUID,
    "UNIQUEIDENTIFIER": DataType.UUID,
    "JSON": DataType.JSON,
    "JSONB": DataType.JSON,
}

_TYPE_ARGS = re.compile(r"\(.*?\)")


def normalize_type(raw_type: str) -> DataType:
    """
    Map a source type name to a DataType.

    Args:
        raw_type: Type as reported by the catalog, e.g. "VARCHAR(255)" or "NUMBER(10,0)"

    Returns:
        Normalized DataType (UNKNOWN when unrecognized)
    """
    if not raw_type:
        return DataType.UNKNOWN

    name = _TYPE_ARGS.sub("", raw_type.upper()).strip()
    if name in SQL_TYPE_MAP:
        data_type = SQL_TYPE_MAP[name]
        # NUMBER(10,0) and NUMERIC(p, 0) hold integers
        if data_type == DataType.DECIMAL:
            args = _TYPE_ARGS.search(raw_type)
            if args and re.fullmatch(r"\(\s*\d+\s*(,\s*0\s*)?\)", args.group(0)):
                return DataType.BIGINT
        return data_type

    for prefix, data_type in (
        ("TIMESTAMP", DataType.TIMESTAMP),
        ("INTERVAL", DataType.UNKNOWN),
        ("VARCHAR", DataType.STRING),
        ("CHAR", DataType.STRING),
    ):
        if name.startswith(prefix):
            return data_type

    logger.debug(f"Unrecognized source type: {raw_type}")
    return DataType.UNKNOWN


class SchemaCatalog(ABC):
    """Read-only view of one datasource."""

    @abstractmethod
    def list_tables(self) -> List[TableMetadata]:
        """Return every table with columns, primary key and unique flags."""

    @abstractmethod
    def list_foreign_keys(self) -> List[ForeignKeyMetadata]:
        """Return single-column foreign keys declared in the catalog."""

    @abstractmethod
    def analyze_join(
        self,
        source_table: str,
        source_column: str,
        target_table: str,
        target_column: str,
    ) -> JoinStatistics:
        """
        Compute bidirectional join statistics for source -> target.

        Counts are over distinct non-null values.
        """

    def snapshot(self) -> SchemaSnapshot:
        """Capture tables and foreign keys as a SchemaSnapshot."""
        snapshot = SchemaSnapshot()
        for table in self.list_tables():
            snapshot.add_table(table)
        snapshot.foreign_keys = self.list_foreign_keys()
        logger.info(
            f"Catalog snapshot: {len(snapshot.tables)} tables, "
            f"{len(snapshot.foreign_keys)} declared foreign keys"
        )
        return snapshot

    def close(self) -> None:
        """Release any held connections."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
