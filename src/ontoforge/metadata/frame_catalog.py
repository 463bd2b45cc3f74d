"""
In-memory catalog over pandas DataFrames.

Used for offline extraction from sample files (Parquet via pyarrow, CSV via
pandas) and in tests. Constraints that files cannot express (primary keys,
declared foreign keys) come from an optional `schema.yaml` next to the samples:

    tables:
      users:
        primary_key: [user_id]
    foreign_keys:
      - {source: orders.user_id, target: users.user_id}
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq
import yaml

from ontoforge.metadata.catalog import SchemaCatalog
from ontoforge.models import (
    ColumnMetadata,
    DataType,
    ForeignKeyMetadata,
    JoinStatistics,
    TableMetadata,
)

logger = logging.getLogger(__name__)


def map_arrow_type(arrow_type) -> DataType:
    """Map Arrow type to DataType."""
    if pa.types.is_string(arrow_type) or pa.types.is_large_string(arrow_type):
        return DataType.STRING
    elif pa.types.is_int8(arrow_type) or pa.types.is_int16(arrow_type) or pa.types.is_int32(arrow_type):
        return DataType.INTEGER
    elif pa.types.is_int64(arrow_type):
        return DataType.BIGINT
    elif pa.types.is_decimal(arrow_type):
        return DataType.DECIMAL
    elif pa.types.is_float32(arrow_type):
        return DataType.FLOAT
    elif pa.types.is_float64(arrow_type):
        return DataType.DOUBLE
    elif pa.types.is_date(arrow_type):
        return DataType.DATE
    elif pa.types.is_timestamp(arrow_type):
        return DataType.TIMESTAMP
    elif pa.types.is_boolean(arrow_type):
        return DataType.BOOLEAN
    elif pa.types.is_binary(arrow_type):
        return DataType.BINARY
    else:
        return DataType.UNKNOWN


def map_pandas_type(dtype) -> DataType:
    """Map pandas dtype to DataType."""
    dtype_str = str(dtype).lower()

    if "int64" in dtype_str:
        return DataType.BIGINT
    elif "int" in dtype_str:
        return DataType.INTEGER
    elif "float" in dtype_str:
        return DataType.DOUBLE
    elif "datetime" in dtype_str:
        return DataType.TIMESTAMP
    elif "bool" in dtype_str:
        return DataType.BOOLEAN
    elif "object" in dtype_str or "str" in dtype_str:
        return DataType.STRING
    else:
        return DataType.UNKNOWN


class FrameCatalog(SchemaCatalog):
    """Catalog over a dict of DataFrames."""

    def __init__(
        self,
        frames: Dict[str, pd.DataFrame],
        primary_keys: Optional[Dict[str, List[str]]] = None,
        foreign_keys: Optional[List[ForeignKeyMetadata]] = None,
        column_types: Optional[Dict[str, Dict[str, DataType]]] = None,
    ):
        """
        Initialize the catalog.

        Args:
            frames: table name -> DataFrame
            primary_keys: table name -> primary key columns
            foreign_keys: Declared foreign keys
            column_types: Optional per-column type overrides (e.g. from Parquet schemas)
        """
        self.frames = {name: df for name, df in frames.items()}
        self.primary_keys = primary_keys or {}
        self.foreign_keys = list(foreign_keys or [])
        self.column_types = column_types or {}
        self._by_lower = {name.lower(): name for name in self.frames}

    @classmethod
    def from_directory(cls, sample_dir: Union[str, Path]) -> FrameCatalog:
        """
        Load every *.parquet and *.csv file in a directory as a table.

        Args:
            sample_dir: Directory of sample files, optionally with schema.yaml

        Returns:
            FrameCatalog
        """
        sample_dir = Path(sample_dir)
        frames: Dict[str, pd.DataFrame] = {}
        column_types: Dict[str, Dict[str, DataType]] = {}

        for file_path in sorted(sample_dir.glob("*.parquet")):
            table_name = file_path.stem
            pq_file = pq.ParquetFile(file_path)
            column_types[table_name] = {
                f.name: map_arrow_type(f.type) for f in pq_file.schema_arrow
            }
            frames[table_name] = pq_file.read().to_pandas()

        for file_path in sorted(sample_dir.glob("*.csv")):
            table_name = file_path.stem
            if table_name in frames:
                continue
            frames[table_name] = pd.read_csv(file_path)

        primary_keys: Dict[str, List[str]] = {}
        foreign_keys: List[ForeignKeyMetadata] = []
        schema_file = sample_dir / "schema.yaml"
        if schema_file.exists():
            with open(schema_file, "r") as f:
                data = yaml.safe_load(f) or {}
            for table_name, tdata in (data.get("tables") or {}).items():
                primary_keys[table_name] = list(tdata.get("primary_key") or [])
            for fk in data.get("foreign_keys") or []:
                foreign_keys.append(_parse_fk(fk))

        logger.info(f"Loaded {len(frames)} sample tables from {sample_dir}")
        return cls(frames, primary_keys, foreign_keys, column_types)

    def _frame(self, table_name: str) -> pd.DataFrame:
        name = self._by_lower.get(table_name.lower())
        if name is None:
            raise KeyError(f"Unknown table: {table_name}")
        return self.frames[name]

    def list_tables(self) -> List[TableMetadata]:
        tables = []
        for name, df in self.frames.items():
            pk_columns = self.primary_keys.get(name, [])
            overrides = self.column_types.get(name, {})
            columns = []
            for col_name in df.columns:
                series = df[col_name]
                has_nulls = bool(series.isna().any())
                columns.append(ColumnMetadata(
                    name=col_name,
                    data_type=overrides.get(col_name) or map_pandas_type(series.dtype),
                    nullable=has_nulls,
                    is_primary_key=col_name in pk_columns,
                    is_unique=(
                        pk_columns == [col_name]
                        or (not has_nulls and len(series) > 0 and bool(series.is_unique))
                    ),
                    raw_type=str(series.dtype),
                ))
            tables.append(TableMetadata(
                name=name,
                columns=columns,
                primary_key=list(pk_columns),
                row_count_estimate=len(df),
            ))
        return tables

    def list_foreign_keys(self) -> List[ForeignKeyMetadata]:
        return list(self.foreign_keys)

    def analyze_join(
        self,
        source_table: str,
        source_column: str,
        target_table: str,
        target_column: str,
    ) -> JoinStatistics:
        source = self._frame(source_table)[source_column]
        target = self._frame(target_table)[target_column]

        source_values = set(source.dropna().tolist())
        target_values = set(target.dropna().tolist())

        return JoinStatistics(
            source_distinct=len(source_values),
            target_distinct=len(target_values),
            forward_orphan_count=len(source_values - target_values),
            reverse_orphan_count=len(target_values - source_values),
            source_row_count=int(len(source)),
            source_null_count=int(source.isna().sum()),
            max_source_value=max(source_values) if source_values else None,
        )


def _parse_fk(data: Dict[str, Any]) -> ForeignKeyMetadata:
    source_table, source_column = str(data["source"]).split(".", 1)
    target_table, target_column = str(data["target"]).split(".", 1)
    return ForeignKeyMetadata(
        source_table=source_table,
        source_column=source_column,
        target_table=target_table,
        target_column=target_column,
        constraint_name=data.get("name"),
    )
