"""
Tests for the metadata module.

Tests type normalization, snapshot diffing, the sample-file catalog and the
SQLAlchemy reflection catalog (against a throwaway SQLite source database).
"""

import pandas as pd
import pytest
import yaml
from sqlalchemy import Column, ForeignKey, Integer, MetaData, String, Table, create_engine

from ontoforge.metadata import FrameCatalog, SQLAlchemyCatalog, diff_snapshots, normalize_type
from ontoforge.models import (
    ChangeType,
    ColumnMetadata,
    DataType,
    ForeignKeyMetadata,
    SchemaSnapshot,
    TableMetadata,
)


class TestNormalizeType:
    """Tests for source type normalization."""

    @pytest.mark.parametrize("raw,expected", [
        ("VARCHAR2(100)", DataType.STRING),
        ("character varying", DataType.STRING),
        ("NUMBER(10,0)", DataType.BIGINT),
        ("NUMBER(10)", DataType.BIGINT),
        ("NUMBER(12,2)", DataType.DECIMAL),
        ("NUMERIC", DataType.DECIMAL),
        ("INTEGER", DataType.INTEGER),
        ("bigint", DataType.BIGINT),
        ("TIMESTAMP(6) WITH TIME ZONE", DataType.TIMESTAMP),
        ("uniqueidentifier", DataType.UUID),
        ("JSONB", DataType.JSON),
        ("BOOLEAN", DataType.BOOLEAN),
    ])
    def test_known_types(self, raw, expected):
        assert normalize_type(raw) == expected

    def test_unknown_types(self):
        assert normalize_type("GEOMETRY") == DataType.UNKNOWN
        assert normalize_type("") == DataType.UNKNOWN


def make_snapshot(tables, foreign_keys=()):
    snapshot = SchemaSnapshot()
    for name, columns in tables.items():
        snapshot.add_table(TableMetadata(
            name=name,
            columns=[ColumnMetadata(name=c, data_type=t) for c, t in columns.items()],
        ))
    snapshot.foreign_keys = list(foreign_keys)
    return snapshot


class TestDiffSnapshots:
    """Tests for schema change detection."""

    def test_identical_snapshots(self):
        snapshot = make_snapshot({"users": {"user_id": DataType.BIGINT}})
        assert diff_snapshots(snapshot, make_snapshot({"users": {"user_id": DataType.BIGINT}})).is_empty

    def test_first_snapshot_adds_every_table(self):
        current = make_snapshot({"users": {"user_id": DataType.BIGINT}, "posts": {"post_id": DataType.BIGINT}})

        changes = diff_snapshots(None, current)

        assert [(c.change_type, c.table) for c in changes.changes] == [
            (ChangeType.TABLE_ADDED, "posts"),
            (ChangeType.TABLE_ADDED, "users"),
        ]

    def test_column_changes(self):
        previous = make_snapshot({
            "users": {"user_id": DataType.BIGINT, "nickname": DataType.STRING, "score": DataType.INTEGER},
        })
        current = make_snapshot({
            "users": {"user_id": DataType.BIGINT, "email": DataType.STRING, "score": DataType.DOUBLE},
        })

        changes = diff_snapshots(previous, current)

        summary = [(c.change_type, c.column) for c in changes.changes]
        assert summary == [
            (ChangeType.COLUMN_ADDED, "email"),
            (ChangeType.COLUMN_REMOVED, "nickname"),
            (ChangeType.COLUMN_TYPE_CHANGED, "score"),
        ]
        assert changes.changes[2].payload == {"from": "integer", "to": "double"}

    def test_foreign_key_changes(self):
        tables = {"users": {"user_id": DataType.BIGINT}, "posts": {"author_id": DataType.BIGINT}}
        fk = ForeignKeyMetadata("posts", "author_id", "users", "user_id")

        added = diff_snapshots(make_snapshot(tables), make_snapshot(tables, [fk]))
        removed = diff_snapshots(make_snapshot(tables, [fk]), make_snapshot(tables))

        assert added.change_types == {ChangeType.FK_ADDED}
        assert removed.change_types == {ChangeType.FK_REMOVED}
        assert added.changes[0].payload["target_table"] == "users"


class TestFrameCatalog:
    """Tests for the sample-file catalog."""

    @pytest.fixture
    def sample_dir(self, tmp_path):
        pd.DataFrame({
            "user_id": [1, 2, 3],
            "username": ["ada", "grace", "linus"],
        }).to_parquet(tmp_path / "users.parquet", index=False)
        pd.DataFrame({
            "order_id": [10, 11, 12, 13],
            "user_id": [1, 1, 2, 4],
            "amount": [9.5, 12.0, 3.25, 8.0],
        }).to_csv(tmp_path / "orders.csv", index=False)
        with open(tmp_path / "schema.yaml", "w") as f:
            yaml.safe_dump({
                "tables": {
                    "users": {"primary_key": ["user_id"]},
                    "orders": {"primary_key": ["order_id"]},
                },
                "foreign_keys": [
                    {"source": "orders.user_id", "target": "users.user_id", "name": "fk_orders_users"},
                ],
            }, f)
        return tmp_path

    def test_from_directory(self, sample_dir):
        catalog = FrameCatalog.from_directory(sample_dir)

        snapshot = catalog.snapshot()

        assert set(snapshot.tables) == {"users", "orders"}
        users = snapshot.get_table("users")
        assert users.primary_key == ["user_id"]
        assert users.get_column("user_id").data_type == DataType.BIGINT
        assert users.get_column("user_id").is_unique
        assert users.get_column("username").data_type == DataType.STRING
        assert snapshot.get_table("orders").get_column("amount").data_type == DataType.DOUBLE
        assert snapshot.get_table("orders").row_count_estimate == 4

        assert [fk.key for fk in snapshot.foreign_keys] == ["orders.user_id->users.user_id"]
        assert snapshot.foreign_keys[0].constraint_name == "fk_orders_users"

    def test_analyze_join(self, sample_dir):
        catalog = FrameCatalog.from_directory(sample_dir)

        stats = catalog.analyze_join("ORDERS", "user_id", "users", "user_id")

        assert stats.source_distinct == 3
        assert stats.target_distinct == 3
        assert stats.forward_orphan_count == 1
        assert stats.reverse_orphan_count == 1
        assert stats.source_row_count == 4
        assert stats.max_source_value == 4

    def test_unknown_table(self, sample_dir):
        catalog = FrameCatalog.from_directory(sample_dir)

        with pytest.raises(KeyError):
            catalog.analyze_join("missing", "id", "users", "user_id")


class TestSQLAlchemyCatalog:
    """Tests for reflection-based catalogs."""

    @pytest.fixture
    def source_engine(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'source.db'}")
        metadata = MetaData()
        users = Table(
            "users", metadata,
            Column("user_id", Integer, primary_key=True),
            Column("email", String(120), unique=True, nullable=False),
        )
        posts = Table(
            "posts", metadata,
            Column("post_id", Integer, primary_key=True),
            Column("author_id", Integer, ForeignKey("users.user_id")),
            Column("editor_id", Integer),
            Column("title", String(200)),
        )
        metadata.create_all(engine)
        with engine.begin() as conn:
            conn.execute(users.insert(), [
                {"user_id": i, "email": f"user{i}@example.com"} for i in range(1, 6)
            ])
            conn.execute(posts.insert(), [
                {"post_id": 1, "author_id": 1, "editor_id": 2, "title": "a"},
                {"post_id": 2, "author_id": 1, "editor_id": None, "title": "b"},
                {"post_id": 3, "author_id": 3, "editor_id": 9, "title": "c"},
            ])
        yield engine
        engine.dispose()

    def test_list_tables(self, source_engine):
        catalog = SQLAlchemyCatalog(engine=source_engine)

        tables = {t.name: t for t in catalog.list_tables()}

        assert set(tables) == {"posts", "users"}
        users = tables["users"]
        assert users.primary_key == ["user_id"]
        assert users.get_column("user_id").data_type == DataType.INTEGER
        assert users.get_column("email").data_type == DataType.STRING
        assert users.get_column("email").is_unique
        assert not users.get_column("email").nullable

    def test_list_foreign_keys(self, source_engine):
        catalog = SQLAlchemyCatalog(engine=source_engine)

        foreign_keys = catalog.list_foreign_keys()

        assert [fk.key for fk in foreign_keys] == ["posts.author_id->users.user_id"]

    def test_include_tables(self, source_engine):
        catalog = SQLAlchemyCatalog(engine=source_engine, include_tables=["USERS"])

        assert [t.name for t in catalog.list_tables()] == ["users"]
        assert catalog.list_foreign_keys() == []

    def test_analyze_join(self, source_engine):
        catalog = SQLAlchemyCatalog(engine=source_engine)
        catalog.list_tables()

        stats = catalog.analyze_join("posts", "editor_id", "users", "user_id")

        assert stats.source_distinct == 2
        assert stats.target_distinct == 5
        assert stats.forward_orphan_count == 1
        assert stats.reverse_orphan_count == 4
        assert stats.source_row_count == 3
        assert stats.source_null_count == 1
        assert stats.max_source_value == 9
        assert stats.match_rate == pytest.approx(0.5)

    def test_requires_url_or_engine(self):
        with pytest.raises(ValueError):
            SQLAlchemyCatalog()
