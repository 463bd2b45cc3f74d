"""
Database configuration and session management.

Provides the SQLAlchemy engine, session factory and a dialect-aware upsert
helper used by every repository.

Development: SQLite (file-based, no external service)
Production: PostgreSQL
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from sqlalchemy import Table, create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from ontoforge.config import DatabaseConfig
from ontoforge.errors import ConfigurationError
from ontoforge.storage.tables import Base

logger = logging.getLogger(__name__)


class Database:
    """Owns the engine and hands out transactional sessions."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        # Run worker threads share pooled connections
        connect_args: Dict[str, Any] = {}
        if url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": 30}

        self.engine: Engine = create_engine(url, connect_args=connect_args, echo=echo)
        self._session_factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine,
        )

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> Database:
        return cls(config.url, echo=config.echo)

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    def create_tables(self) -> None:
        """Create all tables that do not exist yet."""
        Base.metadata.create_all(bind=self.engine)
        logger.debug(f"Ensured schema on {self.engine.url.render_as_string(hide_password=True)}")

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Session scope: commits on success, rolls back on any error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()


def upsert_statement(
    dialect_name: str,
    table: Table,
    values: Union[Dict[str, Any], List[Dict[str, Any]]],
    index_elements: Sequence[str],
    update_columns: Optional[Sequence[str]] = None,
):
    """
    Build an INSERT ... ON CONFLICT DO UPDATE statement.

    Args:
        dialect_name: "sqlite" or "postgresql"
        table: Target table
        values: Row or rows to insert
        index_elements: Columns of the unique constraint to conflict on
        update_columns: Columns overwritten on conflict (default: all non-key columns)

    Returns:
        Executable insert statement
    """
    if dialect_name == "sqlite":
        stmt = sqlite.insert(table).values(values)
    elif dialect_name == "postgresql":
        stmt = postgresql.insert(table).values(values)
    else:
        raise ConfigurationError(f"Upserts are not supported on dialect '{dialect_name}'")

    if update_columns is None:
        sample = values[0] if isinstance(values, list) else values
        update_columns = [c for c in sample if c not in index_elements]

    return stmt.on_conflict_do_update(
        index_elements=list(index_elements),
        set_={c: stmt.excluded[c] for c in update_columns},
    )
