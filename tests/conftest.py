"""
Shared fixtures: a file-backed SQLite state database, an in-memory content
platform catalog, and a scripted LLM.
"""

import threading
from typing import Callable, Dict, List, Optional

import pandas as pd
import pytest
from sqlalchemy import event

from ontoforge.config import EngineConfig, RetryConfig
from ontoforge.metadata import FrameCatalog
from ontoforge.storage import Database

PROJECT = "content"


def content_frames() -> Dict[str, pd.DataFrame]:
    """
    Small content platform.

    content_posts.author_id references users; week_number (1..10) overlaps the
    keys of every other table without referencing any of them.
    """
    return {
        "users": pd.DataFrame({
            "user_id": list(range(1, 31)),
            "username": [f"user{i}" for i in range(1, 31)],
        }),
        "categories": pd.DataFrame({
            "category_id": list(range(1, 26)),
            "category_name": [f"category {i}" for i in range(1, 26)],
        }),
        "tags": pd.DataFrame({
            "tag_id": list(range(1, 26)),
            "label": [f"tag{i}" for i in range(1, 26)],
        }),
        "regions": pd.DataFrame({
            "region_id": list(range(1, 26)),
            "region_name": [f"region {i}" for i in range(1, 26)],
        }),
        "content_posts": pd.DataFrame({
            "post_id": list(range(1, 41)),
            "author_id": [(i % 30) + 1 for i in range(40)],
            "week_number": [(i % 10) + 1 for i in range(40)],
            "title": [f"Post {i}" for i in range(1, 41)],
        }),
    }


CONTENT_PRIMARY_KEYS = {
    "users": ["user_id"],
    "categories": ["category_id"],
    "tags": ["tag_id"],
    "regions": ["region_id"],
    "content_posts": ["post_id"],
}


class CountingCatalog(FrameCatalog):
    """FrameCatalog recording every call."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls: List[str] = []

    def list_tables(self):
        self.calls.append("list_tables")
        return super().list_tables()

    def list_foreign_keys(self):
        self.calls.append("list_foreign_keys")
        return super().list_foreign_keys()

    def analyze_join(self, source_table, source_column, target_table, target_column):
        self.calls.append("analyze_join")
        return super().analyze_join(source_table, source_column, target_table, target_column)


class FakeLLM:
    """Scripted LLM client: a fixed response or a function of the prompt."""

    def __init__(self, response: Optional[str] = None, responder: Optional[Callable[[str], str]] = None):
        self.response = response
        self.responder = responder
        self.prompts: List[str] = []
        self._lock = threading.Lock()

    @property
    def calls(self) -> int:
        return len(self.prompts)

    def generate(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        with self._lock:
            self.prompts.append(prompt)
        if self.responder is not None:
            return self.responder(prompt)
        return self.response or ""


class WriteCounter:
    """Counts INSERT/UPDATE/DELETE statements executed on an engine."""

    def __init__(self, engine):
        self.engine = engine
        self.statements: List[str] = []
        event.listen(engine, "before_cursor_execute", self._on_execute)

    def _on_execute(self, conn, cursor, statement, parameters, context, executemany):
        verb = statement.lstrip().split(None, 1)[0].upper()
        if verb in ("INSERT", "UPDATE", "DELETE"):
            self.statements.append(statement)

    @property
    def count(self) -> int:
        return len(self.statements)

    def close(self):
        event.remove(self.engine, "before_cursor_execute", self._on_execute)


@pytest.fixture
def db(tmp_path):
    """Fresh state database."""
    database = Database(f"sqlite:///{tmp_path / 'state.db'}")
    database.create_tables()
    yield database
    database.dispose()


@pytest.fixture
def content_catalog():
    return CountingCatalog(content_frames(), primary_keys=CONTENT_PRIMARY_KEYS)


@pytest.fixture
def fast_config():
    """Engine config with short retry delays."""
    config = EngineConfig()
    config.retry = RetryConfig(max_retries=3, initial_delay=0.01, max_delay=0.05, multiplier=2.0, jitter=0.0)
    return config


@pytest.fixture
def write_counter(db):
    counter = WriteCounter(db.engine)
    yield counter
    counter.close()
