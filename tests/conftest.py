"""Shared test fixtures: a template store copied per test for isolation."""

import shutil
import tempfile
from pathlib import Path

import pytest

from taskgraph.config import Config
from taskgraph.store import SqliteStore, get_connection

TEMPLATE_PLAN_ID = "00000000-0000-4000-8000-000000000001"


@pytest.fixture(scope="session")
def _db_template_path() -> Path:
    """Create a single template DB with full schema + an active plan.

    Copying this file is much cheaper than building the schema and
    indexes again in every test function.
    """
    fd, path_str = tempfile.mkstemp(suffix=".db")
    path = Path(path_str)
    try:
        conn = get_connection(path)
        conn.execute(
            "INSERT INTO plans (plan_id, title, status) VALUES (?, ?, ?)",
            (TEMPLATE_PLAN_ID, "testplan", "active"),
        )
        conn.commit()
        conn.close()
        yield path
    finally:
        path.unlink(missing_ok=True)


@pytest.fixture()
def store(tmp_path: Path, _db_template_path: Path) -> SqliteStore:
    """Per-test store with schema + testplan pre-loaded."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    s = SqliteStore.open(db_path)
    try:
        yield s
    finally:
        s.close()


@pytest.fixture()
def plan_id() -> str:
    return TEMPLATE_PLAN_ID


@pytest.fixture()
def config(tmp_path: Path) -> Config:
    return Config(project_root=tmp_path, db_path=tmp_path / "test.db")


@pytest.fixture(autouse=True)
def _clear_db_path_env(monkeypatch):
    monkeypatch.delenv("TASKGRAPH_DB_PATH", raising=False)
