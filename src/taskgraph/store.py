"""Persistence collaborators for the task graph.

The engine talks to storage only through the narrow ``Store`` interface:
``select``/``count``/``insert``/``update``/``raw_query``/``commit``. Two
implementations ship: ``SqliteStore`` (a local SQLite file) and
``DoltStore`` (a Dolt repo driven through the ``dolt`` CLI). Neither allows
hard deletes on the four protected tables; logical deletion is status-based.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import re
import shutil
import sqlite3
import subprocess
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path
from typing import Any, Protocol

from taskgraph.errors import StoreFailed, ValidationFailed

log = logging.getLogger(__name__)

PROTECTED_TABLES = {"plans", "tasks", "edges", "events"}
_DESTRUCTIVE_PATTERN = re.compile(
    r"\b(DELETE\s+FROM|DROP\s+TABLE|TRUNCATE(?:\s+TABLE)?)\s+[`\"]?(\w+)[`\"]?",
    re.IGNORECASE,
)
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

Row = dict[str, Any]
Where = Mapping[str, Any]


class Store(Protocol):
    def select(
        self,
        table: str,
        where: Where | None = None,
        *,
        columns: Sequence[str] | None = None,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[Row]: ...

    def count(self, table: str, where: Where | None = None) -> int: ...

    def insert(self, table: str, row: Mapping[str, Any]) -> None: ...

    def update(self, table: str, patch: Mapping[str, Any], where: Where) -> int: ...

    def raw_query(self, sql: str, params: Sequence[Any] = ()) -> list[Row]: ...

    def commit(self, message: str) -> None: ...


def guard_destructive(sql: str) -> None:
    """Reject hard deletes against protected tables."""
    match = _DESTRUCTIVE_PATTERN.search(sql)
    if match and match.group(2).lower() in PROTECTED_TABLES:
        raise StoreFailed(
            f"Hard deletes are forbidden on table '{match.group(2)}'. "
            "Use 'tg cancel' for soft-delete."
        )


def _ident(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValidationFailed(f"Invalid SQL identifier '{name}'.")
    return name


def build_where(where: Where | None) -> tuple[str, list[Any]]:
    """Render a ``{column: value}`` filter as ``col = ? AND ...``.

    ``None`` renders as ``IS NULL``; lists, tuples and sets render as ``IN``.
    """
    if not where:
        return "", []
    parts: list[str] = []
    params: list[Any] = []
    for column, value in where.items():
        col = _ident(column)
        if value is None:
            parts.append(f"{col} IS NULL")
        elif isinstance(value, list | tuple | set | frozenset):
            values = list(value)
            if not values:
                parts.append("0 = 1")
                continue
            placeholders = ", ".join("?" for _ in values)
            parts.append(f"{col} IN ({placeholders})")
            params.extend(values)
        else:
            parts.append(f"{col} = ?")
            params.append(value)
    return " WHERE " + " AND ".join(parts), params


def _select_sql(
    table: str,
    where: Where | None,
    columns: Sequence[str] | None,
    order_by: str | None,
    limit: int | None,
) -> tuple[str, list[Any]]:
    cols = ", ".join(_ident(c) for c in columns) if columns else "*"
    clause, params = build_where(where)
    sql = f"SELECT {cols} FROM {_ident(table)}{clause}"
    if order_by:
        sql += f" ORDER BY {order_by}"
    if limit is not None:
        sql += f" LIMIT {int(limit)}"
    return sql, params


# -- SQLite --

SCHEMA_VERSION = 1

SCHEMA = """\
CREATE TABLE IF NOT EXISTS plans (
    plan_id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    intent TEXT,
    status TEXT NOT NULL DEFAULT 'draft',
    source_path TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS tasks (
    task_id TEXT PRIMARY KEY,
    hash_id TEXT UNIQUE,
    plan_id TEXT NOT NULL REFERENCES plans(plan_id),
    external_key TEXT,
    title TEXT NOT NULL,
    intent TEXT,
    scope_in TEXT,
    scope_out TEXT,
    acceptance TEXT,
    docs TEXT,
    skills TEXT,
    change_type TEXT,
    suggested_changes TEXT,
    agent TEXT,
    status TEXT NOT NULL DEFAULT 'todo',
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS edges (
    from_task_id TEXT NOT NULL REFERENCES tasks(task_id),
    to_task_id TEXT NOT NULL REFERENCES tasks(task_id),
    type TEXT NOT NULL DEFAULT 'blocks',
    reason TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    PRIMARY KEY (from_task_id, to_task_id, type)
);

CREATE TABLE IF NOT EXISTS events (
    event_id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(task_id),
    kind TEXT NOT NULL,
    body TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS gates (
    gate_id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(task_id),
    name TEXT NOT NULL,
    gate_type TEXT NOT NULL DEFAULT 'human',
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    resolved_at TEXT
);
"""


def _create_indexes(conn: sqlite3.Connection) -> None:
    """Create non-PK indexes for common query patterns. Idempotent."""
    conn.executescript("""
        CREATE INDEX IF NOT EXISTS idx_tasks_plan_id ON tasks(plan_id);
        CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
        CREATE INDEX IF NOT EXISTS idx_tasks_external_key ON tasks(plan_id, external_key);
        CREATE INDEX IF NOT EXISTS idx_edges_to ON edges(to_task_id, type);
        CREATE INDEX IF NOT EXISTS idx_events_task ON events(task_id, kind, created_at);
        CREATE INDEX IF NOT EXISTS idx_gates_task ON gates(task_id, status);
    """)


def get_connection(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=10000")
    conn.executescript(SCHEMA)

    current_version = conn.execute("PRAGMA user_version").fetchone()[0]
    if current_version < SCHEMA_VERSION:
        _create_indexes(conn)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        conn.commit()
    return conn


class SqliteStore:
    """``Store`` backed by a local SQLite database."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    @classmethod
    def open(cls, db_path: Path) -> SqliteStore:
        return cls(get_connection(db_path))

    def close(self) -> None:
        self.conn.close()

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        guard_destructive(sql)
        log.debug("sql: %s %s", sql, list(params))
        try:
            return self.conn.execute(sql, list(params))
        except sqlite3.Error as exc:
            raise StoreFailed(f"SQLite query failed: {exc}", cause=exc) from exc

    def select(self, table, where=None, *, columns=None, order_by=None, limit=None):
        sql, params = _select_sql(table, where, columns, order_by, limit)
        return [dict(row) for row in self._execute(sql, params).fetchall()]

    def count(self, table, where=None):
        clause, params = build_where(where)
        row = self._execute(f"SELECT COUNT(*) AS cnt FROM {_ident(table)}{clause}", params)
        return row.fetchone()["cnt"]

    def insert(self, table, row):
        cols = ", ".join(_ident(c) for c in row)
        placeholders = ", ".join("?" for _ in row)
        self._execute(
            f"INSERT INTO {_ident(table)} ({cols}) VALUES ({placeholders})", list(row.values())
        )

    def update(self, table, patch, where):
        if not where:
            raise ValidationFailed("update() requires a filter.")
        set_parts = ", ".join(f"{_ident(c)} = ?" for c in patch)
        clause, params = build_where(where)
        cursor = self._execute(
            f"UPDATE {_ident(table)} SET {set_parts}{clause}", [*patch.values(), *params]
        )
        return cursor.rowcount

    def raw_query(self, sql, params=()):
        cursor = self._execute(sql, params)
        if cursor.description is None:
            return []
        return [dict(row) for row in cursor.fetchall()]

    def commit(self, message):
        log.debug("commit: %s", message)
        try:
            self.conn.commit()
        except sqlite3.Error as exc:
            raise StoreFailed(f"Commit failed: {message}", cause=exc) from exc


# -- Dolt --

DOLT_SCHEMA = """\
CREATE TABLE IF NOT EXISTS plans (
    plan_id VARCHAR(36) PRIMARY KEY,
    title VARCHAR(255) NOT NULL,
    intent TEXT,
    status VARCHAR(16) NOT NULL DEFAULT 'draft',
    source_path VARCHAR(512),
    created_at VARCHAR(32) NOT NULL,
    updated_at VARCHAR(32) NOT NULL
);
CREATE TABLE IF NOT EXISTS tasks (
    task_id VARCHAR(36) PRIMARY KEY,
    hash_id VARCHAR(16) UNIQUE,
    plan_id VARCHAR(36) NOT NULL,
    external_key VARCHAR(160),
    title VARCHAR(255) NOT NULL,
    intent TEXT,
    scope_in TEXT,
    scope_out TEXT,
    acceptance TEXT,
    docs TEXT,
    skills TEXT,
    change_type VARCHAR(16),
    suggested_changes TEXT,
    agent VARCHAR(64),
    status VARCHAR(16) NOT NULL DEFAULT 'todo',
    created_at VARCHAR(32) NOT NULL,
    updated_at VARCHAR(32) NOT NULL
);
CREATE TABLE IF NOT EXISTS edges (
    from_task_id VARCHAR(36) NOT NULL,
    to_task_id VARCHAR(36) NOT NULL,
    type VARCHAR(16) NOT NULL DEFAULT 'blocks',
    reason TEXT,
    created_at VARCHAR(32) NOT NULL,
    PRIMARY KEY (from_task_id, to_task_id, type)
);
CREATE TABLE IF NOT EXISTS events (
    event_id VARCHAR(36) PRIMARY KEY,
    task_id VARCHAR(36) NOT NULL,
    kind VARCHAR(32) NOT NULL,
    body TEXT NOT NULL,
    created_at VARCHAR(32) NOT NULL
);
CREATE TABLE IF NOT EXISTS gates (
    gate_id VARCHAR(36) PRIMARY KEY,
    task_id VARCHAR(36) NOT NULL,
    name VARCHAR(255) NOT NULL,
    gate_type VARCHAR(16) NOT NULL DEFAULT 'human',
    status VARCHAR(16) NOT NULL DEFAULT 'pending',
    created_at VARCHAR(32) NOT NULL,
    resolved_at VARCHAR(32)
);
"""


def sql_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "''").replace("\0", "")


def sql_literal(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int | float):
        return str(value)
    return f"'{sql_escape(str(value))}'"


def render_params(sql: str, params: Sequence[Any]) -> str:
    """Inline ``?`` placeholders as escaped literals (the dolt CLI has no binding)."""
    pieces = sql.split("?")
    if len(pieces) - 1 != len(params):
        raise ValidationFailed(
            f"Expected {len(pieces) - 1} parameter(s), got {len(params)}: {sql}"
        )
    out = [pieces[0]]
    for value, piece in zip(params, pieces[1:], strict=True):
        out.append(sql_literal(value))
        out.append(piece)
    return "".join(out)


class DoltStore:
    """``Store`` backed by a Dolt repository, driven through the ``dolt`` CLI."""

    def __init__(self, repo_path: Path, *, auto_commit: bool = True, dolt_bin: str | None = None):
        self.repo_path = Path(repo_path)
        self.auto_commit = auto_commit
        self.dolt_bin = dolt_bin or os.environ.get("DOLT_PATH") or "dolt"

    def _run(self, args: list[str]) -> str:
        env = {**os.environ, "DOLT_READ_ONLY": "false"}
        try:
            proc = subprocess.run(
                [self.dolt_bin, "--data-dir", str(self.repo_path), *args],
                cwd=str(self.repo_path),
                env=env,
                check=True,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as exc:
            raise StoreFailed(f"dolt executable '{self.dolt_bin}' not found.", cause=exc) from exc
        except subprocess.CalledProcessError as exc:
            raise StoreFailed(
                f"dolt {args[0]} failed: {exc.stderr.strip()}", cause=exc
            ) from None
        return proc.stdout

    def _sql(self, sql: str) -> list[Row]:
        guard_destructive(sql)
        log.debug("dolt sql: %s", sql)
        out = self._run(["sql", "-q", sql, "-r", "json"]).strip()
        if not out:
            return []
        try:
            parsed = json.loads(out)
        except json.JSONDecodeError as exc:
            raise StoreFailed(f"Failed to parse dolt output: {out[:200]}", cause=exc) from exc
        return parsed.get("rows", []) if isinstance(parsed, dict) else []

    def init_repo(self) -> None:
        self.repo_path.mkdir(parents=True, exist_ok=True)
        if not (self.repo_path / ".dolt").exists():
            self._run(["init"])
        for statement in DOLT_SCHEMA.split(";"):
            if statement.strip():
                self._sql(statement.strip())
        self.commit("taskgraph: initialize schema")

    def select(self, table, where=None, *, columns=None, order_by=None, limit=None):
        sql, params = _select_sql(table, where, columns, order_by, limit)
        return self._sql(render_params(sql, params))

    def count(self, table, where=None):
        clause, params = build_where(where)
        sql = f"SELECT COUNT(*) AS cnt FROM {_ident(table)}{clause}"
        rows = self._sql(render_params(sql, params))
        return int(rows[0]["cnt"]) if rows else 0

    def insert(self, table, row):
        cols = ", ".join(_ident(c) for c in row)
        placeholders = ", ".join("?" for _ in row)
        self._sql(
            render_params(
                f"INSERT INTO {_ident(table)} ({cols}) VALUES ({placeholders})", list(row.values())
            )
        )

    def update(self, table, patch, where):
        if not where:
            raise ValidationFailed("update() requires a filter.")
        matched = self.count(table, where)
        if matched == 0:
            return 0
        set_parts = ", ".join(f"{_ident(c)} = ?" for c in patch)
        clause, params = build_where(where)
        sql = f"UPDATE {_ident(table)} SET {set_parts}{clause}"
        self._sql(render_params(sql, [*patch.values(), *params]))
        return matched

    def raw_query(self, sql, params=()):
        return self._sql(render_params(sql, params))

    def commit(self, message):
        if not self.auto_commit:
            log.debug("auto_commit disabled, skipping dolt commit: %s", message)
            return
        self._run(["add", "-A"])
        self._run(["commit", "-m", message, "--allow-empty"])


def dolt_available(dolt_bin: str = "dolt") -> bool:
    return shutil.which(dolt_bin) is not None


@contextlib.contextmanager
def open_store(config) -> Iterator[Store]:
    """Open the store described by ``config``; close it on exit.

    Usage:
        with open_store(config) as store:
            do_stuff(store)
    """
    if config.store == "dolt":
        yield DoltStore(config.dolt_repo_path, auto_commit=config.auto_commit)
        return
    store = SqliteStore.open(config.db_path)
    try:
        yield store
    finally:
        store.close()
