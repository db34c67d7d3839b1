"""Canonical filesystem paths for taskgraph configuration and state."""

from __future__ import annotations

from pathlib import Path

TASKGRAPH_DIR_NAME = ".taskgraph"
CONFIG_FILE_NAME = "config.toml"
DEFAULT_DB_NAME = "taskgraph.db"
DEFAULT_DOLT_DIR = "dolt"
WORKTREES_DIR = "worktrees"


def find_project_root(start: Path | None = None) -> Path | None:
    """Walk up from ``start`` to the first directory holding ``.taskgraph/``."""
    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / TASKGRAPH_DIR_NAME).is_dir():
            return candidate
    return None


def taskgraph_dir(project_root: Path) -> Path:
    return project_root / TASKGRAPH_DIR_NAME


def config_path(project_root: Path) -> Path:
    return taskgraph_dir(project_root) / CONFIG_FILE_NAME


def worktree_path(project_root: Path, hash_id: str) -> Path:
    return taskgraph_dir(project_root) / WORKTREES_DIR / hash_id
