"""Project configuration, read from ``.taskgraph/config.toml``.

Example::

    store = "sqlite"
    db_path = ".taskgraph/taskgraph.db"
    main_branch = "main"
    auto_commit = true

Relative paths resolve against the project root (the directory holding
``.taskgraph/``). ``TASKGRAPH_DB_PATH`` overrides ``db_path``.
"""

from __future__ import annotations

import json
import logging
import os
import tomllib
from dataclasses import dataclass
from pathlib import Path

from taskgraph.errors import ConfigError
from taskgraph.paths import (
    DEFAULT_DB_NAME,
    DEFAULT_DOLT_DIR,
    config_path,
    find_project_root,
    taskgraph_dir,
)

log = logging.getLogger(__name__)

VALID_STORES = {"sqlite", "dolt"}


@dataclass
class Config:
    project_root: Path
    store: str = "sqlite"
    db_path: Path | None = None
    dolt_repo_path: Path | None = None
    main_branch: str = "main"
    auto_commit: bool = True
    remote_url: str | None = None

    def __post_init__(self) -> None:
        if self.store not in VALID_STORES:
            raise ConfigError(
                f"Invalid store '{self.store}'. Valid: {', '.join(sorted(VALID_STORES))}"
            )
        if self.db_path is None:
            self.db_path = taskgraph_dir(self.project_root) / DEFAULT_DB_NAME
        if self.dolt_repo_path is None:
            self.dolt_repo_path = taskgraph_dir(self.project_root) / DEFAULT_DOLT_DIR


def _resolve(project_root: Path, value: str | None) -> Path | None:
    if not value:
        return None
    path = Path(value).expanduser()
    return path if path.is_absolute() else project_root / path


def load_config(start: Path | None = None) -> Config:
    """Find the project root from ``start`` and load its config file."""
    project_root = find_project_root(start)
    if project_root is None or not config_path(project_root).exists():
        raise ConfigError("No .taskgraph/config.toml found. Run 'tg init' first.")

    path = config_path(project_root)
    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Failed to parse {path}: {exc}", cause=exc) from exc

    env_db = os.environ.get("TASKGRAPH_DB_PATH")
    auto_commit = raw.get("auto_commit", True)
    if not isinstance(auto_commit, bool):
        raise ConfigError(f"auto_commit must be true or false, got {auto_commit!r}")
    config = Config(
        project_root=project_root,
        store=raw.get("store", "sqlite"),
        db_path=_resolve(project_root, env_db or raw.get("db_path")),
        dolt_repo_path=_resolve(project_root, raw.get("dolt_repo_path")),
        main_branch=raw.get("main_branch", "main"),
        auto_commit=auto_commit,
        remote_url=raw.get("remote_url"),
    )
    log.debug("Loaded config from %s: store=%s", path, config.store)
    return config


def write_default_config(
    project_root: Path,
    *,
    store: str = "sqlite",
    main_branch: str = "main",
    remote_url: str | None = None,
) -> Config:
    """Write ``.taskgraph/config.toml`` if missing and return the resulting config."""
    config = Config(
        project_root=project_root, store=store, main_branch=main_branch, remote_url=remote_url
    )
    path = config_path(project_root)
    if path.exists():
        log.info("Config already exists at %s", path)
        return load_config(project_root)

    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    lines = [
        f"store = {json.dumps(store)}",
        f"main_branch = {json.dumps(main_branch)}",
        "auto_commit = true",
    ]
    if remote_url:
        lines.append(f"remote_url = {json.dumps(remote_url)}")
    path.write_text("\n".join(lines) + "\n")
    return config
