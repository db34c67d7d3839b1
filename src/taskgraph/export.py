"""Render plans back out as frontmatter plan documents or Mermaid graphs."""

from __future__ import annotations

import re
from pathlib import Path

import yaml

from taskgraph.config import Config
from taskgraph.errors import ValidationFailed
from taskgraph.models import decode_json_list
from taskgraph.reconcile import stable_key_from_external
from taskgraph.store import Store
from taskgraph.tasks import get_plan

_EXPORT_STATUS = {"done": "completed", "canceled": "cancelled", "doing": "in_progress"}
_NODE_ID_RE = re.compile(r"[^a-zA-Z0-9]")


def _blocks_edges(store: Store, task_ids: list[str]) -> list[dict]:
    return store.select(
        "edges",
        {"to_task_id": task_ids, "type": "blocks"},
        columns=["from_task_id", "to_task_id"],
        order_by="created_at",
    )


def export_markdown(store: Store, plan_id: str) -> str:
    """A frontmatter plan document that re-imports into the same plan.

    Only tasks that came from a plan document (those with an external key)
    are exported. Each todo ``id`` is the task's stable key, and
    ``blockedBy`` lists blockers within the plan.
    """
    plan = get_plan(store, plan_id)
    rows = [
        row
        for row in store.select("tasks", {"plan_id": plan_id}, order_by="created_at, task_id")
        if row["external_key"]
    ]
    keys = {row["task_id"]: stable_key_from_external(row["external_key"], plan_id) for row in rows}

    blocked_by: dict[str, list[str]] = {}
    for edge in _blocks_edges(store, list(keys)):
        if edge["from_task_id"] in keys:
            blocked_by.setdefault(edge["to_task_id"], []).append(keys[edge["from_task_id"]])

    todos = []
    for row in rows:
        todo: dict = {
            "id": keys[row["task_id"]],
            "content": row["title"],
            "status": _EXPORT_STATUS.get(row["status"], "pending"),
        }
        if row["task_id"] in blocked_by:
            todo["blockedBy"] = blocked_by[row["task_id"]]
        for column in ("docs", "skills", "acceptance"):
            values = decode_json_list(row[column])
            if values:
                todo[column] = values
        for field, column in (
            ("changeType", "change_type"),
            ("intent", "intent"),
            ("suggestedChanges", "suggested_changes"),
            ("agent", "agent"),
        ):
            if row[column]:
                todo[field] = row[column]
        todos.append(todo)

    frontmatter = {"name": plan["title"], "overview": plan["intent"] or "", "todos": todos}
    yaml_str = yaml.safe_dump(
        frontmatter, default_flow_style=False, sort_keys=False, allow_unicode=True
    )
    return "\n".join(["---", yaml_str.rstrip(), "---", ""])


def _node_id(row: dict) -> str:
    return _NODE_ID_RE.sub("", row["hash_id"] or row["task_id"])


def _label(row: dict) -> str:
    return f"{row['title']} ({row['status']})".replace('"', "#quot;")


def export_mermaid(store: Store, plan_id: str | None = None) -> str:
    """``graph TD`` text: ``-->`` for blocks edges, ``---`` for relates edges.

    Edges are drawn only between tasks in the exported set.
    """
    where = {"plan_id": plan_id} if plan_id else None
    rows = store.select(
        "tasks",
        where,
        columns=["task_id", "hash_id", "title", "status"],
        order_by="created_at, task_id",
    )
    nodes = {row["task_id"]: _node_id(row) for row in rows}
    lines = ["graph TD"]
    lines.extend(f'  {nodes[row["task_id"]]}["{_label(row)}"]' for row in rows)

    edges = store.select(
        "edges",
        {"from_task_id": list(nodes)},
        columns=["from_task_id", "to_task_id", "type"],
        order_by="created_at",
    )
    arrows = {"blocks": "-->", "relates": "---"}
    for edge in edges:
        if edge["to_task_id"] not in nodes or edge["type"] not in arrows:
            continue
        lines.append(
            f"  {nodes[edge['from_task_id']]} {arrows[edge['type']]} {nodes[edge['to_task_id']]}"
        )
    return "\n".join(lines) + "\n"


def write_export(config: Config, text: str, out: Path) -> Path:
    """Write ``text`` to ``out``. Plan sources under ``plans/`` are never overwritten."""
    target = Path(out).resolve()
    plans_dir = (config.project_root / "plans").resolve()
    if target.is_relative_to(plans_dir):
        raise ValidationFailed(
            "Export cannot write into plans/; use exports/ or another directory."
        )
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(text, encoding="utf-8")
    return target
