"""Merge a parsed plan definition into a plan's persisted tasks.

Incoming task definitions are matched to existing tasks by stable key. The
persisted ``external_key`` is ``[<prefix>-]<stable_key>-<plan_hash>``; the
plan hash suffix and optional prefix are stripped to recover the stable key.
Reconciliation creates and updates tasks and adds missing ``blocks`` edges.
It never cancels anything; see ``compute_unmatched_existing_tasks``.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from taskgraph.blocked_status import apply_terminal_status, sync_blocked_status_for_task
from taskgraph.errors import ReconcileFailed, TaskGraphError
from taskgraph.events import append_event
from taskgraph.hash_id import allocate_hash_id, plan_hash
from taskgraph.invariants import check_no_blocker_cycle, load_blocking_edges
from taskgraph.models import TASK_TERMINAL_STATUSES, CreatedBody, DoneBody, utcnow
from taskgraph.store import Store

log = logging.getLogger(__name__)


@dataclass
class TaskDefinition:
    """One task as declared in a plan document."""

    stable_key: str
    title: str
    blocked_by: list[str] = field(default_factory=list)
    status: str | None = None
    docs: list[str] = field(default_factory=list)
    skills: list[str] = field(default_factory=list)
    change_type: str | None = None
    intent: str | None = None
    suggested_changes: str | None = None
    acceptance: list[str] = field(default_factory=list)
    agent: str | None = None


@dataclass
class UnmatchedTasks:
    task_ids: list[str] = field(default_factory=list)
    external_keys: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.task_ids)


@dataclass
class ReconcileResult:
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    edges_added: int = 0
    skipped_blockers: list[tuple[str, str]] = field(default_factory=list)


def external_key_for(stable_key: str, plan_id: str, prefix: str | None = None) -> str:
    base = f"{prefix}-{stable_key}" if prefix else stable_key
    return f"{base}-{plan_hash(plan_id)}"


def stable_key_from_external(external_key: str, plan_id: str, prefix: str | None = None) -> str:
    key = external_key.removesuffix(f"-{plan_hash(plan_id)}")
    if prefix and key.startswith(f"{prefix}-"):
        key = key[len(prefix) + 1 :]
    return key


def build_key_map(
    existing: Iterable[dict], plan_id: str, prefix: str | None = None
) -> dict[str, str]:
    """Map stable key -> task_id for persisted tasks that carry an external key."""
    key_map: dict[str, str] = {}
    for row in existing:
        if row.get("external_key"):
            key_map[stable_key_from_external(row["external_key"], plan_id, prefix)] = row["task_id"]
    return key_map


def _existing_plan_tasks(store: Store, plan_id: str) -> list[dict]:
    return store.select("tasks", {"plan_id": plan_id}, columns=["task_id", "external_key"])


def compute_unmatched_existing_tasks(
    store: Store,
    plan_id: str,
    definitions: Sequence[TaskDefinition],
    prefix: str | None = None,
) -> UnmatchedTasks:
    """Persisted tasks of ``plan_id`` whose stable key is absent from ``definitions``.

    Read-only. Tasks without an external key were never imported and are
    not considered.
    """
    incoming = {d.stable_key for d in definitions}
    unmatched = UnmatchedTasks()
    for row in _existing_plan_tasks(store, plan_id):
        if not row.get("external_key"):
            continue
        if stable_key_from_external(row["external_key"], plan_id, prefix) not in incoming:
            unmatched.task_ids.append(row["task_id"])
            unmatched.external_keys.append(row["external_key"])
    return unmatched


def _definition_fields(definition: TaskDefinition) -> dict:
    return {
        "title": definition.title,
        "intent": definition.intent,
        "docs": json.dumps(definition.docs) if definition.docs else None,
        "skills": json.dumps(definition.skills) if definition.skills else None,
        "change_type": definition.change_type,
        "suggested_changes": definition.suggested_changes,
        "acceptance": json.dumps(definition.acceptance) if definition.acceptance else None,
        "agent": definition.agent,
    }


def _upsert_task(
    store: Store,
    plan_id: str,
    definition: TaskDefinition,
    key_map: dict[str, str],
    prefix: str | None,
    result: ReconcileResult,
) -> None:
    external_key = external_key_for(definition.stable_key, plan_id, prefix)
    now = utcnow()
    task_id = key_map.get(definition.stable_key)
    if task_id:
        patch = {"external_key": external_key, **_definition_fields(definition), "updated_at": now}
        store.update("tasks", patch, {"task_id": task_id})
        result.updated.append(task_id)
    else:
        task_id = str(uuid.uuid4())
        store.insert(
            "tasks",
            {
                "task_id": task_id,
                "hash_id": allocate_hash_id(store, task_id),
                "plan_id": plan_id,
                "external_key": external_key,
                **_definition_fields(definition),
                "status": "todo",
                "created_at": now,
                "updated_at": now,
            },
        )
        append_event(
            store, task_id, CreatedBody(title=definition.title, external_key=external_key)
        )
        result.created.append(task_id)
    # Later definitions in the batch may name this one as a blocker.
    key_map[definition.stable_key] = task_id


def _add_blocking_edges(
    store: Store,
    definition: TaskDefinition,
    key_map: dict[str, str],
    blocking_edges: list[dict],
    result: ReconcileResult,
) -> None:
    task_id = key_map[definition.stable_key]
    for blocker_key in definition.blocked_by:
        blocker_id = key_map.get(blocker_key)
        if blocker_id is None:
            log.warning(
                "Blocker '%s' not found; skipping edge for task '%s'",
                blocker_key,
                definition.stable_key,
            )
            result.skipped_blockers.append((definition.stable_key, blocker_key))
            continue
        where = {"from_task_id": blocker_id, "to_task_id": task_id, "type": "blocks"}
        if store.count("edges", where):
            continue
        check_no_blocker_cycle(blocker_id, task_id, blocking_edges)
        store.insert("edges", {**where, "reason": "Blocked by plan import", "created_at": utcnow()})
        blocking_edges.append(where)
        result.edges_added += 1


def _apply_declared_done(
    store: Store, definition: TaskDefinition, key_map: dict[str, str], result: ReconcileResult
) -> None:
    task_id = key_map[definition.stable_key]
    rows = store.select("tasks", {"task_id": task_id}, columns=["status"])
    if rows and rows[0]["status"] in TASK_TERMINAL_STATUSES:
        return
    apply_terminal_status(
        store,
        task_id,
        "done",
        DoneBody(evidence="plan import", timestamp=utcnow()),
        force=True,
    )
    result.completed.append(task_id)


def reconcile_plan(
    store: Store,
    plan_id: str,
    definitions: Sequence[TaskDefinition],
    prefix: str | None = None,
) -> ReconcileResult:
    """Upsert ``definitions`` into ``plan_id``, add edges, then sync blocked status.

    New tasks start as ``todo``. A declared ``done`` is applied
    afterwards through ``apply_terminal_status``.

    Re-running with the same definitions is a no-op apart from field
    refreshes. Raises ``ReconcileFailed`` naming the definition being applied
    when a store or graph error interrupts the run; earlier definitions stay
    applied.
    """
    result = ReconcileResult()
    key_map = build_key_map(_existing_plan_tasks(store, plan_id), plan_id, prefix)

    for definition in definitions:
        try:
            _upsert_task(store, plan_id, definition, key_map, prefix, result)
        except TaskGraphError as exc:
            raise ReconcileFailed(definition.stable_key, exc) from exc

    blocking_edges = load_blocking_edges(store)
    for definition in definitions:
        try:
            _add_blocking_edges(store, definition, key_map, blocking_edges, result)
        except TaskGraphError as exc:
            raise ReconcileFailed(definition.stable_key, exc) from exc

    # Declared completion goes through the terminal write path so dependents
    # in any plan are re-synced. Terminal tasks keep their status.
    for definition in definitions:
        if definition.status != "done":
            continue
        try:
            _apply_declared_done(store, definition, key_map, result)
        except TaskGraphError as exc:
            raise ReconcileFailed(definition.stable_key, exc) from exc

    for stable_key, task_id in key_map.items():
        try:
            sync_blocked_status_for_task(store, task_id)
        except TaskGraphError as exc:
            raise ReconcileFailed(stable_key, exc) from exc

    log.info(
        "Reconciled plan %s: %d created, %d updated, %d completed, %d edge(s) added",
        plan_id,
        len(result.created),
        len(result.updated),
        len(result.completed),
        result.edges_added,
    )
    return result
