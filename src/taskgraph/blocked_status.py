"""Keep a task's materialized ``blocked`` status in line with its live blockers.

A task counts as blocked while any ``blocks`` predecessor is unresolved
(not ``done``/``canceled``) or while it has a pending gate. Terminal tasks
are never touched.

Each sync is single-hop. ``sync_dependents`` re-syncs the direct dependents
of one task, and ``apply_terminal_status`` is the only path that moves a task
to ``done``/``canceled``; it always calls ``sync_dependents`` afterwards.
"""

from __future__ import annotations

import logging
from enum import StrEnum

from taskgraph.errors import InvalidTransition, TaskNotFound
from taskgraph.events import append_event
from taskgraph.invariants import unmet_blocker_ids, valid_transition
from taskgraph.models import (
    TASK_TERMINAL_STATUSES,
    BlockedBody,
    DoneBody,
    NoteBody,
    UnblockedBody,
    utcnow,
)
from taskgraph.store import Store

log = logging.getLogger(__name__)


class BlockedTransition(StrEnum):
    TO_BLOCKED = "blocked"
    TO_TODO = "todo"


def compute_desired_blocked_status(status: str, unmet_blockers: int) -> BlockedTransition | None:
    if unmet_blockers > 0 and status in ("todo", "doing"):
        return BlockedTransition.TO_BLOCKED
    if unmet_blockers == 0 and status == "blocked":
        return BlockedTransition.TO_TODO
    return None


def pending_gate_ids(store: Store, task_id: str) -> list[str]:
    rows = store.select("gates", {"task_id": task_id, "status": "pending"}, columns=["gate_id"])
    return [row["gate_id"] for row in rows]


def sync_blocked_status_for_task(store: Store, task_id: str) -> BlockedTransition | None:
    """Re-derive ``task_id``'s blocked status. Returns the applied change, if any."""
    rows = store.select("tasks", {"task_id": task_id}, columns=["status"])
    if not rows:
        raise TaskNotFound(task_id)
    current = rows[0]["status"]

    blockers = unmet_blocker_ids(store, task_id)
    gates = pending_gate_ids(store, task_id)
    change = compute_desired_blocked_status(current, len(blockers) + len(gates))
    if change is None:
        return None

    valid_transition(current, str(change))
    now = utcnow()
    updated = store.update(
        "tasks",
        {"status": str(change), "updated_at": now},
        {"task_id": task_id, "status": current},
    )
    if updated == 0:
        # Someone else moved the task between our read and write.
        log.debug("Task %s changed status concurrently; skipping sync", task_id)
        return None

    if change is BlockedTransition.TO_BLOCKED:
        append_event(
            store,
            task_id,
            BlockedBody(
                reason="materialized",
                timestamp=now,
                blocker_task_ids=blockers,
                gate_id=gates[0] if gates and not blockers else None,
            ),
        )
    else:
        append_event(store, task_id, UnblockedBody(timestamp=now))
    log.debug("Task %s: %s -> %s", task_id, current, change)
    return change


def dependent_task_ids(store: Store, task_id: str) -> list[str]:
    rows = store.select(
        "edges", {"from_task_id": task_id, "type": "blocks"}, columns=["to_task_id"]
    )
    return [row["to_task_id"] for row in rows]


def sync_dependents(store: Store, task_id: str) -> dict[str, BlockedTransition]:
    """Sync every direct dependent of ``task_id``. Returns the ones that changed."""
    changed: dict[str, BlockedTransition] = {}
    for dependent in dependent_task_ids(store, task_id):
        change = sync_blocked_status_for_task(store, dependent)
        if change is not None:
            changed[dependent] = change
    return changed


def apply_terminal_status(
    store: Store,
    task_id: str,
    status: str,
    event: DoneBody | NoteBody,
    *,
    force: bool = False,
) -> dict[str, BlockedTransition]:
    """Move ``task_id`` to ``done`` or ``canceled`` and cascade to dependents.

    ``force`` skips the transition check (but never leaves a terminal state).
    Returns the dependents whose blocked status changed.
    """
    if status not in TASK_TERMINAL_STATUSES:
        raise ValueError(f"apply_terminal_status() only handles terminal statuses, got {status!r}")
    rows = store.select("tasks", {"task_id": task_id}, columns=["status"])
    if not rows:
        raise TaskNotFound(task_id)
    current = rows[0]["status"]
    if current in TASK_TERMINAL_STATUSES:
        raise InvalidTransition(current, status)
    if not force:
        valid_transition(current, status)

    updated = store.update(
        "tasks",
        {"status": status, "updated_at": utcnow()},
        {"task_id": task_id, "status": current},
    )
    if updated == 0:
        raise InvalidTransition(
            current, status, f"Task '{task_id}' changed status concurrently; re-read and retry."
        )
    append_event(store, task_id, event)
    return sync_dependents(store, task_id)
