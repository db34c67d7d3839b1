"""Task lifecycle rules and the blocking-edge cycle guard."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping

from taskgraph.errors import (
    CycleDetected,
    InvalidTransition,
    TaskNotFound,
    TaskNotRunnable,
)
from taskgraph.store import Store

# Allowed transitions. Nothing leaves a terminal status.
TASK_TRANSITIONS: dict[str, frozenset[str]] = {
    "todo": frozenset({"doing", "blocked", "canceled"}),
    "doing": frozenset({"done", "blocked", "canceled"}),
    "blocked": frozenset({"todo", "canceled"}),
    "done": frozenset(),
    "canceled": frozenset(),
}

UNMET_BLOCKERS_SQL = """\
SELECT e.from_task_id AS blocker_id
FROM edges e
JOIN tasks b ON b.task_id = e.from_task_id
WHERE e.to_task_id = ? AND e.type = 'blocks' AND b.status NOT IN ('done', 'canceled')
"""


def valid_transition(current: str, next_status: str) -> None:
    """Raise ``InvalidTransition`` unless ``current -> next_status`` is allowed."""
    if next_status not in TASK_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(current, next_status)


def is_valid_transition(current: str, next_status: str) -> bool:
    return next_status in TASK_TRANSITIONS.get(current, frozenset())


def unmet_blocker_ids(store: Store, task_id: str) -> list[str]:
    """Ids of ``blocks`` predecessors of ``task_id`` that are not resolved yet."""
    return [row["blocker_id"] for row in store.raw_query(UNMET_BLOCKERS_SQL, (task_id,))]


def check_runnable(store: Store, task_id: str) -> None:
    rows = store.select("tasks", {"task_id": task_id}, columns=["status"])
    if not rows:
        raise TaskNotFound(task_id)
    status = rows[0]["status"]
    if status != "todo":
        raise InvalidTransition(
            status, "doing", f"Task '{task_id}' is '{status}', only 'todo' tasks are runnable."
        )
    unmet = len(unmet_blocker_ids(store, task_id))
    if unmet > 0:
        raise TaskNotRunnable(task_id, unmet)


def check_no_blocker_cycle(
    from_task_id: str,
    to_task_id: str,
    edges: Iterable[Mapping[str, str]],
) -> None:
    """Reject ``from -> to`` if ``to`` already reaches ``from`` over blocks edges.

    ``edges`` are rows with ``from_task_id``/``to_task_id`` and optional
    ``type``; non-``blocks`` edges are ignored.
    """
    if from_task_id == to_task_id:
        raise CycleDetected(from_task_id, to_task_id)

    successors: dict[str, list[str]] = {}
    for edge in edges:
        if edge.get("type", "blocks") != "blocks":
            continue
        successors.setdefault(edge["from_task_id"], []).append(edge["to_task_id"])

    seen = {to_task_id}
    queue = deque([to_task_id])
    while queue:
        node = queue.popleft()
        for nxt in successors.get(node, ()):
            if nxt == from_task_id:
                raise CycleDetected(from_task_id, to_task_id)
            if nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)


def load_blocking_edges(store: Store) -> list[dict]:
    return store.select("edges", {"type": "blocks"}, columns=["from_task_id", "to_task_id", "type"])
