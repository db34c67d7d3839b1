"""Task and plan commands.

Every function here takes a ``Store`` first, performs one logical command,
commits it, and returns a JSON-ready dict. Failures are raised as
``TaskGraphError`` subclasses; ``run_batch`` turns them into per-item results.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import cast

from taskgraph.blocked_status import (
    BlockedTransition,
    apply_terminal_status,
    sync_blocked_status_for_task,
)
from taskgraph.config import Config
from taskgraph.errors import (
    InvalidTransition,
    PlanNotFound,
    TaskAlreadyClaimed,
    TaskGraphError,
    TaskNotFound,
    ValidationFailed,
)
from taskgraph.events import append_event, latest_event
from taskgraph.git_ops import (
    GitError,
    commits_ahead,
    create_worktree,
    merge_worktree_branch,
    remove_worktree,
)
from taskgraph.hash_id import allocate_hash_id, is_hash_id
from taskgraph.invariants import (
    check_no_blocker_cycle,
    check_runnable,
    load_blocking_edges,
    valid_transition,
)
from taskgraph.models import (
    PLAN_TERMINAL_STATUSES,
    TASK_TERMINAL_STATUSES,
    UUID_PATTERN,
    VALID_CHANGE_TYPES,
    VALID_EDGE_TYPES,
    VALID_GATE_TYPES,
    VALID_TASK_STATUSES,
    BlockedBody,
    CreatedBody,
    DoneBody,
    GateRow,
    NoteBody,
    PlanRow,
    SplitBody,
    StartedBody,
    TaskRow,
    utcnow,
)
from taskgraph.plan_completion import auto_complete_plan_if_done
from taskgraph.store import Store

log = logging.getLogger(__name__)

_UUID_RE = re.compile(UUID_PATTERN)
LINK_DIRECTIONS = ("original-to-new", "new-to-original")
NOTE_TYPES = ("note", "review")


# -- Lookup --


def resolve_task_id(store: Store, ident: str) -> str:
    """Accept a task UUID or a ``tg-`` short id and return the UUID."""
    ident = ident.strip()
    if _UUID_RE.match(ident):
        return ident.lower()
    if is_hash_id(ident):
        rows = store.select("tasks", {"hash_id": ident.lower()}, columns=["task_id"])
        if not rows:
            raise TaskNotFound(ident)
        if len(rows) > 1:
            raise ValidationFailed(f"Multiple tasks matched hash id '{ident}'.")
        return rows[0]["task_id"]
    raise ValidationFailed(f"Task id must be a UUID or a short id (tg-XXXXXX), got '{ident}'.")


def resolve_plan_id(store: Store, ident: str) -> str:
    """Accept a plan id or an exact plan title."""
    rows = store.select("plans", {"plan_id": ident}, columns=["plan_id"])
    if not rows:
        rows = store.select("plans", {"title": ident}, columns=["plan_id"], order_by="created_at")
    if not rows:
        raise PlanNotFound(ident)
    if len(rows) > 1:
        raise ValidationFailed(f"Multiple plans are titled '{ident}'; use the plan id.")
    return rows[0]["plan_id"]


def get_task(store: Store, task_id: str) -> TaskRow:
    rows = store.select("tasks", {"task_id": task_id})
    if not rows:
        raise TaskNotFound(task_id)
    return cast(TaskRow, rows[0])


def get_plan(store: Store, plan_id: str) -> PlanRow:
    rows = store.select("plans", {"plan_id": plan_id})
    if not rows:
        raise PlanNotFound(plan_id)
    return cast(PlanRow, rows[0])


def list_tasks(
    store: Store, plan_id: str | None = None, status: str | None = None
) -> list[TaskRow]:
    where: dict = {}
    if plan_id:
        where["plan_id"] = plan_id
    if status:
        if status not in VALID_TASK_STATUSES:
            raise ValidationFailed(f"Invalid status '{status}'.")
        where["status"] = status
    return cast(list[TaskRow], store.select("tasks", where, order_by="created_at, task_id"))


def list_plans(store: Store, status: str | None = None) -> list[PlanRow]:
    where = {"status": status} if status else None
    return cast(list[PlanRow], store.select("plans", where, order_by="created_at, plan_id"))


def plan_summary(store: Store, plan_id: str) -> dict:
    plan = get_plan(store, plan_id)
    rows = store.raw_query(
        "SELECT status, COUNT(*) AS cnt FROM tasks WHERE plan_id = ? GROUP BY status", (plan_id,)
    )
    return {**plan, "task_counts": {row["status"]: int(row["cnt"]) for row in rows}}


# -- Creation --


def create_plan(
    store: Store, title: str, intent: str | None = None, source_path: str | None = None
) -> str:
    if not title.strip():
        raise ValidationFailed("Plan title must not be empty.")
    plan_id = str(uuid.uuid4())
    now = utcnow()
    store.insert(
        "plans",
        {
            "plan_id": plan_id,
            "title": title.strip(),
            "intent": intent,
            "status": "draft",
            "source_path": source_path,
            "created_at": now,
            "updated_at": now,
        },
    )
    store.commit(f"plan: create {plan_id}")
    return plan_id


def _activate_plan(store: Store, plan_id: str) -> None:
    store.update(
        "plans",
        {"status": "active", "updated_at": utcnow()},
        {"plan_id": plan_id, "status": "draft"},
    )


def create_task(
    store: Store,
    plan_id: str,
    title: str,
    *,
    intent: str | None = None,
    change_type: str | None = None,
    docs: Iterable[str] = (),
    skills: Iterable[str] = (),
    acceptance: Iterable[str] = (),
    agent: str | None = None,
) -> TaskRow:
    """Create a ``todo`` task in ``plan_id``. A ``draft`` plan becomes ``active``."""
    plan = get_plan(store, plan_id)
    if plan["status"] in PLAN_TERMINAL_STATUSES:
        raise ValidationFailed(f"Plan '{plan_id}' is {plan['status']}; cannot add tasks.")
    if not title.strip():
        raise ValidationFailed("Task title must not be empty.")
    if change_type is not None and change_type not in VALID_CHANGE_TYPES:
        raise ValidationFailed(
            f"Invalid change type '{change_type}'. Valid: {', '.join(sorted(VALID_CHANGE_TYPES))}"
        )

    task_id = str(uuid.uuid4())
    now = utcnow()
    docs, skills, acceptance = list(docs), list(skills), list(acceptance)
    store.insert(
        "tasks",
        {
            "task_id": task_id,
            "hash_id": allocate_hash_id(store, task_id),
            "plan_id": plan_id,
            "title": title.strip(),
            "intent": intent,
            "change_type": change_type,
            "docs": json.dumps(docs) if docs else None,
            "skills": json.dumps(skills) if skills else None,
            "acceptance": json.dumps(acceptance) if acceptance else None,
            "agent": agent,
            "status": "todo",
            "created_at": now,
            "updated_at": now,
        },
    )
    append_event(store, task_id, CreatedBody(title=title.strip()))
    _activate_plan(store, plan_id)
    store.commit(f"task: create {task_id}")
    return get_task(store, task_id)


# -- Lifecycle --


def _unblocked(changes: dict[str, BlockedTransition]) -> list[str]:
    return [task_id for task_id, change in changes.items() if change is BlockedTransition.TO_TODO]


def start_task(
    store: Store,
    config: Config,
    task_id: str,
    agent: str = "default",
    *,
    force: bool = False,
    worktree: bool = False,
) -> dict:
    """Claim ``task_id`` for ``agent`` and move it to ``doing``.

    A task already in ``doing`` can only be re-claimed with ``force``. With
    ``worktree`` a git worktree is created before the status change; it is
    left in place if the claim then fails.
    """
    task = get_task(store, task_id)
    current = task["status"]
    if current == "doing":
        if not force:
            started = latest_event(store, task_id, "started")
            claimant = started.agent if isinstance(started, StartedBody) else "unknown"
            raise TaskAlreadyClaimed(task_id, claimant)
    elif current == "todo":
        check_runnable(store, task_id)
    else:
        valid_transition(current, "doing")

    branch = path = None
    if worktree:
        try:
            branch, path = create_worktree(
                config.project_root, task["hash_id"] or task_id[:8], config.main_branch
            )
        except GitError as exc:
            raise ValidationFailed(str(exc), cause=exc) from exc

    now = utcnow()
    try:
        updated = store.update(
            "tasks", {"status": "doing", "updated_at": now}, {"task_id": task_id, "status": current}
        )
        if updated == 0:
            raise InvalidTransition(
                current,
                "doing",
                f"Task '{task_id}' changed status concurrently; re-read and retry.",
            )
        append_event(
            store,
            task_id,
            StartedBody(
                agent=agent,
                timestamp=now,
                worktree_path=path,
                worktree_branch=branch,
                worktree_repo_root=str(config.project_root) if path else None,
            ),
        )
        store.commit(f"task: start {task_id}")
    except TaskGraphError:
        if path:
            log.warning(
                "Claim of %s failed; worktree left at %s (branch %s)", task_id, path, branch
            )
        raise

    result = {"task_id": task_id, "hash_id": task["hash_id"], "status": "doing", "agent": agent}
    if path:
        result.update(worktree_path=path, worktree_branch=branch)
    return result


def _finish_worktree(config: Config, task: TaskRow, started: StartedBody, merge: bool) -> dict:
    repo_root = started.worktree_repo_root or str(config.project_root)
    branch = started.worktree_branch
    outcome: dict = {"worktree_path": started.worktree_path}
    if merge and branch:
        try:
            if commits_ahead(repo_root, branch, config.main_branch) > 0:
                outcome["merge_sha"] = merge_worktree_branch(
                    repo_root,
                    branch,
                    config.main_branch,
                    f"Merge task {task['hash_id']}: {task['title']}",
                )
        except GitError as exc:
            log.warning("Leaving worktree %s in place: %s", started.worktree_path, exc)
            outcome["merge_error"] = str(exc)
            return outcome
    remove_worktree(repo_root, started.worktree_path, branch if merge else None)
    outcome["worktree_removed"] = True
    return outcome


def done_task(
    store: Store,
    config: Config,
    task_id: str,
    evidence: str = "",
    *,
    force: bool = False,
    merge: bool = True,
    checks: list | None = None,
) -> dict:
    """Mark ``task_id`` done, cascade to dependents, and complete the plan if finished.

    When the task was started with a worktree, its branch is merged into
    the main branch (unless ``merge`` is false) and the worktree removed. A
    failed merge is reported but does not undo the status change.
    """
    task = get_task(store, task_id)
    started = latest_event(store, task_id, "started")
    changes = apply_terminal_status(
        store,
        task_id,
        "done",
        DoneBody(evidence=evidence, timestamp=utcnow(), checks=checks),
        force=force,
    )
    plan_completed = auto_complete_plan_if_done(store, task["plan_id"])
    store.commit(f"task: done {task_id}")

    result = {
        "task_id": task_id,
        "hash_id": task["hash_id"],
        "status": "done",
        "unblocked": _unblocked(changes),
        "plan_completed": plan_completed,
    }
    if isinstance(started, StartedBody) and started.worktree_path:
        result.update(_finish_worktree(config, task, started, merge))
    return result


def cancel_task(
    store: Store, task_id: str, reason: str | None = None, agent: str = "default"
) -> dict:
    task = get_task(store, task_id)
    changes = apply_terminal_status(
        store,
        task_id,
        "canceled",
        NoteBody(message=reason or "canceled", agent=agent, timestamp=utcnow(), type="cancel"),
    )
    plan_completed = auto_complete_plan_if_done(store, task["plan_id"])
    store.commit(f"task: cancel {task_id}")
    return {
        "task_id": task_id,
        "hash_id": task["hash_id"],
        "status": "canceled",
        "unblocked": _unblocked(changes),
        "plan_completed": plan_completed,
    }


def cancel_plan(store: Store, plan_id: str) -> dict:
    plan = get_plan(store, plan_id)
    if plan["status"] in PLAN_TERMINAL_STATUSES:
        raise ValidationFailed(f"Plan '{plan_id}' is already {plan['status']}.")
    updated = store.update(
        "plans",
        {"status": "abandoned", "updated_at": utcnow()},
        {"plan_id": plan_id, "status": plan["status"]},
    )
    if updated == 0:
        raise ValidationFailed(f"Plan '{plan_id}' changed status concurrently; re-read and retry.")
    store.commit(f"plan: abandon {plan_id}")
    return {"plan_id": plan_id, "status": "abandoned"}


# -- Graph --


def add_edge(
    store: Store,
    from_task_id: str,
    to_task_id: str,
    edge_type: str = "blocks",
    reason: str | None = None,
) -> dict:
    """Insert an edge. ``blocks`` edges are cycle-checked and re-sync the target."""
    if edge_type not in VALID_EDGE_TYPES:
        raise ValidationFailed(
            f"Invalid edge type '{edge_type}'. Valid: {', '.join(sorted(VALID_EDGE_TYPES))}"
        )
    get_task(store, from_task_id)
    get_task(store, to_task_id)

    where = {"from_task_id": from_task_id, "to_task_id": to_task_id, "type": edge_type}
    result = {**where, "created": False}
    if store.count("edges", where):
        return result

    if edge_type == "blocks":
        check_no_blocker_cycle(from_task_id, to_task_id, load_blocking_edges(store))
    store.insert("edges", {**where, "reason": reason, "created_at": utcnow()})
    result["created"] = True
    if edge_type == "blocks":
        change = sync_blocked_status_for_task(store, to_task_id)
        result["to_status"] = get_task(store, to_task_id)["status"]
        result["status_changed"] = change is not None
    store.commit(f"edge: {edge_type} {from_task_id} -> {to_task_id}")
    return result


def block_task(store: Store, task_id: str, blocker_id: str, reason: str | None = None) -> dict:
    """Make ``blocker_id`` block ``task_id``."""
    return add_edge(store, blocker_id, task_id, "blocks", reason)


def split_task(
    store: Store,
    task_id: str,
    titles: list[str],
    *,
    keep_original: bool = True,
    link_direction: str = "original-to-new",
    agent: str = "default",
) -> dict:
    """Split ``task_id`` into new ``todo`` tasks linked by ``relates`` edges.

    New tasks copy the original's descriptive fields. Without
    ``keep_original`` the original is canceled afterwards.
    """
    titles = [t.strip() for t in titles if t.strip()]
    if not titles:
        raise ValidationFailed("split needs at least one non-empty title.")
    if link_direction not in LINK_DIRECTIONS:
        raise ValidationFailed(
            f"Invalid link direction '{link_direction}'. Valid: {', '.join(LINK_DIRECTIONS)}"
        )
    original = get_task(store, task_id)
    if original["status"] in TASK_TERMINAL_STATUSES:
        raise InvalidTransition(
            original["status"], "split", f"Task '{task_id}' is {original['status']}; cannot split."
        )

    now = utcnow()
    new_tasks: list[dict] = []
    for title in titles:
        new_id = str(uuid.uuid4())
        hash_id = allocate_hash_id(store, new_id)
        store.insert(
            "tasks",
            {
                "task_id": new_id,
                "hash_id": hash_id,
                "plan_id": original["plan_id"],
                "title": title,
                "intent": original["intent"],
                "scope_in": original["scope_in"],
                "scope_out": original["scope_out"],
                "acceptance": original["acceptance"],
                "docs": original["docs"],
                "skills": original["skills"],
                "change_type": original["change_type"],
                "suggested_changes": original["suggested_changes"],
                "agent": original["agent"],
                "status": "todo",
                "created_at": now,
                "updated_at": now,
            },
        )
        append_event(store, new_id, CreatedBody(title=title, split_from=task_id))
        if link_direction == "original-to-new":
            edge = {"from_task_id": task_id, "to_task_id": new_id}
        else:
            edge = {"from_task_id": new_id, "to_task_id": task_id}
        store.insert(
            "edges", {**edge, "type": "relates", "reason": "split", "created_at": now}
        )
        new_tasks.append({"task_id": new_id, "hash_id": hash_id, "title": title})

    new_ids = [t["task_id"] for t in new_tasks]
    append_event(
        store, task_id, SplitBody(new_task_ids=new_ids, timestamp=now, keep_original=keep_original)
    )
    if not keep_original:
        apply_terminal_status(
            store,
            task_id,
            "canceled",
            NoteBody(
                message=f"split into {len(new_ids)} task(s)",
                agent=agent,
                timestamp=now,
                type="cancel",
            ),
        )
    store.commit(f"task: split {task_id}")
    return {
        "task_id": task_id,
        "original_status": get_task(store, task_id)["status"],
        "new_tasks": new_tasks,
    }


def add_note(
    store: Store, task_id: str, message: str, agent: str = "default", note_type: str = "note"
) -> dict:
    """Append a note. A ``review`` note's message starts with its verdict, PASS or FAIL."""
    if not message.strip():
        raise ValidationFailed("Note message must not be empty.")
    if note_type not in NOTE_TYPES:
        raise ValidationFailed(f"Invalid note type '{note_type}'. Valid: {', '.join(NOTE_TYPES)}")
    get_task(store, task_id)
    body = NoteBody(message=message, agent=agent, timestamp=utcnow(), type=note_type)
    event_id = append_event(store, task_id, body)
    store.commit(f"task: note {task_id}")
    return {"task_id": task_id, "event_id": event_id}


_NEXT_RUNNABLE_SQL = """\
SELECT t.* FROM tasks t
JOIN plans p ON p.plan_id = t.plan_id
WHERE t.status = 'todo'
  AND p.status != 'abandoned'
  {plan_filter}
  AND NOT EXISTS (
    SELECT 1 FROM edges e JOIN tasks b ON b.task_id = e.from_task_id
    WHERE e.to_task_id = t.task_id AND e.type = 'blocks'
      AND b.status NOT IN ('done', 'canceled')
  )
  AND NOT EXISTS (
    SELECT 1 FROM gates g WHERE g.task_id = t.task_id AND g.status = 'pending'
  )
ORDER BY t.created_at, t.task_id
LIMIT ?
"""


def next_runnable(store: Store, plan_id: str | None = None, limit: int = 10) -> list[TaskRow]:
    """Runnable ``todo`` tasks, oldest first."""
    params: list = []
    plan_filter = ""
    if plan_id:
        plan_filter = "AND t.plan_id = ?"
        params.append(plan_id)
    params.append(int(limit))
    rows = store.raw_query(_NEXT_RUNNABLE_SQL.format(plan_filter=plan_filter), params)
    return cast(list[TaskRow], rows)


def sync_all_blocked(store: Store) -> dict[str, str]:
    """Re-run the blocked-status sync over every non-terminal task."""
    rows = store.select(
        "tasks",
        {"status": ["todo", "doing", "blocked"]},
        columns=["task_id"],
        order_by="created_at",
    )
    changed: dict[str, str] = {}
    for row in rows:
        change = sync_blocked_status_for_task(store, row["task_id"])
        if change is not None:
            changed[row["task_id"]] = str(change)
    store.commit("sync: blocked status")
    return changed


# -- Gates --


def create_gate(store: Store, task_id: str, name: str, gate_type: str = "human") -> GateRow:
    """Attach a pending gate to ``task_id``; an open task becomes ``blocked``."""
    if gate_type not in VALID_GATE_TYPES:
        raise ValidationFailed(
            f"Invalid gate type '{gate_type}'. Valid: {', '.join(sorted(VALID_GATE_TYPES))}"
        )
    if not name.strip():
        raise ValidationFailed("Gate name must not be empty.")
    task = get_task(store, task_id)
    if task["status"] in TASK_TERMINAL_STATUSES:
        raise InvalidTransition(task["status"], "blocked", f"Task '{task_id}' is {task['status']}.")

    gate_id = str(uuid.uuid4())
    now = utcnow()
    gate = {
        "gate_id": gate_id,
        "task_id": task_id,
        "name": name.strip()[:255],
        "gate_type": gate_type,
        "status": "pending",
        "created_at": now,
        "resolved_at": None,
    }
    store.insert("gates", gate)
    current = task["status"]
    if current in ("todo", "doing"):
        updated = store.update(
            "tasks",
            {"status": "blocked", "updated_at": now},
            {"task_id": task_id, "status": current},
        )
        if updated:
            append_event(
                store, task_id, BlockedBody(reason="gate", timestamp=now, gate_id=gate_id)
            )
    store.commit(f"gate: create {gate_id} for task {task_id}")
    return cast(GateRow, gate)


def resolve_gate(store: Store, gate_id: str) -> dict:
    """Resolve a gate; the task is re-synced once no pending gate remains."""
    rows = store.select("gates", {"gate_id": gate_id})
    if not rows:
        raise ValidationFailed(f"Gate '{gate_id}' not found.")
    gate = cast(GateRow, rows[0])
    if gate["status"] != "pending":
        raise ValidationFailed(f"Gate '{gate_id}' is already {gate['status']}.")

    store.update(
        "gates",
        {"status": "resolved", "resolved_at": utcnow()},
        {"gate_id": gate_id, "status": "pending"},
    )
    remaining = store.count("gates", {"task_id": gate["task_id"], "status": "pending"})
    if remaining == 0:
        sync_blocked_status_for_task(store, gate["task_id"])
    store.commit(f"gate: resolve {gate_id}")
    return {
        "gate_id": gate_id,
        "task_id": gate["task_id"],
        "status": "resolved",
        "pending_gates": remaining,
        "task_status": get_task(store, gate["task_id"])["status"],
    }


def list_gates(
    store: Store, task_id: str | None = None, status: str | None = None
) -> list[GateRow]:
    where: dict = {}
    if task_id:
        where["task_id"] = task_id
    if status:
        where["status"] = status
    return cast(list[GateRow], store.select("gates", where, order_by="created_at"))


# -- Batches --


@dataclass
class BatchItem:
    """Outcome of one id in a batch: either ``result`` or ``error`` is set."""

    id: str
    result: dict | None = None
    error: TaskGraphError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        if self.error is not None:
            return {"id": self.id, "ok": False, **self.error.to_dict()}
        return {"id": self.id, "ok": True, **(self.result or {})}


@dataclass
class BatchResult:
    items: list[BatchItem] = field(default_factory=list)

    @property
    def any_failed(self) -> bool:
        return any(not item.ok for item in self.items)

    def to_dict(self) -> dict:
        return {"ok": not self.any_failed, "results": [item.to_dict() for item in self.items]}


def run_batch(ids: Iterable[str], fn: Callable[[str], dict]) -> BatchResult:
    """Apply ``fn`` to each id in order; one id's failure never stops the rest."""
    batch = BatchResult()
    for ident in ids:
        try:
            batch.items.append(BatchItem(id=ident, result=fn(ident)))
        except TaskGraphError as exc:
            log.debug("Batch item %s failed: %s", ident, exc)
            batch.items.append(BatchItem(id=ident, error=exc))
    return batch
