"""Import a plan document into the store."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from taskgraph.config import Config
from taskgraph.errors import PlanNotFound, ValidationFailed
from taskgraph.models import TASK_TERMINAL_STATUSES
from taskgraph.plan_completion import auto_complete_plan_if_done
from taskgraph.plan_parser import parse_plan_file
from taskgraph.reconcile import (
    TaskDefinition,
    compute_unmatched_existing_tasks,
    reconcile_plan,
)
from taskgraph.store import Store
from taskgraph.tasks import cancel_task, create_plan, resolve_plan_id

log = logging.getLogger(__name__)

_UNMATCHED_SAMPLE = 10


@dataclass
class ImportResult:
    plan_id: str
    plan_created: bool = False
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    edges_added: int = 0
    canceled: list[str] = field(default_factory=list)
    skipped_blockers: list[tuple[str, str]] = field(default_factory=list)
    plan_completed: bool = False


def apply_definitions(
    store: Store,
    plan_id: str,
    definitions: Sequence[TaskDefinition],
    prefix: str | None,
    result: ImportResult,
) -> None:
    """Reconcile ``definitions`` into ``plan_id`` and record the outcome on ``result``.

    A ``draft`` plan that gained tasks becomes ``active``; a plan whose
    declared completions resolved its last open task is completed.
    """
    reconciled = reconcile_plan(store, plan_id, definitions, prefix)
    result.created = reconciled.created
    result.updated = reconciled.updated
    result.completed = reconciled.completed
    result.edges_added = reconciled.edges_added
    result.skipped_blockers = reconciled.skipped_blockers

    if reconciled.created:
        store.update("plans", {"status": "active"}, {"plan_id": plan_id, "status": "draft"})
    if reconciled.completed:
        result.plan_completed = auto_complete_plan_if_done(store, plan_id)


def relative_source_path(config: Config, path: Path) -> str:
    try:
        return str(path.resolve().relative_to(config.project_root.resolve()))
    except ValueError:
        return str(path)


def find_or_create_plan(
    store: Store, plan: str | None, title: str | None, intent: str | None, source: str
) -> tuple[str, bool]:
    ref = plan or title
    if ref:
        try:
            return resolve_plan_id(store, ref), False
        except PlanNotFound:
            pass
    plan_title = plan or title or Path(source).stem
    return create_plan(store, plan_title, intent, source_path=source), True


def import_plan(
    store: Store,
    config: Config,
    path: Path,
    *,
    plan: str | None = None,
    fmt: str | None = None,
    prefix: str | None = None,
    force: bool = False,
    replace: bool = False,
) -> ImportResult:
    """Parse ``path`` and reconcile it into a plan.

    ``plan`` names the target plan by id or title; otherwise the document's
    own title is used, and a new plan is created when nothing matches.
    Re-importing into an existing plan refuses to leave tasks unmatched
    unless ``force`` (leave them as they are) or ``replace`` (cancel them
    first) is given.
    """
    if force and replace:
        raise ValidationFailed("--force and --replace are mutually exclusive.")
    parsed = parse_plan_file(path, fmt)
    if not parsed.tasks:
        raise ValidationFailed(f"No tasks found in {path}.")

    plan_id, plan_created = find_or_create_plan(
        store, plan, parsed.title, parsed.intent, relative_source_path(config, Path(path))
    )
    result = ImportResult(plan_id=plan_id, plan_created=plan_created)

    if not plan_created:
        unmatched = compute_unmatched_existing_tasks(store, plan_id, parsed.tasks, prefix)
        if unmatched and not (force or replace):
            sample = unmatched.external_keys[:_UNMATCHED_SAMPLE]
            more = len(unmatched.external_keys) - len(sample)
            suffix = f" (and {more} more)" if more else ""
            raise ValidationFailed(
                f"Import would leave {len(unmatched.task_ids)} existing task(s) unmatched: "
                f"{', '.join(sample)}{suffix}. Use --force to import anyway "
                "or --replace to cancel those tasks first."
            )
        if unmatched and replace:
            rows = store.select(
                "tasks", {"task_id": unmatched.task_ids}, columns=["task_id", "status"]
            )
            open_ids = {r["task_id"] for r in rows if r["status"] not in TASK_TERMINAL_STATUSES}
            reason = f"Removed from plan by re-import of {Path(path).name}"
            for task_id in unmatched.task_ids:
                if task_id in open_ids:
                    cancel_task(store, task_id, reason=reason)
                    result.canceled.append(task_id)
        elif unmatched:
            log.warning(
                "Forcing import; %d existing task(s) left unmatched", len(unmatched.task_ids)
            )

    apply_definitions(store, plan_id, parsed.tasks, prefix, result)
    store.commit(f"plan-import: {Path(path).name} into {plan_id}")
    return result
