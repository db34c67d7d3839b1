from __future__ import annotations

import contextlib
import dataclasses
import json
import logging
import sys
from collections.abc import Iterator
from pathlib import Path

import click

from taskgraph import __version__
from taskgraph.config import Config, load_config, write_default_config
from taskgraph.errors import ErrorCode, TaskGraphError
from taskgraph.events import list_events
from taskgraph.export import export_markdown, export_mermaid, write_export
from taskgraph.importer import import_plan
from taskgraph.models import (
    VALID_CHANGE_TYPES,
    VALID_EDGE_TYPES,
    VALID_GATE_TYPES,
    VALID_PLAN_STATUSES,
    VALID_TASK_STATUSES,
    decode_json_list,
)
from taskgraph.plan_parser import PLAN_FORMATS
from taskgraph.stats import agent_stats, shared_dimensions
from taskgraph.store import DoltStore, Store, open_store
from taskgraph.tasks import (
    LINK_DIRECTIONS,
    NOTE_TYPES,
    add_edge,
    add_note,
    block_task,
    cancel_plan,
    cancel_task,
    create_gate,
    create_plan,
    create_task,
    done_task,
    get_task,
    list_gates,
    list_plans,
    list_tasks,
    next_runnable,
    plan_summary,
    resolve_gate,
    resolve_plan_id,
    resolve_task_id,
    run_batch,
    split_task,
    start_task,
    sync_all_blocked,
)
from taskgraph.template import apply_template, parse_var_pairs

log = logging.getLogger(__name__)

_ERROR_HINTS = {
    ErrorCode.TASK_NOT_FOUND: "Run 'tg task list' to see tasks.",
    ErrorCode.PLAN_NOT_FOUND: "Run 'tg plan list' to see plans.",
    ErrorCode.TASK_NOT_RUNNABLE: "Run 'tg next' to see runnable tasks.",
}


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click usage errors and engine errors (``TaskGraphError``) are both
    emitted as a JSON object on stdout with exit code 1. Unknown commands
    get fuzzy-matched suggestions via ``difflib.get_close_matches``.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except TaskGraphError as e:
            payload = {"ok": False, **e.to_dict()}
            hint = _ERROR_HINTS.get(e.code)
            if hint:
                payload["hint"] = hint
            click.echo(json.dumps(payload))
            if standalone_mode:
                raise SystemExit(1) from None
            return 1
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


def _configure_logging(ctx: click.Context, param: click.Parameter, verbose: bool) -> bool:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(levelname)s %(name)s: %(message)s",
    )
    return verbose


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    expose_value=False,
    is_eager=True,
    callback=_configure_logging,
    help="Log debug output (including store statements) to stderr.",
)
def main():
    """Track a graph of blocking tasks grouped into plans.

    \b
    Quick start:
      tg init                              Create .taskgraph/ in the current directory
      tg import plan.md                    Import (or re-import) a plan document
      tg next                              List runnable tasks
      tg start tg-1a2b3c --agent alice     Claim a task
      tg done tg-1a2b3c --evidence "..."   Finish it and unblock dependents

    \b
    Key concepts:
      plan      A group of tasks, usually imported from a document
      task      A unit of work: todo -> doing -> done (or blocked / canceled)
      edge      'blocks' (ordering) or 'relates' (informational) link between tasks
      gate      An external condition that keeps a task blocked until resolved
    """


@contextlib.contextmanager
def _session() -> Iterator[tuple[Config, Store]]:
    config = load_config()
    with open_store(config) as store:
        yield config, store


def _emit(payload: object) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _parse_id_list(values: tuple[str, ...]) -> list[str]:
    """Accept ids as separate arguments, comma-separated, or both."""
    ids: list[str] = []
    for value in values:
        ids.extend(part.strip() for part in value.split(",") if part.strip())
    if not ids:
        raise click.UsageError("At least one task id is required.")
    return ids


def _emit_batch(batch) -> None:
    _emit(batch.to_dict())
    if batch.any_failed:
        raise click.exceptions.Exit(1)


def _task_payload(row) -> dict:
    payload = dict(row)
    for column in ("docs", "skills", "acceptance"):
        payload[column] = decode_json_list(payload.get(column))
    return payload


# -- init --


def _ensure_gitignore_entry(cwd: Path) -> None:
    """Add .taskgraph/worktrees/ to .gitignore if not already present."""
    gitignore = cwd / ".gitignore"
    entry = ".taskgraph/worktrees/"
    if gitignore.exists():
        content = gitignore.read_text()
        known = (entry, ".taskgraph/", ".taskgraph")
        if any(line.strip() in known for line in content.splitlines()):
            return
        with open(gitignore, "a") as f:
            if content and not content.endswith("\n"):
                f.write("\n")
            f.write(f"{entry}\n")
    else:
        gitignore.write_text(f"{entry}\n")


@main.command()
@click.option(
    "--store",
    "store_kind",
    type=click.Choice(["sqlite", "dolt"]),
    default="sqlite",
    show_default=True,
    help="Storage backend.",
)
@click.option(
    "--main-branch", default="main", show_default=True, help="Branch task worktrees merge into."
)
@click.option("--remote-url", default=None, help="Remote for the store (recorded only).")
def init(store_kind: str, main_branch: str, remote_url: str | None):
    """Set up taskgraph in the current directory."""
    root = Path.cwd()
    config = write_default_config(
        root, store=store_kind, main_branch=main_branch, remote_url=remote_url
    )
    if config.store == "dolt":
        DoltStore(config.dolt_repo_path, auto_commit=config.auto_commit).init_repo()
    else:
        with open_store(config):
            pass
    if (root / ".git").exists():
        _ensure_gitignore_entry(root)
    _emit(
        {
            "ok": True,
            "project_root": str(config.project_root),
            "store": config.store,
            "db_path": str(config.db_path if config.store == "sqlite" else config.dolt_repo_path),
            "main_branch": config.main_branch,
        }
    )


# -- plans --


@main.group()
def plan():
    """Create, inspect, and abandon plans."""


@plan.command("create")
@click.argument("title")
@click.option("--intent", default=None, help="Why this plan exists.")
def plan_create(title: str, intent: str | None):
    """Create an empty draft plan."""
    with _session() as (_config, store):
        plan_id = create_plan(store, title, intent)
        _emit(plan_summary(store, plan_id))


@plan.command("list")
@click.option("--status", type=click.Choice(sorted(VALID_PLAN_STATUSES)), default=None)
def plan_list(status: str | None):
    """List plans."""
    with _session() as (_config, store):
        _emit(list_plans(store, status))


@plan.command("show")
@click.argument("plan_ref")
@click.option("--tasks", "show_tasks", is_flag=True, help="Include the plan's tasks.")
def plan_show(plan_ref: str, show_tasks: bool):
    """Show a plan (by id or title) with task counts."""
    with _session() as (_config, store):
        plan_id = resolve_plan_id(store, plan_ref)
        payload = plan_summary(store, plan_id)
        if show_tasks:
            payload["tasks"] = [_task_payload(t) for t in list_tasks(store, plan_id)]
    _emit(payload)


@plan.command("cancel")
@click.argument("plan_ref")
def plan_cancel(plan_ref: str):
    """Abandon a plan. Its tasks are left as they are but no longer offered by 'tg next'."""
    with _session() as (_config, store):
        _emit(cancel_plan(store, resolve_plan_id(store, plan_ref)))


# -- tasks --


@main.group()
def task():
    """Create and inspect tasks."""


@task.command("create")
@click.argument("title")
@click.option("--plan", "plan_ref", required=True, help="Plan id or title.")
@click.option("--intent", default=None)
@click.option("--change-type", type=click.Choice(sorted(VALID_CHANGE_TYPES)), default=None)
@click.option("--doc", "docs", multiple=True, help="Doc tag (repeatable).")
@click.option("--skill", "skills", multiple=True, help="Skill tag (repeatable).")
@click.option("--acceptance", multiple=True, help="Acceptance criterion (repeatable).")
@click.option("--agent", default=None, help="Agent the task is meant for.")
def task_create(
    title: str,
    plan_ref: str,
    intent: str | None,
    change_type: str | None,
    docs: tuple[str, ...],
    skills: tuple[str, ...],
    acceptance: tuple[str, ...],
    agent: str | None,
):
    """Create a task in a plan."""
    with _session() as (_config, store):
        row = create_task(
            store,
            resolve_plan_id(store, plan_ref),
            title,
            intent=intent,
            change_type=change_type,
            docs=docs,
            skills=skills,
            acceptance=acceptance,
            agent=agent,
        )
    _emit(_task_payload(row))


@task.command("show")
@click.argument("task_ref")
def task_show(task_ref: str):
    """Show task details."""
    with _session() as (_config, store):
        row = get_task(store, resolve_task_id(store, task_ref))
    _emit(_task_payload(row))


@task.command("list")
@click.option("--plan", "plan_ref", default=None, help="Plan id or title.")
@click.option("--status", type=click.Choice(sorted(VALID_TASK_STATUSES)), default=None)
def task_list(plan_ref: str | None, status: str | None):
    """List tasks."""
    with _session() as (_config, store):
        plan_id = resolve_plan_id(store, plan_ref) if plan_ref else None
        _emit([_task_payload(t) for t in list_tasks(store, plan_id, status)])


@task.command("events")
@click.argument("task_ref")
def task_events(task_ref: str):
    """Show a task's event log, oldest first."""
    with _session() as (_config, store):
        task_id = resolve_task_id(store, task_ref)
        get_task(store, task_id)
        events = list_events(store, task_id)
    _emit([{**e, "body": dataclasses.asdict(e["body"])} for e in events])


# -- lifecycle --


@main.command()
@click.argument("task_ids", nargs=-1)
@click.option("--agent", default="default", show_default=True, help="Who is claiming the task.")
@click.option("--force", is_flag=True, help="Re-claim a task already being worked.")
@click.option("--worktree", is_flag=True, help="Create a git worktree (branch tg/<hash_id>).")
def start(task_ids: tuple[str, ...], agent: str, force: bool, worktree: bool):
    """Claim one or more tasks (space- or comma-separated ids)."""
    ids = _parse_id_list(task_ids)
    with _session() as (config, store):
        batch = run_batch(
            ids,
            lambda ident: start_task(
                store, config, resolve_task_id(store, ident), agent, force=force, worktree=worktree
            ),
        )
    _emit_batch(batch)


@main.command()
@click.argument("task_ids", nargs=-1)
@click.option("--evidence", default="", help="What shows the task is done.")
@click.option("--force", is_flag=True, help="Skip the transition check (e.g. todo -> done).")
@click.option("--no-merge", is_flag=True, help="Do not merge the task's worktree branch.")
def done(task_ids: tuple[str, ...], evidence: str, force: bool, no_merge: bool):
    """Mark one or more tasks done and unblock their dependents."""
    ids = _parse_id_list(task_ids)
    with _session() as (config, store):
        batch = run_batch(
            ids,
            lambda ident: done_task(
                store,
                config,
                resolve_task_id(store, ident),
                evidence,
                force=force,
                merge=not no_merge,
            ),
        )
    _emit_batch(batch)


@main.command()
@click.argument("task_ids", nargs=-1)
@click.option("--reason", default=None)
@click.option("--agent", default="default", show_default=True)
def cancel(task_ids: tuple[str, ...], reason: str | None, agent: str):
    """Cancel (soft-delete) one or more tasks."""
    ids = _parse_id_list(task_ids)
    with _session() as (_config, store):
        batch = run_batch(
            ids, lambda ident: cancel_task(store, resolve_task_id(store, ident), reason, agent)
        )
    _emit_batch(batch)


@main.command()
@click.argument("task_ref")
@click.option("--on", "blocker_ref", required=True, help="Task that must finish first.")
@click.option("--reason", default=None)
def block(task_ref: str, blocker_ref: str, reason: str | None):
    """Make TASK wait for another task."""
    with _session() as (_config, store):
        _emit(
            block_task(
                store, resolve_task_id(store, task_ref), resolve_task_id(store, blocker_ref), reason
            )
        )


@main.group()
def edge():
    """Manage task edges."""


@edge.command("add")
@click.argument("from_ref")
@click.argument("to_ref")
@click.option("--type", "edge_type", type=click.Choice(sorted(VALID_EDGE_TYPES)), default="blocks")
@click.option("--reason", default=None)
def edge_add(from_ref: str, to_ref: str, edge_type: str, reason: str | None):
    """Add an edge FROM -> TO. A 'blocks' edge makes TO wait for FROM."""
    with _session() as (_config, store):
        _emit(
            add_edge(
                store,
                resolve_task_id(store, from_ref),
                resolve_task_id(store, to_ref),
                edge_type,
                reason,
            )
        )


@main.command()
@click.argument("task_ref")
@click.option("--into", required=True, help="Pipe-separated titles, e.g. 'Part 1|Part 2'.")
@click.option("--keep-original/--cancel-original", default=True, show_default=True)
@click.option(
    "--link-direction",
    type=click.Choice(LINK_DIRECTIONS),
    default="original-to-new",
    show_default=True,
)
@click.option("--agent", default="default", show_default=True)
def split(task_ref: str, into: str, keep_original: bool, link_direction: str, agent: str):
    """Split a task into several new tasks."""
    with _session() as (_config, store):
        _emit(
            split_task(
                store,
                resolve_task_id(store, task_ref),
                into.split("|"),
                keep_original=keep_original,
                link_direction=link_direction,
                agent=agent,
            )
        )


@main.command()
@click.argument("task_ref")
@click.argument("message")
@click.option("--agent", default="default", show_default=True)
@click.option(
    "--type", "note_type", type=click.Choice(NOTE_TYPES), default="note", show_default=True
)
def note(task_ref: str, message: str, agent: str, note_type: str):
    """Append a note to a task's event log. Review notes start with PASS or FAIL."""
    with _session() as (_config, store):
        _emit(add_note(store, resolve_task_id(store, task_ref), message, agent, note_type))


@main.command("next")
@click.option("--plan", "plan_ref", default=None, help="Plan id or title.")
@click.option("--limit", default=10, show_default=True, type=click.IntRange(min=1))
def next_cmd(plan_ref: str | None, limit: int):
    """List runnable tasks, oldest first."""
    with _session() as (_config, store):
        plan_id = resolve_plan_id(store, plan_ref) if plan_ref else None
        _emit([_task_payload(t) for t in next_runnable(store, plan_id, limit)])


@main.command("import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--plan", "plan_ref", default=None, help="Target plan id or title.")
@click.option(
    "--format", "fmt", type=click.Choice(PLAN_FORMATS), default=None, help="Default: detect."
)
@click.option("--prefix", default=None, help="Prefix for the tasks' external keys.")
@click.option("--force", is_flag=True, help="Import even if existing tasks would be unmatched.")
@click.option("--replace", is_flag=True, help="Cancel unmatched existing tasks first.")
def import_cmd(
    path: Path,
    plan_ref: str | None,
    fmt: str | None,
    prefix: str | None,
    force: bool,
    replace: bool,
):
    """Import or re-import a plan document."""
    with _session() as (config, store):
        result = import_plan(
            store, config, path, plan=plan_ref, fmt=fmt, prefix=prefix, force=force, replace=replace
        )
    _emit({"ok": True, **dataclasses.asdict(result)})


@main.command("sync-blocked")
def sync_blocked():
    """Re-derive blocked status for every open task."""
    with _session() as (_config, store):
        changed = sync_all_blocked(store)
    _emit({"ok": True, "changed": changed})


# -- gates --


@main.group()
def gate():
    """Manage gates (external conditions that block tasks)."""


@gate.command("create")
@click.argument("name")
@click.option("--task", "task_ref", required=True, help="Task to block until the gate is resolved.")
@click.option("--type", "gate_type", type=click.Choice(sorted(VALID_GATE_TYPES)), default="human")
def gate_create(name: str, task_ref: str, gate_type: str):
    """Create a gate and block the task."""
    with _session() as (_config, store):
        _emit(create_gate(store, resolve_task_id(store, task_ref), name, gate_type))


@gate.command("resolve")
@click.argument("gate_id")
def gate_resolve(gate_id: str):
    """Resolve a gate; the task unblocks once nothing else holds it."""
    with _session() as (_config, store):
        _emit(resolve_gate(store, gate_id))


@gate.command("list")
@click.option("--task", "task_ref", default=None)
@click.option("--status", type=click.Choice(["pending", "resolved"]), default=None)
def gate_list(task_ref: str | None, status: str | None):
    """List gates."""
    with _session() as (_config, store):
        task_id = resolve_task_id(store, task_ref) if task_ref else None
        _emit(list_gates(store, task_id, status))


# -- templates --


@main.group()
def template():
    """Apply plan templates with variable substitution."""


@template.command("apply")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--plan", "plan_ref", required=True, help="Target plan id or title.")
@click.option(
    "--var", "var_pairs", multiple=True, metavar="KEY=VALUE", help="Substitute {{KEY}}."
)
@click.option("--prefix", default=None, help="Prefix for the tasks' external keys.")
def template_apply(path: Path, plan_ref: str, var_pairs: tuple[str, ...], prefix: str | None):
    """Substitute variables into a template and reconcile it into a plan."""
    with _session() as (config, store):
        result = apply_template(
            store, config, path, plan_ref, parse_var_pairs(var_pairs), prefix=prefix
        )
    _emit({"ok": True, **dataclasses.asdict(result)})


# -- reporting --


@main.command()
@click.option("--plan", "plan_ref", default=None, help="Plan id or title.")
@click.option("--agent", default=None, help="Only this agent.")
def stats(plan_ref: str | None, agent: str | None):
    """Per-agent completions, average elapsed time and review verdicts."""
    with _session() as (_config, store):
        plan_id = resolve_plan_id(store, plan_ref) if plan_ref else None
        _emit([s.to_dict() for s in agent_stats(store, plan_id, agent)])


@main.group("export")
def export_group():
    """Export plans as documents or graphs."""


@export_group.command("markdown")
@click.option("--plan", "plan_ref", required=True, help="Plan id or title.")
@click.option(
    "--out",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Default: exports/<plan_id>.md in the project.",
)
def export_markdown_cmd(plan_ref: str, out: Path | None):
    """Write a plan as a frontmatter document that can be re-imported."""
    with _session() as (config, store):
        plan_id = resolve_plan_id(store, plan_ref)
        text = export_markdown(store, plan_id)
    target = write_export(config, text, out or config.project_root / "exports" / f"{plan_id}.md")
    _emit({"ok": True, "plan_id": plan_id, "path": str(target)})


@export_group.command("mermaid")
@click.option("--plan", "plan_ref", default=None, help="Plan id or title. Default: all tasks.")
@click.option("--out", type=click.Path(dir_okay=False, path_type=Path), default=None)
def export_mermaid_cmd(plan_ref: str | None, out: Path | None):
    """Render the task graph as Mermaid ``graph TD`` text."""
    with _session() as (config, store):
        plan_id = resolve_plan_id(store, plan_ref) if plan_ref else None
        text = export_mermaid(store, plan_id)
    payload: dict = {"ok": True, "plan_id": plan_id, "mermaid": text}
    if out is not None:
        payload["path"] = str(write_export(config, text, out))
    _emit(payload)


@main.group()
def crossplan():
    """Views across plans."""


@crossplan.command("domains")
def crossplan_domains():
    """Docs referenced by tasks in more than one plan."""
    with _session() as (_config, store):
        _emit(shared_dimensions(store, "domains"))


@crossplan.command("skills")
def crossplan_skills():
    """Skills needed by tasks in more than one plan."""
    with _session() as (_config, store):
        _emit(shared_dimensions(store, "skills"))
