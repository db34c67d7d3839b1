"""Tests for plan reconciliation by stable key."""

import pytest

from taskgraph.errors import CycleDetected, ReconcileFailed
from taskgraph.events import list_events
from taskgraph.hash_id import plan_hash
from taskgraph.reconcile import (
    TaskDefinition,
    build_key_map,
    compute_unmatched_existing_tasks,
    external_key_for,
    reconcile_plan,
    stable_key_from_external,
)
from taskgraph.tasks import (
    block_task,
    cancel_task,
    create_plan,
    create_task,
    get_task,
    start_task,
)


def _defs():
    return [
        TaskDefinition(stable_key="schema", title="Design schema"),
        TaskDefinition(stable_key="api", title="Build API", blocked_by=["schema"]),
    ]


def _by_key(store, plan_id):
    rows = store.select("tasks", {"plan_id": plan_id}, columns=["task_id", "external_key"])
    return build_key_map(rows, plan_id)


# -- keys --


def test_external_key_round_trip(plan_id):
    suffix = plan_hash(plan_id)
    assert external_key_for("api", plan_id) == f"api-{suffix}"
    assert external_key_for("api", plan_id, "v2") == f"v2-api-{suffix}"
    assert stable_key_from_external(f"v2-api-{suffix}", plan_id, "v2") == "api"


def test_stable_key_keeps_hex_looking_segments(plan_id):
    # Only this plan's own suffix is stripped.
    key = f"fix-cafe01-{plan_hash(plan_id)}"
    assert stable_key_from_external(key, plan_id) == "fix-cafe01"


def test_build_key_map_skips_rows_without_key(plan_id):
    rows = [
        {"task_id": "t1", "external_key": external_key_for("a", plan_id)},
        {"task_id": "t2", "external_key": None},
    ]
    assert build_key_map(rows, plan_id) == {"a": "t1"}


# -- reconcile_plan --


def test_reconcile_creates_tasks_and_edges(store, plan_id):
    result = reconcile_plan(store, plan_id, _defs())
    assert len(result.created) == 2
    assert result.updated == []
    assert result.edges_added == 1

    keys = _by_key(store, plan_id)
    assert get_task(store, keys["schema"])["status"] == "todo"
    assert get_task(store, keys["api"])["status"] == "blocked"
    assert store.count(
        "edges", {"from_task_id": keys["schema"], "to_task_id": keys["api"], "type": "blocks"}
    ) == 1


def test_reconcile_is_idempotent(store, plan_id):
    reconcile_plan(store, plan_id, _defs())
    again = reconcile_plan(store, plan_id, _defs())
    assert again.created == []
    assert len(again.updated) == 2
    assert again.edges_added == 0
    assert store.count("tasks", {"plan_id": plan_id}) == 2
    assert store.count("edges") == 1


def test_reconcile_updates_fields(store, plan_id):
    reconcile_plan(store, plan_id, _defs())
    changed = [
        TaskDefinition(stable_key="schema", title="Design schema v2", docs=["db.md"]),
        TaskDefinition(stable_key="api", title="Build API", blocked_by=["schema"]),
    ]
    reconcile_plan(store, plan_id, changed)
    task = get_task(store, _by_key(store, plan_id)["schema"])
    assert task["title"] == "Design schema v2"
    assert task["docs"] == '["db.md"]'


def test_reconcile_blocker_declared_later(store, plan_id):
    defs = [
        TaskDefinition(stable_key="api", title="Build API", blocked_by=["schema"]),
        TaskDefinition(stable_key="schema", title="Design schema"),
    ]
    result = reconcile_plan(store, plan_id, defs)
    assert result.edges_added == 1
    assert get_task(store, _by_key(store, plan_id)["api"])["status"] == "blocked"


def test_reconcile_skips_unknown_blockers(store, plan_id):
    defs = [TaskDefinition(stable_key="api", title="Build API", blocked_by=["ghost"])]
    result = reconcile_plan(store, plan_id, defs)
    assert result.skipped_blockers == [("api", "ghost")]
    assert result.edges_added == 0
    assert get_task(store, result.created[0])["status"] == "todo"


def test_reconcile_applies_declared_status(store, plan_id):
    defs = [
        TaskDefinition(stable_key="schema", title="Design schema", status="done"),
        TaskDefinition(stable_key="api", title="Build API", blocked_by=["schema"]),
    ]
    reconcile_plan(store, plan_id, defs)
    keys = _by_key(store, plan_id)
    assert get_task(store, keys["schema"])["status"] == "done"
    assert get_task(store, keys["api"])["status"] == "todo"


def test_reconcile_unblocks_after_blocker_done(store, plan_id):
    reconcile_plan(store, plan_id, _defs())
    defs = _defs()
    defs[0].status = "done"
    reconcile_plan(store, plan_id, defs)
    assert get_task(store, _by_key(store, plan_id)["api"])["status"] == "todo"


def test_reconcile_declared_done_unblocks_dependent_in_other_plan(store, plan_id):
    reconcile_plan(store, plan_id, [TaskDefinition(stable_key="a", title="A")])
    blocker = _by_key(store, plan_id)["a"]
    other_plan = create_plan(store, "downstream")
    dependent = create_task(store, other_plan, "Consume A")["task_id"]
    block_task(store, dependent, blocker)
    assert get_task(store, dependent)["status"] == "blocked"

    result = reconcile_plan(store, plan_id, [TaskDefinition("a", "A", status="done")])

    assert result.completed == [blocker]
    assert get_task(store, blocker)["status"] == "done"
    assert get_task(store, dependent)["status"] == "todo"
    kinds = [e["kind"] for e in list_events(store, blocker)]
    assert kinds == ["created", "done"]
    assert list_events(store, blocker)[-1]["body"].evidence == "plan import"


def test_reconcile_declared_done_leaves_canceled_task(store, plan_id):
    reconcile_plan(store, plan_id, [TaskDefinition(stable_key="a", title="A")])
    task_id = _by_key(store, plan_id)["a"]
    cancel_task(store, task_id, "dropped")

    result = reconcile_plan(store, plan_id, [TaskDefinition("a", "A", status="done")])

    assert result.completed == []
    assert get_task(store, task_id)["status"] == "canceled"


def test_reconcile_declared_done_applied_once(store, plan_id):
    defs = [TaskDefinition("a", "A", status="done")]
    first = reconcile_plan(store, plan_id, defs)
    again = reconcile_plan(store, plan_id, defs)
    assert len(first.completed) == 1
    assert again.completed == []
    kinds = [e["kind"] for e in list_events(store, first.created[0])]
    assert kinds.count("done") == 1


def test_reconcile_without_status_keeps_progress(store, config, plan_id):
    reconcile_plan(store, plan_id, _defs())
    schema = _by_key(store, plan_id)["schema"]
    start_task(store, config, schema, "alice")
    reconcile_plan(store, plan_id, _defs())
    assert get_task(store, schema)["status"] == "doing"


def test_reconcile_prefix_scopes_keys(store, plan_id):
    reconcile_plan(store, plan_id, _defs(), prefix="v1")
    rows = store.select("tasks", {"plan_id": plan_id}, columns=["external_key"])
    assert {r["external_key"] for r in rows} == {
        external_key_for("schema", plan_id, "v1"),
        external_key_for("api", plan_id, "v1"),
    }
    again = reconcile_plan(store, plan_id, _defs(), prefix="v1")
    assert again.created == []


def test_reconcile_cycle_fails_with_stable_key(store, plan_id):
    defs = [
        TaskDefinition(stable_key="a", title="A", blocked_by=["b"]),
        TaskDefinition(stable_key="b", title="B", blocked_by=["a"]),
    ]
    with pytest.raises(ReconcileFailed) as exc_info:
        reconcile_plan(store, plan_id, defs)
    assert exc_info.value.stable_key == "b"
    assert isinstance(exc_info.value.cause, CycleDetected)
    # The first edge stays applied.
    assert store.count("edges") == 1


def test_reconcile_leaves_unmatched_tasks_alone(store, plan_id):
    reconcile_plan(store, plan_id, _defs())
    reconcile_plan(store, plan_id, _defs()[:1])
    api = _by_key(store, plan_id)["api"]
    assert get_task(store, api)["status"] == "blocked"


# -- compute_unmatched_existing_tasks --


def test_unmatched_reports_missing_keys(store, plan_id):
    reconcile_plan(store, plan_id, _defs())
    unmatched = compute_unmatched_existing_tasks(store, plan_id, _defs()[:1])
    assert unmatched
    assert unmatched.task_ids == [_by_key(store, plan_id)["api"]]
    assert unmatched.external_keys == [external_key_for("api", plan_id)]


def test_unmatched_empty_when_all_present(store, plan_id):
    reconcile_plan(store, plan_id, _defs())
    assert not compute_unmatched_existing_tasks(store, plan_id, _defs())


def test_unmatched_ignores_tasks_never_imported(store, plan_id):
    create_task(store, plan_id, "hand-made")
    assert not compute_unmatched_existing_tasks(store, plan_id, [])
