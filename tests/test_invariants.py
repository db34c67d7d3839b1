"""Tests for the task state machine and the blocker cycle guard."""

import itertools

import pytest

from taskgraph.errors import CycleDetected, InvalidTransition, TaskNotFound, TaskNotRunnable
from taskgraph.invariants import (
    TASK_TRANSITIONS,
    check_no_blocker_cycle,
    check_runnable,
    valid_transition,
)
from taskgraph.models import VALID_TASK_STATUSES
from taskgraph.tasks import add_edge, cancel_task, create_task, done_task, start_task


def _edges(*pairs):
    return [{"from_task_id": a, "to_task_id": b, "type": "blocks"} for a, b in pairs]


# -- valid_transition --


@pytest.mark.parametrize(
    ("current", "nxt"),
    [
        ("todo", "doing"),
        ("doing", "done"),
        ("todo", "blocked"),
        ("blocked", "todo"),
        ("doing", "blocked"),
        ("todo", "canceled"),
        ("doing", "canceled"),
        ("blocked", "canceled"),
    ],
)
def test_allowed_transitions(current, nxt):
    valid_transition(current, nxt)


@pytest.mark.parametrize(
    ("current", "nxt"),
    [(t, n) for t in ("done", "canceled") for n in sorted(VALID_TASK_STATUSES)],
)
def test_nothing_leaves_terminal_states(current, nxt):
    with pytest.raises(InvalidTransition) as exc_info:
        valid_transition(current, nxt)
    assert exc_info.value.current == current
    assert exc_info.value.next_status == nxt


@pytest.mark.parametrize("status", sorted(VALID_TASK_STATUSES))
def test_self_transition_rejected(status):
    with pytest.raises(InvalidTransition):
        valid_transition(status, status)


def test_no_backwards_transitions():
    backwards = [("doing", "todo"), ("done", "doing"), ("todo", "done"), ("blocked", "done")]
    for current, nxt in backwards:
        with pytest.raises(InvalidTransition):
            valid_transition(current, nxt)


def test_transition_table_covers_every_status():
    assert set(TASK_TRANSITIONS) == VALID_TASK_STATUSES
    for current, targets in TASK_TRANSITIONS.items():
        assert current not in targets
        assert targets <= VALID_TASK_STATUSES


# -- check_no_blocker_cycle --


def test_cycle_rejected():
    with pytest.raises(CycleDetected) as exc_info:
        check_no_blocker_cycle("C", "A", _edges(("A", "B"), ("B", "C")))
    assert exc_info.value.from_task_id == "C"
    assert exc_info.value.to_task_id == "A"


def test_transitively_implied_edge_is_not_a_cycle():
    check_no_blocker_cycle("A", "C", _edges(("A", "B"), ("B", "C")))


def test_self_edge_rejected():
    with pytest.raises(CycleDetected):
        check_no_blocker_cycle("A", "A", [])


def test_two_node_cycle_rejected():
    with pytest.raises(CycleDetected):
        check_no_blocker_cycle("B", "A", _edges(("A", "B")))


def test_relates_edges_ignored():
    edges = [{"from_task_id": "A", "to_task_id": "B", "type": "relates"}]
    check_no_blocker_cycle("B", "A", edges)


def test_diamond_is_acyclic():
    edges = _edges(("A", "B"), ("A", "C"), ("B", "D"), ("C", "D"))
    check_no_blocker_cycle("A", "D", edges)
    with pytest.raises(CycleDetected):
        check_no_blocker_cycle("D", "A", edges)


def test_long_chain_cycle():
    nodes = [f"n{i}" for i in range(50)]
    edges = _edges(*itertools.pairwise(nodes))
    with pytest.raises(CycleDetected):
        check_no_blocker_cycle(nodes[-1], nodes[0], edges)


# -- check_runnable --


def test_check_runnable_missing_task(store):
    with pytest.raises(TaskNotFound):
        check_runnable(store, "00000000-0000-4000-8000-00000000dead")


def test_check_runnable_todo_without_blockers(store, plan_id):
    task = create_task(store, plan_id, "free")
    check_runnable(store, task["task_id"])


def test_check_runnable_not_todo(store, plan_id, config):
    task = create_task(store, plan_id, "busy")
    start_task(store, config, task["task_id"], "alice")
    with pytest.raises(InvalidTransition):
        check_runnable(store, task["task_id"])


def test_check_runnable_counts_unmet_blockers(store, plan_id):
    a = create_task(store, plan_id, "a")
    b = create_task(store, plan_id, "b")
    c = create_task(store, plan_id, "c")
    add_edge(store, a["task_id"], c["task_id"])
    add_edge(store, b["task_id"], c["task_id"])
    # c is now blocked; put it back to todo directly to exercise the count.
    store.update("tasks", {"status": "todo"}, {"task_id": c["task_id"]})
    with pytest.raises(TaskNotRunnable) as exc_info:
        check_runnable(store, c["task_id"])
    assert exc_info.value.unmet_blockers == 2


def test_check_runnable_resolved_blockers_do_not_count(store, plan_id, config):
    a = create_task(store, plan_id, "a")
    b = create_task(store, plan_id, "b")
    c = create_task(store, plan_id, "c")
    add_edge(store, a["task_id"], c["task_id"])
    add_edge(store, b["task_id"], c["task_id"])
    start_task(store, config, a["task_id"], "alice")
    done_task(store, config, a["task_id"], "shipped")
    cancel_task(store, b["task_id"], "not needed")
    check_runnable(store, c["task_id"])
