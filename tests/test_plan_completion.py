"""Tests for automatic plan completion."""

import pytest

from taskgraph.plan_completion import auto_complete_plan_if_done
from taskgraph.tasks import cancel_task, create_plan, create_task, done_task, get_plan, start_task


def _set_status(store, task, status):
    store.update("tasks", {"status": status}, {"task_id": task["task_id"]})


def test_empty_plan_is_not_completed(store, plan_id):
    assert auto_complete_plan_if_done(store, plan_id) is False
    assert get_plan(store, plan_id)["status"] == "active"


def test_all_canceled_is_not_completed(store, plan_id):
    for title in ("a", "b"):
        _set_status(store, create_task(store, plan_id, title), "canceled")
    assert auto_complete_plan_if_done(store, plan_id) is False
    assert get_plan(store, plan_id)["status"] == "active"


def test_open_task_keeps_plan_open(store, plan_id):
    _set_status(store, create_task(store, plan_id, "a"), "done")
    create_task(store, plan_id, "b")
    assert auto_complete_plan_if_done(store, plan_id) is False


@pytest.mark.parametrize("open_status", ["doing", "blocked"])
def test_doing_or_blocked_keeps_plan_open(store, plan_id, open_status):
    _set_status(store, create_task(store, plan_id, "a"), "done")
    _set_status(store, create_task(store, plan_id, "b"), open_status)
    assert auto_complete_plan_if_done(store, plan_id) is False


def test_done_and_canceled_completes(store, plan_id):
    _set_status(store, create_task(store, plan_id, "a"), "done")
    _set_status(store, create_task(store, plan_id, "b"), "canceled")
    assert auto_complete_plan_if_done(store, plan_id) is True
    assert get_plan(store, plan_id)["status"] == "done"


def test_already_done_plan_reports_no_change(store, plan_id):
    _set_status(store, create_task(store, plan_id, "a"), "done")
    assert auto_complete_plan_if_done(store, plan_id) is True
    assert auto_complete_plan_if_done(store, plan_id) is False


def test_abandoned_plan_is_not_revived(store, plan_id):
    _set_status(store, create_task(store, plan_id, "a"), "done")
    store.update("plans", {"status": "abandoned"}, {"plan_id": plan_id})
    assert auto_complete_plan_if_done(store, plan_id) is False
    assert get_plan(store, plan_id)["status"] == "abandoned"


def test_draft_plan_completes(store):
    pid = create_plan(store, "draft plan")
    task = create_task(store, pid, "only")
    _set_status(store, task, "done")
    # create_task activated the plan; put it back to draft.
    store.update("plans", {"status": "draft"}, {"plan_id": pid})
    assert auto_complete_plan_if_done(store, pid) is True


def test_done_task_completes_plan(store, config):
    pid = create_plan(store, "one task")
    task = create_task(store, pid, "only")
    start_task(store, config, task["task_id"], "alice")
    result = done_task(store, config, task["task_id"], "merged")
    assert result["plan_completed"] is True
    assert get_plan(store, pid)["status"] == "done"


def test_cancel_last_open_task_completes_plan(store, config):
    pid = create_plan(store, "two tasks")
    first = create_task(store, pid, "first")
    second = create_task(store, pid, "second")
    start_task(store, config, first["task_id"], "alice")
    assert done_task(store, config, first["task_id"])["plan_completed"] is False
    assert cancel_task(store, second["task_id"], "scope cut")["plan_completed"] is True
    assert get_plan(store, pid)["status"] == "done"
