"""End-to-end tests for importing plan documents."""

import textwrap

import pytest

from taskgraph.errors import ValidationFailed
from taskgraph.importer import import_plan
from taskgraph.reconcile import build_key_map
from taskgraph.tasks import done_task, get_plan, get_task, start_task

TWO_TASKS = textwrap.dedent("""\
    # Billing rollout
    INTENT: charge customers

    TASK: schema
    TITLE: Add the schema

    TASK: api
    TITLE: Expose the API
    BLOCKED_BY: schema
""")

ONE_TASK = textwrap.dedent("""\
    # Billing rollout

    TASK: schema
    TITLE: Add the schema
""")


def _write(tmp_path, name, text):
    path = tmp_path / name
    path.write_text(text)
    return path


def _keys(store, plan_id):
    rows = store.select("tasks", {"plan_id": plan_id}, columns=["task_id", "external_key"])
    return build_key_map(rows, plan_id)


def test_import_creates_plan_and_blocks(store, config, tmp_path):
    path = _write(tmp_path, "billing.md", TWO_TASKS)
    result = import_plan(store, config, path)

    assert result.plan_created is True
    assert len(result.created) == 2
    assert result.edges_added == 1
    plan = get_plan(store, result.plan_id)
    assert plan["title"] == "Billing rollout"
    assert plan["intent"] == "charge customers"
    assert plan["status"] == "active"
    assert plan["source_path"] == "billing.md"

    keys = _keys(store, result.plan_id)
    assert get_task(store, keys["api"])["status"] == "blocked"

    start_task(store, config, keys["schema"], "alice")
    done = done_task(store, config, keys["schema"], "migrated")
    assert done["unblocked"] == [keys["api"]]
    assert get_task(store, keys["api"])["status"] == "todo"


def test_reimport_is_idempotent(store, config, tmp_path):
    path = _write(tmp_path, "billing.md", TWO_TASKS)
    first = import_plan(store, config, path)
    second = import_plan(store, config, path)
    assert second.plan_id == first.plan_id
    assert second.plan_created is False
    assert second.created == []
    assert len(second.updated) == 2
    assert second.edges_added == 0
    assert store.count("tasks", {"plan_id": first.plan_id}) == 2


def test_reimport_refuses_unmatched(store, config, tmp_path):
    import_plan(store, config, _write(tmp_path, "billing.md", TWO_TASKS))
    with pytest.raises(ValidationFailed, match="unmatched") as exc_info:
        import_plan(store, config, _write(tmp_path, "billing-v2.md", ONE_TASK))
    assert "api-" in exc_info.value.message


def test_reimport_force_leaves_unmatched(store, config, tmp_path):
    first = import_plan(store, config, _write(tmp_path, "billing.md", TWO_TASKS))
    result = import_plan(store, config, _write(tmp_path, "v2.md", ONE_TASK), force=True)
    assert result.canceled == []
    api = _keys(store, first.plan_id)["api"]
    assert get_task(store, api)["status"] == "blocked"


def test_reimport_replace_cancels_unmatched(store, config, tmp_path):
    first = import_plan(store, config, _write(tmp_path, "billing.md", TWO_TASKS))
    api = _keys(store, first.plan_id)["api"]
    result = import_plan(store, config, _write(tmp_path, "v2.md", ONE_TASK), replace=True)
    assert result.canceled == [api]
    assert get_task(store, api)["status"] == "canceled"


def test_force_and_replace_exclusive(store, config, tmp_path):
    path = _write(tmp_path, "billing.md", TWO_TASKS)
    with pytest.raises(ValidationFailed, match="mutually exclusive"):
        import_plan(store, config, path, force=True, replace=True)


def test_import_into_named_plan(store, config, tmp_path, plan_id):
    result = import_plan(store, config, _write(tmp_path, "billing.md", TWO_TASKS), plan="testplan")
    assert result.plan_id == plan_id
    assert result.plan_created is False
    assert len(result.created) == 2


def test_import_rejects_empty_plan(store, config, tmp_path):
    with pytest.raises(ValidationFailed, match="No tasks"):
        import_plan(store, config, _write(tmp_path, "empty.md", "# Nothing\n"))


def test_import_frontmatter_completed_tasks(store, config, tmp_path):
    text = textwrap.dedent("""\
        ---
        name: Cleanup
        todos:
          - id: lint
            content: Fix lint
            status: completed
          - id: docs
            content: Update docs
            blockedBy: [lint]
        ---
    """)
    result = import_plan(store, config, _write(tmp_path, "cleanup.plan.md", text))
    keys = _keys(store, result.plan_id)
    assert get_task(store, keys["lint"])["status"] == "done"
    assert get_task(store, keys["docs"])["status"] == "todo"


def test_import_with_prefix(store, config, tmp_path):
    path = _write(tmp_path, "billing.md", TWO_TASKS)
    first = import_plan(store, config, path, prefix="q3")
    again = import_plan(store, config, path, prefix="q3")
    assert again.created == []
    rows = store.select("tasks", {"plan_id": first.plan_id}, columns=["external_key"])
    assert all(r["external_key"].startswith("q3-") for r in rows)


ALL_COMPLETED = textwrap.dedent("""\
    ---
    name: Cleanup
    todos:
      - id: lint
        content: Fix lint
        status: completed
      - id: docs
        content: Update docs
        status: pending
    ---
""")


def test_reimport_completing_last_task_completes_plan(store, config, tmp_path):
    path = _write(tmp_path, "cleanup.plan.md", ALL_COMPLETED)
    first = import_plan(store, config, path)
    assert first.plan_completed is False
    assert get_plan(store, first.plan_id)["status"] == "active"

    path.write_text(ALL_COMPLETED.replace("status: pending", "status: completed"))
    again = import_plan(store, config, path)

    assert again.plan_id == first.plan_id
    assert again.completed == [_keys(store, first.plan_id)["docs"]]
    assert again.plan_completed is True
    assert get_plan(store, first.plan_id)["status"] == "done"


def test_import_fully_completed_plan_is_done(store, config, tmp_path):
    text = ALL_COMPLETED.replace("status: pending", "status: completed")
    result = import_plan(store, config, _write(tmp_path, "cleanup.plan.md", text))
    assert result.plan_created is True
    assert len(result.completed) == 2
    assert result.plan_completed is True
    assert get_plan(store, result.plan_id)["status"] == "done"
