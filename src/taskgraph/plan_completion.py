"""Mark a plan ``done`` once all of its tasks are resolved."""

from __future__ import annotations

import logging

from taskgraph.models import utcnow
from taskgraph.store import Store

log = logging.getLogger(__name__)

_STATUS_COUNTS_SQL = "SELECT status, COUNT(*) AS cnt FROM tasks WHERE plan_id = ? GROUP BY status"


def auto_complete_plan_if_done(store: Store, plan_id: str) -> bool:
    """Complete ``plan_id`` when it has tasks, at least one done, and none open.

    A plan whose tasks were all canceled is left alone.
    """
    counts = {
        row["status"]: int(row["cnt"]) for row in store.raw_query(_STATUS_COUNTS_SQL, (plan_id,))
    }
    total = sum(counts.values())
    done = counts.get("done", 0)
    resolved = done + counts.get("canceled", 0)
    if total == 0 or done == 0 or resolved != total:
        return False

    updated = store.update(
        "plans",
        {"status": "done", "updated_at": utcnow()},
        {"plan_id": plan_id, "status": ["draft", "active", "paused"]},
    )
    if updated:
        log.info("Plan %s completed: %d task(s) resolved", plan_id, total)
    return bool(updated)
