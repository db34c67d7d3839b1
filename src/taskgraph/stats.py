"""Metrics derived from the event log, and views across plans.

Agent metrics read typed event bodies: a ``done`` event is credited to
the agent of the latest ``started`` event before it, and the time between
the two is that task's elapsed time. Tasks completed without being started
(forced, or completed by plan import) have no agent and are not counted.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime

from taskgraph.errors import ValidationFailed
from taskgraph.models import DoneBody, NoteBody, StartedBody, decode_event_body, decode_json_list
from taskgraph.store import Store

log = logging.getLogger(__name__)

_VERDICT_RE = re.compile(r"^\s*(PASS|FAIL)\b", re.IGNORECASE)

SHARED_DIMENSIONS = {"domains": "docs", "skills": "skills"}


@dataclass
class AgentStats:
    agent: str
    tasks_done: int = 0
    total_seconds: float = 0.0
    review_pass: int = 0
    review_fail: int = 0

    @property
    def avg_seconds(self) -> float | None:
        if not self.tasks_done:
            return None
        return round(self.total_seconds / self.tasks_done, 3)

    def to_dict(self) -> dict:
        return {
            "agent": self.agent,
            "tasks_done": self.tasks_done,
            "avg_seconds": self.avg_seconds,
            "review_pass": self.review_pass,
            "review_fail": self.review_fail,
        }


def _event_time(value: str) -> datetime:
    return datetime.fromisoformat(value)


def agent_stats(
    store: Store, plan_id: str | None = None, agent: str | None = None
) -> list[AgentStats]:
    """Tasks completed, average elapsed time and review verdicts per agent.

    Sorted by tasks completed, most first.
    """
    where: dict = {"kind": ["started", "done", "note"]}
    if plan_id:
        tasks = store.select("tasks", {"plan_id": plan_id}, columns=["task_id"])
        where["task_id"] = [row["task_id"] for row in tasks]
    rows = store.select("events", where, order_by="created_at")

    claims: dict[str, tuple[str, datetime]] = {}
    stats: dict[str, AgentStats] = {}
    for row in rows:
        body = decode_event_body(row["kind"], row["body"])
        if isinstance(body, StartedBody):
            claims[row["task_id"]] = (body.agent, _event_time(row["created_at"]))
        elif isinstance(body, DoneBody):
            claim = claims.get(row["task_id"])
            if claim is None:
                continue
            name, since = claim
            entry = stats.setdefault(name, AgentStats(name))
            entry.tasks_done += 1
            entry.total_seconds += (_event_time(row["created_at"]) - since).total_seconds()
        elif isinstance(body, NoteBody) and body.type == "review":
            match = _VERDICT_RE.match(body.message)
            if match is None:
                log.debug("Review note on %s has no verdict", row["task_id"])
                continue
            entry = stats.setdefault(body.agent, AgentStats(body.agent))
            if match.group(1).upper() == "PASS":
                entry.review_pass += 1
            else:
                entry.review_fail += 1

    result = [s for s in stats.values() if agent is None or s.agent == agent]
    return sorted(result, key=lambda s: (-s.tasks_done, s.agent))


_DIMENSION_SQL = """\
SELECT t.task_id, t.plan_id, t.{column} AS vals, p.title AS plan_title
FROM tasks t JOIN plans p ON p.plan_id = t.plan_id
WHERE t.{column} IS NOT NULL"""


def shared_dimensions(store: Store, dimension: str) -> list[dict]:
    """Docs or skills used by tasks in more than one plan.

    ``dimension`` is ``domains`` (task docs) or ``skills``.
    """
    column = SHARED_DIMENSIONS.get(dimension)
    if column is None:
        raise ValidationFailed(
            f"Unknown dimension '{dimension}'. Valid: {', '.join(SHARED_DIMENSIONS)}"
        )
    plans: dict[str, set[str]] = {}
    tasks: dict[str, set[str]] = {}
    titles: dict[str, set[str]] = {}
    for row in store.raw_query(_DIMENSION_SQL.format(column=column)):
        for value in decode_json_list(row["vals"]):
            plans.setdefault(value, set()).add(row["plan_id"])
            tasks.setdefault(value, set()).add(row["task_id"])
            titles.setdefault(value, set()).add(row["plan_title"])

    key = dimension.removesuffix("s")
    shared = [
        {
            key: value,
            "plan_count": len(plan_ids),
            "task_count": len(tasks[value]),
            "plan_titles": sorted(titles[value]),
        }
        for value, plan_ids in plans.items()
        if len(plan_ids) > 1
    ]
    return sorted(shared, key=lambda r: (-r["plan_count"], -r["task_count"], r[key]))
