"""Statuses, row shapes, and typed event bodies."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import TypedDict

from taskgraph.errors import ValidationFailed

VALID_TASK_STATUSES = {"todo", "doing", "blocked", "done", "canceled"}
TASK_TERMINAL_STATUSES = {"done", "canceled"}
VALID_PLAN_STATUSES = {"draft", "active", "paused", "done", "abandoned"}
PLAN_TERMINAL_STATUSES = {"done", "abandoned"}
VALID_EDGE_TYPES = {"blocks", "relates"}
VALID_CHANGE_TYPES = {"create", "modify", "refactor", "fix", "investigate", "test", "document"}
VALID_GATE_TYPES = {"human", "ci", "webhook"}

UUID_PATTERN = r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"


def utcnow() -> str:
    """ISO 8601 UTC timestamp, second precision."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


# -- Row TypedDicts matching table schemas --


class PlanRow(TypedDict):
    plan_id: str
    title: str
    intent: str | None
    status: str
    source_path: str | None
    created_at: str
    updated_at: str


class TaskRow(TypedDict):
    task_id: str
    hash_id: str | None
    plan_id: str
    external_key: str | None
    title: str
    intent: str | None
    scope_in: str | None
    scope_out: str | None
    acceptance: str | None
    docs: str | None
    skills: str | None
    change_type: str | None
    suggested_changes: str | None
    agent: str | None
    status: str
    created_at: str
    updated_at: str


class EdgeRow(TypedDict):
    from_task_id: str
    to_task_id: str
    type: str
    reason: str | None
    created_at: str


class EventRow(TypedDict):
    event_id: str
    task_id: str
    kind: str
    body: str
    created_at: str


class GateRow(TypedDict):
    gate_id: str
    task_id: str
    name: str
    gate_type: str
    status: str
    created_at: str
    resolved_at: str | None


# -- Event bodies: one dataclass per event kind --


@dataclass
class CreatedBody:
    title: str
    external_key: str | None = None
    split_from: str | None = None


@dataclass
class StartedBody:
    agent: str
    timestamp: str
    worktree_path: str | None = None
    worktree_branch: str | None = None
    worktree_repo_root: str | None = None


@dataclass
class DoneBody:
    evidence: str
    timestamp: str
    checks: list | None = None


@dataclass
class BlockedBody:
    reason: str
    timestamp: str
    blocker_task_ids: list[str] = field(default_factory=list)
    gate_id: str | None = None


@dataclass
class UnblockedBody:
    timestamp: str
    gate_id: str | None = None


@dataclass
class NoteBody:
    message: str
    agent: str
    timestamp: str
    type: str = "note"


@dataclass
class SplitBody:
    new_task_ids: list[str]
    timestamp: str
    keep_original: bool = True


EventBody = (
    CreatedBody | StartedBody | DoneBody | BlockedBody | UnblockedBody | NoteBody | SplitBody
)

EVENT_BODY_TYPES: dict[str, type] = {
    "created": CreatedBody,
    "started": StartedBody,
    "done": DoneBody,
    "blocked": BlockedBody,
    "unblocked": UnblockedBody,
    "note": NoteBody,
    "split": SplitBody,
}
EVENT_KINDS = {cls: kind for kind, cls in EVENT_BODY_TYPES.items()}


def event_kind(body: EventBody) -> str:
    return EVENT_KINDS[type(body)]


def encode_event_body(body: EventBody) -> str:
    return json.dumps({k: v for k, v in asdict(body).items() if v is not None})


def decode_event_body(kind: str, raw: str | dict | None) -> EventBody:
    """Parse a stored event body into its typed dataclass.

    Unknown keys are dropped so older rows with extra fields still load.
    """
    cls = EVENT_BODY_TYPES.get(kind)
    if cls is None:
        raise ValidationFailed(f"Unknown event kind '{kind}'.")
    if raw is None:
        data: dict = {}
    elif isinstance(raw, dict):
        data = raw
    else:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValidationFailed(f"Malformed {kind} event body.", cause=exc) from exc
    allowed = cls.__dataclass_fields__.keys()
    try:
        return cls(**{k: v for k, v in data.items() if k in allowed})
    except TypeError as exc:
        raise ValidationFailed(f"Malformed {kind} event body: {exc}", cause=exc) from exc


def decode_json_list(raw: str | None) -> list:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return []
    return value if isinstance(value, list) else []
