"""Append-only task event log."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from taskgraph.models import EventBody, decode_event_body, encode_event_body, event_kind
from taskgraph.store import Store


def _event_timestamp() -> str:
    # Microsecond precision keeps same-second events in insertion order.
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def append_event(store: Store, task_id: str, body: EventBody) -> str:
    event_id = str(uuid.uuid4())
    store.insert(
        "events",
        {
            "event_id": event_id,
            "task_id": task_id,
            "kind": event_kind(body),
            "body": encode_event_body(body),
            "created_at": _event_timestamp(),
        },
    )
    return event_id


def latest_event(store: Store, task_id: str, kind: str) -> EventBody | None:
    rows = store.select(
        "events", {"task_id": task_id, "kind": kind}, order_by="created_at DESC", limit=1
    )
    if not rows:
        return None
    return decode_event_body(kind, rows[0]["body"])


def list_events(store: Store, task_id: str) -> list[dict]:
    """Events for a task, oldest first, with decoded bodies."""
    rows = store.select("events", {"task_id": task_id}, order_by="created_at")
    return [{**row, "body": decode_event_body(row["kind"], row["body"])} for row in rows]
