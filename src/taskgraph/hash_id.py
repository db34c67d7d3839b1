"""Short, human-typeable task identifiers (``tg-xxxxxx``).

A task's short id is derived from a sha256 of its UUID. Six hex characters
is the normal case; a seventh is used only when the six-character candidate
is already taken.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Collection

from taskgraph.errors import ValidationFailed
from taskgraph.models import UUID_PATTERN
from taskgraph.store import Store

HASH_PREFIX = "tg-"
BASE_HASH_LEN = 6
FALLBACK_HASH_LEN = 7

_HASH_ID_RE = re.compile(r"^tg-[0-9a-fA-F]{6,7}$")
_UUID_RE = re.compile(UUID_PATTERN)


def _digest(task_id: str) -> str:
    if len(task_id) != 36 or not _UUID_RE.match(task_id):
        raise ValidationFailed(f"Invalid task id '{task_id}': expected a 36-character UUID.")
    return hashlib.sha256(task_id.encode("utf-8")).hexdigest()


def base_hash_id(task_id: str) -> str:
    """Deterministic six-character candidate for ``task_id``."""
    return HASH_PREFIX + _digest(task_id)[:BASE_HASH_LEN]


def generate_unique_hash_id(task_id: str, used: Collection[str]) -> str:
    digest = _digest(task_id)
    used_lower = {u.lower() for u in used}
    for length in (BASE_HASH_LEN, FALLBACK_HASH_LEN):
        candidate = HASH_PREFIX + digest[:length]
        if candidate not in used_lower:
            return candidate
    raise ValidationFailed(
        f"Hash id collision saturation for task {task_id}: "
        f"both {BASE_HASH_LEN}- and {FALLBACK_HASH_LEN}-character candidates are taken."
    )


def is_hash_id(value: str) -> bool:
    return bool(_HASH_ID_RE.match(value))


def allocate_hash_id(store: Store, task_id: str) -> str:
    """Allocate a short id for ``task_id`` that no persisted task uses yet."""
    rows = store.raw_query("SELECT hash_id FROM tasks WHERE hash_id IS NOT NULL")
    return generate_unique_hash_id(task_id, {row["hash_id"] for row in rows})


def plan_hash(plan_id: str) -> str:
    """Six-hex suffix scoping a plan's external keys."""
    return hashlib.sha256(plan_id.encode("utf-8")).hexdigest()[:BASE_HASH_LEN]
