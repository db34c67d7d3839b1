"""Parse plan documents into ``TaskDefinition`` lists.

Two formats are accepted:

* ``markdown``: line-oriented legacy plans::

      # Plan title
      INTENT: why this plan exists

      TASK: schema
      TITLE: Add the schema
      DOCS: schema, backend
      CHANGE_TYPE: create
      ACCEPTANCE:
      - tables exist

      TASK: api
      TITLE: Expose the API
      BLOCKED_BY: schema

* ``frontmatter``: YAML frontmatter (``name``, ``overview``, ``todos``) followed
  by a free-form markdown body. The frontmatter is validated against
  ``PLAN_FRONTMATTER_SCHEMA``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

import jsonschema
import yaml

from taskgraph.errors import ValidationFailed
from taskgraph.models import VALID_CHANGE_TYPES
from taskgraph.reconcile import TaskDefinition

log = logging.getLogger(__name__)

PLAN_FORMATS = ("markdown", "frontmatter")

_STRING_OR_LIST = {
    "anyOf": [{"type": "string"}, {"type": "array", "items": {"type": "string"}}]
}

PLAN_FRONTMATTER_SCHEMA: dict = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "overview": {"type": "string"},
        "todos": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "content"],
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "content": {"type": "string", "minLength": 1},
                    "status": {"type": "string"},
                    "blockedBy": {"type": "array", "items": {"type": "string"}},
                    "docs": _STRING_OR_LIST,
                    "domain": _STRING_OR_LIST,
                    "skill": _STRING_OR_LIST,
                    "skills": _STRING_OR_LIST,
                    "changeType": {"type": "string"},
                    "intent": {"type": "string"},
                    "suggestedChanges": {"type": "string"},
                    "acceptance": {"type": "array", "items": {"type": "string"}},
                    "agent": {"type": "string"},
                },
            },
        },
    },
}

_FRONTMATTER_RE = re.compile(r"^---\s*\n(.*?)\n---", re.DOTALL)


@dataclass
class ParsedPlan:
    title: str | None
    intent: str | None
    tasks: list[TaskDefinition] = field(default_factory=list)
    body: str | None = None


def _split_csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _as_list(value: str | list[str] | None) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [v for v in value if isinstance(v, str)]


def _change_type(value: str | None) -> str | None:
    if value is None:
        return None
    if value not in VALID_CHANGE_TYPES:
        log.warning("Ignoring unknown change type '%s'", value)
        return None
    return value


def parse_markdown_plan(text: str) -> ParsedPlan:
    plan = ParsedPlan(title=None, intent=None)
    current: TaskDefinition | None = None
    in_acceptance = False

    def flush() -> None:
        if current is None:
            return
        if not current.stable_key:
            raise ValidationFailed("TASK line without a key.")
        if not current.title:
            raise ValidationFailed(f"Task '{current.stable_key}' has no TITLE.")
        plan.tasks.append(current)

    for line in text.splitlines():
        stripped = line.strip()
        key, sep, rest = stripped.partition(":")
        rest = rest.strip()

        if line.startswith("# "):
            plan.title = line[2:].strip()
        elif line.startswith("INTENT:") and current is None:
            plan.intent = rest
        elif sep and key == "TASK":
            flush()
            current = TaskDefinition(stable_key=rest, title="")
            in_acceptance = False
        elif current is not None and sep and key in _TASK_FIELDS:
            _TASK_FIELDS[key](current, rest)
            in_acceptance = key == "ACCEPTANCE"
        elif current is not None and in_acceptance and stripped.startswith("-"):
            current.acceptance.append(stripped[1:].strip())
        else:
            in_acceptance = False

    flush()
    return plan


def _set_title(task: TaskDefinition, value: str) -> None:
    task.title = value


def _set_intent(task: TaskDefinition, value: str) -> None:
    task.intent = value


def _set_agent(task: TaskDefinition, value: str) -> None:
    task.agent = value


def _set_change_type(task: TaskDefinition, value: str) -> None:
    task.change_type = _change_type(value)


def _add_docs(task: TaskDefinition, value: str) -> None:
    task.docs.extend(_split_csv(value))


def _add_skills(task: TaskDefinition, value: str) -> None:
    task.skills.extend(_split_csv(value))


def _add_blockers(task: TaskDefinition, value: str) -> None:
    task.blocked_by.extend(_split_csv(value))


def _set_suggested(task: TaskDefinition, value: str) -> None:
    task.suggested_changes = value


def _start_acceptance(task: TaskDefinition, value: str) -> None:
    if value:
        task.acceptance.append(value)


_TASK_FIELDS = {
    "TITLE": _set_title,
    "INTENT": _set_intent,
    "AGENT": _set_agent,
    "CHANGE_TYPE": _set_change_type,
    "DOCS": _add_docs,
    "DOMAIN": _add_docs,
    "SKILL": _add_skills,
    "SKILLS": _add_skills,
    "BLOCKED_BY": _add_blockers,
    "SUGGESTED_CHANGES": _set_suggested,
    "ACCEPTANCE": _start_acceptance,
}


def parse_frontmatter_plan(text: str) -> ParsedPlan:
    match = _FRONTMATTER_RE.match(text)
    if not match:
        raise ValidationFailed("Plan has no YAML frontmatter (--- ... ---).")
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        raise ValidationFailed(f"Invalid YAML frontmatter: {exc}", cause=exc) from exc
    return plan_from_mapping(data, body=text[match.end() :].strip() or None)


def plan_from_mapping(data: object, body: str | None = None) -> ParsedPlan:
    """Validate a ``name`` / ``overview`` / ``todos`` mapping and build the plan."""
    if not isinstance(data, dict):
        raise ValidationFailed("Plan frontmatter must be a mapping.")
    try:
        jsonschema.validate(instance=data, schema=PLAN_FRONTMATTER_SCHEMA)
    except jsonschema.ValidationError as exc:
        location = "/".join(str(p) for p in exc.absolute_path) or "<root>"
        raise ValidationFailed(
            f"Invalid plan frontmatter at {location}: {exc.message}", cause=exc
        ) from exc

    tasks = []
    for todo in data.get("todos") or []:
        tasks.append(
            TaskDefinition(
                stable_key=todo["id"],
                title=todo["content"],
                blocked_by=list(todo.get("blockedBy", [])),
                # Only completion is imported; other statuses leave the task alone.
                status="done" if todo.get("status") == "completed" else None,
                docs=_as_list(todo.get("docs", todo.get("domain"))),
                skills=_as_list(todo.get("skills", todo.get("skill"))),
                change_type=_change_type(todo.get("changeType")),
                intent=todo.get("intent"),
                suggested_changes=todo.get("suggestedChanges"),
                acceptance=list(todo.get("acceptance", [])),
                agent=todo.get("agent"),
            )
        )
    return ParsedPlan(title=data.get("name"), intent=data.get("overview"), tasks=tasks, body=body)


def detect_format(text: str) -> str:
    return "frontmatter" if _FRONTMATTER_RE.match(text) else "markdown"


def parse_plan_file(path: Path, fmt: str | None = None) -> ParsedPlan:
    """Read and parse ``path``. ``fmt`` of None auto-detects from the content."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ValidationFailed(f"Cannot read plan file {path}: {exc}", cause=exc) from exc
    fmt = fmt or detect_format(text)
    if fmt not in PLAN_FORMATS:
        raise ValidationFailed(f"Unknown plan format '{fmt}'. Valid: {', '.join(PLAN_FORMATS)}")
    plan = parse_frontmatter_plan(text) if fmt == "frontmatter" else parse_markdown_plan(text)
    check_unique_keys(plan, path)
    return plan


def check_unique_keys(plan: ParsedPlan, source: Path | str) -> None:
    keys = [t.stable_key for t in plan.tasks]
    duplicates = sorted({k for k in keys if keys.count(k) > 1})
    if duplicates:
        raise ValidationFailed(f"Duplicate task keys in {source}: {', '.join(duplicates)}")
