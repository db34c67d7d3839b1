"""Apply a plan template with ``{{name}}`` placeholders.

A template is a YAML file in the frontmatter plan shape (``name``,
``overview``, ``todos``) without the ``---`` fences. Placeholders in any
string are replaced from ``--var key=value`` pairs; unknown placeholders
are left as they are. The result is reconciled into the named plan, so
applying the same template twice only refreshes fields.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from pathlib import Path

import yaml

from taskgraph.config import Config
from taskgraph.errors import ValidationFailed
from taskgraph.importer import (
    ImportResult,
    apply_definitions,
    find_or_create_plan,
    relative_source_path,
)
from taskgraph.plan_parser import ParsedPlan, check_unique_keys, plan_from_mapping
from taskgraph.store import Store

log = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")


def parse_var_pairs(pairs: Iterable[str]) -> dict[str, str]:
    variables: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ValidationFailed(f"Invalid variable '{pair}'; expected key=value.")
        variables[key] = value.strip()
    return variables


def substitute_vars(text: str, variables: dict[str, str]) -> str:
    return _PLACEHOLDER_RE.sub(lambda m: variables.get(m.group(1), m.group(0)), text)


def substitute_in_value(value, variables: dict[str, str]):
    """Substitute placeholders in every string nested in ``value``."""
    if isinstance(value, str):
        return substitute_vars(value, variables)
    if isinstance(value, list):
        return [substitute_in_value(item, variables) for item in value]
    if isinstance(value, dict):
        return {k: substitute_in_value(v, variables) for k, v in value.items()}
    return value


def load_template(path: Path, variables: dict[str, str]) -> ParsedPlan:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ValidationFailed(f"Cannot read template {path}: {exc}", cause=exc) from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValidationFailed(f"Invalid YAML in template {path}: {exc}", cause=exc) from exc

    plan = plan_from_mapping(substitute_in_value(data, variables))
    check_unique_keys(plan, path)
    leftover = sorted(
        {m for t in plan.tasks for m in _PLACEHOLDER_RE.findall(t.title + (t.intent or ""))}
    )
    if leftover:
        log.warning("Template %s has unresolved placeholders: %s", path, ", ".join(leftover))
    return plan


def apply_template(
    store: Store,
    config: Config,
    path: Path,
    plan: str,
    variables: dict[str, str] | None = None,
    *,
    prefix: str | None = None,
) -> ImportResult:
    """Substitute ``variables`` into the template at ``path`` and reconcile it into ``plan``.

    ``plan`` is a plan id or title; a plan with that title is created when
    nothing matches.
    """
    parsed = load_template(path, variables or {})
    if not parsed.tasks:
        raise ValidationFailed(f"Template {path} declares no todos.")

    plan_id, plan_created = find_or_create_plan(
        store,
        plan,
        None,
        parsed.intent or f"Applied from template {Path(path).name}",
        relative_source_path(config, Path(path)),
    )
    result = ImportResult(plan_id=plan_id, plan_created=plan_created)
    apply_definitions(store, plan_id, parsed.tasks, prefix, result)
    store.commit(f"template-apply: {Path(path).name} into {plan_id}")
    return result
