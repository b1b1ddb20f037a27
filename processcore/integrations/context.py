"""Action context construction and ``{{path|filter:arg}}`` template resolution."""

from __future__ import annotations

import html
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple
from urllib.parse import quote

from ..contracts import TriggerEvent
from ..models import Instance, StepDefinition, utc_now

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{([^{}]+)\}\}")
MISSING = object()

FilterFunc = Callable[[str, Optional[str]], str]


def _truncate(value: str, arg: Optional[str]) -> str:
    length = int(arg) if arg else 50
    return value[:length] + "..." if len(value) > length else value


def _pretty_json(value: str, arg: Optional[str]) -> str:
    try:
        return json.dumps(json.loads(value), indent=2)
    except ValueError:
        return value


def _relative(moment: datetime) -> str:
    minutes = int((utc_now() - moment).total_seconds() // 60)
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes > 1 else ''} ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours > 1 else ''} ago"
    days = hours // 24
    if days < 7:
        return f"{days} day{'s' if days > 1 else ''} ago"
    return moment.date().isoformat()


def _date(value: str, arg: Optional[str]) -> str:
    try:
        moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    fmt = arg or "iso"
    if fmt == "date":
        return moment.date().isoformat()
    if fmt == "time":
        return moment.strftime("%H:%M:%S")
    if fmt == "datetime":
        return moment.strftime("%Y-%m-%d %H:%M:%S")
    if fmt == "relative":
        return _relative(moment)
    return moment.isoformat()


FILTERS: Dict[str, FilterFunc] = {
    "upper": lambda value, arg: value.upper(),
    "lower": lambda value, arg: value.lower(),
    "capitalize": lambda value, arg: value.capitalize(),
    "title": lambda value, arg: value.title(),
    "trim": lambda value, arg: value.strip(),
    "default": lambda value, arg: value or (arg or ""),
    "json": _pretty_json,
    "truncate": _truncate,
    "escape_html": lambda value, arg: html.escape(value, quote=True),
    "url_encode": lambda value, arg: quote(value, safe=""),
    "date": _date,
}


def build_action_context(
    *,
    event: TriggerEvent,
    instance: Optional[Instance] = None,
    step: Optional[StepDefinition] = None,
    step_status: Optional[str] = None,
    input: Optional[Dict[str, Any]] = None,
    output: Optional[Dict[str, Any]] = None,
    user: Optional[Dict[str, Any]] = None,
    base_url: str = "http://localhost:8000",
) -> Dict[str, Any]:
    """Assemble the read-only variable tree exposed to action templates."""
    context: Dict[str, Any] = {
        "event": event,
        "input": dict(input or {}),
        "output": dict(output or {}),
        "user": dict(user or {}),
        "env": {
            "base_url": base_url,
            "timestamp": utc_now().isoformat(),
            "timezone": "UTC",
        },
        "vars": {},
    }
    if instance is not None:
        context["process"] = {
            "id": instance.trigger_process_id,
            "name": instance.snapshot.name,
            "version": instance.snapshot.version,
        }
        context["instance"] = {
            "id": instance.id,
            "status": instance.status,
            "started_at": instance.started_at.isoformat(),
            "started_by": instance.started_by,
            "current_step_id": instance.current_step_id,
        }
        context["vars"] = dict(instance.variables)
    if step is not None:
        context["step"] = {
            "id": step.step_id,
            "name": step.name,
            "owner": step.owner,
            "type": step.type,
            "status": step_status,
        }
    return context


def lookup(context: Mapping[str, Any], path: str) -> Any:
    """Follow a dot path through nested mappings; ``MISSING`` on a miss."""
    current: Any = context
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return MISSING
    return current


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _parse_expression(expression: str) -> Tuple[str, List[Tuple[str, Optional[str]]]]:
    parts = expression.split("|")
    filters: List[Tuple[str, Optional[str]]] = []
    for part in parts[1:]:
        name, sep, arg = part.strip().partition(":")
        filters.append((name.strip(), arg if sep else None))
    return parts[0].strip(), filters


def resolve_template(template: str, context: Mapping[str, Any]) -> str:
    """Replace ``{{path|filter:arg}}`` placeholders.

    Placeholders whose path is absent from the context are left untouched,
    unless a ``default`` filter supplies a value.
    """

    def replace(match: re.Match) -> str:
        path, filters = _parse_expression(match.group(1))
        if path in ("now", "timestamp"):
            value: Any = utc_now().isoformat()
        else:
            value = lookup(context, path)
        if value is MISSING:
            if not any(name == "default" for name, _ in filters):
                return match.group(0)
            value = ""
        result = _stringify(value)
        for name, arg in filters:
            func = FILTERS.get(name)
            if func is None:
                logger.warning(f"Unknown template filter {name!r} in {match.group(0)}")
                continue
            result = func(result, arg)
        return result

    return _PLACEHOLDER.sub(replace, template)


def resolve_object(value: Any, context: Mapping[str, Any]) -> Any:
    """Resolve templates in every string nested in ``value``."""
    if isinstance(value, str):
        return resolve_template(value, context)
    if isinstance(value, list):
        return [resolve_object(item, context) for item in value]
    if isinstance(value, dict):
        return {key: resolve_object(item, context) for key, item in value.items()}
    return value


def _placeholders(value: Any) -> Iterator[Tuple[str, List[Tuple[str, Optional[str]]]]]:
    if isinstance(value, str):
        for match in _PLACEHOLDER.finditer(value):
            yield _parse_expression(match.group(1))
    elif isinstance(value, list):
        for item in value:
            yield from _placeholders(item)
    elif isinstance(value, dict):
        for item in value.values():
            yield from _placeholders(item)


def extract_variables(template: Any) -> List[str]:
    """Return the distinct placeholder paths referenced by ``template``.

    ``template`` may be a string or any structure accepted by
    :func:`resolve_object`.
    """
    seen: List[str] = []
    for path, _ in _placeholders(template):
        if path not in seen:
            seen.append(path)
    return seen


def missing_variables(template: Any, context: Mapping[str, Any]) -> List[str]:
    """Paths that would stay unresolved; defaulted placeholders never count."""
    missing: List[str] = []
    for path, filters in _placeholders(template):
        if path in ("now", "timestamp") or path in missing:
            continue
        if any(name == "default" for name, _ in filters):
            continue
        if lookup(context, path) in (MISSING, None):
            missing.append(path)
    return missing
