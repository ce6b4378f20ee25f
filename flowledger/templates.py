"""Resolution of ``{{path}}`` placeholders against a run context.

Placeholders reference dotted paths into the context (``nodes.fetch.text``,
``run.input.items[0]``). Unresolvable paths never raise: they render as an
empty string and are reported in ``missing_paths`` so callers can record
partial-resolution diagnostics.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Mapping

PLACEHOLDER_RE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
_INDEX_RE = re.compile(r"\[(\d+)\]")

MISSING = object()


@dataclass
class TemplateResolution:
    value: Any
    missing_paths: list[str] = field(default_factory=list)


def lookup_path(context: Mapping[str, Any], path: str) -> Any:
    """Return the value at ``path`` or ``MISSING``."""
    normalized = _INDEX_RE.sub(r".\1", path.strip())
    current: Any = context
    for key in (part for part in normalized.split(".") if part):
        if isinstance(current, Mapping):
            if key not in current:
                return MISSING
            current = current[key]
        elif isinstance(current, (list, tuple)) and key.isdigit():
            index = int(key)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def to_template_string(value: Any) -> str:
    """Render a context value the way it appears inside a resolved string."""
    if value is None or value is MISSING:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, separators=(",", ":"), default=str)
    return str(value)


def resolve_template_string(template: str, context: Mapping[str, Any]) -> TemplateResolution:
    """Substitute every placeholder in ``template``."""
    missing: list[str] = []

    def _replace(match: re.Match[str]) -> str:
        path = match.group(1)
        value = lookup_path(context, path)
        if value is MISSING:
            missing.append(path)
            return ""
        return to_template_string(value)

    return TemplateResolution(PLACEHOLDER_RE.sub(_replace, template), missing)


def resolve_template_value(value: Any, context: Mapping[str, Any]) -> TemplateResolution:
    """Resolve placeholders throughout a nested value.

    A string consisting of exactly one placeholder resolves to the referenced
    value itself, so ``"{{run.input.delay}}"`` can yield a number.
    """
    missing: list[str] = []
    resolved = _resolve_nested(value, context, missing)
    return TemplateResolution(resolved, missing)


def _resolve_nested(value: Any, context: Mapping[str, Any], missing: list[str]) -> Any:
    if isinstance(value, str):
        whole = PLACEHOLDER_RE.fullmatch(value.strip())
        if whole:
            found = lookup_path(context, whole.group(1))
            if found is MISSING:
                missing.append(whole.group(1))
                return None
            return found
        result = resolve_template_string(value, context)
        missing.extend(result.missing_paths)
        return result.value
    if isinstance(value, Mapping):
        return {k: _resolve_nested(v, context, missing) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_nested(item, context, missing) for item in value]
    return value
