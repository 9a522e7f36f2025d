"""Resolution of ``{{stepId.field}}`` references against a run context."""

from __future__ import annotations

import json
import re
from typing import Any, List, Set, Union

from .errors import TemplateError

REFERENCE_PATTERN = re.compile(r"\{\{\s*([\w-]+)((?:\.[\w-]+|\[\d+\])*)\s*\}\}")

_MISSING = object()


def split_path(path: str) -> List[Union[str, int]]:
    """Split ``a.b[0].c`` into ``["a", "b", 0, "c"]``."""
    normalized = re.sub(r"\[(\d+)\]", r".\1", path.strip())
    segments: List[Union[str, int]] = []
    for part in normalized.split("."):
        if not part:
            continue
        segments.append(int(part) if part.isdigit() else part)
    return segments


def _lookup(data: Any, path: str) -> Any:
    current = data
    for segment in split_path(path):
        if isinstance(current, dict):
            key = str(segment)
            if key not in current:
                return _MISSING
            current = current[key]
        elif isinstance(current, (list, tuple)) and isinstance(segment, int):
            if segment >= len(current):
                return _MISSING
            current = current[segment]
        else:
            return _MISSING
    return current


def get_path(data: Any, path: str, default: Any = None) -> Any:
    """Return the value at ``path`` inside ``data`` or ``default``."""
    value = _lookup(data, path)
    return default if value is _MISSING else value


def path_root(path: str) -> str:
    segments = split_path(path)
    return str(segments[0]) if segments else ""


def find_references(template: Any) -> Set[str]:
    """Return the root names referenced anywhere inside ``template``."""
    roots: Set[str] = set()
    if isinstance(template, str):
        for match in REFERENCE_PATTERN.finditer(template):
            roots.add(match.group(1))
    elif isinstance(template, dict):
        for value in template.values():
            roots |= find_references(value)
    elif isinstance(template, (list, tuple)):
        for item in template:
            roots |= find_references(item)
    return roots


def _reference_text(match: "re.Match[str]") -> str:
    return f"{match.group(1)}{match.group(2)}"


def _resolve_reference(match: "re.Match[str]", context: dict) -> Any:
    reference = _reference_text(match)
    root = match.group(1)
    if root not in context:
        raise TemplateError(reference, f"'{root}' has no recorded output")
    value = _lookup(context, reference)
    if value is _MISSING:
        raise TemplateError(reference, "field not present in the referenced output")
    return value


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def resolve(template: Any, context: dict) -> Any:
    """Resolve every reference in ``template`` against ``context``.

    A string consisting of exactly one reference keeps the referenced
    value's type; references embedded in longer text are substituted as
    text. Raises :class:`TemplateError` for any unresolvable reference.
    """
    if isinstance(template, str):
        whole = REFERENCE_PATTERN.fullmatch(template)
        if whole:
            return _resolve_reference(whole, context)
        return REFERENCE_PATTERN.sub(
            lambda m: _as_text(_resolve_reference(m, context)), template
        )
    if isinstance(template, dict):
        return {key: resolve(value, context) for key, value in template.items()}
    if isinstance(template, list):
        return [resolve(item, context) for item in template]
    return template
