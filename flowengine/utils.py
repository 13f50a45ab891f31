"""Small helpers shared by the resolver, executors and components."""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from typing import Any, Mapping as MappingType, Optional

_TEMPLATE_TOKEN = re.compile(r"\$\{\s*([A-Za-z0-9_.\-]+)\s*\}")

_MISSING = object()


def get_path(obj: Any, path: Optional[str], default: Any = None) -> Any:
    """Resolve a dotted field path like 'user.emails.0' against nested data.

    Mappings are indexed by key, sequences by integer segment and other
    objects by public attribute. Any missing segment yields ``default``
    instead of raising.
    """
    if path is None or path == "":
        return obj

    current = obj
    for segment in str(path).split("."):
        if current is None:
            return default
        if isinstance(current, Mapping):
            current = current.get(segment, _MISSING)
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError):
                return default
        elif not segment.startswith("_") and hasattr(current, segment):
            current = getattr(current, segment)
        else:
            return default
        if current is _MISSING:
            return default
    return current


def render_template(template: str, values: MappingType[str, Any]) -> str:
    """Substitute ``${key}`` / ``${a.b}`` tokens from values.

    Tokens that do not resolve are left untouched.
    """

    def replace(match: re.Match) -> str:
        key = match.group(1)
        if key in values:
            value = values[key]
        else:
            value = get_path(values, key, _MISSING)
            if value is _MISSING:
                return match.group(0)
        return "" if value is None else str(value)

    return _TEMPLATE_TOKEN.sub(replace, template)


def render_value(value: Any, values: MappingType[str, Any]) -> Any:
    """Apply render_template to every string inside a nested structure."""
    if isinstance(value, str):
        return render_template(value, values)
    if isinstance(value, Mapping):
        return {k: render_value(v, values) for k, v in value.items()}
    if isinstance(value, list):
        return [render_value(v, values) for v in value]
    return value
