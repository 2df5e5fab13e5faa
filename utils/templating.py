"""
Template rendering for node text.

``{{ name }}`` and ``{{ contact.email }}`` placeholders are replaced with
values from the session variable store. A placeholder whose variable is not
set is left in the output verbatim.
"""
from __future__ import annotations

import re
from typing import Any

from utils.conditions import get_nested_value, to_text

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")


def render(template: str, variables: dict[str, Any]) -> str:
    if not template:
        return ""

    def replace(match: re.Match) -> str:
        value = get_nested_value(variables, match.group(1))
        if value is None:
            return match.group(0)
        return to_text(value)

    return _PLACEHOLDER.sub(replace, template)


def render_value(value: Any, variables: dict[str, Any]) -> Any:
    """Render every string inside a JSON-like value (request bodies, headers)."""
    if isinstance(value, str):
        return render(value, variables)
    if isinstance(value, dict):
        return {k: render_value(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [render_value(v, variables) for v in value]
    return value
