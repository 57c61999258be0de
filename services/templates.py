"""
Output template rendering.

Templates are arbitrary JSON-like values (dict / list / scalars) stored in
the config store.  String leaves may contain ``{{name}}`` placeholders that
are substituted from a flat context mapping.

Rules:
  * only string leaves are scanned; dict keys, numbers, booleans and null
    pass through untouched
  * a leaf that is exactly one placeholder takes the context value as-is,
    so ``"{{tiv}}"`` renders to the number ``15000000``
  * a placeholder embedded in a longer string is formatted as text
    (strings verbatim, everything else as compact JSON with sorted keys)
  * a placeholder whose name is absent from the context, or maps to
    ``None``, is left verbatim so configuration gaps show up in the output
"""

from __future__ import annotations

import json
import re
from typing import Any, Mapping

PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def _render_string(text: str, context: Mapping[str, Any]) -> Any:
    whole = PLACEHOLDER.fullmatch(text)
    if whole:
        value = context.get(whole.group(1))
        return text if value is None else value

    def _sub(match: re.Match) -> str:
        value = context.get(match.group(1))
        return match.group(0) if value is None else _as_text(value)

    return PLACEHOLDER.sub(_sub, text)


def render(template: Any, context: Mapping[str, Any]) -> Any:
    """Return a structurally identical copy of ``template`` with placeholders substituted."""
    if isinstance(template, str):
        return _render_string(template, context)
    if isinstance(template, Mapping):
        return {key: render(value, context) for key, value in template.items()}
    if isinstance(template, (list, tuple)):
        return [render(item, context) for item in template]
    return template

