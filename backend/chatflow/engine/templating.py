# /chatflow/engine/templating.py

import re
import json
from typing import Any, Mapping

# `{name}` and `{name.path}` placeholders are substituted from a variable
# mapping; placeholders naming unknown variables are left untouched.

PLACEHOLDER = re.compile(r"\{([A-Za-z_][\w.\-]*)\}")

_MISSING = object()


def lookup(variables: Mapping[str, Any], path: str, default: Any = None) -> Any:
    """Resolves a dotted path (`order.items.0.name`) against a mapping."""
    value = _lookup(variables, path)
    return default if value is _MISSING else value


def _lookup(variables: Mapping[str, Any], path: str) -> Any:
    if path in variables:
        return variables[path]
    head, _, rest = path.partition(".")
    if not rest or head not in variables:
        return _MISSING
    current = variables[head]
    for part in rest.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def _stringify(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def render(template: Any, variables: Mapping[str, Any]) -> Any:
    if not isinstance(template, str) or "{" not in template:
        return template

    # A template that is exactly one placeholder keeps the variable's type.
    whole = PLACEHOLDER.fullmatch(template)
    if whole:
        value = _lookup(variables, whole.group(1))
        return template if value is _MISSING else value

    def replace(match: re.Match) -> str:
        value = _lookup(variables, match.group(1))
        return match.group(0) if value is _MISSING or value is None else _stringify(value)

    return PLACEHOLDER.sub(replace, template)


def render_text(template: Any, variables: Mapping[str, Any]) -> str:
    """Like `render`, but always produces a string."""
    value = render(template, variables)
    if value is None:
        return ""
    return value if isinstance(value, str) else _stringify(value)


def render_value(value: Any, variables: Mapping[str, Any]) -> Any:
    """Renders every string inside nested dicts and lists."""
    if isinstance(value, str):
        return render(value, variables)
    if isinstance(value, dict):
        return {key: render_value(item, variables) for key, item in value.items()}
    if isinstance(value, list):
        return [render_value(item, variables) for item in value]
    return value
