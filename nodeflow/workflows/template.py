"""
Template Interpolation

Resolves ``{{path.to.var}}`` placeholders against a variable scope.
Paths walk nested dicts (and list indexes); unresolved placeholders
render as an empty string and never raise.
"""

import json
import re
from typing import Any, Dict, Mapping

from .state import VARIABLES_KEY, is_system_key

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

_MISSING = object()


def get_nested_value(data: Any, path: str, default: Any = None) -> Any:
    """Get value from nested dict using dot notation."""
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return default
        else:
            return default
    return current


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def render_string(template: str, scope: Mapping[str, Any]) -> Any:
    """
    Interpolate placeholders in a string.

    A string that is exactly one placeholder keeps the referenced value's
    type; otherwise every placeholder is rendered as text.
    """
    match = PLACEHOLDER_PATTERN.fullmatch(template.strip())
    if match:
        value = get_nested_value(scope, match.group(1), _MISSING)
        return "" if value is _MISSING else value

    def replace(m: "re.Match[str]") -> str:
        value = get_nested_value(scope, m.group(1), _MISSING)
        return "" if value is _MISSING else _stringify(value)

    return PLACEHOLDER_PATTERN.sub(replace, template)


def render_text(template: str, scope: Mapping[str, Any]) -> str:
    """Interpolate placeholders, always returning text."""
    return PLACEHOLDER_PATTERN.sub(
        lambda m: _stringify(get_nested_value(scope, m.group(1))),
        template,
    )


def render(value: Any, scope: Mapping[str, Any]) -> Any:
    """Interpolate placeholders recursively through dicts and lists."""
    if isinstance(value, str):
        return render_string(value, scope)
    if isinstance(value, dict):
        return {key: render(item, scope) for key, item in value.items()}
    if isinstance(value, list):
        return [render(item, scope) for item in value]
    return value


def build_scope(inputs: Dict[str, Any]) -> Dict[str, Any]:
    """
    Variable scope a dispatcher resolves templates against.

    The run's variables and node outputs, overlaid with the node's own
    routed inputs. Reserved keys are left out.
    """
    scope = dict(inputs.get(VARIABLES_KEY) or {})
    scope.update({key: value for key, value in inputs.items() if not is_system_key(key)})
    return scope


def routed_inputs(inputs: Dict[str, Any]) -> Dict[str, Any]:
    """Only the values delivered to the node, without reserved keys."""
    return {key: value for key, value in inputs.items() if not is_system_key(key)}
