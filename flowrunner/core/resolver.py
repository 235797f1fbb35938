"""Substitution of ``{{Label.path}}`` references against an execution context."""

import json
import re
from typing import Any, Dict, Mapping, Optional, Tuple

from ..models.execution import NodeOutput
from ..models.graph import ApiConfig, KeyValuePair
from .logging import get_logger


logger = get_logger(__name__)

VARIABLE_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
_PATH_TOKEN = re.compile(r"([^.\[\]]+)|\[(\d+)\]")

_MISSING = object()


def get_value_by_path(obj: Any, path: str) -> Any:
    """Walk ``a.b[0].c`` style paths through dicts and lists.

    Returns None when any segment cannot be followed.
    """
    if not path:
        return obj

    current = obj
    for match in _PATH_TOKEN.finditer(path):
        name, index = match.group(1), match.group(2)
        if current is None:
            return None
        if index is not None:
            if not isinstance(current, (list, tuple)):
                return None
            position = int(index)
            if position >= len(current):
                return None
            current = current[position]
        elif isinstance(current, Mapping):
            if name not in current:
                return None
            current = current[name]
        elif isinstance(current, (list, tuple)) and name == "length":
            current = len(current)
        elif isinstance(current, (list, tuple)) and name.isdigit():
            position = int(name)
            if position >= len(current):
                return None
            current = current[position]
        else:
            return None
    return current


def split_reference(expression: str, context: Mapping[str, NodeOutput]) -> Tuple[str, str]:
    """Split a reference into (label, path).

    Labels may themselves contain dots, so the longest context key that is
    the whole expression or is followed by ``.`` wins. Without a match the
    split happens at the first dot.
    """
    best: Optional[str] = None
    for label in context:
        if expression == label or expression.startswith(label + "."):
            if best is None or len(label) > len(best):
                best = label

    if best is not None:
        return best, expression[len(best) + 1:]

    label, _, path = expression.partition(".")
    return label, path


def format_value(value: Any) -> str:
    """Render a resolved value as text for substitution."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), default=str)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _lookup(expression: str, context: Mapping[str, NodeOutput]) -> Any:
    label, path = split_reference(expression, context)
    output = context.get(label)
    if output is None:
        return _MISSING

    if not path:
        return output.response

    value = get_value_by_path(output.as_lookup(), path)
    return _MISSING if value is None else value


def resolve_variables(template: Any, context: Mapping[str, NodeOutput]) -> Any:
    """Replace every resolvable ``{{...}}`` span in ``template``.

    Spans that cannot be resolved are left untouched. Non-string input is
    returned unchanged.
    """
    if not isinstance(template, str) or "{{" not in template:
        return template

    def substitute(match: "re.Match[str]") -> str:
        expression = match.group(1).strip()
        value = _lookup(expression, context)
        if value is _MISSING:
            logger.debug(f"Unresolved variable reference: {expression}")
            return match.group(0)
        return format_value(value)

    return VARIABLE_PATTERN.sub(substitute, template)


def has_unresolved_variables(text: Any) -> bool:
    return isinstance(text, str) and "{{" in text


def _resolve_pairs(pairs, context: Dict[str, NodeOutput]):
    return [
        KeyValuePair(
            key=resolve_variables(pair.key, context),
            value=resolve_variables(pair.value, context),
        )
        for pair in pairs
    ]


def resolve_api_config(config: ApiConfig, context: Dict[str, NodeOutput]) -> ApiConfig:
    """Return a copy of ``config`` with URL, headers, query params and body resolved."""
    return config.model_copy(update={
        "url": resolve_variables(config.url, context),
        "headers": _resolve_pairs(config.headers, context),
        "query_params": _resolve_pairs(config.query_params, context),
        "body": resolve_variables(config.body, context),
    })
