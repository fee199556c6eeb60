"""Input sanitization and token interpolation for workflow steps."""

from __future__ import annotations

import json
import math
import re
from typing import Any, Iterable, Mapping, Optional

from ..contracts import FieldSchema
from ..errors import MissingFieldError

TOKEN_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
_FLOAT_PREFIX = re.compile(r"^[+-]?(?:Infinity|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")


def parse_float(text: str) -> float:
    """Parse the leading numeric part of ``text``; ``nan`` when there is none."""
    match = _FLOAT_PREFIX.match(text.strip())
    if not match:
        return math.nan
    return float(match.group(0))


def sanitize_input(
    input: Optional[Mapping[str, Any]], fields: Optional[Iterable[FieldSchema]]
) -> dict[str, Any]:
    """Apply defaults, enforce required fields and coerce string values.

    Only values that are present as strings are coerced; defaults are inserted
    as declared. Keys without a field declaration pass through unchanged.
    """
    result = dict(input or {})
    for field in fields or []:
        if field.key not in result:
            if field.default is not None and field.default != "":
                result[field.key] = field.default
            elif field.required:
                raise MissingFieldError(field.key)
            continue
        value = result[field.key]
        if isinstance(value, str):
            if field.type == "number":
                result[field.key] = parse_float(value)
            elif field.type == "boolean":
                result[field.key] = value.strip() == "true"
    return result


def lookup_path(context: Mapping[str, Any], path: str) -> Any:
    current: Any = context
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return None
            current = current[index]
        else:
            return None
    return current


def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, separators=(",", ":"), default=str)


def replace_tokens(value: Any, context: Mapping[str, Any]) -> Any:
    """Resolve ``{{path.to.value}}`` markers in nested structures against ``context``."""
    if isinstance(value, str):
        return TOKEN_PATTERN.sub(
            lambda m: stringify(lookup_path(context, m.group(1))), value
        )
    if isinstance(value, Mapping):
        return {k: replace_tokens(v, context) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [replace_tokens(v, context) for v in value]
    return value
