"""
``{{path}}`` template resolution for action parameters and transform steps.

A token names a dotted path into the execution values (``data.cameraId``,
``steps.0.output``). A string that consists of a single token resolves to
a deep copy of the raw value, so ``"{{data}}"`` stays a mapping that
handlers may change without touching the event; tokens embedded in longer
strings are rendered as text, with non-string values JSON-encoded. Tokens
whose path cannot be found are left in place unchanged. There is no escape
syntax.
"""

from __future__ import annotations

import copy
import json
import re
from typing import Any, Mapping

from pydantic import BaseModel

TOKEN_RE = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


def lookup_path(values: Any, path: str, default: Any = MISSING) -> Any:
    """Walk ``path`` through mappings, sequences and models; ``default`` when absent."""
    current = values
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, (list, tuple)):
            if not part.isdigit() or int(part) >= len(current):
                return default
            current = current[int(part)]
        elif isinstance(current, BaseModel) and part in type(current).model_fields:
            current = getattr(current, part)
        else:
            return default
    return current


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, BaseModel):
        value = value.model_dump(by_alias=True)
    return json.dumps(value, default=str)


def _resolve_string(text: str, values: Mapping[str, Any]) -> Any:
    whole = TOKEN_RE.fullmatch(text.strip())
    if whole:
        found = lookup_path(values, whole.group(1))
        return text if found is MISSING else copy.deepcopy(found)

    def _substitute(match: "re.Match[str]") -> str:
        found = lookup_path(values, match.group(1))
        if found is MISSING:
            return match.group(0)
        return _render(found)

    return TOKEN_RE.sub(_substitute, text)


def resolve_template(value: Any, values: Mapping[str, Any]) -> Any:
    """Return a copy of ``value`` with every token resolved against ``values``."""
    if isinstance(value, str):
        return _resolve_string(value, values)
    if isinstance(value, Mapping):
        return {key: resolve_template(item, values) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_template(item, values) for item in value]
    if isinstance(value, tuple):
        return tuple(resolve_template(item, values) for item in value)
    return value


__all__ = ["MISSING", "TOKEN_RE", "lookup_path", "resolve_template"]
