"""Python source rendering helpers used by the default method-call strategy."""

from __future__ import annotations

import itertools
import math
import re
import threading
import uuid
from collections.abc import Mapping
from typing import Any

from .values import Name, is_name

CALLBACK_PLACEHOLDER = "__framecall__callback_"

# Keys that describe routing, never method arguments.
RESERVED_KWARGS = frozenset({"source", "target", "request_options"})

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")
_IDENTIFIER_CHARS = re.compile(r"[^0-9a-zA-Z_]")

_counter = itertools.count()
_counter_lock = threading.Lock()
_session = uuid.uuid4().hex[:6]


def camel_to_snake(name: str) -> str:
    """Convert ``camelCase`` (dotted paths allowed) to ``snake_case``.

    >>> camel_to_snake("cols.toUpperCase")
    'cols.to_upper_case'
    """
    return ".".join(_CAMEL_BOUNDARY.sub("_", part).lower() for part in name.split("."))


def generate_unique_variable_name(prefix: str = "var") -> str:
    """Mint a variable name that is unique for the life of this process.

    Names are never reused, so a handle built from one stays valid for the
    whole session.
    """
    prefix = _IDENTIFIER_CHARS.sub("_", prefix) or "var"
    if prefix[0].isdigit():
        prefix = "_" + prefix
    with _counter_lock:
        n = next(_counter)
    return f"{prefix}_{_session}_{n}"


def python_literal(value: Any) -> str:
    """Render *value* as Python source."""
    from .remote_handle import Source

    if isinstance(value, Source) or is_name(value):
        return str(value["name"]) if isinstance(value, Mapping) else value.name
    if value is None or isinstance(value, bool):
        return repr(value)
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return f'float("{value}")'
        return repr(value)
    if isinstance(value, str):
        return _quote(value)
    if isinstance(value, (bytes, bytearray)):
        return repr(bytes(value))
    if isinstance(value, Mapping):
        items = ", ".join(f"{python_literal(k)}: {python_literal(v)}" for k, v in value.items())
        return "{" + items + "}"
    if isinstance(value, tuple):
        inner = ", ".join(python_literal(v) for v in value)
        return f"({inner},)" if len(value) == 1 else f"({inner})"
    if isinstance(value, list):
        return "[" + ", ".join(python_literal(v) for v in value) + "]"
    raise TypeError(f"Cannot render {type(value).__name__} as Python source")


def _quote(text: str) -> str:
    escaped = (
        text.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )
    return f'"{escaped}"'


def python_arguments(kwargs: Mapping[str, Any]) -> str:
    """Render a kwargs record as a Python keyword argument list.

    Routing keys (``source``, ``target``, ``request_options``) are skipped and
    argument names are converted to snake_case.
    """
    parts = []
    for key, value in kwargs.items():
        if key in RESERVED_KWARGS:
            continue
        parts.append(f"{camel_to_snake(key)}={python_literal(value)}")
    return ", ".join(parts)


def variable_ref(value: Any) -> str:
    """Source text naming a backend variable (bare strings are names, not literals)."""
    if isinstance(value, str):
        return value
    return python_literal(value)


def method_call_code(
    name: str,
    kwargs: Mapping[str, Any],
    source: Any = None,
    target: Any = None,
) -> str:
    """Build ``<target> = <source>.<name>(<args>)``."""
    code = ""
    if target:
        code += f"{target} = "
    if source is not None and source != "":
        code += f"{variable_ref(source)}."
    return code + f"{camel_to_snake(name)}({python_arguments(kwargs)})"


def callback_token(request_id: int, callback_name: str | None = None) -> str:
    return f"{CALLBACK_PLACEHOLDER}{request_id}_{callback_name or 'default'}"


def rewrite_callback_token(
    message: dict[str, Any],
    request_id: int,
    callback_name: str | None = None,
) -> str:
    """Make the callback placeholder in *message* unique to *request_id*.

    The placeholder is rewritten inside ``code`` or in any :class:`Name`
    among the top-level ``kwargs``. Returns the rewritten token.
    """
    to_find = callback_name or CALLBACK_PLACEHOLDER
    unique = callback_token(request_id, callback_name)

    if message.get("code"):
        message["code"] = re.sub(re.escape(to_find), unique, message["code"])
    elif message.get("kwargs"):
        kwargs = dict(message["kwargs"])
        for key, value in kwargs.items():
            if is_name(value) and value["name"] == to_find:
                kwargs[key] = Name(unique)
        message["kwargs"] = kwargs
    return unique
