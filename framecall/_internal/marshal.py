"""
Value marshalling for backend transport.

Converts call arguments into values the execution backend can accept:
- Remote handles become Name references
- Buffers and functions are registered as backend globals (or passed through
  in local proxy mode) when the backend supports them, and dropped with a
  warning when it does not
- Lists, tuples and mappings are rebuilt recursively

Registrations are queued while marshalling (which is synchronous) and
flushed with :meth:`Marshaller.register_globals` before the request that
uses them is sent.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..errors import UnsupportedFeature
from .codegen import generate_unique_variable_name
from .values import Name, ValueKind, classify

if TYPE_CHECKING:
    from ..interfaces import ExecutionBackend

logger = logging.getLogger(__name__)

_FEATURE_GATES = {
    ValueKind.BUFFER: ("buffers", "file", "Files not supported on this kind of server"),
    ValueKind.CALLBACK: (
        "callbacks",
        "func",
        "Callbacks not supported as parameters on this kind of server",
    ),
}


class Marshaller:
    """Recursively convert values for one backend."""

    def __init__(self, backend: ExecutionBackend, use_proxies: bool = False) -> None:
        self.backend = backend
        self.use_proxies = use_proxies
        self.pending_globals: list[tuple[str, Any]] = []

    def marshal(self, value: Any) -> Any:
        kind = classify(value)

        if kind is ValueKind.NATIVE:
            # Live backend objects pass through; without proxies there is
            # nothing better to do with them either.
            return value

        if kind is ValueKind.REMOTE_HANDLE:
            if self.use_proxies and value.data is not None:
                return value.data
            return Name(value.name)

        if kind is ValueKind.NAME_REF:
            return Name(value["name"], partial=bool(value.get("partial", False)))

        if kind in _FEATURE_GATES:
            feature, prefix, warning = _FEATURE_GATES[kind]
            if not self.backend.supports(feature):
                logger.warning("%s", UnsupportedFeature(f"{warning}; dropping {type(value).__name__} argument"))
                return None
            if self.use_proxies:
                return value
            name = generate_unique_variable_name(prefix)
            self.pending_globals.append((name, value))
            return Name(name)

        if kind is ValueKind.SEQUENCE:
            converted = [self.marshal(item) for item in value]
            return tuple(converted) if isinstance(value, tuple) else converted

        if kind is ValueKind.RECORD:
            return {k: self.marshal(v) for k, v in value.items()}

        return value

    async def register_globals(self) -> None:
        """Bind every queued buffer/function on the backend, in order."""
        while self.pending_globals:
            name, value = self.pending_globals.pop(0)
            logger.debug("Registering backend global %s (%s)", name, type(value).__name__)
            await self.backend.set_global(name, value)


def marshal(backend: ExecutionBackend, value: Any, use_proxies: bool = False) -> tuple[Any, list[tuple[str, Any]]]:
    """Marshal *value* and return it with the globals it needs registered."""
    marshaller = Marshaller(backend, use_proxies)
    converted = marshaller.marshal(value)
    return converted, marshaller.pending_globals


async def make_python_compatible(backend: ExecutionBackend, value: Any, use_proxies: bool = False) -> Any:
    """Marshal *value* and register any side-channel globals it produced."""
    marshaller = Marshaller(backend, use_proxies)
    converted = marshaller.marshal(value)
    await marshaller.register_globals()
    return converted
