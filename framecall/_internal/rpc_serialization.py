"""
RPC message shapes and value conversion for the worker channel.

This module contains:
1. Message TypedDicts (host -> worker requests, worker -> host responses)
2. to_cloneable: the worker-side check that a result can be sent verbatim
3. rehydrate: the host-side inverse (Name refs, registered ``__type__`` tags)
4. collect_transferables: buffers to send out-of-band with a request
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from typing import Any, Literal, TypedDict

from typing_extensions import NotRequired

from .serialization_registry import SerializerRegistry
from .values import BUFFER_TYPES, PRIMITIVE_TYPES, as_name, is_name

logger = logging.getLogger(__name__)

MessageType = Literal["init", "load", "run", "setGlobal", "fault"]


class RequestMessage(TypedDict):
    id: int
    type: MessageType
    code: NotRequired[str]
    source: NotRequired[Any]
    path: NotRequired[str]
    kwargs: NotRequired[dict[str, Any]]
    target: NotRequired[str | None]
    usesCallback: NotRequired[str]
    options: NotRequired[dict[str, Any]]
    packages: NotRequired[list[str]]
    value: NotRequired[dict[str, Any]]


class ResponseMessage(TypedDict):
    id: int | None
    type: MessageType
    result: NotRequired[Any]
    error: NotRequired[str | None]
    isCallbackResult: NotRequired[bool]


# Verbose per-message logging (set FRAMECALL_DEBUG_RPC=1)
debug_all_messages = bool(os.environ.get("FRAMECALL_DEBUG_RPC"))


def debugprint(*args: Any) -> None:
    if debug_all_messages:
        logger.debug(" ".join(str(arg) for arg in args))


class NotCloneableError(TypeError):
    """A value could not be cloned into a transport-safe form."""


def to_cloneable(obj: Any, registry: SerializerRegistry | None = None) -> Any:
    """Recursively convert *obj* into plain transport values.

    Primitives, buffers, Name refs, lists, tuples and string-keyed mappings
    are kept; types with a registered serializer are converted. Anything else
    raises :class:`NotCloneableError`.
    """
    if isinstance(obj, PRIMITIVE_TYPES) or isinstance(obj, (bytes, bytearray)):
        return obj
    if isinstance(obj, memoryview):
        return obj.tobytes()
    if is_name(obj):
        return dict(obj)

    registry = registry or SerializerRegistry.get_instance()
    serializer = registry.find_serializer(obj)
    if serializer is not None:
        try:
            converted = serializer(obj)
        except TypeError as e:
            raise NotCloneableError(str(e)) from e
        return to_cloneable(converted, registry)

    if isinstance(obj, Mapping):
        result = {}
        for key, value in obj.items():
            if not isinstance(key, (str, int, float, bool)):
                raise NotCloneableError(f"mapping key of type {type(key).__name__} could not be cloned")
            result[key] = to_cloneable(value, registry)
        return result
    if isinstance(obj, (list, tuple)):
        converted = [to_cloneable(item, registry) for item in obj]
        return tuple(converted) if isinstance(obj, tuple) else converted

    raise NotCloneableError(f"{type(obj).__name__} object could not be cloned")


def rehydrate(obj: Any, registry: SerializerRegistry | None = None) -> Any:
    """Turn wire values back into framecall objects on the receiving side."""
    if isinstance(obj, Mapping):
        if is_name(obj):
            return as_name(obj)
        registry = registry or SerializerRegistry.get_instance()
        type_tag = obj.get("__type__")
        if isinstance(type_tag, str):
            deserializer = registry.get_deserializer(type_tag)
            if deserializer is not None:
                return deserializer(obj)
        return {k: rehydrate(v, registry) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        converted = [rehydrate(item, registry) for item in obj]
        return tuple(converted) if isinstance(obj, tuple) else converted
    return obj


def collect_transferables(obj: Any, transfer: list[Any] | None = None) -> list[Any]:
    """Collect every buffer nested in *obj*, in traversal order."""
    if transfer is None:
        transfer = []
    if isinstance(obj, BUFFER_TYPES):
        transfer.append(obj)
    elif isinstance(obj, Mapping):
        for value in obj.values():
            collect_transferables(value, transfer)
    elif isinstance(obj, (list, tuple)):
        for item in obj:
            collect_transferables(item, transfer)
    return transfer
