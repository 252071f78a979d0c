"""
Value model shared by the marshaller, the channel and the worker.

This module contains:
- Name (wire-level reference to a variable living in the execution backend)
- ValueKind (tagged classification used by the marshaller)
- MISSING sentinel for argument defaults
"""

from __future__ import annotations

import enum
from collections.abc import Mapping
from typing import Any

NAME_KIND = "name"


class _Missing:
    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


class Name(dict[str, Any]):
    """Reference to a named value in the execution backend.

    A plain dict on the wire (``{"name": ..., "_kind": "name"}``) so it survives
    pickle and JSON transports unchanged and compares equal to its wire form.
    """

    def __init__(self, name: str, *, partial: bool = False) -> None:
        super().__init__(name=str(name), _kind=NAME_KIND)
        if partial:
            self["partial"] = True

    @property
    def name(self) -> str:
        return self["name"]

    @property
    def partial(self) -> bool:
        return bool(self.get("partial", False))

    def __str__(self) -> str:
        return self["name"]

    def __repr__(self) -> str:
        suffix = " partial" if self.partial else ""
        return f"<Name {self['name']}{suffix}>"

    def copy(self) -> Name:
        return Name(self["name"], partial=self.partial)


def is_name(value: Any) -> bool:
    """True for :class:`Name` instances and their plain-dict wire form."""
    if isinstance(value, Name):
        return True
    return (
        isinstance(value, Mapping)
        and value.get("_kind") == NAME_KIND
        and isinstance(value.get("name"), str)
    )


def as_name(value: Mapping[str, Any]) -> Name:
    """Rehydrate a wire-form name reference."""
    if isinstance(value, Name):
        return value
    return Name(value["name"], partial=bool(value.get("partial", False)))


class ValueKind(enum.Enum):
    PRIMITIVE = "primitive"
    REMOTE_HANDLE = "remote_handle"
    NAME_REF = "name_ref"
    BUFFER = "buffer"
    CALLBACK = "callback"
    RECORD = "record"
    SEQUENCE = "sequence"
    NATIVE = "native"


PRIMITIVE_TYPES = (str, int, float, bool, complex, type(None))
BUFFER_TYPES = (bytes, bytearray, memoryview)


def classify(value: Any) -> ValueKind:
    """Return the :class:`ValueKind` of *value*.

    Every Python object maps to exactly one kind; anything not otherwise
    recognised is NATIVE (a live object of the execution engine).
    """
    from .remote_handle import Source

    if isinstance(value, PRIMITIVE_TYPES):
        return ValueKind.PRIMITIVE
    if isinstance(value, Source):
        return ValueKind.REMOTE_HANDLE
    if is_name(value):
        return ValueKind.NAME_REF
    if isinstance(value, BUFFER_TYPES):
        return ValueKind.BUFFER
    if isinstance(value, Mapping):
        return ValueKind.RECORD
    if isinstance(value, (list, tuple)):
        return ValueKind.SEQUENCE
    if callable(value) and not isinstance(value, type):
        return ValueKind.CALLBACK
    return ValueKind.NATIVE
