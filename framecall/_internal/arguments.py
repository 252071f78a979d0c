"""Canonical argument adapter.

Operations accept either a record of named arguments or positional values.
Both are normalized into one kwargs record with defaults applied before any
marshalling or network activity happens.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Union

from ..errors import InvalidArguments
from .codegen import RESERVED_KWARGS
from .values import MISSING


@dataclass(frozen=True)
class OperationArgument:
    """One declared argument of an operation."""

    name: str
    default: Any = MISSING
    required: bool = False

    @property
    def has_default(self) -> bool:
        return self.default is not MISSING


ArgumentSpec = Union[str, OperationArgument, Mapping[str, Any]]


def normalize_argument_specs(specs: Sequence[ArgumentSpec] | None) -> tuple[OperationArgument, ...]:
    """Promote plain names and ``{"name": ..., "default": ...}`` records."""
    result = []
    for spec in specs or ():
        if isinstance(spec, OperationArgument):
            result.append(spec)
        elif isinstance(spec, str):
            result.append(OperationArgument(spec))
        elif isinstance(spec, Mapping):
            if "name" not in spec:
                raise ValueError(f"Argument spec {spec!r} has no 'name'")
            result.append(
                OperationArgument(
                    name=spec["name"],
                    default=spec.get("default", MISSING),
                    required=bool(spec.get("required", False)),
                )
            )
        else:
            raise TypeError(f"Invalid argument spec: {spec!r}")
    return tuple(result)


def adapt_kwargs(
    args: Mapping[str, Any] | Sequence[Any] | None,
    operation_args: Sequence[OperationArgument],
) -> dict[str, Any]:
    """Build the canonical kwargs record for one invocation.

    *args* is either a record (keys are argument names, plus ``source``,
    ``target`` and ``request_options``) or a positional sequence mapped onto
    *operation_args* in order. Defaults fill in unset arguments.

    Raises:
        InvalidArguments: too many positional values, a non-record/non-sequence
            input, or a required argument left unset.
    """
    if args is None:
        kwargs: dict[str, Any] = {}
    elif isinstance(args, Mapping):
        non_string = [k for k in args if not isinstance(k, str)]
        if non_string:
            raise InvalidArguments(f"kwargs must have string keys, got {non_string!r}")
        kwargs = dict(args)
    elif isinstance(args, Sequence) and not isinstance(args, (str, bytes, bytearray)):
        if len(args) > len(operation_args):
            raise InvalidArguments(
                f"Expected at most {len(operation_args)} positional arguments, got {len(args)}"
            )
        kwargs = {operation_args[i].name: value for i, value in enumerate(args)}
    else:
        raise InvalidArguments(f"Invalid kwargs, received arg of type '{type(args).__name__}'")

    for arg in operation_args:
        if arg.name in kwargs:
            continue
        if arg.has_default:
            kwargs[arg.name] = copy.deepcopy(arg.default)
        elif arg.required:
            raise InvalidArguments(f"Missing required argument '{arg.name}'")

    return kwargs


def normalize_call(
    args: Sequence[Any],
    kwargs: Mapping[str, Any],
    operation_args: Sequence[OperationArgument],
) -> dict[str, Any]:
    """Adapt a Python call site (``*args, **kwargs``) to a kwargs record.

    A lone positional mapping whose keys are all known names is taken as the
    record form, mirroring ``op({"cols": "*"})``.
    """
    known = {arg.name for arg in operation_args} | RESERVED_KWARGS
    if (
        len(args) == 1
        and not kwargs
        and isinstance(args[0], Mapping)
        and all(isinstance(k, str) and k in known for k in args[0])
    ):
        return adapt_kwargs(args[0], operation_args)

    if len(args) > len(operation_args):
        raise InvalidArguments(
            f"Expected at most {len(operation_args)} positional arguments, got {len(args)}"
        )
    record = {operation_args[i].name: value for i, value in enumerate(args)}
    duplicated = set(record) & set(kwargs)
    if duplicated:
        raise InvalidArguments(f"Arguments given both positionally and by keyword: {sorted(duplicated)}")
    record.update(kwargs)
    return adapt_kwargs(record, operation_args)
