"""Chaining of dependent operations into one sequential pipeline."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

from .marshal import make_python_compatible
from .operation import Operation, OperationRegistry

if TYPE_CHECKING:
    from ..interfaces import ExecutionBackend

logger = logging.getLogger(__name__)

Params = Mapping[str, Any]


def resolve_step(params: Params, registry: OperationRegistry) -> tuple[Operation, dict[str, Any]]:
    """Split a step description into its operation and its call kwargs."""
    kwargs = dict(params)
    key = kwargs.pop("operation_key", None)
    if not key:
        raise ValueError(f"Pipeline step has no operation_key: {params!r}")
    operation_type = kwargs.pop("operation_type", None) or "dataframe"
    return registry.get(key, operation_type), kwargs


def resolve_steps(params_list: Sequence[Params], registry: OperationRegistry) -> list[tuple[Operation, dict[str, Any]]]:
    return [resolve_step(params, registry) for params in params_list]


async def run_pipeline(
    backend: ExecutionBackend,
    params_list: Sequence[Params],
    registry: OperationRegistry | None = None,
) -> Any:
    """Run *params_list* in order and return the last step's result.

    Every step is resolved before anything runs, so an unknown operation key
    fails without side effects. A step that names no ``source`` receives the
    previous result when the previous operation's target type matches its
    source type.
    """
    steps = resolve_steps(params_list, registry or OperationRegistry.get_instance())

    result: Any = None
    previous: Operation | None = None
    for index, (operation, kwargs) in enumerate(steps):
        if (
            previous is not None
            and kwargs.get("source") is None
            and previous.target_type == operation.source_type
            and result is not None
        ):
            kwargs["source"] = await make_python_compatible(backend, result, backend.mode.use_proxies)
        logger.debug("Pipeline step %d: %r", index, operation)
        result = await operation.run(backend, kwargs)
        previous = operation
    return result
