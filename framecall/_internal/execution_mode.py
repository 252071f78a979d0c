"""Local versus remote execution behaviour, chosen once per backend."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .codegen import RESERVED_KWARGS, camel_to_snake, method_call_code
from .values import Name, ValueKind, classify

if TYPE_CHECKING:
    from ..interfaces import ExecutionBackend
    from .operation import Operation

logger = logging.getLogger(__name__)


def source_reference(source: Any) -> Any:
    """Reduce a marshalled source to a variable name, or keep a live object."""
    if source is None:
        return None
    kind = classify(source)
    if kind is ValueKind.NAME_REF or kind is ValueKind.REMOTE_HANDLE:
        return source["name"]
    return source


class ExecutionMode:
    local: bool = False
    use_proxies: bool = False
    defers_pipelines: bool = False

    def prepare_kwargs(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        return kwargs

    async def call_method(
        self,
        backend: ExecutionBackend,
        name: str,
        kwargs: dict[str, Any],
        options: dict[str, Any],
        default_source: str | None = None,
    ) -> Any:
        raise NotImplementedError

    def wrap_result(self, operation: Operation, kwargs: dict[str, Any], result: Any) -> Any:
        if operation.target_type == "dataframe":
            target = kwargs.get("target")
            return Name(str(target) if target is not None else "")
        return result

    def __repr__(self) -> str:
        return f"<{type(self).__name__}>"


class RemoteCodeGenMode(ExecutionMode):
    """Operations become Python source sent across the channel.

    Targets are assigned remotely, and pipelines whose last step produces a
    dataframe are deferred until the resulting handle is awaited.
    """

    local = False
    use_proxies = False
    defers_pipelines = True

    async def call_method(self, backend, name, kwargs, options, default_source=None):
        source = kwargs.get("source") or default_source
        target = kwargs.get("target")
        code = method_call_code(name, kwargs, source=source_reference(source), target=target)
        logger.debug("[CODE FROM DEFAULT GENERATOR] %s", code)
        return await backend.run_code(
            code,
            options.get("callback"),
            callback_name=options.get("callback_name"),
            target=str(target) if target else None,
            timeout=options.get("timeout"),
        )


class LocalProxyMode(ExecutionMode):
    """The backend runs in-process (or holds live objects for us).

    Live objects are passed by reference, methods are dispatched directly
    instead of through generated source, and results come back unwrapped.
    """

    local = True
    use_proxies = True
    defers_pipelines = False

    def prepare_kwargs(self, kwargs):
        kwargs = dict(kwargs)
        kwargs.pop("target", None)
        return kwargs

    async def call_method(self, backend, name, kwargs, options, default_source=None):
        source = source_reference(kwargs.get("source") or default_source)
        path = camel_to_snake(name).split(".")
        if source is None and len(path) > 1:
            source = path.pop(0)

        method_kwargs = {k: v for k, v in kwargs.items() if k not in RESERVED_KWARGS}
        run_method = getattr(backend, "run_method", None)
        if run_method is None:
            code = method_call_code(".".join(path), method_kwargs, source=source)
            return await backend.run_code(code, options.get("callback"), timeout=options.get("timeout"))

        return await run_method(
            source,
            ".".join(path),
            method_kwargs,
            options.get("callback"),
            timeout=options.get("timeout"),
        )

    def wrap_result(self, operation, kwargs, result):
        if classify(result) is ValueKind.NATIVE:
            return result
        return super().wrap_result(operation, kwargs, result)


def mode_for(local: bool) -> ExecutionMode:
    return LocalProxyMode() if local else RemoteCodeGenMode()
