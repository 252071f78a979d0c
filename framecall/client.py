"""High-level entry point.

A :class:`Client` turns operation calls into pipelines and sends them to its
backend. Client-type operations are attributes of the client and
dataframe operations are attributes of the :class:`Source` handles it
returns::

    client = Client(LocalBackend())
    df = await client.create_dataframe({"a": [1, 2, 3]})
    sampled = await df.sample(n=2)

With a remote (code generating) backend, calls that produce a dataframe
return a deferred :class:`Source` immediately; awaiting it sends the whole
chain in one go.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Mapping, Sequence
from typing import Any, Union

from ._internal.arguments import adapt_kwargs, normalize_call
from ._internal.backends import CodeRecorder, LocalBackend, WorkerBackend
from ._internal.codegen import generate_unique_variable_name
from ._internal.operation import Operation, OperationRegistry
from ._internal.pipeline import resolve_steps
from ._internal.remote_handle import Source
from ._internal.values import ValueKind, as_name, classify
from .config import ClientConfig, merge_backend_options
from .interfaces import ExecutionBackend

logger = logging.getLogger(__name__)

ParamsInput = Union[Mapping[str, Any], Sequence[Mapping[str, Any]]]


def _handle_name(source: Any) -> str | None:
    if source is None:
        return None
    if isinstance(source, str):
        return source
    if classify(source) in (ValueKind.REMOTE_HANDLE, ValueKind.NAME_REF):
        return source["name"]
    return None


class Client:
    """Dispatches operations to an execution backend."""

    def __init__(
        self,
        backend: ExecutionBackend | None = None,
        config: ClientConfig | None = None,
        *,
        registry: OperationRegistry | None = None,
    ) -> None:
        self.config: ClientConfig = config or ClientConfig()
        self.registry = registry or getattr(backend, "registry", None) or OperationRegistry.get_instance()
        if backend is None:
            options = merge_backend_options(self.config.get("server_options"))
            if options.get("local"):
                backend = LocalBackend(options, registry=self.registry)
            else:
                backend = WorkerBackend(options=options, registry=self.registry)
        self.backend = backend

    def __repr__(self) -> str:
        return f"<Client backend={self.backend!r}>"

    def __getattr__(self, item: str) -> Any:
        if item.startswith("_"):
            raise AttributeError(item)
        registry = self.__dict__.get("registry")
        if registry is None or not registry.has(item, "client"):
            raise AttributeError(f"{type(self).__name__} has no operation '{item}'")
        operation = registry.get(item, "client")

        def call(*args: Any, **kwargs: Any) -> Any:
            return self.call_operation(operation, item, "client", args, kwargs)

        call.__name__ = item
        call.__doc__ = operation.doc
        return call

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def call_operation(
        self,
        operation: Operation,
        key: str,
        operation_type: str,
        args: Sequence[Any],
        kwargs: Mapping[str, Any],
        source: Source | None = None,
    ) -> Any:
        """Run one operation from a Python call site."""
        record = normalize_call(args, kwargs, operation.args)
        if source is not None and record.get("source") is None:
            record["source"] = source
        return self.run({"operation_key": key, "operation_type": operation_type, **record})

    def run(self, params: ParamsInput, request_options: Mapping[str, Any] | None = None) -> Any:
        """Run one step or a pipeline of steps.

        Returns a deferred :class:`Source` when the backend defers and the
        last step produces a dataframe; otherwise an awaitable of the result.
        Unknown operations and bad arguments raise immediately.
        """
        params_list = [dict(step) for step in ([params] if isinstance(params, Mapping) else params)]
        if not params_list:
            raise ValueError("Nothing to run: empty pipeline")
        if request_options:
            last = params_list[-1]
            last["request_options"] = {**(last.get("request_options") or {}), **request_options}

        steps = resolve_steps(params_list, self.registry)
        for operation, kwargs in steps:
            adapt_kwargs(kwargs, operation.args)

        last_operation, last_kwargs = steps[-1]
        options = last_kwargs.get("request_options") or {}
        if options.get("get_code"):
            return self.get_code(params_list)

        first_source = params_list[0].get("source")
        queue: list[dict[str, Any]] = []
        if isinstance(first_source, Source) and first_source.params_queue:
            queue.extend(first_source.params_queue)
        queue.extend(params_list)

        if last_operation.target_type == "dataframe" and self.backend.mode.defers_pipelines:
            return self._defer(last_operation, queue)
        return self.send(queue)

    def _defer(self, operation: Operation, queue: list[dict[str, Any]]) -> Source:
        last = queue[-1]
        target = last.get("target")
        if not target:
            source_name = _handle_name(last.get("source"))
            if operation.creates_new or not source_name or operation.source_type not in (None, operation.target_type):
                target = generate_unique_variable_name(operation.target_type)
            else:
                target = source_name
            last["target"] = target

        handle = Source(self, str(target))
        handle.params_queue = queue
        logger.debug("Deferred %d step(s) into %s", len(queue), handle.name)
        return handle

    async def send(self, params_queue: Sequence[Mapping[str, Any]]) -> Any:
        """Send a pipeline to the backend and prepare its result."""
        params_list = [dict(step) for step in params_queue]
        target_type = resolve_steps(params_list[-1:], self.registry)[0][0].target_type
        result = await self.backend.run(params_list)
        return self.prepare_result(result, target_type)

    def prepare_result(self, result: Any, target_type: str | None = None) -> Any:
        """Wrap backend references (and live dataframe results) into Sources."""
        kind = classify(result)
        if kind is ValueKind.NAME_REF:
            name = as_name(result)
            if name.partial:
                logger.warning(
                    "Result could not be returned verbatim; it stays in the backend as %s",
                    name.name,
                )
                return Source(self, name.name, confirmed=False)
            return Source(self, name.name)
        if kind is ValueKind.NATIVE and target_type == "dataframe":
            return Source(self, data=result)
        return result

    async def get_code(self, params: ParamsInput) -> str:
        """Python source the backend would run for *params*, without running it."""
        params_list = []
        for step in [params] if isinstance(params, Mapping) else params:
            step = dict(step)
            options = dict(step.get("request_options") or {})
            options.pop("get_code", None)
            step["request_options"] = options
            params_list.append(step)
        recorder = CodeRecorder(self.registry)
        await recorder.run(params_list)
        return recorder.code

    # ------------------------------------------------------------------
    # Backend passthroughs
    # ------------------------------------------------------------------

    async def run_code(self, code: str, request_options: Mapping[str, Any] | None = None) -> Any:
        options = request_options or {}
        result = await self.backend.run_code(
            code,
            options.get("callback"),
            callback_name=options.get("callback_name"),
            timeout=options.get("timeout"),
        )
        return self.prepare_result(result)

    def create_source(self, name: str | None = None) -> Source:
        return Source(self, name)

    def supports(self, feature: str | Sequence[str]) -> bool:
        return self.backend.supports(feature)

    async def set_global(self, name: str, value: Any) -> None:
        await self.backend.set_global(name, value)

    def get_global(self, name: str) -> Awaitable[Any]:
        return self.backend.get_global(name)

    async def load(self, packages: Sequence[str]) -> list[str]:
        return await self.backend.load(packages)  # type: ignore[attr-defined]

    def close(self) -> None:
        close = getattr(self.backend, "close", None)
        if close is not None:
            close()
