"""
Execution backends.

This module contains:
- BaseBackend: mode selection, capability gate, pipeline entry point
- LocalBackend: executes in-process against a private namespace
- WorkerBackend: sends every request over a WorkerChannel to a worker
- CodeRecorder: collects the code a pipeline would send, without running it
"""

from __future__ import annotations

import inspect
import itertools
import logging
import subprocess
import textwrap
from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from typing_extensions import override

from ..config import DEFAULT_SWEEP_INTERVAL, BackendOptions, merge_backend_options
from .codegen import method_call_code, rewrite_callback_token
from .execution_mode import ExecutionMode, RemoteCodeGenMode, mode_for
from .operation import InitializationRegistry, OperationRegistry
from .pipeline import run_pipeline
from .rpc_protocol import CallbackTasks, WorkerChannel
from .rpc_serialization import collect_transferables, to_cloneable
from .values import BUFFER_TYPES
from .worker import WorkerRuntime, launch_socket_worker, spawn_worker

if TYPE_CHECKING:
    from multiprocessing.process import BaseProcess

    from ..interfaces import ResultCallback
    from .rpc_transports import RPCTransport

logger = logging.getLogger(__name__)


class BaseBackend:
    """Shared behaviour of the concrete backends."""

    features: frozenset[str] = frozenset()

    def __init__(
        self,
        options: BackendOptions | None = None,
        *,
        initialized: InitializationRegistry | None = None,
        registry: OperationRegistry | None = None,
        mode: ExecutionMode | None = None,
    ) -> None:
        self.options = merge_backend_options(options)
        self._mode = mode or mode_for(bool(self.options.get("local")))
        self._initialized = initialized or InitializationRegistry.get_instance()
        self.registry = registry or OperationRegistry.get_instance()

    @property
    def mode(self) -> ExecutionMode:
        return self._mode

    @property
    def initialized(self) -> InitializationRegistry:
        return self._initialized

    def supports(self, feature: str | Sequence[str]) -> bool:
        if isinstance(feature, str):
            return feature in self.features
        return all(f in self.features for f in feature)

    async def run(self, params: Mapping[str, Any] | Sequence[Mapping[str, Any]]) -> Any:
        steps = [params] if isinstance(params, Mapping) else list(params)
        return await run_pipeline(self, steps, self.registry)

    async def run_code(
        self,
        code: str,
        callback: ResultCallback | None = None,
        *,
        callback_name: str | None = None,
        target: str | None = None,
        timeout: float | None = None,
    ) -> Any:
        raise NotImplementedError

    async def get_global(self, name: str) -> Any:
        return await self.run_code(name)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} mode={self._mode!r}>"


class LocalBackend(BaseBackend):
    """Runs operations in this process.

    Results are live objects. Buffers and callables are handed to the engine
    directly, so both ``"buffers"`` and ``"callbacks"`` are supported.
    """

    features = frozenset({"buffers", "callbacks"})

    def __init__(
        self,
        options: BackendOptions | None = None,
        *,
        namespace: dict[str, Any] | None = None,
        initialized: InitializationRegistry | None = None,
        registry: OperationRegistry | None = None,
        mode: ExecutionMode | None = None,
    ) -> None:
        options = BackendOptions(**{"local": True, **(options or {})})
        super().__init__(options, initialized=initialized, registry=registry, mode=mode)
        self.runtime = WorkerRuntime(namespace=namespace)
        self._callback_ids = itertools.count()
        self.callback_tasks = CallbackTasks(type(self).__name__)
        worker_options = self.options.get("worker_options")
        if worker_options:
            self.runtime.initialize(worker_options)

    @property
    def namespace(self) -> dict[str, Any]:
        return self.runtime.namespace

    def _bind_callback(
        self,
        message: dict[str, Any],
        callback: ResultCallback,
        callback_name: str | None,
    ) -> str:
        token = rewrite_callback_token(message, next(self._callback_ids), callback_name)

        def invoke(value: Any = None) -> None:
            outcome = callback(value)
            if inspect.isawaitable(outcome):
                self.callback_tasks.schedule(outcome)

        self.runtime.namespace[token] = invoke
        return token

    @override
    async def run_code(self, code, callback=None, *, callback_name=None, target=None, timeout=None):
        message: dict[str, Any] = {"code": code}
        token = self._bind_callback(message, callback, callback_name) if callback is not None else None
        try:
            result = self.runtime.execute_source(message["code"])
        finally:
            if token:
                self.runtime.namespace.pop(token, None)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def run_method(
        self,
        source: Any,
        path: str,
        kwargs: dict[str, Any],
        callback: ResultCallback | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        message: dict[str, Any] = {"kwargs": kwargs}
        token = self._bind_callback(message, callback, None) if callback is not None else None
        try:
            parts = path.split(".")
            if source is None:
                obj = self.runtime.lookup(parts.pop(0))
            elif isinstance(source, str):
                obj = self.runtime.lookup(source)
            else:
                obj = self.runtime.resolve(source)
            for part in parts:
                obj = getattr(obj, part)
            result = obj(**self.runtime.resolve(message["kwargs"]))
        finally:
            if token:
                self.runtime.namespace.pop(token, None)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def set_global(self, name: str, value: Any) -> None:
        self.runtime.namespace[name] = value

    @override
    async def get_global(self, name: str) -> Any:
        return self.runtime.execute_source(name)

    async def load(self, packages: Sequence[str]) -> list[str]:
        return self.runtime.load_packages(list(packages))


class WorkerBackend(BaseBackend):
    """Runs operations in a worker reached through a :class:`WorkerChannel`.

    With no transport a worker process is spawned, reached over a pipe or, with
    ``worker_transport: "socket"``, over a Unix socket. Functions can be sent as
    globals (their source text travels), but live callables cannot be
    passed as arguments.
    """

    features = frozenset({"buffers", "functions"})

    def __init__(
        self,
        transport: RPCTransport | None = None,
        options: BackendOptions | None = None,
        *,
        channel: WorkerChannel | None = None,
        process: BaseProcess | subprocess.Popen[bytes] | None = None,
        initialized: InitializationRegistry | None = None,
        registry: OperationRegistry | None = None,
        mode: ExecutionMode | None = None,
    ) -> None:
        super().__init__(options, initialized=initialized, registry=registry, mode=mode)
        if channel is None:
            if transport is None:
                if self.options.get("worker_transport") == "socket":
                    process, transport = launch_socket_worker()
                else:
                    process, transport = spawn_worker()
            channel = WorkerChannel(
                transport,
                default_timeout=self.options.get("request_timeout"),
                sweep_interval=self.options.get("sweep_interval") or DEFAULT_SWEEP_INTERVAL,
            )
        self.channel = channel
        self.process = process
        self._started = False

    async def start(self) -> None:
        """Send the ``init`` message once, if there are worker options."""
        if self._started:
            return
        self._started = True
        worker_options = self.options.get("worker_options") or {}
        if worker_options.get("imports") or worker_options.get("setup_code"):
            await self.channel.request({"type": "init", "options": dict(worker_options)})

    async def _request(self, message: dict[str, Any], **kwargs: Any) -> Any:
        await self.start()
        return await self.channel.request(message, **kwargs)

    @override
    async def run_code(self, code, callback=None, *, callback_name=None, target=None, timeout=None):
        return await self._request(
            {"type": "run", "code": code, "target": target},
            callback=callback,
            callback_name=callback_name,
            timeout=timeout,
        )

    async def run_method(
        self,
        source: Any,
        path: str,
        kwargs: dict[str, Any],
        callback: ResultCallback | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        return await self._request(
            {"type": "run", "source": source, "path": path, "kwargs": kwargs},
            transfer=collect_transferables(kwargs),
            callback=callback,
            timeout=timeout,
        )

    async def set_global(self, name: str, value: Any) -> None:
        transfer: list[Any] = []
        if isinstance(value, BUFFER_TYPES):
            payload = {"name": name, "kind": "buffer", "value": value}
            transfer.append(value)
        elif callable(value) and not isinstance(value, type):
            payload = {"name": name, "kind": "function", "value": _function_source(value)}
        else:
            payload = {"name": name, "kind": "value", "value": to_cloneable(value)}
        await self._request({"type": "setGlobal", "value": payload}, transfer=transfer)

    async def load(self, packages: Sequence[str]) -> list[str]:
        return await self._request({"type": "load", "packages": list(packages)})

    def close(self) -> None:
        """Shut the channel down and stop the worker process, if we own one."""
        errors: list[str] = []
        try:
            self.channel.shutdown()
        except Exception as exc:
            errors.append(f"channel: {exc}")

        if self.process is not None:
            try:
                _stop_process(self.process)
            except Exception as exc:
                errors.append(f"terminate: {exc}")
            self.process = None

        if errors:
            raise RuntimeError(f"Errors stopping worker backend: {'; '.join(errors)}")


def _stop_process(process: BaseProcess | subprocess.Popen[bytes], timeout: float = 5.0) -> None:
    if isinstance(process, subprocess.Popen):
        try:
            process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            process.terminate()
            process.wait()
        return
    process.join(timeout=timeout)
    if process.is_alive():
        process.terminate()
        process.join()


def _function_source(func: Callable[..., Any]) -> str:
    try:
        source = inspect.getsource(func)
    except (OSError, TypeError) as e:
        raise TypeError(f"Cannot send {func!r} to the worker: source unavailable") from e
    return textwrap.dedent(source)


class CodeRecorder(BaseBackend):
    """Backend that records code instead of running it.

    Used to answer ``get_code`` requests: the pipeline runs against the
    recorder with a fresh initialization registry, so initialization code
    appears in the output too. Every code result is ``None``.
    """

    features = frozenset({"buffers"})

    def __init__(self, registry: OperationRegistry | None = None) -> None:
        super().__init__(
            BackendOptions(local=False),
            initialized=InitializationRegistry(),
            registry=registry,
            mode=RemoteCodeGenMode(),
        )
        self.lines: list[str] = []

    @property
    def code(self) -> str:
        return "\n".join(self.lines)

    @override
    async def run_code(self, code, callback=None, *, callback_name=None, target=None, timeout=None):
        self.lines.append(code)
        return None

    async def run_method(self, source, path, kwargs, callback=None, *, timeout=None):
        self.lines.append(method_call_code(path, kwargs, source=source))
        return None

    async def set_global(self, name: str, value: Any) -> None:
        self.lines.append(f"# {name}: {type(value).__name__} set by the host")
