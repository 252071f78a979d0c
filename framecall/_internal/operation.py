"""
Operation descriptors and their execution strategies.

This module contains:
- InitializationRegistry (which operation initializers have run)
- The three strategies: CodeEmitter, BackendCall, MethodCall
- Operation (immutable descriptor) and make_operation()
- OperationRegistry (lookup by key and operation type)
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import inspect
import logging
import threading
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from ..errors import OperationNotFound
from .arguments import ArgumentSpec, OperationArgument, adapt_kwargs, normalize_argument_specs
from .codegen import generate_unique_variable_name
from .marshal import Marshaller
from .values import ValueKind, classify

if TYPE_CHECKING:
    from ..interfaces import ExecutionBackend, OperationStrategy

logger = logging.getLogger(__name__)

TargetType = Literal["dataframe", "value"]

_OPTION_KEYS = ("callback", "callback_name", "timeout")


# ---------------------------------------------------------------------------
# Initialization tracking
# ---------------------------------------------------------------------------

class InitializationRegistry:
    """Records operation names whose initializer has been attempted.

    One instance is shared per process by default; backends accept their own
    so tests can start from a clean slate.
    """

    _instance: InitializationRegistry | None = None
    _instance_lock = threading.Lock()

    def __init__(self) -> None:
        self._names: set[str] = set()
        self._running: dict[str, concurrent.futures.Future[None]] = {}
        self._lock = threading.Lock()

    @classmethod
    def get_instance(cls) -> InitializationRegistry:
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    async def run_once(self, name: str, initializer: Callable[[], Any]) -> bool:
        """Run *initializer* the first time *name* is seen.

        Callers that arrive while it is still running wait for it to finish
        instead of skipping ahead. A failed initializer is not retried: its
        error reaches the first caller only. Returns True for the caller that
        ran it.
        """
        with self._lock:
            if name in self._names:
                running = self._running.get(name)
                owner = False
            else:
                self._names.add(name)
                running = self._running[name] = concurrent.futures.Future()
                owner = True

        if not owner:
            if running is not None:
                await asyncio.shield(asyncio.wrap_future(running))
            return False

        logger.debug("Initializing operation %s", name)
        try:
            await _maybe_await(initializer())
        finally:
            with self._lock:
                self._running.pop(name, None)
            running.set_result(None)
        return True

    def is_initialized(self, name: str) -> bool:
        with self._lock:
            return name in self._names

    def reset(self) -> None:
        """Forget every operation (useful for tests)."""
        with self._lock:
            self._names.clear()
            self._running.clear()


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass(frozen=True)
class CodeEmitter:
    """Operation supplies ``get_code(kwargs) -> str``."""

    get_code: Callable[[dict[str, Any]], str]

    async def execute(self, backend, kwargs, options):
        code = self.get_code(kwargs)
        logger.debug("[CODE FROM GENERATOR] %s", code)
        target = kwargs.get("target")
        return await backend.run_code(
            code,
            options.get("callback"),
            callback_name=options.get("callback_name"),
            target=str(target) if target else None,
            timeout=options.get("timeout"),
        )


@dataclass(frozen=True)
class BackendCall:
    """Operation supplies ``run(backend, kwargs)``, invoked directly."""

    run: Callable[[Any, dict[str, Any]], Any]

    async def execute(self, backend, kwargs, options):
        logger.debug("[ARGUMENTS] %s", kwargs)
        return await _maybe_await(self.run(backend, kwargs))


@dataclass(frozen=True)
class MethodCall:
    """Default strategy: ``<target> = <source>.<name>(<args>)`` or a direct method call."""

    name: str
    default_source: str | None = None

    async def execute(self, backend, kwargs, options):
        return await backend.mode.call_method(backend, self.name, kwargs, options, self.default_source)


# ---------------------------------------------------------------------------
# Descriptor
# ---------------------------------------------------------------------------

def _source_name(source: Any) -> str | None:
    if source is None:
        return None
    if isinstance(source, str):
        return source
    if classify(source) in (ValueKind.NAME_REF, ValueKind.REMOTE_HANDLE):
        return source["name"]
    return None


@dataclass(frozen=True)
class Operation:
    """Immutable description of one remote-callable operation."""

    name: str
    source_type: TargetType | None
    target_type: TargetType
    args: tuple[OperationArgument, ...]
    strategy: OperationStrategy
    initializer: Callable[[Any], Any] | None = None
    default_source: str | None = None
    creates_new: bool = False
    doc: str | None = field(default=None, compare=False)

    def adapt(self, args: Mapping[str, Any] | Sequence[Any] | None) -> dict[str, Any]:
        """Canonical kwargs plus a synthesized target where one is needed."""
        kwargs = adapt_kwargs(args, self.args)
        if kwargs.get("target") is None and self.target_type == "dataframe":
            source_name = _source_name(kwargs.get("source"))
            if self.source_type in (None, self.target_type) and not self.creates_new and source_name:
                kwargs["target"] = source_name
            else:
                kwargs["target"] = generate_unique_variable_name(self.target_type)
        return kwargs

    def run(
        self,
        backend: ExecutionBackend,
        args: Mapping[str, Any] | Sequence[Any] | None = None,
    ) -> Awaitable[Any]:
        """Validate *args* now and return the awaitable that executes them.

        Argument errors are raised synchronously, before anything is sent.
        """
        kwargs = self.adapt(args)
        return self._execute(backend, kwargs)

    async def _execute(self, backend: ExecutionBackend, kwargs: dict[str, Any]) -> Any:
        mode = backend.mode
        initializer = self.initializer
        if initializer is not None:
            await backend.initialized.run_once(self.name, lambda: initializer(backend))

        request_options = dict(kwargs.pop("request_options", None) or {})
        options = {k: request_options[k] for k in _OPTION_KEYS if k in request_options}

        marshaller = Marshaller(backend, mode.use_proxies)
        marshalled = {key: marshaller.marshal(value) for key, value in kwargs.items()}
        await marshaller.register_globals()

        result = await self.strategy.execute(backend, mode.prepare_kwargs(marshalled), options)
        return mode.wrap_result(self, kwargs, result)

    def __repr__(self) -> str:
        return f"<Operation {self.name} {self.source_type}->{self.target_type}>"


def make_operation(
    name: str,
    *,
    target_type: TargetType = "value",
    source_type: TargetType | None = None,
    args: Sequence[ArgumentSpec] | None = None,
    get_code: Callable[[dict[str, Any]], str] | None = None,
    run: Callable[[Any, dict[str, Any]], Any] | None = None,
    initialize: Callable[[Any], Any] | None = None,
    initialization_code: str | Callable[[], str] | None = None,
    default_source: str | None = None,
    creates_new: bool = False,
    doc: str | None = None,
) -> Operation:
    """Build an :class:`Operation`, picking its strategy once.

    ``get_code`` wins over ``run``; with neither, the default method-call
    strategy is used. ``initialization_code`` is run through
    ``backend.run_code`` the first time the operation is used.
    """
    strategy: OperationStrategy
    if get_code is not None:
        strategy = CodeEmitter(get_code)
    elif run is not None:
        strategy = BackendCall(run)
    else:
        strategy = MethodCall(name, default_source)

    initializer = initialize
    if initializer is None and initialization_code is not None:
        code_source = initialization_code

        async def initializer(backend: Any) -> Any:
            code = code_source() if callable(code_source) else code_source
            return await backend.run_code(code)

    return Operation(
        name=name,
        source_type=source_type,
        target_type=target_type,
        args=normalize_argument_specs(args),
        strategy=strategy,
        initializer=initializer,
        default_source=default_source,
        creates_new=creates_new,
        doc=doc,
    )


def dataframe_operation(name: str, **kwargs: Any) -> Operation:
    """An operation whose source is a dataframe handle."""
    return make_operation(name, source_type="dataframe", **kwargs)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class OperationRegistry:
    """Lookup of operations by ``(operation_type, key)``."""

    _instance: OperationRegistry | None = None

    def __init__(self) -> None:
        self._operations: dict[str, dict[str, Operation]] = {}

    @classmethod
    def get_instance(cls) -> OperationRegistry:
        """Return the default registry, loading the built-in catalogue once."""
        if cls._instance is None:
            registry = cls()
            from ..operations import register_builtin_operations

            register_builtin_operations(registry)
            cls._instance = registry
        return cls._instance

    def register(self, key: str, operation: Operation, operation_type: str = "dataframe") -> None:
        ops = self._operations.setdefault(operation_type, {})
        if key in ops:
            logger.debug("Overwriting operation %s/%s", operation_type, key)
        ops[key] = operation

    def register_many(self, operations: Mapping[str, Operation], operation_type: str = "dataframe") -> None:
        for key, operation in operations.items():
            self.register(key, operation, operation_type)

    def get(self, key: str, operation_type: str = "dataframe") -> Operation:
        try:
            return self._operations[operation_type][key]
        except KeyError:
            raise OperationNotFound(key, operation_type) from None

    def has(self, key: str, operation_type: str = "dataframe") -> bool:
        return key in self._operations.get(operation_type, {})

    def has_prefix(self, prefix: str, operation_type: str = "dataframe") -> bool:
        dotted = prefix + "."
        return any(key.startswith(dotted) for key in self._operations.get(operation_type, {}))

    def keys(self, operation_type: str = "dataframe") -> list[str]:
        return sorted(self._operations.get(operation_type, {}))
