"""
Pytest configuration and fixtures.

Shared fixtures: a recording backend that captures what operations send,
fresh registries, and in-memory transport pairs (optionally with a worker
serving the far end on a thread).
"""

import logging
import sys
import threading

import pytest

from framecall._internal.backends import BaseBackend
from framecall._internal.execution_mode import ExecutionMode, LocalProxyMode, RemoteCodeGenMode
from framecall._internal.operation import InitializationRegistry, OperationRegistry
from framecall._internal.rpc_protocol import WorkerChannel
from framecall._internal.rpc_transports import QueueTransport
from framecall._internal.worker import serve
from framecall.operations import register_builtin_operations


def pytest_configure(config):
    """Configure pytest with custom settings."""
    log_level = logging.DEBUG if config.getoption("--debug-framecall") else logging.INFO

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )
    logging.getLogger("framecall").setLevel(log_level)
    logging.getLogger("asyncio").setLevel(log_level)


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--debug-framecall",
        action="store_true",
        default=False,
        help="Enable debug logging for framecall (shows every RPC message with FRAMECALL_DEBUG_RPC=1)",
    )


class RecordingBackend(BaseBackend):
    """Backend that records every call and answers from a script."""

    def __init__(self, features=("buffers",), mode: ExecutionMode | None = None, registry=None):
        super().__init__(
            {"local": False},
            initialized=InitializationRegistry(),
            registry=registry,
            mode=mode or RemoteCodeGenMode(),
        )
        self.features = frozenset(features)
        self.code_calls = []
        self.method_calls = []
        self.globals = {}
        self.results = []

    def _next_result(self):
        return self.results.pop(0) if self.results else None

    async def run_code(self, code, callback=None, *, callback_name=None, target=None, timeout=None):
        self.code_calls.append(
            {"code": code, "callback": callback, "callback_name": callback_name, "target": target, "timeout": timeout}
        )
        return self._next_result()

    async def run_method(self, source, path, kwargs, callback=None, *, timeout=None):
        self.method_calls.append({"source": source, "path": path, "kwargs": kwargs, "callback": callback})
        return self._next_result()

    async def set_global(self, name, value):
        self.globals[name] = value

    @property
    def codes(self):
        return [call["code"] for call in self.code_calls]


@pytest.fixture(autouse=True)
def _reset_initialization_registry():
    InitializationRegistry.get_instance().reset()
    yield
    InitializationRegistry.get_instance().reset()


@pytest.fixture
def operation_registry():
    registry = OperationRegistry()
    register_builtin_operations(registry)
    return registry


@pytest.fixture
def recording_backend(operation_registry):
    return RecordingBackend(registry=operation_registry)


@pytest.fixture
def transport_pair():
    """(host end, worker end) of an in-memory queue transport."""
    return QueueTransport.pair()


@pytest.fixture
def channel_pair(transport_pair):
    """A WorkerChannel plus the raw worker end, for scripting responses by hand."""
    host, worker = transport_pair
    channel = WorkerChannel(host, sweep_interval=0.05)
    yield channel, worker
    channel.shutdown()


@pytest.fixture
def served_transport(transport_pair):
    """Host end of a transport whose worker end is served on a thread."""
    host, worker = transport_pair
    thread = threading.Thread(target=serve, args=(worker,), daemon=True)
    thread.start()
    yield host
    host.send(None)
    thread.join(timeout=2.0)


@pytest.fixture
def proxy_recording_backend(operation_registry):
    """Recording backend in local proxy mode (method calls, live results)."""
    return RecordingBackend(mode=LocalProxyMode(), registry=operation_registry)
