"""
framecall - Dispatch dataframe operations to an in-process or worker-hosted Python engine.

framecall lets a host program describe dataframe operations declaratively and have
them executed next to the data: in the same process with live objects, or in a
worker reached over an id-correlated message channel. Results come back as plain
values or as handles to tables that stay in the engine.

Key Features:
    - Declarative operation descriptors with one-time initializers
    - Canonical argument records from positional or keyword call sites
    - Concurrent requests with streaming callbacks, timeouts and cancellation
    - Deferred pipelines: chain calls locally, send them in one round trip
    - Graceful fallback when a result cannot be returned verbatim

Basic Usage:
    >>> import asyncio
    >>> import framecall
    >>> async def main():
    ...     client = framecall.Client(framecall.LocalBackend())
    ...     df = await client.create_dataframe({"a": [1, 2, 3]})
    ...     sampled = await df.sample(n=2)
    ...     print(await client.get_code([
    ...         {"operation_key": "read_csv", "operation_type": "client", "filepath_or_buffer": "x.csv"},
    ...     ]))
    >>> asyncio.run(main())
"""

from ._internal.backends import LocalBackend, WorkerBackend
from ._internal.operation import (
    InitializationRegistry,
    Operation,
    OperationRegistry,
    dataframe_operation,
    make_operation,
)
from ._internal.pending import CancelToken
from ._internal.remote_handle import Source
from ._internal.values import Name
from ._internal.worker import spawn_worker
from .client import Client
from .config import BackendOptions, ClientConfig, WorkerOptions, load_config
from .errors import (
    FramecallError,
    InvalidArguments,
    OperationNotFound,
    RemoteExecutionError,
    RequestTimeout,
    TransportFault,
    UnsupportedFeature,
)

__version__ = "0.0.1"

__all__ = [
    "Client",
    "Source",
    "Name",
    "LocalBackend",
    "WorkerBackend",
    "spawn_worker",
    "Operation",
    "OperationRegistry",
    "InitializationRegistry",
    "make_operation",
    "dataframe_operation",
    "CancelToken",
    "BackendOptions",
    "ClientConfig",
    "WorkerOptions",
    "load_config",
    "FramecallError",
    "InvalidArguments",
    "OperationNotFound",
    "RemoteExecutionError",
    "RequestTimeout",
    "TransportFault",
    "UnsupportedFeature",
]
