"""Worker side of the framecall channel.

The worker owns a Python namespace and executes the requests the host sends:

- ``init``: import modules and run setup code (``WorkerOptions``)
- ``load``: validate requirement strings and import the named packages
- ``run``: execute source code, or call ``<source>.<path>(**kwargs)``
- ``setGlobal``: bind a buffer, a plain value or a function (sent as source)

Each request gets exactly one terminal response with the same id. A ``run``
request carrying ``usesCallback`` may first produce any number of
``isCallbackResult`` messages.

This module can be started as ``python -m framecall._internal.worker``; it
then connects to the socket named by ``FRAMECALL_WORKER_ADDRESS`` and speaks
the JSON socket protocol.
"""

from __future__ import annotations

import ast
import builtins
import contextlib
import importlib
import logging
import multiprocessing
import os
import socket
import subprocess
import sys
import tempfile
import threading
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from packaging.requirements import InvalidRequirement, Requirement

from .codegen import generate_unique_variable_name
from .rpc_serialization import (
    NotCloneableError,
    RequestMessage,
    ResponseMessage,
    collect_transferables,
    debugprint,
    to_cloneable,
)
from .rpc_transports import ConnectionTransport, JSONSocketTransport, RPCTransport
from .serialization_registry import SerializerRegistry
from .values import Name, is_name

if TYPE_CHECKING:
    from multiprocessing.process import BaseProcess

    from ..config import WorkerOptions

logger = logging.getLogger(__name__)

_FILENAME = "<framecall>"


class WorkerRuntime:
    """Executes host requests against one namespace."""

    def __init__(
        self,
        post: Callable[[dict[str, Any]], None] | None = None,
        namespace: dict[str, Any] | None = None,
        registry: SerializerRegistry | None = None,
    ) -> None:
        self._post = post
        self.namespace: dict[str, Any] = namespace if namespace is not None else {"__name__": "__framecall__"}
        self.registry = registry or SerializerRegistry.get_instance()
        self._handlers: dict[str, Callable[[dict[str, Any]], Any]] = {
            "init": self._handle_init,
            "load": self._handle_load,
            "run": self._handle_run,
            "setGlobal": self._handle_set_global,
        }

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def handle(self, message: RequestMessage | Mapping[str, Any]) -> ResponseMessage:
        """Process one request and return its terminal response."""
        request_id = message.get("id")
        msg_type = message.get("type")
        debugprint("Worker recv", message)

        handler = self._handlers.get(msg_type) if isinstance(msg_type, str) else None
        if handler is None:
            return {"id": request_id, "type": msg_type, "error": f"Unknown message type: {msg_type!r}"}

        try:
            result = handler(dict(message))
        except Exception as e:
            logger.exception("Error handling %s request %s", msg_type, request_id)
            return {"id": request_id, "type": msg_type, "error": f"{type(e).__name__}: {e}"}
        return {"id": request_id, "type": msg_type, "result": result}

    # ------------------------------------------------------------------
    # Execution helpers
    # ------------------------------------------------------------------

    def execute_source(self, code: str) -> Any:
        """Run *code* in the namespace; return the value of a trailing expression."""
        tree = ast.parse(code, filename=_FILENAME, mode="exec")
        last: ast.Expression | None = None
        if tree.body and isinstance(tree.body[-1], ast.Expr):
            last = ast.Expression(tree.body.pop().value)
        exec(compile(tree, _FILENAME, "exec"), self.namespace)
        if last is not None:
            return eval(compile(last, _FILENAME, "eval"), self.namespace)
        return None

    def lookup(self, name: str) -> Any:
        if name in self.namespace:
            return self.namespace[name]
        if hasattr(builtins, name):
            return getattr(builtins, name)
        raise NameError(f"name '{name}' is not defined")

    def resolve(self, value: Any) -> Any:
        """Replace Name references inside *value* with the objects they name."""
        if is_name(value):
            return self.lookup(value["name"])
        if isinstance(value, Mapping):
            return {k: self.resolve(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve(v) for v in value]
        if isinstance(value, tuple):
            return tuple(self.resolve(v) for v in value)
        return value

    def prepare_result(self, result: Any, target: str | None = None) -> Any:
        """Convert *result* for the wire.

        A result that cannot be cloned stays in the namespace, bound to
        *target* or to a fresh name, and a ``partial`` Name stub is returned
        in its place.
        """
        try:
            return to_cloneable(result, self.registry)
        except NotCloneableError as e:
            name = target or generate_unique_variable_name("result")
            self.namespace[name] = result
            logger.warning("Result of type %s could not be cloned (%s); kept as %s", type(result).__name__, e, name)
            return dict(Name(name, partial=True))

    def _make_callback(self, request_id: Any, token: str) -> tuple[Callable[[Any], None], threading.Event]:
        finished = threading.Event()
        post = self._post
        if post is None:
            raise RuntimeError("This runtime has no channel to post callback results on")

        def callback(value: Any = None) -> None:
            if finished.is_set():
                logger.warning("Callback %s called after request %s finished; ignoring", token, request_id)
                return
            post(
                {
                    "id": request_id,
                    "type": "run",
                    "result": self.prepare_result(value),
                    "isCallbackResult": True,
                }
            )

        callback.__name__ = token
        return callback, finished

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def import_module(self, spec: str) -> str:
        """Import ``"pkg.mod"`` or ``"pkg.mod as alias"`` into the namespace."""
        module_name, _, alias = spec.partition(" as ")
        module_name = module_name.strip()
        alias = alias.strip()
        module = importlib.import_module(module_name)
        if alias:
            self.namespace[alias] = module
            return alias
        top = module_name.split(".", 1)[0]
        self.namespace[top] = importlib.import_module(top)
        return top

    def initialize(self, options: WorkerOptions | Mapping[str, Any]) -> list[str]:
        bound = [self.import_module(spec) for spec in options.get("imports") or []]
        setup_code = options.get("setup_code")
        if setup_code:
            self.execute_source(setup_code)
        logger.debug("Worker initialized (imports: %s)", bound)
        return bound

    def _handle_init(self, message: dict[str, Any]) -> Any:
        return self.initialize(message.get("options") or {})

    def _handle_load(self, message: dict[str, Any]) -> list[str]:
        return self.load_packages(message.get("packages") or [])

    def load_packages(self, packages: list[str]) -> list[str]:
        """Validate requirement strings and import each package into the namespace."""
        requirements = []
        for package in packages:
            try:
                requirements.append(Requirement(package))
            except InvalidRequirement as e:
                raise ValueError(f"Invalid package requirement {package!r}: {e}") from e

        loaded = []
        for req in requirements:
            module_name = req.name.replace("-", "_")
            try:
                self.namespace[module_name] = importlib.import_module(module_name)
            except ImportError as e:
                raise ImportError(f"Package {req.name!r} is not installed in the worker") from e
            loaded.append(module_name)
        return loaded

    def _handle_run(self, message: dict[str, Any]) -> Any:
        token = message.get("usesCallback")
        finished = None
        if token:
            self.namespace[token], finished = self._make_callback(message.get("id"), token)

        target = message.get("target")
        try:
            if message.get("code") is not None:
                result = self.execute_source(message["code"])
            else:
                result = self._call_method(message)
                if target:
                    self.namespace[target] = result
        finally:
            if token:
                assert finished is not None
                finished.set()
                self.namespace.pop(token, None)
        return self.prepare_result(result, target)

    def _call_method(self, message: dict[str, Any]) -> Any:
        path = [part for part in str(message.get("path") or "").split(".") if part]
        if not path:
            raise ValueError("run request needs either 'code' or 'path'")

        source = message.get("source")
        if source is None:
            obj = self.lookup(path.pop(0))
        elif isinstance(source, str):
            obj = self.lookup(source)
        else:
            obj = self.resolve(source)

        for part in path:
            obj = getattr(obj, part)
        kwargs = self.resolve(message.get("kwargs") or {})
        return obj(**kwargs)

    def _handle_set_global(self, message: dict[str, Any]) -> None:
        payload = message.get("value") or {}
        name = payload.get("name")
        if not isinstance(name, str) or not name.isidentifier():
            raise ValueError(f"Invalid global name: {name!r}")

        kind = payload.get("kind", "value")
        value = payload.get("value")
        if kind == "function":
            self.namespace[name] = self._define_function(value)
        elif kind == "buffer":
            self.namespace[name] = bytes(value)
        else:
            self.namespace[name] = self.resolve(value)
        logger.debug("Bound global %s (%s)", name, kind)

    def _define_function(self, source: str) -> Callable[..., Any]:
        tree = ast.parse(source, filename=_FILENAME, mode="exec")
        defs = [node for node in tree.body if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef))]
        if not defs:
            raise ValueError("Function source must contain a def statement")
        exec(compile(tree, _FILENAME, "exec"), self.namespace)
        return self.namespace[defs[-1].name]


# ---------------------------------------------------------------------------
# Serving
# ---------------------------------------------------------------------------

def serve(transport: RPCTransport, runtime: WorkerRuntime | None = None) -> WorkerRuntime:
    """Answer requests from *transport* until a ``None`` sentinel or EOF."""
    if runtime is None:
        runtime = WorkerRuntime(transport.send)

    while True:
        try:
            message = transport.recv()
        except (EOFError, OSError) as e:
            logger.info("Host closed the channel (%s)", e)
            break
        if message is None:
            break

        response = runtime.handle(message)
        result = response.get("result")
        try:
            transport.send(response, collect_transferables(result))
        except Exception as e:
            logger.exception("Could not send response for request %s", response.get("id"))
            transport.send({"id": response.get("id"), "type": response.get("type"), "error": f"Could not send result: {e}"})

    try:
        transport.send(None)
    except (OSError, ValueError) as e:
        logger.debug("Close sentinel not sent: %s", e)
    return runtime


def _worker_process_main(conn: Any) -> None:
    logging.basicConfig(level=os.environ.get("FRAMECALL_WORKER_LOG_LEVEL", "WARNING"))
    transport = ConnectionTransport(conn)
    try:
        serve(transport)
    finally:
        transport.close()


def spawn_worker(start_method: str = "spawn") -> tuple[BaseProcess, ConnectionTransport]:
    """Start a worker in a child process; return the process and the host end."""
    ctx = multiprocessing.get_context(start_method)
    parent_conn, child_conn = ctx.Pipe()
    process = ctx.Process(target=_worker_process_main, args=(child_conn,), name="framecall-worker", daemon=True)
    process.start()
    child_conn.close()
    logger.debug("Spawned worker process pid=%s", process.pid)
    return process, ConnectionTransport(parent_conn)


def socket_dir() -> str:
    """Directory for worker sockets: ``/run/user/<uid>/framecall`` or a /tmp fallback."""
    uid = os.getuid()
    run_dir = f"/run/user/{uid}/framecall"
    if not os.path.isdir(os.path.dirname(run_dir)):
        run_dir = f"/tmp/framecall-{uid}"
    os.makedirs(run_dir, mode=0o700, exist_ok=True)
    return run_dir


def listen_for_worker(path: str | None = None) -> tuple[socket.socket, str]:
    """Bind a Unix socket a worker can connect to; return it and its path."""
    if path is None:
        path = tempfile.mktemp(prefix="worker_", suffix=".sock", dir=socket_dir())
    listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    listener.bind(path)
    os.chmod(path, 0o600)
    listener.listen(1)
    logger.info("[framecall] Listening for worker on %s", path)
    return listener, path


def accept_worker(listener: socket.socket, timeout: float = 30.0) -> JSONSocketTransport:
    """Wait for one worker connection on *listener*."""
    listener.settimeout(timeout)
    try:
        conn, _ = listener.accept()
    except socket.timeout as e:
        raise RuntimeError(f"Worker failed to connect within {timeout}s") from e
    conn.settimeout(None)
    return JSONSocketTransport(conn)


def launch_socket_worker(
    connect_timeout: float = 30.0,
    python: str | None = None,
) -> tuple[subprocess.Popen[bytes], JSONSocketTransport]:
    """Start ``python -m framecall._internal.worker`` and connect to it over a Unix socket."""
    listener, path = listen_for_worker()
    env = os.environ.copy()
    env["FRAMECALL_WORKER_ADDRESS"] = path

    proc = subprocess.Popen(
        [python or sys.executable, "-m", "framecall._internal.worker"],
        env=env,
        close_fds=True,
    )
    try:
        transport = accept_worker(listener, connect_timeout)
    except Exception:
        proc.terminate()
        raise
    finally:
        listener.close()
        with contextlib.suppress(FileNotFoundError):
            os.unlink(path)
    logger.debug("Socket worker connected, pid=%s", proc.pid)
    return proc, transport


def main() -> None:
    """Entry point for a worker started by a host over a Unix socket."""
    address = os.environ.get("FRAMECALL_WORKER_ADDRESS")
    if not address:
        raise RuntimeError("FRAMECALL_WORKER_ADDRESS not set. This module should only be invoked by a host.")

    logging.basicConfig(level=os.environ.get("FRAMECALL_WORKER_LOG_LEVEL", "WARNING"))
    logger.info("[framecall] Connecting to host at %s", address)
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.connect(address)
    transport = JSONSocketTransport(sock)
    try:
        serve(transport)
    finally:
        transport.close()


if __name__ == "__main__":
    main()
