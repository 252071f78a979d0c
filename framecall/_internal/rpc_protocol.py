"""
RPC Protocol & Core Logic.

This module contains WorkerChannel, the host end of the id-correlated message
channel to a worker. Requests are posted from any event loop; a send thread
writes them to the transport and a receive thread routes responses back to
the loop that made the request.

Per request: ``SENT -> RESOLVED | REJECTED`` or ``SENT -> CALLBACK* -> RESOLVED``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import queue
import threading
import time
import uuid
from typing import Any, Callable

from ..errors import RemoteExecutionError, RequestTimeout, TransportFault
from .codegen import rewrite_callback_token
from .pending import CancelToken, PendingArena, PendingRequest
from .rpc_serialization import ResponseMessage, debugprint, rehydrate
from .rpc_transports import RPCTransport

logger = logging.getLogger(__name__)

_CLOSE = object()
_UNSET = object()


class CallbackTasks:
    """Holds the tasks started for awaitable callback results until they finish."""

    def __init__(self, owner: str) -> None:
        self.owner = owner
        self._tasks: set[asyncio.Future[Any]] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def schedule(self, awaitable: Any) -> asyncio.Future[Any]:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Future[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s: asynchronous callback failed", self.owner, exc_info=exc)


class WorkerChannel:
    """Asynchronous request/response channel to a worker.

    Any number of requests may be in flight; they are told apart only by id
    and may complete in any order. There is no backpressure. Dependent
    requests must be serialized by the caller (see the pipeline reducer).
    """

    def __init__(
        self,
        transport: RPCTransport,
        *,
        default_timeout: float | None = None,
        sweep_interval: float = 1.0,
    ) -> None:
        self.id = str(uuid.uuid4())
        self._transport = transport
        self.default_timeout = default_timeout
        self.sweep_interval = sweep_interval

        self.lock = threading.Lock()
        self.pending = PendingArena()
        self._next_id = 0
        self.outbox: queue.Queue[Any] = queue.Queue()
        self._threads: list[threading.Thread] = []
        self._sweep_handles: dict[asyncio.AbstractEventLoop, asyncio.TimerHandle] = {}
        self._fault: TransportFault | None = None
        self._stopping = False
        self.callback_tasks = CallbackTasks(f"RPC {self.id}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        with self.lock:
            if self._threads:
                return
            self._threads = [
                threading.Thread(target=self._recv_thread, name=f"framecall-recv-{self.id[:8]}", daemon=True),
                threading.Thread(target=self._send_thread, name=f"framecall-send-{self.id[:8]}", daemon=True),
            ]
        for t in self._threads:
            t.start()

    @property
    def fault(self) -> TransportFault | None:
        return self._fault

    @property
    def closed(self) -> bool:
        return self._stopping or self._fault is not None

    def shutdown(self, timeout: float = 1.0) -> None:
        """Stop the channel. Pending requests are rejected with TransportFault."""
        if self._stopping:
            return
        self._stopping = True
        self.outbox.put(_CLOSE)
        for t in self._threads:
            if t.name.startswith("framecall-send"):
                t.join(timeout)
        self._transport.close()
        self._reject_all(TransportFault("Channel shut down"))
        with self.lock:
            handles, self._sweep_handles = self._sweep_handles, {}
        for handle in handles.values():
            handle.cancel()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def _allocate_id(self) -> int:
        with self.lock:
            request_id = self._next_id
            self._next_id += 1
            return request_id

    async def request(
        self,
        message: dict[str, Any],
        *,
        transfer: list[Any] | None = None,
        callback: Callable[[Any], Any] | None = None,
        callback_name: str | None = None,
        timeout: float | None = None,
        cancel_token: CancelToken | None = None,
    ) -> Any:
        """Send *message* and wait for its terminal response.

        Raises:
            RemoteExecutionError: the worker reported an error.
            RequestTimeout: no terminal response before the deadline.
            TransportFault: the channel failed or is closed.
            asyncio.CancelledError: the request was cancelled.
        """
        if self._fault is not None:
            raise TransportFault(str(self._fault))
        if self._stopping:
            raise TransportFault("Channel shut down")
        if cancel_token is not None and cancel_token.cancelled:
            raise asyncio.CancelledError()

        self.start()
        loop = asyncio.get_running_loop()
        message = dict(message)
        request_id = self._allocate_id()

        if callback is not None and message.get("type") != "run":
            logger.warning("Callback is only supported for run operations. Ignoring callback.")
            callback = None
        if callback is not None:
            # A reusable placeholder would cross-wire concurrent calls.
            message["usesCallback"] = rewrite_callback_token(message, request_id, callback_name)
        message["id"] = request_id

        if timeout is None:
            timeout = self.default_timeout
        entry = PendingRequest(
            id=request_id,
            future=loop.create_future(),
            loop=loop,
            message_type=str(message.get("type")),
            callback=callback,
            deadline=time.monotonic() + timeout if timeout else None,
            timeout=timeout,
            cancel_token=cancel_token,
        )
        self.pending.insert(entry)
        if entry.deadline is not None:
            self._ensure_sweep(loop)
        if cancel_token is not None:
            cancel_token.add_callback(lambda: self.cancel(request_id))

        self.outbox.put((message, list(transfer or [])))
        try:
            return await entry.future
        except asyncio.CancelledError:
            self.pending.retire(request_id)
            raise

    def cancel(self, request_id: int) -> bool:
        """Give up on *request_id*. A late response for it is dropped."""
        entry = self.pending.retire(request_id)
        if entry is None:
            return False
        logger.debug("RPC %s: request %s cancelled", self.id, request_id)
        self._call_on_loop(entry, entry.future.cancel)
        return True

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def sweep_expired(self, now: float | None = None) -> list[int]:
        """Reject every request whose deadline has passed; return their ids."""
        expired = self.pending.sweep_expired(now)
        for entry in expired:
            logger.warning("RPC %s: request %s timed out after %ss", self.id, entry.id, entry.timeout)
            self._deliver(entry, error=RequestTimeout(entry.id, entry.timeout))
        return [entry.id for entry in expired]

    def _ensure_sweep(self, loop: asyncio.AbstractEventLoop) -> None:
        with self.lock:
            if loop in self._sweep_handles:
                return
            self._sweep_handles[loop] = loop.call_later(self.sweep_interval, self._run_sweep, loop)

    def _run_sweep(self, loop: asyncio.AbstractEventLoop) -> None:
        with self.lock:
            self._sweep_handles.pop(loop, None)
        self.sweep_expired()
        if not self._stopping and self.pending.has_deadlines(loop):
            self._ensure_sweep(loop)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _call_on_loop(self, entry: PendingRequest, func: Callable[..., Any], *args: Any) -> None:
        if entry.loop.is_closed():
            logger.warning("RPC %s: cannot deliver request %s - calling loop closed", self.id, entry.id)
            return
        try:
            entry.loop.call_soon_threadsafe(func, *args)
        except RuntimeError as e:
            logger.warning("RPC %s: delivery of request %s failed: %s", self.id, entry.id, e)

    def _deliver(self, entry: PendingRequest, result: Any = _UNSET, error: BaseException | None = None) -> None:
        future = entry.future

        def apply() -> None:
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)

        self._call_on_loop(entry, apply)

    def _deliver_callback(self, entry: PendingRequest, result: Any) -> None:
        callback = entry.callback
        assert callback is not None

        def apply() -> None:
            if entry.future.done():
                return
            try:
                outcome = callback(result)
                if inspect.isawaitable(outcome):
                    self.callback_tasks.schedule(outcome)
            except Exception:
                logger.exception("RPC %s: callback for request %s failed", self.id, entry.id)

        self._call_on_loop(entry, apply)

    def _reject_all(self, error: TransportFault) -> None:
        for entry in self.pending.drain():
            self._deliver(entry, error=TransportFault(str(error)))

    def _abort(self, fault: TransportFault) -> None:
        """Fatal channel error: reject everything, refuse new requests."""
        if self._fault is None:
            self._fault = fault
        logger.error("RPC %s aborted: %s", self.id, fault)
        self._reject_all(fault)

    def _handle_message(self, item: ResponseMessage) -> bool:
        """Route one worker message. Returns False when the channel must stop."""
        request_id = item.get("id")
        if request_id is None:
            return self._handle_fault(item)

        if item.get("isCallbackResult"):
            entry = self.pending.get(request_id)
            if entry is not None and entry.callback is not None:
                self._deliver_callback(entry, rehydrate(item.get("result")))
                return True

        entry = self.pending.pop(request_id)
        if entry is None:
            if self.pending.was_retired(request_id):
                logger.debug("RPC %s: dropping late response for retired request %s", self.id, request_id)
                return True
            self._abort(TransportFault(f"Promise or Callback with id '{request_id}' not found"))
            return False

        if item.get("error"):
            self._deliver(entry, error=RemoteExecutionError(str(item["error"]), request_id))
            return True
        try:
            result = rehydrate(item.get("result"))
        except Exception as exc:
            logger.exception("RPC %s: could not rehydrate result for request %s", self.id, request_id)
            self._deliver(entry, error=RemoteExecutionError(f"Invalid result: {exc}", request_id))
            return True
        self._deliver(entry, result=result)
        return True

    def _handle_fault(self, item: dict[str, Any]) -> bool:
        error = item.get("error") or f"Unexpected message without id: {item!r}"
        fault_id = item.get("faultId")
        if fault_id is not None:
            entry = self.pending.pop(fault_id)
            if entry is not None:
                self._deliver(entry, error=RemoteExecutionError(str(error), fault_id))
                return True
        self._abort(TransportFault(f"Worker fault: {error}"))
        return False

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    def _recv_thread(self) -> None:
        while True:
            try:
                item = self._transport.recv()
            except Exception as exc:
                if self._stopping:
                    logger.debug("RPC %s shutting down (%s)", self.id, exc)
                else:
                    self._abort(TransportFault(f"RPC recv failed: {exc}"))
                break

            if item is None:
                if not self._stopping:
                    self._abort(TransportFault("Channel closed by worker"))
                break

            debugprint("RPC recv", item)
            try:
                if not self._handle_message(item):
                    break
            except Exception as outer_exc:
                logger.exception("RPC Recv Thread CRASHED: %s", outer_exc)
                self._abort(TransportFault(f"RPC recv thread crashed: {outer_exc}"))
                break

    def _send_thread(self) -> None:
        while True:
            item = self.outbox.get()
            if item is _CLOSE:
                try:
                    self._transport.send(None)
                except Exception as exc:
                    logger.debug("RPC %s: close sentinel not sent (%s)", self.id, exc)
                break

            message, transfer = item
            debugprint("RPC send", message)
            try:
                self._transport.send(message, transfer)
            except Exception as exc:
                entry = self.pending.pop(message["id"])
                if entry is not None:
                    self._deliver(entry, error=TransportFault(f"RPC send failed: {exc}"))
                logger.error("RPC Send Failed: %s", exc)
