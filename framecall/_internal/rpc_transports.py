"""
RPC Transport Layer.

This module contains:
- RPCTransport Protocol
- QueueTransport (thread or multiprocessing queues)
- ConnectionTransport (multiprocessing pipe)
- JSONSocketTransport (length-prefixed JSON, buffers as out-of-band frames)
"""

from __future__ import annotations

import base64
import contextlib
import json
import logging
import socket
import struct
import threading
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .values import NAME_KIND, Name

if TYPE_CHECKING:
    from multiprocessing.connection import Connection

logger = logging.getLogger(__name__)

MAX_FRAME_BYTES = 100 * 1024 * 1024


@runtime_checkable
class RPCTransport(Protocol):
    """Protocol for RPC transport mechanisms.

    Implementations must provide thread-safe send/recv operations. ``transfer``
    lists buffers inside *obj* that may be moved out-of-band instead of being
    encoded inline; transports without such a mechanism may ignore it.
    """

    def send(self, obj: Any, transfer: list[Any] | None = None) -> None:
        """Send an object to the remote endpoint."""
        ...

    def recv(self) -> Any:
        """Receive an object from the remote endpoint. Blocks until available."""
        ...

    def close(self) -> None:
        """Close the transport. Further send/recv calls may fail."""
        ...


class QueueTransport:
    """Transport over a pair of queues (``queue.Queue`` or ``multiprocessing.Queue``)."""

    def __init__(self, send_queue: Any, recv_queue: Any) -> None:
        self._send_queue = send_queue
        self._recv_queue = recv_queue

    def send(self, obj: Any, transfer: list[Any] | None = None) -> None:
        self._send_queue.put(obj)

    def recv(self) -> Any:
        return self._recv_queue.get()

    def close(self) -> None:
        for q in (self._send_queue, self._recv_queue):
            close = getattr(q, "close", None)
            if close is not None:
                with contextlib.suppress(Exception):
                    close()

    @classmethod
    def pair(cls) -> tuple[QueueTransport, QueueTransport]:
        """Two connected in-memory endpoints (host end, worker end)."""
        import queue

        a_to_b: queue.Queue[Any] = queue.Queue()
        b_to_a: queue.Queue[Any] = queue.Queue()
        return cls(a_to_b, b_to_a), cls(b_to_a, a_to_b)


class ConnectionTransport:
    """Transport over a ``multiprocessing.connection.Connection`` (pickle)."""

    def __init__(self, conn: Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    def send(self, obj: Any, transfer: list[Any] | None = None) -> None:
        with self._lock:
            self._conn.send(obj)

    def recv(self) -> Any:
        return self._conn.recv()

    def close(self) -> None:
        with contextlib.suppress(Exception):
            self._conn.close()


class JSONSocketTransport:
    """Length-prefixed JSON over a stream socket.

    Frame layout: ``>II`` (JSON length, buffer count), the UTF-8 JSON body,
    then each transferable buffer as ``>I`` length plus raw bytes. Buffers
    listed in ``transfer`` are referenced from the body as
    ``{"__framecall_buffer__": index}``; other bytes are base64 inline.
    """

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._lock = threading.Lock()
        self._recv_lock = threading.Lock()

    def send(self, obj: Any, transfer: list[Any] | None = None) -> None:
        buffers: list[bytes] = []
        positions = {id(buf): i for i, buf in enumerate(transfer or [])}

        def default(value: Any) -> Any:
            return self._json_default(value, positions, buffers)

        try:
            data = json.dumps(obj, default=default).encode("utf-8")
        except TypeError as e:
            logger.error("Cannot serialize %s for JSON transport: %s", type(obj).__name__, e)
            raise

        frames = [struct.pack(">II", len(data), len(buffers)), data]
        for buf in buffers:
            frames.append(struct.pack(">I", len(buf)))
            frames.append(buf)
        with self._lock:
            self._sock.sendall(b"".join(frames))

    def recv(self) -> Any:
        with self._recv_lock:
            header = self._recvall(8)
            if len(header) < 8:
                raise ConnectionError("Socket closed or incomplete frame header")
            msg_len, n_buffers = struct.unpack(">II", header)
            if msg_len > MAX_FRAME_BYTES:
                raise ValueError(f"Message too large: {msg_len} bytes")
            data = self._recvall(msg_len)
            if len(data) < msg_len:
                raise ConnectionError(f"Incomplete message: got {len(data)}/{msg_len} bytes")
            buffers = []
            for _ in range(n_buffers):
                raw_len = self._recvall(4)
                if len(raw_len) < 4:
                    raise ConnectionError("Incomplete buffer header")
                (buf_len,) = struct.unpack(">I", raw_len)
                if buf_len > MAX_FRAME_BYTES:
                    raise ValueError(f"Buffer too large: {buf_len} bytes")
                buf = self._recvall(buf_len)
                if len(buf) < buf_len:
                    raise ConnectionError(f"Incomplete buffer: got {len(buf)}/{buf_len} bytes")
                buffers.append(buf)

        return json.loads(data.decode("utf-8"), object_hook=lambda d: self._json_object_hook(d, buffers))

    def _recvall(self, n: int) -> bytes:
        chunks = []
        remaining = n
        while remaining > 0:
            chunk = self._sock.recv(min(remaining, 65536))
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def close(self) -> None:
        with contextlib.suppress(Exception):
            self._sock.close()

    @staticmethod
    def _json_default(value: Any, positions: dict[int, int], buffers: list[bytes]) -> Any:
        if isinstance(value, (bytes, bytearray, memoryview)):
            if id(value) in positions:
                buffers.append(bytes(value))
                return {"__framecall_buffer__": len(buffers) - 1}
            return {"__framecall_bytes__": base64.b64encode(bytes(value)).decode("ascii")}
        raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")

    @staticmethod
    def _json_object_hook(dct: dict[str, Any], buffers: list[bytes]) -> Any:
        if "__framecall_buffer__" in dct:
            return buffers[dct["__framecall_buffer__"]]
        if "__framecall_bytes__" in dct:
            return base64.b64decode(dct["__framecall_bytes__"])
        if dct.get("_kind") == NAME_KIND and isinstance(dct.get("name"), str):
            return Name(dct["name"], partial=bool(dct.get("partial", False)))
        return dct
