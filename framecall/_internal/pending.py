"""Pending-request bookkeeping for the RPC channel.

Every in-flight request lives in a :class:`PendingArena` keyed by its integer
id. An entry is inserted once before the message is sent and removed once,
by a terminal response, an expiry sweep, a cancellation or a channel abort.
Ids removed without a terminal response are remembered for a while so a late
response can be told apart from a genuinely unknown id.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any


class CancelToken:
    """Lets a caller give up on a request it no longer needs."""

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        callback()


@dataclass
class PendingRequest:
    id: int
    future: asyncio.Future[Any]
    loop: asyncio.AbstractEventLoop
    message_type: str
    callback: Callable[[Any], Any] | None = None
    deadline: float | None = None
    timeout: float | None = None
    cancel_token: CancelToken | None = None
    created: float = field(default_factory=time.monotonic)


class PendingArena:
    """Thread-safe map of in-flight requests with expiry support."""

    def __init__(self, retired_limit: int = 4096) -> None:
        self._entries: dict[int, PendingRequest] = {}
        self._retired: OrderedDict[int, None] = OrderedDict()
        self._retired_limit = retired_limit
        self._lock = threading.Lock()

    def insert(self, request: PendingRequest) -> None:
        with self._lock:
            if request.id in self._entries:
                raise RuntimeError(f"Request id {request.id} is already pending")
            self._entries[request.id] = request

    def get(self, request_id: int) -> PendingRequest | None:
        with self._lock:
            return self._entries.get(request_id)

    def pop(self, request_id: int) -> PendingRequest | None:
        """Remove the entry for a terminal response."""
        with self._lock:
            return self._entries.pop(request_id, None)

    def retire(self, request_id: int) -> PendingRequest | None:
        """Remove an entry that will never see its terminal response here."""
        with self._lock:
            entry = self._entries.pop(request_id, None)
            if entry is not None:
                self._remember(request_id)
            return entry

    def was_retired(self, request_id: int) -> bool:
        with self._lock:
            return request_id in self._retired

    def sweep_expired(self, now: float | None = None) -> list[PendingRequest]:
        """Remove and return every entry whose deadline has passed."""
        now = time.monotonic() if now is None else now
        with self._lock:
            expired = [
                entry
                for entry in self._entries.values()
                if entry.deadline is not None and entry.deadline <= now
            ]
            for entry in expired:
                del self._entries[entry.id]
                self._remember(entry.id)
        return expired

    def has_deadlines(self, loop: asyncio.AbstractEventLoop | None = None) -> bool:
        with self._lock:
            return any(
                entry.deadline is not None and (loop is None or entry.loop is loop)
                for entry in self._entries.values()
            )

    def drain(self) -> list[PendingRequest]:
        """Remove and return everything (channel abort)."""
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
            return entries

    def _remember(self, request_id: int) -> None:
        self._retired[request_id] = None
        while len(self._retired) > self._retired_limit:
            self._retired.popitem(last=False)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, request_id: object) -> bool:
        with self._lock:
            return request_id in self._entries
