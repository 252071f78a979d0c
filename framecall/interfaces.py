"""Public backend and transport protocols for framecall.

These interfaces define the contract between the dispatch layer and the
execution backend it drives. They are structural, so a backend can be
implemented without inheriting from the concrete classes in
``framecall._internal.backends``.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ._internal.execution_mode import ExecutionMode
    from ._internal.operation import InitializationRegistry

ResultCallback = Callable[[Any], Any]


@runtime_checkable
class ExecutionBackend(Protocol):
    """What the dispatch layer needs from whatever executes the Python code."""

    @property
    def mode(self) -> ExecutionMode:
        """Execution mode chosen when the backend was built."""

    @property
    def initialized(self) -> InitializationRegistry:
        """Registry recording which operation initializers have run."""

    async def run_code(
        self,
        code: str,
        callback: ResultCallback | None = None,
        *,
        callback_name: str | None = None,
        target: str | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Execute a source snippet and return the value of its last expression."""

    async def run_method(
        self,
        source: Any,
        path: str,
        kwargs: dict[str, Any],
        callback: ResultCallback | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Call ``source.<path>(**kwargs)`` in the backend."""

    async def set_global(self, name: str, value: Any) -> None:
        """Bind *value* to *name* in the backend namespace."""

    async def get_global(self, name: str) -> Any:
        """Return the value bound to *name* in the backend namespace."""

    def supports(self, feature: str | Sequence[str]) -> bool:
        """Capability gate for ``"buffers"``, ``"callbacks"`` and ``"functions"``."""

    async def run(self, params: Any) -> Any:
        """Run one step or an ordered pipeline of steps."""


@runtime_checkable
class OperationStrategy(Protocol):
    """How an operation turns a canonical kwargs record into backend work."""

    async def execute(
        self,
        backend: ExecutionBackend,
        kwargs: dict[str, Any],
        options: dict[str, Any],
    ) -> Any:
        """Run the operation and return the raw backend result."""
