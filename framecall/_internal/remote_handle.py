"""Remote handle for values living in the execution backend.

A :class:`Source` is a lightweight reference to a named value (usually a
dataframe) in the backend namespace. In local mode it may instead hold the
live object in ``data``. Operations registered for the ``"dataframe"``
operation type are reachable as attributes::

    sampled = await source.sample(n=10)
    upper = await source.cols.upper(cols="*")

In remote mode those calls return immediately with a new handle whose
``params_queue`` holds the unexecuted chain; awaiting the handle sends it.
"""

from __future__ import annotations

from collections.abc import Generator
from typing import TYPE_CHECKING, Any

from .codegen import generate_unique_variable_name
from .values import NAME_KIND

if TYPE_CHECKING:
    from ..client import Client


class _OperationNamespace:
    """Attribute access for dotted operation keys such as ``cols.upper``."""

    def __init__(self, source: Source, prefix: str) -> None:
        self._source = source
        self._prefix = prefix

    def __getattr__(self, item: str) -> Any:
        if item.startswith("_"):
            raise AttributeError(item)
        return self._source._resolve(f"{self._prefix}.{item}")

    def __repr__(self) -> str:
        return f"<operations {self._prefix!r} of {self._source!r}>"


class Source:
    """Handle to a value in the execution backend.

    Attributes:
        name: Variable name of the value in the backend namespace.
        client: The client that created this handle.
        data: Live object (local mode only).
        params_queue: Deferred operations not yet sent to the backend.
        confirmed: False when the handle was rebuilt from a fallback stub,
            i.e. the backend could not return the result verbatim.
    """

    def __init__(
        self,
        client: Client,
        name: str | None = None,
        *,
        data: Any = None,
        confirmed: bool = True,
    ) -> None:
        if client is None:
            raise ValueError("A source can only be initialized using a client")
        self.name = name or generate_unique_variable_name("source")
        self.client = client
        self.data = data
        self.params_queue: list[dict[str, Any]] = []
        self.confirmed = confirmed

    def __getitem__(self, key: str) -> Any:
        # Lets python_literal / is_name-style code treat handles like Name refs.
        if key == "name":
            return self.name
        if key == "_kind":
            return NAME_KIND
        raise KeyError(key)

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        state = f" queued={len(self.params_queue)}" if self.params_queue else ""
        live = " live" if self.data is not None else ""
        return f"<Source {self.name}{live}{state}>"

    @property
    def deferred(self) -> bool:
        return bool(self.params_queue)

    def _resolve(self, key: str) -> Any:
        registry = self.client.registry
        if registry.has(key, "dataframe"):
            operation = registry.get(key, "dataframe")

            def call(*args: Any, **kwargs: Any) -> Any:
                return self.client.call_operation(operation, key, "dataframe", args, kwargs, source=self)

            call.__name__ = key.rsplit(".", 1)[-1]
            call.__doc__ = operation.doc
            return call
        if registry.has_prefix(key, "dataframe"):
            return _OperationNamespace(self, key)
        raise AttributeError(f"{type(self).__name__} has no operation '{key}'")

    def __getattr__(self, item: str) -> Any:
        if item.startswith("_") or item in ("name", "client", "data", "params_queue", "confirmed"):
            raise AttributeError(item)
        return self._resolve(item)

    async def persist(self) -> Source:
        """Send any queued operations and return the materialized handle."""
        if not self.params_queue:
            return self
        queue, self.params_queue = self.params_queue, []
        result = await self.client.send(queue)
        if isinstance(result, Source):
            return result
        return Source(self.client, self.name)

    async def get_code(self) -> str:
        """Source text of the queued operations, without sending them."""
        return await self.client.get_code(self.params_queue)

    def __await__(self) -> Generator[Any, None, Source]:
        return self.persist().__await__()
