"""Serializer registry for results crossing the channel."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class SerializerRegistry:
    """Singleton registry of serializer/deserializer pairs.

    Serializers are looked up by type name along the value's MRO when the
    worker prepares a result; deserializers are looked up by the ``__type__``
    tag of a received dict when the host rehydrates it.
    """

    _instance: SerializerRegistry | None = None

    def __init__(self) -> None:
        self._serializers: dict[str, Callable[[Any], Any]] = {}
        self._deserializers: dict[str, Callable[[Any], Any]] = {}

    @classmethod
    def get_instance(cls) -> SerializerRegistry:
        if cls._instance is None:
            cls._instance = cls()
            from .numpy_serializer import register_numpy_serializers

            register_numpy_serializers(cls._instance)
        return cls._instance

    def register(
        self,
        type_name: str,
        serializer: Callable[[Any], Any] | None,
        deserializer: Callable[[Any], Any] | None = None,
    ) -> None:
        """Register a serializer for *type_name* and/or a deserializer for the ``__type__`` tag."""
        if serializer is not None:
            if type_name in self._serializers:
                logger.debug("Overwriting existing serializer for %s", type_name)
            self._serializers[type_name] = serializer
        if deserializer is not None:
            self._deserializers[type_name] = deserializer
        logger.debug("Registered serializer for type: %s", type_name)

    def find_serializer(self, obj: Any) -> Callable[[Any], Any] | None:
        """Serializer for *obj*'s type or its nearest registered base class."""
        for klass in type(obj).__mro__:
            serializer = self._serializers.get(klass.__name__)
            if serializer is not None:
                return serializer
        return None

    def get_deserializer(self, type_name: str) -> Callable[[Any], Any] | None:
        return self._deserializers.get(type_name)

    def has_handler(self, type_name: str) -> bool:
        return type_name in self._serializers or type_name in self._deserializers

    def clear(self) -> None:
        """Remove all registered handlers (useful for tests)."""
        self._serializers.clear()
        self._deserializers.clear()
