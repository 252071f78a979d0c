from typing import Any

import numpy as np


def serialize_ndarray(arr: np.ndarray) -> dict[str, Any]:
    """Array results travel as nested lists plus dtype and shape."""
    if arr.dtype == object:
        raise TypeError("object arrays could not be cloned")
    return {
        "__type__": "ndarray",
        "dtype": str(arr.dtype),
        "shape": list(arr.shape),
        "data": arr.tolist(),
    }


def deserialize_ndarray(data: dict[str, Any]) -> np.ndarray:
    return np.asarray(data["data"], dtype=np.dtype(data["dtype"])).reshape(data["shape"])


def serialize_scalar(value: np.generic) -> Any:
    return value.item()


def register_numpy_serializers(registry: Any) -> None:
    registry.register("ndarray", serialize_ndarray, deserialize_ndarray)
    registry.register("generic", serialize_scalar)
