"""A small built-in operation catalogue.

The dispatch layer does not depend on any particular dataframe engine; these
descriptors only show the three ways an operation can be described. Host
applications register their own catalogue on an
:class:`~framecall._internal.operation.OperationRegistry`.
"""

from __future__ import annotations

from typing import Any

from ._internal.codegen import python_arguments, variable_ref
from ._internal.operation import OperationRegistry, dataframe_operation, make_operation
from ._internal.values import ValueKind, classify


def _save_csv_code(kwargs: dict[str, Any]) -> str:
    return f"{variable_ref(kwargs['source'])}.to_csv(index=False)"


def _fetch(backend: Any, kwargs: dict[str, Any]) -> Any:
    source = kwargs["source"]
    if classify(source) is ValueKind.NATIVE:
        return source
    return backend.get_global(variable_ref(source))


def _create_dataframe_code(kwargs: dict[str, Any]) -> str:
    return f"{kwargs['target']} = pd.DataFrame({python_arguments(kwargs)})"


CLIENT_OPERATIONS = {
    "create_dataframe": make_operation(
        "create_dataframe",
        target_type="dataframe",
        args=[{"name": "data", "required": True}],
        get_code=_create_dataframe_code,
        initialization_code="import pandas as pd",
        creates_new=True,
        doc="Build a dataframe from a dict of columns.",
    ),
    "read_csv": make_operation(
        "readCsv",
        target_type="dataframe",
        args=[{"name": "filepath_or_buffer", "required": True}, {"name": "sep", "default": ","}],
        default_source="pd",
        initialization_code="import pandas as pd",
        creates_new=True,
        doc="Load a CSV file or buffer into a new dataframe.",
    ),
}

DATAFRAME_OPERATIONS = {
    "sample": dataframe_operation(
        "sample",
        target_type="dataframe",
        args=[{"name": "n", "default": 10}, {"name": "random_state", "default": 0}],
        creates_new=True,
        doc="Random sample of rows.",
    ),
    "copy": dataframe_operation("copy", target_type="dataframe", creates_new=True),
    "profile": dataframe_operation(
        "describe",
        target_type="value",
        args=[{"name": "include", "default": "all"}],
    ),
    "cols.upper": dataframe_operation(
        "cols.upper",
        target_type="dataframe",
        args=[{"name": "cols", "default": "*"}],
        doc="Upper-case string columns in place.",
    ),
    "save_csv": dataframe_operation("saveCsv", target_type="value", get_code=_save_csv_code),
    "fetch": dataframe_operation("fetch", target_type="value", run=_fetch),
}


def register_builtin_operations(registry: OperationRegistry) -> None:
    registry.register_many(CLIENT_OPERATIONS, "client")
    registry.register_many(DATAFRAME_OPERATIONS, "dataframe")
