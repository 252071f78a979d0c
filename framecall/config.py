from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Literal, TypedDict

import yaml

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL = 1.0


def _env_float(name: str) -> float | None:
    raw = os.environ.get(name)
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: not a number", name, raw)
        return None


class WorkerOptions(TypedDict, total=False):
    """Options sent to a worker with its ``init`` message."""

    imports: list[str]
    """Modules imported into the worker namespace (``import x`` / ``import x as y``)."""

    setup_code: str
    """Python source executed once in the worker namespace after imports."""


class BackendOptions(TypedDict, total=False):
    """Configuration for an execution backend."""

    local: bool
    """If True, live objects are passed directly and method calls bypass code generation."""

    request_timeout: float | None
    """Default per-request deadline in seconds. ``None`` waits forever."""

    sweep_interval: float
    """Seconds between expiry sweeps of the pending-request arena."""

    worker_options: WorkerOptions
    """Options forwarded to the worker ``init`` message."""

    worker_transport: Literal["pipe", "socket"]
    """How a spawned worker is reached: a multiprocessing pipe, or a Unix socket
    to a ``python -m framecall._internal.worker`` subprocess."""


class ClientConfig(TypedDict, total=False):
    """Configuration for :class:`framecall.Client`."""

    server_options: BackendOptions
    """Options used when the client builds its own backend."""


def default_backend_options() -> BackendOptions:
    """Return backend defaults, honouring ``FRAMECALL_*`` environment overrides."""
    sweep = _env_float("FRAMECALL_SWEEP_INTERVAL")
    return BackendOptions(
        local=False,
        request_timeout=_env_float("FRAMECALL_REQUEST_TIMEOUT"),
        sweep_interval=sweep if sweep is not None else DEFAULT_SWEEP_INTERVAL,
        worker_options=WorkerOptions(imports=[], setup_code=""),
        worker_transport="pipe",
    )


def merge_backend_options(options: BackendOptions | None = None) -> BackendOptions:
    """Overlay *options* on the defaults without mutating either."""
    merged = default_backend_options()
    if options:
        merged.update(options)
    return merged


def load_config(path: str | Path) -> ClientConfig:
    """Load a :class:`ClientConfig` from a YAML file.

    The file may hold either a ``server_options`` mapping or the backend
    options at top level::

        server_options:
          local: false
          request_timeout: 30
          worker_options:
            imports: [numpy as np]
    """
    with open(path, encoding="utf-8") as f:
        raw: Any = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a mapping, got {type(raw).__name__}")

    server_options = raw.get("server_options", raw)
    if not isinstance(server_options, dict):
        raise ValueError(f"'server_options' in {path} must be a mapping")

    unknown = set(server_options) - set(BackendOptions.__annotations__)
    if unknown:
        raise ValueError(f"Unknown backend options in {path}: {sorted(unknown)}")

    return ClientConfig(server_options=merge_backend_options(BackendOptions(**server_options)))
