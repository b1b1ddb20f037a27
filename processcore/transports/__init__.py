"""Event bus carrying domain events to live subscribers."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ProcessCoreConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[ProcessCoreConfig] = None
) -> BaseTransport:
    """Build an unconnected event bus.

    The backend is taken from ``backend``, the ``PROCESSCORE_EVENT_BUS``
    environment variable, or ``transport.backend`` in configuration. A Redis
    URL (``transport.redis.url``, ``PROCESSCORE_REDIS_URL`` or ``REDIS_URL``)
    selects Redis when no backend is named explicitly, so every API process
    sharing that URL streams the same events. The in-memory bus only reaches
    subscribers within the current process.
    """

    config = config or load_config()
    redis_conf = config.transport.redis
    backend = backend or os.getenv("PROCESSCORE_EVENT_BUS")
    if backend is None:
        backend = "redis" if redis_conf.url else config.transport.backend
    backend = backend.lower()

    if backend == "inmemory":
        return InMemoryTransport()
    elif backend == "redis":
        from .redis import RedisTransport

        return RedisTransport(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            prefix=redis_conf.channel_prefix,
            url=redis_conf.url,
        )
    else:
        raise ValueError(f"Unsupported event bus backend: {backend}")


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
