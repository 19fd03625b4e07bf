"""
factory.py - Build a storage backend from configuration.

Backends:
- "log": LogStorage (default when nothing is configured)
- "redis": RedisStorage on redis.from_url(config.redis_url)
- "table": TableStorage on duckdb.connect(config.database_path)

Applications that manage their own connections construct the backends
directly and assign them to the collector instead.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict

import duckdb
import redis

from ..errors import ConfigurationError
from .base import Storage
from .log_sink import LogStorage
from .redis_store import RedisStorage
from .table_store import TableStorage, create_schema

if TYPE_CHECKING:
    from ..config import CollectorConfig

logger = logging.getLogger(__name__)

STORAGE_KINDS = ("log", "redis", "table")


def _buffer_options(config: "CollectorConfig") -> Dict[str, Any]:
    options: Dict[str, Any] = {"count": bool(config.count)}
    if config.write_interval is not None:
        options["write_interval"] = config.write_interval
    if config.write_interval_jitter is not None:
        options["write_interval_jitter"] = config.write_interval_jitter
    return options


def create_storage(config: "CollectorConfig") -> Storage:
    """Create the backend named by ``config.storage``.

    Raises:
        ConfigurationError: Unknown backend or missing connection settings.
    """
    kind = (config.storage or "log").lower()

    if kind == "log":
        return LogStorage()

    if kind == "redis":
        if not config.redis_url:
            raise ConfigurationError("storage 'redis' requires redis_url")
        logger.debug("Connecting redis storage (prefix=%s)", config.key_prefix)
        client = redis.from_url(config.redis_url, decode_responses=True)
        return RedisStorage(client, key_prefix=config.key_prefix, **_buffer_options(config))

    if kind == "table":
        if not config.database_path:
            raise ConfigurationError("storage 'table' requires database_path")
        logger.debug("Opening table storage %s in %s", config.table, config.database_path)
        connection = duckdb.connect(config.database_path)
        create_schema(connection, config.table)
        options = _buffer_options(config)
        options.pop("count")
        return TableStorage(connection, table=config.table, **options)

    raise ConfigurationError(
        f"unknown storage {config.storage!r}, expected one of {', '.join(STORAGE_KINDS)}"
    )
