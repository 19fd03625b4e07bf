"""Storage backends for aggregated deprecations.

Usage:
    from deprecation_collector.storage import (
        Storage, BufferedStorage, RawRecord,
        RedisStorage, TableStorage, LogStorage, create_schema,
    )
"""

from .base import BufferedStorage, RawRecord, Storage, decode_data, encode_data
from .log_sink import LogStorage, format_log_message
from .redis_store import RedisStorage
from .table_store import TableStorage, create_schema
from .factory import STORAGE_KINDS, create_storage

__all__ = [
    "BufferedStorage",
    "LogStorage",
    "RawRecord",
    "RedisStorage",
    "Storage",
    "STORAGE_KINDS",
    "TableStorage",
    "create_schema",
    "create_storage",
    "decode_data",
    "encode_data",
    "format_log_message",
]
