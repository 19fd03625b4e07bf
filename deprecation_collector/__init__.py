# deprecation_collector package
# Collects deprecation warnings from a fleet of workers, aggregates them in
# memory and periodically writes unique ones to a shared store.
#
# Core components:
#   - fingerprint: noise normalization and content digests
#   - deprecation: the aggregated event record
#   - aggregator / schedule: in-memory window and flush timer
#   - storage: Redis hash, DuckDB table and log-only backends
#   - collector: DeprecationCollector, the entry point and admin API
#
# Usage:
#     import deprecation_collector
#     deprecation_collector.install(lambda c: c.configure(app_revision=GIT_SHA))
#     deprecation_collector.collect("foo is deprecated", realm="warning")

from typing import Any, Iterable, Optional

from .collector import (
    DeprecationCollector,
    get_collector,
    install,
    reset_collector,
    set_collector,
)
from .config import CollectorConfig, load_config
from .deprecation import Deprecation
from .errors import (
    CollectedDeprecationError,
    CollectorError,
    ConfigurationError,
    ImportDumpError,
    StorageConfigurationError,
)
from .storage import LogStorage, RedisStorage, Storage, TableStorage, create_schema, create_storage


def collect(message: Any, trace: Optional[Iterable[Any]] = None, realm: str = "unknown") -> bool:
    """Collect an event with the process-wide collector."""
    return get_collector().collect(message, trace, realm)


__all__ = [
    "CollectedDeprecationError",
    "CollectorConfig",
    "CollectorError",
    "ConfigurationError",
    "Deprecation",
    "DeprecationCollector",
    "ImportDumpError",
    "LogStorage",
    "RedisStorage",
    "Storage",
    "StorageConfigurationError",
    "TableStorage",
    "collect",
    "create_schema",
    "create_storage",
    "get_collector",
    "install",
    "load_config",
    "reset_collector",
    "set_collector",
]
