"""
collector.py - The collection entry point and admin API.

DeprecationCollector ties the pieces together:

    collect() -> Deprecation (fingerprint) -> storage.store() (aggregate)
              -> storage.flush() when the write interval elapsed

Read/admin operations (read_each, read_one, delete, cleanup, dump,
import_dump) go straight to storage and never see unflushed records.

Usage:
    from deprecation_collector import DeprecationCollector, RedisStorage

    collector = DeprecationCollector(storage=RedisStorage(redis_client))
    collector.configure(exclude_realms=["kernel"], write_interval=300)
    collector.collect("foo is deprecated", realm="warning")

Process-wide instance:
    from deprecation_collector import install, collect

    install(lambda c: c.configure(app_revision=GIT_SHA))
    collect("foo is deprecated", realm="warning")
"""

from __future__ import annotations

import atexit
import logging
import os
import sysconfig
import threading
import traceback
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence

from .config import STORAGE_FIELDS, CollectorConfig
from .deprecation import Deprecation, render_frame, root_prefix
from .errors import CollectedDeprecationError
from .models import parse_dump
from .storage import LogStorage, RedisStorage, Storage, create_storage, decode_data
from .storage.base import RawRecord, encode_data
from .storage.log_sink import format_log_message

logger = logging.getLogger(__name__)

# Frames rendered as "<this file>:<line>:in collect" are entries into collect().
ENTRY_POINT_FILE = os.path.abspath(__file__)
ENTRY_POINT_NAME = "collect"

# Thread-local marker set while context/fingerprint hooks run.
_hook_state = threading.local()


def capture_trace() -> List[traceback.FrameSummary]:
    """Current call stack, most recent call first."""
    stack = traceback.extract_stack()
    stack.reverse()
    return stack


def recursion_depth(trace: Sequence[Any]) -> int:
    """Number of frames in ``trace`` that entered DeprecationCollector.collect."""
    depth = 0
    for frame in trace:
        line = render_frame(frame)
        if ENTRY_POINT_FILE in line and line.endswith(f":in {ENTRY_POINT_NAME}"):
            depth += 1
    return depth


def library_prefixes() -> List[str]:
    """Interpreter and site-packages roots, stripped from messages."""
    paths = sysconfig.get_paths()
    prefixes = {
        paths[key].rstrip(os.sep) + os.sep
        for key in ("stdlib", "platstdlib", "purelib", "platlib")
        if paths.get(key)
    }
    return sorted(prefixes, key=len, reverse=True)


def decode_record(raw: RawRecord) -> Optional[Dict[str, Any]]:
    """Turn a backend row into the public record dict (None if corrupt)."""
    record = decode_data(raw.digest, raw.data)
    if record is None:
        return None
    if raw.notes is not None:
        record["notes"] = raw.notes
    if raw.count is not None:
        record["count"] = int(raw.count)
    return record


class DeprecationCollector:
    """Collects, aggregates and persists deprecation events.

    Thread-safe: collect() may be called from any thread. One instance per
    process is typical (see get_collector()), but instances are independent
    and can be constructed explicitly.
    """

    def __init__(
        self,
        storage: Optional[Storage] = None,
        config: Optional[CollectorConfig] = None,
        **options: Any,
    ):
        self._config = config or CollectorConfig()
        if options:
            self._config = self._config.replace(**options)
        self._enabled = True
        self._storage: Optional[Storage] = None
        self._apply_config()
        self.storage = storage if storage is not None else LogStorage()

    @classmethod
    def from_config(cls, config: CollectorConfig) -> "DeprecationCollector":
        """Build a collector whose backend is chosen by the configuration."""
        return cls(storage=create_storage(config), config=config)

    # =========================================================================
    # Configuration
    # =========================================================================

    @property
    def config(self) -> CollectorConfig:
        return self._config

    def configure(self, **options: Any) -> "DeprecationCollector":
        """Change settings; storage-related ones are forwarded to the backend.

        Raises:
            ConfigurationError: Unknown option or invalid value.
        """
        self._config = self._config.replace(**options)
        self._apply_config()
        if self._storage is not None:
            forwarded = {key: value for key, value in options.items() if key in STORAGE_FIELDS}
            if forwarded:
                self._storage.configure(**forwarded)
        return self

    def _apply_config(self) -> None:
        cfg = self._config
        self._ignore_patterns = cfg.compiled_ignore_patterns()
        self._exclude_realms = frozenset(cfg.exclude_realms)
        prefixes = library_prefixes()
        app_root = root_prefix(cfg.app_root)
        if app_root is not None:
            prefixes.append(app_root)
        self._cleanup_prefixes = sorted(set(prefixes), key=len, reverse=True)

    @property
    def cleanup_prefixes(self) -> List[str]:
        return list(self._cleanup_prefixes)

    @property
    def storage(self) -> Storage:
        return self._storage

    @storage.setter
    def storage(self, storage: Storage) -> None:
        storage.configure(**self._config.storage_options())
        storage.on_halt = self._halt
        # warm start: skip digests other workers already reported
        storage.fetch_known_digests()
        self._storage = storage

    @property
    def redis(self) -> Any:
        storage = self._storage
        return storage.redis if isinstance(storage, RedisStorage) else None

    @redis.setter
    def redis(self, client: Any) -> None:
        self.storage = RedisStorage(client, key_prefix=self._config.key_prefix)

    # =========================================================================
    # Kill switch
    # =========================================================================

    def enabled(self) -> bool:
        return self._enabled

    def enable(self) -> None:
        self._enabled = True
        self._storage.enable()
        logger.info("Deprecation collection enabled")

    def disable(self) -> None:
        self._enabled = False
        self._storage.disable()
        logger.info("Deprecation collection disabled")

    def _halt(self) -> None:
        if self._enabled:
            logger.info("Deprecation collection disabled by shared store flag")
        self._enabled = False

    # =========================================================================
    # Collection
    # =========================================================================

    def collect(self, message: Any, trace: Optional[Iterable[Any]] = None, realm: str = "unknown") -> bool:
        """Record one occurrence of an event.

        Args:
            message: Warning text.
            trace: Call stack, most recent call first (strings or frame
                objects). Captured from the caller when None.
            realm: Source category, e.g. "warning" or "django".

        Returns:
            True if the event is new in the current flush window.

        Raises:
            CollectedDeprecationError: When raise_on_deprecation is set.
        """
        if not self._enabled:
            return False
        cfg = self._config
        if realm in self._exclude_realms:
            return False
        message = str(message)
        if any(pattern.search(message) for pattern in self._ignore_patterns):
            return False
        if cfg.raise_on_deprecation:
            raise CollectedDeprecationError(message)

        trace = capture_trace() if trace is None else list(trace)
        # A hook that itself triggers a collectible event would loop forever.
        allow_hooks = recursion_depth(trace) < 2 and not getattr(_hook_state, "active", False)

        deprecation = Deprecation(
            message,
            realm,
            trace,
            cleanup_prefixes=self._cleanup_prefixes,
            app_root=cfg.app_root,
            save_full_backtrace=cfg.save_full_backtrace,
            shim_markers=cfg.shim_markers,
            revision=cfg.app_revision,
        )
        if deprecation.ignored():
            return False
        return self._store(deprecation, allow_hooks)

    def _store(self, deprecation: Deprecation, allow_hooks: bool) -> bool:
        cfg = self._config
        if allow_hooks and (cfg.fingerprinter or cfg.context_saver):
            _hook_state.active = True
            try:
                if cfg.fingerprinter is not None:
                    deprecation.custom_fingerprint = cfg.fingerprinter(deprecation)
                if cfg.context_saver is not None and not self._storage.has_unsent(deprecation.digest):
                    deprecation.context = cfg.context_saver()
            finally:
                _hook_state.active = False

        fresh = self._storage.store(deprecation)
        self._log_if_needed(deprecation, fresh)
        return fresh

    def _log_if_needed(self, deprecation: Deprecation, fresh: bool) -> None:
        cfg = self._config
        if not cfg.print_to_stderr:
            return
        # the log sink already reports every occurrence
        if isinstance(self._storage, LogStorage):
            return
        if not fresh and not cfg.print_recurring:
            return
        logger.warning("%s", format_log_message(deprecation.message))

    def unsent_data(self) -> bool:
        return self._storage.unsent_data()

    def flush(self, force: bool = False) -> int:
        return self._storage.flush(force=force)

    # =========================================================================
    # Admin / query API
    # =========================================================================

    def read_each(self) -> Iterator[Dict[str, Any]]:
        """Iterate over all persisted records; corrupt rows are skipped."""
        for raw in self._storage.read_each():
            record = decode_record(raw)
            if record is not None:
                yield record

    def read_one(self, digest: str) -> Optional[Dict[str, Any]]:
        return decode_record(self._storage.read_one(digest))

    def delete(self, digests: Iterable[str]) -> int:
        if isinstance(digests, str):
            digests = [digests]
        return self._storage.delete(list(digests))

    def cleanup(self, predicate: Callable[[Dict[str, Any]], bool]) -> str:
        """Delete persisted records matching predicate.

        Returns:
            Summary like "3 removed, 10 left".
        """
        return self._storage.cleanup(predicate)

    def clear(self, enable: bool = False) -> None:
        """Delete all persisted and unsent records; optionally reset the kill switch."""
        self._storage.clear(enable=enable)
        if enable:
            self._enabled = True

    def dump(self) -> str:
        return encode_data(list(self.read_each()))

    def import_dump(self, blob: Any) -> int:
        """Import records produced by dump().

        Raises:
            ImportDumpError: If the blob is malformed or a record lacks a digest.
        """
        records = parse_dump(blob)
        self._storage.import_records(records)
        return len(records)


# =============================================================================
# Process-wide instance
# =============================================================================

_global_collector: Optional[DeprecationCollector] = None
_global_collector_lock = threading.Lock()
_exit_hook_installed = False


def get_collector() -> DeprecationCollector:
    """Get the process-wide collector, creating it on first use."""
    global _global_collector

    if _global_collector is not None:
        return _global_collector
    with _global_collector_lock:
        if _global_collector is None:
            _global_collector = DeprecationCollector()
    return _global_collector


def set_collector(collector: DeprecationCollector) -> None:
    global _global_collector

    with _global_collector_lock:
        _global_collector = collector


def reset_collector() -> None:
    """Forget the process-wide collector (without flushing)."""
    global _global_collector

    with _global_collector_lock:
        _global_collector = None


def _flush_at_exit() -> None:
    collector = _global_collector
    if collector is not None:
        collector.flush(force=True)


def install(configure: Optional[Callable[[DeprecationCollector], None]] = None) -> DeprecationCollector:
    """Create the process-wide collector and register the exit flush.

    Safe to call more than once; the exit hook is registered only once.
    """
    global _exit_hook_installed

    collector = get_collector()
    with _global_collector_lock:
        if not _exit_hook_installed:
            atexit.register(_flush_at_exit)
            _exit_hook_installed = True
    if configure is not None:
        configure(collector)
    return collector
