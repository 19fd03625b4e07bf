"""
base.py - Storage contract and the shared batched-flush algorithm.

Every backend implements the Storage interface. Backends that persist to a
shared store derive from BufferedStorage, which owns the in-memory
aggregation window, the flush timer and the known-digest cache, and only asks
the subclass for a handful of primitive store operations.

Flush algorithm (BufferedStorage.flush):
    1. Skip unless forced or the write interval elapsed.
    2. Under the aggregation lock: swap out the window, mark the timer and
       read the shared enable flag. A false flag halts collection in this
       process and drops the window.
    3. Outside the lock: bump occurrence counters (optional), refresh the
       known-digest cache, drop already known digests, write the rest.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import (
    Any,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    Iterator,
    List,
    NamedTuple,
    Optional,
    Set,
)

from ..aggregator import Aggregator
from ..deprecation import Deprecation
from ..schedule import (
    DEFAULT_WRITE_INTERVAL,
    DEFAULT_WRITE_INTERVAL_JITTER,
    FlushSchedule,
)

logger = logging.getLogger(__name__)


class RawRecord(NamedTuple):
    """A persisted record as the backend returns it, before decoding."""

    digest: str
    data: Optional[str]
    count: Optional[int] = None
    notes: Optional[str] = None


Predicate = Callable[[Dict[str, Any]], bool]


def decode_text(value: Any) -> Optional[str]:
    """Normalize bytes/str store values to str."""
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def encode_data(data: Any) -> str:
    """Serialize a record payload; values JSON cannot represent become strings."""
    return json.dumps(data, default=str)


def decode_data(digest: str, data: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parse a stored JSON payload; None for corrupted or non-object data."""
    if data is None:
        return None
    try:
        decoded = json.loads(data)
    except ValueError as e:
        logger.warning("Skipping undecodable record %s: %s", digest, e)
        return None
    if not isinstance(decoded, dict):
        logger.warning("Skipping record %s: payload is not an object", digest)
        return None
    decoded["digest"] = digest
    return decoded


def cleanup_summary(removed: int, total: int) -> str:
    return f"{removed} removed, {total - removed} left"


class Storage(ABC):
    """Interface shared by all storage backends.

    Default implementations describe a store that persists nothing and is
    always enabled.
    """

    def __init__(self) -> None:
        # Set by the collector; called when the shared kill switch is seen.
        self.on_halt: Optional[Callable[[], None]] = None

    def enabled(self) -> bool:
        return True

    def enable(self) -> None:
        pass

    def disable(self) -> None:
        pass

    def configure(
        self,
        write_interval: Optional[float] = None,
        write_interval_jitter: Optional[float] = None,
        count: Optional[bool] = None,
    ) -> None:
        """Apply collector-level options; None leaves a setting unchanged."""

    @abstractmethod
    def store(self, deprecation: Deprecation) -> bool:
        """Record one occurrence. Returns True if new in the current window."""
        ...

    def has_unsent(self, digest: str) -> bool:
        return False

    def unsent_deprecations(self) -> Dict[str, Deprecation]:
        return {}

    def unsent_data(self) -> bool:
        return bool(self.unsent_deprecations())

    def flush(self, force: bool = False) -> int:
        return 0

    def fetch_known_digests(self) -> FrozenSet[str]:
        return frozenset()

    def read_each(self) -> Iterator[RawRecord]:
        return iter(())

    def read_one(self, digest: str) -> RawRecord:
        return RawRecord(digest, None)

    def delete(self, digests: Iterable[str]) -> int:
        return 0

    def clear(self, enable: bool = False) -> None:
        pass

    def import_records(self, records: Dict[str, Dict[str, Any]]) -> None:
        pass

    def cleanup(self, predicate: Predicate) -> str:
        return cleanup_summary(0, 0)

    def _halt(self) -> None:
        if self.on_halt is not None:
            self.on_halt()


class BufferedStorage(Storage):
    """Storage that aggregates in memory and writes in deduplicated batches.

    Subclasses implement the primitive store operations:
    _load_digests, _persist, _write_counters, _scan_pages, plus the
    administrative read/delete/clear/import methods.
    """

    def __init__(
        self,
        count: bool = False,
        write_interval: float = DEFAULT_WRITE_INTERVAL,
        write_interval_jitter: float = DEFAULT_WRITE_INTERVAL_JITTER,
        lock: Optional[threading.Lock] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        super().__init__()
        self.count = count
        self.schedule = FlushSchedule(write_interval, write_interval_jitter, clock=clock)
        self.aggregator = Aggregator(lock)
        self._known_digests: Set[str] = set()
        self._known_lock = threading.Lock()

    def configure(
        self,
        write_interval: Optional[float] = None,
        write_interval_jitter: Optional[float] = None,
        count: Optional[bool] = None,
    ) -> None:
        if write_interval is not None:
            self.schedule.write_interval = write_interval
        if write_interval_jitter is not None:
            self.schedule.write_interval_jitter = write_interval_jitter
        if count is not None:
            self.count = count

    @property
    def known_digests(self) -> FrozenSet[str]:
        with self._known_lock:
            return frozenset(self._known_digests)

    def has_unsent(self, digest: str) -> bool:
        return self.aggregator.contains(digest)

    def unsent_deprecations(self) -> Dict[str, Deprecation]:
        return self.aggregator.snapshot()

    def unsent_data(self) -> bool:
        return self.aggregator.unsent

    def store(self, deprecation: Deprecation) -> bool:
        _, fresh = self.aggregator.upsert(deprecation)
        if self.schedule.due():
            self.flush()
        return fresh

    def fetch_known_digests(self) -> FrozenSet[str]:
        digests = self._load_digests()
        with self._known_lock:
            self._known_digests.update(digests)
            return frozenset(self._known_digests)

    def flush(self, force: bool = False) -> int:
        """Write the current window to the store.

        Returns:
            Number of records written (0 when skipped, halted or all known).
        """
        if not (force or self.schedule.elapsed()):
            return 0

        with self.aggregator.lock:
            to_flush = self.aggregator.swap_locked()
            self.schedule.mark()
            # Checked inside the lock so parallel flushers issue one request.
            if not self.enabled():
                logger.info(
                    "Collection disabled in store, dropping %d unsent records", len(to_flush)
                )
                self._halt()
                return 0

        if not to_flush:
            return 0

        # Counting is the write-heavy path: one increment per digest per flush.
        if self.count:
            self._write_counters(to_flush)

        # Other workers may already have reported the same events.
        known = self.fetch_known_digests()
        pending = {digest: record for digest, record in to_flush.items() if digest not in known}
        if not pending:
            logger.debug("Flush: all %d records already known", len(to_flush))
            return 0

        self._persist(pending)
        with self._known_lock:
            self._known_digests.update(pending)
        logger.debug("Flush: wrote %d of %d records", len(pending), len(to_flush))
        return len(pending)

    def clear(self, enable: bool = False) -> None:
        self.aggregator.clear()
        with self._known_lock:
            self._known_digests.clear()

    def read_each(self) -> Iterator[RawRecord]:
        for page in self._scan_pages(with_extras=True):
            yield from page

    def cleanup(self, predicate: Predicate) -> str:
        """Delete every persisted record for which predicate returns True."""
        removed = total = 0
        for page in self._scan_pages(with_extras=False):
            # NB: cursor scans may return empty pages mid-way
            total += len(page)
            matches: List[str] = []
            for raw in page:
                decoded = decode_data(raw.digest, raw.data)
                if decoded is not None and predicate(decoded):
                    matches.append(raw.digest)
            removed += self.delete(matches)
        summary = cleanup_summary(removed, total)
        logger.info("Cleanup: %s", summary)
        return summary

    def _forget(self, digests: Iterable[str]) -> None:
        with self._known_lock:
            self._known_digests.difference_update(digests)

    # -------------------------------------------------------------------------
    # Primitive store operations
    # -------------------------------------------------------------------------

    @abstractmethod
    def _load_digests(self) -> Iterable[str]:
        """All digests currently persisted."""
        ...

    @abstractmethod
    def _persist(self, records: Dict[str, Deprecation]) -> None:
        """Upsert records keyed by digest."""
        ...

    def _write_counters(self, records: Dict[str, Deprecation]) -> None:
        pass

    @abstractmethod
    def _scan_pages(self, with_extras: bool) -> Iterator[List[RawRecord]]:
        """Yield pages of persisted records; counters/notes only if with_extras."""
        ...
