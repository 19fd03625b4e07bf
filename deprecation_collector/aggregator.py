"""
aggregator.py - In-process coalescing of repeated events.

The Aggregator owns the digest -> Deprecation map for the current flush
window. All mutation happens under one lock so collect() can be called from
any thread; swap() hands the whole window to a flush and starts a new one.
"""

from __future__ import annotations

import threading
from typing import Dict, Optional, Tuple

from .deprecation import Deprecation


class Aggregator:
    """Thread-safe digest -> record table for one flush window."""

    def __init__(self, lock: Optional[threading.Lock] = None):
        self.lock = lock or threading.Lock()
        self._records: Dict[str, Deprecation] = {}

    def upsert(self, record: Deprecation) -> Tuple[Deprecation, bool]:
        """Insert or touch a record.

        Returns:
            The record held in the map (which may be an earlier instance
            with the same digest) and whether it was created by this call.
        """
        digest = record.digest
        with self.lock:
            current = self._records.get(digest)
            fresh = current is None
            if fresh:
                self._records[digest] = current = record
            current.touch()
        return current, fresh

    def contains(self, digest: str) -> bool:
        with self.lock:
            return digest in self._records

    def swap_locked(self) -> Dict[str, Deprecation]:
        """Replace the map with an empty one; caller must hold ``lock``."""
        records, self._records = self._records, {}
        return records

    def swap(self) -> Dict[str, Deprecation]:
        with self.lock:
            return self.swap_locked()

    def snapshot(self) -> Dict[str, Deprecation]:
        with self.lock:
            return dict(self._records)

    def clear(self) -> None:
        with self.lock:
            self._records = {}

    @property
    def unsent(self) -> bool:
        return bool(self._records)

    def __len__(self) -> int:
        return len(self._records)
