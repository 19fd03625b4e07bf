"""
redis_store.py - Redis hash storage with deduplication by digest.

Layout for a key prefix (default "deprecations"):

    <prefix>:data      hash  digest -> JSON record
    <prefix>:counter   hash  digest -> occurrence count (only with count=True)
    <prefix>:notes     hash  digest -> free text
    <prefix>:enabled   string, "false" halts collection fleet-wide

Usage:
    import redis
    from deprecation_collector.storage import RedisStorage

    storage = RedisStorage(redis.Redis(), key_prefix="deprecations")
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional

from ..deprecation import Deprecation
from ..errors import StorageConfigurationError
from .base import BufferedStorage, RawRecord, decode_text, encode_data

logger = logging.getLogger(__name__)

REQUIRED_METHODS = ("get", "set", "delete", "hkeys", "hget", "hset", "hscan", "hmget", "pipeline")


def _to_int(value: Any) -> Optional[int]:
    text = decode_text(value)
    return int(text) if text is not None else None


class RedisStorage(BufferedStorage):
    """Batched, deduplicated storage in three Redis hashes."""

    def __init__(
        self,
        redis: Any,
        key_prefix: str = "deprecations",
        scan_count: Optional[int] = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.redis = redis
        self.key_prefix = key_prefix
        self.scan_count = scan_count

    @property
    def redis(self) -> Any:
        return self._redis

    @redis.setter
    def redis(self, client: Any) -> None:
        missing = [name for name in REQUIRED_METHODS if not callable(getattr(client, name, None))]
        if missing:
            raise StorageConfigurationError(
                "redis expected to be a redis-py compatible client responding to "
                f"{', '.join(REQUIRED_METHODS)} (missing: {', '.join(missing)})"
            )
        self._redis = client

    @property
    def data_key(self) -> str:
        return f"{self.key_prefix}:data"

    @property
    def counter_key(self) -> str:
        return f"{self.key_prefix}:counter"

    @property
    def notes_key(self) -> str:
        return f"{self.key_prefix}:notes"

    @property
    def enabled_key(self) -> str:
        return f"{self.key_prefix}:enabled"

    # -------------------------------------------------------------------------
    # Kill switch
    # -------------------------------------------------------------------------

    def enabled(self) -> bool:
        return decode_text(self.redis.get(self.enabled_key)) != "false"

    def enable(self) -> None:
        self.redis.set(self.enabled_key, "true")

    def disable(self) -> None:
        self.redis.set(self.enabled_key, "false")

    # -------------------------------------------------------------------------
    # Flush primitives
    # -------------------------------------------------------------------------

    def _load_digests(self) -> Iterable[str]:
        return [decode_text(key) for key in self.redis.hkeys(self.data_key)]

    def _write_counters(self, records: Dict[str, Deprecation]) -> None:
        pipe = self.redis.pipeline()
        for digest, deprecation in records.items():
            pipe.hincrby(self.counter_key, digest, deprecation.occurrences)
        pipe.execute()

    def _persist(self, records: Dict[str, Deprecation]) -> None:
        self.redis.hset(
            self.data_key,
            mapping={digest: encode_data(record.as_dict()) for digest, record in records.items()},
        )

    def _scan_pages(self, with_extras: bool) -> Iterator[List[RawRecord]]:
        cursor = 0
        while True:
            cursor, pairs = self.redis.hscan(self.data_key, cursor, count=self.scan_count)
            if pairs:
                digests = [decode_text(key) for key in pairs]
                data = [decode_text(value) for value in pairs.values()]
                if with_extras:
                    pipe = self.redis.pipeline()
                    pipe.hmget(self.counter_key, digests)
                    pipe.hmget(self.notes_key, digests)
                    counts, notes = pipe.execute()
                else:
                    counts = notes = [None] * len(digests)
                yield [
                    RawRecord(digest, payload, _to_int(count), decode_text(note))
                    for digest, payload, count, note in zip(digests, data, counts, notes)
                ]
            else:
                yield []
            if int(cursor) == 0:
                break

    # -------------------------------------------------------------------------
    # Administration
    # -------------------------------------------------------------------------

    def read_one(self, digest: str) -> RawRecord:
        pipe = self.redis.pipeline()
        pipe.hget(self.data_key, digest)
        pipe.hget(self.counter_key, digest)
        pipe.hget(self.notes_key, digest)
        data, count, notes = pipe.execute()
        return RawRecord(digest, decode_text(data), _to_int(count), decode_text(notes))

    def delete(self, digests: Iterable[str]) -> int:
        digests = list(digests)
        if not digests:
            return 0
        pipe = self.redis.pipeline()
        pipe.hdel(self.data_key, *digests)
        pipe.hdel(self.notes_key, *digests)
        pipe.hdel(self.counter_key, *digests)
        removed = pipe.execute()[0]
        self._forget(digests)
        return int(removed)

    def clear(self, enable: bool = False) -> None:
        self.redis.delete(self.data_key, self.counter_key, self.notes_key)
        if enable:
            self.redis.delete(self.enabled_key)
        super().clear(enable)
        logger.info("Cleared all records under %s", self.key_prefix)

    def import_records(self, records: Dict[str, Dict[str, Any]]) -> None:
        if not records:
            return
        data: Dict[str, str] = {}
        notes: Dict[str, str] = {}
        for digest, record in records.items():
            record = dict(record)
            note = record.pop("notes", None)
            if note is not None:
                notes[digest] = note if isinstance(note, str) else encode_data(note)
            data[digest] = encode_data(record)
        pipe = self.redis.pipeline()
        pipe.hset(self.data_key, mapping=data)
        if notes:
            pipe.hset(self.notes_key, mapping=notes)
        pipe.execute()
        logger.info("Imported %d records into %s", len(data), self.data_key)
