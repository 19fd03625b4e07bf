"""
table_store.py - Relational table storage on DuckDB.

Records live in one table keyed by a unique digest column:

    digest      VARCHAR PRIMARY KEY
    data        JSON      -- the record as stored by Redis storage
    notes       VARCHAR
    created_at  TIMESTAMP -- from first_timestamp
    updated_at  TIMESTAMP

The shared enable flag lives in a small key/value side table
``<table>_meta``, created when the connection is assigned.

Usage:
    import duckdb
    from deprecation_collector.storage import TableStorage, create_schema

    conn = duckdb.connect("deprecations.duckdb")
    create_schema(conn)
    storage = TableStorage(conn)
"""

from __future__ import annotations

import logging
import re
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional

from ..deprecation import Deprecation
from ..errors import StorageConfigurationError
from .base import BufferedStorage, RawRecord, decode_text, encode_data

logger = logging.getLogger(__name__)

DEFAULT_TABLE = "deprecations"
DEFAULT_BATCH_SIZE = 1000

EXPECTED_COLUMNS = ("digest", "data", "notes", "created_at", "updated_at")
REQUIRED_METHODS = ("execute", "executemany")

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS {table} (
    digest VARCHAR PRIMARY KEY,
    data JSON NOT NULL,
    notes VARCHAR,
    created_at TIMESTAMP,
    updated_at TIMESTAMP
);
"""

CREATE_META_SQL = """
CREATE TABLE IF NOT EXISTS {table}_meta (
    key VARCHAR PRIMARY KEY,
    value VARCHAR NOT NULL,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""


def _check_identifier(table: str) -> str:
    if not _IDENTIFIER_RE.match(table or ""):
        raise StorageConfigurationError(f"invalid table name: {table!r}")
    return table


def create_schema(connection: Any, table: str = DEFAULT_TABLE) -> None:
    """Create the records table and its meta table if missing."""
    table = _check_identifier(table)
    connection.execute(CREATE_TABLE_SQL.format(table=table))
    connection.execute(CREATE_META_SQL.format(table=table))


def _timestamp_to_datetime(timestamp: Any) -> datetime:
    # naive UTC, as stored in TIMESTAMP columns
    return datetime.fromtimestamp(int(timestamp), timezone.utc).replace(tzinfo=None)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TableStorage(BufferedStorage):
    """Batched, deduplicated storage in a DuckDB table.

    Occurrence counters are not kept in the table; the count of the window
    that first wrote a record is part of its data.
    """

    def __init__(
        self,
        connection: Any,
        table: str = DEFAULT_TABLE,
        batch_size: int = DEFAULT_BATCH_SIZE,
        **kwargs: Any,
    ):
        if kwargs.get("count"):
            logger.warning("TableStorage does not support occurrence counters, ignoring count=True")
            kwargs["count"] = False
        super().__init__(**kwargs)
        self.table = _check_identifier(table)
        self.batch_size = batch_size
        # DuckDB connections are not safe for concurrent use.
        self._db_lock = threading.RLock()
        self.connection = connection

    @property
    def connection(self) -> Any:
        return self._connection

    @connection.setter
    def connection(self, connection: Any) -> None:
        """Validate and assign the connection.

        Raises:
            StorageConfigurationError: If the handle lacks the query methods
                or the table lacks one of EXPECTED_COLUMNS.
        """
        if not all(callable(getattr(connection, name, None)) for name in REQUIRED_METHODS):
            raise StorageConfigurationError(
                "connection expected to be a DuckDB-like connection responding to "
                f"{', '.join(REQUIRED_METHODS)}"
            )
        with self._db_lock:
            rows = connection.execute(
                "SELECT column_name FROM information_schema.columns WHERE table_name = ?",
                [self.table],
            ).fetchall()
            columns = {row[0] for row in rows}
            missing = [name for name in EXPECTED_COLUMNS if name not in columns]
            if missing:
                raise StorageConfigurationError(
                    f"table {self.table!r} expected to have columns "
                    f"{', '.join(EXPECTED_COLUMNS)} (missing: {', '.join(missing)})"
                )
            connection.execute(CREATE_META_SQL.format(table=self.table))
            self._connection = connection

    def configure(
        self,
        write_interval: Optional[float] = None,
        write_interval_jitter: Optional[float] = None,
        count: Optional[bool] = None,
    ) -> None:
        if count:
            logger.warning("TableStorage does not support occurrence counters, ignoring count=True")
        super().configure(write_interval, write_interval_jitter, None)

    # -------------------------------------------------------------------------
    # Kill switch
    # -------------------------------------------------------------------------

    def enabled(self) -> bool:
        with self._db_lock:
            row = self.connection.execute(
                f"SELECT value FROM {self.table}_meta WHERE key = 'enabled'"
            ).fetchone()
        return row is None or row[0] != "false"

    def _set_enabled_flag(self, value: str) -> None:
        with self._db_lock:
            self.connection.execute(
                f"""
                INSERT INTO {self.table}_meta (key, value, updated_at)
                VALUES ('enabled', ?, ?)
                ON CONFLICT (key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                [value, _utcnow()],
            )

    def enable(self) -> None:
        self._set_enabled_flag("true")

    def disable(self) -> None:
        self._set_enabled_flag("false")

    # -------------------------------------------------------------------------
    # Flush primitives
    # -------------------------------------------------------------------------

    def _load_digests(self) -> Iterable[str]:
        with self._db_lock:
            rows = self.connection.execute(f"SELECT digest FROM {self.table}").fetchall()
        return [row[0] for row in rows]

    def _persist(self, records: Dict[str, Deprecation]) -> None:
        rows = []
        for digest, record in records.items():
            timestamp = _timestamp_to_datetime(record.first_timestamp)
            rows.append([digest, encode_data(record.as_dict()), timestamp, timestamp])
        with self._db_lock:
            self.connection.executemany(
                f"""
                INSERT INTO {self.table} (digest, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (digest) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
                """,
                rows,
            )

    def _scan_pages(self, with_extras: bool) -> Iterator[List[RawRecord]]:
        # keyset pagination: stable while rows are deleted behind the cursor
        last_digest = ""
        while True:
            with self._db_lock:
                rows = self.connection.execute(
                    f"""
                    SELECT digest, CAST(data AS VARCHAR), notes FROM {self.table}
                    WHERE digest > ?
                    ORDER BY digest
                    LIMIT ?
                    """,
                    [last_digest, self.batch_size],
                ).fetchall()
            if not rows:
                break
            yield [
                RawRecord(digest, decode_text(data), None, notes if with_extras else None)
                for digest, data, notes in rows
            ]
            last_digest = rows[-1][0]
            if len(rows) < self.batch_size:
                break

    # -------------------------------------------------------------------------
    # Administration
    # -------------------------------------------------------------------------

    def read_one(self, digest: str) -> RawRecord:
        with self._db_lock:
            row = self.connection.execute(
                f"SELECT CAST(data AS VARCHAR), notes FROM {self.table} WHERE digest = ?",
                [digest],
            ).fetchone()
        if row is None:
            return RawRecord(digest, None)
        return RawRecord(digest, decode_text(row[0]), None, row[1])

    def delete(self, digests: Iterable[str]) -> int:
        digests = list(digests)
        if not digests:
            return 0
        placeholders = ", ".join("?" for _ in digests)
        with self._db_lock:
            existing = self.connection.execute(
                f"SELECT COUNT(*) FROM {self.table} WHERE digest IN ({placeholders})", digests
            ).fetchone()[0]
            self.connection.execute(
                f"DELETE FROM {self.table} WHERE digest IN ({placeholders})", digests
            )
        self._forget(digests)
        return int(existing)

    def clear(self, enable: bool = False) -> None:
        with self._db_lock:
            self.connection.execute(f"DELETE FROM {self.table}")
            if enable:
                self.connection.execute(f"DELETE FROM {self.table}_meta WHERE key = 'enabled'")
        super().clear(enable)
        logger.info("Cleared all records in table %s", self.table)

    def import_records(self, records: Dict[str, Dict[str, Any]]) -> None:
        if not records:
            return
        rows = []
        for digest, record in records.items():
            record = dict(record)
            notes = record.pop("notes", None)
            if notes is not None and not isinstance(notes, str):
                notes = encode_data(notes)
            first_timestamp = record.get("first_timestamp")
            timestamp = (
                _timestamp_to_datetime(first_timestamp)
                if first_timestamp is not None
                else _utcnow()
            )
            rows.append([digest, encode_data(record), notes, timestamp, timestamp])
        with self._db_lock:
            self.connection.executemany(
                f"""
                INSERT INTO {self.table} (digest, data, notes, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (digest) DO UPDATE SET
                    data = excluded.data,
                    notes = excluded.notes,
                    updated_at = excluded.updated_at
                """,
                rows,
            )
        logger.info("Imported %d records into table %s", len(rows), self.table)
