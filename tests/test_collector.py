"""
Tests for DeprecationCollector: the collection path end to end and the
admin API, against fakeredis and in-memory DuckDB.

These tests verify:
1. Repeated events aggregate into one record with a total count
2. Filters (kill switch, realms, ignore patterns) and raise mode
3. Context and fingerprint hooks, including hooks that re-enter collect()
4. Dump / clear / import round trip and the other admin operations
5. The process-wide collector
"""

import itertools
import json
import logging
import os
import re
from datetime import datetime
from decimal import Decimal

import fakeredis
import pytest

import deprecation_collector
from deprecation_collector import (
    CollectedDeprecationError,
    CollectorConfig,
    ConfigurationError,
    DeprecationCollector,
    ImportDumpError,
    LogStorage,
    RedisStorage,
    TableStorage,
    get_collector,
    install,
)

from conftest import APP_TRACE

OTHER_TRACE = ["app/views/home.py:8:in index"]


@pytest.fixture
def storage(redis_client, clock):
    return RedisStorage(redis_client, count=True, write_interval=900, write_interval_jitter=0, clock=clock)


@pytest.fixture
def collector(storage):
    return DeprecationCollector(storage=storage)


def _records(collector):
    return {record["digest"]: record for record in collector.read_each()}


class TestCollect:
    """Tests for the collection path."""

    def test_repeated_event_counts_once_per_digest(self, collector):
        assert collector.collect("foo is deprecated", APP_TRACE, "warning") is True
        assert collector.collect("foo is deprecated", APP_TRACE, "warning") is False
        assert collector.unsent_data() is True

        assert collector.flush(force=True) == 1
        assert collector.unsent_data() is False

        (record,) = collector.read_each()
        assert record["count"] == 2
        assert record["realm"] == "warning"
        assert record["message"] == "foo is deprecated"
        assert record["app_traceline"] == "app/models/user.py:12:in save"

    def test_noisy_variants_share_a_record(self, collector):
        collector.collect('no such column "users.a"', APP_TRACE, "warning")
        collector.collect('no such column "users.b"', APP_TRACE, "warning")
        collector.flush(force=True)
        assert len(_records(collector)) == 1

    def test_different_locations_are_different_records(self, collector):
        collector.collect("foo is deprecated", APP_TRACE, "warning")
        collector.collect("foo is deprecated", OTHER_TRACE, "warning")
        collector.flush(force=True)
        assert len(_records(collector)) == 2

    def test_trace_is_captured_when_missing(self, collector):
        collector.configure(app_root=os.path.dirname(os.path.abspath(__file__)))
        collector.collect("captured", realm="warning")
        collector.flush(force=True)

        (record,) = collector.read_each()
        assert record["app_traceline"].startswith("test_collector.py:")
        assert record["app_traceline"].endswith(":in test_trace_is_captured_when_missing")
        assert "gem_traceline" not in record

    def test_known_record_not_rewritten_by_second_worker(self, redis_server, collector):
        collector.collect("foo is deprecated", APP_TRACE, "warning")
        collector.flush(force=True)

        other = DeprecationCollector(
            storage=RedisStorage(fakeredis.FakeRedis(server=redis_server, decode_responses=True))
        )
        digest = next(iter(_records(collector)))
        assert digest in other.storage.known_digests

        other.collect("foo is deprecated", APP_TRACE, "warning")
        assert other.flush(force=True) == 0


class TestFilters:
    """Tests for the guards in front of aggregation."""

    def test_disabled_collector_drops_events(self, collector):
        collector.disable()
        assert collector.enabled() is False
        assert collector.collect("foo", APP_TRACE) is False
        assert collector.unsent_data() is False

        collector.enable()
        assert collector.collect("foo", APP_TRACE) is True

    def test_shared_flag_halts_every_worker(self, collector, redis_client):
        collector.collect("foo", APP_TRACE)
        redis_client.set("deprecations:enabled", "false")

        assert collector.flush(force=True) == 0
        assert collector.enabled() is False
        assert collector.collect("bar", APP_TRACE) is False
        assert list(collector.read_each()) == []

    def test_excluded_realm(self, collector):
        collector.configure(exclude_realms=["kernel"])
        assert collector.collect("foo", APP_TRACE, "kernel") is False
        assert collector.collect("foo", APP_TRACE, "warning") is True

    def test_ignored_messages(self, collector):
        collector.configure(ignored_messages=["frozen string", re.compile(r"^legacy \d+$")])
        assert collector.collect("warning: frozen string literal", APP_TRACE) is False
        assert collector.collect("legacy 42", APP_TRACE) is False
        assert collector.collect("legacy api", APP_TRACE) is True

    def test_raise_on_deprecation(self, collector):
        collector.configure(raise_on_deprecation=True)
        with pytest.raises(CollectedDeprecationError, match="Deprecation: foo is gone") as excinfo:
            collector.collect("foo is gone", APP_TRACE)
        assert excinfo.value.deprecation_message == "foo is gone"
        assert collector.unsent_data() is False

    def test_raise_respects_filters(self, collector):
        collector.configure(raise_on_deprecation=True, exclude_realms=["kernel"])
        assert collector.collect("foo", APP_TRACE, "kernel") is False


class TestHooks:
    """Tests for context and fingerprint hooks."""

    def test_context_saved_once_per_window(self, collector):
        calls = []

        def context_saver():
            calls.append(1)
            return {"request_id": len(calls)}

        collector.configure(context_saver=context_saver)
        for _ in range(3):
            collector.collect("foo", APP_TRACE)
        collector.flush(force=True)

        (record,) = collector.read_each()
        assert calls == [1]
        assert record["context"] == {"request_id": 1}

    def test_context_hook_reentering_collect_terminates(self, collector):
        calls = []

        def context_saver():
            calls.append(1)
            collector.collect("raised inside context hook", realm="warning")
            return {"user_id": 7}

        collector.configure(context_saver=context_saver)
        assert collector.collect("outer", APP_TRACE, "warning") is True
        collector.flush(force=True)

        records = {record["message"]: record for record in collector.read_each()}
        assert set(records) == {"outer", "raised inside context hook"}
        assert records["outer"]["context"] == {"user_id": 7}
        assert "context" not in records["raised inside context hook"]
        assert calls == [1]

    def test_fingerprinter_splits_records(self, collector):
        tenants = itertools.cycle(["tenant-a", "tenant-b"])
        collector.configure(fingerprinter=lambda deprecation: next(tenants))
        for _ in range(4):
            collector.collect("foo", APP_TRACE)
        collector.flush(force=True)

        records = list(collector.read_each())
        assert len(records) == 2
        assert sorted(r["digest_base"].rsplit(":", 1)[1] for r in records) == ["tenant-a", "tenant-b"]
        assert [r["count"] for r in records] == [2, 2]

    def test_context_with_non_json_values_is_persisted(self, collector):
        collector.configure(
            context_saver=lambda: {"at": datetime(2024, 1, 1, 12, 0), "amount": Decimal("1.50")}
        )
        collector.collect("foo", APP_TRACE)
        collector.collect("bar", APP_TRACE)

        assert collector.flush(force=True) == 2
        assert collector.unsent_data() is False
        records = list(collector.read_each())
        assert len(records) == 2
        assert all(r["context"] == {"at": "2024-01-01 12:00:00", "amount": "1.50"} for r in records)
        assert len(json.loads(collector.dump())) == 2

    def test_unknown_option(self, collector):
        with pytest.raises(ConfigurationError):
            collector.configure(context=1)


class TestStderrLogging:
    """Tests for print_to_stderr / print_recurring."""

    def _logged(self, caplog):
        return [r.getMessage() for r in caplog.records if r.name == "deprecation_collector.collector"]

    def test_first_occurrence_only(self, collector, caplog):
        collector.configure(print_to_stderr=True)
        with caplog.at_level(logging.WARNING):
            collector.collect("foo", APP_TRACE)
            collector.collect("foo", APP_TRACE)
        assert self._logged(caplog) == ["DEPRECATION: foo"]

    def test_recurring(self, collector, caplog):
        collector.configure(print_to_stderr=True, print_recurring=True)
        with caplog.at_level(logging.WARNING):
            collector.collect("foo", APP_TRACE)
            collector.collect("foo", APP_TRACE)
        assert self._logged(caplog) == ["DEPRECATION: foo"] * 2

    def test_silent_by_default(self, collector, caplog):
        with caplog.at_level(logging.WARNING):
            collector.collect("foo", APP_TRACE)
        assert self._logged(caplog) == []

    def test_log_sink_is_not_doubled(self, caplog):
        collector = DeprecationCollector(print_to_stderr=True)
        assert isinstance(collector.storage, LogStorage)
        with caplog.at_level(logging.WARNING):
            collector.collect("foo", APP_TRACE)
        assert [r.getMessage() for r in caplog.records] == ["DEPRECATION: foo"]


class TestAdmin:
    """Tests for read/delete/cleanup/dump/import."""

    def _seed(self, collector, *messages):
        for message in messages:
            collector.collect(message, APP_TRACE, "warning")
        collector.flush(force=True)

    def test_read_one(self, collector, redis_client):
        self._seed(collector, "a")
        (digest,) = _records(collector)
        redis_client.hset("deprecations:notes", digest, "owner: team x")

        record = collector.read_one(digest)
        assert record["digest"] == digest
        assert record["message"] == "a"
        assert record["notes"] == "owner: team x"
        assert collector.read_one("missing") is None

    def test_read_each_skips_corrupt_rows(self, collector, redis_client):
        self._seed(collector, "a")
        redis_client.hset("deprecations:data", "corrupt", "[1, 2")
        assert [r["message"] for r in collector.read_each()] == ["a"]

    def test_delete(self, collector):
        self._seed(collector, "a", "b")
        digest = next(d for d, r in _records(collector).items() if r["message"] == "a")
        assert collector.delete(digest) == 1
        assert collector.delete([digest]) == 0
        assert collector.read_one(digest) is None

    def test_cleanup(self, collector):
        self._seed(collector, "keep", "drop")
        assert collector.cleanup(lambda record: record["message"] == "drop") == "1 removed, 1 left"
        assert [r["message"] for r in collector.read_each()] == ["keep"]

    def test_dump_clear_import_round_trip(self, collector):
        self._seed(collector, "a", "b")
        before = sorted(json.loads(collector.dump()), key=lambda r: r["digest"])

        collector.clear()
        assert list(collector.read_each()) == []

        assert collector.import_dump(json.dumps(before)) == 2
        after = sorted(json.loads(collector.dump()), key=lambda r: r["digest"])
        assert after == before

    def test_import_requires_digest(self, collector):
        with pytest.raises(ImportDumpError):
            collector.import_dump(json.dumps([{"message": "no digest"}]))
        with pytest.raises(ImportDumpError):
            collector.import_dump("{broken")
        with pytest.raises(ImportDumpError):
            collector.import_dump(json.dumps({"digest": "not a list"}))

    def test_clear_resets_kill_switch(self, collector):
        collector.disable()
        collector.clear(enable=True)
        assert collector.enabled() is True
        assert collector.storage.enabled() is True

    def test_table_backend(self, duckdb_conn):
        collector = DeprecationCollector(storage=TableStorage(duckdb_conn))
        collector.collect("foo", APP_TRACE, "warning")
        collector.collect("foo", APP_TRACE, "warning")
        collector.flush(force=True)

        (record,) = collector.read_each()
        assert record["count"] == 2
        assert collector.cleanup(lambda r: True) == "1 removed, 0 left"


class TestConfiguration:
    """Tests for wiring config into storage."""

    def test_configure_forwards_storage_options(self, collector, storage):
        collector.configure(write_interval=5, write_interval_jitter=1)
        assert storage.schedule.write_interval == 5
        assert storage.schedule.write_interval_jitter == 1

    def test_config_applied_to_assigned_storage(self, redis_client):
        collector = DeprecationCollector(write_interval=30, count=True)
        collector.storage = RedisStorage(redis_client)
        assert collector.storage.schedule.write_interval == 30
        assert collector.storage.count is True

    def test_redis_setter_uses_key_prefix(self, redis_client):
        collector = DeprecationCollector(key_prefix="svc")
        assert collector.redis is None
        collector.redis = redis_client
        assert isinstance(collector.storage, RedisStorage)
        assert collector.storage.key_prefix == "svc"
        assert collector.redis is redis_client

    def test_from_config(self, tmp_path):
        config = CollectorConfig(storage="table", database_path=str(tmp_path / "dc.duckdb"))
        collector = DeprecationCollector.from_config(config)
        assert isinstance(collector.storage, TableStorage)
        collector.storage.connection.close()

    def test_cleanup_prefixes_include_app_root(self, tmp_path):
        collector = DeprecationCollector(app_root=str(tmp_path))
        assert str(tmp_path) + os.sep in collector.cleanup_prefixes

    def test_filesystem_root_app_root_strips_nothing(self, collector):
        collector.configure(app_root=os.sep)
        assert os.sep not in collector.cleanup_prefixes

        trace = ["/srv/vendor/lib/api.py:10:in call"]
        collector.collect("path /srv/svc/foo.py is deprecated", trace, "warning")
        collector.flush(force=True)

        (record,) = collector.read_each()
        assert record["message"] == "path /srv/svc/foo.py is deprecated"
        assert record["gem_traceline"] == "/srv/vendor/lib/api.py:10:in call"
        assert "app_traceline" not in record


class TestGlobalCollector:
    """Tests for the process-wide instance."""

    def test_get_collector_is_singleton(self):
        assert get_collector() is get_collector()
        assert isinstance(get_collector().storage, LogStorage)

    def test_install_runs_configure(self):
        seen = []
        collector = install(lambda c: seen.append(c.configure(app_revision="abc123")))
        assert collector is get_collector()
        assert collector.config.app_revision == "abc123"
        assert seen == [collector]

    def test_module_level_collect(self, caplog):
        with caplog.at_level(logging.WARNING):
            assert deprecation_collector.collect("old api", realm="warning") is True
        assert "DEPRECATION: old api" in caplog.text
