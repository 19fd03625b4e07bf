"""
Test fixtures for the deprecation collector.

Provides in-memory stand-ins for the shared stores (fakeredis, in-memory
DuckDB), a controllable clock, and record factories.
"""

import duckdb
import fakeredis
import pytest

from deprecation_collector import collector as collector_module
from deprecation_collector.deprecation import Deprecation
from deprecation_collector.storage import create_schema

APP_TRACE = [
    "/srv/venv/lib/python3.12/site-packages/somelib/api.py:41:in old_call",
    "app/models/user.py:12:in save",
    "app/main.py:3:in <module>",
]


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_deprecation(message="foo is deprecated", realm="warning", trace=None, **kwargs):
    return Deprecation(message, realm, APP_TRACE if trace is None else trace, **kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server):
    return fakeredis.FakeRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def duckdb_conn():
    conn = duckdb.connect(":memory:")
    create_schema(conn)
    yield conn
    conn.close()


@pytest.fixture(autouse=True)
def _reset_global_collector():
    collector_module.reset_collector()
    yield
    collector_module.reset_collector()
