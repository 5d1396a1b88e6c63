"""Shared fakes for the exporter tests."""
import threading

import pytest

from pg_stats_exporter.config import ScrapeTarget
from pg_stats_exporter.descriptors import DescriptorGroup, gauge, counter
from pg_stats_exporter.exposition import SelfMetrics
from pg_stats_exporter.store import SnapshotStore


class FakeSource:
    """Stands in for StatSource: canned rows or errors per group id."""

    def __init__(self, results=None, connect_error=None, gate=None):
        self.target = ScrapeTarget(host="db.example", port=5432, dbname="postgres")
        self.query_timeout_s = 1.0
        self.results = dict(results or {})
        self.connect_error = connect_error
        self.gate = gate
        self.connect_calls = 0
        self.query_calls = []
        self.closed = 0

    def connect(self):
        self.connect_calls += 1
        if self.gate is not None:
            self.gate.wait(5)
        if self.connect_error is not None:
            raise self.connect_error

    def query(self, group):
        self.query_calls.append(group.id)
        result = self.results.get(group.id, [])
        if isinstance(result, Exception):
            raise result
        for row in result:
            yield row

    def close(self):
        self.closed += 1


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


BACKENDS = DescriptorGroup(
    id="backends",
    query="SELECT relname, numbackends FROM stats",
    columns=("relname", "numbackends"),
    descriptors=(gauge("db_numbackends", "Backends per relation", "numbackends", ["relname"]),),
)

COMMITS = DescriptorGroup(
    id="commits",
    query="SELECT datname, xact_commit FROM stats",
    columns=("datname", "xact_commit"),
    descriptors=(counter("db_xact_commit_total", "Commits", "xact_commit", ["datname"]),),
)


@pytest.fixture
def groups():
    return (BACKENDS, COMMITS)


@pytest.fixture
def good_results():
    return {
        "backends": [{"relname": "orders", "numbackends": 5}],
        "commits": [{"datname": "postgres", "xact_commit": 42}],
    }


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return SnapshotStore("db.example:5432/postgres")


@pytest.fixture
def self_metrics():
    return SelfMetrics()


@pytest.fixture
def gate():
    return threading.Event()
