"""Tests for the snapshot store."""
import threading

import pytest

from conftest import BACKENDS
from pg_stats_exporter.mapper import MetricMapper
from pg_stats_exporter.series import ScrapeOutcome, Snapshot

TS = 1_700_000_000.0


def snapshot_for(generation, value=1):
    samples = MetricMapper().map([{"relname": "orders", "numbackends": value}], BACKENDS, TS)
    return Snapshot.build(samples, generation, TS + generation)


def test_starts_with_empty_sentinel(store):
    snapshot = store.read()
    assert snapshot.is_empty
    assert snapshot.generation == 0
    assert len(snapshot) == 0


def test_publish_replaces_snapshot(store):
    first = snapshot_for(store.next_generation(), 1)
    store.publish(first)
    assert store.read() is first

    second = snapshot_for(store.next_generation(), 2)
    store.publish(second)
    assert store.read() is second
    # The replaced snapshot is untouched
    assert first.samples[0].value == 1.0


def test_publish_rejects_stale_generation(store):
    store.publish(snapshot_for(2))
    with pytest.raises(ValueError):
        store.publish(snapshot_for(2))
    with pytest.raises(ValueError):
        store.publish(snapshot_for(1))
    assert store.read().generation == 2


def test_snapshot_is_immutable():
    snapshot = snapshot_for(1)
    with pytest.raises(AttributeError):
        snapshot.generation = 5
    assert isinstance(snapshot.samples, tuple)


def test_readers_see_non_decreasing_generations(store):
    """Concurrent readers never observe a generation going backwards."""
    stop = threading.Event()
    violations = []

    def reader():
        last = -1
        while not stop.is_set():
            generation = store.read().generation
            if generation < last:
                violations.append((last, generation))
            last = generation

    readers = [threading.Thread(target=reader) for _ in range(4)]
    for t in readers:
        t.start()
    for _ in range(500):
        store.publish(snapshot_for(store.next_generation()))
    stop.set()
    for t in readers:
        t.join()

    assert violations == []
    assert store.read().generation == 500


def test_health_tracks_failures_and_success(store):
    failed = ScrapeOutcome(target="t", success=False, duration_s=0.1, finished_at=TS, error_kind="timeout")
    store.record_failure(failed)
    health = store.record_failure(failed)
    assert health.consecutive_failures == 2
    assert health.error_totals == {"timeout": 2}
    assert health.last_success_at is None

    ok = ScrapeOutcome(target="t", success=True, duration_s=0.1, finished_at=TS + 30)
    store.record_success(ok)
    health = store.health()
    assert health.consecutive_failures == 0
    assert health.last_success_at == TS + 30
    assert health.error_totals == {"timeout": 2}


def test_health_freshness(store):
    store.record_success(ScrapeOutcome(target="t", success=True, duration_s=0.1, finished_at=TS))
    assert store.health().is_fresh(TS + 29, 30)
    assert not store.health().is_fresh(TS + 30, 30)

    store.mark_fatal("password authentication failed")
    assert not store.health().is_fresh(TS + 1, 30)
