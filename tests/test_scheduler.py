"""Tests for the scrape scheduler state machine."""
import threading
import time

import psycopg
import pytest

from conftest import FakeSource
from pg_stats_exporter.errors import (
    AuthenticationError, DatabaseConnectionError, QueryTimeoutError, SchemaError,
)
from pg_stats_exporter.scheduler import ScrapeScheduler, ScrapeState, compute_backoff
from pg_stats_exporter.source import classify_error


def make_scheduler(source, store, groups, clock, self_metrics=None, **kwargs):
    kwargs.setdefault("interval_s", 15.0)
    kwargs.setdefault("backoff_max_s", 300.0)
    return ScrapeScheduler(source, store, groups, self_metrics=self_metrics, clock=clock, **kwargs)


@pytest.mark.parametrize("failures", range(0, 200, 7))
def test_backoff_never_exceeds_maximum(failures):
    assert compute_backoff(failures, 15.0, 300.0) <= 300.0


def test_backoff_grows_exponentially_until_cap():
    assert compute_backoff(1, 15.0, 300.0) == 30.0
    assert compute_backoff(2, 15.0, 300.0) == 60.0
    assert compute_backoff(4, 15.0, 300.0) == 240.0
    assert compute_backoff(5, 15.0, 300.0) == 300.0
    assert compute_backoff(10_000, 15.0, 300.0) == 300.0


def test_successful_scrape_publishes_snapshot(store, groups, good_results, clock, self_metrics):
    scheduler = make_scheduler(FakeSource(good_results), store, groups, clock, self_metrics)

    outcome = scheduler.scrape_once()

    assert outcome.success
    assert outcome.sample_count == 2
    snapshot = store.read()
    assert snapshot.generation == 1
    assert snapshot.captured_at == clock.now
    assert [s.name for s in snapshot.samples] == ["db_numbackends", "db_xact_commit_total"]
    assert scheduler.state is ScrapeState.IDLE
    assert store.health().last_success_at == clock.now
    assert self_metrics.last_scrape_success._value.get() == 1


def test_ticks_are_dropped_while_scraping(store, groups, good_results, clock, gate):
    """A slow scrape absorbs every tick that fires while it runs."""
    source = FakeSource(good_results, gate=gate)
    scheduler = make_scheduler(source, store, groups, clock)

    started = [scheduler.tick() for _ in range(10)]

    assert started == [True] + [False] * 9
    assert scheduler.state is ScrapeState.SCRAPING
    assert scheduler.dropped_ticks == 9

    gate.set()
    assert scheduler.wait_idle(5)
    assert source.connect_calls == 1
    assert scheduler.scrape_count == 1
    assert store.read().generation == 1

    # Once idle, the next tick scrapes again
    assert scheduler.tick()
    assert scheduler.wait_idle(5)
    assert source.connect_calls == 2
    assert store.read().generation == 2


def test_retryable_failure_keeps_previous_snapshot(store, groups, good_results, clock, self_metrics):
    source = FakeSource(good_results)
    scheduler = make_scheduler(source, store, groups, clock, self_metrics)
    scheduler.scrape_once()
    before = store.read()

    source.connect_error = DatabaseConnectionError("connection reset by peer")
    clock.advance(15)
    outcome = scheduler.scrape_once()

    assert not outcome.success
    assert outcome.error_kind == "connection"
    assert store.read() is before
    assert store.health().consecutive_failures == 1
    assert store.health().error_totals == {"connection": 1}
    assert self_metrics.error_count("connection") == 1
    assert self_metrics.last_scrape_success._value.get() == 0
    assert scheduler.state is ScrapeState.BACKOFF


def test_backoff_drops_ticks_until_deadline(store, groups, good_results, clock):
    source = FakeSource(good_results, connect_error=QueryTimeoutError("canceling statement"))
    scheduler = make_scheduler(source, store, groups, clock, interval_s=15.0, backoff_max_s=300.0)

    scheduler.scrape_once()
    assert scheduler.backoff_until == clock.now + 30.0

    clock.advance(29)
    assert scheduler.scrape_once() is None
    assert source.connect_calls == 1

    clock.advance(1)
    scheduler.scrape_once()
    assert source.connect_calls == 2
    assert store.health().consecutive_failures == 2
    assert scheduler.backoff_until == clock.now + 60.0

    # Recovery resets the failure counter
    source.connect_error = None
    clock.advance(60)
    outcome = scheduler.scrape_once()
    assert outcome.success
    assert store.health().consecutive_failures == 0
    assert scheduler.state is ScrapeState.IDLE


def test_schema_error_disables_only_that_group(store, groups, good_results, clock, self_metrics):
    results = dict(good_results, commits=SchemaError('relation "stats" does not exist', "commits"))
    source = FakeSource(results)
    scheduler = make_scheduler(source, store, groups, clock, self_metrics)

    outcome = scheduler.scrape_once()

    assert outcome.success
    assert outcome.skipped_groups == ("commits",)
    assert [s.name for s in store.read().samples] == ["db_numbackends"]
    assert store.health().disabled_groups == ("commits",)
    assert self_metrics.error_count("schema") == 1

    # The disabled group is not queried again
    source.query_calls.clear()
    scheduler.scrape_once()
    assert source.query_calls == ["backends"]


def test_every_group_disabled_is_fatal(store, groups, clock):
    results = {
        "backends": SchemaError("function statsinfo.cpustats() does not exist", "backends"),
        "commits": SchemaError("permission denied", "commits"),
    }
    scheduler = make_scheduler(FakeSource(results), store, groups, clock)

    outcome = scheduler.scrape_once()

    assert not outcome.success
    assert scheduler.state is ScrapeState.FATAL
    assert store.health().fatal
    assert store.read().is_empty


def test_authentication_error_halts_scheduling(store, groups, good_results, clock, self_metrics):
    source = FakeSource(good_results)
    scheduler = make_scheduler(source, store, groups, clock, self_metrics)
    scheduler.scrape_once()
    last_good = store.read()

    source.connect_error = AuthenticationError('password authentication failed for user "docker"')
    clock.advance(15)
    scheduler.scrape_once()

    assert scheduler.state is ScrapeState.FATAL
    assert store.health().fatal
    assert "password authentication failed" in store.health().fatal_reason
    assert self_metrics.target_fatal._value.get() == 1
    assert source.closed >= 1

    # Ticks are no-ops from now on, the last snapshot stays served
    clock.advance(3600)
    assert not scheduler.tick()
    assert scheduler.scrape_once() is None
    assert source.connect_calls == 2
    assert store.read() is last_good


def test_unexpected_exception_is_retryable(store, groups, clock):
    source = FakeSource({"backends": RuntimeError("boom")})
    scheduler = make_scheduler(source, store, groups, clock)

    outcome = scheduler.scrape_once()

    assert not outcome.success
    assert outcome.error_kind == "internal"
    assert scheduler.state is ScrapeState.BACKOFF


def test_generations_increase_across_scrapes(store, groups, good_results, clock):
    scheduler = make_scheduler(FakeSource(good_results), store, groups, clock)
    seen = []
    for _ in range(5):
        scheduler.scrape_once()
        seen.append(store.read().generation)
        clock.advance(15)
    assert seen == [1, 2, 3, 4, 5]


def test_loop_thread_scrapes_and_stops(store, groups, good_results):
    source = FakeSource(good_results)
    scheduler = ScrapeScheduler(source, store, groups, interval_s=0.01)

    scheduler.start()
    deadline = time.time() + 5
    while store.read().generation < 3 and time.time() < deadline:
        time.sleep(0.01)
    scheduler.stop(timeout=5)

    assert store.read().generation >= 3
    assert source.closed >= 1
    assert not any(t.name.startswith("scheduler-") for t in threading.enumerate())


class SlowFailingSource(FakeSource):
    """Fails every connect after a short delay and records when it was tried."""

    def __init__(self):
        super().__init__()
        self.attempts = []

    def connect(self):
        self.attempts.append(time.monotonic())
        time.sleep(0.02)
        raise DatabaseConnectionError("connection refused")


def test_loop_retries_when_backoff_ends(store, groups):
    """Retries follow the capped backoff, not the next regular tick after it."""
    source = SlowFailingSource()
    scheduler = ScrapeScheduler(
        source, store, groups, interval_s=0.3, backoff_base_s=0.3, backoff_max_s=0.6,
    )

    scheduler.start()
    deadline = time.time() + 5
    while len(source.attempts) < 4 and time.time() < deadline:
        time.sleep(0.01)
    scheduler.stop(timeout=5)

    gaps = [b - a for a, b in zip(source.attempts, source.attempts[1:])]
    assert len(gaps) >= 3
    assert max(gaps) < 0.8
    assert min(gaps) >= 0.55


def test_missing_database_halts_scheduling(store, groups, clock):
    error = classify_error(psycopg.OperationalError('FATAL:  database "metrix" does not exist'))
    source = FakeSource(connect_error=error)
    scheduler = make_scheduler(source, store, groups, clock)

    outcome = scheduler.scrape_once()

    assert outcome.error_kind == "schema"
    assert scheduler.state is ScrapeState.FATAL
    assert store.health().fatal
