"""Tests for the HTTP front."""
import time

import pytest
from fastapi.testclient import TestClient

from conftest import FakeSource
from pg_stats_exporter.api import AppState, ExporterAPI
from pg_stats_exporter.errors import AuthenticationError, DatabaseConnectionError, EncodingError
from pg_stats_exporter.exposition import create_self_registry
from pg_stats_exporter.scheduler import ScrapeScheduler, ScrapeState


@pytest.fixture
def app_parts(store, groups, good_results, clock):
    registry, self_metrics = create_self_registry(start_time=clock.now, with_process_collector=False)
    source = FakeSource(good_results)
    scheduler = ScrapeScheduler(source, store, groups, self_metrics=self_metrics,
                                interval_s=15.0, clock=clock)
    state = AppState(
        store=store,
        scheduler=scheduler,
        registry=registry,
        self_metrics=self_metrics,
        scrape_interval_s=15.0,
        started_at=clock.now,
    )
    client = TestClient(ExporterAPI(state, clock=clock).app)
    return client, scheduler, source


def test_metrics_before_first_scrape(app_parts):
    """Early requests get a valid response built from the empty sentinel."""
    client, _, _ = app_parts
    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain; version=0.0.4")
    assert "db_numbackends" not in response.text
    assert "pg_stats_exporter_last_scrape_success 0.0" in response.text


def test_metrics_after_scrape(app_parts):
    client, scheduler, _ = app_parts
    scheduler.scrape_once()

    response = client.get("/metrics")

    assert response.status_code == 200
    lines = response.text.splitlines()
    assert 'db_numbackends{relname="orders"} 5' in lines
    assert 'db_xact_commit_total{datname="postgres"} 42' in lines
    assert "pg_stats_exporter_last_scrape_success 1.0" in lines


def test_metrics_serve_stale_snapshot_on_failure(app_parts, clock):
    client, scheduler, source = app_parts
    scheduler.scrape_once()
    source.connect_error = DatabaseConnectionError("connection reset")
    clock.advance(15)
    scheduler.scrape_once()

    response = client.get("/metrics")

    assert 'db_numbackends{relname="orders"} 5' in response.text.splitlines()
    assert "pg_stats_exporter_last_scrape_success 0.0" in response.text
    assert 'pg_stats_exporter_scrape_error_total{kind="connection"} 1.0' in response.text


def test_metrics_encoding_error_is_500(app_parts, monkeypatch):
    client, scheduler, _ = app_parts
    scheduler.scrape_once()

    def broken(*args, **kwargs):
        raise EncodingError("unencodable")

    monkeypatch.setattr("pg_stats_exporter.api.render", broken)
    response = client.get("/metrics")

    assert response.status_code == 500
    assert response.json() == {"msg": "unencodable"}


def test_healthz_unhealthy_before_first_success(app_parts):
    client, _, _ = app_parts
    response = client.get("/healthz")
    assert response.status_code == 503
    assert response.json()["reason"] == "no successful scrape yet"


def test_healthz_window_is_two_intervals(app_parts, clock):
    client, scheduler, _ = app_parts
    scheduler.scrape_once()

    assert client.get("/healthz").status_code == 200

    clock.advance(29)
    assert client.get("/healthz").status_code == 200

    clock.advance(1)
    assert client.get("/healthz").status_code == 503


def test_healthz_fatal_target(app_parts, clock):
    client, scheduler, source = app_parts
    scheduler.scrape_once()
    source.connect_error = AuthenticationError("password authentication failed")
    clock.advance(1)
    scheduler.scrape_once()

    response = client.get("/healthz")
    assert response.status_code == 503
    assert "scraping halted" in response.json()["reason"]

    # The last snapshot is still served
    assert 'db_numbackends{relname="orders"} 5' in client.get("/metrics").text.splitlines()


def test_status(app_parts):
    client, scheduler, _ = app_parts
    scheduler.scrape_once()

    body = client.get("/status").json()

    assert body["generation"] == 1
    assert body["samples"] == 2
    assert body["state"] == "idle"
    assert body["fatal"] is False
    assert body["consecutive_failures"] == 0
    assert body["target"] == "db.example:5432/postgres"


def test_metrics_answer_during_inflight_scrape(app_parts, gate):
    """A slow scrape does not hold up /metrics, which serves the previous snapshot."""
    client, scheduler, source = app_parts
    scheduler.scrape_once()
    source.gate = gate

    assert scheduler.tick()
    assert scheduler.state is ScrapeState.SCRAPING

    started = time.monotonic()
    response = client.get("/metrics")
    elapsed = time.monotonic() - started

    assert response.status_code == 200
    assert elapsed < 2
    lines = response.text.splitlines()
    assert 'db_numbackends{relname="orders"} 5' in lines
    assert 'db_xact_commit_total{datname="postgres"} 42' in lines
    assert scheduler.state is ScrapeState.SCRAPING

    gate.set()
    assert scheduler.wait_idle(5)
    assert client.get("/status").json()["generation"] == 2
