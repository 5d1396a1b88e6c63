"""HTTP front serving /metrics and /healthz using FastAPI."""
from dataclasses import dataclass, field
from typing import Optional
import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CollectorRegistry

from pg_stats_exporter import __version__
from pg_stats_exporter.errors import EncodingError
from pg_stats_exporter.exposition import CONTENT_TYPE, SelfMetrics, render
from pg_stats_exporter.scheduler import ScrapeScheduler
from pg_stats_exporter.store import SnapshotStore

logger = logging.getLogger(__name__)


@dataclass
class AppState:
    """Everything the HTTP handlers and the scheduler share.

    Created once at startup. The store is the only part mutated after that.
    """
    store: SnapshotStore
    scheduler: ScrapeScheduler
    registry: CollectorRegistry
    self_metrics: SelfMetrics
    scrape_interval_s: float
    include_timestamps: bool = False
    started_at: float = field(default_factory=time.time)


class ExporterAPI:
    """FastAPI application exposing the current snapshot."""

    def __init__(self, state: AppState, clock=time.time):
        """
        Initialize the HTTP front.

        Args:
            state: Shared application state
            clock: Wall clock used by the health check
        """
        self.state = state
        self.clock = clock
        self.app = FastAPI(title="PostgreSQL Stats Exporter", version=__version__)

        # Setup routes
        self._setup_routes()

    def _setup_routes(self):
        """Setup API routes."""

        @self.app.middleware("http")
        async def log_requests(request: Request, call_next):
            started = time.monotonic()
            response = await call_next(request)
            elapsed_ms = (time.monotonic() - started) * 1000
            if request.method == "GET" and response.status_code < 400:
                logger.debug(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f}ms)")
            else:
                logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f}ms)")
            return response

        @self.app.get("/metrics")
        def metrics():
            """Encode the current snapshot. Never waits for a scrape."""
            snapshot = self.state.store.read()
            try:
                body = render(snapshot, self.state.registry, self.state.include_timestamps)
            except EncodingError as e:
                logger.error(f"Error processing /metrics: {e}", exc_info=True)
                return JSONResponse(status_code=500, content={"msg": str(e)})

            logger.debug(f"Responded /metrics: generation {snapshot.generation}, {len(body)} bytes")
            return Response(content=body, media_type=CONTENT_TYPE)

        @self.app.get("/healthz")
        async def healthz():
            """Healthy while the last success is younger than two intervals."""
            health = self.state.store.health()
            now = self.clock()
            max_age = 2 * self.state.scrape_interval_s

            if health.is_fresh(now, max_age):
                return {
                    "status": "healthy",
                    "target": health.target,
                    "last_success_age_seconds": round(now - health.last_success_at, 3),
                }

            if health.fatal:
                reason = f"scraping halted: {health.fatal_reason}"
            elif health.last_success_at is None:
                reason = "no successful scrape yet"
            else:
                reason = f"last successful scrape {now - health.last_success_at:.1f}s ago"
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "target": health.target, "reason": reason},
            )

        @self.app.get("/status")
        async def status():
            """Get current scrape status."""
            snapshot = self.state.store.read()
            health = self.state.store.health()
            scheduler = self.state.scheduler
            last = health.last_outcome
            return {
                "version": __version__,
                "uptime_seconds": self.clock() - self.state.started_at,
                "target": health.target,
                "state": scheduler.state.value,
                "generation": snapshot.generation,
                "captured_at": snapshot.captured_at,
                "samples": len(snapshot),
                "last_success_at": health.last_success_at,
                "consecutive_failures": health.consecutive_failures,
                "error_totals": dict(health.error_totals),
                "fatal": health.fatal,
                "fatal_reason": health.fatal_reason,
                "disabled_groups": list(health.disabled_groups),
                "last_error": last.error_message if last and not last.success else None,
                "tick_count": scheduler.tick_count,
                "dropped_ticks": scheduler.dropped_ticks,
            }

    def run(
        self,
        host: str = "127.0.0.1",
        port: int = 9753,
        ssl_certfile: Optional[str] = None,
        ssl_keyfile: Optional[str] = None,
        graceful_shutdown_s: int = 10,
    ):
        """Run the API server until SIGINT/SIGTERM, then drain in-flight requests."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=host,
            port=port,
            log_level="info",
            ssl_certfile=ssl_certfile,
            ssl_keyfile=ssl_keyfile,
            timeout_graceful_shutdown=graceful_shutdown_s,
        )
