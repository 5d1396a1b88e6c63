"""Main entry point for the PostgreSQL statistics exporter."""
import argparse
import json
import logging
import sys
import time

from pg_stats_exporter import __version__
from pg_stats_exporter.api import AppState, ExporterAPI
from pg_stats_exporter.config import ExporterConfig, load_config
from pg_stats_exporter.errors import ExporterError
from pg_stats_exporter.exposition import create_self_registry
from pg_stats_exporter.queries import select_groups
from pg_stats_exporter.scheduler import ScrapeScheduler
from pg_stats_exporter.source import StatSource
from pg_stats_exporter.store import SnapshotStore

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


class JsonFormatter(logging.Formatter):
    """One JSON object per log record."""

    def format(self, record):
        entry = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def setup_logging(log_level: str, log_format: str):
    """Setup logging configuration."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    handler = logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    logging.basicConfig(level=level, handlers=[handler], force=True)

    # Reduce noise from some libraries
    logging.getLogger("psycopg").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def build_state(config: ExporterConfig) -> AppState:
    """Wire source, store, scheduler and self metrics together."""
    started_at = time.time()
    target = config.target

    source = StatSource(target, query_timeout_s=config.scrape.query_timeout_s)
    store = SnapshotStore(target.identifier)
    registry, self_metrics = create_self_registry(start_time=started_at)

    scheduler = ScrapeScheduler(
        source,
        store,
        select_groups(config.scrape.groups),
        self_metrics=self_metrics,
        interval_s=config.scrape.interval_s,
        backoff_base_s=config.scrape.effective_backoff_base_s,
        backoff_max_s=config.scrape.backoff_max_s,
    )

    return AppState(
        store=store,
        scheduler=scheduler,
        registry=registry,
        self_metrics=self_metrics,
        scrape_interval_s=config.scrape.interval_s,
        include_timestamps=config.scrape.include_timestamps,
        started_at=started_at,
    )


def cli() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pg-stats-exporter",
        description="PostgreSQL metrics exporter for Prometheus"
    )
    parser.add_argument("--config", "-c", help="Path to configuration YAML file")
    parser.add_argument("--postgres", help="PostgreSQL address to collect metrics (host:port)")
    parser.add_argument("--user", help="PostgreSQL user used to access the `postgres` address")
    parser.add_argument("--dbname", help="PostgreSQL database name used to access the `postgres` address")
    parser.add_argument("--listen", help="Address the HTTP server listens on (host:port)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv=None):
    """Main function."""
    args = cli().parse_args(argv)

    # Load configuration
    try:
        config = load_config(
            args.config,
            postgres=args.postgres,
            user=args.user,
            dbname=args.dbname,
            listen=args.listen,
        )
    except (ExporterError, OSError) as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config.global_.log_level, config.global_.log_format)
    logger = logging.getLogger(__name__)

    logger.info("=" * 60)
    logger.info(f"PostgreSQL Stats Exporter {__version__}")
    logger.info("=" * 60)
    if args.config:
        logger.info(f"Configuration loaded from: {args.config}")
    logger.info(f"Target: {config.target.identifier} (user {config.target.user})")
    logger.info(f"Scrape interval: {config.scrape.interval_s}s, query timeout: {config.scrape.query_timeout_s}s")

    state = build_state(config)
    logger.info(f"Statistics groups: {[g.id for g in state.scheduler.groups]}")

    api = ExporterAPI(state)

    # Start the scrape loop in its own thread
    state.scheduler.start()

    http = config.http
    scheme = "https" if http.tls.enabled else "http"
    logger.info(f"Serving {scheme}://{http.bind_address}:{http.port}/metrics")
    try:
        api.run(
            host=http.bind_address,
            port=http.port,
            ssl_certfile=http.tls.cert_file,
            ssl_keyfile=http.tls.key_file,
            graceful_shutdown_s=http.graceful_shutdown_s,
        )
    except Exception as e:
        logger.error(f"HTTP server error: {e}", exc_info=True)
        state.scheduler.stop()
        sys.exit(1)

    state.scheduler.stop()
    logger.info("Exporter stopped")


if __name__ == "__main__":
    main()
