"""Prometheus text exposition of snapshots plus the exporter's own metrics."""
from typing import List, Optional
import logging
import math
import time

from prometheus_client import (
    Counter, Gauge, Histogram,
    CollectorRegistry, ProcessCollector, generate_latest,
)
from prometheus_client.core import GaugeMetricFamily
from prometheus_client.registry import Collector

from pg_stats_exporter import __version__
from pg_stats_exporter.errors import EncodingError
from pg_stats_exporter.series import Sample, Snapshot

logger = logging.getLogger(__name__)

CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
SELF_PREFIX = "pg_stats_exporter_"


def escape_label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def format_value(value: float) -> str:
    """Format a sample value; integral values drop the decimal point."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value.is_integer() and abs(value) < 2 ** 53:
        return str(int(value))
    return repr(value)


def _format_sample(sample: Sample, include_timestamps: bool) -> str:
    labels = sample.labels
    if sample.suffix == "_bucket":
        labels = labels + [("le", format_value(sample.le))]

    line = sample.name
    if labels:
        line += "{" + ",".join(f'{k}="{escape_label_value(v)}"' for k, v in labels) + "}"
    line += " " + format_value(float(sample.value))
    if include_timestamps:
        line += f" {int(round(sample.timestamp * 1000))}"
    return line


def encode(snapshot: Snapshot, include_timestamps: bool = False) -> bytes:
    """Serialize a snapshot in the text exposition format.

    Families come out in name order, each with its HELP and TYPE lines, so
    the same snapshot always encodes to the same bytes.
    """
    lines: List[str] = []
    try:
        for descriptor, samples in snapshot.families():
            lines.append(f"# HELP {descriptor.name} {escape_help(descriptor.help)}")
            lines.append(f"# TYPE {descriptor.name} {descriptor.kind.value}")
            for sample in samples:
                lines.append(_format_sample(sample, include_timestamps))
    except (AttributeError, TypeError, ValueError) as e:
        raise EncodingError(f"failed to encode snapshot generation {snapshot.generation}: {e}") from e

    if not lines:
        return b""
    return ("\n".join(lines) + "\n").encode("utf-8")


def render(snapshot: Snapshot, registry: Optional[CollectorRegistry] = None,
           include_timestamps: bool = False) -> bytes:
    """Encode ``snapshot`` and append the metrics held in ``registry``."""
    body = encode(snapshot, include_timestamps)
    if registry is not None:
        body += generate_latest(registry)
    return body


class ProcessInfoCollector(Collector):
    """Uptime and build information, computed at collection time."""

    def __init__(self, prefix: str = SELF_PREFIX, start_time: Optional[float] = None,
                 version: str = __version__):
        self.prefix = prefix
        self.start_time = start_time if start_time is not None else time.time()
        self.version = version

    def collect(self):
        uptime = GaugeMetricFamily(
            f"{self.prefix}uptime_seconds",
            "Seconds since the exporter started",
        )
        uptime.add_metric([], time.time() - self.start_time)
        yield uptime

        build = GaugeMetricFamily(
            f"{self.prefix}build_info",
            "Exporter build information",
            labels=["version"],
        )
        build.add_metric([self.version], 1)
        yield build


class SelfMetrics:
    """Self-monitoring metrics for the scrape loop."""

    def __init__(self, registry=None, prefix=SELF_PREFIX):
        if registry is None:
            registry = CollectorRegistry()
        self.registry = registry
        self.prefix = prefix

        self.last_scrape_success = Gauge(
            f"{prefix}last_scrape_success",
            "Whether the last scrape of the target succeeded (1) or failed (0)",
            registry=registry
        )

        self.last_scrape_duration_seconds = Gauge(
            f"{prefix}last_scrape_duration_seconds",
            "Duration of the last scrape in seconds",
            registry=registry
        )

        self.scrape_error_total = Counter(
            f"{prefix}scrape_error_total",
            "Total number of failed scrapes and disabled groups by error kind",
            ["kind"],
            registry=registry
        )

        self.scrape_dropped_ticks_total = Counter(
            f"{prefix}scrape_dropped_ticks_total",
            "Ticks skipped because a scrape was in flight or backing off",
            registry=registry
        )

        self.scrape_duration_seconds = Histogram(
            f"{prefix}scrape_duration_seconds",
            "Duration of each scrape in seconds",
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=registry
        )

        self.snapshot_generation = Gauge(
            f"{prefix}snapshot_generation",
            "Generation number of the snapshot being served",
            registry=registry
        )

        self.snapshot_samples = Gauge(
            f"{prefix}snapshot_samples",
            "Number of samples in the snapshot being served",
            registry=registry
        )

        self.target_fatal = Gauge(
            f"{prefix}target_fatal",
            "Whether scraping of the target stopped on a fatal error",
            registry=registry
        )

        # Unset gauges would read 0, which for last_scrape_success means failure
        self.last_scrape_success.set(0)

    def record_success(self, duration: float, generation: int, sample_count: int):
        self.last_scrape_success.set(1)
        self.last_scrape_duration_seconds.set(duration)
        self.scrape_duration_seconds.observe(duration)
        self.snapshot_generation.set(generation)
        self.snapshot_samples.set(sample_count)

    def record_failure(self, kind: str, duration: float):
        self.last_scrape_success.set(0)
        self.last_scrape_duration_seconds.set(duration)
        self.scrape_duration_seconds.observe(duration)
        self.scrape_error_total.labels(kind=kind).inc()

    def record_group_error(self, kind: str):
        self.scrape_error_total.labels(kind=kind).inc()

    def record_dropped_tick(self):
        self.scrape_dropped_ticks_total.inc()

    def set_fatal(self):
        self.last_scrape_success.set(0)
        self.target_fatal.set(1)

    def error_count(self, kind: str) -> float:
        value = self.registry.get_sample_value(f"{self.prefix}scrape_error_total", {"kind": kind})
        return value or 0.0


def create_self_registry(prefix: str = SELF_PREFIX, start_time: Optional[float] = None,
                         with_process_collector: bool = True):
    """Registry holding the exporter's own metrics. No default collectors."""
    registry = CollectorRegistry()
    self_metrics = SelfMetrics(registry=registry, prefix=prefix)
    registry.register(ProcessInfoCollector(prefix=prefix, start_time=start_time))
    if with_process_collector:
        ProcessCollector(registry=registry)
    return registry, self_metrics
