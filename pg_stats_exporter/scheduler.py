"""Scrape scheduler: the periodic scrape loop for one target."""
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple
import logging
import threading
import time

from pg_stats_exporter.descriptors import DescriptorGroup
from pg_stats_exporter.errors import SchemaError, ScrapeError
from pg_stats_exporter.exposition import SelfMetrics
from pg_stats_exporter.mapper import MetricMapper
from pg_stats_exporter.series import Sample, ScrapeOutcome, Snapshot
from pg_stats_exporter.source import StatSource
from pg_stats_exporter.store import SnapshotStore

logger = logging.getLogger(__name__)


class ScrapeState(str, Enum):
    IDLE = "idle"
    SCRAPING = "scraping"
    PUBLISHING = "publishing"
    BACKOFF = "backoff"
    FATAL = "fatal"


def compute_backoff(failures: int, base: float, maximum: float) -> float:
    """Delay before the next attempt after ``failures`` consecutive failures.

    ``base * 2 ** failures``, capped at ``maximum``.
    """
    if failures <= 0:
        return min(base, maximum)
    # Past 2**64 the cap has long been reached
    return min(base * (2.0 ** min(failures, 64)), maximum)


class ScrapeScheduler:
    """Drives periodic scrapes of one target.

    ``tick()`` is called at a fixed interval by the loop thread. A tick that
    arrives while a scrape is in flight, while backing off or after a fatal
    error is dropped, so scrapes never overlap or pile up.
    """

    def __init__(
        self,
        source: StatSource,
        store: SnapshotStore,
        groups: Sequence[DescriptorGroup],
        mapper: Optional[MetricMapper] = None,
        self_metrics: Optional[SelfMetrics] = None,
        interval_s: float = 15.0,
        backoff_base_s: Optional[float] = None,
        backoff_max_s: float = 300.0,
        stop_timeout_s: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.source = source
        self.store = store
        self.groups: Tuple[DescriptorGroup, ...] = tuple(groups)
        self.mapper = mapper or MetricMapper()
        self.self_metrics = self_metrics
        self.interval_s = interval_s
        self.backoff_base_s = backoff_base_s if backoff_base_s is not None else interval_s
        self.backoff_max_s = backoff_max_s
        self.stop_timeout_s = stop_timeout_s if stop_timeout_s is not None else source.query_timeout_s * 2
        self.clock = clock

        self.tick_count = 0
        self.dropped_ticks = 0
        self.scrape_count = 0

        self._state = ScrapeState.IDLE
        self._state_lock = threading.Lock()
        self._backoff_until = 0.0
        self._disabled_groups: set = set()
        self._stop_event = threading.Event()
        self._loop_thread: Optional[threading.Thread] = None
        self._worker: Optional[threading.Thread] = None

    @property
    def state(self) -> ScrapeState:
        return self._state

    @property
    def target(self) -> str:
        return self.source.target.identifier

    @property
    def backoff_until(self) -> float:
        return self._backoff_until

    def active_groups(self) -> List[DescriptorGroup]:
        return [g for g in self.groups if g.id not in self._disabled_groups]

    def _begin(self) -> bool:
        """Move to SCRAPING if a scrape may start now."""
        with self._state_lock:
            state = self._state
            if state is ScrapeState.FATAL:
                return False
            if state is ScrapeState.BACKOFF and self.clock() >= self._backoff_until:
                state = ScrapeState.IDLE
            if state is not ScrapeState.IDLE:
                self.dropped_ticks += 1
                if self.self_metrics:
                    self.self_metrics.record_dropped_tick()
                logger.debug(f"Tick dropped for {self.target}: scheduler is {state.value}")
                return False
            self._state = ScrapeState.SCRAPING
            return True

    def _set_state(self, state: ScrapeState):
        with self._state_lock:
            if self._state is not ScrapeState.FATAL:
                self._state = state

    def tick(self) -> bool:
        """Start a scrape in the background unless one is in flight.

        Returns True when a scrape was started.
        """
        self.tick_count += 1
        if not self._begin():
            return False

        worker = threading.Thread(
            target=self._scrape,
            name=f"scrape-{self.target}",
            daemon=True,
        )
        self._worker = worker
        worker.start()
        return True

    def scrape_once(self) -> Optional[ScrapeOutcome]:
        """Run one scrape in the calling thread. None if the tick was dropped."""
        if not self._begin():
            return None
        return self._scrape()

    def _scrape(self) -> ScrapeOutcome:
        started = time.monotonic()
        timestamp = self.clock()
        self.scrape_count += 1
        samples: List[Sample] = []
        skipped: List[str] = []

        try:
            self.source.connect()
            for group in self.active_groups():
                try:
                    rows = self.source.query(group)
                    samples.extend(self.mapper.map(rows, group, timestamp))
                except SchemaError as e:
                    self._disable_group(group, e)
                    skipped.append(group.id)

            if not self.active_groups():
                raise SchemaError("every statistics group is disabled")

            self._set_state(ScrapeState.PUBLISHING)
            generation = self.store.next_generation()
            snapshot = Snapshot.build(samples, generation, timestamp)
            self.store.publish(snapshot)
        except ScrapeError as e:
            return self._handle_failure(e, started, timestamp, skipped)
        except Exception as e:
            logger.error(f"Unexpected error scraping {self.target}: {e}", exc_info=True)
            return self._handle_failure(
                ScrapeError(str(e) or e.__class__.__name__), started, timestamp, skipped
            )

        duration = time.monotonic() - started
        outcome = ScrapeOutcome(
            target=self.target,
            success=True,
            duration_s=duration,
            finished_at=self.clock(),
            sample_count=len(snapshot),
            skipped_groups=tuple(skipped),
        )
        self.store.record_success(outcome)
        if self.self_metrics:
            self.self_metrics.record_success(duration, snapshot.generation, len(snapshot))
        self._set_state(ScrapeState.IDLE)

        logger.debug(
            f"Scrape of {self.target} published generation {snapshot.generation}: "
            f"{len(snapshot)} samples in {duration:.3f}s"
        )
        return outcome

    def _disable_group(self, group: DescriptorGroup, error: SchemaError):
        self._disabled_groups.add(group.id)
        self.store.disable_group(group.id, str(error))
        if self.self_metrics:
            self.self_metrics.record_group_error(error.kind)

    def _handle_failure(
        self, error: ScrapeError, started: float, timestamp: float, skipped: List[str]
    ) -> ScrapeOutcome:
        duration = time.monotonic() - started
        outcome = ScrapeOutcome(
            target=self.target,
            success=False,
            duration_s=duration,
            finished_at=self.clock(),
            error_kind=error.kind,
            error_message=str(error),
            skipped_groups=tuple(skipped),
        )
        health = self.store.record_failure(outcome)
        if self.self_metrics:
            self.self_metrics.record_failure(error.kind, duration)

        if error.fatal_for_target or not error.retryable:
            self._mark_fatal(error)
            return outcome

        delay = compute_backoff(health.consecutive_failures, self.backoff_base_s, self.backoff_max_s)
        with self._state_lock:
            # Counted from the tick that started the failed scrape
            self._backoff_until = timestamp + delay
            if self._state is not ScrapeState.FATAL:
                self._state = ScrapeState.BACKOFF

        logger.warning(
            f"Scrape of {self.target} failed ({error.kind}): {error}. "
            f"{health.consecutive_failures} consecutive failure(s), "
            f"next attempt in {max(0.0, self._backoff_until - self.clock()):.1f}s"
        )
        return outcome

    def _mark_fatal(self, error: ScrapeError):
        with self._state_lock:
            self._state = ScrapeState.FATAL
        self.store.mark_fatal(str(error))
        if self.self_metrics:
            self.self_metrics.set_fatal()
        self.source.close()
        logger.critical(
            f"Scraping of {self.target} halted on fatal {error.kind} error: {error}. "
            f"The last snapshot keeps being served."
        )

    def _next_wait(self) -> float:
        """Seconds until the next tick. Shorter than the interval when a backoff
        ends before the next regular tick would fire."""
        if self._state is ScrapeState.BACKOFF:
            remaining = self._backoff_until - self.clock()
            return max(0.0, min(self.interval_s, remaining))
        return self.interval_s

    def run(self):
        """Tick every interval until stopped."""
        logger.info(f"Starting scrape loop for {self.target} every {self.interval_s}s")
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Error in tick: {e}", exc_info=True)
            self._stop_event.wait(self._next_wait())
        logger.info(f"Scrape loop for {self.target} stopped")

    def start(self):
        self._stop_event.clear()
        self._loop_thread = threading.Thread(
            target=self.run,
            name=f"scheduler-{self.target}",
            daemon=True,
        )
        self._loop_thread.start()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait for the in-flight scrape, if any. True when none is left running."""
        worker = self._worker
        if worker is not None:
            worker.join(timeout)
            return not worker.is_alive()
        return True

    def stop(self, timeout: Optional[float] = None):
        """Stop ticking, let an in-flight scrape finish, close the source."""
        timeout = timeout if timeout is not None else self.stop_timeout_s
        logger.info(f"Stopping scrape loop for {self.target}")
        self._stop_event.set()
        if self._loop_thread is not None:
            self._loop_thread.join(timeout)
        if not self.wait_idle(timeout):
            logger.warning(f"In-flight scrape of {self.target} still running after {timeout}s")
        self.source.close()
