"""Holder of the latest published snapshot and the target's scrape health."""
from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Tuple
import logging
import threading

from pg_stats_exporter.series import ScrapeOutcome, Snapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TargetHealth:
    """Outcome metadata kept alongside the snapshot."""
    target: str
    last_outcome: Optional[ScrapeOutcome] = None
    last_success_at: Optional[float] = None
    consecutive_failures: int = 0
    error_totals: Dict[str, int] = field(default_factory=dict)
    fatal: bool = False
    fatal_reason: Optional[str] = None
    disabled_groups: Tuple[str, ...] = ()

    def is_fresh(self, now: float, max_age_s: float) -> bool:
        """True when a non-fatal target succeeded within ``max_age_s``."""
        if self.fatal or self.last_success_at is None:
            return False
        return now - self.last_success_at < max_age_s


class SnapshotStore:
    """Single-producer, many-reader store of the current snapshot.

    Both the snapshot and the health record are immutable and replaced by a
    single reference assignment, so ``read()`` and ``health()`` never lock
    and never see a partial update. The lock only serializes writers.
    """

    def __init__(self, target: str):
        self._lock = threading.Lock()
        self._snapshot = Snapshot.empty()
        self._health = TargetHealth(target=target)
        self._last_generation = 0

    def read(self) -> Snapshot:
        return self._snapshot

    def health(self) -> TargetHealth:
        return self._health

    def next_generation(self) -> int:
        """Reserve the generation number for the next snapshot."""
        with self._lock:
            self._last_generation += 1
            return self._last_generation

    def publish(self, snapshot: Snapshot):
        """Make ``snapshot`` the visible one."""
        with self._lock:
            current = self._snapshot
            if snapshot.generation <= current.generation:
                raise ValueError(
                    f"generation {snapshot.generation} does not follow {current.generation}"
                )
            self._last_generation = max(self._last_generation, snapshot.generation)
            self._snapshot = snapshot
        logger.debug(f"Published snapshot generation {snapshot.generation} ({len(snapshot)} samples)")

    def record_success(self, outcome: ScrapeOutcome):
        with self._lock:
            self._health = replace(
                self._health,
                last_outcome=outcome,
                last_success_at=outcome.finished_at,
                consecutive_failures=0,
            )

    def record_failure(self, outcome: ScrapeOutcome) -> TargetHealth:
        """Count a failed scrape and return the updated health record."""
        with self._lock:
            totals = dict(self._health.error_totals)
            kind = outcome.error_kind or "internal"
            totals[kind] = totals.get(kind, 0) + 1
            self._health = replace(
                self._health,
                last_outcome=outcome,
                consecutive_failures=self._health.consecutive_failures + 1,
                error_totals=totals,
            )
            return self._health

    def disable_group(self, group_id: str, reason: str):
        with self._lock:
            if group_id in self._health.disabled_groups:
                return
            totals = dict(self._health.error_totals)
            totals["schema"] = totals.get("schema", 0) + 1
            self._health = replace(
                self._health,
                disabled_groups=self._health.disabled_groups + (group_id,),
                error_totals=totals,
            )
        logger.error(f"Disabled statistics group '{group_id}': {reason}")

    def mark_fatal(self, reason: str):
        with self._lock:
            self._health = replace(self._health, fatal=True, fatal_reason=reason)
