"""Data structures for samples, snapshots and scrape outcomes."""
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from pg_stats_exporter.descriptors import MetricDescriptor

# Order of the series making up one histogram family
_SUFFIX_RANK = {"": 0, "_bucket": 1, "_sum": 2, "_count": 3}


@dataclass(frozen=True)
class Sample:
    """A single metric value with its label values."""
    descriptor: MetricDescriptor
    label_values: Tuple[str, ...]
    value: float
    timestamp: float
    suffix: str = ""
    le: Optional[float] = None

    def __post_init__(self):
        if len(self.label_values) != len(self.descriptor.label_names):
            raise ValueError(
                f"{self.descriptor.name}: expected {len(self.descriptor.label_names)} "
                f"label values, got {len(self.label_values)}"
            )
        if self.suffix not in _SUFFIX_RANK:
            raise ValueError(f"unknown sample suffix '{self.suffix}'")

    @property
    def name(self) -> str:
        return self.descriptor.name + self.suffix

    @property
    def labels(self) -> List[Tuple[str, str]]:
        """Label pairs in descriptor order."""
        return list(zip(self.descriptor.label_names, self.label_values))

    def sort_key(self):
        le = self.le if self.le is not None else float("-inf")
        return (self.descriptor.name, self.label_values, _SUFFIX_RANK[self.suffix], le)


@dataclass(frozen=True)
class Snapshot:
    """An immutable point-in-time set of samples.

    Generation 0 is the "no data yet" sentinel served before the first
    successful scrape.
    """
    samples: Tuple[Sample, ...] = ()
    generation: int = 0
    captured_at: Optional[float] = None

    @classmethod
    def build(cls, samples: Iterable[Sample], generation: int, captured_at: float) -> "Snapshot":
        """Create a snapshot with samples ordered by (name, labels)."""
        if generation <= 0:
            raise ValueError("published snapshots must have a positive generation")
        ordered = tuple(sorted(samples, key=Sample.sort_key))
        return cls(samples=ordered, generation=generation, captured_at=captured_at)

    @classmethod
    def empty(cls) -> "Snapshot":
        return cls()

    @property
    def is_empty(self) -> bool:
        return self.generation == 0

    def __len__(self):
        return len(self.samples)

    def families(self) -> List[Tuple[MetricDescriptor, List[Sample]]]:
        """Group samples by descriptor, in sorted family-name order."""
        result: List[Tuple[MetricDescriptor, List[Sample]]] = []
        for sample in self.samples:
            if result and result[-1][0].name == sample.descriptor.name:
                result[-1][1].append(sample)
            else:
                result.append((sample.descriptor, [sample]))
        return result


@dataclass(frozen=True)
class ScrapeOutcome:
    """Result of one scrape attempt against the target."""
    target: str
    success: bool
    duration_s: float
    finished_at: float
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    sample_count: int = 0
    skipped_groups: Tuple[str, ...] = field(default_factory=tuple)
