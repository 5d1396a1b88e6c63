"""Static metric descriptors and the statistics groups that feed them."""
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Set, Tuple
import re

from pg_stats_exporter.errors import SchemaError

METRIC_NAME_RE = re.compile(r'^[a-zA-Z_:][a-zA-Z0-9_:]*$')
LABEL_NAME_RE = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*$')

# Common unit conversions applied per descriptor
MILLISECONDS = 0.001


class MetricKind(str, Enum):
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


@dataclass(frozen=True)
class MetricDescriptor:
    """Static metadata for one metric family.

    Scalar descriptors read ``value_column``. Histogram descriptors read one
    row per bucket: ``bucket_column`` holds the upper bound, ``count_column``
    the cumulative count and ``sum_column`` the total of observed values.
    """
    name: str
    help: str
    kind: MetricKind
    label_names: Tuple[str, ...] = ()
    value_column: Optional[str] = None
    scale: float = 1.0
    bucket_column: Optional[str] = None
    count_column: Optional[str] = None
    sum_column: Optional[str] = None

    def __post_init__(self):
        if not METRIC_NAME_RE.match(self.name):
            raise SchemaError(f"invalid metric name '{self.name}'")
        for label in self.label_names:
            if not LABEL_NAME_RE.match(label) or label.startswith("__"):
                raise SchemaError(f"{self.name}: invalid label name '{label}'")
        if len(set(self.label_names)) != len(self.label_names):
            raise SchemaError(f"{self.name}: duplicate label names")

        if self.kind is MetricKind.HISTOGRAM:
            if not (self.bucket_column and self.count_column and self.sum_column):
                raise SchemaError(f"{self.name}: histograms need bucket, count and sum columns")
            if "le" in self.label_names:
                raise SchemaError(f"{self.name}: 'le' is reserved for histogram buckets")
        elif not self.value_column:
            raise SchemaError(f"{self.name}: missing value column")

    @property
    def is_histogram(self) -> bool:
        return self.kind is MetricKind.HISTOGRAM

    def columns(self) -> Set[str]:
        """Every source column this descriptor reads."""
        cols = set(self.label_names)
        for col in (self.value_column, self.bucket_column, self.count_column, self.sum_column):
            if col:
                cols.add(col)
        return cols


def counter(name: str, help: str, column: str, labels: Iterable[str] = (), scale: float = 1.0):
    return MetricDescriptor(name, help, MetricKind.COUNTER, tuple(labels), column, scale)


def gauge(name: str, help: str, column: str, labels: Iterable[str] = (), scale: float = 1.0):
    return MetricDescriptor(name, help, MetricKind.GAUGE, tuple(labels), column, scale)


def histogram(
    name: str,
    help: str,
    labels: Iterable[str] = (),
    bucket_column: str = "le",
    count_column: str = "bucket_count",
    sum_column: str = "sum",
    scale: float = 1.0,
):
    return MetricDescriptor(
        name, help, MetricKind.HISTOGRAM, tuple(labels),
        scale=scale,
        bucket_column=bucket_column,
        count_column=count_column,
        sum_column=sum_column,
    )


@dataclass(frozen=True)
class DescriptorGroup:
    """One fixed statistics query and the descriptors it feeds."""
    id: str
    query: str
    columns: Tuple[str, ...]
    descriptors: Tuple[MetricDescriptor, ...]
    description: str = ""

    def __post_init__(self):
        if not self.descriptors:
            raise SchemaError(f"group '{self.id}' declares no descriptors")

        declared = set(self.columns)
        for descriptor in self.descriptors:
            missing = descriptor.columns() - declared
            if missing:
                raise SchemaError(
                    f"{descriptor.name} reads undeclared columns {sorted(missing)}",
                    group=self.id,
                )

        histograms = [d for d in self.descriptors if d.is_histogram]
        if histograms and len(self.descriptors) > 1:
            raise SchemaError("a histogram group must hold exactly one descriptor", group=self.id)

    @property
    def is_histogram(self) -> bool:
        return self.descriptors[0].is_histogram


def validate_groups(groups: Iterable[DescriptorGroup]) -> Tuple[DescriptorGroup, ...]:
    """Check group ids and descriptor names are unique across the catalogue."""
    groups = tuple(groups)
    seen_groups: Set[str] = set()
    seen_names: Set[str] = set()

    for group in groups:
        if group.id in seen_groups:
            raise SchemaError(f"duplicate group id '{group.id}'")
        seen_groups.add(group.id)

        for descriptor in group.descriptors:
            if descriptor.name in seen_names:
                raise SchemaError(f"duplicate metric name '{descriptor.name}'", group=group.id)
            seen_names.add(descriptor.name)

    return groups
