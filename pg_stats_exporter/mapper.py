"""Conversion of statistics rows into metric samples."""
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple
import logging
import math

from pg_stats_exporter.descriptors import DescriptorGroup, MetricDescriptor
from pg_stats_exporter.errors import SchemaError
from pg_stats_exporter.series import Sample

logger = logging.getLogger(__name__)

Row = Mapping[str, Any]


def format_label_value(value: Any) -> str:
    """Render a column value as a label value, independent of locale."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def coerce_value(value: Any, descriptor: MetricDescriptor, column: str) -> Optional[float]:
    """Coerce a column value to float. NULL gives None."""
    if value is None:
        return None
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            pass
    raise SchemaError(
        f"{descriptor.name}: column '{column}' holds non-numeric value {value!r}"
    )


def _column(row: Row, column: str, group: DescriptorGroup) -> Any:
    try:
        return row[column]
    except KeyError:
        raise SchemaError(f"row is missing declared column '{column}'", group.id)


class MetricMapper:
    """Turns the rows of a statistics group into samples."""

    def map(self, rows: Iterable[Row], group: DescriptorGroup, timestamp: float) -> List[Sample]:
        """Map every row of ``group`` to samples taken at ``timestamp``.

        NULL values produce no sample. Raises SchemaError when rows don't
        match the declared descriptors.
        """
        if group.is_histogram:
            return self._map_histogram(rows, group, timestamp)

        samples: List[Sample] = []
        seen: Set[Tuple[str, Tuple[str, ...]]] = set()
        skipped = 0

        for row in rows:
            for descriptor in group.descriptors:
                label_values = self._label_values(row, descriptor, group)
                raw = _column(row, descriptor.value_column, group)
                value = coerce_value(raw, descriptor, descriptor.value_column)
                if value is None:
                    skipped += 1
                    continue

                key = (descriptor.name, label_values)
                if key in seen:
                    raise SchemaError(
                        f"{descriptor.name}: duplicate series for labels {label_values}", group.id
                    )
                seen.add(key)

                samples.append(Sample(descriptor, label_values, value * descriptor.scale, timestamp))

        if skipped:
            logger.debug(f"[{group.id}] skipped {skipped} NULL values")
        return samples

    def _label_values(self, row: Row, descriptor: MetricDescriptor, group: DescriptorGroup):
        return tuple(format_label_value(_column(row, name, group)) for name in descriptor.label_names)

    def _map_histogram(self, rows: Iterable[Row], group: DescriptorGroup, timestamp: float) -> List[Sample]:
        descriptor = group.descriptors[0]
        series: Dict[Tuple[str, ...], List[Tuple[float, Optional[float], Optional[float]]]] = {}

        for row in rows:
            label_values = self._label_values(row, descriptor, group)
            le = coerce_value(_column(row, descriptor.bucket_column, group), descriptor, descriptor.bucket_column)
            if le is None:
                raise SchemaError(f"{descriptor.name}: NULL bucket bound", group.id)
            count = coerce_value(_column(row, descriptor.count_column, group), descriptor, descriptor.count_column)
            total = coerce_value(_column(row, descriptor.sum_column, group), descriptor, descriptor.sum_column)
            series.setdefault(label_values, []).append((le, count, total))

        samples: List[Sample] = []
        for label_values, buckets in series.items():
            if any(count is None for _, count, _ in buckets):
                logger.debug(f"[{group.id}] {descriptor.name}{label_values}: NULL bucket count, skipped")
                continue
            buckets.sort(key=lambda b: b[0])
            self._validate_buckets(descriptor, group, label_values, buckets)

            for le, count, _ in buckets:
                samples.append(Sample(
                    descriptor, label_values, count, timestamp,
                    suffix="_bucket", le=le * descriptor.scale,
                ))

            total = buckets[-1][2]
            if total is not None:
                samples.append(Sample(descriptor, label_values, total * descriptor.scale, timestamp, suffix="_sum"))
            samples.append(Sample(descriptor, label_values, buckets[-1][1], timestamp, suffix="_count"))

        return samples

    @staticmethod
    def _validate_buckets(descriptor, group, label_values, buckets):
        """Bounds must strictly increase, end at +Inf, with non-decreasing counts."""
        where = f"{descriptor.name}{list(label_values) if label_values else ''}"
        previous_le = None
        previous_count = None

        for le, count, _ in buckets:
            if math.isnan(le):
                raise SchemaError(f"{where}: NaN bucket bound", group.id)
            if previous_le is not None and le == previous_le:
                raise SchemaError(f"{where}: duplicate bucket bound {le}", group.id)
            if count < 0 or math.isnan(count):
                raise SchemaError(f"{where}: invalid bucket count {count} for le={le}", group.id)
            if previous_count is not None and count < previous_count:
                raise SchemaError(
                    f"{where}: bucket counts are not cumulative "
                    f"({previous_count} at le={previous_le}, {count} at le={le})",
                    group.id,
                )
            previous_le, previous_count = le, count

        if not math.isinf(buckets[-1][0]) or buckets[-1][0] < 0:
            raise SchemaError(f"{where}: missing +Inf bucket", group.id)
