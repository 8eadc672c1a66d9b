"""
Reading classification against reference ranges.

Both functions are pure and total: there is no input for which they raise.
A missing or NaN value classifies as normal with a stable trend, so a sensor
gap never shows up as an abnormal reading.
"""

from collections import defaultdict
from collections.abc import Iterable, Mapping

from vitalsync.domain.models import (
    Classification,
    Level,
    ReferenceRange,
    Trend,
    VitalMetric,
    VitalReading,
    VitalSnapshot,
)


def classify(
    reading: VitalReading,
    reference_range: ReferenceRange | None,
    previous: VitalReading | None = None,
) -> Classification:
    """Classify a reading and its trend relative to the previous reading of the same metric."""
    value = reading.value if reading.has_value else None
    if value is None:
        return Classification(level=Level.NORMAL, trend=Trend.STABLE)

    level = Level.NORMAL
    if reference_range is not None:
        if value > reference_range.high:
            level = Level.HIGH
        elif value < reference_range.low:
            level = Level.LOW

    trend = Trend.STABLE
    before = previous.value if previous is not None and previous.has_value else None
    if before is not None:
        if value > before:
            trend = Trend.UP
        elif value < before:
            trend = Trend.DOWN

    return Classification(level=level, trend=trend)


def classify_series(
    readings: Iterable[VitalReading],
    reference_ranges: Mapping[VitalMetric, ReferenceRange],
) -> dict[VitalMetric, VitalSnapshot]:
    """
    Classify the latest reading of every metric in a patient's series.

    The trend compares the two most recent readings by `recorded_at`, not by
    arrival order. Readings are expected to belong to a single patient.
    """
    by_metric: defaultdict[VitalMetric, list[VitalReading]] = defaultdict(list)
    for reading in readings:
        by_metric[reading.metric].append(reading)

    snapshots: dict[VitalMetric, VitalSnapshot] = {}
    for metric, series in by_metric.items():
        series.sort(key=lambda r: r.recorded_at)
        latest = series[-1]
        previous = series[-2] if len(series) > 1 else None
        reference = reference_ranges.get(metric)
        snapshots[metric] = VitalSnapshot(
            metric=metric,
            reading=latest,
            classification=classify(latest, reference, previous),
            reference_range=reference,
        )
    return snapshots
