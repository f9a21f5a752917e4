"""
Anomaly detection over polled metrics.

Three kinds of findings:
- threshold: a metric crossed the profile's warning or critical level
- statistical: response time far outside the recent distribution
- trend: response time or CPU steadily rising over the last ticks
"""

from __future__ import annotations

import logging
import statistics
from dataclasses import dataclass
from typing import Optional, Sequence

from ._types import (
    AnomalyEvent,
    DeviceProfile,
    InterfaceRates,
    MetricsSnapshot,
    PerformanceEntry,
    Severity,
    ThresholdPair,
)

logger = logging.getLogger(__name__)

TREND_POINTS = 10
RESPONSE_SLOPE_LIMIT = 10.0  # ms per tick
CPU_SLOPE_LIMIT = 5.0        # percentage points per tick


@dataclass
class TrendAnalysis:
    """Least-squares slopes over the most recent history entries."""
    response_time_slope: float = 0.0
    cpu_slope: float = 0.0
    points: int = 0

    @property
    def degrading(self) -> bool:
        return self.response_time_slope > RESPONSE_SLOPE_LIMIT or self.cpu_slope > CPU_SLOPE_LIMIT


def _slope(values: Sequence[float]) -> float:
    n = len(values)
    if n < 2:
        return 0.0
    mean_x = (n - 1) / 2
    mean_y = sum(values) / n
    numerator = sum((x - mean_x) * (y - mean_y) for x, y in enumerate(values))
    denominator = sum((x - mean_x) ** 2 for x in range(n))
    return numerator / denominator if denominator else 0.0


def analyze_trend(history: Sequence[PerformanceEntry], points: int = TREND_POINTS) -> TrendAnalysis:
    """Slope of response time and CPU over the last `points` entries."""
    recent = list(history)[-points:]
    if len(recent) < 2:
        return TrendAnalysis(points=len(recent))

    cpu_values = [e.cpu_utilization for e in recent if e.cpu_utilization is not None]
    return TrendAnalysis(
        response_time_slope=_slope([e.response_time_ms for e in recent]),
        cpu_slope=_slope(cpu_values),
        points=len(recent),
    )


def _check_threshold(
    metric: str,
    value: Optional[float],
    pair: ThresholdPair,
    unit: str,
) -> Optional[AnomalyEvent]:
    """At most one event per metric, at the highest level strictly exceeded."""
    if value is None:
        return None
    if value > pair.critical:
        severity, threshold = Severity.CRITICAL, pair.critical
    elif value > pair.warning:
        severity, threshold = Severity.WARNING, pair.warning
    else:
        return None

    return AnomalyEvent(
        metric=metric,
        value=round(value, 2),
        threshold=threshold,
        severity=severity,
        message=f"{metric} {value:.1f}{unit} exceeds {severity.value} threshold {threshold}{unit}",
    )


class AnomalyDetector:
    """Evaluates one polling result against a profile and recent history."""

    def __init__(self, window: int = 20, deviation: float = 2.0):
        self.window = window
        self.deviation = deviation

    def evaluate(
        self,
        profile: DeviceProfile,
        snapshot: MetricsSnapshot,
        interfaces: Sequence[InterfaceRates],
        history: Sequence[PerformanceEntry],
    ) -> list[AnomalyEvent]:
        """
        Return anomalies for the latest tick.

        `history` is expected to end with the entry for this tick.
        """
        thresholds = profile.thresholds
        checks = [
            _check_threshold("response_time", snapshot.response_time_ms, thresholds.response_time_ms, "ms"),
            _check_threshold(
                "cpu_utilization",
                snapshot.cpu.utilization if snapshot.cpu else None,
                thresholds.cpu_utilization,
                "%",
            ),
            _check_threshold(
                "memory_utilization",
                snapshot.memory.utilization if snapshot.memory else None,
                thresholds.memory_utilization,
                "%",
            ),
        ]

        if interfaces:
            checks.append(_check_threshold(
                "interface_utilization",
                max(i.utilization for i in interfaces),
                thresholds.interface_utilization,
                "%",
            ))
            checks.append(_check_threshold(
                "error_rate",
                max(i.error_rate for i in interfaces),
                thresholds.error_rate,
                "/s",
            ))

        anomalies = [a for a in checks if a is not None]

        outlier = self._check_statistical(history)
        if outlier:
            anomalies.append(outlier)

        trend = analyze_trend(history)
        if trend.points >= TREND_POINTS and trend.degrading:
            anomalies.append(AnomalyEvent(
                metric="performance_trend",
                value=round(max(trend.response_time_slope, trend.cpu_slope), 2),
                threshold=RESPONSE_SLOPE_LIMIT
                if trend.response_time_slope > RESPONSE_SLOPE_LIMIT else CPU_SLOPE_LIMIT,
                severity=Severity.WARNING,
                message=(
                    f"Performance degrading: response time slope "
                    f"{trend.response_time_slope:.1f}ms/tick, CPU slope {trend.cpu_slope:.1f}%/tick"
                ),
                kind="trend",
            ))

        return anomalies

    def _check_statistical(self, history: Sequence[PerformanceEntry]) -> Optional[AnomalyEvent]:
        """Latest response time against the mean of the preceding window."""
        if len(history) < self.window + 1:
            return None

        entries = list(history)
        latest = entries[-1].response_time_ms
        baseline = [e.response_time_ms for e in entries[-self.window - 1:-1]]

        mean = statistics.fmean(baseline)
        stdev = statistics.pstdev(baseline)
        if stdev == 0:
            return None

        distance = abs(latest - mean) / stdev
        if distance <= self.deviation:
            return None

        return AnomalyEvent(
            metric="response_time",
            value=round(latest, 2),
            threshold=round(mean + self.deviation * stdev, 2),
            severity=Severity.WARNING,
            message=(
                f"Response time {latest:.1f}ms is {distance:.1f} standard deviations "
                f"from the recent mean {mean:.1f}ms"
            ),
            kind="statistical",
        )
