"""Timestamp drift detection and sampling diagnostics."""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, List, Sequence

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_DRIFT_THRESHOLD = 10.0


@dataclass
class DriftStatistics:
    """Details of a single interval whose spacing deviated from the expected one."""

    sample_index: int
    current_timestamp: float
    previous_timestamp: float
    expected_ms: float
    delta_ms: float
    absolute_drift: float
    relative_drift: float

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DriftMetrics:
    samples_processed: int = 0
    min_delta: float = math.inf
    max_delta: float = -math.inf
    average_delta: float = 0.0
    std_dev_delta: float = 0.0
    drift_events_count: int = 0
    max_drift_observed: float = 0.0
    monotonicity_violations: int = 0
    _sum_delta: float = field(default=0.0, repr=False)
    _sum_sq_delta: float = field(default=0.0, repr=False)
    _intervals: int = field(default=0, repr=False)

    def record_interval(self, delta: float) -> None:
        self._intervals += 1
        self._sum_delta += delta
        self._sum_sq_delta += delta * delta
        self.min_delta = min(self.min_delta, delta)
        self.max_delta = max(self.max_delta, delta)
        self.average_delta = self._sum_delta / self._intervals
        variance = self._sum_sq_delta / self._intervals - self.average_delta**2
        self.std_dev_delta = math.sqrt(max(variance, 0.0))

    def as_dict(self) -> dict[str, Any]:
        return {
            "samples_processed": self.samples_processed,
            "min_delta": self.min_delta if self._intervals else 0.0,
            "max_delta": self.max_delta if self._intervals else 0.0,
            "average_delta": self.average_delta,
            "std_dev_delta": self.std_dev_delta,
            "drift_events_count": self.drift_events_count,
            "max_drift_observed": self.max_drift_observed,
            "monotonicity_violations": self.monotonicity_violations,
        }


class DriftDetector:
    """Compares consecutive timestamp spacing with ``1000 / expected_sample_rate`` ms.

    The last timestamp is carried between calls so the first interval of a new
    buffer is measured against the end of the previous one.
    """

    def __init__(
        self,
        expected_sample_rate: float,
        drift_threshold: float = DEFAULT_DRIFT_THRESHOLD,
        on_drift: Callable[[DriftStatistics], None] | None = None,
    ) -> None:
        if expected_sample_rate <= 0:
            raise ValueError("expected_sample_rate must be positive")
        if drift_threshold < 0:
            raise ValueError("drift_threshold must be >= 0")
        self.expected_sample_rate = float(expected_sample_rate)
        self.drift_threshold = float(drift_threshold)
        self.on_drift = on_drift
        self.expected_ms = 1000.0 / self.expected_sample_rate
        self.last_timestamp: float | None = None
        self.sample_count = 0
        self.metrics = DriftMetrics()

    def process_batch(self, timestamps: Sequence[float] | np.ndarray) -> List[DriftStatistics]:
        """Inspect a buffer of timestamps and report every drifting interval."""

        events: list[DriftStatistics] = []
        for raw in timestamps:
            ts = float(raw)
            previous = self.last_timestamp
            index = self.sample_count
            self.sample_count += 1
            self.metrics.samples_processed += 1
            self.last_timestamp = ts
            if previous is None:
                continue
            delta = ts - previous
            if delta <= 0:
                self.metrics.monotonicity_violations += 1
                logger.warning("non-monotonic timestamp at sample %d: %s -> %s", index, previous, ts)
            self.metrics.record_interval(delta)
            absolute = abs(delta - self.expected_ms)
            relative = absolute / self.expected_ms * 100.0
            if relative > self.drift_threshold:
                stats = DriftStatistics(
                    sample_index=index,
                    current_timestamp=ts,
                    previous_timestamp=previous,
                    expected_ms=self.expected_ms,
                    delta_ms=delta,
                    absolute_drift=absolute,
                    relative_drift=relative,
                )
                self.metrics.drift_events_count += 1
                self.metrics.max_drift_observed = max(self.metrics.max_drift_observed, relative)
                events.append(stats)
                self._notify(stats)
        return events

    def _notify(self, stats: DriftStatistics) -> None:
        if self.on_drift is None:
            return
        try:
            self.on_drift(stats)
        except Exception:
            logger.exception("drift callback failed for sample %d", stats.sample_index)

    def reset(self) -> None:
        self.last_timestamp = None
        self.sample_count = 0
        self.metrics = DriftMetrics()


def detect_gaps(
    timestamps: Sequence[float] | np.ndarray,
    expected_sample_rate: float,
    threshold_multiplier: float = 2.0,
) -> List[dict[str, float]]:
    """Intervals longer than ``threshold_multiplier`` times the expected spacing."""

    expected_ms = 1000.0 / expected_sample_rate
    arr = np.asarray(timestamps, dtype=float)
    gaps: list[dict[str, float]] = []
    for i in range(1, arr.size):
        delta = float(arr[i] - arr[i - 1])
        if delta > expected_ms * threshold_multiplier:
            gaps.append(
                {
                    "start_index": i - 1,
                    "end_index": i,
                    "start_time": float(arr[i - 1]),
                    "end_time": float(arr[i]),
                    "duration_ms": delta,
                    "expected_ms": expected_ms,
                    "missing_samples": max(int(round(delta / expected_ms)) - 1, 0),
                }
            )
    return gaps


def validate_monotonicity(timestamps: Sequence[float] | np.ndarray) -> List[dict[str, float]]:
    """Indices where a timestamp does not strictly increase."""

    arr = np.asarray(timestamps, dtype=float)
    return [
        {"index": i, "previous": float(arr[i - 1]), "current": float(arr[i])}
        for i in range(1, arr.size)
        if arr[i] <= arr[i - 1]
    ]


def estimate_sample_rate(timestamps: Sequence[float] | np.ndarray) -> dict[str, Any]:
    """Estimate the realised rate and how regular the spacing is."""

    arr = np.asarray(timestamps, dtype=float)
    if arr.size < 2:
        return {
            "estimated_rate": 0.0,
            "average_interval": 0.0,
            "std_dev_interval": 0.0,
            "coefficient_of_variation": 0.0,
            "regularity": "irregular",
        }
    intervals = np.diff(arr)
    average = float(intervals.mean())
    std_dev = float(intervals.std())
    cv = std_dev / average if average > 0 else math.inf
    if cv < 0.01:
        regularity = "regular"
    elif cv < 0.1:
        regularity = "slightly_irregular"
    else:
        regularity = "irregular"
    return {
        "estimated_rate": 1000.0 / average if average > 0 else 0.0,
        "average_interval": average,
        "std_dev_interval": std_dev,
        "coefficient_of_variation": cv,
        "regularity": regularity,
    }
