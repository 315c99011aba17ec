"""Window policy and per-channel ring buffers for windowed stages."""

from __future__ import annotations

from collections import deque
from typing import Any, Literal, Mapping, Sequence

import numpy as np
from pydantic import Field, field_validator, model_validator

from .models import StageParams

WindowMode = Literal["batch", "moving"]

SAMPLE_RATE_ESTIMATE_POINTS = 10


class WindowParams(StageParams):
    """Batch/moving mode with a sample-count or time-duration window.

    In moving mode ``window_size`` takes precedence when both bases are given.
    """

    mode: WindowMode
    window_size: int | None = None
    window_duration: float | None = Field(default=None, description="Window length in milliseconds")

    @field_validator("window_size")
    @classmethod
    def _positive_size(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError(f"windowSize must be a positive integer, got {value}")
        return value

    @field_validator("window_duration")
    @classmethod
    def _positive_duration(cls, value: float | None) -> float | None:
        if value is not None and not value > 0:
            raise ValueError(f"windowDuration must be positive, got {value}")
        return value

    @model_validator(mode="after")
    def _require_basis(self) -> "WindowParams":
        if self.mode == "moving" and self.window_size is None and self.window_duration is None:
            raise ValueError("moving mode requires either windowSize or windowDuration")
        return self

    @property
    def uses_duration(self) -> bool:
        return self.mode == "moving" and self.window_size is None


def estimate_rate_from_timestamps(timestamps: Sequence[float] | np.ndarray) -> float | None:
    """Estimate a sample rate in Hz from the first few millisecond timestamps."""
    head = np.asarray(timestamps[:SAMPLE_RATE_ESTIMATE_POINTS], dtype=float)
    if head.size < 2:
        return None
    span = float(head[-1] - head[0])
    if span <= 0:
        return None
    return (head.size - 1) * 1000.0 / span


class ChannelWindow:
    """Sliding window over one channel, bounded by sample count or by elapsed time.

    Running sums are kept alongside the raw values so every aggregate is O(1).
    """

    def __init__(self, capacity: int | None = None, duration_ms: float | None = None) -> None:
        if capacity is None and duration_ms is None:
            raise ValueError("ChannelWindow needs a capacity or a duration")
        self.capacity = capacity
        self.duration_ms = duration_ms
        self._values: deque[float] = deque()
        self._times: deque[float] = deque()
        self.total = 0.0
        self.total_sq = 0.0
        self.total_abs = 0.0

    def push(self, value: float, timestamp: float = 0.0) -> None:
        self._values.append(value)
        self._times.append(timestamp)
        self.total += value
        self.total_sq += value * value
        self.total_abs += abs(value)
        if self.capacity is not None:
            while len(self._values) > self.capacity:
                self._evict()
        elif self.duration_ms is not None:
            while len(self._values) > 1 and timestamp - self._times[0] >= self.duration_ms:
                self._evict()

    def _evict(self) -> None:
        old = self._values.popleft()
        self._times.popleft()
        self.total -= old
        self.total_sq -= old * old
        self.total_abs -= abs(old)

    def mean(self) -> float:
        return self.total / len(self._values) if self._values else 0.0

    def mean_square(self) -> float:
        return self.total_sq / len(self._values) if self._values else 0.0

    def mean_abs(self) -> float:
        return self.total_abs / len(self._values) if self._values else 0.0

    def variance(self) -> float:
        mean = self.mean()
        return max(self.mean_square() - mean * mean, 0.0)

    def reset(self) -> None:
        self._values.clear()
        self._times.clear()
        self.total = 0.0
        self.total_sq = 0.0
        self.total_abs = 0.0

    def __len__(self) -> int:
        return len(self._values)

    def get_state(self) -> dict[str, Any]:
        return {
            "buffer": list(self._values),
            "timestamps": list(self._times),
            "runningSum": self.total,
            "runningSumOfSquares": self.total_sq,
            "runningSumOfAbs": self.total_abs,
        }

    def set_state(self, state: Mapping[str, Any]) -> None:
        values = [float(v) for v in state.get("buffer", [])]
        times = [float(t) for t in state.get("timestamps", [0.0] * len(values))]
        if len(times) != len(values):
            raise ValueError("window buffer and timestamps differ in length")
        if self.capacity is not None and len(values) > self.capacity:
            raise ValueError(f"window buffer holds {len(values)} samples, capacity is {self.capacity}")
        self._values = deque(values)
        self._times = deque(times)
        self.total = float(state.get("runningSum", sum(values)))
        self.total_sq = float(state.get("runningSumOfSquares", sum(v * v for v in values)))
        self.total_abs = float(state.get("runningSumOfAbs", sum(abs(v) for v in values)))


class CountingWindow:
    """Fixed-size window of per-sample contributions with a running total."""

    def __init__(self, capacity: int) -> None:
        self.capacity = capacity
        self._items: deque[float] = deque()
        self.total = 0.0

    def push(self, contribution: float) -> float:
        self._items.append(contribution)
        self.total += contribution
        if len(self._items) > self.capacity:
            self.total -= self._items.popleft()
        return self.total

    def reset(self) -> None:
        self._items.clear()
        self.total = 0.0

    def get_state(self) -> dict[str, Any]:
        return {"buffer": list(self._items), "runningSum": self.total}

    def set_state(self, state: Mapping[str, Any]) -> None:
        items = [float(v) for v in state.get("buffer", [])]
        if len(items) > self.capacity:
            raise ValueError(f"window buffer holds {len(items)} samples, capacity is {self.capacity}")
        self._items = deque(items)
        self.total = float(state.get("runningSum", sum(items)))
