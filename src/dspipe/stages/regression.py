"""Sliding-window least-squares trend estimation."""

from __future__ import annotations

from collections import deque
from typing import Any, Literal, Mapping

import numpy as np
from pydantic import field_validator

from ..errors import StateError
from ..models import StageParams
from .base import Stage, StageContext, StageKind, deinterleave, require_channels

RegressionOutput = Literal["slope", "intercept", "residuals", "predictions"]

OUTPUT_KINDS: dict[str, StageKind] = {
    "slope": StageKind.LINEAR_REGRESSION_SLOPE,
    "intercept": StageKind.LINEAR_REGRESSION_INTERCEPT,
    "residuals": StageKind.LINEAR_REGRESSION_RESIDUALS,
    "predictions": StageKind.LINEAR_REGRESSION_PREDICTIONS,
}


class RegressionParams(StageParams):
    window_size: int
    output: RegressionOutput = "slope"

    @field_validator("window_size")
    @classmethod
    def _at_least_two(cls, value: int) -> int:
        if value < 2:
            raise ValueError(f"windowSize must be an integer >= 2, got {value}")
        return value


def fit_line(values: np.ndarray) -> tuple[float, float]:
    """Least-squares ``y = slope * x + intercept`` with ``x = 0..n-1``."""
    n = values.size
    if n < 2:
        return 0.0, float(values[0]) if n else 0.0
    x = np.arange(n, dtype=float)
    x_centered = x - x.mean()
    y_mean = float(values.mean())
    slope = float(np.dot(x_centered, values - y_mean) / np.dot(x_centered, x_centered))
    return slope, y_mean - slope * float(x.mean())


class LinearRegressionStage(Stage):
    """Fits the window ending at each sample and emits the selected output."""

    params: RegressionParams

    def __init__(self, params: RegressionParams) -> None:
        super().__init__(params)
        self._windows: list[deque[float]] = []

    @property
    def kind(self) -> StageKind:  # type: ignore[override]
        return OUTPUT_KINDS[self.params.output]

    @property
    def label(self) -> str:
        return f"linearRegression:{self.params.output}"

    def _emit(self, slope: float, intercept: float, x: float, y: float) -> float:
        output = self.params.output
        if output == "slope":
            return slope
        if output == "intercept":
            return intercept
        fitted = slope * x + intercept
        return y - fitted if output == "residuals" else fitted

    def process(self, buffer: np.ndarray, ctx: StageContext) -> np.ndarray:
        require_channels(self, buffer, ctx.channels)
        if len(self._windows) != ctx.channels:
            self._windows = [deque(maxlen=self.params.window_size) for _ in range(ctx.channels)]
        frames = deinterleave(buffer, ctx.channels)
        for ch, window in enumerate(self._windows):
            column = frames[:, ch]
            for i in range(column.shape[0]):
                y = float(column[i])
                window.append(y)
                slope, intercept = fit_line(np.fromiter(window, dtype=float, count=len(window)))
                column[i] = self._emit(slope, intercept, float(len(window) - 1), y)
        return buffer

    def get_state(self) -> dict[str, Any]:
        return {
            "windowSize": self.params.window_size,
            "output": self.params.output,
            "channels": [list(w) for w in self._windows],
        }

    def set_state(self, state: Mapping[str, Any]) -> None:
        self._check_param(state, "windowSize", self.params.window_size)
        self._check_param(state, "output", self.params.output)
        restored = []
        for values in state.get("channels", []):
            if len(values) > self.params.window_size:
                raise StateError(f"{self.kind.value}: window holds {len(values)} samples, size is {self.params.window_size}")
            restored.append(deque((float(v) for v in values), maxlen=self.params.window_size))
        self._windows = restored

    def reset(self) -> None:
        self._windows = []

    def summary(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "windowSize": self.params.window_size,
            "numChannels": len(self._windows),
        }
