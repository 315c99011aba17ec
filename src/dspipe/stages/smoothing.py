"""Recursive averages: exponential and cumulative moving averages."""

from __future__ import annotations

from typing import Any, Mapping

import numpy as np
from pydantic import field_validator

from ..errors import StateError
from ..models import StageParams
from ..windowing import WindowMode
from .base import Stage, StageContext, StageKind, deinterleave, require_channels


class EmaParams(StageParams):
    mode: WindowMode = "moving"
    alpha: float

    @field_validator("alpha")
    @classmethod
    def _alpha_range(cls, value: float) -> float:
        if not 0.0 < value <= 1.0:
            raise ValueError(f"alpha must be in range (0, 1], got {value}")
        return value


class CmaParams(StageParams):
    mode: WindowMode = "moving"


class _RecursiveAverageStage(Stage):
    """Per-channel recursive state. Batch mode starts every call from scratch."""

    def __init__(self, params: StageParams) -> None:
        super().__init__(params)
        self._channels: list[dict[str, float]] = []

    @property
    def label(self) -> str:
        return f"{self.kind.value}:{self.params.mode}"

    def fresh(self) -> dict[str, float]:
        raise NotImplementedError

    def step(self, state: dict[str, float], sample: float) -> float:
        raise NotImplementedError

    def process(self, buffer: np.ndarray, ctx: StageContext) -> np.ndarray:
        require_channels(self, buffer, ctx.channels)
        if self.params.mode == "batch" or len(self._channels) != ctx.channels:
            self._channels = [self.fresh() for _ in range(ctx.channels)]
        frames = deinterleave(buffer, ctx.channels)
        for ch, state in enumerate(self._channels):
            column = frames[:, ch]
            for i in range(column.shape[0]):
                column[i] = self.step(state, float(column[i]))
        if self.params.mode == "batch":
            self._channels = []
        return buffer

    def get_state(self) -> dict[str, Any]:
        return {"mode": self.params.mode, "numChannels": len(self._channels), "channels": [dict(c) for c in self._channels]}

    def set_state(self, state: Mapping[str, Any]) -> None:
        self._check_param(state, "mode", self.params.mode)
        restored = []
        for entry in state.get("channels", []):
            channel = self.fresh()
            try:
                for key in channel:
                    channel[key] = float(entry.get(key, channel[key]))
            except (AttributeError, TypeError, ValueError) as exc:
                raise StateError(f"{self.kind.value}: invalid channel state {entry!r}") from exc
            restored.append(channel)
        self._channels = restored

    def reset(self) -> None:
        self._channels = []

    def summary(self) -> dict[str, Any]:
        return {"type": self.kind.value, "mode": self.params.mode, "numChannels": len(self._channels)}


class ExponentialMovingAverageStage(_RecursiveAverageStage):
    """``ema = alpha * x + (1 - alpha) * ema``, seeded with the first sample."""

    kind = StageKind.EXPONENTIAL_MOVING_AVERAGE
    params: EmaParams

    @property
    def label(self) -> str:
        return f"exponentialMovingAverage:{self.params.mode}:α={self.params.alpha:g}"

    def fresh(self) -> dict[str, float]:
        return {"ema": 0.0, "initialized": 0.0}

    def step(self, state: dict[str, float], sample: float) -> float:
        if not state["initialized"]:
            state["ema"] = sample
            state["initialized"] = 1.0
        else:
            alpha = self.params.alpha
            state["ema"] = alpha * sample + (1.0 - alpha) * state["ema"]
        return state["ema"]

    def get_state(self) -> dict[str, Any]:
        state = super().get_state()
        for channel in state["channels"]:
            channel["initialized"] = bool(channel["initialized"])
        return {"alpha": self.params.alpha, **state}

    def set_state(self, state: Mapping[str, Any]) -> None:
        self._check_param(state, "alpha", self.params.alpha)
        super().set_state(state)


class CumulativeMovingAverageStage(_RecursiveAverageStage):
    """Running mean of every sample seen so far on each channel."""

    kind = StageKind.CUMULATIVE_MOVING_AVERAGE
    params: CmaParams

    def fresh(self) -> dict[str, float]:
        return {"sum": 0.0, "count": 0.0}

    def step(self, state: dict[str, float], sample: float) -> float:
        state["sum"] += sample
        state["count"] += 1
        return state["sum"] / state["count"]

    def get_state(self) -> dict[str, Any]:
        state = super().get_state()
        for channel in state["channels"]:
            channel["count"] = int(channel["count"])
        return state
