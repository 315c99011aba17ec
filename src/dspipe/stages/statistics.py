"""Windowed statistics (moving average, RMS, variance, z-score, MAV) and pointwise rectify, gain and square."""

from __future__ import annotations

import math
from typing import Any, Callable, ClassVar, Literal, Mapping

import numpy as np
from pydantic import field_validator

from ..errors import StateError
from ..models import StageParams
from ..windowing import ChannelWindow, WindowParams, estimate_rate_from_timestamps
from .base import Stage, StageContext, StageKind, deinterleave, require_channels


class ZScoreParams(WindowParams):
    epsilon: float = 1e-6

    @field_validator("epsilon")
    @classmethod
    def _positive_epsilon(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("epsilon must be positive")
        return value


class WindowedStage(Stage):
    """Shared batch/moving machinery for the running-statistic stages."""

    params: WindowParams

    def __init__(self, params: WindowParams) -> None:
        super().__init__(params)
        self._windows: list[ChannelWindow] = []
        self._effective_size: int | None = params.window_size

    @property
    def label(self) -> str:
        return f"{self.kind.value}:{self.params.mode}"

    def batch_value(self, channel: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def moving_value(self, window: ChannelWindow, sample: float) -> float:
        raise NotImplementedError

    def _new_window(self) -> ChannelWindow:
        if self.params.window_size is not None:
            return ChannelWindow(capacity=self.params.window_size)
        return ChannelWindow(duration_ms=self.params.window_duration)

    def _ensure_windows(self, channels: int) -> None:
        if len(self._windows) != channels:
            self._windows = [self._new_window() for _ in range(channels)]

    def _resolve_duration(self, ctx: StageContext) -> None:
        if not self.params.uses_duration or self._effective_size is not None:
            return
        rate = ctx.sample_rate or estimate_rate_from_timestamps(ctx.timestamps[:: ctx.channels])
        if rate:
            self._effective_size = max(1, int(round(self.params.window_duration * rate / 1000.0)))  # type: ignore[operator]

    def process(self, buffer: np.ndarray, ctx: StageContext) -> np.ndarray:
        require_channels(self, buffer, ctx.channels)
        frames = deinterleave(buffer, ctx.channels)
        if self.params.mode == "batch":
            for ch in range(ctx.channels):
                if frames.shape[0]:
                    frames[:, ch] = self.batch_value(frames[:, ch])
            return buffer

        self._resolve_duration(ctx)
        self._ensure_windows(ctx.channels)
        times = deinterleave(ctx.timestamps, ctx.channels)
        for ch, window in enumerate(self._windows):
            column = frames[:, ch]
            stamps = times[:, ch]
            for i in range(column.shape[0]):
                sample = float(column[i])
                window.push(sample, float(stamps[i]))
                column[i] = self.moving_value(window, sample)
        return buffer

    def get_state(self) -> dict[str, Any]:
        if self.params.mode == "batch":
            return {"mode": "batch"}
        return {
            "mode": "moving",
            "windowSize": self.params.window_size,
            "windowDuration": self.params.window_duration,
            "numChannels": len(self._windows),
            "channels": [w.get_state() for w in self._windows],
        }

    def set_state(self, state: Mapping[str, Any]) -> None:
        self._check_param(state, "mode", self.params.mode)
        if self.params.mode == "batch":
            return
        self._check_param(state, "windowSize", self.params.window_size)
        self._check_param(state, "windowDuration", self.params.window_duration)
        restored = []
        for channel_state in state.get("channels", []):
            window = self._new_window()
            try:
                window.set_state(channel_state)
            except ValueError as exc:
                raise StateError(f"{self.kind.value}: {exc}") from exc
            restored.append(window)
        self._windows = restored

    def reset(self) -> None:
        self._windows = []
        self._effective_size = self.params.window_size

    def summary(self) -> dict[str, Any]:
        info: dict[str, Any] = {"type": self.kind.value, "mode": self.params.mode}
        if self.params.mode == "moving":
            if self._effective_size is not None:
                info["windowSize"] = self._effective_size
            if self.params.window_duration is not None:
                info["windowDuration"] = self.params.window_duration
            info["numChannels"] = len(self._windows)
            info["bufferSize"] = max((len(w) for w in self._windows), default=0)
        return info


class MovingAverageStage(WindowedStage):
    kind = StageKind.MOVING_AVERAGE

    def batch_value(self, channel: np.ndarray) -> np.ndarray:
        return np.full_like(channel, channel.mean())

    def moving_value(self, window: ChannelWindow, sample: float) -> float:
        return window.mean()


class RmsStage(WindowedStage):
    kind = StageKind.RMS

    def batch_value(self, channel: np.ndarray) -> np.ndarray:
        return np.full_like(channel, math.sqrt(float(np.mean(channel**2))))

    def moving_value(self, window: ChannelWindow, sample: float) -> float:
        return math.sqrt(max(window.mean_square(), 0.0))


class VarianceStage(WindowedStage):
    kind = StageKind.VARIANCE

    def batch_value(self, channel: np.ndarray) -> np.ndarray:
        return np.full_like(channel, float(np.var(channel)))

    def moving_value(self, window: ChannelWindow, sample: float) -> float:
        return window.variance()


class MeanAbsoluteValueStage(WindowedStage):
    kind = StageKind.MEAN_ABSOLUTE_VALUE

    def batch_value(self, channel: np.ndarray) -> np.ndarray:
        return np.full_like(channel, float(np.mean(np.abs(channel))))

    def moving_value(self, window: ChannelWindow, sample: float) -> float:
        return window.mean_abs()


class ZScoreNormalizeStage(WindowedStage):
    """Normalizes each sample by the mean and deviation of its window.

    Batch mode normalizes against the statistics of the whole channel.
    """

    kind = StageKind.Z_SCORE_NORMALIZE
    params: ZScoreParams

    def _score(self, sample: float, mean: float, std: float) -> float:
        if std < self.params.epsilon:
            return 0.0
        return (sample - mean) / std

    def batch_value(self, channel: np.ndarray) -> np.ndarray:
        mean = float(channel.mean())
        std = float(channel.std())
        return np.array([self._score(float(x), mean, std) for x in channel])

    def moving_value(self, window: ChannelWindow, sample: float) -> float:
        return self._score(sample, window.mean(), math.sqrt(window.variance()))


class RectifyParams(StageParams):
    mode: Literal["full", "half"] = "full"


class RectifyStage(Stage):
    kind = StageKind.RECTIFY
    params: RectifyParams

    _ops: ClassVar[dict[str, Callable[[np.ndarray], np.ndarray]]] = {
        "full": np.abs,
        "half": lambda arr: np.maximum(arr, 0.0),
    }

    @property
    def label(self) -> str:
        return f"rectify:{self.params.mode}"

    def process(self, buffer: np.ndarray, ctx: StageContext) -> np.ndarray:
        buffer[:] = self._ops[self.params.mode](buffer)
        return buffer

    def summary(self) -> dict[str, Any]:
        return {"type": self.kind.value, "mode": self.params.mode}


class AmplifyParams(StageParams):
    gain: float = 1.0


class AmplifyStage(Stage):
    kind = StageKind.AMPLIFY
    params: AmplifyParams

    @property
    def label(self) -> str:
        return f"amplify:{self.params.gain:g}"

    def process(self, buffer: np.ndarray, ctx: StageContext) -> np.ndarray:
        buffer *= self.params.gain
        return buffer

    def get_state(self) -> dict[str, Any]:
        return {"gain": self.params.gain}

    def set_state(self, state: Mapping[str, Any]) -> None:
        self._check_param(state, "gain", self.params.gain)


class SquareStage(Stage):
    """Instantaneous power, ``x**2``."""

    kind = StageKind.SQUARE

    def process(self, buffer: np.ndarray, ctx: StageContext) -> np.ndarray:
        np.square(buffer, out=buffer)
        return buffer
