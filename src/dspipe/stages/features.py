"""Per-channel time-domain feature stages (EMG features, derivative, integrator, detectors)."""

from __future__ import annotations

from typing import Any, Mapping

import numpy as np
from pydantic import field_validator

from ..errors import StateError
from ..models import StageParams
from ..windowing import CountingWindow
from .base import Stage, StageContext, StageKind, deinterleave, require_channels


class FeatureWindowParams(StageParams):
    window_size: int
    threshold: float = 0.0

    @field_validator("window_size")
    @classmethod
    def _positive_size(cls, value: int) -> int:
        if value <= 0:
            raise ValueError(f"windowSize must be a positive integer, got {value}")
        return value

    @field_validator("threshold")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("threshold must be >= 0")
        return value


class _ChannelFeature:
    """Windowed counter plus the recent samples needed to form each contribution."""

    def __init__(self, window_size: int) -> None:
        self.window = CountingWindow(window_size)
        self.previous = 0.0
        self.before_previous = 0.0
        self.seen = 0

    def get_state(self) -> dict[str, Any]:
        return {
            **self.window.get_state(),
            "previousSample": self.previous,
            "beforePreviousSample": self.before_previous,
            "seen": self.seen,
        }

    def set_state(self, state: Mapping[str, Any]) -> None:
        self.window.set_state(state)
        self.previous = float(state.get("previousSample", 0.0))
        self.before_previous = float(state.get("beforePreviousSample", 0.0))
        self.seen = int(state.get("seen", 0))


class WindowedFeatureStage(Stage):
    params: FeatureWindowParams

    def __init__(self, params: FeatureWindowParams) -> None:
        super().__init__(params)
        self._channels: list[_ChannelFeature] = []

    @property
    def label(self) -> str:
        return f"{self.kind.value}:{self.params.window_size}"

    def contribution(self, state: _ChannelFeature, sample: float) -> float:
        raise NotImplementedError

    def process(self, buffer: np.ndarray, ctx: StageContext) -> np.ndarray:
        require_channels(self, buffer, ctx.channels)
        if len(self._channels) != ctx.channels:
            self._channels = [_ChannelFeature(self.params.window_size) for _ in range(ctx.channels)]
        frames = deinterleave(buffer, ctx.channels)
        for ch, state in enumerate(self._channels):
            column = frames[:, ch]
            for i in range(column.shape[0]):
                sample = float(column[i])
                column[i] = state.window.push(self.contribution(state, sample))
                state.before_previous = state.previous
                state.previous = sample
                state.seen += 1
        return buffer

    def get_state(self) -> dict[str, Any]:
        return {
            "windowSize": self.params.window_size,
            "threshold": self.params.threshold,
            "channels": [c.get_state() for c in self._channels],
        }

    def set_state(self, state: Mapping[str, Any]) -> None:
        self._check_param(state, "windowSize", self.params.window_size)
        self._check_param(state, "threshold", self.params.threshold)
        restored = []
        for channel_state in state.get("channels", []):
            channel = _ChannelFeature(self.params.window_size)
            try:
                channel.set_state(channel_state)
            except ValueError as exc:
                raise StateError(f"{self.kind.value}: {exc}") from exc
            restored.append(channel)
        self._channels = restored

    def reset(self) -> None:
        self._channels = []

    def summary(self) -> dict[str, Any]:
        return {"type": self.kind.value, "windowSize": self.params.window_size, "numChannels": len(self._channels)}


class WaveformLengthStage(WindowedFeatureStage):
    """Sum of absolute first differences over the window."""

    kind = StageKind.WAVEFORM_LENGTH

    def contribution(self, state: _ChannelFeature, sample: float) -> float:
        return abs(sample - state.previous)


class SlopeSignChangeStage(WindowedFeatureStage):
    """Count of slope reversals whose product of differences reaches the threshold."""

    kind = StageKind.SLOPE_SIGN_CHANGE

    def contribution(self, state: _ChannelFeature, sample: float) -> float:
        if state.seen < 2:
            return 0.0
        product = (state.previous - state.before_previous) * (state.previous - sample)
        return 1.0 if product > 0 and product >= self.params.threshold else 0.0


class WillisonAmplitudeStage(WindowedFeatureStage):
    """Count of successive-sample jumps larger than the threshold."""

    kind = StageKind.WILLISON_AMPLITUDE

    def contribution(self, state: _ChannelFeature, sample: float) -> float:
        return 1.0 if abs(sample - state.previous) > self.params.threshold else 0.0


class _PerChannelMemoryStage(Stage):
    """Stages that carry one value per channel across calls."""

    state_key = "previous"

    def __init__(self, params: StageParams) -> None:
        super().__init__(params)
        self._memory: np.ndarray = np.zeros(0)

    def _memory_for(self, channels: int) -> np.ndarray:
        if self._memory.size != channels:
            self._memory = np.zeros(channels)
        return self._memory

    def get_state(self) -> dict[str, Any]:
        return {"numChannels": int(self._memory.size), self.state_key: self._memory.tolist()}

    def set_state(self, state: Mapping[str, Any]) -> None:
        self._memory = np.asarray(state.get(self.state_key, []), dtype=float)

    def reset(self) -> None:
        self._memory = np.zeros(0)

    def summary(self) -> dict[str, Any]:
        return {"type": self.kind.value, "numChannels": int(self._memory.size)}


class DifferentiatorStage(_PerChannelMemoryStage):
    kind = StageKind.DIFFERENTIATOR
    state_key = "prevSample"

    def process(self, buffer: np.ndarray, ctx: StageContext) -> np.ndarray:
        require_channels(self, buffer, ctx.channels)
        memory = self._memory_for(ctx.channels)
        frames = deinterleave(buffer, ctx.channels)
        if frames.shape[0] == 0:
            return buffer
        last = frames[-1].copy()
        frames[1:] = np.diff(frames, axis=0)
        frames[0] = frames[0] - memory
        self._memory = last
        return buffer


class IntegratorParams(StageParams):
    alpha: float = 0.99

    @field_validator("alpha")
    @classmethod
    def _alpha_range(cls, value: float) -> float:
        if not 0.0 < value <= 1.0:
            raise ValueError("Integrator alpha must be in range (0, 1]")
        return value


class IntegratorStage(_PerChannelMemoryStage):
    """Leaky integrator ``y[n] = x[n] + alpha * y[n-1]``."""

    kind = StageKind.INTEGRATOR
    state_key = "prevOutput"
    params: IntegratorParams

    def process(self, buffer: np.ndarray, ctx: StageContext) -> np.ndarray:
        require_channels(self, buffer, ctx.channels)
        memory = self._memory_for(ctx.channels)
        frames = deinterleave(buffer, ctx.channels)
        alpha = self.params.alpha
        for i in range(frames.shape[0]):
            memory = frames[i] + alpha * memory
            frames[i] = memory
        self._memory = np.array(memory, dtype=float)
        return buffer

    def get_state(self) -> dict[str, Any]:
        return {"alpha": self.params.alpha, **super().get_state()}


class ThresholdParams(StageParams):
    threshold: float

    @field_validator("threshold")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("threshold must be > 0")
        return value


class ClipDetectionStage(Stage):
    """Marks samples whose magnitude reaches the clipping threshold."""

    kind = StageKind.CLIP_DETECTION
    params: ThresholdParams

    def process(self, buffer: np.ndarray, ctx: StageContext) -> np.ndarray:
        buffer[:] = (np.abs(buffer) >= self.params.threshold).astype(float)
        return buffer

    def get_state(self) -> dict[str, Any]:
        return {"threshold": self.params.threshold}


class PeakDetectionParams(StageParams):
    threshold: float = 0.0


class PeakDetectionStage(Stage):
    """Flags local maxima above the threshold.

    A peak at ``x[n-1]`` is reported on sample ``n``, once the next sample shows the descent.
    """

    kind = StageKind.PEAK_DETECTION
    params: PeakDetectionParams

    def __init__(self, params: PeakDetectionParams) -> None:
        super().__init__(params)
        self._history: list[list[float]] = []

    def process(self, buffer: np.ndarray, ctx: StageContext) -> np.ndarray:
        require_channels(self, buffer, ctx.channels)
        if len(self._history) != ctx.channels:
            self._history = [[] for _ in range(ctx.channels)]
        frames = deinterleave(buffer, ctx.channels)
        threshold = self.params.threshold
        for ch, history in enumerate(self._history):
            column = frames[:, ch]
            for i in range(column.shape[0]):
                sample = float(column[i])
                flag = 0.0
                if len(history) == 2:
                    before, middle = history
                    if middle > before and middle > sample and middle > threshold:
                        flag = 1.0
                history.append(sample)
                if len(history) > 2:
                    history.pop(0)
                column[i] = flag
        return buffer

    def get_state(self) -> dict[str, Any]:
        return {"threshold": self.params.threshold, "history": [list(h) for h in self._history]}

    def set_state(self, state: Mapping[str, Any]) -> None:
        self._check_param(state, "threshold", self.params.threshold)
        self._history = [[float(v) for v in h][-2:] for h in state.get("history", [])]

    def reset(self) -> None:
        self._history = []
