"""Stages that change the channel layout: routing, merging and signal-to-noise ratio."""

from __future__ import annotations

import math
from typing import Any, List, Mapping

import numpy as np
from pydantic import field_validator, model_validator

from ..errors import ExecutionError, StateError
from ..models import StageParams
from ..windowing import ChannelWindow
from .base import Stage, StageContext, StageKind, deinterleave, require_channels

SNR_EPSILON = 1e-10
SNR_LIMIT_DB = 100.0


class RoutingParams(StageParams):
    """Output channel ``k`` copies input channel ``channels[k]``."""

    channels: List[int]
    num_input_channels: int

    @field_validator("num_input_channels")
    @classmethod
    def _positive_inputs(cls, value: int) -> int:
        if value <= 0:
            raise ValueError(f"numInputChannels must be a positive integer, got {value}")
        return value

    @model_validator(mode="after")
    def _indices_in_range(self) -> "RoutingParams":
        if not self.channels:
            raise ValueError("channel list must not be empty")
        for index in self.channels:
            if not 0 <= index < self.num_input_channels:
                raise ValueError(f"channel index {index} out of range [0, {self.num_input_channels - 1}]")
        return self


class MergeParams(StageParams):
    mapping: List[int]
    num_input_channels: int

    @model_validator(mode="after")
    def _mapping_in_range(self) -> "MergeParams":
        if self.num_input_channels <= 0:
            raise ValueError(f"numInputChannels must be a positive integer, got {self.num_input_channels}")
        if not self.mapping:
            raise ValueError("mapping must not be empty")
        for index in self.mapping:
            if not 0 <= index < self.num_input_channels:
                raise ValueError(f"mapping index {index} out of range [0, {self.num_input_channels - 1}]")
        return self


class SelectorParams(StageParams):
    num_input_channels: int
    num_output_channels: int

    @model_validator(mode="after")
    def _output_fits(self) -> "SelectorParams":
        if self.num_input_channels <= 0:
            raise ValueError(f"numInputChannels must be a positive integer, got {self.num_input_channels}")
        if not 1 <= self.num_output_channels <= self.num_input_channels:
            raise ValueError(
                f"numOutputChannels must be in [1, {self.num_input_channels}], got {self.num_output_channels}"
            )
        return self


def _reshape_context(ctx: StageContext, channels: int) -> None:
    frame_times = deinterleave(ctx.timestamps, ctx.channels)[:, 0] if ctx.timestamps.size else ctx.timestamps
    ctx.timestamps = np.repeat(frame_times, channels)
    ctx.channels = channels


class _RoutingStage(Stage):
    """Frame-wise gather of input channels into a new interleaved layout."""

    def __init__(self, params: StageParams) -> None:
        super().__init__(params)
        self._indices = np.asarray(self.routes(), dtype=np.intp)

    def routes(self) -> list[int]:
        raise NotImplementedError

    @property
    def label(self) -> str:
        return f"{self.kind.value}:{self.params.num_input_channels}→{len(self._indices)}"

    def process(self, buffer: np.ndarray, ctx: StageContext) -> np.ndarray:
        expected = self.params.num_input_channels
        if ctx.channels != expected:
            raise ExecutionError(f"{self.kind.value}: expected {expected} input channels, got {ctx.channels}")
        require_channels(self, buffer, ctx.channels)
        out = np.ascontiguousarray(deinterleave(buffer, ctx.channels)[:, self._indices]).reshape(-1)
        _reshape_context(ctx, len(self._indices))
        return out

    def set_state(self, state: Mapping[str, Any]) -> None:
        for key, expected in self.get_state().items():
            self._check_param(state, key, expected)

    def summary(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "numInputChannels": self.params.num_input_channels,
            "numOutputChannels": len(self._indices),
        }


class ChannelSelectStage(_RoutingStage):
    kind = StageKind.CHANNEL_SELECT
    params: RoutingParams

    def routes(self) -> list[int]:
        return list(self.params.channels)

    def get_state(self) -> dict[str, Any]:
        return {"numInputChannels": self.params.num_input_channels, "channels": list(self.params.channels)}


class ChannelSelectorStage(_RoutingStage):
    """Keeps the first ``num_output_channels`` channels."""

    kind = StageKind.CHANNEL_SELECTOR
    params: SelectorParams

    def routes(self) -> list[int]:
        return list(range(self.params.num_output_channels))

    def get_state(self) -> dict[str, Any]:
        return {
            "numInputChannels": self.params.num_input_channels,
            "numOutputChannels": self.params.num_output_channels,
        }


class ChannelMergeStage(_RoutingStage):
    """Like select, but a source channel may feed several outputs."""

    kind = StageKind.CHANNEL_MERGE
    params: MergeParams

    def routes(self) -> list[int]:
        return list(self.params.mapping)

    def get_state(self) -> dict[str, Any]:
        return {"numInputChannels": self.params.num_input_channels, "mapping": list(self.params.mapping)}


class SnrParams(StageParams):
    window_size: int

    @field_validator("window_size")
    @classmethod
    def _positive_size(cls, value: int) -> int:
        if value <= 0:
            raise ValueError(f"windowSize must be a positive integer, got {value}")
        return value


class SnrStage(Stage):
    """Signal-to-noise ratio in dB from a (signal, noise) channel pair.

    Both channels are tracked with a sliding mean-square window. The output is
    a single channel, clamped to [-100, 100] dB; a silent noise channel reads
    as +100 dB.
    """

    kind = StageKind.SNR
    params: SnrParams

    def __init__(self, params: SnrParams) -> None:
        super().__init__(params)
        self._signal = ChannelWindow(capacity=params.window_size)
        self._noise = ChannelWindow(capacity=params.window_size)

    @property
    def label(self) -> str:
        return f"snr:{self.params.window_size}"

    def process(self, buffer: np.ndarray, ctx: StageContext) -> np.ndarray:
        if ctx.channels != 2:
            raise ExecutionError(f"snr: requires exactly 2 channels (signal, noise), got {ctx.channels}")
        require_channels(self, buffer, 2)
        frames = deinterleave(buffer, 2)
        out = np.empty(frames.shape[0])
        for i in range(frames.shape[0]):
            self._signal.push(float(frames[i, 0]))
            self._noise.push(float(frames[i, 1]))
            out[i] = self._ratio_db(self._signal.mean_square(), self._noise.mean_square())
        _reshape_context(ctx, 1)
        return out

    @staticmethod
    def _ratio_db(signal_power: float, noise_power: float) -> float:
        if noise_power < SNR_EPSILON:
            return SNR_LIMIT_DB
        ratio = 10.0 * math.log10((signal_power + SNR_EPSILON) / (noise_power + SNR_EPSILON))
        return min(SNR_LIMIT_DB, max(-SNR_LIMIT_DB, ratio))

    def get_state(self) -> dict[str, Any]:
        signal = self._signal.get_state()
        noise = self._noise.get_state()
        return {
            "windowSize": self.params.window_size,
            "signalBuffer": signal["buffer"],
            "signalSum": signal["runningSumOfSquares"],
            "noiseBuffer": noise["buffer"],
            "noiseSum": noise["runningSumOfSquares"],
        }

    def set_state(self, state: Mapping[str, Any]) -> None:
        self._check_param(state, "windowSize", self.params.window_size)
        signal = ChannelWindow(capacity=self.params.window_size)
        noise = ChannelWindow(capacity=self.params.window_size)
        try:
            for window, prefix in ((signal, "signal"), (noise, "noise")):
                values = [float(v) for v in state.get(f"{prefix}Buffer", [])]
                total = state.get(f"{prefix}Sum")
                if total is None:
                    total = sum(v * v for v in values)
                window.set_state({"buffer": values, "runningSumOfSquares": float(total)})
        except (TypeError, ValueError) as exc:
            raise StateError(f"snr: {exc}") from exc
        self._signal, self._noise = signal, noise

    def reset(self) -> None:
        self._signal.reset()
        self._noise.reset()

    def summary(self) -> dict[str, Any]:
        return {"type": self.kind.value, "windowSize": self.params.window_size, "bufferSize": len(self._signal)}
