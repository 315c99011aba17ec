"""Integer interpolation, integer decimation and rational polyphase resampling."""

from __future__ import annotations

import math
from typing import Any, Mapping

import numpy as np
from pydantic import field_validator, model_validator
from scipy import signal

from ..errors import StateError
from ..models import StageParams
from .base import Stage, StageContext, StageKind, deinterleave, require_channels

DEFAULT_ORDER = 51


class _RateParams(StageParams):
    sample_rate: float
    order: int = DEFAULT_ORDER

    @field_validator("sample_rate")
    @classmethod
    def _positive_rate(cls, value: float) -> float:
        if not value > 0:
            raise ValueError(f"sampleRate must be positive, got {value}")
        return value

    @field_validator("order")
    @classmethod
    def _odd_order(cls, value: int) -> int:
        if value < 3 or value % 2 == 0:
            raise ValueError(f"Filter order must be odd and >= 3, got {value}")
        return value


class FactorParams(_RateParams):
    factor: int

    @field_validator("factor")
    @classmethod
    def _factor_at_least_two(cls, value: int) -> int:
        if value < 2:
            raise ValueError(f"factor must be an integer >= 2, got {value}")
        return value


class ResampleParams(_RateParams):
    up_factor: int
    down_factor: int

    @model_validator(mode="after")
    def _positive_factors(self) -> "ResampleParams":
        if self.up_factor < 1 or self.down_factor < 1:
            raise ValueError(
                f"upFactor and downFactor must be positive integers, got {self.up_factor}/{self.down_factor}"
            )
        return self


def design_polyphase_bank(up: int, down: int, order: int) -> np.ndarray:
    """Windowed-sinc low-pass split into ``up`` phases, shape ``(up, taps_per_phase)``.

    The cutoff sits at the lower of the input and output Nyquist frequencies and
    the passband gain equals ``up`` to undo the zero-stuffing loss.
    """

    if up == down == 1:
        return np.ones((1, 1))
    h = signal.firwin(order, 1.0 / max(up, down), window="hamming") * up
    taps_per_phase = math.ceil(order / up)
    padded = np.zeros(taps_per_phase * up)
    padded[:order] = h
    return padded.reshape(taps_per_phase, up).T.copy()


class PolyphaseRateConverter:
    """Streaming L/M converter that never builds the zero-stuffed signal.

    Each input frame pushes into a per-channel delay line. The ``up`` polyphase
    branches are then walked in order, and an output is emitted every ``down``
    branch steps.
    """

    def __init__(self, up: int, down: int, order: int) -> None:
        self.up = up
        self.down = down
        self.order = order
        self.bank = design_polyphase_bank(up, down, order)
        self.history: np.ndarray | None = None
        self.phase = 0

    def output_length(self, frames: int) -> int:
        return (frames * self.up + self.phase) // self.down

    def run(self, frames: np.ndarray, frame_times: np.ndarray, frame_period: float) -> tuple[np.ndarray, np.ndarray]:
        n_frames, channels = frames.shape
        taps = self.bank.shape[1]
        if self.history is None or self.history.shape != (taps, channels):
            self.history = np.zeros((taps, channels))
        out = np.empty((self.output_length(n_frames), channels))
        out_times = np.empty(out.shape[0])
        step = frame_period / self.up
        k = 0
        for n in range(n_frames):
            self.history = np.roll(self.history, 1, axis=0)
            self.history[0] = frames[n]
            for branch in range(self.up):
                self.phase += 1
                if self.phase < self.down:
                    continue
                self.phase = 0
                out[k] = self.bank[branch] @ self.history
                out_times[k] = frame_times[n] + branch * step
                k += 1
        return out, out_times

    def reset(self) -> None:
        self.history = None
        self.phase = 0

    def get_state(self) -> dict[str, Any]:
        return {
            "upFactor": self.up,
            "downFactor": self.down,
            "order": self.order,
            "phase": self.phase,
            "history": self.history.tolist() if self.history is not None else None,
        }

    def set_state(self, state: Mapping[str, Any]) -> None:
        history = state.get("history")
        if history is None:
            self.history = None
        else:
            arr = np.asarray(history, dtype=float)
            if arr.ndim != 2 or arr.shape[0] != self.bank.shape[1]:
                raise ValueError(f"history shape {arr.shape} does not match {self.bank.shape[1]} taps per phase")
            self.history = arr
        phase = int(state.get("phase", 0))
        if not 0 <= phase < self.down:
            raise ValueError(f"phase {phase} outside [0, {self.down})")
        self.phase = phase


class _RateStage(Stage):
    changes_rate = True
    converter: PolyphaseRateConverter

    @property
    def coefficients(self) -> np.ndarray:
        return self.converter.bank

    def process(self, buffer: np.ndarray, ctx: StageContext) -> np.ndarray:
        require_channels(self, buffer, ctx.channels)
        frames = deinterleave(buffer, ctx.channels)
        frame_times = deinterleave(ctx.timestamps, ctx.channels)[:, 0] if frames.shape[0] else np.zeros(0)
        period = 1000.0 / ctx.sample_rate if ctx.sample_rate else self._frame_period(frame_times)
        out, out_times = self.converter.run(frames, frame_times, period)
        ctx.timestamps = np.repeat(out_times, ctx.channels)
        ctx.sample_rate = self.output_rate(ctx.sample_rate)
        return out.reshape(-1)

    @staticmethod
    def _frame_period(frame_times: np.ndarray) -> float:
        if frame_times.size < 2:
            return 1.0
        return float(np.median(np.diff(frame_times)))

    def output_rate(self, input_rate: float | None) -> float | None:
        if input_rate is None:
            return None
        return input_rate * self.converter.up / self.converter.down

    def get_state(self) -> dict[str, Any]:
        return self.converter.get_state()

    def set_state(self, state: Mapping[str, Any]) -> None:
        self._check_param(state, "upFactor", self.converter.up)
        self._check_param(state, "downFactor", self.converter.down)
        self._check_param(state, "order", self.converter.order)
        try:
            self.converter.set_state(state)
        except ValueError as exc:
            raise StateError(f"{self.kind.value}: {exc}") from exc

    def reset(self) -> None:
        self.converter.reset()

    def summary(self) -> dict[str, Any]:
        history = self.converter.history
        return {
            "type": self.kind.value,
            "upFactor": self.converter.up,
            "downFactor": self.converter.down,
            "numChannels": 0 if history is None else int(history.shape[1]),
        }


class InterpolateStage(_RateStage):
    kind = StageKind.INTERPOLATE
    params: FactorParams

    def __init__(self, params: FactorParams) -> None:
        super().__init__(params)
        self.converter = PolyphaseRateConverter(params.factor, 1, params.order)

    @property
    def label(self) -> str:
        return f"interpolate:{self.params.factor}"


class DecimateStage(_RateStage):
    kind = StageKind.DECIMATE
    params: FactorParams

    def __init__(self, params: FactorParams) -> None:
        super().__init__(params)
        self.converter = PolyphaseRateConverter(1, params.factor, params.order)

    @property
    def label(self) -> str:
        return f"decimate:{self.params.factor}"


class ResampleStage(_RateStage):
    """Rational L/M resampler. The ratio is reduced by its gcd before the bank is built."""

    kind = StageKind.RESAMPLE
    params: ResampleParams

    def __init__(self, params: ResampleParams) -> None:
        super().__init__(params)
        divisor = math.gcd(params.up_factor, params.down_factor)
        self.converter = PolyphaseRateConverter(
            params.up_factor // divisor, params.down_factor // divisor, params.order
        )

    @property
    def up_factor(self) -> int:
        return self.converter.up

    @property
    def down_factor(self) -> int:
        return self.converter.down

    @property
    def label(self) -> str:
        return f"resample:{self.converter.up}/{self.converter.down}"
