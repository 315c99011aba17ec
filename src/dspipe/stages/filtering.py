"""Generic streaming IIR/FIR filter stage."""

from __future__ import annotations

from typing import Any, List, Mapping

import numpy as np
from pydantic import field_validator
from scipy import signal

from ..errors import StateError
from ..models import StageParams
from .base import Stage, StageContext, StageKind, deinterleave, require_channels


class FilterParams(StageParams):
    b: List[float]
    a: List[float] = [1.0]
    family: str = "custom"
    mode: str = "custom"

    @field_validator("b", "a")
    @classmethod
    def _non_empty(cls, value: List[float]) -> List[float]:
        if not value:
            raise ValueError("filter coefficients must be non-empty")
        return value

    @field_validator("a")
    @classmethod
    def _leading_nonzero(cls, value: List[float]) -> List[float]:
        if value[0] == 0:
            raise ValueError("a[0] must be non-zero")
        return value


class FilterStage(Stage):
    """Applies ``b / a`` per channel, carrying the direct-form state between calls."""

    kind = StageKind.FILTER
    params: FilterParams

    def __init__(self, params: FilterParams) -> None:
        super().__init__(params)
        self._b = np.asarray(params.b, dtype=float)
        self._a = np.asarray(params.a, dtype=float)
        self._zi: np.ndarray | None = None

    @property
    def label(self) -> str:
        return f"filter:{self.params.family}:{self.params.mode}"

    @property
    def state_length(self) -> int:
        return max(self._b.size, self._a.size) - 1

    def process(self, buffer: np.ndarray, ctx: StageContext) -> np.ndarray:
        require_channels(self, buffer, ctx.channels)
        if self.state_length == 0:
            buffer *= self._b[0] / self._a[0]
            return buffer
        if self._zi is None or self._zi.shape != (ctx.channels, self.state_length):
            self._zi = np.zeros((ctx.channels, self.state_length))
        frames = deinterleave(buffer, ctx.channels)
        if frames.shape[0] == 0:
            return buffer
        filtered, self._zi = signal.lfilter(self._b, self._a, frames, axis=0, zi=self._zi.T)
        self._zi = self._zi.T
        frames[:] = filtered
        return buffer

    def get_state(self) -> dict[str, Any]:
        return {
            "numCoefficients": int(self._b.size),
            "numDenominator": int(self._a.size),
            "zi": self._zi.tolist() if self._zi is not None else None,
        }

    def set_state(self, state: Mapping[str, Any]) -> None:
        self._check_param(state, "numCoefficients", int(self._b.size))
        self._check_param(state, "numDenominator", int(self._a.size))
        zi = state.get("zi")
        if zi is None:
            self._zi = None
            return
        arr = np.asarray(zi, dtype=float)
        if arr.ndim != 2 or arr.shape[1] != self.state_length:
            raise StateError(f"filter: saved state shape {arr.shape} does not match filter length {self.state_length}")
        self._zi = arr

    def reset(self) -> None:
        self._zi = None

    def summary(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "family": self.params.family,
            "mode": self.params.mode,
            "numChannels": 0 if self._zi is None else int(self._zi.shape[0]),
        }
