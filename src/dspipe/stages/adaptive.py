"""
Adaptive filter stages (LMS/NLMS and RLS).

Both stages read two interleaved channels per frame: channel 0 is the primary
input x[n] feeding the delay line and channel 1 is the desired signal d[n].

Filter Model:
    y[n] = w^T @ x[n]
    e[n] = d[n] - y[n]

The error e[n] is written back to both channels of the frame.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

import numpy as np
from pydantic import AliasChoices, Field, field_validator

from ..errors import ExecutionError, StateError
from ..models import StageParams
from .base import Stage, StageContext, StageKind, deinterleave, require_channels

NLMS_EPSILON = 1e-8


def _positive_taps(value: int) -> int:
    if value <= 0:
        raise ValueError(f"numTaps must be a positive integer, got {value}")
    return value


class LmsParams(StageParams):
    num_taps: int
    learning_rate: float = Field(
        default=0.01,
        validation_alias=AliasChoices("learning_rate", "learningRate", "mu"),
    )
    normalized: bool = False
    lambda_: float = Field(default=0.0, alias="lambda")

    @field_validator("num_taps")
    @classmethod
    def _check_taps(cls, value: int) -> int:
        return _positive_taps(value)

    @field_validator("learning_rate")
    @classmethod
    def _rate_range(cls, value: float) -> float:
        if not 0.0 < value <= 1.0:
            raise ValueError(f"learningRate must be in (0, 1], got {value}")
        return value

    @field_validator("lambda_")
    @classmethod
    def _leak_range(cls, value: float) -> float:
        if not 0.0 <= value < 1.0:
            raise ValueError(f"lambda must be in [0, 1), got {value}")
        return value


class RlsParams(StageParams):
    num_taps: int
    lambda_: float = Field(alias="lambda")
    delta: float = Field(default=0.01, description="Initial inverse covariance is I / delta")

    @field_validator("num_taps")
    @classmethod
    def _check_taps(cls, value: int) -> int:
        return _positive_taps(value)

    @field_validator("lambda_")
    @classmethod
    def _forgetting_range(cls, value: float) -> float:
        if not 0.0 < value <= 1.0:
            raise ValueError(f"lambda must be in (0, 1], got {value}")
        return value

    @field_validator("delta")
    @classmethod
    def _positive_delta(cls, value: float) -> float:
        if value <= 0:
            raise ValueError(f"delta must be > 0, got {value}")
        return value


@dataclass
class LmsCore:
    """
    Least Mean Squares adaptive filter with optional normalization and leakage.

    Update rule:
        w[n+1] = (1 - mu * leak) * w[n] + mu_n * e[n] * x[n]

    where mu_n = mu for plain LMS and mu / (||x||^2 + eps) for NLMS.
    """

    n_taps: int
    mu: float = 0.01
    normalized: bool = False
    leak: float = 0.0
    w: np.ndarray = field(default_factory=lambda: np.array([]))
    x_buffer: np.ndarray = field(default_factory=lambda: np.array([]))

    def __post_init__(self) -> None:
        if self.w.size == 0:
            self.w = np.zeros(self.n_taps, dtype=np.float64)
        if self.x_buffer.size == 0:
            self.x_buffer = np.zeros(self.n_taps, dtype=np.float64)

    def reset(self) -> None:
        self.w = np.zeros(self.n_taps, dtype=np.float64)
        self.x_buffer = np.zeros(self.n_taps, dtype=np.float64)

    def update(self, x: float, d: float) -> float:
        self.x_buffer = np.roll(self.x_buffer, 1)
        self.x_buffer[0] = x
        y = float(np.dot(self.w, self.x_buffer))
        e = d - y
        step = self.mu
        if self.normalized:
            step = self.mu / (float(np.dot(self.x_buffer, self.x_buffer)) + NLMS_EPSILON)
        self.w = (1.0 - self.mu * self.leak) * self.w + step * e * self.x_buffer
        return e


@dataclass
class RlsCore:
    """
    Recursive Least Squares adaptive filter.

    Update rules:
        k[n] = P[n-1] @ x[n] / (lambda + x[n]^T @ P[n-1] @ x[n])
        e[n] = d[n] - w[n-1]^T @ x[n]
        w[n] = w[n-1] + k[n] * e[n]
        P[n] = (P[n-1] - k[n] @ x[n]^T @ P[n-1]) / lambda

    P[0] = I / delta. Cost is O(n_taps^2) per sample.
    """

    n_taps: int
    lambda_: float = 0.99
    delta: float = 0.01
    w: np.ndarray = field(default_factory=lambda: np.array([]))
    P: np.ndarray = field(default_factory=lambda: np.array([]))
    x_buffer: np.ndarray = field(default_factory=lambda: np.array([]))

    def __post_init__(self) -> None:
        if self.w.size == 0:
            self.w = np.zeros(self.n_taps, dtype=np.float64)
        if self.P.size == 0:
            self.P = self.initial_covariance()
        if self.x_buffer.size == 0:
            self.x_buffer = np.zeros(self.n_taps, dtype=np.float64)

    def initial_covariance(self) -> np.ndarray:
        # Small delta means a large P[0] and fast early adaptation.
        return np.eye(self.n_taps, dtype=np.float64) / self.delta

    def reset(self) -> None:
        self.w = np.zeros(self.n_taps, dtype=np.float64)
        self.P = self.initial_covariance()
        self.x_buffer = np.zeros(self.n_taps, dtype=np.float64)

    def update(self, x: float, d: float) -> float:
        self.x_buffer = np.roll(self.x_buffer, 1)
        self.x_buffer[0] = x
        px = self.P @ self.x_buffer
        k = px / (self.lambda_ + float(self.x_buffer @ px))
        e = d - float(np.dot(self.w, self.x_buffer))
        self.w = self.w + k * e
        self.P = (self.P - np.outer(k, self.x_buffer @ self.P)) / self.lambda_
        return e


class _AdaptiveStage(Stage):
    core: LmsCore | RlsCore

    def process(self, buffer: np.ndarray, ctx: StageContext) -> np.ndarray:
        if ctx.channels != 2:
            raise ExecutionError(
                f"{self.kind.value} requires exactly 2 channels (primary, desired), got {ctx.channels}"
            )
        require_channels(self, buffer, ctx.channels)
        frames = deinterleave(buffer, 2)
        for i in range(frames.shape[0]):
            e = self.core.update(float(frames[i, 0]), float(frames[i, 1]))
            frames[i, 0] = e
            frames[i, 1] = e
        return buffer

    def reset(self) -> None:
        self.core.reset()

    def _restore_vector(self, state: Mapping[str, Any], key: str, shape: tuple[int, ...]) -> np.ndarray:
        arr = np.asarray(state.get(key, []), dtype=np.float64)
        if arr.shape != shape:
            raise StateError(f"{self.kind.value}: {key} has shape {arr.shape}, expected {shape}")
        return arr


class LmsFilterStage(_AdaptiveStage):
    kind = StageKind.LMS_FILTER
    params: LmsParams

    def __init__(self, params: LmsParams) -> None:
        super().__init__(params)
        self.core = LmsCore(
            n_taps=params.num_taps,
            mu=params.learning_rate,
            normalized=params.normalized,
            leak=params.lambda_,
        )

    @property
    def label(self) -> str:
        prefix = "nlmsFilter" if self.params.normalized else "lmsFilter"
        return f"{prefix}:{self.params.num_taps}taps"

    def get_state(self) -> dict[str, Any]:
        return {
            "numTaps": self.params.num_taps,
            "learningRate": self.params.learning_rate,
            "normalized": self.params.normalized,
            "weights": self.core.w.tolist(),
            "buffer": self.core.x_buffer.tolist(),
        }

    def set_state(self, state: Mapping[str, Any]) -> None:
        self._check_param(state, "numTaps", self.params.num_taps)
        taps = (self.params.num_taps,)
        weights = self._restore_vector(state, "weights", taps)
        history = self._restore_vector(state, "buffer", taps)
        self.core.w = weights
        self.core.x_buffer = history

    def summary(self) -> dict[str, Any]:
        return {"type": self.kind.value, "numTaps": self.params.num_taps, "numChannels": 2}


class RlsFilterStage(_AdaptiveStage):
    kind = StageKind.RLS_FILTER
    params: RlsParams

    def __init__(self, params: RlsParams) -> None:
        super().__init__(params)
        self.core = RlsCore(n_taps=params.num_taps, lambda_=params.lambda_, delta=params.delta)

    @property
    def label(self) -> str:
        return f"rlsFilter:{self.params.num_taps}taps:λ={self.params.lambda_}"

    def get_state(self) -> dict[str, Any]:
        return {
            "numTaps": self.params.num_taps,
            "lambda": self.params.lambda_,
            "delta": self.params.delta,
            "weights": self.core.w.tolist(),
            "inverseCovariance": self.core.P.tolist(),
            "buffer": self.core.x_buffer.tolist(),
        }

    def set_state(self, state: Mapping[str, Any]) -> None:
        self._check_param(state, "numTaps", self.params.num_taps)
        self._check_param(state, "lambda", self.params.lambda_)
        self._check_param(state, "delta", self.params.delta)
        n = self.params.num_taps
        weights = self._restore_vector(state, "weights", (n,))
        cov = self._restore_vector(state, "inverseCovariance", (n, n))
        history = self._restore_vector(state, "buffer", (n,))
        self.core.w, self.core.P, self.core.x_buffer = weights, cov, history

    def summary(self) -> dict[str, Any]:
        return {"type": self.kind.value, "numTaps": self.params.num_taps, "numChannels": 2}
