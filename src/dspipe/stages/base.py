"""Stage contract shared by every pipeline stage."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Mapping

import numpy as np

from ..errors import ExecutionError, StateError
from ..models import StageParams


class StageKind(str, Enum):
    """Every stage type the pipeline can dispatch to."""

    MOVING_AVERAGE = "movingAverage"
    RMS = "rms"
    RECTIFY = "rectify"
    VARIANCE = "variance"
    Z_SCORE_NORMALIZE = "zScoreNormalize"
    MEAN_ABSOLUTE_VALUE = "meanAbsoluteValue"
    WAVEFORM_LENGTH = "waveformLength"
    SLOPE_SIGN_CHANGE = "slopeSignChange"
    WILLISON_AMPLITUDE = "willisonAmplitude"
    DIFFERENTIATOR = "differentiator"
    INTEGRATOR = "integrator"
    CLIP_DETECTION = "clipDetection"
    PEAK_DETECTION = "peakDetection"
    FILTER = "filter"
    LMS_FILTER = "lmsFilter"
    RLS_FILTER = "rlsFilter"
    INTERPOLATE = "interpolate"
    DECIMATE = "decimate"
    RESAMPLE = "resample"
    CONVOLUTION = "convolution"
    WAVELET_TRANSFORM = "waveletTransform"
    HILBERT_ENVELOPE = "hilbertEnvelope"
    LINEAR_REGRESSION_SLOPE = "linearRegressionSlope"
    LINEAR_REGRESSION_INTERCEPT = "linearRegressionIntercept"
    LINEAR_REGRESSION_RESIDUALS = "linearRegressionResiduals"
    LINEAR_REGRESSION_PREDICTIONS = "linearRegressionPredictions"
    CHANNEL_SELECT = "channelSelect"
    CHANNEL_SELECTOR = "channelSelector"
    CHANNEL_MERGE = "channelMerge"
    AMPLIFY = "amplify"
    SQUARE = "square"
    EXPONENTIAL_MOVING_AVERAGE = "exponentialMovingAverage"
    CUMULATIVE_MOVING_AVERAGE = "cumulativeMovingAverage"
    SNR = "snr"


@dataclass
class StageContext:
    """Per-call information handed to each stage."""

    channels: int
    timestamps: np.ndarray
    sample_rate: float | None = None
    extras: dict[str, Any] = field(default_factory=dict)


class Stage(ABC):
    """A pipeline stage: validated parameters plus private runtime state."""

    kind: ClassVar[StageKind]
    changes_rate: ClassVar[bool] = False

    def __init__(self, params: StageParams) -> None:
        self.params = params

    @property
    def label(self) -> str:
        return self.kind.value

    @abstractmethod
    def process(self, buffer: np.ndarray, ctx: StageContext) -> np.ndarray:
        """Return the stage output. Same-rate stages write into ``buffer``."""

    def get_state(self) -> dict[str, Any]:
        return {}

    def set_state(self, state: Mapping[str, Any]) -> None:
        ...

    def reset(self) -> None:
        ...

    def summary(self) -> dict[str, Any]:
        return {"type": self.kind.value}

    def describe(self) -> Mapping[str, object]:
        return {"type": self.kind.value, **self.params.describe()}

    def _check_param(self, state: Mapping[str, Any], key: str, expected: Any) -> None:
        if key in state and state[key] != expected:
            raise StateError(f"{self.kind.value}: {key} mismatch (saved {state[key]!r}, configured {expected!r})")


def require_channels(stage: Stage, buffer: np.ndarray, channels: int) -> int:
    """Validate the interleaved layout and return samples per channel."""
    if channels <= 0:
        raise ExecutionError(f"{stage.kind.value}: channels must be positive, got {channels}")
    if buffer.size % channels:
        raise ExecutionError(
            f"{stage.kind.value}: buffer length {buffer.size} is not a multiple of {channels} channels"
        )
    return buffer.size // channels


def deinterleave(buffer: np.ndarray, channels: int) -> np.ndarray:
    """View the interleaved buffer as a (samples, channels) matrix."""
    return buffer.reshape(-1, channels)
