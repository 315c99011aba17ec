"""Convolution, wavelet decomposition and Hilbert envelope stages."""

from __future__ import annotations

from collections import deque
from typing import Any, List, Literal, Mapping

import numpy as np
import pywt
from pydantic import field_validator, model_validator
from scipy import signal

from ..errors import StateError
from ..models import StageParams
from .base import Stage, StageContext, StageKind, deinterleave, require_channels

WAVELETS = ("haar",) + tuple(f"db{i}" for i in range(1, 11))
DEFAULT_AUTO_THRESHOLD = 64


class ConvolutionParams(StageParams):
    kernel: List[float]
    mode: Literal["moving", "batch"] = "moving"
    method: Literal["auto", "direct", "fft"] = "auto"
    auto_threshold: int = DEFAULT_AUTO_THRESHOLD

    @field_validator("kernel")
    @classmethod
    def _non_empty(cls, value: List[float]) -> List[float]:
        if not value:
            raise ValueError("kernel must be a non-empty sequence")
        return value

    @field_validator("auto_threshold")
    @classmethod
    def _positive_threshold(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("autoThreshold must be positive")
        return value


class ConvolutionStage(Stage):
    """Causal streaming convolution (moving) or per-call same-length convolution (batch)."""

    kind = StageKind.CONVOLUTION
    params: ConvolutionParams

    def __init__(self, params: ConvolutionParams) -> None:
        super().__init__(params)
        self._kernel = np.asarray(params.kernel, dtype=float)
        self._history: np.ndarray | None = None

    @property
    def method(self) -> str:
        if self.params.method != "auto":
            return self.params.method
        return "fft" if self._kernel.size > self.params.auto_threshold else "direct"

    @property
    def label(self) -> str:
        return f"convolution:{self.params.mode}:{self.method}:{self._kernel.size}"

    def process(self, buffer: np.ndarray, ctx: StageContext) -> np.ndarray:
        require_channels(self, buffer, ctx.channels)
        frames = deinterleave(buffer, ctx.channels)
        if frames.shape[0] == 0:
            return buffer
        method = self.method
        if self.params.mode == "batch":
            for ch in range(ctx.channels):
                frames[:, ch] = signal.convolve(frames[:, ch], self._kernel, mode="same", method=method)
            return buffer

        tail = self._kernel.size - 1
        if self._history is None or self._history.shape != (tail, ctx.channels):
            self._history = np.zeros((tail, ctx.channels))
        extended = np.concatenate([self._history, frames], axis=0)
        for ch in range(ctx.channels):
            frames[:, ch] = signal.convolve(extended[:, ch], self._kernel, mode="valid", method=method)
        self._history = extended[extended.shape[0] - tail :].copy() if tail else extended[:0].copy()
        return buffer

    def get_state(self) -> dict[str, Any]:
        return {
            "mode": self.params.mode,
            "kernelLength": int(self._kernel.size),
            "history": self._history.tolist() if self._history is not None else None,
            "numChannels": 0 if self._history is None else int(self._history.shape[1]),
        }

    def set_state(self, state: Mapping[str, Any]) -> None:
        self._check_param(state, "mode", self.params.mode)
        self._check_param(state, "kernelLength", int(self._kernel.size))
        history = state.get("history")
        if history is None:
            self._history = None
            return
        try:
            arr = np.asarray(history, dtype=float).reshape(self._kernel.size - 1, int(state.get("numChannels", 1)))
        except ValueError as exc:
            raise StateError(f"convolution: saved history does not fit kernel length {self._kernel.size}") from exc
        self._history = arr

    def reset(self) -> None:
        self._history = None

    def summary(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "mode": self.params.mode,
            "kernelLength": int(self._kernel.size),
            "numChannels": 0 if self._history is None else int(self._history.shape[1]),
        }


class WaveletParams(StageParams):
    wavelet: str

    @field_validator("wavelet")
    @classmethod
    def _known_wavelet(cls, value: str) -> str:
        if value not in WAVELETS:
            raise ValueError(f"Unknown wavelet '{value}'. Available: {list(WAVELETS)}")
        return value


class WaveletTransformStage(Stage):
    """Single-level DWT per channel; writes ``[approx | detail]`` back at the input length."""

    kind = StageKind.WAVELET_TRANSFORM
    params: WaveletParams

    @property
    def label(self) -> str:
        return f"waveletTransform:{self.params.wavelet}"

    def process(self, buffer: np.ndarray, ctx: StageContext) -> np.ndarray:
        require_channels(self, buffer, ctx.channels)
        frames = deinterleave(buffer, ctx.channels)
        length = frames.shape[0]
        if length == 0:
            return buffer
        for ch in range(ctx.channels):
            approx, detail = pywt.dwt(frames[:, ch], self.params.wavelet, mode="symmetric")
            coeffs = np.concatenate([approx, detail])
            column = np.zeros(length)
            take = min(length, coeffs.size)
            column[:take] = coeffs[:take]
            frames[:, ch] = column
        return buffer

    def summary(self) -> dict[str, Any]:
        return {"type": self.kind.value, "wavelet": self.params.wavelet}


class HilbertParams(StageParams):
    window_size: int
    hop_size: int | None = None

    @field_validator("window_size")
    @classmethod
    def _positive_window(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("HilbertEnvelope: window size must be greater than 0")
        return value

    @model_validator(mode="after")
    def _hop_in_range(self) -> "HilbertParams":
        hop = self.resolved_hop
        if not 1 <= hop <= self.window_size:
            raise ValueError(f"HilbertEnvelope: hop size must be between 1 and window_size, got {hop}")
        return self

    @property
    def resolved_hop(self) -> int:
        return self.hop_size if self.hop_size is not None else self.window_size // 2


class _HilbertChannel:
    def __init__(self, window_size: int) -> None:
        self.ring: deque[float] = deque(maxlen=window_size)
        self.since_output = 0
        self.envelope: float | None = None


class HilbertEnvelopeStage(Stage):
    """Sliding-window analytic-signal magnitude.

    Every ``hop_size`` samples over a full window the envelope is recomputed and
    its value at the window end is held until the next hop. Before the first full
    window the output is ``|x|``.
    """

    kind = StageKind.HILBERT_ENVELOPE
    params: HilbertParams

    def __init__(self, params: HilbertParams) -> None:
        super().__init__(params)
        self._channels: list[_HilbertChannel] = []

    @property
    def label(self) -> str:
        return f"hilbertEnvelope:win{self.params.window_size}:hop{self.params.resolved_hop}"

    def process(self, buffer: np.ndarray, ctx: StageContext) -> np.ndarray:
        require_channels(self, buffer, ctx.channels)
        if len(self._channels) != ctx.channels:
            self._channels = [_HilbertChannel(self.params.window_size) for _ in range(ctx.channels)]
        frames = deinterleave(buffer, ctx.channels)
        window_size = self.params.window_size
        hop = self.params.resolved_hop
        for ch, state in enumerate(self._channels):
            column = frames[:, ch]
            for i in range(column.shape[0]):
                sample = float(column[i])
                state.ring.append(sample)
                state.since_output += 1
                if len(state.ring) >= window_size and state.since_output >= hop:
                    analytic = signal.hilbert(np.fromiter(state.ring, dtype=float, count=window_size))
                    state.envelope = float(np.abs(analytic[-1]))
                    state.since_output = 0
                column[i] = state.envelope if state.envelope is not None else abs(sample)
        return buffer

    def get_state(self) -> dict[str, Any]:
        return {
            "windowSize": self.params.window_size,
            "hopSize": self.params.resolved_hop,
            "channels": [
                {"buffer": list(c.ring), "samplesSinceOutput": c.since_output, "envelope": c.envelope}
                for c in self._channels
            ],
        }

    def set_state(self, state: Mapping[str, Any]) -> None:
        self._check_param(state, "windowSize", self.params.window_size)
        self._check_param(state, "hopSize", self.params.resolved_hop)
        restored = []
        for channel_state in state.get("channels", []):
            values = [float(v) for v in channel_state.get("buffer", [])]
            if len(values) > self.params.window_size:
                raise StateError(f"hilbertEnvelope: buffer holds {len(values)} samples, window is {self.params.window_size}")
            channel = _HilbertChannel(self.params.window_size)
            channel.ring.extend(values)
            channel.since_output = int(channel_state.get("samplesSinceOutput", 0))
            envelope = channel_state.get("envelope")
            channel.envelope = float(envelope) if envelope is not None else None
            restored.append(channel)
        self._channels = restored

    def reset(self) -> None:
        self._channels = []

    def summary(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "windowSize": self.params.window_size,
            "hopSize": self.params.resolved_hop,
            "numChannels": len(self._channels),
        }
