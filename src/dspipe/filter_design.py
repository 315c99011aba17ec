"""Coefficient design for FIR, Butterworth, Chebyshev and biquad filters."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Literal, Mapping

import numpy as np
from pydantic import ValidationError
from scipy import signal

from .errors import ConfigurationError
from .models import StageParams

logger = logging.getLogger(__name__)

FilterFamily = Literal["fir", "butterworth", "chebyshev", "biquad"]
FilterMode = Literal["lowpass", "highpass", "bandpass", "bandstop", "notch", "peak", "lowshelf", "highshelf"]

SUPPORTED_MODES: dict[str, tuple[str, ...]] = {
    "fir": ("lowpass", "highpass", "bandpass", "bandstop", "notch"),
    "butterworth": ("lowpass", "highpass", "bandpass", "bandstop"),
    "chebyshev": ("lowpass", "highpass", "bandpass", "bandstop"),
    "biquad": ("lowpass", "highpass", "bandpass", "notch", "peak", "lowshelf", "highshelf"),
}

DEFAULT_ORDER = {"fir": 51, "butterworth": 4, "chebyshev": 4, "biquad": 2}
BAND_MODES = {"bandpass", "bandstop"}


class FilterSpec(StageParams):
    """Frequency-domain description of a filter."""

    family: FilterFamily
    mode: FilterMode
    sample_rate: float | None = None
    cutoff_frequency: float | None = None
    low_cutoff_frequency: float | None = None
    high_cutoff_frequency: float | None = None
    order: int | None = None
    ripple: float = 0.5
    q: float = 0.707
    gain: float = 0.0
    window_type: str = "hamming"


@dataclass(frozen=True)
class FilterCoefficients:
    """Transfer function ``b / a``. ``a == [1.0]`` for FIR designs."""

    b: np.ndarray
    a: np.ndarray
    family: str
    mode: str

    @property
    def is_fir(self) -> bool:
        return self.a.size == 1

    def as_dict(self) -> dict[str, Any]:
        return {"family": self.family, "mode": self.mode, "b": self.b.tolist(), "a": self.a.tolist()}


def _fail(family: str, mode: str, detail: str) -> ConfigurationError:
    return ConfigurationError(f"Failed to create {family} filter (mode: {mode}): {detail}")


def _missing_parameters(spec: FilterSpec) -> list[str]:
    missing: list[str] = []
    if spec.sample_rate is None:
        missing.append("sampleRate")
    if spec.mode in BAND_MODES:
        if spec.low_cutoff_frequency is None:
            missing.append("lowCutoffFrequency")
        if spec.high_cutoff_frequency is None:
            missing.append("highCutoffFrequency")
    elif spec.mode == "notch" and spec.family == "fir":
        has_band = spec.low_cutoff_frequency is not None and spec.high_cutoff_frequency is not None
        if spec.cutoff_frequency is None and not has_band:
            missing.append("cutoffFrequency (or lowCutoffFrequency/highCutoffFrequency)")
    elif spec.cutoff_frequency is None:
        missing.append("cutoffFrequency")
    return missing


def _check_frequencies(spec: FilterSpec, *freqs: float) -> None:
    nyquist = spec.sample_rate / 2.0  # type: ignore[operator]
    for freq in freqs:
        if not 0.0 < freq < nyquist:
            raise _fail(spec.family, spec.mode, f"frequency {freq} Hz must lie in (0, {nyquist}) for sampleRate {spec.sample_rate}")
    if len(freqs) == 2 and freqs[0] >= freqs[1]:
        raise _fail(spec.family, spec.mode, "lowCutoffFrequency must be below highCutoffFrequency")


def _notch_band(spec: FilterSpec) -> tuple[float, float]:
    if spec.low_cutoff_frequency is not None and spec.high_cutoff_frequency is not None:
        return spec.low_cutoff_frequency, spec.high_cutoff_frequency
    center = float(spec.cutoff_frequency)  # type: ignore[arg-type]
    half_width = center / spec.q / 2.0
    return center - half_width, center + half_width


def _design_fir(spec: FilterSpec, order: int) -> tuple[np.ndarray, np.ndarray]:
    if order < 3 or order % 2 == 0:
        raise _fail(spec.family, spec.mode, f"order must be odd and >= 3, got {order}")
    if spec.mode in {"lowpass", "highpass"}:
        cutoff: float | list[float] = float(spec.cutoff_frequency)  # type: ignore[arg-type]
        _check_frequencies(spec, cutoff)  # type: ignore[arg-type]
        pass_zero: bool | str = spec.mode == "lowpass"
    else:
        low, high = _notch_band(spec) if spec.mode == "notch" else (spec.low_cutoff_frequency, spec.high_cutoff_frequency)
        _check_frequencies(spec, low, high)  # type: ignore[arg-type]
        cutoff = [low, high]  # type: ignore[list-item]
        pass_zero = spec.mode != "bandpass"
    try:
        b = signal.firwin(order, cutoff, window=spec.window_type, pass_zero=pass_zero, fs=spec.sample_rate)
    except ValueError as exc:
        raise _fail(spec.family, spec.mode, str(exc)) from exc
    return np.asarray(b, dtype=float), np.array([1.0])


def _design_iir(spec: FilterSpec, order: int) -> tuple[np.ndarray, np.ndarray]:
    if order < 1:
        raise _fail(spec.family, spec.mode, f"order must be >= 1, got {order}")
    if spec.mode in BAND_MODES:
        wn: float | list[float] = [spec.low_cutoff_frequency, spec.high_cutoff_frequency]  # type: ignore[list-item]
        _check_frequencies(spec, *wn)  # type: ignore[misc]
    else:
        wn = float(spec.cutoff_frequency)  # type: ignore[arg-type]
        _check_frequencies(spec, wn)
    if spec.family == "chebyshev":
        if spec.ripple <= 0:
            raise _fail(spec.family, spec.mode, f"ripple must be positive, got {spec.ripple}")
        b, a = signal.cheby1(order, spec.ripple, wn, btype=spec.mode, fs=spec.sample_rate)
    else:
        b, a = signal.butter(order, wn, btype=spec.mode, fs=spec.sample_rate)
    return np.asarray(b, dtype=float), np.asarray(a, dtype=float)


def _design_biquad(spec: FilterSpec) -> tuple[np.ndarray, np.ndarray]:
    """RBJ audio-EQ cookbook biquads."""
    if spec.q <= 0:
        raise _fail(spec.family, spec.mode, f"q must be positive, got {spec.q}")
    q = spec.q
    if spec.mode == "bandpass":
        low, high = float(spec.low_cutoff_frequency), float(spec.high_cutoff_frequency)  # type: ignore[arg-type]
        _check_frequencies(spec, low, high)
        f0 = math.sqrt(low * high)
        q = f0 / (high - low)
    else:
        f0 = float(spec.cutoff_frequency)  # type: ignore[arg-type]
        _check_frequencies(spec, f0)

    w0 = 2.0 * math.pi * f0 / float(spec.sample_rate)  # type: ignore[arg-type]
    cos_w0 = math.cos(w0)
    alpha = math.sin(w0) / (2.0 * q)
    amp = 10.0 ** (spec.gain / 40.0)
    sqrt_amp_alpha = 2.0 * math.sqrt(amp) * alpha

    if spec.mode == "lowpass":
        b = [(1 - cos_w0) / 2, 1 - cos_w0, (1 - cos_w0) / 2]
        a = [1 + alpha, -2 * cos_w0, 1 - alpha]
    elif spec.mode == "highpass":
        b = [(1 + cos_w0) / 2, -(1 + cos_w0), (1 + cos_w0) / 2]
        a = [1 + alpha, -2 * cos_w0, 1 - alpha]
    elif spec.mode == "bandpass":
        b = [alpha, 0.0, -alpha]
        a = [1 + alpha, -2 * cos_w0, 1 - alpha]
    elif spec.mode == "notch":
        b = [1.0, -2 * cos_w0, 1.0]
        a = [1 + alpha, -2 * cos_w0, 1 - alpha]
    elif spec.mode == "peak":
        b = [1 + alpha * amp, -2 * cos_w0, 1 - alpha * amp]
        a = [1 + alpha / amp, -2 * cos_w0, 1 - alpha / amp]
    elif spec.mode == "lowshelf":
        b = [
            amp * ((amp + 1) - (amp - 1) * cos_w0 + sqrt_amp_alpha),
            2 * amp * ((amp - 1) - (amp + 1) * cos_w0),
            amp * ((amp + 1) - (amp - 1) * cos_w0 - sqrt_amp_alpha),
        ]
        a = [
            (amp + 1) + (amp - 1) * cos_w0 + sqrt_amp_alpha,
            -2 * ((amp - 1) + (amp + 1) * cos_w0),
            (amp + 1) + (amp - 1) * cos_w0 - sqrt_amp_alpha,
        ]
    else:
        b = [
            amp * ((amp + 1) + (amp - 1) * cos_w0 + sqrt_amp_alpha),
            -2 * amp * ((amp - 1) + (amp + 1) * cos_w0),
            amp * ((amp + 1) + (amp - 1) * cos_w0 - sqrt_amp_alpha),
        ]
        a = [
            (amp + 1) - (amp - 1) * cos_w0 + sqrt_amp_alpha,
            2 * ((amp - 1) - (amp + 1) * cos_w0),
            (amp + 1) - (amp - 1) * cos_w0 - sqrt_amp_alpha,
        ]
    b_arr = np.asarray(b, dtype=float)
    a_arr = np.asarray(a, dtype=float)
    return b_arr / a_arr[0], a_arr / a_arr[0]


def design_filter(family: str, mode: str, **params: Any) -> FilterCoefficients:
    """Produce ``(b, a)`` coefficients for a filter family and response mode.

    Raises ``ConfigurationError`` naming the family, the mode and any missing
    parameter when the request cannot be satisfied.
    """

    family = str(family).lower() if family else ""
    mode = str(mode).lower() if mode else ""
    if not family or not mode:
        raise ConfigurationError("Filter design requires both 'type' (family) and 'mode'")
    if family not in SUPPORTED_MODES:
        raise ConfigurationError(f"Unknown filter type '{family}'. Available: {sorted(SUPPORTED_MODES)}")
    if mode not in SUPPORTED_MODES[family]:
        raise _fail(family, mode, f"mode not supported. Supported modes: {list(SUPPORTED_MODES[family])}")

    try:
        spec = FilterSpec.model_validate({"family": family, "mode": mode, **params})
    except ValidationError as exc:
        first = exc.errors()[0]
        field_name = ".".join(str(p) for p in first.get("loc", ()))
        raise _fail(family, mode, f"invalid parameter {field_name}: {first.get('msg')}") from exc

    missing = _missing_parameters(spec)
    if missing:
        raise _fail(
            family,
            mode,
            f"missing required parameter(s) {', '.join(missing)}. Check that all required parameters are provided",
        )
    if spec.sample_rate is not None and spec.sample_rate <= 0:
        raise _fail(family, mode, f"sampleRate must be positive, got {spec.sample_rate}")

    order = spec.order if spec.order is not None else DEFAULT_ORDER[family]
    if family == "fir":
        b, a = _design_fir(spec, order)
    elif family == "biquad":
        b, a = _design_biquad(spec)
    else:
        b, a = _design_iir(spec, order)
    logger.debug("designed %s %s filter with %d/%d coefficients", family, mode, b.size, a.size)
    return FilterCoefficients(b=b, a=a, family=family, mode=mode)


def coefficients_from_mapping(cfg: Mapping[str, Any]) -> FilterCoefficients:
    """Design from a ``{"type": family, "mode": ..., ...}`` mapping."""
    params = {k: v for k, v in cfg.items() if k not in {"type", "family", "mode"}}
    return design_filter(str(cfg.get("type") or cfg.get("family") or ""), str(cfg.get("mode") or ""), **params)
