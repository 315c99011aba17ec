from __future__ import annotations

import numpy as np
import pytest
from scipy import signal

from dspipe import ConfigurationError, create_dsp_pipeline, design_filter


def test_butterworth_lowpass_matches_scipy() -> None:
    coeffs = design_filter("butterworth", "lowpass", cutoff_frequency=50, sample_rate=1000, order=4)
    b, a = signal.butter(4, 50, btype="lowpass", fs=1000)
    assert np.allclose(coeffs.b, b)
    assert np.allclose(coeffs.a, a)
    assert not coeffs.is_fir


def test_fir_has_unit_denominator() -> None:
    coeffs = design_filter("fir", "lowpass", cutoffFrequency=1000, sampleRate=8000, order=51)
    assert coeffs.a.tolist() == [1.0]
    assert coeffs.b.size == 51
    assert coeffs.is_fir


def test_fir_notch_attenuates_center() -> None:
    coeffs = design_filter("fir", "notch", low_cutoff_frequency=40, high_cutoff_frequency=60, sample_rate=1000, order=301)
    _, response = signal.freqz(coeffs.b, coeffs.a, worN=[50.0, 200.0], fs=1000)
    assert abs(response[0]) < 0.5
    assert abs(response[1]) > 0.9


def test_chebyshev_uses_default_ripple() -> None:
    coeffs = design_filter("chebyshev", "highpass", cutoff_frequency=100, sample_rate=1000)
    b, a = signal.cheby1(4, 0.5, 100, btype="highpass", fs=1000)
    assert np.allclose(coeffs.b, b)
    assert np.allclose(coeffs.a, a)


@pytest.mark.parametrize("mode", ["peak", "lowshelf", "highshelf"])
def test_biquad_with_zero_gain_is_identity(mode: str) -> None:
    coeffs = design_filter("biquad", mode, cutoff_frequency=1000, sample_rate=48000)
    assert np.allclose(coeffs.b, coeffs.a)


def test_biquad_peak_boosts_center() -> None:
    coeffs = design_filter("biquad", "peak", cutoff_frequency=1000, sample_rate=48000, gain=6.0, q=1.0)
    _, response = signal.freqz(coeffs.b, coeffs.a, worN=[1000.0], fs=48000)
    assert 20 * np.log10(abs(response[0])) == pytest.approx(6.0, abs=0.05)


def test_missing_sample_rate_names_family_mode_and_parameter() -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        design_filter("butterworth", "lowpass", cutoff_frequency=50)
    message = str(excinfo.value)
    assert "butterworth" in message
    assert "lowpass" in message
    assert "sampleRate" in message


def test_band_modes_require_both_cutoffs() -> None:
    with pytest.raises(ConfigurationError, match="highCutoffFrequency"):
        design_filter("fir", "bandpass", low_cutoff_frequency=10, sample_rate=1000)


def test_unsupported_combination_lists_supported_modes() -> None:
    with pytest.raises(ConfigurationError, match="Supported modes"):
        design_filter("butterworth", "peak", cutoff_frequency=10, sample_rate=1000)


def test_unknown_family_and_missing_mode() -> None:
    with pytest.raises(ConfigurationError, match="Unknown filter type"):
        design_filter("elliptic", "lowpass", cutoff_frequency=10, sample_rate=1000)
    with pytest.raises(ConfigurationError):
        design_filter("fir", "", cutoff_frequency=10, sample_rate=1000)


def test_fir_even_order_and_cutoff_above_nyquist_rejected() -> None:
    with pytest.raises(ConfigurationError, match="odd"):
        design_filter("fir", "highpass", cutoff_frequency=100, sample_rate=1000, order=50)
    with pytest.raises(ConfigurationError, match="fir"):
        design_filter("fir", "lowpass", cutoff_frequency=600, sample_rate=1000)


def test_unknown_parameter_rejected() -> None:
    with pytest.raises(ConfigurationError, match="invalid parameter"):
        design_filter("fir", "lowpass", cutoff_frequency=100, sample_rate=1000, bandwidth=3)


def test_filter_stage_streams_like_one_shot_lfilter() -> None:
    rng = np.random.default_rng(7)
    data = rng.standard_normal(400)
    b, a = signal.butter(4, 50, btype="lowpass", fs=1000)
    expected = signal.lfilter(b, a, data)

    pipeline = create_dsp_pipeline().filter("butterworth", "lowpass", cutoff_frequency=50, sample_rate=1000, order=4)
    assert pipeline.stages == ["filter:butterworth:lowpass"]
    first = pipeline.process_sync(data[:150].copy())
    second = pipeline.process_sync(data[150:].copy())
    assert np.allclose(np.concatenate([first, second]), expected)


def test_filter_stage_keeps_channels_independent() -> None:
    pipeline = create_dsp_pipeline().filter("biquad", "lowpass", cutoff_frequency=100, sample_rate=1000)
    interleaved = np.zeros(20)
    interleaved[0] = 1.0
    out = pipeline.process_sync(interleaved, {"channels": 2})
    assert np.all(out[1::2] == 0.0)
    assert out[0] != 0.0


def test_invalid_filter_leaves_pipeline_unchanged() -> None:
    pipeline = create_dsp_pipeline().moving_average(window_size=3)
    with pytest.raises(ConfigurationError):
        pipeline.filter("chebyshev", "bandpass", low_cutoff_frequency=10, sample_rate=1000)
    assert len(pipeline) == 1
