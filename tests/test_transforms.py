from __future__ import annotations

import math

import numpy as np
import pytest

from dspipe import ConfigurationError, create_dsp_pipeline


def test_convolution_rejects_empty_kernel() -> None:
    with pytest.raises(ConfigurationError, match="kernel"):
        create_dsp_pipeline().convolution([])


def test_streaming_convolution_is_causal_and_continuous() -> None:
    rng = np.random.default_rng(2)
    data = rng.standard_normal(120)
    kernel = [0.5, 0.3, 0.2]
    expected = np.convolve(data, kernel)[: data.size]

    pipeline = create_dsp_pipeline().convolution(kernel)
    assert pipeline.stages == ["convolution:moving:direct:3"]
    parts = [pipeline.process_sync(data[:50].copy()), pipeline.process_sync(data[50:].copy())]
    assert np.allclose(np.concatenate(parts), expected)


def test_batch_convolution_matches_same_mode() -> None:
    data = np.arange(10.0)
    kernel = [1.0, 0.0, -1.0]
    out = create_dsp_pipeline().convolution(kernel, mode="batch").process_sync(data.copy())
    assert np.allclose(out, np.convolve(data, kernel, mode="same"))


def test_convolution_auto_method_switches_on_kernel_length() -> None:
    long_kernel = np.ones(80) / 80
    pipeline = create_dsp_pipeline().convolution(long_kernel).convolution([1.0], method="fft")
    assert pipeline.stages == ["convolution:moving:fft:80", "convolution:moving:fft:1"]
    out = pipeline.process_sync(np.ones(200))
    assert out[-1] == pytest.approx(1.0)


def test_wavelet_rejects_unknown_name() -> None:
    with pytest.raises(ConfigurationError, match="Unknown wavelet"):
        create_dsp_pipeline().wavelet_transform("sym4")


def test_haar_wavelet_on_constant_block() -> None:
    out = create_dsp_pipeline().wavelet_transform("haar").process_sync([1.0, 1.0, 1.0, 1.0])
    assert out.tolist() == pytest.approx([math.sqrt(2), math.sqrt(2), 0.0, 0.0])


def test_longer_wavelet_output_is_truncated_to_input_length() -> None:
    pipeline = create_dsp_pipeline().wavelet_transform("db4")
    assert pipeline.stages == ["waveletTransform:db4"]
    out = pipeline.process_sync(np.linspace(0.0, 1.0, 16), {"channels": 2})
    assert out.size == 16


@pytest.mark.parametrize("hop", [0, 65])
def test_hilbert_hop_must_fit_window(hop: int) -> None:
    with pytest.raises(ConfigurationError, match="hop size"):
        create_dsp_pipeline().hilbert_envelope(window_size=64, hop_size=hop)


def test_hilbert_window_must_be_positive() -> None:
    with pytest.raises(ConfigurationError):
        create_dsp_pipeline().hilbert_envelope(window_size=0)


def test_hilbert_envelope_tracks_sine_amplitude() -> None:
    n = np.arange(256)
    sine = 2.0 * np.sin(2 * np.pi * n / 16.0)
    pipeline = create_dsp_pipeline().hilbert_envelope(window_size=64)
    assert pipeline.stages == ["hilbertEnvelope:win64:hop32"]
    out = pipeline.process_sync(sine.copy())
    assert np.allclose(out[:63], np.abs(sine[:63]))
    assert np.allclose(out[63:], 2.0, atol=1e-6)


def test_linear_regression_on_ramp() -> None:
    ramp = 2.0 * np.arange(10.0) + 1.0
    slope = create_dsp_pipeline().linear_regression(window_size=4).process_sync(ramp.copy())
    assert slope[0] == 0.0
    assert np.allclose(slope[1:], 2.0)

    residuals = create_dsp_pipeline().linear_regression(window_size=4, output="residuals").process_sync(ramp.copy())
    assert np.allclose(residuals, 0.0)

    predictions = create_dsp_pipeline().linear_regression(window_size=4, output="predictions").process_sync(ramp.copy())
    assert np.allclose(predictions, ramp)

    intercept = create_dsp_pipeline().linear_regression(window_size=4, output="intercept").process_sync(ramp.copy())
    assert intercept[5] == pytest.approx(ramp[2])


def test_linear_regression_validation_and_type() -> None:
    with pytest.raises(ConfigurationError):
        create_dsp_pipeline().linear_regression(window_size=1)
    with pytest.raises(ConfigurationError):
        create_dsp_pipeline().linear_regression(window_size=4, output="curvature")
    pipeline = create_dsp_pipeline().linear_regression(window_size=4, output="predictions")
    assert pipeline.stages == ["linearRegression:predictions"]
    assert pipeline.list_state()["stages"][0]["type"] == "linearRegressionPredictions"


def test_waveform_length_sums_absolute_differences() -> None:
    out = create_dsp_pipeline().waveform_length(window_size=2).process_sync([1.0, 3.0, 2.0, 2.0])
    assert out.tolist() == [1.0, 3.0, 3.0, 1.0]


def test_slope_sign_change_and_willison_amplitude_counts() -> None:
    ssc = create_dsp_pipeline().slope_sign_change(window_size=3).process_sync([0.0, 1.0, 0.0, 1.0])
    assert ssc.tolist() == [0.0, 0.0, 1.0, 2.0]

    wamp = create_dsp_pipeline().willison_amplitude(window_size=10, threshold=0.5).process_sync([0.0, 1.0, 1.2, 3.0])
    assert wamp.tolist() == [0.0, 1.0, 1.0, 2.0]


def test_differentiator_and_integrator_carry_memory() -> None:
    diff = create_dsp_pipeline().differentiator()
    assert diff.process_sync([1.0, 3.0, 6.0]).tolist() == [1.0, 2.0, 3.0]
    assert diff.process_sync([10.0]).tolist() == [4.0]

    integ = create_dsp_pipeline().integrator(alpha=0.5)
    assert integ.process_sync([1.0, 1.0, 1.0]).tolist() == [1.0, 1.5, 1.75]
    with pytest.raises(ConfigurationError, match="alpha"):
        create_dsp_pipeline().integrator(alpha=0.0)


def test_clip_and_peak_detection() -> None:
    assert create_dsp_pipeline().clip_detection(threshold=1.0).process_sync([0.5, -1.0, 2.0]).tolist() == [0.0, 1.0, 1.0]
    with pytest.raises(ConfigurationError):
        create_dsp_pipeline().clip_detection(threshold=0.0)

    peaks = create_dsp_pipeline().peak_detection().process_sync([0.0, 2.0, 1.0, 3.0, 0.0])
    assert peaks.tolist() == [0.0, 0.0, 1.0, 0.0, 1.0]
