from __future__ import annotations

import math

import numpy as np
import pytest

from dspipe import ConfigurationError, create_dsp_pipeline
from dspipe.windowing import ChannelWindow, WindowParams, estimate_rate_from_timestamps

MOVING_STAGES = ["moving_average", "rms", "variance", "z_score_normalize", "mean_absolute_value"]


@pytest.mark.parametrize("method", MOVING_STAGES)
def test_moving_mode_requires_window_basis(method: str) -> None:
    pipeline = create_dsp_pipeline()
    with pytest.raises(ConfigurationError):
        getattr(pipeline, method)(mode="moving")
    assert len(pipeline) == 0


@pytest.mark.parametrize("method", MOVING_STAGES)
@pytest.mark.parametrize("size", [0, -3, 2.5])
def test_invalid_window_size_rejected(method: str, size: float) -> None:
    pipeline = create_dsp_pipeline()
    with pytest.raises(ConfigurationError):
        getattr(pipeline, method)(mode="moving", window_size=size)
    assert pipeline.stages == []


def test_non_positive_duration_rejected() -> None:
    with pytest.raises(ConfigurationError):
        create_dsp_pipeline().rms(mode="moving", window_duration=0)


def test_unknown_mode_rejected() -> None:
    with pytest.raises(ConfigurationError):
        create_dsp_pipeline().moving_average(mode="sliding", window_size=3)


def test_batch_mode_needs_no_window() -> None:
    out = create_dsp_pipeline().moving_average(mode="batch").process_sync([1.0, 2.0, 3.0, 4.0])
    assert out.tolist() == [2.5, 2.5, 2.5, 2.5]


def test_moving_average_partial_window_at_start() -> None:
    out = create_dsp_pipeline().moving_average(window_size=2).process_sync([1.0, 2.0, 3.0, 4.0])
    assert out.tolist() == [1.0, 1.5, 2.5, 3.5]


def test_moving_average_is_per_channel() -> None:
    pipeline = create_dsp_pipeline().moving_average(window_size=2)
    out = pipeline.process_sync([1.0, 10.0, 2.0, 20.0, 3.0, 30.0], {"channels": 2})
    assert out.tolist() == [1.0, 10.0, 1.5, 15.0, 2.5, 25.0]


def test_moving_window_state_spans_calls() -> None:
    data = np.arange(1.0, 21.0)
    whole = create_dsp_pipeline().moving_average(window_size=5).process_sync(data.copy())

    split = create_dsp_pipeline().moving_average(window_size=5)
    first = split.process_sync(data[:7].copy())
    second = split.process_sync(data[7:].copy())
    assert np.allclose(np.concatenate([first, second]), whole)


def test_duration_window_expires_by_timestamp() -> None:
    pipeline = create_dsp_pipeline().moving_average(window_duration=20)
    out = pipeline.process_sync([1.0, 2.0, 3.0, 4.0, 5.0], [0.0, 10.0, 20.0, 30.0, 40.0])
    assert out.tolist() == pytest.approx([1.0, 1.5, 2.5, 3.5, 4.5])


def test_window_size_wins_over_duration() -> None:
    params = WindowParams(mode="moving", window_size=2, window_duration=1000.0)
    assert not params.uses_duration
    out = create_dsp_pipeline().moving_average(window_size=2, window_duration=1000.0).process_sync(
        [1.0, 2.0, 3.0, 4.0], [0.0, 1.0, 2.0, 3.0]
    )
    assert out.tolist() == [1.0, 1.5, 2.5, 3.5]


def test_duration_resolves_effective_size_in_list_state() -> None:
    pipeline = create_dsp_pipeline().rms(window_duration=10)
    pipeline.process_sync(np.ones(50), {"sample_rate": 1000})
    summary = pipeline.list_state()["stages"][0]
    assert summary["windowSize"] == 10
    assert summary["windowDuration"] == 10


def test_rms_and_variance_values() -> None:
    rms = create_dsp_pipeline().rms(window_size=2).process_sync([3.0, 4.0])
    assert rms.tolist() == pytest.approx([3.0, math.sqrt(12.5)])

    var = create_dsp_pipeline().variance(window_size=3).process_sync([1.0, 2.0, 3.0])
    assert var.tolist() == pytest.approx([0.0, 0.25, 2.0 / 3.0])


def test_mean_absolute_value_and_batch_rms() -> None:
    mav = create_dsp_pipeline().mean_absolute_value(window_size=2).process_sync([-2.0, 4.0, -6.0])
    assert mav.tolist() == pytest.approx([2.0, 3.0, 5.0])

    rms = create_dsp_pipeline().rms(mode="batch").process_sync([3.0, -4.0])
    assert rms.tolist() == pytest.approx([math.sqrt(12.5)] * 2)


def test_z_score_normalize_handles_flat_window() -> None:
    out = create_dsp_pipeline().z_score_normalize(window_size=3).process_sync([5.0, 5.0, 5.0, 8.0])
    assert out[:3].tolist() == [0.0, 0.0, 0.0]
    assert out[3] > 0


def test_rectify_modes() -> None:
    assert create_dsp_pipeline().rectify().process_sync([-1.0, 2.0]).tolist() == [1.0, 2.0]
    assert create_dsp_pipeline().rectify(mode="half").process_sync([-1.0, 2.0]).tolist() == [0.0, 2.0]
    with pytest.raises(ConfigurationError):
        create_dsp_pipeline().rectify(mode="quarter")


def test_channel_window_running_sums() -> None:
    window = ChannelWindow(capacity=3)
    for value in [1.0, -2.0, 3.0, 4.0]:
        window.push(value)
    assert len(window) == 3
    assert window.mean() == pytest.approx(5.0 / 3.0)
    assert window.mean_abs() == pytest.approx(3.0)

    restored = ChannelWindow(capacity=3)
    restored.set_state(window.get_state())
    assert restored.mean() == window.mean()


def test_estimate_rate_from_timestamps() -> None:
    assert estimate_rate_from_timestamps([0.0, 2.0, 4.0, 6.0]) == pytest.approx(500.0)
    assert estimate_rate_from_timestamps([5.0]) is None
