from __future__ import annotations

import numpy as np
import pytest

from dspipe import DriftDetector, create_dsp_pipeline, detect_gaps, estimate_sample_rate, validate_monotonicity


def test_detector_reports_single_drifting_interval() -> None:
    detector = DriftDetector(expected_sample_rate=100, drift_threshold=10)
    events = detector.process_batch([0.0, 10.0, 19.0, 31.0])
    assert len(events) == 1
    event = events[0]
    assert event.sample_index == 3
    assert event.delta_ms == pytest.approx(12.0)
    assert event.expected_ms == pytest.approx(10.0)
    assert event.relative_drift == pytest.approx(20.0)
    assert detector.metrics.drift_events_count == 1


def test_detector_carries_last_timestamp_between_batches() -> None:
    detector = DriftDetector(expected_sample_rate=1000, drift_threshold=5)
    assert detector.process_batch([0.0, 1.0, 2.0]) == []
    events = detector.process_batch([5.0, 6.0])
    assert [e.sample_index for e in events] == [3]
    assert events[0].previous_timestamp == 2.0


def test_detector_counts_non_monotonic_timestamps() -> None:
    detector = DriftDetector(expected_sample_rate=1000)
    detector.process_batch([0.0, 1.0, 1.0, 0.5])
    assert detector.metrics.monotonicity_violations == 2
    detector.reset()
    assert detector.last_timestamp is None
    assert detector.metrics.samples_processed == 0


def test_failing_drift_callback_does_not_stop_detection() -> None:
    calls = []

    def callback(stats) -> None:
        calls.append(stats.sample_index)
        raise RuntimeError("boom")

    detector = DriftDetector(expected_sample_rate=100, drift_threshold=10, on_drift=callback)
    events = detector.process_batch([0.0, 20.0, 40.0])
    assert len(events) == 2
    assert calls == [1, 2]


def test_detector_rejects_bad_configuration() -> None:
    with pytest.raises(ValueError):
        DriftDetector(expected_sample_rate=0)
    with pytest.raises(ValueError):
        DriftDetector(expected_sample_rate=100, drift_threshold=-1)


def test_pipeline_drift_detection_uses_explicit_timestamps() -> None:
    seen = []
    pipeline = create_dsp_pipeline().moving_average(window_size=2)
    pipeline.process_sync(
        np.ones(4),
        [0.0, 10.0, 19.0, 31.0],
        {"sampleRate": 100, "enableDriftDetection": True, "driftThreshold": 10, "onDriftDetected": seen.append},
    )
    assert len(seen) == 1
    assert seen[0].sample_index == 3
    assert seen[0].delta_ms == pytest.approx(12.0)


def test_pipeline_skips_drift_without_explicit_timestamps() -> None:
    seen = []
    pipeline = create_dsp_pipeline().rectify()
    pipeline.process_sync(
        np.ones(4),
        {"sample_rate": 100, "enable_drift_detection": True, "on_drift_detected": seen.append},
    )
    assert seen == []
    assert pipeline.drift_detector is None


def test_pipeline_drift_uses_frame_timestamps_for_multichannel_input() -> None:
    seen = []
    timestamps = np.repeat([0.0, 10.0, 20.0, 35.0], 2)
    create_dsp_pipeline().rectify().process_sync(
        np.ones(8),
        timestamps,
        {"channels": 2, "sample_rate": 100, "enable_drift_detection": True, "on_drift_detected": seen.append},
    )
    assert [e.sample_index for e in seen] == [3]


def test_pipeline_recreates_detector_when_rate_changes() -> None:
    pipeline = create_dsp_pipeline().rectify()
    options = {"sample_rate": 100, "enable_drift_detection": True}
    pipeline.process_sync(np.ones(3), [0.0, 10.0, 20.0], options)
    first = pipeline.drift_detector
    assert first is not None
    pipeline.process_sync(np.ones(3), [30.0, 40.0, 50.0], options)
    assert pipeline.drift_detector is first
    pipeline.process_sync(np.ones(3), [0.0, 5.0, 10.0], {**options, "sample_rate": 200})
    assert pipeline.drift_detector is not first
    assert pipeline.drift_detector.expected_sample_rate == 200


def test_clear_state_resets_drift_detector() -> None:
    pipeline = create_dsp_pipeline().rectify()
    pipeline.process_sync(np.ones(2), [0.0, 10.0], {"sample_rate": 100, "enable_drift_detection": True})
    pipeline.clear_state()
    assert pipeline.drift_detector.last_timestamp is None


def test_detect_gaps_reports_missing_samples() -> None:
    gaps = detect_gaps([0.0, 10.0, 20.0, 50.0, 60.0], expected_sample_rate=100)
    assert len(gaps) == 1
    gap = gaps[0]
    assert (gap["start_index"], gap["end_index"]) == (2, 3)
    assert gap["duration_ms"] == pytest.approx(30.0)
    assert gap["missing_samples"] == 2


def test_validate_monotonicity_lists_violations() -> None:
    violations = validate_monotonicity([0.0, 1.0, 1.0, 3.0, 2.0])
    assert [v["index"] for v in violations] == [2, 4]
    assert validate_monotonicity([0.0, 1.0]) == []


def test_estimate_sample_rate_classifies_regularity() -> None:
    regular = estimate_sample_rate(np.arange(0.0, 100.0, 2.0))
    assert regular["estimated_rate"] == pytest.approx(500.0)
    assert regular["regularity"] == "regular"

    jittered = estimate_sample_rate([0.0, 10.0, 21.0, 30.0, 41.0])
    assert jittered["regularity"] == "slightly_irregular"

    assert estimate_sample_rate([1.0])["regularity"] == "irregular"
