from __future__ import annotations

import json

import numpy as np
import pytest

from dspipe import (
    ConfigurationError,
    ExecutionError,
    Pipeline,
    PipelineCallbacks,
    StateError,
    create_dsp_pipeline,
)
from dspipe.logging_utils import LogEntry, LogPool, TopicFilter


def _chain() -> Pipeline:
    return (
        create_dsp_pipeline()
        .filter("butterworth", "lowpass", cutoff_frequency=40, sample_rate=500, order=4)
        .moving_average(window_size=5)
        .z_score_normalize(window_size=16)
        .convolution([0.25, 0.5, 0.25])
        .hilbert_envelope(window_size=32, hop_size=8)
        .differentiator()
        .rms(window_size=4)
    )


def test_three_call_shapes() -> None:
    pipeline = create_dsp_pipeline().rectify()
    assert pipeline.process_sync([-1.0, 2.0]).tolist() == [1.0, 2.0]
    assert pipeline.process_sync([-1.0, -2.0], {"channels": 2}).tolist() == [1.0, 2.0]
    assert pipeline.process_sync([-3.0], [5.0], {"sampleRate": 100}).tolist() == [3.0]


def test_float64_buffers_are_processed_in_place() -> None:
    buffer = np.array([-1.0, 2.0, -3.0])
    out = create_dsp_pipeline().rectify().process_sync(buffer)
    assert out is buffer
    assert buffer.tolist() == [1.0, 2.0, 3.0]


def test_process_copy_leaves_input_untouched() -> None:
    buffer = np.array([-1.0, 2.0, -3.0])
    out = create_dsp_pipeline().rectify().process_copy(buffer).result()
    assert out is not buffer
    assert buffer.tolist() == [-1.0, 2.0, -3.0]
    assert out.tolist() == [1.0, 2.0, 3.0]


def test_non_float64_input_is_copied() -> None:
    ints = np.array([-1, 2], dtype=np.int32)
    out = create_dsp_pipeline().rectify().process_sync(ints)
    assert out.dtype == np.float64
    assert ints.tolist() == [-1, 2]


def test_futures_resolve_in_submission_order() -> None:
    data = np.arange(60.0)
    whole = create_dsp_pipeline().moving_average(window_size=7).process_sync(data.copy())

    pipeline = create_dsp_pipeline().moving_average(window_size=7)
    futures = [pipeline.process(data[i : i + 10].copy()) for i in range(0, 60, 10)]
    assert np.allclose(np.concatenate([f.result() for f in futures]), whole)
    pipeline.dispose()


def test_invalid_call_arguments() -> None:
    pipeline = create_dsp_pipeline().rectify()
    with pytest.raises(ConfigurationError, match="timestamps length"):
        pipeline.process_sync([1.0, 2.0], [0.0])
    with pytest.raises(ConfigurationError, match="one-dimensional"):
        pipeline.process_sync(np.zeros((2, 2)))
    with pytest.raises(ConfigurationError, match="channels"):
        pipeline.process_sync([1.0], {"channels": 0})
    with pytest.raises(ConfigurationError, match="Unknown process option"):
        pipeline.process_sync([1.0], {"rate": 10})
    with pytest.raises(ExecutionError, match="multiple"):
        pipeline.process_sync(np.zeros(5), {"channels": 2})


def test_tap_receives_output_and_stage_trail() -> None:
    seen = []
    pipeline = create_dsp_pipeline().moving_average(window_size=2).rectify()
    pipeline.tap(lambda samples, label: seen.append((samples.copy(), label)))
    pipeline.process_sync([-2.0, -4.0])
    samples, label = seen[0]
    assert samples.tolist() == [2.0, 3.0]
    assert label == "movingAverage:moving → rectify:full"


def test_tap_on_empty_pipeline_is_labelled_start() -> None:
    labels = []
    create_dsp_pipeline().tap(lambda samples, label: labels.append(label)).process_sync([1.0])
    assert labels == ["start"]


def test_failing_tap_is_logged_and_processing_continues() -> None:
    batches: list[list[LogEntry]] = []

    def broken(samples: np.ndarray, label: str) -> None:
        raise RuntimeError("tap exploded")

    pipeline = create_dsp_pipeline().rectify().tap(broken)
    pipeline.set_callbacks(on_log_batch=batches.append)
    assert pipeline.process_sync([-1.0]).tolist() == [1.0]
    errors = [entry for entry in batches[0] if entry.level == "error"]
    assert errors[0].topic == "pipeline.error"
    assert "tap exploded" in errors[0].message


def test_observers_see_final_output() -> None:
    batches = []
    samples = []
    completed = []
    pipeline = create_dsp_pipeline().rectify().set_callbacks(
        {
            "onBatch": batches.append,
            "onSample": lambda value, index, stage: samples.append((value, index, stage)),
            "onStageComplete": lambda stage, duration: completed.append((stage, duration)),
        }
    )
    pipeline.process_sync([-1.0, 2.0])
    assert batches[0].stage == "rectify:full"
    assert batches[0].count == 2
    assert samples == [(1.0, 0, "rectify:full"), (2.0, 1, "rectify:full")]
    assert len(completed) == 1
    assert completed[0][0] == "rectify:full"
    assert completed[0][1] >= 0.0


def test_stage_failure_reaches_on_error_and_log_batch() -> None:
    errors = []
    batches: list[list[LogEntry]] = []
    pipeline = create_dsp_pipeline().lms_filter(num_taps=4)
    pipeline.set_callbacks(on_error=lambda stage, exc: errors.append((stage, exc)), on_log_batch=batches.append)

    with pytest.raises(ExecutionError):
        pipeline.process_sync(np.zeros(8))

    assert errors[0][0] == "lmsFilter:4taps"
    assert isinstance(errors[0][1], ExecutionError)
    failure = [entry for entry in batches[0] if entry.level == "error"][0]
    assert failure.topic == "pipeline.stage.lmsFilter.error"
    assert failure.priority == 9


def test_topic_filter_restricts_on_log() -> None:
    topics = []
    pipeline = create_dsp_pipeline().rectify()
    pipeline.set_callbacks(on_log=lambda topic, level, message, ctx: topics.append(topic), topic_filter="pipeline.info")
    pipeline.process_sync([1.0])
    assert topics == ["pipeline.info"]


def test_unknown_callback_rejected() -> None:
    with pytest.raises(ConfigurationError, match="Unknown callback"):
        create_dsp_pipeline().set_callbacks({"onFinish": print})
    assert PipelineCallbacks.from_mapping({"topicFilter": "pipeline.*"}).topic_filter == "pipeline.*"


def test_topic_filter_wildcards() -> None:
    single = TopicFilter("pipeline.*")
    assert single.matches("pipeline.debug")
    assert not single.matches("pipeline.stage.rms.error")
    stage_errors = TopicFilter(["pipeline.stage.*.error"])
    assert stage_errors.matches("pipeline.stage.rms.error")
    assert TopicFilter().matches("anything")


def test_log_pool_keeps_newest_entries() -> None:
    pool = LogPool(capacity=2)
    for message in ["a", "b", "c"]:
        pool.add(LogEntry(topic="pipeline.info", level="info", message=message))
    assert [entry.message for entry in pool.drain()] == ["b", "c"]
    assert len(pool) == 0
    with pytest.raises(ValueError):
        LogPool(capacity=0)


def test_saved_state_resumes_uninterrupted_stream() -> None:
    rng = np.random.default_rng(21)
    data = rng.standard_normal(400)

    reference = _chain()
    head = reference.process_sync(data[:250].copy())
    snapshot = reference.save_state()
    tail = reference.process_sync(data[250:].copy())

    resumed = _chain().load_state(snapshot)
    assert np.allclose(resumed.process_sync(data[250:].copy()), tail)
    assert head.size == 250


def test_adaptive_state_resumes_two_channel_stream() -> None:
    rng = np.random.default_rng(4)
    x = rng.standard_normal(300)
    frames = np.column_stack([x, 0.7 * x]).reshape(-1)

    for build in (lambda: create_dsp_pipeline().lms_filter(num_taps=3, learning_rate=0.05),
                  lambda: create_dsp_pipeline().rls_filter(num_taps=3, lambda_=0.98)):
        reference = build()
        reference.process_sync(frames[:200].copy(), {"channels": 2})
        snapshot = reference.save_state()
        expected = reference.process_sync(frames[200:].copy(), {"channels": 2})
        resumed = build().load_state(snapshot)
        assert np.allclose(resumed.process_sync(frames[200:].copy(), {"channels": 2}), expected)


def test_save_state_layout() -> None:
    pipeline = create_dsp_pipeline().moving_average(window_size=2).rectify()
    pipeline.process_sync([1.0, 2.0])
    payload = json.loads(pipeline.save_state())
    assert payload["stageCount"] == 2
    assert [s["type"] for s in payload["stages"]] == ["movingAverage", "rectify"]
    assert payload["stages"][0]["index"] == 0
    assert payload["stages"][0]["state"]["windowSize"] == 2


def test_load_state_rejects_mismatches() -> None:
    saved = create_dsp_pipeline().moving_average(window_size=3).save_state()
    with pytest.raises(StateError, match="type mismatch"):
        create_dsp_pipeline().rms(window_size=3).load_state(saved)
    with pytest.raises(StateError, match="count"):
        create_dsp_pipeline().moving_average(window_size=3).rectify().load_state(saved)
    with pytest.raises(StateError, match="invalid state JSON"):
        create_dsp_pipeline().load_state("{not json")
    with pytest.raises(StateError):
        create_dsp_pipeline().moving_average(window_size=4).load_state(saved)


def test_failed_load_leaves_every_stage_untouched() -> None:
    source = create_dsp_pipeline().moving_average(window_size=2).moving_average(window_size=3)
    source.process_sync([9.0, 9.0, 9.0])

    target = create_dsp_pipeline().moving_average(window_size=2).moving_average(window_size=4)
    target.process_sync([1.0, 2.0, 3.0])
    before = json.loads(target.save_state())["stages"]

    with pytest.raises(StateError):
        target.load_state(source.save_state())
    assert json.loads(target.save_state())["stages"] == before


def test_clear_state_behaves_like_fresh_pipeline() -> None:
    data = np.linspace(-1.0, 1.0, 50)
    pipeline = _chain()
    pipeline.process_sync(data.copy())
    pipeline.clear_state()
    assert np.allclose(pipeline.process_sync(data.copy()), _chain().process_sync(data.copy()))


def test_list_state_summarizes_stages() -> None:
    pipeline = create_dsp_pipeline().moving_average(window_size=3).lms_filter(num_taps=8)
    pipeline.process_sync(np.ones(4), {"channels": 2})
    summary = pipeline.list_state()
    assert summary["stageCount"] == 2
    first, second = summary["stages"]
    assert first["index"] == 0
    assert first["type"] == "movingAverage"
    assert first["numChannels"] == 2
    assert first["bufferSize"] == 2
    assert second == {"index": 1, "type": "lmsFilter", "numTaps": 8, "numChannels": 2}


def test_generic_add_stage_accepts_camel_case_parameters() -> None:
    pipeline = create_dsp_pipeline().add_stage("movingAverage", {"mode": "moving", "windowSize": 3})
    pipeline.add_stage("linearRegressionSlope", windowSize=4)
    assert pipeline.stages == ["movingAverage:moving", "linearRegression:slope"]
    with pytest.raises(ConfigurationError, match="Unknown stage type"):
        pipeline.add_stage("fft")
    assert len(pipeline) == 2


def test_describe_lists_stage_parameters() -> None:
    described = create_dsp_pipeline().moving_average(window_size=3).describe()
    assert described[0]["type"] == "movingAverage"
    assert described[0]["windowSize"] == 3


def test_disposed_pipeline_refuses_work() -> None:
    with create_dsp_pipeline().rectify() as pipeline:
        assert pipeline.process([-1.0]).result().tolist() == [1.0]
    with pytest.raises(ExecutionError, match="disposed"):
        pipeline.process([1.0]).result()
    with pytest.raises(ExecutionError, match="disposed"):
        pipeline.process_sync([1.0])
    pipeline.dispose()


def test_rejected_arguments_reach_on_error() -> None:
    errors = []
    batches: list[list[LogEntry]] = []
    pipeline = create_dsp_pipeline().rectify()
    pipeline.set_callbacks(on_error=lambda stage, exc: errors.append((stage, exc)), on_log_batch=batches.append)

    with pytest.raises(ConfigurationError, match="timestamps length"):
        pipeline.process_sync([1.0, 2.0], [0.0])
    future = pipeline.process([1.0], {"channels": 0})
    assert isinstance(future.exception(), ConfigurationError)

    assert [stage for stage, _ in errors] == ["rectify:full", "rectify:full"]
    assert all(isinstance(exc, ConfigurationError) for _, exc in errors)
    assert [entry.topic for batch in batches for entry in batch] == ["pipeline.error", "pipeline.error"]
    pipeline.dispose()


def test_read_only_float64_input_is_copied() -> None:
    data = np.arange(8.0)
    data.flags.writeable = False
    out = create_dsp_pipeline().moving_average(mode="moving", window_size=2).process_sync(data)
    assert out is not data
    assert data.tolist() == list(np.arange(8.0))
    assert out.tolist() == [0.0, 0.5, 1.5, 2.5, 3.5, 4.5, 5.5, 6.5]


def test_channels_option_must_be_a_positive_integer() -> None:
    pipeline = create_dsp_pipeline().rectify()
    for bad in (None, "two", 1.5, True):
        with pytest.raises(ConfigurationError, match="channels"):
            pipeline.process_sync([1.0], {"channels": bad})


def test_regression_kind_must_agree_with_output() -> None:
    pipeline = create_dsp_pipeline()
    with pytest.raises(ConfigurationError, match="residuals"):
        pipeline.add_stage("linearRegressionSlope", window_size=4, output="residuals")
    pipeline.add_stage("linearRegressionResiduals", window_size=4, output="residuals")
    assert pipeline.stages == ["linearRegression:residuals"]
