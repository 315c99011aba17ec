"""Pipeline engine: ordered stages, execution, observers, logging and state lifecycle."""

from __future__ import annotations

import json
import logging
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, List, Mapping, Sequence

import numpy as np

from .drift import DEFAULT_DRIFT_THRESHOLD, DriftDetector, DriftStatistics
from .errors import ConfigurationError, DspError, ExecutionError, StateError
from .filter_design import design_filter
from .logging_utils import LEVEL_PRIORITY, LogEntry, LogPool, TopicFilter, build_topic, log_event, stdlib_level
from .models import validate_params
from .persistence import PersistenceConfig, StateStore, build_store, with_retries
from .scheduler import ExecutionScheduler
from .stages import STAGE_TYPES, Stage, StageContext, StageKind
from .stages.regression import OUTPUT_KINDS

logger = logging.getLogger(__name__)

TAP_SEPARATOR = " → "

SampleCallback = Callable[[float, int, str], None]
TapCallback = Callable[[np.ndarray, str], None]

_OPTION_ALIASES = {
    "sampleRate": "sample_rate",
    "enableDriftDetection": "enable_drift_detection",
    "driftThreshold": "drift_threshold",
    "onDriftDetected": "on_drift_detected",
}

_CALLBACK_ALIASES = {
    "onSample": "on_sample",
    "onBatch": "on_batch",
    "onStageComplete": "on_stage_complete",
    "onError": "on_error",
    "onLog": "on_log",
    "onLogBatch": "on_log_batch",
    "topicFilter": "topic_filter",
}


@dataclass
class SampleBatch:
    """View of processed samples handed to ``on_batch``."""

    stage: str
    samples: np.ndarray
    start_index: int
    count: int


@dataclass
class PipelineCallbacks:
    on_sample: SampleCallback | None = None
    on_batch: Callable[[SampleBatch], None] | None = None
    on_stage_complete: Callable[[str, float], None] | None = None
    on_error: Callable[[str, Exception], None] | None = None
    on_log: Callable[[str, str, str, Mapping[str, Any]], None] | None = None
    on_log_batch: Callable[[List[LogEntry]], None] | None = None
    topic_filter: str | Sequence[str] | None = None

    @classmethod
    def from_mapping(cls, cfg: Mapping[str, Any]) -> "PipelineCallbacks":
        kwargs = {_CALLBACK_ALIASES.get(k, k): v for k, v in cfg.items()}
        unknown = sorted(k for k in kwargs if not hasattr(cls, k))
        if unknown:
            raise ConfigurationError(f"Unknown callback option(s) {unknown}. Available: {sorted(_CALLBACK_ALIASES.values())}")
        return cls(**kwargs)


@dataclass
class ProcessOptions:
    sample_rate: float | None = None
    channels: int = 1
    enable_drift_detection: bool = False
    drift_threshold: float = DEFAULT_DRIFT_THRESHOLD
    on_drift_detected: Callable[[DriftStatistics], None] | None = None

    def __post_init__(self) -> None:
        try:
            valid = not isinstance(self.channels, bool) and int(self.channels) == self.channels and self.channels > 0
        except (TypeError, ValueError):
            valid = False
        if not valid:
            raise ConfigurationError(f"channels must be a positive integer, got {self.channels!r}")
        self.channels = int(self.channels)
        if self.sample_rate is not None and not self.sample_rate > 0:
            raise ConfigurationError(f"sampleRate must be positive, got {self.sample_rate}")
        if not 0 <= self.drift_threshold <= 100:
            raise ConfigurationError(f"driftThreshold must be in [0, 100], got {self.drift_threshold}")

    @classmethod
    def coerce(cls, value: "ProcessOptions | Mapping[str, Any] | None") -> "ProcessOptions":
        if value is None:
            return cls()
        if isinstance(value, ProcessOptions):
            return value
        kwargs = {_OPTION_ALIASES.get(k, k): v for k, v in value.items()}
        unknown = sorted(k for k in kwargs if not hasattr(cls, k))
        if unknown:
            raise ConfigurationError(f"Unknown process option(s) {unknown}")
        return cls(**kwargs)


@dataclass
class _Tap:
    callback: TapCallback
    position: int


@dataclass
class _Request:
    buffer: np.ndarray
    timestamps: np.ndarray
    explicit_timestamps: bool
    options: ProcessOptions
    metadata: dict[str, Any] = field(default_factory=dict)


def _json_default(value: Any) -> Any:
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class Pipeline:
    """Fluent builder and executor for an ordered chain of DSP stages.

    Builder methods validate their parameters immediately and return the
    pipeline. A failing builder call leaves the pipeline untouched.
    """

    def __init__(
        self,
        persistence: PersistenceConfig | None = None,
        *,
        store: StateStore | None = None,
        log_capacity: int = 32,
    ) -> None:
        self._stages: list[Stage] = []
        self.stages: list[str] = []
        self._taps: list[_Tap] = []
        self._callbacks = PipelineCallbacks()
        self._topic_filter = TopicFilter()
        self._log_pool = LogPool(log_capacity)
        self._drift: DriftDetector | None = None
        self._scheduler = ExecutionScheduler()
        self.persistence = persistence
        self._store = store
        self._disposed = False
        self._output_channels: int | None = None

    # -- Configuration -------------------------------------------------------

    def add_stage(self, kind: StageKind | str, params: Mapping[str, Any] | None = None, **kwargs: Any) -> "Pipeline":
        try:
            stage_kind = StageKind(kind)
        except ValueError:
            raise ConfigurationError(
                f"Unknown stage type '{kind}'. Available: {sorted(k.value for k in StageKind)}"
            ) from None
        stage_cls, model = STAGE_TYPES[stage_kind]
        merged = {k: v for k, v in {**(params or {}), **kwargs}.items() if v is not None}
        if stage_kind in OUTPUT_KINDS.values():
            merged.setdefault("output", next(out for out, k in OUTPUT_KINDS.items() if k is stage_kind))
            if OUTPUT_KINDS.get(merged["output"]) is not stage_kind:
                raise ConfigurationError(
                    f"{stage_kind.value}: output '{merged['output']}' belongs to a different regression stage"
                )
        stage = stage_cls(validate_params(model, merged, stage=stage_kind.value))
        return self._append(stage)

    def _append(self, stage: Stage) -> "Pipeline":
        self._stages.append(stage)
        self.stages.append(stage.label)
        logger.debug("added stage %s at position %d", stage.label, len(self._stages) - 1)
        return self

    def moving_average(self, mode: str = "moving", window_size: int | None = None, window_duration: float | None = None) -> "Pipeline":
        return self.add_stage(StageKind.MOVING_AVERAGE, mode=mode, window_size=window_size, window_duration=window_duration)

    def rms(self, mode: str = "moving", window_size: int | None = None, window_duration: float | None = None) -> "Pipeline":
        return self.add_stage(StageKind.RMS, mode=mode, window_size=window_size, window_duration=window_duration)

    def variance(self, mode: str = "moving", window_size: int | None = None, window_duration: float | None = None) -> "Pipeline":
        return self.add_stage(StageKind.VARIANCE, mode=mode, window_size=window_size, window_duration=window_duration)

    def mean_absolute_value(
        self, mode: str = "moving", window_size: int | None = None, window_duration: float | None = None
    ) -> "Pipeline":
        return self.add_stage(
            StageKind.MEAN_ABSOLUTE_VALUE, mode=mode, window_size=window_size, window_duration=window_duration
        )

    def z_score_normalize(
        self,
        mode: str = "moving",
        window_size: int | None = None,
        window_duration: float | None = None,
        epsilon: float | None = None,
    ) -> "Pipeline":
        return self.add_stage(
            StageKind.Z_SCORE_NORMALIZE,
            mode=mode,
            window_size=window_size,
            window_duration=window_duration,
            epsilon=epsilon,
        )

    def rectify(self, mode: str = "full") -> "Pipeline":
        return self.add_stage(StageKind.RECTIFY, mode=mode)

    def waveform_length(self, window_size: int) -> "Pipeline":
        return self.add_stage(StageKind.WAVEFORM_LENGTH, window_size=window_size)

    def slope_sign_change(self, window_size: int, threshold: float = 0.0) -> "Pipeline":
        return self.add_stage(StageKind.SLOPE_SIGN_CHANGE, window_size=window_size, threshold=threshold)

    def willison_amplitude(self, window_size: int, threshold: float = 0.0) -> "Pipeline":
        return self.add_stage(StageKind.WILLISON_AMPLITUDE, window_size=window_size, threshold=threshold)

    def differentiator(self) -> "Pipeline":
        return self.add_stage(StageKind.DIFFERENTIATOR)

    def integrator(self, alpha: float = 0.99) -> "Pipeline":
        return self.add_stage(StageKind.INTEGRATOR, alpha=alpha)

    def clip_detection(self, threshold: float) -> "Pipeline":
        return self.add_stage(StageKind.CLIP_DETECTION, threshold=threshold)

    def peak_detection(self, threshold: float = 0.0) -> "Pipeline":
        return self.add_stage(StageKind.PEAK_DETECTION, threshold=threshold)

    def filter(self, type: str, mode: str, **params: Any) -> "Pipeline":
        """Design a filter and install it as a streaming stage."""
        coeffs = design_filter(type, mode, **params)
        return self.add_stage(
            StageKind.FILTER,
            b=coeffs.b.tolist(),
            a=coeffs.a.tolist(),
            family=coeffs.family,
            mode=coeffs.mode,
        )

    def lms_filter(
        self,
        num_taps: int,
        learning_rate: float = 0.01,
        normalized: bool = False,
        lambda_: float = 0.0,
    ) -> "Pipeline":
        return self.add_stage(
            StageKind.LMS_FILTER,
            num_taps=num_taps,
            learning_rate=learning_rate,
            normalized=normalized,
            lambda_=lambda_,
        )

    def rls_filter(self, num_taps: int, lambda_: float, delta: float = 0.01) -> "Pipeline":
        return self.add_stage(StageKind.RLS_FILTER, num_taps=num_taps, lambda_=lambda_, delta=delta)

    def interpolate(self, factor: int, sample_rate: float, order: int = 51) -> "Pipeline":
        return self.add_stage(StageKind.INTERPOLATE, factor=factor, sample_rate=sample_rate, order=order)

    def decimate(self, factor: int, sample_rate: float, order: int = 51) -> "Pipeline":
        return self.add_stage(StageKind.DECIMATE, factor=factor, sample_rate=sample_rate, order=order)

    def resample(self, up_factor: int, down_factor: int, sample_rate: float, order: int = 51) -> "Pipeline":
        return self.add_stage(
            StageKind.RESAMPLE,
            up_factor=up_factor,
            down_factor=down_factor,
            sample_rate=sample_rate,
            order=order,
        )

    def convolution(
        self,
        kernel: Sequence[float],
        mode: str = "moving",
        method: str = "auto",
        auto_threshold: int | None = None,
    ) -> "Pipeline":
        return self.add_stage(
            StageKind.CONVOLUTION,
            kernel=list(kernel),
            mode=mode,
            method=method,
            auto_threshold=auto_threshold,
        )

    def wavelet_transform(self, wavelet: str) -> "Pipeline":
        return self.add_stage(StageKind.WAVELET_TRANSFORM, wavelet=wavelet)

    def hilbert_envelope(self, window_size: int, hop_size: int | None = None) -> "Pipeline":
        return self.add_stage(StageKind.HILBERT_ENVELOPE, window_size=window_size, hop_size=hop_size)

    def linear_regression(self, window_size: int, output: str = "slope") -> "Pipeline":
        if output not in OUTPUT_KINDS:
            raise ConfigurationError(f"linearRegression: output must be one of {sorted(OUTPUT_KINDS)}, got '{output}'")
        return self.add_stage(OUTPUT_KINDS[output], window_size=window_size, output=output)

    def channel_select(self, channels: Sequence[int], num_input_channels: int) -> "Pipeline":
        return self.add_stage(StageKind.CHANNEL_SELECT, channels=list(channels), num_input_channels=num_input_channels)

    def channel_selector(self, num_input_channels: int, num_output_channels: int) -> "Pipeline":
        return self.add_stage(
            StageKind.CHANNEL_SELECTOR,
            num_input_channels=num_input_channels,
            num_output_channels=num_output_channels,
        )

    def channel_merge(self, mapping: Sequence[int], num_input_channels: int) -> "Pipeline":
        return self.add_stage(StageKind.CHANNEL_MERGE, mapping=list(mapping), num_input_channels=num_input_channels)

    def amplify(self, gain: float = 1.0) -> "Pipeline":
        return self.add_stage(StageKind.AMPLIFY, gain=gain)

    def square(self) -> "Pipeline":
        return self.add_stage(StageKind.SQUARE)

    def exponential_moving_average(self, alpha: float, mode: str = "moving") -> "Pipeline":
        return self.add_stage(StageKind.EXPONENTIAL_MOVING_AVERAGE, mode=mode, alpha=alpha)

    def cumulative_moving_average(self, mode: str = "moving") -> "Pipeline":
        return self.add_stage(StageKind.CUMULATIVE_MOVING_AVERAGE, mode=mode)

    def snr(self, window_size: int) -> "Pipeline":
        """Two-channel (signal, noise) input; one channel of dB out."""
        return self.add_stage(StageKind.SNR, window_size=window_size)

    def tap(self, callback: TapCallback) -> "Pipeline":
        """Observe the final buffer of every call; ``callback(samples, label)``."""
        if not callable(callback):
            raise ConfigurationError("tap callback must be callable")
        self._taps.append(_Tap(callback=callback, position=len(self._stages)))
        return self

    def set_callbacks(self, callbacks: PipelineCallbacks | Mapping[str, Any] | None = None, **kwargs: Any) -> "Pipeline":
        if callbacks is None:
            callbacks = PipelineCallbacks.from_mapping(kwargs)
        elif not isinstance(callbacks, PipelineCallbacks):
            callbacks = PipelineCallbacks.from_mapping({**callbacks, **kwargs})
        self._callbacks = callbacks
        self._topic_filter = TopicFilter(callbacks.topic_filter)
        return self

    # -- Execution -----------------------------------------------------------

    def process(
        self,
        samples: Sequence[float] | np.ndarray,
        timestamps_or_options: Sequence[float] | np.ndarray | ProcessOptions | Mapping[str, Any] | None = None,
        options: ProcessOptions | Mapping[str, Any] | None = None,
    ) -> Future[np.ndarray]:
        """Run the pipeline off-thread; the future resolves to the output buffer.

        Call shapes: ``process(samples, timestamps, options)``,
        ``process(samples, options)`` and ``process(samples)``.
        """
        return self._submit(samples, timestamps_or_options, options, copy=False)

    def process_copy(
        self,
        samples: Sequence[float] | np.ndarray,
        timestamps_or_options: Sequence[float] | np.ndarray | ProcessOptions | Mapping[str, Any] | None = None,
        options: ProcessOptions | Mapping[str, Any] | None = None,
    ) -> Future[np.ndarray]:
        return self._submit(samples, timestamps_or_options, options, copy=True)

    def process_sync(
        self,
        samples: Sequence[float] | np.ndarray,
        timestamps_or_options: Sequence[float] | np.ndarray | ProcessOptions | Mapping[str, Any] | None = None,
        options: ProcessOptions | Mapping[str, Any] | None = None,
    ) -> np.ndarray:
        return self._run(self._checked_prepare(samples, timestamps_or_options, options, copy=False))

    def process_copy_sync(
        self,
        samples: Sequence[float] | np.ndarray,
        timestamps_or_options: Sequence[float] | np.ndarray | ProcessOptions | Mapping[str, Any] | None = None,
        options: ProcessOptions | Mapping[str, Any] | None = None,
    ) -> np.ndarray:
        return self._run(self._checked_prepare(samples, timestamps_or_options, options, copy=True))

    def _submit(self, samples: Any, timestamps_or_options: Any, options: Any, *, copy: bool) -> Future[np.ndarray]:
        try:
            request = self._checked_prepare(samples, timestamps_or_options, options, copy=copy)
        except DspError as exc:
            failed: Future[np.ndarray] = Future()
            failed.set_exception(exc)
            return failed
        return self._scheduler.submit(self._run, request)

    def _checked_prepare(self, samples: Any, timestamps_or_options: Any, options: Any, *, copy: bool) -> _Request:
        """Validate a call, reporting rejected input the same way as stage failures."""
        try:
            try:
                return self._prepare(samples, timestamps_or_options, options, copy=copy)
            except DspError:
                raise
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"invalid process arguments: {exc}") from exc
        except DspError as exc:
            self._report_error(self._trail() or "pipeline", exc, None)
            self._flush_logs()
            raise

    def _prepare(
        self,
        samples: Sequence[float] | np.ndarray,
        timestamps_or_options: Any,
        options: Any,
        *,
        copy: bool,
    ) -> _Request:
        if self._disposed:
            raise ExecutionError("pipeline has been disposed")
        explicit = False
        if timestamps_or_options is None or isinstance(timestamps_or_options, (ProcessOptions, Mapping)):
            opts = ProcessOptions.coerce(timestamps_or_options if timestamps_or_options is not None else options)
            timestamps: np.ndarray | None = None
        else:
            opts = ProcessOptions.coerce(options)
            timestamps = np.array(timestamps_or_options, dtype=np.float64)
            explicit = True

        if copy or not (
            isinstance(samples, np.ndarray)
            and samples.dtype == np.float64
            and samples.flags.c_contiguous
            and samples.flags.writeable
        ):
            buffer = np.array(samples, dtype=np.float64)
        else:
            buffer = samples
        if buffer.ndim != 1:
            raise ConfigurationError(f"samples must be one-dimensional, got shape {buffer.shape}")

        n = buffer.size
        if timestamps is None:
            if opts.sample_rate:
                timestamps = np.arange(n, dtype=np.float64) * (1000.0 / opts.sample_rate)
            else:
                timestamps = np.arange(n, dtype=np.float64)
        elif timestamps.shape != (n,):
            raise ConfigurationError(
                f"timestamps length {timestamps.size} must match samples length {n}"
            )
        return _Request(buffer=buffer, timestamps=timestamps, explicit_timestamps=explicit, options=opts)

    def _trail(self) -> str:
        return TAP_SEPARATOR.join(self.stages)

    def _run(self, request: _Request) -> np.ndarray:
        opts = request.options
        trail = self._trail()
        name = trail or "pipeline"
        current: Stage | None = None
        self._log(
            "debug",
            "Starting pipeline processing",
            {"samples": int(request.buffer.size), "channels": opts.channels, "stageCount": len(self._stages)},
        )
        started = time.perf_counter()
        try:
            if request.buffer.size % opts.channels:
                raise ExecutionError(
                    f"buffer length {request.buffer.size} is not a multiple of {opts.channels} channels"
                )
            if opts.enable_drift_detection and request.explicit_timestamps and opts.sample_rate:
                self._check_drift(request.timestamps, opts)

            ctx = StageContext(channels=opts.channels, timestamps=request.timestamps, sample_rate=opts.sample_rate)
            buffer = request.buffer
            for stage in self._stages:
                current = stage
                try:
                    buffer = stage.process(buffer, ctx)
                except DspError:
                    raise
                except Exception as exc:
                    raise ExecutionError(f"stage '{stage.label}' failed: {exc}") from exc
            self._output_channels = ctx.channels
            current = None
            duration_ms = (time.perf_counter() - started) * 1000.0

            self._run_taps(buffer, trail or "start")
            self._notify_observers(buffer, name, duration_ms)
            self._log(
                "info",
                "Pipeline processing completed",
                {"samples": int(buffer.size), "durationMs": round(duration_ms, 3)},
            )
            return buffer
        except Exception as exc:
            self._report_error(name, exc, current)
            raise
        finally:
            self._flush_logs()

    def _check_drift(self, timestamps: np.ndarray, opts: ProcessOptions) -> None:
        rate = float(opts.sample_rate)  # type: ignore[arg-type]
        if self._drift is None or self._drift.expected_sample_rate != rate:
            self._drift = DriftDetector(rate, opts.drift_threshold)
        self._drift.drift_threshold = opts.drift_threshold
        self._drift.on_drift = opts.on_drift_detected
        frame_times = timestamps[:: opts.channels]
        for event in self._drift.process_batch(frame_times):
            self._log("warn", "Timing drift detected", event.as_dict())

    def _run_taps(self, buffer: np.ndarray, label: str) -> None:
        for tap in self._taps:
            try:
                tap.callback(buffer, label)
            except Exception as exc:
                self._log("error", f"Tap callback failed: {exc}", {"label": label, "error": type(exc).__name__})

    def _notify_observers(self, buffer: np.ndarray, name: str, duration_ms: float) -> None:
        cb = self._callbacks
        if cb.on_batch is not None:
            self._guard("onBatch", cb.on_batch, SampleBatch(stage=name, samples=buffer, start_index=0, count=int(buffer.size)))
        if cb.on_sample is not None:
            on_sample = cb.on_sample
            try:
                for index, value in enumerate(buffer.tolist()):
                    on_sample(value, index, name)
            except Exception as exc:
                self._log("error", f"onSample callback failed: {exc}", {"error": type(exc).__name__})
        if cb.on_stage_complete is not None:
            self._guard("onStageComplete", cb.on_stage_complete, name, duration_ms)

    def _guard(self, label: str, fn: Callable[..., Any], *args: Any) -> None:
        try:
            fn(*args)
        except Exception as exc:
            self._log("error", f"{label} callback failed: {exc}", {"error": type(exc).__name__})

    def _report_error(self, name: str, exc: Exception, stage: Stage | None) -> None:
        if self._callbacks.on_error is not None:
            try:
                self._callbacks.on_error(name, exc)
            except Exception:
                logger.exception("onError callback failed")
        self._log(
            "error",
            f"Pipeline processing failed: {exc}",
            {"error": type(exc).__name__},
            stage=stage.kind.value if stage is not None else None,
            category="error",
        )

    # -- Logging -------------------------------------------------------------

    def _log(
        self,
        level: str,
        message: str,
        context: Mapping[str, Any] | None = None,
        *,
        stage: str | None = None,
        category: str | None = None,
    ) -> None:
        topic = build_topic(level, stage, category)
        context = dict(context or {})
        log_event(logger, message, level=stdlib_level(level), topic=topic, context=context)
        if not self._topic_filter.matches(topic):
            return
        cb = self._callbacks
        if cb.on_log is not None:
            try:
                cb.on_log(topic, level, message, context)
            except Exception:
                logger.exception("onLog callback failed")
        if cb.on_log_batch is not None:
            self._log_pool.add(
                LogEntry(topic=topic, level=level, message=message, context=context, priority=LEVEL_PRIORITY[level])
            )

    def _flush_logs(self) -> None:
        entries = self._log_pool.drain()
        if not entries or self._callbacks.on_log_batch is None:
            return
        try:
            self._callbacks.on_log_batch(entries)
        except Exception:
            logger.exception("onLogBatch callback failed")

    # -- State ---------------------------------------------------------------

    def save_state(self) -> str:
        """Serialize every stage's runtime state to a JSON string."""
        payload = {
            "timestamp": time.time(),
            "stageCount": len(self._stages),
            "stages": [
                {"index": index, "type": stage.kind.value, "state": stage.get_state()}
                for index, stage in enumerate(self._stages)
            ],
        }
        return json.dumps(payload, default=_json_default)

    def load_state(self, state_json: str) -> "Pipeline":
        """Restore runtime state produced by ``save_state`` on an equivalent pipeline.

        Stages are matched by position and type. On any mismatch the current
        state is left unchanged and ``StateError`` is raised.
        """

        try:
            data = json.loads(state_json)
        except (TypeError, ValueError) as exc:
            raise StateError(f"invalid state JSON: {exc}") from exc
        saved = data.get("stages") if isinstance(data, Mapping) else None
        if not isinstance(saved, list):
            raise StateError("state JSON must contain a 'stages' list")
        if len(saved) != len(self._stages):
            raise StateError(f"stage count mismatch: saved {len(saved)}, pipeline has {len(self._stages)}")
        for index, (entry, stage) in enumerate(zip(saved, self._stages)):
            saved_type = entry.get("type") if isinstance(entry, Mapping) else None
            if saved_type != stage.kind.value:
                raise StateError(f"stage {index} type mismatch: saved '{saved_type}', pipeline has '{stage.kind.value}'")

        backups = [stage.get_state() for stage in self._stages]
        try:
            for entry, stage in zip(saved, self._stages):
                stage.set_state(entry.get("state") or {})
        except Exception as exc:
            for backup, stage in zip(backups, self._stages):
                stage.set_state(backup)
            if isinstance(exc, StateError):
                raise
            raise StateError(f"could not restore state: {exc}") from exc
        logger.debug("restored state for %d stages", len(self._stages))
        return self

    def clear_state(self) -> "Pipeline":
        for stage in self._stages:
            stage.reset()
        if self._drift is not None:
            self._drift.reset()
        return self

    def list_state(self) -> dict[str, Any]:
        return {
            "stageCount": len(self._stages),
            "timestamp": time.time(),
            "stages": [{"index": index, **stage.summary()} for index, stage in enumerate(self._stages)],
        }

    def describe(self) -> list[Mapping[str, object]]:
        return [stage.describe() for stage in self._stages]

    @property
    def output_channels(self) -> int | None:
        """Channel count of the most recent output, after any routing stages."""
        return self._output_channels

    @property
    def drift_detector(self) -> DriftDetector | None:
        return self._drift

    # -- Persistence ---------------------------------------------------------

    def _require_store(self) -> tuple[StateStore, PersistenceConfig]:
        if self.persistence is None:
            raise ConfigurationError("no persistence config was given to this pipeline")
        if self._store is None:
            self._store = build_store(self.persistence)
        return self._store, self.persistence

    def persist_state(self) -> str:
        store, cfg = self._require_store()
        payload = self.save_state()
        with_retries(
            lambda: store.save(cfg.state_key, payload),
            attempts=cfg.max_retries,
            delay_s=cfg.retry_delay_s,
            description="persist_state",
        )
        log_event(logger, "state_persisted", level=logging.DEBUG, key=cfg.state_key, stages=len(self._stages))
        return payload

    def restore_state(self) -> bool:
        """Load the persisted snapshot. Returns False when nothing was restored."""
        store, cfg = self._require_store()
        try:
            payload = with_retries(
                lambda: store.load(cfg.state_key),
                attempts=cfg.max_retries,
                delay_s=cfg.retry_delay_s,
                description="restore_state",
            )
            if payload is None:
                logger.info("no persisted state under key %s", cfg.state_key)
                return False
            self.load_state(payload)
            return True
        except Exception as exc:
            if not cfg.fallback_on_load_failure:
                raise
            logger.warning("state restore failed (%s); starting cold", exc)
            self.clear_state()
            return False

    # -- Lifecycle -----------------------------------------------------------

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._scheduler.shutdown(wait=True)
        if self._store is not None:
            self._store.close()

    def __enter__(self) -> "Pipeline":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.dispose()

    def __len__(self) -> int:
        return len(self._stages)


def create_dsp_pipeline(
    persistence_config: PersistenceConfig | Mapping[str, Any] | None = None,
    *,
    store: StateStore | None = None,
) -> Pipeline:
    """Entry point returning an empty pipeline builder."""
    if isinstance(persistence_config, Mapping):
        persistence_config = PersistenceConfig.from_mapping(persistence_config)
    return Pipeline(persistence_config, store=store)
