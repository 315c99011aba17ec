"""Configurable streaming DSP pipelines with persistable per-stage state."""

__version__ = "0.1.0"

from .config import PipelineConfig, build_pipeline
from .drift import DriftDetector, DriftStatistics, detect_gaps, estimate_sample_rate, validate_monotonicity
from .errors import ConfigurationError, DspError, ExecutionError, StateError
from .filter_design import FilterCoefficients, design_filter
from .logging_utils import LogEntry, configure_logging
from .persistence import PersistenceConfig, SQLiteStateStore
from .pipeline import Pipeline, PipelineCallbacks, ProcessOptions, SampleBatch, create_dsp_pipeline
from .scheduler import ExecutionScheduler
from .stages import StageKind

__all__ = [
    "__version__",
    "ConfigurationError",
    "DriftDetector",
    "DriftStatistics",
    "DspError",
    "ExecutionError",
    "ExecutionScheduler",
    "FilterCoefficients",
    "LogEntry",
    "PersistenceConfig",
    "Pipeline",
    "PipelineCallbacks",
    "PipelineConfig",
    "ProcessOptions",
    "SQLiteStateStore",
    "SampleBatch",
    "StageKind",
    "StateError",
    "build_pipeline",
    "configure_logging",
    "create_dsp_pipeline",
    "design_filter",
    "detect_gaps",
    "estimate_sample_rate",
    "validate_monotonicity",
]
