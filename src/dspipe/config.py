"""Declarative pipeline definitions loaded from YAML or JSON."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic.alias_generators import to_snake

from .errors import ConfigurationError
from .persistence import PersistenceConfig
from .pipeline import Pipeline, PipelineCallbacks, create_dsp_pipeline

logger = logging.getLogger(__name__)

STAGE_BUILDERS: dict[str, str] = {
    "moving_average": "moving_average",
    "rms": "rms",
    "rectify": "rectify",
    "variance": "variance",
    "z_score_normalize": "z_score_normalize",
    "mean_absolute_value": "mean_absolute_value",
    "waveform_length": "waveform_length",
    "slope_sign_change": "slope_sign_change",
    "willison_amplitude": "willison_amplitude",
    "differentiator": "differentiator",
    "integrator": "integrator",
    "clip_detection": "clip_detection",
    "peak_detection": "peak_detection",
    "filter": "filter",
    "lms_filter": "lms_filter",
    "rls_filter": "rls_filter",
    "interpolate": "interpolate",
    "decimate": "decimate",
    "resample": "resample",
    "convolution": "convolution",
    "wavelet_transform": "wavelet_transform",
    "hilbert_envelope": "hilbert_envelope",
    "linear_regression": "linear_regression",
    "channel_select": "channel_select",
    "channel_selector": "channel_selector",
    "channel_merge": "channel_merge",
    "amplify": "amplify",
    "square": "square",
    "exponential_moving_average": "exponential_moving_average",
    "cumulative_moving_average": "cumulative_moving_average",
    "snr": "snr",
}


def _normalize_key(key: str) -> str:
    if key == "lambda":
        return "lambda_"
    return to_snake(key)


@dataclass
class PipelineConfig:
    """Stage list plus optional persistence settings."""

    name: str = "pipeline"
    stages: list[Mapping[str, Any]] = field(default_factory=list)
    persistence: Mapping[str, Any] | None = None
    topic_filter: str | list[str] | None = None

    @classmethod
    def from_mapping(cls, cfg: Mapping[str, Any]) -> "PipelineConfig":
        kwargs = {_normalize_key(k): v for k, v in cfg.items()}
        kwargs = {k: v for k, v in kwargs.items() if k in cls.__dataclass_fields__}
        stages = kwargs.get("stages", [])
        if not isinstance(stages, list):
            raise ConfigurationError("'stages' must be a list of stage mappings")
        return cls(**kwargs)

    @classmethod
    def from_file(cls, path: str | Path) -> "PipelineConfig":
        raw = Path(path)
        if not raw.exists():
            raise FileNotFoundError(raw)
        text = raw.read_text(encoding="utf-8")
        cfg = yaml.safe_load(text) if raw.suffix.lower() in {".yml", ".yaml"} else json.loads(text)
        if not isinstance(cfg, Mapping):
            raise ConfigurationError("Pipeline config file must contain a mapping/object at the top level")
        return cls.from_mapping(cfg)


def build_pipeline(config: PipelineConfig | Mapping[str, Any]) -> Pipeline:
    """Instantiate a pipeline from a config, validating every stage up front."""

    if not isinstance(config, PipelineConfig):
        config = PipelineConfig.from_mapping(config)
    persistence = PersistenceConfig.from_mapping(config.persistence) if config.persistence else None
    pipeline = create_dsp_pipeline(persistence)
    if config.topic_filter:
        pipeline.set_callbacks(PipelineCallbacks(topic_filter=config.topic_filter))

    for position, entry in enumerate(config.stages):
        if not isinstance(entry, Mapping):
            raise ConfigurationError(f"Stage entry {position} must be a mapping")
        stype = str(entry.get("type") or entry.get("name") or "")
        if not stype:
            raise ConfigurationError(f"Stage entry {position} requires a 'type' field")
        method = STAGE_BUILDERS.get(to_snake(stype))
        if method is None:
            raise ConfigurationError(f"Unknown stage type '{stype}'. Available: {sorted(STAGE_BUILDERS)}")
        params = {_normalize_key(k): v for k, v in entry.items() if k not in {"type", "name"}}
        if method == "filter":
            family = params.pop("family", None) or params.pop("filter_type", None)
            params = {"type": family, **params}
        try:
            getattr(pipeline, method)(**params)
        except TypeError as exc:
            raise ConfigurationError(f"Stage entry {position} ('{stype}'): {exc}") from exc
    logger.info("built pipeline '%s' with %d stages", config.name, len(pipeline))
    return pipeline
