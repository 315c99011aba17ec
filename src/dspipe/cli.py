"""Command line interface for dspipe."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Sequence

import numpy as np
import pandas as pd

from . import __version__
from .config import PipelineConfig, build_pipeline
from .errors import DspError
from .logging_utils import configure_logging, log_event

logger = logging.getLogger(__name__)


def _print_result(result: Any, as_json: bool) -> None:
    if as_json:
        print(json.dumps(result, indent=2, default=str))
    else:
        print(result)


def load_samples(path: Path, columns: Sequence[str] | None = None) -> tuple[np.ndarray, np.ndarray | None, list[str]]:
    """Read a CSV into an interleaved buffer plus optional millisecond timestamps."""

    df = pd.read_csv(path)
    if df.empty:
        raise ValueError(f"Dataset {path} is empty")
    if columns:
        missing = [c for c in columns if c not in df.columns]
        if missing:
            raise ValueError(f"Columns not found in {path}: {missing}")
        value_columns = list(columns)
    else:
        value_columns = [c for c in df.select_dtypes(include=[np.number]).columns if c != "timestamp"]
        if not value_columns:
            raise ValueError("Dataset must contain at least one numeric column")
    frames = df[value_columns].astype(float).to_numpy()
    timestamps = None
    if "timestamp" in df.columns:
        frame_times = pd.to_numeric(df["timestamp"], errors="coerce").to_numpy(dtype=float)
        if not np.isnan(frame_times).any():
            timestamps = np.repeat(frame_times, len(value_columns))
    return frames.reshape(-1), timestamps, value_columns


def cmd_run(args: argparse.Namespace) -> int:
    config = PipelineConfig.from_file(args.config)
    samples, timestamps, columns = load_samples(args.input, args.columns)
    options: dict[str, Any] = {"channels": len(columns)}
    if args.sample_rate:
        options["sample_rate"] = args.sample_rate
    if args.drift_threshold is not None:
        options.update(enable_drift_detection=True, drift_threshold=args.drift_threshold)

    with build_pipeline(config) as pipeline:
        if args.state_in and args.state_in.exists():
            pipeline.load_state(args.state_in.read_text(encoding="utf-8"))
        if timestamps is not None:
            output = pipeline.process(samples, timestamps, options).result()
        else:
            output = pipeline.process(samples, options).result()
        if args.state_out:
            args.state_out.write_text(pipeline.save_state(), encoding="utf-8")
        trail = " → ".join(pipeline.stages)
        out_channels = pipeline.output_channels or len(columns)

    if out_channels != len(columns):
        columns = [f"channel_{i}" for i in range(out_channels)]
    frames = output.reshape(-1, out_channels)
    result = pd.DataFrame(frames, columns=columns)
    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        result.to_csv(args.output, index=False)
    log_event(logger, "pipeline_run", config=str(args.config), input_samples=int(samples.size), output_samples=int(output.size))
    summary = {
        "stages": trail,
        "input_samples": int(samples.size),
        "output_samples": int(output.size),
        "output": str(args.output) if args.output else None,
    }
    _print_result(summary, args.json)
    return 0


def cmd_describe(args: argparse.Namespace) -> int:
    config = PipelineConfig.from_file(args.config)
    with build_pipeline(config) as pipeline:
        description = {"name": config.name, "stages": pipeline.describe(), "state": pipeline.list_state()}
    _print_result(description, args.json)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dspipe", description="Run configurable streaming DSP pipelines.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON logs")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Process a CSV file through a configured pipeline")
    run.add_argument("config", type=Path, help="Pipeline definition (YAML or JSON)")
    run.add_argument("input", type=Path, help="CSV file with one column per channel")
    run.add_argument("--output", type=Path, help="Destination CSV for the processed samples")
    run.add_argument("--columns", nargs="+", help="Value columns to use as channels (default: all numeric)")
    run.add_argument("--sample-rate", type=float, help="Sample rate in Hz")
    run.add_argument("--drift-threshold", type=float, help="Enable drift detection with this threshold (percent)")
    run.add_argument("--state-in", type=Path, help="Load pipeline state from this file before processing")
    run.add_argument("--state-out", type=Path, help="Save pipeline state to this file after processing")
    run.add_argument("--json", action="store_true", help="Emit summary as JSON to stdout")
    run.set_defaults(func=cmd_run)

    describe = sub.add_parser("describe", help="Inspect a pipeline definition without running it")
    describe.add_argument("config", type=Path, help="Pipeline definition (YAML or JSON)")
    describe.add_argument("--json", action="store_true", help="Emit description as JSON to stdout")
    describe.set_defaults(func=cmd_describe)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level, json_logs=True if args.json_logs else None)
    try:
        return args.func(args)
    except (DspError, FileNotFoundError, ValueError) as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
