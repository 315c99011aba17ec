"""Exception hierarchy for dspipe."""

from __future__ import annotations


class DspError(Exception):
    """Base class for all dspipe errors."""


class ConfigurationError(DspError, ValueError):
    """Invalid stage parameters, raised before any state is created."""


class ExecutionError(DspError, RuntimeError):
    """Failure while a process call is running."""


class StateError(ExecutionError):
    """Snapshot could not be parsed or does not match the pipeline."""
