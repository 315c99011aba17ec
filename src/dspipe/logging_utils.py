"""Structured logging helpers and the pipeline log pool."""

from __future__ import annotations

import json
import logging
import os
import re
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, List, Mapping, Sequence

LEVEL_PRIORITY: dict[str, int] = {"debug": 2, "info": 5, "warn": 7, "error": 9}

_STDLIB_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def _json_logs_enabled(json_logs: bool | None) -> bool:
    if json_logs is None:
        return os.getenv("DSPIPE_JSON_LOGS", "false").lower() == "true"
    return json_logs


def configure_logging(level: str = "INFO", json_logs: bool | None = None) -> None:
    """Configure global logging. Respects DSPIPE_JSON_LOGS env override."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s" if _json_logs_enabled(json_logs) else "%(levelname)s:%(name)s:%(message)s",
    )


def log_event(
    logger: logging.Logger,
    event: str,
    *,
    level: int = logging.INFO,
    json_logs: bool | None = None,
    **fields: Any,
) -> None:
    """Emit a structured log event."""

    payload = {"event": event, **fields}
    if _json_logs_enabled(json_logs):
        logger.log(level, json.dumps(payload, default=str))
    else:
        logger.log(level, payload)


@dataclass
class LogEntry:
    """Single pipeline log record as delivered to callbacks."""

    topic: str
    level: str
    message: str
    context: Mapping[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    priority: int = 0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def build_topic(level: str, stage: str | None = None, category: str | None = None) -> str:
    """``pipeline.stage.<stage>.<category>`` when a stage is known, else ``pipeline.<level>``."""
    if stage:
        return f"pipeline.stage.{stage}.{category or level}"
    return f"pipeline.{level}"


def _compile_pattern(pattern: str) -> re.Pattern[str]:
    parts = [re.escape(part) if part != "*" else "[^.]+" for part in pattern.split(".")]
    return re.compile("^" + r"\.".join(parts) + "$")


class TopicFilter:
    """Matches topics against exact strings or ``*`` single-segment wildcards."""

    def __init__(self, patterns: str | Sequence[str] | None = None) -> None:
        if patterns is None:
            self.patterns: list[str] = []
        elif isinstance(patterns, str):
            self.patterns = [patterns]
        else:
            self.patterns = [str(p) for p in patterns]
        self._compiled = [_compile_pattern(p) for p in self.patterns]

    def matches(self, topic: str) -> bool:
        if not self._compiled:
            return True
        return any(regex.match(topic) for regex in self._compiled)

    def __bool__(self) -> bool:
        return bool(self.patterns)


class LogPool:
    """Fixed-capacity circular buffer of log entries, drained once per call."""

    def __init__(self, capacity: int = 32) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._entries: deque[LogEntry] = deque(maxlen=capacity)

    def add(self, entry: LogEntry) -> None:
        self._entries.append(entry)

    def extend(self, entries: Iterable[LogEntry]) -> None:
        self._entries.extend(entries)

    def drain(self) -> List[LogEntry]:
        entries = list(self._entries)
        self._entries.clear()
        return entries

    def __len__(self) -> int:
        return len(self._entries)


def stdlib_level(level: str) -> int:
    return _STDLIB_LEVELS.get(level, logging.INFO)
