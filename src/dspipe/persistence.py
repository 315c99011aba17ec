"""State stores used to persist pipeline snapshots between process lifetimes."""

from __future__ import annotations

import logging
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping

from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential, wait_none

logger = logging.getLogger(__name__)


@dataclass
class PersistenceConfig:
    """Where and how pipeline snapshots are stored."""

    path: str = "dspipe_state.db"
    state_key: str = "dspipe:state"
    max_retries: int = 3
    fallback_on_load_failure: bool = False
    retry_delay_s: float = 0.05

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if not self.state_key:
            raise ValueError("state_key must be non-empty")

    @classmethod
    def from_mapping(cls, cfg: Mapping[str, object]) -> "PersistenceConfig":
        aliases = {
            "stateKey": "state_key",
            "maxRetries": "max_retries",
            "fallbackOnLoadFailure": "fallback_on_load_failure",
            "retryDelayS": "retry_delay_s",
        }
        kwargs = {aliases.get(k, k): v for k, v in cfg.items()}
        kwargs = {k: v for k, v in kwargs.items() if hasattr(cls, k)}
        return cls(**kwargs)  # type: ignore[arg-type]


class StateStore(ABC):
    """Key/value storage for serialized pipeline state."""

    @abstractmethod
    def save(self, key: str, payload: str) -> None:
        ...

    @abstractmethod
    def load(self, key: str) -> str | None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    def close(self) -> None:
        ...


class SQLiteStateStore(StateStore):
    """Lightweight SQLite storage for pipeline snapshots."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self._init_schema()

    def _init_schema(self) -> None:
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS pipeline_state (
                state_key TEXT PRIMARY KEY,
                saved_at TEXT NOT NULL,
                payload TEXT NOT NULL
            )
            """
        )
        self.conn.commit()

    def save(self, key: str, payload: str) -> None:
        self.conn.execute(
            "INSERT OR REPLACE INTO pipeline_state (state_key, saved_at, payload) VALUES (?, ?, ?)",
            (key, datetime.now(timezone.utc).isoformat(), payload),
        )
        self.conn.commit()

    def load(self, key: str) -> str | None:
        row = self.conn.execute("SELECT payload FROM pipeline_state WHERE state_key = ?", (key,)).fetchone()
        return row[0] if row else None

    def delete(self, key: str) -> None:
        self.conn.execute("DELETE FROM pipeline_state WHERE state_key = ?", (key,))
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()


class InMemoryStateStore(StateStore):
    """Dictionary-backed store for tests and short-lived processes."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def save(self, key: str, payload: str) -> None:
        self._data[key] = payload

    def load(self, key: str) -> str | None:
        return self._data.get(key)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


def with_retries(action, *, attempts: int, delay_s: float, description: str):
    """Run ``action`` up to ``attempts`` times, re-raising the last failure.

    Only storage errors are retried. The wait grows exponentially from ``delay_s``.
    """

    def _log_attempt(state: RetryCallState) -> None:
        logger.warning(
            "%s failed (attempt %d/%d): %s", description, state.attempt_number, attempts, state.outcome.exception()
        )

    retryer = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=delay_s, min=delay_s) if delay_s > 0 else wait_none(),
        retry=retry_if_exception_type((sqlite3.Error, OSError)),
        before_sleep=_log_attempt,
        reraise=True,
    )
    return retryer(action)


def build_store(config: PersistenceConfig) -> StateStore:
    if config.path == ":memory:":
        return InMemoryStateStore()
    return SQLiteStateStore(config.path)
