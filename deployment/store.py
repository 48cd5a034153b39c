# SPDX-License-Identifier: MIT
"""Persistence for rollout records and the currently released image."""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, TypeVar

from .models import Color, RolloutRecord, TERMINAL_STATES

T = TypeVar("T")


class RolloutStore(ABC):
    """Storage contract used by :class:`deployment.rollout.RolloutController`."""

    @abstractmethod
    def save(self, record: RolloutRecord) -> None:
        """Insert or replace ``record``."""

    @abstractmethod
    def load(self, rollout_id: str) -> RolloutRecord | None:
        """Return the record for ``rollout_id`` if it exists."""

    @abstractmethod
    def history(self, application: str, *, limit: int = 20) -> list[RolloutRecord]:
        """Return the most recent records for ``application``, newest first."""

    @abstractmethod
    def get_release(self, application: str) -> tuple[Color, str | None] | None:
        """Return the colour and image currently serving production."""

    @abstractmethod
    def set_release(self, application: str, color: Color, image: str | None) -> None:
        """Persist the colour and image currently serving production."""

    def active(self, application: str) -> RolloutRecord | None:
        """Return the non-terminal rollout of ``application``, if any."""

        for record in self.history(application, limit=50):
            if record.state not in TERMINAL_STATES:
                return record
        return None


class InMemoryRolloutStore(RolloutStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, dict] = {}
        self._order: list[str] = []
        self._releases: dict[str, tuple[Color, str | None]] = {}

    def save(self, record: RolloutRecord) -> None:
        with self._lock:
            if record.rollout_id not in self._records:
                self._order.append(record.rollout_id)
            self._records[record.rollout_id] = record.to_dict()

    def load(self, rollout_id: str) -> RolloutRecord | None:
        with self._lock:
            payload = self._records.get(rollout_id)
        return RolloutRecord.from_dict(payload) if payload is not None else None

    def history(self, application: str, *, limit: int = 20) -> list[RolloutRecord]:
        with self._lock:
            payloads = [self._records[rid] for rid in reversed(self._order)]
        matching = [p for p in payloads if p["application"] == application][:limit]
        return [RolloutRecord.from_dict(payload) for payload in matching]

    def get_release(self, application: str) -> tuple[Color, str | None] | None:
        with self._lock:
            return self._releases.get(application)

    def set_release(self, application: str, color: Color, image: str | None) -> None:
        with self._lock:
            self._releases[application] = (Color(color), image)


class SQLiteRolloutStore(RolloutStore):
    """SQLite-backed store so rollouts survive controller restarts."""

    _UPSERT_RECORD = """
        INSERT INTO rollout_records (rollout_id, application, state, started_at, payload, updated_at)
        VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(rollout_id) DO UPDATE SET
            state = excluded.state,
            payload = excluded.payload,
            updated_at = CURRENT_TIMESTAMP
    """

    _UPSERT_RELEASE = """
        INSERT INTO active_release (application, color, image, updated_at)
        VALUES (?, ?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(application) DO UPDATE SET
            color = excluded.color,
            image = excluded.image,
            updated_at = CURRENT_TIMESTAMP
    """

    def __init__(
        self,
        path: str | Path,
        *,
        timeout: float = 10.0,
        max_retries: int = 5,
        retry_interval: float = 0.05,
        backoff_multiplier: float = 2.0,
    ) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if retry_interval <= 0:
            raise ValueError("retry_interval must be positive")
        if backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")
        self._path = Path(path)
        self._timeout = float(timeout)
        self._max_retries = int(max_retries)
        self._retry_interval = float(retry_interval)
        self._backoff_multiplier = float(backoff_multiplier)
        self._initialise()

    def _initialise(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self._path, timeout=self._timeout) as connection:
            connection.execute("PRAGMA journal_mode=WAL")
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS rollout_records (
                    rollout_id TEXT PRIMARY KEY,
                    application TEXT NOT NULL,
                    state TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            connection.execute(
                "CREATE INDEX IF NOT EXISTS ix_rollout_records_application "
                "ON rollout_records (application, started_at)"
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS active_release (
                    application TEXT PRIMARY KEY,
                    color TEXT NOT NULL CHECK (color IN ('blue', 'green')),
                    image TEXT,
                    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )

    def _with_retry(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        delay = self._retry_interval
        attempts_remaining = self._max_retries
        while True:
            try:
                with sqlite3.connect(self._path, timeout=self._timeout) as connection:
                    return operation(connection)
            except sqlite3.OperationalError as exc:
                if not self._should_retry(exc) or attempts_remaining <= 0:
                    raise
                time.sleep(delay)
                attempts_remaining -= 1
                delay = min(delay * self._backoff_multiplier, self._timeout)

    @staticmethod
    def _should_retry(error: sqlite3.OperationalError) -> bool:
        message = str(error).lower()
        return "locked" in message or "busy" in message

    def save(self, record: RolloutRecord) -> None:
        payload = json.dumps(record.to_dict(), sort_keys=True)

        def _save(connection: sqlite3.Connection) -> None:
            connection.execute(
                self._UPSERT_RECORD,
                (
                    record.rollout_id,
                    record.application,
                    record.state.value,
                    record.started_at.isoformat(),
                    payload,
                ),
            )

        self._with_retry(_save)

    def load(self, rollout_id: str) -> RolloutRecord | None:
        def _load(connection: sqlite3.Connection) -> tuple[str] | None:
            cursor = connection.execute(
                "SELECT payload FROM rollout_records WHERE rollout_id = ?", (rollout_id,)
            )
            return cursor.fetchone()

        row = self._with_retry(_load)
        return RolloutRecord.from_dict(json.loads(row[0])) if row else None

    def history(self, application: str, *, limit: int = 20) -> list[RolloutRecord]:
        def _history(connection: sqlite3.Connection) -> list[tuple[str]]:
            cursor = connection.execute(
                "SELECT payload FROM rollout_records WHERE application = ? "
                "ORDER BY started_at DESC, rowid DESC LIMIT ?",
                (application, int(limit)),
            )
            return cursor.fetchall()

        return [RolloutRecord.from_dict(json.loads(row[0])) for row in self._with_retry(_history)]

    def get_release(self, application: str) -> tuple[Color, str | None] | None:
        def _get(connection: sqlite3.Connection) -> tuple[str, str | None] | None:
            cursor = connection.execute(
                "SELECT color, image FROM active_release WHERE application = ?", (application,)
            )
            return cursor.fetchone()

        row = self._with_retry(_get)
        return (Color(row[0]), row[1]) if row else None

    def set_release(self, application: str, color: Color, image: str | None) -> None:
        def _set(connection: sqlite3.Connection) -> None:
            connection.execute(self._UPSERT_RELEASE, (application, Color(color).value, image))

        self._with_retry(_set)


__all__ = ["InMemoryRolloutStore", "RolloutStore", "SQLiteRolloutStore"]
