# SPDX-License-Identifier: MIT
"""Structured JSON logging for the rollout controller.

Every record emitted while a rollout is being driven carries the rollout
identifier so a single deployment attempt can be followed across the prober,
router, hook invoker and controller logs.
"""
from __future__ import annotations

import json
import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional, TextIO
from uuid import uuid4

_ROLLOUT_ID_VAR: ContextVar[Optional[str]] = ContextVar(
    "bluegreen_rollout_id", default=None
)


def generate_rollout_id() -> str:
    """Return a fresh rollout identifier."""

    return uuid4().hex


def get_rollout_id() -> Optional[str]:
    """Return the rollout identifier bound to the current context, if any."""

    return _ROLLOUT_ID_VAR.get()


@contextmanager
def rollout_context(rollout_id: Optional[str] = None) -> Iterator[str]:
    """Bind ``rollout_id`` to every log record emitted inside the block."""

    resolved = rollout_id or generate_rollout_id()
    token = _ROLLOUT_ID_VAR.set(resolved)
    try:
        yield resolved
    finally:
        _ROLLOUT_ID_VAR.reset(token)


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON documents."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        rollout_id = getattr(record, "rollout_id", None)
        if rollout_id:
            payload["rollout_id"] = rollout_id
        fields = getattr(record, "fields", None)
        if fields:
            payload.update(fields)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class StructuredLogger:
    """Thin wrapper adding keyword fields and rollout ids to stdlib logging."""

    def __init__(self, name: str, **bound: Any) -> None:
        self.logger = logging.getLogger(name)
        self._bound = dict(bound)

    def bind(self, **fields: Any) -> "StructuredLogger":
        """Return a logger that always attaches ``fields``."""

        return StructuredLogger(self.logger.name, **{**self._bound, **fields})

    def _log(self, level: int, msg: str, *, exc_info: bool = False, **fields: Any) -> None:
        if not self.logger.isEnabledFor(level):
            return
        rollout_id = fields.pop("rollout_id", None) or get_rollout_id()
        extra: Dict[str, Any] = {"rollout_id": rollout_id}
        merged = {**self._bound, **fields}
        if merged:
            extra["fields"] = merged
        self.logger.log(level, msg, exc_info=exc_info, extra=extra)

    def debug(self, msg: str, **fields: Any) -> None:
        self._log(logging.DEBUG, msg, **fields)

    def info(self, msg: str, **fields: Any) -> None:
        self._log(logging.INFO, msg, **fields)

    def warning(self, msg: str, **fields: Any) -> None:
        self._log(logging.WARNING, msg, **fields)

    def error(self, msg: str, **fields: Any) -> None:
        self._log(logging.ERROR, msg, **fields)

    def exception(self, msg: str, **fields: Any) -> None:
        self._log(logging.ERROR, msg, exc_info=True, **fields)

    def critical(self, msg: str, **fields: Any) -> None:
        self._log(logging.CRITICAL, msg, **fields)

    @contextmanager
    def operation(self, name: str, **context: Any) -> Iterator[Dict[str, Any]]:
        """Log the start, completion or failure of ``name`` with its duration.

        The yielded dictionary can be used to attach result fields that are
        included in the completion record::

            with logger.operation("set_weights", rule="production") as op:
                router.set_weights(...)
                op["weights"] = {"blue": 0, "green": 100}
        """

        started = time.monotonic()
        op: Dict[str, Any] = {"operation": name, **context}
        self.debug(f"Starting {name}", **op)
        try:
            yield op
        except Exception as exc:
            self.error(
                f"Failed {name}",
                **op,
                status="failure",
                duration_seconds=time.monotonic() - started,
                error_type=type(exc).__name__,
                error_message=str(exc),
            )
            raise
        else:
            op.setdefault("status", "success")
            self.info(
                f"Completed {name}",
                **op,
                duration_seconds=time.monotonic() - started,
            )


def configure_logging(
    level: str = "INFO",
    use_json: bool = True,
    stream: TextIO | None = None,
) -> None:
    """Install a single stream handler on the root logger."""

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))
    root.handlers.clear()
    handler = logging.StreamHandler(stream or sys.stdout)
    if use_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    root.addHandler(handler)


def get_logger(name: str, **bound: Any) -> StructuredLogger:
    """Return a :class:`StructuredLogger` for ``name``."""

    return StructuredLogger(name, **bound)


__all__ = [
    "JSONFormatter",
    "StructuredLogger",
    "configure_logging",
    "generate_rollout_id",
    "get_logger",
    "get_rollout_id",
    "rollout_context",
]
