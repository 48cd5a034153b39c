# SPDX-License-Identifier: MIT
"""Lifecycle hook invocation with fail-closed deadlines.

A hook is external logic consulted at a rollout stage. It receives
``{"rolloutId", "stage", "timestamp"}`` and answers
``{"hookStatus": "SUCCEEDED" | "FAILED"}``. Any other answer, an exception,
or a missing answer at the deadline counts as ``FAILED`` so an ambiguous
external state can never let production traffic move.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from time import monotonic
from typing import Any, Callable, Mapping, MutableMapping, Protocol

import httpx

from core.utils.logging import get_logger
from core.utils.metrics import MetricsCollector, get_metrics_collector

LOGGER = get_logger(__name__)


class HookStatus(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class HookTarget(Protocol):
    def __call__(self, payload: Mapping[str, Any]) -> Mapping[str, Any]:
        """Evaluate ``payload`` and return a mapping carrying ``hookStatus``."""


def always_succeed(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    """Hook that approves every rollout after logging the payload it received."""

    LOGGER.info("Lifecycle payload received", payload=dict(payload))
    return {"hookStatus": HookStatus.SUCCEEDED.value}


class HttpHookTarget:
    """POST the hook payload as JSON and read the verdict from the response body."""

    def __init__(
        self,
        url: str,
        *,
        http_client: httpx.Client | None = None,
        timeout: float = 90.0,
    ) -> None:
        self._url = url
        self._client = http_client or httpx.Client(timeout=timeout)
        self._owns_client = http_client is None
        self._timeout = timeout

    def __call__(self, payload: Mapping[str, Any]) -> Mapping[str, Any]:
        response = self._client.post(self._url, json=dict(payload), timeout=self._timeout)
        response.raise_for_status()
        body = response.json()
        if not isinstance(body, Mapping):
            raise ValueError("hook response must be a JSON object")
        return body

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


@dataclass(slots=True)
class LifecycleHookInvocation:
    """Record of one call to a stage hook."""

    rollout_id: str
    stage: str
    payload: dict[str, Any]
    deadline: float
    started_at: datetime
    verdict: HookStatus | None = None
    timed_out: bool = False
    error: str | None = None
    finished_at: datetime | None = None
    response: dict[str, Any] = field(default_factory=dict)
    done: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)


def parse_verdict(response: Mapping[str, Any]) -> HookStatus:
    raw = response.get("hookStatus", response.get("status"))
    if isinstance(raw, str) and raw.upper() == HookStatus.SUCCEEDED.value:
        return HookStatus.SUCCEEDED
    return HookStatus.FAILED


class LifecycleHookInvoker:
    """Call stage hooks at most once per rollout and wait up to a deadline."""

    def __init__(
        self,
        targets: Mapping[str, HookTarget] | None = None,
        *,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], datetime] | None = None,
        max_workers: int = 4,
    ) -> None:
        self._targets: dict[str, HookTarget] = dict(targets or {})
        self._metrics = metrics or get_metrics_collector()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="lifecycle-hook")
        self._lock = threading.Lock()
        self._invocations: MutableMapping[tuple[str, str], LifecycleHookInvocation] = {}

    def register(self, stage: str, target: HookTarget) -> None:
        with self._lock:
            self._targets[stage] = target

    def invocation(self, rollout_id: str, stage: str) -> LifecycleHookInvocation | None:
        with self._lock:
            return self._invocations.get((rollout_id, stage))

    def invoke(self, stage: str, payload: Mapping[str, Any], deadline: float) -> HookStatus:
        """Return the verdict of ``stage`` for the rollout named in ``payload``.

        ``deadline`` is the number of seconds to wait for the verdict.
        Repeated calls for the same rollout and stage return the recorded
        verdict without calling the hook again; a call made while the first
        one is still waiting shares its verdict.
        """

        rollout_id = str(payload.get("rolloutId") or "")
        if not rollout_id:
            raise ValueError("payload must carry a rolloutId")
        key = (rollout_id, stage)
        with self._lock:
            existing = self._invocations.get(key)
            if existing is None:
                target = self._targets.get(stage)
                invocation = LifecycleHookInvocation(
                    rollout_id=rollout_id,
                    stage=stage,
                    payload={"rolloutId": rollout_id, "stage": stage, **dict(payload)},
                    deadline=float(deadline),
                    started_at=self._clock(),
                )
                invocation.payload.setdefault("timestamp", invocation.started_at.isoformat())
                self._invocations[key] = invocation
        if existing is not None:
            existing.done.wait()
            return existing.verdict or HookStatus.FAILED

        try:
            return self._run(stage, target, invocation)
        finally:
            invocation.done.set()

    def _run(
        self, stage: str, target: HookTarget | None, invocation: LifecycleHookInvocation
    ) -> HookStatus:
        started = monotonic()
        if target is None:
            invocation.error = f"no hook registered for stage '{stage}'"
            verdict = HookStatus.FAILED
        else:
            verdict = self._await(target, invocation)
        invocation.verdict = verdict
        invocation.finished_at = self._clock()
        self._metrics.observe_hook(stage, "TIMEOUT" if invocation.timed_out else verdict.value, monotonic() - started)
        LOGGER.info(
            "Lifecycle hook finished",
            rollout_id=invocation.rollout_id,
            stage=stage,
            verdict=verdict.value,
            timed_out=invocation.timed_out,
            error=invocation.error,
        )
        return verdict

    def _await(self, target: HookTarget, invocation: LifecycleHookInvocation) -> HookStatus:
        future = self._executor.submit(target, dict(invocation.payload))
        try:
            response = future.result(timeout=max(0.0, invocation.deadline))
        except FutureTimeout:
            future.cancel()
            invocation.timed_out = True
            invocation.error = f"no verdict within {invocation.deadline:.1f}s"
            return HookStatus.FAILED
        except Exception as exc:
            invocation.error = f"{type(exc).__name__}: {exc}"
            return HookStatus.FAILED
        if not isinstance(response, Mapping):
            invocation.error = "hook returned a non-mapping response"
            return HookStatus.FAILED
        invocation.response = dict(response)
        return parse_verdict(response)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


__all__ = [
    "HookStatus",
    "HookTarget",
    "HttpHookTarget",
    "LifecycleHookInvocation",
    "LifecycleHookInvoker",
    "always_succeed",
    "parse_verdict",
]
