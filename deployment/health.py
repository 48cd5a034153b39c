# SPDX-License-Identifier: MIT
"""Liveness probing of target pool members.

Each member is probed by its own periodic loop running on a daemon thread. A
member becomes healthy after ``healthy_threshold`` consecutive successful
probes and unhealthy after ``unhealthy_threshold`` consecutive failures, so a
single slow or failed answer never flips the classification on its own.
Failures observed during the member's grace period are ignored while the
application is still starting.

The rollout controller never reads individual probe results; it reads the
aggregated :meth:`deployment.pool.TargetPool.status` instead.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from time import monotonic
from typing import TYPE_CHECKING, Callable, Dict, Optional

import httpx

from core.config.rollout import HealthCheckConfig
from core.utils.logging import get_logger
from core.utils.metrics import MetricsCollector, get_metrics_collector

if TYPE_CHECKING:  # pragma: no cover - import cycle guard for type hints
    from .models import Color
    from .pool import PoolMember, TargetPool

LOGGER = get_logger(__name__)

HealthListener = Callable[["Color", "PoolMember", bool], None]


@dataclass(slots=True)
class MemberHealth:
    """Consecutive-outcome bookkeeping for one pool member."""

    healthy: bool = False
    consecutive_successes: int = 0
    consecutive_failures: int = 0
    last_checked: float | None = None
    last_error: str | None = None

    def observe(self, success: bool, *, healthy_threshold: int, unhealthy_threshold: int) -> bool:
        """Record one probe outcome and return ``True`` when the classification flipped."""

        if success:
            self.consecutive_successes += 1
            self.consecutive_failures = 0
            self.last_error = None
            if not self.healthy and self.consecutive_successes >= healthy_threshold:
                self.healthy = True
                return True
            return False

        self.consecutive_failures += 1
        self.consecutive_successes = 0
        if self.healthy and self.consecutive_failures >= unhealthy_threshold:
            self.healthy = False
            return True
        return False


class HealthProber:
    """Probe pool members over HTTP and keep their classification current."""

    def __init__(
        self,
        config: HealthCheckConfig,
        *,
        client: httpx.Client | None = None,
        sync_interval: float = 1.0,
        time_source: Callable[[], float] = monotonic,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._config = config
        self._client = client or httpx.Client()
        self._owns_client = client is None
        self._sync_interval = max(0.05, float(sync_interval))
        self._time = time_source
        self._metrics = metrics or get_metrics_collector()

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._pools: Dict["Color", "TargetPool"] = {}
        self._loops: Dict[tuple["Color", str], tuple[threading.Thread, threading.Event]] = {}
        self._listeners: list[HealthListener] = []
        self._monitor_thread: threading.Thread | None = None

    @property
    def config(self) -> HealthCheckConfig:
        return self._config

    def __enter__(self) -> "HealthProber":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> Optional[bool]:
        self.stop()
        return None

    # ------------------------------------------------------------------
    # Classification
    def add_listener(self, listener: HealthListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def probe(self, member: "PoolMember") -> bool:
        """Issue a single liveness request; ``True`` only for an in-range answer."""

        url = member.endpoint.url(self._config.path, port=self._config.port)
        low, high = self._config.success_codes
        try:
            response = self._client.get(url, timeout=self._config.timeout)
        except httpx.HTTPError as exc:
            member.health.last_error = f"{type(exc).__name__}: {exc}"
            return False
        if low <= response.status_code <= high:
            return True
        member.health.last_error = f"HTTP {response.status_code}"
        return False

    def observe(self, color: "Color", member: "PoolMember", success: bool) -> bool:
        """Apply a probe outcome to ``member`` and return its classification."""

        now = self._time()
        if not success and now - member.registered_at < self._config.grace_period:
            member.health.last_checked = now
            return member.health.healthy

        changed = member.health.observe(
            success,
            healthy_threshold=self._config.healthy_threshold,
            unhealthy_threshold=self._config.unhealthy_threshold,
        )
        member.health.last_checked = now
        self._metrics.record_probe(color.value, success)
        if changed:
            healthy = member.health.healthy
            LOGGER.info(
                "Member classification changed",
                color=color.value,
                member=str(member.endpoint),
                healthy=healthy,
                last_error=member.health.last_error,
            )
            with self._lock:
                listeners = list(self._listeners)
            for listener in listeners:
                listener(color, member, healthy)
        return member.health.healthy

    def check(self, color: "Color", member: "PoolMember") -> bool:
        """Probe ``member`` once and fold the outcome into its classification."""

        return self.observe(color, member, self.probe(member))

    # ------------------------------------------------------------------
    # Background probing
    def watch(self, pool: "TargetPool") -> None:
        with self._lock:
            self._pools[pool.color] = pool
        self.start()

    def unwatch(self, pool: "TargetPool") -> None:
        with self._lock:
            self._pools.pop(pool.color, None)
            stale = [key for key in self._loops if key[0] is pool.color]
            loops = [self._loops.pop(key) for key in stale]
        for thread, stop in loops:
            stop.set()

    def start(self) -> None:
        with self._lock:
            if self._monitor_thread and self._monitor_thread.is_alive():
                return
            self._stop_event.clear()
            self._monitor_thread = threading.Thread(
                target=self._monitor_loop, name="health-prober-monitor", daemon=True
            )
            self._monitor_thread.start()

    def stop(self, *, timeout: float = 5.0) -> None:
        self._stop_event.set()
        with self._lock:
            loops = list(self._loops.values())
            self._loops.clear()
            monitor = self._monitor_thread
            self._monitor_thread = None
        for _, stop in loops:
            stop.set()
        if monitor is not None and monitor.is_alive():
            monitor.join(timeout=timeout)
        for thread, _ in loops:
            if thread.is_alive():
                thread.join(timeout=timeout)
        if self._owns_client:
            self._client.close()

    def _monitor_loop(self) -> None:
        self._sync_loops()
        while not self._stop_event.wait(self._sync_interval):
            self._sync_loops()

    def _sync_loops(self) -> None:
        with self._lock:
            pools = list(self._pools.values())

        wanted: dict[tuple["Color", str], "PoolMember"] = {}
        for pool in pools:
            for member in pool.members():
                wanted[(pool.color, str(member.endpoint))] = member

        with self._lock:
            for key in [key for key in self._loops if key not in wanted]:
                _, stop = self._loops.pop(key)
                stop.set()
            for key, member in wanted.items():
                if key in self._loops or self._stop_event.is_set():
                    continue
                stop = threading.Event()
                thread = threading.Thread(
                    target=self._member_loop,
                    args=(key[0], member, stop),
                    name=f"health-probe-{key[0].value}-{key[1]}",
                    daemon=True,
                )
                self._loops[key] = (thread, stop)
                thread.start()

    def _member_loop(self, color: "Color", member: "PoolMember", stop: threading.Event) -> None:
        while not stop.is_set() and not self._stop_event.is_set():
            try:
                self.check(color, member)
            except Exception:  # pragma: no cover - keeps the loop alive on listener bugs
                LOGGER.exception("Health probe loop error", color=color.value, member=str(member.endpoint))
            if stop.wait(self._config.interval):
                return


__all__ = ["HealthListener", "HealthProber", "MemberHealth"]
