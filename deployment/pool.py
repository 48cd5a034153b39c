# SPDX-License-Identifier: MIT
"""Target pools: the health-checked members serving one deployment colour.

Membership is owned by the compute platform. :class:`TargetPool` asks the
platform to launch or terminate members and observes what the platform
reports, layering health classification and in-flight request accounting
on top.
"""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, field
from enum import Enum
from time import monotonic
from typing import Callable, Iterable, Mapping, Protocol, Sequence

from core.utils.logging import get_logger
from core.utils.metrics import MetricsCollector, get_metrics_collector

from .errors import PoolNotDrainedError
from .health import MemberHealth
from .models import Color, Endpoint

LOGGER = get_logger(__name__)


class PoolState(str, Enum):
    IDLE = "IDLE"
    PROVISIONING = "PROVISIONING"
    ACTIVE = "ACTIVE"
    DRAINING = "DRAINING"
    REMOVED = "REMOVED"
    PROVISION_FAILED = "PROVISION_FAILED"


@dataclass(frozen=True, slots=True)
class PlatformView:
    """What the compute platform currently reports for one colour."""

    endpoints: tuple[Endpoint, ...] = ()
    failed: bool = False
    reason: str = ""


class ComputePlatform(Protocol):
    """Launches and terminates the containers backing a pool."""

    def launch(self, color: Color, image: str, count: int) -> None:
        """Begin provisioning ``count`` members running ``image``; must not block."""

    def describe(self, color: Color) -> PlatformView:
        """Return the members currently registered for ``color``."""

    def terminate(self, color: Color) -> None:
        """Stop every member of ``color``."""


class StaticComputePlatform:
    """Platform backed by a fixed list of pre-started endpoints per colour.

    Suitable for hosts where the application instances are started by an
    external process manager; ``launch`` simply exposes the configured
    endpoints for the colour.
    """

    def __init__(
        self,
        endpoints: Mapping[Color, Sequence[Endpoint]],
        *,
        running: Iterable[Color] = (),
    ) -> None:
        self._endpoints = {Color(color): tuple(items) for color, items in endpoints.items()}
        self._launched: dict[Color, int] = {}
        self._images: dict[Color, str] = {}
        self._failures: dict[Color, str] = {}
        self._lock = threading.Lock()
        for color in running:
            self._launched[Color(color)] = len(self._endpoints.get(Color(color), ()))

    def launch(self, color: Color, image: str, count: int) -> None:
        available = self._endpoints.get(color, ())
        if len(available) < count:
            raise RuntimeError(
                f"only {len(available)} endpoints configured for {color.value}, {count} requested"
            )
        with self._lock:
            self._launched[color] = count
            self._images[color] = image
            self._failures.pop(color, None)

    def describe(self, color: Color) -> PlatformView:
        with self._lock:
            count = self._launched.get(color, 0)
            failure = self._failures.get(color)
        if failure is not None:
            return PlatformView(failed=True, reason=failure)
        return PlatformView(endpoints=self._endpoints.get(color, ())[:count])

    def terminate(self, color: Color) -> None:
        with self._lock:
            self._launched.pop(color, None)
            self._images.pop(color, None)

    def fail(self, color: Color, reason: str) -> None:
        """Report the launch of ``color`` as failed."""

        with self._lock:
            self._failures[color] = reason

    def image(self, color: Color) -> str | None:
        with self._lock:
            return self._images.get(color)


@dataclass(eq=False)
class PoolMember:
    """One registered endpoint together with its health and load."""

    endpoint: Endpoint
    registered_at: float
    health: MemberHealth = field(default_factory=MemberHealth)
    in_flight: int = 0
    draining: bool = False


@dataclass(frozen=True, slots=True)
class PoolStatus:
    color: Color
    state: PoolState
    desired: int
    members: int
    healthy: int
    in_flight: int

    @property
    def ready(self) -> bool:
        return (
            self.state in (PoolState.PROVISIONING, PoolState.ACTIVE)
            and self.desired > 0
            and self.healthy >= self.desired
        )


class TargetPool:
    """A health-checked set of members for a single colour."""

    def __init__(
        self,
        color: Color,
        platform: ComputePlatform,
        *,
        deregistration_delay: float = 60.0,
        time_source: Callable[[], float] = monotonic,
        metrics: MetricsCollector | None = None,
    ) -> None:
        if deregistration_delay < 0:
            raise ValueError("deregistration_delay must be non-negative")
        self.color = Color(color)
        self._platform = platform
        self._deregistration_delay = float(deregistration_delay)
        self._time = time_source
        self._metrics = metrics or get_metrics_collector()

        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._members: dict[Endpoint, PoolMember] = {}
        self._cursor = itertools.count()
        self._state = PoolState.IDLE
        self._desired = 0
        self._image: str | None = None
        self._failure_reason: str | None = None

    @property
    def state(self) -> PoolState:
        with self._lock:
            return self._state

    @property
    def image(self) -> str | None:
        with self._lock:
            return self._image

    @property
    def failure_reason(self) -> str | None:
        with self._lock:
            return self._failure_reason

    @property
    def deregistration_delay(self) -> float:
        return self._deregistration_delay

    def provision(self, desired_count: int, image: str) -> None:
        """Ask the platform for ``desired_count`` members running ``image``.

        Returns as soon as the platform accepted the request. Repeating the
        call for the image and count already being provisioned is a no-op.
        """

        if desired_count < 1:
            raise ValueError("desired_count must be at least 1")
        with self._lock:
            if (
                self._state in (PoolState.PROVISIONING, PoolState.ACTIVE)
                and self._image == image
                and self._desired == desired_count
            ):
                return
            self._state = PoolState.PROVISIONING
            self._desired = desired_count
            self._image = image
            self._failure_reason = None
            self._members.clear()
        try:
            self._platform.launch(self.color, image, desired_count)
        except Exception as exc:
            self._mark_failed(f"{type(exc).__name__}: {exc}")
            return
        LOGGER.info("Pool provisioning requested", color=self.color.value, image=image, desired=desired_count)

    def adopt(self, desired_count: int, image: str | None) -> None:
        """Treat members already running on the platform as the active pool."""

        with self._lock:
            self._state = PoolState.ACTIVE
            self._desired = desired_count
            self._image = image
            self._failure_reason = None
        self._sync()
        for member in self.members():
            # Adopted members were serving production before the controller started.
            member.health.healthy = True

    def members(self) -> list[PoolMember]:
        self._sync()
        with self._lock:
            return list(self._members.values())

    def status(self) -> PoolStatus:
        self._sync()
        with self._lock:
            healthy = sum(
                1 for member in self._members.values() if member.health.healthy and not member.draining
            )
            status = PoolStatus(
                color=self.color,
                state=self._state,
                desired=self._desired,
                members=len(self._members),
                healthy=healthy,
                in_flight=sum(member.in_flight for member in self._members.values()),
            )
            if status.state is PoolState.PROVISIONING and status.ready:
                self._state = PoolState.ACTIVE
                status = PoolStatus(self.color, PoolState.ACTIVE, status.desired, status.members, healthy, status.in_flight)
        self._metrics.set_pool_health(self.color.value, healthy)
        return status

    # ------------------------------------------------------------------
    # Request accounting
    def acquire(self) -> PoolMember | None:
        """Pick a member for a new request and count it as in flight.

        Healthy members are preferred; when none is healthy every non-draining
        member is eligible (fail open). Draining pools accept no new requests.
        """

        with self._lock:
            if self._state in (PoolState.DRAINING, PoolState.REMOVED, PoolState.PROVISION_FAILED):
                return None
            candidates = [m for m in self._members.values() if not m.draining]
            healthy = [m for m in candidates if m.health.healthy]
            pool = healthy or candidates
            if not pool:
                return None
            member = pool[next(self._cursor) % len(pool)]
            member.in_flight += 1
            return member

    def release(self, member: PoolMember) -> None:
        with self._lock:
            member.in_flight = max(0, member.in_flight - 1)
            if self.in_flight == 0:
                self._idle.notify_all()

    @property
    def accepting(self) -> bool:
        """Whether the pool takes new requests (not draining or torn down)."""

        with self._lock:
            return self._state not in (PoolState.DRAINING, PoolState.REMOVED, PoolState.PROVISION_FAILED)

    @property
    def in_flight(self) -> int:
        with self._lock:
            return sum(member.in_flight for member in self._members.values())

    # ------------------------------------------------------------------
    # Teardown
    def drain(self) -> None:
        """Stop accepting new requests; in-flight requests may finish."""

        with self._lock:
            if self._state in (PoolState.REMOVED, PoolState.DRAINING):
                return
            self._state = PoolState.DRAINING
            for member in self._members.values():
                member.draining = True
        LOGGER.info("Pool draining", color=self.color.value, in_flight=self.in_flight)

    def reactivate(self) -> bool:
        """Undo :meth:`drain` for a pool whose members are still registered."""

        with self._lock:
            if self._state is not PoolState.DRAINING:
                return False
            self._state = PoolState.ACTIVE
            for member in self._members.values():
                member.draining = False
        LOGGER.warning("Pool reactivated", color=self.color.value)
        return True

    def wait_drained(self, timeout: float | None = None) -> bool:
        """Block until no request is in flight or ``timeout`` (default: deregistration delay) passes."""

        limit = self._deregistration_delay if timeout is None else max(0.0, float(timeout))
        with self._idle:
            return self._idle.wait_for(lambda: self.in_flight == 0, timeout=limit)

    def remove(self) -> None:
        """Terminate the members through the platform.

        Raises :class:`PoolNotDrainedError` while any request is in flight.
        """

        with self._lock:
            if self._state is PoolState.REMOVED:
                return
            remaining = self.in_flight
        if remaining:
            raise PoolNotDrainedError(self.color.value, remaining)
        self._platform.terminate(self.color)
        with self._lock:
            self._members.clear()
            self._state = PoolState.REMOVED
            self._desired = 0
        self._metrics.set_pool_health(self.color.value, 0)
        LOGGER.info("Pool removed", color=self.color.value)

    # ------------------------------------------------------------------
    # Platform synchronisation
    def _mark_failed(self, reason: str) -> None:
        with self._lock:
            self._state = PoolState.PROVISION_FAILED
            self._failure_reason = reason
        LOGGER.error("Pool provisioning failed", color=self.color.value, reason=reason)

    def _sync(self) -> None:
        with self._lock:
            if self._state in (PoolState.IDLE, PoolState.REMOVED, PoolState.PROVISION_FAILED):
                return
        view = self._platform.describe(self.color)
        if view.failed:
            self._mark_failed(view.reason or "platform reported launch failure")
            return
        now = self._time()
        with self._lock:
            current = set(view.endpoints)
            for endpoint in [e for e in self._members if e not in current]:
                del self._members[endpoint]
            for endpoint in view.endpoints:
                if endpoint not in self._members:
                    self._members[endpoint] = PoolMember(
                        endpoint=endpoint,
                        registered_at=now,
                        draining=self._state is PoolState.DRAINING,
                    )


__all__ = [
    "ComputePlatform",
    "PlatformView",
    "PoolMember",
    "PoolState",
    "PoolStatus",
    "StaticComputePlatform",
    "TargetPool",
]
