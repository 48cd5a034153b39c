# SPDX-License-Identifier: MIT
"""Blue/green rollout controller.

The controller drives one :class:`~deployment.models.RolloutRecord` at a time
through the rollout state machine:

* provision the inactive colour and wait until its pool is ready;
* expose it behind a test-only listener rule and ask the post test traffic
  lifecycle hook for a verdict;
* bake while continuously watching pool health;
* atomically point the production rule at the new colour;
* drain and remove the previous colour.

Any :class:`~deployment.errors.RolloutFailure` moves the record to
``ROLLING_BACK``, which restores the production weights captured before
provisioning started. Router outages during rollback are retried with
backoff and escalated, never abandoned.

External effects sit behind the pool, router, prober and hook collaborators
so tests substitute fakes and a fake clock.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from time import monotonic
from typing import Any, Callable, Mapping, TypeVar

from core.config.rollout import RolloutSettings
from core.utils.logging import generate_rollout_id, get_logger, rollout_context
from core.utils.metrics import MetricsCollector, get_metrics_collector
from observability.notifications import EscalationDispatcher

from .errors import (
    HealthRegression,
    HookFailure,
    NoChangeError,
    PoolNotDrainedError,
    ProvisionFailure,
    RollbackFailedError,
    RolloutAborted,
    RolloutFailure,
    RolloutInProgressError,
    RouterUnavailableError,
    RoutingApplyFailure,
)
from .health import HealthProber
from .hooks import HookStatus, LifecycleHookInvoker
from .models import Color, RolloutRecord, RolloutState, TERMINAL_STATES
from .pool import PoolMember, PoolState, PoolStatus, TargetPool
from .router import PRODUCTION_RULE_ID, TrafficRouter
from .store import InMemoryRolloutStore, RolloutStore

__all__ = ["RolloutController", "RolloutPolicy"]

LOGGER = get_logger(__name__)

T = TypeVar("T")

_STATE_NAMES = tuple(state.value for state in RolloutState)

# Production already points at the target colour in these states.
_PAST_SHIFT = frozenset({RolloutState.FINALIZING, RolloutState.SUCCEEDED})


@dataclass(frozen=True)
class RolloutPolicy:
    """Timing and retry parameters applied to every rollout."""

    bake_time: float = 900.0
    provisioning_timeout: float = 600.0
    poll_interval: float = 5.0
    hook_stage: str = "post-test-traffic-shift"
    hook_timeout: float = 90.0
    test_path: str = "/__test__/*"
    test_header: str | None = None
    test_priority: int = 10
    drain_timeout: float | None = None
    rollback_max_attempts: int = 5
    rollback_retry_interval: float = 1.0
    rollback_backoff: float = 2.0
    rollback_max_interval: float = 30.0

    def __post_init__(self) -> None:
        if self.bake_time < 0.0:
            raise ValueError("bake_time must be non-negative")
        if self.provisioning_timeout <= 0.0:
            raise ValueError("provisioning_timeout must be strictly positive")
        if self.poll_interval <= 0.0:
            raise ValueError("poll_interval must be strictly positive")
        if self.hook_timeout <= 0.0:
            raise ValueError("hook_timeout must be strictly positive")
        if self.rollback_max_attempts < 1:
            raise ValueError("rollback_max_attempts must be at least 1")
        if self.rollback_backoff < 1.0:
            raise ValueError("rollback_backoff must be >= 1.0")

    @classmethod
    def from_settings(cls, settings: RolloutSettings) -> "RolloutPolicy":
        return cls(
            bake_time=settings.timing.bake_time,
            provisioning_timeout=settings.timing.provisioning_timeout,
            poll_interval=settings.timing.poll_interval,
            hook_stage=settings.hook.stage,
            hook_timeout=settings.hook.timeout,
            test_path=settings.router.test_path,
            test_header=settings.router.test_header,
            test_priority=settings.router.test_priority,
            drain_timeout=settings.timing.drain_timeout,
            rollback_max_attempts=settings.rollback.max_attempts,
            rollback_retry_interval=settings.rollback.retry_interval,
            rollback_backoff=settings.rollback.backoff_multiplier,
            rollback_max_interval=settings.rollback.max_interval,
        )


def _test_rule_id(color: Color) -> str:
    return f"test-{color.value}"


class RolloutController:
    """Drive blue/green rollouts for a single application."""

    def __init__(
        self,
        application: str,
        *,
        pools: Mapping[Color, TargetPool],
        router: TrafficRouter,
        prober: HealthProber,
        hooks: LifecycleHookInvoker,
        desired_count: int = 2,
        policy: RolloutPolicy | None = None,
        store: RolloutStore | None = None,
        active_color: Color = Color.BLUE,
        active_image: str | None = None,
        entry_point: str = "",
        escalation: EscalationDispatcher | None = None,
        metrics: MetricsCollector | None = None,
        time_source: Callable[[], float] = monotonic,
        sleep_fn: Callable[[float], None] | None = None,
        clock: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] = generate_rollout_id,
    ) -> None:
        if not application:
            raise ValueError("application must not be empty")
        if desired_count < 1:
            raise ValueError("desired_count must be at least 1")
        self._application = application
        self._pools = {Color(color): pool for color, pool in pools.items()}
        if set(self._pools) != set(Color):
            raise ValueError("a pool is required for every colour")
        self._router = router
        self._prober = prober
        self._hooks = hooks
        self._desired = desired_count
        self._policy = policy or RolloutPolicy()
        self._store = store or InMemoryRolloutStore()
        self._entry_point = entry_point
        self._escalation = escalation or EscalationDispatcher()
        self._metrics = metrics or get_metrics_collector()
        self._time = time_source
        self._sleep = sleep_fn
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._id_factory = id_factory

        release = self._store.get_release(application)
        if release is not None:
            active_color, active_image = release
        self._active_color = Color(active_color)
        self._active_image = active_image

        self._lock = threading.Lock()
        self._current: str | None = None
        self._driver: str | None = None
        self._wakeup = threading.Event()
        self._bake_deadlines: dict[str, float] = {}
        self._steps: Mapping[RolloutState, Callable[[RolloutRecord], None]] = {
            RolloutState.PENDING: self._step_pending,
            RolloutState.PROVISIONING: self._step_provisioning,
            RolloutState.TEST_TRAFFIC: self._step_test_traffic,
            RolloutState.POST_TEST_HOOK: self._step_post_test_hook,
            RolloutState.BAKING: self._step_baking,
            RolloutState.SHIFTING: self._step_shifting,
            RolloutState.FINALIZING: self._step_finalizing,
        }
        self._prober.add_listener(self._on_health_change)

    # ------------------------------------------------------------------
    # Public API
    @property
    def application(self) -> str:
        return self._application

    @property
    def entry_point(self) -> str:
        """Stable address of the listener; independent of any rollout."""

        return self._entry_point

    @property
    def active_color(self) -> Color:
        with self._lock:
            return self._active_color

    @property
    def active_image(self) -> str | None:
        with self._lock:
            return self._active_image

    @property
    def current_rollout_id(self) -> str | None:
        with self._lock:
            return self._current

    def deploy(self, image: str) -> RolloutRecord:
        """Accept ``image`` and drive its rollout to a terminal state."""

        record = self._accept(image, drive=True)
        return self._drive(record)

    def start(self, image: str) -> RolloutRecord:
        """Create and persist a ``PENDING`` rollout without driving it.

        Raises :class:`RolloutInProgressError` while another rollout of the
        application is active and :class:`NoChangeError` when ``image`` is
        already serving production.
        """

        return self._accept(image, drive=False)

    def _accept(self, image: str, *, drive: bool) -> RolloutRecord:
        image = image.strip()
        if not image:
            raise ValueError("image reference must not be empty")
        with self._lock:
            self._ensure_idle()
            if image == self._active_image:
                raise NoChangeError(f"{image} is already active for {self._application}")
            source = self._active_color
            record = RolloutRecord(
                rollout_id=self._id_factory(),
                application=self._application,
                image=image,
                previous_image=self._active_image,
                source_color=source,
                target_color=source.other,
                started_at=self._clock(),
                baseline_weights=self._router.weights(PRODUCTION_RULE_ID),
            )
            self._store.save(record)
            self._current = record.rollout_id
            if drive:
                self._driver = record.rollout_id
        self._metrics.set_rollout_state(self._application, record.state.value, _STATE_NAMES)
        LOGGER.info(
            "Rollout accepted",
            rollout_id=record.rollout_id,
            application=self._application,
            image=image,
            source=record.source_color.value,
            target=record.target_color.value,
        )
        return record

    def run(self, rollout_id: str) -> RolloutRecord:
        """Drive a rollout created by :meth:`start` (or persisted earlier) to completion."""

        return self.resume(rollout_id)

    def resume(self, rollout_id: str) -> RolloutRecord:
        """Continue a persisted rollout from the state it was left in."""

        record = self._claim(rollout_id)
        if record.terminal:
            return record
        return self._drive(record)

    def abort(self, rollout_id: str, reason: str = "aborted by operator") -> RolloutRecord:
        """Roll back a persisted rollout instead of continuing it.

        A rollout that already shifted production is finished forward.
        """

        record = self._claim(rollout_id)
        if record.terminal:
            return record
        if record.state in _PAST_SHIFT:
            return self._drive(record)
        return self._drive(record, abort=RolloutAborted(reason))

    def _claim(self, rollout_id: str) -> RolloutRecord:
        with self._lock:
            if self._driver is not None:
                raise RolloutInProgressError(self._application, self._driver)
            if self._current is not None and self._current != rollout_id:
                raise RolloutInProgressError(self._application, self._current)
            record = self._store.load(rollout_id)
            if record is None:
                raise KeyError(rollout_id)
            if record.application != self._application:
                raise ValueError(f"rollout {rollout_id} belongs to {record.application}")
            if not record.terminal:
                self._current = rollout_id
                self._driver = rollout_id
        return record

    def record(self, rollout_id: str) -> RolloutRecord | None:
        return self._store.load(rollout_id)

    def history(self, limit: int = 20) -> list[RolloutRecord]:
        return self._store.history(self._application, limit=limit)

    def status(self) -> dict[str, Any]:
        current_id = self.current_rollout_id
        current = self._store.load(current_id) if current_id else None
        return {
            "application": self._application,
            "entry_point": self._entry_point,
            "active_color": self.active_color.value,
            "active_image": self.active_image,
            "rollout": current.to_dict() if current else None,
            "routing": self._router.snapshot(),
            "pools": {
                color.value: _status_dict(pool.status()) for color, pool in self._pools.items()
            },
        }

    def close(self) -> None:
        self._prober.stop()
        self._hooks.shutdown()

    # ------------------------------------------------------------------
    # Driver
    def _ensure_idle(self) -> None:
        if self._current is not None:
            raise RolloutInProgressError(self._application, self._current)
        persisted = self._store.active(self._application)
        if persisted is not None:
            raise RolloutInProgressError(self._application, persisted.rollout_id)

    def _drive(self, record: RolloutRecord, abort: RolloutFailure | None = None) -> RolloutRecord:
        started = self._time()
        try:
            with rollout_context(record.rollout_id):
                try:
                    if abort is not None:
                        self._abort(record, abort)
                    while record.state not in TERMINAL_STATES and record.state is not RolloutState.ROLLING_BACK:
                        self._steps[record.state](record)
                except RolloutFailure as failure:
                    if record.state in _PAST_SHIFT:
                        raise
                    self._abort(record, failure)
                except Exception as exc:
                    if record.state in _PAST_SHIFT:
                        raise
                    LOGGER.exception("Unexpected error while driving rollout", state=record.state.value)
                    self._abort(record, RolloutFailure(f"{type(exc).__name__}: {exc}"))
                except BaseException as exc:
                    if record.state in _PAST_SHIFT or record.terminal:
                        raise
                    LOGGER.error(
                        "Rollout interrupted; restoring production",
                        state=record.state.value,
                        interrupt=type(exc).__name__,
                    )
                    self._abort(record, RolloutAborted(f"interrupted by {type(exc).__name__}"))
                    self._roll_back(record)
                    raise
                if record.state is RolloutState.ROLLING_BACK:
                    self._roll_back(record)
        finally:
            with self._lock:
                self._current = None
                self._driver = None
            self._bake_deadlines.pop(record.rollout_id, None)
        if record.terminal:
            self._metrics.record_rollout(self._application, record.outcome.value, self._time() - started)
            LOGGER.info(
                "Rollout finished",
                rollout_id=record.rollout_id,
                outcome=record.outcome.value,
                failure_kind=record.failure_kind,
                failure_reason=record.failure_reason,
            )
        return record

    def _transition(self, record: RolloutRecord, target: RolloutState, detail: str = "") -> None:
        source = record.state
        record.transition(target, at=self._clock(), detail=detail)
        self._store.save(record)
        self._metrics.record_transition(self._application, source.value, target.value)
        self._metrics.set_rollout_state(self._application, target.value, _STATE_NAMES)
        LOGGER.info("Rollout state changed", source=source.value, target=target.value, detail=detail)

    def _abort(self, record: RolloutRecord, failure: RolloutFailure) -> None:
        record.mark_failure(failure.kind, failure.reason)
        self._metrics.record_failure(self._application, failure.kind)
        LOGGER.error(
            "Rollout aborted",
            state=record.state.value,
            failure_kind=failure.kind,
            reason=failure.reason,
        )
        if record.state is not RolloutState.ROLLING_BACK:
            self._transition(record, RolloutState.ROLLING_BACK, detail=failure.reason)

    # ------------------------------------------------------------------
    # Forward steps
    def _step_pending(self, record: RolloutRecord) -> None:
        self._transition(record, RolloutState.PROVISIONING)

    def _step_provisioning(self, record: RolloutRecord) -> None:
        pool = self._pools[record.target_color]
        pool.provision(self._desired, record.image)
        self._prober.watch(pool)
        status = self._await_ready(pool)
        self._transition(
            record,
            RolloutState.TEST_TRAFFIC,
            detail=f"{status.healthy}/{status.desired} healthy",
        )

    def _await_ready(self, pool: TargetPool) -> PoolStatus:
        timeout = self._policy.provisioning_timeout
        deadline = self._time() + timeout
        while True:
            status = pool.status()
            if status.state is PoolState.PROVISION_FAILED:
                raise ProvisionFailure(
                    f"{pool.color.value} pool failed to provision: {pool.failure_reason}",
                    terminal=True,
                )
            if status.ready:
                return status
            remaining = deadline - self._time()
            if remaining <= 0.0:
                raise ProvisionFailure(
                    f"{pool.color.value} pool reached {status.healthy}/{status.desired} "
                    f"healthy members within {timeout:g}s"
                )
            self._pause(min(self._policy.poll_interval, remaining))

    def _step_test_traffic(self, record: RolloutRecord) -> None:
        self._apply_routing(
            "install test rule",
            lambda: self._router.add_test_rule(
                self._policy.test_path,
                record.target_color,
                header=self._policy.test_header,
                priority=self._policy.test_priority,
            ),
        )
        self._transition(record, RolloutState.POST_TEST_HOOK, detail=self._policy.test_path)

    def _step_post_test_hook(self, record: RolloutRecord) -> None:
        stage = self._policy.hook_stage
        payload = {
            "rolloutId": record.rollout_id,
            "stage": stage,
            "timestamp": self._clock().isoformat(),
        }
        verdict = self._hooks.invoke(stage, payload, self._policy.hook_timeout)
        if verdict is not HookStatus.SUCCEEDED:
            invocation = self._hooks.invocation(record.rollout_id, stage)
            detail = f": {invocation.error}" if invocation is not None and invocation.error else ""
            raise HookFailure(f"lifecycle hook {stage} returned FAILED{detail}")
        record.bake_deadline = self._clock() + timedelta(seconds=self._policy.bake_time)
        self._bake_deadlines[record.rollout_id] = self._time() + self._policy.bake_time
        self._transition(record, RolloutState.BAKING, detail=f"bake {self._policy.bake_time:g}s")

    def _step_baking(self, record: RolloutRecord) -> None:
        deadline = self._bake_deadlines.get(record.rollout_id)
        if deadline is None:
            if record.bake_deadline is not None:
                remaining = (record.bake_deadline - self._clock()).total_seconds()
            else:
                remaining = self._policy.bake_time
            deadline = self._time() + max(0.0, remaining)
            self._bake_deadlines[record.rollout_id] = deadline

        pool = self._pools[record.target_color]
        while True:
            status = pool.status()
            if not status.ready:
                raise HealthRegression(
                    f"{pool.color.value} pool degraded to {status.healthy}/{status.desired} "
                    "healthy members while baking"
                )
            remaining = deadline - self._time()
            if remaining <= 0.0:
                break
            self._pause(min(self._policy.poll_interval, remaining))
        self._transition(record, RolloutState.SHIFTING)

    def _step_shifting(self, record: RolloutRecord) -> None:
        pool = self._pools[record.target_color]
        status = pool.status()
        if not status.ready:
            raise HealthRegression(
                f"{pool.color.value} pool has {status.healthy}/{status.desired} healthy members"
            )
        total = self._router.total_weight
        self._apply_routing(
            "shift production weights",
            lambda: self._router.set_weights(
                PRODUCTION_RULE_ID,
                [(record.target_color, total), (record.source_color, 0)],
            ),
        )
        self._transition(record, RolloutState.FINALIZING, detail=f"{record.target_color.value}=100%")

    def _step_finalizing(self, record: RolloutRecord) -> None:
        old = self._pools[record.source_color]
        with self._lock:
            self._active_color = record.target_color
            self._active_image = record.image
        steps: tuple[tuple[str, Callable[[], object]], ...] = (
            (
                "record release",
                lambda: self._store.set_release(self._application, record.target_color, record.image),
            ),
            (
                "remove test rule",
                lambda: self._with_router_retries(
                    record,
                    "remove test rule",
                    lambda: self._router.remove_rule(_test_rule_id(record.target_color)),
                ),
            ),
            ("retire previous pool", lambda: self._retire(record, old)),
        )
        problems: list[str] = []
        for action, step in steps:
            try:
                step()
            except Exception as exc:
                LOGGER.exception("Finalizing step failed", action=action, color=old.color.value)
                problems.append(f"{action} failed: {exc}")
        detail = "; ".join(problems)
        if problems:
            self._escalate(
                record,
                "finalize_incomplete",
                subject=f"Rollout of {record.image} finished with errors for {self._application}",
                message=detail,
            )
        self._transition(record, RolloutState.SUCCEEDED, detail=detail)

    def _retire(self, record: RolloutRecord, pool: TargetPool, *, drain: bool = True) -> None:
        """Drain ``pool`` to zero in-flight requests and remove it.

        Every deregistration delay that expires with requests still in flight
        is escalated; the pool is never terminated under live requests.
        """

        self._prober.unwatch(pool)
        if pool.state is PoolState.REMOVED:
            return
        if drain:
            pool.drain()
        rounds = 0
        while True:
            if pool.wait_drained(self._policy.drain_timeout):
                try:
                    pool.remove()
                except PoolNotDrainedError:
                    continue
                return
            rounds += 1
            in_flight = pool.in_flight
            LOGGER.warning(
                "Deregistration delay elapsed with requests in flight",
                color=pool.color.value,
                in_flight=in_flight,
                round=rounds,
            )
            self._escalate(
                record,
                "drain_stalled",
                subject=f"Drain stalled for {self._application}",
                message=(
                    f"{pool.color.value} pool still has {in_flight} request(s) in flight "
                    f"after {rounds} deregistration delay(s)"
                ),
                color=pool.color.value,
                in_flight=in_flight,
                rounds=rounds,
            )

    # ------------------------------------------------------------------
    # Rollback
    def _roll_back(self, record: RolloutRecord) -> None:
        source_pool = self._pools[record.source_color]
        new_pool = self._pools[record.target_color]
        provision_failed = new_pool.state is PoolState.PROVISION_FAILED

        if source_pool.reactivate():
            LOGGER.warning("Previous pool was draining; serving from it again", color=source_pool.color.value)
        baseline = list(record.baseline_weights.items()) or [
            (record.source_color, self._router.total_weight),
            (record.target_color, 0),
        ]
        with LOGGER.operation("restore production weights", rule=PRODUCTION_RULE_ID) as op:
            restored = self._with_router_retries(
                record,
                "restore production weights",
                lambda: self._router.set_weights(PRODUCTION_RULE_ID, baseline),
            )
            op["weights"] = restored.weights
        self._with_router_retries(
            record,
            "remove test rule",
            lambda: self._router.remove_rule(_test_rule_id(record.target_color)),
        )

        if new_pool.state is PoolState.IDLE or new_pool.state is PoolState.REMOVED:
            self._prober.unwatch(new_pool)
        else:
            try:
                self._retire(record, new_pool, drain=not provision_failed)
            except Exception:
                LOGGER.exception("Failed to deprovision rolled back pool", color=new_pool.color.value)

        final = RolloutState.FAILED if provision_failed else RolloutState.ROLLEDBACK
        self._transition(record, final, detail=record.failure_reason or "")

    def _with_router_retries(self, record: RolloutRecord, action: str, operation: Callable[[], T]) -> T:
        """Run a router call until it succeeds, escalating every exhausted round."""

        rounds = 0
        while True:
            rounds += 1
            delay = self._policy.rollback_retry_interval
            last_error: Exception | None = None
            for attempt in range(1, self._policy.rollback_max_attempts + 1):
                try:
                    result = operation()
                except (RouterUnavailableError, RoutingApplyFailure) as exc:
                    last_error = exc
                    self._metrics.record_rollback_attempt(self._application, "retry")
                    LOGGER.warning(
                        "Router call failed; retrying",
                        action=action,
                        attempt=attempt,
                        round=rounds,
                        error=str(exc),
                    )
                    self._backoff(delay)
                    delay = min(delay * self._policy.rollback_backoff, self._policy.rollback_max_interval)
                else:
                    self._metrics.record_rollback_attempt(self._application, "success")
                    return result
            error = RollbackFailedError(
                record.rollout_id, rounds * self._policy.rollback_max_attempts, last_error
            )
            self._escalate(
                record,
                "rollback_failed",
                subject=f"Rollback stuck for {self._application}",
                message=f"{action} failed: {error}",
                attempts=error.attempts,
                last_error=str(error.cause),
            )

    def _escalate(
        self, record: RolloutRecord, event: str, *, subject: str, message: str, **details: Any
    ) -> None:
        LOGGER.critical("Escalating rollout problem", event=event, detail=message, **details)
        self._escalation.dispatch(
            event,
            subject=subject,
            message=message,
            metadata={
                "rollout_id": record.rollout_id,
                "application": self._application,
                "state": record.state.value,
                **details,
            },
        )

    # ------------------------------------------------------------------
    # Waiting
    def _on_health_change(self, color: Color, member: PoolMember, healthy: bool) -> None:
        self._wakeup.set()

    def _pause(self, seconds: float) -> None:
        """Wait up to ``seconds``, returning early on a health classification change."""

        if self._sleep is not None:
            self._sleep(seconds)
            return
        if self._wakeup.wait(seconds):
            self._wakeup.clear()

    def _backoff(self, seconds: float) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
        else:
            time.sleep(seconds)

    def _apply_routing(self, action: str, operation: Callable[[], T]) -> T:
        try:
            return operation()
        except RouterUnavailableError as exc:
            raise RoutingApplyFailure(f"{action}: {exc}") from exc
        except RoutingApplyFailure as exc:
            raise RoutingApplyFailure(f"{action}: {exc.reason}") from exc


def _status_dict(status: PoolStatus) -> dict[str, Any]:
    return {
        "state": status.state.value,
        "desired": status.desired,
        "members": status.members,
        "healthy": status.healthy,
        "in_flight": status.in_flight,
        "ready": status.ready,
    }
