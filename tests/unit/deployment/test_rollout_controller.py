# SPDX-License-Identifier: MIT
from __future__ import annotations

import sqlite3
import threading
from datetime import timedelta
from typing import Any, Mapping

import pytest

from deployment.errors import NoChangeError, RolloutInProgressError, RoutingApplyFailure
from deployment.models import FORWARD_PATH, Color, RolloutOutcome, RolloutState
from deployment.pool import PoolState
from deployment.rollout import RolloutController, RolloutPolicy
from deployment.router import PRODUCTION_RULE_ID
from deployment.store import InMemoryRolloutStore, SQLiteRolloutStore

from _rollout_fakes import GREEN_ENDPOINTS, STAGE


def _states(record) -> list[RolloutState]:
    return [change.state for change in record.history]


def _at(record, state: RolloutState):
    return next(change.at for change in record.history if change.state is state)


def test_successful_rollout_shifts_production_after_bake(make_harness) -> None:
    harness = make_harness()

    record = harness.controller.deploy("web:v2")

    assert record.state is RolloutState.SUCCEEDED
    assert record.outcome is RolloutOutcome.SUCCEEDED
    assert _states(record) == list(FORWARD_PATH)
    assert harness.router.weights(PRODUCTION_RULE_ID) == {"green": 100, "blue": 0}
    assert not harness.router.has_rule("test-green")
    assert harness.pools[Color.BLUE].state is PoolState.REMOVED
    assert harness.pools[Color.GREEN].image == "web:v2"
    assert harness.controller.active_color is Color.GREEN
    assert harness.controller.active_image == "web:v2"
    assert harness.store.get_release("web") == (Color.GREEN, "web:v2")
    assert Color.BLUE in harness.prober.unwatched
    assert harness.controller.current_rollout_id is None


def test_bake_lasts_fifteen_minutes_by_default(make_harness) -> None:
    harness = make_harness()

    record = harness.controller.deploy("web:v2")

    baked = _at(record, RolloutState.SHIFTING) - _at(record, RolloutState.BAKING)
    assert baked == timedelta(minutes=15)
    assert record.bake_deadline == _at(record, RolloutState.SHIFTING)


def test_hook_sees_test_traffic_on_new_colour_only(make_harness) -> None:
    decisions: dict[str, Any] = {}
    holder: dict[str, Any] = {}

    def hook(payload: Mapping[str, Any]) -> Mapping[str, Any]:
        router = holder["router"]
        decisions["test"] = router.route("/__test__/ping").color
        decisions["prod"] = router.route("/orders").color
        decisions["weights"] = router.weights(PRODUCTION_RULE_ID)
        return {"hookStatus": "SUCCEEDED"}

    harness = make_harness(hook=hook)
    holder["router"] = harness.router

    record = harness.controller.deploy("web:v2")

    assert record.outcome is RolloutOutcome.SUCCEEDED
    assert decisions == {
        "test": Color.GREEN,
        "prod": Color.BLUE,
        "weights": {"blue": 100, "green": 0},
    }
    assert len(harness.hook_payloads) == 1
    payload = harness.hook_payloads[0]
    assert payload["rolloutId"] == record.rollout_id
    assert payload["stage"] == STAGE
    assert payload["timestamp"]


def test_failed_hook_rolls_back_without_touching_production(make_harness) -> None:
    harness = make_harness(hook=lambda payload: {"hookStatus": "FAILED"})

    record = harness.controller.deploy("web:v2")

    assert record.state is RolloutState.ROLLEDBACK
    assert record.outcome is RolloutOutcome.ROLLEDBACK
    assert record.failure_kind == "hook_failure"
    assert RolloutState.SHIFTING not in _states(record)
    assert harness.router.weights(PRODUCTION_RULE_ID) == {"blue": 100, "green": 0}
    assert not harness.router.has_rule("test-green")
    assert harness.pools[Color.GREEN].state is PoolState.REMOVED
    assert harness.pools[Color.BLUE].state is PoolState.ACTIVE
    assert harness.controller.active_color is Color.BLUE
    assert harness.store.get_release("web") is None


def test_hook_timeout_fails_closed(make_harness) -> None:
    release = threading.Event()

    def slow_hook(payload: Mapping[str, Any]) -> Mapping[str, Any]:
        release.wait(5.0)
        return {"hookStatus": "SUCCEEDED"}

    harness = make_harness(hook=slow_hook, policy=RolloutPolicy(poll_interval=30.0, hook_timeout=0.05))
    try:
        record = harness.controller.deploy("web:v2")
    finally:
        release.set()

    assert record.outcome is RolloutOutcome.ROLLEDBACK
    assert record.failure_kind == "hook_failure"
    invocation = harness.hooks.invocation(record.rollout_id, STAGE)
    assert invocation is not None and invocation.timed_out
    assert harness.router.weights(PRODUCTION_RULE_ID) == {"blue": 100, "green": 0}


def test_provisioning_timeout_rolls_back(make_harness) -> None:
    harness = make_harness()
    harness.prober.healthy[Color.GREEN] = False

    record = harness.controller.deploy("web:v2")

    assert record.state is RolloutState.ROLLEDBACK
    assert record.failure_kind == "provision_failure"
    assert "0/2" in (record.failure_reason or "")
    assert harness.clock.now >= 600.0
    assert _states(record) == [
        RolloutState.PENDING,
        RolloutState.PROVISIONING,
        RolloutState.ROLLING_BACK,
        RolloutState.ROLLEDBACK,
    ]
    assert harness.router.weights(PRODUCTION_RULE_ID) == {"blue": 100, "green": 0}
    assert harness.pools[Color.GREEN].state is PoolState.REMOVED
    assert harness.hook_payloads == []


def test_terminal_provision_failure_ends_failed(make_harness) -> None:
    harness = make_harness(green_endpoints=GREEN_ENDPOINTS[:1])

    record = harness.controller.deploy("web:v2")

    assert record.state is RolloutState.FAILED
    assert record.outcome is RolloutOutcome.FAILED
    assert record.failure_kind == "provision_failure"
    assert harness.router.weights(PRODUCTION_RULE_ID) == {"blue": 100, "green": 0}
    assert harness.pools[Color.GREEN].state is PoolState.REMOVED
    assert harness.pools[Color.BLUE].state is PoolState.ACTIVE


def test_health_regression_during_bake_rolls_back(make_harness) -> None:
    harness = make_harness()

    def degrade(now: float) -> None:
        if now >= 300.0:
            harness.prober.set_health(harness.pools[Color.GREEN], False)

    harness.clock.on_sleep(degrade)

    record = harness.controller.deploy("web:v2")

    assert record.state is RolloutState.ROLLEDBACK
    assert record.failure_kind == "health_regression"
    assert RolloutState.BAKING in _states(record)
    assert RolloutState.SHIFTING not in _states(record)
    assert harness.router.weights(PRODUCTION_RULE_ID) == {"blue": 100, "green": 0}
    assert harness.pools[Color.GREEN].state is PoolState.REMOVED


def test_second_deploy_while_baking_is_rejected(make_harness) -> None:
    harness = make_harness()
    rejected: list[BaseException] = []
    snapshots: list[dict[str, Any]] = []

    def second_deploy(now: float) -> None:
        if rejected:
            return
        snapshots.append(harness.controller.status())
        try:
            harness.controller.start("web:v3")
        except RolloutInProgressError as exc:
            rejected.append(exc)

    harness.clock.on_sleep(second_deploy)

    record = harness.controller.deploy("web:v2")

    assert record.outcome is RolloutOutcome.SUCCEEDED
    assert len(rejected) == 1
    assert rejected[0].rollout_id == record.rollout_id
    assert len(harness.store.history("web")) == 1
    status = snapshots[0]
    assert status["rollout"]["state"] == "BAKING"
    assert status["entry_point"] == "web.example.internal:80"
    assert "test-green" in status["routing"]
    assert status["pools"]["green"]["ready"] is True


def test_redeploying_active_image_is_a_no_op(make_harness) -> None:
    harness = make_harness()

    with pytest.raises(NoChangeError):
        harness.controller.deploy("web:v1")

    assert harness.store.history("web") == []
    assert harness.router.weights(PRODUCTION_RULE_ID) == {"blue": 100, "green": 0}


def test_consecutive_rollouts_alternate_colours(make_harness) -> None:
    harness = make_harness()

    first = harness.controller.deploy("web:v2")
    second = harness.controller.deploy("web:v3")

    assert (first.source_color, first.target_color) == (Color.BLUE, Color.GREEN)
    assert (second.source_color, second.target_color) == (Color.GREEN, Color.BLUE)
    assert second.previous_image == "web:v2"
    assert second.outcome is RolloutOutcome.SUCCEEDED
    assert harness.router.weights(PRODUCTION_RULE_ID) == {"blue": 100, "green": 0}
    assert harness.pools[Color.GREEN].state is PoolState.REMOVED


def test_router_outage_during_rollback_is_retried_and_escalated(make_harness) -> None:
    holder: dict[str, Any] = {}

    def failing_hook(payload: Mapping[str, Any]) -> Mapping[str, Any]:
        holder["router"].set_available(False)
        return {"hookStatus": "FAILED"}

    policy = RolloutPolicy(poll_interval=30.0, rollback_max_attempts=3, rollback_retry_interval=1.0)
    harness = make_harness(hook=failing_hook, policy=policy)
    holder["router"] = harness.router

    def recover(now: float) -> None:
        if len(harness.clock.sleeps) >= 4:
            harness.router.set_available(True)

    harness.clock.on_sleep(recover)

    record = harness.controller.deploy("web:v2")

    assert record.state is RolloutState.ROLLEDBACK
    assert record.failure_kind == "hook_failure"
    assert harness.clock.sleeps[:3] == [1.0, 2.0, 4.0]
    assert len(harness.notifier.sent) == 1
    subject, _, metadata = harness.notifier.sent[0]
    assert "web" in subject
    assert metadata["rollout_id"] == record.rollout_id
    assert metadata["attempts"] == 3
    assert harness.router.weights(PRODUCTION_RULE_ID) == {"blue": 100, "green": 0}
    assert not harness.router.has_rule("test-green")


def test_previous_pool_is_removed_only_after_in_flight_requests_finish(make_harness) -> None:
    harness = make_harness(policy=RolloutPolicy(poll_interval=30.0, drain_timeout=0.05))
    blue = harness.pools[Color.BLUE]
    held = blue.acquire()
    assert held is not None
    in_flight_at_removal: list[int] = []
    terminate = harness.platform.terminate

    def recording_terminate(color: Color) -> None:
        if color is Color.BLUE:
            in_flight_at_removal.append(blue.in_flight)
        terminate(color)

    harness.platform.terminate = recording_terminate  # type: ignore[method-assign]
    timer = threading.Timer(0.3, blue.release, args=(held,))
    timer.start()
    try:
        record = harness.controller.deploy("web:v2")
    finally:
        timer.cancel()

    assert record.outcome is RolloutOutcome.SUCCEEDED
    assert in_flight_at_removal == [0]
    assert blue.state is PoolState.REMOVED
    stalls = [sent for sent in harness.notifier.sent if sent[0].startswith("Drain stalled")]
    assert stalls
    assert stalls[0][2]["color"] == "blue"
    assert stalls[0][2]["in_flight"] == 1


def test_concurrent_drivers_of_one_rollout_are_rejected(make_harness) -> None:
    entered = threading.Event()
    release = threading.Event()

    def blocking_hook(payload: Mapping[str, Any]) -> Mapping[str, Any]:
        entered.set()
        release.wait(5.0)
        return {"hookStatus": "SUCCEEDED"}

    harness = make_harness(hook=blocking_hook)
    pending = harness.controller.start("web:v2")
    finished: list[Any] = []
    rejected: list[RolloutInProgressError] = []

    def drive() -> None:
        try:
            finished.append(harness.controller.run(pending.rollout_id))
        except RolloutInProgressError as exc:
            rejected.append(exc)

    first = threading.Thread(target=drive)
    first.start()
    try:
        assert entered.wait(5.0)
        second = threading.Thread(target=drive)
        second.start()
        second.join(5.0)
    finally:
        release.set()
        first.join(5.0)

    assert len(rejected) == 1
    assert rejected[0].rollout_id == pending.rollout_id
    assert [record.outcome for record in finished] == [RolloutOutcome.SUCCEEDED]
    assert len(harness.hook_payloads) == 1


def test_routing_rejection_during_shift_rolls_back_without_retry(make_harness) -> None:
    harness = make_harness()
    apply = harness.router.set_weights
    forward_attempts: list[dict[Color, int]] = []

    def rejecting_set_weights(rule_id: str, targets):
        weights = {Color(color): weight for color, weight in targets}
        if weights.get(Color.GREEN):
            forward_attempts.append(weights)
            raise RoutingApplyFailure("listener rejected the update")
        return apply(rule_id, targets)

    harness.router.set_weights = rejecting_set_weights  # type: ignore[method-assign]

    record = harness.controller.deploy("web:v2")

    assert record.state is RolloutState.ROLLEDBACK
    assert record.failure_kind == "routing_apply_failure"
    assert len(forward_attempts) == 1
    assert RolloutState.SHIFTING in _states(record)
    assert 1.0 not in harness.clock.sleeps
    assert harness.notifier.sent == []
    assert harness.router.weights(PRODUCTION_RULE_ID) == {"blue": 100, "green": 0}
    assert harness.pools[Color.BLUE].state is PoolState.ACTIVE
    assert harness.pools[Color.GREEN].state is PoolState.REMOVED


def test_release_bookkeeping_failure_finishes_forward(make_harness) -> None:
    class FlakyReleaseStore(InMemoryRolloutStore):
        def set_release(self, application: str, color: Color, image: str | None) -> None:
            raise sqlite3.OperationalError("disk I/O error")

    harness = make_harness(store=FlakyReleaseStore())

    record = harness.controller.deploy("web:v2")

    assert record.state is RolloutState.SUCCEEDED
    assert "record release failed" in record.history[-1].detail
    assert harness.router.weights(PRODUCTION_RULE_ID) == {"green": 100, "blue": 0}
    assert not harness.router.has_rule("test-green")
    assert harness.pools[Color.BLUE].state is PoolState.REMOVED
    assert harness.controller.active_color is Color.GREEN
    assert harness.controller.active_image == "web:v2"
    assert [sent[0] for sent in harness.notifier.sent] == [
        "Rollout of web:v2 finished with errors for web"
    ]


def test_interrupt_while_baking_restores_production_before_exiting(make_harness) -> None:
    harness = make_harness()
    interrupted: list[float] = []

    def interrupt(now: float) -> None:
        if now >= 60.0 and not interrupted:
            interrupted.append(now)
            raise KeyboardInterrupt

    harness.clock.on_sleep(interrupt)

    with pytest.raises(KeyboardInterrupt):
        harness.controller.deploy("web:v2")

    record = harness.store.history("web")[0]
    assert record.state is RolloutState.ROLLEDBACK
    assert record.failure_kind == "aborted"
    assert RolloutState.BAKING in _states(record)
    assert harness.router.weights(PRODUCTION_RULE_ID) == {"blue": 100, "green": 0}
    assert not harness.router.has_rule("test-green")
    assert harness.pools[Color.GREEN].state is PoolState.REMOVED
    assert harness.store.active("web") is None
    assert harness.controller.current_rollout_id is None


def test_abort_rolls_back_a_started_rollout(make_harness) -> None:
    harness = make_harness()
    pending = harness.controller.start("web:v2")

    record = harness.controller.abort(pending.rollout_id)

    assert record.state is RolloutState.ROLLEDBACK
    assert record.failure_kind == "aborted"
    assert record.failure_reason == "aborted by operator"
    assert harness.hook_payloads == []
    assert harness.router.weights(PRODUCTION_RULE_ID) == {"blue": 100, "green": 0}
    assert harness.store.active("web") is None


def test_started_rollout_can_be_resumed(make_harness) -> None:
    harness = make_harness()

    pending = harness.controller.start("web:v2")
    assert pending.state is RolloutState.PENDING
    assert harness.store.active("web").rollout_id == pending.rollout_id

    finished = harness.controller.resume(pending.rollout_id)

    assert finished.outcome is RolloutOutcome.SUCCEEDED
    assert harness.controller.resume(pending.rollout_id).state is RolloutState.SUCCEEDED


def test_rollouts_survive_in_sqlite(make_harness, tmp_path) -> None:
    store = SQLiteRolloutStore(tmp_path / "rollouts.sqlite3")
    harness = make_harness(store=store)

    record = harness.controller.deploy("web:v2")

    reopened = SQLiteRolloutStore(tmp_path / "rollouts.sqlite3")
    loaded = reopened.load(record.rollout_id)
    assert loaded is not None
    assert loaded.state is RolloutState.SUCCEEDED
    assert _states(loaded) == list(FORWARD_PATH)
    assert reopened.get_release("web") == (Color.GREEN, "web:v2")

    restarted = RolloutController(
        "web",
        pools=harness.pools,
        router=harness.router,
        prober=harness.prober,  # type: ignore[arg-type]
        hooks=harness.hooks,
        store=reopened,
    )
    assert restarted.active_color is Color.GREEN
    assert restarted.active_image == "web:v2"


def test_policy_rejects_invalid_values() -> None:
    with pytest.raises(ValueError):
        RolloutPolicy(poll_interval=0.0)
    with pytest.raises(ValueError):
        RolloutPolicy(rollback_max_attempts=0)
