# SPDX-License-Identifier: MIT
from __future__ import annotations

import threading

import pytest

from deployment.errors import PoolNotDrainedError
from deployment.models import Color, Endpoint
from deployment.pool import PoolState, StaticComputePlatform, TargetPool

ENDPOINTS = {
    Color.BLUE: [Endpoint("10.0.1.10", 8080), Endpoint("10.0.1.11", 8080)],
    Color.GREEN: [Endpoint("10.0.2.10", 8080), Endpoint("10.0.2.11", 8080)],
}


def _healthy(pool: TargetPool) -> None:
    for member in pool.members():
        member.health.healthy = True


def test_provision_registers_platform_members() -> None:
    platform = StaticComputePlatform(ENDPOINTS)
    pool = TargetPool(Color.GREEN, platform)

    pool.provision(2, "web:v2")

    status = pool.status()
    assert status.state is PoolState.PROVISIONING
    assert status.members == 2
    assert status.healthy == 0
    assert not status.ready
    assert platform.image(Color.GREEN) == "web:v2"


def test_pool_becomes_active_once_desired_members_are_healthy() -> None:
    pool = TargetPool(Color.GREEN, StaticComputePlatform(ENDPOINTS))
    pool.provision(2, "web:v2")

    _healthy(pool)
    status = pool.status()

    assert status.ready
    assert status.state is PoolState.ACTIVE
    assert pool.state is PoolState.ACTIVE


def test_repeated_provision_is_idempotent() -> None:
    pool = TargetPool(Color.GREEN, StaticComputePlatform(ENDPOINTS))
    pool.provision(2, "web:v2")
    _healthy(pool)

    pool.provision(2, "web:v2")

    assert pool.status().healthy == 2


def test_launch_failure_marks_pool_failed() -> None:
    platform = StaticComputePlatform({Color.GREEN: ENDPOINTS[Color.GREEN][:1]})
    pool = TargetPool(Color.GREEN, platform)

    pool.provision(2, "web:v2")

    assert pool.state is PoolState.PROVISION_FAILED
    assert "only 1 endpoints" in (pool.failure_reason or "")
    assert pool.acquire() is None


def test_platform_reported_failure_marks_pool_failed() -> None:
    platform = StaticComputePlatform(ENDPOINTS)
    pool = TargetPool(Color.GREEN, platform)
    pool.provision(2, "web:v2")

    platform.fail(Color.GREEN, "image pull backoff")

    assert pool.status().state is PoolState.PROVISION_FAILED
    assert pool.failure_reason == "image pull backoff"


def test_acquire_prefers_healthy_members_and_fails_open() -> None:
    pool = TargetPool(Color.BLUE, StaticComputePlatform(ENDPOINTS, running=(Color.BLUE,)))
    pool.provision(2, "web:v1")
    members = pool.members()

    picked = {pool.acquire().endpoint for _ in range(4)}  # type: ignore[union-attr]
    assert picked == {member.endpoint for member in members}

    members[0].health.healthy = True
    for _ in range(4):
        member = pool.acquire()
        assert member is members[0]
        pool.release(member)


def test_drained_pool_refuses_new_requests_and_can_be_reactivated() -> None:
    pool = TargetPool(Color.BLUE, StaticComputePlatform(ENDPOINTS, running=(Color.BLUE,)))
    pool.adopt(2, "web:v1")

    pool.drain()
    assert pool.state is PoolState.DRAINING
    assert pool.acquire() is None
    assert not pool.status().ready

    assert pool.reactivate() is True
    assert pool.status().ready
    assert pool.reactivate() is False


def test_wait_drained_returns_when_in_flight_requests_finish() -> None:
    pool = TargetPool(Color.BLUE, StaticComputePlatform(ENDPOINTS, running=(Color.BLUE,)))
    pool.adopt(2, "web:v1")
    member = pool.acquire()
    assert member is not None
    pool.drain()

    assert pool.wait_drained(timeout=0.01) is False

    timer = threading.Timer(0.05, pool.release, args=(member,))
    timer.start()
    try:
        assert pool.wait_drained(timeout=5.0) is True
    finally:
        timer.cancel()
    assert pool.in_flight == 0


def test_remove_terminates_members() -> None:
    platform = StaticComputePlatform(ENDPOINTS, running=(Color.BLUE,))
    pool = TargetPool(Color.BLUE, platform)
    pool.adopt(2, "web:v1")

    pool.remove()

    assert pool.state is PoolState.REMOVED
    assert pool.members() == []
    assert platform.describe(Color.BLUE).endpoints == ()


def test_remove_refuses_while_requests_are_in_flight() -> None:
    platform = StaticComputePlatform(ENDPOINTS, running=(Color.BLUE,))
    pool = TargetPool(Color.BLUE, platform)
    pool.adopt(2, "web:v1")
    member = pool.acquire()
    assert member is not None
    pool.drain()

    with pytest.raises(PoolNotDrainedError) as excinfo:
        pool.remove()
    assert excinfo.value.in_flight == 1
    assert pool.state is PoolState.DRAINING
    assert len(platform.describe(Color.BLUE).endpoints) == 2

    pool.release(member)
    pool.remove()
    assert pool.state is PoolState.REMOVED


def test_negative_deregistration_delay_is_rejected() -> None:
    with pytest.raises(ValueError):
        TargetPool(Color.BLUE, StaticComputePlatform(ENDPOINTS), deregistration_delay=-1)
