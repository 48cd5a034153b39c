# SPDX-License-Identifier: MIT
"""Assemble a :class:`RolloutController` from :class:`RolloutSettings`."""

from __future__ import annotations

from typing import Mapping

import httpx

from core.config.rollout import RolloutSettings
from core.utils.logging import get_logger
from core.utils.metrics import MetricsCollector, get_metrics_collector
from observability.notifications import (
    EscalationDispatcher,
    LoggingNotifier,
    Notifier,
    WebhookNotifier,
)

from .health import HealthProber
from .hooks import HttpHookTarget, LifecycleHookInvoker, always_succeed
from .models import Color, Endpoint
from .pool import ComputePlatform, StaticComputePlatform, TargetPool
from .rollout import RolloutController, RolloutPolicy
from .router import TrafficRouter
from .store import InMemoryRolloutStore, RolloutStore, SQLiteRolloutStore

LOGGER = get_logger(__name__)


def build_store(settings: RolloutSettings) -> RolloutStore:
    if settings.store_path is None:
        return InMemoryRolloutStore()
    return SQLiteRolloutStore(settings.store_path)


def build_platform(settings: RolloutSettings, active: Color) -> StaticComputePlatform:
    endpoints: Mapping[Color, list[Endpoint]] = {
        Color(color): [
            Endpoint.parse(value, default_port=settings.pool.container_port) for value in values
        ]
        for color, values in settings.pool.endpoints.items()
    }
    return StaticComputePlatform(endpoints, running=(active,))


def build_controller(
    settings: RolloutSettings,
    *,
    platform: ComputePlatform | None = None,
    hook_client: httpx.Client | None = None,
    probe_client: httpx.Client | None = None,
    store: RolloutStore | None = None,
    metrics: MetricsCollector | None = None,
) -> RolloutController:
    """Wire pools, router, prober, hooks and escalation for ``settings.application``."""

    metrics = metrics or get_metrics_collector()
    store = store if store is not None else build_store(settings)

    active_color = Color(settings.active_color)
    active_image = settings.active_image
    release = store.get_release(settings.application)
    if release is not None:
        active_color, active_image = release

    platform = platform or build_platform(settings, active_color)
    pools = {
        color: TargetPool(
            color,
            platform,
            deregistration_delay=settings.pool.deregistration_delay,
            metrics=metrics,
        )
        for color in Color
    }
    pools[active_color].adopt(settings.pool.desired_count, active_image)

    router = TrafficRouter(
        pools,
        initial=active_color,
        total_weight=settings.router.total_weight,
        production_priority=settings.router.production_priority,
        production_path=settings.router.production_path,
        metrics=metrics,
    )
    prober = HealthProber(settings.health, client=probe_client, metrics=metrics)

    hooks = LifecycleHookInvoker(metrics=metrics)
    if settings.hook.url:
        hooks.register(
            settings.hook.stage,
            HttpHookTarget(settings.hook.url, http_client=hook_client, timeout=settings.hook.timeout),
        )
    else:
        LOGGER.warning("No lifecycle hook URL configured; every rollout is approved", stage=settings.hook.stage)
        hooks.register(settings.hook.stage, always_succeed)

    notifiers: list[Notifier] = []
    if settings.rollback.escalation_webhook:
        notifiers.append(WebhookNotifier(settings.rollback.escalation_webhook))
    notifiers.append(LoggingNotifier())

    return RolloutController(
        settings.application,
        pools=pools,
        router=router,
        prober=prober,
        hooks=hooks,
        desired_count=settings.pool.desired_count,
        policy=RolloutPolicy.from_settings(settings),
        store=store,
        active_color=active_color,
        active_image=active_image,
        entry_point=settings.router.entry_point,
        escalation=EscalationDispatcher(notifiers),
        metrics=metrics,
    )


__all__ = ["build_controller", "build_platform", "build_store"]
