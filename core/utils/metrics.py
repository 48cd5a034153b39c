# SPDX-License-Identifier: MIT
"""Prometheus instrumentation for rollouts, routing, probes and hooks."""
from __future__ import annotations

from typing import Mapping, Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)


class MetricsCollector:
    """Centralised metric families for the rollout controller.

    A dedicated :class:`CollectorRegistry` can be supplied so tests and
    embedded controllers do not collide with the process-wide default
    registry.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry if registry is not None else REGISTRY

        self.rollouts_total = Counter(
            "bluegreen_rollouts_total",
            "Rollouts grouped by application and terminal outcome",
            ["application", "outcome"],
            registry=self.registry,
        )
        self.rollout_duration = Histogram(
            "bluegreen_rollout_duration_seconds",
            "Wall-clock duration of completed rollouts",
            ["application", "outcome"],
            buckets=(30, 60, 120, 300, 600, 900, 1200, 1800, 3600),
            registry=self.registry,
        )
        self.rollout_state = Gauge(
            "bluegreen_rollout_state_info",
            "1 for the state the current rollout is in, 0 otherwise",
            ["application", "state"],
            registry=self.registry,
        )
        self.state_transitions_total = Counter(
            "bluegreen_state_transitions_total",
            "Rollout state transitions",
            ["application", "source", "target"],
            registry=self.registry,
        )
        self.rollout_failures_total = Counter(
            "bluegreen_rollout_failures_total",
            "Rollout failures grouped by failure kind",
            ["application", "kind"],
            registry=self.registry,
        )
        self.route_weight = Gauge(
            "bluegreen_route_weight",
            "Weight currently assigned to a pool by a routing rule",
            ["rule", "color"],
            registry=self.registry,
        )
        self.probe_total = Counter(
            "bluegreen_health_probes_total",
            "Health probes grouped by pool colour and outcome",
            ["color", "outcome"],
            registry=self.registry,
        )
        self.pool_healthy_members = Gauge(
            "bluegreen_pool_healthy_members",
            "Healthy members observed in a target pool",
            ["color"],
            registry=self.registry,
        )
        self.hook_latency = Histogram(
            "bluegreen_lifecycle_hook_duration_seconds",
            "Time spent waiting for lifecycle hook verdicts",
            ["stage", "verdict"],
            registry=self.registry,
        )
        self.rollback_attempts_total = Counter(
            "bluegreen_rollback_attempts_total",
            "Rollback attempts grouped by result",
            ["application", "result"],
            registry=self.registry,
        )

    def set_rollout_state(self, application: str, state: str, states: tuple[str, ...]) -> None:
        for candidate in states:
            self.rollout_state.labels(application=application, state=candidate).set(
                1.0 if candidate == state else 0.0
            )

    def record_transition(self, application: str, source: str, target: str) -> None:
        self.state_transitions_total.labels(
            application=application, source=source, target=target
        ).inc()

    def record_rollout(self, application: str, outcome: str, duration: float) -> None:
        self.rollouts_total.labels(application=application, outcome=outcome).inc()
        self.rollout_duration.labels(application=application, outcome=outcome).observe(
            max(0.0, float(duration))
        )

    def record_failure(self, application: str, kind: str) -> None:
        self.rollout_failures_total.labels(application=application, kind=kind).inc()

    def set_route_weights(self, rule: str, weights: Mapping[str, int]) -> None:
        for color, weight in weights.items():
            self.route_weight.labels(rule=rule, color=color).set(float(weight))

    def record_probe(self, color: str, healthy: bool) -> None:
        self.probe_total.labels(color=color, outcome="success" if healthy else "failure").inc()

    def set_pool_health(self, color: str, healthy_members: int) -> None:
        self.pool_healthy_members.labels(color=color).set(float(healthy_members))

    def observe_hook(self, stage: str, verdict: str, duration: float) -> None:
        self.hook_latency.labels(stage=stage, verdict=verdict).observe(max(0.0, float(duration)))

    def record_rollback_attempt(self, application: str, result: str) -> None:
        self.rollback_attempts_total.labels(application=application, result=result).inc()

    def export(self) -> str:
        """Return the Prometheus text exposition for this collector."""

        payload = generate_latest(self.registry)
        return payload.decode("utf-8")


_collector: Optional[MetricsCollector] = None


def get_metrics_collector(registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Return the process-wide collector, creating it on first use."""

    global _collector
    if _collector is None:
        _collector = MetricsCollector(registry)
    return _collector


def start_metrics_server(port: int = 8000, addr: str = "") -> None:
    """Expose the process-wide collector over HTTP for Prometheus scraping."""

    start_http_server(port, addr, registry=get_metrics_collector().registry)


__all__ = [
    "MetricsCollector",
    "get_metrics_collector",
    "start_metrics_server",
]
