# SPDX-License-Identifier: MIT
"""Weighted listener rules mapping inbound requests to target pools.

The router keeps an ordered rule table. Rules are evaluated by ascending
priority (then by path specificity) and the first match wins; the production
rule is a catch-all that is always consulted last. When nothing matches the
router answers with a fixed ``404``.

Weight updates replace a rule wholesale under the router lock, so a reader
never observes a rule whose weights are mid-update and re-applying the same
weights is harmless.
"""

from __future__ import annotations

import random
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from fnmatch import fnmatchcase
from typing import Iterator, Mapping, Sequence

from core.utils.logging import get_logger
from core.utils.metrics import MetricsCollector, get_metrics_collector

from .errors import RouterUnavailableError, RoutingApplyFailure
from .models import Color
from .pool import PoolMember, TargetPool

LOGGER = get_logger(__name__)

PRODUCTION_RULE_ID = "production"


@dataclass(frozen=True, slots=True)
class WeightedTarget:
    color: Color
    weight: int


@dataclass(frozen=True, slots=True)
class RoutingRule:
    """Match predicate plus weighted forwarding targets."""

    rule_id: str
    priority: int
    targets: tuple[WeightedTarget, ...]
    path_patterns: tuple[str, ...] = ("/*",)
    host: str | None = None
    header: str | None = None
    production: bool = False

    @property
    def weights(self) -> dict[str, int]:
        return {target.color.value: target.weight for target in self.targets}

    @property
    def specificity(self) -> int:
        return max((len(p.split("*", 1)[0].split("?", 1)[0]) for p in self.path_patterns), default=0)

    def matches(self, path: str, host: str | None = None, headers: Mapping[str, str] | None = None) -> bool:
        if self.host is not None and (host or "").lower() != self.host.lower():
            return False
        if self.header is not None:
            present = {key.lower() for key in (headers or {})}
            if self.header.lower() not in present:
                return False
        return any(fnmatchcase(path, pattern) for pattern in self.path_patterns)


@dataclass(frozen=True, slots=True)
class FixedResponse:
    status: int = 404
    content_type: str = "text/plain"
    body: str = "Wrong place"


SERVICE_UNAVAILABLE = FixedResponse(503, "text/plain", "Service Unavailable")


@dataclass(frozen=True, slots=True)
class RouteDecision:
    """Outcome of evaluating the rule table for one request."""

    rule_id: str | None
    color: Color | None = None
    member: PoolMember | None = None
    response: FixedResponse | None = None

    @property
    def forwarded(self) -> bool:
        return self.member is not None


class TrafficRouter:
    """In-process listener rule engine with atomic weight replacement."""

    def __init__(
        self,
        pools: Mapping[Color, TargetPool],
        *,
        initial: Color = Color.BLUE,
        total_weight: int = 100,
        production_priority: int = 101,
        production_path: str = "/*",
        default_response: FixedResponse = FixedResponse(),
        rng: random.Random | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        if total_weight <= 0:
            raise ValueError("total_weight must be positive")
        self._pools = {Color(color): pool for color, pool in pools.items()}
        if set(self._pools) != set(Color):
            raise ValueError("a pool is required for every colour")
        self._total = int(total_weight)
        self._default_response = default_response
        self._rng = rng or random.Random()
        self._metrics = metrics or get_metrics_collector()
        self._lock = threading.RLock()
        self._available = True

        initial = Color(initial)
        production = RoutingRule(
            rule_id=PRODUCTION_RULE_ID,
            priority=production_priority,
            targets=(WeightedTarget(initial, self._total), WeightedTarget(initial.other, 0)),
            path_patterns=(production_path,),
            production=True,
        )
        self._rules: dict[str, RoutingRule] = {PRODUCTION_RULE_ID: production}
        self._metrics.set_route_weights(PRODUCTION_RULE_ID, production.weights)

    @property
    def total_weight(self) -> int:
        return self._total

    @property
    def available(self) -> bool:
        return self._available

    def set_available(self, available: bool) -> None:
        """Simulate or clear a transient outage of the routing control plane."""

        self._available = bool(available)

    # ------------------------------------------------------------------
    # Mutations
    def set_weights(self, rule_id: str, targets: Sequence[tuple[Color | str, int]]) -> RoutingRule:
        """Atomically replace the weighted targets of ``rule_id``."""

        self._ensure_available("set_weights")
        normalized = self._validate_targets(rule_id, targets)
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                raise RoutingApplyFailure(f"unknown rule '{rule_id}'")
            updated = replace(rule, targets=normalized)
            self._rules[rule_id] = updated
        self._metrics.set_route_weights(rule_id, updated.weights)
        LOGGER.info("Rule weights replaced", rule=rule_id, weights=updated.weights)
        return updated

    def add_test_rule(
        self,
        path_pattern: str,
        pool: Color | str,
        *,
        header: str | None = None,
        priority: int = 10,
    ) -> str:
        """Install a narrow rule that forwards matching requests to ``pool`` only."""

        self._ensure_available("add_test_rule")
        color = Color(pool)
        if not path_pattern.startswith("/"):
            raise RoutingApplyFailure("test rule path pattern must start with '/'")
        with self._lock:
            production = self._rules[PRODUCTION_RULE_ID]
            if priority >= production.priority:
                raise RoutingApplyFailure("test rules must be evaluated before the production rule")
            rule_id = f"test-{color.value}"
            rule = RoutingRule(
                rule_id=rule_id,
                priority=priority,
                targets=(WeightedTarget(color, self._total),),
                path_patterns=(path_pattern,),
                header=header,
            )
            if self._rules.get(rule_id) != rule:
                self._rules[rule_id] = rule
                LOGGER.info("Test rule installed", rule=rule_id, path=path_pattern, color=color.value)
        return rule_id

    def remove_rule(self, rule_id: str) -> bool:
        """Delete ``rule_id``; returns ``False`` when it was already absent."""

        self._ensure_available("remove_rule")
        if rule_id == PRODUCTION_RULE_ID:
            raise RoutingApplyFailure("the production rule cannot be removed")
        with self._lock:
            removed = self._rules.pop(rule_id, None)
        if removed is not None:
            LOGGER.info("Rule removed", rule=rule_id)
        return removed is not None

    # ------------------------------------------------------------------
    # Reads
    def weights(self, rule_id: str = PRODUCTION_RULE_ID) -> dict[str, int]:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                raise KeyError(rule_id)
            return rule.weights

    def rules(self) -> tuple[RoutingRule, ...]:
        with self._lock:
            return tuple(sorted(self._rules.values(), key=self._order_key))

    def snapshot(self) -> dict[str, dict[str, int]]:
        with self._lock:
            return {rule.rule_id: rule.weights for rule in sorted(self._rules.values(), key=self._order_key)}

    def has_rule(self, rule_id: str) -> bool:
        with self._lock:
            return rule_id in self._rules

    def route(
        self,
        path: str,
        *,
        host: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> RouteDecision:
        """Select a pool and member for a request without reserving it."""

        rule = self._match(path, host, headers)
        if rule is None:
            return RouteDecision(rule_id=None, response=self._default_response)
        color = self._pick(rule)
        if color is None:
            return RouteDecision(rule_id=rule.rule_id, response=SERVICE_UNAVAILABLE)
        return RouteDecision(rule_id=rule.rule_id, color=color)

    @contextmanager
    def open_request(
        self,
        path: str,
        *,
        host: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Iterator[RouteDecision]:
        """Route a request and hold its member as in flight until the block exits."""

        decision = self.route(path, host=host, headers=headers)
        if decision.color is None:
            yield decision
            return
        pool = self._pools[decision.color]
        member = pool.acquire()
        if member is None:
            yield RouteDecision(rule_id=decision.rule_id, response=SERVICE_UNAVAILABLE)
            return
        try:
            yield replace(decision, member=member)
        finally:
            pool.release(member)

    # ------------------------------------------------------------------
    # Internals
    @staticmethod
    def _order_key(rule: RoutingRule) -> tuple[int, int, int]:
        return (int(rule.production), rule.priority, -rule.specificity)

    def _match(
        self, path: str, host: str | None, headers: Mapping[str, str] | None
    ) -> RoutingRule | None:
        with self._lock:
            ordered = sorted(self._rules.values(), key=self._order_key)
        for rule in ordered:
            if rule.matches(path, host, headers):
                return rule
        return None

    def _pick(self, rule: RoutingRule) -> Color | None:
        live = [
            target
            for target in rule.targets
            if target.weight > 0 and self._pools[target.color].accepting
        ]
        if not live:
            return None
        ticket = self._rng.randrange(sum(target.weight for target in live))
        for target in live:
            if ticket < target.weight:
                return target.color
            ticket -= target.weight
        return live[-1].color

    def _ensure_available(self, operation: str) -> None:
        if not self._available:
            raise RouterUnavailableError(f"router unavailable for {operation}")

    def _validate_targets(
        self, rule_id: str, targets: Sequence[tuple[Color | str, int]]
    ) -> tuple[WeightedTarget, ...]:
        normalized: list[WeightedTarget] = []
        seen: set[Color] = set()
        for raw_color, weight in targets:
            try:
                color = Color(raw_color)
            except ValueError as exc:
                raise RoutingApplyFailure(f"unknown pool '{raw_color}' for rule '{rule_id}'") from exc
            if isinstance(weight, bool) or not isinstance(weight, int) or weight < 0:
                raise RoutingApplyFailure(f"weight for {color.value} must be a non-negative integer")
            if color in seen:
                raise RoutingApplyFailure(f"pool {color.value} listed twice for rule '{rule_id}'")
            seen.add(color)
            normalized.append(WeightedTarget(color, weight))
        total = sum(target.weight for target in normalized)
        if total != self._total:
            raise RoutingApplyFailure(f"weights for rule '{rule_id}' sum to {total}, expected {self._total}")
        return tuple(normalized)


__all__ = [
    "FixedResponse",
    "PRODUCTION_RULE_ID",
    "RouteDecision",
    "RoutingRule",
    "SERVICE_UNAVAILABLE",
    "TrafficRouter",
    "WeightedTarget",
]
