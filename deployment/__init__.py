# SPDX-License-Identifier: MIT
"""Blue/green rollout control: pools, routing, health, hooks and the controller."""

from .errors import (
    HealthRegression,
    HookFailure,
    InvalidTransitionError,
    NoChangeError,
    ProvisionFailure,
    RollbackFailedError,
    RolloutError,
    RolloutFailure,
    RolloutInProgressError,
    RouterUnavailableError,
    RoutingApplyFailure,
)
from .factory import build_controller
from .health import HealthProber, MemberHealth
from .hooks import (
    HookStatus,
    HttpHookTarget,
    LifecycleHookInvocation,
    LifecycleHookInvoker,
    always_succeed,
)
from .models import Color, Endpoint, RolloutOutcome, RolloutRecord, RolloutState
from .pool import (
    ComputePlatform,
    PlatformView,
    PoolMember,
    PoolState,
    PoolStatus,
    StaticComputePlatform,
    TargetPool,
)
from .rollout import RolloutController, RolloutPolicy
from .router import (
    PRODUCTION_RULE_ID,
    FixedResponse,
    RouteDecision,
    RoutingRule,
    TrafficRouter,
)
from .store import InMemoryRolloutStore, RolloutStore, SQLiteRolloutStore

__all__ = [
    "Color",
    "ComputePlatform",
    "Endpoint",
    "FixedResponse",
    "HealthProber",
    "HealthRegression",
    "HookFailure",
    "HookStatus",
    "HttpHookTarget",
    "InMemoryRolloutStore",
    "InvalidTransitionError",
    "LifecycleHookInvocation",
    "LifecycleHookInvoker",
    "MemberHealth",
    "NoChangeError",
    "PRODUCTION_RULE_ID",
    "PlatformView",
    "PoolMember",
    "PoolState",
    "PoolStatus",
    "ProvisionFailure",
    "RollbackFailedError",
    "RolloutController",
    "RolloutError",
    "RolloutFailure",
    "RolloutInProgressError",
    "RolloutOutcome",
    "RolloutPolicy",
    "RolloutRecord",
    "RolloutState",
    "RolloutStore",
    "RouteDecision",
    "RouterUnavailableError",
    "RoutingApplyFailure",
    "RoutingRule",
    "SQLiteRolloutStore",
    "StaticComputePlatform",
    "TargetPool",
    "TrafficRouter",
    "always_succeed",
    "build_controller",
]
