# SPDX-License-Identifier: MIT
"""Exception hierarchy raised by the rollout components."""

from __future__ import annotations


class RolloutError(RuntimeError):
    """Base exception for rollout control failures."""


class RolloutFailure(RolloutError):
    """A failure that aborts the current rollout and triggers a rollback."""

    kind = "unexpected_error"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ProvisionFailure(RolloutFailure):
    """The new pool never reached its desired healthy member count."""

    kind = "provision_failure"

    def __init__(self, reason: str, *, terminal: bool = False) -> None:
        super().__init__(reason)
        self.terminal = terminal


class HookFailure(RolloutFailure):
    """A lifecycle hook answered ``FAILED`` or missed its deadline."""

    kind = "hook_failure"


class HealthRegression(RolloutFailure):
    """The new pool degraded while it was baking."""

    kind = "health_regression"


class RoutingApplyFailure(RolloutFailure):
    """The router rejected an atomic weight update."""

    kind = "routing_apply_failure"


class RolloutAborted(RolloutFailure):
    """An operator or a process interrupt stopped the rollout."""

    kind = "aborted"


class RouterUnavailableError(RolloutError):
    """The router could not be reached; the operation may be retried."""


class RolloutInProgressError(RolloutError):
    """Another rollout is already active for the application."""

    def __init__(self, application: str, rollout_id: str) -> None:
        super().__init__(f"rollout in progress for {application}: {rollout_id}")
        self.application = application
        self.rollout_id = rollout_id


class NoChangeError(RolloutError):
    """The requested image is already the active image."""


class RollbackFailedError(RolloutError):
    """A rollback round exhausted its attempts without restoring production."""

    def __init__(self, rollout_id: str, attempts: int, cause: BaseException | None = None) -> None:
        super().__init__(f"rollback of {rollout_id} failed after {attempts} attempts")
        self.rollout_id = rollout_id
        self.attempts = attempts
        self.cause = cause


class PoolNotDrainedError(RolloutError):
    """A pool still serving in-flight requests was asked to terminate."""

    def __init__(self, color: str, in_flight: int) -> None:
        super().__init__(f"{color} pool still has {in_flight} request(s) in flight")
        self.color = color
        self.in_flight = in_flight


class InvalidTransitionError(RolloutError):
    """A state change outside the rollout transition table was requested."""


__all__ = [
    "HealthRegression",
    "HookFailure",
    "InvalidTransitionError",
    "NoChangeError",
    "PoolNotDrainedError",
    "ProvisionFailure",
    "RollbackFailedError",
    "RolloutAborted",
    "RolloutError",
    "RolloutFailure",
    "RolloutInProgressError",
    "RouterUnavailableError",
    "RoutingApplyFailure",
]
