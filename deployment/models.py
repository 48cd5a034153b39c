# SPDX-License-Identifier: MIT
"""Value objects shared by the pool, router, hook invoker and controller.

``RolloutRecord`` is the persisted aggregate describing one deployment
attempt. Its state machine is encoded as an explicit transition table so a
record can only ever move along the edges below::

    PENDING -> PROVISIONING -> TEST_TRAFFIC -> POST_TEST_HOOK -> BAKING
            -> SHIFTING -> FINALIZING -> SUCCEEDED

Every non-terminal state may move to ``ROLLING_BACK``; ``ROLLING_BACK`` ends
in ``ROLLEDBACK`` or, when provisioning itself failed, in ``FAILED``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from .errors import InvalidTransitionError


class Color(str, Enum):
    """Deployment colour of a target pool."""

    BLUE = "blue"
    GREEN = "green"

    @property
    def other(self) -> "Color":
        return Color.GREEN if self is Color.BLUE else Color.BLUE


@dataclass(frozen=True, slots=True)
class Endpoint:
    """Network address of a single pool member."""

    host: str
    port: int

    def __post_init__(self) -> None:
        if not self.host:
            raise ValueError("host must not be empty")
        if not 0 < self.port <= 65535:
            raise ValueError("port must be within 1..65535")

    @classmethod
    def parse(cls, value: str, *, default_port: int) -> "Endpoint":
        host, sep, port = value.strip().rpartition(":")
        if not sep:
            return cls(value.strip(), default_port)
        return cls(host, int(port))

    def url(self, path: str = "/", *, port: int | None = None) -> str:
        return f"http://{self.host}:{port or self.port}{path}"

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


class RolloutState(str, Enum):
    PENDING = "PENDING"
    PROVISIONING = "PROVISIONING"
    TEST_TRAFFIC = "TEST_TRAFFIC"
    POST_TEST_HOOK = "POST_TEST_HOOK"
    BAKING = "BAKING"
    SHIFTING = "SHIFTING"
    FINALIZING = "FINALIZING"
    SUCCEEDED = "SUCCEEDED"
    ROLLING_BACK = "ROLLING_BACK"
    ROLLEDBACK = "ROLLEDBACK"
    FAILED = "FAILED"


class RolloutOutcome(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    ROLLEDBACK = "rolledback"
    FAILED = "failed"


TERMINAL_STATES: frozenset[RolloutState] = frozenset(
    {RolloutState.SUCCEEDED, RolloutState.ROLLEDBACK, RolloutState.FAILED}
)

FORWARD_PATH: tuple[RolloutState, ...] = (
    RolloutState.PENDING,
    RolloutState.PROVISIONING,
    RolloutState.TEST_TRAFFIC,
    RolloutState.POST_TEST_HOOK,
    RolloutState.BAKING,
    RolloutState.SHIFTING,
    RolloutState.FINALIZING,
    RolloutState.SUCCEEDED,
)

_TRANSITIONS: Mapping[RolloutState, frozenset[RolloutState]] = {
    **{
        current: frozenset({following, RolloutState.ROLLING_BACK})
        for current, following in zip(FORWARD_PATH, FORWARD_PATH[1:])
    },
    RolloutState.ROLLING_BACK: frozenset({RolloutState.ROLLEDBACK, RolloutState.FAILED}),
}

_OUTCOMES: Mapping[RolloutState, RolloutOutcome] = {
    RolloutState.SUCCEEDED: RolloutOutcome.SUCCEEDED,
    RolloutState.ROLLEDBACK: RolloutOutcome.ROLLEDBACK,
    RolloutState.FAILED: RolloutOutcome.FAILED,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass(slots=True)
class StateChange:
    state: RolloutState
    at: datetime
    detail: str = ""


@dataclass(slots=True)
class RolloutRecord:
    """Persisted description of a single rollout attempt."""

    rollout_id: str
    application: str
    image: str
    source_color: Color
    target_color: Color
    previous_image: str | None = None
    state: RolloutState = RolloutState.PENDING
    outcome: RolloutOutcome = RolloutOutcome.PENDING
    started_at: datetime = field(default_factory=_utcnow)
    finished_at: datetime | None = None
    bake_deadline: datetime | None = None
    failure_kind: str | None = None
    failure_reason: str | None = None
    baseline_weights: dict[str, int] = field(default_factory=dict)
    history: list[StateChange] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.source_color = Color(self.source_color)
        self.target_color = Color(self.target_color)
        self.state = RolloutState(self.state)
        self.outcome = RolloutOutcome(self.outcome)
        if self.source_color is self.target_color:
            raise ValueError("target colour must differ from the active colour")
        if not self.history:
            self.history.append(StateChange(self.state, self.started_at))

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def shifted(self) -> bool:
        """Whether production weights were ever pointed at the target pool."""

        return any(change.state is RolloutState.SHIFTING for change in self.history)

    def can_transition(self, target: RolloutState) -> bool:
        return target in _TRANSITIONS.get(self.state, frozenset())

    def transition(
        self, target: RolloutState, *, at: datetime | None = None, detail: str = ""
    ) -> None:
        if not self.can_transition(target):
            raise InvalidTransitionError(
                f"Transition {self.state.value} -> {target.value} is not permitted"
            )
        moment = at or _utcnow()
        self.state = target
        self.history.append(StateChange(target, moment, detail))
        outcome = _OUTCOMES.get(target)
        if outcome is not None:
            self.outcome = outcome
            self.finished_at = moment

    def mark_failure(self, kind: str, reason: str) -> None:
        # First failure wins; rollback problems never overwrite the trigger.
        if self.failure_kind is None:
            self.failure_kind = kind
            self.failure_reason = reason

    def to_dict(self) -> dict[str, Any]:
        return {
            "rollout_id": self.rollout_id,
            "application": self.application,
            "image": self.image,
            "previous_image": self.previous_image,
            "source_color": self.source_color.value,
            "target_color": self.target_color.value,
            "state": self.state.value,
            "outcome": self.outcome.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "bake_deadline": self.bake_deadline.isoformat() if self.bake_deadline else None,
            "failure_kind": self.failure_kind,
            "failure_reason": self.failure_reason,
            "baseline_weights": dict(self.baseline_weights),
            "history": [
                {"state": change.state.value, "at": change.at.isoformat(), "detail": change.detail}
                for change in self.history
            ],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RolloutRecord":
        history = [
            StateChange(RolloutState(item["state"]), _parse_datetime(item["at"]), item.get("detail", ""))
            for item in payload.get("history", ())
        ]
        return cls(
            rollout_id=str(payload["rollout_id"]),
            application=str(payload["application"]),
            image=str(payload["image"]),
            previous_image=payload.get("previous_image"),
            source_color=Color(payload["source_color"]),
            target_color=Color(payload["target_color"]),
            state=RolloutState(payload["state"]),
            outcome=RolloutOutcome(payload["outcome"]),
            started_at=_parse_datetime(payload["started_at"]),
            finished_at=_parse_datetime(payload.get("finished_at")),
            bake_deadline=_parse_datetime(payload.get("bake_deadline")),
            failure_kind=payload.get("failure_kind"),
            failure_reason=payload.get("failure_reason"),
            baseline_weights={str(k): int(v) for k, v in dict(payload.get("baseline_weights") or {}).items()},
            history=history,
        )


__all__ = [
    "Color",
    "Endpoint",
    "FORWARD_PATH",
    "RolloutOutcome",
    "RolloutRecord",
    "RolloutState",
    "StateChange",
    "TERMINAL_STATES",
]
