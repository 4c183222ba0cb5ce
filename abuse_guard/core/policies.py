"""Rate limit policy table.

Maps every guarded action to its fixed-window limits. The table is built
once into a read-only mapping and injected into the evaluator; nothing
mutates it at runtime.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Iterable, Mapping

from abuse_guard.core.errors import PolicyNotFoundAppError


class Action(str, Enum):
    """Closed catalogue of rate limited actions."""

    LOGIN = "LOGIN"
    SESSION_CREATE = "SESSION_CREATE"
    MESSAGE_SEND = "MESSAGE_SEND"
    MEDIA_UPLOAD = "MEDIA_UPLOAD"
    REPORT_SUBMIT = "REPORT_SUBMIT"
    DISPUTE_CREATE = "DISPUTE_CREATE"
    PAYOUT_REQUEST = "PAYOUT_REQUEST"
    KYC_SUBMIT = "KYC_SUBMIT"
    CHAT_CREATE = "CHAT_CREATE"
    CALL_START = "CALL_START"
    PROFILE_UPDATE = "PROFILE_UPDATE"
    CONTENT_CREATE = "CONTENT_CREATE"


@dataclass(frozen=True)
class RateLimitPolicy:
    """Fixed-window limits for one action.

    Attributes:
        action: Action the policy applies to.
        max_requests: Hard-limit count for a window.
        window_seconds: Window length in seconds.
        burst_allowance: Optional raised denial threshold (>= max_requests)
            used instead of max_requests for user-scoped checks.
    """

    action: Action
    max_requests: int
    window_seconds: int
    burst_allowance: int | None = None

    def __post_init__(self) -> None:
        if self.max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if self.window_seconds < 1:
            raise ValueError("window_seconds must be >= 1")
        if self.burst_allowance is not None and self.burst_allowance < self.max_requests:
            raise ValueError("burst_allowance must be >= max_requests")

    @property
    def max_allowed(self) -> int:
        """Count that triggers denial for user-scoped checks."""
        if self.burst_allowance is not None:
            return self.burst_allowance
        return self.max_requests


DEFAULT_POLICIES: tuple[RateLimitPolicy, ...] = (
    RateLimitPolicy(Action.LOGIN, 10, 300),
    RateLimitPolicy(Action.SESSION_CREATE, 5, 300),
    RateLimitPolicy(Action.MESSAGE_SEND, 100, 3600, burst_allowance=120),
    RateLimitPolicy(Action.MEDIA_UPLOAD, 20, 3600),
    RateLimitPolicy(Action.REPORT_SUBMIT, 10, 3600),
    RateLimitPolicy(Action.DISPUTE_CREATE, 5, 86400),
    RateLimitPolicy(Action.PAYOUT_REQUEST, 3, 86400),
    RateLimitPolicy(Action.KYC_SUBMIT, 3, 86400),
    RateLimitPolicy(Action.CHAT_CREATE, 50, 3600),
    RateLimitPolicy(Action.CALL_START, 20, 3600),
    RateLimitPolicy(Action.PROFILE_UPDATE, 10, 300),
    RateLimitPolicy(Action.CONTENT_CREATE, 30, 3600),
)


class PolicyTable:
    """Immutable action -> policy lookup."""

    def __init__(self, policies: Iterable[RateLimitPolicy]) -> None:
        by_action: dict[str, RateLimitPolicy] = {}
        for policy in policies:
            if policy.action in by_action:
                raise ValueError(f"duplicate policy for action {policy.action.value}")
            by_action[policy.action.value] = policy
        self._policies: Mapping[str, RateLimitPolicy] = MappingProxyType(by_action)

    def __contains__(self, action: object) -> bool:
        return _action_name(action) in self._policies

    def __len__(self) -> int:
        return len(self._policies)

    def get(self, action: Action | str) -> RateLimitPolicy:
        """Return the policy for ``action``.

        Raises:
            PolicyNotFoundAppError: If the action has no configured policy.
        """
        name = _action_name(action)
        policy = self._policies.get(name)
        if policy is None:
            raise PolicyNotFoundAppError(
                code="unknown_action",
                message=f"No rate limit policy configured for action '{name}'",
                details={"action": name},
            )
        return policy

    def items(self) -> Iterable[tuple[str, RateLimitPolicy]]:
        return self._policies.items()


def _action_name(action: object) -> str:
    if isinstance(action, Action):
        return action.value
    return str(action)


def build_default_policy_table() -> PolicyTable:
    """Build the compiled-in default policy table."""
    return PolicyTable(DEFAULT_POLICIES)
