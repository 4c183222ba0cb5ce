"""Counter store interfaces.

The evaluator depends on this abstraction (not a concrete backend). Each
transaction is scoped to exactly one counter key: transactions on the same
key are serialized, transactions on different keys never wait on each other.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import AsyncContextManager


class SubjectKind(str, Enum):
    """Namespace of the rate limited subject."""

    USER = "USER"
    GLOBAL = "GLOBAL"


@dataclass(frozen=True)
class CounterKey:
    """Identity of one counter: (subject kind, subject id, action, window id).

    The subject kind is part of the key, so a user id and an IP address with
    the same literal value never share a counter.
    """

    subject_kind: SubjectKind
    subject_id: str
    action: str
    window_id: int

    @property
    def document_id(self) -> str:
        """Flat string form of the key, for backends keyed by strings."""
        prefix = "global_" if self.subject_kind is SubjectKind.GLOBAL else "user_"
        return f"{prefix}{self.subject_id}|{self.action}|{self.window_id}"


@dataclass
class Counter:
    """Request count for one subject/action within one fixed window.

    Attributes:
        key: Counter identity.
        count: Requests counted in this window so far.
        window_start_ms: Window start (epoch ms).
        window_end_ms: Window end (epoch ms), used for retention purges.
        last_request_at_ms: Time of the most recent increment (epoch ms).
    """

    key: CounterKey
    count: int
    window_start_ms: int
    window_end_ms: int
    last_request_at_ms: int


class CounterTransaction(ABC):
    """Read-modify-write operations available inside one key's transaction.

    Writes become visible only when the enclosing transaction context exits
    without an exception; otherwise they are discarded.
    """

    @abstractmethod
    async def read(self) -> Counter | None:
        """Return the current counter, or None when absent."""
        raise NotImplementedError

    @abstractmethod
    async def create(self, counter: Counter) -> None:
        """Create the counter for this transaction's key."""
        raise NotImplementedError

    @abstractmethod
    async def increment_count(self, by: int, *, at_ms: int) -> None:
        """Add ``by`` to the counter and stamp ``last_request_at_ms``."""
        raise NotImplementedError


class AbstractCounterStore(ABC):
    """Interface for counter stores."""

    @abstractmethod
    def transaction(self, key: CounterKey) -> AsyncContextManager[CounterTransaction]:
        """Open a serializable transaction scoped to ``key``.

        Raises:
            CounterStoreAppError: If the transaction cannot be started or
                committed (backend unavailable, timeout, conflicts).
        """
        raise NotImplementedError

    @abstractmethod
    async def count_counters(self) -> int:
        """Number of counters currently held (health reporting)."""
        raise NotImplementedError

    @abstractmethod
    async def purge_ended_before(self, cutoff_ms: int) -> int:
        """Drop counters whose window ended before ``cutoff_ms``.

        Returns:
            Number of counters removed.
        """
        raise NotImplementedError
