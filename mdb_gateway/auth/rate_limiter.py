"""
Rate Gate for MDB_GATEWAY.

Per-identity fixed window counter with a progressive slow-down:

    count <= slow_down_after           -> ALLOWED
    slow_down_after < count <= max     -> DELAYED by (count - slow_down_after) * delay_ms
    count > max                        -> REJECTED until the window resets

Identities are API key names, falling back to the client address for
unauthenticated callers. Admin identities bypass the gate entirely.

Usage:
    gate = RateGate(window_seconds=900, max_requests=1000, slow_down_after=100)
    decision = gate.admit("plugin", permissions)
    if decision.outcome is RateOutcome.REJECTED:
        raise RateLimitedError("Too many requests", retry_after=decision.retry_after)
    await asyncio.sleep(decision.delay_ms / 1000)
"""

import logging
import math
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum

from ..constants import (
    DEFAULT_RATE_MAX_REQUESTS,
    DEFAULT_RATE_WINDOW_SECONDS,
    DEFAULT_SLOW_DOWN_AFTER,
    DEFAULT_SLOW_DOWN_DELAY_MS,
    MAX_TRACKED_IDENTITIES,
    PERMISSION_ADMIN,
)

logger = logging.getLogger(__name__)


class RateOutcome(str, Enum):
    ALLOWED = "allowed"
    DELAYED = "delayed"
    REJECTED = "rejected"


@dataclass(frozen=True)
class RateDecision:
    """Result of admitting one request."""

    outcome: RateOutcome
    delay_ms: int = 0
    retry_after: int = 0
    count: int = 0
    limit: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


@dataclass
class RateState:
    """Counters for one identity within the current window."""

    window_start: float
    count: int = 0
    total_delay_ms: int = 0


class RateGate:
    """
    Thread-safe per-identity rate gate.

    Args:
        window_seconds: Window length
        max_requests: Hard cap per window
        slow_down_after: Requests per window before delays start
        delay_ms: Delay added per request over the slow-down threshold
        max_delay_ms: Optional ceiling for a single delay
        max_tracked: Tracked identities after which expired states are purged
        clock: Monotonic clock
    """

    def __init__(
        self,
        window_seconds: float = DEFAULT_RATE_WINDOW_SECONDS,
        max_requests: int = DEFAULT_RATE_MAX_REQUESTS,
        slow_down_after: int = DEFAULT_SLOW_DOWN_AFTER,
        delay_ms: int = DEFAULT_SLOW_DOWN_DELAY_MS,
        max_delay_ms: int | None = None,
        max_tracked: int = MAX_TRACKED_IDENTITIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.slow_down_after = slow_down_after
        self.delay_ms = delay_ms
        self.max_delay_ms = max_delay_ms
        self.max_tracked = max_tracked
        self._clock = clock
        self._states: dict[str, RateState] = {}
        self._lock = threading.Lock()

    def admit(self, identity: str, permissions: Iterable[str] = ()) -> RateDecision:
        """
        Count one request for ``identity`` and decide whether it may proceed.
        """
        if PERMISSION_ADMIN in set(permissions):
            return RateDecision(RateOutcome.ALLOWED, limit=self.max_requests)

        now = self._clock()
        with self._lock:
            state = self._states.get(identity)
            if state is None or now - state.window_start >= self.window_seconds:
                if state is None and len(self._states) >= self.max_tracked:
                    self._purge_expired(now)
                state = self._states[identity] = RateState(window_start=now)

            state.count += 1
            count = state.count
            retry_after = max(1, math.ceil(state.window_start + self.window_seconds - now))

            if count > self.max_requests:
                outcome = RateOutcome.REJECTED
                delay = 0
            elif count > self.slow_down_after:
                outcome = RateOutcome.DELAYED
                delay = (count - self.slow_down_after) * self.delay_ms
                if self.max_delay_ms is not None:
                    delay = min(delay, self.max_delay_ms)
                state.total_delay_ms += delay
            else:
                outcome = RateOutcome.ALLOWED
                delay = 0

        if outcome is RateOutcome.REJECTED:
            logger.warning(
                f"Rate limit exceeded for {identity}: {count} > {self.max_requests}"
            )
        return RateDecision(
            outcome,
            delay_ms=delay,
            retry_after=retry_after if outcome is RateOutcome.REJECTED else 0,
            count=count,
            limit=self.max_requests,
        )

    def get_state(self, identity: str) -> RateState | None:
        """Copy of the identity's current counters (None if untracked or expired)."""
        with self._lock:
            state = self._states.get(identity)
            if state is None or self._clock() - state.window_start >= self.window_seconds:
                return None
            return RateState(state.window_start, state.count, state.total_delay_ms)

    def reset(self, identity: str | None = None) -> None:
        """Forget one identity, or every identity."""
        with self._lock:
            if identity is None:
                self._states.clear()
            else:
                self._states.pop(identity, None)

    def cleanup(self) -> int:
        """Drop states whose window has elapsed. Returns the number removed."""
        with self._lock:
            return self._purge_expired(self._clock())

    def _purge_expired(self, now: float) -> int:
        expired = [
            identity
            for identity, state in self._states.items()
            if now - state.window_start >= self.window_seconds
        ]
        for identity in expired:
            del self._states[identity]
        if expired:
            logger.debug(f"Purged {len(expired)} expired rate limit states")
        return len(expired)

    def __len__(self) -> int:
        return len(self._states)
