"""Per-identity token bucket rate limiting.

Bucket state lives entirely in the atomic store; refill is computed
lazily from elapsed time so no background job is needed and state is
O(1) per active identity.
"""

import time
from typing import Callable, Optional

from fleetguard.app.core.events import EventSink, LoggingEventSink
from fleetguard.app.exceptions import RateLimitExceededError, StoreUnavailableError
from fleetguard.app.models import AdmissionEvent, EventKind, Outcome, RateLimitResult
from fleetguard.app.store.base import AtomicStore
from fleetguard.app.store.scripts import TOKEN_BUCKET


class TokenBucketLimiter:
    """Token bucket limiter with burst capacity.

    Usage:
        limiter = TokenBucketLimiter(store, rate=100, capacity=500)
        result = await limiter.allow("apikey:abc")
        if not result.allowed:
            ...  # respond 429
    """

    def __init__(
        self,
        store: AtomicStore,
        rate: float,
        capacity: int,
        requested: int = 1,
        key_prefix: str = "ratelimit",
        sink: Optional[EventSink] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize token bucket limiter.

        Args:
            store: Atomic store holding bucket state
            rate: Tokens refilled per second
            capacity: Maximum tokens (burst size)
            requested: Tokens consumed by each check
            key_prefix: Namespace for bucket keys
            sink: Receives fail-open and rejection events
            clock: Wall-clock source used when no `now` is passed
        """
        if rate <= 0 or capacity < 1:
            raise ValueError("rate must be positive and capacity at least 1")
        self.store = store
        self.rate = rate
        self.capacity = capacity
        self.requested = requested
        self.key_prefix = key_prefix
        self.sink = sink or LoggingEventSink()
        self._clock = clock

    def _keys(self, identity: str) -> list[str]:
        prefix = f"{self.key_prefix}:{identity}"
        return [f"{prefix}.tokens", f"{prefix}.timestamp"]

    async def allow(self, identity: str, now: Optional[float] = None) -> RateLimitResult:
        """Check and consume tokens for identity.

        Never denies because of a store failure: the result is then
        STORE_UNAVAILABLE, which counts as allowed.
        """
        if now is None:
            now = self._clock()
        try:
            reply = await self.store.execute(
                TOKEN_BUCKET,
                self._keys(identity),
                [self.rate, self.capacity, now, self.requested],
            )
        except StoreUnavailableError as e:
            self.sink.emit(AdmissionEvent(EventKind.STORE_UNAVAILABLE, identity, e.reason))
            return RateLimitResult(outcome=Outcome.STORE_UNAVAILABLE)

        allowed = bool(int(reply[0]))
        tokens_remaining = float(reply[1])
        if not allowed:
            self.sink.emit(AdmissionEvent(EventKind.REJECTED, identity, Outcome.RATE_LIMITED.value))
            return RateLimitResult(outcome=Outcome.RATE_LIMITED, tokens_remaining=tokens_remaining)
        return RateLimitResult(outcome=Outcome.ADMITTED, tokens_remaining=tokens_remaining)

    async def allow_or_raise(self, identity: str, now: Optional[float] = None) -> RateLimitResult:
        """Like allow(), but raise RateLimitExceededError on denial."""
        result = await self.allow(identity, now)
        if not result.allowed:
            raise RateLimitExceededError(identity, result.tokens_remaining)
        return result
