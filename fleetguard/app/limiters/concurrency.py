"""Per-identity bounded concurrency.

Each identity owns a sorted set of in-flight request tokens scored by
admission time. Members older than the TTL are pruned before every check,
so slots leaked by requests that never released come back on their own.
"""

import math
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from fleetguard.app.core.events import EventSink, LoggingEventSink
from fleetguard.app.core.logging import get_log_context, get_logger
from fleetguard.app.exceptions import (
    ConcurrencyExceededError,
    FleetOverloadedError,
    StoreUnavailableError,
)
from fleetguard.app.models import AdmissionEvent, ConcurrencyResult, EventKind, Outcome
from fleetguard.app.store.base import AtomicStore
from fleetguard.app.store.scripts import (
    CONCURRENCY_ACQUIRE,
    CONCURRENCY_PRUNE,
    CONCURRENCY_RELEASE,
)

logger = get_logger(__name__)


def random_token() -> str:
    """128 random bits as 32 hex chars."""
    return uuid.uuid4().hex


class ConcurrencyLimiter:
    """Limits simultaneously in-flight requests per identity.

    Usage:
        limiter = ConcurrencyLimiter(store, capacity=10, ttl=60)

        async with limiter.hold("apikey:abc"):
            ...  # process request

    or explicitly, releasing on every exit path:

        result = await limiter.acquire("apikey:abc")
        if result.allowed:
            try:
                ...
            finally:
                await limiter.release("apikey:abc", result.token)
    """

    def __init__(
        self,
        store: AtomicStore,
        capacity: int,
        ttl: float = 60,
        key_prefix: str = "concurrency",
        sink: Optional[EventSink] = None,
        clock: Callable[[], float] = time.time,
        token_factory: Callable[[], str] = random_token,
        denied_outcome: Outcome = Outcome.CONCURRENCY_EXCEEDED,
    ):
        """Initialize concurrency limiter.

        Args:
            store: Atomic store holding in-flight sets
            capacity: Maximum in-flight requests per identity
            ttl: Seconds after which an unreleased slot is reclaimed
            key_prefix: Namespace for set keys
            sink: Receives fail-open and rejection events
            clock: Wall-clock source used when no `now` is passed
            token_factory: Source of collision-resistant slot tokens
            denied_outcome: Outcome reported and emitted on rejection
        """
        if capacity < 1 or ttl <= 0:
            raise ValueError("capacity must be at least 1 and ttl positive")
        self.store = store
        self.capacity = capacity
        self.ttl = ttl
        self.key_prefix = key_prefix
        self.sink = sink or LoggingEventSink()
        self._clock = clock
        self._token_factory = token_factory
        self.denied_outcome = denied_outcome

    def _key(self, identity: str) -> str:
        return f"{self.key_prefix}:{identity}"

    async def acquire(self, identity: str, now: Optional[float] = None) -> ConcurrencyResult:
        """Try to take an in-flight slot for identity.

        A store failure admits without a slot (token is None), so the
        matching release is a no-op.
        """
        if now is None:
            now = self._clock()
        key = self._key(identity)
        token = self._token_factory()
        expiry = max(1, math.ceil(self.ttl))
        try:
            await self.store.execute(CONCURRENCY_PRUNE, [key], [now - self.ttl, expiry])
            reply = await self.store.execute(
                CONCURRENCY_ACQUIRE,
                [key],
                [self.capacity, now, token, expiry],
            )
        except StoreUnavailableError as e:
            self.sink.emit(AdmissionEvent(EventKind.STORE_UNAVAILABLE, identity, e.reason))
            return ConcurrencyResult(outcome=Outcome.STORE_UNAVAILABLE)

        allowed = bool(int(reply[0]))
        count = int(reply[1])
        if not allowed:
            self.sink.emit(AdmissionEvent(EventKind.REJECTED, identity, self.denied_outcome.value))
            return ConcurrencyResult(outcome=self.denied_outcome, current_count=count)
        return ConcurrencyResult(outcome=Outcome.ADMITTED, current_count=count, token=token)

    async def release(self, identity: str, token: Optional[str]) -> None:
        """Give back a slot. Unknown or already-pruned tokens are ignored.

        Runs on exit paths, so store failures are reported rather than raised.
        """
        if token is None:
            return
        try:
            await self.store.execute(CONCURRENCY_RELEASE, [self._key(identity)], [token])
        except StoreUnavailableError as e:
            logger.warning(
                "Failed to release concurrency slot; TTL pruning will reclaim it",
                extra=get_log_context(identity=identity, reason=e.reason),
            )
            self.sink.emit(AdmissionEvent(EventKind.STORE_UNAVAILABLE, identity, e.reason))

    @asynccontextmanager
    async def hold(self, identity: str) -> AsyncIterator[ConcurrencyResult]:
        """Hold a slot for the duration of the block.

        Raises:
            ConcurrencyExceededError: If identity is at capacity
            FleetOverloadedError: If this limiter guards the fleet and it is full
        """
        result = await self.acquire(identity)
        if result.outcome is Outcome.FLEET_OVERLOADED:
            raise FleetOverloadedError(result.current_count)
        if not result.allowed:
            raise ConcurrencyExceededError(identity, result.current_count)
        try:
            yield result
        finally:
            await self.release(identity, result.token)
