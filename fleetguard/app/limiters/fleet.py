"""Fleet-wide load shedding.

A ConcurrencyLimiter applied to one reserved identity shared by every
worker, with a bypass for high-priority traffic. Denials come back as
FLEET_OVERLOADED so callers can answer 503 instead of 429.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fleetguard.app.exceptions import FleetOverloadedError
from fleetguard.app.limiters.concurrency import ConcurrencyLimiter
from fleetguard.app.models import FleetDecision, Outcome

FLEET_IDENTITY = "__fleet__"


class FleetLoadShedder:
    """Global in-flight limit with priority bypass.

    Every admitted low-priority request must be released on every exit
    path (success, error, timeout), or fleet capacity silently shrinks
    until TTL pruning catches up. Prefer slot(), which guarantees it.
    """

    def __init__(self, limiter: ConcurrencyLimiter, identity: str = FLEET_IDENTITY):
        """Initialize fleet shedder.

        Args:
            limiter: Limiter dedicated to the fleet; its rejections are
                reported as FLEET_OVERLOADED from here on
            identity: Reserved identity holding the fleet-wide set
        """
        limiter.denied_outcome = Outcome.FLEET_OVERLOADED
        self.limiter = limiter
        self.identity = identity

    async def check(self, is_high_priority: bool, now: Optional[float] = None) -> FleetDecision:
        """Decide whether a request may enter the fleet.

        High-priority requests are always admitted and never take a slot.
        """
        if is_high_priority:
            return FleetDecision(outcome=Outcome.ADMITTED, high_priority=True)

        result = await self.limiter.acquire(self.identity, now)
        if not result.allowed:
            return FleetDecision(
                outcome=Outcome.FLEET_OVERLOADED,
                current_count=result.current_count,
            )
        return FleetDecision(
            outcome=result.outcome,
            token=result.token,
            current_count=result.current_count,
        )

    async def release(self, decision: FleetDecision) -> None:
        """Release the slot held by an admitted decision (no-op otherwise)."""
        await self.limiter.release(self.identity, decision.token)

    @asynccontextmanager
    async def slot(self, is_high_priority: bool = False) -> AsyncIterator[FleetDecision]:
        """Hold a fleet slot for the duration of the block.

        Raises:
            FleetOverloadedError: If the fleet is at capacity
        """
        decision = await self.check(is_high_priority)
        if not decision.allowed:
            raise FleetOverloadedError(decision.current_count)
        try:
            yield decision
        finally:
            await self.release(decision)
