"""Admission pipeline combining the limiters in their default order.

Token bucket first (abuse prevention), then the optional per-identity
concurrency limit, then the fleet shedder (global backpressure), then the
utilization shedder (local last resort). The first denial wins and gives
back any slot already taken; store failures along the way fail open.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from fleetguard.app.core.config import settings
from fleetguard.app.core.events import EventSink, LoggingEventSink
from fleetguard.app.core.logging import get_logger
from fleetguard.app.exceptions import denial_for
from fleetguard.app.limiters.concurrency import ConcurrencyLimiter
from fleetguard.app.limiters.fleet import FleetLoadShedder
from fleetguard.app.limiters.token_bucket import TokenBucketLimiter
from fleetguard.app.limiters.utilization import UtilizationShedder
from fleetguard.app.models import ConcurrencyResult, FleetDecision, Outcome
from fleetguard.app.services.utilization import CpuUtilizationSource, UtilizationPoller
from fleetguard.app.store import get_atomic_store

logger = get_logger(__name__)


@dataclass
class AdmissionDecision:
    """Result of running a request through the pipeline.

    outcome is STORE_UNAVAILABLE when the request was admitted but at
    least one limiter had to fail open.
    """
    outcome: Outcome
    identity: str
    tokens_remaining: Optional[float] = None
    concurrency: Optional[ConcurrencyResult] = None
    fleet: Optional[FleetDecision] = None

    @property
    def allowed(self) -> bool:
        return self.outcome.allowed


class AdmissionController:
    """Runs each configured limiter in order; any of them may be omitted."""

    def __init__(
        self,
        token_bucket: Optional[TokenBucketLimiter] = None,
        concurrency_limiter: Optional[ConcurrencyLimiter] = None,
        fleet_shedder: Optional[FleetLoadShedder] = None,
        utilization_shedder: Optional[UtilizationShedder] = None,
        poller: Optional[UtilizationPoller] = None,
    ):
        self.token_bucket = token_bucket
        self.concurrency_limiter = concurrency_limiter
        self.fleet_shedder = fleet_shedder
        self.utilization_shedder = utilization_shedder
        self.poller = poller

    def _utilization(self, utilization: Optional[float]) -> Optional[float]:
        if utilization is not None:
            return utilization
        if self.poller is not None:
            return self.poller.latest
        return None

    async def check(
        self,
        identity: str,
        is_high_priority: bool = False,
        utilization: Optional[float] = None,
        now: Optional[float] = None,
    ) -> AdmissionDecision:
        """Decide whether a request may proceed.

        An admitted decision may hold concurrency and fleet slots; pass it
        to release() once the request finishes, on every exit path.

        Args:
            identity: Rate limit identity (API key hash, client IP, ...)
            is_high_priority: Bypass fleet and utilization shedding
            utilization: Worker utilization sample (default: poller's latest)
            now: Wall-clock seconds (default: each limiter's clock)
        """
        fail_open = False
        tokens_remaining = None

        if self.token_bucket is not None:
            rate = await self.token_bucket.allow(identity, now)
            if not rate.allowed:
                return AdmissionDecision(rate.outcome, identity, rate.tokens_remaining)
            fail_open = rate.outcome is Outcome.STORE_UNAVAILABLE
            tokens_remaining = rate.tokens_remaining

        held = AdmissionDecision(Outcome.ADMITTED, identity, tokens_remaining)

        if self.concurrency_limiter is not None:
            held.concurrency = await self.concurrency_limiter.acquire(identity, now)
            if not held.concurrency.allowed:
                return AdmissionDecision(held.concurrency.outcome, identity, tokens_remaining)
            fail_open = fail_open or held.concurrency.outcome is Outcome.STORE_UNAVAILABLE

        if self.fleet_shedder is not None:
            held.fleet = await self.fleet_shedder.check(is_high_priority, now)
            if not held.fleet.allowed:
                outcome = held.fleet.outcome
                held.fleet = None
                await self.release(held)
                return AdmissionDecision(outcome, identity, tokens_remaining)
            fail_open = fail_open or held.fleet.outcome is Outcome.STORE_UNAVAILABLE

        sample = self._utilization(utilization)
        if self.utilization_shedder is not None and not is_high_priority and sample is not None:
            shed = self.utilization_shedder.check(sample)
            if not shed.allowed:
                await self.release(held)
                return AdmissionDecision(shed.outcome, identity, tokens_remaining)

        if fail_open:
            held.outcome = Outcome.STORE_UNAVAILABLE
        return held

    async def release(self, decision: AdmissionDecision) -> None:
        """Release whatever slots an admitted decision holds."""
        if self.fleet_shedder is not None and decision.fleet is not None:
            await self.fleet_shedder.release(decision.fleet)
        if self.concurrency_limiter is not None and decision.concurrency is not None:
            await self.concurrency_limiter.release(decision.identity, decision.concurrency.token)

    async def close(self) -> None:
        """Close the stores behind the configured limiters, each once."""
        stores = []
        for owner in (
            self.token_bucket,
            self.concurrency_limiter,
            self.fleet_shedder.limiter if self.fleet_shedder is not None else None,
        ):
            if owner is not None and not any(owner.store is s for s in stores):
                stores.append(owner.store)
        for store in stores:
            await store.close()

    @asynccontextmanager
    async def admit(
        self,
        identity: str,
        is_high_priority: bool = False,
        utilization: Optional[float] = None,
    ) -> AsyncIterator[AdmissionDecision]:
        """Admit a request for the duration of the block.

        Raises:
            AdmissionDenied: The subclass matching the denying outcome
        """
        decision = await self.check(identity, is_high_priority, utilization)
        if not decision.allowed:
            raise denial_for(decision.outcome, identity)
        try:
            yield decision
        finally:
            await self.release(decision)


def build_admission_controller(
    sink: Optional[EventSink] = None,
    poller: Optional[UtilizationPoller] = None,
) -> AdmissionController:
    """Build a controller from settings sharing one store and one sink."""
    store = get_atomic_store()
    sink = sink or LoggingEventSink()
    token_bucket = TokenBucketLimiter(
        store,
        rate=settings.rate_limit_rate,
        capacity=settings.rate_limit_capacity,
        requested=settings.rate_limit_requested,
        key_prefix=settings.rate_limit_key_prefix,
        sink=sink,
    )
    concurrency_limiter = ConcurrencyLimiter(
        store,
        capacity=settings.concurrency_capacity,
        ttl=settings.concurrency_ttl_seconds,
        key_prefix=settings.concurrency_key_prefix,
        sink=sink,
    )
    fleet_limiter = ConcurrencyLimiter(
        store,
        capacity=settings.fleet_capacity,
        ttl=settings.concurrency_ttl_seconds,
        key_prefix=settings.concurrency_key_prefix,
        sink=sink,
    )
    shedder = UtilizationShedder(
        good=settings.shed_good_threshold,
        bad=settings.shed_bad_threshold,
        full_shed_seconds=settings.shed_full_seconds,
        grace_seconds=settings.shed_grace_seconds,
        sink=sink,
    )
    return AdmissionController(
        token_bucket=token_bucket,
        concurrency_limiter=concurrency_limiter,
        fleet_shedder=FleetLoadShedder(fleet_limiter, identity=settings.fleet_identity),
        utilization_shedder=shedder,
        poller=poller,
    )


_admission_controller: Optional[AdmissionController] = None


def get_admission_controller() -> AdmissionController:
    """Get the process-wide admission controller.

    Its utilization poller samples CPU usage but is not started here;
    start it from the application's startup hook.
    """
    global _admission_controller
    if _admission_controller is None:
        _admission_controller = build_admission_controller(
            poller=UtilizationPoller(CpuUtilizationSource()),
        )
        logger.info("Admission controller initialized")
    return _admission_controller


def reset_admission_controller() -> None:
    """Reset the process-wide admission controller (useful for testing)."""
    global _admission_controller
    _admission_controller = None
