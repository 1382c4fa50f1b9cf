"""Admission outcome and result models.

Denials and store failures are kept apart here; only the ``allowed``
property folds a store failure into an admission.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class Outcome(str, Enum):
    """Closed set of admission outcomes."""
    ADMITTED = "admitted"
    RATE_LIMITED = "rate_limited"
    CONCURRENCY_EXCEEDED = "concurrency_exceeded"
    FLEET_OVERLOADED = "fleet_overloaded"
    WORKER_OVERLOADED = "worker_overloaded"
    STORE_UNAVAILABLE = "store_unavailable"

    @property
    def allowed(self) -> bool:
        """Whether the request may proceed (store failures fail open)."""
        return self in (Outcome.ADMITTED, Outcome.STORE_UNAVAILABLE)


@dataclass
class RateLimitResult:
    """Result of a token bucket check.

    tokens_remaining is None when the store could not be reached.
    """
    outcome: Outcome
    tokens_remaining: Optional[float] = None

    @property
    def allowed(self) -> bool:
        return self.outcome.allowed


@dataclass
class ConcurrencyResult:
    """Result of a concurrency slot acquisition.

    token is set only when a slot was actually taken and must be passed
    back to release(). A fail-open admission holds no slot.
    """
    outcome: Outcome
    current_count: Optional[int] = None
    token: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.outcome.allowed


@dataclass
class FleetDecision:
    """Result of a fleet load shedding check."""
    outcome: Outcome
    high_priority: bool = False
    token: Optional[str] = None
    current_count: Optional[int] = None

    @property
    def allowed(self) -> bool:
        return self.outcome.allowed


@dataclass
class ShedDecision:
    """Result of a worker utilization check."""
    outcome: Outcome
    drop_chance: float = 0.0
    shedding_amount: float = 0.0

    @property
    def allowed(self) -> bool:
        return self.outcome.allowed


@dataclass
class SheddingState:
    """Process-local control state of the utilization shedder."""
    shedding_amount: float = 0.0
    shedding_amount_derivative: float = 0.0
    last_changed: float = field(default_factory=time.monotonic)


class EventKind(str, Enum):
    """Kinds of reportable admission events."""
    STORE_UNAVAILABLE = "store_unavailable"
    REJECTED = "rejected"
    SHEDDING_CHANGED = "shedding_changed"


@dataclass
class AdmissionEvent:
    """Discrete observability record handed to an event sink."""
    kind: EventKind
    identity: Optional[str] = None
    reason: Optional[str] = None
