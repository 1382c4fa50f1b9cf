"""Worker utilization load shedding.

A slow, process-local feedback controller. Each check integrates a
"shedding amount" whose rate of change follows local utilization:

- below ``good`` the amount decays (faster the idler the worker is)
- between ``good`` and ``bad`` it is frozen (dead zone against oscillation)
- at or above ``bad`` it grows (faster the busier the worker is)

At full utilization the amount goes from 0 to 1 in ``full_shed_seconds``,
and full idleness takes it back down at the same pace. The amount is
floored at ``-grace_seconds / full_shed_seconds``: after recovering, that
negative balance has to be paid back before any shedding resumes, so a
single bad sample cannot instantly start dropping traffic again.

Low-priority requests are dropped with probability ``max(0, amount)``.
The shedder carries no priority information itself; callers decide which
requests go through it.
"""

import random
import threading
import time
from typing import Callable, Optional

from fleetguard.app.core.events import EventSink, LoggingEventSink
from fleetguard.app.exceptions import WorkerOverloadedError
from fleetguard.app.models import AdmissionEvent, EventKind, Outcome, ShedDecision, SheddingState


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class UtilizationShedder:
    """Probabilistic local shedding driven by worker utilization.

    Create one per process and pass it to every call site; check() is
    safe to call from multiple threads.
    """

    DEFAULT_GOOD = 0.7
    DEFAULT_BAD = 0.8
    DEFAULT_FULL_SHED_SECONDS = 120.0
    DEFAULT_GRACE_SECONDS = 28.0

    def __init__(
        self,
        good: float = DEFAULT_GOOD,
        bad: float = DEFAULT_BAD,
        full_shed_seconds: float = DEFAULT_FULL_SHED_SECONDS,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        sink: Optional[EventSink] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ):
        """Initialize the shedder.

        Args:
            good: Utilization below which shedding decays
            bad: Utilization at or above which shedding grows
            full_shed_seconds: Seconds from zero to full shedding at 100% utilization
            grace_seconds: Cap on the time a single check may integrate
            sink: Receives shedding changes and drops
            clock: Monotonic time source
            rng: Uniform random source in [0, 1) for the drop draw
        """
        if not 0 < good < bad < 1:
            raise ValueError("thresholds must satisfy 0 < good < bad < 1")
        if full_shed_seconds <= 0 or grace_seconds <= 0:
            raise ValueError("full_shed_seconds and grace_seconds must be positive")
        self.good = good
        self.bad = bad
        self.full_shed_seconds = float(full_shed_seconds)
        self.grace_seconds = float(grace_seconds)
        self.resting_floor = -self.grace_seconds / self.full_shed_seconds
        self.sink = sink or LoggingEventSink()
        self._clock = clock
        self._rng = rng
        self._lock = threading.Lock()
        self._state = SheddingState(last_changed=clock())

    @property
    def state(self) -> SheddingState:
        """Snapshot of the control state."""
        with self._lock:
            return SheddingState(
                shedding_amount=self._state.shedding_amount,
                shedding_amount_derivative=self._state.shedding_amount_derivative,
                last_changed=self._state.last_changed,
            )

    @property
    def shedding_amount(self) -> float:
        with self._lock:
            return self._state.shedding_amount

    def derivative(self, utilization: float) -> float:
        """Rate of change of the shedding amount, per second."""
        if utilization < self.good:
            raw = utilization / self.good - 1
        elif utilization < self.bad:
            raw = 0.0
        else:
            raw = (utilization - self.bad) / (1 - self.bad)
        return _clamp(raw, -1.0, 1.0) / self.full_shed_seconds

    def _update(self, utilization: float) -> tuple[float, float]:
        with self._lock:
            state = self._state
            now = self._clock()
            elapsed = _clamp(now - state.last_changed, 0.0, self.grace_seconds)
            previous = state.shedding_amount
            state.shedding_amount_derivative = self.derivative(utilization)
            state.shedding_amount = _clamp(
                previous + elapsed * state.shedding_amount_derivative,
                self.resting_floor,
                1.0,
            )
            state.last_changed = now
            return previous, state.shedding_amount

    def check(self, utilization: float) -> ShedDecision:
        """Update the controller with a utilization sample and decide.

        Args:
            utilization: Current worker busy-ness in [0, 1]
        """
        previous, amount = self._update(utilization)
        if amount != previous:
            self.sink.emit(AdmissionEvent(
                EventKind.SHEDDING_CHANGED,
                reason=f"shedding amount {previous:.4f} -> {amount:.4f} at utilization {utilization:.2f}",
            ))

        drop_chance = max(0.0, amount)
        if self._rng() < drop_chance:
            self.sink.emit(AdmissionEvent(
                EventKind.REJECTED,
                reason=Outcome.WORKER_OVERLOADED.value,
            ))
            return ShedDecision(Outcome.WORKER_OVERLOADED, drop_chance, amount)
        return ShedDecision(Outcome.ADMITTED, drop_chance, amount)

    def check_or_raise(self, utilization: float) -> ShedDecision:
        """Like check(), but raise WorkerOverloadedError when dropped."""
        decision = self.check(utilization)
        if not decision.allowed:
            raise WorkerOverloadedError(decision.drop_chance)
        return decision
