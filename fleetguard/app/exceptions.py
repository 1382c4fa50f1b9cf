"""Custom exceptions for admission control."""

from fleetguard.app.models import Outcome


class AdmissionException(Exception):
    """Base class for admission exceptions with HTTP status code.

    All custom exceptions inherit from this class and define their
    status_code and outcome for consistent HTTP response handling.
    """
    status_code: int = 500
    outcome: Outcome = Outcome.STORE_UNAVAILABLE

    def __init__(self, message: str = "Admission error"):
        self.message = message
        super().__init__(message)


class StoreUnavailableError(AdmissionException):
    """Raised by a store client on timeout, connection or script failure.

    Limiters catch this at their boundary and fail open; it never reaches
    callers as a denial.
    """
    status_code = 500
    outcome = Outcome.STORE_UNAVAILABLE

    def __init__(self, reason: str = "store_error", detail: str | None = None):
        self.reason = reason
        super().__init__(detail or f"Atomic store unavailable ({reason})")


class AdmissionDenied(AdmissionException):
    """Base class for deliberate denials (not defects)."""
    retry_after: int = 1

    def __init__(self, identity: str | None = None, message: str = "Request denied"):
        self.identity = identity
        super().__init__(message)


class RateLimitExceededError(AdmissionDenied):
    """Raised when an identity has exhausted its token bucket.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    outcome = Outcome.RATE_LIMITED

    def __init__(self, identity: str | None = None, tokens_remaining: float | None = None):
        self.tokens_remaining = tokens_remaining
        super().__init__(identity, "Rate limit exceeded. Please try again later.")


class ConcurrencyExceededError(AdmissionDenied):
    """Raised when an identity already has the maximum in-flight requests.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    outcome = Outcome.CONCURRENCY_EXCEEDED

    def __init__(
        self,
        identity: str | None = None,
        current_count: int | None = None,
        message: str = "Too many concurrent requests.",
    ):
        self.current_count = current_count
        super().__init__(identity, message)


class FleetOverloadedError(ConcurrencyExceededError):
    """Raised when the fleet-wide in-flight limit is reached.

    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503
    outcome = Outcome.FLEET_OVERLOADED

    def __init__(self, current_count: int | None = None):
        super().__init__(
            identity=None,
            current_count=current_count,
            message="Service overloaded. Please retry shortly.",
        )


class WorkerOverloadedError(AdmissionDenied):
    """Raised when the local worker sheds a low-priority request.

    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503
    outcome = Outcome.WORKER_OVERLOADED

    def __init__(self, drop_chance: float = 0.0):
        self.drop_chance = drop_chance
        super().__init__(None, "Worker overloaded. Please retry shortly.")


_DENIALS = {
    Outcome.RATE_LIMITED: RateLimitExceededError,
    Outcome.CONCURRENCY_EXCEEDED: ConcurrencyExceededError,
    Outcome.FLEET_OVERLOADED: FleetOverloadedError,
    Outcome.WORKER_OVERLOADED: WorkerOverloadedError,
}


def denial_for(outcome: Outcome, identity: str | None = None) -> AdmissionDenied:
    """Build the exception matching a denying outcome."""
    if outcome not in _DENIALS:
        raise ValueError(f"{outcome.value} is not a denial")
    if outcome is Outcome.FLEET_OVERLOADED:
        return FleetOverloadedError()
    if outcome is Outcome.WORKER_OVERLOADED:
        return WorkerOverloadedError()
    return _DENIALS[outcome](identity)
