"""Admission limiters.

Three limiters share the atomic store and fail open when it is
unreachable; the utilization shedder is purely process-local.
"""

from fleetguard.app.limiters.concurrency import ConcurrencyLimiter, random_token
from fleetguard.app.limiters.fleet import FLEET_IDENTITY, FleetLoadShedder
from fleetguard.app.limiters.token_bucket import TokenBucketLimiter
from fleetguard.app.limiters.utilization import UtilizationShedder

__all__ = [
    "TokenBucketLimiter",
    "ConcurrencyLimiter",
    "FleetLoadShedder",
    "UtilizationShedder",
    "FLEET_IDENTITY",
    "random_token",
]
