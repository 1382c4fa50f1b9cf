"""Atomic store clients.

Selects the Redis store when Redis is enabled in settings, otherwise the
in-memory store.
"""

from typing import Optional

from fleetguard.app.core.config import settings
from fleetguard.app.core.logging import get_logger
from fleetguard.app.store.base import AtomicStore
from fleetguard.app.store.memory import InMemoryAtomicStore
from fleetguard.app.store.redis_store import RedisAtomicStore
from fleetguard.app.store.scripts import (
    CONCURRENCY_ACQUIRE,
    CONCURRENCY_PRUNE,
    CONCURRENCY_RELEASE,
    SCRIPTS,
    TOKEN_BUCKET,
)

logger = get_logger(__name__)

__all__ = [
    "AtomicStore",
    "InMemoryAtomicStore",
    "RedisAtomicStore",
    "SCRIPTS",
    "TOKEN_BUCKET",
    "CONCURRENCY_PRUNE",
    "CONCURRENCY_ACQUIRE",
    "CONCURRENCY_RELEASE",
    "get_atomic_store",
    "reset_atomic_store",
]


_atomic_store: Optional[AtomicStore] = None


def get_atomic_store(use_redis: Optional[bool] = None) -> AtomicStore:
    """Get the process-wide atomic store.

    Args:
        use_redis: Force Redis usage (None = auto-detect from settings)
    """
    global _atomic_store
    if _atomic_store is None:
        should_use_redis = use_redis if use_redis is not None else settings.redis_enabled
        if should_use_redis:
            _atomic_store = RedisAtomicStore()
            logger.info("Using Redis atomic store")
        else:
            _atomic_store = InMemoryAtomicStore()
            logger.debug("Using in-memory atomic store")
    return _atomic_store


def reset_atomic_store() -> None:
    """Reset the process-wide atomic store (useful for testing)."""
    global _atomic_store
    _atomic_store = None
