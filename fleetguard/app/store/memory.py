"""In-memory atomic store.

Mirrors the Lua scripts in store.scripts with the same keys, arguments and
replies, for single-instance deployments and tests. A lock around each
script gives the same no-interleaving guarantee Redis gives EVAL.
"""

import asyncio
import math
import time
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from fleetguard.app.exceptions import StoreUnavailableError
from fleetguard.app.store.base import AtomicStore, Primitive
from fleetguard.app.store.scripts import (
    CONCURRENCY_ACQUIRE,
    CONCURRENCY_PRUNE,
    CONCURRENCY_RELEASE,
    TOKEN_BUCKET,
)


class InMemoryAtomicStore(AtomicStore):
    """Single-process atomic store with per-key expiry.

    Expired keys are dropped lazily when touched, so memory stays bounded
    by the set of identities active within their expiry window.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        """Initialize in-memory store.

        Args:
            clock: Time source used for key expiry only
        """
        self._clock = clock
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = asyncio.Lock()
        self._scripts: Dict[str, Callable[[Sequence[str], Sequence[Primitive]], Any]] = {
            TOKEN_BUCKET: self._token_bucket,
            CONCURRENCY_PRUNE: self._concurrency_prune,
            CONCURRENCY_ACQUIRE: self._concurrency_acquire,
            CONCURRENCY_RELEASE: self._concurrency_release,
        }

    async def execute(
        self,
        script_name: str,
        keys: Sequence[str],
        args: Sequence[Primitive],
    ) -> Any:
        script = self._scripts.get(script_name)
        if script is None:
            raise StoreUnavailableError("unknown_script", f"Unknown store script: {script_name}")
        async with self._lock:
            try:
                return script(keys, args)
            except (TypeError, ValueError, IndexError) as e:
                raise StoreUnavailableError("script_error", f"Script {script_name} failed: {e}") from e

    def _get(self, key: str) -> Any:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    def _set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        self._data[key] = (value, expires_at)

    def _expire(self, key: str, ttl: float) -> None:
        value = self._get(key)
        if value is not None:
            self._set(key, value, ttl)

    def _token_bucket(self, keys: Sequence[str], args: Sequence[Primitive]) -> list:
        tokens_key, timestamp_key = keys
        rate, capacity, now, requested = (float(a) for a in args)
        ttl = max(1, math.floor(2 * capacity / rate))

        last_tokens = self._get(tokens_key)
        if last_tokens is None:
            last_tokens = capacity
        last_refill = self._get(timestamp_key)
        if last_refill is None:
            last_refill = 0.0

        delta = max(0.0, now - last_refill)
        filled = min(capacity, last_tokens + delta * rate)
        allowed = filled >= requested
        new_tokens = filled - requested if allowed else filled

        self._set(tokens_key, new_tokens, ttl)
        self._set(timestamp_key, now, ttl)
        return [1 if allowed else 0, new_tokens]

    def _members(self, key: str) -> Dict[str, float]:
        members = self._get(key)
        return members if members is not None else {}

    def _concurrency_prune(self, keys: Sequence[str], args: Sequence[Primitive]) -> int:
        (key,) = keys
        cutoff, ttl = float(args[0]), float(args[1])
        members = self._members(key)
        live = {m: ts for m, ts in members.items() if ts >= cutoff}
        if live:
            self._set(key, live, ttl)
        else:
            self._data.pop(key, None)
        return len(live)

    def _concurrency_acquire(self, keys: Sequence[str], args: Sequence[Primitive]) -> list:
        (key,) = keys
        capacity, timestamp, member = int(args[0]), float(args[1]), str(args[2])
        ttl = float(args[3]) if len(args) > 3 else None
        members = self._members(key)
        count = len(members)
        if count < capacity:
            members = dict(members)
            members[member] = timestamp
            if ttl is not None:
                self._set(key, members, ttl)
            else:
                entry = self._data.get(key)
                self._data[key] = (members, entry[1] if entry is not None else None)
            return [1, count + 1]
        return [0, count]

    def _concurrency_release(self, keys: Sequence[str], args: Sequence[Primitive]) -> int:
        (key,) = keys
        members = self._get(key)
        if not members or str(args[0]) not in members:
            return 0
        del members[str(args[0])]
        # Redis drops a sorted set once its last member is removed
        if not members:
            del self._data[key]
        return 1
