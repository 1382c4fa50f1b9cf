"""Redis-backed atomic store using Lua scripts."""

import asyncio
from typing import Any, Optional, Sequence

import redis
import redis.asyncio as aioredis

from fleetguard.app.core.config import settings
from fleetguard.app.core.logging import get_logger
from fleetguard.app.exceptions import StoreUnavailableError
from fleetguard.app.store.base import AtomicStore, Primitive
from fleetguard.app.store.scripts import SCRIPTS

logger = get_logger(__name__)


class RedisAtomicStore(AtomicStore):
    """Distributed atomic store for multi-instance deployments.

    Scripts run through EVAL, which Redis executes without interleaving
    other commands. Every round trip is bounded by a client-side timeout.
    """

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize Redis store.

        Args:
            redis_client: Optional Redis client instance
            redis_url: Redis connection URL
            timeout: Seconds before a round trip counts as a store failure
        """
        self._redis = redis_client
        self._redis_url = redis_url or settings.redis_url
        self._timeout = timeout if timeout is not None else settings.store_timeout_seconds

    def _get_redis(self) -> Any:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    async def execute(
        self,
        script_name: str,
        keys: Sequence[str],
        args: Sequence[Primitive],
    ) -> Any:
        script = SCRIPTS.get(script_name)
        if script is None:
            raise StoreUnavailableError("unknown_script", f"Unknown store script: {script_name}")

        try:
            client = self._get_redis()
            return await asyncio.wait_for(
                client.eval(script, len(keys), *keys, *args),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise StoreUnavailableError("timeout", f"Redis timeout running {script_name}") from e
        except redis.ConnectionError as e:
            raise StoreUnavailableError("connection_error", f"Redis connection failed: {e}") from e
        except redis.TimeoutError as e:
            raise StoreUnavailableError("timeout", f"Redis timeout: {e}") from e
        except redis.ResponseError as e:
            raise StoreUnavailableError("script_error", f"Script {script_name} failed: {e}") from e
        except redis.RedisError as e:
            raise StoreUnavailableError("redis_error", f"Redis error: {e}") from e

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except redis.RedisError as e:
                logger.warning(f"Error closing Redis connection: {e}")
            self._redis = None
