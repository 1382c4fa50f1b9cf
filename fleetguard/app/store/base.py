"""Atomic store interface shared by all limiters."""

from abc import ABC, abstractmethod
from typing import Any, Sequence, Union

Primitive = Union[str, int, float]


class AtomicStore(ABC):
    """Abstract shared key-value store with atomic named scripts.

    Implementations must run each script as a single unit that concurrent
    callers cannot interleave with, and must raise StoreUnavailableError
    for every failure (timeout, connection, script error).
    """

    @abstractmethod
    async def execute(
        self,
        script_name: str,
        keys: Sequence[str],
        args: Sequence[Primitive],
    ) -> Any:
        """Run a named script atomically.

        Args:
            script_name: One of the names in store.scripts.SCRIPTS
            keys: Ordered keys the script touches
            args: Ordered primitive arguments

        Returns:
            The script's structured reply (a list for every limiter script)

        Raises:
            StoreUnavailableError: On any store failure
        """

    async def close(self) -> None:
        """Release client resources."""
