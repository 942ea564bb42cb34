"""Process-local caches for pipeline state.

The preference, trend and profile engines keep their working state in
``StateCache`` instances: a key/value map with optional expiry and a
per-key ``asyncio.Lock`` so writers to the same key are serialized while
readers never block. Swapping in a distributed cache only requires an
object with the same interface.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar

from shoppulse.recommender.models import utcnow

# Configure module logger
logger = logging.getLogger(__name__)

V = TypeVar("V")


class StateCache(Generic[V]):
    """Key/value cache with optional TTL and per-key writer locks."""

    def __init__(
        self,
        name: str,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.name = name
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[V, Optional[datetime]]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _expired(self, expires_at: Optional[datetime]) -> bool:
        return expires_at is not None and self._clock() >= expires_at

    def get(self, key: str) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._expired(expires_at):
            logger.debug(f"Cache '{self.name}' entry expired", extra={"key": key})
            self.delete(key)
            return None
        return value

    def set(self, key: str, value: V) -> None:
        expires_at = None
        if self.ttl_seconds is not None:
            expires_at = self._clock() + timedelta(seconds=self.ttl_seconds)
        self._entries[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)
        self._drop_lock(key)

    def _drop_lock(self, key: str) -> None:
        # A held lock stays until its holder is done with it
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    def lock(self, key: str) -> asyncio.Lock:
        """Lock serializing writers of ``key``."""
        return self._locks.setdefault(key, asyncio.Lock())

    def prune(self) -> int:
        """Drop expired entries and the idle locks of keys without an entry.

        Returns:
            Number of expired entries removed.
        """
        expired = [key for key, (_, expires_at) in self._entries.items() if self._expired(expires_at)]
        for key in expired:
            self.delete(key)
        for key in [k for k in self._locks if k not in self._entries]:
            self._drop_lock(key)
        if expired:
            logger.debug(f"Cache '{self.name}' pruned {len(expired)} expired entries")
        return len(expired)

    def items(self) -> List[Tuple[str, V]]:
        """Live (non-expired) entries."""
        live = []
        for key in list(self._entries):
            value = self.get(key)
            if value is not None:
                live.append((key, value))
        return live

    def values(self) -> List[V]:
        return [value for _, value in self.items()]

    def clear(self) -> None:
        for key in list(self._entries):
            self.delete(key)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __iter__(self) -> Iterator[str]:
        return iter([key for key, _ in self.items()])

    def __len__(self) -> int:
        return len(self.items())
