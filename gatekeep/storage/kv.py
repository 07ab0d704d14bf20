from __future__ import annotations

import math
import threading
from typing import TYPE_CHECKING, Dict, Optional, Protocol, Tuple

from gatekeep.logging import get_logger

if TYPE_CHECKING:
    from gatekeep.service.primitives import Clock

logger = get_logger(__name__)


class KeyValueStore(Protocol):
    """Keyed store with per-key TTLs and atomic per-key operations.

    Every method must be atomic with respect to a single key: two concurrent
    ``get_and_delete`` calls never both observe the same value, and
    ``increment_with_ttl`` never loses an increment.
    """

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    async def get_and_delete(self, key: str) -> Optional[str]:
        ...

    async def increment_with_ttl(self, key: str, ttl_seconds: int) -> int:
        """Increment a counter, applying ``ttl_seconds`` only when the key is created."""
        ...

    async def ttl(self, key: str) -> Optional[int]:
        """Remaining lifetime in whole seconds, or None when the key is absent."""
        ...

    async def delete(self, key: str) -> None:
        ...

    async def sweep_expired(self) -> int:
        ...

    async def close(self) -> None:
        ...


class MemoryKeyValueStore:
    """In-process KV store with lazy and swept expiry.

    Atomicity holds only inside one process; multi-process deployments must
    use ``RedisKeyValueStore``.
    """

    def __init__(self, clock: "Clock | None" = None) -> None:
        if clock is None:
            from gatekeep.service.primitives import SystemClock

            clock = SystemClock()
        self.clock = clock
        self._lock = threading.Lock()
        self._data: Dict[str, Tuple[str, float]] = {}

    def _now(self) -> float:
        return self.clock.now().timestamp()

    def _live(self, key: str, now: float) -> Optional[Tuple[str, float]]:
        # Caller holds self._lock
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry[1] <= now:
            del self._data[key]
            return None
        return entry

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key, self._now())
            return entry[0] if entry else None

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        with self._lock:
            self._data[key] = (value, self._now() + ttl_seconds)

    async def get_and_delete(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key, self._now())
            if entry is None:
                return None
            del self._data[key]
            return entry[0]

    async def increment_with_ttl(self, key: str, ttl_seconds: int) -> int:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        with self._lock:
            now = self._now()
            entry = self._live(key, now)
            if entry is None:
                self._data[key] = ("1", now + ttl_seconds)
                return 1
            count = int(entry[0]) + 1
            self._data[key] = (str(count), entry[1])
            return count

    async def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            now = self._now()
            entry = self._live(key, now)
            if entry is None:
                return None
            return max(1, math.ceil(entry[1] - now))

    async def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    async def sweep_expired(self) -> int:
        with self._lock:
            now = self._now()
            expired = [key for key, (_, expires_at) in self._data.items() if expires_at <= now]
            for key in expired:
                del self._data[key]
        if expired:
            logger.debug("kv_expired_entries_swept", count=len(expired))
        return len(expired)

    async def close(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
