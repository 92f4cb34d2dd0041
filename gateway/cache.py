import time
from typing import Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar


V = TypeVar("V")


class TTLCache(Generic[V]):
    """Small time-bounded key/value store shared across requests.

    Entries are checked for expiry on read. Once the store grows past
    ``max_entries`` a write triggers a sweep of expired entries; if it is still
    over the bound after that, the oldest entries are dropped. Entries are
    recomputable, so concurrent refreshes simply overwrite each other.
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, V]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: Hashable) -> Optional[V]:
        if self.ttl_seconds <= 0:
            return None
        cached = self._entries.get(key)
        if cached is None:
            return None
        ts, value = cached
        if self._clock() - ts >= self.ttl_seconds:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: Hashable, value: V) -> None:
        if self.ttl_seconds <= 0:
            return
        self._entries[key] = (self._clock(), value)
        if len(self._entries) > self.max_entries:
            self._sweep()

    def clear(self) -> None:
        self._entries.clear()

    def _sweep(self) -> None:
        now = self._clock()
        expired = [key for key, (ts, _) in self._entries.items() if now - ts >= self.ttl_seconds]
        for key in expired:
            self._entries.pop(key, None)
        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            oldest = sorted(self._entries.items(), key=lambda item: item[1][0])[:overflow]
            for key, _ in oldest:
                self._entries.pop(key, None)
