"""
Explicit TTL cache for derived metrics.

The caller owns the instance and injects it into the runner; there is no
process-wide cache. Entries expire after ``ttl`` seconds and the least
recently used entry is evicted once ``max_entries`` is reached.
"""

import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Hashable, Iterable, Optional, Tuple

from ..models.schemas import DerivationRule, Row

logger = logging.getLogger(__name__)


class TTLCache:
    def __init__(self, ttl: float = 300.0, max_entries: int = 1024, clock: Optional[Callable[[], float]] = None):
        if ttl <= 0 or max_entries <= 0:
            raise ValueError("ttl and max_entries must be positive")
        self.ttl = ttl
        self.max_entries = max_entries
        self.clock = clock or time.monotonic
        self._entries: "OrderedDict[Hashable, Tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            expires_at, value = entry
            if self.clock() >= expires_at:
                del self._entries[key]
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._entries[key] = (self.clock() + self.ttl, value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Evicted cache entry {evicted}")

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def derivation_cache_key(rules: Iterable[DerivationRule], rows: Iterable[Row]) -> str:
    """Stable hash of a rule set plus an entity's rows."""
    digest = hashlib.sha256()
    payload = [r.model_dump(mode="json") for r in rules]
    digest.update(json.dumps(payload, sort_keys=True, default=str).encode())
    for row in rows:
        digest.update(json.dumps(row.model_dump(mode="json"), sort_keys=True, default=str).encode())
    return digest.hexdigest()
