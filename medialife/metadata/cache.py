# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Valid-key cache - Holds materialized valid-key sets for a short TTL.

Constructed once per process state and passed by reference. The cache key
is derived from the inputs that shape a valid-key set, including the
metadata generation, so a write to any media record makes the cached sets
unreachable without the writer knowing about the cache.
"""

import time
from typing import Any, Callable, Dict, Hashable, Sequence, Tuple

import structlog

logger = structlog.get_logger()


class ValidKeyCache:
    """TTL cache keyed by (metadata generation, retention_days, prefixes)."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}

    @staticmethod
    def derive_key(
        prefixes: Sequence[str],
        retention_days: int,
        generation: int,
    ) -> Hashable:
        """
        Args:
            prefixes: Scanned prefixes (order and duplicates ignored)
            retention_days: Retention window of the scan
            generation: Metadata generation the set is built from; any
                media write moves it, so older entries are never hit again
        """
        return (generation, retention_days, tuple(sorted(set(prefixes))))

    def get(self, key: Hashable) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None

        stored_at, value = entry
        if self._clock() - stored_at > self.ttl_seconds:
            del self._entries[key]
            return None
        return value

    def put(self, key: Hashable, value: Any) -> None:
        if self.ttl_seconds <= 0:
            return
        self._entries[key] = (self._clock(), value)

    def invalidate(self) -> None:
        """Drop every entry."""
        if self._entries:
            logger.debug("valid_key_cache_invalidated", entries=len(self._entries))
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
