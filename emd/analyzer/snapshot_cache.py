"""EMD — Snapshot Cache.

Bounded store of the last-known snapshot per job with TTL expiry and
least-recently-used eviction. No operation raises; absence is a normal outcome.
"""

from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from emd.models.job_models import JobSnapshot
from emd.core.logging import get_logger

logger = get_logger("analyzer.cache")

Clock = Callable[[], datetime]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CacheEntry:
    snapshot: JobSnapshot
    fetched_at: datetime
    expires_at: datetime


class SnapshotCache:
    """LRU + TTL cache of job snapshots keyed by entity id."""

    def __init__(
        self,
        max_size: int = 1000,
        ttl_seconds: float = 900,
        clock: Clock = _now_utc,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        # Least recently accessed first.
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.expirations = 0

    # ── Core Operations ──

    def put(self, entity_id: str, snapshot: JobSnapshot) -> None:
        """Insert or replace a snapshot, evicting the LRU entry when full."""
        now = self._clock()
        if entity_id in self._entries:
            self._entries.move_to_end(entity_id)
        elif len(self._entries) >= self.max_size:
            evicted_id, _ = self._entries.popitem(last=False)
            self.evictions += 1
            logger.debug(
                f"Evicted least-recently-used snapshot {evicted_id} "
                f"(size={self.max_size}, evictions={self.evictions})",
                extra={"entity_id": evicted_id},
            )
        self._entries[entity_id] = CacheEntry(
            snapshot=snapshot, fetched_at=now, expires_at=now + self.ttl
        )

    def get(self, entity_id: str) -> Optional[JobSnapshot]:
        """Return the cached snapshot and mark it most recently used."""
        entry = self._entries.get(entity_id)
        if entry is None:
            self.misses += 1
            return None
        if entry.expires_at <= self._clock():
            del self._entries[entity_id]
            self.expirations += 1
            self.misses += 1
            return None
        self._entries.move_to_end(entity_id)
        self.hits += 1
        return entry.snapshot

    def peek(self, entity_id: str) -> Optional[JobSnapshot]:
        """Return the cached snapshot without touching recency or expiry."""
        entry = self._entries.get(entity_id)
        return entry.snapshot if entry else None

    def all_ids(self) -> set[str]:
        return set(self._entries.keys())

    def discard(self, entity_id: str) -> bool:
        return self._entries.pop(entity_id, None) is not None

    def evict_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for entity_id in expired:
            del self._entries[entity_id]
        if expired:
            self.expirations += len(expired)
            logger.debug(f"Expired {len(expired)} cached snapshots")
        return len(expired)

    # ── Introspection ──

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._entries

    def stats(self) -> dict:
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl.total_seconds(),
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
        }
