"""EMD — Persistence Gateway.

Fire-and-forget mirror of job change history, alert deltas and cycle metrics. Writes
run in a worker thread one at a time, in the order they were scheduled;
callers never await them and never see their errors.
Repeated failures open an exponential backoff during which writes are dropped.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol, Set

from emd.persistence.store import PersistKind
from emd.core.logging import get_logger

logger = get_logger("persistence.gateway")


class PersistenceStore(Protocol):
    def write(self, kind: PersistKind, payload: Any) -> int: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class PersistenceGateway:
    """Best-effort asynchronous writer in front of a ``PersistenceStore``."""

    def __init__(
        self,
        store: Optional[PersistenceStore],
        backoff_seconds: float = 5.0,
        backoff_max_seconds: float = 300.0,
        clock: Callable[[], datetime] = _now_utc,
    ):
        self.store = store
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self._clock = clock
        self._tasks: Set[asyncio.Task] = set()
        self._write_lock = asyncio.Lock()
        self.consecutive_failures = 0
        self.suspended_until: Optional[datetime] = None
        self.written = 0
        self.failed = 0
        self.dropped = 0

    @property
    def enabled(self) -> bool:
        return self.store is not None

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def persist(self, kind: PersistKind, payload: Any) -> None:
        """Schedule a write on the running loop. Never raises."""
        if self.store is None:
            return
        if self.suspended_until is not None and self._clock() < self.suspended_until:
            self.dropped += 1
            logger.debug(f"Persistence suspended, dropped {PersistKind(kind).value} write")
            return
        try:
            task = asyncio.get_running_loop().create_task(self._write(kind, payload))
        except RuntimeError as e:
            self.dropped += 1
            logger.error(f"Cannot schedule {PersistKind(kind).value} write: {e}")
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _write(self, kind: PersistKind, payload: Any) -> None:
        async with self._write_lock:
            try:
                rows = await asyncio.to_thread(self.store.write, kind, payload)
            except Exception as e:
                self._record_failure(kind, e)
                return
        self.written += rows
        self.consecutive_failures = 0
        self.suspended_until = None

    def _record_failure(self, kind: PersistKind, error: Exception) -> None:
        self.failed += 1
        self.consecutive_failures += 1
        delay = min(
            self.backoff_seconds * (2 ** (self.consecutive_failures - 1)),
            self.backoff_max_seconds,
        )
        self.suspended_until = self._clock() + timedelta(seconds=delay)
        logger.error(
            f"Persistence of {PersistKind(kind).value} failed "
            f"({self.consecutive_failures} in a row), backing off {delay:.0f}s: {error}"
        )

    async def drain(self) -> None:
        """Wait for every in-flight write to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def stats(self) -> dict:
        return {
            "enabled": self.enabled,
            "pending": self.pending,
            "written": self.written,
            "failed": self.failed,
            "dropped": self.dropped,
            "consecutive_failures": self.consecutive_failures,
            "suspended_until": self.suspended_until,
        }
