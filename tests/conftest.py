"""Test fixtures for emd.

Provides:
- clock: a controllable UTC clock shared by cache, alert store and poller
- make_job: builder for JobSnapshot instances with sensible defaults
- FakeSource / FakeVerifier: scripted job and GPS sources
- FakeStore: in-memory PersistenceStore that can be told to fail
- FakeScheduler: records start/stop instead of running APScheduler
- poller: a Poller wired to the fakes above
"""

from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from emd.analyzer.alert_store import AlertStore
from emd.analyzer.pipeline import Poller
from emd.analyzer.rule_engine import RuleEngine
from emd.analyzer.snapshot_cache import SnapshotCache
from emd.core.events import EventBus
from emd.models.job_models import ComparisonWindow, JobSnapshot, JobStatus, VerificationData
from emd.persistence.gateway import PersistenceGateway

START = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
TODAY = START.date()


class FakeClock:
    """Callable clock; ``advance`` moves it forward."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, minutes: float = 0, hours: float = 0) -> None:
        self.now += timedelta(seconds=seconds, minutes=minutes, hours=hours)


def make_job(entity_id: str = "J1", **overrides: Any) -> JobSnapshot:
    """Build an open, fully-assigned job dated today unless overridden."""
    fields: Dict[str, Any] = {
        "entity_id": entity_id,
        "record_id": f"r-{entity_id}",
        "logical_date": TODAY,
        "status": JobStatus.OPEN,
        "job_type": "Delivery",
        "truck_id": "T1",
        "driver_id": "D1",
        "raw": {"job_status": "Entered"},
    }
    fields.update(overrides)
    return JobSnapshot(**fields)


class FakeSource:
    """Returns queued batches in order; an Exception in the queue is raised."""

    def __init__(self, *batches: Any):
        self.batches: List[Any] = list(batches)
        self.windows: List[ComparisonWindow] = []
        self.calls = 0
        self.closed = False

    def queue(self, batch: Any) -> None:
        self.batches.append(batch)

    async def fetch_jobs(self, window: ComparisonWindow) -> List[JobSnapshot]:
        self.calls += 1
        self.windows.append(window)
        batch = self.batches.pop(0) if self.batches else []
        if isinstance(batch, Exception):
            raise batch
        return list(batch)

    async def close(self) -> None:
        self.closed = True


class FakeVerifier:
    def __init__(self, data: Optional[Dict[str, VerificationData]] = None, error: Exception | None = None):
        self.data = data or {}
        self.error = error
        self.received: List[List[JobSnapshot]] = []

    async def fetch_verification(self, jobs: List[JobSnapshot]) -> Dict[str, VerificationData]:
        self.received.append(list(jobs))
        if self.error:
            raise self.error
        return dict(self.data)


class FakeStore:
    """Captures writes; set ``fail`` to make every write raise."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.writes: List[tuple] = []

    def write(self, kind, payload) -> int:
        if self.fail:
            raise RuntimeError("database unavailable")
        self.writes.append((kind, payload))
        return len(payload) if isinstance(payload, list) else 1

    def kinds(self) -> List[str]:
        return [k.value for k, _ in self.writes]


class FakeScheduler:
    def __init__(self):
        self.started_with: Optional[tuple] = None
        self.stopped = False

    @property
    def running(self) -> bool:
        return self.started_with is not None and not self.stopped

    def start(self, job, interval_seconds) -> None:
        self.started_with = (job, interval_seconds)
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


@pytest.fixture()
def clock() -> FakeClock:
    """Return a fresh clock at a fixed instant."""
    return FakeClock()


@pytest.fixture()
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture()
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture()
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture()
def poller(clock: FakeClock, source: FakeSource, store: FakeStore, scheduler: FakeScheduler) -> Poller:
    """Create a Poller wired to fakes, sharing one clock.

    Args:
        clock: Injected clock fixture.
        source: Injected job source; queue batches on it per test.
        store: Injected persistence store.
        scheduler: Injected scheduler stub.

    Returns:
        A Poller with a 30s interval, UTC source timezone and default rules.
    """
    return Poller(
        source=source,
        cache=SnapshotCache(max_size=100, ttl_seconds=900, clock=clock),
        engine=RuleEngine(),
        alerts=AlertStore(dedup_window_seconds=300, clock=clock),
        persistence=PersistenceGateway(store, clock=clock),
        bus=EventBus(),
        scheduler=scheduler,
        interval_seconds=30,
        fetch_timeout_seconds=1.0,
        verification_timeout_seconds=0.5,
        comparison_window_days=1,
        source_timezone="UTC",
        clock=clock,
    )


@pytest.fixture()
def today() -> date:
    return TODAY
