"""EMD — Polling Cycle Orchestrator.

Runs one cycle per scheduler tick:
  fetch → dedupe ids → expire cache → diff → update cache → verify (optional)
  → evaluate rules → submit / resolve alerts → persist (fire-and-forget) → emit

A fetch failure leaves cache and alerts untouched. Only one cycle runs at a
time; a tick that arrives while a cycle is in flight is skipped and counted.
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Protocol
from zoneinfo import ZoneInfo

from emd.analyzer.alert_store import AlertStore
from emd.analyzer.change_detector import analyze_changes, critical_changes, diff
from emd.analyzer.rule_engine import RuleEngine
from emd.analyzer.snapshot_cache import SnapshotCache
from emd.core.events import Channel, EventBus
from emd.core.hashing import alert_fingerprint
from emd.models.alert_models import Alert, BulkActionResult, Severity, SubmitOutcome
from emd.models.cycle_models import ChangeType, CycleReport, PollerHealth, PollerStatus
from emd.models.job_models import ComparisonWindow, JobSnapshot, VerificationData
from emd.persistence.gateway import PersistenceGateway
from emd.persistence.store import PersistKind
from emd.scheduler.jobs import PollingScheduler
from emd.core.logging import get_logger

logger = get_logger("analyzer.pipeline")

HEALTHY_SUCCESS_RATE = 90.0
HISTORY_PURGE_INTERVAL = timedelta(days=1)


class FetchError(Exception):
    """The job source failed or timed out; the cycle is abandoned."""


class JobSource(Protocol):
    def fetch_jobs(self, window: ComparisonWindow) -> Awaitable[List[JobSnapshot]]: ...


class VerificationSource(Protocol):
    def fetch_verification(
        self, jobs: List[JobSnapshot]
    ) -> Awaitable[Dict[str, VerificationData]]: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def dedupe_jobs(jobs: Iterable[JobSnapshot]) -> List[JobSnapshot]:
    """Keep one snapshot per id; a later record replaces an earlier one."""
    by_id: Dict[str, JobSnapshot] = {}
    duplicates = 0
    for job in jobs:
        if job.entity_id in by_id:
            duplicates += 1
            del by_id[job.entity_id]
        by_id[job.entity_id] = job
    if duplicates:
        logger.warning(f"Source returned {duplicates} duplicate job ids; later records kept")
    return list(by_id.values())


class Poller:
    """Owns the cache, rule engine and alert store for one job source."""

    def __init__(
        self,
        source: JobSource,
        cache: SnapshotCache,
        engine: RuleEngine,
        alerts: AlertStore,
        verifier: Optional[VerificationSource] = None,
        persistence: Optional[PersistenceGateway] = None,
        bus: Optional[EventBus] = None,
        scheduler: Optional[PollingScheduler] = None,
        interval_seconds: int = 30,
        fetch_timeout_seconds: float = 20.0,
        verification_timeout_seconds: float = 10.0,
        comparison_window_days: int = 1,
        source_timezone: str = "UTC",
        history_retention_days: int = 30,
        clock: Callable[[], datetime] = _now_utc,
    ):
        self.source = source
        self.cache = cache
        self.engine = engine
        self.alerts = alerts
        self.verifier = verifier
        self.persistence = persistence or PersistenceGateway(None)
        self.bus = bus or EventBus()
        self.scheduler = scheduler or PollingScheduler()
        self.interval_seconds = interval_seconds
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.verification_timeout_seconds = verification_timeout_seconds
        self.comparison_window_days = comparison_window_days
        self.tz = ZoneInfo(source_timezone)
        self.history_retention_days = history_retention_days
        self._last_history_purge: Optional[datetime] = None
        self._clock = clock

        self.is_running = False
        self._in_cycle = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._reset_counters()

    def _reset_counters(self) -> None:
        self.cycle_count = 0
        self.successful_cycles = 0
        self.failed_cycles = 0
        self.skipped_ticks = 0
        self.consecutive_failures = 0
        self.total_jobs_processed = 0
        self.total_alerts_created = 0
        self.total_duration_ms = 0.0
        self.last_cycle_at: Optional[datetime] = None
        self.last_cycle_duration_ms: Optional[float] = None
        self.last_error: Optional[str] = None
        self.last_error_at: Optional[datetime] = None

    # ── Window ──

    def window_for(self, now: datetime) -> ComparisonWindow:
        """Rolling window ending on ``now``'s calendar date in the source timezone."""
        return ComparisonWindow.ending_on(
            now.astimezone(self.tz).date(), self.comparison_window_days
        )

    # ── Lifecycle ──

    async def start(self, run_immediately: bool = True) -> None:
        if self.is_running:
            logger.info("Poller already running")
            return
        self.is_running = True
        self.scheduler.start(self.run_cycle, self.interval_seconds)
        logger.info(f"Poller started (interval {self.interval_seconds}s)")
        if run_immediately:
            await self.run_cycle()

    async def stop(self) -> None:
        """Stop scheduling and wait for an in-flight cycle to finish."""
        if self.is_running:
            self.scheduler.stop()
            self.is_running = False
        await self._idle.wait()
        logger.info("Poller stopped")

    # ── Cycle ──

    async def run_cycle(self) -> Optional[CycleReport]:
        """Execute one polling cycle; returns None when a cycle is already running."""
        if self._in_cycle:
            self.skipped_ticks += 1
            logger.warning("Previous cycle still running, skipping tick")
            return None

        self._in_cycle = True
        self._idle.clear()
        try:
            return await self._run_cycle()
        finally:
            self._in_cycle = False
            self._idle.set()

    async def _run_cycle(self) -> CycleReport:
        self.cycle_count += 1
        cycle = self.cycle_count
        started_at = self._clock()
        t0 = time.perf_counter()
        window = self.window_for(started_at)

        try:
            jobs = await self._fetch(window)
        except FetchError as e:
            return await self._fail_cycle(cycle, started_at, t0, e)

        jobs = dedupe_jobs(jobs)

        # ── Diff against the cache ──
        self.cache.evict_expired()
        previous_ids = self.cache.all_ids()
        previous = {eid: snap for eid in previous_ids if (snap := self.cache.peek(eid)) is not None}
        changes = diff(previous_ids, previous, jobs, window, detected_at=started_at)
        for job in jobs:
            self.cache.put(job.entity_id, job)
        for change in changes:
            if change.change_type == ChangeType.REMOVED:
                self.cache.discard(change.entity_id)

        # ── Rules & alerts ──
        verification = await self._verify(jobs)
        triggers = self.engine.evaluate(jobs, verification, now=started_at)
        new_alerts: List[Alert] = []
        still_triggering = set()
        deduplicated = 0
        for trigger in triggers:
            outcome = self.alerts.submit(trigger)
            alert = self.alerts.find(alert_fingerprint(trigger.rule_id, trigger.entity_id))
            if alert is not None:
                still_triggering.add(alert.fingerprint)
            if outcome == SubmitOutcome.CREATED and alert is not None:
                new_alerts.append(alert.model_copy())
            elif outcome == SubmitOutcome.DEDUPLICATED:
                deduplicated += 1
        self.alerts.purge_dedup()
        resolved = self.alerts.resolve_missing(still_triggering)

        duration_ms = (time.perf_counter() - t0) * 1000
        finished_at = self._clock()
        self._record_success(jobs, new_alerts, finished_at, duration_ms)

        report = CycleReport(
            cycle=cycle,
            success=True,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=round(duration_ms, 2),
            job_count=len(jobs),
            changes=changes,
            new_alerts=new_alerts,
            resolved_alerts=[a.model_copy() for a in resolved],
            deduplicated=deduplicated,
            active_alerts=len(self.alerts),
        )

        # ── Persist (not awaited) ──
        if changes:
            current = {job.entity_id: job for job in jobs}
            self.persistence.persist(
                PersistKind.JOB_HISTORY,
                {
                    "fetched_at": started_at,
                    "changes": changes,
                    "snapshots": {**previous, **current},
                },
            )
        self._purge_history(started_at)
        if report.new_alerts or report.resolved_alerts:
            self.persistence.persist(
                PersistKind.ALERT_DELTAS, report.new_alerts + report.resolved_alerts
            )
        self.persistence.persist(PersistKind.CYCLE_METRIC, self._metric(report))

        logger.info(
            f"Cycle {cycle}: {len(jobs)} jobs, {len(changes)} changes, "
            f"{len(new_alerts)} new / {len(resolved)} resolved alerts",
            extra={"cycle": cycle, "duration_ms": report.duration_ms},
        )

        # ── Emit: cycle → changes → new_alerts → resolved_alerts ──
        await self.bus.publish(Channel.CYCLE, report)
        if changes:
            await self.bus.publish(Channel.CHANGES, changes)
        if report.new_alerts:
            await self.bus.publish(Channel.NEW_ALERTS, report.new_alerts)
        if report.resolved_alerts:
            await self.bus.publish(Channel.RESOLVED_ALERTS, report.resolved_alerts)
        return report

    async def _fetch(self, window: ComparisonWindow) -> List[JobSnapshot]:
        try:
            return await asyncio.wait_for(
                self.source.fetch_jobs(window), timeout=self.fetch_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise FetchError(
                f"Job fetch timed out after {self.fetch_timeout_seconds}s"
            ) from e
        except Exception as e:
            raise FetchError(f"Job fetch failed: {e}") from e

    async def _verify(self, jobs: List[JobSnapshot]) -> Dict[str, VerificationData]:
        """Best-effort verification; any failure means every job is unverified."""
        if self.verifier is None or not jobs:
            return {}
        try:
            return await asyncio.wait_for(
                self.verifier.fetch_verification(jobs),
                timeout=self.verification_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Verification timed out after {self.verification_timeout_seconds}s"
            )
        except Exception as e:
            logger.warning(f"Verification unavailable: {e}")
        return {}

    def _purge_history(self, now: datetime) -> None:
        """Schedule deletion of change history past retention, at most once a day."""
        if self.history_retention_days <= 0:
            return
        if (
            self._last_history_purge is not None
            and now - self._last_history_purge < HISTORY_PURGE_INTERVAL
        ):
            return
        self._last_history_purge = now
        cutoff = now - timedelta(days=self.history_retention_days)
        self.persistence.persist(PersistKind.HISTORY_PURGE, cutoff)

    async def _fail_cycle(
        self, cycle: int, started_at: datetime, t0: float, error: FetchError
    ) -> CycleReport:
        duration_ms = (time.perf_counter() - t0) * 1000
        finished_at = self._clock()
        self.failed_cycles += 1
        self.consecutive_failures += 1
        self.total_duration_ms += duration_ms
        self.last_error = str(error)
        self.last_error_at = finished_at
        logger.error(
            f"Cycle {cycle} failed ({self.consecutive_failures} in a row): {error}",
            extra={"cycle": cycle, "duration_ms": round(duration_ms, 2)},
        )

        report = CycleReport(
            cycle=cycle,
            success=False,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=round(duration_ms, 2),
            active_alerts=len(self.alerts),
            error=str(error),
        )
        self.persistence.persist(PersistKind.CYCLE_METRIC, self._metric(report))
        await self.bus.publish(Channel.ERROR, error)
        return report

    def _record_success(
        self,
        jobs: List[JobSnapshot],
        new_alerts: List[Alert],
        finished_at: datetime,
        duration_ms: float,
    ) -> None:
        self.successful_cycles += 1
        self.consecutive_failures = 0
        self.total_jobs_processed += len(jobs)
        self.total_alerts_created += len(new_alerts)
        self.total_duration_ms += duration_ms
        self.last_cycle_at = finished_at
        self.last_cycle_duration_ms = round(duration_ms, 2)

    @staticmethod
    def _metric(report: CycleReport) -> dict:
        return {
            "component": "poller",
            "recorded_at": report.finished_at,
            "success": report.success,
            "duration_ms": report.duration_ms,
            "entity_count": report.job_count,
            "alert_count": len(report.new_alerts),
            "details": {
                "cycle": report.cycle,
                "changes": analyze_changes(report.changes).model_dump(),
                "critical_entities": sorted(
                    {c.entity_id for c in critical_changes(report.changes)}
                ),
                "resolved": len(report.resolved_alerts),
                "deduplicated": report.deduplicated,
                "active_alerts": report.active_alerts,
                "error": report.error,
            },
        }

    # ── Introspection ──

    def status(self) -> PollerStatus:
        completed = self.successful_cycles + self.failed_cycles
        return PollerStatus(
            is_running=self.is_running,
            cycle_in_progress=self._in_cycle,
            last_cycle_at=self.last_cycle_at,
            last_cycle_duration_ms=self.last_cycle_duration_ms,
            consecutive_failures=self.consecutive_failures,
            cycle_count=self.cycle_count,
            successful_cycles=self.successful_cycles,
            failed_cycles=self.failed_cycles,
            skipped_ticks=self.skipped_ticks,
            total_jobs_processed=self.total_jobs_processed,
            total_alerts_created=self.total_alerts_created,
            average_duration_ms=(
                round(self.total_duration_ms / completed, 2) if completed else 0.0
            ),
            last_error=self.last_error,
            last_error_at=self.last_error_at,
            interval_seconds=self.interval_seconds,
        )

    def health(self) -> PollerHealth:
        """Healthy when running, >90% of cycles succeed and the last success is recent."""
        completed = self.successful_cycles + self.failed_cycles
        success_rate = (self.successful_cycles / completed * 100) if completed else 0.0
        age = None
        if self.last_cycle_at is not None:
            age = (self._clock() - self.last_cycle_at).total_seconds()
        healthy = (
            self.is_running
            and success_rate > HEALTHY_SUCCESS_RATE
            and age is not None
            and age < self.interval_seconds * 2
        )
        return PollerHealth(
            status="healthy" if healthy else "unhealthy",
            is_running=self.is_running,
            success_rate=round(success_rate, 2),
            last_cycle_at=self.last_cycle_at,
            seconds_since_last_cycle=age,
            consecutive_failures=self.consecutive_failures,
            last_error=self.last_error,
        )

    def reset_stats(self) -> None:
        self._reset_counters()
        logger.info("Poller statistics reset")

    # ── Alert queries & user actions ──

    def get_active_alerts(
        self,
        severity: Optional[Severity] = None,
        acknowledged: Optional[bool] = None,
        dismissed: Optional[bool] = None,
        rule_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Alert]:
        return self.alerts.active_alerts(severity, acknowledged, dismissed, rule_id, limit)

    def acknowledge(self, alert_id: str, actor: str = "system") -> Alert:
        alert = self.alerts.acknowledge(alert_id, actor)
        self.persistence.persist(PersistKind.ALERT_DELTAS, [alert.model_copy()])
        return alert

    def dismiss(self, alert_id: str, actor: str = "system") -> Alert:
        alert = self.alerts.dismiss(alert_id, actor)
        self.persistence.persist(PersistKind.ALERT_DELTAS, [alert.model_copy()])
        return alert

    def bulk_acknowledge(self, alert_ids: Iterable[str], actor: str = "system") -> BulkActionResult:
        ids = list(alert_ids)
        result = self.alerts.bulk_acknowledge(ids, actor)
        self._persist_existing(ids)
        return result

    def bulk_dismiss(self, alert_ids: Iterable[str], actor: str = "system") -> BulkActionResult:
        ids = list(alert_ids)
        result = self.alerts.bulk_dismiss(ids, actor)
        self._persist_existing(ids)
        return result

    def _persist_existing(self, alert_ids: List[str]) -> None:
        active = self.alerts.active_fingerprints()
        touched = [self.alerts.get(i).model_copy() for i in dict.fromkeys(alert_ids) if i in active]
        if touched:
            self.persistence.persist(PersistKind.ALERT_DELTAS, touched)

    def history(self, limit: Optional[int] = None) -> List[Alert]:
        return self.alerts.history(limit)

    def statistics(self) -> dict:
        return {
            "alerts": self.alerts.statistics(),
            "dedup": self.alerts.dedup_stats(),
            "cache": self.cache.stats(),
            "rule_failures": self.engine.failures,
            "persistence": self.persistence.stats(),
        }
