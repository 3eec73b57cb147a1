"""EMD — Alert Store.

Holds active alerts in priority order, suppresses re-triggers inside the
deduplication window, and tracks the lifecycle:

    active → {acknowledged, dismissed} (orthogonal flags) → resolved → history

Resolved is terminal; a later trigger of the same (rule, job) pairing starts
a fresh active alert with the same fingerprint.
"""

from collections import Counter, deque
from datetime import datetime, timedelta, timezone
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple

from emd.core.hashing import alert_fingerprint
from emd.models.alert_models import (
    Alert,
    BulkActionResult,
    Severity,
    SubmitOutcome,
    TriggerResult,
)
from emd.core.logging import get_logger

logger = get_logger("analyzer.alerts")


class AlertNotFoundError(KeyError):
    """Raised when acting on an alert id that is not active."""

    def __init__(self, alert_id: str):
        self.alert_id = alert_id
        super().__init__(alert_id)

    def __str__(self) -> str:
        return f"Alert not found: {self.alert_id}"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def priority_key(alert: Alert) -> Tuple[int, datetime, str]:
    """Severity desc, then oldest first, then fingerprint: a strict total order."""
    return (-alert.severity.rank, alert.created_at, alert.fingerprint)


class AlertStore:
    """In-memory alert state for a single poller."""

    def __init__(
        self,
        dedup_window_seconds: float = 300,
        history_limit: int = 1000,
        clock: Callable[[], datetime] = _now_utc,
    ):
        self.dedup_window = timedelta(seconds=dedup_window_seconds)
        self._clock = clock
        self._active: Dict[str, Alert] = {}
        self._dedup: Dict[str, datetime] = {}
        self._history: Deque[Alert] = deque(maxlen=history_limit)
        self.suppressed = 0

    # ── Deduplication ──

    def _is_duplicate(self, fingerprint: str, now: datetime) -> bool:
        last_emitted = self._dedup.get(fingerprint)
        if last_emitted is None:
            return False
        if now - last_emitted < self.dedup_window:
            return True
        del self._dedup[fingerprint]
        return False

    def purge_dedup(self) -> int:
        """Drop dedup entries older than the window."""
        now = self._clock()
        stale = [fp for fp, ts in self._dedup.items() if now - ts >= self.dedup_window]
        for fp in stale:
            del self._dedup[fp]
        return len(stale)

    # ── Submission & Resolution ──

    def submit(self, trigger: TriggerResult) -> SubmitOutcome:
        """Record a trigger; returns whether it was emitted as a new alert."""
        now = self._clock()
        fingerprint = alert_fingerprint(trigger.rule_id, trigger.entity_id)

        if self._is_duplicate(fingerprint, now):
            self.suppressed += 1
            existing = self._active.get(fingerprint)
            if existing is not None:
                existing.last_triggered_at = now
            return SubmitOutcome.DEDUPLICATED

        existing = self._active.get(fingerprint)
        if existing is not None:
            # Still active past the window: refresh, keep creation time and user flags.
            existing.severity = trigger.severity
            existing.message = trigger.message
            existing.rule_name = trigger.rule_name
            existing.last_triggered_at = now
        else:
            self._active[fingerprint] = Alert(
                fingerprint=fingerprint,
                rule_id=trigger.rule_id,
                rule_name=trigger.rule_name,
                severity=trigger.severity,
                message=trigger.message,
                entity_id=trigger.entity_id,
                created_at=now,
                last_triggered_at=now,
            )
            logger.info(
                f"New {trigger.severity.value} alert: {trigger.message}",
                extra={
                    "rule_id": trigger.rule_id,
                    "entity_id": trigger.entity_id,
                    "fingerprint": fingerprint,
                },
            )

        self._dedup[fingerprint] = now
        return SubmitOutcome.CREATED

    def resolve_missing(self, still_triggering: Iterable[str]) -> List[Alert]:
        """Resolve every active alert whose fingerprint did not trigger."""
        keep = set(still_triggering)
        now = self._clock()
        resolved: List[Alert] = []
        for fingerprint in [fp for fp in self._active if fp not in keep]:
            alert = self._active.pop(fingerprint)
            alert.resolved = True
            alert.resolved_at = now
            self._history.append(alert)
            resolved.append(alert)
        if resolved:
            logger.info(f"Resolved {len(resolved)} alerts")
        return sorted(resolved, key=priority_key)

    # ── User Actions ──

    def find(self, fingerprint: str) -> Optional[Alert]:
        return self._active.get(fingerprint)

    def get(self, alert_id: str) -> Alert:
        alert = self._active.get(alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        return alert

    def acknowledge(self, alert_id: str, actor: str = "system") -> Alert:
        """Acknowledge an active alert; repeating it is a no-op."""
        alert = self.get(alert_id)
        if not alert.acknowledged:
            alert.acknowledged = True
            alert.acknowledged_at = self._clock()
            alert.acknowledged_by = actor
            logger.info(
                f"Alert {alert_id} acknowledged by {actor}",
                extra={"fingerprint": alert_id},
            )
        return alert

    def dismiss(self, alert_id: str, actor: str = "system") -> Alert:
        """Dismiss an active alert; it stays active until the rule clears."""
        alert = self.get(alert_id)
        if not alert.dismissed:
            alert.dismissed = True
            alert.dismissed_at = self._clock()
            alert.dismissed_by = actor
            logger.info(
                f"Alert {alert_id} dismissed by {actor}",
                extra={"fingerprint": alert_id},
            )
        return alert

    def _bulk(self, action, alert_ids: Iterable[str], actor: str) -> BulkActionResult:
        result = BulkActionResult()
        for alert_id in alert_ids:
            try:
                action(alert_id, actor)
                result.succeeded += 1
            except AlertNotFoundError:
                result.failed += 1
                result.not_found.append(alert_id)
        return result

    def bulk_acknowledge(
        self, alert_ids: Iterable[str], actor: str = "system"
    ) -> BulkActionResult:
        return self._bulk(self.acknowledge, alert_ids, actor)

    def bulk_dismiss(
        self, alert_ids: Iterable[str], actor: str = "system"
    ) -> BulkActionResult:
        return self._bulk(self.dismiss, alert_ids, actor)

    # ── Queries ──

    def active_alerts(
        self,
        severity: Optional[Severity] = None,
        acknowledged: Optional[bool] = None,
        dismissed: Optional[bool] = None,
        rule_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Alert]:
        """Active alerts in priority order, optionally filtered."""
        alerts = sorted(self._active.values(), key=priority_key)
        if severity is not None:
            alerts = [a for a in alerts if a.severity == severity]
        if acknowledged is not None:
            alerts = [a for a in alerts if a.acknowledged == acknowledged]
        if dismissed is not None:
            alerts = [a for a in alerts if a.dismissed == dismissed]
        if rule_id is not None:
            alerts = [a for a in alerts if a.rule_id == rule_id]
        if limit is not None:
            alerts = alerts[:limit]
        return alerts

    def highest_priority(self) -> Optional[Alert]:
        if not self._active:
            return None
        return min(self._active.values(), key=priority_key)

    def history(self, limit: Optional[int] = None) -> List[Alert]:
        """Resolved alerts, oldest first."""
        entries = list(self._history)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def active_fingerprints(self) -> set[str]:
        return set(self._active.keys())

    def statistics(self) -> dict:
        by_severity = {s.value: 0 for s in Severity}
        by_rule: Counter = Counter()
        acknowledged = dismissed = 0
        for alert in self._active.values():
            by_severity[alert.severity.value] += 1
            by_rule[alert.rule_id] += 1
            acknowledged += alert.acknowledged
            dismissed += alert.dismissed
        return {
            "total": len(self._active),
            "acknowledged": acknowledged,
            "unacknowledged": len(self._active) - acknowledged,
            "dismissed": dismissed,
            "by_severity": by_severity,
            "by_rule": dict(sorted(by_rule.items())),
            "dedup_cache_size": len(self._dedup),
            "suppressed": self.suppressed,
            "history_size": len(self._history),
        }

    def dedup_stats(self) -> dict:
        now = self._clock()
        return {
            "cache_size": len(self._dedup),
            "window_seconds": self.dedup_window.total_seconds(),
            "entries": [
                {
                    "fingerprint": fp,
                    "last_emitted_at": ts,
                    "age_seconds": (now - ts).total_seconds(),
                }
                for fp, ts in sorted(self._dedup.items())
            ],
        }

    def clear(self) -> None:
        self._active.clear()
        self._dedup.clear()
        self._history.clear()
        self.suppressed = 0

    def __len__(self) -> int:
        return len(self._active)
