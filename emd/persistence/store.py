"""EMD — SQL Persistence Store.

Writes the durable mirror: per-job change history, upserted alert history
rows, and component metrics. Synchronous; the gateway runs it off the loop.
Writes are serialized so two upserts of the same alert never race.
"""

import json
import threading
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List

from sqlalchemy import delete
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from emd.models.alert_models import Alert, AlertRecord
from emd.models.cycle_models import ChangeRecord, SystemMetricRecord
from emd.models.job_models import JobSnapshot, JobSnapshotRecord
from emd.core.logging import get_logger

logger = get_logger("persistence.store")


class PersistKind(str, Enum):
    JOB_HISTORY = "job_history"
    HISTORY_PURGE = "history_purge"
    ALERT_DELTAS = "alert_deltas"
    CYCLE_METRIC = "cycle_metric"


class SQLModelStore:
    """Maps persistence kinds onto SQLModel tables."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._lock = threading.Lock()

    def write(self, kind: PersistKind, payload: Any) -> int:
        """Persist one payload; returns the number of rows written or deleted."""
        kind = PersistKind(kind)
        with self._lock, Session(self.engine) as session:
            if kind == PersistKind.JOB_HISTORY:
                count = self._write_history(session, payload)
            elif kind == PersistKind.HISTORY_PURGE:
                count = self._purge_history(session, payload)
            elif kind == PersistKind.ALERT_DELTAS:
                count = self._write_alerts(session, payload)
            else:
                count = self._write_metric(session, payload)
            session.commit()
        return count

    # ── Job change history ──

    def _write_history(self, session: Session, payload: Dict[str, Any]) -> int:
        """One row per changed job, carrying the change type and changed fields.

        ``payload`` holds ``fetched_at``, the cycle's ``changes`` and the
        ``snapshots`` by entity id (the last cached one for removed jobs).
        """
        fetched_at: datetime = payload["fetched_at"]
        changes: List[ChangeRecord] = payload["changes"]
        snapshots: Dict[str, JobSnapshot] = payload["snapshots"]
        count = 0
        for change in changes:
            snap = snapshots.get(change.entity_id)
            if snap is None:
                continue
            session.add(
                JobSnapshotRecord(
                    entity_id=snap.entity_id,
                    record_id=snap.record_id,
                    fetched_at=fetched_at,
                    change_type=change.change_type.value,
                    changed_fields=[fd.field for fd in change.field_diffs],
                    job_date=snap.logical_date,
                    job_status=snap.status.value,
                    job_type=snap.job_type or "",
                    truck_id=snap.truck_id,
                    driver_id=snap.driver_id,
                    payload_json=json.dumps(snap.raw, default=str),
                )
            )
            count += 1
        return count

    def _purge_history(self, session: Session, cutoff: datetime) -> int:
        result = session.exec(
            delete(JobSnapshotRecord).where(JobSnapshotRecord.fetched_at < cutoff)
        )
        if result.rowcount:
            logger.info(f"Purged {result.rowcount} job history rows older than {cutoff}")
        return result.rowcount or 0

    # ── Alerts ──

    def _write_alerts(self, session: Session, alerts: Iterable[Alert]) -> int:
        count = 0
        for alert in alerts:
            record = session.exec(
                select(AlertRecord).where(
                    AlertRecord.fingerprint == alert.fingerprint,
                    AlertRecord.created_at == alert.created_at,
                )
            ).first()
            if record is None:
                record = AlertRecord(
                    fingerprint=alert.fingerprint,
                    created_at=alert.created_at,
                    rule_id=alert.rule_id,
                    severity=alert.severity.value,
                    entity_id=alert.entity_id,
                )
            record.rule_name = alert.rule_name
            record.severity = alert.severity.value
            record.message = alert.message
            record.acknowledged = alert.acknowledged
            record.acknowledged_at = alert.acknowledged_at
            record.acknowledged_by = alert.acknowledged_by
            record.dismissed = alert.dismissed
            record.dismissed_at = alert.dismissed_at
            record.dismissed_by = alert.dismissed_by
            record.resolved = alert.resolved
            record.resolved_at = alert.resolved_at
            record.updated_at = alert.resolved_at or alert.last_triggered_at
            session.add(record)
            count += 1
        return count

    # ── Metrics ──

    def _write_metric(self, session: Session, payload: Dict[str, Any]) -> int:
        session.add(SystemMetricRecord(**payload))
        return 1
