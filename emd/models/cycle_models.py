"""EMD — Change & Polling Cycle Models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import Column, JSON
from sqlmodel import SQLModel, Field, UniqueConstraint

from emd.models.alert_models import Alert


class ChangeType(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


class FieldDiff(BaseModel):
    """Old / new value pair for one tracked field."""

    field: str
    category: str
    old_value: Any = None
    new_value: Any = None
    critical: bool = True


class ChangeRecord(BaseModel):
    """A classified change of one job between two cycles."""

    entity_id: str
    change_type: ChangeType
    field_diffs: List[FieldDiff] = []
    detected_at: datetime


class ChangeAnalysis(BaseModel):
    """Aggregate view of a cycle's changes."""

    added: int = 0
    modified: int = 0
    removed: int = 0
    critical_changes: int = 0
    status_changes: int = 0
    assignment_changes: int = 0
    time_changes: int = 0
    most_changed_fields: Dict[str, int] = {}


class CycleReport(BaseModel):
    """Outcome of a single polling cycle."""

    cycle: int
    success: bool
    started_at: datetime
    finished_at: datetime
    duration_ms: float
    job_count: int = 0
    changes: List[ChangeRecord] = []
    new_alerts: List[Alert] = []
    resolved_alerts: List[Alert] = []
    deduplicated: int = 0
    active_alerts: int = 0
    error: Optional[str] = None


class PollerStatus(BaseModel):
    """Introspection surface of the poller."""

    is_running: bool = False
    cycle_in_progress: bool = False
    last_cycle_at: Optional[datetime] = None
    last_cycle_duration_ms: Optional[float] = None
    consecutive_failures: int = 0
    cycle_count: int = 0
    successful_cycles: int = 0
    failed_cycles: int = 0
    skipped_ticks: int = 0
    total_jobs_processed: int = 0
    total_alerts_created: int = 0
    average_duration_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    interval_seconds: int = 0


class PollerHealth(BaseModel):
    status: str  # "healthy" | "unhealthy"
    is_running: bool
    success_rate: float
    last_cycle_at: Optional[datetime] = None
    seconds_since_last_cycle: Optional[float] = None
    consecutive_failures: int = 0
    last_error: Optional[str] = None


# ─────────────────────────────────────────────
# DATABASE MODEL — Component metrics
# ─────────────────────────────────────────────


class SystemMetricRecord(SQLModel, table=True):
    """One metric sample, keyed by (component, recorded_at)."""

    __tablename__ = "system_metrics"
    __table_args__ = (
        UniqueConstraint("component", "recorded_at", name="uq_system_metric"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    component: str = Field(index=True, description="e.g. poller")
    recorded_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), index=True
    )
    success: bool = Field(default=True)
    duration_ms: float = Field(default=0.0)
    entity_count: int = Field(default=0)
    alert_count: int = Field(default=0)
    details: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
