"""EMD — Job Snapshot Models.

A snapshot is one FileMaker job record at one fetch. Rule-relevant fields are
typed; everything else stays in the opaque ``raw`` map.
"""

from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import Column, JSON
from sqlmodel import SQLModel, Field, UniqueConstraint


class JobStatus(str, Enum):
    """Normalized dispatch status."""

    OPEN = "open"  # FileMaker "Entered"
    COMPLETED = "completed"
    ATTEMPTED = "attempted"
    RESCHEDULED = "rescheduled"
    CANCELED = "canceled"
    DELETED = "deleted"
    UNKNOWN = "unknown"


class JobSnapshot(BaseModel):
    """Immutable captured state of a job."""

    model_config = ConfigDict(frozen=True)

    entity_id: str
    record_id: str = ""
    logical_date: Optional[date] = None
    status: JobStatus = JobStatus.UNKNOWN
    driver_status: Optional[str] = None
    job_type: Optional[str] = None
    truck_id: Optional[str] = None
    driver_id: Optional[str] = None
    route_id: Optional[str] = None
    arrived_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    raw: Dict[str, Any] = {}


class ComparisonWindow(BaseModel):
    """Inclusive range of logical dates a fetch is meant to cover."""

    model_config = ConfigDict(frozen=True)

    start: date
    end: date

    @classmethod
    def ending_on(cls, today: date, days: int = 1) -> "ComparisonWindow":
        """Rolling window of ``days`` calendar days ending on ``today``."""
        return cls(start=today - timedelta(days=days - 1), end=today)

    def contains(self, logical_date: Optional[date]) -> bool:
        # Unknown dates are never considered in scope.
        if logical_date is None:
            return False
        return self.start <= logical_date <= self.end

    def __call__(self, logical_date: Optional[date]) -> bool:
        return self.contains(logical_date)


class VerificationStatus(str, Enum):
    VERIFIED = "verified"
    OFF_SCHEDULE = "off_schedule"
    IDLE = "idle"
    UNKNOWN = "unknown"


class VerificationData(BaseModel):
    """GPS verification of a job's truck against the scheduled location."""

    model_config = ConfigDict(frozen=True)

    entity_id: str
    truck_id: Optional[str] = None
    status: VerificationStatus = VerificationStatus.UNKNOWN
    distance_miles: Optional[float] = None
    has_tracking: bool = False


# ─────────────────────────────────────────────
# DATABASE MODEL — Per-job change history
# ─────────────────────────────────────────────


class JobSnapshotRecord(SQLModel, table=True):
    """A job snapshot at the cycle it was added, modified or removed."""

    __tablename__ = "job_snapshots"
    __table_args__ = (
        UniqueConstraint("entity_id", "fetched_at", name="uq_job_snapshot"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    entity_id: str = Field(index=True)
    record_id: str = Field(default="")
    fetched_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), index=True
    )
    change_type: str = Field(index=True, description="added / modified / removed")
    changed_fields: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    job_date: Optional[date] = Field(default=None, index=True)
    job_status: str = Field(default="")
    job_type: str = Field(default="")
    truck_id: Optional[str] = Field(default=None, index=True)
    driver_id: Optional[str] = Field(default=None)
    payload_json: str = Field(description="Full raw field data as JSON")
