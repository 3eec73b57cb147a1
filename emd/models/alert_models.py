"""EMD — Alert Models."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, computed_field
from sqlmodel import SQLModel, Field, UniqueConstraint


class Severity(str, Enum):
    """Alert severity levels."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]


SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class TriggerResult(BaseModel):
    """A rule that fired for one job in one cycle."""

    model_config = ConfigDict(frozen=True)

    rule_id: str
    rule_name: str = ""
    severity: Severity
    message: str
    entity_id: str


class Alert(BaseModel):
    """An alert for a (rule, job) pairing.

    ``fingerprint`` doubles as the alert id.
    """

    fingerprint: str
    rule_id: str
    rule_name: str = ""
    severity: Severity
    message: str
    entity_id: str
    created_at: datetime
    last_triggered_at: datetime

    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None

    dismissed: bool = False
    dismissed_at: Optional[datetime] = None
    dismissed_by: Optional[str] = None

    resolved: bool = False
    resolved_at: Optional[datetime] = None

    @computed_field
    @property
    def id(self) -> str:
        return self.fingerprint


class SubmitOutcome(str, Enum):
    CREATED = "created"
    DEDUPLICATED = "deduplicated"


class BulkActionResult(BaseModel):
    """Per-id outcome counts of a bulk acknowledge / dismiss."""

    succeeded: int = 0
    failed: int = 0
    not_found: List[str] = []


# ─────────────────────────────────────────────
# DATABASE MODEL — Alert history with lifecycle timestamps
# ─────────────────────────────────────────────


class AlertRecord(SQLModel, table=True):
    """Persisted alert, keyed by fingerprint + created_at."""

    __tablename__ = "alert_history"
    __table_args__ = (
        UniqueConstraint("fingerprint", "created_at", name="uq_alert_history"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    fingerprint: str = Field(index=True)
    created_at: datetime = Field(index=True)
    rule_id: str = Field(index=True)
    rule_name: str = Field(default="")
    severity: str = Field(index=True)
    message: str = Field(default="")
    entity_id: str = Field(index=True)
    acknowledged: bool = Field(default=False)
    acknowledged_at: Optional[datetime] = Field(default=None)
    acknowledged_by: Optional[str] = Field(default=None)
    dismissed: bool = Field(default=False)
    dismissed_at: Optional[datetime] = Field(default=None)
    dismissed_by: Optional[str] = Field(default=None)
    resolved: bool = Field(default=False)
    resolved_at: Optional[datetime] = Field(default=None)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
