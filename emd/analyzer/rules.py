"""EMD — Alert Rules.

Each rule is a pure, total predicate over a job snapshot and the evaluation
context. Missing optional data is a valid input and does not trigger.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, FrozenSet, List, Mapping, Optional

from emd.models.alert_models import Severity
from emd.models.job_models import (
    JobSnapshot,
    JobStatus,
    VerificationData,
    VerificationStatus,
)

# Defaults (configurable)
LONG_IN_PROGRESS_HOURS = 4.0
PROXIMITY_THRESHOLD_MILES = 2.0


@dataclass(frozen=True)
class RuleContext:
    """Evaluation inputs shared by every rule in a cycle."""

    now: datetime
    verification: Mapping[str, VerificationData] = field(default_factory=dict)

    def verification_for(self, job: JobSnapshot) -> Optional[VerificationData]:
        return self.verification.get(job.entity_id)


Predicate = Callable[[JobSnapshot, RuleContext], bool]
MessageBuilder = Callable[[JobSnapshot, RuleContext], str]


@dataclass(frozen=True)
class Rule:
    """A named predicate plus the tracked fields it reads."""

    id: str
    name: str
    severity: Severity
    reads: FrozenSet[str]
    predicate: Predicate
    message: MessageBuilder


def _rule(id, name, severity, reads, predicate, message) -> Rule:
    return Rule(id, name, severity, frozenset(reads), predicate, message)


def _status_label(job: JobSnapshot) -> str:
    return job.raw.get("job_status") or job.status.value


# ── Dispatch rules ──


def arrival_without_completion() -> Rule:
    return _rule(
        "arrival-without-completion",
        "Arrival Without Completion",
        Severity.HIGH,
        {"arrived_at", "completed_at", "status"},
        lambda job, ctx: job.arrived_at is not None
        and job.completed_at is None
        and job.status != JobStatus.COMPLETED,
        lambda job, ctx: f"Job {job.entity_id} has arrival time but no completion time "
        f"(Status: {_status_label(job)})",
    )


def missing_assignment() -> Rule:
    return _rule(
        "missing-assignment",
        "Missing Truck Assignment",
        Severity.HIGH,
        {"status", "truck_id"},
        lambda job, ctx: job.status == JobStatus.OPEN and not job.truck_id,
        lambda job, ctx: f"Job {job.entity_id} is open but has no truck assigned",
    )


def truck_without_driver() -> Rule:
    return _rule(
        "truck-without-driver",
        "Truck Without Driver",
        Severity.MEDIUM,
        {"status", "truck_id", "driver_id"},
        lambda job, ctx: job.status == JobStatus.OPEN
        and bool(job.truck_id)
        and not job.driver_id,
        lambda job, ctx: f"Job {job.entity_id} has truck {job.truck_id} but no driver assigned",
    )


def long_in_progress(hours: float = LONG_IN_PROGRESS_HOURS) -> Rule:
    limit = timedelta(hours=hours)

    def predicate(job: JobSnapshot, ctx: RuleContext) -> bool:
        if job.arrived_at is None or job.completed_at is not None:
            return False
        return ctx.now - job.arrived_at > limit

    return _rule(
        "long-in-progress",
        "Job In Progress Too Long",
        Severity.MEDIUM,
        {"arrived_at", "completed_at"},
        predicate,
        lambda job, ctx: f"Job {job.entity_id} has been in progress for over {hours:g} hours "
        f"(arrived at {job.arrived_at.strftime('%H:%M:%S')})",
    )


def attempted_status() -> Rule:
    return _rule(
        "attempted-status",
        "Job Attempted But Not Completed",
        Severity.HIGH,
        {"status", "driver_status"},
        lambda job, ctx: job.status == JobStatus.ATTEMPTED
        or (job.driver_status or "").lower() == "attempted",
        lambda job, ctx: f"Job {job.entity_id} was attempted but not completed - requires follow-up",
    )


def rescheduled_status() -> Rule:
    return _rule(
        "rescheduled-status",
        "Job Rescheduled",
        Severity.MEDIUM,
        {"status"},
        lambda job, ctx: job.status == JobStatus.RESCHEDULED,
        lambda job, ctx: f"Job {job.entity_id} has been rescheduled - verify new schedule",
    )


# ── GPS verification rules ──


def _verification_is(job, ctx, status: VerificationStatus) -> bool:
    v = ctx.verification_for(job)
    return v is not None and v.status == status


def gps_location_mismatch() -> Rule:
    def message(job: JobSnapshot, ctx: RuleContext) -> str:
        v = ctx.verification_for(job)
        return (
            f"Job {job.entity_id}: Truck {v.truck_id} is "
            f"{v.distance_miles or 0:.1f} miles from scheduled location"
        )

    return _rule(
        "gps-location-mismatch",
        "GPS Location Mismatch",
        Severity.HIGH,
        {"truck_id", "latitude", "longitude"},
        lambda job, ctx: _verification_is(job, ctx, VerificationStatus.OFF_SCHEDULE),
        message,
    )


def gps_no_tracking() -> Rule:
    return _rule(
        "gps-no-tracking",
        "No GPS Tracking Available",
        Severity.MEDIUM,
        {"truck_id"},
        lambda job, ctx: _verification_is(job, ctx, VerificationStatus.UNKNOWN)
        and not ctx.verification_for(job).has_tracking,
        lambda job, ctx: f"Job {job.entity_id}: No GPS tracking available for truck {job.truck_id}",
    )


def gps_data_unavailable() -> Rule:
    return _rule(
        "gps-data-unavailable",
        "GPS Data Unavailable",
        Severity.MEDIUM,
        {"truck_id"},
        lambda job, ctx: _verification_is(job, ctx, VerificationStatus.UNKNOWN)
        and ctx.verification_for(job).has_tracking,
        lambda job, ctx: f"Job {job.entity_id}: GPS data unavailable for truck {job.truck_id}",
    )


def gps_proximity(threshold_miles: float = PROXIMITY_THRESHOLD_MILES) -> Rule:
    def predicate(job: JobSnapshot, ctx: RuleContext) -> bool:
        v = ctx.verification_for(job)
        if v is None or v.status != VerificationStatus.VERIFIED:
            return False
        distance = v.distance_miles or 0
        return 0 < distance <= threshold_miles

    def message(job: JobSnapshot, ctx: RuleContext) -> str:
        v = ctx.verification_for(job)
        return (
            f"Job {job.entity_id}: Truck {v.truck_id} is "
            f"{v.distance_miles:.1f} miles from destination"
        )

    return _rule(
        "gps-proximity",
        "Truck Approaching Destination",
        Severity.LOW,
        {"truck_id", "latitude", "longitude"},
        predicate,
        message,
    )


def default_rules(
    long_in_progress_hours: float = LONG_IN_PROGRESS_HOURS,
    proximity_threshold_miles: float = PROXIMITY_THRESHOLD_MILES,
) -> List[Rule]:
    """The built-in dispatch and GPS rule set."""
    return [
        arrival_without_completion(),
        missing_assignment(),
        truck_without_driver(),
        long_in_progress(long_in_progress_hours),
        attempted_status(),
        rescheduled_status(),
        gps_location_mismatch(),
        gps_no_tracking(),
        gps_data_unavailable(),
        gps_proximity(proximity_threshold_miles),
    ]
