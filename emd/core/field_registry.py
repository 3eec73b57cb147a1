"""EMD — Tracked Job Field Registry.

Defines the canonical set of typed job fields and their classifications.
Rules declare which of these fields they read, and the change detector only
diffs these fields so volatile raw-payload values never show up as changes.
"""

from enum import Enum
from typing import Dict


class FieldCategory(str, Enum):
    """How a tracked field is categorised."""

    STATUS = "status"  # job_status, job_status_driver
    ASSIGNMENT = "assignment"  # truck, driver, route
    TIMING = "timing"  # arrival / completion timestamps
    SCHEDULE = "schedule"  # job date, job type
    LOCATION = "location"  # scheduled coordinates


class FieldDefinition:
    """Describes a single tracked field of a job snapshot."""

    def __init__(
        self,
        name: str,
        category: FieldCategory,
        source_field: str = "",
        critical: bool = True,
        description: str = "",
    ):
        self.name = name
        self.category = category
        self.source_field = source_field
        self.critical = critical
        self.description = description

    def __repr__(self) -> str:
        return f"<Field {self.name} ({self.category.value})>"


# ─────────────────────────────────────────────
# JOB FIELDS — Canonical Registry
# ─────────────────────────────────────────────

JOB_FIELDS: Dict[str, FieldDefinition] = {
    # Status
    "status": FieldDefinition(
        "status", FieldCategory.STATUS, "job_status", description="Dispatch status"
    ),
    "driver_status": FieldDefinition(
        "driver_status",
        FieldCategory.STATUS,
        "job_status_driver",
        description="Status reported by the driver",
    ),
    # Assignment
    "truck_id": FieldDefinition(
        "truck_id", FieldCategory.ASSIGNMENT, "_kf_trucks_id", description="Truck"
    ),
    "driver_id": FieldDefinition(
        "driver_id", FieldCategory.ASSIGNMENT, "_kf_driver_id", description="Driver"
    ),
    "route_id": FieldDefinition(
        "route_id", FieldCategory.ASSIGNMENT, "_kf_route_id", description="Route"
    ),
    # Timing
    "arrived_at": FieldDefinition(
        "arrived_at",
        FieldCategory.TIMING,
        "time_arival",
        description="Arrival on site",
    ),
    "completed_at": FieldDefinition(
        "completed_at",
        FieldCategory.TIMING,
        "time_complete",
        description="Work completed",
    ),
    # Schedule
    "logical_date": FieldDefinition(
        "logical_date", FieldCategory.SCHEDULE, "job_date", description="Job date"
    ),
    "job_type": FieldDefinition(
        "job_type", FieldCategory.SCHEDULE, "job_type", description="Job type"
    ),
    # Location
    "latitude": FieldDefinition(
        "latitude",
        FieldCategory.LOCATION,
        "latitude",
        critical=False,
        description="Scheduled latitude",
    ),
    "longitude": FieldDefinition(
        "longitude",
        FieldCategory.LOCATION,
        "longitude",
        critical=False,
        description="Scheduled longitude",
    ),
}


# ─────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────


def unknown_fields(names) -> set[str]:
    """Return the names that are not registered."""
    return {n for n in names if n not in JOB_FIELDS}
