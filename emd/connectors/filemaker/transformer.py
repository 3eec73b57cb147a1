"""EMD — FileMaker Record → JobSnapshot Transformer.

Maps Data API records onto the typed snapshot fields listed in the field
registry. Unparseable values become ``None``; the full ``fieldData`` is kept
in ``raw``.
"""

from datetime import date, datetime, time
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from emd.config import settings
from emd.core.field_registry import JOB_FIELDS
from emd.models.job_models import JobSnapshot, JobStatus
from emd.core.logging import get_logger

logger = get_logger("filemaker.transformer")

STATUS_MAP: Dict[str, JobStatus] = {
    "entered": JobStatus.OPEN,
    "completed": JobStatus.COMPLETED,
    "attempted": JobStatus.ATTEMPTED,
    "re-scheduled": JobStatus.RESCHEDULED,
    "rescheduled": JobStatus.RESCHEDULED,
    "canceled": JobStatus.CANCELED,
    "cancelled": JobStatus.CANCELED,
    "deleted": JobStatus.DELETED,
}

DATE_FORMATS = ("%m/%d/%Y", "%Y-%m-%d")
TIMESTAMP_FORMATS = ("%m/%d/%Y %H:%M:%S", "%m/%d/%Y %H:%M", "%Y-%m-%d %H:%M:%S")
TIME_FORMATS = ("%H:%M:%S", "%H:%M", "%I:%M:%S %p", "%I:%M %p")

# Coordinate field names seen across layouts, in lookup order
LATITUDE_FIELDS = ("job_latitude", "latitude", "job_lat", "lat")
LONGITUDE_FIELDS = ("job_longitude", "longitude", "job_lng", "lng")


def _safe_float(value: Any) -> Optional[float]:
    """Safely convert a value to float."""
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def map_status(value: Any) -> JobStatus:
    text = _text(value)
    if text is None:
        return JobStatus.UNKNOWN
    return STATUS_MAP.get(text.lower(), JobStatus.UNKNOWN)


def parse_date(value: Any) -> Optional[date]:
    text = _text(value)
    if text is None:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def parse_timestamp(value: Any, job_date: Optional[date], tz: ZoneInfo) -> Optional[datetime]:
    """Parse a FileMaker timestamp, or a bare time anchored on the job date."""
    text = _text(value)
    if text is None:
        return None
    for fmt in TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=tz)
        except ValueError:
            continue
    if job_date is None:
        return None
    for fmt in TIME_FORMATS:
        try:
            t: time = datetime.strptime(text, fmt).time()
            return datetime.combine(job_date, t, tzinfo=tz)
        except ValueError:
            continue
    return None


def _first_float(field_data: Dict[str, Any], names) -> Optional[float]:
    for name in names:
        value = _safe_float(field_data.get(name))
        if value is not None:
            return value
    return None


def transform_record(
    record: Dict[str, Any], tz: ZoneInfo | None = None
) -> Optional[JobSnapshot]:
    """Convert one Data API record; returns None when it carries no identifier."""
    tz = tz or ZoneInfo(settings.source_timezone)
    field_data: Dict[str, Any] = record.get("fieldData") or {}

    entity_id = _text(field_data.get("_kp_job_id")) or _text(record.get("recordId"))
    if entity_id is None:
        logger.warning("Skipping FileMaker record without job id or record id")
        return None

    src = {name: f.source_field for name, f in JOB_FIELDS.items()}
    logical_date = parse_date(field_data.get(src["logical_date"]))

    return JobSnapshot(
        entity_id=entity_id,
        record_id=str(record.get("recordId", "")),
        logical_date=logical_date,
        status=map_status(field_data.get(src["status"])),
        driver_status=_text(field_data.get(src["driver_status"])),
        job_type=_text(field_data.get(src["job_type"])),
        truck_id=_text(field_data.get(src["truck_id"])),
        driver_id=_text(field_data.get(src["driver_id"])),
        route_id=_text(field_data.get(src["route_id"])),
        arrived_at=parse_timestamp(field_data.get(src["arrived_at"]), logical_date, tz),
        completed_at=parse_timestamp(
            field_data.get(src["completed_at"]), logical_date, tz
        ),
        latitude=_first_float(field_data, LATITUDE_FIELDS),
        longitude=_first_float(field_data, LONGITUDE_FIELDS),
        raw=dict(field_data),
    )


def transform_records(
    records: List[Dict[str, Any]], tz: ZoneInfo | None = None
) -> List[JobSnapshot]:
    """Transform a page of records, skipping those without an id."""
    tz = tz or ZoneInfo(settings.source_timezone)
    snapshots = [s for s in (transform_record(r, tz) for r in records) if s is not None]
    logger.info(f"Transformed {len(snapshots)}/{len(records)} FileMaker records")
    return snapshots
