"""EMD — Job History API Routes."""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session, select

from emd.database import get_session
from emd.models.cycle_models import ChangeType
from emd.models.job_models import JobSnapshotRecord

router = APIRouter(prefix="/jobs", tags=["Jobs"])


@router.get("/{entity_id}/history")
async def job_history(
    entity_id: str,
    change_type: Optional[ChangeType] = None,
    limit: int = Query(default=50, ge=1, le=500),
    session: Session = Depends(get_session),
):
    """Persisted changes of one job, most recent first."""
    query = (
        select(JobSnapshotRecord)
        .where(JobSnapshotRecord.entity_id == entity_id)
        .order_by(JobSnapshotRecord.fetched_at.desc())
        .limit(limit)
    )
    if change_type is not None:
        query = query.where(JobSnapshotRecord.change_type == change_type.value)
    records: List[JobSnapshotRecord] = session.exec(query).all()
    return {
        "entity_id": entity_id,
        "count": len(records),
        "changes": [r.model_dump(exclude={"payload_json"}) for r in records],
    }
