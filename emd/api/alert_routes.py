"""EMD — Alert API Routes."""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlmodel import Session, select

from emd.analyzer.alert_store import AlertNotFoundError
from emd.analyzer.pipeline import Poller
from emd.api.dependencies import get_poller
from emd.database import get_session
from emd.models.alert_models import Alert, AlertRecord, BulkActionResult, Severity
from emd.core.logging import get_logger

logger = get_logger("api.alerts")

router = APIRouter(prefix="/alerts", tags=["Alerts"])


# ── Request / Response Models ──


class AlertActionRequest(BaseModel):
    """Optional body for acknowledge / dismiss."""

    actor: str = "system"
    """Who performed the action (user name or service)."""


class BulkActionRequest(BaseModel):
    """Request body for the bulk endpoints."""

    alert_ids: List[str] = Field(min_length=1)
    actor: str = "system"

    model_config = {
        "json_schema_extra": {
            "examples": [{"alert_ids": ["3f1c0a9d2b7e4c5a8d6f0e1b"], "actor": "dispatch"}]
        }
    }


class AlertListResponse(BaseModel):
    count: int
    alerts: List[Alert]


# ── Endpoints ──


@router.get("", response_model=AlertListResponse)
async def list_alerts(
    severity: Optional[Severity] = None,
    acknowledged: Optional[bool] = None,
    dismissed: Optional[bool] = None,
    rule_id: Optional[str] = None,
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    poller: Poller = Depends(get_poller),
):
    """Active alerts in priority order (severity, then oldest first)."""
    alerts = poller.get_active_alerts(severity, acknowledged, dismissed, rule_id, limit)
    return AlertListResponse(count=len(alerts), alerts=alerts)


@router.get("/highest", response_model=Optional[Alert])
async def highest_priority_alert(poller: Poller = Depends(get_poller)):
    return poller.alerts.highest_priority()


@router.get("/history", response_model=AlertListResponse)
async def alert_history(
    limit: Optional[int] = Query(default=100, ge=1, le=1000),
    poller: Poller = Depends(get_poller),
):
    """Recently resolved alerts, newest last."""
    alerts = poller.history(limit)
    return AlertListResponse(count=len(alerts), alerts=alerts)


@router.get("/stats")
async def alert_stats(poller: Poller = Depends(get_poller)):
    return poller.alerts.statistics()


@router.get("/archive")
async def alert_archive(
    entity_id: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    session: Session = Depends(get_session),
):
    """Persisted alert history, most recent first."""
    query = select(AlertRecord).order_by(AlertRecord.created_at.desc()).limit(limit)
    if entity_id:
        query = query.where(AlertRecord.entity_id == entity_id)
    records = session.exec(query).all()
    return {"count": len(records), "alerts": [r.model_dump() for r in records]}


@router.post("/bulk/acknowledge", response_model=BulkActionResult)
async def bulk_acknowledge(
    request: BulkActionRequest, poller: Poller = Depends(get_poller)
):
    return poller.bulk_acknowledge(request.alert_ids, request.actor)


@router.post("/bulk/dismiss", response_model=BulkActionResult)
async def bulk_dismiss(request: BulkActionRequest, poller: Poller = Depends(get_poller)):
    return poller.bulk_dismiss(request.alert_ids, request.actor)


@router.post("/{alert_id}/acknowledge", response_model=Alert)
async def acknowledge_alert(
    alert_id: str,
    request: Optional[AlertActionRequest] = None,
    poller: Poller = Depends(get_poller),
):
    actor = request.actor if request else "system"
    try:
        return poller.acknowledge(alert_id, actor)
    except AlertNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{alert_id}/dismiss", response_model=Alert)
async def dismiss_alert(
    alert_id: str,
    request: Optional[AlertActionRequest] = None,
    poller: Poller = Depends(get_poller),
):
    actor = request.actor if request else "system"
    try:
        return poller.dismiss(alert_id, actor)
    except AlertNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
