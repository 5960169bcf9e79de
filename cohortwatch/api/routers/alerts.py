"""
Alert API Endpoints.

GET  /api/v1/institutions/{institution_id}/alerts  list alerts
GET  /api/v1/institutions/{institution_id}/alerts/unread-count  unread count
POST /api/v1/institutions/{institution_id}/alerts/read-all  mark all read
POST /api/v1/institutions/{institution_id}/alerts/{alert_id}/read  mark one read
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from cohortwatch.api.deps import get_alert_manager
from cohortwatch.monitoring.notifications import AlertManager
from cohortwatch.monitoring.schemas import Alert

router = APIRouter(prefix="/api/v1/institutions/{institution_id}/alerts", tags=["alerts"])


class AlertListResponse(BaseModel):
    alerts: list[Alert]
    total: int


class UnreadCountResponse(BaseModel):
    unread: int


class MarkAllReadRequest(BaseModel):
    student_ids: Optional[list[str]] = None


class MarkAllReadResponse(BaseModel):
    updated: int


@router.get("", response_model=AlertListResponse)
async def list_alerts(
    institution_id: str,
    unread_only: bool = False,
    student_id: Optional[list[str]] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    alerts: AlertManager = Depends(get_alert_manager),
):
    items = await alerts.list_alerts(
        institution_id, unread_only=unread_only, student_ids=student_id, limit=limit
    )
    return AlertListResponse(alerts=items, total=len(items))


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(
    institution_id: str,
    student_id: Optional[list[str]] = Query(default=None),
    alerts: AlertManager = Depends(get_alert_manager),
):
    return UnreadCountResponse(unread=await alerts.unread_count(institution_id, student_id))


@router.post("/read-all", response_model=MarkAllReadResponse)
async def mark_all_read(
    institution_id: str,
    body: Optional[MarkAllReadRequest] = None,
    alerts: AlertManager = Depends(get_alert_manager),
):
    student_ids = body.student_ids if body else None
    return MarkAllReadResponse(updated=await alerts.mark_all_read(institution_id, student_ids))


@router.post("/{alert_id}/read", response_model=Alert)
async def mark_read(
    institution_id: str,
    alert_id: str,
    alerts: AlertManager = Depends(get_alert_manager),
):
    return await alerts.mark_read(institution_id, alert_id)
