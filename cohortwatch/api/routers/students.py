"""
Student API Endpoints.

GET  /api/v1/institutions/{institution_id}/students/duplicates  duplicate-email groups
GET  /api/v1/institutions/{institution_id}/students/{student_id}/signal  derived signal
POST /api/v1/institutions/{institution_id}/students/{student_id}/interventions  manual action
"""

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from cohortwatch.api.deps import get_engine
from cohortwatch.monitoring.engine import MonitoringEngine
from cohortwatch.monitoring.schemas import ActionResult, Signal

router = APIRouter(prefix="/api/v1/institutions/{institution_id}/students", tags=["students"])


class InterventionRequest(BaseModel):
    action_type: str
    action_config: dict[str, Any] = Field(default_factory=dict)


class DuplicatesResponse(BaseModel):
    duplicates: dict[str, list[str]]
    total: int


@router.get("/duplicates", response_model=DuplicatesResponse)
async def list_duplicates(
    institution_id: str,
    engine: MonitoringEngine = Depends(get_engine),
):
    duplicates = await engine.duplicates(institution_id)
    return DuplicatesResponse(duplicates=duplicates, total=len(duplicates))


@router.get("/{student_id}/signal", response_model=Signal)
async def get_signal(
    institution_id: str,
    student_id: str,
    engine: MonitoringEngine = Depends(get_engine),
):
    return await engine.student_signal(institution_id, student_id)


@router.post("/{student_id}/interventions", response_model=ActionResult)
async def trigger_intervention(
    institution_id: str,
    student_id: str,
    body: InterventionRequest,
    engine: MonitoringEngine = Depends(get_engine),
):
    """Run an action for one student, bypassing rule matching and dedup."""
    return await engine.run_intervention(
        institution_id, student_id, body.action_type, body.action_config
    )
