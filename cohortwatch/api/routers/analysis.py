"""
Analysis API Endpoints.

POST /api/v1/institutions/{institution_id}/analysis/run  run a batch pass
POST /api/v1/institutions/{institution_id}/rules/{rule_id}/test  test one rule
POST /api/v1/institutions/{institution_id}/events  publish a change event
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from cohortwatch.api.deps import get_engine, get_event_stream
from cohortwatch.exceptions import EngineBusyError
from cohortwatch.monitoring.engine import MonitoringEngine
from cohortwatch.monitoring.events import ChangeEventStream
from cohortwatch.monitoring.schemas import (
    ActionResult,
    BatchResult,
    BatchStatus,
    ChangeEvent,
    ChangeKind,
    EvaluationMode,
)

router = APIRouter(prefix="/api/v1/institutions/{institution_id}", tags=["analysis"])


class RunAnalysisRequest(BaseModel):
    wait: bool = False
    timeout_seconds: Optional[float] = None


class RuleTestResponse(BaseModel):
    matched: bool
    result: Optional[ActionResult] = None


class ChangeEventRequest(BaseModel):
    student_id: str
    kind: ChangeKind = ChangeKind.RECORD_UPDATED


class ChangeEventAccepted(BaseModel):
    accepted: bool
    pending: int


@router.post("/analysis/run", response_model=BatchResult)
async def run_analysis(
    institution_id: str,
    body: Optional[RunAnalysisRequest] = None,
    engine: MonitoringEngine = Depends(get_engine),
):
    """Manual "Run Analysis": one scan-mode batch over every student."""
    body = body or RunAnalysisRequest()
    result = await engine.run_batch(
        institution_id,
        mode=EvaluationMode.SCAN,
        timeout=body.timeout_seconds,
        wait=body.wait,
    )
    if result.status == BatchStatus.BUSY:
        raise EngineBusyError(
            "An analysis run is already in progress",
            details={"institution_id": institution_id},
        )
    return result


@router.post("/rules/{rule_id}/test", response_model=RuleTestResponse)
async def run_rule_test(
    institution_id: str,
    rule_id: str,
    engine: MonitoringEngine = Depends(get_engine),
):
    """Run a rule against its first matching student, ignoring dedup."""
    result = await engine.test_rule(institution_id, rule_id)
    return RuleTestResponse(matched=result is not None, result=result)


@router.post("/events", response_model=ChangeEventAccepted, status_code=202)
async def publish_change(
    institution_id: str,
    body: ChangeEventRequest,
    stream: ChangeEventStream = Depends(get_event_stream),
):
    """Queue a record change for event-mode evaluation."""
    accepted = stream.publish_nowait(
        ChangeEvent(institution_id=institution_id, student_id=body.student_id, kind=body.kind)
    )
    return ChangeEventAccepted(accepted=accepted, pending=stream.pending)
