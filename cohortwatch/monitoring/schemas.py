"""
Monitoring Schemas.

Domain records (students, rules, alerts, obligations, communications),
derived signals, and the result envelopes returned by the engine.
"""

import uuid
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Naive UTC now; all stored timestamps are naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


# ── Enums ──────────────────────────────────────────────────────────────


class LifecycleStage(StrEnum):
    LEAD = "lead"
    APPLICATION = "application"
    OFFER = "offer"
    ACCEPTANCE = "acceptance"
    ENROLLMENT = "enrollment"
    ONBOARDING = "onboarding"
    ACTIVE = "active"
    AT_RISK = "at_risk"
    RETAINED = "retained"
    DROPPED = "dropped"


STAGE_ORDER: list[LifecycleStage] = list(LifecycleStage)

# Backward moves that an explicit remediation rule may perform
REMEDIATION_TRANSITIONS: set[tuple[LifecycleStage, LifecycleStage]] = {
    (LifecycleStage.AT_RISK, LifecycleStage.ACTIVE),
}


class TriggerType(StrEnum):
    CONDITION_BASED = "condition_based"
    TIME_BASED = "time_based"
    EVENT_BASED = "event_based"


class ActionType(StrEnum):
    CREATE_ALERT = "create_alert"
    SEND_EMAIL = "send_email"
    ASSIGN_COUNSELOR = "assign_counselor"
    UPDATE_STAGE = "update_stage"


class AlertSeverity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class RiskTier(StrEnum):
    LOW = "low"
    MODERATE = "moderate"
    CRITICAL = "critical"


class EngagementTier(StrEnum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"


class ObligationStatus(StrEnum):
    MET = "met"
    WARNING = "warning"
    BREACH = "breach"


class DocumentStatus(StrEnum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"


class CommunicationStatus(StrEnum):
    SENT = "sent"
    FAILED = "failed"


class EvaluationMode(StrEnum):
    SCAN = "scan"               # Manual "Run Analysis"
    SCHEDULED = "scheduled"     # Interval tick
    EVENT = "event"             # Record change notification


class ChangeKind(StrEnum):
    RECORD_CREATED = "record_created"
    RECORD_UPDATED = "record_updated"


class ActionStatus(StrEnum):
    EXECUTED = "executed"
    SUPPRESSED = "suppressed"   # Inside the dedup window
    NOOP = "noop"               # Nothing to change (already assigned, same stage)
    REJECTED = "rejected"       # Refused (stage regression, bad config)
    FAILED = "failed"           # Degraded delivery or unexpected error


class BatchStatus(StrEnum):
    COMPLETED = "completed"
    PARTIAL = "partial"         # Finished with per-student errors
    CANCELLED = "cancelled"
    BUSY = "busy"


# ── Records ────────────────────────────────────────────────────────────


class StudentDocument(BaseModel):
    name: str
    status: str = DocumentStatus.PENDING.value


class Student(BaseModel):
    """Snapshot of a student record as read from the store."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    institution_id: str
    name: str = ""
    email: str = ""
    engagement_score: Optional[float] = None
    risk_score: Optional[float] = None
    stage: LifecycleStage = LifecycleStage.LEAD
    last_activity: Optional[datetime] = None
    counselor_id: Optional[str] = None
    documents: list[StudentDocument] = Field(default_factory=list)
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AutomationRule(BaseModel):
    """
    A flat automation rule: one trigger, one action.

    trigger_type / action_type stay plain strings so a misconfigured rule
    can be loaded and reported instead of failing validation.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str
    institution_id: str
    name: str
    description: str = ""
    trigger_type: str = TriggerType.CONDITION_BASED.value
    trigger_config: dict[str, Any] = Field(default_factory=dict)
    action_type: str = ActionType.CREATE_ALERT.value
    action_config: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def condition(self) -> Optional[str]:
        value = self.trigger_config.get("condition")
        return str(value) if value else None


class Obligation(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[str] = None
    student_id: str
    name: str
    requirement: str
    current_value: Optional[str] = None
    status: ObligationStatus
    consequence: Optional[str] = None
    due_date: Optional[datetime] = None
    derived: bool = False


class Alert(BaseModel):
    """An alert, immutable apart from the read flag."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: new_id("alert"))
    institution_id: str
    student_id: Optional[str] = None
    rule_id: Optional[str] = None
    severity: AlertSeverity = AlertSeverity.INFO
    title: str
    description: str = ""
    recommendations: list[str] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)
    read: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class Communication(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: new_id("comm"))
    institution_id: str
    student_id: str
    rule_id: Optional[str] = None
    channel: str = "email"
    recipient: str
    subject: str
    body: str
    status: CommunicationStatus
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Counselor(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    institution_id: str
    name: str = ""
    email: str = ""
    capacity: Optional[int] = None
    is_active: bool = True


# ── Derived ────────────────────────────────────────────────────────────


class Signal(BaseModel):
    """Derived, ephemeral indicators for one student. Never persisted."""

    student_id: str
    risk_score: float
    engagement_score: float
    risk_tier: RiskTier
    engagement_tier: EngagementTier
    inactivity_days: int
    inactivity_level: str = "none"  # none | warning | critical
    days_to_breach: int
    obligations: list[Obligation] = Field(default_factory=list)
    has_pending_documents: bool = False
    issues: list[str] = Field(default_factory=list)

    @property
    def obligation_statuses(self) -> dict[str, ObligationStatus]:
        return {o.name: o.status for o in self.obligations}

    def snapshot(self) -> dict[str, Any]:
        """Compact dict stored on alerts for later review."""
        return {
            "risk_score": self.risk_score,
            "engagement_score": self.engagement_score,
            "risk_tier": self.risk_tier.value,
            "engagement_tier": self.engagement_tier.value,
            "inactivity_days": self.inactivity_days,
            "inactivity_level": self.inactivity_level,
            "days_to_breach": self.days_to_breach,
            "obligation_statuses": {k: v.value for k, v in self.obligation_statuses.items()},
        }


# ── Engine results ─────────────────────────────────────────────────────


class Match(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_id: str
    student_id: str


class BatchError(BaseModel):
    kind: str
    message: str
    student_id: Optional[str] = None
    rule_id: Optional[str] = None


class EvaluationResult(BaseModel):
    matches: list[Match] = Field(default_factory=list)
    errors: list[BatchError] = Field(default_factory=list)


class ActionResult(BaseModel):
    rule_id: Optional[str] = None
    student_id: str
    action_type: str
    status: ActionStatus
    detail: str = ""
    alert_ids: list[str] = Field(default_factory=list)
    communication_id: Optional[str] = None
    error: Optional[BatchError] = None


class BatchResult(BaseModel):
    institution_id: str
    mode: EvaluationMode
    status: BatchStatus = BatchStatus.COMPLETED
    analyzed: int = 0
    matches: int = 0
    executed: int = 0
    suppressed: int = 0
    failed: int = 0
    errors: list[BatchError] = Field(default_factory=list)
    cancelled: bool = False
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None


class ChangeEvent(BaseModel):
    """A store change notification (at-least-once delivery)."""

    institution_id: str
    student_id: str
    kind: ChangeKind = ChangeKind.RECORD_UPDATED
    occurred_at: datetime = Field(default_factory=utcnow)
