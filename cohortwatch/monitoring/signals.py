"""
Signal Deriver: per-student risk, engagement, inactivity, and obligation
indicators computed from stored attributes.

derive_signal() is pure: no I/O, no side effects, never raises. Missing or
invalid inputs fall back to the safest (lowest-risk) reading and are noted in
Signal.issues so the caller can report them.

Canonical formulas:
- risk_tier:       critical >= 70, moderate >= 40, else low (closed lower bounds)
- inactivity_days: floor((now - last_activity) / 1 day), never negative
- days_to_breach:  max(1, 14 - inactivity_days) when risk >= 60 or
                   inactivity_days >= 5, else 30
"""

import math
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from pydantic import BaseModel

from cohortwatch.config import settings
from cohortwatch.monitoring.obligations import derive_obligations, resolve_obligations
from cohortwatch.monitoring.schemas import (
    DocumentStatus,
    EngagementTier,
    LifecycleStage,
    Obligation,
    RiskTier,
    Signal,
    Student,
)

SAFEST_RISK_SCORE = 0.0
SAFEST_ENGAGEMENT_SCORE = 100.0


class Thresholds(BaseModel):
    """Signal thresholds; institutions may override any field."""

    high_risk: float = 70.0
    moderate_risk: float = 40.0
    low_engagement: float = 40.0
    moderate_engagement: float = 70.0
    inactivity_warning_days: int = 5
    inactivity_critical_days: int = 10
    breach_risk: float = 60.0
    breach_horizon_days: int = 14
    non_urgent_breach_days: int = 30

    @classmethod
    def from_settings(cls, overrides: Optional[dict[str, Any]] = None) -> "Thresholds":
        """Global settings first, then per-institution overrides."""
        base = cls(
            high_risk=settings.high_risk_threshold,
            moderate_risk=settings.moderate_risk_threshold,
            low_engagement=settings.low_engagement_threshold,
            moderate_engagement=settings.moderate_engagement_threshold,
            inactivity_warning_days=settings.inactivity_warning_days,
            inactivity_critical_days=settings.inactivity_critical_days,
        )
        if not overrides:
            return base
        known = {k: v for k, v in overrides.items() if k in cls.model_fields}
        return base.model_copy(update=known)


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _clean_score(
    value: Optional[float], field: str, safest: float, issues: list[str]
) -> float:
    if value is None:
        issues.append(f"{field} missing; using {safest:.0f}")
        return safest
    try:
        score = float(value)
    except (TypeError, ValueError):
        issues.append(f"{field} not numeric; using {safest:.0f}")
        return safest
    if math.isnan(score):
        issues.append(f"{field} is NaN; using {safest:.0f}")
        return safest
    if score < 0 or score > 100:
        issues.append(f"{field}={score:g} out of range; clamped")
        return min(100.0, max(0.0, score))
    return score


def risk_tier(risk_score: float, thresholds: Thresholds) -> RiskTier:
    if risk_score >= thresholds.high_risk:
        return RiskTier.CRITICAL
    if risk_score >= thresholds.moderate_risk:
        return RiskTier.MODERATE
    return RiskTier.LOW


def engagement_tier(engagement_score: float, thresholds: Thresholds) -> EngagementTier:
    if engagement_score < thresholds.low_engagement:
        return EngagementTier.LOW
    if engagement_score < thresholds.moderate_engagement:
        return EngagementTier.MODERATE
    return EngagementTier.HIGH


def inactivity_days(
    last_activity: Optional[datetime], now: datetime, issues: Optional[list[str]] = None
) -> int:
    if last_activity is None:
        if issues is not None:
            issues.append("last_activity missing; inactivity set to 0")
        return 0
    elapsed = _as_naive_utc(now) - _as_naive_utc(last_activity)
    days = math.floor(elapsed.total_seconds() / 86400)
    if days < 0:
        if issues is not None:
            issues.append("last_activity in the future; inactivity set to 0")
        return 0
    return days


def days_to_breach(risk_score: float, inactive_days: int, thresholds: Thresholds) -> int:
    if risk_score >= thresholds.breach_risk or inactive_days >= thresholds.inactivity_warning_days:
        return max(1, thresholds.breach_horizon_days - inactive_days)
    return thresholds.non_urgent_breach_days


def derive_signal(
    student: Student,
    thresholds: Thresholds,
    now: datetime,
    persisted_obligations: Optional[Sequence[Obligation]] = None,
) -> Signal:
    """Compute the Signal for one student snapshot."""
    issues: list[str] = []
    risk = _clean_score(student.risk_score, "risk_score", SAFEST_RISK_SCORE, issues)
    engagement = _clean_score(
        student.engagement_score, "engagement_score", SAFEST_ENGAGEMENT_SCORE, issues
    )
    inactive = inactivity_days(student.last_activity, now, issues)

    if inactive >= thresholds.inactivity_critical_days:
        level = "critical"
    elif inactive >= thresholds.inactivity_warning_days:
        level = "warning"
    else:
        level = "none"

    derived = derive_obligations(student.id, risk, engagement, inactive, _as_naive_utc(now))

    return Signal(
        student_id=student.id,
        risk_score=risk,
        engagement_score=engagement,
        risk_tier=risk_tier(risk, thresholds),
        engagement_tier=engagement_tier(engagement, thresholds),
        inactivity_days=inactive,
        inactivity_level=level,
        days_to_breach=days_to_breach(risk, inactive, thresholds),
        obligations=resolve_obligations(derived, persisted_obligations),
        has_pending_documents=any(
            d.status == DocumentStatus.PENDING.value for d in student.documents
        ),
        issues=issues,
    )


def heuristic_risk_score(student: Student, now: datetime) -> float:
    """
    Rule-of-thumb dropout risk used by "Run Analysis" rescoring.

    engagement < 30 → +40, < 50 → +20; inactive > 7 days → +30, > 3 → +15;
    onboarding stage → +10. Capped at 100.
    """
    engagement = student.engagement_score if student.engagement_score is not None else 0.0
    inactive = inactivity_days(student.last_activity, now)

    score = 0.0
    if engagement < 30:
        score += 40
    elif engagement < 50:
        score += 20

    if inactive > 7:
        score += 30
    elif inactive > 3:
        score += 15

    if student.stage == LifecycleStage.ONBOARDING:
        score += 10

    return min(100.0, score)
