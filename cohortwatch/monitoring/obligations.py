"""
Obligation derivation.

Four institutional obligations are derived from a student's scores and
inactivity when no obligation records are persisted for the student:

- Attendance Requirement: attendance rate = 100 - risk (met >= 80, warning >= 60)
- Compliance Check-in:    days inactive (met < 14, warning < 21), due every 30 days
- Fee Payment:            engagement (met >= 50, warning >= 30)
- Academic Progress:      risk (met < 40, warning < 70)

Persisted obligations replace the derived set entirely; derivation is a
fallback, never an override.
"""

from datetime import datetime, timedelta
from typing import Optional, Sequence

from cohortwatch.monitoring.schemas import Obligation, ObligationStatus

ATTENDANCE = "Attendance Requirement"
CHECK_IN = "Compliance Check-in"
FEE_PAYMENT = "Fee Payment"
ACADEMIC_PROGRESS = "Academic Progress"

CHECK_IN_INTERVAL_DAYS = 30


def _band_at_least(value: float, met: float, warning: float) -> ObligationStatus:
    if value >= met:
        return ObligationStatus.MET
    if value >= warning:
        return ObligationStatus.WARNING
    return ObligationStatus.BREACH


def _band_below(value: float, met: float, warning: float) -> ObligationStatus:
    if value < met:
        return ObligationStatus.MET
    if value < warning:
        return ObligationStatus.WARNING
    return ObligationStatus.BREACH


def derive_obligations(
    student_id: str,
    risk_score: float,
    engagement_score: float,
    inactivity_days: int,
    now: datetime,
) -> list[Obligation]:
    """Pure mapping from scores/inactivity to obligation statuses."""
    attendance_rate = max(0.0, 100.0 - risk_score)
    attendance = _band_at_least(attendance_rate, 80.0, 60.0)

    check_in = _band_below(inactivity_days, 14, 21)
    check_in_due = now + timedelta(days=CHECK_IN_INTERVAL_DAYS - inactivity_days)

    fee = _band_at_least(engagement_score, 50.0, 30.0)
    fee_label = {
        ObligationStatus.MET: "Paid",
        ObligationStatus.WARNING: "Due Soon",
        ObligationStatus.BREACH: "Overdue",
    }[fee]

    academic = _band_below(risk_score, 40.0, 70.0)
    academic_label = {
        ObligationStatus.MET: "On Track",
        ObligationStatus.WARNING: "At Risk",
        ObligationStatus.BREACH: "Failing",
    }[academic]

    return [
        Obligation(
            student_id=student_id,
            name=ATTENDANCE,
            requirement=">= 80%",
            current_value=f"{attendance_rate:.0f}%",
            status=attendance,
            consequence="Visa cancellation risk",
            derived=True,
        ),
        Obligation(
            student_id=student_id,
            name=CHECK_IN,
            requirement=f"Every {CHECK_IN_INTERVAL_DAYS} days",
            current_value=check_in_due.date().isoformat(),
            status=check_in,
            consequence="Immigration compliance breach",
            due_date=check_in_due,
            derived=True,
        ),
        Obligation(
            student_id=student_id,
            name=FEE_PAYMENT,
            requirement="Current",
            current_value=fee_label,
            status=fee,
            consequence="Enrollment suspension",
            derived=True,
        ),
        Obligation(
            student_id=student_id,
            name=ACADEMIC_PROGRESS,
            requirement="Satisfactory",
            current_value=academic_label,
            status=academic,
            consequence="Academic probation",
            derived=True,
        ),
    ]


def resolve_obligations(
    derived: list[Obligation],
    persisted: Optional[Sequence[Obligation]],
) -> list[Obligation]:
    """Persisted records win whenever any exist for the student."""
    if persisted:
        return list(persisted)
    return derived


def breach_count(obligations: Sequence[Obligation]) -> int:
    return sum(1 for o in obligations if o.status == ObligationStatus.BREACH)
