"""
Action Executor: performs the action of a matched rule for one student.

Pipeline per match:
1. Check the dedup window (skipped for test runs and manual interventions)
2. Apply the action's effects inside one unit of work
3. Log the action under its dedup key in the same unit of work

Actions:
- create_alert:     alert with severity and recommendations from the condition
- send_email:       templated message via the dispatcher, retried once;
                    a Communication is always written (sent or failed)
- assign_counselor: least-loaded active counselor with spare capacity
- update_stage:     forward-only move; backward moves rejected unless the
                    rule is an explicit remediation rule

Stage and counselor writes are compare-and-set on the student's version.
On a miss the write is forced (last writer wins) and an info alert is
raised for manual review.
"""

import asyncio
from datetime import datetime
from typing import Any, Callable, Optional

import structlog
from sqlalchemy.exc import IntegrityError

from cohortwatch.exceptions import (
    CohortWatchError,
    ConcurrencyConflict,
    ConfigurationError,
    DataIntegrityError,
    StageRegressionError,
    TransientDeliveryError,
)
from cohortwatch.db.store import RecordStore, StoreSession
from cohortwatch.monitoring.dedup import DedupWindow
from cohortwatch.monitoring.dispatch import MessageDispatcher, send_with_retry
from cohortwatch.monitoring.schemas import (
    REMEDIATION_TRANSITIONS,
    STAGE_ORDER,
    ActionResult,
    ActionStatus,
    ActionType,
    Alert,
    AlertSeverity,
    AutomationRule,
    BatchError,
    Communication,
    CommunicationStatus,
    Counselor,
    LifecycleStage,
    Match,
    Signal,
    Student,
    TriggerType,
    utcnow,
)
from cohortwatch.monitoring.templates import render_message

logger = structlog.get_logger(__name__)


CONDITION_SEVERITY: dict[str, AlertSeverity] = {
    "risk_high": AlertSeverity.CRITICAL,
    "engagement_low": AlertSeverity.WARNING,
}

CONDITION_TITLES: dict[str, str] = {
    "risk_high": "High dropout risk",
    "risk_moderate": "Elevated dropout risk",
    "engagement_low": "Low engagement",
    "documents_pending": "Documents pending",
    "obligation_breach": "Compliance obligation in breach",
}

RECOMMENDATIONS: dict[str, list[str]] = {
    "risk_high": ["Activate peer mentorship", "Review course fit"],
    "risk_moderate": ["Monitor engagement over next 2 weeks", "Schedule check-in meeting"],
    "engagement_low": ["Send engagement email", "Invite to study group"],
    "documents_pending": ["Send document reminder", "Offer help with uploads"],
    "obligation_breach": ["Review compliance obligations", "Notify international office"],
    "inactive": ["Schedule a check-in call", "Send re-engagement email"],
}
DEFAULT_RECOMMENDATIONS = ["Review student profile", "Follow up within 48 hours"]


def severity_for(condition: Optional[str]) -> AlertSeverity:
    return CONDITION_SEVERITY.get(condition or "", AlertSeverity.INFO)


def _condition_family(condition: Optional[str]) -> str:
    if condition and condition.startswith("inactive_"):
        return "inactive"
    return condition or ""


def build_rule_alert(
    institution_id: str,
    rule: AutomationRule,
    student: Student,
    signal: Signal,
    now: datetime,
) -> Alert:
    """Alert for a create_alert action; details carry the signal snapshot."""
    condition = rule.condition
    family = _condition_family(condition)
    config = rule.action_config

    if family == "inactive":
        default_title = f"Inactive for {signal.inactivity_days} days"
    else:
        default_title = CONDITION_TITLES.get(family, rule.name)
    who = student.name or student.id
    title = str(config.get("title") or f"{default_title}: {who}")

    description = str(
        config.get("message")
        or (
            f"{who}: risk {signal.risk_score:.0f}, engagement "
            f"{signal.engagement_score:.0f}, inactive {signal.inactivity_days} days. "
            f"Estimated {signal.days_to_breach} days to breach."
        )
    )
    recommendations = config.get("recommendations") or RECOMMENDATIONS.get(
        family, DEFAULT_RECOMMENDATIONS
    )

    details = signal.snapshot()
    details.update({"rule_name": rule.name, "condition": condition})

    return Alert(
        institution_id=institution_id,
        student_id=student.id,
        rule_id=rule.id or None,
        severity=severity_for(condition),
        title=title,
        description=description,
        recommendations=[str(r) for r in recommendations],
        details=details,
        created_at=now,
    )


def check_stage_transition(
    current: LifecycleStage, target: LifecycleStage, remediation: bool = False
) -> None:
    """Raise StageRegressionError for a backward move that isn't allowed."""
    if STAGE_ORDER.index(target) >= STAGE_ORDER.index(current):
        return
    if remediation and (current, target) in REMEDIATION_TRANSITIONS:
        return
    raise StageRegressionError(
        f"Cannot move student backwards from '{current.value}' to '{target.value}'",
        details={"current": current.value, "target": target.value},
    )


def pick_counselor(
    counselors: list[Counselor], loads: dict[str, int]
) -> Optional[Counselor]:
    """Lowest load among active counselors with spare capacity, ties by id."""
    candidates = [
        c
        for c in sorted(counselors, key=lambda c: c.id)
        if c.is_active and (c.capacity is None or loads.get(c.id, 0) < c.capacity)
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda c: (loads.get(c.id, 0), c.id))


class ActionExecutor:
    """
    Executes matched actions against the record store.

    Each action's effects, including its dedup-log row, commit together or
    not at all.
    """

    def __init__(
        self,
        store: RecordStore,
        dispatcher: MessageDispatcher,
        dedup: Optional[DedupWindow] = None,
        retry_delay: Optional[float] = None,
        sleep: Callable = asyncio.sleep,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.dedup = dedup or DedupWindow()
        self.retry_delay = retry_delay
        self._sleep = sleep
        # institution_id → next index for round-robin assignment
        self._round_robin: dict[str, int] = {}

    async def execute(
        self,
        institution_id: str,
        match: Match,
        student: Student,
        rule: AutomationRule,
        signal: Signal,
        now: Optional[datetime] = None,
        enforce_dedup: bool = True,
    ) -> ActionResult:
        """
        Execute the rule's action for one matched student.

        Args:
            institution_id: Institution namespace
            match: The (rule, student) match being executed
            student: Student snapshot the match was evaluated on
            rule: The matched rule
            signal: Signal derived for the student in this pass
            now: Evaluation time (defaults to utcnow)
            enforce_dedup: False for test runs (no suppression, no log row)

        Returns:
            ActionResult describing what happened
        """
        now = now or utcnow()
        try:
            action = ActionType(rule.action_type)
        except ValueError:
            exc = ConfigurationError(
                f"Unknown action type '{rule.action_type}'",
                details={"rule_id": rule.id},
            )
            return self._rejected(match, rule.action_type, exc)

        if action == ActionType.SEND_EMAIL:
            return await self._execute_send_email(
                institution_id, match, student, rule, now, enforce_dedup
            )

        try:
            async with self.store.session() as uow:
                if enforce_dedup and await self.dedup.is_suppressed(
                    uow, institution_id, student.id, rule.id, now
                ):
                    return self._suppressed(match, action)

                if action == ActionType.CREATE_ALERT:
                    result = await self._create_alert(uow, institution_id, match, student, rule, signal, now)
                elif action == ActionType.ASSIGN_COUNSELOR:
                    result = await self._assign_counselor(uow, institution_id, match, student, now)
                else:
                    result = await self._update_stage(uow, institution_id, match, student, rule, now)

                if enforce_dedup and result.status == ActionStatus.EXECUTED:
                    await self.dedup.record(
                        uow, institution_id, student.id, rule.id, action.value, now
                    )
                return result
        except IntegrityError:
            # Another writer logged the same dedup key first
            logger.info(
                "action_suppressed_race",
                institution_id=institution_id,
                student_id=student.id,
                rule_id=rule.id,
            )
            return self._suppressed(match, action)
        except CohortWatchError as exc:
            return self._rejected(match, action.value, exc)

    async def execute_manual(
        self,
        institution_id: str,
        student: Student,
        signal: Signal,
        action_type: str,
        action_config: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> ActionResult:
        """Run an action directly for a student: no rule matching, no dedup."""
        now = now or utcnow()
        config = dict(action_config or {})
        rule = AutomationRule(
            id="",
            institution_id=institution_id,
            name=str(config.get("name") or "Manual intervention"),
            trigger_type=TriggerType.EVENT_BASED.value,
            trigger_config={"condition": config["condition"]} if config.get("condition") else {},
            action_type=action_type,
            action_config=config,
            created_at=now,
        )
        match = Match(rule_id="", student_id=student.id)
        logger.info(
            "manual_intervention",
            institution_id=institution_id,
            student_id=student.id,
            action_type=action_type,
        )
        return await self.execute(
            institution_id, match, student, rule, signal, now=now, enforce_dedup=False
        )

    # ── create_alert ───────────────────────────────────────────────────

    async def _create_alert(
        self,
        uow: StoreSession,
        institution_id: str,
        match: Match,
        student: Student,
        rule: AutomationRule,
        signal: Signal,
        now: datetime,
    ) -> ActionResult:
        alert = build_rule_alert(institution_id, rule, student, signal, now)
        await uow.insert_alert(alert)
        logger.info(
            "alert_created",
            institution_id=institution_id,
            alert_id=alert.id,
            student_id=student.id,
            rule_id=rule.id,
            severity=alert.severity.value,
        )
        return ActionResult(
            rule_id=match.rule_id or None,
            student_id=student.id,
            action_type=ActionType.CREATE_ALERT.value,
            status=ActionStatus.EXECUTED,
            detail=alert.title,
            alert_ids=[alert.id],
        )

    # ── send_email ─────────────────────────────────────────────────────

    async def _execute_send_email(
        self,
        institution_id: str,
        match: Match,
        student: Student,
        rule: AutomationRule,
        now: datetime,
        enforce_dedup: bool,
    ) -> ActionResult:
        if enforce_dedup:
            async with self.store.session() as uow:
                if await self.dedup.is_suppressed(uow, institution_id, student.id, rule.id, now):
                    return self._suppressed(match, ActionType.SEND_EMAIL)

        subject, body = render_message(rule.action_config, student)
        recipient = (student.email or "").strip()

        # Delivery happens outside any unit of work
        if not recipient:
            delivered, error_text, attempts = False, "student has no email address", 0
            error = DataIntegrityError(
                "Student has no email address", details={"student_id": student.id}
            )
        else:
            dispatch = await send_with_retry(
                self.dispatcher,
                recipient,
                subject,
                body,
                base_delay=self.retry_delay,
                sleep=self._sleep,
            )
            delivered, error_text, attempts = dispatch.delivered, dispatch.detail, dispatch.attempts
            error = None if delivered else _delivery_error(dispatch.detail, recipient)

        communication = Communication(
            institution_id=institution_id,
            student_id=student.id,
            rule_id=rule.id or None,
            recipient=recipient,
            subject=subject,
            body=body,
            status=CommunicationStatus.SENT if delivered else CommunicationStatus.FAILED,
            error=None if delivered else error_text,
            created_at=now,
        )

        alert_ids: list[str] = []
        try:
            async with self.store.session() as uow:
                await uow.insert_communication(communication)
                if not delivered:
                    degraded = Alert(
                        institution_id=institution_id,
                        student_id=student.id,
                        rule_id=rule.id or None,
                        severity=AlertSeverity.INFO,
                        title=f"Message delivery degraded: {student.name or student.id}",
                        description=f"'{subject}' could not be delivered: {error_text}",
                        recommendations=["Verify the student's email address", "Contact the student directly"],
                        details={"communication_id": communication.id, "attempts": attempts},
                        created_at=now,
                    )
                    await uow.insert_alert(degraded)
                    alert_ids.append(degraded.id)
                if enforce_dedup:
                    await self.dedup.record(
                        uow, institution_id, student.id, rule.id, ActionType.SEND_EMAIL.value, now
                    )
        except IntegrityError:
            logger.warning(
                "duplicate_send_detected",
                institution_id=institution_id,
                student_id=student.id,
                rule_id=rule.id,
            )
            return self._suppressed(match, ActionType.SEND_EMAIL)

        if delivered:
            logger.info(
                "message_sent",
                institution_id=institution_id,
                student_id=student.id,
                communication_id=communication.id,
                attempts=attempts,
            )
            status = ActionStatus.EXECUTED
        else:
            logger.warning(
                "message_delivery_degraded",
                institution_id=institution_id,
                student_id=student.id,
                communication_id=communication.id,
                error=error_text,
            )
            status = ActionStatus.FAILED

        return ActionResult(
            rule_id=match.rule_id or None,
            student_id=student.id,
            action_type=ActionType.SEND_EMAIL.value,
            status=status,
            detail=subject if delivered else error_text,
            alert_ids=alert_ids,
            communication_id=communication.id,
            error=None
            if error is None
            else BatchError(
                kind=error.kind,
                message=error.message,
                student_id=student.id,
                rule_id=match.rule_id or None,
            ),
        )

    # ── assign_counselor ───────────────────────────────────────────────

    async def _assign_counselor(
        self,
        uow: StoreSession,
        institution_id: str,
        match: Match,
        student: Student,
        now: datetime,
    ) -> ActionResult:
        if student.counselor_id:
            return ActionResult(
                rule_id=match.rule_id or None,
                student_id=student.id,
                action_type=ActionType.ASSIGN_COUNSELOR.value,
                status=ActionStatus.NOOP,
                detail=f"already assigned to {student.counselor_id}",
            )

        counselors = await uow.list_counselors(institution_id)
        loads = await uow.counselor_loads(institution_id)
        if loads:
            chosen = pick_counselor(counselors, loads)
        else:
            chosen = self._next_round_robin(institution_id, counselors)

        if chosen is None:
            raise ConfigurationError(
                "No active counselor with spare capacity",
                details={"institution_id": institution_id},
            )

        alert_ids = await self._write_student(
            uow, institution_id, student, {"counselor_id": chosen.id}, now, "counselor_id"
        )
        if alert_ids is None:
            return ActionResult(
                rule_id=match.rule_id or None,
                student_id=student.id,
                action_type=ActionType.ASSIGN_COUNSELOR.value,
                status=ActionStatus.NOOP,
                detail="assigned by another writer",
            )
        logger.info(
            "counselor_assigned",
            institution_id=institution_id,
            student_id=student.id,
            counselor_id=chosen.id,
            load=loads.get(chosen.id, 0),
        )
        return ActionResult(
            rule_id=match.rule_id or None,
            student_id=student.id,
            action_type=ActionType.ASSIGN_COUNSELOR.value,
            status=ActionStatus.EXECUTED,
            detail=chosen.id,
            alert_ids=alert_ids,
        )

    def _next_round_robin(
        self, institution_id: str, counselors: list[Counselor]
    ) -> Optional[Counselor]:
        active = sorted(
            (c for c in counselors if c.is_active and (c.capacity is None or c.capacity > 0)),
            key=lambda c: c.id,
        )
        if not active:
            return None
        index = self._round_robin.get(institution_id, 0) % len(active)
        self._round_robin[institution_id] = index + 1
        return active[index]

    # ── update_stage ───────────────────────────────────────────────────

    async def _update_stage(
        self,
        uow: StoreSession,
        institution_id: str,
        match: Match,
        student: Student,
        rule: AutomationRule,
        now: datetime,
    ) -> ActionResult:
        raw_target = rule.action_config.get("target_stage")
        try:
            target = LifecycleStage(raw_target)
        except ValueError:
            raise ConfigurationError(
                f"Unknown target stage '{raw_target}'",
                details={"rule_id": rule.id, "target_stage": raw_target},
            )

        remediation = bool(rule.action_config.get("remediation", False))
        check_stage_transition(student.stage, target, remediation)

        if target == student.stage:
            return ActionResult(
                rule_id=match.rule_id or None,
                student_id=student.id,
                action_type=ActionType.UPDATE_STAGE.value,
                status=ActionStatus.NOOP,
                detail=f"already in '{target.value}'",
            )

        alert_ids = await self._write_student(
            uow, institution_id, student, {"stage": target}, now, "stage", remediation=remediation
        )
        logger.info(
            "stage_updated",
            institution_id=institution_id,
            student_id=student.id,
            from_stage=student.stage.value,
            to_stage=target.value,
        )
        return ActionResult(
            rule_id=match.rule_id or None,
            student_id=student.id,
            action_type=ActionType.UPDATE_STAGE.value,
            status=ActionStatus.EXECUTED,
            detail=f"{student.stage.value} -> {target.value}",
            alert_ids=alert_ids,
        )

    # ── Shared helpers ─────────────────────────────────────────────────

    async def _write_student(
        self,
        uow: StoreSession,
        institution_id: str,
        student: Student,
        values: dict[str, Any],
        now: datetime,
        field: str,
        remediation: bool = False,
    ) -> Optional[list[str]]:
        """
        Compare-and-set on the snapshot version; on a miss force the write and
        raise an info alert. Returns ids of any alerts created, or None when
        the other writer already assigned a counselor and nothing was written.
        """
        version = await uow.update_student(
            institution_id, student.id, values, expected_version=student.version
        )
        if version is not None:
            return []

        current = await uow.get_student(institution_id, student.id)
        if current is None:
            raise DataIntegrityError(
                f"Student '{student.id}' no longer exists",
                details={"student_id": student.id},
            )
        if field == "stage":
            # Still never regress past what the other writer stored
            check_stage_transition(current.stage, LifecycleStage(values["stage"]), remediation)
        elif field == "counselor_id" and current.counselor_id:
            logger.info(
                "counselor_assigned_concurrently",
                institution_id=institution_id,
                student_id=student.id,
                counselor_id=current.counselor_id,
            )
            return None

        conflict = ConcurrencyConflict(
            f"Student '{student.id}' changed during evaluation",
            details={
                "field": field,
                "expected_version": student.version,
                "actual_version": current.version,
            },
        )
        await uow.update_student(institution_id, student.id, values)

        previous = getattr(current, field)
        new_value = values[field]
        alert = Alert(
            institution_id=institution_id,
            student_id=student.id,
            severity=AlertSeverity.INFO,
            title=f"Concurrent update on {student.name or student.id}",
            description=(
                f"{field} was changed by another writer "
                f"(now '{_plain(previous)}'); overwritten with '{_plain(new_value)}'."
            ),
            recommendations=["Review the student's record"],
            details=conflict.to_dict(),
            created_at=now,
        )
        await uow.insert_alert(alert)
        logger.warning(
            "concurrency_conflict",
            institution_id=institution_id,
            student_id=student.id,
            field=field,
            expected_version=student.version,
            actual_version=current.version,
        )
        return [alert.id]

    @staticmethod
    def _suppressed(match: Match, action: ActionType) -> ActionResult:
        return ActionResult(
            rule_id=match.rule_id or None,
            student_id=match.student_id,
            action_type=action.value,
            status=ActionStatus.SUPPRESSED,
            detail="inside dedup window",
        )

    @staticmethod
    def _rejected(match: Match, action_type: str, exc: CohortWatchError) -> ActionResult:
        logger.warning(
            "action_rejected",
            student_id=match.student_id,
            rule_id=match.rule_id,
            action_type=action_type,
            kind=exc.kind,
            error=exc.message,
        )
        return ActionResult(
            rule_id=match.rule_id or None,
            student_id=match.student_id,
            action_type=action_type,
            status=ActionStatus.REJECTED,
            detail=exc.message,
            error=BatchError(
                kind=exc.kind,
                message=exc.message,
                student_id=match.student_id,
                rule_id=match.rule_id or None,
            ),
        )


def _plain(value: Any) -> str:
    return str(value.value) if hasattr(value, "value") else str(value)


def _delivery_error(detail: str, recipient: str) -> CohortWatchError:
    return TransientDeliveryError(
        f"Delivery to {recipient} failed after retry: {detail}",
        details={"recipient": recipient},
    )
