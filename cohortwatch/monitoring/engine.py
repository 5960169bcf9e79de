"""
Monitoring Engine: batch and event-driven evaluation passes.

Batch mode (manual "Run Analysis" or scheduled tick):
1. Load students, active rules, and persisted obligations in one read;
   rows that fail validation are skipped and reported
2. Optionally rescore risk with the heuristic and persist it
3. Derive a Signal per student (data issues become batch errors)
4. Evaluate rules, cap the match count
5. Execute matches per student on a bounded worker pool, rule order
   within a student, checking for cancellation between students

Event mode: the same pipeline for one student after a record change.

A per-student lock is shared by both modes, so no two passes ever write
the same student at once. Only one batch per institution runs at a time.
"""

import asyncio
from collections import OrderedDict
from datetime import datetime
from typing import Any, Optional

import structlog

from cohortwatch.config import settings
from cohortwatch.db.store import RecordStore, StoreSession
from cohortwatch.exceptions import ConfigurationError, DataIntegrityError, NotFoundError
from cohortwatch.monitoring.actions import ActionExecutor
from cohortwatch.monitoring.duplicates import find_duplicates
from cohortwatch.monitoring.evaluator import RuleEvaluator, validate_rule
from cohortwatch.monitoring.schemas import (
    ActionResult,
    ActionStatus,
    ActionType,
    AutomationRule,
    BatchError,
    BatchResult,
    BatchStatus,
    ChangeEvent,
    EvaluationMode,
    Match,
    Signal,
    Student,
    TriggerType,
    utcnow,
)
from cohortwatch.monitoring.signals import Thresholds, derive_signal, heuristic_risk_score

logger = structlog.get_logger(__name__)

TEST_MODES: dict[TriggerType, EvaluationMode] = {
    TriggerType.CONDITION_BASED: EvaluationMode.SCAN,
    TriggerType.TIME_BASED: EvaluationMode.SCHEDULED,
    TriggerType.EVENT_BASED: EvaluationMode.EVENT,
}


class MonitoringEngine:
    """
    Orchestrates Signal Deriver → Rule Evaluator → Action Executor.

    Holds no cached signals between passes; the record store is the only
    shared state.
    """

    def __init__(
        self,
        store: RecordStore,
        executor: ActionExecutor,
        evaluator: Optional[RuleEvaluator] = None,
        max_workers: Optional[int] = None,
        max_matches: Optional[int] = None,
        rescore: Optional[bool] = None,
    ):
        self.store = store
        self.executor = executor
        self.evaluator = evaluator or RuleEvaluator()
        self.max_workers = max_workers or settings.max_workers
        self.max_matches = max_matches or settings.max_matches_per_batch
        self.rescore = settings.rescore_on_analysis if rescore is None else rescore

        self._batch_locks: dict[str, asyncio.Lock] = {}
        self._student_locks: dict[tuple[str, str], asyncio.Lock] = {}

    # ── Locks ──────────────────────────────────────────────────────────

    def _batch_lock(self, institution_id: str) -> asyncio.Lock:
        return self._batch_locks.setdefault(institution_id, asyncio.Lock())

    def student_lock(self, institution_id: str, student_id: str) -> asyncio.Lock:
        return self._student_locks.setdefault((institution_id, student_id), asyncio.Lock())

    def is_running(self, institution_id: str) -> bool:
        lock = self._batch_locks.get(institution_id)
        return lock is not None and lock.locked()

    # ── Batch mode ─────────────────────────────────────────────────────

    async def run_batch(
        self,
        institution_id: str,
        mode: EvaluationMode = EvaluationMode.SCAN,
        now: Optional[datetime] = None,
        cancel: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
        wait: bool = False,
    ) -> BatchResult:
        """
        Run one evaluation pass over every student of an institution.

        Args:
            institution_id: Institution namespace
            mode: scan (manual) or scheduled (tick)
            now: Evaluation time (defaults to utcnow)
            cancel: Set to stop the pass between students
            timeout: Seconds before the pass stops between students
            wait: Queue behind a running batch instead of returning busy

        Returns:
            BatchResult with counts and per-student errors
        """
        lock = self._batch_lock(institution_id)
        if lock.locked() and not wait:
            logger.info("batch_busy", institution_id=institution_id, mode=mode.value)
            return BatchResult(
                institution_id=institution_id,
                mode=mode,
                status=BatchStatus.BUSY,
                finished_at=utcnow(),
            )

        async with lock:
            return await self._run_batch(institution_id, mode, now, cancel, timeout)

    async def _run_batch(
        self,
        institution_id: str,
        mode: EvaluationMode,
        now: Optional[datetime],
        cancel: Optional[asyncio.Event],
        timeout: Optional[float],
    ) -> BatchResult:
        now = now or utcnow()
        loop = asyncio.get_running_loop()
        timeout = settings.batch_timeout_seconds if timeout is None else timeout
        deadline = loop.time() + timeout if timeout and timeout > 0 else None

        result = BatchResult(institution_id=institution_id, mode=mode, started_at=now)
        logger.info("batch_started", institution_id=institution_id, mode=mode.value)

        rejected: list[DataIntegrityError] = []
        async with self.store.session() as uow:
            thresholds = await self._thresholds(uow, institution_id)
            students = await uow.list_students(institution_id, rejected=rejected)
            rules = await uow.list_rules(institution_id, active_only=True)
            obligations = await uow.list_obligations(institution_id)
            if self.rescore:
                students = await self._rescore(uow, institution_id, students, now)

        # Invalid rows are skipped, not evaluated
        for exc in rejected:
            result.errors.append(
                BatchError(
                    kind=exc.kind, message=exc.message, student_id=exc.details["student_id"]
                )
            )

        signals: dict[str, Signal] = {}
        for student in students:
            signal = derive_signal(student, thresholds, now, obligations.get(student.id))
            signals[student.id] = signal
            if signal.issues:
                result.errors.append(_integrity_error(student.id, signal.issues))
        result.analyzed = len(students)

        evaluation = self.evaluator.evaluate(students, rules, signals, mode)
        result.errors.extend(evaluation.errors)

        matches = evaluation.matches
        if len(matches) > self.max_matches:
            logger.warning(
                "match_cap_reached",
                institution_id=institution_id,
                matches=len(matches),
                cap=self.max_matches,
            )
            result.errors.append(
                BatchError(
                    kind="match_cap",
                    message=f"{len(matches)} matches exceeded the cap of {self.max_matches}; "
                    f"the remainder were skipped",
                )
            )
            matches = matches[: self.max_matches]
        result.matches = len(matches)

        students_by_id = {s.id: s for s in students}
        rules_by_id = {r.id: r for r in rules}
        per_student: "OrderedDict[str, list[Match]]" = OrderedDict()
        for match in sorted(matches, key=lambda m: m.student_id):
            per_student.setdefault(match.student_id, []).append(match)

        semaphore = asyncio.Semaphore(self.max_workers)
        stopped = False

        async def work(student_id: str, student_matches: list[Match]) -> None:
            nonlocal stopped
            async with semaphore:
                if stopped or _should_stop(cancel, deadline, loop):
                    stopped = True
                    return
                async with self.student_lock(institution_id, student_id):
                    for match in student_matches:
                        action = await self._execute_isolated(
                            institution_id,
                            match,
                            students_by_id[student_id],
                            rules_by_id[match.rule_id],
                            signals[student_id],
                            now,
                        )
                        _tally(result, action)

        await asyncio.gather(*(work(sid, ms) for sid, ms in per_student.items()))

        result.cancelled = stopped
        if stopped:
            result.status = BatchStatus.CANCELLED
        elif result.errors:
            result.status = BatchStatus.PARTIAL
        result.finished_at = utcnow()

        logger.info(
            "batch_completed",
            institution_id=institution_id,
            mode=mode.value,
            status=result.status.value,
            analyzed=result.analyzed,
            matches=result.matches,
            executed=result.executed,
            suppressed=result.suppressed,
            failed=result.failed,
            errors=len(result.errors),
        )
        return result

    async def _rescore(
        self, uow: StoreSession, institution_id: str, students: list[Student], now: datetime
    ) -> list[Student]:
        rescored: list[Student] = []
        for student in students:
            score = heuristic_risk_score(student, now)
            if student.risk_score == score:
                rescored.append(student)
                continue
            version = await uow.update_student(institution_id, student.id, {"risk_score": score})
            rescored.append(
                student.model_copy(
                    update={"risk_score": score, "version": version or student.version}
                )
            )
        logger.info("students_rescored", institution_id=institution_id, students=len(students))
        return rescored

    # ── Event mode ─────────────────────────────────────────────────────

    async def process_change(
        self, event: ChangeEvent, now: Optional[datetime] = None
    ) -> BatchResult:
        """Evaluate one changed student; same dedup path as batch mode."""
        now = now or utcnow()
        institution_id = event.institution_id
        result = BatchResult(
            institution_id=institution_id, mode=EvaluationMode.EVENT, started_at=now
        )

        async with self.student_lock(institution_id, event.student_id):
            try:
                async with self.store.session() as uow:
                    thresholds = await self._thresholds(uow, institution_id)
                    student = await self._student(uow, institution_id, event.student_id)
                    rules = await uow.list_rules(institution_id, active_only=True)
                    obligations = await uow.list_obligations(institution_id, [student.id])
            except DataIntegrityError as e:
                logger.warning(
                    "change_skipped_invalid_record",
                    institution_id=institution_id,
                    student_id=event.student_id,
                    error=e.message,
                )
                result.errors.append(
                    BatchError(kind=e.kind, message=e.message, student_id=event.student_id)
                )
                result.status = BatchStatus.PARTIAL
                result.finished_at = utcnow()
                return result

            signal = derive_signal(student, thresholds, now, obligations.get(student.id))
            if signal.issues:
                result.errors.append(_integrity_error(student.id, signal.issues))
            result.analyzed = 1

            evaluation = self.evaluator.evaluate(
                [student], rules, {student.id: signal}, EvaluationMode.EVENT, change=event.kind
            )
            result.errors.extend(evaluation.errors)
            result.matches = len(evaluation.matches)

            rules_by_id = {r.id: r for r in rules}
            for match in evaluation.matches:
                action = await self._execute_isolated(
                    institution_id, match, student, rules_by_id[match.rule_id], signal, now
                )
                _tally(result, action)

        if result.errors:
            result.status = BatchStatus.PARTIAL
        result.finished_at = utcnow()
        logger.info(
            "change_processed",
            institution_id=institution_id,
            student_id=event.student_id,
            kind=event.kind.value,
            matches=result.matches,
            executed=result.executed,
            suppressed=result.suppressed,
        )
        return result

    # ── Administrator operations ───────────────────────────────────────

    async def test_rule(
        self, institution_id: str, rule_id: str, now: Optional[datetime] = None
    ) -> Optional[ActionResult]:
        """
        Run a rule against its first matching student without dedup
        suppression. Returns None when no student matches.
        """
        now = now or utcnow()
        async with self.store.session() as uow:
            thresholds = await self._thresholds(uow, institution_id)
            rule = await uow.get_rule(institution_id, rule_id)
            if rule is None:
                raise NotFoundError(f"Rule '{rule_id}' not found", details={"rule_id": rule_id})
            students = await uow.list_students(institution_id)
            obligations = await uow.list_obligations(institution_id)

        validate_rule(rule)
        rule = rule.model_copy(update={"is_active": True})
        signals = {
            s.id: derive_signal(s, thresholds, now, obligations.get(s.id)) for s in students
        }
        mode = TEST_MODES[TriggerType(rule.trigger_type)]
        evaluation = self.evaluator.evaluate(students, [rule], signals, mode)
        if not evaluation.matches:
            logger.info("rule_test_no_match", institution_id=institution_id, rule_id=rule_id)
            return None

        match = evaluation.matches[0]
        student = next(s for s in students if s.id == match.student_id)
        async with self.student_lock(institution_id, student.id):
            action = await self.executor.execute(
                institution_id, match, student, rule, signals[student.id], now,
                enforce_dedup=False,
            )
        logger.info(
            "rule_tested",
            institution_id=institution_id,
            rule_id=rule_id,
            student_id=student.id,
            status=action.status.value,
        )
        return action

    async def run_intervention(
        self,
        institution_id: str,
        student_id: str,
        action_type: str,
        action_config: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> ActionResult:
        """Manual intervention: straight to the executor, no matching or dedup."""
        try:
            ActionType(action_type)
        except ValueError:
            raise ConfigurationError(
                f"Unknown action type '{action_type}'",
                details={"action_type": action_type},
            )

        now = now or utcnow()
        async with self.student_lock(institution_id, student_id):
            student, signal = await self._load_signal(institution_id, student_id, now)
            return await self.executor.execute_manual(
                institution_id, student, signal, action_type, action_config, now
            )

    async def student_signal(
        self, institution_id: str, student_id: str, now: Optional[datetime] = None
    ) -> Signal:
        _, signal = await self._load_signal(institution_id, student_id, now or utcnow())
        return signal

    async def duplicates(self, institution_id: str) -> dict[str, list[str]]:
        async with self.store.session() as uow:
            await self._thresholds(uow, institution_id)
            students = await uow.list_students(institution_id)
        return find_duplicates(students)

    # ── Helpers ────────────────────────────────────────────────────────

    async def _load_signal(
        self, institution_id: str, student_id: str, now: datetime
    ) -> tuple[Student, Signal]:
        async with self.store.session() as uow:
            thresholds = await self._thresholds(uow, institution_id)
            student = await self._student(uow, institution_id, student_id)
            obligations = await uow.list_obligations(institution_id, [student_id])
        return student, derive_signal(student, thresholds, now, obligations.get(student_id))

    @staticmethod
    async def _thresholds(uow: StoreSession, institution_id: str) -> Thresholds:
        institution_settings = await uow.get_institution_settings(institution_id)
        if institution_settings is None:
            raise NotFoundError(
                f"Institution '{institution_id}' not found",
                details={"institution_id": institution_id},
            )
        return Thresholds.from_settings(institution_settings.get("thresholds"))

    @staticmethod
    async def _student(uow: StoreSession, institution_id: str, student_id: str) -> Student:
        student = await uow.get_student(institution_id, student_id)
        if student is None:
            raise NotFoundError(
                f"Student '{student_id}' not found", details={"student_id": student_id}
            )
        return student

    async def _execute_isolated(
        self,
        institution_id: str,
        match: Match,
        student: Student,
        rule: AutomationRule,
        signal: Signal,
        now: datetime,
    ) -> ActionResult:
        """Execute one match; unexpected failures become a failed result."""
        try:
            return await self.executor.execute(institution_id, match, student, rule, signal, now)
        except Exception as e:
            logger.error(
                "action_failed",
                institution_id=institution_id,
                student_id=student.id,
                rule_id=rule.id,
                error=str(e),
                exc_info=True,
            )
            return ActionResult(
                rule_id=rule.id,
                student_id=student.id,
                action_type=rule.action_type,
                status=ActionStatus.FAILED,
                detail=str(e),
                error=BatchError(
                    kind="unexpected",
                    message=str(e) or type(e).__name__,
                    student_id=student.id,
                    rule_id=rule.id,
                ),
            )


def _should_stop(
    cancel: Optional[asyncio.Event], deadline: Optional[float], loop: asyncio.AbstractEventLoop
) -> bool:
    if cancel is not None and cancel.is_set():
        return True
    return deadline is not None and loop.time() >= deadline


def _integrity_error(student_id: str, issues: list[str]) -> BatchError:
    exc = DataIntegrityError("; ".join(issues), details={"student_id": student_id})
    return BatchError(kind=exc.kind, message=exc.message, student_id=student_id)


def _tally(result: BatchResult, action: ActionResult) -> None:
    if action.status == ActionStatus.EXECUTED:
        result.executed += 1
    elif action.status == ActionStatus.SUPPRESSED:
        result.suppressed += 1
    elif action.status in (ActionStatus.FAILED, ActionStatus.REJECTED):
        result.failed += 1
    if action.error is not None:
        result.errors.append(action.error)
