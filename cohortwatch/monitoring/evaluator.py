"""
Rule Evaluator: matches automation rules against derived signals.

Pipeline per pass:
1. Keep active rules whose trigger type participates in the evaluation mode
2. Validate trigger type, action type, and condition key (bad rules are skipped)
3. For each rule in creation order, for each student in id order:
   apply the stage filter, then the condition predicate
4. Emit one Match per (rule, student) pair

Pure and deterministic: identical inputs give identical matches in the
same order.
"""

import re
from typing import Callable, Iterable, Optional, Sequence

import structlog

from cohortwatch.exceptions import ConfigurationError
from cohortwatch.monitoring.schemas import (
    ActionType,
    AutomationRule,
    BatchError,
    ChangeKind,
    EngagementTier,
    EvaluationMode,
    EvaluationResult,
    Match,
    ObligationStatus,
    RiskTier,
    Signal,
    Student,
    TriggerType,
)

logger = structlog.get_logger(__name__)

Predicate = Callable[[Student, Signal], bool]

INACTIVE_PATTERN = re.compile(r"^inactive_(\d+)_days$")

MODE_TRIGGERS: dict[EvaluationMode, frozenset[TriggerType]] = {
    EvaluationMode.SCAN: frozenset({TriggerType.CONDITION_BASED}),
    EvaluationMode.SCHEDULED: frozenset(
        {TriggerType.CONDITION_BASED, TriggerType.TIME_BASED}
    ),
    EvaluationMode.EVENT: frozenset(
        {TriggerType.CONDITION_BASED, TriggerType.EVENT_BASED}
    ),
}


def _engagement_low(student: Student, signal: Signal) -> bool:
    return signal.engagement_tier == EngagementTier.LOW


def _risk_high(student: Student, signal: Signal) -> bool:
    return signal.risk_tier == RiskTier.CRITICAL


def _risk_moderate(student: Student, signal: Signal) -> bool:
    return signal.risk_tier in (RiskTier.MODERATE, RiskTier.CRITICAL)


def _documents_pending(student: Student, signal: Signal) -> bool:
    return signal.has_pending_documents


def _obligation_breach(student: Student, signal: Signal) -> bool:
    return any(o.status == ObligationStatus.BREACH for o in signal.obligations)


CONDITIONS: dict[str, Predicate] = {
    "engagement_low": _engagement_low,
    "risk_high": _risk_high,
    "risk_moderate": _risk_moderate,
    "documents_pending": _documents_pending,
    "obligation_breach": _obligation_breach,
}


def resolve_condition(condition: str) -> Predicate:
    """Look up the predicate for a condition key; raises ConfigurationError."""
    predicate = CONDITIONS.get(condition)
    if predicate is not None:
        return predicate

    m = INACTIVE_PATTERN.match(condition)
    if m:
        threshold = int(m.group(1))
        return lambda student, signal: signal.inactivity_days >= threshold

    raise ConfigurationError(
        f"Unknown condition '{condition}'",
        details={"condition": condition},
    )


def validate_rule(rule: AutomationRule) -> Optional[Predicate]:
    """
    Check a rule's configuration and return its condition predicate.

    Returns None for time/event rules without a condition (they match every
    student in scope). Raises ConfigurationError for anything unknown.
    """
    try:
        trigger = TriggerType(rule.trigger_type)
    except ValueError:
        raise ConfigurationError(
            f"Unknown trigger type '{rule.trigger_type}'",
            details={"rule_id": rule.id, "trigger_type": rule.trigger_type},
        )
    try:
        ActionType(rule.action_type)
    except ValueError:
        raise ConfigurationError(
            f"Unknown action type '{rule.action_type}'",
            details={"rule_id": rule.id, "action_type": rule.action_type},
        )

    condition = rule.condition
    if condition is None:
        if trigger == TriggerType.CONDITION_BASED:
            raise ConfigurationError(
                "Condition-based rule has no condition",
                details={"rule_id": rule.id},
            )
        return None
    return resolve_condition(condition)


def _in_stage_scope(rule: AutomationRule, student: Student) -> bool:
    stages = rule.trigger_config.get("stages")
    if not stages:
        return True
    return student.stage.value in {str(s) for s in stages}


def _participates(
    rule: AutomationRule, mode: EvaluationMode, change: Optional[ChangeKind]
) -> bool:
    try:
        trigger = TriggerType(rule.trigger_type)
    except ValueError:
        # Reported by validate_rule
        return True
    if trigger not in MODE_TRIGGERS[mode]:
        return False
    if trigger == TriggerType.EVENT_BASED:
        wanted = rule.trigger_config.get("event")
        if wanted and change is not None and wanted != change.value:
            return False
    return True


def order_rules(rules: Iterable[AutomationRule]) -> list[AutomationRule]:
    return sorted(rules, key=lambda r: (r.created_at, r.id))


class RuleEvaluator:
    """Stateless evaluator of flat automation rules."""

    def evaluate(
        self,
        students: Sequence[Student],
        rules: Sequence[AutomationRule],
        signals: dict[str, Signal],
        mode: EvaluationMode = EvaluationMode.SCAN,
        change: Optional[ChangeKind] = None,
    ) -> EvaluationResult:
        """
        Evaluate every active rule against every student.

        Args:
            students: Student snapshots for one institution
            rules: Automation rules (inactive ones are ignored)
            signals: student_id → Signal, derived for this pass
            mode: Which trigger types participate
            change: Change kind that caused an event-mode pass

        Returns:
            EvaluationResult with ordered matches and per-rule config errors
        """
        result = EvaluationResult()
        seen: set[tuple[str, str]] = set()
        ordered_students = sorted(students, key=lambda s: s.id)

        for rule in order_rules(rules):
            if not rule.is_active or not _participates(rule, mode, change):
                continue

            try:
                predicate = validate_rule(rule)
            except ConfigurationError as exc:
                logger.warning(
                    "rule_skipped_configuration",
                    rule_id=rule.id,
                    rule_name=rule.name,
                    error=exc.message,
                )
                result.errors.append(
                    BatchError(kind=exc.kind, message=exc.message, rule_id=rule.id)
                )
                continue

            for student in ordered_students:
                signal = signals.get(student.id)
                if signal is None:
                    continue
                if not _in_stage_scope(rule, student):
                    continue
                if predicate is not None and not predicate(student, signal):
                    continue

                key = (rule.id, student.id)
                if key in seen:
                    continue
                seen.add(key)
                result.matches.append(Match(rule_id=rule.id, student_id=student.id))

        logger.debug(
            "rules_evaluated",
            mode=mode.value,
            rules=len(rules),
            students=len(students),
            matches=len(result.matches),
            errors=len(result.errors),
        )
        return result
