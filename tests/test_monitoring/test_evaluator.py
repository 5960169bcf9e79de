"""
Tests for the Rule Evaluator.

Covers:
- Condition predicates
- Mode / trigger-type participation, event names, stage filters
- Configuration errors isolate the offending rule
- Deterministic ordering, no duplicate pairs
"""

import random
from datetime import timedelta

import pytest

from cohortwatch.exceptions import ConfigurationError
from cohortwatch.monitoring.evaluator import RuleEvaluator, resolve_condition
from cohortwatch.monitoring.schemas import (
    ChangeKind,
    EvaluationMode,
    LifecycleStage,
    Match,
    Obligation,
    ObligationStatus,
)
from cohortwatch.monitoring.signals import Thresholds, derive_signal
from conftest import NOW, make_rule, make_student


def _evaluate(students, rules, mode=EvaluationMode.SCAN, change=None, persisted=None):
    signals = {
        s.id: derive_signal(s, Thresholds(), NOW, (persisted or {}).get(s.id)) for s in students
    }
    return RuleEvaluator().evaluate(students, rules, signals, mode, change=change)


@pytest.fixture
def cohort():
    return [
        make_student("stu_a", risk=85, engagement=20, inactive_days=12),
        make_student("stu_b", risk=50, engagement=55, inactive_days=6),
        make_student("stu_c", risk=10, engagement=90, inactive_days=0,
                     documents=[("transcript", "pending")]),
    ]


# ── Conditions ────────────────────────────────────────────────────────


class TestConditions:
    @pytest.mark.parametrize(
        "condition,expected",
        [
            ("risk_high", ["stu_a"]),
            ("risk_moderate", ["stu_a", "stu_b"]),
            ("engagement_low", ["stu_a"]),
            ("documents_pending", ["stu_c"]),
            ("inactive_6_days", ["stu_a", "stu_b"]),
            ("inactive_7_days", ["stu_a"]),
            ("obligation_breach", ["stu_a", "stu_b"]),
        ],
    )
    def test_condition_matches(self, cohort, condition, expected):
        result = _evaluate(cohort, [make_rule("r1", condition)])
        assert [m.student_id for m in result.matches] == expected
        assert result.errors == []

    def test_persisted_obligation_breach(self, cohort):
        persisted = {
            "stu_c": [
                Obligation(student_id="stu_c", name="Visa", requirement="Valid", status=ObligationStatus.BREACH)
            ]
        }
        result = _evaluate(cohort, [make_rule("r1", "obligation_breach")], persisted=persisted)
        assert [m.student_id for m in result.matches] == ["stu_a", "stu_b", "stu_c"]

    def test_documents_pending_reads_signal_only(self, cohort):
        stu_c = cohort[2]
        signal = derive_signal(stu_c, Thresholds(), NOW).model_copy(
            update={"has_pending_documents": False}
        )
        result = RuleEvaluator().evaluate(
            [stu_c], [make_rule("r1", "documents_pending")], {stu_c.id: signal},
            EvaluationMode.SCAN,
        )
        assert result.matches == []

    def test_unknown_condition_raises(self):
        with pytest.raises(ConfigurationError):
            resolve_condition("moon_phase_full")


# ── Configuration errors ──────────────────────────────────────────────


class TestConfigurationErrors:
    def test_unknown_condition_skips_only_that_rule(self, cohort):
        rules = [make_rule("r_bad", "moon_phase_full"), make_rule("r_good", "risk_high")]
        result = _evaluate(cohort, rules)
        assert result.matches == [Match(rule_id="r_good", student_id="stu_a")]
        assert len(result.errors) == 1
        assert result.errors[0].kind == "configuration"
        assert result.errors[0].rule_id == "r_bad"

    def test_unknown_trigger_type(self, cohort):
        result = _evaluate(cohort, [make_rule("r1", "risk_high", trigger_type="lunar")])
        assert result.matches == []
        assert result.errors[0].kind == "configuration"

    def test_unknown_action_type(self, cohort):
        result = _evaluate(cohort, [make_rule("r1", "risk_high", action_type="send_pigeon")])
        assert result.matches == []
        assert "send_pigeon" in result.errors[0].message

    def test_condition_based_rule_needs_condition(self, cohort):
        result = _evaluate(cohort, [make_rule("r1", None)])
        assert result.matches == []
        assert len(result.errors) == 1


# ── Modes & filters ───────────────────────────────────────────────────


class TestModes:
    def test_inactive_rules_never_match(self, cohort):
        assert _evaluate(cohort, [make_rule("r1", "risk_high", is_active=False)]).matches == []

    def test_time_rules_only_on_scheduled_ticks(self, cohort):
        rule = make_rule("r_time", None, trigger_type="time_based")
        assert _evaluate(cohort, [rule], EvaluationMode.SCAN).matches == []
        scheduled = _evaluate(cohort, [rule], EvaluationMode.SCHEDULED)
        assert [m.student_id for m in scheduled.matches] == ["stu_a", "stu_b", "stu_c"]

    def test_event_rules_match_their_event(self, cohort):
        rule = make_rule(
            "r_event", None, trigger_type="event_based", trigger_extra={"event": "record_created"}
        )
        updated = _evaluate(cohort, [rule], EvaluationMode.EVENT, ChangeKind.RECORD_UPDATED)
        created = _evaluate(cohort, [rule], EvaluationMode.EVENT, ChangeKind.RECORD_CREATED)
        assert updated.matches == []
        assert len(created.matches) == 3

    def test_event_rules_ignored_in_scan(self, cohort):
        rule = make_rule("r_event", "risk_high", trigger_type="event_based")
        assert _evaluate(cohort, [rule], EvaluationMode.SCAN).matches == []

    def test_stage_filter(self):
        students = [
            make_student("stu_a", risk=90, stage=LifecycleStage.ONBOARDING),
            make_student("stu_b", risk=90, stage=LifecycleStage.ACTIVE),
        ]
        rule = make_rule("r1", "risk_high", trigger_extra={"stages": ["onboarding"]})
        assert [m.student_id for m in _evaluate(students, [rule]).matches] == ["stu_a"]


# ── Determinism ───────────────────────────────────────────────────────


class TestDeterminism:
    def test_rule_creation_order_then_student_id(self, cohort):
        older = make_rule("r_zzz", "risk_moderate", created_at=NOW - timedelta(days=10))
        newer = make_rule("r_aaa", "risk_high", created_at=NOW - timedelta(days=1))
        result = _evaluate(cohort, [newer, older])
        assert [(m.rule_id, m.student_id) for m in result.matches] == [
            ("r_zzz", "stu_a"),
            ("r_zzz", "stu_b"),
            ("r_aaa", "stu_a"),
        ]

    def test_same_inputs_same_output(self, cohort):
        rules = [make_rule("r1", "risk_moderate"), make_rule("r2", "inactive_5_days")]
        first = _evaluate(cohort, rules)
        shuffled_students = cohort[:]
        shuffled_rules = rules[:]
        random.Random(7).shuffle(shuffled_students)
        random.Random(7).shuffle(shuffled_rules)
        second = _evaluate(shuffled_students, shuffled_rules)
        assert first.matches == second.matches

    def test_no_duplicate_pairs(self, cohort):
        result = _evaluate(cohort + [cohort[0]], [make_rule("r1", "risk_high")])
        assert result.matches == [Match(rule_id="r1", student_id="stu_a")]
