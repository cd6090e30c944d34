import pytest

from task_lifecycle import (
    DELAYED_RULES,
    EscalationJudge,
    EscalationJudgment,
    EscalationOutcome,
    EscalationPolicy,
    EscalationRule,
    EscalationUrgency,
    ProblemAnalysis,
    RuntimeSettings,
)


def _analysis(**flags) -> ProblemAnalysis:
    return ProblemAnalysis(
        verbalization="integration test hangs after the schema change",
        cause_analysis="migration locks the table",
        essence="schema migration is not online-safe",
        **flags,
    )


def test_tier_one_flags_escalate_immediately() -> None:
    judge = EscalationJudge()
    for flag, rule in (
        ("has_security_issue", "security_issue"),
        ("has_production_impact", "production_impact"),
        ("has_data_loss_risk", "data_loss_risk"),
    ):
        judgment = judge.judge(_analysis(**{flag: True}))
        assert judgment.outcome == EscalationOutcome.ESCALATE
        assert judgment.urgency == EscalationUrgency.IMMEDIATE
        assert judgment.rule == rule
        assert judge.requires_immediate(_analysis(**{flag: True}))


def test_data_loss_with_many_retreats_is_immediate() -> None:
    judgment = EscalationJudge().judge(_analysis(has_data_loss_risk=True, retreat_count=5))
    assert judgment == EscalationJudgment(
        outcome=EscalationOutcome.ESCALATE,
        urgency=EscalationUrgency.IMMEDIATE,
        rule="data_loss_risk",
    )


def test_tier_one_masks_tier_two_entirely() -> None:
    calls: list[str] = []

    def spy(rule: EscalationRule) -> EscalationRule:
        def predicate(analysis, policy):
            calls.append(rule.name)
            return rule.predicate(analysis, policy)

        return EscalationRule(rule.name, predicate)

    judge = EscalationJudge(delayed_rules=[spy(rule) for rule in DELAYED_RULES])
    judgment = judge.judge(_analysis(has_security_issue=True, is_unknown_cause=True, retreat_count=9))

    assert judgment.urgency == EscalationUrgency.IMMEDIATE
    assert calls == []


def test_tier_two_flags_escalate_with_delay() -> None:
    judge = EscalationJudge()
    for flags, rule in (
        ({"retreat_count": 3}, "repeated_retreats"),
        ({"is_unknown_cause": True}, "unknown_cause"),
        ({"is_out_of_skill_scope": True}, "out_of_skill_scope"),
    ):
        judgment = judge.judge(_analysis(**flags))
        assert judgment.outcome == EscalationOutcome.ESCALATE
        assert judgment.urgency == EscalationUrgency.DELAYED
        assert judgment.rule == rule
        assert not judge.requires_immediate(_analysis(**flags))


def test_no_flags_resolve_to_self() -> None:
    judgment = EscalationJudge().judge(_analysis(retreat_count=2))
    assert judgment.outcome == EscalationOutcome.SELF
    assert judgment.urgency == EscalationUrgency.NONE
    assert judgment.rule is None


def test_retreat_threshold_follows_settings() -> None:
    judge = EscalationJudge(EscalationPolicy.from_settings(RuntimeSettings(escalation_retreat_threshold=5)))
    assert judge.judge(_analysis(retreat_count=4)).outcome == EscalationOutcome.SELF
    assert judge.judge(_analysis(retreat_count=5)).urgency == EscalationUrgency.DELAYED


def test_judgment_rejects_inconsistent_urgency() -> None:
    with pytest.raises(ValueError):
        EscalationJudgment(outcome=EscalationOutcome.SELF, urgency=EscalationUrgency.IMMEDIATE)
    with pytest.raises(ValueError):
        EscalationJudgment(outcome=EscalationOutcome.ESCALATE, urgency=EscalationUrgency.NONE)
