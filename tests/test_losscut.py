from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

from task_lifecycle import (
    LOSS_CUT_RULES,
    ComplexityTrend,
    ContractViolation,
    FailureEvent,
    FailureRecord,
    LossCutDecision,
    LossCutJudge,
    LossCutPolicy,
    LossCutState,
    RuntimeSettings,
)


START = datetime(2026, 1, 1, 9, 0, tzinfo=UTC)


def _record(
    message: str,
    *,
    stage: str = "test",
    minute: int = 1,
    trend: ComplexityTrend = ComplexityTrend.UNCHANGED,
) -> FailureRecord:
    event = FailureEvent(stage=stage, message=message, occurred_at=START + timedelta(minutes=minute))
    return FailureRecord(event=event, remediation_attempted="patched", complexity_trend=trend)


def _state(*records: FailureRecord) -> LossCutState:
    return LossCutState(
        failure_count=len(records),
        loop_started_at=START,
        last_failure=records[-1].event if records else None,
        failure_history=records,
    )


def _probing_judge(calls: list[str]) -> LossCutJudge:
    def spy(rule):
        def predicate(state, policy, now):
            calls.append(rule.name)
            return rule.predicate(state, policy, now)

        return replace(rule, predicate=predicate)

    return LossCutJudge(rules=[spy(rule) for rule in LOSS_CUT_RULES])


def test_rule_order_is_fixed() -> None:
    assert [rule.name for rule in LOSS_CUT_RULES] == [
        "failure_count",
        "time_limit",
        "complexity_increased",
        "recurring_failure",
    ]


def test_no_failures_continues() -> None:
    verdict = LossCutJudge().judge(_state(), now=START)
    assert verdict.decision == LossCutDecision.CONTINUE
    assert verdict.rule is None


def test_failure_count_short_circuits_remaining_rules() -> None:
    calls: list[str] = []
    judge = _probing_judge(calls)
    # Every other condition would also hold: late, increasing, recurring.
    state = _state(
        _record("boom"),
        _record("boom", minute=10),
        _record("boom", minute=40, trend=ComplexityTrend.INCREASED),
    )

    verdict = judge.judge(state, now=START + timedelta(hours=2))

    assert verdict.decision == LossCutDecision.CUT
    assert verdict.rule == "failure_count"
    assert calls == ["failure_count"]


def test_failure_count_cuts_regardless_of_other_fields() -> None:
    judge = LossCutJudge()
    for trend in ComplexityTrend:
        state = _state(_record("a"), _record("b"), _record("c", trend=trend))
        assert judge.judge(state, now=START).decision == LossCutDecision.CUT
        assert judge.judge(state, now=START + timedelta(hours=1)).rule == "failure_count"


def test_all_rules_evaluated_when_none_holds() -> None:
    calls: list[str] = []
    verdict = _probing_judge(calls).judge(_state(_record("boom")), now=START + timedelta(minutes=5))
    assert verdict.decision == LossCutDecision.CONTINUE
    assert calls == [rule.name for rule in LOSS_CUT_RULES]


def test_failure_at_minute_31_cuts_on_time_limit() -> None:
    calls: list[str] = []
    state = _state(_record("slow test", minute=31))

    verdict = _probing_judge(calls).judge(state, now=START + timedelta(minutes=31))

    assert verdict.decision == LossCutDecision.CUT
    assert verdict.rule == "time_limit"
    assert calls == ["failure_count", "time_limit"]


def test_time_limit_boundary_is_inclusive() -> None:
    judge = LossCutJudge()
    state = _state(_record("boom"))
    assert judge.judge(state, now=START + timedelta(minutes=30)).rule == "time_limit"
    assert judge.judge(state, now=START + timedelta(minutes=30) - timedelta(seconds=1)).rule is None


def test_only_most_recent_trend_counts() -> None:
    judge = LossCutJudge()
    increasing_last = _state(_record("a"), _record("b", trend=ComplexityTrend.INCREASED))
    increasing_earlier = _state(_record("a", trend=ComplexityTrend.INCREASED), _record("b"))

    assert judge.judge(increasing_last, now=START).rule == "complexity_increased"
    assert judge.judge(increasing_earlier, now=START).decision == LossCutDecision.CONTINUE


def test_recurrence_excludes_the_current_entry() -> None:
    judge = LossCutJudge()
    single = _state(_record("flaky"))
    repeated = _state(_record("flaky"), _record("flaky", minute=2))
    same_message_other_stage = _state(_record("flaky", stage="lint"), _record("flaky", minute=2))

    assert judge.judge(single, now=START).decision == LossCutDecision.CONTINUE
    assert judge.judge(repeated, now=START).rule == "recurring_failure"
    assert judge.judge(same_message_other_stage, now=START).decision == LossCutDecision.CONTINUE


def test_three_distinct_failures_continue_twice_then_cut() -> None:
    judge = LossCutJudge()
    records = [_record("first"), _record("second", minute=2), _record("third", minute=3)]
    now = START + timedelta(minutes=4)
    decisions = [judge.judge(_state(*records[:count]), now=now).decision for count in (1, 2, 3)]
    assert decisions == [LossCutDecision.CONTINUE, LossCutDecision.CONTINUE, LossCutDecision.CUT]


def test_judge_is_deterministic() -> None:
    state = _state(_record("a"), _record("b", trend=ComplexityTrend.DECREASED))
    now = START + timedelta(minutes=12)
    assert LossCutJudge().judge(state, now=now) == LossCutJudge().judge(state, now=now)
    judge = LossCutJudge()
    assert judge.judge(state, now=now) == judge.judge(state, now=now)


def test_judging_an_unrecorded_failure_is_rejected() -> None:
    recorded = _record("recorded")
    unrecorded = FailureEvent(stage="test", message="not yet recorded", occurred_at=START)
    state = LossCutState(
        failure_count=2,
        loop_started_at=START,
        last_failure=unrecorded,
        failure_history=(recorded,),
    )
    with pytest.raises(ContractViolation):
        LossCutJudge().judge(state, now=START)

    empty_history = LossCutState(failure_count=1, loop_started_at=START, last_failure=unrecorded)
    with pytest.raises(ContractViolation):
        LossCutJudge().judge(empty_history, now=START)


def test_recorded_failure_with_zero_count_is_rejected() -> None:
    record = _record("boom")
    state = LossCutState(failure_count=0, loop_started_at=START, last_failure=record.event, failure_history=(record,))
    with pytest.raises(ContractViolation):
        LossCutJudge().judge(state, now=START)


def test_policy_follows_settings() -> None:
    settings = RuntimeSettings(loss_cut_max_failures=5, loss_cut_time_limit_seconds=60)
    policy = LossCutPolicy.from_settings(settings)
    assert policy == LossCutPolicy(max_failures=5, time_limit=timedelta(minutes=1))

    judge = LossCutJudge(policy)
    three = _state(_record("a"), _record("b"), _record("c"))
    assert judge.judge(three, now=START).decision == LossCutDecision.CONTINUE
    assert judge.judge(three, now=START + timedelta(minutes=1)).rule == "time_limit"
