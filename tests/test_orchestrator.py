from datetime import timedelta

import pytest

from task_lifecycle import (
    ClassificationResult,
    CompletionType,
    ContractViolation,
    Division,
    GateViolation,
    LifecycleHooks,
    LifecycleOrchestrator,
    PrerequisiteResult,
    PrincipleCheckResult,
    PromptTechnique,
    RecoveryFlow,
    RecoveryHooks,
    RemediationApproach,
    RuntimeSettings,
    TaskCharacteristic,
    VerificationHooks,
    VerificationLoop,
    VirtualClock,
)


TASK = "Add resumable uploads to the storage client"
STAGES = ("typecheck", "lint", "test")


class FakePrerequisiteGate:
    def __init__(self, *results: PrerequisiteResult) -> None:
        self.results = list(results) or [PrerequisiteResult(passed=True)]
        self.seen: list[str] = []

    def evaluate(self, task_description: str) -> PrerequisiteResult:
        self.seen.append(task_description)
        return self.results[min(len(self.seen), len(self.results)) - 1]


class FakeClassifier:
    def __init__(self, division: Division) -> None:
        technique = PromptTechnique.CHAIN_OF_THOUGHT if division == Division.MODEL_LED else None
        self.result = ClassificationResult(
            division=division,
            technique=technique,
            characteristic=TaskCharacteristic.INITIAL_DRAFT,
        )

    def classify(self, task_description: str) -> ClassificationResult:
        return self.result


def _orchestrator(
    *,
    division: Division = Division.HUMAN_LED,
    gate: FakePrerequisiteGate | None = None,
    hooks: LifecycleHooks | None = None,
    verification_hooks: VerificationHooks | None = None,
    recovery_hooks: RecoveryHooks | None = None,
    **settings,
) -> tuple[LifecycleOrchestrator, VirtualClock]:
    clock = VirtualClock()
    runtime = RuntimeSettings(**settings).normalized()
    orchestrator = LifecycleOrchestrator(
        prerequisite_gate=gate if gate is not None else FakePrerequisiteGate(),
        classifier=FakeClassifier(division),
        settings=runtime,
        clock=clock,
        hooks=hooks,
        verification_loop=VerificationLoop(settings=runtime, clock=clock, hooks=verification_hooks),
        recovery_flow=RecoveryFlow(settings=runtime, clock=clock, hooks=recovery_hooks),
    )
    return orchestrator, clock


def _pass_all(session) -> None:
    for stage in STAGES:
        assert session.suspension.component == "verification"
        session.send({"type": "check_complete", "stage": stage, "passed": True})


def _fail(session, clock: VirtualClock, message: str) -> None:
    stage = session.suspension.stage
    session.send(
        {
            "type": "check_complete",
            "stage": stage,
            "passed": False,
            "failure": {"stage": stage, "message": message, "occurred_at": clock.now().isoformat()},
        }
    )


def test_blank_task_description_is_rejected() -> None:
    orchestrator, _ = _orchestrator()
    with pytest.raises(ContractViolation):
        orchestrator.start("   ")


def test_human_led_task_completes_after_verification() -> None:
    executed: list[str] = []
    orchestrator, _ = _orchestrator(hooks=LifecycleHooks(execute_human=executed.append))
    session = orchestrator.start(TASK)

    assert session.suspension.state == "gate_check"
    assert set(session.expects) == {"gate_passed", "gate_violated"}
    session.send({"type": "gate_passed"})

    assert session.suspension.state == "human_execution"
    assert executed == [TASK]
    session.send({"type": "human_execution_complete", "output": "patch applied"})

    assert session.child is not None
    assert session.suspension.stage == "typecheck"
    _pass_all(session)

    assert session.is_terminal
    assert session.child is None
    outcome = session.output
    assert outcome.completion_type == CompletionType.COMPLETED
    assert outcome.execution_result.output == "patch applied"
    assert outcome.execution_result.produced_by_model is False
    assert outcome.execution_result.human_approved is True
    assert outcome.recovery_result is None


def test_model_output_requires_review_before_verification() -> None:
    reviewed: list[str] = []
    orchestrator, _ = _orchestrator(
        division=Division.MODEL_LED,
        hooks=LifecycleHooks(review_output=reviewed.append),
    )
    session = orchestrator.start(TASK)
    session.send({"type": "gate_passed"})
    assert session.suspension.state == "model_execution"
    session.send({"type": "model_execution_complete", "output": "generated patch"})

    assert session.suspension.state == "human_review"
    assert reviewed == ["generated patch"]
    # Unreviewed model output never reaches verification, so it cannot complete.
    with pytest.raises(ContractViolation):
        session.send({"type": "check_complete", "stage": "typecheck", "passed": True})
    assert not session.is_terminal

    session.send({"type": "review_complete", "approved": False})
    _pass_all(session)

    outcome = session.output
    assert outcome.completion_type == CompletionType.COMPLETED
    assert outcome.execution_result.produced_by_model is True
    assert outcome.execution_result.human_approved is False
    assert session.values["classification"]["technique"] == "chain_of_thought"


def test_policy_violation_with_passing_checks_loops_back_to_gate() -> None:
    flagged = {"count": 0}

    def agent_behavior_monitor(stage, request) -> PrincipleCheckResult:
        if stage == "test" and flagged["count"] == 0:
            flagged["count"] += 1
            return PrincipleCheckResult(passed=False, violations=("skipped review",), policy_violation=True)
        return PrincipleCheckResult()

    gate = FakePrerequisiteGate()
    orchestrator, _ = _orchestrator(
        gate=gate,
        verification_hooks=VerificationHooks(agent_behavior_monitor=agent_behavior_monitor),
    )
    session = orchestrator.start(TASK)
    session.send({"type": "gate_passed"})
    session.send({"type": "human_execution_complete", "output": "first attempt"})
    _pass_all(session)

    assert not session.is_terminal
    assert session.suspension.state == "gate_check"
    assert session.suspension.detail == {"loop_back": True}
    values = session.values
    assert values["gate_loopbacks"] == 1
    assert values["verification"]["passed"] is True
    assert values["verification"]["policy_violation"] is True
    assert values["execution"] is None
    assert values["classification"] is None

    session.send({"type": "gate_passed"})
    session.send({"type": "human_execution_complete", "output": "second attempt"})
    _pass_all(session)

    assert session.output.completion_type == CompletionType.COMPLETED
    assert session.output.execution_result.output == "second attempt"
    assert gate.seen == [TASK, TASK]


def test_gate_violation_loops_through_gate_fix() -> None:
    fixed: list[tuple[GateViolation, ...]] = []
    orchestrator, _ = _orchestrator(hooks=LifecycleHooks(fix_gate_violations=fixed.append))
    session = orchestrator.start(TASK)

    session.send({"type": "gate_violated", "violations": ["human_final_judgment", "pre_deploy_verification"]})

    assert session.suspension.state == "gate_fix"
    assert fixed == [(GateViolation.HUMAN_FINAL_JUDGMENT, GateViolation.PRE_DEPLOY_VERIFICATION)]
    with pytest.raises(ContractViolation):
        session.send({"type": "gate_passed"})

    session.send({"type": "gate_fixed"})
    assert session.suspension.state == "gate_check"
    session.send({"type": "gate_passed"})
    assert session.suspension.state == "human_execution"


def test_gate_violation_requires_at_least_one_rule() -> None:
    orchestrator, _ = _orchestrator()
    session = orchestrator.start(TASK)
    with pytest.raises(ContractViolation):
        session.send({"type": "gate_violated", "violations": []})


def test_failed_prerequisites_loop_through_task_adjustment() -> None:
    adjusted: list[PrerequisiteResult] = []
    gate = FakePrerequisiteGate(
        PrerequisiteResult(passed=False, failed_level=2, issues=("acceptance criteria missing",)),
        PrerequisiteResult(passed=True),
    )
    orchestrator, _ = _orchestrator(
        gate=gate,
        hooks=LifecycleHooks(adjust_task=lambda task, result: adjusted.append(result)),
    )
    session = orchestrator.start(TASK)
    session.send({"type": "gate_passed"})

    assert session.suspension.state == "task_adjustment"
    assert adjusted[0].failed_level == 2

    revised = TASK + " with a 5 MiB chunk size"
    session.send({"type": "adjustment_done", "task_description": revised})

    assert session.suspension.state == "human_execution"
    assert gate.seen == [TASK, revised]
    assert session.values["adjustment_count"] == 1


def test_abandoned_verification_exits_through_recovery() -> None:
    selector_calls: list[int] = []

    def select_approach(analysis, *, attempt, allow_fallback):
        selector_calls.append(attempt)
        return RemediationApproach.REDECOMPOSE

    orchestrator, clock = _orchestrator(
        recovery_hooks=RecoveryHooks(select_approach=select_approach),
        share_recovery_with_team=True,
    )
    session = orchestrator.start(TASK)
    session.send({"type": "gate_passed"})
    session.send({"type": "human_execution_complete", "output": "patch"})

    for message in ("first", "second", "third"):
        _fail(session, clock, message)
        if session.suspension.component == "verification":
            session.send({"type": "fix_applied"})

    assert session.suspension.component == "recovery"
    assert session.values["verification"]["abandoned"] is True

    for event in (
        {"type": "problem_verbalized"},
        {"type": "cause_analyzed"},
        {
            "type": "essence_identified",
            "analysis": {"verbalization": "v", "cause_analysis": "c", "essence": "chunking is wrong"},
        },
        {"type": "redecompose_complete"},
        {"type": "learning_recorded"},
        {"type": "workaround_documented"},
        {"type": "team_shared"},
    ):
        session.send(event)

    assert session.is_terminal
    outcome = session.output
    assert outcome.completion_type == CompletionType.RECOVERY_EXIT
    assert outcome.execution_result is None
    assert outcome.recovery_result.recovered is True
    assert outcome.recovery_result.approach == RemediationApproach.REDECOMPOSE
    assert outcome.recovery_result.shared_with_team is True
    assert outcome.recovery_result.learning.pattern == "typecheck: third (chunking is wrong)"
    assert selector_calls == [1]


def test_verification_deadline_fires_through_the_lifecycle() -> None:
    orchestrator, clock = _orchestrator()
    session = orchestrator.start(TASK)
    session.send({"type": "gate_passed"})
    session.send({"type": "human_execution_complete", "output": "patch"})

    clock.advance(timedelta(minutes=30) - timedelta(seconds=1))
    assert session.suspension.component == "verification"

    clock.advance(timedelta(seconds=1))

    assert session.suspension.component == "recovery"
    assert session.suspension.state == "verbalizing"
    assert session.values["verification"]["last_failure"] is None


def test_finished_lifecycle_rejects_further_events() -> None:
    orchestrator, _ = _orchestrator()
    session = orchestrator.start(TASK)
    session.send({"type": "gate_passed"})
    session.send({"type": "human_execution_complete", "output": "patch"})
    _pass_all(session)
    with pytest.raises(ContractViolation):
        session.send({"type": "gate_passed"})


def test_policy_violation_with_abandoned_verification_loops_back_to_gate() -> None:
    def collaboration_monitor(stage, request) -> PrincipleCheckResult:
        return PrincipleCheckResult(passed=False, violations=("no pairing on risky change",), policy_violation=True)

    recovery_started: list[str] = []
    orchestrator, clock = _orchestrator(
        verification_hooks=VerificationHooks(collaboration_monitor=collaboration_monitor),
        recovery_hooks=RecoveryHooks(verbalize_problem=lambda *_args: recovery_started.append("verbalize")),
    )
    session = orchestrator.start(TASK)
    session.send({"type": "gate_passed"})
    session.send({"type": "human_execution_complete", "output": "patch"})

    for message in ("first", "second", "third"):
        _fail(session, clock, message)
        if session.suspension.component == "verification":
            session.send({"type": "fix_applied"})

    assert session.child is None
    assert session.suspension.component == "lifecycle"
    assert session.suspension.state == "gate_check"
    values = session.values
    assert values["gate_loopbacks"] == 1
    assert values["verification"]["abandoned"] is True
    assert values["verification"]["policy_violation"] is True
    assert values["recovery"] is None
    assert recovery_started == []


def test_closing_a_lifecycle_stops_its_verification_deadline() -> None:
    orchestrator, clock = _orchestrator()
    session = orchestrator.start(TASK)
    session.send({"type": "gate_passed"})
    session.send({"type": "human_execution_complete", "output": "patch"})
    child = session.child

    session.close()
    clock.advance(timedelta(hours=1))

    assert session.is_closed
    assert child.is_closed
    assert session.child is None
    assert child.values["judgment_passes"] == 0
    assert not child.is_terminal
    assert session.tick() is False
    with pytest.raises(ContractViolation):
        session.send({"type": "check_complete", "stage": "typecheck", "passed": True})
