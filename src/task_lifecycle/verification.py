from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, TypedDict

from langgraph.checkpoint.memory import InMemorySaver
from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .clock import Clock, SystemClock
from .events import CheckComplete, DeadlineExpired, parse_event
from .losscut import LossCutJudge, LossCutPolicy
from .models import (
    ComplexityTrend,
    ContractViolation,
    FailureEvent,
    FailureRecord,
    LossCutDecision,
    LossCutState,
    PrincipleCheckResult,
    VerificationOutput,
    VerificationRequest,
)
from .runtime import GraphSession, Suspension, await_event
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

COMPONENT = "verification"

PrincipleMonitor = Callable[[str, VerificationRequest], PrincipleCheckResult]


def _run_nothing(_stage: str, _request: VerificationRequest) -> None:
    return None


def _fix_nothing(_failure: FailureEvent | None, _history: tuple[FailureRecord, ...]) -> None:
    return None


def _no_findings(_stage: str, _request: VerificationRequest) -> PrincipleCheckResult:
    return PrincipleCheckResult()


@dataclass
class VerificationHooks:
    """Externally injected side effects; their outcomes arrive later as events."""

    run_check: Callable[[str, VerificationRequest], None] = _run_nothing
    issue_fix: Callable[[FailureEvent | None, tuple[FailureRecord, ...]], None] = _fix_nothing
    collaboration_monitor: PrincipleMonitor = _no_findings
    agent_behavior_monitor: PrincipleMonitor = _no_findings


class VerificationState(TypedDict, total=False):
    request: dict[str, Any]
    stage_cursor: int
    loop_started_at: str
    deadline: str
    deadline_fired: bool
    failure_count: int
    last_failure: dict[str, Any] | None
    failure_history: list[dict[str, Any]]
    decision: str | None
    loss_cut_rule: str | None
    judgment_passes: int
    policy_violation: bool
    principle_checks: list[dict[str, Any]]
    stage_entries: list[str]
    pending_remediation: str
    pending_trend: str
    outcome: str | None


class VerificationLoop:
    """Verification loop StateGraph: ordered checks -> loss-cut judgment -> fix -> recheck, under one deadline."""

    def __init__(
        self,
        *,
        settings: RuntimeSettings | None = None,
        clock: Clock | None = None,
        hooks: VerificationHooks | None = None,
        judge: LossCutJudge | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.clock = clock if clock is not None else SystemClock()
        self.hooks = hooks if hooks is not None else VerificationHooks()
        self.judge = judge if judge is not None else LossCutJudge(LossCutPolicy.from_settings(self.settings))
        self.stages: tuple[str, ...] = self.settings.verification_stages
        self.graph = self._build_graph().compile(checkpointer=InMemorySaver())

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(VerificationState)
        graph.add_node("arm", self._arm_node)
        graph.add_node("enter_stage", self._enter_stage_node)
        graph.add_node("await_check", self._await_check_node)
        graph.add_node("judging", self._judging_node)
        graph.add_node("fixing", self._fixing_node)
        graph.add_node("await_fix", self._await_fix_node)
        graph.add_node("passed", self._passed_node)
        graph.add_node("abandoned", self._abandoned_node)

        graph.add_edge(START, "arm")
        graph.add_edge("arm", "enter_stage")
        graph.add_edge("enter_stage", "await_check")
        graph.add_edge("fixing", "await_fix")
        graph.add_edge("passed", END)
        graph.add_edge("abandoned", END)
        return graph

    def start(self, request: VerificationRequest | None = None, *, subscribe_clock: bool = True) -> "VerificationSession":
        session = VerificationSession(self, request if request is not None else VerificationRequest())
        session.start(subscribe_clock=subscribe_clock)
        return session

    def _arm_node(self, state: VerificationState) -> dict[str, Any]:
        started_at = self.clock.now()
        deadline = started_at + self.settings.verification_deadline
        logger.info("verification loop armed; deadline %s", deadline.isoformat())
        return {
            "stage_cursor": 0,
            "loop_started_at": started_at.isoformat(),
            "deadline": deadline.isoformat(),
            "deadline_fired": False,
            "failure_count": 0,
            "last_failure": None,
            "failure_history": [],
            "decision": None,
            "loss_cut_rule": None,
            "judgment_passes": 0,
            "policy_violation": False,
            "principle_checks": [],
            "stage_entries": [],
            "pending_remediation": "",
            "pending_trend": ComplexityTrend.UNCHANGED.value,
            "outcome": None,
        }

    def _enter_stage_node(self, state: VerificationState) -> dict[str, Any]:
        stage = self.stages[state["stage_cursor"]]
        request = VerificationRequest.model_validate(state["request"])
        logger.info("verification stage %s entered", stage)
        self.hooks.run_check(stage, request)

        checks = list(state.get("principle_checks", []))
        latched = bool(state.get("policy_violation"))
        for monitor_name, monitor in (
            ("collaboration", self.hooks.collaboration_monitor),
            ("agent_behavior", self.hooks.agent_behavior_monitor),
        ):
            result = monitor(stage, request)
            checks.append({"stage": stage, "monitor": monitor_name, **result.model_dump(mode="json")})
            if result.policy_violation and not latched:
                logger.warning(
                    "policy violation latched by %s monitor at %s: %s", monitor_name, stage, result.violations
                )
                latched = True

        return {
            "principle_checks": checks,
            "policy_violation": latched,
            "stage_entries": [*state.get("stage_entries", []), stage],
        }

    def _await_check_node(self, state: VerificationState) -> Command[str]:
        cursor = state["stage_cursor"]
        stage = self.stages[cursor]
        payload = await_event(COMPONENT, "stage", "check_complete", stage=stage, detail={"index": cursor})
        event = parse_event(payload)

        if isinstance(event, DeadlineExpired):
            logger.warning("verification deadline preempted stage %s", stage)
            return Command(goto="judging", update={"deadline_fired": True})

        if event.passed:
            if cursor + 1 >= len(self.stages):
                return Command(goto="passed")
            return Command(goto="enter_stage", update={"stage_cursor": cursor + 1})

        # Record first: judgment must never see an unrecorded failure.
        record = FailureRecord(
            event=event.failure,
            remediation_attempted=state.get("pending_remediation", ""),
            complexity_trend=ComplexityTrend(state.get("pending_trend", ComplexityTrend.UNCHANGED.value)),
        )
        logger.info("verification stage %s failed: %s", stage, event.failure.message)
        return Command(
            goto="judging",
            update={
                "failure_count": int(state.get("failure_count", 0)) + 1,
                "last_failure": event.failure.model_dump(mode="json"),
                "failure_history": [*state.get("failure_history", []), record.model_dump(mode="json")],
            },
        )

    def _judging_node(self, state: VerificationState) -> Command[str]:
        loss_cut_state = LossCutState(
            failure_count=int(state.get("failure_count", 0)),
            loop_started_at=datetime.fromisoformat(state["loop_started_at"]),
            last_failure=state.get("last_failure"),
            failure_history=tuple(state.get("failure_history", [])),
        )
        verdict = self.judge.judge(loss_cut_state, now=self.clock.now())
        passes = int(state.get("judgment_passes", 0)) + 1
        logger.info(
            "loss-cut judgment #%d: %s (rule=%s, failures=%d)",
            passes,
            verdict.decision.value,
            verdict.rule,
            loss_cut_state.failure_count,
        )
        update = {
            "decision": verdict.decision.value,
            "loss_cut_rule": verdict.rule,
            "judgment_passes": passes,
        }
        if verdict.decision == LossCutDecision.CUT:
            return Command(goto="abandoned", update=update)
        return Command(goto="fixing", update=update)

    def _fixing_node(self, state: VerificationState) -> dict[str, Any]:
        last_failure = state.get("last_failure")
        self.hooks.issue_fix(
            FailureEvent.model_validate(last_failure) if last_failure else None,
            tuple(FailureRecord.model_validate(item) for item in state.get("failure_history", [])),
        )
        return {}

    def _await_fix_node(self, state: VerificationState) -> Command[str]:
        payload = await_event(COMPONENT, "fixing", "fix_applied")
        event = parse_event(payload)
        if isinstance(event, DeadlineExpired):
            logger.warning("verification deadline preempted fixing")
            return Command(goto="judging", update={"deadline_fired": True})
        return Command(
            goto="enter_stage",
            update={
                "stage_cursor": 0,
                "decision": None,
                "pending_remediation": event.remediation,
                "pending_trend": event.complexity_trend.value,
            },
        )

    def _passed_node(self, state: VerificationState) -> dict[str, Any]:
        logger.info("verification passed after %d judgment pass(es)", int(state.get("judgment_passes", 0)))
        return {"outcome": "passed"}

    def _abandoned_node(self, state: VerificationState) -> dict[str, Any]:
        logger.info("verification abandoned by loss-cut rule %s", state.get("loss_cut_rule"))
        return {"outcome": "abandoned"}


class VerificationSession(GraphSession):
    """One verification attempt; owns the deadline scheduler for its loop."""

    component = COMPONENT

    def __init__(self, loop: VerificationLoop, request: VerificationRequest) -> None:
        super().__init__(loop.graph, settings=loop.settings)
        self.loop = loop
        self.request = request
        self._busy = False
        self._subscribed = False

    def start(self, *, subscribe_clock: bool = True) -> Suspension | None:
        subscribe = getattr(self.loop.clock, "subscribe", None)
        if subscribe_clock and subscribe is not None:
            subscribe(self._on_clock)
            self._subscribed = True
        return self._start({"request": self.request.model_dump(mode="json")})

    @property
    def deadline(self) -> datetime | None:
        raw = self._values.get("deadline")
        return datetime.fromisoformat(raw) if raw else None

    @property
    def output(self) -> VerificationOutput:
        self._require_terminal()
        values = self._values
        if values.get("outcome") == "passed":
            return VerificationOutput(
                passed=True,
                abandoned=False,
                policy_violation=bool(values.get("policy_violation")),
                judgment_passes=int(values.get("judgment_passes", 0)),
            )
        return VerificationOutput(
            passed=False,
            abandoned=True,
            last_failure=values.get("last_failure"),
            failure_history=tuple(values.get("failure_history", [])),
            policy_violation=bool(values.get("policy_violation")),
            judgment_passes=int(values.get("judgment_passes", 0)),
        )

    def tick(self) -> bool:
        """Fire the loop deadline if it is due. Returns True when it fired."""
        if self._busy or not self._started or self._terminal or self._closed:
            return False
        return self._fire_deadline_if_due()

    def send(self, event: Any) -> Suspension | None:
        self._require_running()
        parsed = parse_event(event)
        if isinstance(parsed, DeadlineExpired):
            raise ContractViolation("deadline_expired is raised by the loop scheduler, not delivered by callers")
        if self._fire_deadline_if_due():
            logger.warning("%s discarded %s delivered after the deadline preempted it", self.thread_id, parsed.type)
            return self._suspension
        self._require_expected(parsed)
        if isinstance(parsed, CheckComplete):
            self._require_check_matches(parsed)
        return self._deliver(parsed)

    def _require_check_matches(self, event: CheckComplete) -> None:
        stage = self._suspension.stage if self._suspension is not None else None
        if event.stage != stage:
            raise ContractViolation(f"check result for {event.stage!r} delivered while stage {stage!r} is running")
        if event.passed and event.failure is not None:
            raise ContractViolation("a passing check result must not carry a failure")
        if not event.passed:
            if event.failure is None:
                raise ContractViolation(f"failed check result for {stage!r} is missing its failure event")
            if event.failure.stage != stage:
                raise ContractViolation(
                    f"failure event for {event.failure.stage!r} delivered while stage {stage!r} is running"
                )

    def _fire_deadline_if_due(self) -> bool:
        if self._values.get("deadline_fired"):
            return False
        if self._suspension is None or self._suspension.state not in {"stage", "fixing"}:
            return False
        deadline = self.deadline
        now = self.loop.clock.now()
        if deadline is None or now < deadline:
            return False
        logger.warning("%s deadline %s reached at %s", self.thread_id, deadline.isoformat(), now.isoformat())
        self._deliver(DeadlineExpired(fired_at=now))
        return True

    def _run(self, payload: Any) -> Suspension | None:
        self._busy = True
        try:
            suspension = super()._run(payload)
        finally:
            self._busy = False
        # A hook may have moved the clock while the graph was running.
        if not self._terminal and self._fire_deadline_if_due():
            return self._suspension
        return suspension

    def _on_clock(self, _now: datetime) -> None:
        self.tick()

    def close(self) -> None:
        self._unsubscribe()
        super().close()

    def _unsubscribe(self) -> None:
        if self._subscribed:
            self.loop.clock.unsubscribe(self._on_clock)
            self._subscribed = False

    def _on_terminal(self) -> None:
        self._unsubscribe()
        super()._on_terminal()
