from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol, TypedDict

from langgraph.checkpoint.memory import InMemorySaver
from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .clock import Clock, SystemClock
from .escalation import EscalationJudge, EscalationPolicy
from .events import parse_event
from .models import (
    ContractViolation,
    EscalationJudgment,
    EscalationOutcome,
    EscalationUrgency,
    FailureEvent,
    LearningRecord,
    ProblemAnalysis,
    RecoveryOutput,
    RecoveryRequest,
    RemediationApproach,
)
from .runtime import GraphSession, Suspension, await_event
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

COMPONENT = "recovery"

_WORKAROUNDS = {
    RemediationApproach.HUMAN_FIX: "fixed directly by a human, explanation requested afterwards",
    RemediationApproach.REDECOMPOSE: "problem re-decomposed into smaller units",
    RemediationApproach.RESET_CONTEXT: "working context reset before retrying",
    RemediationApproach.ESCALATION_FALLBACK: "escalated to the team after no direct approach applied",
}


class ApproachSelector(Protocol):
    def __call__(
        self,
        analysis: ProblemAnalysis,
        *,
        attempt: int,
        allow_fallback: bool,
    ) -> RemediationApproach: ...


def fallback_first_selector(
    analysis: ProblemAnalysis,
    *,
    attempt: int,
    allow_fallback: bool,
) -> RemediationApproach:
    """Default selector: no direct approach applies, so fall back to escalation while allowed."""
    if allow_fallback:
        return RemediationApproach.ESCALATION_FALLBACK
    return RemediationApproach.HUMAN_FIX


def _ignore(*_args: Any) -> None:
    return None


@dataclass
class RecoveryHooks:
    """Externally injected side effects for each recovery step."""

    verbalize_problem: Callable[[RecoveryRequest], None] = _ignore
    analyze_cause: Callable[[RecoveryRequest], None] = _ignore
    identify_essence: Callable[[RecoveryRequest], None] = _ignore
    select_approach: ApproachSelector = fallback_first_selector
    human_fix: Callable[[ProblemAnalysis], None] = _ignore
    request_explanation: Callable[[ProblemAnalysis], None] = _ignore
    redecompose: Callable[[ProblemAnalysis], None] = _ignore
    reset_context: Callable[[ProblemAnalysis], None] = _ignore
    escalate_immediately: Callable[[ProblemAnalysis, EscalationJudgment], None] = _ignore
    consider_escalation: Callable[[ProblemAnalysis, EscalationJudgment], None] = _ignore
    consult_team: Callable[[ProblemAnalysis, EscalationJudgment], None] = _ignore
    record_learning: Callable[[LearningRecord], None] = _ignore
    document_workaround: Callable[[LearningRecord], None] = _ignore
    share_with_team: Callable[[LearningRecord], None] = _ignore


class RecoveryState(TypedDict, total=False):
    request: dict[str, Any]
    analysis: dict[str, Any] | None
    approach: str | None
    selection_count: int
    fallback_self_resolutions: int
    escalation: dict[str, Any] | None
    escalated: bool
    learning: dict[str, Any] | None
    learning_recordings: int
    shared_with_team: bool
    complete: bool


class RecoveryFlow:
    """Recovery StateGraph: analyze -> (escalate | select approach) -> record learning -> document -> share."""

    def __init__(
        self,
        *,
        settings: RuntimeSettings | None = None,
        clock: Clock | None = None,
        hooks: RecoveryHooks | None = None,
        judge: EscalationJudge | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.clock = clock if clock is not None else SystemClock()
        self.hooks = hooks if hooks is not None else RecoveryHooks()
        self.judge = judge if judge is not None else EscalationJudge(EscalationPolicy.from_settings(self.settings))
        self.graph = self._build_graph().compile(checkpointer=InMemorySaver())

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(RecoveryState)
        # Analysis: strictly verbalize -> diagnose -> essence.
        graph.add_node("verbalize", self._verbalize_node)
        graph.add_node("await_verbalized", self._await_verbalized_node)
        graph.add_node("diagnose", self._diagnose_node)
        graph.add_node("await_diagnosed", self._await_diagnosed_node)
        graph.add_node("identify_essence", self._identify_essence_node)
        graph.add_node("await_essence", self._await_essence_node)
        graph.add_node("escalation_gate", self._escalation_gate_node)
        # Approaches.
        graph.add_node("select_approach", self._select_approach_node)
        graph.add_node("human_fix", self._human_fix_node)
        graph.add_node("await_human_fix", self._await_human_fix_node)
        graph.add_node("request_explanation", self._request_explanation_node)
        graph.add_node("await_explanation", self._await_explanation_node)
        graph.add_node("redecompose", self._redecompose_node)
        graph.add_node("await_redecompose", self._await_redecompose_node)
        graph.add_node("reset_context", self._reset_context_node)
        graph.add_node("await_context_reset", self._await_context_reset_node)
        # Escalation.
        graph.add_node("escalating", self._escalating_node)
        graph.add_node("await_escalation", self._await_escalation_node)
        graph.add_node("consult_team", self._consult_team_node)
        graph.add_node("await_team_consulted", self._await_team_consulted_node)
        # Join and wrap-up.
        graph.add_node("record_learning", self._record_learning_node)
        graph.add_node("await_learning_recorded", self._await_learning_recorded_node)
        graph.add_node("document_workaround", self._document_workaround_node)
        graph.add_node("await_workaround", self._await_workaround_node)
        graph.add_node("share_with_team", self._share_with_team_node)
        graph.add_node("await_team_shared", self._await_team_shared_node)
        graph.add_node("complete", self._complete_node)

        graph.add_edge(START, "verbalize")
        graph.add_edge("verbalize", "await_verbalized")
        graph.add_edge("diagnose", "await_diagnosed")
        graph.add_edge("identify_essence", "await_essence")
        graph.add_conditional_edges(
            "escalation_gate",
            self._escalation_gate_route,
            {
                "escalating": "escalating",
                "select_approach": "select_approach",
            },
        )
        graph.add_edge("human_fix", "await_human_fix")
        graph.add_edge("request_explanation", "await_explanation")
        graph.add_edge("redecompose", "await_redecompose")
        graph.add_edge("reset_context", "await_context_reset")
        graph.add_edge("consult_team", "await_team_consulted")
        graph.add_edge("record_learning", "await_learning_recorded")
        graph.add_edge("document_workaround", "await_workaround")
        graph.add_edge("share_with_team", "await_team_shared")
        graph.add_edge("complete", END)
        return graph

    def start(self, request: RecoveryRequest | None = None) -> "RecoverySession":
        session = RecoverySession(self, request if request is not None else RecoveryRequest())
        session.start()
        return session

    @staticmethod
    def _request(state: RecoveryState) -> RecoveryRequest:
        return RecoveryRequest.model_validate(state["request"])

    @staticmethod
    def _analysis(state: RecoveryState) -> ProblemAnalysis:
        raw = state.get("analysis")
        if raw is None:
            raise ContractViolation("recovery decisions require a completed problem analysis")
        return ProblemAnalysis.model_validate(raw)

    # -- analysis --

    def _verbalize_node(self, state: RecoveryState) -> dict[str, Any]:
        request = self._request(state)
        logger.info("recovery started for %s", request.last_failure.stage if request.last_failure else "timeout")
        self.hooks.verbalize_problem(request)
        return {
            "analysis": None,
            "approach": None,
            "selection_count": 0,
            "fallback_self_resolutions": 0,
            "escalation": None,
            "escalated": False,
            "learning": None,
            "learning_recordings": 0,
            "shared_with_team": False,
            "complete": False,
        }

    def _await_verbalized_node(self, state: RecoveryState) -> Command[str]:
        await_event(COMPONENT, "verbalizing", "problem_verbalized")
        return Command(goto="diagnose")

    def _diagnose_node(self, state: RecoveryState) -> dict[str, Any]:
        self.hooks.analyze_cause(self._request(state))
        return {}

    def _await_diagnosed_node(self, state: RecoveryState) -> Command[str]:
        await_event(COMPONENT, "diagnosing", "cause_analyzed")
        return Command(goto="identify_essence")

    def _identify_essence_node(self, state: RecoveryState) -> dict[str, Any]:
        self.hooks.identify_essence(self._request(state))
        return {}

    def _await_essence_node(self, state: RecoveryState) -> Command[str]:
        event = parse_event(await_event(COMPONENT, "identifying_essence", "essence_identified"))
        logger.info("problem analysis complete: %s", event.analysis.essence)
        return Command(goto="escalation_gate", update={"analysis": event.analysis.model_dump(mode="json")})

    def _escalation_gate_node(self, state: RecoveryState) -> dict[str, Any]:
        return {}

    def _escalation_gate_route(self, state: RecoveryState) -> str:
        if self.judge.requires_immediate(self._analysis(state)):
            return "escalating"
        return "select_approach"

    # -- approaches --

    def _select_approach_node(self, state: RecoveryState) -> Command[str]:
        analysis = self._analysis(state)
        attempt = int(state.get("selection_count", 0)) + 1
        allow_fallback = int(state.get("fallback_self_resolutions", 0)) < self.settings.max_fallback_escalations
        approach = RemediationApproach(
            self.hooks.select_approach(analysis, attempt=attempt, allow_fallback=allow_fallback)
        )
        if approach == RemediationApproach.ESCALATION_FALLBACK and not allow_fallback:
            raise ContractViolation(
                f"escalation fallback already resolved to self {state.get('fallback_self_resolutions', 0)} time(s); "
                "select a direct approach (A, B or C)"
            )
        logger.info("recovery approach %s selected (attempt %d)", approach.value, attempt)
        update: dict[str, Any] = {"approach": approach.value, "selection_count": attempt}
        if approach != RemediationApproach.ESCALATION_FALLBACK:
            # A direct approach supersedes an earlier self-resolved judgment.
            update["escalation"] = None
        targets = {
            RemediationApproach.HUMAN_FIX: "human_fix",
            RemediationApproach.REDECOMPOSE: "redecompose",
            RemediationApproach.RESET_CONTEXT: "reset_context",
            RemediationApproach.ESCALATION_FALLBACK: "escalating",
        }
        return Command(goto=targets[approach], update=update)

    def _human_fix_node(self, state: RecoveryState) -> dict[str, Any]:
        self.hooks.human_fix(self._analysis(state))
        return {}

    def _await_human_fix_node(self, state: RecoveryState) -> Command[str]:
        await_event(COMPONENT, "human_fix", "human_fix_complete")
        return Command(goto="request_explanation")

    def _request_explanation_node(self, state: RecoveryState) -> dict[str, Any]:
        self.hooks.request_explanation(self._analysis(state))
        return {}

    def _await_explanation_node(self, state: RecoveryState) -> Command[str]:
        await_event(COMPONENT, "requesting_explanation", "explanation_received")
        return Command(goto="record_learning")

    def _redecompose_node(self, state: RecoveryState) -> dict[str, Any]:
        self.hooks.redecompose(self._analysis(state))
        return {}

    def _await_redecompose_node(self, state: RecoveryState) -> Command[str]:
        await_event(COMPONENT, "redecomposing", "redecompose_complete")
        return Command(goto="record_learning")

    def _reset_context_node(self, state: RecoveryState) -> dict[str, Any]:
        self.hooks.reset_context(self._analysis(state))
        return {}

    def _await_context_reset_node(self, state: RecoveryState) -> Command[str]:
        await_event(COMPONENT, "resetting_context", "context_reset_complete")
        return Command(goto="record_learning")

    # -- escalation --

    def _escalating_node(self, state: RecoveryState) -> Command[str]:
        analysis = self._analysis(state)
        judgment = self.judge.judge(analysis)
        update: dict[str, Any] = {"escalation": judgment.model_dump(mode="json")}
        if judgment.outcome == EscalationOutcome.SELF:
            resolutions = int(state.get("fallback_self_resolutions", 0)) + 1
            logger.info("escalation judged unnecessary; reselecting approach (%d self resolution(s))", resolutions)
            update["fallback_self_resolutions"] = resolutions
            return Command(goto="select_approach", update=update)
        if judgment.urgency == EscalationUrgency.IMMEDIATE:
            self.hooks.escalate_immediately(analysis, judgment)
        else:
            self.hooks.consider_escalation(analysis, judgment)
        return Command(goto="await_escalation", update=update)

    def _await_escalation_node(self, state: RecoveryState) -> Command[str]:
        urgency = (state.get("escalation") or {}).get("urgency")
        await_event(COMPONENT, "escalating", "escalation_decided", detail={"urgency": urgency})
        logger.info("%s escalation confirmed", urgency)
        return Command(goto="consult_team", update={"escalated": True})

    def _consult_team_node(self, state: RecoveryState) -> dict[str, Any]:
        judgment = EscalationJudgment.model_validate(state["escalation"])
        self.hooks.consult_team(self._analysis(state), judgment)
        return {}

    def _await_team_consulted_node(self, state: RecoveryState) -> Command[str]:
        await_event(COMPONENT, "consulting_team", "team_consulted")
        return Command(goto="record_learning")

    # -- join --

    def _learning_record(self, state: RecoveryState) -> LearningRecord:
        analysis = self._analysis(state)
        request = self._request(state)
        approach = RemediationApproach(state["approach"]) if state.get("approach") else None
        escalated = bool(state.get("escalated"))
        if escalated and approach is None:
            workaround = "escalated to the team immediately"
        elif approach is not None:
            workaround = _WORKAROUNDS[approach]
        else:
            workaround = ""
        return LearningRecord(
            pattern=_failure_pattern(request.last_failure, analysis),
            workaround=workaround,
            approach=approach,
            escalation=EscalationOutcome.ESCALATE if escalated else None,
            recorded_at=self.clock.now(),
        )

    def _record_learning_node(self, state: RecoveryState) -> dict[str, Any]:
        record = self._learning_record(state)
        logger.info("recording failure pattern: %s", record.pattern)
        self.hooks.record_learning(record)
        return {
            "learning": record.model_dump(mode="json"),
            "learning_recordings": int(state.get("learning_recordings", 0)) + 1,
        }

    def _await_learning_recorded_node(self, state: RecoveryState) -> Command[str]:
        await_event(COMPONENT, "recording_learning", "learning_recorded")
        return Command(goto="document_workaround")

    def _document_workaround_node(self, state: RecoveryState) -> dict[str, Any]:
        self.hooks.document_workaround(LearningRecord.model_validate(state["learning"]))
        return {}

    def _await_workaround_node(self, state: RecoveryState) -> Command[str]:
        await_event(COMPONENT, "documenting_workaround", "workaround_documented")
        if self._request(state).share_with_team:
            return Command(goto="share_with_team")
        return Command(goto="complete")

    def _share_with_team_node(self, state: RecoveryState) -> dict[str, Any]:
        self.hooks.share_with_team(LearningRecord.model_validate(state["learning"]))
        return {}

    def _await_team_shared_node(self, state: RecoveryState) -> Command[str]:
        await_event(COMPONENT, "sharing_with_team", "team_shared")
        return Command(goto="complete", update={"shared_with_team": True})

    def _complete_node(self, state: RecoveryState) -> dict[str, Any]:
        if int(state.get("learning_recordings", 0)) != 1:
            raise ContractViolation("recovery cannot complete without recording the failure pattern exactly once")
        logger.info("recovery complete (approach=%s, escalated=%s)", state.get("approach"), state.get("escalated"))
        return {"complete": True}


def _failure_pattern(failure: FailureEvent | None, analysis: ProblemAnalysis) -> str:
    if failure is None:
        return analysis.essence
    return f"{failure.stage}: {failure.message} ({analysis.essence})"


class RecoverySession(GraphSession):
    """One recovery attempt driven by step-complete events."""

    component = COMPONENT

    def __init__(self, flow: RecoveryFlow, request: RecoveryRequest) -> None:
        super().__init__(flow.graph, settings=flow.settings)
        self.flow = flow
        self.request = request

    def start(self) -> Suspension | None:
        return self._start({"request": self.request.model_dump(mode="json")})

    @property
    def output(self) -> RecoveryOutput:
        self._require_terminal()
        values = self._values
        approach = values.get("approach")
        return RecoveryOutput(
            recovered=True,
            approach=RemediationApproach(approach) if approach else None,
            escalation=values.get("escalation"),
            learning=values.get("learning"),
            shared_with_team=bool(values.get("shared_with_team")),
        )
