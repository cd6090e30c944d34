from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Protocol, TypedDict

from langgraph.checkpoint.memory import InMemorySaver
from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .clock import Clock, SystemClock
from .events import parse_event
from .models import (
    ClassificationResult,
    CompletionType,
    ContractViolation,
    Division,
    ExecutionResult,
    GateViolation,
    LifecycleOutcome,
    PrerequisiteResult,
    RecoveryOutput,
    RecoveryRequest,
    VerificationOutput,
    VerificationRequest,
)
from .recovery import RecoveryFlow, RecoverySession
from .runtime import GraphSession, Suspension, await_event, await_invocation
from .settings import RuntimeSettings
from .verification import VerificationLoop, VerificationSession

logger = logging.getLogger(__name__)

COMPONENT = "lifecycle"


class PrerequisiteGate(Protocol):
    """Four-level prerequisite gate, invoked as an opaque sub-process."""

    def evaluate(self, task_description: str) -> PrerequisiteResult: ...


class TaskClassifier(Protocol):
    """Work-division classifier, invoked as an opaque sub-process."""

    def classify(self, task_description: str) -> ClassificationResult: ...


def _ignore(*_args: Any) -> None:
    return None


@dataclass
class LifecycleHooks:
    fix_gate_violations: Callable[[tuple[GateViolation, ...]], None] = _ignore
    adjust_task: Callable[[str, PrerequisiteResult], None] = _ignore
    execute_human: Callable[[str], None] = _ignore
    execute_model: Callable[[str, ClassificationResult], None] = _ignore
    review_output: Callable[[str], None] = _ignore


class LifecycleState(TypedDict, total=False):
    task_description: str
    gate_violations: list[str]
    gate_loopbacks: int
    prerequisite: dict[str, Any] | None
    adjustment_count: int
    classification: dict[str, Any] | None
    execution: dict[str, Any] | None
    verification: dict[str, Any] | None
    recovery: dict[str, Any] | None
    loop_back: bool
    completion_type: str | None


class LifecycleOrchestrator:
    """Outer graph: gate -> prerequisites -> classify -> execute (-> review) -> verify -> complete | recover."""

    def __init__(
        self,
        *,
        prerequisite_gate: PrerequisiteGate,
        classifier: TaskClassifier,
        settings: RuntimeSettings | None = None,
        clock: Clock | None = None,
        hooks: LifecycleHooks | None = None,
        verification_loop: VerificationLoop | None = None,
        recovery_flow: RecoveryFlow | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.clock = clock if clock is not None else SystemClock()
        self.prerequisite_gate = prerequisite_gate
        self.classifier = classifier
        self.hooks = hooks if hooks is not None else LifecycleHooks()
        self.verification_loop = (
            verification_loop
            if verification_loop is not None
            else VerificationLoop(settings=self.settings, clock=self.clock)
        )
        self.recovery_flow = (
            recovery_flow if recovery_flow is not None else RecoveryFlow(settings=self.settings, clock=self.clock)
        )
        self.graph = self._build_graph().compile(checkpointer=InMemorySaver())

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(LifecycleState)
        graph.add_node("init", self._init_node)
        graph.add_node("gate_check", self._gate_check_node)
        graph.add_node("gate_fix", self._gate_fix_node)
        graph.add_node("await_gate_fixed", self._await_gate_fixed_node)
        graph.add_node("prerequisite_check", self._prerequisite_check_node)
        graph.add_node("task_adjustment", self._task_adjustment_node)
        graph.add_node("await_adjustment", self._await_adjustment_node)
        graph.add_node("classify", self._classify_node)
        graph.add_node("human_execution", self._human_execution_node)
        graph.add_node("await_human_execution", self._await_human_execution_node)
        graph.add_node("model_execution", self._model_execution_node)
        graph.add_node("await_model_execution", self._await_model_execution_node)
        graph.add_node("human_review", self._human_review_node)
        graph.add_node("await_review", self._await_review_node)
        graph.add_node("verification", self._verification_node)
        graph.add_node("recovery", self._recovery_node)
        graph.add_node("completed", self._completed_node)
        graph.add_node("recovery_exit", self._recovery_exit_node)

        graph.add_edge(START, "init")
        graph.add_edge("init", "gate_check")
        graph.add_edge("gate_fix", "await_gate_fixed")
        graph.add_conditional_edges(
            "prerequisite_check",
            self._prerequisite_route,
            {
                "classify": "classify",
                "task_adjustment": "task_adjustment",
            },
        )
        graph.add_edge("task_adjustment", "await_adjustment")
        graph.add_conditional_edges(
            "classify",
            self._classify_route,
            {
                "human_execution": "human_execution",
                "model_execution": "model_execution",
            },
        )
        graph.add_edge("human_execution", "await_human_execution")
        graph.add_edge("model_execution", "await_model_execution")
        graph.add_edge("human_review", "await_review")
        graph.add_edge("completed", END)
        graph.add_edge("recovery_exit", END)
        return graph

    def start(self, task_description: str) -> "LifecycleSession":
        if not task_description.strip():
            raise ContractViolation("a lifecycle must be initiated with a non-empty task description")
        session = LifecycleSession(self, task_description)
        session.start()
        return session

    def _init_node(self, state: LifecycleState) -> dict[str, Any]:
        return {
            "gate_violations": [],
            "gate_loopbacks": 0,
            "prerequisite": None,
            "adjustment_count": 0,
            "classification": None,
            "execution": None,
            "verification": None,
            "recovery": None,
            "loop_back": False,
            "completion_type": None,
        }

    # -- gate --

    def _gate_check_node(self, state: LifecycleState) -> Command[str]:
        payload = await_event(
            COMPONENT,
            "gate_check",
            "gate_passed",
            "gate_violated",
            detail={"loop_back": state.get("loop_back", False)},
        )
        event = parse_event(payload)
        if event.type == "gate_violated":
            violations = [violation.value for violation in event.violations]
            logger.warning("gate violations: %s", ", ".join(violations))
            return Command(goto="gate_fix", update={"gate_violations": violations})
        return Command(goto="prerequisite_check", update={"gate_violations": []})

    def _gate_fix_node(self, state: LifecycleState) -> dict[str, Any]:
        self.hooks.fix_gate_violations(tuple(GateViolation(item) for item in state.get("gate_violations", [])))
        return {}

    def _await_gate_fixed_node(self, state: LifecycleState) -> Command[str]:
        await_event(COMPONENT, "gate_fix", "gate_fixed", detail={"violations": state.get("gate_violations", [])})
        return Command(goto="gate_check", update={"gate_violations": []})

    # -- prerequisites --

    def _prerequisite_check_node(self, state: LifecycleState) -> dict[str, Any]:
        result = self.prerequisite_gate.evaluate(state["task_description"])
        if result.passed:
            logger.info("prerequisite gate passed")
        else:
            logger.info("prerequisite gate failed at level %s: %s", result.failed_level, "; ".join(result.issues))
        return {"prerequisite": result.model_dump(mode="json")}

    def _prerequisite_route(self, state: LifecycleState) -> str:
        result = PrerequisiteResult.model_validate(state["prerequisite"])
        return "classify" if result.passed else "task_adjustment"

    def _task_adjustment_node(self, state: LifecycleState) -> dict[str, Any]:
        self.hooks.adjust_task(state["task_description"], PrerequisiteResult.model_validate(state["prerequisite"]))
        return {}

    def _await_adjustment_node(self, state: LifecycleState) -> Command[str]:
        event = parse_event(await_event(COMPONENT, "task_adjustment", "adjustment_done"))
        update: dict[str, Any] = {
            "adjustment_count": int(state.get("adjustment_count", 0)) + 1,
            "prerequisite": None,
        }
        if event.task_description is not None and event.task_description.strip():
            update["task_description"] = event.task_description
        return Command(goto="prerequisite_check", update=update)

    # -- classification and execution --

    def _classify_node(self, state: LifecycleState) -> dict[str, Any]:
        result = self.classifier.classify(state["task_description"])
        logger.info("task classified as %s (%s)", result.division.value, result.characteristic.value)
        return {"classification": result.model_dump(mode="json")}

    def _classify_route(self, state: LifecycleState) -> str:
        result = ClassificationResult.model_validate(state["classification"])
        if result.division == Division.MODEL_LED:
            return "model_execution"
        return "human_execution"

    def _human_execution_node(self, state: LifecycleState) -> dict[str, Any]:
        self.hooks.execute_human(state["task_description"])
        return {}

    def _await_human_execution_node(self, state: LifecycleState) -> Command[str]:
        event = parse_event(await_event(COMPONENT, "human_execution", "human_execution_complete"))
        execution = ExecutionResult(output=event.output, produced_by_model=False, human_approved=True)
        return Command(goto="verification", update={"execution": execution.model_dump(mode="json")})

    def _model_execution_node(self, state: LifecycleState) -> dict[str, Any]:
        classification = ClassificationResult.model_validate(state["classification"])
        self.hooks.execute_model(state["task_description"], classification)
        return {}

    def _await_model_execution_node(self, state: LifecycleState) -> Command[str]:
        event = parse_event(await_event(COMPONENT, "model_execution", "model_execution_complete"))
        execution = ExecutionResult(output=event.output, produced_by_model=True, human_approved=None)
        # Model output always goes through human review before verification.
        return Command(goto="human_review", update={"execution": execution.model_dump(mode="json")})

    def _human_review_node(self, state: LifecycleState) -> dict[str, Any]:
        self.hooks.review_output(ExecutionResult.model_validate(state["execution"]).output)
        return {}

    def _await_review_node(self, state: LifecycleState) -> Command[str]:
        event = parse_event(await_event(COMPONENT, "human_review", "review_complete"))
        execution = ExecutionResult.model_validate(state["execution"]).model_copy(
            update={"human_approved": event.approved}
        )
        logger.info("model output review verdict: %s", "approved" if event.approved else "rejected")
        return Command(goto="verification", update={"execution": execution.model_dump(mode="json")})

    # -- verification and recovery --

    def _verification_node(self, state: LifecycleState) -> Command[str]:
        execution = ExecutionResult.model_validate(state["execution"])
        request = VerificationRequest(task_description=state["task_description"], output=execution.output)
        result = VerificationOutput.model_validate(await_invocation(COMPONENT, "verification", "verification", request))
        update: dict[str, Any] = {"verification": result.model_dump(mode="json")}

        # Safety check dominates: a policy violation discards pass/abandon.
        if result.policy_violation:
            loopbacks = int(state.get("gate_loopbacks", 0)) + 1
            logger.warning("policy violation reported by verification; restarting at gate (loop-back #%d)", loopbacks)
            update.update(
                {
                    "loop_back": True,
                    "gate_loopbacks": loopbacks,
                    "prerequisite": None,
                    "classification": None,
                    "execution": None,
                }
            )
            return Command(goto="gate_check", update=update)
        if result.passed:
            if execution.produced_by_model and execution.human_approved is None:
                raise ContractViolation("model-produced output cannot complete without an explicit review verdict")
            return Command(goto="completed", update=update)
        return Command(goto="recovery", update=update)

    def _recovery_node(self, state: LifecycleState) -> Command[str]:
        verification = VerificationOutput.model_validate(state["verification"])
        request = RecoveryRequest(
            last_failure=verification.last_failure,
            failure_history=verification.failure_history,
            share_with_team=self.settings.share_recovery_with_team,
        )
        result = RecoveryOutput.model_validate(await_invocation(COMPONENT, "recovery", "recovery", request))
        return Command(goto="recovery_exit", update={"recovery": result.model_dump(mode="json")})

    def _completed_node(self, state: LifecycleState) -> dict[str, Any]:
        logger.info("lifecycle completed")
        return {"completion_type": CompletionType.COMPLETED.value}

    def _recovery_exit_node(self, state: LifecycleState) -> dict[str, Any]:
        logger.info("lifecycle ended through recovery")
        return {"completion_type": CompletionType.RECOVERY_EXIT.value}


class LifecycleSession(GraphSession):
    """One task attempt. Routes events to an invoked sub-machine while one is running."""

    component = COMPONENT

    def __init__(self, orchestrator: LifecycleOrchestrator, task_description: str) -> None:
        super().__init__(orchestrator.graph, settings=orchestrator.settings)
        self.orchestrator = orchestrator
        self.task_description = task_description
        self._child: VerificationSession | RecoverySession | None = None
        self._busy = False
        self._subscribed = False

    def start(self) -> Suspension | None:
        subscribe = getattr(self.orchestrator.clock, "subscribe", None)
        if subscribe is not None:
            subscribe(self._on_clock)
            self._subscribed = True
        return self._start({"task_description": self.task_description})

    @property
    def child(self) -> VerificationSession | RecoverySession | None:
        return self._child

    @property
    def suspension(self) -> Suspension | None:
        if self._child is not None:
            return self._child.suspension
        return self._suspension

    @property
    def output(self) -> LifecycleOutcome:
        self._require_terminal()
        completion = CompletionType(self._values["completion_type"])
        if completion == CompletionType.COMPLETED:
            return LifecycleOutcome(completion_type=completion, execution_result=self._values.get("execution"))
        return LifecycleOutcome(completion_type=completion, recovery_result=self._values.get("recovery"))

    def send(self, event: Any) -> Suspension | None:
        self._require_running()
        if self._child is None:
            return super().send(event)
        self._child.send(event)
        self._fold_child()
        return self.suspension

    def tick(self) -> bool:
        """Let a running verification loop fire its deadline."""
        if self._busy or self._closed or not isinstance(self._child, VerificationSession):
            return False
        fired = self._child.tick()
        self._fold_child()
        return fired

    def _run(self, payload: Any) -> Suspension | None:
        self._busy = True
        try:
            suspension = super()._run(payload)
            while suspension is not None and suspension.invoke is not None:
                child = self._spawn(suspension)
                if not child.is_terminal:
                    self._child = child
                    break
                suspension = super()._run(Command(resume=child.output.model_dump(mode="json")))
        finally:
            self._busy = False
        return self.suspension

    def _spawn(self, suspension: Suspension) -> VerificationSession | RecoverySession:
        logger.info("%s invoking %s", self.thread_id, suspension.invoke)
        if suspension.invoke == "verification":
            request = VerificationRequest.model_validate(suspension.input or {})
            return self.orchestrator.verification_loop.start(request, subscribe_clock=False)
        if suspension.invoke == "recovery":
            return self.orchestrator.recovery_flow.start(RecoveryRequest.model_validate(suspension.input or {}))
        raise ContractViolation(f"unknown sub-machine {suspension.invoke!r}")

    def _fold_child(self) -> None:
        child = self._child
        if child is None or not child.is_terminal:
            return
        self._child = None
        self._run(Command(resume=child.output.model_dump(mode="json")))

    def _on_clock(self, _now: datetime) -> None:
        self.tick()

    def close(self) -> None:
        """Abandon the attempt, closing any running sub-machine with it."""
        self._unsubscribe()
        if self._child is not None:
            self._child.close()
            self._child = None
        super().close()

    def _unsubscribe(self) -> None:
        if self._subscribed:
            self.orchestrator.clock.unsubscribe(self._on_clock)
            self._subscribed = False

    def _on_terminal(self) -> None:
        self._unsubscribe()
        super()._on_terminal()
