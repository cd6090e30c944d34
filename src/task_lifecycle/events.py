"""Externally delivered events, one pydantic model per event type.

Each component suspends with the set of event types it accepts next; sessions
validate incoming payloads against :data:`Event` before resuming a graph.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .models import ComplexityTrend, ContractViolation, FailureEvent, GateViolation, ProblemAnalysis


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# -- Verification loop --


class CheckComplete(_Event):
    type: Literal["check_complete"] = "check_complete"
    stage: str
    passed: bool
    failure: FailureEvent | None = None


class FixApplied(_Event):
    type: Literal["fix_applied"] = "fix_applied"
    remediation: str = ""
    complexity_trend: ComplexityTrend = ComplexityTrend.UNCHANGED


class DeadlineExpired(_Event):
    """Delivered by the session scheduler only, never by callers."""

    type: Literal["deadline_expired"] = "deadline_expired"
    fired_at: datetime


# -- Recovery flow --


class ProblemVerbalized(_Event):
    type: Literal["problem_verbalized"] = "problem_verbalized"


class CauseAnalyzed(_Event):
    type: Literal["cause_analyzed"] = "cause_analyzed"


class EssenceIdentified(_Event):
    type: Literal["essence_identified"] = "essence_identified"
    analysis: ProblemAnalysis


class EscalationDecided(_Event):
    type: Literal["escalation_decided"] = "escalation_decided"


class HumanFixComplete(_Event):
    type: Literal["human_fix_complete"] = "human_fix_complete"


class ExplanationReceived(_Event):
    type: Literal["explanation_received"] = "explanation_received"


class RedecomposeComplete(_Event):
    type: Literal["redecompose_complete"] = "redecompose_complete"


class ContextResetComplete(_Event):
    type: Literal["context_reset_complete"] = "context_reset_complete"


class TeamConsulted(_Event):
    type: Literal["team_consulted"] = "team_consulted"


class LearningRecorded(_Event):
    type: Literal["learning_recorded"] = "learning_recorded"


class WorkaroundDocumented(_Event):
    type: Literal["workaround_documented"] = "workaround_documented"


class TeamShared(_Event):
    type: Literal["team_shared"] = "team_shared"


# -- Orchestrator --


class GatePassed(_Event):
    type: Literal["gate_passed"] = "gate_passed"


class GateViolated(_Event):
    type: Literal["gate_violated"] = "gate_violated"
    violations: tuple[GateViolation, ...] = Field(min_length=1)


class GateFixed(_Event):
    type: Literal["gate_fixed"] = "gate_fixed"


class AdjustmentDone(_Event):
    type: Literal["adjustment_done"] = "adjustment_done"
    task_description: str | None = None


class HumanExecutionComplete(_Event):
    type: Literal["human_execution_complete"] = "human_execution_complete"
    output: str


class ModelExecutionComplete(_Event):
    type: Literal["model_execution_complete"] = "model_execution_complete"
    output: str


class ReviewComplete(_Event):
    type: Literal["review_complete"] = "review_complete"
    approved: bool


Event = Annotated[
    Union[
        CheckComplete,
        FixApplied,
        DeadlineExpired,
        ProblemVerbalized,
        CauseAnalyzed,
        EssenceIdentified,
        EscalationDecided,
        HumanFixComplete,
        ExplanationReceived,
        RedecomposeComplete,
        ContextResetComplete,
        TeamConsulted,
        LearningRecorded,
        WorkaroundDocumented,
        TeamShared,
        GatePassed,
        GateViolated,
        GateFixed,
        AdjustmentDone,
        HumanExecutionComplete,
        ModelExecutionComplete,
        ReviewComplete,
    ],
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(Event)


def parse_event(payload: BaseModel | dict[str, Any]) -> Any:
    """Validate a raw payload (or re-validate a model) into a typed event."""
    raw = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else payload
    try:
        return _EVENT_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        raise ContractViolation(f"Malformed event payload: {exc}") from exc
