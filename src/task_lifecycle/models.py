from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ContractViolation(RuntimeError):
    """Raised when a component is driven outside its invocation contract."""


class ComplexityTrend(str, Enum):
    INCREASED = "increased"
    UNCHANGED = "unchanged"
    DECREASED = "decreased"


class LossCutDecision(str, Enum):
    CONTINUE = "continue"
    CUT = "cut"


class EscalationOutcome(str, Enum):
    ESCALATE = "escalate"
    SELF = "self"


class EscalationUrgency(str, Enum):
    IMMEDIATE = "immediate"
    DELAYED = "delayed"
    NONE = "none"


class RemediationApproach(str, Enum):
    """Recovery approaches; exactly one is chosen per selection pass."""

    HUMAN_FIX = "A"
    REDECOMPOSE = "B"
    RESET_CONTEXT = "C"
    ESCALATION_FALLBACK = "D"


class GateViolation(str, Enum):
    HUMAN_FINAL_JUDGMENT = "human_final_judgment"
    PRE_DEPLOY_VERIFICATION = "pre_deploy_verification"
    HUMAN_REVIEW_BEFORE_ADOPTION = "human_review_before_adoption"
    INDEPENDENT_VERIFICATION = "independent_verification"


class Division(str, Enum):
    HUMAN_LED = "human_led"
    MODEL_LED = "model_led"


class TaskCharacteristic(str, Enum):
    INITIAL_DRAFT = "initial_draft"
    STYLE_UNIFICATION = "style_unification"
    GAP_DETECTION = "gap_detection"
    DESIGN_DECISION = "design_decision"
    DOMAIN_SPECIFIC = "domain_specific"
    UNKNOWN = "unknown"


class PromptTechnique(str, Enum):
    ZERO_SHOT = "zero_shot"
    CHAIN_OF_THOUGHT = "chain_of_thought"
    TREE_OF_THOUGHTS = "tree_of_thoughts"
    REACT = "react"
    SELF_CONSISTENCY = "self_consistency"


class CompletionType(str, Enum):
    COMPLETED = "completed"
    RECOVERY_EXIT = "recovery_exit"


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class FailureEvent(_Record):
    stage: str = Field(min_length=1)
    message: str
    occurred_at: datetime


class FailureRecord(_Record):
    event: FailureEvent
    remediation_attempted: str = ""
    complexity_trend: ComplexityTrend = ComplexityTrend.UNCHANGED


class LossCutState(_Record):
    """Accumulated failure state handed to the loss-cut judge."""

    failure_count: int = Field(default=0, ge=0)
    loop_started_at: datetime
    last_failure: FailureEvent | None = None
    failure_history: tuple[FailureRecord, ...] = ()
    decision: LossCutDecision | None = None


class LossCutVerdict(_Record):
    decision: LossCutDecision
    rule: str | None = None


class ProblemAnalysis(_Record):
    verbalization: str
    cause_analysis: str
    essence: str
    has_security_issue: bool = False
    has_production_impact: bool = False
    has_data_loss_risk: bool = False
    retreat_count: int = Field(default=0, ge=0)
    is_unknown_cause: bool = False
    is_out_of_skill_scope: bool = False


class EscalationJudgment(_Record):
    outcome: EscalationOutcome
    urgency: EscalationUrgency
    rule: str | None = None

    @model_validator(mode="after")
    def _urgency_matches_outcome(self) -> "EscalationJudgment":
        if self.outcome == EscalationOutcome.SELF and self.urgency != EscalationUrgency.NONE:
            raise ValueError("self resolution carries no urgency")
        if self.outcome == EscalationOutcome.ESCALATE and self.urgency == EscalationUrgency.NONE:
            raise ValueError("escalation requires immediate or delayed urgency")
        return self


class PrincipleCheckResult(_Record):
    passed: bool = True
    violations: tuple[str, ...] = ()
    policy_violation: bool = False


class VerificationRequest(_Record):
    """Initiation record for one verification loop attempt."""

    task_description: str = ""
    output: str = ""


class VerificationOutput(_Record):
    passed: bool
    abandoned: bool
    last_failure: FailureEvent | None = None
    failure_history: tuple[FailureRecord, ...] = ()
    policy_violation: bool = False
    judgment_passes: int = 0

    @model_validator(mode="after")
    def _exactly_one_terminal(self) -> "VerificationOutput":
        if self.passed == self.abandoned:
            raise ValueError("verification output must be either passed or abandoned")
        return self


class RecoveryRequest(_Record):
    """Carried-forward failure context that starts a recovery attempt."""

    last_failure: FailureEvent | None = None
    failure_history: tuple[FailureRecord, ...] = ()
    share_with_team: bool = False


class LearningRecord(_Record):
    pattern: str
    workaround: str
    approach: RemediationApproach | None = None
    escalation: EscalationOutcome | None = None
    recorded_at: datetime


class RecoveryOutput(_Record):
    """Always ``recovered=True``: the recovery process ran to completion."""

    recovered: bool = True
    approach: RemediationApproach | None = None
    escalation: EscalationJudgment | None = None
    learning: LearningRecord | None = None
    shared_with_team: bool = False


class PrerequisiteResult(_Record):
    passed: bool
    failed_level: int | None = Field(default=None, ge=0, le=3)
    issues: tuple[str, ...] = ()

    @model_validator(mode="after")
    def _failed_level_only_on_failure(self) -> "PrerequisiteResult":
        if self.passed and self.failed_level is not None:
            raise ValueError("a passing prerequisite result has no failed level")
        return self


class ClassificationResult(_Record):
    division: Division
    technique: PromptTechnique | None = None
    characteristic: TaskCharacteristic = TaskCharacteristic.UNKNOWN

    @model_validator(mode="after")
    def _technique_only_when_model_led(self) -> "ClassificationResult":
        if self.division == Division.HUMAN_LED and self.technique is not None:
            raise ValueError("a prompting technique is only chosen for model-led work")
        return self


class ExecutionResult(_Record):
    output: str
    produced_by_model: bool
    human_approved: bool | None = None


class LifecycleOutcome(_Record):
    completion_type: CompletionType
    execution_result: ExecutionResult | None = None
    recovery_result: RecoveryOutput | None = None
