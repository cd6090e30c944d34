from importlib.metadata import version

from .clock import Clock, SystemClock, VirtualClock
from .escalation import DELAYED_RULES, IMMEDIATE_RULES, EscalationJudge, EscalationPolicy, EscalationRule
from .events import (
    AdjustmentDone,
    CauseAnalyzed,
    CheckComplete,
    ContextResetComplete,
    EscalationDecided,
    EssenceIdentified,
    ExplanationReceived,
    FixApplied,
    GateFixed,
    GatePassed,
    GateViolated,
    HumanExecutionComplete,
    HumanFixComplete,
    LearningRecorded,
    ModelExecutionComplete,
    ProblemVerbalized,
    RedecomposeComplete,
    ReviewComplete,
    TeamConsulted,
    TeamShared,
    WorkaroundDocumented,
    parse_event,
)
from .losscut import LOSS_CUT_RULES, LossCutJudge, LossCutPolicy, LossCutRule
from .models import (
    ClassificationResult,
    ComplexityTrend,
    CompletionType,
    ContractViolation,
    Division,
    EscalationJudgment,
    EscalationOutcome,
    EscalationUrgency,
    ExecutionResult,
    FailureEvent,
    FailureRecord,
    GateViolation,
    LearningRecord,
    LifecycleOutcome,
    LossCutDecision,
    LossCutState,
    LossCutVerdict,
    PrerequisiteResult,
    PrincipleCheckResult,
    ProblemAnalysis,
    PromptTechnique,
    RecoveryOutput,
    RecoveryRequest,
    RemediationApproach,
    TaskCharacteristic,
    VerificationOutput,
    VerificationRequest,
)
from .orchestrator import LifecycleHooks, LifecycleOrchestrator, LifecycleSession, PrerequisiteGate, TaskClassifier
from .recovery import RecoveryFlow, RecoveryHooks, RecoverySession, fallback_first_selector
from .runtime import GraphSession, Suspension
from .settings import DEFAULT_CHECK_STAGES, RuntimeSettings
from .verification import VerificationHooks, VerificationLoop, VerificationSession


def get_version() -> str:
    try:
        return version("task-lifecycle")
    except Exception:
        return "0.0.0"


__all__ = [
    "AdjustmentDone",
    "CauseAnalyzed",
    "CheckComplete",
    "ClassificationResult",
    "Clock",
    "ComplexityTrend",
    "CompletionType",
    "ContextResetComplete",
    "ContractViolation",
    "DEFAULT_CHECK_STAGES",
    "DELAYED_RULES",
    "Division",
    "EscalationDecided",
    "EscalationJudge",
    "EscalationJudgment",
    "EscalationOutcome",
    "EscalationPolicy",
    "EscalationRule",
    "EscalationUrgency",
    "EssenceIdentified",
    "ExecutionResult",
    "ExplanationReceived",
    "FailureEvent",
    "FailureRecord",
    "FixApplied",
    "GateFixed",
    "GatePassed",
    "GateViolated",
    "GateViolation",
    "GraphSession",
    "HumanExecutionComplete",
    "HumanFixComplete",
    "IMMEDIATE_RULES",
    "LOSS_CUT_RULES",
    "LearningRecord",
    "LearningRecorded",
    "LifecycleHooks",
    "LifecycleOrchestrator",
    "LifecycleOutcome",
    "LifecycleSession",
    "LossCutDecision",
    "LossCutJudge",
    "LossCutPolicy",
    "LossCutRule",
    "LossCutState",
    "LossCutVerdict",
    "ModelExecutionComplete",
    "PrerequisiteGate",
    "PrerequisiteResult",
    "PrincipleCheckResult",
    "ProblemAnalysis",
    "ProblemVerbalized",
    "PromptTechnique",
    "RecoveryFlow",
    "RecoveryHooks",
    "RecoveryOutput",
    "RecoveryRequest",
    "RecoverySession",
    "RedecomposeComplete",
    "RemediationApproach",
    "ReviewComplete",
    "RuntimeSettings",
    "Suspension",
    "SystemClock",
    "TaskCharacteristic",
    "TaskClassifier",
    "TeamConsulted",
    "TeamShared",
    "VerificationHooks",
    "VerificationLoop",
    "VerificationOutput",
    "VerificationRequest",
    "VerificationSession",
    "VirtualClock",
    "WorkaroundDocumented",
    "fallback_first_selector",
    "get_version",
    "parse_event",
]
