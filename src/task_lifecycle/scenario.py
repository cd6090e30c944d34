"""Scripted scenario replay against a lifecycle orchestrator on a virtual clock."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .clock import VirtualClock
from .models import (
    ClassificationResult,
    ContractViolation,
    LifecycleOutcome,
    PrerequisiteResult,
    ProblemAnalysis,
    RemediationApproach,
)
from .orchestrator import LifecycleOrchestrator, LifecycleSession
from .recovery import RecoveryFlow, RecoveryHooks, fallback_first_selector
from .settings import RuntimeSettings
from .verification import VerificationLoop

logger = logging.getLogger(__name__)


class ScenarioStep(BaseModel):
    """Either an event payload (has ``type``) or a clock advance (``advance_seconds``)."""

    model_config = ConfigDict(extra="allow")

    advance_seconds: float | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _event_or_advance(self) -> "ScenarioStep":
        has_event = "type" in (self.model_extra or {})
        if has_event == (self.advance_seconds is not None):
            raise ValueError("each step is either an event with a 'type' or an 'advance_seconds' clock move")
        return self

    @property
    def event(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class Scenario(BaseModel):
    model_config = ConfigDict(extra="forbid")

    task: str = Field(min_length=1)
    start_time: datetime = datetime(2026, 1, 1, tzinfo=UTC)
    prerequisite_results: list[PrerequisiteResult] = Field(default_factory=lambda: [PrerequisiteResult(passed=True)])
    classification: ClassificationResult
    approaches: list[RemediationApproach] = Field(default_factory=list)
    steps: list[ScenarioStep] = Field(default_factory=list)

    @classmethod
    def load(cls, path: Path) -> "Scenario":
        try:
            return cls.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise ValueError(f"Invalid scenario file {path}: {exc}") from exc


class ScriptedPrerequisiteGate:
    """Returns the scripted results in order; the last one repeats."""

    def __init__(self, results: list[PrerequisiteResult]) -> None:
        if not results:
            raise ValueError("at least one prerequisite result is required")
        self._results = list(results)
        self.calls = 0

    def evaluate(self, task_description: str) -> PrerequisiteResult:
        result = self._results[min(self.calls, len(self._results) - 1)]
        self.calls += 1
        return result


class ScriptedClassifier:
    def __init__(self, result: ClassificationResult) -> None:
        self._result = result

    def classify(self, task_description: str) -> ClassificationResult:
        return self._result


class ScriptedApproachSelector:
    """Returns scripted approaches in order, then defers to the fallback-first selector."""

    def __init__(self, approaches: list[RemediationApproach]) -> None:
        self._approaches = list(approaches)

    def __call__(self, analysis: ProblemAnalysis, *, attempt: int, allow_fallback: bool) -> RemediationApproach:
        if self._approaches:
            return self._approaches.pop(0)
        return fallback_first_selector(analysis, attempt=attempt, allow_fallback=allow_fallback)


def build_orchestrator(
    scenario: Scenario,
    *,
    settings: RuntimeSettings | None = None,
) -> tuple[LifecycleOrchestrator, VirtualClock]:
    settings = settings if settings is not None else RuntimeSettings.from_env()
    clock = VirtualClock(scenario.start_time)
    recovery = RecoveryFlow(
        settings=settings,
        clock=clock,
        hooks=RecoveryHooks(select_approach=ScriptedApproachSelector(scenario.approaches)),
    )
    orchestrator = LifecycleOrchestrator(
        prerequisite_gate=ScriptedPrerequisiteGate(scenario.prerequisite_results),
        classifier=ScriptedClassifier(scenario.classification),
        settings=settings,
        clock=clock,
        verification_loop=VerificationLoop(settings=settings, clock=clock),
        recovery_flow=recovery,
    )
    return orchestrator, clock


def replay(scenario: Scenario, *, settings: RuntimeSettings | None = None) -> LifecycleSession:
    """Run every scripted step; the returned session may or may not be terminal."""
    orchestrator, clock = build_orchestrator(scenario, settings=settings)
    session = orchestrator.start(scenario.task)
    for index, step in enumerate(scenario.steps):
        if session.is_terminal:
            raise ContractViolation(f"scenario step {index} delivered after the lifecycle ended")
        if step.advance_seconds is not None:
            logger.debug("step %d: advancing clock by %ss", index, step.advance_seconds)
            clock.advance(timedelta(seconds=step.advance_seconds))
            continue
        logger.debug("step %d: %s", index, step.event.get("type"))
        session.send(step.event)
    return session


def run_scenario_file(path: Path, *, settings: RuntimeSettings | None = None) -> LifecycleOutcome | None:
    session = replay(Scenario.load(path), settings=settings)
    if not session.is_terminal:
        suspension = session.suspension
        logger.warning(
            "scenario ended before a terminal state; waiting in %s for %s",
            suspension.state if suspension else "<unknown>",
            ", ".join(session.expects) or "nothing",
        )
        return None
    return session.output
