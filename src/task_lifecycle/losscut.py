"""Loss-cut judgment: decide whether a failing verification loop keeps fixing.

The rules are an ordered tuple evaluated with early exit. The first rule whose
predicate holds decides ``cut``; rules after it are never evaluated for that
call. When no rule holds the decision is ``continue``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Sequence

from .models import ComplexityTrend, ContractViolation, LossCutDecision, LossCutState, LossCutVerdict
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LossCutPolicy:
    max_failures: int = 3
    time_limit: timedelta = timedelta(minutes=30)

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "LossCutPolicy":
        return cls(max_failures=settings.loss_cut_max_failures, time_limit=settings.loss_cut_time_limit)


LossCutPredicate = Callable[[LossCutState, LossCutPolicy, datetime], bool]


@dataclass(frozen=True)
class LossCutRule:
    name: str
    predicate: LossCutPredicate


def failure_count_reached(state: LossCutState, policy: LossCutPolicy, now: datetime) -> bool:
    return state.failure_count >= policy.max_failures


def time_limit_elapsed(state: LossCutState, policy: LossCutPolicy, now: datetime) -> bool:
    return now - state.loop_started_at >= policy.time_limit


def complexity_increased(state: LossCutState, policy: LossCutPolicy, now: datetime) -> bool:
    if not state.failure_history:
        return False
    return state.failure_history[-1].complexity_trend == ComplexityTrend.INCREASED


def failure_recurred(state: LossCutState, policy: LossCutPolicy, now: datetime) -> bool:
    current = state.last_failure
    if current is None:
        return False
    # The current failure is already the last history entry; only earlier entries count.
    return any(
        record.event.stage == current.stage and record.event.message == current.message
        for record in state.failure_history[:-1]
    )


LOSS_CUT_RULES: tuple[LossCutRule, ...] = (
    LossCutRule("failure_count", failure_count_reached),
    LossCutRule("time_limit", time_limit_elapsed),
    LossCutRule("complexity_increased", complexity_increased),
    LossCutRule("recurring_failure", failure_recurred),
)


class LossCutJudge:
    """Pure, deterministic continue-vs-cut decision over an accumulated failure state."""

    def __init__(self, policy: LossCutPolicy | None = None, rules: Sequence[LossCutRule] = LOSS_CUT_RULES) -> None:
        self.policy = policy if policy is not None else LossCutPolicy()
        self.rules = tuple(rules)

    @staticmethod
    def require_recorded(state: LossCutState) -> None:
        """Reject judgment of a failure that has not been appended to the history yet."""
        if state.last_failure is None:
            return
        if not state.failure_history or state.failure_history[-1].event != state.last_failure:
            raise ContractViolation("Loss-cut judgment requires the current failure to be recorded first")
        if state.failure_count < 1:
            raise ContractViolation("Loss-cut judgment received a recorded failure with a zero failure count")

    def judge(self, state: LossCutState, *, now: datetime) -> LossCutVerdict:
        self.require_recorded(state)
        for rule in self.rules:
            if rule.predicate(state, self.policy, now):
                logger.debug("loss-cut rule %s holds", rule.name)
                return LossCutVerdict(decision=LossCutDecision.CUT, rule=rule.name)
            logger.debug("loss-cut rule %s does not hold", rule.name)
        return LossCutVerdict(decision=LossCutDecision.CONTINUE)
