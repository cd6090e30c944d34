"""Escalation judgment over a completed problem analysis.

Tier 1 (immediate) is evaluated strictly before tier 2 (delayed); a tier-1 hit
masks tier 2 entirely.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Sequence

from .models import EscalationJudgment, EscalationOutcome, EscalationUrgency, ProblemAnalysis
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EscalationPolicy:
    retreat_threshold: int = 3

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "EscalationPolicy":
        return cls(retreat_threshold=settings.escalation_retreat_threshold)


@dataclass(frozen=True)
class EscalationRule:
    name: str
    predicate: Callable[[ProblemAnalysis, EscalationPolicy], bool]


IMMEDIATE_RULES: tuple[EscalationRule, ...] = (
    EscalationRule("security_issue", lambda analysis, _policy: analysis.has_security_issue),
    EscalationRule("production_impact", lambda analysis, _policy: analysis.has_production_impact),
    EscalationRule("data_loss_risk", lambda analysis, _policy: analysis.has_data_loss_risk),
)

DELAYED_RULES: tuple[EscalationRule, ...] = (
    EscalationRule("repeated_retreats", lambda analysis, policy: analysis.retreat_count >= policy.retreat_threshold),
    EscalationRule("unknown_cause", lambda analysis, _policy: analysis.is_unknown_cause),
    EscalationRule("out_of_skill_scope", lambda analysis, _policy: analysis.is_out_of_skill_scope),
)


def _first_match(rules: Sequence[EscalationRule], analysis: ProblemAnalysis, policy: EscalationPolicy) -> str | None:
    for rule in rules:
        if rule.predicate(analysis, policy):
            return rule.name
    return None


class EscalationJudge:
    """Pure escalate-vs-self decision with an immediate/delayed urgency split."""

    def __init__(
        self,
        policy: EscalationPolicy | None = None,
        *,
        immediate_rules: Sequence[EscalationRule] = IMMEDIATE_RULES,
        delayed_rules: Sequence[EscalationRule] = DELAYED_RULES,
    ) -> None:
        self.policy = policy if policy is not None else EscalationPolicy()
        self.immediate_rules = tuple(immediate_rules)
        self.delayed_rules = tuple(delayed_rules)

    def requires_immediate(self, analysis: ProblemAnalysis) -> bool:
        return _first_match(self.immediate_rules, analysis, self.policy) is not None

    def judge(self, analysis: ProblemAnalysis) -> EscalationJudgment:
        rule = _first_match(self.immediate_rules, analysis, self.policy)
        if rule is not None:
            logger.info("immediate escalation: %s", rule)
            return EscalationJudgment(
                outcome=EscalationOutcome.ESCALATE,
                urgency=EscalationUrgency.IMMEDIATE,
                rule=rule,
            )
        rule = _first_match(self.delayed_rules, analysis, self.policy)
        if rule is not None:
            logger.info("delayed escalation pending confirmation: %s", rule)
            return EscalationJudgment(
                outcome=EscalationOutcome.ESCALATE,
                urgency=EscalationUrgency.DELAYED,
                rule=rule,
            )
        return EscalationJudgment(outcome=EscalationOutcome.SELF, urgency=EscalationUrgency.NONE)
