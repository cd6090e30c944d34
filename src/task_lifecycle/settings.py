from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta

from dotenv import load_dotenv

DEFAULT_CHECK_STAGES: tuple[str, ...] = ("typecheck", "lint", "test")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    loss_cut_max_failures: int = 3
    loss_cut_time_limit_seconds: int = 1_800
    verification_deadline_seconds: int = 1_800
    verification_stages: tuple[str, ...] = DEFAULT_CHECK_STAGES
    escalation_retreat_threshold: int = 3
    max_fallback_escalations: int = 3
    share_recovery_with_team: bool = False
    recursion_limit: int = 200

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        load_dotenv(override=False)
        return cls(
            loss_cut_max_failures=_get_env_int("LIFECYCLE_LOSS_CUT_MAX_FAILURES", default=3, minimum=1),
            loss_cut_time_limit_seconds=_get_env_int(
                "LIFECYCLE_LOSS_CUT_TIME_LIMIT_SECONDS", default=1_800, minimum=1
            ),
            verification_deadline_seconds=_get_env_int(
                "LIFECYCLE_VERIFICATION_DEADLINE_SECONDS", default=1_800, minimum=1
            ),
            verification_stages=_get_env_stages("LIFECYCLE_VERIFICATION_STAGES", default=DEFAULT_CHECK_STAGES),
            escalation_retreat_threshold=_get_env_int(
                "LIFECYCLE_ESCALATION_RETREAT_THRESHOLD", default=3, minimum=1
            ),
            max_fallback_escalations=_get_env_int("LIFECYCLE_MAX_FALLBACK_ESCALATIONS", default=3, minimum=0),
            share_recovery_with_team=_get_env_bool("LIFECYCLE_SHARE_RECOVERY_WITH_TEAM", default=False),
            recursion_limit=_get_env_int("LIFECYCLE_RECURSION_LIMIT", default=200, minimum=25),
        ).normalized()

    @property
    def loss_cut_time_limit(self) -> timedelta:
        return timedelta(seconds=self.loss_cut_time_limit_seconds)

    @property
    def verification_deadline(self) -> timedelta:
        return timedelta(seconds=self.verification_deadline_seconds)

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        stages = tuple(stage.strip() for stage in self.verification_stages)
        if not stages:
            raise ValueError("LIFECYCLE_VERIFICATION_STAGES must name at least one stage")
        if any(not stage for stage in stages):
            raise ValueError("LIFECYCLE_VERIFICATION_STAGES must not contain empty stage names")
        if len(set(stages)) != len(stages):
            raise ValueError(f"LIFECYCLE_VERIFICATION_STAGES must be unique, got: {','.join(stages)}")

        # -- Numeric bounds validation --
        if self.loss_cut_max_failures < 1:
            raise ValueError(f"LIFECYCLE_LOSS_CUT_MAX_FAILURES must be >= 1, got: {self.loss_cut_max_failures}")
        if self.loss_cut_time_limit_seconds < 1:
            raise ValueError(
                f"LIFECYCLE_LOSS_CUT_TIME_LIMIT_SECONDS must be >= 1, got: {self.loss_cut_time_limit_seconds}"
            )
        if self.verification_deadline_seconds < 1:
            raise ValueError(
                "LIFECYCLE_VERIFICATION_DEADLINE_SECONDS must be >= 1, "
                f"got: {self.verification_deadline_seconds}"
            )
        if self.escalation_retreat_threshold < 1:
            raise ValueError(
                f"LIFECYCLE_ESCALATION_RETREAT_THRESHOLD must be >= 1, got: {self.escalation_retreat_threshold}"
            )
        if self.max_fallback_escalations < 0:
            raise ValueError(
                f"LIFECYCLE_MAX_FALLBACK_ESCALATIONS must be >= 0, got: {self.max_fallback_escalations}"
            )
        if self.recursion_limit > 100_000:
            raise ValueError(f"LIFECYCLE_RECURSION_LIMIT must be <= 100000, got: {self.recursion_limit}")

        return RuntimeSettings(
            loss_cut_max_failures=self.loss_cut_max_failures,
            loss_cut_time_limit_seconds=self.loss_cut_time_limit_seconds,
            verification_deadline_seconds=self.verification_deadline_seconds,
            verification_stages=stages,
            escalation_retreat_threshold=self.escalation_retreat_threshold,
            max_fallback_escalations=self.max_fallback_escalations,
            share_recovery_with_team=self.share_recovery_with_team,
            recursion_limit=self.recursion_limit,
        )


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean flag, got: {raw!r}")


def _get_env_stages(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(part.strip() for part in raw.split(","))
