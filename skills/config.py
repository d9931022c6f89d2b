"""Frozen-dataclass configuration for the step-execution engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from .schema import RiskLevel


@dataclass(frozen=True)
class SkillEngineConfig:
    """Timeouts, retry shaping, approval policy and telemetry switches.

    All values carry sensible defaults.  Override via constructor kwargs.
    Durations are milliseconds, matching skill definitions.
    """

    # ---- Timeouts (ms) ---------------------------------------------------
    default_step_timeout_ms: int = 30_000
    default_skill_timeout_ms: int = 300_000
    default_approval_timeout_ms: int = 900_000

    # ---- Retry shaping ---------------------------------------------------
    max_retry_delay_ms: int = 60_000
    retry_jitter: float = 0.0  # ±fraction applied to every retry delay

    # ---- Approval policy -------------------------------------------------
    auto_approve_risk_levels: FrozenSet[RiskLevel] = field(default_factory=frozenset)
    approval_audit_log_path: Optional[str] = None
    critical_cooldown_ms: int = 60_000  # between critical approvals; 0 disables

    # ---- Telemetry -------------------------------------------------------
    enable_prometheus_metrics: bool = True

    def __post_init__(self) -> None:
        """Validate invariants at construction time."""
        if self.default_step_timeout_ms <= 0:
            raise ValueError("default_step_timeout_ms must be > 0")
        if self.default_skill_timeout_ms <= 0:
            raise ValueError("default_skill_timeout_ms must be > 0")
        if self.default_approval_timeout_ms <= 0:
            raise ValueError("default_approval_timeout_ms must be > 0")
        if self.max_retry_delay_ms < 0:
            raise ValueError("max_retry_delay_ms must be >= 0")
        if not 0.0 <= self.retry_jitter < 1.0:
            raise ValueError("retry_jitter must lie in [0, 1)")
        if self.critical_cooldown_ms < 0:
            raise ValueError("critical_cooldown_ms must be >= 0")
        object.__setattr__(
            self,
            "auto_approve_risk_levels",
            frozenset(RiskLevel(r) for r in self.auto_approve_risk_levels),
        )
        if RiskLevel.CRITICAL in self.auto_approve_risk_levels:
            raise ValueError("critical operations can never be auto-approved")
