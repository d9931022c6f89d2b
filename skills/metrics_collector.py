"""Prometheus metrics for skill execution."""

from __future__ import annotations

from collections import defaultdict
from typing import Dict

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

from .config import SkillEngineConfig
from .schema import ApprovalState, SkillStatus, StepStatus


class MetricsCollector:
    """Aggregate step, approval and skill outcome metrics.

    In-memory counters are always kept. Prometheus objects live in an
    isolated registry per instance and are only created when
    ``config.enable_prometheus_metrics`` is ``True``.
    """

    def __init__(self, config: SkillEngineConfig) -> None:
        self.config = config
        self._enabled = config.enable_prometheus_metrics

        self._step_counts: Dict[str, int] = defaultdict(int)
        self._skill_counts: Dict[str, int] = defaultdict(int)
        self._approval_counts: Dict[str, int] = defaultdict(int)
        self._retry_counts: Dict[str, int] = defaultdict(int)
        self._timeout_counts: Dict[str, int] = defaultdict(int)

        if self._enabled:
            self._registry = CollectorRegistry()
            self._prom_step_exec = Histogram(
                "skill_step_execution_seconds",
                "Step execution time in seconds",
                labelnames=["skill_id", "status"],
                registry=self._registry,
            )
            self._prom_skills = Counter(
                "skill_executions_total",
                "Skill executions by terminal status",
                labelnames=["skill_id", "status"],
                registry=self._registry,
            )
            self._prom_approvals = Counter(
                "skill_approvals_total",
                "Approval resolutions",
                labelnames=["risk_level", "state"],
                registry=self._registry,
            )
            self._prom_retries = Counter(
                "skill_step_retries_total",
                "Step retry attempts",
                labelnames=["skill_id"],
                registry=self._registry,
            )
            self._prom_timeouts = Counter(
                "skill_step_timeouts_total",
                "Step timeout violations",
                labelnames=["skill_id"],
                registry=self._registry,
            )

    # ---- recording --------------------------------------------------------

    def record_step(self, skill_id: str, status: StepStatus, duration_ms: float) -> None:
        self._step_counts[status.value] += 1
        if self._enabled:
            self._prom_step_exec.labels(skill_id=skill_id, status=status.value).observe(
                duration_ms / 1000.0
            )

    def record_skill_result(self, skill_id: str, status: SkillStatus) -> None:
        self._skill_counts[status.value] += 1
        if self._enabled:
            self._prom_skills.labels(skill_id=skill_id, status=status.value).inc()

    def record_approval(self, risk_level: str, state: ApprovalState) -> None:
        self._approval_counts[state.value] += 1
        if self._enabled:
            self._prom_approvals.labels(risk_level=risk_level, state=state.value).inc()

    def record_retry(self, skill_id: str) -> None:
        self._retry_counts[skill_id] += 1
        if self._enabled:
            self._prom_retries.labels(skill_id=skill_id).inc()

    def record_timeout(self, skill_id: str) -> None:
        self._timeout_counts[skill_id] += 1
        if self._enabled:
            self._prom_timeouts.labels(skill_id=skill_id).inc()

    # ---- export -----------------------------------------------------------

    def export_metrics(self) -> str:
        """Export metrics in Prometheus text exposition format.

        Returns:
            Multi-line string in Prometheus format, or ``""`` if disabled.
        """
        if not self._enabled:
            return ""
        return generate_latest(self._registry).decode("utf-8")

    def get_counts(self) -> Dict[str, Dict[str, int]]:
        """Return a copy of the in-memory counters."""
        return {
            "steps": dict(self._step_counts),
            "skills": dict(self._skill_counts),
            "approvals": dict(self._approval_counts),
            "retries": dict(self._retry_counts),
            "timeouts": dict(self._timeout_counts),
        }

    def reset(self) -> None:
        self._step_counts.clear()
        self._skill_counts.clear()
        self._approval_counts.clear()
        self._retry_counts.clear()
        self._timeout_counts.clear()
