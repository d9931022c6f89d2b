"""Configuration management: load, validate, merge YAML + env vars.

Uses Pydantic v2 for schema validation and PyYAML for file parsing.  The
validated :class:`SystemConfig` is then turned into the frozen dataclass
configs each package consumes.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from checkpoints.config import CheckpointStoreConfig
from investigation.config import HypothesisTreeConfig
from skills.config import SkillEngineConfig
from skills.schema import RiskLevel


# ── Pydantic settings models ───────────────────────────────────────


class SystemSettings(BaseModel):
    """Top-level system settings."""

    model_config = ConfigDict(frozen=True)

    project_name: str = "Incident Investigation Core"
    version: str = "0.1.0"
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        upper = v.upper()
        if upper not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)}, got '{v}'")
        return upper


class ScoringSettings(BaseModel):
    model_config = ConfigDict(frozen=True)
    strong_base_score: int = 70
    weak_base_score: int = 35
    corroboration_bonus: int = 5
    corroboration_cap: int = 95
    refutation_penalty: int = 10


class InvestigationSettings(BaseModel):
    """Hypothesis tree settings."""

    model_config = ConfigDict(frozen=True)

    max_depth: int = 4
    scoring: ScoringSettings = Field(default_factory=ScoringSettings)


class SkillSettings(BaseModel):
    """Step execution engine and approval gate settings."""

    model_config = ConfigDict(frozen=True)

    skills_directory: Optional[str] = None
    default_step_timeout_ms: int = 30_000
    default_skill_timeout_ms: int = 300_000
    default_approval_timeout_ms: int = 900_000
    max_retry_delay_ms: int = 60_000
    retry_jitter: float = 0.0
    auto_approve_risk_levels: List[RiskLevel] = Field(default_factory=list)
    approval_audit_log_path: Optional[str] = None
    critical_cooldown_ms: int = 60_000
    enable_prometheus_metrics: bool = True


class CheckpointSettings(BaseModel):
    """Checkpoint store settings."""

    model_config = ConfigDict(frozen=True)

    database_url: str = "sqlite:///checkpoints.db"
    max_checkpoints_per_investigation: int = 50
    templates_directory: Optional[str] = None


# ── Top-level config ───────────────────────────────────────────────


class SystemConfig(BaseModel):
    """Complete configuration for the investigation core."""

    model_config = ConfigDict(frozen=True)

    system: SystemSettings = Field(default_factory=SystemSettings)
    investigation: InvestigationSettings = Field(default_factory=InvestigationSettings)
    skills: SkillSettings = Field(default_factory=SkillSettings)
    checkpoints: CheckpointSettings = Field(default_factory=CheckpointSettings)


# ── ConfigManager ──────────────────────────────────────────────────


def _to_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _to_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


# Environment variable → (config path, coercion).
_ENV_MAP: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "RUNBOOK_LOG_LEVEL": ("system.log_level", str),
    "RUNBOOK_MAX_DEPTH": ("investigation.max_depth", int),
    "RUNBOOK_SKILLS_DIR": ("skills.skills_directory", str),
    "RUNBOOK_STEP_TIMEOUT_MS": ("skills.default_step_timeout_ms", int),
    "RUNBOOK_SKILL_TIMEOUT_MS": ("skills.default_skill_timeout_ms", int),
    "RUNBOOK_APPROVAL_TIMEOUT_MS": ("skills.default_approval_timeout_ms", int),
    "RUNBOOK_AUTO_APPROVE": ("skills.auto_approve_risk_levels", _to_list),
    "RUNBOOK_APPROVAL_AUDIT_LOG": ("skills.approval_audit_log_path", str),
    "RUNBOOK_CRITICAL_COOLDOWN_MS": ("skills.critical_cooldown_ms", int),
    "RUNBOOK_METRICS_ENABLED": ("skills.enable_prometheus_metrics", _to_bool),
    "RUNBOOK_DATABASE_URL": ("checkpoints.database_url", str),
    "RUNBOOK_MAX_CHECKPOINTS": ("checkpoints.max_checkpoints_per_investigation", int),
}


class ConfigManager:
    """Load, validate, and merge configuration from YAML + env vars."""

    @staticmethod
    def load(config_path: str = "config.yaml") -> SystemConfig:
        """Load config from *config_path*, validate, merge env vars.

        A missing file yields the defaults (plus any env overrides).

        Raises:
            yaml.YAMLError: If the file contains invalid YAML.
            pydantic.ValidationError: If the data fails validation.
        """
        path = Path(config_path)
        if path.exists():
            with open(path, encoding="utf-8") as fh:
                raw: Dict[str, Any] = yaml.safe_load(fh) or {}
        else:
            raw = {}

        config = SystemConfig.model_validate(raw)
        return ConfigManager.merge_env_vars(config)

    @staticmethod
    def validate(config: SystemConfig) -> List[str]:
        """Return a list of human-readable validation issues.

        An empty list means the config is valid.  Each package config is
        also built once so its own invariants are reported here.
        """
        issues: List[str] = []

        builders = (
            ("investigation", ConfigManager.tree_config),
            ("skills", ConfigManager.skill_engine_config),
            ("checkpoints", ConfigManager.checkpoint_config),
        )
        for section, build in builders:
            try:
                build(config)
            except ValueError as exc:
                issues.append(f"{section}: {exc}")

        skills_dir = config.skills.skills_directory
        if skills_dir and not Path(skills_dir).is_dir():
            issues.append(f"skills.skills_directory '{skills_dir}' does not exist")

        return issues

    @staticmethod
    def merge_env_vars(config: SystemConfig) -> SystemConfig:
        """Override config values from ``RUNBOOK_*`` environment variables.

        Returns a **new** frozen :class:`SystemConfig` with overrides
        applied.
        """
        overrides: Dict[str, Any] = {}

        for env_key, (config_path, coerce) in _ENV_MAP.items():
            value = os.environ.get(env_key)
            if value is None:
                continue

            parts = config_path.split(".")
            d = overrides
            for p in parts[:-1]:
                d = d.setdefault(p, {})
            d[parts[-1]] = coerce(value)

        if not overrides:
            return config

        base = config.model_dump()
        _deep_merge(base, overrides)
        return SystemConfig.model_validate(base)

    @staticmethod
    def get_default_config() -> SystemConfig:
        return SystemConfig()

    @staticmethod
    def save(config: SystemConfig, path: str) -> None:
        """Dump *config* to a YAML file at *path*."""
        out = Path(path)
        out.parent.mkdir(parents=True, exist_ok=True)
        with open(out, "w", encoding="utf-8") as fh:
            yaml.safe_dump(
                config.model_dump(mode="json"),
                fh,
                default_flow_style=False,
                sort_keys=False,
            )

    # ── package config builders ────────────────────────────────────

    @staticmethod
    def tree_config(config: SystemConfig) -> HypothesisTreeConfig:
        inv = config.investigation
        return HypothesisTreeConfig(max_depth=inv.max_depth, **inv.scoring.model_dump())

    @staticmethod
    def skill_engine_config(config: SystemConfig) -> SkillEngineConfig:
        s = config.skills
        return SkillEngineConfig(
            default_step_timeout_ms=s.default_step_timeout_ms,
            default_skill_timeout_ms=s.default_skill_timeout_ms,
            default_approval_timeout_ms=s.default_approval_timeout_ms,
            max_retry_delay_ms=s.max_retry_delay_ms,
            retry_jitter=s.retry_jitter,
            auto_approve_risk_levels=frozenset(s.auto_approve_risk_levels),
            approval_audit_log_path=s.approval_audit_log_path,
            critical_cooldown_ms=s.critical_cooldown_ms,
            enable_prometheus_metrics=s.enable_prometheus_metrics,
        )

    @staticmethod
    def checkpoint_config(config: SystemConfig) -> CheckpointStoreConfig:
        c = config.checkpoints
        kwargs: Dict[str, Any] = {
            "database_url": c.database_url,
            "max_checkpoints_per_investigation": c.max_checkpoints_per_investigation,
        }
        if c.templates_directory:
            kwargs["templates_dir"] = c.templates_directory
        return CheckpointStoreConfig(**kwargs)


# ── helpers ────────────────────────────────────────────────────────


def _deep_merge(base: dict, overrides: dict) -> None:
    """Recursively merge *overrides* into *base* (mutating)."""
    for k, v in overrides.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            _deep_merge(base[k], v)
        else:
            base[k] = v
