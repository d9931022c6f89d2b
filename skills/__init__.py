"""Step-execution engine for declarative, approval-gated skills."""

from .approval import ApprovalGate, classify_risk
from .config import SkillEngineConfig
from .dispatcher import ToolDispatcher
from .engine import StepExecutionEngine
from .registry import SkillRegistry
from .schema import (
    ApprovalDecision,
    ApprovalRequest,
    ApprovalState,
    ExecutionContext,
    RiskLevel,
    Skill,
    SkillStatus,
    SkillStep,
    StepOutcome,
    StepResult,
    StepStatus,
)

__all__ = [
    "ApprovalDecision",
    "ApprovalGate",
    "ApprovalRequest",
    "ApprovalState",
    "ExecutionContext",
    "RiskLevel",
    "Skill",
    "SkillEngineConfig",
    "SkillRegistry",
    "SkillStatus",
    "SkillStep",
    "StepExecutionEngine",
    "StepOutcome",
    "StepResult",
    "StepStatus",
    "ToolDispatcher",
    "classify_risk",
]
