"""Pydantic v2 schemas and typed errors for the step-execution engine.

Skill definitions are declarative and read-only to the engine; they can be
authored in YAML with either ``camelCase`` (``requiresApproval``) or
``snake_case`` (``requires_approval``) keys.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class RiskLevel(str, Enum):
    """Blast-radius classification of a skill."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ParameterType(str, Enum):
    """Declared type of a skill parameter."""
    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"


class OnError(str, Enum):
    """What to do when a step fails."""
    ABORT = "abort"
    CONTINUE = "continue"
    RETRY = "retry"


class Backoff(str, Enum):
    """Retry delay growth between attempts."""
    CONSTANT = "constant"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class StepStatus(str, Enum):
    """Terminal status of one step."""
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class SkillStatus(str, Enum):
    """Status of one skill execution."""
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SkillStatus.COMPLETED, SkillStatus.FAILED, SkillStatus.CANCELLED)


class ApprovalState(str, Enum):
    """Resolution state of an approval request."""
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    TIMEOUT = "timeout"


class ApprovalDecision(str, Enum):
    """Decision an approver can submit."""
    APPROVED = "approved"
    DENIED = "denied"


# ---------------------------------------------------------------------------
# Skill definitions
# ---------------------------------------------------------------------------

class _Definition(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class SkillParameter(_Definition):
    """One input parameter of a skill."""

    name: str
    type: ParameterType = ParameterType.STRING
    required: bool = False
    default: Any = None
    description: str = ""
    enum: Optional[List[Any]] = None


class SkillStep(_Definition):
    """One declarative step of a skill.

    ``parameters`` values and ``condition`` may embed ``{{ expression }}``
    templates over the skill parameters, earlier step results
    (``steps.<id>.result``) and built-ins (``now``, ``user``, ``session_id``).
    """

    id: str
    action: str
    name: str = ""
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)
    condition: Optional[str] = None
    requires_approval: bool = False
    on_error: OnError = OnError.ABORT
    retry_count: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("retry_count", "retryCount", "maxRetries"),
    )
    retry_delay_ms: int = Field(default=1000, ge=0)
    retry_backoff: Backoff = Backoff.CONSTANT
    on_retries_exhausted: OnError = OnError.ABORT
    timeout_ms: Optional[int] = Field(default=None, gt=0)
    approval_timeout_ms: Optional[int] = Field(default=None, gt=0)

    @field_validator("on_retries_exhausted")
    @classmethod
    def _no_nested_retry(cls, v: OnError) -> OnError:
        if v is OnError.RETRY:
            raise ValueError("on_retries_exhausted must be 'abort' or 'continue'")
        return v


class Skill(_Definition):
    """A declarative, parameterised, multi-step workflow."""

    id: str
    name: str
    description: str = ""
    version: str = "1.0.0"
    tags: List[str] = Field(default_factory=list)
    applicable_services: Optional[List[str]] = None
    parameters: List[SkillParameter] = Field(default_factory=list)
    steps: List[SkillStep] = Field(min_length=1)
    risk_level: RiskLevel = RiskLevel.LOW
    rollback: Optional[str] = None
    timeout_ms: Optional[int] = Field(default=None, gt=0)
    approval_timeout_ms: Optional[int] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _validate_references(self) -> "Skill":
        from .expressions import condition_paths, referenced_paths

        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"duplicate step id '{step.id}'")
            seen.add(step.id)

        declared = {p.name for p in self.parameters}
        prior: set[str] = set()
        try:
            for step in self.steps:
                paths = condition_paths(step.condition) if step.condition else []
                for template in _template_strings(step.parameters):
                    paths.extend(referenced_paths(template))
                for path in paths:
                    _check_reference(path, declared, prior, step.id)
                prior.add(step.id)

            if self.rollback:
                for path in referenced_paths(self.rollback):
                    _check_reference(path, declared, seen, "rollback")
        except TemplateResolutionError as exc:
            raise ValueError(str(exc)) from exc
        return self

    def get_step(self, step_id: str) -> Optional[SkillStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


def _template_strings(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, dict):
        return [s for v in value.values() for s in _template_strings(v)]
    if isinstance(value, (list, tuple)):
        return [s for v in value for s in _template_strings(v)]
    return []


def _check_reference(path: List[str], declared: set, steps: set, where: str) -> None:
    from .expressions import BUILTIN_VARIABLES

    head = path[0]
    if head in BUILTIN_VARIABLES:
        return
    if head == "params":
        if len(path) < 2 or path[1] not in declared:
            raise ValueError(f"{where}: unknown parameter reference '{'.'.join(path)}'")
        return
    if head == "steps":
        if len(path) < 2 or path[1] not in steps:
            raise ValueError(f"{where}: reference to unknown or later step '{'.'.join(path)}'")
        return
    if head not in declared:
        raise ValueError(f"{where}: unknown reference '{'.'.join(path)}'")


# ---------------------------------------------------------------------------
# Execution state
# ---------------------------------------------------------------------------

class StepResult(BaseModel):
    """Stored outcome of one step; immutable once written."""
    model_config = ConfigDict(frozen=True)

    step_id: str
    status: StepStatus
    result: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    duration_ms: float = Field(default=0.0, ge=0.0)
    attempts: int = Field(default=0, ge=0)
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime = Field(default_factory=_utcnow)


class ApprovalRequest(BaseModel):
    """A suspended step awaiting an external decision."""

    id: str
    session_id: str
    skill_id: str
    step_id: str
    action: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    risk_level: RiskLevel = RiskLevel.LOW
    rollback_command: Optional[str] = None
    state: ApprovalState = ApprovalState.PENDING
    issued_at: datetime = Field(default_factory=_utcnow)
    expires_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    approver: Optional[str] = None
    reason: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.state is not ApprovalState.PENDING


class StepError(BaseModel):
    """Audit record of a failed step attempt."""
    model_config = ConfigDict(frozen=True)

    session_id: str
    step_id: str
    error_type: str
    error_message: str
    attempt: int = 1
    timestamp: datetime = Field(default_factory=_utcnow)


class ExecutionContext(BaseModel):
    """Mutable state of one in-flight skill invocation.

    Owned by exactly one execution; immutable once ``status`` is terminal.
    """

    session_id: str
    skill_id: str
    user: str = "unknown"
    params: Dict[str, Any] = Field(default_factory=dict)
    steps: Dict[str, StepResult] = Field(default_factory=dict)
    current_step_index: int = Field(default=0, ge=0)
    status: SkillStatus = SkillStatus.RUNNING
    pending_approval: Optional[ApprovalRequest] = None
    approvals: List[ApprovalRequest] = Field(default_factory=list)
    approved_step_id: Optional[str] = None
    errors: List[StepError] = Field(default_factory=list)
    elapsed_ms: float = Field(default=0.0, ge=0.0)
    cancel_requested: bool = False
    reason: Optional[str] = None
    failure_kind: Optional[str] = None
    rollback_command: Optional[str] = None
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None


class StepOutcome(BaseModel):
    """What a single ``advance`` call did."""
    model_config = ConfigDict(frozen=True)

    session_id: str
    step_id: Optional[str] = None
    step_result: Optional[StepResult] = None
    status: SkillStatus
    approval: Optional[ApprovalRequest] = None
    reason: Optional[str] = None
    rollback_command: Optional[str] = None
    replayed: bool = False


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SkillExecutionError(Exception):
    """Base class for step-execution engine errors."""


class MissingParameter(SkillExecutionError):
    """A required skill parameter was not supplied."""

    def __init__(self, skill_id: str, name: str) -> None:
        self.skill_id = skill_id
        self.name = name
        super().__init__(f"Skill '{skill_id}': missing required parameter '{name}'")


class TypeMismatch(SkillExecutionError):
    """A supplied parameter does not match its declared type or enum."""

    def __init__(self, skill_id: str, name: str, expected: str, actual: Any) -> None:
        self.skill_id = skill_id
        self.name = name
        self.expected = expected
        super().__init__(
            f"Skill '{skill_id}': parameter '{name}' expected {expected}, "
            f"got {type(actual).__name__} {actual!r}"
        )


class TemplateResolutionError(SkillExecutionError):
    """A template or condition could not be evaluated against the scope."""

    def __init__(self, template: str, detail: str, step_id: Optional[str] = None) -> None:
        self.template = template
        self.detail = detail
        self.step_id = step_id
        where = f" in step '{step_id}'" if step_id else ""
        super().__init__(f"Cannot resolve template{where} {template!r}: {detail}")


class ExpressionSyntaxError(TemplateResolutionError):
    """A template expression does not parse."""


class UnknownAction(SkillExecutionError):
    """No handler is registered for an action name."""

    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(f"No handler registered for action '{action}'")


class UnknownSkill(SkillExecutionError):
    """A skill id is not present in the registry."""

    def __init__(self, skill_id: str) -> None:
        self.skill_id = skill_id
        super().__init__(f"Unknown skill '{skill_id}'")


class ContextNotFound(SkillExecutionError):
    """No execution context is registered for a session id."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"No execution context for session '{session_id}'")


class StepTimeout(SkillExecutionError):
    """A dispatched action exceeded the step's timeout."""

    def __init__(self, step_id: str, timeout_ms: float) -> None:
        self.step_id = step_id
        self.timeout_ms = timeout_ms
        super().__init__(f"Step '{step_id}' timed out after {timeout_ms:.0f}ms")


class SkillTimeout(SkillExecutionError):
    """Accumulated step execution time exceeded the skill's timeout."""

    def __init__(self, skill_id: str, timeout_ms: float, elapsed_ms: float) -> None:
        self.skill_id = skill_id
        self.timeout_ms = timeout_ms
        self.elapsed_ms = elapsed_ms
        super().__init__(
            f"Skill '{skill_id}' exceeded its {timeout_ms:.0f}ms timeout "
            f"({elapsed_ms:.0f}ms spent)"
        )


class ApprovalAlreadyPending(SkillExecutionError):
    """A context already has an outstanding approval request."""

    def __init__(self, session_id: str, approval_id: str) -> None:
        self.session_id = session_id
        self.approval_id = approval_id
        super().__init__(
            f"Session '{session_id}' already awaits approval '{approval_id}'"
        )


class AlreadyResolved(SkillExecutionError):
    """An approval request has already been resolved."""

    def __init__(self, approval_id: str, state: ApprovalState) -> None:
        self.approval_id = approval_id
        self.state = state
        super().__init__(f"Approval '{approval_id}' already resolved as {state.value}")


class ApprovalNotFound(SkillExecutionError):
    """An approval id is unknown to the gate."""

    def __init__(self, approval_id: str) -> None:
        self.approval_id = approval_id
        super().__init__(f"Approval '{approval_id}' not found")


class InvalidStateTransition(SkillExecutionError):
    """Raised on an invalid skill status transition."""

    def __init__(self, from_state: str, to_state: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state} → {to_state}")


class CriticalCooldownActive(SkillExecutionError):
    """Raised when a critical approval arrives inside the cooldown window.

    The request stays pending and may be approved once the window passes.
    """

    def __init__(self, approval_id: str, remaining_ms: int) -> None:
        self.approval_id = approval_id
        self.remaining_ms = remaining_ms
        super().__init__(
            f"Approval '{approval_id}' is critical and another critical "
            f"operation was approved recently; retry in {remaining_ms}ms"
        )
