"""Step-execution state machine for declarative skills.

One :class:`ExecutionContext` exists per skill invocation, keyed by session
id. ``advance`` executes at most one step::

    condition → templates → approval gate → dispatch (timeout, retry)
              → store result → on-error policy → skill timeout / completion

Calls on the same session are serialised by a per-session ``asyncio.Lock``;
different sessions share no mutable state and run concurrently.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from integration.logger import get_logger

from .approval import ApprovalGate, can_auto_approve
from .config import SkillEngineConfig
from .dispatcher import ToolDispatcher
from .error_handler import ErrorHandler
from .expressions import build_scope, evaluate_condition, render, render_value
from .metrics_collector import MetricsCollector
from .retry_policy import RetryPolicy
from .schema import (
    ApprovalDecision,
    ApprovalRequest,
    ApprovalState,
    ContextNotFound,
    ExecutionContext,
    InvalidStateTransition,
    MissingParameter,
    OnError,
    ParameterType,
    Skill,
    SkillStatus,
    SkillStep,
    SkillTimeout,
    StepOutcome,
    StepResult,
    StepStatus,
    TemplateResolutionError,
    TypeMismatch,
    UnknownAction,
)
from .state_machine import check_transition
from .timeout_manager import TimeoutManager

_logger = get_logger(__name__)

ContextRef = Union[str, ExecutionContext]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _session_id(ref: ContextRef) -> str:
    return ref.session_id if isinstance(ref, ExecutionContext) else ref


def _matches_type(value: Any, expected: ParameterType) -> bool:
    if expected is ParameterType.STRING:
        return isinstance(value, str)
    if expected is ParameterType.BOOLEAN:
        return isinstance(value, bool)
    if expected is ParameterType.INTEGER:
        return isinstance(value, int) and not isinstance(value, bool)
    if expected is ParameterType.NUMBER:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected is ParameterType.ARRAY:
        return isinstance(value, (list, tuple))
    if expected is ParameterType.OBJECT:
        return isinstance(value, dict)
    return False


class StepExecutionEngine:
    """Interpret skills step by step against a tool dispatcher.

    Args:
        dispatcher: Registered action handlers.
        config: Engine configuration.
        approval_gate: Gate for ``requires_approval`` steps.
        metrics: Metrics collector.
        sleep: Awaitable sleep used for retry waits (seconds).
        user: Identity exposed to templates as ``user``.
    """

    def __init__(
        self,
        dispatcher: ToolDispatcher,
        config: SkillEngineConfig | None = None,
        approval_gate: ApprovalGate | None = None,
        metrics: MetricsCollector | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        user: str = "unknown",
    ) -> None:
        self.dispatcher = dispatcher
        self.config = config or SkillEngineConfig()
        self.approval_gate = approval_gate or ApprovalGate(self.config)
        self.metrics = metrics or MetricsCollector(self.config)
        self.user = user
        self._sleep = sleep

        self._retry = RetryPolicy(self.config)
        self._timeouts = TimeoutManager()
        self._errors = ErrorHandler()

        self._contexts: Dict[str, ExecutionContext] = {}
        self._skills: Dict[str, Skill] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(
        self,
        skill: Skill,
        params: Dict[str, Any] | None = None,
        session_id: str | None = None,
        user: str | None = None,
    ) -> ExecutionContext:
        """Validate *params* and create a ``running`` context at step 0.

        Raises:
            MissingParameter: A required parameter is absent.
            TypeMismatch: A parameter has the wrong type or enum value.
            UnknownAction: A step names an unregistered action.
        """
        for step in skill.steps:
            if not self.dispatcher.has(step.action):
                raise UnknownAction(step.action)

        resolved = self._resolve_params(skill, params or {})
        sid = session_id or uuid.uuid4().hex
        if sid in self._contexts:
            raise ValueError(f"Session '{sid}' already has an execution context")

        ctx = ExecutionContext(
            session_id=sid,
            skill_id=skill.id,
            user=user or self.user,
            params=resolved,
        )
        self._contexts[sid] = ctx
        self._skills[sid] = skill
        _logger.info("Skill started", session_id=sid, skill_id=skill.id, steps=len(skill.steps))
        return ctx.model_copy(deep=True)

    def restore(self, context: ExecutionContext, skill: Skill) -> ExecutionContext:
        """Register a checkpointed context, including its pending approval."""
        if context.skill_id != skill.id:
            raise ValueError(
                f"Context for skill '{context.skill_id}' cannot be restored with '{skill.id}'"
            )
        ctx = context.model_copy(deep=True)
        self._contexts[ctx.session_id] = ctx
        self._skills[ctx.session_id] = skill
        if ctx.pending_approval is not None:
            self.approval_gate.restore(ctx.pending_approval)
        _logger.info(
            "Execution context restored",
            session_id=ctx.session_id,
            skill_id=skill.id,
            status=ctx.status.value,
            step_index=ctx.current_step_index,
        )
        return ctx.model_copy(deep=True)

    def get_context(self, session_id: str) -> Optional[ExecutionContext]:
        """Read-only copy of the context for *session_id*, or ``None``."""
        ctx = self._contexts.get(session_id)
        return ctx.model_copy(deep=True) if ctx is not None else None

    def forget(self, session_id: str) -> None:
        """Drop a terminal context and everything held for it.

        Call once the context has been checkpointed; the engine keeps
        nothing about the session afterwards.

        Raises:
            ContextNotFound: Unknown session id.
            InvalidStateTransition: The context is still running or paused.
        """
        ctx, _ = self._require(session_id)
        if not ctx.status.is_terminal:
            raise InvalidStateTransition(ctx.status.value, "forgotten")
        del self._contexts[session_id]
        self._skills.pop(session_id, None)
        self._locks.pop(session_id, None)
        self.approval_gate.forget(session_id)
        _logger.debug("Execution context forgotten", session_id=session_id)

    def forget_finished(self) -> List[str]:
        """Forget every terminal context; returns the forgotten session ids."""
        finished = [sid for sid, ctx in self._contexts.items() if ctx.status.is_terminal]
        for sid in finished:
            self.forget(sid)
        return finished

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def advance(self, context: ContextRef) -> StepOutcome:
        """Execute at most one step of *context*.

        Re-running ``advance`` when the current step already holds a result
        returns that stored result without dispatching again.
        """
        sid = _session_id(context)
        async with self._lock_for(sid):
            ctx, skill = self._require(sid)
            return await self._advance_locked(ctx, skill)

    async def run(self, context: ContextRef) -> ExecutionContext:
        """Advance until the context is paused or terminal."""
        sid = _session_id(context)
        while True:
            outcome = await self.advance(sid)
            if outcome.status is not SkillStatus.RUNNING or outcome.replayed:
                break
        return self.get_context(sid)

    async def cancel(self, context: ContextRef, reason: str = "cancelled by operator") -> ExecutionContext:
        """Cancel a running or paused context at the next step boundary.

        An action already being dispatched runs to completion first.

        Raises:
            InvalidStateTransition: If the context is already terminal.
        """
        sid = _session_id(context)
        ctx, _ = self._require(sid)
        if ctx.status.is_terminal:
            raise InvalidStateTransition(ctx.status.value, SkillStatus.CANCELLED.value)
        ctx.cancel_requested = True
        _logger.info("Cancellation requested", session_id=sid)

        async with self._lock_for(sid):
            ctx, skill = self._require(sid)
            if not ctx.status.is_terminal:
                self._cancel_locked(ctx, skill, reason)
            return ctx.model_copy(deep=True)

    async def resolve(
        self,
        approval_id: str,
        decision: ApprovalDecision | str,
        approver: str,
        reason: str | None = None,
    ) -> ExecutionContext:
        """Resolve an approval and apply the outcome to its context.

        ``approved`` returns the context to ``running`` so the next
        ``advance`` dispatches the gated step with the approved parameters.
        ``denied`` (or an expired window) fails the skill.

        Raises:
            ApprovalNotFound: Unknown approval id.
            AlreadyResolved: The approval was already resolved.
            CriticalCooldownActive: A critical approval landed inside the
                cooldown window; the context stays paused.
        """
        resolved = self.approval_gate.resolve(approval_id, decision, approver, reason)
        return await self._apply_resolution(resolved)

    async def expire_approvals(self) -> List[ExecutionContext]:
        """Time out overdue approvals and fail their contexts."""
        updated: List[ExecutionContext] = []
        for req in self.approval_gate.expire_stale():
            if req.session_id in self._contexts:
                updated.append(await self._apply_resolution(req))
        return updated

    # ------------------------------------------------------------------
    # Internal: one step
    # ------------------------------------------------------------------

    async def _advance_locked(self, ctx: ExecutionContext, skill: Skill) -> StepOutcome:
        if ctx.status.is_terminal:
            if ctx.current_step_index < len(skill.steps):
                step_id = skill.steps[ctx.current_step_index].id
                stored = ctx.steps.get(step_id)
                if stored is not None:
                    return self._outcome(ctx, step_id=step_id, result=stored, replayed=True)
            return self._outcome(ctx)
        if ctx.status is SkillStatus.PAUSED:
            return self._outcome(ctx, approval=ctx.pending_approval)
        if ctx.cancel_requested:
            self._cancel_locked(ctx, skill, "cancelled by operator")
            return self._outcome(ctx)
        if ctx.current_step_index >= len(skill.steps):
            self._complete(ctx, skill)
            return self._outcome(ctx)

        step = skill.steps[ctx.current_step_index]
        stored = ctx.steps.get(step.id)
        if stored is not None:
            _logger.debug("Step already terminal; replaying stored result", session_id=ctx.session_id, step_id=step.id)
            return self._outcome(ctx, step_id=step.id, result=stored, replayed=True)

        approved = self._take_approval(ctx, step)
        if approved is not None:
            params = approved.parameters
        else:
            scope = self._scope(ctx)
            try:
                if step.condition and not evaluate_condition(step.condition, scope):
                    result = StepResult(step_id=step.id, status=StepStatus.SKIPPED)
                    self._store(ctx, skill, step, result)
                    _logger.info("Step skipped", session_id=ctx.session_id, step_id=step.id, condition=step.condition)
                    self._after_step(ctx, skill)
                    return self._outcome(ctx, step_id=step.id, result=result)
                params = render_value(step.parameters, scope)
            except TemplateResolutionError as exc:
                exc.step_id = step.id
                result = self._error_result(step, exc, attempts=0, started=_utcnow(), duration_ms=0.0)
                ctx.errors.append(self._errors.handle_step_error(ctx.session_id, step.id, exc, attempt=0))
                self._on_failure(ctx, skill, step, result)
                self._after_step(ctx, skill)
                return self._outcome(ctx, step_id=step.id, result=result)

            if step.requires_approval:
                req = self._request_approval(ctx, skill, step, params)
                if req.state is ApprovalState.PENDING:
                    return self._outcome(ctx, step_id=step.id, approval=req)

        result = await self._dispatch(ctx, skill, step, params)
        if result.status is StepStatus.SUCCESS:
            self._store(ctx, skill, step, result)
        elif ctx.elapsed_ms > self._skill_timeout(skill):
            # skill timeout takes precedence over the step's own policy
            ctx.steps[step.id] = result
            self.metrics.record_step(skill.id, result.status, result.duration_ms)
        else:
            self._on_failure(ctx, skill, step, result)
        self._after_step(ctx, skill)
        return self._outcome(ctx, step_id=step.id, result=result)

    async def _dispatch(
        self,
        ctx: ExecutionContext,
        skill: Skill,
        step: SkillStep,
        params: Dict[str, Any],
    ) -> StepResult:
        timeout_ms = step.timeout_ms or self.config.default_step_timeout_ms
        skill_timeout = self._skill_timeout(skill)
        max_attempts = self._retry.max_attempts(step)
        started = _utcnow()
        t0 = time.perf_counter()
        attempt = 0
        last_exc: Optional[Exception] = None

        while True:
            attempt += 1
            a0 = time.perf_counter()
            try:
                value = await self._timeouts.execute_with_timeout(
                    self.dispatcher.execute(step.action, params),
                    timeout_ms,
                    step_id=step.id,
                    session_id=ctx.session_id,
                )
            except Exception as exc:
                ctx.elapsed_ms += (time.perf_counter() - a0) * 1000.0
                last_exc = exc
                record = self._errors.handle_step_error(ctx.session_id, step.id, exc, attempt)
                ctx.errors.append(record)
                if record.error_type == "TIMEOUT":
                    self.metrics.record_timeout(skill.id)
            else:
                ctx.elapsed_ms += (time.perf_counter() - a0) * 1000.0
                duration = (time.perf_counter() - t0) * 1000.0
                _logger.info(
                    "Step succeeded",
                    session_id=ctx.session_id,
                    step_id=step.id,
                    action=step.action,
                    attempts=attempt,
                    duration_ms=round(duration, 2),
                )
                return StepResult(
                    step_id=step.id,
                    status=StepStatus.SUCCESS,
                    result=value,
                    duration_ms=duration,
                    attempts=attempt,
                    started_at=started,
                )

            if attempt >= max_attempts:
                break
            delay = self._retry.delay_ms(step, attempt)
            if ctx.elapsed_ms + delay > skill_timeout:
                _logger.warning(
                    "Retry wait would exceed skill timeout; giving up",
                    session_id=ctx.session_id,
                    step_id=step.id,
                    elapsed_ms=round(ctx.elapsed_ms, 2),
                    delay_ms=delay,
                )
                ctx.elapsed_ms += delay
                break
            self.metrics.record_retry(skill.id)
            _logger.info(
                "Retrying step",
                session_id=ctx.session_id,
                step_id=step.id,
                attempt=attempt + 1,
                delay_ms=delay,
            )
            await self._sleep(delay / 1000.0)
            ctx.elapsed_ms += delay

        duration = (time.perf_counter() - t0) * 1000.0
        return self._error_result(step, last_exc, attempt, started, duration)

    # ------------------------------------------------------------------
    # Internal: approvals
    # ------------------------------------------------------------------

    def _request_approval(
        self,
        ctx: ExecutionContext,
        skill: Skill,
        step: SkillStep,
        params: Dict[str, Any],
    ) -> ApprovalRequest:
        req = self.approval_gate.request(
            session_id=ctx.session_id,
            skill_id=skill.id,
            step_id=step.id,
            action=step.action,
            parameters=params,
            risk_level=skill.risk_level,
            rollback_command=self._rollback(ctx, skill),
            timeout_ms=step.approval_timeout_ms or skill.approval_timeout_ms,
        )
        if can_auto_approve(skill.risk_level, self.config.auto_approve_risk_levels):
            req = self.approval_gate.auto_approve(req)
            self.metrics.record_approval(req.risk_level.value, req.state)
            ctx.approvals.append(req)
            return req

        ctx.pending_approval = req
        ctx.status = check_transition(ctx.status, SkillStatus.PAUSED)
        ctx.reason = f"Awaiting approval for step '{step.id}'"
        _logger.info("Skill paused for approval", session_id=ctx.session_id, step_id=step.id, approval_id=req.id)
        return req

    def _take_approval(self, ctx: ExecutionContext, step: SkillStep) -> Optional[ApprovalRequest]:
        """Consume an approval granted for *step*, if one exists."""
        if ctx.approved_step_id != step.id:
            return None
        for req in reversed(ctx.approvals):
            if req.step_id == step.id and req.state is ApprovalState.APPROVED:
                ctx.approved_step_id = None
                return req
        return None

    async def _apply_resolution(self, req: ApprovalRequest) -> ExecutionContext:
        async with self._lock_for(req.session_id):
            ctx, skill = self._require(req.session_id)
            self.metrics.record_approval(req.risk_level.value, req.state)
            pending = ctx.pending_approval
            if pending is None or pending.id != req.id or ctx.status is not SkillStatus.PAUSED:
                _logger.warning(
                    "Approval resolution does not match a paused step",
                    session_id=ctx.session_id,
                    approval_id=req.id,
                    status=ctx.status.value,
                )
                return ctx.model_copy(deep=True)

            ctx.pending_approval = None
            ctx.approvals.append(req)
            if req.state is ApprovalState.APPROVED:
                ctx.approved_step_id = req.step_id
                ctx.status = check_transition(ctx.status, SkillStatus.RUNNING)
                ctx.reason = None
                if ctx.cancel_requested:
                    self._cancel_locked(ctx, skill, "cancelled by operator")
            else:
                why = req.reason or "no reason given"
                self._fail(
                    ctx,
                    skill,
                    f"Approval {req.state.value} for step '{req.step_id}' by {req.approver}: {why}",
                    kind=req.state.value,
                )
            return ctx.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Internal: state changes
    # ------------------------------------------------------------------

    def _store(self, ctx: ExecutionContext, skill: Skill, step: SkillStep, result: StepResult) -> None:
        ctx.steps[step.id] = result
        ctx.current_step_index += 1
        self.metrics.record_step(skill.id, result.status, result.duration_ms)

    def _on_failure(
        self,
        ctx: ExecutionContext,
        skill: Skill,
        step: SkillStep,
        result: StepResult,
    ) -> None:
        proceed = step.on_error is OnError.CONTINUE or (
            step.on_error is OnError.RETRY and step.on_retries_exhausted is OnError.CONTINUE
        )
        if proceed:
            self._store(ctx, skill, step, result)
            _logger.warning("Step failed; continuing", session_id=ctx.session_id, step_id=step.id, error=result.error)
            return
        ctx.steps[step.id] = result
        self.metrics.record_step(skill.id, result.status, result.duration_ms)
        attempts = f" after {result.attempts} attempt(s)" if result.attempts > 1 else ""
        self._fail(ctx, skill, f"Step '{step.id}' failed{attempts}: {result.error}", kind="error")

    def _after_step(self, ctx: ExecutionContext, skill: Skill) -> None:
        if ctx.status.is_terminal:
            return
        limit = self._skill_timeout(skill)
        if ctx.elapsed_ms > limit:
            exc = SkillTimeout(skill.id, limit, ctx.elapsed_ms)
            self._fail(ctx, skill, str(exc), kind="skill_timeout")
            return
        if ctx.cancel_requested:
            self._cancel_locked(ctx, skill, "cancelled by operator")
            return
        if ctx.current_step_index >= len(skill.steps):
            self._complete(ctx, skill)

    def _complete(self, ctx: ExecutionContext, skill: Skill) -> None:
        ctx.status = check_transition(ctx.status, SkillStatus.COMPLETED)
        ctx.reason = f"All {len(skill.steps)} steps finished"
        ctx.completed_at = _utcnow()
        self.metrics.record_skill_result(skill.id, ctx.status)
        _logger.info("Skill completed", session_id=ctx.session_id, skill_id=skill.id)

    def _fail(self, ctx: ExecutionContext, skill: Skill, reason: str, kind: str) -> None:
        ctx.status = check_transition(ctx.status, SkillStatus.FAILED)
        ctx.reason = reason
        ctx.failure_kind = kind
        ctx.rollback_command = self._rollback(ctx, skill)
        ctx.completed_at = _utcnow()
        self.metrics.record_skill_result(skill.id, ctx.status)
        _logger.error(
            "Skill failed",
            session_id=ctx.session_id,
            skill_id=skill.id,
            failure_kind=kind,
            reason=reason,
            rollback_command=ctx.rollback_command,
        )

    def _cancel_locked(self, ctx: ExecutionContext, skill: Skill, reason: str) -> None:
        pending = ctx.pending_approval
        if pending is not None:
            resolved = self.approval_gate.resolve(
                pending.id, ApprovalDecision.DENIED, approver="system", reason="skill cancelled",
            )
            ctx.approvals.append(resolved)
            ctx.pending_approval = None
        ctx.status = check_transition(ctx.status, SkillStatus.CANCELLED)
        ctx.reason = reason
        ctx.failure_kind = "cancelled"
        ctx.rollback_command = self._rollback(ctx, skill)
        ctx.completed_at = _utcnow()
        self.metrics.record_skill_result(skill.id, ctx.status)
        _logger.info("Skill cancelled", session_id=ctx.session_id, skill_id=skill.id, reason=reason)

    # ------------------------------------------------------------------
    # Internal: helpers
    # ------------------------------------------------------------------

    def _require(self, session_id: str) -> tuple[ExecutionContext, Skill]:
        ctx = self._contexts.get(session_id)
        if ctx is None:
            raise ContextNotFound(session_id)
        return ctx, self._skills[session_id]

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks.setdefault(session_id, asyncio.Lock())
        return lock

    def _skill_timeout(self, skill: Skill) -> int:
        return skill.timeout_ms or self.config.default_skill_timeout_ms

    def _resolve_params(self, skill: Skill, supplied: Dict[str, Any]) -> Dict[str, Any]:
        resolved: Dict[str, Any] = {}
        for param in skill.parameters:
            value = supplied.get(param.name)
            if value is None:
                if param.default is not None:
                    value = param.default
                elif param.required:
                    raise MissingParameter(skill.id, param.name)
                else:
                    resolved[param.name] = None
                    continue
            if not _matches_type(value, param.type):
                raise TypeMismatch(skill.id, param.name, param.type.value, value)
            if param.enum is not None and value not in param.enum:
                raise TypeMismatch(skill.id, param.name, f"one of {param.enum}", value)
            resolved[param.name] = value
        return resolved

    def _scope(self, ctx: ExecutionContext) -> Dict[str, Any]:
        now = _utcnow()
        steps = {
            sid: {
                "result": r.result,
                "status": r.status.value,
                "error": r.error,
                "duration_ms": r.duration_ms,
            }
            for sid, r in ctx.steps.items()
        }
        builtins = {
            "now": now.isoformat(),
            "timestamp": int(now.timestamp() * 1000),
            "user": ctx.user,
            "session_id": ctx.session_id,
        }
        return build_scope(ctx.params, steps, builtins)

    def _rollback(self, ctx: ExecutionContext, skill: Skill) -> Optional[str]:
        if not skill.rollback:
            return None
        try:
            rendered = render(skill.rollback, self._scope(ctx))
        except TemplateResolutionError as exc:
            _logger.warning("Rollback command left unresolved", session_id=ctx.session_id, error=str(exc))
            return skill.rollback
        return str(rendered)

    @staticmethod
    def _error_result(
        step: SkillStep,
        exc: Optional[BaseException],
        attempts: int,
        started: datetime,
        duration_ms: float,
    ) -> StepResult:
        return StepResult(
            step_id=step.id,
            status=StepStatus.ERROR,
            error=str(exc) if exc is not None else "unknown error",
            error_type=type(exc).__name__ if exc is not None else None,
            duration_ms=duration_ms,
            attempts=attempts,
            started_at=started,
        )

    @staticmethod
    def _outcome(
        ctx: ExecutionContext,
        step_id: Optional[str] = None,
        result: Optional[StepResult] = None,
        approval: Optional[ApprovalRequest] = None,
        replayed: bool = False,
    ) -> StepOutcome:
        return StepOutcome(
            session_id=ctx.session_id,
            step_id=step_id,
            step_result=result,
            status=ctx.status,
            approval=approval.model_copy(deep=True) if approval is not None else None,
            reason=ctx.reason,
            rollback_command=ctx.rollback_command,
            replayed=replayed,
        )
