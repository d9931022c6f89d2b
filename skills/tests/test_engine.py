"""Tests for skills.engine."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List

import pytest

from skills.config import SkillEngineConfig
from skills.dispatcher import ToolDispatcher
from skills.engine import StepExecutionEngine
from skills.schema import (
    AlreadyResolved,
    ApprovalState,
    ContextNotFound,
    CriticalCooldownActive,
    InvalidStateTransition,
    MissingParameter,
    SkillStatus,
    StepStatus,
    TypeMismatch,
    UnknownAction,
)
from skills.tests.conftest import make_skill

_SCALE_PARAMS = [
    {"name": "service_name", "type": "string", "required": True},
    {"name": "current_count", "type": "integer", "default": 2},
    {"name": "target_count", "type": "integer", "required": True},
    {"name": "mode", "type": "string", "enum": ["fast", "safe"], "default": "safe"},
    {"name": "cluster", "type": "string"},
]


def _failing_dispatcher(counter: List[int], error: Exception | None = None) -> ToolDispatcher:
    d = ToolDispatcher()

    def boom(params: Dict[str, Any]) -> Any:
        counter.append(1)
        raise error or RuntimeError("throttled")

    d.register("flaky", boom)
    d.register("aws_query", lambda params: {"ok": True})
    return d


class TestStart:
    def test_applies_defaults(self, engine: StepExecutionEngine) -> None:
        skill = make_skill([{"id": "a", "action": "aws_query"}], parameters=_SCALE_PARAMS)
        ctx = engine.start(skill, {"service_name": "api", "target_count": 4})
        assert ctx.status is SkillStatus.RUNNING
        assert ctx.current_step_index == 0
        assert ctx.params == {
            "service_name": "api", "current_count": 2, "target_count": 4,
            "mode": "safe", "cluster": None,
        }
        assert ctx.user == "oncall"

    def test_missing_required_parameter(self, engine: StepExecutionEngine) -> None:
        skill = make_skill([{"id": "a", "action": "aws_query"}], parameters=_SCALE_PARAMS)
        with pytest.raises(MissingParameter) as exc:
            engine.start(skill, {"service_name": "api"})
        assert exc.value.name == "target_count"

    def test_type_mismatch(self, engine: StepExecutionEngine) -> None:
        skill = make_skill([{"id": "a", "action": "aws_query"}], parameters=_SCALE_PARAMS)
        with pytest.raises(TypeMismatch):
            engine.start(skill, {"service_name": "api", "target_count": "four"})

    def test_boolean_is_not_an_integer(self, engine: StepExecutionEngine) -> None:
        skill = make_skill([{"id": "a", "action": "aws_query"}], parameters=_SCALE_PARAMS)
        with pytest.raises(TypeMismatch):
            engine.start(skill, {"service_name": "api", "target_count": True})

    def test_enum_enforced(self, engine: StepExecutionEngine) -> None:
        skill = make_skill([{"id": "a", "action": "aws_query"}], parameters=_SCALE_PARAMS)
        with pytest.raises(TypeMismatch):
            engine.start(skill, {"service_name": "api", "target_count": 3, "mode": "yolo"})

    def test_unknown_action(self, engine: StepExecutionEngine) -> None:
        skill = make_skill([{"id": "a", "action": "launch_missiles"}])
        with pytest.raises(UnknownAction):
            engine.start(skill)

    def test_contexts_are_independent(self, engine: StepExecutionEngine) -> None:
        skill = make_skill([{"id": "a", "action": "aws_query"}])
        a = engine.start(skill)
        b = engine.start(skill)
        assert a.session_id != b.session_id

    def test_duplicate_session_rejected(self, engine: StepExecutionEngine) -> None:
        skill = make_skill([{"id": "a", "action": "aws_query"}])
        engine.start(skill, session_id="s1")
        with pytest.raises(ValueError):
            engine.start(skill, session_id="s1")


class TestAdvance:
    @pytest.mark.asyncio
    async def test_runs_steps_in_order(self, engine: StepExecutionEngine, calls) -> None:
        skill = make_skill(
            [
                {"id": "check", "action": "aws_query", "parameters": {"service": "{{ service_name }}"}},
                {"id": "notify", "action": "notify",
                 "parameters": {"msg": "{{ service_name }} has {{ steps.check.result.desired_count }}"}},
            ],
            parameters=_SCALE_PARAMS,
        )
        ctx = engine.start(skill, {"service_name": "api", "target_count": 4})

        first = await engine.advance(ctx)
        assert first.step_id == "check"
        assert first.step_result.status is StepStatus.SUCCESS
        assert first.status is SkillStatus.RUNNING

        second = await engine.advance(ctx.session_id)
        assert second.status is SkillStatus.COMPLETED
        assert calls == [
            ("aws_query", {"service": "api"}),
            ("notify", {"msg": "api has 2"}),
        ]
        final = engine.get_context(ctx.session_id)
        assert final.reason == "All 2 steps finished"
        assert final.completed_at is not None

    @pytest.mark.asyncio
    async def test_false_condition_skips_without_dispatch(self, engine: StepExecutionEngine, calls) -> None:
        skill = make_skill(
            [{"id": "scale", "action": "aws_mutate", "condition": "{{ current_count < target_count }}"}],
            parameters=_SCALE_PARAMS,
        )
        ctx = engine.start(skill, {"service_name": "api", "current_count": 5, "target_count": 3})
        outcome = await engine.advance(ctx)
        assert outcome.step_result.status is StepStatus.SKIPPED
        assert outcome.status is SkillStatus.COMPLETED
        assert calls == []

    @pytest.mark.asyncio
    async def test_unresolved_template_fails_step(self, engine: StepExecutionEngine, calls) -> None:
        skill = make_skill(
            [
                {"id": "a", "action": "aws_query"},
                {"id": "b", "action": "notify", "parameters": {"v": "{{ steps.a.result.missing }}"}},
            ],
        )
        ctx = await engine.run(engine.start(skill))
        assert ctx.status is SkillStatus.FAILED
        assert ctx.steps["b"].error_type == "TemplateResolutionError"
        assert "Step 'b' failed" in ctx.reason
        assert [c[0] for c in calls] == ["aws_query"]

    @pytest.mark.asyncio
    async def test_on_error_continue(self, config: SkillEngineConfig) -> None:
        counter: List[int] = []
        engine = StepExecutionEngine(_failing_dispatcher(counter), config=config)
        skill = make_skill([
            {"id": "a", "action": "flaky", "on_error": "continue"},
            {"id": "b", "action": "aws_query"},
        ])
        ctx = await engine.run(engine.start(skill))
        assert ctx.status is SkillStatus.COMPLETED
        assert ctx.steps["a"].status is StepStatus.ERROR
        assert ctx.steps["a"].error == "throttled"
        assert ctx.steps["b"].status is StepStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_abort_surfaces_rollback(self, config: SkillEngineConfig) -> None:
        counter: List[int] = []
        engine = StepExecutionEngine(_failing_dispatcher(counter), config=config)
        skill = make_skill(
            [{"id": "q", "action": "aws_query"}, {"id": "a", "action": "flaky"}, {"id": "c", "action": "aws_query"}],
            parameters=[{"name": "svc", "type": "string", "default": "api"}],
            rollback="restore {{ svc }}",
        )
        ctx = await engine.run(engine.start(skill))
        assert ctx.status is SkillStatus.FAILED
        assert ctx.failure_kind == "error"
        assert ctx.rollback_command == "restore api"
        assert ctx.current_step_index == 1
        assert ctx.steps["q"].status is StepStatus.SUCCESS
        assert "c" not in ctx.steps

    @pytest.mark.asyncio
    async def test_exponential_retry_schedule(self, config: SkillEngineConfig, sleeps) -> None:
        counter: List[int] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        engine = StepExecutionEngine(_failing_dispatcher(counter), config=config, sleep=fake_sleep)
        skill = make_skill([{
            "id": "a", "action": "flaky", "onError": "retry", "retryCount": 3,
            "retryDelayMs": 5000, "retryBackoff": "exponential",
        }])
        ctx = await engine.run(engine.start(skill))
        assert len(counter) == 4
        assert sleeps == [5.0, 10.0, 20.0]
        assert ctx.status is SkillStatus.FAILED
        assert ctx.steps["a"].attempts == 4
        assert engine.metrics.get_counts()["retries"] == {"test-skill": 3}
        assert [(e.step_id, e.attempt, e.error_type) for e in ctx.errors] == [
            ("a", n, "ACTION_ERROR") for n in range(1, 5)
        ]

    @pytest.mark.asyncio
    async def test_retry_recovers(self, config: SkillEngineConfig) -> None:
        attempts: List[int] = []
        d = ToolDispatcher()

        def sometimes(params: Dict[str, Any]) -> str:
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("reset")
            return "ok"

        d.register("flaky", sometimes)

        async def no_sleep(seconds: float) -> None:
            return None

        engine = StepExecutionEngine(d, config=config, sleep=no_sleep)
        skill = make_skill([{"id": "a", "action": "flaky", "on_error": "retry", "retry_count": 3,
                             "retry_backoff": "linear"}])
        ctx = await engine.run(engine.start(skill))
        assert ctx.status is SkillStatus.COMPLETED
        assert ctx.steps["a"].result == "ok"
        assert ctx.steps["a"].attempts == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted_can_continue(self, config: SkillEngineConfig) -> None:
        counter: List[int] = []

        async def no_sleep(seconds: float) -> None:
            return None

        engine = StepExecutionEngine(_failing_dispatcher(counter), config=config, sleep=no_sleep)
        skill = make_skill([
            {"id": "a", "action": "flaky", "on_error": "retry", "retry_count": 1,
             "on_retries_exhausted": "continue"},
            {"id": "b", "action": "aws_query"},
        ])
        ctx = await engine.run(engine.start(skill))
        assert len(counter) == 2
        assert ctx.status is SkillStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_step_timeout_is_a_failure(self, config: SkillEngineConfig) -> None:
        d = ToolDispatcher()

        async def slow(params: Dict[str, Any]) -> str:
            await asyncio.sleep(1)
            return "late"

        d.register("slow", slow)
        engine = StepExecutionEngine(d, config=config)
        skill = make_skill([{"id": "a", "action": "slow", "timeout_ms": 20, "on_error": "continue"}])
        ctx = await engine.run(engine.start(skill))
        assert ctx.status is SkillStatus.COMPLETED
        assert ctx.steps["a"].status is StepStatus.ERROR
        assert ctx.steps["a"].error_type == "StepTimeout"

    @pytest.mark.asyncio
    async def test_blocking_sync_handler_times_out(self, config: SkillEngineConfig) -> None:
        d = ToolDispatcher()

        def blocking(params: Dict[str, Any]) -> str:
            time.sleep(0.3)
            return "late"

        d.register("blocking", blocking)
        engine = StepExecutionEngine(d, config=config)
        skill = make_skill([{"id": "a", "action": "blocking", "timeout_ms": 50}])
        ctx = await engine.run(engine.start(skill))
        assert ctx.status is SkillStatus.FAILED
        assert ctx.steps["a"].status is StepStatus.ERROR
        assert ctx.steps["a"].error_type == "StepTimeout"
        assert ctx.steps["a"].duration_ms < 250

    @pytest.mark.asyncio
    async def test_blocking_sync_handlers_run_concurrently(self, config: SkillEngineConfig) -> None:
        d = ToolDispatcher()

        def blocking(params: Dict[str, Any]) -> str:
            time.sleep(0.3)
            return "done"

        d.register("blocking", blocking)
        engine = StepExecutionEngine(d, config=config)
        skill = make_skill([{"id": "a", "action": "blocking"}])
        first, second = engine.start(skill), engine.start(skill)

        t0 = time.perf_counter()
        results = await asyncio.gather(engine.run(first), engine.run(second))
        elapsed = time.perf_counter() - t0

        assert [c.status for c in results] == [SkillStatus.COMPLETED, SkillStatus.COMPLETED]
        assert elapsed < 0.55
    @pytest.mark.asyncio
    async def test_skill_timeout_fails_after_step_completes(self, config: SkillEngineConfig) -> None:
        d = ToolDispatcher()

        async def slow(params: Dict[str, Any]) -> str:
            await asyncio.sleep(0.05)
            return "done"

        d.register("slow", slow)
        engine = StepExecutionEngine(d, config=config)
        skill = make_skill(
            [{"id": "a", "action": "slow"}, {"id": "b", "action": "slow"}],
            timeout_ms=10,
        )
        ctx = await engine.run(engine.start(skill))
        assert ctx.status is SkillStatus.FAILED
        assert ctx.failure_kind == "skill_timeout"
        assert ctx.steps["a"].result == "done"
        assert "b" not in ctx.steps

    @pytest.mark.asyncio
    async def test_retry_wait_respects_skill_timeout(self, config: SkillEngineConfig, sleeps) -> None:
        counter: List[int] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        engine = StepExecutionEngine(_failing_dispatcher(counter), config=config, sleep=fake_sleep)
        skill = make_skill(
            [{"id": "a", "action": "flaky", "on_error": "retry", "retry_count": 5,
              "retry_delay_ms": 4000, "retry_backoff": "exponential"}],
            timeout_ms=10_000,
        )
        ctx = await engine.run(engine.start(skill))
        assert sleeps == [4.0]
        assert len(counter) == 2
        assert ctx.failure_kind == "skill_timeout"

    @pytest.mark.asyncio
    async def test_terminal_step_is_replayed_not_redispatched(self, config: SkillEngineConfig) -> None:
        counter: List[int] = []
        engine = StepExecutionEngine(_failing_dispatcher(counter), config=config)
        skill = make_skill([{"id": "a", "action": "flaky"}])
        ctx = engine.start(skill)
        await engine.advance(ctx)

        first = await engine.advance(ctx)
        second = await engine.advance(ctx)
        assert first.replayed and second.replayed
        assert first.step_result == second.step_result
        assert len(counter) == 1

    @pytest.mark.asyncio
    async def test_restored_step_with_result_is_not_redispatched(self, engine: StepExecutionEngine, calls) -> None:
        skill = make_skill([{"id": "a", "action": "aws_query"}, {"id": "b", "action": "notify"}])
        ctx = engine.start(skill, session_id="orig")
        await engine.advance(ctx)
        snapshot = engine.get_context("orig")
        # simulate a checkpoint captured before the index moved on
        stale = snapshot.model_copy(update={"session_id": "copy", "current_step_index": 0})

        engine.restore(stale, skill)
        first = await engine.advance("copy")
        second = await engine.advance("copy")
        assert first.step_result == second.step_result == snapshot.steps["a"]
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_unknown_session(self, engine: StepExecutionEngine) -> None:
        with pytest.raises(ContextNotFound):
            await engine.advance("nope")


class TestApprovals:
    def _skill(self, **extra: Any):
        return make_skill(
            [
                {"id": "check", "action": "aws_query"},
                {"id": "scale", "action": "aws_mutate", "requires_approval": True,
                 "parameters": {"count": "{{ target_count }}"}},
            ],
            parameters=[{"name": "target_count", "type": "integer", "required": True}],
            rollback="scale back to {{ steps.check.result.desired_count }}",
            risk_level=extra.pop("risk_level", "medium"),
            **extra,
        )

    @pytest.mark.asyncio
    async def test_pauses_then_resumes_on_approval(self, engine: StepExecutionEngine, calls) -> None:
        ctx = engine.start(self._skill(), {"target_count": 6})
        await engine.advance(ctx)
        paused = await engine.advance(ctx)

        assert paused.status is SkillStatus.PAUSED
        assert paused.approval.parameters == {"count": 6}
        assert paused.approval.rollback_command == "scale back to 2"
        assert [c[0] for c in calls] == ["aws_query"]

        # advancing while paused does nothing
        again = await engine.advance(ctx)
        assert again.status is SkillStatus.PAUSED
        assert len(calls) == 1

        resumed = await engine.resolve(paused.approval.id, "approved", "alice")
        assert resumed.status is SkillStatus.RUNNING
        done = await engine.run(ctx)
        assert done.status is SkillStatus.COMPLETED
        assert calls[-1] == ("aws_mutate", {"count": 6})
        assert done.approvals[-1].approver == "alice"

    @pytest.mark.asyncio
    async def test_denial_fails_with_rollback(self, engine: StepExecutionEngine, calls) -> None:
        ctx = engine.start(self._skill(), {"target_count": 6})
        paused = await engine.run(ctx)
        result = await engine.resolve(paused.pending_approval.id, "denied", "bob", "not during peak")
        assert result.status is SkillStatus.FAILED
        assert result.failure_kind == "denied"
        assert result.rollback_command == "scale back to 2"
        assert "not during peak" in result.reason
        assert [c[0] for c in calls] == ["aws_query"]

    @pytest.mark.asyncio
    async def test_second_resolution_rejected(self, engine: StepExecutionEngine) -> None:
        ctx = engine.start(self._skill(), {"target_count": 6})
        paused = await engine.run(ctx)
        await engine.resolve(paused.pending_approval.id, "approved", "alice")
        with pytest.raises(AlreadyResolved):
            await engine.resolve(paused.pending_approval.id, "denied", "bob")

    @pytest.mark.asyncio
    async def test_auto_approved_risk_level(self, dispatcher: ToolDispatcher, calls) -> None:
        cfg = SkillEngineConfig(auto_approve_risk_levels=frozenset({"low"}), enable_prometheus_metrics=False)
        engine = StepExecutionEngine(dispatcher, config=cfg)
        ctx = await engine.run(engine.start(self._skill(risk_level="low"), {"target_count": 6}))
        assert ctx.status is SkillStatus.COMPLETED
        assert ctx.approvals[0].approver == "auto-approve"
        assert [c[0] for c in calls] == ["aws_query", "aws_mutate"]

    @pytest.mark.asyncio
    async def test_expired_approval_times_out(self, dispatcher: ToolDispatcher) -> None:
        engine = StepExecutionEngine(dispatcher, config=SkillEngineConfig(enable_prometheus_metrics=False))
        skill = self._skill(approval_timeout_ms=1)
        paused = await engine.run(engine.start(skill, {"target_count": 6}))
        await asyncio.sleep(0.01)
        updated = await engine.expire_approvals()
        assert [c.session_id for c in updated] == [paused.session_id]
        assert updated[0].status is SkillStatus.FAILED
        assert updated[0].failure_kind == ApprovalState.TIMEOUT.value

    @pytest.mark.asyncio
    async def test_critical_cooldown_keeps_second_context_paused(self, dispatcher: ToolDispatcher) -> None:
        engine = StepExecutionEngine(dispatcher, config=SkillEngineConfig(enable_prometheus_metrics=False))
        skill = self._skill(risk_level="critical")
        first = await engine.run(engine.start(skill, {"target_count": 6}))
        second = await engine.run(engine.start(skill, {"target_count": 8}))

        await engine.resolve(first.pending_approval.id, "approved", "alice")
        with pytest.raises(CriticalCooldownActive):
            await engine.resolve(second.pending_approval.id, "approved", "alice")
        assert engine.get_context(second.session_id).status is SkillStatus.PAUSED


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_running(self, engine: StepExecutionEngine, calls) -> None:
        skill = make_skill([{"id": "a", "action": "aws_query"}, {"id": "b", "action": "notify"}],
                           rollback="nothing to undo")
        ctx = engine.start(skill)
        await engine.advance(ctx)
        cancelled = await engine.cancel(ctx)
        assert cancelled.status is SkillStatus.CANCELLED
        assert cancelled.rollback_command == "nothing to undo"
        outcome = await engine.advance(ctx)
        assert outcome.status is SkillStatus.CANCELLED
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_cancel_paused_denies_pending_approval(self, engine: StepExecutionEngine) -> None:
        skill = make_skill([{"id": "a", "action": "aws_mutate", "requires_approval": True}])
        paused = await engine.run(engine.start(skill))
        cancelled = await engine.cancel(paused)
        assert cancelled.status is SkillStatus.CANCELLED
        assert cancelled.pending_approval is None
        assert cancelled.approvals[-1].state is ApprovalState.DENIED
        assert engine.approval_gate.pending() == []

    @pytest.mark.asyncio
    async def test_cancel_waits_for_inflight_step(self, config: SkillEngineConfig) -> None:
        d = ToolDispatcher()
        finished: List[str] = []

        async def slow(params: Dict[str, Any]) -> str:
            await asyncio.sleep(0.05)
            finished.append("a")
            return "done"

        d.register("slow", slow)
        engine = StepExecutionEngine(d, config=config)
        skill = make_skill([{"id": "a", "action": "slow"}, {"id": "b", "action": "slow"}])
        ctx = engine.start(skill)

        advancing = asyncio.create_task(engine.advance(ctx))
        await asyncio.sleep(0)
        cancelled = await engine.cancel(ctx)
        await advancing

        assert finished == ["a"]
        assert cancelled.status is SkillStatus.CANCELLED
        assert cancelled.steps["a"].status is StepStatus.SUCCESS
        assert "b" not in cancelled.steps

    @pytest.mark.asyncio
    async def test_cancel_terminal_rejected(self, engine: StepExecutionEngine) -> None:
        skill = make_skill([{"id": "a", "action": "aws_query"}])
        ctx = await engine.run(engine.start(skill))
        with pytest.raises(InvalidStateTransition):
            await engine.cancel(ctx)


class TestForget:
    @pytest.mark.asyncio
    async def test_forget_terminal_context(self, engine: StepExecutionEngine) -> None:
        skill = TestApprovals()._skill()
        ctx = await engine.run(engine.start(skill, {"target_count": 6}))
        approval_id = ctx.pending_approval.id
        await engine.resolve(approval_id, "denied", "bob")

        engine.forget(ctx.session_id)
        assert engine.get_context(ctx.session_id) is None
        assert engine.approval_gate.get(approval_id) is None
        with pytest.raises(ContextNotFound):
            engine.forget(ctx.session_id)

    @pytest.mark.asyncio
    async def test_live_context_cannot_be_forgotten(self, engine: StepExecutionEngine) -> None:
        skill = TestApprovals()._skill()
        paused = await engine.run(engine.start(skill, {"target_count": 6}))
        with pytest.raises(InvalidStateTransition):
            engine.forget(paused.session_id)
        assert engine.get_context(paused.session_id) is not None

    @pytest.mark.asyncio
    async def test_forget_finished_sweeps_terminal_only(self, engine: StepExecutionEngine) -> None:
        done = await engine.run(engine.start(make_skill([{"id": "a", "action": "aws_query"}])))
        paused = await engine.run(engine.start(TestApprovals()._skill(), {"target_count": 6}))

        assert engine.forget_finished() == [done.session_id]
        assert engine.get_context(done.session_id) is None
        assert engine.get_context(paused.session_id).status is SkillStatus.PAUSED
