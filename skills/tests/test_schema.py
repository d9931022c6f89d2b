"""Tests for skills.schema."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from skills.schema import (
    Backoff,
    OnError,
    RiskLevel,
    Skill,
    SkillStatus,
    StepResult,
    StepStatus,
)
from skills.tests.conftest import make_skill


class TestSkillDefinition:
    def test_camel_case_keys(self) -> None:
        skill = Skill.model_validate({
            "id": "s",
            "name": "S",
            "riskLevel": "high",
            "applicableServices": ["ecs"],
            "steps": [{
                "id": "a",
                "action": "aws_mutate",
                "requiresApproval": True,
                "onError": "retry",
                "retryCount": 2,
                "retryDelayMs": 250,
                "retryBackoff": "linear",
                "timeoutMs": 1000,
            }],
        })
        step = skill.steps[0]
        assert skill.risk_level is RiskLevel.HIGH
        assert skill.applicable_services == ["ecs"]
        assert step.requires_approval is True
        assert step.on_error is OnError.RETRY
        assert step.retry_count == 2
        assert step.retry_delay_ms == 250
        assert step.retry_backoff is Backoff.LINEAR
        assert step.timeout_ms == 1000

    def test_max_retries_alias(self) -> None:
        skill = make_skill([{"id": "a", "action": "x", "maxRetries": 4}])
        assert skill.steps[0].retry_count == 4

    def test_defaults(self) -> None:
        skill = make_skill([{"id": "a", "action": "x"}])
        step = skill.steps[0]
        assert step.on_error is OnError.ABORT
        assert step.retry_count == 0
        assert step.retry_backoff is Backoff.CONSTANT
        assert skill.risk_level is RiskLevel.LOW

    def test_duplicate_step_ids_rejected(self) -> None:
        with pytest.raises(ValidationError, match="duplicate step id"):
            make_skill([{"id": "a", "action": "x"}, {"id": "a", "action": "y"}])

    def test_empty_steps_rejected(self) -> None:
        with pytest.raises(ValidationError):
            make_skill([])

    def test_undeclared_parameter_rejected(self) -> None:
        with pytest.raises(ValidationError, match="unknown reference 'ghost'"):
            make_skill([{"id": "a", "action": "x", "parameters": {"v": "{{ ghost }}"}}])

    def test_reference_to_later_step_rejected(self) -> None:
        with pytest.raises(ValidationError, match="later step"):
            make_skill([
                {"id": "a", "action": "x", "parameters": {"v": "{{ steps.b.result }}"}},
                {"id": "b", "action": "y"},
            ])

    def test_condition_references_checked(self) -> None:
        with pytest.raises(ValidationError):
            make_skill([{"id": "a", "action": "x", "condition": "ghost > 1"}])

    def test_malformed_template_rejected(self) -> None:
        with pytest.raises(ValidationError):
            make_skill([{"id": "a", "action": "x", "parameters": {"v": "{{ a == }}"}}])

    def test_valid_references_accepted(self) -> None:
        skill = make_skill(
            [
                {"id": "a", "action": "x", "parameters": {"n": "{{ params.count }}"}},
                {
                    "id": "b",
                    "action": "y",
                    "condition": "{{ steps.a.result.ok and count > 1 }}",
                    "parameters": {"who": "{{ user }} at {{ now }}", "sid": "{{ session_id }}"},
                },
            ],
            parameters=[{"name": "count", "type": "integer", "required": True}],
            rollback="undo {{ steps.b.result }}",
        )
        assert skill.get_step("b").condition is not None
        assert skill.get_step("zzz") is None

    def test_nested_retry_escalation_rejected(self) -> None:
        with pytest.raises(ValidationError):
            make_skill([{"id": "a", "action": "x", "onRetriesExhausted": "retry"}])

    def test_definitions_are_frozen(self) -> None:
        skill = make_skill([{"id": "a", "action": "x"}])
        with pytest.raises(ValidationError):
            skill.name = "changed"


class TestExecutionModels:
    def test_terminal_statuses(self) -> None:
        assert SkillStatus.COMPLETED.is_terminal
        assert SkillStatus.CANCELLED.is_terminal
        assert not SkillStatus.PAUSED.is_terminal

    def test_step_result_is_immutable(self) -> None:
        result = StepResult(step_id="a", status=StepStatus.SUCCESS, result=1)
        with pytest.raises(ValidationError):
            result.result = 2
