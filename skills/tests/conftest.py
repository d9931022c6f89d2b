"""Shared fixtures for skill engine tests."""

from __future__ import annotations

from typing import Any, Dict, List, Tuple

import pytest

from skills.config import SkillEngineConfig
from skills.dispatcher import ToolDispatcher
from skills.engine import StepExecutionEngine
from skills.schema import Skill

Call = Tuple[str, Dict[str, Any]]


@pytest.fixture
def config() -> SkillEngineConfig:
    """Engine config with Prometheus disabled and a short step timeout."""
    return SkillEngineConfig(
        default_step_timeout_ms=2_000,
        enable_prometheus_metrics=False,
    )


@pytest.fixture
def calls() -> List[Call]:
    return []


@pytest.fixture
def dispatcher(calls: List[Call]) -> ToolDispatcher:
    """Dispatcher whose handlers record every call."""
    d = ToolDispatcher()

    def _recording(action: str, result: Any):
        def handler(params: Dict[str, Any]) -> Any:
            calls.append((action, params))
            return result
        return handler

    d.register("aws_query", _recording("aws_query", {"desired_count": 2, "version": "v41"}))
    d.register("aws_mutate", _recording("aws_mutate", {"status": "updated"}))
    d.register("notify", _recording("notify", "sent"))
    return d


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def engine(
    dispatcher: ToolDispatcher,
    config: SkillEngineConfig,
    sleeps: List[float],
) -> StepExecutionEngine:
    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return StepExecutionEngine(dispatcher, config=config, sleep=fake_sleep, user="oncall")


def make_skill(steps: List[Dict[str, Any]], parameters: List[Dict[str, Any]] | None = None, **extra: Any) -> Skill:
    """Build and validate a test skill."""
    raw: Dict[str, Any] = {
        "id": extra.pop("id", "test-skill"),
        "name": extra.pop("name", "Test Skill"),
        "parameters": parameters or [],
        "steps": steps,
    }
    raw.update(extra)
    return Skill.model_validate(raw)
