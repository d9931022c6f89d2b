"""Shared fixtures for hypothesis tree tests."""

from __future__ import annotations

import pytest

from investigation.config import HypothesisTreeConfig
from investigation.tree import HypothesisTree


@pytest.fixture
def config() -> HypothesisTreeConfig:
    return HypothesisTreeConfig(max_depth=3)


@pytest.fixture
def tree(config: HypothesisTreeConfig) -> HypothesisTree:
    return HypothesisTree("inv-test", query="checkout latency spike", config=config)


def make_strong(tree: HypothesisTree, hypothesis_id: str, reasoning: str = "clear signal") -> None:
    """Attach one strong supporting result to *hypothesis_id*."""
    tree.record_evidence(hypothesis_id, {"datapoints": [1, 2, 3]}, "strong", reasoning)
