"""Tests for checkpoints.report."""

from __future__ import annotations

from pathlib import Path

import pytest

from checkpoints.config import CheckpointStoreConfig
from checkpoints.report import CheckpointReportRenderer, render_checkpoint, render_checkpoint_list
from checkpoints.schema import CheckpointListEntry, Phase
from checkpoints.store import create_checkpoint
from checkpoints.tests.conftest import BASE_TIME, make_checkpoint
from investigation.tree import HypothesisTree
from skills.schema import ApprovalRequest, ExecutionContext, RiskLevel, SkillStatus


class TestRenderCheckpoint:
    def test_header_and_hypotheses(self, tree: HypothesisTree) -> None:
        tree.confirm("h1")
        confidence = tree.get("h1").confidence
        cp = create_checkpoint(tree, Phase.CONCLUDE, services_discovered=["checkout", "payments"])

        text = render_checkpoint(cp)
        lines = text.splitlines()
        assert lines[0] == f"# Checkpoint: {cp.id}"
        assert "**Investigation:** inv-1" in lines
        assert "**Phase:** conclude" in lines
        assert f"**Confidence:** {confidence}%" in lines
        assert "## Hypotheses (2)" in lines
        assert f"- ✓ [confirmed] Upstream payment service is failing ({confidence}%)" in lines
        assert "- ○ [pending] Recent deploy broke checkout (0%)" in lines
        assert any("Reasoning: 5xx spike on payments" in line for line in lines)
        assert "checkout, payments" in lines

    def test_root_cause_section(self, tree: HypothesisTree) -> None:
        tree.confirm("h1")
        text = render_checkpoint(create_checkpoint(tree, "conclude"))
        assert "## Root Cause\nUpstream payment service is failing" in text

    def test_optional_sections_omitted(self) -> None:
        text = render_checkpoint(make_checkpoint(query="disk full?"))
        assert "## Root Cause" not in text
        assert "## Services Discovered" not in text
        assert "## Skill Executions" not in text
        assert "## Hypotheses (0)" in text

    def test_paused_execution_listed(self) -> None:
        ctx = ExecutionContext(
            session_id="s1",
            skill_id="scale-service",
            status=SkillStatus.PAUSED,
            current_step_index=2,
            pending_approval=ApprovalRequest(
                id="apr-123",
                session_id="s1",
                skill_id="scale-service",
                step_id="execute_scaling",
                action="aws_mutate",
                risk_level=RiskLevel.MEDIUM,
            ),
        )
        text = render_checkpoint(make_checkpoint(phase=Phase.REMEDIATE, executions=[ctx]))
        assert "- scale-service (s1): paused, step 2" in text
        assert "Awaiting approval apr-123 for step 'execute_scaling' (medium risk)" in text

    def test_child_hypotheses_indented(self) -> None:
        tree = HypothesisTree("inv-2")
        root = tree.propose(None, "Database saturated", "infrastructure")
        tree.propose(root.id, "Slow query from new report", "application")
        text = render_checkpoint(create_checkpoint(tree, "hypothesize"))
        assert "  - ○ [pending] Slow query from new report (0%)" in text.splitlines()


class TestRenderList:
    def test_empty(self) -> None:
        assert render_checkpoint_list([]).strip() == "No checkpoints found."

    def test_table_rows(self) -> None:
        entry = CheckpointListEntry(
            id="0123456789abcdef",
            investigation_id="inv-1",
            created_at=BASE_TIME,
            phase=Phase.INVESTIGATE,
            confidence=70,
            hypothesis_count=2,
        )
        lines = render_checkpoint_list([entry]).splitlines()
        assert lines[0] == "| ID | Phase | Confidence | Hypotheses | Created |"
        assert lines[2] == "| 01234567... | investigate | 70% | 2 | 2026-03-01 12:00:00 UTC |"


class TestRenderer:
    def test_missing_template_dir(self, tmp_path: Path) -> None:
        renderer = CheckpointReportRenderer(CheckpointStoreConfig(templates_dir=str(tmp_path)))
        with pytest.raises(FileNotFoundError):
            renderer.render_checkpoint(make_checkpoint())

    def test_save_writes_file(self, tmp_path: Path) -> None:
        renderer = CheckpointReportRenderer()
        cp = make_checkpoint()
        path = renderer.save(cp, str(tmp_path / "reports" / "cp.md"))
        assert Path(path).read_text(encoding="utf-8").startswith(f"# Checkpoint: {cp.id}")
