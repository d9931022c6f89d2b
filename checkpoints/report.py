"""Render checkpoints as Markdown audit reports using Jinja2 templates."""

from __future__ import annotations

import os
from datetime import datetime
from typing import Optional, Sequence

from jinja2 import Environment, FileSystemLoader, select_autoescape

from checkpoints.config import CheckpointStoreConfig
from checkpoints.schema import Checkpoint, CheckpointListEntry
from integration.logger import get_logger
from investigation.schema import HypothesisStatus

_logger = get_logger(__name__)

_STATUS_ICONS = {
    HypothesisStatus.CONFIRMED: "✓",
    HypothesisStatus.PRUNED: "✗",
    HypothesisStatus.INVESTIGATING: "→",
    HypothesisStatus.PENDING: "○",
}

REPORT_TEMPLATE = "checkpoint_report.md.j2"
LIST_TEMPLATE = "checkpoint_list.md.j2"


def _status_icon(status: HypothesisStatus) -> str:
    return _STATUS_ICONS.get(HypothesisStatus(status), "?")


def _timestamp(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S %Z").strip()


class CheckpointReportRenderer:
    """Render :class:`Checkpoint` objects as Markdown.

    Args:
        config: Store configuration (uses ``templates_dir``).
    """

    def __init__(self, config: Optional[CheckpointStoreConfig] = None) -> None:
        self.config = config or CheckpointStoreConfig()
        self._env = Environment(
            loader=FileSystemLoader(self.config.templates_dir),
            autoescape=select_autoescape([]),
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self._env.filters["status_icon"] = _status_icon
        self._env.filters["timestamp"] = _timestamp

    def render_checkpoint(self, checkpoint: Checkpoint) -> str:
        """Render a single checkpoint report.

        Raises:
            FileNotFoundError: If the template file is missing.
        """
        return self._render(REPORT_TEMPLATE, checkpoint=checkpoint)

    def render_checkpoint_list(self, entries: Sequence[CheckpointListEntry]) -> str:
        """Render a Markdown table of checkpoint summaries, newest first as given."""
        return self._render(LIST_TEMPLATE, entries=list(entries))

    def save(self, checkpoint: Checkpoint, path: str) -> str:
        """Render *checkpoint* to *path* and return the absolute path."""
        content = self.render_checkpoint(checkpoint)
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(content)
        _logger.info("Checkpoint report saved", path=path, checkpoint_id=checkpoint.id)
        return os.path.abspath(path)

    def _render(self, template_name: str, **context: object) -> str:
        template_path = os.path.join(self.config.templates_dir, template_name)
        if not os.path.isfile(template_path):
            raise FileNotFoundError(f"Template not found: {template_path}")
        return self._env.get_template(template_name).render(**context)


def render_checkpoint(checkpoint: Checkpoint) -> str:
    """Render *checkpoint* with the packaged templates."""
    return CheckpointReportRenderer().render_checkpoint(checkpoint)


def render_checkpoint_list(entries: Sequence[CheckpointListEntry]) -> str:
    return CheckpointReportRenderer().render_checkpoint_list(entries)
