"""CLI helpers: output formatting and Rich widgets for the operator CLI."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from checkpoints.schema import CheckpointListEntry, InvestigationSummary
from skills.approval import RISK_DESCRIPTIONS

console = Console()
err_console = Console(stderr=True)


# ── formatting helpers ─────────────────────────────────────────────


def format_duration_ms(ms: float) -> str:
    """Format *ms* as ``850ms``, ``1.2s`` or ``2m 34s``."""
    if ms < 1000:
        return f"{ms:.0f}ms"
    seconds = ms / 1000
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    return f"{minutes}m {seconds % 60:.0f}s"


def format_confidence(confidence: int) -> str:
    """Format a 0-100 *confidence* as a coloured percentage."""
    if confidence >= 70:
        return f"[green]{confidence}%[/green]"
    if confidence >= 35:
        return f"[yellow]{confidence}%[/yellow]"
    return f"[red]{confidence}%[/red]"


def format_timestamp(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S")


_RISK_STYLES = {"low": "green", "medium": "yellow", "high": "red", "critical": "bold red"}


def format_risk(level: str) -> str:
    style = _RISK_STYLES.get(level, "white")
    return f"[{style}]{level}[/{style}]"


# ── Rich widgets ───────────────────────────────────────────────────


def display_error(error: Exception | str, context: str = "") -> None:
    """Display a formatted error panel on stderr."""
    msg = f"[red]✗ Error{f' ({context})' if context else ''}[/red]\n\n{error}"
    err_console.print(Panel(msg, title="Error", border_style="red", padding=(1, 2)))


def display_checkpoints_table(investigation_id: str, entries: Sequence[CheckpointListEntry]) -> None:
    """Print the checkpoints of one investigation, newest first."""
    table = Table(
        title=f"Checkpoints: {investigation_id}",
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Phase", style="white")
    table.add_column("Confidence", justify="right")
    table.add_column("Hypotheses", justify="right")
    table.add_column("Created", style="green")

    for cp in entries:
        table.add_row(
            cp.id[:12],
            cp.phase.value,
            format_confidence(cp.confidence),
            str(cp.hypothesis_count),
            format_timestamp(cp.created_at),
        )

    console.print(table)


def display_investigations_table(summaries: Sequence[InvestigationSummary]) -> None:
    table = Table(title="Investigations", show_header=True, header_style="bold magenta")
    table.add_column("Investigation", style="cyan", no_wrap=True)
    table.add_column("Checkpoints", justify="right")
    table.add_column("Latest Phase")
    table.add_column("Confidence", justify="right")
    table.add_column("Updated", style="green")

    for s in summaries:
        latest = s.latest_checkpoint
        table.add_row(
            s.investigation_id,
            str(s.checkpoint_count),
            latest.phase.value if latest else "-",
            format_confidence(latest.confidence) if latest else "-",
            format_timestamp(latest.created_at) if latest else "-",
        )

    console.print(table)


def display_skills_table(summaries: List[Dict[str, Any]]) -> None:
    """Print registered skills as returned by ``SkillRegistry.summaries()``."""
    table = Table(title="Skills", show_header=True, header_style="bold magenta")
    table.add_column("Skill", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Risk")
    table.add_column("Steps", justify="right")
    table.add_column("Tags", style="dim")

    for s in summaries:
        table.add_row(
            s["id"],
            s["name"],
            format_risk(s["risk_level"]),
            str(s["steps"]),
            ", ".join(s.get("tags", [])),
        )

    console.print(table)


def display_skill_detail(skill: Any) -> None:
    """Print one skill definition with its steps."""
    header = (
        f"[bold]{skill.name}[/bold] ({skill.id} v{skill.version})\n"
        f"{skill.description}\n\n"
        f"Risk     : {format_risk(skill.risk_level.value)} ({RISK_DESCRIPTIONS[skill.risk_level]})\n"
        f"Services : {', '.join(skill.applicable_services or []) or 'any'}"
    )
    if skill.rollback:
        header += f"\nRollback : {skill.rollback}"
    console.print(Panel(header, title="Skill", border_style="cyan", padding=(1, 2)))

    if skill.parameters:
        params = Table(title="Parameters", show_header=True)
        params.add_column("Name", style="cyan")
        params.add_column("Type")
        params.add_column("Required")
        params.add_column("Default")
        for p in skill.parameters:
            params.add_row(
                p.name,
                p.type.value,
                "yes" if p.required else "no",
                "" if p.default is None else str(p.default),
            )
        console.print(params)

    steps = Table(title="Steps", show_header=True)
    steps.add_column("#", justify="right")
    steps.add_column("Step", style="cyan")
    steps.add_column("Action")
    steps.add_column("On Error")
    steps.add_column("Approval")
    for n, step in enumerate(skill.steps, start=1):
        steps.add_row(
            str(n),
            step.id,
            step.action,
            step.on_error.value,
            "required" if step.requires_approval else "",
        )
    console.print(steps)
