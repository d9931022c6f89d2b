"""main.py: operator CLI for the incident investigation core.

Uses **Click** for command parsing and **Rich** for output.

Usage examples::

    python main.py investigations
    python main.py checkpoints list inv-42
    python main.py checkpoints show inv-42
    python main.py checkpoints purge inv-42 --yes
    python main.py skills list --service eks
    python main.py skills show scale-service
    python main.py validate --config config.yaml
"""

from __future__ import annotations

from typing import Optional

import click

from checkpoints.report import CheckpointReportRenderer
from checkpoints.schema import CheckpointStoreError
from checkpoints.store import CheckpointStore
from integration.cli import (
    console,
    display_checkpoints_table,
    display_error,
    display_investigations_table,
    display_skill_detail,
    display_skills_table,
)
from integration.config_manager import ConfigManager, SystemConfig
from integration.logger import bind_investigation_id, get_logger, setup_logging
from skills.registry import SkillRegistry
from skills.schema import UnknownSkill

__version__ = "0.1.0"

_logger = get_logger(__name__)


# ── Click group ────────────────────────────────────────────────────


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="runbook")
@click.option(
    "--config",
    "config_path",
    default="config.yaml",
    envvar="RUNBOOK_CONFIG",
    help="Path to config.yaml.",
    type=click.Path(),
)
@click.pass_context
def cli(ctx: click.Context, config_path: str) -> None:
    """Incident investigation core: inspect checkpoints, investigations and skills.

    \b
    Quick start:
      python main.py investigations
      python main.py skills list
      python main.py --help
    """
    ctx.ensure_object(dict)
    try:
        cfg = ConfigManager.load(config_path)
    except Exception as exc:
        display_error(exc, "loading config")
        raise SystemExit(2) from exc

    ctx.obj["config"] = cfg
    setup_logging(cfg.system.log_level)
    _logger.debug("Configuration loaded", path=config_path)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


def _config(ctx: click.Context) -> SystemConfig:
    return ctx.obj["config"]


def _open_store(ctx: click.Context) -> CheckpointStore:
    try:
        return CheckpointStore(ConfigManager.checkpoint_config(_config(ctx)))
    except CheckpointStoreError as exc:
        display_error(exc, "opening checkpoint store")
        raise SystemExit(1) from exc


def _load_registry(ctx: click.Context) -> SkillRegistry:
    registry = SkillRegistry()
    skills_dir = _config(ctx).skills.skills_directory
    if skills_dir:
        registry.load(skills_dir)
    return registry


# ── checkpoints ────────────────────────────────────────────────────


@cli.group()
def checkpoints() -> None:
    """Inspect and manage investigation checkpoints."""


@checkpoints.command("list")
@click.argument("investigation_id")
@click.option("--markdown", is_flag=True, help="Print a Markdown table instead of a Rich table.")
@click.pass_context
def checkpoints_list(ctx: click.Context, investigation_id: str, markdown: bool) -> None:
    """List checkpoints of INVESTIGATION_ID, newest first."""
    bind_investigation_id(investigation_id)
    store = _open_store(ctx)
    try:
        entries = store.list(investigation_id)
    except CheckpointStoreError as exc:
        display_error(exc, "listing checkpoints")
        raise SystemExit(1) from exc
    finally:
        store.close()

    if markdown:
        click.echo(CheckpointReportRenderer(store.config).render_checkpoint_list(entries))
    elif not entries:
        console.print(f"[yellow]No checkpoints found for {investigation_id}.[/yellow]")
    else:
        display_checkpoints_table(investigation_id, entries)


@checkpoints.command("show")
@click.argument("investigation_id")
@click.argument("checkpoint_id", required=False)
@click.option("--output", "-o", default=None, type=click.Path(), help="Also write the report to this file.")
@click.pass_context
def checkpoints_show(
    ctx: click.Context,
    investigation_id: str,
    checkpoint_id: Optional[str],
    output: Optional[str],
) -> None:
    """Render a checkpoint report (the latest one unless CHECKPOINT_ID is given)."""
    bind_investigation_id(investigation_id)
    store = _open_store(ctx)
    try:
        if checkpoint_id:
            checkpoint = store.load(investigation_id, checkpoint_id)
        else:
            checkpoint = store.load_latest(investigation_id)
    except CheckpointStoreError as exc:
        display_error(exc, "loading checkpoint")
        raise SystemExit(1) from exc
    finally:
        store.close()

    if checkpoint is None:
        display_error(
            f"No checkpoint {checkpoint_id or '(latest)'} for investigation {investigation_id}",
            "not found",
        )
        raise SystemExit(1)

    renderer = CheckpointReportRenderer(store.config)
    click.echo(renderer.render_checkpoint(checkpoint))
    if output:
        path = renderer.save(checkpoint, output)
        console.print(f"[green]Report written to {path}[/green]")


@checkpoints.command("delete")
@click.argument("investigation_id")
@click.argument("checkpoint_id")
@click.pass_context
def checkpoints_delete(ctx: click.Context, investigation_id: str, checkpoint_id: str) -> None:
    """Delete one checkpoint."""
    bind_investigation_id(investigation_id)
    store = _open_store(ctx)
    try:
        deleted = store.delete(investigation_id, checkpoint_id)
    except CheckpointStoreError as exc:
        display_error(exc, "deleting checkpoint")
        raise SystemExit(1) from exc
    finally:
        store.close()

    if not deleted:
        display_error(f"Checkpoint {checkpoint_id} not found", investigation_id)
        raise SystemExit(1)
    console.print(f"[green]Deleted checkpoint {checkpoint_id}.[/green]")


@checkpoints.command("purge")
@click.argument("investigation_id")
@click.confirmation_option(prompt="Delete every checkpoint of this investigation?")
@click.pass_context
def checkpoints_purge(ctx: click.Context, investigation_id: str) -> None:
    """Delete all checkpoints of INVESTIGATION_ID."""
    bind_investigation_id(investigation_id)
    store = _open_store(ctx)
    try:
        count = store.delete_all(investigation_id)
    except CheckpointStoreError as exc:
        display_error(exc, "purging checkpoints")
        raise SystemExit(1) from exc
    finally:
        store.close()
    console.print(f"[green]Deleted {count} checkpoint(s) for {investigation_id}.[/green]")


# ── investigations ─────────────────────────────────────────────────


@cli.command()
@click.pass_context
def investigations(ctx: click.Context) -> None:
    """List investigations that have stored checkpoints."""
    store = _open_store(ctx)
    try:
        summaries = store.list_investigations()
    except CheckpointStoreError as exc:
        display_error(exc, "listing investigations")
        raise SystemExit(1) from exc
    finally:
        store.close()

    if not summaries:
        console.print("[yellow]No investigations found.[/yellow]")
        return
    display_investigations_table(summaries)


# ── skills ─────────────────────────────────────────────────────────


@cli.group()
def skills() -> None:
    """Browse built-in and user-defined skills."""


@skills.command("list")
@click.option("--tag", "-t", default=None, help="Only skills with this tag.")
@click.option("--service", "-s", default=None, help="Only skills applicable to this service.")
@click.pass_context
def skills_list(ctx: click.Context, tag: Optional[str], service: Optional[str]) -> None:
    """List registered skills."""
    registry = _load_registry(ctx)
    selected = registry.all()
    if tag:
        selected = [s for s in selected if s in registry.by_tag(tag)]
    if service:
        selected = [s for s in selected if s in registry.for_service(service)]

    wanted = {s.id for s in selected}
    display_skills_table([s for s in registry.summaries() if s["id"] in wanted])


@skills.command("show")
@click.argument("skill_id")
@click.pass_context
def skills_show(ctx: click.Context, skill_id: str) -> None:
    """Show the definition of SKILL_ID."""
    registry = _load_registry(ctx)
    try:
        skill = registry.get(skill_id)
    except UnknownSkill as exc:
        display_error(exc, "skills show")
        raise SystemExit(1) from exc
    display_skill_detail(skill)


# ── validate ───────────────────────────────────────────────────────


@cli.command()
@click.option(
    "--config",
    "config_path",
    default="config.yaml",
    help="Config file to validate.",
    type=click.Path(),
)
def validate(config_path: str) -> None:
    """Validate the configuration file.

    \b
    Example:
      python main.py validate --config config.yaml
    """
    try:
        cfg = ConfigManager.load(config_path)
    except Exception as exc:
        display_error(exc, "invalid config")
        raise SystemExit(1) from exc

    issues = ConfigManager.validate(cfg)
    if issues:
        console.print("[yellow]⚠ Validation issues:[/yellow]")
        for issue in issues:
            console.print(f"  • {issue}")
        raise SystemExit(1)

    console.print("[green]✅ Configuration is valid.[/green]")
    console.print(f"  Version          : {cfg.system.version}")
    console.print(f"  Log level        : {cfg.system.log_level}")
    console.print(f"  Max depth        : {cfg.investigation.max_depth}")
    console.print(f"  Checkpoint store : {cfg.checkpoints.database_url}")
    console.print(f"  Max checkpoints  : {cfg.checkpoints.max_checkpoints_per_investigation}")
    console.print(f"  Skills directory : {cfg.skills.skills_directory or '-'}")


# ── version ────────────────────────────────────────────────────────


@cli.command()
def version() -> None:
    """Show version and dependency information."""
    import platform
    from importlib.metadata import PackageNotFoundError
    from importlib.metadata import version as dist_version

    console.print("[bold]Incident Investigation Core[/bold]")
    console.print(f"  Version  : {__version__}")
    console.print(f"  Python   : {platform.python_version()}")

    for dist in ("click", "rich", "pydantic", "structlog", "pyyaml", "sqlalchemy", "jinja2", "prometheus-client"):
        try:
            console.print(f"  {dist:18s}: {dist_version(dist)}")
        except PackageNotFoundError:
            console.print(f"  {dist:18s}: [dim]not installed[/dim]")


# ── entry point ────────────────────────────────────────────────────


if __name__ == "__main__":
    cli()
