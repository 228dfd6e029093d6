"""Command line interface for Projectize.

Provides `projectize run|validate|groups|queue|retry|link`.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from projectize.config import ConfigError, ProjectizeConfig
from projectize.logging import configure_logging
from projectize.models import QueueStatus

app = typer.Typer(help="Extract tasks from Slack and sync them to Motion.")
console = Console()

# Status → Rich color mapping
STATUS_COLORS: dict[str, str] = {
    "pending": "cyan",
    "processing": "yellow",
    "editing": "magenta",
    "completed": "green",
    "failed": "red",
}


def _load_config() -> ProjectizeConfig:
    config = ProjectizeConfig.from_env()
    configure_logging(
        level=config.logging.level,
        json_output=config.logging.json_output,
        log_file=config.logging.file or None,
    )
    return config


def _load_store(config: ProjectizeConfig):
    """Open the configured queue store, exiting on failure."""
    from projectize.store import StoreError, create_store

    try:
        return create_store(config.store)
    except (StoreError, ValueError) as e:
        console.print(f"[red]Failed to open queue store: {e}[/red]")
        raise typer.Exit(code=1)


@app.command("run")
def run() -> None:
    """Start the Slack bot and the retry sweep."""
    from projectize.main import ProjectizeApp

    config = _load_config()
    try:
        config.require_valid()
        asyncio.run(ProjectizeApp(config).run())
    except ConfigError as e:
        for error in e.errors:
            console.print(f"[red]✗ {error}[/red]")
        raise typer.Exit(code=1)


@app.command("validate")
def validate(
    connect: bool = typer.Option(
        False, "--connect", "-c", help="Also check Slack, LLM and Motion connectivity"
    ),
) -> None:
    """Check the environment for missing or invalid settings."""
    config = _load_config()
    errors = config.validate()
    warnings = config.warnings()

    for error in errors:
        console.print(f"[red]✗ {error}[/red]")
    for warning in warnings:
        console.print(f"[yellow]⚠ {warning}[/yellow]")

    if connect and not errors:
        ok = asyncio.run(_check_connections(config))
        if not ok:
            errors.append("connectivity")

    if errors:
        raise typer.Exit(code=1)
    console.print("[green]✓ Configuration looks good[/green]")


async def _check_connections(config: ProjectizeConfig) -> bool:
    from projectize.extraction import TaskExtractor
    from projectize.slack_bot import test_connection
    from projectize.sync import DestinationClient

    slack_ok = await test_connection(config.slack.bot_token)

    extractor = TaskExtractor(config.llm)
    llm = await extractor.health_check()
    await extractor.close()

    destination = DestinationClient.from_config(config.destination)
    motion = await destination.health_check()
    await destination.close()

    for name, ok, detail in (
        ("Slack", slack_ok, ""),
        ("LLM", llm["healthy"], llm.get("error") or llm["model"]),
        ("Motion", motion["healthy"], motion.get("error") or ""),
    ):
        mark = "[green]✓[/green]" if ok else "[red]✗[/red]"
        console.print(f"{mark} {name} {detail}".rstrip())

    return slack_ok and llm["healthy"] and motion["healthy"]


@app.command("groups")
def groups(
    projects: bool = typer.Option(
        True, "--projects/--no-projects", help="Also list each workspace's projects"
    ),
) -> None:
    """List Motion workspaces (and their projects)."""
    from projectize.sync import DestinationClient, DestinationError

    config = _load_config()

    async def _collect():
        client = DestinationClient.from_config(config.destination)
        try:
            found = []
            for group in await client.list_groups():
                children = await client.list_projects(group.id) if projects else []
                found.append((group, children))
            return found
        finally:
            await client.close()

    try:
        found = asyncio.run(_collect())
    except DestinationError as e:
        console.print(f"[red]Motion API error: {e}[/red]")
        raise typer.Exit(code=1)

    if not found:
        console.print("[dim]No workspaces found.[/dim]")
        return

    table = Table(title="Motion Workspaces")
    table.add_column("ID", style="bold", no_wrap=True)
    table.add_column("Workspace")
    table.add_column("Projects")
    for group, children in found:
        table.add_row(
            group.id, group.name, ", ".join(p.name for p in children) or "[dim]-[/dim]"
        )
    console.print(table)


@app.command("queue")
def queue(
    status: Optional[str] = typer.Option(
        None, "--status", "-s", help="Filter by status"
    ),
    limit: int = typer.Option(50, "--limit", "-l", help="Max results"),
) -> None:
    """List queue entries."""
    config = _load_config()

    status_filter = None
    if status:
        try:
            status_filter = QueueStatus(status.lower())
        except ValueError:
            valid = ", ".join(s.value for s in QueueStatus)
            console.print(f"[red]Invalid status '{status}'. Use one of: {valid}[/red]")
            raise typer.Exit(code=1)

    store = _load_store(config)
    entries = store.list_entries(status=status_filter, limit=limit)

    if not entries:
        console.print("[dim]No entries found.[/dim]")
        return

    table = Table(title="Task Queue")
    table.add_column("ID", style="bold", no_wrap=True)
    table.add_column("Status")
    table.add_column("Channel")
    table.add_column("Tasks", max_width=50)
    table.add_column("Retries", justify="right")
    table.add_column("Error", max_width=40)

    for e in entries:
        color = STATUS_COLORS.get(e.status.value, "white")
        table.add_row(
            e.id[:8],
            f"[{color}]{e.status.value}[/{color}]",
            e.source_channel_id,
            "; ".join(t.title for t in e.tasks),
            str(e.retry_count),
            e.error_message or "[dim]-[/dim]",
        )

    console.print(table)
    console.print(f"[dim]{len(entries)} entr{'y' if len(entries) == 1 else 'ies'}[/dim]")


@app.command("retry")
def retry(
    limit: Optional[int] = typer.Option(
        None, "--limit", "-l", help="Max entries to retry (default: SWEEP_BATCH_SIZE)"
    ),
) -> None:
    """Run one retry sweep now."""
    from projectize.extraction import TaskExtractor
    from projectize.matching import DestinationMatcher
    from projectize.sync import DestinationClient
    from projectize.workflow import TaskWorkflow

    config = _load_config()
    store = _load_store(config)

    async def _sweep():
        destination = DestinationClient.from_config(config.destination)
        workflow = TaskWorkflow(
            store=store,
            extractor=TaskExtractor(config.llm),
            matcher=DestinationMatcher(project_lookup=destination.list_projects),
            destination=destination,
            pacing_delay=config.sweep.entry_delay,
        )
        try:
            return await workflow.process_retry_queue(
                limit=limit or config.sweep.batch_size
            )
        finally:
            await destination.close()

    report = asyncio.run(_sweep())
    console.print(
        f"Attempted [bold]{report.attempted}[/bold]: "
        f"[green]{report.completed} completed[/green], "
        f"[cyan]{report.requeued} requeued[/cyan], "
        f"[red]{report.exhausted} failed[/red]"
    )
    if report.errors:
        console.print(f"[red]{report.errors} entr{'y' if report.errors == 1 else 'ies'} hit store errors[/red]")
        raise typer.Exit(code=1)


@app.command("link")
def link(
    slack_user_id: str = typer.Argument(..., help="Slack user id, e.g. U0123ABCD"),
    email: str = typer.Argument(..., help="Email of the Motion user"),
    team: str = typer.Option(
        "", "--team", "-t", help="Slack workspace (team) id of the user"
    ),
) -> None:
    """Link a Slack user to a Motion user so their own tasks get assigned."""
    from projectize.extraction import TaskExtractor
    from projectize.matching import DestinationMatcher
    from projectize.sync import DestinationClient
    from projectize.validation import is_valid_slack_user_id
    from projectize.workflow import TaskWorkflow

    if not is_valid_slack_user_id(slack_user_id):
        console.print(f"[red]✗ Not a Slack user id: {slack_user_id}[/red]")
        raise typer.Exit(code=1)

    config = _load_config()
    store = _load_store(config)

    async def _link():
        destination = DestinationClient.from_config(config.destination)
        workflow = TaskWorkflow(
            store=store,
            extractor=TaskExtractor(config.llm),
            matcher=DestinationMatcher(),
            destination=destination,
            team_id=team,
        )
        try:
            return await workflow.link_user(slack_user_id, email)
        finally:
            await destination.close()

    outcome = asyncio.run(_link())
    if outcome.linkage is None:
        console.print(f"[red]✗ {outcome.error}[/red]")
        raise typer.Exit(code=1)
    console.print(
        f"[green]✓ Linked {slack_user_id} to Motion user "
        f"{outcome.linkage.destination_user_id} ({outcome.linkage.email})[/green]"
    )


if __name__ == "__main__":
    app()
