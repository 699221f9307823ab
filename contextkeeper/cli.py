"""Main CLI entry point for context-keeper."""

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__, db
from .config import settings, setup_logging
from .errors import TransientError
from .models import BACKUP_TYPES

console = Console()

T = TypeVar("T")


def _run(fn: Callable[[], Awaitable[T]]) -> T:
    """Run one async command body and release pooled connections afterwards."""

    async def runner() -> T:
        try:
            return await fn()
        finally:
            await db.engine.dispose()

    return asyncio.run(runner())


def _short(text: str | None, width: int = 50) -> str:
    if not text:
        return "-"
    return text[: width - 3] + "..." if len(text) > width else text


def _when(value: Any) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


@click.group()
@click.version_option(version=__version__)
@click.option("--log-level", default=None, help="Override CONTEXT_LOG_LEVEL")
def main(log_level: str | None) -> None:
    """Context memory for an AI coding assistant.

    Stores projects, sessions, goals, decisions, errors and knowledge in PostgreSQL
    and serves them as MCP tools.
    """
    setup_logging(log_level)


@main.command()
def serve() -> None:
    """Serve the tool registry over MCP stdio."""
    from .server import run_mcp_server

    run_mcp_server()


@main.command(name="init-db")
def init_db() -> None:
    """Create tables, views and triggers directly (development/testing)."""
    _run(db.init_db)
    console.print("[green]✓[/green] Schema created")


@main.command(name="schema-check", help="Check DB schema readiness for current code.")
def schema_check() -> None:
    missing = _run(db.get_missing_tables)
    if missing:
        console.print(f"[red]Missing tables: {missing}[/red]")
        console.print("Run: `alembic upgrade head`")
        raise SystemExit(1)
    console.print("[green]Schema ready[/green]")


@main.command()
def db_info() -> None:
    """Show database connection info."""
    lines = [
        f"Host: {settings.db_host}",
        f"Port: {settings.db_port}",
        f"Database: {settings.db_name}",
        f"User: {settings.db_user}",
        f"Embedding dimensions: {settings.embedding_dimensions}",
    ]

    async def fetch() -> dict[str, Any]:
        async with db.get_session() as session:
            return await db.get_database_info(session)

    try:
        info = _run(fetch)
    except TransientError as exc:
        lines.append(f"\n[yellow]Unreachable: {exc.message}[/yellow]")
    else:
        lines.append(f"\nServer: {info['version'].split(',')[0]}")
        lines.append(f"Size: {info['size']}")
    console.print(Panel("\n".join(lines), title="Database Configuration"))


@main.command()
def status() -> None:
    """Show row counts, open work and the last backup."""

    async def fetch() -> dict[str, Any]:
        async with db.get_session() as session:
            return await db.get_system_status(session)

    report = _run(fetch)
    backup = report["last_backup"]
    backup_line = f"{backup.status} at {_when(backup.started_at)}" if backup else "never"
    console.print(
        Panel(
            f"Active projects: [cyan]{report['active_projects']}[/cyan]\n"
            f"Active main goals: [cyan]{report['active_main_goals']}[/cyan]\n"
            f"Open sessions: {report['open_sessions']}\n"
            f"Pending reminders: {report['pending_reminders']}\n"
            f"Decisions needing assessment: {report['decisions_needing_assessment']}\n"
            f"Last backup: {backup_line}\n"
            f"Server time: {_when(report['server_time'])}",
            title="Context Memory",
        )
    )

    table = Table(title="Tables")
    table.add_column("Table", style="cyan")
    table.add_column("Rows", justify="right")
    for name, count in report["tables"].items():
        table.add_row(name, str(count))
    console.print(table)


@main.command()
@click.option("--all", "include_completed", is_flag=True, help="Include goals completed in the last week")
@click.option("--project", "project_id", default=None, help="Only goals of this project")
def goals(include_completed: bool, project_id: str | None) -> None:
    """List main goals by priority."""

    async def fetch() -> list[Any]:
        async with db.get_session() as session:
            return await db.get_active_main_goals(session, include_completed, project_id)

    rows = _run(fetch)
    if not rows:
        console.print("[yellow]No open main goals[/yellow]")
        return

    table = Table(title="Main Goals")
    table.add_column("ID", style="dim")
    table.add_column("Title")
    table.add_column("Priority", style="cyan")
    table.add_column("Status")
    table.add_column("Created")
    for t in rows:
        table.add_row(t.id[:8], _short(t.title), t.priority, t.status, _when(t.created_at))
    console.print(table)


@main.command()
@click.option("--pending", is_flag=True, help="Only decisions that need an outcome assessment")
@click.option("--days", default=30, help="Look back this many days")
@click.option("--project", "project_id", default=None, help="Only decisions of this project")
@click.option("--limit", default=50, help="Number of decisions to show")
def decisions(pending: bool, days: int, project_id: str | None, limit: int) -> None:
    """List recent decisions."""

    async def fetch() -> list[Any]:
        async with db.get_session() as session:
            return await db.get_recent_decisions(session, project_id, days, pending, limit)

    rows = _run(fetch)
    if not rows:
        console.print("[yellow]No decisions found[/yellow]")
        return

    table = Table(title="Decisions")
    table.add_column("ID", style="dim")
    table.add_column("Title")
    table.add_column("Type")
    table.add_column("Outcome")
    table.add_column("Decided")
    for d in rows:
        outcome = d.outcome or "-"
        if d.needs_assessment():
            outcome = f"[yellow]{outcome} (assess)[/yellow]"
        table.add_row(d.id[:8], _short(d.title), d.decision_type or "-", outcome, _when(d.decided_at))
    console.print(table)


@main.command()
@click.argument("session_id")
def reminders(session_id: str) -> None:
    """List unacknowledged reminders for a session."""

    async def fetch() -> list[Any]:
        async with db.get_session() as session:
            return await db.get_pending_reminders(session, session_id)

    rows = _run(fetch)
    if not rows:
        console.print("[green]No pending reminders[/green]")
        return

    table = Table(title="Pending Reminders")
    table.add_column("ID", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Priority")
    table.add_column("Message")
    for r in rows:
        table.add_row(r.id, r.reminder_type or "-", r.priority, _short(r.message, 70))
    console.print(table)


@main.command()
@click.argument("reminder_id")
def ack(reminder_id: str) -> None:
    """Acknowledge a reminder."""

    async def do_ack() -> Any:
        async with db.get_session() as session:
            return await db.acknowledge_reminder(session, reminder_id)

    reminder = _run(do_ack)
    console.print(f"[green]✓[/green] Acknowledged reminder {reminder.id} at {_when(reminder.acknowledged_at)}")


@main.command()
@click.option(
    "--type",
    "backup_type",
    type=click.Choice(list(BACKUP_TYPES)),
    default="data_only",
    help="What pg_dump exports",
)
@click.option("--message", "-m", default=None, help="Commit message headline")
def backup(backup_type: str, message: str | None) -> None:
    """Export the database and commit the dump to the backup repository."""
    console.print(f"[bold]Backing up ({backup_type})...[/bold]")
    record = _run(lambda: db.backup_to_github(backup_type, message))
    console.print(
        Panel(
            f"Status: [green]{record.status}[/green]\n"
            f"Commit: {record.commit_hash or '-'}\n"
            f"{record.status_message or ''}",
            title=f"Backup {record.id[:8]}",
        )
    )


@main.command()
@click.option("--limit", default=10, help="Number of runs to show")
def backups(limit: int) -> None:
    """Show recent backup runs."""

    async def fetch() -> list[Any]:
        async with db.get_session() as session:
            return await db.get_backup_history(session, limit)

    rows = _run(fetch)
    if not rows:
        console.print("[yellow]No backups recorded[/yellow]")
        return

    table = Table(title="Backups")
    table.add_column("Started")
    table.add_column("Type", style="cyan")
    table.add_column("Status")
    table.add_column("Commit")
    table.add_column("Message")
    for b in rows:
        colour = {"completed": "green", "failed": "red"}.get(b.status or "", "yellow")
        table.add_row(
            _when(b.started_at),
            b.backup_type or "-",
            f"[{colour}]{b.status}[/{colour}]",
            b.commit_hash or "-",
            _short(b.error_message or b.status_message, 60),
        )
    console.print(table)


@main.command()
def tools() -> None:
    """List the registered tools."""
    from .tools import default_registry

    table = Table(title=f"Tools ({len(default_registry.list_tools())})")
    table.add_column("Name", style="cyan")
    table.add_column("Description")
    for tool in default_registry.tools():
        table.add_row(tool.name, tool.description)
    console.print(table)


@main.command()
@click.argument("name")
@click.argument("arguments", default="{}")
def call(name: str, arguments: str) -> None:
    """Invoke a tool with a JSON argument object and print the envelope.

    Example: context-keeper call get_active_main_goals '{"include_completed": true}'
    """
    from .tools import default_registry

    try:
        payload = json.loads(arguments)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"not valid JSON: {exc}", param_hint="ARGUMENTS") from exc
    if not isinstance(payload, dict):
        raise click.BadParameter("must be a JSON object", param_hint="ARGUMENTS")

    result = _run(lambda: default_registry.dispatch(name, payload))
    console.print_json(result.to_json())
    if not result.success:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
