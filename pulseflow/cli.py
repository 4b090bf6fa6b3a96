"""Main CLI entry point for pulseflow."""

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__, costs, db, migrations, pulses, subtasks, workflows
from .config import settings
from .errors import PulseflowError
from .states import REWIND_TARGETS, SKIPPABLE_STAGES, Priority, WorkflowStatus

console = Console()

_STATUS_STYLES = {
    "proposed": "white",
    "running": "cyan",
    "succeeded": "green",
    "failed": "red",
    "stopped": "yellow",
}


def _run(coro: Coroutine[Any, Any, None]) -> None:
    """Run an async command body, reporting engine errors as CLI errors."""
    try:
        asyncio.run(coro)
    except PulseflowError as exc:
        raise click.ClickException(str(exc)) from exc


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Pulseflow workflow engine CLI.

    Track coding workflows through scoping, research, planning, execution
    pulses and review.
    """
    _configure_logging(verbose)


# =============================================================================
# Schema
# =============================================================================


@main.command(name="init-db")
def init_db() -> None:
    """Create all tables and mark the schema as current (development use)."""
    asyncio.run(db.init_db())
    migrations.stamp_database()
    console.print("[green]Database initialized[/green]")


@main.command()
@click.option("--revision", default="head", help="Target revision")
def upgrade(revision: str) -> None:
    """Apply pending schema migrations."""
    migrations.upgrade_database(revision=revision)
    console.print(f"[green]Database upgraded to {revision}[/green]")


@main.command(name="schema-check", help="Check DB schema readiness for current code.")
def schema_check() -> None:
    async def check() -> str | None:
        async with db.engine.connect() as conn:
            return await conn.run_sync(migrations.current_revision)

    current = asyncio.run(check())
    head = migrations.head_revision()
    if current != head:
        console.print(f"[red]Schema at {current or 'nothing'}, code expects {head}[/red]")
        console.print("Run: `pulseflow upgrade`")
        raise SystemExit(1)
    console.print(f"[green]Schema ready[/green] ({head})")


# =============================================================================
# Workflows
# =============================================================================


@main.command()
@click.argument("title")
@click.option("--description", "-d", default=None, help="Longer description")
@click.option(
    "--priority",
    type=click.Choice([p.value for p in Priority]),
    default=Priority.MEDIUM.value,
    show_default=True,
)
@click.option(
    "--skip",
    "skip",
    multiple=True,
    type=click.Choice(sorted(s.value for s in SKIPPABLE_STAGES)),
    help="Stage to skip (quick path); repeatable",
)
def create(title: str, description: str | None, priority: str, skip: tuple[str, ...]) -> None:
    """Create a new workflow.

    TITLE: Short summary of the task
    """

    async def do_create() -> None:
        async with db.get_session() as session:
            workflow = await workflows.create_workflow(
                session, title, description, priority=priority, skipped_stages=skip
            )
            console.print(f"[green]Created workflow:[/green] {workflow.id}")

    _run(do_create())


@main.command(name="list")
@click.option("--all", "include_archived", is_flag=True, help="Include archived workflows")
@click.option(
    "--order-by", type=click.Choice(["updated", "created"]), default="updated", show_default=True
)
def list_workflows(include_archived: bool, order_by: str) -> None:
    """List workflows, newest first."""

    async def list_all() -> None:
        async with db.get_session() as session:
            rows = await workflows.list_workflows(
                session, include_archived=include_archived, order_by=order_by
            )
            if not rows:
                console.print("[yellow]No workflows found[/yellow]")
                return

            table = Table(title="Workflows")
            table.add_column("ID", style="cyan")
            table.add_column("Title")
            table.add_column("Stage")
            table.add_column("Priority")
            table.add_column("Approval")
            table.add_column("Updated")

            for wf in rows:
                title = f"{wf.title} [dim](archived)[/dim]" if wf.archived else wf.title
                table.add_row(
                    wf.id,
                    title,
                    wf.status,
                    wf.priority,
                    wf.pending_artifact_type if wf.awaiting_approval else "-",
                    wf.updated_at.strftime("%Y-%m-%d %H:%M"),
                )
            console.print(table)

    _run(list_all())


@main.command()
@click.argument("workflow_id")
def status(workflow_id: str) -> None:
    """Show status of a workflow.

    WORKFLOW_ID: The workflow identifier
    """

    async def show_status() -> None:
        async with db.get_session() as session:
            wf = await workflows.get_workflow(session, workflow_id)
            if not wf:
                console.print(f"[red]Workflow not found: {workflow_id}[/red]")
                raise SystemExit(1)

            subtask_ids = await subtasks.get_subtask_ids_for_workflow(session, workflow_id)
            total = await costs.get_total_workflow_cost(session, workflow_id, subtask_ids)
            skipped = ", ".join(wf.skipped_stages) if wf.skipped_stages else "none"
            approval = (
                f"[yellow]awaiting {wf.pending_artifact_type}[/yellow]"
                if wf.awaiting_approval
                else "none"
            )
            console.print(
                Panel(
                    f"[bold]{wf.title}[/bold]\n\n"
                    f"Stage: [cyan]{wf.status}[/cyan]\n"
                    f"Priority: {wf.priority}\n"
                    f"Approval: {approval}\n"
                    f"Skipped stages: {skipped}\n"
                    f"Base branch: {wf.base_branch or '-'}\n"
                    f"Created: {wf.created_at.strftime('%Y-%m-%d %H:%M')}\n"
                    f"Total cost: ${total:.4f}",
                    title=f"Workflow: {wf.id}",
                )
            )

            pulse_rows = await pulses.get_pulses_for_workflow(session, workflow_id)
            if pulse_rows:
                _print_pulses(pulse_rows)

    _run(show_status())


@main.command()
@click.argument("workflow_id")
@click.argument("stage", type=click.Choice([s.value for s in WorkflowStatus]))
@click.option("--session-id", default=None, help="Session that owns the new stage")
def transition(workflow_id: str, stage: str, session_id: str | None) -> None:
    """Move a workflow to STAGE, clearing any pending approval."""

    async def do_transition() -> None:
        async with db.get_session() as session:
            wf = await workflows.transition_stage(session, workflow_id, stage, session_id)
            console.print(f"[green]Workflow {wf.id} is now in {wf.status}[/green]")

    _run(do_transition())


@main.command()
@click.argument("workflow_id")
@click.option("--session-id", default=None, help="Session that owns the next stage")
def approve(workflow_id: str, session_id: str | None) -> None:
    """Approve the artifact a workflow is waiting on."""

    async def do_approve() -> None:
        async with db.get_session() as session:
            wf = await workflows.approve_pending_artifact(session, workflow_id, session_id)
            console.print(f"[green]Approved. Workflow {wf.id} is now in {wf.status}[/green]")

    _run(do_approve())


@main.command()
@click.argument("workflow_id")
def deny(workflow_id: str) -> None:
    """Deny the artifact a workflow is waiting on."""

    async def do_deny() -> None:
        async with db.get_session() as session:
            wf = await workflows.deny_pending_artifact(session, workflow_id)
            console.print(f"[yellow]Denied. Workflow {wf.id} stays in {wf.status}[/yellow]")

    _run(do_deny())


@main.command()
@click.argument("workflow_id")
def archive(workflow_id: str) -> None:
    """Archive a workflow. Archived workflows are hidden from `list`."""

    async def do_archive() -> None:
        async with db.get_session() as session:
            wf = await workflows.archive_workflow(session, workflow_id)
            console.print(f"[green]Archived {wf.id}[/green]")

    _run(do_archive())


@main.command()
@click.argument("workflow_id")
@click.argument("target", type=click.Choice(sorted(s.value for s in REWIND_TARGETS)))
def rewind(workflow_id: str, target: str) -> None:
    """Rewind a workflow to TARGET, discarding work from later stages."""

    async def do_rewind() -> None:
        async with db.get_session() as session:
            wf = await workflows.rewind_workflow(session, workflow_id, target)
            console.print(f"[green]Workflow {wf.id} rewound to {wf.status}[/green]")

    _run(do_rewind())


# =============================================================================
# Pulses and costs
# =============================================================================


def _print_pulses(rows) -> None:
    table = Table(title="Pulses")
    table.add_column("#", style="cyan")
    table.add_column("ID")
    table.add_column("Status")
    table.add_column("Description")
    table.add_column("Checkpoint")
    table.add_column("Rejections")

    for p in rows:
        style = _STATUS_STYLES.get(p.status, "white")
        checkpoint = (p.checkpoint_commit_sha or "-")[:10]
        if p.is_recovery_checkpoint:
            checkpoint += " (recovery)"
        table.add_row(
            str(p.sequence),
            p.id,
            f"[{style}]{p.status}[/{style}]",
            (p.description or "")[:60],
            checkpoint,
            str(p.rejection_count),
        )
    console.print(table)


@main.command(name="pulses")
@click.argument("workflow_id")
def list_pulses(workflow_id: str) -> None:
    """List the pulses of a workflow in plan order."""

    async def show_pulses() -> None:
        async with db.get_session() as session:
            rows = await pulses.get_pulses_for_workflow(session, workflow_id)
            if not rows:
                console.print("[yellow]No pulses found[/yellow]")
                return
            _print_pulses(rows)

    _run(show_pulses())


@main.command(name="costs")
@click.argument("workflow_id")
def show_costs(workflow_id: str) -> None:
    """Show cost breakdown for a workflow, including subtask work."""

    async def do_costs() -> None:
        async with db.get_session() as session:
            subtask_ids = await subtasks.get_subtask_ids_for_workflow(session, workflow_id)
            breakdown = await costs.get_cost_breakdown(session, workflow_id, subtask_ids)

            console.print(
                Panel(
                    f"Total: [bold]${breakdown.total_cost:.4f}[/bold]\n"
                    f"Prompt tokens: {breakdown.prompt_tokens:,}\n"
                    f"Completion tokens: {breakdown.completion_tokens:,}",
                    title=f"Costs: {workflow_id}",
                )
            )

            for title, key, rows in (
                ("By role", "agent_role", breakdown.by_role),
                ("By model", "model_id", breakdown.by_model),
            ):
                if not rows:
                    continue
                table = Table(title=title)
                table.add_column(key.replace("_", " ").title(), style="cyan")
                table.add_column("Cost", justify="right")
                table.add_column("Prompt", justify="right")
                table.add_column("Completion", justify="right")
                for row in rows:
                    table.add_row(
                        str(row[key] or "-"),
                        f"${row['total_cost']:.4f}",
                        f"{row['prompt_tokens']:,}",
                        f"{row['completion_tokens']:,}",
                    )
                console.print(table)

    _run(do_costs())


@main.command(name="repair-costs")
@click.option("--dry-run", is_flag=True, help="Report how many rows would change without writing")
def repair_costs(dry_run: bool) -> None:
    """Re-price long-context cost records recorded at the base rate."""

    async def do_repair() -> None:
        async with db.get_session() as session:
            repaired = await costs.repair_long_context_costs(session, dry_run=dry_run)

        verb = "Would update" if dry_run else "Updated"
        table = Table(title="Long-context cost repair")
        table.add_column("Model", style="cyan")
        table.add_column("Rows", justify="right")
        for model_id, count in repaired.items():
            table.add_row(model_id, str(count))
        console.print(table)
        console.print(f"{verb} {sum(repaired.values())} cost record(s)")

    _run(do_repair())


if __name__ == "__main__":
    main()
