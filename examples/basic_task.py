"""
Basic Workflow Example

Walks one workflow from scope approval through a three-pulse plan, with
a pulse failure recorded against a recovery checkpoint.

Usage:
    pulseflow upgrade
    python examples/basic_task.py
"""

import asyncio

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from pulseflow import artifacts, costs, pulses, sessions, workflows
from pulseflow.context import WorkflowContext
from pulseflow.costs import TokenUsage
from pulseflow.db import get_session
from pulseflow.models import Workflow
from pulseflow.states import ArtifactType, WorkflowStatus

console = Console()

PLAN = [
    {"id": "p1", "title": "Token model", "description": "Add the refresh token table"},
    {"id": "p2", "title": "Endpoints", "description": "Issue and refresh JWTs"},
    {"id": "p3", "title": "Tests", "description": "Cover expiry and refresh"},
]


async def create_workflow(request: str) -> Workflow:
    """Create a workflow that skips research and goes straight to planning."""
    console.print("\n[bold blue]Creating new workflow...[/bold blue]")

    async with get_session() as session:
        workflow = await workflows.create_workflow(
            session, request[:100], request, skipped_stages=[WorkflowStatus.RESEARCHING]
        )
        await artifacts.create_scope_card(
            session,
            workflow.id,
            title="JWT auth",
            description=request,
            in_scope=["login", "token refresh"],
            out_of_scope=["social login"],
        )
        await workflows.set_awaiting_approval(session, workflow.id, ArtifactType.SCOPE_CARD)

    console.print(f"[green]✓ Created workflow: {workflow.id}[/green]")
    return workflow


async def plan_and_approve(workflow_id: str) -> None:
    async with get_session() as session:
        await workflows.approve_pending_artifact(session, workflow_id)

        planner = await sessions.create_session(session, WorkflowContext(workflow_id), "planning")
        turn = await sessions.create_turn(session, planner.id, 0, "assistant")
        await sessions.upsert_message(session, turn.id, 0, "Three pulses: model, endpoints, tests.")
        await sessions.complete_turn(
            session,
            turn.id,
            TokenUsage(prompt_tokens=12_000, completion_tokens=1_500, model_id="claude-sonnet-4-5"),
        )
        await costs.record_turn_cost(session, WorkflowContext(workflow_id), turn, "planning")

        await artifacts.create_plan(
            session, workflow_id, approach_summary="Model first, then API", pulses=PLAN
        )
        await workflows.set_awaiting_approval(session, workflow_id, ArtifactType.PLAN)
        await workflows.approve_pending_artifact(session, workflow_id)

    console.print("[green]✓ Plan approved; pulses materialized[/green]")


async def run_pulses(workflow_id: str) -> None:
    async with get_session() as session:
        first = await pulses.get_next_proposed_pulse(session, workflow_id)
        await pulses.start_pulse(session, first.id, "pulse/p1", "/tmp/worktrees/p1")
        await pulses.complete_pulse(session, first.id, "3f2a9c1", has_unresolved_issues=False)

        second = await pulses.get_next_proposed_pulse(session, workflow_id)
        await pulses.start_pulse(session, second.id, "pulse/p2", "/tmp/worktrees/p2")
        await pulses.fail_pulse(
            session, second.id, "refresh test flaked", recovery_commit_sha="b71d0e4"
        )


async def display_workflow(workflow_id: str) -> None:
    """Display workflow state and its pulses in a formatted table."""
    async with get_session() as session:
        workflow = await workflows.get_workflow(session, workflow_id)
        rows = await pulses.get_pulses_for_workflow(session, workflow_id)
        total = await costs.get_total_workflow_cost(session, workflow_id, [])

    table = Table(title=f"{workflow.title} ({workflow.status})")
    table.add_column("#", style="cyan")
    table.add_column("Description", style="magenta")
    table.add_column("Status")
    table.add_column("Checkpoint")

    for pulse in rows:
        checkpoint = pulse.checkpoint_commit_sha or "-"
        if pulse.is_recovery_checkpoint:
            checkpoint += " (recovery)"
        table.add_row(str(pulse.sequence), pulse.description or "", pulse.status, checkpoint)

    console.print("\n")
    console.print(table)
    console.print(f"Total cost so far: [bold]${total:.4f}[/bold]")


async def main():
    """Main execution function."""
    console.print(
        Panel.fit(
            "[bold]Basic Workflow Example[/bold]\nScope, plan and run pulses for one workflow",
            border_style="blue",
        )
    )

    request = "Add user authentication with JWT tokens to the API"

    try:
        workflow = await create_workflow(request)
        await plan_and_approve(workflow.id)
        await run_pulses(workflow.id)
        await display_workflow(workflow.id)

        console.print("\n[bold green]Workflow walkthrough complete![/bold green]")
        console.print("\nNext steps:")
        console.print(f"1. View status: [cyan]pulseflow status {workflow.id}[/cyan]")
        console.print(f"2. Inspect costs: [cyan]pulseflow costs {workflow.id}[/cyan]")
        console.print(f"3. Re-plan: [cyan]pulseflow rewind {workflow.id} planning[/cyan]")

    except Exception as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        console.print("\nMake sure:")
        console.print("• Migrations are applied (pulseflow upgrade)")
        console.print("• Configuration is correct (.env file)")


if __name__ == "__main__":
    asyncio.run(main())
