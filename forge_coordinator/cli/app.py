"""Main Typer app definition and commands.

This is the canonical entry point for the CLI:

    forge-coordinator pop agent001 [--mine]
    forge-coordinator peek agent001
    forge-coordinator release agent001 42
    forge-coordinator status agent001
    forge-coordinator run agent001 [--workspace PATH]
    forge-coordinator resolve agent001 [--abandon]

Exit codes: 0 success, 1 recoverable (nothing to do, retry budget
exhausted, escalated session), 2 fatal (config or credentials).
"""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer

from forge_coordinator import __version__
from forge_coordinator.cli.common import (
    EXIT_RECOVERABLE,
    build_gateway,
    build_router,
    get_console,
    load_config_or_exit,
    report_forge_error,
    require_agent,
    set_config_path,
)
from forge_coordinator.cli.display import (
    assignment_panel,
    events_table,
    snapshot_table,
    status_panel,
    ticket_panel,
)
from forge_coordinator.errors import ForgeError, RetryBudgetExhausted

# Create Typer app
app = typer.Typer(
    name="forge-coordinator",
    help="Route forge tickets to coding agents and drive their work to merge",
    add_completion=False,
)

# Rich console for output - use singleton from common module
console = get_console()

FORGE_FAILURES = (ForgeError, RetryBudgetExhausted)


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"forge-coordinator version {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config.yaml (default: ./config.yaml)",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    Forge Coordinator - ticket routing and autonomous workflow for coding agents.
    """
    set_config_path(config)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(0)


# =========================================================================
# Routing commands
# =========================================================================


@app.command()
def pop(
    agent_id: str = typer.Argument(..., help="Agent to assign work to"),
    mine: bool = typer.Option(
        False,
        "--mine",
        help="Re-deliver a ticket already assigned to this agent instead of taking a new one",
    ),
) -> None:
    """
    Assign the highest-priority routable ticket to an agent.

    Assigns the ticket, adds the agent's ownership label and creates the
    work branch.
    """
    from forge_coordinator.logger import get_logger
    from forge_coordinator.router import PopMode

    config = load_config_or_exit()
    require_agent(config, agent_id)
    logger = get_logger(agent_id, config)
    mode = PopMode.ASSIGNED_TO_ME if mine else PopMode.AVAILABLE

    async def _pop():
        gateway = build_gateway(config, logger)
        try:
            router = build_router(config, gateway, logger)
            if mode == PopMode.AVAILABLE:
                await router.sync_owned(agent_id)
            assignment = await router.pop_next_for(agent_id, mode)
            held = [a.ticket_id for a in router.live_assignments(agent_id)]
            return assignment, held, router.last_error
        finally:
            await gateway.aclose()

    try:
        assignment, held, last_error = asyncio.run(_pop())
    except FORGE_FAILURES as e:
        report_forge_error(e)

    if assignment is None:
        capacity = config.capacity_of(agent_id)
        if len(held) >= capacity:
            tickets = ", ".join(f"#{ticket_id}" for ticket_id in held)
            console.print(
                f"[yellow]{agent_id} is at capacity ({capacity}); "
                f"already holds {tickets}.[/yellow]"
            )
            raise typer.Exit(EXIT_RECOVERABLE)
        console.print(f"[yellow]No ticket available for {agent_id}.[/yellow]")
        if last_error:
            console.print(f"[dim]Last error: {last_error}[/dim]")
        raise typer.Exit(EXIT_RECOVERABLE)

    console.print(assignment_panel(assignment))


@app.command()
def peek(
    agent_id: str = typer.Argument(..., help="Agent to look up work for"),
) -> None:
    """Show the ticket pop would try first, without assigning it."""
    config = load_config_or_exit()
    require_agent(config, agent_id)

    async def _peek():
        gateway = build_gateway(config)
        try:
            return await build_router(config, gateway).peek(agent_id)
        finally:
            await gateway.aclose()

    try:
        ticket = asyncio.run(_peek())
    except FORGE_FAILURES as e:
        report_forge_error(e)

    if ticket is None:
        console.print(f"[yellow]No routable ticket for {agent_id}.[/yellow]")
        raise typer.Exit(EXIT_RECOVERABLE)

    console.print(ticket_panel(ticket))


@app.command()
def release(
    agent_id: str = typer.Argument(..., help="Agent holding the ticket"),
    ticket_id: int = typer.Argument(..., help="Ticket number to release"),
) -> None:
    """Remove an agent's ownership label from a ticket. Safe to repeat."""
    from forge_coordinator.logger import get_logger

    config = load_config_or_exit()
    require_agent(config, agent_id)
    logger = get_logger(agent_id, config)

    async def _release():
        gateway = build_gateway(config, logger)
        try:
            router = build_router(config, gateway, logger)
            await router.release(agent_id, ticket_id)
            return router.last_error
        finally:
            await gateway.aclose()

    last_error = asyncio.run(_release())
    if last_error:
        console.print(f"[yellow]Release of #{ticket_id} incomplete:[/yellow] {last_error}")
        raise typer.Exit(EXIT_RECOVERABLE)
    console.print(f"[green]Released #{ticket_id} from {agent_id}.[/green]")


# =========================================================================
# Session commands
# =========================================================================


@app.command()
def status(
    agent_id: str = typer.Argument(..., help="Agent to show"),
    events: int = typer.Option(10, "--events", "-n", help="Recent warnings and errors to show"),
) -> None:
    """Show an agent's persisted session and recent problems. No forge calls."""
    from forge_coordinator.logger import get_logger
    from forge_coordinator.state_store import AgentStateStore
    from forge_coordinator.workflow import WorkflowStateMachine

    config = load_config_or_exit()
    require_agent(config, agent_id)

    snapshot = asyncio.run(AgentStateStore.from_config(config).load(agent_id))
    if snapshot is None:
        console.print(f"[dim]No saved session for {agent_id}.[/dim]")
    else:
        machine = WorkflowStateMachine.from_dict(
            snapshot.workflow, max_work_hours=config.coordination.max_work_hours
        )
        console.print(snapshot_table(snapshot, machine.state))

    if events > 0:
        logger = get_logger(agent_id, config)
        entries = [
            entry for entry in logger.read_logs()
            if entry.get("level") in ("warn", "error")
        ][-events:]
        if entries:
            console.print(events_table(entries, title=f"Recent problems for {agent_id}"))


@app.command()
def run(
    agent_id: str = typer.Argument(..., help="Agent to run"),
    workspace: Optional[Path] = typer.Option(
        None,
        "--workspace",
        "-w",
        help="Local git checkout to validate during drift passes",
    ),
    tick: float = typer.Option(30.0, "--tick", help="Seconds between loop iterations"),
) -> None:
    """
    Run an autonomous session until the work is merged, abandoned, or escalated.
    """
    from forge_coordinator.coordinator import AutonomousCoordinator
    from forge_coordinator.logger import get_logger
    from forge_coordinator.workspace import GitWorkspace

    config = load_config_or_exit()
    require_agent(config, agent_id)
    logger = get_logger(agent_id, config)
    probe = GitWorkspace(workspace) if workspace is not None else None

    async def _run():
        gateway = build_gateway(config, logger)
        try:
            coordinator = AutonomousCoordinator.from_config(
                agent_id, config, gateway, build_router(config, gateway, logger),
                workspace=probe, logger=logger,
            )
            coordinator.tick_seconds = tick
            await coordinator.start()
            return coordinator.status()
        finally:
            await gateway.aclose()

    try:
        final_status = asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted; session state was saved.[/yellow]")
        raise typer.Exit(EXIT_RECOVERABLE)

    console.print(status_panel(final_status))
    if final_status.escalated:
        console.print(
            f"[red]Session escalated: {final_status.escalation_reason}.[/red] "
            f"Run 'forge-coordinator resolve {agent_id}' once it is handled."
        )
        raise typer.Exit(EXIT_RECOVERABLE)


@app.command()
def resolve(
    agent_id: str = typer.Argument(..., help="Agent whose escalation was handled"),
    abandon: bool = typer.Option(
        False,
        "--abandon",
        help="Also abandon and release the ticket the agent was working on",
    ),
) -> None:
    """Clear an agent's escalation so it takes work again."""
    from forge_coordinator.coordinator import AutonomousCoordinator
    from forge_coordinator.logger import get_logger

    config = load_config_or_exit()
    require_agent(config, agent_id)
    logger = get_logger(agent_id, config)

    async def _resolve():
        gateway = build_gateway(config, logger)
        try:
            coordinator = AutonomousCoordinator.from_config(
                agent_id, config, gateway, build_router(config, gateway, logger), logger=logger,
            )
            await coordinator.restore()
            return await coordinator.resolve_escalation(abandon_work=abandon)
        finally:
            await gateway.aclose()

    if not asyncio.run(_resolve()):
        console.print(f"[dim]{agent_id} is not escalated.[/dim]")
        return
    console.print(f"[green]Escalation for {agent_id} resolved.[/green]")


def cli_main() -> None:
    """Entry point for the CLI."""
    app()


__all__ = ["app", "cli_main"]
