"""Display helpers and formatters for the CLI.

Contains Rich formatting for tickets, assignments and agent status.
This module should NOT import from app.py to avoid circular imports.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from forge_coordinator.models import Priority
from forge_coordinator.workflow import WorkflowState, WorkflowStateKind

if TYPE_CHECKING:
    from forge_coordinator.coordinator import CoordinatorStatus
    from forge_coordinator.models import Assignment, Ticket
    from forge_coordinator.state_store import AgentSnapshot

# Workflow display names and colors
WORKFLOW_DISPLAY: dict[WorkflowStateKind, tuple[str, str]] = {
    WorkflowStateKind.IDLE: ("Idle", "dim"),
    WorkflowStateKind.ASSIGNED: ("Assigned", "blue"),
    WorkflowStateKind.IN_PROGRESS: ("In Progress", "cyan bold"),
    WorkflowStateKind.READY_FOR_REVIEW: ("Ready for Review", "yellow bold"),
    WorkflowStateKind.MERGED: ("Merged", "green bold"),
    WorkflowStateKind.ABANDONED: ("Abandoned", "red"),
}

PRIORITY_DISPLAY: dict[Priority, str] = {
    Priority.CRITICAL: "red bold",
    Priority.HIGH: "yellow",
    Priority.MEDIUM: "white",
    Priority.LOW: "dim",
}

HEALTH_STYLE = {"healthy": "green", "degraded": "yellow", "unhealthy": "red bold"}


def format_workflow_state(state: WorkflowState) -> Text:
    """Format a workflow state as colored text, with its ticket and reason."""
    display_name, style = WORKFLOW_DISPLAY.get(state.kind, (state.kind.value, "white"))
    text = Text(display_name, style=style)
    if state.ticket_id is not None:
        text.append(f" #{state.ticket_id}", style="bold")
    if state.reason:
        text.append(f" ({state.reason})", style="dim")
    return text


def format_priority(priority: Priority) -> Text:
    return Text(priority.name.title(), style=PRIORITY_DISPLAY.get(priority, "white"))


def ticket_panel(ticket: Ticket, title: str = "Next ticket") -> Panel:
    body = Text()
    body.append(f"#{ticket.id} ", style="bold cyan")
    body.append(ticket.title or "(untitled)")
    body.append("\nPriority: ")
    body.append_text(format_priority(ticket.priority))
    if ticket.labels:
        body.append(f"\nLabels: {', '.join(sorted(ticket.labels))}", style="dim")
    return Panel(body, title=title, border_style="cyan")


def assignment_panel(assignment: Assignment) -> Panel:
    body = Text()
    body.append(f"Ticket #{assignment.ticket_id}", style="bold cyan")
    body.append(f" -> {assignment.agent_id}\n")
    body.append("Branch: ")
    body.append(assignment.branch_name, style="green")
    for warning in assignment.warnings:
        body.append(f"\nWarning: {warning}", style="yellow")
    return Panel(body, title="Assigned", border_style="green")


def snapshot_table(snapshot: AgentSnapshot, state: WorkflowState) -> Table:
    """Key/value table of a persisted agent session."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Field", style="bold")
    table.add_column("Value")

    table.add_row("Agent", snapshot.agent_id)
    table.add_row("Repository", snapshot.target.slug)
    table.add_row("Workflow", format_workflow_state(state))
    if snapshot.assignment is not None:
        table.add_row("Branch", snapshot.assignment.branch_name)
    if snapshot.escalation:
        table.add_row(
            "Escalated",
            Text(f"{snapshot.escalation.get('entity')}: {snapshot.escalation.get('reason')}",
                 style="red bold"),
        )
    table.add_row("Saved", snapshot.saved_at.strftime("%Y-%m-%d %H:%M:%S UTC"))
    return table


def status_panel(status: CoordinatorStatus) -> Panel:
    """Summary panel for a coordinator status report."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Field", style="bold")
    table.add_column("Value")

    table.add_row("Workflow", format_workflow_state(status.workflow.current_state))
    table.add_row("Transitions", str(status.workflow.transitions_count))
    if status.workflow.timeout_in is not None:
        minutes = int(status.workflow.timeout_in.total_seconds() // 60)
        table.add_row("Time left", f"{minutes} min")
    if status.drift is not None:
        health = status.drift.validation_health.value
        table.add_row("Drift health", Text(health, style=HEALTH_STYLE.get(health, "white")))
        table.add_row("Drifts", f"{status.drift.total_drifts} ({status.drift.critical_drifts} critical)")
    if status.retry_stats is not None:
        table.add_row("Forge success rate", f"{status.retry_stats.success_rate:.0%}")
    table.add_row("Recovery attempts", str(status.recovery_attempts))
    if status.last_error:
        table.add_row("Last error", Text(status.last_error, style="red"))

    border = "red" if status.escalated else "green"
    title = f"{status.agent_id}" + (" [ESCALATED]" if status.escalated else "")
    return Panel(table, title=title, border_style=border)


def events_table(entries: list[dict[str, Any]], title: Optional[str] = None) -> Table:
    """Table of structured log entries."""
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Time", style="dim", no_wrap=True)
    table.add_column("Level")
    table.add_column("Event", style="cyan")
    table.add_column("Details")

    for entry in entries:
        ts = entry.get("timestamp", "")[:19].replace("T", " ")
        level = entry.get("level", "")
        style = "red" if level == "error" else "yellow" if level == "warn" else "white"

        details_parts = []
        for key, value in (entry.get("data") or {}).items():
            if isinstance(value, (list, dict)):
                details_parts.append(f"{key}={len(value)}")
            elif isinstance(value, str) and len(value) > 40:
                details_parts.append(f"{key}={value[:40]}...")
            else:
                details_parts.append(f"{key}={value}")
        table.add_row(ts, Text(level, style=style), entry.get("event_type", ""), ", ".join(details_parts[:3]))
    return table
