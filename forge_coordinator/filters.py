"""
Pure ticket predicates used for routing.

Every function here works on a Ticket snapshot only; nothing touches the
forge, so these can be exercised without a gateway.
"""

from __future__ import annotations

from typing import Callable, Collection, Iterable

from forge_coordinator.models import (
    MERGE_READY,
    ROUTE_HUMAN_ONLY,
    ROUTE_READY,
    ROUTE_REVIEW,
    Priority,
    Ticket,
    TicketStatus,
)

TicketPredicate = Callable[[Ticket], bool]


def is_routable(ticket: Ticket, known_agents: Collection[str]) -> bool:
    """Open, marked ready, not complete, and not held by any known agent."""
    return (
        ticket.status == TicketStatus.OPEN
        and ROUTE_READY in ticket.labels
        and MERGE_READY not in ticket.labels
        and not (ticket.assignees & set(known_agents))
    )


def priority_of(ticket: Ticket) -> Priority:
    """Critical > High > Medium > Low; no priority label means Medium."""
    return Priority.from_labels(ticket.labels)


def owned_by(ticket: Ticket, agent_id: str) -> bool:
    return agent_id in ticket.assignees or agent_id in ticket.labels


def is_completed(ticket: Ticket) -> bool:
    return ticket.status == TicketStatus.CLOSED or MERGE_READY in ticket.labels


def is_blocked(ticket: Ticket) -> bool:
    """Reserved for humans or parked in review; agents must not pick it up."""
    return ROUTE_HUMAN_ONLY in ticket.labels or ROUTE_REVIEW in ticket.labels


def routing_key(ticket: Ticket) -> tuple[int, int]:
    # Priority descending, then lowest (oldest) id first.
    return (-int(priority_of(ticket)), ticket.id)


def sort_candidates(tickets: Iterable[Ticket]) -> list[Ticket]:
    return sorted(tickets, key=routing_key)


def available(known_agents: Collection[str]) -> TicketPredicate:
    """Predicate for the "any available" routing flavour."""
    agents = frozenset(known_agents)

    def predicate(ticket: Ticket) -> bool:
        return is_routable(ticket, agents) and not is_blocked(ticket)

    return predicate


def assigned_to(agent_id: str) -> TicketPredicate:
    """Predicate for the "assigned to me" recovery flavour."""

    def predicate(ticket: Ticket) -> bool:
        return owned_by(ticket, agent_id) and not is_completed(ticket)

    return predicate
