"""
Ticket routing and assignment.

The Router decides which agent gets which ticket. It owns the only
process-wide mutable state in the coordinator, the AssignmentLedger, and
guards it with a single asyncio.Lock. The lock only ever covers ledger
reads and writes; it is released before any forge call.

Assignment sequence (all-or-nothing, in this order):

    1. assign ticket to agent     -> on failure: release reservation
    2. add ownership label        -> on failure: unassign, release reservation
    3. create work branch         -> on failure: keep 1 and 2, attach warning
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional, Union

from forge_coordinator.errors import ConflictError, ForgeError, RetryBudgetExhausted
from forge_coordinator.filters import assigned_to, available, sort_candidates
from forge_coordinator.gateway import ForgeGateway, TicketQuery
from forge_coordinator.models import ROUTE_READY, Assignment, ForgeTarget, Ticket, branch_name

if TYPE_CHECKING:
    from forge_coordinator.logger import CoordinatorLogger


# Failures the router absorbs per candidate before moving on.
CANDIDATE_ERRORS = (ForgeError, RetryBudgetExhausted)


class PopMode(Enum):
    """Flavours of pop_next_for."""
    AVAILABLE = "available"
    ASSIGNED_TO_ME = "assigned_to_me"


@dataclass
class LedgerSnapshot:
    """Point-in-time copy of the ledger for status output and tests."""
    live: dict[int, str]
    live_counts: dict[str, int]
    reservations: dict[str, int]
    claims: dict[int, str]


class AssignmentLedger:
    """
    In-memory record of live assignments, slot reservations and ticket claims.

    Not safe to mutate without holding ``lock``. Methods never await.
    """

    def __init__(self, capacities: dict[str, int]) -> None:
        self.capacities = dict(capacities)
        self.lock = asyncio.Lock()
        self._live: dict[int, Assignment] = {}
        self._live_counts: dict[str, int] = {agent: 0 for agent in capacities}
        self._reservations: dict[str, int] = {agent: 0 for agent in capacities}
        self._claims: dict[int, str] = {}

    @property
    def agents(self) -> frozenset[str]:
        return frozenset(self.capacities)

    def live_count(self, agent_id: str) -> int:
        return self._live_counts.get(agent_id, 0)

    def reserved_count(self, agent_id: str) -> int:
        return self._reservations.get(agent_id, 0)

    def live_for(self, agent_id: str) -> list[Assignment]:
        return [a for a in self._live.values() if a.agent_id == agent_id]

    def holder_of(self, ticket_id: int) -> Optional[str]:
        assignment = self._live.get(ticket_id)
        return assignment.agent_id if assignment else None

    def get(self, ticket_id: int) -> Optional[Assignment]:
        return self._live.get(ticket_id)

    def has_room(self, agent_id: str) -> bool:
        used = self.live_count(agent_id) + self.reserved_count(agent_id)
        return used < self.capacities[agent_id]

    def is_taken(self, ticket_id: int) -> bool:
        return ticket_id in self._live or ticket_id in self._claims

    def reserve_slot(self, agent_id: str) -> None:
        self._reservations[agent_id] += 1

    def release_slot(self, agent_id: str) -> None:
        if self._reservations[agent_id] > 0:
            self._reservations[agent_id] -= 1

    def claim(self, ticket_id: int, agent_id: str) -> None:
        self._claims[ticket_id] = agent_id

    def unclaim(self, ticket_id: int) -> None:
        self._claims.pop(ticket_id, None)

    def commit(self, assignment: Assignment) -> None:
        """Turn a reserved slot plus a claimed ticket into a live assignment."""
        self.unclaim(assignment.ticket_id)
        self.release_slot(assignment.agent_id)
        self._add_live(assignment)

    def adopt(self, assignment: Assignment) -> None:
        self._add_live(assignment)

    def _add_live(self, assignment: Assignment) -> None:
        self._live[assignment.ticket_id] = assignment
        self._live_counts[assignment.agent_id] += 1

    def retire(self, ticket_id: int) -> Optional[Assignment]:
        assignment = self._live.pop(ticket_id, None)
        if assignment is not None:
            self._live_counts[assignment.agent_id] -= 1
        return assignment

    def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot(
            live={ticket: a.agent_id for ticket, a in self._live.items()},
            live_counts=dict(self._live_counts),
            reservations=dict(self._reservations),
            claims=dict(self._claims),
        )

    def first_violation(self) -> Optional[str]:
        """Describe the first broken ledger invariant, or None."""
        actual: dict[str, int] = {agent: 0 for agent in self.capacities}
        for ticket_id, assignment in self._live.items():
            if assignment.ticket_id != ticket_id:
                return f"ticket {ticket_id} indexed under assignment for {assignment.ticket_id}"
            if assignment.agent_id not in self.capacities:
                return f"ticket {ticket_id} held by unknown agent {assignment.agent_id}"
            actual[assignment.agent_id] += 1

        for agent, capacity in self.capacities.items():
            if self._live_counts.get(agent, 0) != actual[agent]:
                return (
                    f"agent {agent} live count {self._live_counts.get(agent, 0)} "
                    f"!= {actual[agent]} live assignments"
                )
            if actual[agent] > capacity:
                return f"agent {agent} holds {actual[agent]} tickets, capacity {capacity}"
            if self._reservations.get(agent, 0) < 0:
                return f"agent {agent} has negative reservations"
        return None


class Router:
    """
    Hands out tickets to agents.

    One Router is shared by every coordinator in the process; each call
    names the agent it acts for.
    """

    def __init__(
        self,
        gateway: ForgeGateway,
        target: ForgeTarget,
        capacities: dict[str, int],
        base_branch: str = "main",
        logger: Optional[CoordinatorLogger] = None,
    ) -> None:
        if not capacities:
            raise ValueError("Router needs at least one agent")
        self.gateway = gateway
        self.target = target
        self.base_branch = base_branch
        self.ledger = AssignmentLedger(capacities)
        self._logger = logger
        self.last_error: Optional[str] = None

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def _require_agent(self, agent_id: str) -> None:
        if agent_id not in self.ledger.capacities:
            raise ValueError(f"Unknown agent: {agent_id}")

    def _note_error(self, ticket_id: int, error: Exception) -> None:
        error_class = getattr(getattr(error, "error_type", None), "name", type(error).__name__)
        self.last_error = f"#{ticket_id}: {error_class}: {error}"

    @property
    def known_agents(self) -> frozenset[str]:
        return self.ledger.agents

    def live_assignments(self, agent_id: str) -> list[Assignment]:
        return self.ledger.live_for(agent_id)

    async def _candidates(self) -> list[Ticket]:
        tickets = await self.gateway.list_tickets(
            self.target, TicketQuery(state="open", labels=(ROUTE_READY,))
        )
        predicate = available(self.known_agents)
        return sort_candidates(t for t in tickets if predicate(t))

    async def peek(self, agent_id: str) -> Optional[Ticket]:
        """The ticket pop_next would try first, without side effects."""
        self._require_agent(agent_id)
        for ticket in await self._candidates():
            if not self.ledger.is_taken(ticket.id):
                return ticket
        return None

    async def pop_next(self, agent_id: str) -> Optional[Assignment]:
        """
        Assign the highest-priority routable ticket to ``agent_id``.

        Returns:
            The new Assignment, or None when the agent is at capacity or
            no candidate could be assigned.

        Raises:
            ValueError: Unknown agent.
            ForgeError / RetryBudgetExhausted: Listing candidates failed.
        """
        self._require_agent(agent_id)

        async with self.ledger.lock:
            if not self.ledger.has_room(agent_id):
                self._log("capacity_exhausted", {
                    "agent": agent_id,
                    "live": self.ledger.live_count(agent_id),
                    "capacity": self.ledger.capacities[agent_id],
                }, level="debug")
                return None
            self.ledger.reserve_slot(agent_id)

        committed = False
        try:
            candidates = await self._candidates()
            for ticket in candidates:
                async with self.ledger.lock:
                    if self.ledger.is_taken(ticket.id):
                        continue
                    self.ledger.claim(ticket.id, agent_id)

                assignment = await self._assign(agent_id, ticket)

                async with self.ledger.lock:
                    if assignment is None:
                        self.ledger.unclaim(ticket.id)
                        continue
                    self.ledger.commit(assignment)
                    committed = True

                self._log("ticket_assigned", {
                    "agent": agent_id,
                    "ticket": ticket.id,
                    "branch": assignment.branch_name,
                    "priority": ticket.priority.name,
                    "warnings": assignment.warnings,
                })
                return assignment

            self._log("no_routable_ticket", {"agent": agent_id}, level="debug")
            return None
        finally:
            if not committed:
                async with self.ledger.lock:
                    self.ledger.release_slot(agent_id)

    async def _assign(self, agent_id: str, ticket: Ticket) -> Optional[Assignment]:
        """Run the three-step assignment sequence for one candidate."""
        # The listing may be stale; re-check the ticket before writing.
        try:
            fresh = await self.gateway.get_ticket(self.target, ticket.id)
        except CANDIDATE_ERRORS as e:
            self._note_error(ticket.id, e)
            self._log("candidate_skipped", {"ticket": ticket.id, "error": str(e)}, level="warn")
            return None
        if not available(self.known_agents)(fresh):
            self._note_error(ticket.id, ConflictError("no longer routable", entity=f"#{ticket.id}"))
            self._log("candidate_skipped", {
                "ticket": ticket.id,
                "reason": "no longer routable",
            }, level="info")
            return None

        try:
            await self.gateway.assign_ticket(self.target, ticket.id, agent_id)
        except CANDIDATE_ERRORS as e:
            self._note_error(ticket.id, e)
            self._log("assign_failed", {"agent": agent_id, "ticket": ticket.id, "error": str(e)}, level="warn")
            return None

        try:
            await self.gateway.add_label(self.target, ticket.id, agent_id)
        except CANDIDATE_ERRORS as e:
            self._note_error(ticket.id, e)
            self._log("label_failed", {"agent": agent_id, "ticket": ticket.id, "error": str(e)}, level="warn")
            await self._rollback_assign(agent_id, ticket.id)
            return None

        assignment = Assignment(
            ticket_id=ticket.id,
            agent_id=agent_id,
            branch_name=branch_name(agent_id, ticket.id),
        )
        try:
            await self.gateway.create_branch(self.target, assignment.branch_name, self.base_branch)
        except CANDIDATE_ERRORS as e:
            # Advisory step: the assignment stands without a branch.
            warning = f"branch {assignment.branch_name} not created: {e}"
            assignment.warnings.append(warning)
            self._log("branch_create_failed", {
                "agent": agent_id,
                "ticket": ticket.id,
                "branch": assignment.branch_name,
                "error": str(e),
            }, level="warn")
        return assignment

    async def _rollback_assign(self, agent_id: str, ticket_id: int) -> None:
        try:
            await self.gateway.unassign_ticket(self.target, ticket_id, agent_id)
        except CANDIDATE_ERRORS as e:
            # Left for the drift detector to reconcile.
            self._log("rollback_failed", {
                "agent": agent_id,
                "ticket": ticket_id,
                "error": str(e),
            }, level="error")
        else:
            self._log("assign_rolled_back", {"agent": agent_id, "ticket": ticket_id})

    async def pop_next_for(
        self, agent_id: str, mode: PopMode = PopMode.AVAILABLE
    ) -> Optional[Assignment]:
        """
        Pop work in one of two flavours.

        AVAILABLE behaves like pop_next. ASSIGNED_TO_ME re-delivers an
        in-flight ticket this agent already owns on the forge, without
        reserving a slot or writing to the forge.
        """
        if mode == PopMode.AVAILABLE:
            return await self.pop_next(agent_id)

        self._require_agent(agent_id)
        tickets = await self.gateway.list_tickets(self.target, TicketQuery(state="open"))
        owned = sort_candidates(t for t in tickets if assigned_to(agent_id)(t))

        for ticket in owned:
            async with self.ledger.lock:
                existing = self.ledger.get(ticket.id)
                if existing is not None:
                    if existing.agent_id == agent_id:
                        return existing
                    continue
                if self.ledger.is_taken(ticket.id) or not self.ledger.has_room(agent_id):
                    continue
                assignment = Assignment(
                    ticket_id=ticket.id,
                    agent_id=agent_id,
                    branch_name=branch_name(agent_id, ticket.id),
                )
                self.ledger.adopt(assignment)
            self._log("ticket_redelivered", {"agent": agent_id, "ticket": ticket.id})
            return assignment
        return None

    async def sync_owned(self, agent_id: str) -> list[Assignment]:
        """
        Seed the ledger with open tickets the agent already owns on the forge.

        A fresh Router starts with an empty ledger; calling this before the
        first pop_next makes work taken by an earlier process count against
        the agent's capacity. Tickets held by another agent in the ledger,
        or beyond capacity, are skipped.

        Returns:
            The assignments adopted by this call.

        Raises:
            ValueError: Unknown agent.
            ForgeError / RetryBudgetExhausted: Listing tickets failed.
        """
        self._require_agent(agent_id)
        tickets = await self.gateway.list_tickets(self.target, TicketQuery(state="open"))
        owned = sort_candidates(t for t in tickets if assigned_to(agent_id)(t))

        adopted: list[Assignment] = []
        skipped: list[int] = []
        for ticket in owned:
            async with self.ledger.lock:
                if self.ledger.holder_of(ticket.id) == agent_id:
                    continue
                if self.ledger.is_taken(ticket.id) or not self.ledger.has_room(agent_id):
                    skipped.append(ticket.id)
                    continue
                assignment = Assignment(
                    ticket_id=ticket.id,
                    agent_id=agent_id,
                    branch_name=branch_name(agent_id, ticket.id),
                )
                self.ledger.adopt(assignment)
            adopted.append(assignment)

        if adopted or skipped:
            self._log("owned_tickets_synced", {
                "agent": agent_id,
                "adopted": [a.ticket_id for a in adopted],
                "skipped": skipped,
            }, level="warn" if skipped else "info")
        return adopted

    async def adopt(self, assignment: Assignment) -> bool:
        """
        Re-register a live assignment restored from persistence.

        Returns False when it would break capacity or uniqueness.
        """
        self._require_agent(assignment.agent_id)
        async with self.ledger.lock:
            holder = self.ledger.holder_of(assignment.ticket_id)
            if holder == assignment.agent_id:
                return True
            if holder is not None or self.ledger.is_taken(assignment.ticket_id):
                return False
            if not self.ledger.has_room(assignment.agent_id):
                return False
            self.ledger.adopt(assignment)
        self._log("assignment_adopted", {
            "agent": assignment.agent_id,
            "ticket": assignment.ticket_id,
        })
        return True

    async def release(self, agent_id: str, ticket_id: int) -> bool:
        """
        Retire a live assignment and remove the ownership label.

        Idempotent. Returns True when a live assignment was retired by this call.
        """
        self._require_agent(agent_id)
        async with self.ledger.lock:
            retired = None
            if self.ledger.holder_of(ticket_id) == agent_id:
                retired = self.ledger.retire(ticket_id)

        try:
            await self.gateway.remove_label(self.target, ticket_id, agent_id)
        except CANDIDATE_ERRORS as e:
            self._note_error(ticket_id, e)
            self._log("release_label_failed", {
                "agent": agent_id,
                "ticket": ticket_id,
                "error": str(e),
            }, level="warn")

        if retired is not None:
            self._log("ticket_released", {"agent": agent_id, "ticket": ticket_id})
        return retired is not None

    async def detach(self, agent_id: str, ticket_id: int) -> bool:
        """Drop a live assignment from the ledger, leaving the forge untouched."""
        self._require_agent(agent_id)
        async with self.ledger.lock:
            if self.ledger.holder_of(ticket_id) != agent_id:
                return False
            self.ledger.retire(ticket_id)
        self._log("assignment_detached", {"agent": agent_id, "ticket": ticket_id})
        return True

    def check_consistency(self) -> Union[bool, str]:
        """True when the ledger is consistent, else a description of the first violation."""
        violation = self.ledger.first_violation()
        return True if violation is None else violation
