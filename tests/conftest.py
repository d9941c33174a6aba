"""Shared fixtures: an in-memory forge, a controllable clock and wiring helpers."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import pytest
from typer.testing import CliRunner

from forge_coordinator.config import (
    AgentConfig,
    CoordinationConfig,
    CoordinatorConfig,
    DriftConfig,
    ForgeConfig,
)
from forge_coordinator.errors import ConflictError, NotFoundError
from forge_coordinator.gateway import ForgeGateway, PullRequestQuery, TicketQuery
from forge_coordinator.models import (
    ROUTE_READY,
    CiStatus,
    ForgeTarget,
    PullRequest,
    RateLimitSnapshot,
    Ticket,
    TicketStatus,
)
from forge_coordinator.retry import RetryingGateway, RetryPolicy
from forge_coordinator.router import Router


# ============================================================================
# In-memory forge
# ============================================================================


class InMemoryForge(ForgeGateway):
    """
    ForgeGateway double holding tickets, branches and pull requests in dicts.

    Failures are injected per operation with fail(); every call is recorded
    in ``calls`` as (operation, args).
    """

    def __init__(self) -> None:
        self.tickets: dict[int, Ticket] = {}
        self.branches: dict[str, dict[str, Any]] = {"main": {"base": None, "behind": 0, "ahead": 0}}
        self.prs: dict[int, PullRequest] = {}
        self.ci: dict[int, CiStatus] = {}
        self.calls: list[tuple[str, tuple]] = []
        self._failures: dict[str, list[list[Any]]] = {}

    # Setup helpers

    def add_ticket(
        self,
        ticket_id: int,
        title: str = "",
        labels: Optional[set[str]] = None,
        assignees: Optional[set[str]] = None,
        status: TicketStatus = TicketStatus.OPEN,
    ) -> Ticket:
        ticket = Ticket(
            id=ticket_id,
            title=title or f"Ticket {ticket_id}",
            labels=set(labels) if labels is not None else {ROUTE_READY},
            assignees=set(assignees or ()),
            status=status,
        )
        self.tickets[ticket_id] = ticket
        return ticket

    def open_pr(self, number: int, head: str, commits: int = 1, changed_files: int = 1) -> PullRequest:
        pr = PullRequest(number=number, head=head, commits=commits, changed_files=changed_files)
        self.prs[number] = pr
        return pr

    def merge_pr(self, number: int) -> None:
        self.prs[number].state = "closed"
        self.prs[number].merged = True

    def close_pr(self, number: int) -> None:
        self.prs[number].state = "closed"

    def push_commits(self, branch: str, count: int) -> None:
        self.branches[branch]["ahead"] += count

    def fail(
        self,
        operation: str,
        error: Exception,
        times: int = 1,
        match: Optional[Callable[..., bool]] = None,
    ) -> None:
        """Make ``operation`` raise ``error`` the next ``times`` calls (-1: always)."""
        self._failures.setdefault(operation, []).append([error, times, match])

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    def _enter(self, operation: str, *args: Any) -> None:
        self.calls.append((operation, args))
        for entry in self._failures.get(operation, []):
            error, times, match = entry
            if times == 0 or (match is not None and not match(*args)):
                continue
            if times > 0:
                entry[1] -= 1
            raise error

    def _ticket(self, ticket_id: int) -> Ticket:
        if ticket_id not in self.tickets:
            raise NotFoundError(f"Ticket {ticket_id} not found", entity=f"#{ticket_id}")
        return self.tickets[ticket_id]

    @staticmethod
    def _copy(ticket: Ticket) -> Ticket:
        return replace(ticket, labels=set(ticket.labels), assignees=set(ticket.assignees))

    # Issues

    async def list_tickets(self, target: ForgeTarget, query: Optional[TicketQuery] = None) -> list[Ticket]:
        self._enter("list_tickets", query)
        query = query or TicketQuery()
        result = []
        for ticket in self.tickets.values():
            if query.state != "all" and ticket.status.value != query.state:
                continue
            if not set(query.labels) <= ticket.labels:
                continue
            if query.assignee and query.assignee not in ticket.assignees:
                continue
            result.append(self._copy(ticket))
        return result

    async def get_ticket(self, target: ForgeTarget, ticket_id: int) -> Ticket:
        self._enter("get_ticket", ticket_id)
        return self._copy(self._ticket(ticket_id))

    async def assign_ticket(self, target: ForgeTarget, ticket_id: int, agent_id: str) -> None:
        self._enter("assign_ticket", ticket_id, agent_id)
        self._ticket(ticket_id).assignees.add(agent_id)

    async def unassign_ticket(self, target: ForgeTarget, ticket_id: int, agent_id: str) -> None:
        self._enter("unassign_ticket", ticket_id, agent_id)
        self._ticket(ticket_id).assignees.discard(agent_id)

    async def add_label(self, target: ForgeTarget, ticket_id: int, label: str) -> None:
        self._enter("add_label", ticket_id, label)
        self._ticket(ticket_id).labels.add(label)

    async def remove_label(self, target: ForgeTarget, ticket_id: int, label: str) -> None:
        self._enter("remove_label", ticket_id, label)
        self._ticket(ticket_id).labels.discard(label)

    async def create_ticket(self, target: ForgeTarget, title: str, body: str, labels: list[str]) -> Ticket:
        self._enter("create_ticket", title, tuple(labels))
        ticket_id = max(self.tickets, default=0) + 1
        ticket = Ticket(id=ticket_id, title=title, body=body, labels=set(labels))
        self.tickets[ticket_id] = ticket
        return self._copy(ticket)

    # Branches

    async def create_branch(self, target: ForgeTarget, name: str, base: str) -> None:
        self._enter("create_branch", name, base)
        if name in self.branches:
            raise ConflictError(f"Branch {name} already exists", entity=name)
        self.branches[name] = {"base": base, "behind": 0, "ahead": 0}

    async def delete_branch(self, target: ForgeTarget, name: str) -> None:
        self._enter("delete_branch", name)
        if self.branches.pop(name, None) is None:
            raise NotFoundError(f"Branch {name} not found", entity=name)

    async def branch_exists(self, target: ForgeTarget, name: str) -> bool:
        self._enter("branch_exists", name)
        return name in self.branches

    async def compare_branch(self, target: ForgeTarget, name: str, base: str) -> tuple[int, int]:
        self._enter("compare_branch", name, base)
        if name not in self.branches:
            raise NotFoundError(f"Branch {name} not found", entity=name)
        branch = self.branches[name]
        return branch["behind"], branch["ahead"]

    # Pull requests

    async def list_pull_requests(
        self, target: ForgeTarget, query: Optional[PullRequestQuery] = None
    ) -> list[PullRequest]:
        self._enter("list_pull_requests", query)
        query = query or PullRequestQuery()
        result = []
        for pr in self.prs.values():
            if query.state != "all" and pr.state != query.state:
                continue
            if query.head and pr.head != query.head:
                continue
            result.append(replace(pr))
        return result

    async def get_pr(self, target: ForgeTarget, number: int) -> PullRequest:
        self._enter("get_pr", number)
        if number not in self.prs:
            raise NotFoundError(f"PR {number} not found", entity=f"PR #{number}")
        return replace(self.prs[number])

    async def pr_is_mergeable(self, target: ForgeTarget, number: int) -> bool:
        return bool((await self.get_pr(target, number)).mergeable)

    async def pr_ci_status(self, target: ForgeTarget, number: int) -> CiStatus:
        self._enter("pr_ci_status", number)
        return self.ci.get(number, CiStatus.PENDING)

    async def rate_limit_snapshot(self, target: ForgeTarget) -> RateLimitSnapshot:
        self._enter("rate_limit_snapshot")
        return RateLimitSnapshot(
            remaining=5000,
            resets_at=datetime.now(timezone.utc) + timedelta(hours=1),
            limit=5000,
        )


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


async def no_sleep(seconds: float) -> None:
    return None


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def target() -> ForgeTarget:
    return ForgeTarget("acme", "widgets")


@pytest.fixture
def forge() -> InMemoryForge:
    return InMemoryForge()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def retrying(forge: InMemoryForge) -> RetryingGateway:
    """The in-memory forge behind the default retry policy, without real sleeps."""
    return RetryingGateway(forge, RetryPolicy(jitter=False), sleep=no_sleep)


@pytest.fixture
def router(retrying: RetryingGateway, target: ForgeTarget) -> Router:
    return Router(retrying, target, {"agent001": 1, "agent002": 1, "agent003": 1})


@pytest.fixture
def coordinator_config(tmp_path) -> CoordinatorConfig:
    return CoordinatorConfig(
        forge=ForgeConfig(owner="acme", repo="widgets"),
        agents=[AgentConfig("agent001"), AgentConfig("agent002"), AgentConfig("agent003")],
        repo_root=str(tmp_path),
        coordination=CoordinationConfig(),
        drift=DriftConfig(),
    )


@pytest.fixture
def cli_runner() -> CliRunner:
    """Typer CLI test runner."""
    return CliRunner()
