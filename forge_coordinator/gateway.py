"""
Forge gateway: the only component that performs side effects on the forge.

This module provides:
- ForgeGateway, the abstract capability set the coordinator consumes
- TicketQuery / PullRequestQuery filters
- GitHubGateway, an httpx-based implementation against the GitHub REST API

Every operation takes an explicit ForgeTarget. Nothing here looks at the
process working directory or a local git remote to decide which
repository to talk to.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import quote

import httpx

from forge_coordinator.errors import (
    ConflictError,
    ForgeErrorType,
    MalformedResponse,
    NotFoundError,
    RateLimitExhausted,
    TransientError,
    classify_forge_status,
    error_for,
)
from forge_coordinator.models import (
    CiStatus,
    ForgeTarget,
    PullRequest,
    RateLimitSnapshot,
    Ticket,
    TicketStatus,
)
from forge_coordinator.rate_limit_tracker import RateLimitTracker

logger = logging.getLogger(__name__)

__all__ = [
    "ForgeGateway",
    "ForgeTarget",
    "GitHubGateway",
    "PullRequestQuery",
    "TicketQuery",
]

PER_PAGE = 100
MAX_PAGES = 20


@dataclass(frozen=True)
class TicketQuery:
    """Server-side filter for list_tickets."""
    state: str = "open"                        # open | closed | all
    labels: tuple[str, ...] = ()
    assignee: Optional[str] = None


@dataclass(frozen=True)
class PullRequestQuery:
    """Server-side filter for list_pull_requests."""
    state: str = "open"
    head: Optional[str] = None                 # Branch name, without owner prefix


class ForgeGateway(ABC):
    """
    Capability set the coordinator requires from a forge.

    Implementations must treat label add/remove as idempotent, and report
    non-idempotent failures (an existing branch) as ConflictError.
    """

    # Issues
    @abstractmethod
    async def list_tickets(
        self, target: ForgeTarget, query: Optional[TicketQuery] = None
    ) -> list[Ticket]: ...

    @abstractmethod
    async def get_ticket(self, target: ForgeTarget, ticket_id: int) -> Ticket: ...

    @abstractmethod
    async def assign_ticket(self, target: ForgeTarget, ticket_id: int, agent_id: str) -> None: ...

    @abstractmethod
    async def unassign_ticket(self, target: ForgeTarget, ticket_id: int, agent_id: str) -> None: ...

    @abstractmethod
    async def add_label(self, target: ForgeTarget, ticket_id: int, label: str) -> None: ...

    @abstractmethod
    async def remove_label(self, target: ForgeTarget, ticket_id: int, label: str) -> None: ...

    @abstractmethod
    async def create_ticket(
        self, target: ForgeTarget, title: str, body: str, labels: list[str]
    ) -> Ticket: ...

    # Branches
    @abstractmethod
    async def create_branch(self, target: ForgeTarget, name: str, base: str) -> None: ...

    @abstractmethod
    async def delete_branch(self, target: ForgeTarget, name: str) -> None: ...

    @abstractmethod
    async def branch_exists(self, target: ForgeTarget, name: str) -> bool: ...

    @abstractmethod
    async def compare_branch(
        self, target: ForgeTarget, name: str, base: str
    ) -> tuple[int, int]:
        """Return (behind, ahead) of ``name`` relative to ``base``."""

    # Pull requests
    @abstractmethod
    async def list_pull_requests(
        self, target: ForgeTarget, query: Optional[PullRequestQuery] = None
    ) -> list[PullRequest]: ...

    @abstractmethod
    async def get_pr(self, target: ForgeTarget, number: int) -> PullRequest: ...

    @abstractmethod
    async def pr_is_mergeable(self, target: ForgeTarget, number: int) -> bool: ...

    @abstractmethod
    async def pr_ci_status(self, target: ForgeTarget, number: int) -> CiStatus: ...

    # Quota
    @abstractmethod
    async def rate_limit_snapshot(self, target: ForgeTarget) -> RateLimitSnapshot: ...

    async def aclose(self) -> None:
        """Release network resources. No-op by default."""


def _ticket_from_issue(data: dict[str, Any]) -> Ticket:
    try:
        return Ticket(
            id=int(data["number"]),
            title=data.get("title") or "",
            body=data.get("body") or "",
            labels={label["name"] for label in data.get("labels", [])},
            assignees={user["login"] for user in data.get("assignees", [])},
            status=TicketStatus.CLOSED if data.get("state") == "closed" else TicketStatus.OPEN,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedResponse(f"Unexpected issue payload: {e}")


def _pr_from_payload(data: dict[str, Any]) -> PullRequest:
    try:
        return PullRequest(
            number=int(data["number"]),
            head=data["head"]["ref"],
            base=data["base"]["ref"],
            title=data.get("title") or "",
            state=data.get("state", "open"),
            merged=bool(data.get("merged") or data.get("merged_at")),
            mergeable=data.get("mergeable"),
            commits=int(data.get("commits", 0)),
            changed_files=int(data.get("changed_files", 0)),
            head_sha=data["head"].get("sha", ""),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedResponse(f"Unexpected pull request payload: {e}")


class GitHubGateway(ForgeGateway):
    """
    ForgeGateway over the GitHub REST v3 API.

    Usage:
        async with GitHubGateway(token) as gateway:
            tickets = await gateway.list_tickets(ForgeTarget("acme", "widgets"))
    """

    def __init__(
        self,
        token: str,
        api_url: str = "https://api.github.com",
        read_timeout: float = 30.0,
        write_timeout: float = 60.0,
        tracker: Optional[RateLimitTracker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._token = token
        self._api_url = api_url.rstrip("/")
        self._read_timeout = read_timeout
        self._write_timeout = write_timeout
        self._transport = transport
        self.tracker = tracker or RateLimitTracker()
        self._client = self._create_client()

    def _create_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._api_url,
            timeout=httpx.Timeout(self._read_timeout),
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self._token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
        )

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client.is_closed:
            self._client = self._create_client()
        return self._client

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> GitHubGateway:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    @staticmethod
    def _repo_path(target: ForgeTarget, suffix: str = "") -> str:
        return f"/repos/{quote(target.owner, safe='')}/{quote(target.repo, safe='')}{suffix}"

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        entity: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Any = None,
        write: bool = False,
    ) -> httpx.Response:
        """Send one request and translate failures into ForgeError subclasses."""
        resets_at = self.tracker.quota_resets_at()
        if resets_at is not None:
            raise RateLimitExhausted(
                f"{operation} not sent: quota exhausted until {resets_at.isoformat()}",
                resets_at=resets_at,
                operation=operation,
                entity=entity,
            )

        timeout = self._write_timeout if write else self._read_timeout
        should_wait, wait_seconds = self.tracker.should_delay()
        if should_wait:
            wait_seconds = min(wait_seconds, timeout)
            logger.debug("Pacing %s for %.1fs", operation, wait_seconds)
            await asyncio.sleep(wait_seconds)

        client = self._ensure_client()
        try:
            response = await client.request(
                method, path, params=params, json=json, timeout=timeout
            )
        except httpx.TimeoutException as e:
            raise TransientError(
                f"{operation} timed out after {timeout}s", operation=operation, entity=entity
            ) from e
        except httpx.RequestError as e:
            raise TransientError(
                f"{operation} request failed: {e}", operation=operation, entity=entity
            ) from e

        self.tracker.record_call(write=write)
        self.tracker.update_from_headers(response.headers)

        error_type = classify_forge_status(response.status_code, response.headers)
        if error_type is None:
            return response

        message = f"{operation} returned HTTP {response.status_code}: {response.text[:300]}"
        if error_type == ForgeErrorType.RATE_LIMITED:
            raise RateLimitExhausted(
                message,
                resets_at=self._resets_at(response),
                operation=operation,
                entity=entity,
                status_code=response.status_code,
            )
        raise error_for(
            error_type,
            message,
            operation=operation,
            entity=entity,
            status_code=response.status_code,
        )

    def _resets_at(self, response: httpx.Response) -> Optional[datetime]:
        retry_after = response.headers.get("retry-after")
        if retry_after and retry_after.isdigit():
            return datetime.fromtimestamp(
                datetime.now(timezone.utc).timestamp() + int(retry_after), tz=timezone.utc
            )
        return self.tracker.resets_at

    @staticmethod
    def _json(response: httpx.Response, operation: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponse(
                f"{operation} returned invalid JSON", operation=operation
            ) from e

    # Issues

    async def list_tickets(
        self, target: ForgeTarget, query: Optional[TicketQuery] = None
    ) -> list[Ticket]:
        query = query or TicketQuery()
        params: dict[str, Any] = {"state": query.state, "per_page": PER_PAGE}
        if query.labels:
            params["labels"] = ",".join(query.labels)
        if query.assignee:
            params["assignee"] = query.assignee

        tickets: list[Ticket] = []
        for page in range(1, MAX_PAGES + 1):
            response = await self._request(
                "GET",
                self._repo_path(target, "/issues"),
                "list_tickets",
                target.slug,
                params={**params, "page": page},
            )
            items = self._json(response, "list_tickets")
            if not isinstance(items, list):
                raise MalformedResponse("list_tickets expected a JSON array", operation="list_tickets")
            # The issues endpoint also returns pull requests.
            tickets.extend(_ticket_from_issue(item) for item in items if "pull_request" not in item)
            if len(items) < PER_PAGE:
                break
        return tickets

    async def get_ticket(self, target: ForgeTarget, ticket_id: int) -> Ticket:
        response = await self._request(
            "GET",
            self._repo_path(target, f"/issues/{ticket_id}"),
            "get_ticket",
            f"#{ticket_id}",
        )
        return _ticket_from_issue(self._json(response, "get_ticket"))

    async def assign_ticket(self, target: ForgeTarget, ticket_id: int, agent_id: str) -> None:
        await self._request(
            "POST",
            self._repo_path(target, f"/issues/{ticket_id}/assignees"),
            "assign_ticket",
            f"#{ticket_id}",
            json={"assignees": [agent_id]},
            write=True,
        )

    async def unassign_ticket(self, target: ForgeTarget, ticket_id: int, agent_id: str) -> None:
        await self._request(
            "DELETE",
            self._repo_path(target, f"/issues/{ticket_id}/assignees"),
            "unassign_ticket",
            f"#{ticket_id}",
            json={"assignees": [agent_id]},
            write=True,
        )

    async def add_label(self, target: ForgeTarget, ticket_id: int, label: str) -> None:
        # GitHub already treats re-adding a present label as success.
        await self._request(
            "POST",
            self._repo_path(target, f"/issues/{ticket_id}/labels"),
            "add_label",
            f"#{ticket_id}",
            json={"labels": [label]},
            write=True,
        )

    async def remove_label(self, target: ForgeTarget, ticket_id: int, label: str) -> None:
        try:
            await self._request(
                "DELETE",
                self._repo_path(target, f"/issues/{ticket_id}/labels/{quote(label, safe='')}"),
                "remove_label",
                f"#{ticket_id}",
                write=True,
            )
        except NotFoundError:
            logger.debug("Label %s already absent from #%s", label, ticket_id)

    async def create_ticket(
        self, target: ForgeTarget, title: str, body: str, labels: list[str]
    ) -> Ticket:
        response = await self._request(
            "POST",
            self._repo_path(target, "/issues"),
            "create_ticket",
            target.slug,
            json={"title": title, "body": body, "labels": labels},
            write=True,
        )
        return _ticket_from_issue(self._json(response, "create_ticket"))

    # Branches

    async def _ref_sha(self, target: ForgeTarget, branch: str, operation: str) -> str:
        response = await self._request(
            "GET",
            self._repo_path(target, f"/git/ref/heads/{quote(branch, safe='/')}"),
            operation,
            branch,
        )
        data = self._json(response, operation)
        try:
            return data["object"]["sha"]
        except (KeyError, TypeError) as e:
            raise MalformedResponse(f"{operation}: ref payload without sha", operation=operation) from e

    async def create_branch(self, target: ForgeTarget, name: str, base: str) -> None:
        sha = await self._ref_sha(target, base, "create_branch")
        try:
            await self._request(
                "POST",
                self._repo_path(target, "/git/refs"),
                "create_branch",
                name,
                json={"ref": f"refs/heads/{name}", "sha": sha},
                write=True,
            )
        except ConflictError as e:
            raise ConflictError(
                f"Branch {name} already exists", operation="create_branch", entity=name,
                status_code=e.status_code,
            ) from e

    async def delete_branch(self, target: ForgeTarget, name: str) -> None:
        await self._request(
            "DELETE",
            self._repo_path(target, f"/git/refs/heads/{quote(name, safe='/')}"),
            "delete_branch",
            name,
            write=True,
        )

    async def branch_exists(self, target: ForgeTarget, name: str) -> bool:
        try:
            await self._ref_sha(target, name, "branch_exists")
        except NotFoundError:
            return False
        return True

    async def compare_branch(
        self, target: ForgeTarget, name: str, base: str
    ) -> tuple[int, int]:
        basehead = f"{quote(base, safe='/')}...{quote(name, safe='/')}"
        response = await self._request(
            "GET",
            self._repo_path(target, f"/compare/{basehead}"),
            "compare_branch",
            name,
        )
        data = self._json(response, "compare_branch")
        try:
            return int(data["behind_by"]), int(data["ahead_by"])
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedResponse("compare_branch: missing counters", operation="compare_branch") from e

    # Pull requests

    async def list_pull_requests(
        self, target: ForgeTarget, query: Optional[PullRequestQuery] = None
    ) -> list[PullRequest]:
        query = query or PullRequestQuery()
        params: dict[str, Any] = {"state": query.state, "per_page": PER_PAGE}
        if query.head:
            params["head"] = f"{target.owner}:{query.head}"
        response = await self._request(
            "GET",
            self._repo_path(target, "/pulls"),
            "list_pull_requests",
            target.slug,
            params=params,
        )
        items = self._json(response, "list_pull_requests")
        if not isinstance(items, list):
            raise MalformedResponse(
                "list_pull_requests expected a JSON array", operation="list_pull_requests"
            )
        return [_pr_from_payload(item) for item in items]

    async def get_pr(self, target: ForgeTarget, number: int) -> PullRequest:
        response = await self._request(
            "GET",
            self._repo_path(target, f"/pulls/{number}"),
            "get_pr",
            f"PR #{number}",
        )
        return _pr_from_payload(self._json(response, "get_pr"))

    async def pr_is_mergeable(self, target: ForgeTarget, number: int) -> bool:
        pr = await self.get_pr(target, number)
        # GitHub computes mergeability lazily and reports null until it has.
        return bool(pr.mergeable) and not pr.merged and pr.state == "open"

    async def pr_ci_status(self, target: ForgeTarget, number: int) -> CiStatus:
        pr = await self.get_pr(target, number)
        response = await self._request(
            "GET",
            self._repo_path(target, f"/commits/{pr.head_sha}/status"),
            "pr_ci_status",
            f"PR #{number}",
        )
        state = self._json(response, "pr_ci_status").get("state", "pending")
        if state == "success":
            return CiStatus.SUCCESS
        if state in ("failure", "error"):
            return CiStatus.FAILURE
        return CiStatus.PENDING

    # Quota

    async def rate_limit_snapshot(self, target: ForgeTarget) -> RateLimitSnapshot:
        response = await self._request("GET", "/rate_limit", "rate_limit_snapshot", target.slug)
        data = self._json(response, "rate_limit_snapshot")
        try:
            core = data["resources"]["core"]
            return RateLimitSnapshot(
                remaining=int(core["remaining"]),
                resets_at=datetime.fromtimestamp(int(core["reset"]), tz=timezone.utc),
                limit=int(core.get("limit", 0)) or None,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedResponse(
                "rate_limit_snapshot: unexpected payload", operation="rate_limit_snapshot"
            ) from e
