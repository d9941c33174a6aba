"""
Core data models for the forge coordinator.

This module defines the data structures shared by the gateway, router and
state machine:
- Label vocabulary (routing markers, priority labels, completion marker)
- Ticket, pull request and rate-limit snapshots as observed on the forge
- Assignment, the live binding of one ticket to one agent
- JSON serialization support for all models
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Iterable, Optional


# Label vocabulary. These strings are matched and produced verbatim.
ROUTE_READY = "route:ready"
MERGE_READY = "merge-ready"
ROUTE_HUMAN_ONLY = "route:human-only"
ROUTE_REVIEW = "route:review"
PRIORITY_LABEL_PREFIX = "route:priority-"

BRANCH_SLUG_MAX_LENGTH = 30


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 with a Z suffix, the format used in logs and state files."""
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Inverse of format_timestamp; tolerates None and naive strings."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class ForgeTarget:
    """The repository every forge call is addressed to."""
    owner: str
    repo: str

    def __post_init__(self) -> None:
        if not self.owner or not self.repo:
            raise ValueError("ForgeTarget requires both owner and repo")

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.repo}"

    @classmethod
    def parse(cls, slug: str) -> ForgeTarget:
        """Build a target from ``owner/repo``."""
        owner, sep, repo = slug.partition("/")
        if not sep or "/" in repo:
            raise ValueError(f"Expected 'owner/repo', got {slug!r}")
        return cls(owner=owner, repo=repo)

    def __str__(self) -> str:
        return self.slug


class Priority(IntEnum):
    """
    Ticket priority, ordered so that a larger value routes first.

    Derived from ``route:priority-*`` labels; absence means MEDIUM.
    """
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        return f"{PRIORITY_LABEL_PREFIX}{self.name.lower()}"

    @classmethod
    def from_labels(cls, labels: Iterable[str]) -> Priority:
        """Highest priority named by the labels, MEDIUM when none is."""
        found = [
            member
            for member in cls
            if member.label in set(labels)
        ]
        return max(found) if found else cls.MEDIUM


class TicketStatus(Enum):
    """Open/closed state of a ticket on the forge."""
    OPEN = "open"
    CLOSED = "closed"


class CiStatus(Enum):
    """Combined CI status of a pull request head."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class Ticket:
    """
    A ticket (issue) as last observed on the forge.

    Identity is ``id``. Priority is not stored separately; it is always
    derived from the labels so the two can never disagree.
    """
    id: int
    title: str = ""
    body: str = ""
    labels: set[str] = field(default_factory=set)
    assignees: set[str] = field(default_factory=set)
    status: TicketStatus = TicketStatus.OPEN
    estimated_hours: Optional[int] = None

    @property
    def priority(self) -> Priority:
        return Priority.from_labels(self.labels)

    @property
    def is_open(self) -> bool:
        return self.status == TicketStatus.OPEN

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "labels": sorted(self.labels),
            "assignees": sorted(self.assignees),
            "priority": self.priority.name,
            "status": self.status.value,
            "estimated_hours": self.estimated_hours,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Ticket:
        """Create from dictionary."""
        return cls(
            id=int(data["id"]),
            title=data.get("title", ""),
            body=data.get("body", ""),
            labels=set(data.get("labels", [])),
            assignees=set(data.get("assignees", [])),
            status=TicketStatus(data.get("status", "open")),
            estimated_hours=data.get("estimated_hours"),
        )


@dataclass
class PullRequest:
    """A pull request as last observed on the forge."""
    number: int
    head: str
    base: str = "main"
    title: str = ""
    state: str = "open"
    merged: bool = False
    mergeable: Optional[bool] = None
    commits: int = 0
    changed_files: int = 0
    head_sha: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "number": self.number,
            "head": self.head,
            "base": self.base,
            "title": self.title,
            "state": self.state,
            "merged": self.merged,
            "mergeable": self.mergeable,
            "commits": self.commits,
            "changed_files": self.changed_files,
            "head_sha": self.head_sha,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PullRequest:
        """Create from dictionary."""
        return cls(**data)


@dataclass
class RateLimitSnapshot:
    """Remaining quota and the instant it resets."""
    remaining: int
    resets_at: datetime
    limit: Optional[int] = None

    @property
    def exhausted(self) -> bool:
        return self.remaining <= 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "remaining": self.remaining,
            "resets_at": format_timestamp(self.resets_at),
            "limit": self.limit,
        }


@dataclass
class Assignment:
    """
    Live binding of one ticket to one agent.

    The branch name is always recomputable from ``agent_id`` and
    ``ticket_id`` via branch_name().
    """
    ticket_id: int
    agent_id: str
    branch_name: str
    created_at: datetime = field(default_factory=utc_now)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "ticket_id": self.ticket_id,
            "agent_id": self.agent_id,
            "branch_name": self.branch_name,
            "created_at": format_timestamp(self.created_at),
            "warnings": list(self.warnings),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Assignment:
        """Create from dictionary."""
        return cls(
            ticket_id=int(data["ticket_id"]),
            agent_id=data["agent_id"],
            branch_name=data["branch_name"],
            created_at=parse_timestamp(data.get("created_at")) or utc_now(),
            warnings=list(data.get("warnings", [])),
        )


def slugify(title: str, max_length: int = BRANCH_SLUG_MAX_LENGTH) -> str:
    """
    Turn a ticket title into a branch-safe slug.

    Keeps lowercase alphanumerics, joins words with '-', truncates to
    ``max_length`` and strips a dangling hyphen.
    """
    cleaned = re.sub(r"[^a-z0-9 \-]", "", title.lower())
    words = [w for w in re.split(r"[\s\-]+", cleaned) if w]
    return "-".join(words)[:max_length].rstrip("-")


def branch_name(agent_id: str, ticket_id: int, title: str = "") -> str:
    """
    Derive the work branch for an assignment.

    Returns ``<agent>/<ticket>`` or ``<agent>/<ticket>-<slug>`` when a
    non-empty title is given. Pure: same inputs, same name.
    """
    slug = slugify(title) if title else ""
    if slug:
        return f"{agent_id}/{ticket_id}-{slug}"
    return f"{agent_id}/{ticket_id}"


class ModelEncoder(json.JSONEncoder):
    """JSON encoder that handles coordinator model types."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Enum):
            return obj.name
        if isinstance(obj, datetime):
            return format_timestamp(obj)
        if isinstance(obj, (set, frozenset)):
            return sorted(obj)
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        return super().default(obj)


def model_to_json(obj: Any, **kwargs: Any) -> str:
    """Serialize a model object to JSON string."""
    return json.dumps(obj, cls=ModelEncoder, **kwargs)
