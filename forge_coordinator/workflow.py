"""
Per-agent workflow state machine.

Tracks one ticket from assignment to merge. Every accepted event appends a
TransitionRecord; every rejected event raises IllegalTransition and leaves
state and history untouched.

┌──────────┐ AssignAgent ┌──────────┐ StartWork ┌────────────┐
│   IDLE   │ ──────────> │ ASSIGNED │ ────────> │ IN_PROGRESS│ <─┐ MakeProgress
└──────────┘ <────────── └──────────┘           └────────────┘ ──┘
                Release                           │   ▲
                              CompleteWork /      │   │ ReviewRejected
                              SubmitForReview     ▼   │
                                               ┌──────────────────┐
                                               │ READY_FOR_REVIEW │ <─┐ SubmitForReview
                                               └──────────────────┘ ──┘
                                                        │ Merged
                                                        ▼
                                                   ┌────────┐
                                                   │ MERGED │
                                                   └────────┘

Any state holding a ticket also accepts Abandon (-> ABANDONED), and
Timeout once the max_work_hours budget since assignment has elapsed.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Optional

from forge_coordinator.errors import IllegalTransition
from forge_coordinator.models import format_timestamp, parse_timestamp, utc_now

if TYPE_CHECKING:
    from forge_coordinator.logger import CoordinatorLogger


TIMEOUT_REASON = "timeout"


class WorkflowStateKind(Enum):
    """Tag of a WorkflowState."""
    IDLE = "idle"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    READY_FOR_REVIEW = "ready_for_review"
    MERGED = "merged"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowStateKind.MERGED, WorkflowStateKind.ABANDONED)


@dataclass(frozen=True)
class Workspace:
    branch: str
    dirty: bool = False
    ready: bool = True


@dataclass(frozen=True)
class Progress:
    commits: int = 0
    files_changed: int = 0


@dataclass(frozen=True)
class PrInfo:
    number: Optional[int]                      # None until a PR is opened
    branch: str
    commits: int = 0
    files_changed: int = 0


@dataclass(frozen=True)
class WorkflowState:
    """
    Tagged workflow state.

    Only the payload matching ``kind`` is set: ``workspace`` for ASSIGNED,
    ``progress`` for IN_PROGRESS, ``pr`` for READY_FOR_REVIEW, ``reason``
    for ABANDONED. Use the classmethod constructors.
    """
    kind: WorkflowStateKind
    ticket_id: Optional[int] = None
    workspace: Optional[Workspace] = None
    progress: Optional[Progress] = None
    pr: Optional[PrInfo] = None
    reason: Optional[str] = None

    @classmethod
    def idle(cls) -> WorkflowState:
        return cls(WorkflowStateKind.IDLE)

    @classmethod
    def assigned(cls, ticket_id: int, workspace: Workspace) -> WorkflowState:
        return cls(WorkflowStateKind.ASSIGNED, ticket_id, workspace=workspace)

    @classmethod
    def in_progress(cls, ticket_id: int, progress: Progress) -> WorkflowState:
        return cls(WorkflowStateKind.IN_PROGRESS, ticket_id, progress=progress)

    @classmethod
    def ready_for_review(cls, ticket_id: int, pr: PrInfo) -> WorkflowState:
        return cls(WorkflowStateKind.READY_FOR_REVIEW, ticket_id, pr=pr)

    @classmethod
    def merged(cls, ticket_id: int) -> WorkflowState:
        return cls(WorkflowStateKind.MERGED, ticket_id)

    @classmethod
    def abandoned(cls, ticket_id: Optional[int], reason: str) -> WorkflowState:
        return cls(WorkflowStateKind.ABANDONED, ticket_id, reason=reason)

    @property
    def is_terminal(self) -> bool:
        return self.kind.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "ticket_id": self.ticket_id,
            "workspace": vars(self.workspace) if self.workspace else None,
            "progress": vars(self.progress) if self.progress else None,
            "pr": vars(self.pr) if self.pr else None,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowState:
        return cls(
            kind=WorkflowStateKind(data["kind"]),
            ticket_id=data.get("ticket_id"),
            workspace=Workspace(**data["workspace"]) if data.get("workspace") else None,
            progress=Progress(**data["progress"]) if data.get("progress") else None,
            pr=PrInfo(**data["pr"]) if data.get("pr") else None,
            reason=data.get("reason"),
        )

    def __str__(self) -> str:
        if self.ticket_id is None:
            return self.kind.value
        if self.reason:
            return f"{self.kind.value}(#{self.ticket_id}, {self.reason})"
        return f"{self.kind.value}(#{self.ticket_id})"


# Events


@dataclass(frozen=True)
class WorkflowEvent:
    name: ClassVar[str] = "event"

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, **vars(self)}


@dataclass(frozen=True)
class AssignAgent(WorkflowEvent):
    name: ClassVar[str] = "AssignAgent"
    agent_id: str = ""
    ticket_id: int = 0
    branch: str = ""
    workspace_ready: bool = True


@dataclass(frozen=True)
class WorkspaceReady(WorkflowEvent):
    name: ClassVar[str] = "WorkspaceReady"


@dataclass(frozen=True)
class WorkspaceChanged(WorkflowEvent):
    name: ClassVar[str] = "WorkspaceChanged"
    dirty: bool = False


@dataclass(frozen=True)
class StartWork(WorkflowEvent):
    name: ClassVar[str] = "StartWork"


@dataclass(frozen=True)
class MakeProgress(WorkflowEvent):
    """Incremental progress; both counters are deltas and never negative."""
    name: ClassVar[str] = "MakeProgress"
    commits: int = 0
    files_changed: int = 0

    def __post_init__(self) -> None:
        if self.commits < 0 or self.files_changed < 0:
            raise ValueError("MakeProgress counters must not be negative")


@dataclass(frozen=True)
class CompleteWork(WorkflowEvent):
    name: ClassVar[str] = "CompleteWork"


@dataclass(frozen=True)
class SubmitForReview(WorkflowEvent):
    name: ClassVar[str] = "SubmitForReview"
    pr: Optional[PrInfo] = None

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "pr": vars(self.pr) if self.pr else None}


@dataclass(frozen=True)
class ReviewRejected(WorkflowEvent):
    name: ClassVar[str] = "ReviewRejected"


@dataclass(frozen=True)
class MergeCompleted(WorkflowEvent):
    name: ClassVar[str] = "Merged"


@dataclass(frozen=True)
class Abandon(WorkflowEvent):
    name: ClassVar[str] = "Abandon"
    reason: str = "abandoned"


@dataclass(frozen=True)
class Timeout(WorkflowEvent):
    name: ClassVar[str] = "Timeout"


@dataclass(frozen=True)
class Release(WorkflowEvent):
    name: ClassVar[str] = "Release"


@dataclass
class TransitionRecord:
    """One accepted state change."""
    from_state: WorkflowState
    to_state: WorkflowState
    event: str
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "from": self.from_state.to_dict(),
            "to": self.to_state.to_dict(),
            "event": self.event,
            "timestamp": format_timestamp(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransitionRecord:
        return cls(
            from_state=WorkflowState.from_dict(data["from"]),
            to_state=WorkflowState.from_dict(data["to"]),
            event=data["event"],
            timestamp=parse_timestamp(data.get("timestamp")) or utc_now(),
        )


@dataclass
class WorkflowStatus:
    """Status report surface of one state machine."""
    agent_id: str
    current_state: WorkflowState
    transitions_count: int
    uptime: timedelta
    can_continue: bool
    timeout_in: Optional[timedelta]

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "current_state": str(self.current_state),
            "transitions_count": self.transitions_count,
            "uptime_seconds": int(self.uptime.total_seconds()),
            "can_continue": self.can_continue,
            "timeout_in_seconds": (
                int(self.timeout_in.total_seconds()) if self.timeout_in is not None else None
            ),
        }


Clock = Callable[[], datetime]


class WorkflowStateMachine:
    """
    Workflow for one agent's session.

    Usage:
        machine = WorkflowStateMachine("agent001", max_work_hours=8)
        machine.transition(AssignAgent(agent_id="agent001", ticket_id=42, branch="agent001/42"))
        machine.transition(StartWork())
    """

    def __init__(
        self,
        agent_id: str,
        max_work_hours: float = 8,
        clock: Clock = utc_now,
        logger: Optional[CoordinatorLogger] = None,
    ) -> None:
        self.agent_id = agent_id
        self.max_work = timedelta(hours=max_work_hours)
        self._clock = clock
        self._logger = logger
        self.state = WorkflowState.idle()
        self.history: list[TransitionRecord] = []
        self.started_at = clock()
        self.assigned_at: Optional[datetime] = None

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    @property
    def ticket_id(self) -> Optional[int]:
        return self.state.ticket_id

    def deadline_passed(self) -> bool:
        if self.assigned_at is None:
            return False
        return self._clock() - self.assigned_at >= self.max_work

    def can_accept(self, event: WorkflowEvent) -> bool:
        try:
            self._next_state(event)
        except IllegalTransition:
            return False
        return True

    def transition(self, event: WorkflowEvent) -> WorkflowState:
        """
        Apply ``event``.

        Returns:
            The new state.

        Raises:
            IllegalTransition: The event is not valid in the current state.
        """
        new_state = self._next_state(event)
        record = TransitionRecord(
            from_state=self.state,
            to_state=new_state,
            event=event.name,
            timestamp=self._clock(),
        )
        self.history.append(record)
        if isinstance(event, AssignAgent):
            self.assigned_at = record.timestamp
        elif isinstance(event, Release):
            self.assigned_at = None
        self.state = new_state

        self._log("workflow_transition", {
            "from": str(record.from_state),
            "to": str(record.to_state),
            "event": event.name,
        })
        return new_state

    def _next_state(self, event: WorkflowEvent) -> WorkflowState:
        """Compute the successor state without mutating anything."""
        state = self.state
        kind = state.kind
        ticket = state.ticket_id

        if isinstance(event, AssignAgent) and kind == WorkflowStateKind.IDLE:
            if event.agent_id != self.agent_id:
                raise IllegalTransition(state, event)
            return WorkflowState.assigned(
                event.ticket_id,
                Workspace(branch=event.branch, ready=event.workspace_ready),
            )

        if isinstance(event, Release) and kind == WorkflowStateKind.ASSIGNED:
            return WorkflowState.idle()

        if isinstance(event, WorkspaceReady) and kind == WorkflowStateKind.ASSIGNED:
            return WorkflowState.assigned(ticket, replace(state.workspace, ready=True))

        if isinstance(event, WorkspaceChanged) and kind == WorkflowStateKind.ASSIGNED:
            return WorkflowState.assigned(ticket, replace(state.workspace, dirty=event.dirty))

        if (
            isinstance(event, StartWork)
            and kind == WorkflowStateKind.ASSIGNED
            and state.workspace is not None
            and state.workspace.ready
        ):
            return WorkflowState.in_progress(ticket, Progress())

        if isinstance(event, MakeProgress) and kind == WorkflowStateKind.IN_PROGRESS:
            progress = state.progress or Progress()
            return WorkflowState.in_progress(ticket, replace(
                progress,
                commits=progress.commits + event.commits,
                files_changed=progress.files_changed + event.files_changed,
            ))

        if isinstance(event, CompleteWork) and kind == WorkflowStateKind.IN_PROGRESS:
            progress = state.progress or Progress()
            return WorkflowState.ready_for_review(ticket, PrInfo(
                number=None,
                branch=self._branch_for(ticket),
                commits=progress.commits,
                files_changed=progress.files_changed,
            ))

        if isinstance(event, SubmitForReview) and kind in (
            WorkflowStateKind.IN_PROGRESS,
            WorkflowStateKind.READY_FOR_REVIEW,
        ):
            if event.pr is None:
                raise IllegalTransition(state, event)
            return WorkflowState.ready_for_review(ticket, event.pr)

        if isinstance(event, ReviewRejected) and kind == WorkflowStateKind.READY_FOR_REVIEW:
            pr = state.pr
            return WorkflowState.in_progress(ticket, Progress(
                commits=pr.commits if pr else 0,
                files_changed=pr.files_changed if pr else 0,
            ))

        if isinstance(event, MergeCompleted) and kind == WorkflowStateKind.READY_FOR_REVIEW:
            return WorkflowState.merged(ticket)

        holds_ticket = kind not in (WorkflowStateKind.IDLE,) and not kind.is_terminal
        if isinstance(event, Abandon) and holds_ticket:
            return WorkflowState.abandoned(ticket, event.reason)

        if isinstance(event, Timeout) and holds_ticket and self.deadline_passed():
            return WorkflowState.abandoned(ticket, TIMEOUT_REASON)

        raise IllegalTransition(state, event)

    def _branch_for(self, ticket_id: Optional[int]) -> str:
        # The branch recorded at assignment, carried through the history.
        for record in reversed(self.history):
            workspace = record.to_state.workspace
            if workspace is not None and record.to_state.ticket_id == ticket_id:
                return workspace.branch
        return f"{self.agent_id}/{ticket_id}"

    @property
    def branch(self) -> Optional[str]:
        if self.state.ticket_id is None:
            return None
        if self.state.workspace is not None:
            return self.state.workspace.branch
        if self.state.pr is not None:
            return self.state.pr.branch
        return self._branch_for(self.state.ticket_id)

    def can_continue(self) -> bool:
        return not self.state.is_terminal and not self.deadline_passed()

    def timeout_in(self) -> Optional[timedelta]:
        if self.assigned_at is None or self.state.is_terminal:
            return None
        remaining = self.max_work - (self._clock() - self.assigned_at)
        return max(remaining, timedelta(0))

    def status_report(self) -> WorkflowStatus:
        return WorkflowStatus(
            agent_id=self.agent_id,
            current_state=self.state,
            transitions_count=len(self.history),
            uptime=self._clock() - self.started_at,
            can_continue=self.can_continue(),
            timeout_in=self.timeout_in(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "state": self.state.to_dict(),
            "started_at": format_timestamp(self.started_at),
            "assigned_at": format_timestamp(self.assigned_at) if self.assigned_at else None,
            "history": [record.to_dict() for record in self.history],
        }

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        max_work_hours: float = 8,
        clock: Clock = utc_now,
        logger: Optional[CoordinatorLogger] = None,
    ) -> WorkflowStateMachine:
        machine = cls(data["agent_id"], max_work_hours=max_work_hours, clock=clock, logger=logger)
        machine.state = WorkflowState.from_dict(data["state"])
        machine.started_at = parse_timestamp(data.get("started_at")) or machine.started_at
        machine.assigned_at = parse_timestamp(data.get("assigned_at"))
        machine.history = [TransitionRecord.from_dict(r) for r in data.get("history", [])]
        return machine
