"""
State drift detection and correction.

This module handles:
- ExpectedState, the coordinator's shadow of what the forge should show
- Comparing that shadow against observed forge and workspace state
- Classifying each divergence by kind and severity
- Picking and applying a correction proportional to severity

Correction by severity:
- MINOR     -> UPDATE_LOCAL_STATE (the forge is authoritative)
- MODERATE  -> SYNCHRONIZE_WITH_FORGE (re-apply what we believed in effect)
- CRITICAL  -> CREATE_ESCALATION_TICKET / REQUIRE_MANUAL_INTERVENTION

The corrector only writes to the ticket this coordinator holds and to the
escalation tickets it creates itself.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Any, Callable, Optional

from forge_coordinator.errors import ForgeError, NotFoundError, RetryBudgetExhausted
from forge_coordinator.gateway import ForgeGateway, PullRequestQuery
from forge_coordinator.models import ForgeTarget, format_timestamp, utc_now
from forge_coordinator.workflow import WorkflowState, WorkflowStateKind
from forge_coordinator.workspace import WorkspaceError, WorkspaceProbe

if TYPE_CHECKING:
    from forge_coordinator.config import DriftConfig
    from forge_coordinator.logger import CoordinatorLogger


ESCALATION_LABELS = ("drift-detection", "autonomous-agent")

OBSERVATION_ERRORS = (ForgeError, RetryBudgetExhausted, WorkspaceError)


class DriftKind(Enum):
    TICKET_CLOSED_UNEXPECTEDLY = "ticket_closed_unexpectedly"
    TICKET_ASSIGNEE_CHANGED = "ticket_assignee_changed"
    LABELS_CHANGED = "labels_changed"
    BRANCH_DELETED = "branch_deleted"
    BRANCH_DIVERGED = "branch_diverged"
    PR_MERGED_UNEXPECTEDLY = "pr_merged_unexpectedly"
    WORKSPACE_DIRTY = "workspace_dirty"
    GIT_HEAD_MISMATCH = "git_head_mismatch"


# Never auto-corrected.
ALWAYS_CRITICAL = frozenset({
    DriftKind.TICKET_CLOSED_UNEXPECTEDLY,
    DriftKind.BRANCH_DELETED,
    DriftKind.PR_MERGED_UNEXPECTEDLY,
    DriftKind.GIT_HEAD_MISMATCH,
})


class DriftSeverity(IntEnum):
    MINOR = 1
    MODERATE = 2
    CRITICAL = 3


class CorrectionKind(Enum):
    UPDATE_LOCAL_STATE = "update_local_state"
    SYNCHRONIZE_WITH_FORGE = "synchronize_with_forge"
    DOCUMENT_AND_CONTINUE = "document_and_continue"
    CREATE_ESCALATION_TICKET = "create_escalation_ticket"
    REQUIRE_MANUAL_INTERVENTION = "require_manual_intervention"

    @property
    def escalates(self) -> bool:
        return self in (
            CorrectionKind.CREATE_ESCALATION_TICKET,
            CorrectionKind.REQUIRE_MANUAL_INTERVENTION,
        )


class ValidationHealth(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


# ============================================================================
# Expected state ledger
# ============================================================================


@dataclass
class TicketExpectation:
    ticket_id: int
    agent_id: str
    open: bool = True
    assigned: bool = True
    agent_label: bool = True
    labels: Optional[frozenset[str]] = None    # Last acknowledged label set

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticket_id": self.ticket_id,
            "agent_id": self.agent_id,
            "open": self.open,
            "assigned": self.assigned,
            "agent_label": self.agent_label,
            "labels": sorted(self.labels) if self.labels is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TicketExpectation:
        labels = data.get("labels")
        return cls(
            ticket_id=int(data["ticket_id"]),
            agent_id=data["agent_id"],
            open=data.get("open", True),
            assigned=data.get("assigned", True),
            agent_label=data.get("agent_label", True),
            labels=frozenset(labels) if labels is not None else None,
        )


@dataclass
class BranchExpectation:
    name: str
    base: str = "main"
    exists: bool = True
    acknowledged_behind: int = 0

    def to_dict(self) -> dict[str, Any]:
        return dict(vars(self))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BranchExpectation:
        return cls(**data)


@dataclass
class PrExpectation:
    number: int
    merge_expected: bool = False

    def to_dict(self) -> dict[str, Any]:
        return dict(vars(self))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PrExpectation:
        return cls(**data)


@dataclass
class WorkspaceExpectation:
    branch: str
    dirty: bool = False

    def to_dict(self) -> dict[str, Any]:
        return dict(vars(self))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkspaceExpectation:
        return cls(**data)


@dataclass
class ExpectedState:
    """What the coordinator believes the forge and workspace should show."""
    ticket: Optional[TicketExpectation] = None
    branch: Optional[BranchExpectation] = None
    pr: Optional[PrExpectation] = None
    workspace: Optional[WorkspaceExpectation] = None
    workflow_kind: WorkflowStateKind = WorkflowStateKind.IDLE

    @property
    def is_empty(self) -> bool:
        return self.ticket is None and self.branch is None and self.pr is None

    def clear(self) -> None:
        self.ticket = None
        self.branch = None
        self.pr = None
        self.workspace = None
        self.workflow_kind = WorkflowStateKind.IDLE

    def observe_transition(
        self,
        state: WorkflowState,
        agent_id: str,
        branch: Optional[str],
        base_branch: str = "main",
    ) -> None:
        """Update the shadow after the workflow moved to ``state``."""
        if state.kind == WorkflowStateKind.IDLE or state.is_terminal:
            self.clear()
            self.workflow_kind = state.kind
            return

        self.workflow_kind = state.kind
        ticket_id = state.ticket_id
        if self.ticket is None or self.ticket.ticket_id != ticket_id:
            self.ticket = TicketExpectation(ticket_id=ticket_id, agent_id=agent_id)
            self.pr = None
        if branch and (self.branch is None or self.branch.name != branch):
            self.branch = BranchExpectation(name=branch, base=base_branch)
        if self.branch is not None and state.workspace is not None:
            self.branch.exists = state.workspace.ready

        # The local checkout only has to match once work has started.
        if state.kind == WorkflowStateKind.ASSIGNED:
            self.workspace = None
        elif branch and (self.workspace is None or self.workspace.branch != branch):
            self.workspace = WorkspaceExpectation(branch=branch)

        if state.kind == WorkflowStateKind.READY_FOR_REVIEW and state.pr and state.pr.number:
            self.pr = PrExpectation(number=state.pr.number, merge_expected=True)
        elif self.pr is not None:
            self.pr = replace(self.pr, merge_expected=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticket": self.ticket.to_dict() if self.ticket else None,
            "branch": self.branch.to_dict() if self.branch else None,
            "pr": self.pr.to_dict() if self.pr else None,
            "workspace": self.workspace.to_dict() if self.workspace else None,
            "workflow_kind": self.workflow_kind.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExpectedState:
        return cls(
            ticket=TicketExpectation.from_dict(data["ticket"]) if data.get("ticket") else None,
            branch=BranchExpectation.from_dict(data["branch"]) if data.get("branch") else None,
            pr=PrExpectation.from_dict(data["pr"]) if data.get("pr") else None,
            workspace=(
                WorkspaceExpectation.from_dict(data["workspace"]) if data.get("workspace") else None
            ),
            workflow_kind=WorkflowStateKind(data.get("workflow_kind", "idle")),
        )


# ============================================================================
# Drifts and corrections
# ============================================================================


@dataclass
class Drift:
    kind: DriftKind
    entity: str
    severity: DriftSeverity
    details: dict[str, Any] = field(default_factory=dict)
    detected_at: datetime = field(default_factory=utc_now)
    resolved: bool = False

    @property
    def key(self) -> tuple[DriftKind, str]:
        return (self.kind, self.entity)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "entity": self.entity,
            "severity": self.severity.name,
            "details": self.details,
            "detected_at": format_timestamp(self.detected_at),
            "resolved": self.resolved,
        }


@dataclass
class Correction:
    kind: CorrectionKind
    drift: Drift
    applied: bool = False
    error: Optional[str] = None
    escalation_ticket: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "drift": self.drift.to_dict(),
            "applied": self.applied,
            "error": self.error,
            "escalation_ticket": self.escalation_ticket,
        }


@dataclass
class ValidationPass:
    """Outcome of one validation pass."""
    started_at: datetime
    drifts: list[Drift] = field(default_factory=list)
    corrections: list[Correction] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def escalations(self) -> list[Correction]:
        return [c for c in self.corrections if c.kind.escalates]


@dataclass
class DriftReport:
    agent_id: str
    total_drifts: int
    critical_drifts: int
    validation_health: ValidationHealth
    last_validation: Optional[datetime]
    next_validation: Optional[datetime]

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "total_drifts": self.total_drifts,
            "critical_drifts": self.critical_drifts,
            "validation_health": self.validation_health.value,
            "last_validation": format_timestamp(self.last_validation) if self.last_validation else None,
            "next_validation": format_timestamp(self.next_validation) if self.next_validation else None,
        }


def choose_correction(drift: Drift, aggressive: bool = False) -> CorrectionKind:
    """Pick the correction for a drift from its kind and severity."""
    if drift.kind in ALWAYS_CRITICAL or drift.severity == DriftSeverity.CRITICAL:
        if drift.kind in (DriftKind.BRANCH_DELETED, DriftKind.TICKET_ASSIGNEE_CHANGED):
            return CorrectionKind.CREATE_ESCALATION_TICKET
        return CorrectionKind.REQUIRE_MANUAL_INTERVENTION

    if drift.kind == DriftKind.BRANCH_DIVERGED:
        # Rebasing is the agent's job; no forge write fixes divergence.
        return CorrectionKind.DOCUMENT_AND_CONTINUE

    if drift.severity == DriftSeverity.MINOR:
        return CorrectionKind.UPDATE_LOCAL_STATE

    if drift.kind == DriftKind.LABELS_CHANGED:
        return CorrectionKind.SYNCHRONIZE_WITH_FORGE
    if drift.kind == DriftKind.TICKET_ASSIGNEE_CHANGED and aggressive:
        return CorrectionKind.SYNCHRONIZE_WITH_FORGE
    return CorrectionKind.DOCUMENT_AND_CONTINUE


# ============================================================================
# Detector
# ============================================================================


class DriftDetector:
    """
    Validates one agent's ExpectedState against the forge and corrects drift.

    Usage:
        detector = DriftDetector("agent001", gateway, target, drift_config)
        detector.expected.observe_transition(machine.state, "agent001", machine.branch)
        if detector.should_validate(machine.state):
            result = await detector.validate()
    """

    def __init__(
        self,
        agent_id: str,
        gateway: ForgeGateway,
        target: ForgeTarget,
        config: Optional[DriftConfig] = None,
        workspace: Optional[WorkspaceProbe] = None,
        aggressive_recovery: bool = False,
        logger: Optional[CoordinatorLogger] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.agent_id = agent_id
        self.gateway = gateway
        self.target = target
        self.active_interval = timedelta(minutes=config.active_interval_minutes if config else 5)
        self.idle_interval = timedelta(minutes=config.idle_interval_minutes if config else 30)
        self.max_commits_behind = config.max_commits_behind if config else 10
        self.workspace = workspace
        self.aggressive_recovery = aggressive_recovery
        self._logger = logger
        self._clock = clock

        self.expected = ExpectedState()
        self.drifts: list[Drift] = []
        self.last_validation: Optional[datetime] = None
        self.last_errors: list[str] = []

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    # Cadence

    def interval_for(self, kind: WorkflowStateKind) -> timedelta:
        if kind == WorkflowStateKind.IDLE or kind.is_terminal:
            return self.idle_interval
        return self.active_interval

    def next_validation(self) -> Optional[datetime]:
        if self.last_validation is None:
            return None
        return self.last_validation + self.interval_for(self.expected.workflow_kind)

    def should_validate(self, now: Optional[datetime] = None) -> bool:
        if self.expected.is_empty:
            return False
        due = self.next_validation()
        return due is None or (now or self._clock()) >= due

    # Reporting

    def unresolved(self) -> list[Drift]:
        return [d for d in self.drifts if not d.resolved]

    def health(self) -> ValidationHealth:
        open_drifts = self.unresolved()
        if any(d.severity == DriftSeverity.CRITICAL for d in open_drifts):
            return ValidationHealth.UNHEALTHY
        if open_drifts or self.last_errors:
            return ValidationHealth.DEGRADED
        return ValidationHealth.HEALTHY

    def report(self) -> DriftReport:
        return DriftReport(
            agent_id=self.agent_id,
            total_drifts=len(self.drifts),
            critical_drifts=sum(1 for d in self.drifts if d.severity == DriftSeverity.CRITICAL),
            validation_health=self.health(),
            last_validation=self.last_validation,
            next_validation=self.next_validation(),
        )

    def acknowledge_escalations(self) -> int:
        """Mark escalated drifts resolved after an operator dealt with them."""
        count = 0
        for drift in self.drifts:
            if not drift.resolved:
                drift.resolved = True
                count += 1
        return count

    # Validation

    async def validate(self) -> ValidationPass:
        """
        Run one validation pass: purge, observe, classify, correct.

        Observation failures are recorded on the pass and degrade health;
        they never raise.
        """
        now = self._clock()
        self.drifts = [d for d in self.drifts if not d.resolved]
        result = ValidationPass(started_at=now)

        detected = await self._detect(result)
        known = {d.key for d in self.drifts}
        for drift in detected:
            if drift.key in known:
                # Already escalated and awaiting an operator.
                continue
            self.drifts.append(drift)
            result.drifts.append(drift)
            self._log("drift_detected", drift.to_dict(), level=(
                "error" if drift.severity == DriftSeverity.CRITICAL else "warn"
            ))
            correction = await self._correct(drift)
            result.corrections.append(correction)

        self.last_validation = now
        self.last_errors = list(result.errors)
        self._log("drift_validation_complete", {
            "drifts": len(result.drifts),
            "escalations": len(result.escalations),
            "errors": result.errors,
            "health": self.health().value,
        })
        return result

    async def _detect(self, result: ValidationPass) -> list[Drift]:
        drifts: list[Drift] = []
        expected = self.expected
        ticket_closed = False

        if expected.ticket is not None:
            try:
                ticket_drifts = await self._check_ticket(expected.ticket)
            except OBSERVATION_ERRORS as e:
                result.errors.append(f"ticket #{expected.ticket.ticket_id}: {e}")
            else:
                drifts.extend(ticket_drifts)
                ticket_closed = any(
                    d.kind == DriftKind.TICKET_CLOSED_UNEXPECTEDLY for d in ticket_drifts
                )

        if expected.branch is not None and not ticket_closed:
            try:
                drifts.extend(await self._check_branch(expected.branch))
            except OBSERVATION_ERRORS as e:
                result.errors.append(f"branch {expected.branch.name}: {e}")

        if expected.branch is not None or expected.pr is not None:
            try:
                drifts.extend(await self._check_pr())
            except OBSERVATION_ERRORS as e:
                result.errors.append(f"pull request: {e}")

        if self.workspace is not None and expected.workspace is not None:
            try:
                drifts.extend(await self._check_workspace(expected.workspace))
            except OBSERVATION_ERRORS as e:
                result.errors.append(f"workspace: {e}")

        return drifts

    async def _check_ticket(self, expected: TicketExpectation) -> list[Drift]:
        entity = f"#{expected.ticket_id}"
        try:
            ticket = await self.gateway.get_ticket(self.target, expected.ticket_id)
        except NotFoundError:
            return [Drift(
                DriftKind.TICKET_CLOSED_UNEXPECTEDLY, entity, DriftSeverity.CRITICAL,
                {"deleted": True},
            )]

        if expected.open and not ticket.is_open:
            return [Drift(
                DriftKind.TICKET_CLOSED_UNEXPECTEDLY, entity, DriftSeverity.CRITICAL,
                {"status": ticket.status.value},
            )]

        drifts: list[Drift] = []
        others = sorted(ticket.assignees - {self.agent_id})
        if expected.assigned and (others or self.agent_id not in ticket.assignees):
            severity = DriftSeverity.CRITICAL if others else DriftSeverity.MODERATE
            drifts.append(Drift(
                DriftKind.TICKET_ASSIGNEE_CHANGED, entity, severity,
                {"assignees": sorted(ticket.assignees), "expected": self.agent_id},
            ))

        has_agent_label = self.agent_id in ticket.labels
        labels = frozenset(ticket.labels)
        if has_agent_label != expected.agent_label:
            drifts.append(Drift(
                DriftKind.LABELS_CHANGED, entity, DriftSeverity.MODERATE,
                {"label": self.agent_id, "present": has_agent_label},
            ))
        elif expected.labels is None:
            expected.labels = labels
        elif labels != expected.labels:
            drifts.append(Drift(
                DriftKind.LABELS_CHANGED, entity, DriftSeverity.MINOR,
                {
                    "added": sorted(labels - expected.labels),
                    "removed": sorted(expected.labels - labels),
                    "observed": sorted(labels),
                },
            ))
        return drifts

    async def _check_branch(self, expected: BranchExpectation) -> list[Drift]:
        if not expected.exists:
            return []
        if not await self.gateway.branch_exists(self.target, expected.name):
            return [Drift(DriftKind.BRANCH_DELETED, expected.name, DriftSeverity.CRITICAL)]

        behind, ahead = await self.gateway.compare_branch(self.target, expected.name, expected.base)
        if behind <= expected.acknowledged_behind:
            return []
        severity = (
            DriftSeverity.MODERATE if behind > self.max_commits_behind else DriftSeverity.MINOR
        )
        return [Drift(
            DriftKind.BRANCH_DIVERGED, expected.name, severity,
            {"behind": behind, "ahead": ahead},
        )]

    async def _check_pr(self) -> list[Drift]:
        expected = self.expected
        if expected.pr is not None:
            pr = await self.gateway.get_pr(self.target, expected.pr.number)
            if pr.merged and not expected.pr.merge_expected:
                return [Drift(
                    DriftKind.PR_MERGED_UNEXPECTEDLY, f"PR #{pr.number}", DriftSeverity.CRITICAL,
                    {"branch": pr.head},
                )]
            return []

        if expected.workflow_kind == WorkflowStateKind.READY_FOR_REVIEW or expected.branch is None:
            return []
        prs = await self.gateway.list_pull_requests(
            self.target, PullRequestQuery(state="all", head=expected.branch.name)
        )
        for pr in prs:
            if pr.merged and pr.head == expected.branch.name:
                return [Drift(
                    DriftKind.PR_MERGED_UNEXPECTEDLY, f"PR #{pr.number}", DriftSeverity.CRITICAL,
                    {"branch": pr.head, "workflow": expected.workflow_kind.value},
                )]
        return []

    async def _check_workspace(self, expected: WorkspaceExpectation) -> list[Drift]:
        observation = await self.workspace.observe()
        if observation.branch != expected.branch:
            return [Drift(
                DriftKind.GIT_HEAD_MISMATCH, "workspace", DriftSeverity.CRITICAL,
                {"expected": expected.branch, "actual": observation.branch},
            )]
        if observation.dirty != expected.dirty:
            return [Drift(
                DriftKind.WORKSPACE_DIRTY, "workspace", DriftSeverity.MINOR,
                {"dirty": observation.dirty, "files": list(observation.modified_files[:20])},
            )]
        return []

    # Correction

    async def _correct(self, drift: Drift) -> Correction:
        kind = choose_correction(drift, self.aggressive_recovery)
        correction = Correction(kind=kind, drift=drift)
        try:
            if kind in (CorrectionKind.UPDATE_LOCAL_STATE, CorrectionKind.DOCUMENT_AND_CONTINUE):
                self._update_local(drift)
            elif kind == CorrectionKind.SYNCHRONIZE_WITH_FORGE:
                await self._synchronize(drift)
            elif kind == CorrectionKind.CREATE_ESCALATION_TICKET:
                ticket = await self.gateway.create_ticket(
                    self.target,
                    title=f"Drift: {drift.kind.value} on {drift.entity} ({self.agent_id})",
                    body=self._escalation_body(drift),
                    labels=[*ESCALATION_LABELS, f"severity-{drift.severity.name.lower()}"],
                )
                correction.escalation_ticket = ticket.id
        except OBSERVATION_ERRORS as e:
            correction.error = str(e)
            self._log("drift_correction_failed", correction.to_dict(), level="error")
            return correction

        correction.applied = True
        # Escalations stay open until an operator acknowledges them.
        drift.resolved = not kind.escalates
        self._log("drift_corrected", correction.to_dict(), level=(
            "error" if kind.escalates else "info"
        ))
        return correction

    def _update_local(self, drift: Drift) -> None:
        expected = self.expected
        if drift.kind == DriftKind.LABELS_CHANGED and expected.ticket is not None:
            expected.ticket.labels = frozenset(drift.details.get("observed", []))
        elif drift.kind == DriftKind.BRANCH_DIVERGED and expected.branch is not None:
            expected.branch.acknowledged_behind = int(drift.details.get("behind", 0))
        elif drift.kind == DriftKind.WORKSPACE_DIRTY and expected.workspace is not None:
            expected.workspace.dirty = bool(drift.details.get("dirty"))

    async def _synchronize(self, drift: Drift) -> None:
        ticket = self.expected.ticket
        if ticket is None:
            raise NotFoundError("no owned ticket to synchronize", entity=drift.entity)
        if drift.kind == DriftKind.LABELS_CHANGED:
            if ticket.agent_label:
                await self.gateway.add_label(self.target, ticket.ticket_id, self.agent_id)
            else:
                await self.gateway.remove_label(self.target, ticket.ticket_id, self.agent_id)
            # The label snapshot is re-taken on the next pass.
            ticket.labels = None
        elif drift.kind == DriftKind.TICKET_ASSIGNEE_CHANGED:
            await self.gateway.assign_ticket(self.target, ticket.ticket_id, self.agent_id)

    def _escalation_body(self, drift: Drift) -> str:
        lines = [
            f"Agent `{self.agent_id}` detected state drift on `{self.target.slug}`.",
            "",
            f"- Kind: {drift.kind.value}",
            f"- Entity: {drift.entity}",
            f"- Severity: {drift.severity.name}",
            f"- Detected at: {format_timestamp(drift.detected_at)}",
        ]
        if self.expected.ticket is not None:
            lines.append(f"- Ticket: #{self.expected.ticket.ticket_id}")
        if self.expected.branch is not None:
            lines.append(f"- Branch: `{self.expected.branch.name}`")
        for key, value in sorted(drift.details.items()):
            lines.append(f"- {key}: {value}")
        lines += ["", "The agent has stopped taking new work until this is resolved."]
        return "\n".join(lines)
