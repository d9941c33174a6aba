"""
Autonomous coordinator for one agent's session.

The coordinator drives a single agent from "no work" to "merged" without
human input:

1. Acquire work (resume an owned ticket after a restart, else pop_next)
2. Observe the forge each tick and translate what it sees into workflow
   events (branch ahead -> MakeProgress, open PR -> SubmitForReview,
   merged PR -> Merged, closed PR -> ReviewRejected)
3. Validate expected state against the forge on the drift cadence
4. Persist the session after every accepted transition
5. Release the ticket when the work is merged or abandoned

Failures of individual forge calls never end the session. They are
counted as recovery attempts; too many inside the recovery window, or a
drift that cannot be corrected automatically, escalate the session. An
escalated session takes no new work until resolve_escalation().
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Optional

from forge_coordinator.config import CoordinationConfig, DriftConfig
from forge_coordinator.drift import DriftDetector, DriftReport, ExpectedState
from forge_coordinator.errors import (
    ConflictError,
    Escalated,
    ForgeError,
    IllegalTransition,
    RetryBudgetExhausted,
    StateStoreError,
)
from forge_coordinator.gateway import ForgeGateway, PullRequestQuery
from forge_coordinator.models import Assignment, ForgeTarget, PullRequest, utc_now
from forge_coordinator.retry import RetryingGateway, RetryStats
from forge_coordinator.router import PopMode, Router
from forge_coordinator.state_store import AgentSnapshot, AgentStateStore
from forge_coordinator.workflow import (
    TIMEOUT_REASON,
    Abandon,
    AssignAgent,
    MakeProgress,
    MergeCompleted,
    PrInfo,
    ReviewRejected,
    StartWork,
    SubmitForReview,
    Timeout,
    WorkflowEvent,
    WorkflowState,
    WorkflowStateKind,
    WorkflowStateMachine,
    WorkflowStatus,
    WorkspaceReady,
)

if TYPE_CHECKING:
    from forge_coordinator.config import CoordinatorConfig
    from forge_coordinator.logger import CoordinatorLogger
    from forge_coordinator.workspace import WorkspaceProbe


# Per-call failures counted as recovery attempts.
RECOVERABLE_ERRORS = (ForgeError, RetryBudgetExhausted)

DEFAULT_TICK_SECONDS = 30.0


@dataclass
class CoordinatorStatus:
    """Status report of one coordinator, emitted on the monitoring cadence."""
    agent_id: str
    running: bool
    escalated: bool
    escalation_reason: Optional[str]
    workflow: WorkflowStatus
    drift: Optional[DriftReport]
    retry_stats: Optional[RetryStats]
    recovery_attempts: int
    last_error: Optional[str]
    assignment: Optional[Assignment]

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "running": self.running,
            "escalated": self.escalated,
            "escalation_reason": self.escalation_reason,
            "workflow": self.workflow.to_dict(),
            "drift": self.drift.to_dict() if self.drift else None,
            "retry_stats": self.retry_stats.to_dict() if self.retry_stats else None,
            "recovery_attempts": self.recovery_attempts,
            "last_error": self.last_error,
            "assignment": self.assignment.to_dict() if self.assignment else None,
        }


class AutonomousCoordinator:
    """
    Owns one agent's session.

    Usage:
        coordinator = AutonomousCoordinator.from_config("agent001", config, gateway, router)
        final_state = await coordinator.start()
    """

    def __init__(
        self,
        agent_id: str,
        router: Router,
        gateway: ForgeGateway,
        target: ForgeTarget,
        config: Optional[CoordinationConfig] = None,
        drift_config: Optional[DriftConfig] = None,
        base_branch: str = "main",
        store: Optional[AgentStateStore] = None,
        workspace: Optional[WorkspaceProbe] = None,
        logger: Optional[CoordinatorLogger] = None,
        clock: Callable[[], datetime] = utc_now,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
    ) -> None:
        if agent_id not in router.known_agents:
            raise ValueError(f"Unknown agent: {agent_id}")
        self.agent_id = agent_id
        self.router = router
        self.gateway = gateway
        self.target = target
        self.config = config or CoordinationConfig()
        self.base_branch = base_branch
        self.store = store
        self.tick_seconds = tick_seconds
        self._logger = logger
        self._clock = clock

        self.machine = self._new_machine()
        self.drift: Optional[DriftDetector] = None
        if self.config.enable_drift_detection:
            self.drift = DriftDetector(
                agent_id,
                gateway,
                target,
                config=drift_config or DriftConfig(
                    active_interval_minutes=self.config.drift_validation_interval_minutes
                ),
                workspace=workspace,
                aggressive_recovery=self.config.enable_aggressive_recovery,
                logger=logger,
                clock=clock,
            )

        self.assignment: Optional[Assignment] = None
        self.escalation: Optional[Escalated] = None
        self.recovery_attempts = 0
        self.last_error: Optional[str] = None

        self._failure_window_start: Optional[datetime] = None
        self._last_status_at: Optional[datetime] = None
        self._journaled = 0
        self._resume_pending = False
        self._owned_synced = False
        self._running = False
        self._stop_event: Optional[asyncio.Event] = None

    @classmethod
    def from_config(
        cls,
        agent_id: str,
        config: CoordinatorConfig,
        gateway: ForgeGateway,
        router: Router,
        workspace: Optional[WorkspaceProbe] = None,
        logger: Optional[CoordinatorLogger] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> AutonomousCoordinator:
        store = None
        if config.coordination.enable_state_persistence:
            store = AgentStateStore.from_config(config, logger=logger)
        return cls(
            agent_id,
            router,
            gateway,
            config.forge.target,
            config=config.coordination,
            drift_config=config.drift,
            base_branch=config.forge.base_branch,
            store=store,
            workspace=workspace,
            logger=logger,
            clock=clock,
        )

    def _new_machine(self) -> WorkflowStateMachine:
        return WorkflowStateMachine(
            self.agent_id,
            max_work_hours=self.config.max_work_hours,
            clock=self._clock,
            logger=self._logger,
        )

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    @property
    def state(self) -> WorkflowState:
        return self.machine.state

    @property
    def expected(self) -> Optional[ExpectedState]:
        return self.drift.expected if self.drift else None

    def is_running(self) -> bool:
        return self._running

    @property
    def escalated(self) -> bool:
        return self.escalation is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> WorkflowState:
        """
        Run the session loop until stopped, escalated, out of time, or done.

        Returns:
            The final workflow state.
        """
        if self._running:
            raise RuntimeError(f"Coordinator for {self.agent_id} is already running")
        self._running = True
        self._stop_event = asyncio.Event()
        if self.machine.state.is_terminal:
            self.machine = self._new_machine()
            self._journaled = 0
        self._log("coordinator_started", {
            "target": self.target.slug,
            "max_work_hours": self.config.max_work_hours,
        })

        try:
            await self.restore()
            while not self._stop_event.is_set():
                state = await self.step()
                if state.is_terminal or self.escalated or self._session_expired():
                    break
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.tick_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            await self._persist()
            self._log("coordinator_stopped", {
                "state": str(self.machine.state),
                "escalated": self.escalated,
            })
        return self.machine.state

    def stop(self) -> None:
        """Ask the loop to stop at its next suspension point."""
        if self._stop_event is not None:
            self._stop_event.set()
        self._log("coordinator_stop_requested", level="debug")

    def _session_expired(self) -> bool:
        # Idle sessions have no assignment deadline; bound them by the same budget.
        if self.machine.state.kind != WorkflowStateKind.IDLE:
            return False
        return self._clock() - self.machine.started_at >= self.machine.max_work

    async def restore(self) -> bool:
        """
        Resume from persisted state, if any.

        A snapshot with work in flight restores the state machine and
        re-registers the assignment with the router. A snapshot whose
        work is still assigned on the forge (after a timeout) makes the
        next acquisition look for already-owned tickets first.

        Returns:
            True when in-flight work was restored.
        """
        if self.store is None or not self.config.enable_state_persistence:
            return False
        snapshot = await self.store.load(self.agent_id)
        if snapshot is None:
            return False

        if snapshot.escalation:
            self.escalation = Escalated(
                snapshot.escalation.get("entity", self.agent_id),
                reason=snapshot.escalation.get("reason"),
            )

        machine = WorkflowStateMachine.from_dict(
            snapshot.workflow,
            max_work_hours=self.config.max_work_hours,
            clock=self._clock,
            logger=self._logger,
        )
        state = machine.state
        in_flight = state.kind != WorkflowStateKind.IDLE and not state.is_terminal

        if in_flight and snapshot.assignment is not None:
            if await self.router.adopt(snapshot.assignment):
                self.machine = machine
                self._journaled = len(machine.history)
                self.assignment = snapshot.assignment
                if self.drift is not None:
                    self.drift.expected = snapshot.expected_state
                self._log("session_restored", {
                    "state": str(state),
                    "ticket": snapshot.assignment.ticket_id,
                })
                return True
            self._log("session_restore_rejected", {
                "ticket": snapshot.assignment.ticket_id,
                "reason": "ticket held elsewhere or agent at capacity",
            }, level="warn")

        if snapshot.assignment is not None:
            self._resume_pending = True
        return False

    # ------------------------------------------------------------------
    # One iteration
    # ------------------------------------------------------------------

    async def step(self) -> WorkflowState:
        """Perform exactly one loop iteration and return the resulting state."""
        now = self._clock()
        try:
            await self._advance()
        except RECOVERABLE_ERRORS as e:
            await self._record_failure(e)
        else:
            self._record_success()

        if self.drift is not None and self.drift.should_validate(now):
            await self._run_drift_pass()

        self._maybe_emit_status(now)
        return self.machine.state

    async def _advance(self) -> None:
        state = self.machine.state
        if state.is_terminal or self.escalated:
            return

        if state.kind != WorkflowStateKind.IDLE and self.machine.deadline_passed():
            await self._apply(Timeout())
            await self._finish()
            return

        if state.kind == WorkflowStateKind.IDLE:
            await self.acquire()
            return

        if state.kind == WorkflowStateKind.ASSIGNED:
            if state.workspace is not None and not state.workspace.ready:
                await self._prepare_branch()
            await self._apply(StartWork())
            return

        await self._observe_forge()
        if self.machine.state.is_terminal:
            await self._finish()

    async def acquire(self) -> Optional[Assignment]:
        """
        Take work for this agent.

        Raises:
            Escalated: The session is escalated and may not take new work.
            ForgeError / RetryBudgetExhausted: Listing tickets failed.
        """
        if self.escalation is not None:
            raise self.escalation
        if self.machine.state.kind != WorkflowStateKind.IDLE:
            return self.assignment

        if not self._owned_synced:
            # Tickets taken by an earlier process count against capacity.
            if await self.router.sync_owned(self.agent_id):
                self._resume_pending = True
            self._owned_synced = True

        assignment = None
        redelivered = False
        if self._resume_pending:
            assignment = await self.router.pop_next_for(self.agent_id, PopMode.ASSIGNED_TO_ME)
            self._resume_pending = False
            redelivered = assignment is not None
        if assignment is None:
            assignment = await self.router.pop_next(self.agent_id)
        if assignment is None:
            return None

        if redelivered:
            ready = await self.gateway.branch_exists(self.target, assignment.branch_name)
        else:
            ready = not assignment.warnings
        self.assignment = assignment
        await self._apply(AssignAgent(
            agent_id=self.agent_id,
            ticket_id=assignment.ticket_id,
            branch=assignment.branch_name,
            workspace_ready=ready,
        ))
        return assignment

    async def _prepare_branch(self) -> None:
        branch = self.machine.branch
        if not await self.gateway.branch_exists(self.target, branch):
            try:
                await self.gateway.create_branch(self.target, branch, self.base_branch)
            except ConflictError:
                self._log("branch_already_exists", {"branch": branch}, level="debug")
        await self._apply(WorkspaceReady())

    async def _observe_forge(self) -> None:
        """Translate forge observations into workflow events."""
        state = self.machine.state
        branch = self.machine.branch
        prs = await self.gateway.list_pull_requests(
            self.target, PullRequestQuery(state="all", head=branch)
        )
        open_pr = _first(pr for pr in prs if pr.head == branch and pr.state == "open")

        if state.kind == WorkflowStateKind.IN_PROGRESS:
            _, ahead = await self.gateway.compare_branch(self.target, branch, self.base_branch)
            progress = state.progress
            if progress is not None and ahead > progress.commits:
                await self._apply(MakeProgress(commits=ahead - progress.commits))
            if open_pr is not None:
                await self._apply(SubmitForReview(pr=self._pr_info(open_pr, branch)))
            # A merged PR seen here was not expected; the drift pass escalates it.
            return

        if state.kind == WorkflowStateKind.READY_FOR_REVIEW:
            number = state.pr.number if state.pr else None
            if number is None:
                await self._adopt_branch_pr(prs, open_pr, branch)
                return
            pr = await self.gateway.get_pr(self.target, number)
            if pr.merged:
                await self._apply(MergeCompleted())
            elif pr.state == "closed":
                await self._apply(ReviewRejected())

    async def _adopt_branch_pr(
        self, prs: list[PullRequest], open_pr: Optional[PullRequest], branch: str
    ) -> None:
        """
        Attach the branch's PR to a review that has none yet.

        The PR may already be merged or closed by the time a tick sees it;
        the review outcome is applied right after the submission. Closed
        PRs that already drove a transition are ignored.
        """
        ours = [pr for pr in prs if pr.head == branch]
        pr = (
            open_pr
            or _first(p for p in ours if p.merged)
            or _first(p for p in ours if p.state == "closed" and not self._pr_seen(p.number))
        )
        if pr is None:
            return
        if not await self._apply(SubmitForReview(pr=self._pr_info(pr, branch))):
            return
        if pr.merged:
            await self._apply(MergeCompleted())
        elif pr.state == "closed":
            await self._apply(ReviewRejected())

    def _pr_seen(self, number: int) -> bool:
        return any(
            record.to_state.pr is not None and record.to_state.pr.number == number
            for record in self.machine.history
        )

    def _pr_info(self, pr: PullRequest, branch: str) -> PrInfo:
        progress = self.machine.state.progress
        commits = progress.commits if progress else 0
        return PrInfo(
            number=pr.number,
            branch=branch,
            commits=max(pr.commits, commits),
            files_changed=pr.changed_files,
        )

    async def _apply(self, event: WorkflowEvent) -> bool:
        try:
            self.machine.transition(event)
        except IllegalTransition as e:
            self._log("transition_rejected", {"event": event.name, "error": str(e)}, level="warn")
            return False
        if self.drift is not None:
            self.drift.expected.observe_transition(
                self.machine.state, self.agent_id, self.machine.branch, self.base_branch
            )
        await self._persist()
        return True

    async def _finish(self) -> None:
        """Settle the assignment once the workflow reached a terminal state."""
        state = self.machine.state
        ticket_id = state.ticket_id
        if ticket_id is None:
            return
        if state.kind == WorkflowStateKind.ABANDONED and state.reason == TIMEOUT_REASON:
            # The forge keeps the assignment so a restart picks the work up again.
            await self.router.detach(self.agent_id, ticket_id)
            self._log("work_timed_out", {"ticket": ticket_id}, level="warn")
        else:
            await self.router.release(self.agent_id, ticket_id)
            self.assignment = None
            self._log("work_finished", {"ticket": ticket_id, "state": state.kind.value})
        await self._persist()

    async def abandon(self, reason: str = "abandoned") -> bool:
        """Give up the current ticket and release it."""
        if not await self._apply(Abandon(reason=reason)):
            return False
        await self._finish()
        return True

    # ------------------------------------------------------------------
    # Drift, recovery and escalation
    # ------------------------------------------------------------------

    async def _run_drift_pass(self) -> None:
        result = await self.drift.validate()
        if result.errors:
            await self._record_failure(result.errors[0])
        for correction in result.escalations:
            await self._escalate(Escalated(correction.drift.entity, correction.drift))
            break

    async def _record_failure(self, error: Any) -> None:
        now = self._clock()
        window = timedelta(minutes=self.config.recovery_timeout_minutes)
        if self._failure_window_start is None or now - self._failure_window_start > window:
            self._failure_window_start = now
            self.recovery_attempts = 0
        self.recovery_attempts += 1

        if isinstance(error, Exception):
            self.last_error = f"{type(error).__name__}: {error}"
        else:
            self.last_error = str(error)
        self._log("recovery_attempt", {
            "attempt": self.recovery_attempts,
            "max_attempts": self.config.max_recovery_attempts,
            "error": self.last_error,
        }, level="warn")

        if self.recovery_attempts >= self.config.max_recovery_attempts:
            await self._escalate(Escalated(
                self.agent_id,
                reason=f"{self.recovery_attempts} failed recovery attempts",
            ))

    def _record_success(self) -> None:
        self.recovery_attempts = 0
        self._failure_window_start = None

    async def _escalate(self, escalation: Escalated) -> None:
        if self.escalation is not None:
            return
        self.escalation = escalation
        self._log("session_escalated", {
            "entity": escalation.entity,
            "reason": escalation.reason,
            "drift": escalation.drift.to_dict() if escalation.drift else None,
        }, level="error")
        await self._persist()

    async def resolve_escalation(self, abandon_work: bool = False) -> bool:
        """
        Clear an escalation after an operator dealt with it.

        Args:
            abandon_work: Also abandon and release the current ticket.

        Returns:
            False when the session was not escalated.
        """
        if self.escalation is None:
            return False
        resolved = self.escalation
        self.escalation = None
        self._record_success()
        if self.drift is not None:
            self.drift.acknowledge_escalations()
        self._log("escalation_resolved", {
            "entity": resolved.entity,
            "reason": resolved.reason,
            "abandon_work": abandon_work,
        })
        if abandon_work and self.machine.state.ticket_id is not None:
            await self.abandon(reason=f"operator: {resolved.reason}")
        else:
            await self._persist()
        return True

    # ------------------------------------------------------------------
    # Status and persistence
    # ------------------------------------------------------------------

    def status(self) -> CoordinatorStatus:
        retry_stats = self.gateway.stats if isinstance(self.gateway, RetryingGateway) else None
        return CoordinatorStatus(
            agent_id=self.agent_id,
            running=self._running,
            escalated=self.escalated,
            escalation_reason=self.escalation.reason if self.escalation else None,
            workflow=self.machine.status_report(),
            drift=self.drift.report() if self.drift else None,
            retry_stats=retry_stats,
            recovery_attempts=self.recovery_attempts,
            last_error=self.last_error or self.router.last_error,
            assignment=self.assignment,
        )

    def _maybe_emit_status(self, now: datetime) -> None:
        interval = timedelta(minutes=self.config.monitoring_interval_minutes)
        if self._last_status_at is not None and now - self._last_status_at < interval:
            return
        self._last_status_at = now
        self._log("coordinator_status", self.status().to_dict())

    def snapshot(self) -> AgentSnapshot:
        escalation = None
        if self.escalation is not None:
            escalation = {"entity": self.escalation.entity, "reason": self.escalation.reason}
        return AgentSnapshot(
            agent_id=self.agent_id,
            target=self.target,
            workflow=self.machine.to_dict(),
            expected_state=self.drift.expected if self.drift else ExpectedState(),
            assignment=self.assignment,
            escalation=escalation,
        )

    async def _persist(self) -> None:
        if self.store is None or not self.config.enable_state_persistence:
            return
        try:
            for record in self.machine.history[self._journaled:]:
                await self.store.append_transition(self.agent_id, record)
            self._journaled = len(self.machine.history)
            await self.store.save(self.snapshot())
        except StateStoreError as e:
            self.last_error = str(e)
            self._log("state_persist_failed", {"error": str(e)}, level="error")


def _first(items: Any) -> Optional[Any]:
    return next(iter(items), None)
