"""Tests for the autonomous coordinator session loop."""

import asyncio

import pytest

from forge_coordinator.config import CoordinationConfig
from forge_coordinator.coordinator import AutonomousCoordinator
from forge_coordinator.errors import Escalated, ForbiddenError
from forge_coordinator.router import Router
from forge_coordinator.state_store import AgentStateStore
from forge_coordinator.workflow import TIMEOUT_REASON, CompleteWork, WorkflowStateKind


def make_coordinator(router, gateway, target, clock, tmp_path, **config):
    return AutonomousCoordinator(
        "agent001",
        router,
        gateway,
        target,
        config=CoordinationConfig(**config),
        store=AgentStateStore(tmp_path / "state", target),
        clock=clock,
        tick_seconds=0,
    )


@pytest.fixture
def coordinator(router, retrying, target, clock, tmp_path):
    return make_coordinator(router, retrying, target, clock, tmp_path)


async def drive_to_review(forge, coordinator):
    await coordinator.step()                   # acquire
    await coordinator.step()                   # start work
    forge.push_commits("agent001/1", 2)
    await coordinator.step()                   # progress
    forge.open_pr(5, head="agent001/1", commits=2)
    await coordinator.step()                   # submit


# ============================================================================
# Acquisition and the happy path
# ============================================================================


class TestLifecycle:

    def test_unknown_agent(self, router, retrying, target):
        with pytest.raises(ValueError):
            AutonomousCoordinator("stranger", router, retrying, target)

    async def test_acquire_assigns_ticket(self, forge, coordinator):
        forge.add_ticket(1)

        state = await coordinator.step()

        assert state.kind == WorkflowStateKind.ASSIGNED
        assert coordinator.assignment.ticket_id == 1
        assert coordinator.expected.ticket.ticket_id == 1
        assert coordinator.drift.last_validation is not None

    async def test_idle_when_nothing_to_do(self, forge, coordinator):
        state = await coordinator.step()
        assert state.kind == WorkflowStateKind.IDLE
        assert coordinator.recovery_attempts == 0

    async def test_observed_progress_drives_workflow(self, forge, coordinator):
        forge.add_ticket(1)
        await coordinator.step()
        await coordinator.step()
        assert coordinator.state.kind == WorkflowStateKind.IN_PROGRESS

        forge.push_commits("agent001/1", 3)
        await coordinator.step()
        assert coordinator.state.progress.commits == 3

        forge.open_pr(5, head="agent001/1", commits=3)
        await coordinator.step()
        assert coordinator.state.kind == WorkflowStateKind.READY_FOR_REVIEW
        assert coordinator.state.pr.number == 5
        assert coordinator.expected.pr.merge_expected is True

    async def test_merge_releases_ticket(self, forge, router, coordinator):
        forge.add_ticket(1)
        await drive_to_review(forge, coordinator)
        forge.merge_pr(5)

        state = await coordinator.step()

        assert state.kind == WorkflowStateKind.MERGED
        assert "agent001" not in forge.tickets[1].labels
        assert router.ledger.live_count("agent001") == 0
        assert coordinator.assignment is None
        assert coordinator.expected.is_empty

    async def test_closed_pr_returns_to_work(self, forge, coordinator):
        forge.add_ticket(1)
        await drive_to_review(forge, coordinator)
        forge.close_pr(5)

        state = await coordinator.step()

        assert state.kind == WorkflowStateKind.IN_PROGRESS

    async def test_pr_merged_before_it_was_seen(self, forge, router, coordinator):
        forge.add_ticket(1)
        await coordinator.step()
        await coordinator.step()
        coordinator.machine.transition(CompleteWork())
        assert coordinator.state.pr.number is None

        forge.open_pr(77, head="agent001/1")
        forge.merge_pr(77)
        state = await coordinator.step()

        assert state.kind == WorkflowStateKind.MERGED
        assert "agent001" not in forge.tickets[1].labels
        assert router.ledger.live_count("agent001") == 0

    async def test_pr_closed_before_it_was_seen(self, forge, coordinator):
        forge.add_ticket(1)
        await coordinator.step()
        await coordinator.step()
        coordinator.machine.transition(CompleteWork())
        forge.open_pr(77, head="agent001/1")
        forge.close_pr(77)

        state = await coordinator.step()
        assert state.kind == WorkflowStateKind.IN_PROGRESS

        # The rejected PR does not count as a review of the next submission.
        coordinator.machine.transition(CompleteWork())
        state = await coordinator.step()
        assert state.kind == WorkflowStateKind.READY_FOR_REVIEW
        assert state.pr.number is None

    async def test_ticket_taken_by_earlier_run_is_picked_up(self, forge, router, coordinator):
        forge.add_ticket(1, labels={"agent001"}, assignees={"agent001"})
        forge.add_ticket(2)

        state = await coordinator.step()

        assert state.kind == WorkflowStateKind.ASSIGNED
        assert state.ticket_id == 1
        assert forge.count("assign_ticket") == 0
        assert "agent001" not in forge.tickets[2].labels
        assert router.ledger.live_count("agent001") == 1

    async def test_unready_workspace_creates_branch(self, forge, coordinator):
        forge.add_ticket(1)
        forge.fail("create_branch", ForbiddenError("no push rights"))
        await coordinator.step()
        assert coordinator.state.workspace.ready is False
        assert coordinator.expected.branch.exists is False

        await coordinator.step()

        assert coordinator.state.kind == WorkflowStateKind.IN_PROGRESS
        assert "agent001/1" in forge.branches

    async def test_abandon_releases_ticket(self, forge, router, coordinator):
        forge.add_ticket(1)
        await coordinator.step()

        assert await coordinator.abandon("not needed") is True

        assert coordinator.state.kind == WorkflowStateKind.ABANDONED
        assert coordinator.state.reason == "not needed"
        assert "agent001" not in forge.tickets[1].labels
        assert router.ledger.live_count("agent001") == 0
        assert await coordinator.abandon() is False


# ============================================================================
# Timeout and resumption
# ============================================================================


class TestTimeoutAndRestore:

    async def test_timeout_keeps_forge_assignment(self, forge, router, coordinator, clock):
        forge.add_ticket(1)
        await coordinator.step()
        clock.advance(hours=8)

        state = await coordinator.step()

        assert state.kind == WorkflowStateKind.ABANDONED
        assert state.reason == TIMEOUT_REASON
        assert "agent001" in forge.tickets[1].labels
        assert "agent001" in forge.tickets[1].assignees
        assert router.ledger.live_count("agent001") == 0

    async def test_restart_resumes_timed_out_work(
        self, forge, coordinator, retrying, target, clock, tmp_path
    ):
        forge.add_ticket(1)
        await coordinator.step()
        clock.advance(hours=8)
        await coordinator.step()

        fresh_router = Router(retrying, target, {"agent001": 1})
        restarted = make_coordinator(fresh_router, retrying, target, clock, tmp_path)
        assert await restarted.restore() is False

        state = await restarted.step()

        assert state.kind == WorkflowStateKind.ASSIGNED
        assert state.ticket_id == 1
        assert forge.count("assign_ticket") == 1

    async def test_restore_in_flight_session(self, forge, coordinator, retrying, target, clock, tmp_path):
        forge.add_ticket(1)
        await coordinator.step()
        await coordinator.step()

        fresh_router = Router(retrying, target, {"agent001": 1})
        restarted = make_coordinator(fresh_router, retrying, target, clock, tmp_path)

        assert await restarted.restore() is True
        assert restarted.state.kind == WorkflowStateKind.IN_PROGRESS
        assert restarted.assignment.ticket_id == 1
        assert fresh_router.ledger.holder_of(1) == "agent001"
        assert restarted.expected.ticket.ticket_id == 1
        assert len(await restarted.store.read_transitions("agent001")) == 2


# ============================================================================
# Recovery and escalation
# ============================================================================


class TestEscalation:

    async def test_repeated_failures_escalate(self, forge, coordinator):
        forge.fail("list_tickets", ForbiddenError("bad token"), times=-1)

        for _ in range(3):
            await coordinator.step()

        assert coordinator.escalated
        assert "3 failed recovery attempts" in coordinator.escalation.reason
        assert "ForbiddenError" in coordinator.last_error
        with pytest.raises(Escalated):
            await coordinator.acquire()

    async def test_failures_outside_window_do_not_accumulate(self, forge, coordinator, clock):
        forge.fail("list_tickets", ForbiddenError("bad token"), times=-1)

        await coordinator.step()
        clock.advance(minutes=31)
        await coordinator.step()
        await coordinator.step()

        assert not coordinator.escalated
        assert coordinator.recovery_attempts == 2

    async def test_resolve_clears_escalation(self, forge, coordinator):
        forge.fail("list_tickets", ForbiddenError("bad token"), times=3)
        for _ in range(3):
            await coordinator.step()
        assert await coordinator.resolve_escalation() is True
        assert await coordinator.resolve_escalation() is False

        forge.add_ticket(1)
        state = await coordinator.step()
        assert state.kind == WorkflowStateKind.ASSIGNED

    async def test_escalation_survives_restart(self, forge, coordinator, retrying, target, clock, tmp_path):
        forge.fail("list_tickets", ForbiddenError("bad token"), times=3)
        for _ in range(3):
            await coordinator.step()

        restarted = make_coordinator(
            Router(retrying, target, {"agent001": 1}), retrying, target, clock, tmp_path,
        )
        await restarted.restore()

        assert restarted.escalated
        assert restarted.status().escalation_reason == coordinator.escalation.reason


# ============================================================================
# Session loop
# ============================================================================


class TestStart:

    async def test_idle_session_ends_after_budget(self, router, retrying, target, clock, tmp_path):
        coordinator = make_coordinator(router, retrying, target, clock, tmp_path, max_work_hours=0)

        state = await coordinator.start()

        assert state.kind == WorkflowStateKind.IDLE
        assert not coordinator.is_running()

    async def test_escalated_session_exits(self, forge, coordinator):
        forge.fail("list_tickets", ForbiddenError("bad token"), times=-1)

        await coordinator.start()

        assert coordinator.escalated
        assert forge.count("list_tickets") == 3

    async def test_stop_ends_loop(self, forge, router, retrying, target, clock, tmp_path):
        coordinator = make_coordinator(router, retrying, target, clock, tmp_path)
        coordinator.tick_seconds = 60
        task = asyncio.create_task(coordinator.start())
        for _ in range(500):
            if forge.count("list_tickets") >= 1:
                break
            await asyncio.sleep(0.01)

        coordinator.stop()
        state = await asyncio.wait_for(task, timeout=5)

        assert state.kind == WorkflowStateKind.IDLE
        assert not coordinator.is_running()

    async def test_runs_to_merge(self, forge, coordinator):
        forge.add_ticket(1)
        forge.open_pr(5, head="agent001/1", commits=1)
        task = asyncio.create_task(coordinator.start())
        for _ in range(500):
            if coordinator.state.kind == WorkflowStateKind.READY_FOR_REVIEW:
                break
            await asyncio.sleep(0.01)
        forge.merge_pr(5)

        state = await asyncio.wait_for(task, timeout=5)

        assert state.kind == WorkflowStateKind.MERGED
        assert "agent001" not in forge.tickets[1].labels

    async def test_status_report(self, forge, coordinator):
        forge.add_ticket(1)
        await coordinator.step()

        status = coordinator.status()

        assert status.agent_id == "agent001"
        assert status.escalated is False
        assert status.retry_stats.total_attempts > 0
        assert status.assignment.ticket_id == 1
        data = status.to_dict()
        assert data["drift"]["validation_health"] == "healthy"
        assert data["workflow"]["current_state"] == "assigned(#1)"
