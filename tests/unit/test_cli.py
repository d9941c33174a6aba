"""Tests for the forge-coordinator CLI."""

import asyncio
import importlib

import pytest

from forge_coordinator import __version__
from forge_coordinator.cli import app
from forge_coordinator.config import load_config
from forge_coordinator.logger import clear_logger_cache
from forge_coordinator.models import Assignment
from forge_coordinator.retry import RetryingGateway, RetryPolicy
from forge_coordinator.state_store import AgentSnapshot, AgentStateStore
from forge_coordinator.workflow import AssignAgent, WorkflowStateMachine


async def no_sleep(seconds):
    return None


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(f"""
forge:
  repository: acme/widgets
agents: [agent001, agent002]
repo_root: {tmp_path}
""")
    clear_logger_cache()
    yield str(path)
    clear_logger_cache()


@pytest.fixture
def cli_forge(monkeypatch, forge):
    """Route CLI commands to the in-memory forge instead of GitHub."""

    def fake_build_gateway(config, logger=None):
        return RetryingGateway(forge, RetryPolicy(jitter=False), logger=logger, sleep=no_sleep)

    # The package re-exports the Typer app under the module's name.
    app_module = importlib.import_module("forge_coordinator.cli.app")
    monkeypatch.setattr(app_module, "build_gateway", fake_build_gateway)
    return forge


def save_snapshot(config_path, escalation=None):
    config = load_config(config_path)
    machine = WorkflowStateMachine("agent001")
    machine.transition(AssignAgent(agent_id="agent001", ticket_id=42, branch="agent001/42"))
    snapshot = AgentSnapshot(
        agent_id="agent001",
        target=config.forge.target,
        workflow=machine.to_dict(),
        assignment=Assignment(ticket_id=42, agent_id="agent001", branch_name="agent001/42"),
        escalation=escalation,
    )
    store = AgentStateStore.from_config(config)
    asyncio.run(store.save(snapshot))
    return store


# ============================================================================
# Global options
# ============================================================================


class TestGlobalOptions:

    def test_version(self, cli_runner):
        result = cli_runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_missing_config_is_fatal(self, cli_runner, tmp_path):
        result = cli_runner.invoke(app, ["--config", str(tmp_path / "nope.yaml"), "status", "agent001"])
        assert result.exit_code == 2
        assert "Configuration error" in result.output

    def test_unknown_agent_is_fatal(self, cli_runner, config_file):
        result = cli_runner.invoke(app, ["--config", config_file, "status", "stranger"])
        assert result.exit_code == 2
        assert "Unknown agent" in result.output

    def test_missing_token_is_fatal(self, cli_runner, config_file, monkeypatch):
        monkeypatch.delenv("GITHUB_TOKEN", raising=False)
        result = cli_runner.invoke(app, ["--config", config_file, "pop", "agent001"])
        assert result.exit_code == 2
        assert "GITHUB_TOKEN" in result.output


# ============================================================================
# Routing commands
# ============================================================================


class TestRoutingCommands:

    def test_pop_assigns_ticket(self, cli_runner, config_file, cli_forge):
        cli_forge.add_ticket(7, title="Fix login")

        result = cli_runner.invoke(app, ["--config", config_file, "pop", "agent001"])

        assert result.exit_code == 0, result.output
        assert "#7" in result.output
        assert "agent001/7" in result.output
        assert "agent001" in cli_forge.tickets[7].labels

    def test_second_pop_at_capacity_assigns_nothing(self, cli_runner, config_file, cli_forge):
        cli_forge.add_ticket(1)
        cli_forge.add_ticket(2)

        first = cli_runner.invoke(app, ["--config", config_file, "pop", "agent001"])
        second = cli_runner.invoke(app, ["--config", config_file, "pop", "agent001"])

        assert first.exit_code == 0, first.output
        assert second.exit_code == 1
        assert "at capacity" in second.output
        assert "#1" in second.output
        assert cli_forge.count("assign_ticket") == 1
        assert "agent001" not in cli_forge.tickets[2].labels
        assert "agent001" not in cli_forge.tickets[2].assignees

    def test_pop_with_nothing_available(self, cli_runner, config_file, cli_forge):
        result = cli_runner.invoke(app, ["--config", config_file, "pop", "agent001"])
        assert result.exit_code == 1
        assert "No ticket available" in result.output

    def test_pop_mine_redelivers(self, cli_runner, config_file, cli_forge):
        cli_forge.add_ticket(9, labels={"agent001"}, assignees={"agent001"})

        result = cli_runner.invoke(app, ["--config", config_file, "pop", "agent001", "--mine"])

        assert result.exit_code == 0, result.output
        assert "#9" in result.output
        assert cli_forge.count("assign_ticket") == 0

    def test_peek(self, cli_runner, config_file, cli_forge):
        cli_forge.add_ticket(3, title="Add search")
        result = cli_runner.invoke(app, ["--config", config_file, "peek", "agent002"])
        assert result.exit_code == 0
        assert "Add search" in result.output
        assert cli_forge.count("assign_ticket") == 0

    def test_release(self, cli_runner, config_file, cli_forge):
        cli_forge.add_ticket(4, labels={"agent001"}, assignees={"agent001"})
        result = cli_runner.invoke(app, ["--config", config_file, "release", "agent001", "4"])
        assert result.exit_code == 0
        assert "agent001" not in cli_forge.tickets[4].labels

    def test_forbidden_listing_is_fatal(self, cli_runner, config_file, cli_forge):
        from forge_coordinator.errors import ForbiddenError

        cli_forge.fail("list_tickets", ForbiddenError("bad credentials"))
        result = cli_runner.invoke(app, ["--config", config_file, "peek", "agent001"])
        assert result.exit_code == 2
        assert "FORBIDDEN" in result.output


# ============================================================================
# Session commands
# ============================================================================


class TestSessionCommands:

    def test_status_without_session(self, cli_runner, config_file):
        result = cli_runner.invoke(app, ["--config", config_file, "status", "agent001"])
        assert result.exit_code == 0
        assert "No saved session" in result.output

    def test_status_shows_saved_session(self, cli_runner, config_file):
        save_snapshot(config_file)
        result = cli_runner.invoke(app, ["--config", config_file, "status", "agent001"])
        assert result.exit_code == 0
        assert "Assigned" in result.output
        assert "acme/widgets" in result.output

    def test_resolve_clears_persisted_escalation(self, cli_runner, config_file, cli_forge):
        store = save_snapshot(config_file, escalation={"entity": "#42", "reason": "ticket_closed_unexpectedly"})

        result = cli_runner.invoke(app, ["--config", config_file, "resolve", "agent001"])

        assert result.exit_code == 0, result.output
        assert "resolved" in result.output
        assert asyncio.run(store.load("agent001")).escalation is None

    def test_resolve_when_not_escalated(self, cli_runner, config_file, cli_forge):
        result = cli_runner.invoke(app, ["--config", config_file, "resolve", "agent001"])
        assert result.exit_code == 0
        assert "not escalated" in result.output

    def test_run_idle_session_ends(self, cli_runner, tmp_path, cli_forge):
        path = tmp_path / "short.yaml"
        path.write_text(f"""
forge: {{owner: acme, repo: widgets}}
agents: [agent001]
repo_root: {tmp_path}
coordination:
  max_work_hours: 0
""")
        result = cli_runner.invoke(app, ["--config", str(path), "run", "agent001", "--tick", "0"])

        assert result.exit_code == 0, result.output
        assert "Idle" in result.output
        assert cli_forge.count("list_tickets") == 2
