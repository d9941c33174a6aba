"""Tests for YAML configuration loading."""

import pytest

from forge_coordinator.config import (
    CoordinatorConfig,
    ForgeConfig,
    clear_config_cache,
    get_config,
    load_config,
)
from forge_coordinator.errors import ConfigError
from forge_coordinator.models import ForgeTarget


@pytest.fixture(autouse=True)
def _clear_cache():
    clear_config_cache()
    yield
    clear_config_cache()


def write_config(tmp_path, content):
    path = tmp_path / "config.yaml"
    path.write_text(content)
    return str(path)


MINIMAL = """
forge:
  owner: acme
  repo: widgets
agents:
  - agent001
  - agent002
"""


# ============================================================================
# Loading
# ============================================================================


class TestLoadConfig:

    def test_minimal_config_uses_defaults(self, tmp_path):
        config = load_config(write_config(tmp_path, MINIMAL))

        assert config.forge.target == ForgeTarget("acme", "widgets")
        assert config.agent_ids == ["agent001", "agent002"]
        assert config.capacity_of("agent001") == 1
        assert config.retry.max_attempts == 3
        assert config.coordination.max_work_hours == 8
        assert config.coordination.enable_drift_detection is True
        assert config.drift.idle_interval_minutes == 30

    def test_repository_slug_form(self, tmp_path):
        path = write_config(tmp_path, """
forge:
  repository: acme/gadgets
agents: [agent001]
""")
        assert load_config(path).forge.target == ForgeTarget("acme", "gadgets")

    def test_agent_mappings_with_capacity(self, tmp_path):
        path = write_config(tmp_path, """
forge: {owner: acme, repo: widgets}
agents:
  - id: agent001
    capacity: 2
  - agent002
""")
        config = load_config(path)
        assert config.capacities() == {"agent001": 2, "agent002": 1}
        assert config.max_agents == 2

    def test_drift_cadence_follows_coordination_interval(self, tmp_path):
        path = write_config(tmp_path, MINIMAL + """
coordination:
  drift_validation_interval_minutes: 7
""")
        assert load_config(path).drift.active_interval_minutes == 7

    def test_env_vars_are_resolved(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FORGE_OWNER", "acme")
        path = write_config(tmp_path, """
forge:
  owner: ${FORGE_OWNER}
  repo: widgets
agents: [agent001]
""")
        assert load_config(path).forge.owner == "acme"

    def test_state_path_is_keyed_by_target(self, tmp_path):
        config = CoordinatorConfig(forge=ForgeConfig("acme", "widgets"), repo_root=str(tmp_path))
        assert config.state_path == tmp_path / ".coordinator" / "state" / "acme__widgets"
        assert config.logs_path == tmp_path / ".coordinator" / "logs"

    def test_get_config_caches(self, tmp_path):
        path = write_config(tmp_path, MINIMAL)
        assert get_config(path) is get_config(path)


# ============================================================================
# Validation errors
# ============================================================================


class TestConfigErrors:

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(str(tmp_path / "nope.yaml"))

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(write_config(tmp_path, "forge: [unclosed"))

    def test_missing_forge_section(self, tmp_path):
        with pytest.raises(ConfigError, match="forge"):
            load_config(write_config(tmp_path, "agents: [agent001]"))

    def test_missing_repo(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(write_config(tmp_path, "forge: {owner: acme}\nagents: [agent001]"))

    def test_empty_agent_set(self, tmp_path):
        with pytest.raises(ConfigError, match="At least one agent"):
            load_config(write_config(tmp_path, "forge: {owner: acme, repo: widgets}\nagents: []"))

    def test_duplicate_agents(self, tmp_path):
        with pytest.raises(ConfigError, match="Duplicate"):
            load_config(write_config(tmp_path, "forge: {owner: acme, repo: w}\nagents: [a, a]"))

    def test_non_positive_capacity(self, tmp_path):
        content = "forge: {owner: acme, repo: w}\nagents:\n  - {id: a, capacity: 0}"
        with pytest.raises(ConfigError, match="capacity"):
            load_config(write_config(tmp_path, content))

    def test_unset_env_var(self, tmp_path, monkeypatch):
        monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)
        content = "forge: {owner: '${NOT_SET_ANYWHERE}', repo: w}\nagents: [a]"
        with pytest.raises(ConfigError, match="NOT_SET_ANYWHERE"):
            load_config(write_config(tmp_path, content))

    def test_missing_token(self, monkeypatch):
        monkeypatch.delenv("GITHUB_TOKEN", raising=False)
        with pytest.raises(ConfigError, match="GITHUB_TOKEN"):
            ForgeConfig("acme", "widgets").get_token()

    def test_unknown_agent_capacity(self, tmp_path):
        config = load_config(write_config(tmp_path, MINIMAL))
        with pytest.raises(ConfigError):
            config.capacity_of("agent999")
