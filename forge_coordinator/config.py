"""
Configuration loading and validation for the forge coordinator.

This module handles:
- Loading config.yaml
- Environment variable resolution (${VAR} syntax)
- Validation of the forge target and the agent set
- Default values for optional fields
- Caching of the loaded configuration
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from forge_coordinator.errors import ConfigError
from forge_coordinator.models import ForgeTarget


DEFAULT_API_URL = "https://api.github.com"


@dataclass
class ForgeConfig:
    """Forge repository configuration."""
    owner: str
    repo: str
    token_env_var: str = "GITHUB_TOKEN"        # Environment variable containing PAT
    api_url: str = DEFAULT_API_URL
    base_branch: str = "main"                  # Base for work branches
    read_timeout_seconds: float = 30.0
    write_timeout_seconds: float = 60.0

    @property
    def target(self) -> ForgeTarget:
        return ForgeTarget(owner=self.owner, repo=self.repo)

    def get_token(self) -> str:
        """Get the forge token from environment."""
        token = os.environ.get(self.token_env_var, "")
        if not token:
            raise ConfigError(f"Environment variable {self.token_env_var} is not set")
        return token


@dataclass
class AgentConfig:
    """One agent and how many tickets it may hold at once."""
    agent_id: str
    capacity: int = 1


@dataclass
class RetryConfig:
    """Retry budget for forge calls."""
    max_attempts: int = 3                      # Attempts for transient failures
    base_delay_seconds: float = 0.5            # First back-off delay
    max_delay_seconds: float = 30.0            # Ceiling for a single back-off
    jitter: bool = True                        # Randomize back-off delays
    total_deadline_seconds: float = 120.0      # Cap for one logical operation


@dataclass
class CoordinationConfig:
    """Autonomous session parameters."""
    max_work_hours: int = 8
    max_recovery_attempts: int = 3
    recovery_timeout_minutes: int = 30
    enable_aggressive_recovery: bool = False
    enable_state_persistence: bool = True
    monitoring_interval_minutes: int = 5
    enable_drift_detection: bool = True
    drift_validation_interval_minutes: int = 5


@dataclass
class DriftConfig:
    """Drift validation cadence and tolerances."""
    active_interval_minutes: int = 5           # While work is in flight
    idle_interval_minutes: int = 30            # While the agent is idle
    max_commits_behind: int = 10               # Divergence tolerated before it is Moderate


@dataclass
class CoordinatorConfig:
    """
    Main configuration for the forge coordinator.

    This is the top-level config loaded from config.yaml.
    """
    forge: ForgeConfig
    agents: list[AgentConfig] = field(default_factory=list)

    # Paths
    repo_root: str = "."
    state_dir: str = ".coordinator"

    # Nested configurations
    retry: RetryConfig = field(default_factory=RetryConfig)
    coordination: CoordinationConfig = field(default_factory=CoordinationConfig)
    drift: DriftConfig = field(default_factory=DriftConfig)

    def __post_init__(self) -> None:
        """Convert paths to absolute paths based on repo_root."""
        self.repo_root = str(Path(self.repo_root).absolute())

    @property
    def coordinator_path(self) -> Path:
        """Absolute path to the .coordinator directory."""
        return Path(self.repo_root) / self.state_dir

    @property
    def state_path(self) -> Path:
        """Per-repository state directory, keyed by the forge target."""
        target = self.forge.target
        return self.coordinator_path / "state" / f"{target.owner}__{target.repo}"

    @property
    def logs_path(self) -> Path:
        """Absolute path to logs directory."""
        return self.coordinator_path / "logs"

    @property
    def max_agents(self) -> int:
        return len(self.agents)

    @property
    def agent_ids(self) -> list[str]:
        return [agent.agent_id for agent in self.agents]

    def capacities(self) -> dict[str, int]:
        return {agent.agent_id: agent.capacity for agent in self.agents}

    def capacity_of(self, agent_id: str) -> int:
        for agent in self.agents:
            if agent.agent_id == agent_id:
                return agent.capacity
        raise ConfigError(f"Unknown agent: {agent_id}")


# Module-level cache for the loaded configuration
_config_cache: Optional[CoordinatorConfig] = None


def _resolve_env_vars(value: Any) -> Any:
    """
    Resolve environment variables in a value.

    Supports ${VAR} syntax for environment variable substitution.
    Returns the original value if it's not a string.
    """
    if isinstance(value, str):
        pattern = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')

        def replace(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable ${{{var_name}}} is not set")
            return env_value

        return pattern.sub(replace, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def _parse_forge_config(data: dict[str, Any]) -> ForgeConfig:
    """Parse forge configuration from dict."""
    owner = data.get("owner")
    repo = data.get("repo")
    if data.get("repository"):
        try:
            target = ForgeTarget.parse(data["repository"])
        except ValueError as e:
            raise ConfigError(f"forge.repository: {e}")
        owner, repo = target.owner, target.repo
    if not owner or not repo:
        raise ConfigError("forge.owner and forge.repo are required")
    return ForgeConfig(
        owner=owner,
        repo=repo,
        token_env_var=data.get("token_env_var", "GITHUB_TOKEN"),
        api_url=data.get("api_url", DEFAULT_API_URL),
        base_branch=data.get("base_branch", "main"),
        read_timeout_seconds=data.get("read_timeout_seconds", 30.0),
        write_timeout_seconds=data.get("write_timeout_seconds", 60.0),
    )


def _parse_agents(data: Any, default_capacity: int = 1) -> list[AgentConfig]:
    """
    Parse the agent set.

    Accepts either a list of ids (``["agent001", "agent002"]``) or a list of
    mappings with ``id`` and ``capacity``.
    """
    if not data:
        raise ConfigError("At least one agent must be configured")

    agents: list[AgentConfig] = []
    for entry in data:
        if isinstance(entry, str):
            agent = AgentConfig(agent_id=entry, capacity=default_capacity)
        elif isinstance(entry, dict) and entry.get("id"):
            agent = AgentConfig(
                agent_id=str(entry["id"]),
                capacity=entry.get("capacity", default_capacity),
            )
        else:
            raise ConfigError(f"Invalid agent entry: {entry!r}")

        if not isinstance(agent.capacity, int) or agent.capacity < 1:
            raise ConfigError(f"Agent {agent.agent_id} capacity must be a positive integer")
        if any(a.agent_id == agent.agent_id for a in agents):
            raise ConfigError(f"Duplicate agent id: {agent.agent_id}")
        agents.append(agent)
    return agents


def _parse_retry_config(data: dict[str, Any]) -> RetryConfig:
    """Parse retry configuration from dict."""
    return RetryConfig(
        max_attempts=data.get("max_attempts", 3),
        base_delay_seconds=data.get("base_delay_seconds", 0.5),
        max_delay_seconds=data.get("max_delay_seconds", 30.0),
        jitter=data.get("jitter", True),
        total_deadline_seconds=data.get("total_deadline_seconds", 120.0),
    )


def _parse_coordination_config(data: dict[str, Any]) -> CoordinationConfig:
    """Parse coordination configuration from dict."""
    defaults = CoordinationConfig()
    return CoordinationConfig(
        max_work_hours=data.get("max_work_hours", defaults.max_work_hours),
        max_recovery_attempts=data.get("max_recovery_attempts", defaults.max_recovery_attempts),
        recovery_timeout_minutes=data.get("recovery_timeout_minutes", defaults.recovery_timeout_minutes),
        enable_aggressive_recovery=data.get("enable_aggressive_recovery", defaults.enable_aggressive_recovery),
        enable_state_persistence=data.get("enable_state_persistence", defaults.enable_state_persistence),
        monitoring_interval_minutes=data.get("monitoring_interval_minutes", defaults.monitoring_interval_minutes),
        enable_drift_detection=data.get("enable_drift_detection", defaults.enable_drift_detection),
        drift_validation_interval_minutes=data.get(
            "drift_validation_interval_minutes", defaults.drift_validation_interval_minutes
        ),
    )


def _parse_drift_config(data: dict[str, Any], coordination: CoordinationConfig) -> DriftConfig:
    """Parse drift configuration; the active cadence falls back to the coordination interval."""
    return DriftConfig(
        active_interval_minutes=data.get(
            "active_interval_minutes", coordination.drift_validation_interval_minutes
        ),
        idle_interval_minutes=data.get("idle_interval_minutes", 30),
        max_commits_behind=data.get("max_commits_behind", 10),
    )


def load_config(config_path: Optional[str] = None) -> CoordinatorConfig:
    """
    Load configuration from config.yaml.

    Args:
        config_path: Optional path to config file. If not provided,
                     looks for config.yaml in current directory.

    Returns:
        CoordinatorConfig: Loaded and validated configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    if config_path is None:
        config_path = "config.yaml"

    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}")

    if not raw_data:
        raise ConfigError("Configuration file is empty")

    data = _resolve_env_vars(raw_data)

    if "forge" not in data:
        raise ConfigError("Missing required section: forge")

    forge_config = _parse_forge_config(data.get("forge") or {})
    agents = _parse_agents(data.get("agents"), data.get("per_agent_capacity", 1))
    coordination_config = _parse_coordination_config(data.get("coordination") or {})

    return CoordinatorConfig(
        forge=forge_config,
        agents=agents,
        repo_root=data.get("repo_root", "."),
        state_dir=data.get("state_dir", ".coordinator"),
        retry=_parse_retry_config(data.get("retry") or {}),
        coordination=coordination_config,
        drift=_parse_drift_config(data.get("drift") or {}, coordination_config),
    )


def get_config(config_path: Optional[str] = None, force_reload: bool = False) -> CoordinatorConfig:
    """
    Get the cached configuration, loading it if necessary.

    Args:
        config_path: Optional path to config file.
        force_reload: If True, reload configuration even if cached.

    Returns:
        CoordinatorConfig: The loaded configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    global _config_cache

    if _config_cache is None or force_reload:
        _config_cache = load_config(config_path)

    return _config_cache


def clear_config_cache() -> None:
    """Clear the configuration cache. Useful for testing."""
    global _config_cache
    _config_cache = None
