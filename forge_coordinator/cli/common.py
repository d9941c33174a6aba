"""Common utilities and global state for the CLI.

Contains config loading, exit codes and the wiring of gateway, router
and logger for a single command. This module should NOT import from
app.py to avoid circular imports.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Union

import typer
from rich.console import Console

from forge_coordinator.errors import ConfigError, ForgeError, RetryBudgetExhausted

if TYPE_CHECKING:
    from forge_coordinator.config import CoordinatorConfig
    from forge_coordinator.logger import CoordinatorLogger
    from forge_coordinator.retry import RetryingGateway
    from forge_coordinator.router import Router

# Exit codes
EXIT_OK = 0
EXIT_RECOVERABLE = 1                           # Nothing to do, retry budget exhausted
EXIT_FATAL = 2                                 # Config or credentials

# ============================================================================
# Global State
# ============================================================================

# Config path override (set via --config flag)
_config_path: Optional[str] = None

# Console singleton
_console: Optional[Console] = None


def get_config_path() -> Optional[str]:
    return _config_path


def set_config_path(path: Optional[str]) -> None:
    global _config_path
    _config_path = path


def get_console() -> Console:
    """Get or create the console singleton."""
    global _console
    if _console is None:
        _console = Console()
    return _console


# ============================================================================
# Config and runtime helpers
# ============================================================================


def load_config_or_exit() -> CoordinatorConfig:
    """Load config, exiting with EXIT_FATAL if it is missing or invalid."""
    from forge_coordinator.config import load_config

    try:
        return load_config(get_config_path())
    except ConfigError as e:
        get_console().print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(EXIT_FATAL)


def require_agent(config: CoordinatorConfig, agent_id: str) -> None:
    if agent_id not in config.agent_ids:
        known = ", ".join(config.agent_ids)
        get_console().print(f"[red]Unknown agent '{agent_id}'.[/red] Configured agents: {known}")
        raise typer.Exit(EXIT_FATAL)


def build_gateway(
    config: CoordinatorConfig, logger: Optional[CoordinatorLogger] = None
) -> RetryingGateway:
    """GitHub gateway wrapped in the configured retry policy."""
    from forge_coordinator.gateway import GitHubGateway
    from forge_coordinator.retry import RetryingGateway, RetryPolicy

    try:
        token = config.forge.get_token()
    except ConfigError as e:
        get_console().print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(EXIT_FATAL)

    inner = GitHubGateway(
        token,
        api_url=config.forge.api_url,
        read_timeout=config.forge.read_timeout_seconds,
        write_timeout=config.forge.write_timeout_seconds,
    )
    return RetryingGateway(inner, RetryPolicy.from_config(config.retry), logger=logger)


def build_router(
    config: CoordinatorConfig,
    gateway: RetryingGateway,
    logger: Optional[CoordinatorLogger] = None,
) -> Router:
    from forge_coordinator.router import Router

    return Router(
        gateway,
        config.forge.target,
        config.capacities(),
        base_branch=config.forge.base_branch,
        logger=logger,
    )


def exit_code_for(error: Union[ForgeError, RetryBudgetExhausted]) -> int:
    """Map a forge failure to the CLI exit code."""
    if isinstance(error, ForgeError) and error.requires_operator:
        return EXIT_FATAL
    return EXIT_RECOVERABLE


def report_forge_error(error: Union[ForgeError, RetryBudgetExhausted]) -> None:
    """Print a forge failure and exit with the matching code."""
    error_class = error.error_type.name
    get_console().print(f"[red]Forge call failed ({error_class}):[/red] {error}")
    raise typer.Exit(exit_code_for(error))
