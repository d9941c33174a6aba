"""CLI package for forge-coordinator.

Modules:
    app.py      - Main Typer app, version callback, commands
    display.py  - Rich formatting utilities (tickets, assignments, status)
    common.py   - Shared helpers (console, config loading, runtime wiring)

Usage:
    from forge_coordinator.cli import app, cli_main
"""
from forge_coordinator.cli.app import app, cli_main

__all__ = ["app", "cli_main"]
