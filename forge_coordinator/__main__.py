"""
Entry point for running forge_coordinator as a module.

Allows running as: python -m forge_coordinator
"""

from forge_coordinator.cli import cli_main

if __name__ == "__main__":
    cli_main()
