"""
forge-coordinator - Ticket routing and autonomous workflow for coding agents.

Routes forge tickets to a fixed set of agents, tracks each agent's work
from assignment to merge, and keeps the coordinator's view of the forge
honest through drift detection and correction.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
