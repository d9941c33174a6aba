"""
Local workspace observation for drift detection.

The workspace is the agent's checkout on disk. It is always addressed by
an explicit path; the forge target never comes from here.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class WorkspaceError(Exception):
    """Raised when the workspace cannot be inspected."""


@dataclass(frozen=True)
class WorkspaceObservation:
    branch: str
    dirty: bool
    modified_files: tuple[str, ...] = ()


class WorkspaceProbe(Protocol):
    async def observe(self) -> WorkspaceObservation: ...


class GitWorkspace:
    """Reads branch and cleanliness of a git checkout via the git CLI."""

    def __init__(self, path: Path, timeout: int = 30) -> None:
        self.path = Path(path)
        self.timeout = timeout

    def _run_git(self, args: list[str]) -> str:
        try:
            result = subprocess.run(
                ["git"] + args,
                cwd=str(self.path),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise WorkspaceError("git executable not found") from e
        except subprocess.TimeoutExpired as e:
            raise WorkspaceError(f"git {' '.join(args)} timed out") from e

        if result.returncode != 0:
            raise WorkspaceError(
                f"git {' '.join(args)} failed in {self.path}: {result.stderr.strip()}"
            )
        return result.stdout

    def _observe_sync(self) -> WorkspaceObservation:
        branch = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"]).strip()
        status = self._run_git(["status", "--porcelain"])
        modified = tuple(line[3:] for line in status.splitlines() if line.strip())
        return WorkspaceObservation(branch=branch, dirty=bool(modified), modified_files=modified)

    async def observe(self) -> WorkspaceObservation:
        observation = await asyncio.to_thread(self._observe_sync)
        logger.debug("Workspace %s on %s (dirty=%s)", self.path, observation.branch, observation.dirty)
        return observation
