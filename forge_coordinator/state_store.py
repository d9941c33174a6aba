"""
State persistence for forge-coordinator.

This module handles:
- Saving and loading one agent's session to
  .coordinator/state/<owner>__<repo>/<agent>.state.json
- Appending accepted transitions to <agent>.transitions.jsonl
- Atomic writes under a per-agent file lock
- Graceful handling of missing or corrupted state files
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from filelock import FileLock, Timeout

from forge_coordinator.drift import ExpectedState
from forge_coordinator.errors import StateStoreError
from forge_coordinator.models import (
    Assignment,
    ForgeTarget,
    format_timestamp,
    model_to_json,
    parse_timestamp,
    utc_now,
)
from forge_coordinator.utils.fs import FileSystemError, append_line, ensure_dir, read_file, safe_write
from forge_coordinator.workflow import TransitionRecord

if TYPE_CHECKING:
    from forge_coordinator.config import CoordinatorConfig
    from forge_coordinator.logger import CoordinatorLogger


STATE_VERSION = 1
LOCK_TIMEOUT_SECONDS = 10


@dataclass
class AgentSnapshot:
    """Everything needed to resume an agent's session after a restart."""
    agent_id: str
    target: ForgeTarget
    workflow: dict[str, Any]                   # WorkflowStateMachine.to_dict()
    expected_state: ExpectedState = field(default_factory=ExpectedState)
    assignment: Optional[Assignment] = None
    escalation: Optional[dict[str, str]] = None   # {entity, reason} while halted
    saved_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "agent_id": self.agent_id,
            "target": self.target.slug,
            "saved_at": format_timestamp(self.saved_at),
            "workflow": self.workflow,
            "expected_state": self.expected_state.to_dict(),
            "assignment": self.assignment.to_dict() if self.assignment else None,
            "escalation": self.escalation,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentSnapshot:
        version = data.get("version")
        if version != STATE_VERSION:
            raise ValueError(f"Unsupported state version: {version}")
        return cls(
            agent_id=data["agent_id"],
            target=ForgeTarget.parse(data["target"]),
            workflow=data["workflow"],
            expected_state=ExpectedState.from_dict(data.get("expected_state") or {}),
            assignment=Assignment.from_dict(data["assignment"]) if data.get("assignment") else None,
            escalation=data.get("escalation"),
            saved_at=parse_timestamp(data.get("saved_at")) or utc_now(),
        )


class AgentStateStore:
    """
    Persistent per-agent session storage.

    One directory per forge target, so two repositories never share state.
    """

    def __init__(
        self,
        state_dir: Path,
        target: ForgeTarget,
        logger: Optional[CoordinatorLogger] = None,
    ) -> None:
        self.state_dir = Path(state_dir)
        self.target = target
        self._logger = logger

    @classmethod
    def from_config(
        cls, config: CoordinatorConfig, logger: Optional[CoordinatorLogger] = None
    ) -> AgentStateStore:
        return cls(config.state_path, config.forge.target, logger=logger)

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    @staticmethod
    def _safe_id(agent_id: str) -> str:
        return agent_id.replace("/", "_")

    def state_path(self, agent_id: str) -> Path:
        return self.state_dir / f"{self._safe_id(agent_id)}.state.json"

    def journal_path(self, agent_id: str) -> Path:
        return self.state_dir / f"{self._safe_id(agent_id)}.transitions.jsonl"

    def _lock(self, agent_id: str) -> FileLock:
        return FileLock(
            str(self.state_dir / f".{self._safe_id(agent_id)}.lock"),
            timeout=LOCK_TIMEOUT_SECONDS,
        )

    def _write_locked(self, agent_id: str, content: str) -> None:
        # Runs in a worker thread; the lock never spans an await.
        with self._lock(agent_id):
            safe_write(self.state_path(agent_id), content)

    def _unlink_locked(self, agent_id: str) -> None:
        with self._lock(agent_id):
            self.state_path(agent_id).unlink(missing_ok=True)

    async def save(self, snapshot: AgentSnapshot) -> None:
        """
        Persist a snapshot atomically.

        Raises:
            StateStoreError: If the lock cannot be taken or the write fails.
        """
        if snapshot.target != self.target:
            raise StateStoreError(
                f"Snapshot for {snapshot.target.slug} cannot be stored under {self.target.slug}"
            )
        snapshot.saved_at = utc_now()
        content = model_to_json(snapshot.to_dict(), indent=2)

        ensure_dir(self.state_dir)
        try:
            await asyncio.to_thread(self._write_locked, snapshot.agent_id, content)
        except Timeout as e:
            raise StateStoreError(f"State for {snapshot.agent_id} is locked by another process") from e
        except FileSystemError as e:
            self._log("state_save_failed", {
                "agent_id": snapshot.agent_id,
                "error": str(e),
            }, level="error")
            raise StateStoreError(f"Failed to save state for {snapshot.agent_id}: {e}") from e

        self._log("state_saved", {
            "agent_id": snapshot.agent_id,
            "workflow": snapshot.workflow.get("state", {}).get("kind"),
        }, level="debug")

    async def load(self, agent_id: str) -> Optional[AgentSnapshot]:
        """
        Load an agent's snapshot.

        Returns:
            The snapshot, or None if missing, corrupted, or for another target.
        """
        path = self.state_path(agent_id)
        if not path.is_file():
            self._log("state_load_miss", {"agent_id": agent_id}, level="debug")
            return None

        try:
            snapshot = AgentSnapshot.from_dict(json.loads(await read_file(path)))
        except json.JSONDecodeError as e:
            self._log("state_corrupted", {
                "agent_id": agent_id,
                "error": str(e),
                "path": str(path),
            }, level="error")
            return None
        except (KeyError, ValueError, TypeError) as e:
            self._log("state_invalid", {
                "agent_id": agent_id,
                "error": str(e),
                "path": str(path),
            }, level="error")
            return None
        except FileSystemError as e:
            self._log("state_read_error", {"agent_id": agent_id, "error": str(e)}, level="error")
            return None

        if snapshot.target != self.target or snapshot.agent_id != agent_id:
            self._log("state_mismatch", {
                "agent_id": agent_id,
                "stored_agent": snapshot.agent_id,
                "stored_target": snapshot.target.slug,
            }, level="warn")
            return None

        self._log("state_loaded", {"agent_id": agent_id}, level="debug")
        return snapshot

    async def append_transition(self, agent_id: str, record: TransitionRecord) -> None:
        try:
            await append_line(self.journal_path(agent_id), model_to_json(record.to_dict()))
        except FileSystemError as e:
            raise StateStoreError(f"Failed to journal transition for {agent_id}: {e}") from e

    async def read_transitions(self, agent_id: str) -> list[TransitionRecord]:
        """Read the transition journal, skipping lines that do not parse."""
        path = self.journal_path(agent_id)
        if not path.is_file():
            return []
        try:
            content = await read_file(path)
        except FileSystemError as e:
            self._log("journal_read_error", {"agent_id": agent_id, "error": str(e)}, level="error")
            return []

        records = []
        for line in content.splitlines():
            if not line.strip():
                continue
            try:
                records.append(TransitionRecord.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                self._log("journal_line_skipped", {"agent_id": agent_id, "error": str(e)}, level="warn")
        return records

    async def delete(self, agent_id: str) -> bool:
        path = self.state_path(agent_id)
        if not path.exists():
            return False
        try:
            await asyncio.to_thread(self._unlink_locked, agent_id)
        except Timeout as e:
            raise StateStoreError(f"State for {agent_id} is locked by another process") from e
        self._log("state_deleted", {"agent_id": agent_id})
        return True

    def list_agents(self) -> list[str]:
        if not self.state_dir.is_dir():
            return []
        return sorted(p.name[: -len(".state.json")] for p in self.state_dir.glob("*.state.json"))
