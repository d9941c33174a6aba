"""
Structured JSONL logging for the forge coordinator.

This module provides:
- JSONL event logging for audit trails of routing, transitions and drift
- Log files organized by agent and date
- Log levels (debug, info, warn, error) with a minimum-level filter
- Context manager for session-scoped logging
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional, TYPE_CHECKING

from forge_coordinator.models import ModelEncoder, format_timestamp, utc_now

if TYPE_CHECKING:
    from forge_coordinator.config import CoordinatorConfig


class LogLevel:
    """Log level constants."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    ORDER = {DEBUG: 0, INFO: 1, WARN: 2, ERROR: 3}


class CoordinatorLogger:
    """
    JSONL event logger for one agent's coordination session.

    Writes structured log entries to <logs_path>/<agent>-YYYY-MM-DD.jsonl

    Each log entry is a JSON object with:
    - timestamp: ISO format timestamp (UTC, Z suffix)
    - level: Log level (debug, info, warn, error)
    - event_type: Type of event being logged
    - agent_id: Agent identifier
    - data: Additional event data (dict)
    - session_id: Present inside session_context()
    """

    def __init__(
        self,
        agent_id: str,
        logs_path: Path,
        min_level: str = LogLevel.DEBUG,
    ) -> None:
        self.agent_id = agent_id
        self.logs_path = Path(logs_path)
        self.min_level = min_level
        self._current_session_id: Optional[str] = None

    @classmethod
    def from_config(cls, agent_id: str, config: CoordinatorConfig) -> CoordinatorLogger:
        return cls(agent_id, config.logs_path)

    def _log_path_for(self, date: str) -> Path:
        # Agent ids are used verbatim in labels; keep them filesystem-safe here.
        safe_id = self.agent_id.replace("/", "_")
        return self.logs_path / f"{safe_id}-{date}.jsonl"

    def _write_entry(self, entry: dict[str, Any]) -> None:
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        log_path = self._log_path_for(today)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.write(json.dumps(entry, cls=ModelEncoder, default=str) + "\n")

    def log(
        self,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        level: str = LogLevel.INFO,
    ) -> None:
        """
        Log an event.

        Args:
            event_type: Type of event (e.g., "ticket_assigned", "drift_detected").
            data: Additional data to include in the log entry.
            level: Log level (debug, info, warn, error).
        """
        if LogLevel.ORDER.get(level, 1) < LogLevel.ORDER.get(self.min_level, 0):
            return

        entry: dict[str, Any] = {
            "timestamp": format_timestamp(utc_now()),
            "level": level,
            "event_type": event_type,
            "agent_id": self.agent_id,
            "data": data or {},
        }
        if self._current_session_id:
            entry["session_id"] = self._current_session_id

        self._write_entry(entry)

    def debug(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.DEBUG)

    def info(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.INFO)

    def warn(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.WARN)

    def error(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.ERROR)

    @contextmanager
    def session_context(self, session_id: str) -> Iterator[CoordinatorLogger]:
        """
        Tag every entry written inside the block with ``session_id``.

        Example:
            with logger.session_context("sess_001") as log:
                log.info("ticket_assigned", {"ticket": 42})
        """
        previous = self._current_session_id
        self._current_session_id = session_id
        self.info("session_start", {"session_id": session_id})
        try:
            yield self
        finally:
            self.info("session_end", {"session_id": session_id})
            self._current_session_id = previous

    def read_logs(
        self,
        date: Optional[str] = None,
        level: Optional[str] = None,
        event_type: Optional[str] = None,
        session_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Read log entries with optional filtering.

        Args:
            date: Date string (YYYY-MM-DD) to read. If None, reads today's logs.
            level: Filter by log level.
            event_type: Filter by event type.
            session_id: Filter by session ID.
            limit: Maximum number of entries to return.

        Returns:
            List of log entries matching the filters, oldest first.
        """
        if date is None:
            date = datetime.now(timezone.utc).strftime("%Y-%m-%d")

        log_path = self._log_path_for(date)
        if not log_path.exists():
            return []

        entries = []
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue

                if level and entry.get("level") != level:
                    continue
                if event_type and entry.get("event_type") != event_type:
                    continue
                if session_id and entry.get("session_id") != session_id:
                    continue

                entries.append(entry)
                if limit and len(entries) >= limit:
                    break

        return entries

    def get_log_files(self) -> list[Path]:
        """All log files for this agent, newest first."""
        if not self.logs_path.exists():
            return []
        safe_id = self.agent_id.replace("/", "_")
        files = list(self.logs_path.glob(f"{safe_id}-*.jsonl"))
        files.sort(reverse=True)
        return files


# Module-level logger cache
_logger_cache: dict[str, CoordinatorLogger] = {}


def get_logger(agent_id: str, config: CoordinatorConfig) -> CoordinatorLogger:
    """
    Get or create the logger for an agent.

    Args:
        agent_id: The agent identifier.
        config: Configuration providing the logs directory.

    Returns:
        CoordinatorLogger instance for the agent.
    """
    key = f"{config.logs_path}:{agent_id}"
    if key not in _logger_cache:
        _logger_cache[key] = CoordinatorLogger.from_config(agent_id, config)
    return _logger_cache[key]


def clear_logger_cache() -> None:
    """Clear the logger cache. Useful for testing."""
    global _logger_cache
    _logger_cache = {}
