"""Bounded retry around every forge call.

This module provides:
- RetryPolicy, the back-off schedule and budgets for one logical operation
- AttemptRecord / RetryStats for status reporting
- RetryingGateway, a ForgeGateway that routes every call through the policy

Policy by error class:
- TRANSIENT: exponential back-off with jitter, up to max_attempts, within
  the total deadline; then RetryBudgetExhausted.
- CONFLICT: one optional re-read, one retry; then the ConflictError surfaces.
- RATE_LIMITED: sleep until the reported reset, one retry; then surfaces.
- NOT_FOUND, FORBIDDEN, MALFORMED, FATAL: surface immediately.
"""

from __future__ import annotations

import asyncio
import random
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from forge_coordinator.errors import ForgeError, ForgeErrorType, RetryBudgetExhausted
from forge_coordinator.gateway import ForgeGateway, PullRequestQuery, TicketQuery
from forge_coordinator.models import (
    CiStatus,
    ForgeTarget,
    PullRequest,
    RateLimitSnapshot,
    Ticket,
    format_timestamp,
    utc_now,
)

if TYPE_CHECKING:
    from forge_coordinator.config import RetryConfig
    from forge_coordinator.logger import CoordinatorLogger


SleepFn = Callable[[float], Awaitable[None]]

ATTEMPT_LOG_LIMIT = 1000


@dataclass
class RetryPolicy:
    """Back-off schedule and budgets for one logical operation."""

    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 30.0
    jitter: bool = True
    total_deadline_seconds: float = 120.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            base_delay_seconds=config.base_delay_seconds,
            max_delay_seconds=config.max_delay_seconds,
            jitter=config.jitter,
            total_deadline_seconds=config.total_deadline_seconds,
        )

    def backoff(self, failures: int, rng: Optional[random.Random] = None) -> float:
        """Delay before the retry that follows the ``failures``-th failure (1-based)."""
        delay = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** max(0, failures - 1)))
        if self.jitter:
            delay = (rng or random).uniform(delay / 2, delay)
        return delay


@dataclass
class AttemptRecord:
    """One attempt at one forge operation."""

    operation: str
    error_class: Optional[str]                 # None on success
    attempt: int                               # 1-based within the logical call
    outcome: str                               # "success" | "failure"
    duration_seconds: float
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "error_class": self.error_class,
            "attempt": self.attempt,
            "outcome": self.outcome,
            "duration_seconds": round(self.duration_seconds, 4),
            "timestamp": format_timestamp(self.timestamp),
        }


@dataclass
class RetryStats:
    """Aggregate counters over every attempt in the session."""

    total_attempts: int = 0
    successful: int = 0
    failed: int = 0
    recovered_operations: int = 0
    total_recovery_time: float = 0.0

    @property
    def success_rate(self) -> float:
        if self.total_attempts == 0:
            return 1.0
        return self.successful / self.total_attempts

    @property
    def average_recovery_time(self) -> float:
        """Mean seconds from first failure to success, over recovered operations."""
        if self.recovered_operations == 0:
            return 0.0
        return self.total_recovery_time / self.recovered_operations

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_attempts": self.total_attempts,
            "successful": self.successful,
            "failed": self.failed,
            "success_rate": round(self.success_rate, 4),
            "average_recovery_time": round(self.average_recovery_time, 4),
        }


class RetryingGateway(ForgeGateway):
    """
    ForgeGateway decorator applying RetryPolicy to every call.

    Shared by every coordinator in the process; the attempt log and
    counters are therefore process-wide for that gateway.
    """

    def __init__(
        self,
        gateway: ForgeGateway,
        policy: Optional[RetryPolicy] = None,
        logger: Optional[CoordinatorLogger] = None,
        sleep: SleepFn = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.inner = gateway
        self.policy = policy or RetryPolicy()
        self._logger = logger
        self._sleep = sleep
        self._rng = rng
        self.stats = RetryStats()
        self._attempts: deque[AttemptRecord] = deque(maxlen=ATTEMPT_LOG_LIMIT)

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def _record(
        self,
        operation: str,
        attempt: int,
        started: float,
        error: Optional[ForgeError] = None,
    ) -> None:
        duration = time.monotonic() - started
        record = AttemptRecord(
            operation=operation,
            error_class=error.error_type.name if error else None,
            attempt=attempt,
            outcome="failure" if error else "success",
            duration_seconds=duration,
        )
        self._attempts.append(record)
        self.stats.total_attempts += 1
        if error:
            self.stats.failed += 1
        else:
            self.stats.successful += 1

    def recent_attempts(self, limit: Optional[int] = None) -> list[AttemptRecord]:
        attempts = list(self._attempts)
        return attempts[-limit:] if limit else attempts

    async def call(
        self,
        operation: str,
        fn: Callable[..., Awaitable[Any]],
        *args: Any,
        reread: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> Any:
        """
        Run ``fn(*args)`` under the retry policy.

        Args:
            operation: Name recorded in the attempt log.
            fn: The underlying gateway coroutine function.
            reread: Optional refresh performed once before retrying a conflict.

        Raises:
            RetryBudgetExhausted: Transient failures outlasted the budget.
            ForgeError: Any non-retryable failure, a repeated conflict, or
                a rate limit that persists past one reset.
        """
        call_started = time.monotonic()
        first_failure_at: Optional[float] = None
        attempt = 0
        transient_failures = 0
        conflict_retried = False
        rate_limit_retried = False

        while True:
            attempt += 1
            started = time.monotonic()
            try:
                result = await fn(*args)
            except ForgeError as e:
                self._record(operation, attempt, started, e)
                if first_failure_at is None:
                    first_failure_at = started
                elapsed = time.monotonic() - call_started
                self._log("forge_call_failed", {
                    "operation": operation,
                    "attempt": attempt,
                    "error_class": e.error_type.name,
                    "entity": e.entity,
                    "error": str(e),
                }, level="warn")

                if not e.should_retry:
                    raise

                if e.error_type == ForgeErrorType.TRANSIENT:
                    transient_failures += 1
                    if transient_failures >= self.policy.max_attempts:
                        raise self._exhausted(operation, attempt, e)
                    delay = self.policy.backoff(transient_failures, self._rng)
                    if elapsed + delay > self.policy.total_deadline_seconds:
                        raise self._exhausted(operation, attempt, e)
                    await self._sleep(delay)
                    continue

                if e.error_type == ForgeErrorType.CONFLICT:
                    if conflict_retried:
                        raise
                    conflict_retried = True
                    if reread is not None:
                        try:
                            await reread()
                        except ForgeError as reread_error:
                            self._log("forge_reread_failed", {
                                "operation": operation,
                                "error": str(reread_error),
                            }, level="warn")
                            raise e
                    continue

                # Rate limited.
                if rate_limit_retried:
                    raise
                rate_limit_retried = True
                wait = self._seconds_until_reset(e)
                if elapsed + wait > self.policy.total_deadline_seconds:
                    raise
                self._log("rate_limit_wait", {"operation": operation, "seconds": wait})
                await self._sleep(wait)
                continue
            else:
                self._record(operation, attempt, started)
                if first_failure_at is not None:
                    self.stats.recovered_operations += 1
                    self.stats.total_recovery_time += time.monotonic() - first_failure_at
                    self._log("forge_call_recovered", {
                        "operation": operation,
                        "attempts": attempt,
                    })
                return result

    def _exhausted(self, operation: str, attempts: int, error: ForgeError) -> RetryBudgetExhausted:
        self._log("retry_budget_exhausted", {
            "operation": operation,
            "attempts": attempts,
            "entity": error.entity,
            "error_class": error.error_type.name,
        }, level="error")
        return RetryBudgetExhausted(operation, attempts, error)

    def _seconds_until_reset(self, error: ForgeError) -> float:
        resets_at = getattr(error, "resets_at", None)
        if resets_at is None:
            return self.policy.max_delay_seconds
        return max(0.0, (resets_at - utc_now()).total_seconds())

    # Delegated capability set

    async def list_tickets(
        self, target: ForgeTarget, query: Optional[TicketQuery] = None
    ) -> list[Ticket]:
        return await self.call("list_tickets", self.inner.list_tickets, target, query)

    async def get_ticket(self, target: ForgeTarget, ticket_id: int) -> Ticket:
        return await self.call("get_ticket", self.inner.get_ticket, target, ticket_id)

    def _ticket_reread(self, target: ForgeTarget, ticket_id: int) -> Callable[[], Awaitable[Any]]:
        return lambda: self.inner.get_ticket(target, ticket_id)

    async def assign_ticket(self, target: ForgeTarget, ticket_id: int, agent_id: str) -> None:
        await self.call(
            "assign_ticket", self.inner.assign_ticket, target, ticket_id, agent_id,
            reread=self._ticket_reread(target, ticket_id),
        )

    async def unassign_ticket(self, target: ForgeTarget, ticket_id: int, agent_id: str) -> None:
        await self.call(
            "unassign_ticket", self.inner.unassign_ticket, target, ticket_id, agent_id,
            reread=self._ticket_reread(target, ticket_id),
        )

    async def add_label(self, target: ForgeTarget, ticket_id: int, label: str) -> None:
        await self.call(
            "add_label", self.inner.add_label, target, ticket_id, label,
            reread=self._ticket_reread(target, ticket_id),
        )

    async def remove_label(self, target: ForgeTarget, ticket_id: int, label: str) -> None:
        await self.call(
            "remove_label", self.inner.remove_label, target, ticket_id, label,
            reread=self._ticket_reread(target, ticket_id),
        )

    async def create_ticket(
        self, target: ForgeTarget, title: str, body: str, labels: list[str]
    ) -> Ticket:
        return await self.call("create_ticket", self.inner.create_ticket, target, title, body, labels)

    async def create_branch(self, target: ForgeTarget, name: str, base: str) -> None:
        await self.call(
            "create_branch", self.inner.create_branch, target, name, base,
            reread=lambda: self.inner.branch_exists(target, name),
        )

    async def delete_branch(self, target: ForgeTarget, name: str) -> None:
        await self.call("delete_branch", self.inner.delete_branch, target, name)

    async def branch_exists(self, target: ForgeTarget, name: str) -> bool:
        return await self.call("branch_exists", self.inner.branch_exists, target, name)

    async def compare_branch(
        self, target: ForgeTarget, name: str, base: str
    ) -> tuple[int, int]:
        return await self.call("compare_branch", self.inner.compare_branch, target, name, base)

    async def list_pull_requests(
        self, target: ForgeTarget, query: Optional[PullRequestQuery] = None
    ) -> list[PullRequest]:
        return await self.call("list_pull_requests", self.inner.list_pull_requests, target, query)

    async def get_pr(self, target: ForgeTarget, number: int) -> PullRequest:
        return await self.call("get_pr", self.inner.get_pr, target, number)

    async def pr_is_mergeable(self, target: ForgeTarget, number: int) -> bool:
        return await self.call("pr_is_mergeable", self.inner.pr_is_mergeable, target, number)

    async def pr_ci_status(self, target: ForgeTarget, number: int) -> CiStatus:
        return await self.call("pr_ci_status", self.inner.pr_ci_status, target, number)

    async def rate_limit_snapshot(self, target: ForgeTarget) -> RateLimitSnapshot:
        return await self.call("rate_limit_snapshot", self.inner.rate_limit_snapshot, target)

    async def aclose(self) -> None:
        await self.inner.aclose()
