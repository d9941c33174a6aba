"""
Error taxonomy for the forge coordinator.

This module provides:
- ForgeErrorType enum for categorizing forge failures
- ForgeError and its subclasses, raised by gateways
- classify_forge_status() for mapping HTTP responses onto the taxonomy
- Coordinator-level errors (retry exhaustion, illegal transitions, escalation)
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Mapping, Optional

if TYPE_CHECKING:
    from forge_coordinator.drift import Drift


class ForgeErrorType(Enum):
    """
    Classification of forge call failures.

    The retry layer keys its policy off this value.
    """

    TRANSIENT = auto()      # Timeout, 5xx, dropped connection
    RATE_LIMITED = auto()   # Quota exhausted, resets at a known instant
    CONFLICT = auto()       # Stale state or failed precondition
    NOT_FOUND = auto()      # Ticket, branch or PR is gone
    FORBIDDEN = auto()      # Auth or permission problem
    MALFORMED = auto()      # Unparseable response
    FATAL = auto()          # Unrecoverable configuration


class ForgeError(Exception):
    """
    Base exception for forge gateway errors.

    Carries the error class plus enough context (operation, entity) for
    user-visible failures to name the offending entity.
    """

    error_type: ForgeErrorType = ForgeErrorType.FATAL

    def __init__(
        self,
        message: str,
        operation: str = "",
        entity: str = "",
        status_code: Optional[int] = None,
        error_type: Optional[ForgeErrorType] = None,
    ) -> None:
        super().__init__(message)
        if error_type is not None:
            self.error_type = error_type
        self.operation = operation
        self.entity = entity
        self.status_code = status_code

    @property
    def should_retry(self) -> bool:
        """Check if this error is worth retrying."""
        return self.error_type in (
            ForgeErrorType.TRANSIENT,
            ForgeErrorType.RATE_LIMITED,
            ForgeErrorType.CONFLICT,
        )

    @property
    def requires_operator(self) -> bool:
        """Check if this error needs a human to fix credentials or config."""
        return self.error_type in (ForgeErrorType.FORBIDDEN, ForgeErrorType.FATAL)

    def __str__(self) -> str:
        base = super().__str__()
        if self.entity:
            return f"{base} [{self.error_type.name} on {self.entity}]"
        return f"{base} [{self.error_type.name}]"


class TransientError(ForgeError):
    """Raised for timeouts, server errors and dropped connections."""

    error_type = ForgeErrorType.TRANSIENT


class RateLimitExhausted(ForgeError):
    """Raised when the forge quota is spent until ``resets_at``."""

    error_type = ForgeErrorType.RATE_LIMITED

    def __init__(
        self,
        message: str,
        resets_at: Optional[datetime] = None,
        operation: str = "",
        entity: str = "",
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, operation=operation, entity=entity, status_code=status_code)
        self.resets_at = resets_at


class ConflictError(ForgeError):
    """Raised when forge state does not match the caller's precondition."""

    error_type = ForgeErrorType.CONFLICT


class NotFoundError(ForgeError):
    """Raised when the addressed ticket, branch or PR does not exist."""

    error_type = ForgeErrorType.NOT_FOUND


class ForbiddenError(ForgeError):
    """Raised on authentication or permission failures."""

    error_type = ForgeErrorType.FORBIDDEN


class MalformedResponse(ForgeError):
    """Raised when a forge response cannot be decoded."""

    error_type = ForgeErrorType.MALFORMED


class FatalForgeError(ForgeError):
    """Raised when the gateway is misconfigured beyond recovery."""

    error_type = ForgeErrorType.FATAL


_ERROR_CLASSES: dict[ForgeErrorType, type[ForgeError]] = {
    ForgeErrorType.TRANSIENT: TransientError,
    ForgeErrorType.CONFLICT: ConflictError,
    ForgeErrorType.NOT_FOUND: NotFoundError,
    ForgeErrorType.FORBIDDEN: ForbiddenError,
    ForgeErrorType.MALFORMED: MalformedResponse,
    ForgeErrorType.FATAL: FatalForgeError,
}


def error_for(
    error_type: ForgeErrorType,
    message: str,
    operation: str = "",
    entity: str = "",
    status_code: Optional[int] = None,
) -> ForgeError:
    """Build the ForgeError subclass that matches ``error_type``."""
    if error_type == ForgeErrorType.RATE_LIMITED:
        return RateLimitExhausted(
            message, operation=operation, entity=entity, status_code=status_code
        )
    cls = _ERROR_CLASSES[error_type]
    return cls(message, operation=operation, entity=entity, status_code=status_code)


def classify_forge_status(
    status_code: int,
    headers: Optional[Mapping[str, str]] = None,
) -> Optional[ForgeErrorType]:
    """
    Map an HTTP status onto the forge error taxonomy.

    Args:
        status_code: HTTP status returned by the forge.
        headers: Response headers, used to spot rate-limit exhaustion.

    Returns:
        The error class, or None for successful responses.
    """
    if status_code < 400:
        return None

    headers = headers or {}
    remaining = headers.get("x-ratelimit-remaining")
    if status_code == 429:
        return ForgeErrorType.RATE_LIMITED
    if status_code == 403 and (remaining == "0" or "retry-after" in headers):
        return ForgeErrorType.RATE_LIMITED
    if status_code in (401, 403):
        return ForgeErrorType.FORBIDDEN
    if status_code in (404, 410):
        return ForgeErrorType.NOT_FOUND
    if status_code in (409, 412, 422):
        return ForgeErrorType.CONFLICT
    if status_code in (408,) or status_code >= 500:
        return ForgeErrorType.TRANSIENT
    return ForgeErrorType.FATAL


class RetryBudgetExhausted(Exception):
    """Raised when a retried operation keeps failing past its budget."""

    def __init__(
        self,
        operation: str,
        attempts: int,
        last_error: Optional[ForgeError] = None,
    ) -> None:
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(
            f"{operation} failed after {attempts} attempt(s){detail}"
        )

    @property
    def error_type(self) -> ForgeErrorType:
        if self.last_error is not None:
            return self.last_error.error_type
        return ForgeErrorType.TRANSIENT


class IllegalTransition(Exception):
    """Raised when an event is not accepted in the current workflow state."""

    def __init__(self, from_state: Any, event: Any) -> None:
        self.from_state = from_state
        self.event = event
        super().__init__(
            f"Event {getattr(event, 'name', event)!s} is not valid in state "
            f"{getattr(from_state, 'kind', from_state)!s}"
        )


class Escalated(Exception):
    """Raised when the session needs an operator before it can take more work."""

    def __init__(
        self, entity: str, drift: Optional["Drift"] = None, reason: Optional[str] = None
    ) -> None:
        self.entity = entity
        self.drift = drift
        self.reason = reason or (drift.kind.value if drift is not None else "unknown")
        super().__init__(f"Escalated {entity}: {self.reason} requires manual intervention")


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""


class StateStoreError(Exception):
    """Raised when agent state cannot be persisted."""
