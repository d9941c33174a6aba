"""Tests for the forge error taxonomy and HTTP status classification."""

from datetime import datetime, timezone

import pytest

from forge_coordinator.errors import (
    ConflictError,
    Escalated,
    ForbiddenError,
    ForgeErrorType,
    IllegalTransition,
    NotFoundError,
    RateLimitExhausted,
    RetryBudgetExhausted,
    TransientError,
    classify_forge_status,
    error_for,
)


# ============================================================================
# classify_forge_status
# ============================================================================


class TestClassifyForgeStatus:
    """HTTP responses map onto the error taxonomy."""

    @pytest.mark.parametrize("status", [200, 201, 204, 304])
    def test_success_is_not_an_error(self, status):
        assert classify_forge_status(status) is None

    @pytest.mark.parametrize("status", [500, 502, 503, 504, 408])
    def test_server_errors_are_transient(self, status):
        assert classify_forge_status(status) == ForgeErrorType.TRANSIENT

    def test_429_is_rate_limited(self):
        assert classify_forge_status(429) == ForgeErrorType.RATE_LIMITED

    def test_403_with_zero_remaining_is_rate_limited(self):
        headers = {"x-ratelimit-remaining": "0"}
        assert classify_forge_status(403, headers) == ForgeErrorType.RATE_LIMITED

    def test_403_with_retry_after_is_rate_limited(self):
        assert classify_forge_status(403, {"retry-after": "30"}) == ForgeErrorType.RATE_LIMITED

    def test_plain_403_is_forbidden(self):
        headers = {"x-ratelimit-remaining": "4999"}
        assert classify_forge_status(403, headers) == ForgeErrorType.FORBIDDEN

    def test_401_is_forbidden(self):
        assert classify_forge_status(401) == ForgeErrorType.FORBIDDEN

    @pytest.mark.parametrize("status", [404, 410])
    def test_missing_entities_are_not_found(self, status):
        assert classify_forge_status(status) == ForgeErrorType.NOT_FOUND

    @pytest.mark.parametrize("status", [409, 412, 422])
    def test_precondition_failures_are_conflicts(self, status):
        assert classify_forge_status(status) == ForgeErrorType.CONFLICT

    def test_unexpected_client_error_is_fatal(self):
        assert classify_forge_status(418) == ForgeErrorType.FATAL


# ============================================================================
# Error classes
# ============================================================================


class TestForgeErrors:

    def test_retryable_classes(self):
        assert TransientError("x").should_retry
        assert ConflictError("x").should_retry
        assert RateLimitExhausted("x").should_retry
        assert not NotFoundError("x").should_retry
        assert not ForbiddenError("x").should_retry

    def test_forbidden_requires_operator(self):
        assert ForbiddenError("bad token").requires_operator
        assert not TransientError("timeout").requires_operator

    def test_message_names_entity_and_class(self):
        error = NotFoundError("gone", operation="get_ticket", entity="#42")
        assert "#42" in str(error)
        assert "NOT_FOUND" in str(error)

    def test_error_for_builds_matching_subclass(self):
        assert isinstance(error_for(ForgeErrorType.CONFLICT, "x"), ConflictError)
        limited = error_for(ForgeErrorType.RATE_LIMITED, "x", status_code=429)
        assert isinstance(limited, RateLimitExhausted)
        assert limited.status_code == 429

    def test_rate_limit_carries_reset(self):
        reset = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert RateLimitExhausted("slow down", resets_at=reset).resets_at == reset

    def test_retry_budget_reports_last_error_class(self):
        error = RetryBudgetExhausted("assign_ticket", 3, TransientError("503"))
        assert error.error_type == ForgeErrorType.TRANSIENT
        assert "3 attempt" in str(error)

    def test_illegal_transition_names_event_and_state(self):
        error = IllegalTransition("idle", "StartWork")
        assert "StartWork" in str(error)

    def test_escalated_uses_reason(self):
        error = Escalated("agent001", reason="3 failed recovery attempts")
        assert error.reason == "3 failed recovery attempts"
        assert "agent001" in str(error)
