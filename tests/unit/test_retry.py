"""Tests for the retry policy and RetryingGateway."""

import random
from datetime import timedelta

import pytest

from forge_coordinator.config import RetryConfig
from forge_coordinator.errors import (
    ConflictError,
    FatalForgeError,
    ForbiddenError,
    MalformedResponse,
    NotFoundError,
    RateLimitExhausted,
    RetryBudgetExhausted,
    TransientError,
)
from forge_coordinator.models import utc_now
from forge_coordinator.retry import RetryingGateway, RetryPolicy


class SleepRecorder:

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def gateway(forge, sleeps):
    return RetryingGateway(forge, RetryPolicy(jitter=False), sleep=sleeps)


# ============================================================================
# Back-off schedule
# ============================================================================


class TestRetryPolicy:

    def test_exponential_backoff_is_capped(self):
        policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=5.0, jitter=False)
        assert [policy.backoff(n) for n in (1, 2, 3, 4, 5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_stays_within_half_to_full(self):
        policy = RetryPolicy(base_delay_seconds=4.0, jitter=True)
        rng = random.Random(7)
        for _ in range(20):
            assert 2.0 <= policy.backoff(1, rng) <= 4.0

    def test_from_config(self):
        policy = RetryPolicy.from_config(RetryConfig(max_attempts=5, jitter=False))
        assert policy.max_attempts == 5
        assert policy.jitter is False


# ============================================================================
# Error-class behaviour
# ============================================================================


class TestRetryingGateway:

    async def test_transient_failure_recovers(self, forge, gateway, sleeps, target):
        forge.add_ticket(1)
        forge.fail("get_ticket", TransientError("timeout"), times=2)

        ticket = await gateway.get_ticket(target, 1)

        assert ticket.id == 1
        assert forge.count("get_ticket") == 3
        assert sleeps.delays == [0.5, 1.0]
        assert gateway.stats.recovered_operations == 1
        assert gateway.stats.failed == 2
        assert gateway.stats.successful == 1

    async def test_transient_budget_exhausted(self, forge, gateway, target):
        forge.add_ticket(1)
        forge.fail("get_ticket", TransientError("timeout", entity="#1"), times=-1)

        with pytest.raises(RetryBudgetExhausted) as exc_info:
            await gateway.get_ticket(target, 1)

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, TransientError)
        assert forge.count("get_ticket") == 3

    async def test_total_deadline_cuts_retries_short(self, forge, sleeps, target):
        forge.add_ticket(1)
        forge.fail("get_ticket", TransientError("timeout"), times=-1)
        policy = RetryPolicy(max_attempts=10, base_delay_seconds=10, jitter=False,
                             total_deadline_seconds=5)
        gateway = RetryingGateway(forge, policy, sleep=sleeps)

        with pytest.raises(RetryBudgetExhausted):
            await gateway.get_ticket(target, 1)
        assert forge.count("get_ticket") == 1
        assert sleeps.delays == []

    @pytest.mark.parametrize("error", [
        NotFoundError("gone"),
        ForbiddenError("bad token"),
        MalformedResponse("not json"),
        FatalForgeError("unexpected"),
    ])
    async def test_non_retryable_errors_surface_immediately(self, forge, gateway, sleeps, target, error):
        assert not error.should_retry
        forge.add_ticket(1)
        forge.fail("get_ticket", error)

        with pytest.raises(type(error)):
            await gateway.get_ticket(target, 1)
        assert forge.count("get_ticket") == 1
        assert sleeps.delays == []

    async def test_conflict_rereads_then_retries_once(self, forge, gateway, target):
        forge.add_ticket(1)
        forge.fail("add_label", ConflictError("stale"))

        await gateway.add_label(target, 1, "agent001")

        assert forge.count("add_label") == 2
        assert forge.count("get_ticket") == 1
        assert "agent001" in forge.tickets[1].labels

    async def test_repeated_conflict_surfaces(self, forge, gateway, target):
        forge.add_ticket(1)
        forge.fail("add_label", ConflictError("stale"), times=2)

        with pytest.raises(ConflictError):
            await gateway.add_label(target, 1, "agent001")
        assert forge.count("add_label") == 2

    async def test_rate_limit_waits_for_reset_once(self, forge, gateway, sleeps, target):
        forge.add_ticket(1)
        resets_at = utc_now() + timedelta(seconds=30)
        forge.fail("get_ticket", RateLimitExhausted("quota", resets_at=resets_at))

        await gateway.get_ticket(target, 1)

        assert len(sleeps.delays) == 1
        assert 25 < sleeps.delays[0] <= 30

    async def test_rate_limit_past_deadline_surfaces(self, forge, gateway, target):
        forge.add_ticket(1)
        resets_at = utc_now() + timedelta(hours=1)
        forge.fail("get_ticket", RateLimitExhausted("quota", resets_at=resets_at))

        with pytest.raises(RateLimitExhausted):
            await gateway.get_ticket(target, 1)

    async def test_attempt_log_records_each_attempt(self, forge, gateway, target):
        forge.add_ticket(1)
        forge.fail("get_ticket", TransientError("timeout"))

        await gateway.get_ticket(target, 1)

        records = gateway.recent_attempts()
        assert [(r.attempt, r.outcome, r.error_class) for r in records] == [
            (1, "failure", "TRANSIENT"),
            (2, "success", None),
        ]
        assert gateway.recent_attempts(limit=1) == records[-1:]
        assert gateway.stats.success_rate == 0.5
