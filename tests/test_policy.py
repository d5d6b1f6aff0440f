"""
Tests for the inactivity warning policy (policy.py).

Covers:
  - Skips: no email, inactive escrow, outside the warning window
  - Window boundaries: T = 0, T = window, T = window + 1
  - Resend cooldown, strictly greater than the configured value
  - Persisting last_email_sent only after a successful send
  - Failed delivery raises, leaves the record untouched and retries next time
  - Chain read failures propagate to the caller
"""

from __future__ import annotations

import pytest

from heira_keeper.errors import LedgerConnectionError, NotificationError
from heira_keeper.models import DAY_SECONDS, EscrowRecord, EscrowStatus
from heira_keeper.policy import (
    RESEND_COOLDOWN_SECONDS,
    WARN_WINDOW_SECONDS,
    NotificationPolicy,
)
from tests.helpers import ADDR_A, FakeEscrow, FakeLedgerClient, FakeNotifier


def _register(store, email="owner@example.com", **kw) -> EscrowRecord:
    store.add(EscrowRecord(ADDR_A, "sepolia", email=email, inactivity_period=90 * DAY_SECONDS, **kw))
    return store.get(ADDR_A, "sepolia")


def _chain(**kw) -> FakeLedgerClient:
    return FakeLedgerClient("sepolia", {ADDR_A: FakeEscrow(**kw)})


# ═══════════════════════════════════════════════════════════════════
#  Defaults and helpers
# ═══════════════════════════════════════════════════════════════════

class TestPolicyDefaults:
    def test_default_window_and_cooldown(self):
        assert WARN_WINDOW_SECONDS == 7 * DAY_SECONDS
        assert RESEND_COOLDOWN_SECONDS == 6 * DAY_SECONDS

    def test_in_window_bounds(self, policy):
        assert not policy.in_window(0)
        assert policy.in_window(1)
        assert policy.in_window(WARN_WINDOW_SECONDS)
        assert not policy.in_window(WARN_WINDOW_SECONDS + 1)

    def test_cooldown_never_sent(self, policy):
        rec = EscrowRecord(ADDR_A, "sepolia", email="a@b.com")
        assert policy.cooldown_elapsed(rec, 0)

    def test_cooldown_is_strict(self, policy):
        rec = EscrowRecord(ADDR_A, "sepolia", email="a@b.com", last_email_sent=0)
        boundary = RESEND_COOLDOWN_SECONDS * 1000
        assert not policy.cooldown_elapsed(rec, boundary)
        assert policy.cooldown_elapsed(rec, boundary + 1)

    def test_now_ms_follows_clock(self, policy, clock):
        before = policy.now_ms()
        clock.advance(2.5)
        assert policy.now_ms() - before == 2500


# ═══════════════════════════════════════════════════════════════════
#  evaluate()
# ═══════════════════════════════════════════════════════════════════

class TestEvaluate:
    @pytest.mark.asyncio
    async def test_no_email_skips_without_chain_reads(self, store, policy, notifier):
        rec = _register(store, email=None)
        client = _chain(time_remaining=3 * DAY_SECONDS)
        assert await policy.evaluate(rec, client) is False
        assert client.calls == []
        assert notifier.attempts == 0

    @pytest.mark.asyncio
    async def test_inactive_escrow_never_warned(self, store, policy, notifier):
        rec = _register(store)
        client = _chain(status=EscrowStatus.INACTIVE, time_remaining=DAY_SECONDS)
        assert await policy.evaluate(rec, client) is False
        assert client.count("time_until_execution") == 0
        assert notifier.attempts == 0

    @pytest.mark.asyncio
    async def test_warns_inside_window(self, store, policy, notifier, clock):
        rec = _register(store)
        client = _chain(time_remaining=3 * DAY_SECONDS)
        assert await policy.evaluate(rec, client) is True

        assert len(notifier.sent) == 1
        warning = notifier.sent[0]
        assert warning.to == "owner@example.com"
        assert warning.escrow_address == ADDR_A
        assert warning.network == "sepolia"
        assert warning.days_remaining == pytest.approx(3.0)

        expected = int(clock.now * 1000)
        assert rec.last_email_sent == expected
        assert store.get(ADDR_A, "sepolia").last_email_sent == expected

    @pytest.mark.asyncio
    async def test_outside_window_no_warning(self, store, policy, notifier):
        rec = _register(store)
        client = _chain(time_remaining=WARN_WINDOW_SECONDS + 1)
        assert await policy.evaluate(rec, client) is False
        assert notifier.attempts == 0
        assert store.get(ADDR_A, "sepolia").last_email_sent is None

    @pytest.mark.asyncio
    async def test_window_edge_is_inclusive(self, store, policy, notifier):
        rec = _register(store)
        client = _chain(time_remaining=WARN_WINDOW_SECONDS)
        assert await policy.evaluate(rec, client) is True

    @pytest.mark.asyncio
    async def test_zero_remaining_not_warned(self, store, policy, notifier):
        rec = _register(store)
        client = _chain(time_remaining=0)
        assert await policy.evaluate(rec, client) is False
        assert notifier.attempts == 0

    @pytest.mark.asyncio
    async def test_recent_warning_suppresses_resend(self, store, policy, notifier, clock):
        rec = _register(store, last_email_sent=int(clock.now * 1000) - 2 * DAY_SECONDS * 1000)
        client = _chain(time_remaining=3 * DAY_SECONDS)
        assert await policy.evaluate(rec, client) is False
        assert notifier.attempts == 0

    @pytest.mark.asyncio
    async def test_old_warning_allows_resend(self, store, policy, notifier, clock):
        old = int(clock.now * 1000) - 8 * DAY_SECONDS * 1000
        rec = _register(store, last_email_sent=old)
        client = _chain(time_remaining=3 * DAY_SECONDS)
        assert await policy.evaluate(rec, client) is True
        assert store.get(ADDR_A, "sepolia").last_email_sent > old

    @pytest.mark.asyncio
    async def test_at_most_one_warning_per_cooldown(self, store, policy, notifier, clock):
        """Ticks every five minutes for a week send exactly two warnings."""
        _register(store)
        client = _chain(time_remaining=WARN_WINDOW_SECONDS)
        for _ in range(7 * 24 * 12):
            client.escrows[ADDR_A].time_remaining = max(
                1, client.escrows[ADDR_A].time_remaining - 300
            )
            await policy.evaluate(store.get(ADDR_A, "sepolia"), client)
            clock.advance(300)
        assert len(notifier.sent) == 2

    @pytest.mark.asyncio
    async def test_failed_send_leaves_timestamp(self, store, clock):
        notifier = FakeNotifier(fail=True)
        policy = NotificationPolicy(store, notifier, clock=clock)
        rec = _register(store)
        client = _chain(time_remaining=3 * DAY_SECONDS)

        with pytest.raises(NotificationError):
            await policy.evaluate(rec, client)
        assert notifier.attempts == 1
        assert rec.last_email_sent is None
        assert store.get(ADDR_A, "sepolia").last_email_sent is None

        # next tick retries
        notifier.fail = False
        assert await policy.evaluate(store.get(ADDR_A, "sepolia"), client) is True
        assert notifier.attempts == 2

    @pytest.mark.asyncio
    async def test_chain_error_propagates(self, store, policy, notifier):
        rec = _register(store)
        client = _chain(time_remaining=3 * DAY_SECONDS)
        client.failures["time_until_execution"] = LedgerConnectionError("rpc down")
        with pytest.raises(LedgerConnectionError):
            await policy.evaluate(rec, client)
        assert notifier.attempts == 0

    @pytest.mark.asyncio
    async def test_custom_window_and_cooldown(self, store, notifier, clock):
        policy = NotificationPolicy(
            store, notifier, warn_window=DAY_SECONDS, resend_cooldown=3600, clock=clock
        )
        rec = _register(store)
        client = _chain(time_remaining=2 * DAY_SECONDS)
        assert await policy.evaluate(rec, client) is False

        client.escrows[ADDR_A].time_remaining = DAY_SECONDS // 2
        assert await policy.evaluate(rec, client) is True
        clock.advance(3601)
        assert await policy.evaluate(rec, client) is True
        assert len(notifier.sent) == 2
