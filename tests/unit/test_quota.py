"""Tests for quota service: weekly allowance and burst limiter."""

import asyncio

import pytest

from conftest import FakeClock, make_settings
from inkframe.quota.service import QuotaLedger

WEEK = 604800


@pytest.fixture
def ledger(db, clock):
    return QuotaLedger(make_settings(weekly_generation_quota=3), db, clock=clock)


class TestReserve:
    async def test_first_reserve_starts_window(self, ledger, clock):
        decision = await ledger.reserve("alice")
        assert decision.granted is True
        assert decision.remaining == 2
        assert decision.limit == 3
        assert decision.window_reset_ts == clock.now + WEEK
        assert decision.reset_at is not None

    async def test_exhaustion_is_not_over_granted(self, ledger):
        results = [await ledger.reserve("alice") for _ in range(5)]
        assert [r.granted for r in results] == [True, True, True, False, False]
        assert results[-1].remaining == 0
        status = await ledger.peek("alice")
        assert status.remaining == 0

    async def test_users_are_independent(self, ledger):
        for _ in range(3):
            await ledger.reserve("alice")
        decision = await ledger.reserve("bob")
        assert decision.granted is True
        assert decision.remaining == 2

    async def test_window_is_fixed_from_first_use(self, ledger, clock):
        first = await ledger.reserve("alice")
        clock.advance(3600)
        second = await ledger.reserve("alice")
        assert second.window_reset_ts == first.window_reset_ts

    async def test_lapsed_window_resets(self, ledger, clock):
        for _ in range(3):
            await ledger.reserve("alice")
        assert (await ledger.reserve("alice")).granted is False

        clock.advance(WEEK)
        decision = await ledger.reserve("alice")
        assert decision.granted is True
        assert decision.remaining == 2
        assert decision.window_reset_ts == clock.now + WEEK


class TestRefund:
    async def test_refund_restores_unit(self, ledger):
        decision = await ledger.reserve("alice")
        assert await ledger.refund("alice", decision.window_reset_ts) is True
        assert (await ledger.peek("alice")).remaining == 3

    async def test_refund_never_goes_below_zero(self, ledger):
        decision = await ledger.reserve("alice")
        assert await ledger.refund("alice", decision.window_reset_ts) is True
        assert await ledger.refund("alice", decision.window_reset_ts) is False
        assert (await ledger.peek("alice")).remaining == 3

    async def test_refund_without_counter_is_noop(self, ledger):
        assert await ledger.refund("nobody") is False

    async def test_refund_after_rollover_does_not_credit_new_window(self, ledger, clock):
        old = await ledger.reserve("alice")
        clock.advance(WEEK + 1)
        await ledger.reserve("alice")

        assert await ledger.refund("alice", old.window_reset_ts) is False
        assert (await ledger.peek("alice")).remaining == 2

    async def test_refund_failure_is_logged_not_raised(self, ledger, db, caplog):
        await db.close()
        with caplog.at_level("ERROR", logger="inkframe.quota.service"):
            assert await ledger.refund("alice") is False
        assert "Failed to refund" in caplog.text


class TestPeek:
    async def test_peek_without_window(self, ledger):
        status = await ledger.peek("alice")
        assert status.remaining == 3
        assert status.limit == 3
        assert status.reset_at is None

    async def test_peek_does_not_mutate(self, ledger):
        await ledger.reserve("alice")
        for _ in range(3):
            status = await ledger.peek("alice")
        assert status.remaining == 2

    async def test_peek_after_window_lapses(self, ledger, clock):
        await ledger.reserve("alice")
        clock.advance(WEEK)
        status = await ledger.peek("alice")
        assert status.remaining == 3
        assert status.reset_at is None


class TestBurst:
    @pytest.fixture
    def burst_clock(self):
        # Aligned to the start of a 60-second window.
        return FakeClock(now=60.0 * 30_000_000)

    @pytest.fixture
    def burst_ledger(self, db, burst_clock):
        settings = make_settings(burst_limit=3, burst_window_seconds=60)
        return QuotaLedger(settings, db, clock=burst_clock)

    async def test_limit_within_window(self, burst_ledger):
        results = [await burst_ledger.check_burst("alice", "generate-comic") for _ in range(4)]
        assert [r.granted for r in results] == [True, True, True, False]
        assert results[0].remaining == 2
        assert results[3].remaining == 0

    async def test_previous_window_is_weighted(self, burst_ledger, burst_clock):
        for _ in range(4):
            await burst_ledger.check_burst("alice", "generate-comic")

        # Half way into the next window the previous 4 hits weigh 2.
        burst_clock.advance(90)
        assert (await burst_ledger.check_burst("alice", "generate-comic")).granted is True
        assert (await burst_ledger.check_burst("alice", "generate-comic")).granted is False

    async def test_old_windows_stop_counting(self, burst_ledger, burst_clock):
        for _ in range(5):
            await burst_ledger.check_burst("alice", "generate-comic")
        burst_clock.advance(180)
        decision = await burst_ledger.check_burst("alice", "generate-comic")
        assert decision.granted is True
        assert decision.remaining == 2

    async def test_scopes_are_independent(self, burst_ledger):
        for _ in range(4):
            await burst_ledger.check_burst("alice", "generate-comic")
        assert (await burst_ledger.check_burst("alice", "add-page")).granted is True
        assert (await burst_ledger.check_burst("bob", "generate-comic")).granted is True

    async def test_burst_does_not_touch_quota(self, burst_ledger):
        await burst_ledger.check_burst("alice", "generate-comic")
        status = await burst_ledger.peek("alice")
        assert status.reset_at is None

    async def test_sweep_removes_stale_windows(self, burst_ledger, burst_clock):
        await burst_ledger.check_burst("alice", "generate-comic")
        await burst_ledger.check_burst("bob", "add-page")
        assert await burst_ledger.sweep_burst_windows() == 0
        burst_clock.advance(120)
        assert await burst_ledger.sweep_burst_windows() == 2


class TestConcurrentReserve:
    async def test_last_unit_goes_to_exactly_one_caller(self, file_db, clock):
        ledger = QuotaLedger(make_settings(weekly_generation_quota=1), file_db, clock=clock)
        first, second = await asyncio.gather(ledger.reserve("alice"), ledger.reserve("alice"))
        assert sorted([first.granted, second.granted]) == [False, True]
        assert first.remaining == 0
        assert second.remaining == 0

    async def test_many_callers_never_over_grant(self, file_db, clock):
        ledger = QuotaLedger(make_settings(weekly_generation_quota=5), file_db, clock=clock)
        results = await asyncio.gather(*(ledger.reserve("alice") for _ in range(12)))
        assert sum(r.granted for r in results) == 5
        assert (await ledger.peek("alice")).remaining == 0
