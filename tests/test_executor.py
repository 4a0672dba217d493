"""
Tests for the time-boxed TradeExecutor loop.

Tests cover:
- Exactly-once submission per session
- Deadline termination on a fake monotonic clock
- Sanity cap on the number of events
- Forced single-iteration runs
- Run summary notification
"""

import asyncio
from unittest.mock import AsyncMock

from robotrader.executor import TradeExecutor
from robotrader.models import OrderSide, RebalanceEvent


def make_event(ticker, side=OrderSide.BUY, price="100.00") -> RebalanceEvent:
    return RebalanceEvent(
        transaction_id=f"tr-{ticker}",
        side=side,
        action_date="2025-10-13",
        ticker=ticker,
        company_name=f"{ticker} Corp.",
        price=price,
    )


class ScriptedDetector:
    """Returns one scripted event list per detect() call, then nothing."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0
        self.close = AsyncMock()

    async def detect(self, session):
        self.calls += 1
        events = self.results.pop(0) if self.results else []
        return session.target_date_str, events


class FakeClock:
    """Monotonic clock advanced only by the injected sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def make_executor(profile, session, detector, forced=False, alert_manager=None):
    clock = FakeClock()
    gateway = AsyncMock()
    gateway.submit.return_value = []
    executor = TradeExecutor(
        profile=profile,
        session=session,
        detector=detector,
        gateway=gateway,
        alert_manager=alert_manager,
        forced=forced,
        clock=clock,
        sleep=clock.sleep,
    )
    return executor, gateway, clock


class TestExactlyOnce:
    """A session submits at most once."""

    def test_events_on_two_ticks_submit_once(self, pqp_profile, pqp_session):
        detector = ScriptedDetector(
            [make_event("AAPL"), make_event("NVDA", OrderSide.SELL)],
            [make_event("MSFT")],
        )
        executor, gateway, _ = make_executor(pqp_profile, pqp_session, detector)

        asyncio.run(executor.run())

        gateway.submit.assert_awaited_once()
        assert executor.polls == 1
        assert pqp_session.has_traded

    def test_repeated_poll_does_not_resubmit(self, pqp_profile, pqp_session):
        detector = ScriptedDetector([make_event("AAPL")], [make_event("MSFT")])
        executor, gateway, _ = make_executor(pqp_profile, pqp_session, detector)

        async def two_polls():
            return await executor.poll_once(), await executor.poll_once()

        assert asyncio.run(two_polls()) == (True, True)
        gateway.submit.assert_awaited_once()

    def test_orders_are_sized_from_session_capital(self, pqp_profile, pqp_session):
        detector = ScriptedDetector([
            make_event("AAPL"),
            make_event("MSFT"),
            make_event("NVDA", OrderSide.SELL),
        ])
        executor, gateway, _ = make_executor(pqp_profile, pqp_session, detector)

        asyncio.run(executor.run())

        orders, is_simulation = gateway.submit.await_args[0]
        assert is_simulation is True
        assert [o.pos_market_value for o in orders] == [35000, 35000, 60000]
        assert gateway.submit.await_args.kwargs["strategy"] == "PQP"


class TestDeadline:
    """Polling stops at the deadline."""

    def test_simulation_deadline(self, pqp_profile, pqp_session):
        detector = ScriptedDetector()
        executor, gateway, clock = make_executor(pqp_profile, pqp_session, detector)

        asyncio.run(executor.run())

        # 30 s deadline, 3.75 s between polls
        assert executor.polls == 8
        assert clock.sleeps == [3.75] * 8
        gateway.submit.assert_not_awaited()
        assert not pqp_session.has_traded
        assert "Deadline reached" in pqp_session.run_log

    def test_live_mode_uses_live_settings(self, pqp_profile, pqp_session):
        pqp_session.is_simulation = False
        executor, _, _ = make_executor(pqp_profile, pqp_session, ScriptedDetector())
        assert executor.deadline_seconds == 270
        assert executor.poll_interval_seconds == 0.0

    def test_detector_closed_at_end(self, pqp_profile, pqp_session):
        detector = ScriptedDetector()
        executor, _, _ = make_executor(pqp_profile, pqp_session, detector)
        asyncio.run(executor.run())
        detector.close.assert_awaited_once()


class TestSanityCap:
    """Too many events skip trading for that poll."""

    def test_over_cap_then_valid(self, ap_profile, pqp_session):
        detector = ScriptedDetector(
            [make_event("A"), make_event("B"), make_event("C")],
            [make_event("MU")],
        )
        executor, gateway, _ = make_executor(ap_profile, pqp_session, detector)

        asyncio.run(executor.run())

        assert executor.polls == 2
        orders, _ = gateway.submit.await_args[0]
        assert [o.ticker for o in orders] == ["MU"]
        assert "exceed the limit of 2" in pqp_session.run_log


class TestForcedRun:
    """Operator dry runs poll exactly once."""

    def test_forced_single_iteration(self, pqp_profile, pqp_session):
        detector = ScriptedDetector()
        executor, _, clock = make_executor(pqp_profile, pqp_session, detector, forced=True)

        asyncio.run(executor.run())

        assert detector.calls == 1
        assert clock.sleeps == []


class TestRunSummary:
    """The run log is mailed at the end."""

    def test_summary_sent(self, pqp_profile, pqp_session):
        alert_manager = AsyncMock()
        detector = ScriptedDetector([make_event("AAPL")])
        executor, _, _ = make_executor(pqp_profile, pqp_session, detector, alert_manager=alert_manager)

        asyncio.run(executor.run())

        recipient, subject, body = alert_manager.send_run_summary.await_args[0]
        assert recipient is None
        assert "PQP" in subject
        assert "Run ended" in body
        assert "BUY AAPL" in body
