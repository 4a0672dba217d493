"""
Tests for position sizing and capital resolution.
"""

from datetime import date

import pytest

from robotrader.models import CapitalAllocation, OrderSide, RebalanceEvent
from robotrader.sizing import PositionSizer, build_orders, resolve_capital


def make_event(ticker, side=OrderSide.BUY, price=None) -> RebalanceEvent:
    return RebalanceEvent(
        transaction_id=f"tr-{ticker}",
        side=side,
        action_date="2025-10-13",
        ticker=ticker,
        company_name=f"{ticker} Corp.",
        price=price,
    )


class TestPositionSizer:
    """Equal split of capital per side."""

    def test_three_buys_one_sell(self):
        events = [
            make_event("AAPL"),
            make_event("MSFT"),
            make_event("MU"),
            make_event("NVDA", OrderSide.SELL),
        ]
        PositionSizer().size(events, buy_capital=70000, sell_capital=60000)

        for event in events[:3]:
            assert event.pos_market_value == pytest.approx(70000 / 3)
        assert events[3].pos_market_value == pytest.approx(60000)

    def test_zero_buys_does_not_divide_by_zero(self):
        events = [make_event("NVDA", OrderSide.SELL), make_event("INTC", OrderSide.SELL)]
        PositionSizer().size(events, buy_capital=70000, sell_capital=60000)
        assert [e.pos_market_value for e in events] == [30000, 30000]

    def test_zero_sell_capital_gives_zero_values(self):
        events = [make_event("NVDA", OrderSide.SELL)]
        PositionSizer().size(events, buy_capital=200000, sell_capital=0)
        assert events[0].pos_market_value == 0.0

    def test_unsized_event_has_zero_value(self):
        assert make_event("AAPL").pos_market_value == 0.0


class TestBuildOrders:
    """Tests for build_orders."""

    def test_orders_carry_known_price(self):
        event = make_event("AAPL", price="182.50")
        event.pos_market_value = 70000
        orders = build_orders([event])

        assert len(orders) == 1
        assert orders[0].ticker == "AAPL"
        assert orders[0].side is OrderSide.BUY
        assert orders[0].known_last_price == 182.5
        assert orders[0].pos_market_value == 70000

    def test_unparsable_price_becomes_none(self):
        event = make_event("AAPL", price="N/A")
        event.pos_market_value = 1000
        assert build_orders([event])[0].known_last_price is None

    def test_zero_valued_events_are_dropped(self):
        sized = make_event("AAPL")
        sized.pos_market_value = 1000
        orders = build_orders([sized, make_event("NVDA", OrderSide.SELL)])
        assert [o.ticker for o in orders] == ["AAPL"]


class TestResolveCapital:
    """Solo vs shared capital depending on which strategies rebalance today."""

    def test_weekly_alone_gets_solo(self, pqp_profile, ap_profile):
        capital = resolve_capital(pqp_profile, [pqp_profile, ap_profile], date(2025, 10, 13))
        assert capital == CapitalAllocation(buy=140000, sell=60000)

    def test_both_rebalancing_get_shared(self, pqp_profile, ap_profile):
        # 2025-12-01 is a Monday and the 1st
        today = date(2025, 12, 1)
        peers = [pqp_profile, ap_profile]
        assert resolve_capital(pqp_profile, peers, today) == CapitalAllocation(buy=70000, sell=60000)
        assert resolve_capital(ap_profile, peers, today) == CapitalAllocation(buy=70000)

    def test_monthly_alone_gets_solo(self, pqp_profile, ap_profile):
        capital = resolve_capital(ap_profile, [pqp_profile, ap_profile], date(2025, 10, 15))
        assert capital == CapitalAllocation(buy=200000)

    def test_no_capital_off_rebalance_day(self, pqp_profile, ap_profile):
        capital = resolve_capital(pqp_profile, [pqp_profile, ap_profile], date(2025, 10, 14))
        assert capital == CapitalAllocation()
