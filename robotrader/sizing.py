"""
Position sizing for detected rebalance events.

The allocation policy is an equal split: each side's capital is divided
evenly among that side's events. Capital itself depends on which strategies
rebalance on the same day (see resolve_capital).
"""

import logging
from datetime import date
from typing import Iterable, List

from .calendars import is_rebalance_day
from .models import CapitalAllocation, Order, OrderSide, RebalanceEvent, StrategyProfile, count_sides

logger = logging.getLogger(__name__)


def resolve_capital(
    profile: StrategyProfile,
    peers: Iterable[StrategyProfile],
    today: date,
) -> CapitalAllocation:
    """
    Capital a strategy deploys on ``today``.

    The shared allocation applies when at least one other strategy also
    rebalances today, the solo allocation when it rebalances alone, and
    nothing when ``today`` is not its rebalance day.
    """
    if not is_rebalance_day(profile.rebalance_rule, today):
        return CapitalAllocation()

    others_today = [
        p for p in peers
        if p.name != profile.name and is_rebalance_day(p.rebalance_rule, today)
    ]
    if others_today:
        return profile.capital_shared
    return profile.capital_solo


class PositionSizer:
    """Assigns a target market value to every event."""

    def size(
        self,
        events: List[RebalanceEvent],
        buy_capital: float,
        sell_capital: float,
    ) -> List[RebalanceEvent]:
        """
        Split buy and sell capital evenly over same-side events.

        A side without events gets a per-position value of 0.0. Events are
        updated in place and returned for convenience.
        """
        buy_count, sell_count = count_sides(events)
        buy_value = buy_capital / buy_count if buy_count > 0 else 0.0
        sell_value = sell_capital / sell_count if sell_count > 0 else 0.0

        for event in events:
            event.pos_market_value = buy_value if event.side is OrderSide.BUY else sell_value

        logger.info(
            "Sized %d buy(s) at $%.2f and %d sell(s) at $%.2f",
            buy_count, buy_value, sell_count, sell_value,
        )
        return events


def build_orders(events: Iterable[RebalanceEvent]) -> List[Order]:
    """Convert sized events 1:1 into orders, dropping zero-valued ones."""
    orders = []
    for event in events:
        if event.pos_market_value <= 0:
            logger.info("Dropping zero-sized %s %s", event.side.name, event.ticker)
            continue
        orders.append(Order.from_event(event))
    return orders
