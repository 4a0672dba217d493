"""
Core data types for RoboTrader.

RebalanceEvent is what the detector finds, Order is what the gateway trades,
StrategyProfile is the immutable per-strategy configuration both are
parameterized by.
"""

import math
from dataclasses import dataclass, field
from datetime import time as dt_time
from enum import Enum
from typing import Any, Optional, Tuple, Union


Weight = Union[float, str]


class OrderSide(Enum):
    """Trade direction."""
    BUY = "buy"
    SELL = "sell"

    @classmethod
    def from_action(cls, action: Any) -> Optional["OrderSide"]:
        """Map a data-source action string to a side, None if unknown."""
        if not isinstance(action, str):
            return None
        try:
            return cls(action.strip().lower())
        except ValueError:
            return None

    @property
    def ib_action(self) -> str:
        return "BUY" if self is OrderSide.BUY else "SELL"


class RebalanceRule(Enum):
    """How a strategy's rebalance date is derived from the calendar."""
    WEEKLY_MONDAY = "weekly_monday"
    MONTHLY_1ST_15TH = "monthly_1st_15th"


class EndpointKind(Enum):
    """Response layout of a rebalance data endpoint."""
    TRANSACTIONS = "transactions"  # portfolio history: buys and sells
    ARTICLES = "articles"  # analysis articles: primary tickers are buys


@dataclass(frozen=True)
class CapitalAllocation:
    """Dollar amounts to deploy on each side in one rebalance."""
    buy: float = 0.0
    sell: float = 0.0


@dataclass(frozen=True)
class StrategyProfile:
    """Immutable configuration of one rebalance-following strategy."""
    name: str
    timezone: str
    run_times: Tuple[dt_time, ...]
    rebalance_rule: RebalanceRule
    primary_endpoint: str
    primary_kind: EndpointKind = EndpointKind.TRANSACTIONS
    secondary_endpoint: Optional[str] = None
    live_time: dt_time = dt_time(12, 0, 0)
    live_tolerance_seconds: int = 55
    poll_deadline_live_seconds: float = 4 * 60 + 30
    poll_deadline_simulation_seconds: float = 30.0
    sleep_live_seconds: float = 0.0
    sleep_simulation_seconds: float = 3.75
    capital_solo: CapitalAllocation = CapitalAllocation()
    capital_shared: CapitalAllocation = CapitalAllocation()
    max_events: int = 14
    archive_prefix: str = ""
    notify_email: Optional[str] = None

    @property
    def file_prefix(self) -> str:
        return self.archive_prefix or self.name.lower()


@dataclass
class RebalanceEvent:
    """
    One detected buy/sell signal.

    Everything but pos_market_value is fixed at construction; the market
    value stays 0.0 until the position sizer assigns it.
    """
    transaction_id: str
    side: OrderSide
    action_date: str
    ticker: str
    company_name: str
    price: Optional[str] = None
    starting_weight: Optional[Weight] = None
    new_weight: Optional[Weight] = None
    pos_market_value: float = 0.0

    @property
    def known_price(self) -> Optional[float]:
        """Last price published with the event, None if absent or unparsable."""
        if self.price is None:
            return None
        try:
            value = float(self.price)
        except (TypeError, ValueError):
            return None
        if math.isnan(value):
            return None
        return value


@dataclass
class Order:
    """Normalized trade instruction consumed by the order gateway."""
    side: OrderSide
    ticker: str
    company_name: str
    pos_market_value: float
    known_last_price: Optional[float] = None

    @classmethod
    def from_event(cls, event: RebalanceEvent) -> "Order":
        return cls(
            side=event.side,
            ticker=event.ticker,
            company_name=event.company_name,
            pos_market_value=event.pos_market_value,
            known_last_price=event.known_price,
        )

    def describe(self) -> str:
        known = f"{self.known_last_price:.4f}" if self.known_last_price is not None else "N/A"
        return (
            f"{self.side.name} {self.ticker} ({self.company_name}, "
            f"known_last_price: ${known}, target posValue: ${self.pos_market_value:,.2f})"
        )


def count_sides(events) -> Tuple[int, int]:
    """Return (buy_count, sell_count) for a sequence of events or orders."""
    buys = sum(1 for e in events if e.side is OrderSide.BUY)
    sells = sum(1 for e in events if e.side is OrderSide.SELL)
    return buys, sells
