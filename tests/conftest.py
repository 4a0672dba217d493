"""
Shared pytest fixtures for RoboTrader tests.

These fixtures provide realistic data-source payloads, strategy profiles and
ib_insync stand-ins so that no test touches the network or a broker.
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import date, time as dt_time
from typing import Any, Dict, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from robotrader.detector import DetectorSettings
from robotrader.execution_ibkr import BrokerConnection, OrderGateway
from robotrader.models import (
    CapitalAllocation,
    EndpointKind,
    RebalanceRule,
    StrategyProfile,
)
from robotrader.session import TradingSession


PQP_TRANSACTIONS_URL = "https://example.test/api/v3/quant_pro_portfolio/transactions"
PQP_ARTICLES_URL = "https://example.test/api/v3/quant_pro_portfolio/articles"
AP_ARTICLES_URL = "https://example.test/api/v3/service_plans/458/marketplace/articles"


def compact_json(payload: Dict[str, Any]) -> str:
    """Serialize without spaces, the way the data source does."""
    return json.dumps(payload, separators=(",", ":"))


# ============================================================================
# Strategy profiles and sessions
# ============================================================================

@pytest.fixture
def pqp_profile() -> StrategyProfile:
    """Weekly strategy with a transactions endpoint and an articles fallback."""
    return StrategyProfile(
        name="PQP",
        timezone="America/New_York",
        run_times=(dt_time(9, 45, 30), dt_time(11, 59, 30)),
        rebalance_rule=RebalanceRule.WEEKLY_MONDAY,
        primary_endpoint=PQP_TRANSACTIONS_URL,
        primary_kind=EndpointKind.TRANSACTIONS,
        secondary_endpoint=PQP_ARTICLES_URL,
        capital_solo=CapitalAllocation(buy=140000, sell=60000),
        capital_shared=CapitalAllocation(buy=70000, sell=60000),
        max_events=14,
        archive_prefix="fast_run_pqp_portfhist",
    )


@pytest.fixture
def ap_profile() -> StrategyProfile:
    """Monthly buy-only strategy reading an articles endpoint."""
    return StrategyProfile(
        name="AP",
        timezone="America/New_York",
        run_times=(dt_time(9, 50, 30), dt_time(11, 59, 40)),
        rebalance_rule=RebalanceRule.MONTHLY_1ST_15TH,
        primary_endpoint=AP_ARTICLES_URL,
        primary_kind=EndpointKind.ARTICLES,
        capital_solo=CapitalAllocation(buy=200000),
        capital_shared=CapitalAllocation(buy=70000),
        max_events=2,
        archive_prefix="fast_run_ap_analysis",
    )


@pytest.fixture
def pqp_session() -> TradingSession:
    """Simulated PQP session for Monday 2025-10-13."""
    return TradingSession(
        strategy="PQP",
        target_date=date(2025, 10, 13),
        is_run_day=True,
        is_simulation=True,
        capital=CapitalAllocation(buy=70000, sell=60000),
    )


@pytest.fixture
def cookie_file(tmp_path):
    path = tmp_path / "fast_run_1_headers.txt"
    path.write_text("session_id=abc123; user_remember=1\n", encoding="utf-8")
    return path


@pytest.fixture
def detector_settings(tmp_path, cookie_file) -> DetectorSettings:
    return DetectorSettings(cookie_path=cookie_file, data_dir=tmp_path / "data")


# ============================================================================
# Data-source payloads
# ============================================================================

@pytest.fixture
def transactions_body() -> str:
    """
    Portfolio history on 2025-10-13:
    - buy AAPL with a published price
    - sell NVDA without a price
    - a routine "rebalance" entry that must be ignored
    - an older buy that must be filtered by date
    """
    def transaction(tr_id, action_date, action, ticker_id, rule="new", price=None):
        return {
            "id": tr_id,
            "type": "transaction",
            "attributes": {
                "actionDate": action_date,
                "action": action,
                "rule": rule,
                "price": price,
                "startingWeight": 0 if action == "buy" else "4.8",
                "newWeight": "5.0" if action == "buy" else 0,
            },
            "relationships": {"ticker": {"data": {"id": ticker_id, "type": "ticker"}}},
        }

    return compact_json({
        "data": [
            transaction("1001", "2025-10-13", "buy", "11", price="182.50"),
            transaction("1002", "2025-10-13", "sell", "12"),
            transaction("1003", "2025-10-13", "buy", "13", rule="rebalance", price="50.00"),
            transaction("0998", "2025-10-06", "buy", "13", price="49.00"),
        ],
        "included": [
            {"id": "11", "type": "ticker", "attributes": {"name": "AAPL", "companyName": "Apple Inc."}},
            {"id": "12", "type": "ticker", "attributes": {"name": "NVDA", "companyName": "NVIDIA Corporation"}},
            {"id": "13", "type": "ticker", "attributes": {"name": "MSFT", "companyName": "Microsoft Corporation"}},
        ],
    })


@pytest.fixture
def empty_transactions_body() -> str:
    """History page with records, none of them on 2025-10-13."""
    return compact_json({
        "data": [{
            "id": "0998",
            "type": "transaction",
            "attributes": {"actionDate": "2025-10-06", "action": "buy", "rule": "new", "price": "49.00"},
            "relationships": {"ticker": {"data": {"id": "13", "type": "ticker"}}},
        }],
        "included": [
            {"id": "13", "type": "ticker", "attributes": {"name": "MSFT", "companyName": "Microsoft Corporation"}},
        ],
    })


def _articles_payload(publish_on: str) -> Dict[str, Any]:
    return {
        "data": [
            {
                "id": "4830001",
                "type": "article",
                "attributes": {"publishOn": publish_on, "isPaywalled": False, "title": "New picks"},
                "relationships": {"primaryTickers": {"data": [
                    {"id": "t1", "type": "tag"},
                    {"id": "t2", "type": "tag"},
                ]}},
            },
            {
                "id": "4820000",
                "type": "article",
                "attributes": {"publishOn": "2025-10-01T12:00:05-04:00", "isPaywalled": False},
                "relationships": {"primaryTickers": {"data": [{"id": "t3", "type": "tag"}]}},
            },
        ],
        "included": [
            {"id": "t1", "type": "tag", "attributes": {"name": "MU", "company": "Micron Technology, Inc."}},
            {"id": "t2", "type": "tag", "attributes": {"name": "CLS:CA", "company": "Celestica Inc."}},
            {"id": "t3", "type": "tag", "attributes": {"name": "OLD", "company": "Old Pick Corp."}},
            {"id": "a9", "type": "author", "attributes": {"nick": "Quant Team"}},
        ],
    }


@pytest.fixture
def articles_body() -> str:
    """Articles published 2025-10-15: MU (US listing) and CLS:CA (skipped)."""
    return compact_json(_articles_payload("2025-10-15T12:00:23-04:00"))


@pytest.fixture
def pqp_articles_body() -> str:
    """Articles published on the PQP target date 2025-10-13."""
    return compact_json(_articles_payload("2025-10-13T09:31:02-04:00"))


# ============================================================================
# Mock ib_insync objects
# ============================================================================

class MockEvent:
    """Minimal eventkit.Event: supports += / -= and emit()."""

    def __init__(self):
        self.handlers = []

    def __iadd__(self, handler):
        self.handlers.append(handler)
        return self

    def __isub__(self, handler):
        self.handlers.remove(handler)
        return self

    def emit(self, *args):
        for handler in list(self.handlers):
            handler(*args)


@dataclass
class MockBar:
    """Mock RealTimeBar."""
    close: float
    open_: float = 0.0
    volume: float = 0.0


class MockBarList(list):
    """Mock RealTimeBarList with an updateEvent."""

    def __init__(self):
        super().__init__()
        self.updateEvent = MockEvent()

    def push(self, bar: MockBar) -> None:
        self.append(bar)
        self.updateEvent.emit(self, True)


def make_mock_ib(bar_close: Optional[float] = None, connected: bool = True) -> MagicMock:
    """
    IB stand-in. When ``bar_close`` is given, every real-time bar request
    delivers one bar with that close on the next loop iteration.
    """
    ib = MagicMock()
    ib.isConnected.return_value = connected
    ib.connectAsync = AsyncMock()
    ib.disconnectedEvent = MockEvent()
    ib.streams = []

    def req_realtime_bars(contract, bar_size, what_to_show, use_rth):
        bars = MockBarList()
        ib.streams.append(bars)
        if bar_close is not None:
            asyncio.get_running_loop().call_soon(bars.push, MockBar(close=bar_close))
        return bars

    ib.reqRealTimeBars.side_effect = req_realtime_bars
    trade = MagicMock()
    trade.order.orderId = 42
    ib.placeOrder.return_value = trade
    return ib


@pytest.fixture
def mock_ib_factory():
    return make_mock_ib


@pytest.fixture
def make_gateway():
    """Build an OrderGateway over a price IB and an order IB."""
    def _make(price_ib, order_ib=None, alert_manager=None, price_timeout_seconds=1.0):
        order_ib = order_ib if order_ib is not None else price_ib
        connections = [
            BrokerConnection("dcmain", "127.0.0.1:7303", 200, ib_factory=lambda: price_ib),
            BrokerConnection("gyantal", "127.0.0.1:7301", 200, ib_factory=lambda: order_ib),
        ]
        return OrderGateway(
            connections,
            price_connection="dcmain",
            order_connection="gyantal",
            price_timeout_seconds=price_timeout_seconds,
            alert_manager=alert_manager,
        )
    return _make
