"""
RoboTrader - rebalance signal follower
Detects portfolio rebalances published by a subscription analytics service
and mirrors them as limit orders through Interactive Brokers.
"""

__version__ = "0.1.0"

# Data model
from .models import (
    CapitalAllocation,
    EndpointKind,
    Order,
    OrderSide,
    RebalanceEvent,
    RebalanceRule,
    StrategyProfile,
)
from .errors import (
    RoboTraderError,
    ConfigError,
    DetectionError,
    AuthExpiredError,
    BlockedError,
    MalformedResponseError,
    TransientFetchError,
    BrokerError,
    PriceUnresolvedError,
    OrderRejectedError,
    ConnectionUnavailableError,
)

# Detection, sizing, execution
from .detector import DetectorSettings, RebalanceDetector
from .sizing import PositionSizer, build_orders, resolve_capital
from .execution_ibkr import BrokerConnection, ExecutionReport, OrderGateway, OrderStatus
from .executor import TradeExecutor

# Scheduling
from .tasks import Task, HeartbeatTask, RebalanceTask
from .scheduler import TaskScheduler

__all__ = [
    # Model
    "CapitalAllocation",
    "EndpointKind",
    "Order",
    "OrderSide",
    "RebalanceEvent",
    "RebalanceRule",
    "StrategyProfile",
    # Errors
    "RoboTraderError",
    "ConfigError",
    "DetectionError",
    "AuthExpiredError",
    "BlockedError",
    "MalformedResponseError",
    "TransientFetchError",
    "BrokerError",
    "PriceUnresolvedError",
    "OrderRejectedError",
    "ConnectionUnavailableError",
    # Components
    "DetectorSettings",
    "RebalanceDetector",
    "PositionSizer",
    "build_orders",
    "resolve_capital",
    "BrokerConnection",
    "ExecutionReport",
    "OrderGateway",
    "OrderStatus",
    "TradeExecutor",
    "Task",
    "HeartbeatTask",
    "RebalanceTask",
    "TaskScheduler",
]
