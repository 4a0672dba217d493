"""
IBKR order gateway for RoboTrader.
Handles broker connections, price resolution and order submission via ib_insync.

This module provides two interfaces:
1. BrokerConnection - one IB Gateway/TWS endpoint with its own lock
2. OrderGateway - the pool of connections used to price and place orders

A slow call on one connection never blocks another: each connection is
locked independently and no code path holds two connection locks at once.
"""

import asyncio
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

try:
    from ib_insync import IB, LimitOrder, Stock
    IB_AVAILABLE = True
except ImportError:
    IB_AVAILABLE = False

from .alerts import AlertManager
from .errors import (
    ConfigError,
    ConnectionUnavailableError,
    OrderRejectedError,
    PriceUnresolvedError,
)
from .logging_utils import TradingLogger, get_trading_logger
from .models import Order, OrderSide


# Limit orders are placed this far through the reference price. Brokers
# reject limit orders priced too aggressively and market orders are avoided
# for slippage control.
LIMIT_OFFSET_PCT = 0.021

REALTIME_BAR_SECONDS = 5
DEFAULT_PRICE_TIMEOUT_SECONDS = 10.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 15.0


class OrderStatus(Enum):
    """Outcome of one order in a submission batch."""
    DRY_RUN = "dry_run"
    SUBMITTED = "submitted"
    SKIPPED = "skipped"
    REJECTED = "rejected"
    ERROR = "error"


@dataclass
class ExecutionReport:
    """Report of what happened to one order."""
    ticker: str
    side: OrderSide
    status: OrderStatus
    quantity: int = 0
    reference_price: float = math.nan
    limit_price: Optional[float] = None
    order_id: Optional[int] = None
    error_message: Optional[str] = None


def parse_connection_url(url: str) -> Tuple[str, int]:
    """Split "host:port" into its parts."""
    host, sep, port = url.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ConfigError(f"Invalid broker connection url '{url}', expected host:port")
    return host, int(port)


def limit_price_for(side: OrderSide, reference_price: float) -> float:
    """Limit price offset from the reference price, rounded to cents."""
    if side is OrderSide.BUY:
        return round(reference_price * (1 + LIMIT_OFFSET_PCT), 2)
    return round(reference_price * (1 - LIMIT_OFFSET_PCT), 2)


class BrokerConnection:
    """
    One broker endpoint.

    ``ib`` is set only after a connect fully succeeds and is cleared on
    disconnect (requested or not), so callers never see a half-initialized
    handle.
    """

    def __init__(
        self,
        name: str,
        connection_url: str,
        client_id: int,
        timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        readonly: bool = False,
        logger: Optional[TradingLogger] = None,
        ib_factory: Optional[Callable[[], Any]] = None,
    ):
        self.name = name
        self.connection_url = connection_url
        self.host, self.port = parse_connection_url(connection_url)
        self.client_id = client_id
        self.timeout = timeout
        self.readonly = readonly
        self.logger = logger or get_trading_logger()
        self._ib_factory = ib_factory
        self.ib: Optional[Any] = None
        self.lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self.ib is not None and self.ib.isConnected()

    def _new_ib(self) -> Any:
        if self._ib_factory is not None:
            return self._ib_factory()
        if not IB_AVAILABLE:
            raise ImportError("ib_insync is required for IBKR integration")
        return IB()

    async def connect(self) -> bool:
        """
        Connect to the endpoint.

        Returns:
            True if connected; failures are logged and leave ``ib`` unset
        """
        if self.is_connected:
            return True

        ib = self._new_ib()
        try:
            await ib.connectAsync(
                host=self.host,
                port=self.port,
                clientId=self.client_id,
                timeout=self.timeout,
                readonly=self.readonly,
            )
        except Exception as e:
            self.logger.log_connection_event(
                event_type="connect",
                connection=self.name,
                url=self.connection_url,
                client_id=self.client_id,
                success=False,
                error_message=repr(e),
            )
            return False

        if not ib.isConnected():
            self.logger.log_connection_event(
                event_type="connect",
                connection=self.name,
                url=self.connection_url,
                client_id=self.client_id,
                success=False,
                error_message="handshake finished but client is not connected",
            )
            return False

        ib.disconnectedEvent += self._on_disconnect
        self.ib = ib
        self.logger.log_connection_event(
            event_type="connect",
            connection=self.name,
            url=self.connection_url,
            client_id=self.client_id,
            success=True,
        )
        return True

    def _on_disconnect(self) -> None:
        """Drop the handle when the gateway goes away unexpectedly."""
        if self.ib is None:
            return
        self.ib = None
        self.logger.log_connection_event(
            event_type="unexpected_disconnect",
            connection=self.name,
            url=self.connection_url,
            client_id=self.client_id,
            success=False,
            error_message="IB Gateway connection lost",
        )

    async def disconnect(self) -> None:
        ib, self.ib = self.ib, None
        if ib is None:
            return
        ib.disconnectedEvent -= self._on_disconnect
        ib.disconnect()
        self.logger.log_connection_event(
            event_type="disconnect",
            connection=self.name,
            url=self.connection_url,
            client_id=self.client_id,
            success=True,
        )

    def require_ib(self) -> Any:
        """Return the live handle or raise ConnectionUnavailableError."""
        if not self.is_connected:
            raise ConnectionUnavailableError(self.name)
        return self.ib


class OrderGateway:
    """
    Pool of broker connections used for pricing and order submission.

    Prices are requested on the price connection, orders go to the order
    connection; both may name the same endpoint.
    """

    def __init__(
        self,
        connections: List[BrokerConnection],
        price_connection: str,
        order_connection: str,
        price_timeout_seconds: float = DEFAULT_PRICE_TIMEOUT_SECONDS,
        alert_manager: Optional[AlertManager] = None,
        logger: Optional[TradingLogger] = None,
    ):
        self._connections: Dict[str, BrokerConnection] = {c.name: c for c in connections}
        for role, name in (("price", price_connection), ("order", order_connection)):
            if name not in self._connections:
                raise ConfigError(f"{role} connection '{name}' is not a configured broker connection")
        self.price_connection_name = price_connection
        self.order_connection_name = order_connection
        self.price_timeout_seconds = price_timeout_seconds
        self.alert_manager = alert_manager
        self.logger = logger or get_trading_logger()

    @classmethod
    def from_settings(
        cls,
        broker_settings: Dict[str, Any],
        alert_manager: Optional[AlertManager] = None,
    ) -> "OrderGateway":
        """Build the pool from the ``brokers`` section of settings.yaml."""
        entries = broker_settings.get("connections") or []
        if not entries:
            raise ConfigError("brokers.connections must list at least one connection")

        timeout = float(broker_settings.get("connect_timeout_seconds", DEFAULT_CONNECT_TIMEOUT_SECONDS))
        readonly = bool(broker_settings.get("readonly", False))
        connections = []
        for entry in entries:
            try:
                connections.append(BrokerConnection(
                    name=entry["name"],
                    connection_url=entry["url"],
                    client_id=int(entry["client_id"]),
                    timeout=timeout,
                    readonly=readonly,
                ))
            except (KeyError, TypeError, ValueError) as e:
                raise ConfigError(f"Invalid broker connection entry {entry!r}: {e}")

        first = connections[0].name
        return cls(
            connections=connections,
            price_connection=broker_settings.get("price_connection", first),
            order_connection=broker_settings.get("order_connection", first),
            price_timeout_seconds=float(
                broker_settings.get("price_timeout_seconds", DEFAULT_PRICE_TIMEOUT_SECONDS)
            ),
            alert_manager=alert_manager,
        )

    @property
    def connections(self) -> List[BrokerConnection]:
        return list(self._connections.values())

    def connection(self, name: str) -> BrokerConnection:
        return self._connections[name]

    @property
    def price_connection(self) -> BrokerConnection:
        return self._connections[self.price_connection_name]

    @property
    def order_connection(self) -> BrokerConnection:
        return self._connections[self.order_connection_name]

    async def connect_all(self) -> Dict[str, bool]:
        """Connect every endpoint concurrently. Failures are alerted, not raised."""
        connections = self.connections
        results = await asyncio.gather(*(self._connect_locked(c) for c in connections))
        status = {c.name: ok for c, ok in zip(connections, results)}
        failed = [name for name, ok in status.items() if not ok]
        if failed and self.alert_manager:
            await self.alert_manager.send_connection_error(
                f"Could not connect to broker connection(s): {', '.join(failed)}"
            )
        return status

    async def disconnect_all(self) -> None:
        for conn in self.connections:
            async with conn.lock:
                await conn.disconnect()

    async def _connect_locked(self, conn: BrokerConnection) -> bool:
        async with conn.lock:
            return await conn.connect()

    async def _ensure_connected(self, conn: BrokerConnection) -> Any:
        """Return a live handle, trying one reconnect first. Caller holds conn.lock."""
        if not conn.is_connected:
            await conn.connect()
        return conn.require_ib()

    async def resolve_price(self, order: Order) -> float:
        """
        Best-effort reference price for an order.

        A finite known price is used as is. Otherwise the first 5-second bar
        of a real-time stream on the price connection supplies the close.
        Bars only arrive during the instrument's trading session, so the
        wait is bounded; no bar means NaN.
        """
        known = order.known_last_price
        if known is not None and math.isfinite(known):
            return float(known)

        conn = self.price_connection
        async with conn.lock:
            try:
                ib = await self._ensure_connected(conn)
            except ConnectionUnavailableError as e:
                self.logger.logger.warning("price_unavailable", ticker=order.ticker, reason=str(e))
                return math.nan
            return await self._first_bar_close(ib, order.ticker)

    async def _first_bar_close(self, ib: Any, ticker: str) -> float:
        loop = asyncio.get_running_loop()
        first_bar: asyncio.Future = loop.create_future()

        def on_bar_update(bars, has_new_bar):
            if has_new_bar and len(bars) > 0 and not first_bar.done():
                first_bar.set_result(bars[-1])

        contract = Stock(ticker, "SMART", "USD")
        try:
            bars = ib.reqRealTimeBars(contract, REALTIME_BAR_SECONDS, "TRADES", True)
        except Exception as e:
            self.logger.logger.warning("realtime_bar_request_failed", ticker=ticker, error=str(e))
            return math.nan
        bars.updateEvent += on_bar_update
        try:
            bar = await asyncio.wait_for(first_bar, timeout=self.price_timeout_seconds)
        except asyncio.TimeoutError:
            self.logger.logger.warning(
                "realtime_bar_timeout", ticker=ticker, timeout=self.price_timeout_seconds
            )
            return math.nan
        finally:
            bars.updateEvent -= on_bar_update
            try:
                ib.cancelRealTimeBars(bars)
            except Exception as e:
                self.logger.logger.warning("realtime_bar_cancel_failed", ticker=ticker, error=str(e))

        self.logger.logger.info("realtime_bar", ticker=ticker, close=bar.close)
        return float(bar.close)

    async def submit(
        self,
        orders: List[Order],
        is_simulation: bool,
        strategy: str = "",
    ) -> List[ExecutionReport]:
        """
        Price, size and (unless simulating) place each order.

        Every failure is contained to its own order: unresolved prices and
        zero share counts are skipped, broker rejections are reported and
        alerted, and the batch continues.
        """
        if not orders:
            self.logger.logger.info("submit_no_orders", strategy=strategy)
            return []

        self.logger.logger.info(
            "submit_orders", strategy=strategy, num_orders=len(orders), simulation=is_simulation
        )

        order_conn_ready = True
        if not is_simulation:
            conn = self.order_connection
            async with conn.lock:
                try:
                    await self._ensure_connected(conn)
                except ConnectionUnavailableError as e:
                    order_conn_ready = False
                    unavailable = e
            if not order_conn_ready:
                self.logger.log_connection_event(
                    event_type="unavailable",
                    connection=conn.name,
                    url=conn.connection_url,
                    client_id=conn.client_id,
                    success=False,
                    error_message=str(unavailable),
                )
                if self.alert_manager:
                    await self.alert_manager.send_connection_error(
                        f"{strategy}: {unavailable}. {len(orders)} order(s) not placed."
                    )

        reports = []
        for order in orders:
            try:
                report = await self._submit_one(order, is_simulation, order_conn_ready, strategy)
            except Exception as e:
                self.logger.logger.exception("order_failed", strategy=strategy, ticker=order.ticker)
                self.logger.log_order(strategy, order.ticker, order.side.name, 0,
                                      status="error", metadata={"reason": repr(e)})
                report = ExecutionReport(order.ticker, order.side, OrderStatus.ERROR,
                                         error_message=repr(e))
            reports.append(report)
        return reports

    async def _submit_one(
        self,
        order: Order,
        is_simulation: bool,
        order_conn_ready: bool,
        strategy: str,
    ) -> ExecutionReport:
        self.logger.logger.info("order_pricing", strategy=strategy, order=order.describe())

        price = await self.resolve_price(order)
        if math.isnan(price) or price <= 0:
            error = PriceUnresolvedError(order.ticker, f"price={price}")
            self.logger.log_order(strategy, order.ticker, order.side.name, 0,
                                  reference_price=price, status="skipped",
                                  metadata={"reason": str(error)})
            return ExecutionReport(order.ticker, order.side, OrderStatus.SKIPPED,
                                   reference_price=price, error_message=str(error))

        shares = math.floor(order.pos_market_value / price)
        if shares <= 0:
            self.logger.log_order(strategy, order.ticker, order.side.name, shares,
                                  reference_price=price, status="skipped",
                                  metadata={"reason": "share count is zero"})
            return ExecutionReport(order.ticker, order.side, OrderStatus.SKIPPED,
                                   quantity=shares, reference_price=price,
                                   error_message="share count is zero")

        limit = limit_price_for(order.side, price)
        if is_simulation:
            self.logger.log_order(strategy, order.ticker, order.side.name, shares,
                                  limit_price=limit, reference_price=price, status="dry_run")
            return ExecutionReport(order.ticker, order.side, OrderStatus.DRY_RUN,
                                   quantity=shares, reference_price=price, limit_price=limit)

        if not order_conn_ready:
            error = ConnectionUnavailableError(self.order_connection_name)
            self.logger.log_order(strategy, order.ticker, order.side.name, shares,
                                  limit_price=limit, reference_price=price, status="error",
                                  metadata={"reason": str(error)})
            return ExecutionReport(order.ticker, order.side, OrderStatus.ERROR,
                                   quantity=shares, reference_price=price,
                                   limit_price=limit, error_message=str(error))

        conn = self.order_connection
        try:
            async with conn.lock:
                ib = conn.require_ib()
                trade = ib.placeOrder(
                    Stock(order.ticker, "SMART", "USD"),
                    LimitOrder(order.side.ib_action, shares, limit),
                )
        except ConnectionUnavailableError as e:
            self.logger.log_order(strategy, order.ticker, order.side.name, shares,
                                  limit_price=limit, reference_price=price, status="error",
                                  metadata={"reason": str(e)})
            return ExecutionReport(order.ticker, order.side, OrderStatus.ERROR,
                                   quantity=shares, reference_price=price,
                                   limit_price=limit, error_message=str(e))
        except Exception as e:
            rejection = OrderRejectedError(order.ticker, repr(e))
            self.logger.log_order(strategy, order.ticker, order.side.name, shares,
                                  limit_price=limit, reference_price=price, status="rejected",
                                  metadata={"reason": str(rejection)})
            if self.alert_manager:
                await self.alert_manager.send_order_rejection(
                    order.ticker, order.side.name, shares, repr(e)
                )
            return ExecutionReport(order.ticker, order.side, OrderStatus.REJECTED,
                                   quantity=shares, reference_price=price,
                                   limit_price=limit, error_message=str(rejection))

        order_id = trade.order.orderId
        self.logger.log_order(strategy, order.ticker, order.side.name, shares,
                              limit_price=limit, reference_price=price,
                              status="submitted", order_id=order_id)
        return ExecutionReport(order.ticker, order.side, OrderStatus.SUBMITTED,
                               quantity=shares, reference_price=price,
                               limit_price=limit, order_id=order_id)
