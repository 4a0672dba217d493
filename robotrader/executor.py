"""
Time-boxed polling loop of one scheduled rebalance run.

The executor polls the detector until events show up or the profile's
deadline passes, then sizes and submits them exactly once. At the end the
run log goes out as a plain-text notification.
"""

import asyncio
import time
from typing import Awaitable, Callable, List, Optional

from .alerts import AlertManager
from .detector import RebalanceDetector
from .execution_ibkr import ExecutionReport, OrderGateway, OrderStatus
from .logging_utils import TradingLogger, get_trading_logger
from .models import StrategyProfile, count_sides
from .session import TradingSession
from .sizing import PositionSizer, build_orders


class TradeExecutor:
    """
    Drives one TradingSession from the first poll to the run summary.

    ``clock`` must be monotonic; ``sleep`` is the inter-poll suspension
    point. Both are injectable so the loop can run against a fake clock.
    """

    def __init__(
        self,
        profile: StrategyProfile,
        session: TradingSession,
        detector: RebalanceDetector,
        gateway: OrderGateway,
        sizer: Optional[PositionSizer] = None,
        alert_manager: Optional[AlertManager] = None,
        forced: bool = False,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Optional[TradingLogger] = None,
    ):
        self.profile = profile
        self.session = session
        self.detector = detector
        self.gateway = gateway
        self.sizer = sizer or PositionSizer()
        self.alert_manager = alert_manager
        self.forced = forced
        self.clock = clock
        self.sleep = sleep
        self.logger = logger or get_trading_logger()
        self.polls = 0
        self.reports: List[ExecutionReport] = []

    @property
    def deadline_seconds(self) -> float:
        if self.session.is_simulation:
            return self.profile.poll_deadline_simulation_seconds
        return self.profile.poll_deadline_live_seconds

    @property
    def poll_interval_seconds(self) -> float:
        if self.session.is_simulation:
            return self.profile.sleep_simulation_seconds
        return self.profile.sleep_live_seconds

    async def poll_once(self) -> bool:
        """
        One detect/size/submit iteration.

        Returns:
            True once the session has traded and polling should stop
        """
        self.polls += 1
        target, events = await self.detector.detect(self.session)
        if not events:
            self.logger.logger.info(
                "poll_no_events", strategy=self.profile.name, poll=self.polls, target_date=target
            )
            return False

        buys, sells = count_sides(events)
        self.session.log(f"#Buys: {buys}, #Sells: {sells} on {target}")

        if len(events) > self.profile.max_events:
            message = (
                f"{len(events)} events exceed the limit of {self.profile.max_events}, "
                f"not trading this poll"
            )
            self.logger.logger.warning(
                "too_many_events", strategy=self.profile.name,
                num_events=len(events), max_events=self.profile.max_events,
            )
            self.session.log(f"Warning! {message}")
            return False

        self.sizer.size(events, self.session.capital.buy, self.session.capital.sell)
        orders = build_orders(events)
        for order in orders:
            self.session.log(order.describe())

        if not self.session.try_mark_traded():
            return True
        self.reports = await self.gateway.submit(
            orders, self.session.is_simulation, strategy=self.profile.name
        )
        self._log_reports()
        return True

    def _log_reports(self) -> None:
        for report in self.reports:
            line = f"{report.status.value}: {report.side.name} {report.quantity} {report.ticker}"
            if report.limit_price is not None:
                line += f" @ limit {report.limit_price:.2f} (ref {report.reference_price:.2f})"
            if report.error_message:
                line += f" - {report.error_message}"
            self.session.log(line)

    async def run(self) -> List[ExecutionReport]:
        """
        Poll until traded, forced single iteration, or deadline.

        Returns:
            Execution reports of the submission, empty if nothing traded
        """
        mode = "simulation" if self.session.is_simulation else "LIVE"
        self.session.log(
            f"{self.profile.name} run started ({mode}), target date {self.session.target_date_str}, "
            f"buy capital ${self.session.capital.buy:,.0f}, sell capital ${self.session.capital.sell:,.0f}"
        )
        deadline = self.clock() + self.deadline_seconds
        try:
            while True:
                traded = await self.poll_once()
                if traded or self.forced:
                    break
                await self.sleep(self.poll_interval_seconds)
                if self.clock() >= deadline:
                    self.session.log(f"Deadline reached after {self.polls} poll(s), no trade")
                    break
        finally:
            await self.detector.close()
            await self._send_summary()
        return self.reports

    async def _send_summary(self) -> None:
        submitted = sum(1 for r in self.reports if r.status is OrderStatus.SUBMITTED)
        self.session.log(
            f"Run ended. Polls: {self.polls}, traded: {self.session.has_traded}, "
            f"orders submitted: {submitted}, cookie working: {self.session.cookie_verified_working}"
        )
        self.logger.logger.info(
            "run_finished",
            strategy=self.profile.name,
            polls=self.polls,
            traded=self.session.has_traded,
            simulation=self.session.is_simulation,
            cookie_verified_working=self.session.cookie_verified_working,
        )
        if self.alert_manager is None:
            return
        mode = "simulation" if self.session.is_simulation else "live"
        subject = f"RoboTrader {self.profile.name} ({mode}): run ended"
        await self.alert_manager.send_run_summary(
            self.profile.notify_email, subject, self.session.run_log
        )
