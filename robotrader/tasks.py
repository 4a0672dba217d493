"""
Schedulable tasks.

A Task knows its own next trigger time and how to run itself. The scheduler
only compares trigger times and dispatches; everything strategy-specific
lives in RebalanceTask, which is parameterized by a StrategyProfile.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from .alerts import AlertManager
from .calendars import target_rebalance_date
from .detector import DetectorSettings, RebalanceDetector
from .execution_ibkr import OrderGateway
from .executor import TradeExecutor
from .logging_utils import TradingLogger, get_trading_logger
from .models import StrategyProfile
from .session import TradingSession
from .sizing import PositionSizer, resolve_capital
from .trigger_clock import (
    FAR_PAST,
    is_near_local_time,
    local_today,
    next_of_daily_times,
    utc_now,
)


class Task(ABC):
    """A recurring job owned by the scheduler."""

    def __init__(self, name: str):
        self.name = name
        self.next_trigger_time: datetime = FAR_PAST

    @abstractmethod
    async def run(self) -> None:
        ...

    @abstractmethod
    def update_next_trigger_time(self, now: Optional[datetime] = None) -> None:
        """Advance next_trigger_time past ``now``."""
        ...


class HeartbeatTask(Task):
    """Logs a liveness line at a fixed interval."""

    def __init__(
        self,
        interval_seconds: float = 60.0,
        name: str = "Heartbeat",
        logger: Optional[TradingLogger] = None,
        now: Optional[datetime] = None,
    ):
        super().__init__(name)
        self.interval = timedelta(seconds=interval_seconds)
        self.logger = logger or get_trading_logger()
        self.beats = 0
        self.update_next_trigger_time(now)

    async def run(self) -> None:
        self.beats += 1
        self.logger.logger.info("heartbeat", beats=self.beats)

    def update_next_trigger_time(self, now: Optional[datetime] = None) -> None:
        self.next_trigger_time = (now or utc_now()) + self.interval


DetectorFactory = Callable[[StrategyProfile, DetectorSettings, Optional[AlertManager]], RebalanceDetector]


def _default_detector_factory(
    profile: StrategyProfile,
    settings: DetectorSettings,
    alert_manager: Optional[AlertManager],
) -> RebalanceDetector:
    return RebalanceDetector(profile, settings, alert_manager=alert_manager)


class RebalanceTask(Task):
    """
    Runs one strategy at each of its daily checkpoints.

    Every run gets a fresh TradingSession and RebalanceDetector. Days that
    are not the strategy's rebalance day end right after the session is
    built. A forced task skips that gate, always simulates and polls once.
    """

    def __init__(
        self,
        profile: StrategyProfile,
        peers: Sequence[StrategyProfile],
        gateway: OrderGateway,
        detector_settings: DetectorSettings,
        alert_manager: Optional[AlertManager] = None,
        forced: bool = False,
        sizer: Optional[PositionSizer] = None,
        detector_factory: DetectorFactory = _default_detector_factory,
        logger: Optional[TradingLogger] = None,
        now: Optional[datetime] = None,
    ):
        super().__init__(profile.name)
        self.profile = profile
        self.peers: List[StrategyProfile] = list(peers)
        self.gateway = gateway
        self.detector_settings = detector_settings
        self.alert_manager = alert_manager
        self.forced = forced
        self.sizer = sizer or PositionSizer()
        self.detector_factory = detector_factory
        self.logger = logger or get_trading_logger()
        self.last_executor: Optional[TradeExecutor] = None
        self.update_next_trigger_time(now)

    def update_next_trigger_time(self, now: Optional[datetime] = None) -> None:
        self.next_trigger_time = next_of_daily_times(
            self.profile.timezone, self.profile.run_times, now
        )

    def new_session(self, now: Optional[datetime] = None) -> TradingSession:
        """Build the session state for a run starting at ``now``."""
        now = now or utc_now()
        today = local_today(self.profile.timezone, now)
        target = target_rebalance_date(self.profile.rebalance_rule, today)
        capital = resolve_capital(self.profile, self.peers, today)
        session = TradingSession(
            strategy=self.profile.name,
            target_date=target,
            is_run_day=target == today,
            is_simulation=not is_near_local_time(
                self.profile.timezone,
                self.profile.live_time,
                self.profile.live_tolerance_seconds,
                now,
            ),
            capital=capital,
        )
        if self.forced:
            session.is_run_day = True
            session.is_simulation = True
            if capital.buy == 0 and capital.sell == 0:
                session.capital = self.profile.capital_solo
        return session

    async def run(self, now: Optional[datetime] = None) -> None:
        session = self.new_session(now)
        if not session.is_run_day:
            self.logger.log_task_event(
                self.name, "skipped", self.next_trigger_time,
                metadata={"reason": "not a rebalance day", "target_date": session.target_date_str},
            )
            return

        detector = self.detector_factory(self.profile, self.detector_settings, self.alert_manager)
        executor = TradeExecutor(
            profile=self.profile,
            session=session,
            detector=detector,
            gateway=self.gateway,
            sizer=self.sizer,
            alert_manager=self.alert_manager,
            forced=self.forced,
            logger=self.logger,
        )
        self.last_executor = executor
        await executor.run()
