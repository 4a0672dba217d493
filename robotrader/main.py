"""
Process entry point for RoboTrader.

Normal mode connects the brokers, registers a heartbeat plus one
RebalanceTask per configured strategy and runs the scheduler until SIGINT or
SIGTERM. --force-run performs a single operator dry run of one strategy.
"""

import argparse
import asyncio
import signal
import sys
from typing import Any, Dict, List, Optional

from .alerts import AlertManager
from .config import (
    DEFAULT_CONFIG_PATH,
    load_broker_settings,
    load_detector_settings,
    load_settings,
    load_strategy_profiles,
)
from .errors import ConfigError
from .execution_ibkr import OrderGateway
from .logging_utils import setup_logging, get_trading_logger
from .models import StrategyProfile
from .scheduler import TaskScheduler
from .tasks import HeartbeatTask, RebalanceTask


def build_scheduler(
    settings: Dict[str, Any],
    profiles: List[StrategyProfile],
    gateway: OrderGateway,
    alert_manager: AlertManager,
) -> TaskScheduler:
    """Scheduler with the heartbeat and one task per strategy registered."""
    schedule = settings.get('schedule', {}) or {}
    detector_settings = load_detector_settings(settings)

    scheduler = TaskScheduler(
        idle_sleep_seconds=float(schedule.get('idle_sleep_seconds', 60)),
    )
    scheduler.register_task(HeartbeatTask(
        interval_seconds=float(schedule.get('heartbeat_interval_seconds', 60)),
    ))
    for profile in profiles:
        scheduler.register_task(RebalanceTask(
            profile=profile,
            peers=profiles,
            gateway=gateway,
            detector_settings=detector_settings,
            alert_manager=alert_manager,
        ))
    return scheduler


async def run_service(settings: Dict[str, Any]) -> None:
    logger = get_trading_logger()
    profiles = load_strategy_profiles(settings)
    alert_manager = AlertManager(settings)
    gateway = OrderGateway.from_settings(load_broker_settings(settings), alert_manager)
    scheduler = build_scheduler(settings, profiles, gateway, alert_manager)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, scheduler.stop)

    await gateway.connect_all()
    for name, next_trigger in scheduler.describe():
        logger.logger.info("next_trigger", task=name, next_trigger=next_trigger.isoformat())

    try:
        await scheduler.run_forever()
    finally:
        await gateway.disconnect_all()


async def run_forced(settings: Dict[str, Any], strategy: str) -> None:
    profiles = load_strategy_profiles(settings)
    matches = [p for p in profiles if p.name.lower() == strategy.lower()]
    if not matches:
        known = ", ".join(p.name for p in profiles)
        raise ConfigError(f"Unknown strategy '{strategy}', configured: {known}")

    alert_manager = AlertManager(settings)
    gateway = OrderGateway.from_settings(load_broker_settings(settings), alert_manager)
    task = RebalanceTask(
        profile=matches[0],
        peers=profiles,
        gateway=gateway,
        detector_settings=load_detector_settings(settings),
        alert_manager=alert_manager,
        forced=True,
    )

    await gateway.connect_all()
    try:
        await task.run()
    finally:
        await gateway.disconnect_all()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='RoboTrader rebalance signal trader')
    parser.add_argument('--config', default=DEFAULT_CONFIG_PATH,
                        help='Path to settings.yaml')
    parser.add_argument('--log-level', default=None,
                        help='Override logging.level from settings')
    parser.add_argument('--console-logs', action='store_true',
                        help='Human readable logs instead of JSON')
    parser.add_argument('--force-run', metavar='STRATEGY',
                        help='Run one simulated poll of STRATEGY now and exit')
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint."""
    args = parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    log_settings = settings.get('logging', {}) or {}
    setup_logging(
        log_level=args.log_level or log_settings.get('level', 'INFO'),
        log_file=log_settings.get('file'),
        json_format=not args.console_logs and log_settings.get('json', True),
    )
    logger = get_trading_logger()

    try:
        if args.force_run:
            asyncio.run(run_forced(settings, args.force_run))
        else:
            asyncio.run(run_service(settings))
    except ConfigError as e:
        logger.logger.error("config_error", error=str(e))
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
