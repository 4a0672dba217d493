"""
Configuration loading for RoboTrader.

Settings live in config/settings.yaml. Secrets and machine-specific paths may
be overridden from the environment, which takes precedence over the file.
"""

import os
from datetime import time as dt_time
from pathlib import Path
from typing import Any, Dict, List

import pytz
import yaml

from .detector import DetectorSettings
from .errors import ConfigError
from .models import CapitalAllocation, EndpointKind, RebalanceRule, StrategyProfile


DEFAULT_CONFIG_PATH = "config/settings.yaml"


def load_settings(config_path: str = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load application settings from YAML file."""
    try:
        with open(config_path, 'r') as f:
            settings = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"Settings file not found: {config_path}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Settings file {config_path} is not valid YAML: {e}")

    if not isinstance(settings, dict):
        raise ConfigError(f"Settings file {config_path} must contain a mapping")
    return settings


def parse_local_time(value: Any) -> dt_time:
    """Parse "HH:MM" or "HH:MM:SS"."""
    # YAML 1.1 turns unquoted 9:45 into an int of minutes
    if isinstance(value, int):
        return dt_time(value // 60, value % 60)
    try:
        parts = [int(p) for p in str(value).split(":")]
        return dt_time(*parts)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid time of day: {value!r}")


def _parse_capital(value: Any, where: str) -> CapitalAllocation:
    value = value or {}
    if not isinstance(value, dict):
        raise ConfigError(f"{where} must be a mapping with buy/sell amounts")
    try:
        return CapitalAllocation(buy=float(value.get('buy', 0)), sell=float(value.get('sell', 0)))
    except (TypeError, ValueError):
        raise ConfigError(f"{where} has a non-numeric amount: {value!r}")


def _parse_enum(enum_cls, value: Any, where: str):
    try:
        return enum_cls(value)
    except ValueError:
        choices = ", ".join(m.value for m in enum_cls)
        raise ConfigError(f"{where}: '{value}' is not one of {choices}")


def parse_strategy_profile(name: str, raw: Dict[str, Any]) -> StrategyProfile:
    """Build a StrategyProfile from its settings.yaml entry."""
    where = f"strategies.{name}"
    if not isinstance(raw, dict):
        raise ConfigError(f"{where} must be a mapping")

    timezone = raw.get('timezone', 'America/New_York')
    try:
        pytz.timezone(timezone)
    except pytz.UnknownTimeZoneError:
        raise ConfigError(f"{where}.timezone: unknown timezone '{timezone}'")

    run_times = raw.get('run_times') or []
    if not run_times:
        raise ConfigError(f"{where}.run_times must list at least one time")
    if not raw.get('primary_endpoint'):
        raise ConfigError(f"{where}.primary_endpoint is required")

    polling = raw.get('polling', {}) or {}
    capital = raw.get('capital', {}) or {}
    try:
        return StrategyProfile(
            name=name,
            timezone=timezone,
            run_times=tuple(parse_local_time(t) for t in run_times),
            rebalance_rule=_parse_enum(RebalanceRule, raw.get('rebalance_rule'), f"{where}.rebalance_rule"),
            primary_endpoint=raw['primary_endpoint'],
            primary_kind=_parse_enum(
                EndpointKind, raw.get('primary_kind', 'transactions'), f"{where}.primary_kind"
            ),
            secondary_endpoint=raw.get('secondary_endpoint'),
            live_time=parse_local_time(raw.get('live_time', '12:00:00')),
            live_tolerance_seconds=int(raw.get('live_tolerance_seconds', 55)),
            poll_deadline_live_seconds=float(polling.get('deadline_live_seconds', 270)),
            poll_deadline_simulation_seconds=float(polling.get('deadline_simulation_seconds', 30)),
            sleep_live_seconds=float(polling.get('sleep_live_seconds', 0)),
            sleep_simulation_seconds=float(polling.get('sleep_simulation_seconds', 3.75)),
            capital_solo=_parse_capital(capital.get('solo'), f"{where}.capital.solo"),
            capital_shared=_parse_capital(capital.get('shared'), f"{where}.capital.shared"),
            max_events=int(raw.get('max_events', 14)),
            archive_prefix=raw.get('archive_prefix', ''),
            notify_email=raw.get('notify_email'),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{where}: {e}")


def load_strategy_profiles(settings: Dict[str, Any]) -> List[StrategyProfile]:
    """All enabled strategies, in settings order."""
    strategies = settings.get('strategies') or {}
    if not isinstance(strategies, dict) or not strategies:
        raise ConfigError("settings must define at least one strategy under 'strategies'")

    profiles = []
    for name, raw in strategies.items():
        if isinstance(raw, dict) and not raw.get('enabled', True):
            continue
        profiles.append(parse_strategy_profile(name, raw))
    return profiles


def load_detector_settings(settings: Dict[str, Any]) -> DetectorSettings:
    """Cookie and archive locations. Relative paths resolve from the working directory."""
    paths = settings.get('paths', {}) or {}
    detector = settings.get('detector', {}) or {}

    cookie_path = os.environ.get('ROBOTRADER_COOKIE_FILE', paths.get('cookie_file'))
    if not cookie_path:
        raise ConfigError("paths.cookie_file (or ROBOTRADER_COOKIE_FILE) is required")
    data_dir = os.environ.get('ROBOTRADER_DATA_DIR', paths.get('data_dir', 'data'))

    return DetectorSettings(
        cookie_path=Path(cookie_path),
        data_dir=Path(data_dir),
        request_timeout_seconds=float(detector.get('request_timeout_seconds', 20)),
    )


def load_broker_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    """
    The ``brokers`` section with environment overrides applied.

    ROBOTRADER_IB_HOST replaces the host part of every connection url,
    ROBOTRADER_IB_CLIENT_ID the client id of every connection.
    """
    brokers = dict(settings.get('brokers') or {})
    connections = [dict(c) for c in brokers.get('connections') or []]
    if not connections:
        raise ConfigError("brokers.connections must list at least one connection")

    host = os.environ.get('ROBOTRADER_IB_HOST')
    client_id = os.environ.get('ROBOTRADER_IB_CLIENT_ID')
    if client_id and not client_id.isdigit():
        raise ConfigError(f"ROBOTRADER_IB_CLIENT_ID must be an integer, got '{client_id}'")
    for conn in connections:
        if host and conn.get('url'):
            _, _, port = str(conn['url']).rpartition(":")
            conn['url'] = f"{host}:{port}"
        if client_id:
            conn['client_id'] = int(client_id)

    brokers['connections'] = connections
    return brokers
