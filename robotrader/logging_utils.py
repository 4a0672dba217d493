"""
Structured logging utilities for RoboTrader.
Provides JSON-formatted logging for orders, detections, connections and alerts.
"""

import logging
import sys
from datetime import datetime
from typing import Any, Dict, Optional
from pathlib import Path
import structlog


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    json_format: bool = True
) -> structlog.BoundLogger:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for log output
        json_format: If True, output logs in JSON format

    Returns:
        Configured structlog logger
    """
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
        handlers=[logging.StreamHandler(sys.stdout)]
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(getattr(logging, log_level.upper()))
        logging.getLogger().addHandler(file_handler)

    # ib_insync is chatty at INFO
    logging.getLogger("ib_insync").setLevel(logging.WARNING)

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger()


class TradingLogger:
    """
    Specialized logger for trading operations.
    Provides structured logging for orders, detections, connections and alerts.
    """

    def __init__(self, logger: Optional[structlog.BoundLogger] = None):
        self.logger = logger or structlog.get_logger()

    def log_order(
        self,
        strategy: str,
        ticker: str,
        side: str,
        quantity: int,
        limit_price: Optional[float] = None,
        reference_price: Optional[float] = None,
        status: str = "submitted",
        order_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log an order event (dry run, submitted, rejected, skipped)."""
        log_method = self.logger.warning if status in ("rejected", "error") else self.logger.info
        log_method(
            "order_event",
            event_type="order",
            strategy=strategy,
            ticker=ticker,
            side=side,
            quantity=quantity,
            limit_price=limit_price,
            reference_price=reference_price,
            status=status,
            order_id=order_id,
            timestamp=datetime.utcnow().isoformat(),
            **(metadata or {})
        )

    def log_detection(
        self,
        strategy: str,
        target_date: str,
        endpoint: str,
        num_events: int,
        outcome: str = "ok",
        error_message: Optional[str] = None,
        archive_path: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log the outcome of one poll of a rebalance endpoint."""
        log_method = self.logger.info if outcome == "ok" else self.logger.error
        log_method(
            "detection_event",
            event_type="detection",
            strategy=strategy,
            target_date=target_date,
            endpoint=endpoint,
            num_events=num_events,
            outcome=outcome,
            error_message=error_message,
            archive_path=archive_path,
            timestamp=datetime.utcnow().isoformat(),
            **(metadata or {})
        )

    def log_connection_event(
        self,
        event_type: str,
        connection: str,
        url: str,
        client_id: int,
        success: bool,
        error_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log a broker connection event (connect, disconnect, unavailable)."""
        log_level = "info" if success else "error"
        getattr(self.logger, log_level)(
            "connection_event",
            event_type=event_type,
            connection=connection,
            url=url,
            client_id=client_id,
            success=success,
            error_message=error_message,
            timestamp=datetime.utcnow().isoformat(),
            **(metadata or {})
        )

    def log_task_event(
        self,
        task_name: str,
        event_type: str,
        next_trigger: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log a scheduler task lifecycle event (dispatched, finished, failed)."""
        log_method = self.logger.error if event_type == "failed" else self.logger.info
        log_method(
            "task_event",
            event_type=event_type,
            task=task_name,
            next_trigger=next_trigger.isoformat() if next_trigger else None,
            timestamp=datetime.utcnow().isoformat(),
            **(metadata or {})
        )

    def log_alert(
        self,
        alert_type: str,
        severity: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log an alert event."""
        if severity == "info":
            log_method = self.logger.info
        elif severity == "warning":
            log_method = self.logger.warning
        else:
            log_method = self.logger.error
        log_method(
            "alert",
            event_type="alert",
            alert_type=alert_type,
            severity=severity,
            message=message,
            timestamp=datetime.utcnow().isoformat(),
            **(metadata or {})
        )


def get_trading_logger(name: str = "robotrader") -> TradingLogger:
    """Get a configured trading logger instance."""
    return TradingLogger(structlog.get_logger(name))
