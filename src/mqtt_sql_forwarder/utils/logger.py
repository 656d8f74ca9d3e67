"""
Structured logging for the forwarder
JSON file log for machines, readable console log for operators
"""

import logging
import os
from pathlib import Path
from datetime import datetime, timezone
import structlog
from pythonjsonlogger import jsonlogger
from typing import Dict, Any, Optional
from enum import Enum


class SystemFailure(Enum):
    """Standardized failure categories attached to error logs and dead letters"""
    BROKER_CONNECTION_FAILED = "BROKER_CONNECTION_FAILED"
    BROKER_CONNECTION_LOST = "BROKER_CONNECTION_LOST"
    BROKER_SUBSCRIBE_FAILED = "BROKER_SUBSCRIBE_FAILED"
    MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD"
    UNSUPPORTED_SHAPE = "UNSUPPORTED_SHAPE"
    UNSUPPORTED_VALUE_TYPE = "UNSUPPORTED_VALUE_TYPE"
    INVALID_IDENTIFIER = "INVALID_IDENTIFIER"
    SINK_REJECTED = "SINK_REJECTED"
    SINK_UNAVAILABLE = "SINK_UNAVAILABLE"
    CONFIGURATION_INVALID = "CONFIGURATION_INVALID"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


CONSOLE_FORMAT = '%(asctime)s [%(levelname)s] %(name)s - %(message)s'
CONSOLE_DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'


class StructuredLogger:
    """
    Structured logger shared by every forwarder component
    - Every entry carries instance_id and a timestamp
    - Errors may carry a SystemFailure category
    - Created once at process entry and handed to components explicitly
    """

    def __init__(self, name: str, log_dir: str = "logs", level: str = "INFO"):
        self.name = name
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.instance_id = os.getenv('INSTANCE_ID', 'unknown_instance')

        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                self._add_instance_context,
                structlog.processors.JSONRenderer()
            ],
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

        self.logger = structlog.get_logger(name)

        python_logger = logging.getLogger(name)
        python_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

        # Handlers are attached once per logger name
        if not python_logger.handlers:
            file_handler = logging.FileHandler(self.log_dir / f"{name}.log")
            file_handler.setFormatter(jsonlogger.JsonFormatter(
                '%(asctime)s %(name)s %(levelname)s %(message)s'
            ))

            console_handler = logging.StreamHandler()
            console_handler.setFormatter(logging.Formatter(
                CONSOLE_FORMAT, datefmt=CONSOLE_DATE_FORMAT
            ))

            python_logger.addHandler(file_handler)
            python_logger.addHandler(console_handler)

    def _add_instance_context(self, logger, method_name, event_dict):
        """Add instance_id and timestamp to every entry"""
        event_dict['instance_id'] = self.instance_id

        if 'timestamp' not in event_dict:
            event_dict['timestamp'] = datetime.now(timezone.utc).isoformat()

        return event_dict

    def info(self, msg: str, **kwargs):
        self.logger.info(msg, **kwargs)

    def error(self, msg: str, system_failure: SystemFailure = None,
              exc_info: bool = False, **kwargs):
        """Error log with SystemFailure mapping"""
        if system_failure:
            kwargs['system_failure'] = system_failure.value
        self.logger.error(msg, exc_info=exc_info, **kwargs)

    def warning(self, msg: str, system_failure: SystemFailure = None, **kwargs):
        if system_failure:
            kwargs['system_failure'] = system_failure.value
        self.logger.warning(msg, **kwargs)

    def debug(self, msg: str, **kwargs):
        self.logger.debug(msg, **kwargs)

    def log_message_lifecycle(self, topic: str, stage: str, data: dict = None,
                              error: str = None, system_failure: SystemFailure = None):
        """Lifecycle entry for one inbound message (RECEIVED, FORWARDED, DROPPED)"""
        log_data = {
            'topic': topic,
            'stage': stage,
            'data': data or {},
        }

        if error:
            log_data['error'] = error
        if system_failure:
            log_data['system_failure'] = system_failure.value

        if error or system_failure:
            self.logger.error("message_lifecycle_error", **log_data)
        else:
            self.logger.info("message_lifecycle", **log_data)

    def log_system_health(self, component: str, status: str, metrics: Dict[str, Any] = None):
        """Component health snapshot"""
        self.logger.info(
            "system_health_check",
            component=component,
            status=status,
            metrics=metrics or {}
        )

    @staticmethod
    def map_exception_to_system_failure(exception: Optional[BaseException]) -> SystemFailure:
        """
        Map an exception to its SystemFailure category
        Forwarder exceptions declare their own category; anything else is unknown
        """
        failure = getattr(exception, 'system_failure', None)
        if isinstance(failure, SystemFailure):
            return failure
        return SystemFailure.UNKNOWN_ERROR
