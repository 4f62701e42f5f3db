"""
Structured JSON logging configuration.

Provides structured JSON logging with mandatory fields:
- timestamp (ISO 8601)
- level (INFO, WARNING, ERROR, etc.)
- service (service name)
- request_id (unique per-request identifier)
- message (log message)

Usage:
    logger = logging.getLogger(__name__)
    logger.info("Group created", extra={"group_id": 7, "request_id": "..."})
"""
import logging
import sys
from datetime import datetime
from typing import Dict, Any
from pythonjsonlogger import jsonlogger


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """
    Custom JSON formatter with mandatory observability fields.

    Ensures all log records include:
    - timestamp: ISO 8601 timestamp
    - level: Log level (INFO, WARNING, ERROR, etc.)
    - service: Service name (e.g., "chatty-api")
    - request_id: Per-request correlation ID (if available)
    - message: Log message
    - Additional context from 'extra' parameter
    """

    def __init__(self, service_name: str = "chatty", *args, **kwargs):
        """
        Initialize JSON formatter.

        Args:
            service_name: Name of the service emitting logs
        """
        self.service_name = service_name
        super().__init__(*args, **kwargs)

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.utcnow().isoformat() + 'Z'
        log_record['level'] = record.levelname
        log_record['service'] = self.service_name
        log_record['message'] = record.getMessage()

        if hasattr(record, 'request_id'):
            log_record['request_id'] = record.request_id

        if record.exc_info:
            log_record['exception'] = self.formatException(record.exc_info)

        log_record['module'] = record.module
        log_record['function'] = record.funcName
        log_record['line'] = record.lineno


class LogContextFilter(logging.Filter):
    """
    Logging filter that guarantees a request_id on every record.

    The request-id middleware passes the real id through ``extra``; records
    emitted outside a request get a placeholder.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, 'request_id'):
            record.request_id = 'no-request'
        return True


def configure_logging(
    service_name: str = "chatty",
    level: str = "INFO",
    enable_json: bool = True
) -> None:
    """
    Configure structured JSON logging for the application.

    Args:
        service_name: Name of the service (e.g., "chatty-api")
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_json: Whether to use JSON formatting (True for production)

    Example:
        configure_logging(service_name="chatty-api", level="INFO", enable_json=True)
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.addFilter(LogContextFilter())

    if enable_json:
        formatter = CustomJsonFormatter(
            service_name=service_name,
            fmt='%(timestamp)s %(level)s %(service)s %(request_id)s %(message)s'
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Suppress noisy third-party loggers
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)

