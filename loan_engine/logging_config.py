"""
Structured logging for the loan engine

Every component logs under "loan_engine.<component>" (loans, repayments,
delinquency, guarantors, thresholds, register, notifications, api). State
changes are logged through log_action with an action name and the resource
they touched: a loan id, a member id, an application id or a "YYYY-MM"
threshold month. Money and Decimal values in extra are written as strings.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional


ROOT_LOGGER = "loan_engine"

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record, tagged with the engine component"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "component": _component(record.name),
            "message": record.getMessage(),
            "correlation_id": getattr(record, 'correlation_id', None),
            "user_id": getattr(record, 'user_id', None),
            "action": getattr(record, 'action', None),
            "resource": getattr(record, 'resource', None),
            "extra": getattr(record, 'extra', None)
        }

        # Remove None values
        log_entry = {k: v for k, v in log_entry.items() if v is not None}

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def _component(logger_name: str) -> Optional[str]:
    prefix = ROOT_LOGGER + "."
    if logger_name.startswith(prefix):
        return logger_name[len(prefix):]
    return None


def setup_logging(level: str = "INFO", logger_name: str = ROOT_LOGGER,
                  log_format: str = "json") -> logging.Logger:
    """
    Install a single stderr handler on the engine's root logger.

    LendingSystem.from_config calls this with the configured log_level and
    log_format; component loggers propagate up to it.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Logger to configure, "loan_engine" unless testing
        log_format: "json" for JSONFormatter, "text" for a plain line format

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    if log_format == "text":
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    else:
        handler.setFormatter(JSONFormatter())

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """Component logger; bare component names are placed under loan_engine"""
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None, exc_info: bool = False):
    """
    Log an engine operation with structured fields.

    Args:
        logger: Component logger
        level: Log level (info, warning, error, etc.)
        message: Log message
        user_id: Officer or system user behind the operation
        action: Operation name, e.g. "process_repayment" or "threshold_alert"
        resource: Loan, member or application id, or a "YYYY-MM" month
        correlation_id: Correlation ID for request tracing
        extra: Additional structured data such as amounts or serial numbers
        exc_info: Attach the exception currently being handled
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    fields = {}
    if user_id:
        fields['user_id'] = user_id
    if action:
        fields['action'] = action
    if resource:
        fields['resource'] = resource
    if correlation_id:
        fields['correlation_id'] = correlation_id
    if extra:
        fields['extra'] = extra

    logger.log(levelno, message, extra=fields, exc_info=exc_info)
