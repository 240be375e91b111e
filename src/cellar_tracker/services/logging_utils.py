"""Structured log lines for ledger operations.

Every state-changing service operation ends with exactly one record:
"<operation>: success" at INFO, or "<operation>: <ERROR_CODE>" at WARNING
when a typed rejection stops it. Entity ids and quantities travel in the
record's extra fields, so a handler with a structured formatter can index
them without parsing the message.

    logger = get_service_logger(__name__)
    log_operation(logger, "transfer_liquid", "success", source_vessel_id=1)
    log_rejection(logger, "fill_kegs", error, batch_id=45)
"""

import logging
from typing import Any, Dict

_LOGGER_PREFIX = "cellar_tracker.services"

# LogRecord refuses extra keys that shadow its own attributes
_RECORD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime"}


def get_service_logger(name: str) -> logging.Logger:
    """Logger under cellar_tracker.services named after the module's last component."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name.rsplit('.', 1)[-1]}")


def _record_extra(operation: str, outcome: str, context: Dict[str, Any]) -> Dict[str, Any]:
    extra: Dict[str, Any] = {"operation": operation, "outcome": outcome}
    for key, value in context.items():
        extra[f"ctx_{key}" if key in _RECORD_ATTRIBUTES else key] = value
    return extra


def log_operation(
    logger: logging.Logger,
    operation: str,
    outcome: str,
    level: int = logging.INFO,
    **context: Any,
) -> None:
    """
    Emit the one-line summary of a service operation.

    Args:
        logger: Service logger from get_service_logger()
        operation: Public function name, e.g. "fill_kegs"
        outcome: "success", or the error code of the rejection
        level: INFO for success; callers logging a rejection pass WARNING
        **context: Entity ids and amounts. Keys that clash with LogRecord
            attributes ("name", "message", ...) are stored as ctx_<key>.
    """
    extra = _record_extra(operation, outcome, context)
    logger.log(level, "%s: %s", operation, outcome, extra=extra)


def log_rejection(logger: logging.Logger, operation: str, error: Exception, **context: Any) -> None:
    """WARNING record for an operation refused with a typed error (code, else class name)."""
    outcome = getattr(error, "code", None) or type(error).__name__
    log_operation(logger, operation, outcome, logging.WARNING, error=str(error), **context)
