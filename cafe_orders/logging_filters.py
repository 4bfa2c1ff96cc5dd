"""Logging setup and filters for enriching log records with request context.

``RequestIdFilter`` injects the current request id into log records using
the ContextVar set by the request-id middleware, so every line written while
a request is being served can be correlated without touching individual log
statements. ``configure_logging`` installs one JSON handler on the
``cafe_orders`` logger namespace.
"""

import logging
from logging import Filter, LogRecord

from pythonjsonlogger import jsonlogger

from .middleware import REQUEST_ID_CTX

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"


class RequestIdFilter(Filter):
    """Attach a ``request_id`` attribute to log records.

    The value is retrieved from ``REQUEST_ID_CTX``. Outside a request a
    hyphen ("-") is used as a placeholder so formatters can reliably
    reference ``%(request_id)s``.
    """

    def filter(self, record: LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = REQUEST_ID_CTX.get()
        return True


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Install the JSON handler on the package logger (idempotent)."""
    logger = logging.getLogger("cafe_orders")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(jsonlogger.JsonFormatter(LOG_FORMAT))
        handler.addFilter(RequestIdFilter())
        logger.addHandler(handler)
    logger.setLevel(level.upper())
    return logger
