import logging
import sys
from contextvars import ContextVar
from typing import Optional

from pythonjsonlogger.json import JsonFormatter

from seatlock.config import settings

# set per request by the trace middleware
TRACE_ID_CTX: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)

# chatty third-party loggers kept at WARNING unless DEBUG is on
_QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "celery.beat")


class TraceIdFilter(logging.Filter):
    def filter(self, record):
        record.trace_id = TRACE_ID_CTX.get(None)
        return True


def setup_logging(level: int = logging.INFO) -> None:
    """Send every record to stdout as one JSON object tagged with the service and trace id."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s %(trace_id)s",
            rename_fields={"levelname": "level", "name": "logger"},
            static_fields={"service": settings.APP_NAME},
        )
    )
    handler.addFilter(TraceIdFilter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if level <= logging.DEBUG else logging.WARNING)
