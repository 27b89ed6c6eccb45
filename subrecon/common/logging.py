"""Structured JSON logging with request/notification context fields."""

import logging
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from subrecon.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
notification_id_ctx: ContextVar[str] = ContextVar("notification_id", default="")
purchase_token_ctx: ContextVar[str] = ContextVar("purchase_token", default="")

QUIET_LOGGERS = ("httpx", "httpcore", "aiokafka")


class ContextFilter(logging.Filter):
    """Inject service and correlation identifiers into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = trace_id_ctx.get()
        record.notification_id = notification_id_ctx.get()
        record.purchase_token = purchase_token_ctx.get()
        return True


def configure_logging() -> None:
    """Configure root logger once per service process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(service_name)s %(trace_id)s %(notification_id)s "
        "%(purchase_token)s %(message)s"
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level.upper())
    root.addFilter(context_filter)

    # httpx logs full request URLs, which carry purchase tokens.
    for noisy in QUIET_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)


logger = logging.getLogger("subrecon")
