"""Structured logging configuration.

LOG_FORMAT selects the handler output:
- "json": one JSON object per line, tagged with service and request_id
- "text": human-readable lines for local runs and the CLI
"""

import logging
import sys

from pythonjsonlogger.json import JsonFormatter

from scrapecascade.core.request_id import get_request_id

SERVICE_NAME = "scrapecascade"
TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s [%(request_id)s] %(message)s"
JSON_FIELDS = "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s %(service)s"

# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


class CascadeContextFilter(logging.Filter):
    """Tag every record with the current request id and the service name."""

    def filter(self, record):
        record.request_id = get_request_id() or "-"
        record.service = SERVICE_NAME
        return True


def build_formatter(log_format: str) -> logging.Formatter:
    if log_format == "json":
        return JsonFormatter(
            fmt=JSON_FIELDS,
            rename_fields={"levelname": "level", "name": "logger", "asctime": "timestamp"},
        )
    return logging.Formatter(TEXT_FORMAT)


def configure_logging(log_format: str = "json", log_level: str = "INFO", stream=None):
    """Install a single stdout (or `stream`) handler on the root logger.

    Args:
        log_format: "json" or "text"
        log_level: level name for the root logger; unknown names fall back to INFO
        stream: output stream, stdout by default (the CLI passes stderr)
    """
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.addFilter(CascadeContextFilter())
    handler.setFormatter(build_formatter(log_format))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
