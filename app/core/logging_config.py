"""
Application-wide logging configuration helpers.

All modules log through ``logging.getLogger(__name__)``; this module wires the
handlers once so every pipeline stage emits the same human-readable lines.
"""
from __future__ import annotations

import logging
import time
from logging.config import dictConfig
from typing import Optional


_is_configured = False

# Third-party loggers that are chatty at INFO.
_QUIET_LOGGERS = ("boto3", "botocore", "urllib3", "s3transfer")


class UTCFormatter(logging.Formatter):
    """Formatter that renders timestamps in UTC."""

    converter = time.gmtime


def configure_logging(level: Optional[str] = None, timezone: str = "local") -> None:
    """
    Configure root and application loggers if they have not been configured yet.

    Args:
        level: Optional log level override (e.g., "DEBUG", "INFO").
        timezone: "local" for server time, "UTC" to render timestamps in UTC.
    """
    global _is_configured

    if _is_configured:
        return

    log_level = (level or "INFO").upper()
    formatter = {
        "format": "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        "datefmt": "%Y-%m-%d %H:%M:%S",
    }
    if timezone.upper() == "UTC":
        formatter["()"] = UTCFormatter

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"standard": formatter},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "level": log_level,
                }
            },
            "root": {
                "handlers": ["console"],
                "level": log_level,
            },
        }
    )

    logging.getLogger("app").setLevel(log_level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _is_configured = True
