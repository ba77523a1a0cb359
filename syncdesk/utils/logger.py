"""
Logging setup for SyncDesk.

Text output for local development, one JSON object per line in production
(LOG_FORMAT=json) so the sync and scheduler logs can be shipped to an
aggregator. Token material passed through `extra_fields` is redacted.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

TEXT_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"

REDACTED_KEYS = {"access_token", "refresh_token", "client_secret", "password", "code"}


def redact(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {k: ("***" if k in REDACTED_KEYS and v else v) for k, v in fields.items()}


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record.

    Carries timestamp, level, logger, message and source location, plus any
    `extra={'extra_fields': {...}}` the caller attached (user_id, scope,
    skipped, source...).
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        extra_fields = getattr(record, 'extra_fields', None)
        if extra_fields:
            entry.update(redact(extra_fields))

        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> logging.Logger:
    """
    Attach a single stream handler to the "syncdesk" logger.

    Args:
        level: Level name, defaults to Config.LOG_LEVEL
        fmt: "json" or "text", defaults to Config.LOG_FORMAT

    Safe to call more than once; earlier handlers are replaced.
    """
    from syncdesk.config import Config

    package_logger = logging.getLogger("syncdesk")
    package_logger.setLevel((level or Config.LOG_LEVEL).upper())

    handler = logging.StreamHandler()
    if (fmt or Config.LOG_FORMAT).lower() == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    package_logger.handlers = [handler]
    package_logger.propagate = False
    return package_logger
