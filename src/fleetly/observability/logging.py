"""JSON logging for the pricing and cache services.

Structured fields go through ``extra={"extra_fields": {...}}``. Query
parameters can carry customer identifiers, so ``describe_params`` reduces
them to their key names before they reach a log line.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Mapping

from .correlation import current_correlation_id

_DEFAULT_LEVEL = "INFO"


class JsonFormatter(logging.Formatter):
    """One JSON object per line, tagged with the active correlation ID."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        cid = current_correlation_id()
        if cid:
            payload["correlationId"] = cid

        fields = getattr(record, "extra_fields", None)
        if isinstance(fields, Mapping):
            payload.update(fields)

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def get_logger(name: str) -> logging.Logger:
    """Return a logger writing JSON to stdout.

    Level comes from ``FLEETLY_LOG_LEVEL`` (default INFO). Handlers are
    attached once per logger name.
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
        level = os.environ.get("FLEETLY_LOG_LEVEL", _DEFAULT_LEVEL).upper()
        logger.setLevel(getattr(logging, level, logging.INFO))
        logger.propagate = False

    return logger


def describe_params(params: Mapping[str, Any] | None) -> str:
    """Summarise query params for logs without leaking their values."""
    if not params:
        return "{}"
    return "{" + ",".join(sorted(str(k) for k in params)) + "}"
