"""
Structured JSON Logging for the write pipeline
==============================================
One JSON object per line, so CloudWatch Logs Insights (or any log shipper)
can filter on request_id / entity_type / operation without regex parsing.

Usage:
  from pipeline.logger import get_logger
  logger = get_logger(__name__)
  logger.info("Mutation applied", extra={"request_id": "r1", "entity_type": "restaurant"})

Output:
  {"timestamp":"2024-01-01T00:00:00Z","level":"INFO","service":"write-processor",
   "logger":"write_processor.processor","message":"Mutation applied","request_id":"r1",...}
"""
from __future__ import annotations

import json
import logging
import os
import time
from typing import Any

# Standard logging.LogRecord fields we don't want in the output
_STDLIB_FIELDS = {
    "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
    "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
    "created", "msecs", "relativeCreated", "thread", "threadName",
    "processName", "process", "message", "taskName",
}

_configured = False


class JsonFormatter(logging.Formatter):
    def __init__(self, service: str):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()

        log_obj: dict[str, Any] = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.message,
        }

        for key, value in record.__dict__.items():
            if key not in _STDLIB_FIELDS:
                log_obj[key] = value

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


def configure_logging(service: str | None = None, level: str | None = None) -> None:
    """Install the JSON formatter on the root logger. Safe to call repeatedly."""
    global _configured
    service = service or os.environ.get("SERVICE_NAME", "bellyfed-pipeline")
    root = logging.getLogger()
    formatter = JsonFormatter(service)
    if root.handlers:
        for h in root.handlers:
            h.setFormatter(formatter)
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        root.addHandler(handler)
    log_level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    root.setLevel(getattr(logging, log_level, logging.INFO))
    # botocore is chatty at DEBUG and leaks request bodies
    logging.getLogger("botocore").setLevel(logging.WARNING)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Return a logger emitting structured JSON to stdout.
    Configures the root logger on first use.
    """
    if not _configured:
        configure_logging()
    return logging.getLogger(name)
