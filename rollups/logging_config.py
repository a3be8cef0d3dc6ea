"""JSON logging for the ingest API, the stream runner and the CLI.

One handler on the root logger, one JSON object per record. Keys that look
like credentials are redacted before serialization.
"""

from __future__ import annotations

import logging
import os
import socket
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Iterable

import orjson

DEFAULT_REDACTION_PATTERNS = ("api_key", "authorization", "secret", "token", "password")

_RESERVED = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}


class SensitiveDataFilter:
    def __init__(self, patterns: Iterable[str]):
        self.patterns = [p.lower() for p in patterns]

    def filter(self, data: Dict[str, Any]) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for k, v in data.items():
            lk = str(k).lower()
            if any(p in lk for p in self.patterns):
                out[k] = "[REDACTED]"
            elif isinstance(v, dict):
                out[k] = self.filter(v)
            else:
                out[k] = v
        return out


class JsonFormatter(logging.Formatter):
    def __init__(self, service: str, environment: str, redaction_patterns: Iterable[str] = DEFAULT_REDACTION_PATTERNS):
        super().__init__()
        self.hostname = socket.gethostname()
        self.pid = os.getpid()
        self.service = service
        self.environment = environment
        self.sensitive_filter = SensitiveDataFilter(redaction_patterns)

    def format(self, record: logging.LogRecord) -> str:
        data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service,
            "environment": self.environment,
            "hostname": self.hostname,
            "pid": self.pid,
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED and not key.startswith("_"):
                data[key] = value
        if record.exc_info:
            data["exception"] = self.format_exception(record.exc_info)
        data = self.sensitive_filter.filter(data)
        return orjson.dumps(data, default=str).decode("utf-8")

    @staticmethod
    def format_exception(exc_info) -> Dict[str, Any]:
        et, ev, tb = exc_info
        return {
            "type": et.__name__ if et else None,
            "message": str(ev),
            "stack": traceback.format_tb(tb),
        }


def configure_logging(service: str, environment: str, level: str) -> logging.Logger:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter(service, environment))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    return root
