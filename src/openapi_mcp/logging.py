"""Logging helpers with redaction and the per-call audit log."""

from __future__ import annotations

import json
import logging
import re
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional


_SENSITIVE_KEYS = re.compile(
    r"(token|secret|api[_-]?key|password|authorization|cookie|client[_-]?id)", re.IGNORECASE
)

AUDIT_LOGGER_NAME = "openapi_mcp.audit"


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def redact_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    redacted: Dict[str, Any] = {}
    for key, value in payload.items():
        if _SENSITIVE_KEYS.search(str(key)):
            redacted[key] = "***REDACTED***"
        elif isinstance(value, dict):
            redacted[key] = redact_payload(value)
        elif isinstance(value, list):
            redacted[key] = [redact_payload(item) if isinstance(item, dict) else item for item in value]
        else:
            redacted[key] = value
    return redacted


class AuditFormatter(logging.Formatter):
    """Renders audit records as one JSON object or one TSV row per line."""

    def __init__(self, fmt: str = "json") -> None:
        super().__init__()
        self.fmt = fmt.lower()

    def format(self, record: logging.LogRecord) -> str:
        event: Dict[str, Any] = getattr(record, "audit", None) or {"message": record.getMessage()}
        if self.fmt == "tsv":
            return "\t".join(
                [
                    str(event.get("time", "")),
                    str(event.get("tool", "")),
                    str(event.get("method", "")),
                    str(event.get("path", "")),
                    str(event.get("status", "")),
                    "1" if event.get("ok") else "0",
                    str(event.get("ms", "")),
                ]
            )
        return json.dumps(event, default=str)


def configure_audit_log(
    log_file: Optional[str],
    max_bytes: int = 1_048_576,
    backup_count: int = 5,
    fmt: str = "json",
) -> logging.Logger:
    audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
    if not log_file:
        return audit_logger

    for handler in list(audit_logger.handlers):
        if isinstance(handler, RotatingFileHandler):
            audit_logger.removeHandler(handler)
            handler.close()

    handler = RotatingFileHandler(
        log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handler.setFormatter(AuditFormatter(fmt))
    audit_logger.addHandler(handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False
    return audit_logger
