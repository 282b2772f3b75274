import json
import logging
import re
import sys
import time
from typing import Any, Dict, Optional

from .config import get_settings


SENSITIVE_KEYS = ("authorization", "cookie", "set-cookie", "x-admin-token", "token", "password", "secret")


class JsonFormatter(logging.Formatter):
    """JSON formatter that keeps credentials carried in headers out of the logs."""

    def __init__(self):
        super().__init__()
        self.redaction_patterns = [
            re.compile(r'(?i)\b(authorization|x-admin-token|cookie)\s*[=:]\s*["\']?([^"\s,}]+(?:\s+[^"\s,}]+)?)'),
            re.compile(r'(?i)\bbearer\s+([A-Za-z0-9\-._~+/]+=*)'),
        ]

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": self._redact_text(record.getMessage()),
        }

        for key, value in _record_extras(record).items():
            if isinstance(value, str):
                payload[key] = self._redact_text(value)
            elif isinstance(value, dict):
                payload[key] = self._redact_dict(value)
            else:
                payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self._redact_text(self.formatException(record.exc_info))

        return json.dumps(payload, ensure_ascii=False, default=str)

    def _redact_text(self, text: str) -> str:
        if not isinstance(text, str):
            return text
        redacted = text
        for pattern in self.redaction_patterns:
            for match in pattern.finditer(redacted):
                secret = match.group(match.lastindex or 0)
                if secret:
                    redacted = redacted.replace(secret, "[REDACTED]")
        return redacted

    def _redact_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        redacted: Dict[str, Any] = {}
        for key, value in data.items():
            if any(s in str(key).lower() for s in SENSITIVE_KEYS):
                redacted[key] = "[REDACTED]"
            elif isinstance(value, str):
                redacted[key] = self._redact_text(value)
            elif isinstance(value, dict):
                redacted[key] = self._redact_dict(value)
            else:
                redacted[key] = value
        return redacted


_RESERVED = set(vars(logging.makeLogRecord({})).keys()) | {"message", "asctime"}


def _record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {k: v for k, v in vars(record).items() if k not in _RESERVED}


def setup_logging(level: Optional[str] = None) -> None:
    settings = get_settings()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))
