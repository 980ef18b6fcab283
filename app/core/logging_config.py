"""
Structured logging configuration for the application.

Provides JSON-formatted logs and a redaction filter that keeps passwords,
tokens, codes and keys out of every handler.
"""

import logging
import re
import sys
from typing import Any, Dict
from datetime import datetime, timezone
from pythonjsonlogger import jsonlogger

# Field names whose values must never be written to a log
SENSITIVE_FIELDS = frozenset({
    "password",
    "password_hash",
    "token",
    "code",
    "backup_code",
    "secret",
    "two_fa_secret",
    "api_key",
    "encrypted_key",
    "access_token",
    "refresh_token",
    "challenge_token",
    "setup_token",
})

_INLINE_SECRET = re.compile(
    r"(?i)\b(password|token|code|secret|api_key)(\s*[=:]\s*)([^\s,;&]+)"
)

REDACTED = "[REDACTED]"


class SecretRedactionFilter(logging.Filter):
    """
    Scrub secrets from log records.

    Masks "key=value" pairs in the rendered message and any sensitive
    attribute passed through `extra=`.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        scrubbed = _INLINE_SECRET.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", message)
        if scrubbed != message:
            record.msg = scrubbed
            record.args = ()

        for field in SENSITIVE_FIELDS:
            if field in record.__dict__:
                setattr(record, field, REDACTED)
        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """
    Custom JSON formatter that adds standard fields to all log records.
    """

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.now(timezone.utc).isoformat()
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['module'] = record.module
        log_record['function'] = record.funcName

        # Add line number for errors/warnings
        if record.levelno >= logging.WARNING:
            log_record['line'] = record.lineno
            log_record['pathname'] = record.pathname


def setup_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Whether to use JSON formatting (True for production, False for development)
    """
    # Remove any existing handlers
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)

    if json_logs:
        formatter = CustomJsonFormatter(
            '%(timestamp)s %(level)s %(logger)s %(module)s %(funcName)s %(message)s'
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    console_handler.setFormatter(formatter)
    console_handler.addFilter(SecretRedactionFilter())

    root_logger.setLevel(getattr(logging, log_level.upper()))
    root_logger.addHandler(console_handler)

    # Set specific log levels for noisy libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.INFO)
