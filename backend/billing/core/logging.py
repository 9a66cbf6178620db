"""Logging configuration for the billing service"""
import logging
import re

from billing.core.config import settings

# Gateway credentials that must never reach a log sink
_SECRET_PATTERNS = (
    (re.compile(r"(Bearer\s+)[A-Za-z0-9_\-\.]+"), r"\1***"),
    (re.compile(r"(access_token=)[^&\s\"']+"), r"\1***"),
    (re.compile(r"((?:APP_USR|TEST)-)[0-9]+-[0-9A-Za-z\-]+"), r"\1***"),
)


def redact(message: str) -> str:
    for pattern, replacement in _SECRET_PATTERNS:
        message = pattern.sub(replacement, message)
    return message


class RedactSecretsFilter(logging.Filter):
    """Masks gateway tokens in formatted log messages"""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = redact(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


def setup_logging(level: str = None):
    """Configure root logging for the billing service"""
    level = (level or settings.LOG_LEVEL).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )
    for handler in logging.getLogger().handlers:
        handler.addFilter(RedactSecretsFilter())

    # Gateway traffic is logged by the gateway logger, not by the HTTP stack
    for name in ("urllib3", "httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)


# Notification intake and gateway calls get their own streams
webhook_logger = logging.getLogger("billing.webhook")
gateway_logger = logging.getLogger("billing.gateway")
