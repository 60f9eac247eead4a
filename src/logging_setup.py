"""Logging for the claims processes: console plus an optional rotating file.

Every handler carries `SensitiveDataFilter`, so a phone number or a
verification code that slips into a message is masked before it is written.
"""

from __future__ import annotations

import logging
import os
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s:%(name)s:%(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_ACCESS_LOG_LEVEL = "WARNING"
DEFAULT_LOG_DIR = "/data/logs"
DEFAULT_LOG_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_LOG_BACKUP_COUNT = 10

_PHONE_RE = re.compile(r"(?<![\w+])\+\d{7,15}\b")
_CODE_RE = re.compile(r"(?i)\b(code\b\D{0,12})(\d{4,10})\b")


def _env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().strip('"').strip("'") or default


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env(name, str(default)))
    except ValueError:
        return default


def _level(name: str, default: str) -> int:
    return getattr(logging, _env(name, default).upper(), logging.INFO)


def mask_sensitive(message: str) -> str:
    """Hide verification codes and all but the last two digits of phone numbers."""
    message = _CODE_RE.sub(lambda m: m.group(1) + "*" * len(m.group(2)), message)

    def _mask_phone(match: re.Match) -> str:
        digits = re.sub(r"\D", "", match.group(0))
        if len(digits) < 7:
            return match.group(0)
        return "*" * (len(digits) - 2) + digits[-2:]

    return _PHONE_RE.sub(_mask_phone, message)


class SensitiveDataFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        rendered = record.getMessage()
        masked = mask_sensitive(rendered)
        if masked != rendered:
            record.msg = masked
            record.args = ()
        return True


def configure_logging(service_name: str) -> None:
    """Install console + rotating file handlers on the root logger.

    A log directory that can't be created leaves console-only output.
    """
    level = _level("LOG_LEVEL", DEFAULT_LOG_LEVEL)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    redact = SensitiveDataFilter()

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    file_error: OSError | None = None
    log_dir = Path(_env("LOG_DIR", DEFAULT_LOG_DIR))
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_dir / _env("LOG_FILE_NAME", f"{service_name}.log"),
                maxBytes=_env_int("LOG_MAX_BYTES", DEFAULT_LOG_MAX_BYTES),
                backupCount=_env_int("LOG_BACKUP_COUNT", DEFAULT_LOG_BACKUP_COUNT),
                encoding="utf-8",
            )
        )
    except OSError as error:
        file_error = error

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(redact)
        root_logger.addHandler(handler)

    # One line per HTTP request is noise at INFO.
    logging.getLogger("aiohttp.access").setLevel(_level("LOG_ACCESS_LEVEL", DEFAULT_ACCESS_LOG_LEVEL))

    if file_error is not None:
        logging.getLogger(__name__).warning(
            "File logging disabled for %s: failed to initialize %s (%s)",
            service_name,
            log_dir,
            file_error,
        )
