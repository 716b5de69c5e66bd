"""
Logging setup for the EBS backend.
"""

import logging
import logging.handlers
from typing import Optional

from ebs_backend.errors import ValidationError

PACKAGE_LOGGER = "ebs_backend"

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

SYSLOG_ADDRESS = "/dev/log"


def parse_level(level: str) -> int:
    try:
        return LEVELS[level.upper()]
    except KeyError:
        raise ValidationError(
            f"Invalid log level: {level}. Valid log levels are: {sorted(LEVELS)}",
            error_code="INVALID_LOG_LEVEL",
        ) from None


def buffer_logging(capacity: int = 1000) -> logging.handlers.MemoryHandler:
    """
    Hold back `ebs_backend` log records until configure_logging() runs.

    Records logged while the configuration is still being read (before the
    level and the syslog settings are known) are kept in a MemoryHandler.
    Pass it to configure_logging() to replay them through the real handlers.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    # Never flushes on its own, there is no target until configure_logging().
    handler = logging.handlers.MemoryHandler(capacity, flushLevel=logging.CRITICAL + 1)
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    return handler


def configure_logging(
    level: str = "INFO",
    enable_syslog: bool = False,
    syslog_facility: str = "LOCAL0",
    fmt: str = DEFAULT_FORMAT,
    syslog_address: Optional[str] = SYSLOG_ADDRESS,
    buffered: Optional[logging.handlers.MemoryHandler] = None,
) -> logging.Logger:
    """
    Configure the `ebs_backend` logger.

    Args:
        level: Level name (DEBUG, INFO, WARN/WARNING, ERROR)
        enable_syslog: Also send records to the local syslog daemon
        syslog_facility: Syslog facility name, e.g. LOCAL0
        fmt: Log format string
        buffered: Handler returned by buffer_logging(); its records at or
            above `level` are replayed once the handlers are installed

    Returns:
        The configured package logger
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    if buffered is not None:
        logger.removeHandler(buffered)

    logger.setLevel(parse_level(level))

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt))
        logger.addHandler(handler)

    if enable_syslog:
        facility = logging.handlers.SysLogHandler.facility_names.get(syslog_facility.lower())
        if facility is None:
            raise ValidationError(f"Invalid syslog facility: {syslog_facility}", error_code="INVALID_SYSLOG")
        syslog = logging.handlers.SysLogHandler(address=syslog_address, facility=facility)
        syslog.setFormatter(logging.Formatter("ebs-backend: %(levelname)s %(message)s"))
        logger.addHandler(syslog)

    if buffered is not None:
        for record in buffered.buffer:
            if record.levelno >= logger.level:
                logger.handle(record)
        buffered.close()

    return logger
