"""Structured logging setup using structlog"""

import logging
import re
import sys
from typing import Any

import structlog

from megabridge.config import settings


def configure_third_party_loggers(log_level: int):
    """Configure third-party library loggers to reduce verbosity"""

    # Never chattier than WARNING, regardless of our own level
    quiet_level = max(log_level, logging.WARNING)

    # Uvicorn access logs are replaced by the request logging middleware
    logging.getLogger("uvicorn.access").setLevel(logging.ERROR)
    logging.getLogger("uvicorn.error").setLevel(quiet_level)

    # APScheduler logs every job execution at INFO
    logging.getLogger("apscheduler").setLevel(quiet_level)
    logging.getLogger("apscheduler.executors").setLevel(quiet_level)
    logging.getLogger("apscheduler.scheduler").setLevel(quiet_level)

    # Aiohttp
    logging.getLogger("aiohttp").setLevel(quiet_level)
    logging.getLogger("aiohttp.client").setLevel(quiet_level)

    # SQLAlchemy
    logging.getLogger("sqlalchemy").setLevel(quiet_level)
    logging.getLogger("sqlalchemy.engine").setLevel(quiet_level)
    logging.getLogger("sqlalchemy.pool").setLevel(quiet_level)

    logging.getLogger("asyncio").setLevel(quiet_level)
    logging.getLogger("multipart").setLevel(quiet_level)


def configure_logging():
    """Configure structured JSON logging"""

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    # Configure root logger
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    configure_third_party_loggers(log_level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> Any:
    """Get a logger instance"""
    return structlog.get_logger(name)


def sanitize_folder_url(url: str) -> str:
    """
    Mask the decryption key of a folder link for logging.

    The key is everything after '#' (or after the second '!' in legacy
    '#F!id!key' links) and must never reach the logs.

    Args:
        url: Folder link as submitted by the client

    Returns:
        The link with its key replaced by '***'
    """
    if not url:
        return url

    legacy = re.match(r"^(.*#F![^!]+!).*$", url)
    if legacy:
        return legacy.group(1) + "***"

    return re.sub(r"#.*", "#***", url)


# Configure logging on import
configure_logging()
