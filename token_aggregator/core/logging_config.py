"""
Logging configuration for Token Aggregator Service.

Every module logs through a ``token_aggregator.<module>`` logger and passes
structured fields via ``extra``. ``log_format`` picks how those records are
rendered: one JSON object per line, or a plain text line for local runs.
"""

import logging
import logging.config
from typing import Any, Dict, Optional

from pythonjsonlogger.json import JsonFormatter

from .config import Settings, settings as default_settings

LOGGER_NAMESPACE = "token_aggregator"

# Client libraries that log every request at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "redis", "uvicorn.access")


def _formatter(log_format: str) -> Dict[str, Any]:
    if log_format == "json":
        return {
            "()": JsonFormatter,
            "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
            "datefmt": "%Y-%m-%dT%H:%M:%S%z",
            "rename_fields": {"asctime": "time", "levelname": "level", "name": "logger"}
        }
    return {
        "format": "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        "datefmt": "%H:%M:%S"
    }


def get_logging_config(log_level: str, log_format: str = "json") -> Dict[str, Any]:
    """Build the ``dictConfig`` for the given level and format."""
    loggers: Dict[str, Any] = {name: {"level": "WARNING"} for name in QUIET_LOGGERS}
    loggers[LOGGER_NAMESPACE] = {
        "handlers": ["console"],
        "level": log_level,
        "propagate": False
    }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {log_format: _formatter(log_format)},
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": log_format,
                "stream": "ext://sys.stdout"
            }
        },
        "root": {"handlers": ["console"], "level": log_level},
        "loggers": loggers
    }


def setup_logging(config: Optional[Settings] = None) -> None:
    """Setup structured logging for the application."""
    config = config or default_settings
    logging.config.dictConfig(get_logging_config(config.log_level, config.log_format))


def create_logger(module_name: str) -> logging.Logger:
    """Create a logger for a specific module."""
    if module_name.startswith(LOGGER_NAMESPACE):
        return logging.getLogger(module_name)
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{module_name}")
