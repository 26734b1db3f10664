import logging
import os
from logging.config import dictConfig
from typing import Any, Dict

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
TELEMETRY_LOG_FORMAT = "%(asctime)s %(message)s"

# Third-party loggers that are noisy at INFO during every sync cycle.
_CHATTY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def _level(name: str, default: str) -> str:
    level = os.getenv(name, default).upper()
    if not isinstance(logging.getLevelName(level), int):
        return default
    return level


def build_logging_config() -> Dict[str, Any]:
    """dictConfig for the service; telemetry lines get their own handler."""
    level = _level("ACADEMY_LOG_LEVEL", "INFO")
    debug_http = os.getenv("ACADEMY_DEBUG_HTTP", "0") == "1"
    telemetry_enabled = os.getenv("ACADEMY_TELEMETRY_LOG", "1") != "0"

    loggers: Dict[str, Any] = {
        "academy": {"level": level},
        "academy.telemetry": {
            "handlers": ["telemetry"],
            "level": "INFO" if telemetry_enabled else "CRITICAL",
            "propagate": False,
        },
    }
    for name in _CHATTY_LOGGERS:
        loggers[name] = {"level": "DEBUG" if debug_http else "WARNING"}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {"format": DEFAULT_LOG_FORMAT},
            "telemetry": {"format": TELEMETRY_LOG_FORMAT},
        },
        "handlers": {
            "default": {"class": "logging.StreamHandler", "formatter": "default"},
            "telemetry": {"class": "logging.StreamHandler", "formatter": "telemetry"},
        },
        "loggers": loggers,
        "root": {"handlers": ["default"], "level": level},
    }


def configure_logging() -> None:
    dictConfig(build_logging_config())
