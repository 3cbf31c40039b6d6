# logging_config.py
import logging
import os
from logging.config import dictConfig

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _level_from_env() -> str:
    level = os.environ.get("LOG_LEVEL", "INFO").strip().upper()
    # unknown names fall back to INFO instead of failing app startup
    return level if isinstance(logging.getLevelName(level), int) else "INFO"


def configure_logging() -> str:
    """Console logging for the app; returns the level in use."""
    level = _level_from_env()
    dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"plain": {"format": LOG_FORMAT}},
        "handlers": {"console": {"class": "logging.StreamHandler", "formatter": "plain"}},
        "loggers": {"streamlit": {"level": "WARNING"}},
        "root": {"handlers": ["console"], "level": level},
    })
    return level
