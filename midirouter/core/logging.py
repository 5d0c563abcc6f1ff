"""Logging configuration utilities for the MIDI routing service."""
import logging
import os

# Root of every service logger; the log sink attaches here
SERVICE_NAME = "Midi-Router"


def setup_logging(level: str | None = None) -> logging.Logger:
    """Configure root logging based on the LOG_LEVEL environment variable."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
    return logging.getLogger(SERVICE_NAME)


def get_logger(component: str) -> logging.Logger:
    """Return the logger for one service component, e.g. ``Midi-Router.Engine``."""
    return logging.getLogger(f"{SERVICE_NAME}.{component}")
