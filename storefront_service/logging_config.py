"""
logging_config.py — Centralized Logging Configuration for the Storefront Service

This module configures unified logging behavior for the entire application.
It ensures that all modules log messages consistently to the console and,
when configured, to a file.

Features:
    • Combined console and file logging output
    • Process ID tagging for multi-process visibility
    • Standardized log format for all modules
    • Reduced verbosity for external dependencies (e.g., httpx, sqlalchemy)
"""

import logging
import sys

from . import config


def setup_logging():
    """
    Configures the global logging system for the application.

    The configuration includes:
        - Log level: taken from LOG_LEVEL (default INFO)
        - Log format: timestamp, log level, process ID, and message
        - Output destinations:
            1. Console (stdout): real-time logs, Docker/Kubernetes compatible
            2. File: LOG_FILE, skipped when the variable is empty
        - Reduced verbosity for third-party libraries
    """
    log_format = '%(asctime)s - %(levelname)s - [PID:%(process)d] - %(message)s'

    handlers = [logging.StreamHandler(sys.stdout)]
    if config.LOG_FILE:
        handlers.append(logging.FileHandler(config.LOG_FILE))

    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format=log_format,
        handlers=handlers
    )

    # Reduce verbosity from external libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def get_logger(name):
    """
    Returns a configured logger instance for a given module or component name.

    Args:
        name (str): The logger name, typically the module’s __name__.

    Returns:
        logging.Logger: A preconfigured logger that follows the global format and handlers.
    """
    return logging.getLogger(name)
