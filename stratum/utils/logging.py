"""
Logging configuration utilities.

This module provides functions for setting up and configuring logging.
"""
import logging
from typing import Optional

DEFAULT_LOG_FILE = "/tmp/stratum-install.log"

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(debug: bool = False, log_file: Optional[str] = None) -> None:
    """
    Configure logging for the application.
    
    Args:
        debug: Whether to enable debug logging
        log_file: Optional path of a file that mirrors the console log
    """
    level = logging.DEBUG if debug else logging.INFO
    
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT
    )
    
    logger = logging.getLogger('stratum')
    logger.setLevel(level)

    if log_file:
        try:
            handler = logging.FileHandler(log_file)
        except OSError as e:
            logger.warning(f"Could not open log file {log_file}, logging to console only: {e}")
            return
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(handler)


def advisory(logger: logging.Logger, message: str) -> None:
    """Log a non-fatal condition, marked as advisory in the message itself."""
    logger.warning(f"ADVISORY: {message}")
