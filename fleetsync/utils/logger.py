"""Logger setup for the fleetsync agent"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from .. import config


def setup_logging(level: str = None, log_file: str = None):
    """Setup logging configuration"""
    level = level or ("DEBUG" if config.DEBUG else config.LOG_LEVEL)
    log_file = log_file if log_file is not None else config.LOG_FILE

    # Create logger
    logger = logging.getLogger()
    logger.setLevel(level)

    # Format
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # File handler
    if log_file:
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            file_handler = RotatingFileHandler(log_file, maxBytes=5_000_000, backupCount=3)
            file_handler.setLevel(logging.INFO)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except Exception as e:
            logger.warning(f"Could not create file handler: {e}")

    # paho logs every packet at DEBUG
    logging.getLogger("paho").setLevel(logging.WARNING)

    logger.info("Logging configured")
