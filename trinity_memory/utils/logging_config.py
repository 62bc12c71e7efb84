"""
Centralized logging configuration for the memory backend.
"""

import logging
import sys
from typing import Optional

from .config import AppConfig

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(config: Optional[AppConfig] = None) -> None:
    """
    Setup centralized logging configuration.

    Args:
        config: AppConfig instance, uses default if None
    """
    if config is None:
        from .config import config as default_config
        config = default_config

    logging.basicConfig(level=getattr(logging, config.log_level.upper()),
                        format=LOG_FORMAT,
                        handlers=[logging.StreamHandler(sys.stdout)])

    # Client libraries log every HTTP round trip at INFO
    for noisy in ('botocore', 'urllib3', 'opensearch'):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str, config: Optional[AppConfig] = None) -> logging.Logger:
    """
    Get a logger with proper configuration.

    Args:
        name: Logger name (usually __name__)
        config: AppConfig instance, uses default if None

    Returns:
        Configured logger instance
    """
    if config is None:
        from .config import config as default_config
        config = default_config

    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, config.log_level.upper()))
    return logger
