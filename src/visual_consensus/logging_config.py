"""
Logging setup for applications embedding Visual Consensus.
"""

import logging
import sys
from typing import Optional

from .config import LoggingConfig, get_config

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(config: Optional[LoggingConfig] = None) -> logging.Logger:
    """
    Configure the ``visual_consensus`` logger.

    Logs go to stderr and, when ``log_file`` is set, to that file as well.
    Calling this again replaces the handlers installed by the previous call.
    """
    config = config or get_config().logging

    logger = logging.getLogger("visual_consensus")
    logger.setLevel(logging.DEBUG if config.debug else logging.INFO)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if config.log_file:
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
