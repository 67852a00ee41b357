# picrust2_tools/logger.py
"""
Logging functionality for PICRUSt2 Tools.

All modules log through the 'picrust2_tools' logger (or a child of it), so a
single call to setup_logger() configures console and file output for the
whole package.
"""

import os
import logging

LOGGER_NAME = 'picrust2_tools'

# Third-party loggers that flood INFO output during model fitting and plotting
NOISY_LOGGERS = ('matplotlib', 'matplotlib.font_manager', 'PIL', 'urllib3', 'pydeseq2')

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def get_logger(name=None):
    """Return the package logger, or a named child of it."""
    if name:
        return logging.getLogger(f"{LOGGER_NAME}.{name}")
    return logging.getLogger(LOGGER_NAME)


def setup_logger(log_file=None, log_level=logging.INFO):
    """
    Setup logger for PICRUSt2 Tools.

    Args:
        log_file: Path to log file (optional)
        log_level: Logging level (default: INFO)

    Returns:
        Logger instance
    """
    logger = get_logger()
    logger.setLevel(log_level)

    # Replace handlers from a previous call instead of stacking them
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setLevel(log_level)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    return logger


def log_print(message, level='info'):
    """
    Print message to console and log with the specified level.

    Args:
        message: Message to print and log
        level: Logging level (info, debug, warning, error, critical)
    """
    print(message)
    log_method = getattr(get_logger(), level.lower(), None)
    if log_method is None or level.lower() not in ('debug', 'info', 'warning', 'error', 'critical'):
        log_method = get_logger().info
    log_method(message)
