"""Logging configuration for the monitor, the CLI and the API."""
import logging
import logging.handlers
import os
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level='INFO', log_file=None):
    """
    Configure the root logger.

    Args:
        level: Log level name or number
        log_file: Optional path; adds a rotating file handler next to stderr
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    root = logging.getLogger()
    root.setLevel(level)

    # Repeated calls (tests, --watch) must not stack handlers
    for handler in list(root.handlers):
        if getattr(handler, '_bgp_alerter', False):
            root.removeHandler(handler)
            handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    console._bgp_alerter = True
    root.addHandler(console)

    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=10 * 1024 * 1024, backupCount=5
        )
        file_handler.setFormatter(formatter)
        file_handler._bgp_alerter = True
        root.addHandler(file_handler)

    # requests/urllib3 chatter is only useful when debugging
    logging.getLogger('urllib3').setLevel(max(level, logging.WARNING))
    return root
