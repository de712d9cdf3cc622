import logging
import os
import sys
from contextlib import contextmanager

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(run_log_path: str, logger_name: str = None):
    """
    Configure root logging to stream to stdout and write to run_log_path.
    Returns a logger (named if provided, else root) and a formatter to reuse
    for any additional per-file handlers.
    """
    log_dir = os.path.dirname(run_log_path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)

    # Clear existing handlers (avoid duplicates in reruns/tests)
    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)

    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler(stream=sys.stdout)  # stdout for visibility in parent
    stream_handler.setFormatter(formatter)
    file_handler = logging.FileHandler(run_log_path)
    file_handler.setFormatter(formatter)

    root_logger.addHandler(stream_handler)
    root_logger.addHandler(file_handler)

    # Return named logger (propagates to root) or root
    if logger_name:
        return logging.getLogger(logger_name), formatter
    return root_logger, formatter


@contextmanager
def attach_source_log(logger: logging.Logger, log_path: str, formatter: logging.Formatter = None):
    """Tee ``logger`` into a per-source file for the duration of the block."""
    log_dir = os.path.dirname(log_path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    handler = logging.FileHandler(log_path)
    handler.setFormatter(formatter or logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    try:
        yield handler
    finally:
        logger.removeHandler(handler)
        handler.close()
