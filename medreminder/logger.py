"""
Logging

Named loggers for medreminder with console and optional file output.

Many modules grab a logger at import time, before any config exists. Those
start on the defaults (INFO, stdout); configure_logging(config) later
re-applies level and handlers to every logger handed out so far.
"""

import logging
import os
import sys
import threading
from pathlib import Path


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_LOG_FILE = Path.home() / ".medreminder" / "logs" / "medreminder.log"

_loggers = {}
_lock = threading.Lock()
_active_config = None


def _settings(config):
    if config is None:
        level, log_file, console = "INFO", None, True
    else:
        level = config.get("logging.level", "INFO")
        log_file = config.get("logging.file")
        console = config.get("logging.console", True)

    # Headless poller runs: file only
    if os.environ.get("MEDREMINDER_LOG_FILE_ONLY"):
        console = False
        log_file = log_file or str(DEFAULT_LOG_FILE)

    return getattr(logging, str(level).upper(), logging.INFO), log_file, console


def _apply(logger: logging.Logger, config):
    level, log_file, console = _settings(config)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    if console:
        stream = logging.StreamHandler(sys.stdout)
        stream.setLevel(level)
        stream.setFormatter(formatter)
        logger.addHandler(stream)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # Prevent propagation to root logger
    logger.propagate = False


def get_logger(name: str, config=None) -> logging.Logger:
    """Get or create a configured logger.

    Args:
        name: Logger name (usually __name__)
        config: Configuration object (optional). Only used the first time a
            name is requested, unless configure_logging() has run.

    Returns:
        Configured logger instance
    """
    with _lock:
        logger = _loggers.get(name)
        if logger is None:
            logger = logging.getLogger(name)
            _apply(logger, config if config is not None else _active_config)
            _loggers[name] = logger
        return logger


def configure_logging(config):
    """Apply config's logging section to every medreminder logger."""
    global _active_config
    with _lock:
        _active_config = config
        for logger in _loggers.values():
            _apply(logger, config)
