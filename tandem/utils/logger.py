"""Logging utilities for tandem."""

import logging
import os
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER_NAME = "tandem"


def default_log_dir() -> Path:
    """Directory holding the debug log file (``TANDEM_LOG_DIR`` overrides)."""
    override = os.environ.get("TANDEM_LOG_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".tandem" / "logs"


class TandemLogger:
    """Logger with a rich console handler and a debug file handler.

    Handlers live on the root ``tandem`` logger only; every named logger
    created through :func:`get_logger` propagates to it.
    """

    _handlers_setup = False

    def __init__(self, name: str = ROOT_LOGGER_NAME, level: Optional[str] = None):
        """Initialize logger.

        Args:
            name: Logger name
            level: Optional log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
                Child loggers inherit the root level when omitted.
        """
        self.logger = logging.getLogger(name)
        if level is not None:
            self.logger.setLevel(getattr(logging, level.upper()))
        elif name == ROOT_LOGGER_NAME:
            self.logger.setLevel(logging.DEBUG)

        if not TandemLogger._handlers_setup:
            root_logger = logging.getLogger(ROOT_LOGGER_NAME)
            if not root_logger.handlers:
                self._setup_handlers(root_logger)
            TandemLogger._handlers_setup = True

        if name != ROOT_LOGGER_NAME:
            self.logger.propagate = True

    def _setup_handlers(self, logger: logging.Logger) -> None:
        """Setup console and file handlers."""
        console_handler = RichHandler(
            console=Console(stderr=True),
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
        )
        console_handler.setLevel(logging.INFO)
        logger.addHandler(console_handler)

        log_dir = default_log_dir()
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_dir / "tandem.log")
        except OSError as e:
            logger.debug(f"File logging disabled, cannot open {log_dir}: {e}")
            return

        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        logger.addHandler(file_handler)

    def set_console_level(self, level: str) -> None:
        """Change the level of the console handler on the root logger."""
        root_logger = logging.getLogger(ROOT_LOGGER_NAME)
        for handler in root_logger.handlers:
            if not isinstance(handler, logging.FileHandler):
                handler.setLevel(getattr(logging, level.upper()))

    def debug(self, message: str, **kwargs) -> None:
        self.logger.debug(message, **kwargs)

    def info(self, message: str, **kwargs) -> None:
        self.logger.info(message, **kwargs)

    def warning(self, message: str, **kwargs) -> None:
        self.logger.warning(message, **kwargs)

    def error(self, message: str, **kwargs) -> None:
        self.logger.error(message, **kwargs)

    def exception(self, message: str, **kwargs) -> None:
        """Log exception with traceback."""
        self.logger.exception(message, **kwargs)


logger = TandemLogger()


def get_logger(name: Optional[str] = None, level: Optional[str] = None) -> TandemLogger:
    """Get logger instance.

    Args:
        name: Logger name (defaults to 'tandem')
        level: Optional log level

    Returns:
        Logger instance
    """
    if name is None:
        return logger
    return TandemLogger(name, level)


def enable_verbose_logging() -> None:
    """Send debug records to the console as well as the log file."""
    logger.set_console_level("DEBUG")
    logger.debug("Verbose logging enabled")
