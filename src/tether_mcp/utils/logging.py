"""
Logging utilities for the tether-mcp client.
"""

import logging
from typing import Dict, Optional

from rich.console import Console
from rich.logging import RichHandler


# Global logger configuration
_loggers: Dict[str, logging.Logger] = {}
_console = Console(stderr=True)
_log_level = logging.INFO
_log_handlers = [RichHandler(console=_console, rich_tracebacks=True)]

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def parse_level(level: int | str) -> int:
    """
    Convert a level name such as "info" into a logging level.

    Unknown names fall back to INFO.
    """
    if isinstance(level, int):
        return level
    return _LEVELS.get(str(level).lower(), logging.INFO)


def configure_logging(level: int | str = logging.INFO, add_file_handler: Optional[str] = None) -> None:
    """
    Configure the logging system.

    Args:
        level: Logging level, either a number or a name ("debug", "info", ...).
        add_file_handler: If provided, also log to this file.
    """
    global _log_level, _log_handlers

    _log_level = parse_level(level)
    _log_handlers = [RichHandler(console=_console, rich_tracebacks=True)]

    if add_file_handler:
        file_handler = logging.FileHandler(add_file_handler)
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        ))
        _log_handlers.append(file_handler)

    # Update existing loggers
    for logger in _loggers.values():
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)

        for handler in _log_handlers:
            logger.addHandler(handler)

        logger.setLevel(_log_level)


class PatchedLogger(logging.Logger):
    """
    A logger that accepts a 'data' keyword with a structured payload.
    """

    def _log(self, level, msg, args, exc_info=None, extra=None, stack_info=False,
             stacklevel=1, data=None, **kwargs):
        if data is not None:
            if args:
                args = args + (data,)
            else:
                msg = f"{msg} {data}"

        super()._log(level, msg, args, exc_info, extra, stack_info, stacklevel)


# Register our custom logger class
logging.setLoggerClass(PatchedLogger)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the specified name.

    Args:
        name: Name of the logger.

    Returns:
        Logger instance.
    """
    if name in _loggers:
        return _loggers[name]

    logger = logging.getLogger(name)
    logger.setLevel(_log_level)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    for handler in _log_handlers:
        logger.addHandler(handler)

    _loggers[name] = logger
    return logger
