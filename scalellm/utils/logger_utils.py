import logging
import os
import sys
from logging import Formatter, LogRecord
from pathlib import Path
from typing import Optional, Union

from colorama import Fore, Style

ROOT_LOGGER_NAME = 'scalellm'

logger_initialized: dict = {}


class ColorfulFormatter(Formatter):
    """Formatter that adds ANSI color codes to log messages based on their
    level.

    Attributes:
        COLORS: Dictionary mapping log levels to their corresponding color codes

    Example:
        >>> formatter = ColorfulFormatter('%(levelname)s: %(message)s')
        >>> handler = logging.StreamHandler()
        >>> handler.setFormatter(formatter)
    """

    COLORS = {
        'INFO': Fore.GREEN,
        'WARNING': Fore.YELLOW,
        'ERROR': Fore.RED,
        'CRITICAL': Fore.RED + Style.BRIGHT,
        'DEBUG': Fore.LIGHTGREEN_EX,
    }

    def format(self, record: LogRecord) -> str:
        log_message = super().format(record)
        return self.COLORS.get(record.levelname, '') + log_message + Fore.RESET


def _default_level() -> int:
    level_name = os.environ.get('SCALELLM_LOG_LEVEL', 'INFO').upper()
    return logging.getLevelName(level_name) if level_name in (
        'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL') else logging.INFO


def get_logger(
    name: str,
    log_file: Optional[Union[str, Path]] = None,
    log_level: Optional[int] = None,
    file_mode: str = 'w',
) -> logging.Logger:
    """Initialize and get a logger by name with optional file output.

    Handlers are attached once, to the first logger initialized in a
    hierarchy. Loggers below an initialized parent (for example
    ``scalellm.engine.scheduler`` below ``scalellm``) are returned as-is
    and propagate their records to the parent's handlers.

    Args:
        name: Logger name for identification and hierarchy
        log_file: Path to the log file. If provided, logs will also be
            written to this file
        log_level: Logging level (e.g., logging.INFO, logging.DEBUG).
            Defaults to SCALELLM_LOG_LEVEL from the environment, or INFO.
        file_mode: File opening mode ('w' for write, 'a' for append)

    Returns:
        A configured logging.Logger instance

    Example:
        >>> logger = get_logger("scalellm.engine", "serve.log", logging.DEBUG)
        >>> logger.info("Engine started")
    """
    if file_mode not in ('w', 'a'):
        raise ValueError("file_mode must be either 'w' or 'a'")

    # Every module logger hangs off the package root so one call to
    # set_log_level() controls the whole core.
    if name != ROOT_LOGGER_NAME and not name.startswith(ROOT_LOGGER_NAME +
                                                        '.'):
        name = f'{ROOT_LOGGER_NAME}.{name}'
    logger = logging.getLogger(name)

    if name in logger_initialized:
        return logger

    for logger_name in logger_initialized:
        if name.startswith(logger_name + '.'):
            return logger

    if name != ROOT_LOGGER_NAME:
        get_logger(ROOT_LOGGER_NAME, log_file, log_level, file_mode)
        logger_initialized[name] = True
        return logger

    if logger.handlers:
        logger.handlers.clear()

    if log_level is None:
        log_level = _default_level()

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(str(log_file), file_mode))

    fmt = ('%(asctime)s - %(name)s.%(funcName)s:%(lineno)d - '
           '%(levelname)s - %(message)s')
    formatter = ColorfulFormatter(fmt=fmt, datefmt='%Y-%m-%d %H:%M:%S')
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.setLevel(log_level)

    logger_initialized[name] = True

    return logger


def set_log_level(level: Union[int, str]) -> None:
    """Set the level of every scalellm logger.

    Args:
        level: A logging level number or name ('DEBUG', 'INFO', ...).
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    get_logger(ROOT_LOGGER_NAME).setLevel(level)
