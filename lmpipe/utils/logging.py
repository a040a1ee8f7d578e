"""
Logging for the lmpipe package.

The library modules log through the `LoggerBase` interface rather than
through `logging.Logger` directly, so that callers may substitute a
logger that collects the messages (for example, `LoglistLogger`
in tests, to check that a trace delivery failure was reported).

Usage:
    ```python
    from lmpipe.utils.logging import LoggerBase, get_logger

    logger: LoggerBase = get_logger(__name__)
    logger.info("Pipeline created")
    ```
"""

import logging
import sys
from abc import ABC, abstractmethod

LOG_FORMAT = '%(levelname)s - %(message)s'


class LoggerBase(ABC):
    """
    Abstract interface for logging functionality.
    """

    @abstractmethod
    def set_level(self, level: int) -> None:
        """Set the logging level for the logger."""
        pass

    @abstractmethod
    def get_level(self) -> int:
        """Get the current logging level"""
        pass

    @abstractmethod
    def debug(self, msg: str) -> None:
        """Log a debug message."""
        pass

    @abstractmethod
    def info(self, msg: str) -> None:
        """Log an informational message."""
        pass

    @abstractmethod
    def warning(self, msg: str) -> None:
        """Log a warning message."""
        pass

    @abstractmethod
    def error(self, msg: str) -> None:
        """Log an error message."""
        pass

    @abstractmethod
    def critical(self, msg: str) -> None:
        """Log a critical message."""
        pass


class ConsoleLogger(LoggerBase):
    """
    A console logger that uses logging.Logger as a delegate, writing
    to stdout.
    """

    def __init__(self, name: str | None = None) -> None:
        """
        Initialize the ConsoleLogger with a specific logger name,
        typically __name__ to use the module name. The console handler
        and the INFO level are installed on the top-level logger of
        the name hierarchy, so that `set_log_level` reaches all
        module loggers.
        """
        self.logger = logging.getLogger(name or None)

        # Ensure we have a console handler if none exists
        if not self.logger.hasHandlers():
            top = logging.getLogger(name.split('.')[0] if name else None)
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            top.addHandler(handler)
            if top.level == logging.NOTSET:
                top.setLevel(logging.INFO)

    def set_level(self, level: int) -> None:
        self.logger.setLevel(level)

    def get_level(self) -> int:
        return self.logger.level

    def debug(self, msg: str) -> None:
        self.logger.debug(msg)

    def info(self, msg: str) -> None:
        self.logger.info(msg)

    def warning(self, msg: str) -> None:
        self.logger.warning(msg)

    def error(self, msg: str) -> None:
        self.logger.error(msg)

    def critical(self, msg: str) -> None:
        self.logger.critical(msg, stack_info=True)


class LoglistLogger(LoggerBase):
    """
    Maintains a list of logged messages that can be inspected by the
    object creator.
    """

    def __init__(self) -> None:
        self.logs: list[dict[str, str]] = []

    def set_level(self, level: int) -> None:
        pass

    def get_level(self) -> int:
        return 0

    def debug(self, msg: str) -> None:
        self.logs.append({'debug': msg})

    def info(self, msg: str) -> None:
        self.logs.append({'info': msg})

    def warning(self, msg: str) -> None:
        self.logs.append({'warning': msg})

    def error(self, msg: str) -> None:
        self.logs.append({'error': msg})

    def critical(self, msg: str) -> None:
        self.logs.append({'critical': msg})

    def get_logs(self, level: int = 0) -> list[str]:
        """
        Returns a list of strings with the log messages.

        Args:
           level: a filter on the logs. Possible values:
                0 or less: returns all messages
                1: omit debug and info
                2: omit warnings as well
        """
        logs: list[str] = []
        for entry in self.logs:
            match entry:
                case {'debug': msg}:
                    if level < 1:
                        logs.append("DEBUG - " + msg)
                case {'info': msg}:
                    if level < 1:
                        logs.append("INFO - " + msg)
                case {'warning': msg}:
                    if level < 2:
                        logs.append("WARNING - " + msg)
                case {'error': msg}:
                    logs.append("ERROR - " + msg)
                case {'critical': msg}:
                    logs.append("CRITICAL - " + msg)
                case _:
                    logs.append(str(entry))
        return logs

    def count_logs(self, level: int = 0) -> int:
        """The number of recorded logs. Zero means there
        were no recorded logs."""
        return len(self.get_logs(level))

    def clear_logs(self) -> None:
        self.logs.clear()


def get_logger(name: str) -> LoggerBase:
    """
    Get a logger with the specified name.

    Args:
        name: The name of the logger, typically __name__ to use the
            module name

    Returns:
        A configured logger instance
    """
    return ConsoleLogger(name)


def set_log_level(level: int, name: str = "lmpipe") -> None:
    """
    Set the log level for the package loggers.

    Args:
        level: The logging level (e.g., logging.DEBUG, logging.INFO)
        name: the logger hierarchy to set, the whole package by
            default
    """
    logging.getLogger(name).setLevel(level)
