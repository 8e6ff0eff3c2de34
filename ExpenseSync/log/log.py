"""Logging setup for ExpenseSync.

Routes Python logging to stdout and to an in-memory :class:`TankHandler`, and Qt's own
messages into Python logging. Error records are re-emitted on
``signals.errorLogged`` so the UI can surface failed sync cycles.
"""
import collections
import logging
import sys
from typing import List, Optional

from PySide6.QtCore import QtMsgType, qInstallMessageHandler

LOG_LEVEL = logging.DEBUG
LOG_FORMAT = '[%(asctime)s] <%(module)s> %(levelname)s:  %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

# Oldest records are discarded past this size
TANK_SIZE = 5000

VALID_LEVELS = (
    logging.DEBUG,
    logging.INFO,
    logging.WARNING,
    logging.ERROR,
    logging.CRITICAL,
)

tank_handler: Optional['TankHandler'] = None


def set_logging_level(level: int) -> None:
    """
    Sets the logging level of the root logger and its handlers.

    Args:
        level (int): One of the standard logging levels.

    Raises:
        ValueError: If the level is not an int or not a standard level.
    """
    if not isinstance(level, int) or isinstance(level, bool):
        raise ValueError('Logging level must be an integer.')
    if level not in VALID_LEVELS:
        raise ValueError('Invalid logging level. Use one of the standard logging levels, e.g., logging.DEBUG.')

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers:
        handler.setLevel(level)


def qt_message_handler(mode, context, message):
    """
    Converts Qt messages to standard Python logging.
    """
    logger = logging.getLogger('Qt')
    message = message.strip()

    if mode == QtMsgType.QtDebugMsg:
        logger.debug(message)
    elif mode == QtMsgType.QtInfoMsg:
        logger.info(message)
    elif mode == QtMsgType.QtWarningMsg:
        logger.warning(message)
    elif mode == QtMsgType.QtCriticalMsg:
        logger.error(message)
    elif mode == QtMsgType.QtFatalMsg:
        logger.critical(message)
        sys.exit(1)


def setup_logging(
        log_level: int = LOG_LEVEL,
        enable_stream_handler: bool = True,
        enable_qt_handler: bool = True
) -> 'TankHandler':
    """
    Configures the root logger.

    Args:
        log_level: Level for the root logger and every handler.
        enable_stream_handler: Also log to stdout.
        enable_qt_handler: Route Qt messages through Python logging.

    Returns:
        The installed :class:`TankHandler`.
    """
    global tank_handler

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    if enable_stream_handler:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(formatter)
        stream_handler.setLevel(log_level)
        root_logger.addHandler(stream_handler)

    tank_handler = TankHandler()
    tank_handler.setFormatter(formatter)
    tank_handler.setLevel(log_level)
    root_logger.addHandler(tank_handler)

    # requests and urllib3 log every connection at DEBUG level
    logging.getLogger('urllib3').setLevel(logging.WARNING)

    if enable_qt_handler:
        qInstallMessageHandler(qt_message_handler)
    return tank_handler


class TankHandler(logging.Handler):
    """
    Logging handler that keeps the most recent formatted records in memory.

    Sync errors end up here so the UI can list them next to the sync status indicator.

    Attributes:
        tank (collections.deque[tuple[int, str]]): ``(level, message)`` pairs, oldest first.
    """

    def __init__(self, maxlen: int = TANK_SIZE):
        super().__init__()
        self.tank = collections.deque(maxlen=maxlen)

    def emit(self, record):
        try:
            message = self.format(record)
            self.tank.append((record.levelno, message))
            if record.levelno >= logging.ERROR:
                from ..ui.actions import signals
                signals.errorLogged.emit(message)
        except Exception:
            self.handleError(record)

    def get_logs(self, level: int = logging.NOTSET) -> List[str]:
        """
        Returns the stored messages at or above ``level``.
        """
        return [msg for lvl, msg in self.tank if lvl >= level]

    def get_errors(self, limit: Optional[int] = None) -> List[str]:
        """
        Returns the most recent error messages, newest last.

        Args:
            limit: Maximum number of messages to return. All of them when None.
        """
        errors = self.get_logs(logging.ERROR)
        return errors[-limit:] if limit else errors

    def clear_logs(self):
        self.tank.clear()
