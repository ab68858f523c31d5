import collections
import logging
import sys
from typing import NamedTuple

from PySide6.QtCore import QtMsgType, qInstallMessageHandler

LOG_LEVEL = logging.DEBUG
LOG_FORMAT = '[%(asctime)s] <%(module)s> %(levelname)s:  %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

TANK_CAPACITY = 5000

LEVELS = (
    logging.DEBUG,
    logging.INFO,
    logging.WARNING,
    logging.ERROR,
    logging.CRITICAL,
)

QT_LEVELS = {
    QtMsgType.QtDebugMsg: logging.DEBUG,
    QtMsgType.QtInfoMsg: logging.INFO,
    QtMsgType.QtWarningMsg: logging.WARNING,
    QtMsgType.QtCriticalMsg: logging.ERROR,
    QtMsgType.QtFatalMsg: logging.CRITICAL,
}


class LogEntry(NamedTuple):
    level: int
    created: float
    message: str


def set_logging_level(level):
    """
    Sets the logging level of the root logger and its handlers.

    Args:
        level (int): One of the standard logging levels, e.g. logging.DEBUG.

    Raises:
        ValueError: If the level is not a standard logging level.
    """
    if not isinstance(level, int) or isinstance(level, bool):
        raise ValueError('Logging level must be an integer.')
    if level not in LEVELS:
        raise ValueError('Invalid logging level. Use one of the standard logging levels, e.g., logging.DEBUG.')

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers:
        handler.setLevel(level)


def qt_message_handler(mode, context, message):
    """
    Routes Qt's own messages to the 'Qt' logger. A fatal Qt message exits the process.
    """
    level = QT_LEVELS.get(mode, logging.WARNING)
    logging.getLogger('Qt').log(level, message.strip())
    if mode == QtMsgType.QtFatalMsg:
        sys.exit(1)


def setup_logging(enable_stream_handler=True, enable_qt_handler=True, log_level=LOG_LEVEL, capacity=TANK_CAPACITY):
    """
    Configures the root logger for the sync engine.

    Every record goes to an in-memory :class:`TankHandler` and, optionally, to stdout.
    Existing root handlers are removed.

    Args:
        enable_stream_handler (bool): Also log to stdout.
        enable_qt_handler (bool): Route Qt's own messages through Python logging.
        log_level (int): Level for the root logger and installed handlers.
        capacity (int): Number of entries the tank keeps.
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    handlers = []
    if enable_stream_handler:
        handlers.append(logging.StreamHandler(sys.stdout))
    handlers.append(TankHandler(capacity=capacity))

    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)
    set_logging_level(log_level)

    if enable_qt_handler:
        qInstallMessageHandler(qt_message_handler)


def get_tank():
    """Return the installed :class:`TankHandler`, or None if logging was not set up."""
    return next((h for h in logging.getLogger().handlers if isinstance(h, TankHandler)), None)


class TankHandler(logging.Handler):
    """
    Keeps the most recent formatted log messages in memory.

    The host application reads the tank to show recent sync activity, for example why a
    change is still pending, without opening a log file. The oldest entries are dropped
    once ``capacity`` is reached.

    Attributes:
        tank (collections.deque[LogEntry]): The stored entries, oldest first.
    """

    def __init__(self, capacity=TANK_CAPACITY):
        super().__init__()
        self.tank = collections.deque(maxlen=capacity)

    @property
    def capacity(self):
        return self.tank.maxlen

    def emit(self, record):
        try:
            self.tank.append(LogEntry(record.levelno, record.created, self.format(record)))
        except Exception:
            self.handleError(record)

    def get_logs(self, level=logging.NOTSET, since=None):
        """
        Returns the stored messages at or above ``level``.

        Args:
            level (int, optional): The minimum logging level. Defaults to logging.NOTSET.
            since (float, optional): Only messages logged at or after this ``time.time()`` value.

        Returns:
            list[str]: The formatted messages, oldest first.
        """
        return [
            e.message for e in self.tank
            if e.level >= level and (since is None or e.created >= since)
        ]

    def last_warning(self):
        """Returns the most recent message at WARNING or above, or None."""
        for entry in reversed(self.tank):
            if entry.level >= logging.WARNING:
                return entry.message
        return None

    def clear_logs(self):
        self.tank.clear()

