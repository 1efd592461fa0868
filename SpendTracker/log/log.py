"""Logging setup for SpendTracker.

Everything goes through the root logger. Records are kept in memory by :class:`TankHandler`
so a front-end can browse them, and Qt's own messages are routed through the same
formatter. Access tokens and authorization codes are masked before any handler sees them.
"""
import logging
import re
import sys

from PySide6 import QtCore
from PySide6.QtCore import QtMsgType, qInstallMessageHandler

LOG_LEVEL = logging.DEBUG
LOG_FORMAT = '[%(asctime)s] <%(module)s> %(levelname)s:  %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

LEVELS = (
    logging.DEBUG,
    logging.INFO,
    logging.WARNING,
    logging.ERROR,
    logging.CRITICAL,
)

# Google access tokens, refresh tokens and bearer headers
SECRET_PATTERNS = (
    re.compile(r'ya29\.[\w\-.]+'),
    re.compile(r'1//[\w\-.]+'),
    re.compile(r'(?i)(bearer\s+)[\w\-.]+'),
    re.compile(r'(?i)((?:access_token|refresh_token|code|token)=)[^&\s]+'),
)
MASK = '***'


def redact(message):
    """Mask the secrets found in a message."""
    for pattern in SECRET_PATTERNS:
        if pattern.groups:
            message = pattern.sub(lambda m: m.group(1) + MASK, message)
        else:
            message = pattern.sub(MASK, message)
    return message


class SecretFilter(logging.Filter):
    """Masks OAuth secrets in the final message of every record."""

    def filter(self, record):
        message = record.getMessage()
        masked = redact(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def set_logging_level(level):
    """
    Sets the logging level of the root logger and of every installed handler.

    Args:
        level (int): One of the standard logging levels.

    Raises:
        ValueError: If the level is not a standard logging level.
    """
    if not isinstance(level, int):
        raise ValueError('Logging level must be an integer.')
    if level not in LEVELS:
        raise ValueError('Invalid logging level. Use one of the standard logging levels, e.g., logging.DEBUG.')

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers:
        handler.setLevel(level)


def qt_message_handler(mode, context, message):
    """
    Forwards Qt's diagnostic messages to the ``Qt`` logger.

    A fatal Qt message terminates the process.
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


def setup_logging(enable_stream_handler=True, enable_qt_handler=True, log_level=LOG_LEVEL):
    """
    Replaces the root logger's handlers with SpendTracker's.

    Args:
        enable_stream_handler (bool): Also print records to stdout.
        enable_qt_handler (bool): Route Qt's own messages through Python logging.
        log_level (int): Level for the root logger and every installed handler.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)
    secret_filter = SecretFilter()

    handlers = [TankHandler()]
    if enable_stream_handler:
        handlers.insert(0, logging.StreamHandler(sys.stdout))

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(log_level)
        handler.addFilter(secret_filter)
        root_logger.addHandler(handler)

    if enable_qt_handler:
        qInstallMessageHandler(qt_message_handler)


def get_tank():
    """Return the :class:`TankHandler` installed on the root logger, or None."""
    return next((h for h in logging.getLogger().handlers if isinstance(h, TankHandler)), None)


class TankSignals(QtCore.QObject):
    errorLogged = QtCore.Signal(str)


class TankHandler(logging.Handler):
    """
    Keeps formatted records in memory so they can be browsed after the fact.

    Attributes:
        tank (list[tuple[int, str]]): The level and formatted message of every handled record.
        signals (TankSignals): Emits ``errorLogged`` with every ERROR or CRITICAL message.
    """

    def __init__(self):
        super().__init__()
        self.tank = []
        self.signals = TankSignals()

    def emit(self, record):
        try:
            message = self.format(record)
        except Exception:
            self.handleError(record)
            return

        self.tank.append((record.levelno, message))
        if record.levelno >= logging.ERROR:
            self.signals.errorLogged.emit(message)

    def get_logs(self, level=logging.NOTSET):
        """
        Returns the stored messages at or above a level.

        Args:
            level (int, optional): The minimum logging level. Defaults to logging.NOTSET.

        Returns:
            list[str]: The formatted messages in the order they were logged.
        """
        return [msg for lvl, msg in self.tank if lvl >= level]

    def clear_logs(self):
        self.tank.clear()
