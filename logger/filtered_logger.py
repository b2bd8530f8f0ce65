import sys
from enum import Enum
from threading import Lock

from env_utils import read_debug_flags


class LogChannel(Enum):
    GLOBAL = "GLOBAL"
    SCHEDULER = "SCHEDULER"
    ENGINE = "ENGINE"
    IO = "IO"


class LogLevel(Enum):
    FATAL = "FATAL"
    ERROR = "ERROR"
    WARNING = "WARN"
    INFO = "INFO"
    DEBUG = "DEBUG"


# Severity order used by the numeric --log_level flag: {0, 1, 2, 3} = {FATAL, ERROR, WARNING, INFO}.
_SEVERITY = {
    LogLevel.FATAL: 0,
    LogLevel.ERROR: 1,
    LogLevel.WARNING: 2,
    LogLevel.INFO: 3,
    LogLevel.DEBUG: 4,
}


_DEBUG_ENV_FLAGS = {
    'extreme': 'EXTREME_DEBUG',
    'scheduler': 'SCHEDULER_DEBUG_LOGS',
    'engine': 'ENGINE_DEBUG_LOGS',
    'io': 'IO_DEBUG_LOGS',
}


def level_from_number(value):
    """Map a numeric log level to a LogLevel, clamping out-of-range values."""
    value = max(0, min(int(value), 4))
    for level, severity in _SEVERITY.items():
        if severity == value:
            return level
    return LogLevel.INFO


class FilteredLogger:
    def __init__(self):
        flags = read_debug_flags(_DEBUG_ENV_FLAGS)
        self.extreme_debug = flags['extreme']
        self.scheduler_debug = flags['scheduler']
        self.engine_debug = flags['engine']
        self.io_debug = flags['io']
        self.min_level = LogLevel.INFO
        self._destination = "stdout"
        self._owned_file = None
        self._lock = Lock()

    def configure(
        self,
        *,
        extreme_debug=None,
        scheduler_debug=None,
        engine_debug=None,
        io_debug=None,
        min_level=None,
        destination=None,
    ):
        if extreme_debug is not None:
            self.extreme_debug = extreme_debug
        if scheduler_debug is not None:
            self.scheduler_debug = scheduler_debug
        if engine_debug is not None:
            self.engine_debug = engine_debug
        if io_debug is not None:
            self.io_debug = io_debug
        if min_level is not None:
            self.min_level = min_level
        if destination is not None:
            self._set_destination(destination)

    def _set_destination(self, destination):
        """Route output to "stdout", "stderr", a file path, or nowhere for ""."""
        with self._lock:
            if self._owned_file is not None:
                self._owned_file.close()
                self._owned_file = None
            if destination not in ("", "stdout", "stderr"):
                self._owned_file = open(destination, "a", encoding="utf-8")
            self._destination = destination

    def close(self):
        with self._lock:
            if self._owned_file is not None:
                self._owned_file.close()
                self._owned_file = None
                self._destination = "stdout"

    def should_log_debug(self, channel):
        if self.extreme_debug:
            return True
        if channel == LogChannel.GLOBAL:
            return self.scheduler_debug or self.engine_debug or self.io_debug
        if channel == LogChannel.SCHEDULER:
            return self.scheduler_debug
        if channel == LogChannel.ENGINE:
            return self.engine_debug
        if channel == LogChannel.IO:
            return self.io_debug
        return False

    def _enabled(self, level):
        return _SEVERITY[level] <= _SEVERITY[self.min_level]

    def _print(self, level, channel, message):
        prefix = f"[{level.value}]"
        channel_tag = f"[{channel.value}]"
        with self._lock:
            stream = self._resolve_stream()
            if stream is None:
                return
            for line in str(message).splitlines():
                print(f"{prefix} {channel_tag} {line}", file=stream)
            stream.flush()

    def _resolve_stream(self):
        if self._owned_file is not None:
            return self._owned_file
        if self._destination == "stdout":
            return sys.stdout
        if self._destination == "stderr":
            return sys.stderr
        return None

    def fatal(self, channel, message):
        self._print(LogLevel.FATAL, channel, message)

    def info(self, channel, message):
        if self._enabled(LogLevel.INFO):
            self._print(LogLevel.INFO, channel, message)

    def warning(self, channel, message):
        if self._enabled(LogLevel.WARNING):
            self._print(LogLevel.WARNING, channel, message)

    def error(self, channel, message):
        if self._enabled(LogLevel.ERROR):
            self._print(LogLevel.ERROR, channel, message)

    def debug(self, channel, message):
        if not self.should_log_debug(channel):
            return
        self._print(LogLevel.DEBUG, channel, message)


_shared_logger = FilteredLogger()


def configure_logger(**kwargs):
    _shared_logger.configure(**kwargs)


def close_logger():
    _shared_logger.close()


def fatal(channel, message):
    _shared_logger.fatal(channel, message)


def info(channel, message):
    _shared_logger.info(channel, message)


def warning(channel, message):
    _shared_logger.warning(channel, message)


def error(channel, message):
    _shared_logger.error(channel, message)


def debug(channel, message):
    _shared_logger.debug(channel, message)
