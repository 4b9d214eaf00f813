"""Logging helpers: the shared builder logger and per-playlist debug logs."""

import logging
import os
import re
import threading
from logging.handlers import TimedRotatingFileHandler

LOGGER_NAME = "mpd_music_builder"

logger = logging.getLogger(LOGGER_NAME)

_thread_local_logger = threading.local()


def setup_logging(log_level="INFO", log_file=None):
    """Configure logging to stream to stdout and a persistent log file.

    Returns the configured logger and the path of the active log file, if any.
    """
    logger_obj = logging.getLogger(LOGGER_NAME)

    # Avoid duplicating handlers if setup_logging is called multiple times
    if logger_obj.handlers:
        return logger_obj, None

    level = getattr(logging, str(log_level).upper(), logging.INFO)
    logger_obj.setLevel(level)
    logger_obj.propagate = False

    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(level)
    logger_obj.addHandler(stream_handler)

    active_log_file = None
    if log_file:
        log_file = str(log_file)
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir, exist_ok=True)

        try:
            file_handler = TimedRotatingFileHandler(
                log_file,
                when="midnight",
                backupCount=7,
                encoding="utf-8",
                utc=False,
                delay=False,
                interval=1,
            )
        except OSError as exc:
            logger_obj.error(f"Unable to open log file '{log_file}': {exc}")
        else:
            file_handler.setFormatter(formatter)
            file_handler.setLevel(level)
            logger_obj.addHandler(file_handler)
            active_log_file = log_file

    if active_log_file:
        logger_obj.info(f"Detailed logs will be written to: {active_log_file}")

    return logger_obj, active_log_file


def get_active_logger():
    """Return the logger associated with the current thread, if any."""

    thread_logger = getattr(_thread_local_logger, "current", None)
    if thread_logger is not None:
        return thread_logger
    return logger


class PlaylistThreadFilter(logging.Filter):
    """Filter log records to a specific thread and inject playlist metadata."""

    def __init__(self, playlist_name, thread_id):
        super().__init__()
        self.playlist_name = playlist_name
        self.thread_id = thread_id

    def filter(self, record):
        if record.thread != self.thread_id:
            return False
        record.playlist = self.playlist_name
        return True


class PlaylistLoggerProxy:
    """Proxy logger that always emits DEBUG messages to a playlist handler."""

    def __init__(self, base_logger, playlist_handler):
        self._base_logger = base_logger
        self._playlist_handler = playlist_handler

    def __getattr__(self, name):
        return getattr(self._base_logger, name)

    def isEnabledFor(self, level):
        if level == logging.DEBUG and self._playlist_handler:
            return True
        return self._base_logger.isEnabledFor(level)

    def _emit_playlist_record(self, msg, args):
        record = self._base_logger.makeRecord(
            self._base_logger.name, logging.DEBUG, "(playlist)", 0, msg, args, None
        )
        self._playlist_handler.handle(record)

    def debug(self, msg, *args, **kwargs):
        # The playlist handler is attached to the base logger while a build
        # runs, so only emit directly when the base logger would drop DEBUG.
        if self._base_logger.isEnabledFor(logging.DEBUG):
            self._base_logger.debug(msg, *args, **kwargs)
        elif self._playlist_handler:
            self._emit_playlist_record(msg, args)


def sanitize_playlist_name(name):
    sanitized = re.sub(r"[^A-Za-z0-9_.-]+", "_", name.strip())
    return sanitized or "playlist"


def create_playlist_log_handler(playlist_name, log_dir):
    """Create a log handler that captures logs for a specific playlist."""

    if not log_dir:
        return None, None

    os.makedirs(log_dir, exist_ok=True)

    thread_id = threading.get_ident()
    filename = f"{sanitize_playlist_name(playlist_name)}.debug.log"
    filepath = os.path.join(str(log_dir), filename)

    handler = logging.FileHandler(filepath, mode="w", encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(playlist)s | %(message)s")
    handler.setFormatter(formatter)
    handler.addFilter(PlaylistThreadFilter(playlist_name, thread_id))

    return handler, filepath


class playlist_logging:
    """Context manager binding a per-playlist logger to the current thread."""

    def __init__(self, playlist_name, log_dir):
        self.playlist_name = playlist_name
        self.log_dir = log_dir
        self.handler = None
        self.path = None
        self._previous = None

    def __enter__(self):
        try:
            self.handler, self.path = create_playlist_log_handler(
                self.playlist_name, self.log_dir
            )
        except OSError as exc:
            logger.warning(f"Unable to create debug log for '{self.playlist_name}': {exc}")
            self.handler, self.path = None, None

        if self.handler:
            logger.addHandler(self.handler)
        log = PlaylistLoggerProxy(logger, self.handler)
        self._previous = getattr(_thread_local_logger, "current", None)
        _thread_local_logger.current = log
        if self.handler:
            log.debug(
                "Per-playlist debug logging for '%s' → %s",
                self.playlist_name,
                self.path,
            )
        return log

    def __exit__(self, exc_type, exc, tb):
        if self._previous is None:
            if hasattr(_thread_local_logger, "current"):
                delattr(_thread_local_logger, "current")
        else:
            _thread_local_logger.current = self._previous
        if self.handler:
            logger.removeHandler(self.handler)
            self.handler.close()
        return False
