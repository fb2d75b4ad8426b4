"""Leveled, size-rotated logging for the management tool.

Records land in a single active file and are rotated once the file reaches
``max_bytes``: ``.2`` moves to ``.3``, ``.1`` to ``.2``, the active file to
``.1``. At most ``backup_count`` rotated files are kept.

Logging never takes the caller down. If the configured path cannot be opened
the handler is redirected to ``<tempdir>/rns_management.log``; if that fails
too, records are dropped. Write errors after startup are counted and dropped.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path
import tempfile
import threading


ROOT_LOGGER = "rns_manager"
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_MAX_BYTES = 1024 * 1024
DEFAULT_BACKUP_COUNT = 3
FALLBACK_FILENAME = "rns_management.log"

SECURITY = 35
logging.addLevelName(SECURITY, "SECURITY")

_lock = threading.Lock()
_handler: logging.Handler | None = None


class SizeRotatingFileHandler(logging.handlers.RotatingFileHandler):
    """Rotates when the active file is already at or over ``maxBytes``."""

    def __init__(self, filename: Path, max_bytes: int, backup_count: int) -> None:
        super().__init__(
            filename,
            mode="a",
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        self.dropped = 0

    def current_size(self) -> int:
        try:
            return os.path.getsize(self.baseFilename)
        except OSError:
            return 0

    def shouldRollover(self, record: logging.LogRecord) -> bool:
        if self.maxBytes <= 0:
            return False
        if self.stream is None:
            self.stream = self._open()
        self.stream.seek(0, os.SEEK_END)
        return self.stream.tell() >= self.maxBytes

    def handleError(self, record: logging.LogRecord) -> None:
        self.dropped += 1


def _open_handler(path: Path, max_bytes: int, backup_count: int) -> SizeRotatingFileHandler | None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = SizeRotatingFileHandler(path, max_bytes, backup_count)
    except OSError:
        return None
    if max_bytes > 0 and handler.current_size() >= max_bytes:
        try:
            handler.doRollover()
        except OSError:
            handler.dropped += 1
    return handler


def fallback_log_path() -> Path:
    return Path(tempfile.gettempdir()) / FALLBACK_FILENAME


def init_logging(
    path: Path,
    level: int | str = logging.INFO,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
) -> logging.Handler:
    global _handler
    with _lock:
        _remove_handler()
        handler: logging.Handler | None = _open_handler(Path(path), max_bytes, backup_count)
        if handler is None:
            handler = _open_handler(fallback_log_path(), max_bytes, backup_count)
        if handler is None:
            handler = logging.NullHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        logger = logging.getLogger(ROOT_LOGGER)
        logger.addHandler(handler)
        logger.setLevel(level)
        _handler = handler
    return handler


def _remove_handler() -> None:
    global _handler
    if _handler is None:
        return
    logging.getLogger(ROOT_LOGGER).removeHandler(_handler)
    _handler.close()
    _handler = None


def reset_logging() -> None:
    with _lock:
        _remove_handler()


def active_handler() -> logging.Handler | None:
    return _handler


def log_path() -> Path | None:
    if isinstance(_handler, logging.FileHandler):
        return Path(_handler.baseFilename)
    return None


def log_security(logger: logging.Logger, message: str, *args: object) -> None:
    logger.log(SECURITY, message, *args)
