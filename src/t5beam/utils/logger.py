from __future__ import annotations

import logging
import os
from pathlib import Path
from logging.handlers import MemoryHandler

# Keep handler I/O failures (closed pipes, detached TTYs) from printing
# "Logged from file ..." tracebacks to stderr.
logging.raiseExceptions = False

_LOGGER_CACHE: dict[str, logging.Logger] = {}
_MEMORY_HANDLERS: list[MemoryHandler] = []


class _SafeStreamHandler(logging.StreamHandler):
    """StreamHandler that never raises from emit.

    Formatting and levels are identical to the base class.
    """

    def handleError(self, record: logging.LogRecord) -> None:  # noqa: N802
        return

    def emit(self, record: logging.LogRecord) -> None:  # noqa: D401
        try:
            super().emit(record)
        except (OSError, BrokenPipeError, ValueError):
            pass


class _SafeFileHandler(logging.FileHandler):
    """FileHandler that drops records when the filesystem is unavailable."""

    def handleError(self, record: logging.LogRecord) -> None:  # noqa: N802
        return

    def emit(self, record: logging.LogRecord) -> None:  # noqa: D401
        try:
            super().emit(record)
        except OSError:
            pass


def _level_from_env(default: str = "INFO") -> int:
    name = os.getenv("T5BEAM_LOG_LEVEL", default).strip().upper() or default
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def get_logger(name: str = "t5beam") -> logging.Logger:
    if name in _LOGGER_CACHE:
        return _LOGGER_CACHE[name]

    # Give plain `logging.*` calls elsewhere a safe root handler.
    _root = logging.getLogger()
    if not _root.handlers:
        _root.setLevel(logging.INFO)
        _root.addHandler(_SafeStreamHandler())

    logger = logging.getLogger(name)
    if logger.handlers:
        _LOGGER_CACHE[name] = logger
        return logger

    level = _level_from_env()
    logger.setLevel(level)

    fmt = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")

    sh = _SafeStreamHandler()
    sh.setLevel(level)
    sh.setFormatter(fmt)

    # File sink is opt-in; records are buffered and flushed on CRITICAL,
    # on flush_all_log_buffers() and at interpreter shutdown.
    log_path = os.getenv("T5BEAM_LOG_FILE", "").strip()
    if log_path:
        try:
            p = Path(log_path)
            p.parent.mkdir(parents=True, exist_ok=True)
            fh = _SafeFileHandler(p, encoding="utf-8")
            fh.setLevel(logging.DEBUG)
            fh.setFormatter(fmt)
            mh = MemoryHandler(capacity=4096, flushLevel=logging.CRITICAL, target=fh)
            logger.addHandler(mh)
            _MEMORY_HANDLERS.append(mh)
            logger.setLevel(min(level, logging.DEBUG))
        except OSError:
            logging.getLogger("t5beam.log").warning("file handler setup failed for %s", log_path, exc_info=True)

    logger.addHandler(sh)
    logger.propagate = False
    _LOGGER_CACHE[name] = logger
    return logger


def flush_all_log_buffers() -> None:
    """
    Flush all MemoryHandler buffers created by get_logger.

    Forces pending buffered records to their file handlers; useful at the end
    of a CLI run so the report and the log agree.
    """
    for mh in list(_MEMORY_HANDLERS):
        mh.flush()
