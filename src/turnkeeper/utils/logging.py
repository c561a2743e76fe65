"""Logging setup for the turnkeeper client.

Every record written by the configured handlers carries a ``target`` field:
the conversation target bound in the emitting context, or ``-`` when none is.
The stream reader task is created inside :meth:`ConnectionSession.bind`, so it
inherits the target and its records are tagged without extra plumbing.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from contextvars import ContextVar
from pathlib import Path

__all__ = ["TargetFilter", "get_log_path", "get_log_target", "set_log_target", "setup_logging"]

LOG_FILE_NAME = "turnkeeper.log"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(target)s | %(message)s"
MAX_LOG_BYTES = 1_000_000
LOG_BACKUP_COUNT = 3

_DEFAULT_LOG_DIR = Path.home() / ".turnkeeper" / "logs"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "websockets")
_NO_TARGET = "-"
_LOG_TARGET: ContextVar[str | None] = ContextVar("turnkeeper_log_target", default=None)
_LOG_PATH: Path | None = None


class TargetFilter(logging.Filter):
    """Stamps records with the target bound in the current context."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "target"):
            record.target = _LOG_TARGET.get() or _NO_TARGET
        return True


def set_log_target(target: str | None) -> None:
    _LOG_TARGET.set(target or None)


def get_log_target() -> str | None:
    return _LOG_TARGET.get()


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    force: bool = False,
) -> Path:
    """Route root logging to a rotating file under the log directory.

    The directory is ``log_dir``, else ``TURNKEEPER_LOG_DIR``, else
    ``~/.turnkeeper/logs``. Repeat calls are no-ops unless ``force`` is set.
    """

    global _LOG_PATH
    if _LOG_PATH is not None and not force:
        return _LOG_PATH

    directory = _resolve_log_dir(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / LOG_FILE_NAME

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8"
        )
    ]
    if console:
        handlers.append(logging.StreamHandler())

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    target_filter = TargetFilter()
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        # Handler-level so records propagated from any logger are tagged.
        handler.addFilter(target_filter)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _quiet_transport_loggers(level)

    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    """Return the active log file, or ``None`` before :func:`setup_logging` runs."""

    return _LOG_PATH


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    return Path(log_dir or os.environ.get("TURNKEEPER_LOG_DIR") or _DEFAULT_LOG_DIR).expanduser()


def _quiet_transport_loggers(root_level: int) -> None:
    # Transport libraries log at WARNING or above.
    quiet_level = max(root_level, logging.WARNING)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)
