"""Debug JSONL logging of raw protocol frames per conversation target."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Mapping

from ..utils import logging as logging_utils

LOGGER = logging.getLogger(__name__)


def _default_event_dir() -> Path:
    log_path = logging_utils.get_log_path()
    if log_path is not None:
        return log_path.parent / "events"
    return Path.home() / ".turnkeeper" / "logs" / "events"


@dataclass(slots=True)
class NullProtocolEventLog:
    """No-op implementation used when event logging is disabled."""

    path: Path | None = None

    def log_received(self, *_: Any, **__: Any) -> None:
        return

    def log_sent(self, *_: Any, **__: Any) -> None:
        return

    def close(self, *_: Any, **__: Any) -> None:
        return


class ProtocolEventLog:
    """Appends one JSON line per frame exchanged with a conversation target."""

    def __init__(self, path: Path, *, target: str, url: str | None = None) -> None:
        self.path = path
        self._file = path.open("w", encoding="utf-8")
        self._closed = False
        self._write_entry("open", {"target": target, "url": url})

    def log_received(self, frame: Mapping[str, Any] | str) -> None:
        self._write_entry("recv", {"frame": frame})

    def log_sent(self, frame: Mapping[str, Any]) -> None:
        self._write_entry("send", {"frame": frame})

    def close(self, *, reason: str | None = None) -> None:
        if self._closed:
            return
        self._write_entry("close", {"reason": reason})
        self._closed = True
        self._file.close()

    def _write_entry(self, event: str, payload: Mapping[str, Any] | None = None) -> None:
        if self._closed:
            return
        entry: dict[str, Any] = {
            "event": event,
            "timestamp": time.time(),
        }
        if payload:
            for key, value in payload.items():
                entry[key] = self._safe_json(value)
        json.dump(entry, self._file, ensure_ascii=False)
        self._file.write("\n")
        self._file.flush()

    def _safe_json(self, value: Any, *, depth: int = 0) -> Any:
        if depth > 6:
            return repr(value)
        if value is None or isinstance(value, (str, int, float, bool)):
            return value
        if isinstance(value, Mapping):
            return {str(key): self._safe_json(val, depth=depth + 1) for key, val in value.items()}
        if isinstance(value, (list, tuple, set)):
            return [self._safe_json(item, depth=depth + 1) for item in value]
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")
        return repr(value)


class ProtocolEventLogger:
    """Factory for per-target frame logs when debug event logging is enabled."""

    def __init__(self, *, enabled: bool, base_dir: Path | str | None = None) -> None:
        self.enabled = bool(enabled)
        self._base_dir = Path(base_dir) if base_dir else _default_event_dir()

    def open(self, target: str, *, url: str | None = None) -> ProtocolEventLog | NullProtocolEventLog:
        if not self.enabled:
            return NullProtocolEventLog()
        try:
            self._base_dir.mkdir(parents=True, exist_ok=True)
            path = self._allocate_path(target)
            log = ProtocolEventLog(path, target=target, url=url)
            LOGGER.debug("Protocol event log started: %s", path)
            return log
        except OSError:
            LOGGER.debug("Failed to start protocol event log", exc_info=True)
            return NullProtocolEventLog()

    def _allocate_path(self, target: str) -> Path:
        timestamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
        safe_target = "".join(ch for ch in target if ch.isalnum())[:24] or "target"
        return self._base_dir / f"session-{timestamp}-{safe_target}.jsonl"


__all__ = [
    "NullProtocolEventLog",
    "ProtocolEventLog",
    "ProtocolEventLogger",
]
