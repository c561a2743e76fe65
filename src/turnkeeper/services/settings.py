"""Settings dataclass and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from ..chat.message_model import ThinkingMode

__all__ = [
    "Settings",
    "SettingsStore",
    "derive_ws_url",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".turnkeeper"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "TURNKEEPER_BASE_URL": "base_url",
    "TURNKEEPER_WS_URL": "ws_url",
    "TURNKEEPER_AGENT_ID": "agent_id",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "TURNKEEPER_DEBUG_LOGGING": "debug_logging",
    "TURNKEEPER_DEBUG_EVENT_LOGGING": "debug_event_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "TURNKEEPER_REQUEST_TIMEOUT": "request_timeout",
    "TURNKEEPER_WATCHDOG_SECONDS": "watchdog_seconds",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "TURNKEEPER_MAX_RETRIES": "max_retries",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    base_url: str = "http://localhost:8080"
    ws_url: str = ""
    agent_id: str | None = None
    request_timeout: float = 30.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    watchdog_seconds: float = 120.0
    default_headers: dict[str, str] = field(default_factory=dict)
    debug_logging: bool = False
    debug_event_logging: bool = False
    thinking_mode: str = ThinkingMode.OFF.value

    @property
    def resolved_ws_url(self) -> str:
        """WebSocket base URL, derived from ``base_url`` unless set explicitly."""

        return (self.ws_url or derive_ws_url(self.base_url)).rstrip("/")

    @property
    def resolved_thinking_mode(self) -> ThinkingMode:
        try:
            return ThinkingMode(str(self.thinking_mode).lower())
        except ValueError:
            return ThinkingMode.OFF


def derive_ws_url(base_url: str) -> str:
    if base_url.startswith("https://"):
        return "wss://" + base_url[len("https://") :]
    if base_url.startswith("http://"):
        return "ws://" + base_url[len("http://") :]
    return base_url


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            data = _filter_fields(payload)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()

        if bool(payload) and payload.get("version") != _SETTINGS_VERSION:
            try:
                self.save(settings)
            except OSError as exc:
                LOGGER.warning("Failed to migrate settings payload: %s", exc)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")

        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        payload = self._serialize(settings)
        body = json.dumps(payload, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        data["version"] = _SETTINGS_VERSION
        return data

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            payload = json.loads(text)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return payload

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {field.name for field in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                continue
            filtered[key] = value
        headers_override = filtered.get("default_headers")
        if isinstance(headers_override, Mapping):
            merged_headers = dict(settings.default_headers or {})
            merged_headers.update(headers_override)
            filtered["default_headers"] = merged_headers
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {field.name for field in fields(Settings)}
    return {key: value for key, value in payload.items() if key in allowed}
