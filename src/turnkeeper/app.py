"""Console entry point for driving a chat session from a terminal."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_type_hints

from .chat.message_model import ToolState, Turn, TurnRole
from .orchestration.chat_session import ChatSession
from .services.settings import Settings, SettingsStore
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)
_EXIT_WORDS = {"/quit"}


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure file logging; the console stays clean for the transcript."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, console=False, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except OSError as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def format_turn(turn: Turn) -> str:
    """Render a finalized turn as plain text for the console."""

    label = {TurnRole.USER: "you", TurnRole.AGENT: "agent", TurnRole.SYSTEM: "system"}[turn.role]
    lines = [f"[{label}] {turn.visible_text}".rstrip()]
    for tool in turn.tools:
        marker = "!" if tool.state is ToolState.ERRORED else "*"
        lines.append(f"  {marker} {tool.name}")
    if turn.meta is not None:
        lines.append(f"  ({turn.meta.format()})")
    return "\n".join(lines)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the `turnkeeper` console script."""

    args = _parse_cli_args(argv)
    debug = bool(args.debug) or _env_flag("TURNKEEPER_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("TURNKEEPER_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2
    if args.base_url:
        cli_overrides["base_url"] = args.base_url
    if args.agent:
        cli_overrides["agent_id"] = args.agent

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)
    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return 0
    if settings.debug_logging and not debug:
        configure_logging(True, force=True)
    if not settings.agent_id:
        print("No agent configured; pass --agent ID or set TURNKEEPER_AGENT_ID.", file=sys.stderr)
        return 2

    try:
        asyncio.run(_run_console(settings))
    except KeyboardInterrupt:
        _LOGGER.info("Shutdown requested by user.")
    return 0


async def _run_console(settings: Settings, *, stdin: TextIO | None = None, stdout: TextIO | None = None) -> None:
    source = stdin or sys.stdin
    sink = stdout or sys.stdout
    session = ChatSession(settings)

    def _print_turn(turn: Turn) -> None:
        sink.write(format_turn(turn) + "\n")
        sink.flush()

    session.assembler.add_turn_listener(_print_turn)
    try:
        await session.refresh_commands()
        live = await session.select_agent(settings.agent_id or "")
        if not live:
            _LOGGER.info("Streaming unavailable; requests will use HTTP mode")
        loop = asyncio.get_running_loop()
        while True:
            line = await loop.run_in_executor(None, source.readline)
            if not line:
                break
            text = line.rstrip("\n")
            if text.strip().lower() in _EXIT_WORDS:
                break
            await session.submit(text)
            if session.agent_id is None:
                break
    finally:
        await session.aclose()


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="turnkeeper",
        description="Chat with a streaming agent backend from the terminal.",
    )
    parser.add_argument("--agent", metavar="ID", help="Agent to bind the session to.")
    parser.add_argument("--base-url", metavar="URL", help="Backend base URL (http or https).")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.turnkeeper/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload and exit.",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = _coerce_value(type_hints.get(key), raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    if annotation is bool:
        return _parse_bool(raw_value)
    if annotation is int:
        return int(raw_value, 10)
    if annotation is float:
        return float(raw_value)
    if annotation == Optional[str] and raw_value.lower() in {"", "none", "null"}:
        return None
    if annotation in (dict[str, str], Dict[str, str]):
        parsed = json.loads(raw_value)
        if not isinstance(parsed, dict):
            raise ValueError("Expected a JSON object.")
        return {str(key): str(value) for key, value in parsed.items()}
    return raw_value


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Expected a boolean value, got '{value}'.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    metadata = {
        "path": str(store.path),
        "cli_overrides": sorted(overrides.keys()),
        "ws_url": settings.resolved_ws_url,
    }
    json.dump({"settings": asdict(settings), "meta": metadata}, destination, indent=2)
    destination.write("\n")


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
