"""Configuration loading for promorelay.

All user-editable settings (channels, destinations, scraping, messaging,
real-time, logging) live in a single JSON file for quick edits without
touching Python. Secrets (API credentials, session) come from .env instead.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Optional

from core.config import (
    DEFAULT_MESSAGE_TEMPLATE,
    AppConfig,
    ChannelConfig,
    DestinationConfig,
    MessagingSettings,
    RealTimeSettings,
    ScrapeSettings,
)
from core.errors import MalformedConfigError

LOGGER = logging.getLogger(__name__)

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

# Where to store the SQLite database.
DB_PATH = os.getenv("PROMORELAY_DB", os.path.join(PROJECT_ROOT, "promorelay.db"))

# config.json sits at the project root unless overridden.
CONFIG_PATH = os.getenv("PROMORELAY_CONFIG", os.path.join(PROJECT_ROOT, "config.json"))


def _load_json_config(path: str) -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(path):
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r", encoding="utf-8") as handle:
        try:
            data = json.load(handle)
        except json.JSONDecodeError as exc:
            raise MalformedConfigError(f"{path}: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedConfigError(f"{path}: top level must be an object")
    return data


def _section(raw: dict, name: str) -> dict:
    value = raw.get(name, {}) or {}
    if not isinstance(value, dict):
        raise MalformedConfigError(f"'{name}' must be an object")
    return value


def _parse_channels(raw_channels: list) -> list[ChannelConfig]:
    channels: list[ChannelConfig] = []
    for index, entry in enumerate(raw_channels):
        username = entry.get("username") if isinstance(entry, dict) else None
        if not username:
            raise MalformedConfigError(f"channels[{index}] needs a username")
        keywords = entry.get("keywords", []) or []
        if not isinstance(keywords, list):
            raise MalformedConfigError(f"channels[{index}].keywords must be a list")
        channels.append(
            ChannelConfig(
                name=entry.get("name") or username,
                username=username,
                active=bool(entry.get("active", True)),
                live_enabled=bool(entry.get("live_enabled", False)),
                keywords=tuple(str(keyword) for keyword in keywords),
            )
        )
    return channels


def _parse_destinations(raw_destinations: list, templates: dict) -> list[DestinationConfig]:
    destinations: list[DestinationConfig] = []
    default_template = templates.get("default", DEFAULT_MESSAGE_TEMPLATE)
    for index, entry in enumerate(raw_destinations):
        username = entry.get("username") if isinstance(entry, dict) else None
        if not username:
            raise MalformedConfigError(f"destinations[{index}] needs a username")
        # A template may be inline or refer to a named entry under "templates".
        template = entry.get("message_template") or templates.get(entry.get("template", ""), default_template)
        destinations.append(
            DestinationConfig(
                id=str(entry.get("id") or username),
                name=entry.get("name") or username,
                username=username,
                active=bool(entry.get("active", True)),
                message_template=template,
            )
        )
    return destinations


def _build(cls, values: dict, section: str) -> Any:
    try:
        return cls(**values)
    except TypeError as exc:
        raise MalformedConfigError(f"'{section}': {exc}") from exc


def parse_config(raw: dict) -> AppConfig:
    """Turn the raw JSON document into an AppConfig."""

    channels = raw.get("channels", []) or []
    destinations = raw.get("destinations", []) or []
    if not isinstance(channels, list) or not isinstance(destinations, list):
        raise MalformedConfigError("'channels' and 'destinations' must be lists")

    return AppConfig(
        channels=_parse_channels(channels),
        destinations=_parse_destinations(destinations, _section(raw, "templates")),
        scraping=_build(ScrapeSettings, _section(raw, "scraping"), "scraping"),
        messaging=_build(MessagingSettings, _section(raw, "messaging"), "messaging"),
        realtime=_build(RealTimeSettings, _section(raw, "realtime"), "realtime"),
    )


def load_config(path: str = CONFIG_PATH) -> AppConfig:
    return parse_config(_load_json_config(path))


def load_logging_config(path: str = CONFIG_PATH) -> dict:
    """Return the optional "logging" block, or {} when config is unreadable."""

    try:
        return _section(_load_json_config(path), "logging")
    except (OSError, MalformedConfigError):
        return {}


class JsonConfigProvider:
    """ConfigProvider that re-reads config.json whenever it changes on disk.

    Edits to `active` flags take effect on the next scan or drain cycle. A
    broken edit keeps the last good snapshot and logs the error.
    """

    def __init__(self, path: str = CONFIG_PATH) -> None:
        self._path = path
        self._mtime: Optional[float] = None
        self._snapshot = self._reload()

    def _reload(self) -> AppConfig:
        mtime = os.path.getmtime(self._path)
        snapshot = load_config(self._path)
        self._mtime = mtime
        return snapshot

    def snapshot(self) -> AppConfig:
        try:
            mtime = os.path.getmtime(self._path)
        except OSError:
            LOGGER.warning("Config file %s is unavailable, using last snapshot", self._path)
            return self._snapshot
        if mtime != self._mtime:
            try:
                self._snapshot = self._reload()
                LOGGER.info("Reloaded config from %s", self._path)
            except MalformedConfigError as exc:
                self._mtime = mtime
                LOGGER.error("Ignoring malformed config change: %s", exc)
        return self._snapshot
