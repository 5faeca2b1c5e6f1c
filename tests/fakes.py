from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from core.config import AppConfig, ChannelConfig, DestinationConfig, MessagingSettings, RealTimeSettings
from core.errors import DuplicateKeyError
from core.models import PersistedMessage, ResolvedChannel, SourceMessage
from core.scheduler import Clock
from core.source_keys import normalize_handle

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock(Clock):
    def __init__(self, now: datetime = NOW) -> None:
        self.current = now
        self.sleeps: list[float] = []

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)
        await asyncio.sleep(0)

    def now(self) -> datetime:
        return self.current


class FakeStorage:
    def __init__(self) -> None:
        self.rows: dict[tuple[str, int], PersistedMessage] = {}
        self.next_id = 1
        self.delivered_calls: list[int] = []

    def find_by_key(self, channel_handle: str, message_id: int) -> Optional[PersistedMessage]:
        return self.rows.get((normalize_handle(channel_handle), message_id))

    def insert(self, message: PersistedMessage) -> PersistedMessage:
        key = (normalize_handle(message.channel_handle), message.message_id)
        if key in self.rows:
            raise DuplicateKeyError(message.key)
        stored = replace(message, id=self.next_id)
        self.next_id += 1
        self.rows[key] = stored
        return stored

    def mark_delivered(self, message_pk: int) -> None:
        self.delivered_calls.append(message_pk)
        for key, row in self.rows.items():
            if row.id == message_pk:
                self.rows[key] = replace(row, delivered=True)

    def latest_deliverable(self) -> Optional[PersistedMessage]:
        rows = [row for row in self.rows.values() if row.record.deliverable]
        return max(rows, key=lambda row: row.message_date) if rows else None

    def only(self) -> PersistedMessage:
        assert len(self.rows) == 1
        return next(iter(self.rows.values()))


class FakeClient:
    def __init__(self, connected: bool = True) -> None:
        self.connected = connected
        self.connect_calls = 0
        self.connect_errors: list[Exception] = []
        self.unresolvable: set[str] = set()
        self.messages: dict[str, list[SourceMessage]] = {}
        self.fetch_errors: dict[str, Exception] = {}
        self.send_errors: list[Optional[Exception]] = []
        self.sent: list[tuple[Any, str]] = []
        self.handlers: list = []

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    def is_connected(self) -> bool:
        return self.connected

    async def resolve_channel(self, handle: str) -> ResolvedChannel:
        name = normalize_handle(handle)
        if name in self.unresolvable:
            raise ValueError(f"Cannot find any entity corresponding to {handle}")
        return ResolvedChannel(channel_id=f"id-{name}", entity=name, title=name)

    async def fetch_messages(self, channel: ResolvedChannel, limit: int, offset: int = 0) -> list[SourceMessage]:
        if channel.entity in self.fetch_errors:
            raise self.fetch_errors[channel.entity]
        return self.messages.get(channel.entity, [])[:limit]

    def subscribe(self, handler) -> None:
        self.handlers.append(handler)

    def unsubscribe(self, handler) -> None:
        self.handlers.remove(handler)

    async def send(self, destination: Any, text: str) -> None:
        if self.send_errors:
            error = self.send_errors.pop(0)
            if error is not None:
                raise error
        self.sent.append((destination, text))


class StaticConfig:
    def __init__(self, config: AppConfig) -> None:
        self.config = config

    def snapshot(self) -> AppConfig:
        return self.config


def make_config(
    *,
    channels: Optional[list[ChannelConfig]] = None,
    destinations: Optional[list[DestinationConfig]] = None,
    messaging: Optional[MessagingSettings] = None,
    realtime: Optional[RealTimeSettings] = None,
) -> StaticConfig:
    return StaticConfig(
        AppConfig(
            channels=channels
            if channels is not None
            else [ChannelConfig(name="Promos", username="promos", live_enabled=True, keywords=("bonus",))],
            destinations=destinations
            if destinations is not None
            else [DestinationConfig(id="g1", name="Group 1", username="group1", message_template="{bonusCode} {websiteUrl}")],
            messaging=messaging or MessagingSettings(send_delay=0, batch_size=10),
            realtime=realtime or RealTimeSettings(reconnect_delay=5, max_reconnect_attempts=3),
        )
    )


def source_message(
    text: str,
    message_id: int = 1,
    handle: Optional[str] = "promos",
    channel_id: Optional[str] = "id-promos",
    date: datetime = NOW - timedelta(minutes=5),
) -> SourceMessage:
    return SourceMessage(
        message_id=message_id,
        channel_id=channel_id,
        channel_handle=handle,
        text=text,
        date=date,
    )
