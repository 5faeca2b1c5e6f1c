"""Ports (interfaces) used by the core pipeline.

Ports define the minimal contracts for the Telegram transport, storage and
configuration so that the core can be reused with different backends.
"""

from __future__ import annotations

from typing import Any, Callable, List, Optional, Protocol

from core.config import AppConfig
from core.models import PersistedMessage, ResolvedChannel, SourceMessage

PushHandler = Callable[[SourceMessage], None]


class SourceClientPort(Protocol):
    """Transport operations required by the core.

    Every coroutine may raise RateLimitedError or TransientNetworkError.
    """

    async def connect(self) -> None:
        ...

    async def disconnect(self) -> None:
        ...

    def is_connected(self) -> bool:
        ...

    async def resolve_channel(self, handle: str) -> ResolvedChannel:
        ...

    async def fetch_messages(
        self, channel: ResolvedChannel, limit: int, offset: int = 0
    ) -> List[SourceMessage]:
        ...

    def subscribe(self, handler: PushHandler) -> None:
        ...

    def unsubscribe(self, handler: PushHandler) -> None:
        ...

    async def send(self, destination: Any, text: str) -> None:
        ...


class StoragePort(Protocol):
    """Storage operations required by the core pipeline."""

    def find_by_key(self, channel_handle: str, message_id: int) -> Optional[PersistedMessage]:
        ...

    def insert(self, message: PersistedMessage) -> PersistedMessage:
        """Insert a new message; raise DuplicateKeyError on key collision."""
        ...

    def mark_delivered(self, message_pk: int) -> None:
        ...

    def latest_deliverable(self) -> Optional[PersistedMessage]:
        ...


class ConfigProvider(Protocol):
    """Source of configuration snapshots, re-read on every cycle."""

    def snapshot(self) -> AppConfig:
        ...
