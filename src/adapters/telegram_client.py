"""Telethon transport adapter.

Implements the core SourceClientPort on top of a Telethon client and turns
Telethon/network exceptions into the core error taxonomy.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List

from telethon import TelegramClient, errors, events

from adapters.telegram_mapper import to_source_message
from core.errors import NotConnectedError, RateLimitedError, TransientNetworkError
from core.models import ResolvedChannel, SourceMessage
from core.ports import PushHandler

LOGGER = logging.getLogger(__name__)


@contextmanager
def translate_errors(action: str) -> Iterator[None]:
    """Map Telethon flood waits and socket errors onto core errors."""

    try:
        yield
    except (errors.FloodWaitError, errors.SlowModeWaitError) as exc:
        raise RateLimitedError(f"FLOOD_WAIT_{exc.seconds}", wait_seconds=exc.seconds) from exc
    except (ConnectionError, OSError, asyncio.TimeoutError) as exc:
        raise TransientNetworkError(f"{action} failed: {exc}") from exc


class TelethonSourceClient:
    """SourceClientPort backed by a user-account Telethon session."""

    def __init__(self, client: TelegramClient) -> None:
        self._client = client
        self._callbacks: Dict[PushHandler, Callable[[Any], Any]] = {}

    @property
    def raw(self) -> TelegramClient:
        return self._client

    async def connect(self) -> None:
        if self._client.is_connected():
            return
        LOGGER.info("Connecting to Telegram")
        with translate_errors("connect"):
            await self._client.connect()
            authorized = await self._client.is_user_authorized()
        if not authorized:
            raise NotConnectedError("Telegram session is not authorized, run `promorelay login` first")
        LOGGER.info("Telegram client connected")

    async def disconnect(self) -> None:
        if self._client.is_connected():
            await self._client.disconnect()
            LOGGER.info("Telegram client disconnected")

    def is_connected(self) -> bool:
        return self._client.is_connected()

    async def resolve_channel(self, handle: str) -> ResolvedChannel:
        with translate_errors(f"resolve {handle}"):
            entity = await self._client.get_entity(handle)
        title = getattr(entity, "title", None) or getattr(entity, "username", None)
        return ResolvedChannel(channel_id=str(entity.id), entity=entity, title=title)

    async def fetch_messages(self, channel: ResolvedChannel, limit: int, offset: int = 0) -> List[SourceMessage]:
        """Fetch the latest `limit` messages, newest first."""

        with translate_errors(f"fetch {channel.title or channel.channel_id}"):
            messages = await self._client.get_messages(channel.entity, limit=limit, offset_id=offset)
        LOGGER.debug("Retrieved %s messages from %s", len(messages), channel.title)
        return [to_source_message(message) for message in messages]

    def subscribe(self, handler: PushHandler) -> None:
        if handler in self._callbacks:
            return

        async def _on_new_message(event) -> None:
            handler(to_source_message(event.message))

        self._callbacks[handler] = _on_new_message
        self._client.add_event_handler(_on_new_message, events.NewMessage(incoming=True))

    def unsubscribe(self, handler: PushHandler) -> None:
        callback = self._callbacks.pop(handler, None)
        if callback is not None:
            self._client.remove_event_handler(callback)

    async def send(self, destination: Any, text: str) -> None:
        with translate_errors("send"):
            await self._client.send_message(destination, text)
