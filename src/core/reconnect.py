"""Live-push subscription lifecycle.

State machine:

    STOPPED -> CONNECTING -> LISTENING
    CONNECTING/LISTENING -> RECONNECTING -> CONNECTING
    RECONNECTING -> STOPPED   (attempts exhausted)

Reconnects use a fixed delay between attempts. Once the attempt budget is
spent the controller stays STOPPED; restarting it is up to the caller.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Dict, Optional

from core.config import ChannelConfig
from core.errors import ExhaustedRetriesError, RateLimitedError, TransientNetworkError
from core.models import ResolvedChannel, SourceMessage
from core.ports import ConfigProvider, SourceClientPort
from core.scheduler import Clock, Ticker

LOGGER = logging.getLogger(__name__)

CONNECT_ERRORS = (TransientNetworkError, RateLimitedError, ConnectionError, OSError, asyncio.TimeoutError)


class ListenerState(enum.Enum):
    STOPPED = "stopped"
    CONNECTING = "connecting"
    LISTENING = "listening"
    RECONNECTING = "reconnecting"


class ReconnectController:
    """Own the live subscription: connect, listen, heartbeat, reconnect."""

    def __init__(
        self,
        client: SourceClientPort,
        config: ConfigProvider,
        clock: Optional[Clock] = None,
    ) -> None:
        self._client = client
        self._config = config
        self._clock = clock or Clock()
        self._state = ListenerState.STOPPED
        self._channels: Dict[str, tuple[ResolvedChannel, ChannelConfig]] = {}
        self._heartbeat: Optional[Ticker] = None
        self._subscribed = False
        self._stopping = False
        self.reconnect_attempts = 0
        self.connect_attempts = 0
        self.dropped_events = 0
        self.last_error: Optional[Exception] = None
        self.inbox: asyncio.Queue[SourceMessage] = asyncio.Queue(
            maxsize=config.snapshot().realtime.inbox_size
        )

    @property
    def state(self) -> ListenerState:
        return self._state

    @property
    def max_attempts(self) -> int:
        return self._config.snapshot().realtime.max_reconnect_attempts

    def channel_for(self, channel_id: Optional[str]) -> Optional[ChannelConfig]:
        """Return the config of a resolved live channel, if we listen to it."""

        if channel_id is None:
            return None
        entry = self._channels.get(str(channel_id))
        return entry[1] if entry else None

    def handle_push(self, message: SourceMessage) -> None:
        """Push handler registered on the client. Never blocks."""

        try:
            self.inbox.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped_events += 1
            LOGGER.warning("Live inbox full, dropping message %s", message.message_id)

    async def start(self) -> None:
        """Connect and begin listening, reconnecting on failure."""

        realtime = self._config.snapshot().realtime
        if not realtime.enabled:
            LOGGER.info("Real-time listening is disabled in config")
            return

        LOGGER.info("Starting real-time message listener")
        self._stopping = False
        self.reconnect_attempts = 0
        await self._establish()

    async def _establish(self) -> None:
        while not self._stopping:
            self._state = ListenerState.CONNECTING
            try:
                await self._connect_once()
            except Exception as exc:
                if isinstance(exc, CONNECT_ERRORS):
                    LOGGER.error("Failed to start real-time listener: %s", exc)
                else:
                    LOGGER.exception("Unexpected error starting real-time listener")
                self.last_error = exc
                self._teardown()
                if not await self._begin_reconnect():
                    return
                continue

            self._state = ListenerState.LISTENING
            self.last_error = None
            self.reconnect_attempts = 0
            self._start_heartbeat()
            LOGGER.info("Real-time listener started, monitoring %s channel(s)", len(self._channels))
            return

    async def _connect_once(self) -> None:
        self.connect_attempts += 1
        if not self._client.is_connected():
            await self._client.connect()
        await self._load_channels()
        if not self._subscribed:
            self._client.subscribe(self.handle_push)
            self._subscribed = True

    async def _load_channels(self) -> None:
        self._channels.clear()
        channels = self._config.snapshot().live_channels()
        LOGGER.info("Loading %s live channel entities", len(channels))
        for channel in channels:
            try:
                resolved = await self._client.resolve_channel(channel.username)
            except RateLimitedError:
                raise
            except Exception:
                LOGGER.exception("Failed to load entity for %s", channel.username)
                continue
            self._channels[str(resolved.channel_id)] = (resolved, channel)
            LOGGER.debug("Loaded entity for %s", channel.name)

    async def _begin_reconnect(self) -> bool:
        """Count an attempt and wait. Returns False once the budget is spent."""

        self._state = ListenerState.RECONNECTING
        self.reconnect_attempts += 1
        if self.reconnect_attempts > self.max_attempts:
            self.last_error = ExhaustedRetriesError(
                f"gave up after {self.max_attempts} reconnection attempts: {self.last_error}"
            )
            LOGGER.error("Max reconnection attempts reached. Stopping real-time listener")
            await self.stop()
            return False

        LOGGER.info("Reconnection attempt %s/%s", self.reconnect_attempts, self.max_attempts)
        await self._clock.sleep(self._config.snapshot().realtime.reconnect_delay)
        return not self._stopping

    def _start_heartbeat(self) -> None:
        if self._heartbeat is None:
            interval = self._config.snapshot().realtime.heartbeat_interval
            self._heartbeat = Ticker("live-heartbeat", interval, self.heartbeat, self._clock)
        self._heartbeat.start()

    async def heartbeat(self) -> None:
        """Confirm liveness; trigger a reconnect if the transport dropped."""

        if self._state is not ListenerState.LISTENING:
            return
        if self._client.is_connected():
            LOGGER.debug("Heartbeat - connection alive")
            return

        LOGGER.warning("Connection lost, attempting reconnect")
        self.last_error = TransientNetworkError("connection lost")
        self._teardown()
        if await self._begin_reconnect():
            await self._establish()

    def _teardown(self) -> None:
        if self._subscribed:
            self._client.unsubscribe(self.handle_push)
            self._subscribed = False
        self._channels.clear()

    async def stop(self) -> None:
        """Stop listening. Safe to call from inside a heartbeat tick."""

        LOGGER.info("Stopping real-time listener")
        self._stopping = True
        self._state = ListenerState.STOPPED
        if self._heartbeat is not None:
            self._heartbeat.stop()
            self._heartbeat = None
        self._teardown()

    def status(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "is_listening": self._state is ListenerState.LISTENING,
            "monitored_channels": len(self._channels),
            "reconnect_attempts": self.reconnect_attempts,
            "heartbeat_active": self._heartbeat is not None and self._heartbeat.running,
            "inbox_size": self.inbox.qsize(),
            "dropped_events": self.dropped_events,
            "last_error": str(self.last_error) if self.last_error else None,
        }
