"""Ingestion orchestration for the poll and live paths.

This module is integration-agnostic. It only relies on ports for the
transport, storage and config, enabling other adapters without changes here.

Both paths run the same sequence:
1) Normalize the channel handle so both paths share one uniqueness key
2) Dedup gate (store lookup)
3) Extraction for new messages, then insert (a lost insert race = known)
4) Path-specific send policy
5) Enqueue unless a job for the message is already queued
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Optional

from core.config import AppConfig, ChannelConfig
from core.dedup import DedupGate, DedupResult, DedupVerdict
from core.delivery_queue import DeliveryQueue
from core.errors import RateLimitedError
from core.extraction import extract
from core.models import PersistedMessage, SourceMessage
from core.ports import ConfigProvider, SourceClientPort, StoragePort
from core.reconnect import ReconnectController
from core.rules_engine import (
    FORMAT_KEYWORD,
    batch_send_policy,
    live_send_policy,
    looks_like_promo,
    match_keywords,
)
from core.scheduler import Clock, Ticker
from core.source_keys import normalize_handle

LOGGER = logging.getLogger(__name__)

SendPolicy = Callable[[PersistedMessage], bool]


def build_persisted(
    message: SourceMessage,
    channel: ChannelConfig,
    matched_keywords: Iterable[str],
    now: datetime,
) -> PersistedMessage:
    """Run extraction and build the record that will be inserted."""

    return PersistedMessage(
        message_id=message.message_id,
        channel_id=message.channel_id,
        channel_handle=normalize_handle(channel.username),
        channel_name=channel.name,
        text=message.text,
        message_date=message.date,
        record=extract(message.text),
        matched_keywords=tuple(matched_keywords),
        raw=message.raw,
        delivered=False,
        discovered_at=now,
        scraped_at=now,
    )


class IngestionOrchestrator:
    """Feed polled and pushed messages through dedup, extraction and delivery."""

    def __init__(
        self,
        client: SourceClientPort,
        storage: StoragePort,
        config: ConfigProvider,
        clock: Optional[Clock] = None,
        queue: Optional[DeliveryQueue] = None,
        controller: Optional[ReconnectController] = None,
    ) -> None:
        self._client = client
        self._storage = storage
        self._config = config
        self._clock = clock or Clock()
        self._gate = DedupGate(storage)
        self.queue = queue or DeliveryQueue(client, storage, config, self._clock)
        self.controller = controller or ReconnectController(client, config, self._clock)
        self._cooldowns: Dict[str, datetime] = {}
        self._scan_ticker: Optional[Ticker] = None
        self._live_ticker: Optional[Ticker] = None
        self.running = False
        self.processed_count = 0
        self.queued_count = 0

    async def start(self) -> None:
        """Connect, start every component, run a first scan, then schedule."""

        snapshot = self._config.snapshot()
        LOGGER.info("Monitoring %s channel(s)", len(snapshot.channels))
        for channel in snapshot.channels:
            LOGGER.info("  %s (@%s)%s", channel.name, channel.username, "" if channel.active else " [inactive]")
        LOGGER.info(
            "Check interval: %ss, message age window: %sh",
            snapshot.scraping.check_interval,
            snapshot.scraping.max_age_hours,
        )

        # A failed first connection is fatal; later drops go through the controller.
        if not self._client.is_connected():
            await self._client.connect()

        await self.queue.initialize()
        await self.controller.start()
        self.running = True

        await self.scan_all_channels()

        self._scan_ticker = Ticker("channel-scan", snapshot.scraping.check_interval, self.scan_all_channels, self._clock)
        self._live_ticker = Ticker(
            "live-consumer", snapshot.realtime.live_poll_interval, self.consume_live_events, self._clock
        )
        self._scan_ticker.start()
        self._live_ticker.start()
        LOGGER.info("Ingestion running")

    async def stop(self) -> None:
        LOGGER.info("Stopping ingestion")
        self.running = False
        for ticker in (self._scan_ticker, self._live_ticker):
            if ticker is not None:
                ticker.stop()
        self._scan_ticker = None
        self._live_ticker = None
        await self.controller.stop()
        await self.queue.stop()

    # -- poll path -----------------------------------------------------------

    def _in_cooldown(self, channel: ChannelConfig) -> bool:
        until = self._cooldowns.get(normalize_handle(channel.username))
        if until is None:
            return False
        if self._clock.now() >= until:
            self._cooldowns.pop(normalize_handle(channel.username), None)
            return False
        return True

    async def scan_all_channels(self) -> int:
        """Scan every active channel once. Returns the number of messages queued."""

        snapshot = self._config.snapshot()
        channels = snapshot.active_channels()
        LOGGER.info("Channel scan starting (%s active)", len(channels))

        queued = 0
        for index, channel in enumerate(channels):
            if self._in_cooldown(channel):
                LOGGER.info("%s is cooling down after a flood wait, skipping", channel.name)
                continue
            try:
                queued += await self.scan_channel(channel, snapshot)
            except RateLimitedError as exc:
                # Only this channel waits; the others keep their schedule.
                self._cooldowns[normalize_handle(channel.username)] = self._clock.now() + timedelta(
                    seconds=exc.wait_seconds
                )
                LOGGER.warning("%s - flood limit, next scan in %s seconds", channel.name, exc.wait_seconds)
            except Exception:
                LOGGER.exception("%s - scan failed", channel.name)

            if index < len(channels) - 1:
                await self._clock.sleep(snapshot.scraping.channel_delay)

        if queued:
            LOGGER.info("Scan complete: %s promo message(s) queued", queued)
        else:
            LOGGER.info("Scan complete: no new promo codes")
        return queued

    async def scan_channel(self, channel: ChannelConfig, snapshot: Optional[AppConfig] = None) -> int:
        """Fetch the latest messages of one channel and ingest the recent ones."""

        snapshot = snapshot or self._config.snapshot()
        scraping = snapshot.scraping

        resolved = await self._client.resolve_channel(channel.username)
        messages = await self._client.fetch_messages(resolved, scraping.max_messages_per_check, 0)
        if not messages:
            LOGGER.info("%s - no messages", channel.name)
            return 0

        cutoff = self._clock.now() - timedelta(hours=scraping.max_age_hours)
        recent = [message for message in messages if message.date > cutoff]
        if not recent:
            LOGGER.info("%s - nothing in the last %s hours", channel.name, scraping.max_age_hours)
            return 0

        queued = 0
        for message in recent:
            try:
                if await self.process_polled(message, channel):
                    queued += 1
            except Exception:
                LOGGER.exception("%s - error processing message %s", channel.name, message.message_id)

        self.processed_count += len(recent)
        LOGGER.info("%s - %s message(s) checked, %s queued", channel.name, len(recent), queued)
        return queued

    async def process_polled(self, message: SourceMessage, channel: ChannelConfig) -> bool:
        if not message.text:
            return False
        message = replace(message, channel_handle=normalize_handle(channel.username))
        return await self._ingest(
            message,
            channel,
            [FORMAT_KEYWORD],
            batch_send_policy,
            prefilter=looks_like_promo,
        )

    # -- live path -----------------------------------------------------------

    async def consume_live_events(self) -> int:
        """Drain whatever the live listener has pushed since the last tick."""

        handled = 0
        while True:
            try:
                message = self.controller.inbox.get_nowait()
            except asyncio.QueueEmpty:
                break
            handled += 1
            try:
                await self.handle_live_message(message)
            except Exception:
                LOGGER.exception("Error handling live message %s", message.message_id)
        return handled

    async def handle_live_message(self, message: SourceMessage) -> bool:
        if not message.text:
            return False
        channel = self.controller.channel_for(message.channel_id)
        if channel is None:
            return False

        LOGGER.info("New live message from %s: %s", channel.name, message.message_id)
        matched = match_keywords(message.text, channel.keywords)
        if not matched:
            LOGGER.debug("Message %s has no target keywords", message.message_id)
            return False

        message = replace(message, channel_handle=normalize_handle(channel.username))
        policy = functools.partial(live_send_policy, settings=self._config.snapshot().messaging)
        return await self._ingest(message, channel, matched, policy)

    # -- shared --------------------------------------------------------------

    async def _ingest(
        self,
        message: SourceMessage,
        channel: ChannelConfig,
        matched_keywords: Iterable[str],
        policy: SendPolicy,
        prefilter: Optional[Callable[[str], bool]] = None,
    ) -> bool:
        result = self._gate.check(message)
        if result.verdict is not DedupVerdict.NEW:
            return await self._resend(result, policy)

        if prefilter is not None and not prefilter(message.text):
            return False

        candidate = build_persisted(message, channel, matched_keywords, self._clock.now())
        result = self._gate.admit(candidate)
        if result.verdict is not DedupVerdict.NEW or result.message is None:
            return await self._resend(result, policy)

        stored = result.message
        if stored.record.deliverable:
            LOGGER.info(
                "%s - code %s, url %s",
                channel.name,
                stored.record.primary_code,
                stored.record.destination_url,
            )
        if not policy(stored):
            return False
        return await self._enqueue(stored)

    async def _resend(self, result: DedupResult, policy: SendPolicy) -> bool:
        if result.verdict is not DedupVerdict.ALREADY_KNOWN_UNDELIVERED or result.message is None:
            return False
        if not policy(result.message):
            return False
        return await self._enqueue(result.message)

    async def _enqueue(self, message: PersistedMessage) -> bool:
        if self.queue.is_pending(message.key):
            LOGGER.debug("%s already queued", message.key)
            return False
        added = await self.queue.enqueue(message)
        if added:
            self.queued_count += 1
        return added > 0

    async def send_latest(self) -> bool:
        """Queue the most recent deliverable stored message, delivered or not."""

        latest = self._storage.latest_deliverable()
        if latest is None:
            LOGGER.info("No deliverable messages in the database")
            return False
        LOGGER.info("Re-sending latest promo %s (%s)", latest.record.primary_code, latest.record.destination_url)
        return await self.queue.enqueue(latest) > 0

    def stats(self) -> dict[str, Any]:
        snapshot = self._config.snapshot()
        return {
            "is_running": self.running,
            "processed_count": self.processed_count,
            "queued_count": self.queued_count,
            "connected": self._client.is_connected(),
            "active_channels": len(snapshot.active_channels()),
            "cooling_down": sorted(self._cooldowns),
            "realtime": self.controller.status(),
            "messaging": self.queue.stats(),
        }
