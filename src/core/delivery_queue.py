"""In-memory delivery queue with rate-limit aware draining.

The queue owns every outbound job. Jobs are drained in time-boxed batches by
a single ticker. A FLOOD_WAIT from the sink stalls the whole queue, since
Telegram enforces the limit per account rather than per destination.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Optional

from core.config import DestinationConfig, MessagingSettings
from core.errors import RateLimitedError, TransientNetworkError
from core.models import DeliveryJob, PersistedMessage, ResolvedChannel
from core.ports import ConfigProvider, SourceClientPort, StoragePort
from core.scheduler import Clock, Ticker
from core.templates import render_template

LOGGER = logging.getLogger(__name__)


class DeliveryQueue:
    """Fan messages out to destinations and drain them against the sink."""

    def __init__(
        self,
        client: SourceClientPort,
        storage: StoragePort,
        config: ConfigProvider,
        clock: Optional[Clock] = None,
    ) -> None:
        self._client = client
        self._storage = storage
        self._config = config
        self._clock = clock or Clock()
        self._queue: Deque[DeliveryJob] = deque()
        self._handles: Dict[str, ResolvedChannel] = {}
        self._draining = False
        self._stopped = False
        self._in_flight: List[DeliveryJob] = []
        self._ticker: Optional[Ticker] = None
        self.sent_count = 0
        self.dropped_count = 0

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def draining(self) -> bool:
        return self._draining

    def pending_jobs(self) -> List[DeliveryJob]:
        return list(self._queue)

    def is_pending(self, key: str) -> bool:
        """True when a job for this message key is still waiting to be sent."""

        return any(job.message.key == key for job in [*self._in_flight, *self._queue])

    async def initialize(self) -> None:
        """Resolve handles for active destinations and start draining."""

        snapshot = self._config.snapshot()
        self._stopped = False
        destinations = snapshot.active_destinations()
        LOGGER.info("Loading %s destination handles", len(destinations))
        for destination in destinations:
            await self._handle_for(destination)
        self._ticker = Ticker("delivery-drain", snapshot.messaging.drain_interval, self.tick, self._clock)
        self._ticker.start()

    async def _handle_for(self, destination: DestinationConfig) -> Optional[ResolvedChannel]:
        handle = self._handles.get(destination.id)
        if handle is not None:
            return handle
        try:
            handle = await self._client.resolve_channel(destination.username)
        except Exception:
            LOGGER.exception("Failed to resolve destination %s (%s)", destination.name, destination.username)
            return None
        self._handles[destination.id] = handle
        return handle

    async def enqueue(
        self,
        message: PersistedMessage,
        destinations: Optional[Iterable[DestinationConfig]] = None,
    ) -> int:
        """Render and queue one job per active destination. Returns jobs added."""

        snapshot = self._config.snapshot()
        if destinations is None:
            destinations = snapshot.active_destinations()
        settings = snapshot.messaging

        added = 0
        for destination in destinations:
            if not destination.active:
                continue
            handle = await self._handle_for(destination)
            if handle is None:
                continue
            text = render_template(
                destination.message_template,
                message,
                text_limit=settings.text_limit,
                missing_value=settings.missing_value,
            )
            self._queue.append(
                DeliveryJob(
                    destination=destination,
                    handle=handle,
                    text=text,
                    message=message,
                    enqueued_at=self._clock.now(),
                )
            )
            added += 1

        if not added:
            LOGGER.warning("No active destinations for %s", message.key)
        else:
            LOGGER.info("Queued %s to %s destination(s), queue size %s", message.key, added, len(self._queue))
        return added

    async def tick(self) -> None:
        if self._draining or not self._queue:
            return
        await self.drain()

    async def drain(self) -> None:
        """Send one batch. Non-reentrant: a concurrent call returns immediately."""

        if self._draining or self._stopped or not self._queue:
            return
        self._draining = True
        try:
            settings = self._config.snapshot().messaging
            await self._drain_batch(settings)
        finally:
            self._in_flight = []
            self._draining = False

    async def _drain_batch(self, settings: MessagingSettings) -> None:
        batch = [self._queue.popleft() for _ in range(min(settings.batch_size, len(self._queue)))]
        self._in_flight = batch
        LOGGER.debug("Processing batch of %s job(s)", len(batch))

        for index, job in enumerate(batch):
            if self._stopped:
                return
            try:
                await self._send(job)
            except RateLimitedError as exc:
                if self._stopped:
                    return
                # The failed job and the unsent rest of the batch keep their place at the head.
                job.attempts += 1
                remaining = batch[index:]
                if job.attempts > settings.max_job_retries:
                    self._drop(job, f"rate limited {job.attempts} times")
                    remaining = batch[index + 1:]
                self._queue.extendleft(reversed(remaining))
                LOGGER.warning("Flood wait: %s seconds. Pausing queue processing", exc.wait_seconds)
                await self._clock.sleep(exc.wait_seconds)
                return
            except TransientNetworkError as exc:
                if self._stopped:
                    return
                job.attempts += 1
                if job.attempts > settings.max_job_retries:
                    self._drop(job, f"network error after {job.attempts} attempts: {exc}")
                else:
                    LOGGER.warning("Send to %s failed (%s); requeued", job.destination.name, exc)
                    self._queue.append(job)
                continue
            except Exception:
                LOGGER.exception("Failed to send %s to %s", job.message.key, job.destination.name)
                self.dropped_count += 1
                continue

            if settings.send_delay > 0 and index < len(batch) - 1:
                await self._clock.sleep(settings.send_delay)

    async def _send(self, job: DeliveryJob) -> None:
        if not self._client.is_connected():
            await self._client.connect()
        await self._client.send(job.handle.entity, job.text)
        self.sent_count += 1
        LOGGER.info("Message %s sent to %s", job.message.key, job.destination.name)

        if job.message.id is None:
            return
        try:
            self._storage.mark_delivered(job.message.id)
        except Exception:
            LOGGER.exception("Sent %s but could not mark it delivered", job.message.key)

    def _drop(self, job: DeliveryJob, reason: str) -> None:
        self.dropped_count += 1
        LOGGER.warning("Dropping %s for %s: %s", job.message.key, job.destination.name, reason)

    async def send_test_message(self, destination_id: str, text: str) -> None:
        """Send a one-off message straight to a destination, bypassing the queue."""

        destination = self._config.snapshot().destination(destination_id)
        handle = await self._handle_for(destination)
        if handle is None:
            raise LookupError(f"Destination {destination_id} could not be resolved")
        await self._client.send(handle.entity, text)
        LOGGER.info("Test message sent to %s", destination.name)

    def clear(self) -> int:
        cleared = len(self._queue)
        self._queue.clear()
        LOGGER.info("Cleared %s job(s) from queue", cleared)
        return cleared

    async def stop(self) -> None:
        """Stop draining, discard queued jobs, and forget destination handles.

        A send already underway finishes. Nothing after it in the batch is sent
        or requeued.
        """

        self._stopped = True
        if self._ticker is not None:
            self._ticker.stop()
            self._ticker = None
        self._in_flight = []
        self.clear()
        self._handles.clear()

    def stats(self) -> dict[str, Any]:
        snapshot = self._config.snapshot()
        return {
            "queue_size": len(self._queue),
            "is_draining": self._draining,
            "sent_count": self.sent_count,
            "dropped_count": self.dropped_count,
            "destinations": len(self._handles),
            "destination_configs": [
                {"id": destination.id, "name": destination.name, "active": destination.active}
                for destination in snapshot.destinations
            ],
        }
