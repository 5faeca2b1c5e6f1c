from __future__ import annotations

import asyncio

from core.config import ChannelConfig, DestinationConfig, MessagingSettings
from core.delivery_queue import DeliveryQueue
from core.errors import RateLimitedError, TransientNetworkError, parse_flood_wait
from core.processor import build_persisted

from fakes import NOW, FakeClient, FakeClock, FakeStorage, make_config, source_message

CHANNEL = ChannelConfig(name="Promos", username="promos")


def _stored(storage: FakeStorage, code: str, message_id: int):
    text = f"`{code}`\nhttps://{code.lower()}.com"
    return storage.insert(build_persisted(source_message(text, message_id=message_id), CHANNEL, [], NOW))


def _queue(messaging: MessagingSettings = None, destinations=None):
    client = FakeClient()
    storage = FakeStorage()
    clock = FakeClock()
    config = make_config(messaging=messaging, destinations=destinations)
    return DeliveryQueue(client, storage, config, clock), client, storage, clock


def test_parse_flood_wait() -> None:
    assert parse_flood_wait("A wait of 42 seconds is required (FLOOD_WAIT_42)") == 42
    assert parse_flood_wait("something else") == 60
    assert RateLimitedError("FLOOD_WAIT_7").wait_seconds == 7
    assert RateLimitedError("slow down", wait_seconds=3).wait_seconds == 3


def test_drain_sends_in_order_and_marks_delivered() -> None:
    async def scenario() -> None:
        queue, client, storage, clock = _queue()
        first = _stored(storage, "CODEA111", 1)
        second = _stored(storage, "CODEB222", 2)
        assert await queue.enqueue(first) == 1
        assert await queue.enqueue(second) == 1

        await queue.drain()

        assert client.sent == [
            ("group1", "CODEA111 https://codea111.com"),
            ("group1", "CODEB222 https://codeb222.com"),
        ]
        assert storage.delivered_calls == [first.id, second.id]
        assert all(row.delivered for row in storage.rows.values())
        assert queue.sent_count == 2
        assert len(queue) == 0
        assert clock.sleeps == []

    asyncio.run(scenario())


def test_send_delay_only_between_sends() -> None:
    async def scenario() -> None:
        queue, client, storage, clock = _queue(MessagingSettings(send_delay=1.5, batch_size=10))
        for index, code in enumerate(("CODEA111", "CODEB222", "CODEC333"), start=1):
            await queue.enqueue(_stored(storage, code, index))

        await queue.drain()

        assert len(client.sent) == 3
        assert clock.sleeps == [1.5, 1.5]

    asyncio.run(scenario())


def test_rate_limit_requeues_whole_batch_at_head() -> None:
    async def scenario() -> None:
        queue, client, storage, clock = _queue()
        for index, code in enumerate(("CODEA111", "CODEB222", "CODEC333"), start=1):
            await queue.enqueue(_stored(storage, code, index))
        client.send_errors = [RateLimitedError("FLOOD_WAIT_7")]

        await queue.drain()

        assert client.sent == []
        assert clock.sleeps == [7]
        assert [job.message.message_id for job in queue.pending_jobs()] == [1, 2, 3]
        assert queue.pending_jobs()[0].attempts == 1

        await queue.drain()

        assert [text for _, text in client.sent] == [
            "CODEA111 https://codea111.com",
            "CODEB222 https://codeb222.com",
            "CODEC333 https://codec333.com",
        ]

    asyncio.run(scenario())


def test_rate_limit_mid_batch_keeps_failed_job_ahead_of_later_jobs() -> None:
    async def scenario() -> None:
        queue, client, storage, clock = _queue(MessagingSettings(send_delay=0, batch_size=2))
        for index, code in enumerate(("CODEA111", "CODEB222", "CODEC333"), start=1):
            await queue.enqueue(_stored(storage, code, index))
        client.send_errors = [None, RateLimitedError("FLOOD_WAIT_4")]

        await queue.drain()

        assert [text for _, text in client.sent] == ["CODEA111 https://codea111.com"]
        assert [job.message.message_id for job in queue.pending_jobs()] == [2, 3]
        assert clock.sleeps == [4]

    asyncio.run(scenario())


def test_rate_limited_job_is_dropped_after_retry_cap() -> None:
    async def scenario() -> None:
        queue, client, storage, clock = _queue(MessagingSettings(send_delay=0, batch_size=10, max_job_retries=1))
        await queue.enqueue(_stored(storage, "CODEA111", 1))
        client.send_errors = [RateLimitedError("FLOOD_WAIT_3"), RateLimitedError("FLOOD_WAIT_3")]

        await queue.drain()
        assert len(queue) == 1

        await queue.drain()
        assert len(queue) == 0
        assert queue.dropped_count == 1
        assert clock.sleeps == [3, 3]
        assert storage.delivered_calls == []

    asyncio.run(scenario())


def test_transient_failure_moves_job_to_tail() -> None:
    async def scenario() -> None:
        queue, client, storage, _ = _queue()
        await queue.enqueue(_stored(storage, "CODEA111", 1))
        await queue.enqueue(_stored(storage, "CODEB222", 2))
        client.send_errors = [TransientNetworkError("connection reset")]

        await queue.drain()
        assert [text for _, text in client.sent] == ["CODEB222 https://codeb222.com"]
        assert [job.message.message_id for job in queue.pending_jobs()] == [1]

        await queue.drain()
        assert [text for _, text in client.sent][-1] == "CODEA111 https://codea111.com"
        assert len(queue) == 0

    asyncio.run(scenario())


def test_unexpected_send_error_drops_job() -> None:
    async def scenario() -> None:
        queue, client, storage, _ = _queue()
        await queue.enqueue(_stored(storage, "CODEA111", 1))
        client.send_errors = [ValueError("chat not found")]

        await queue.drain()

        assert len(queue) == 0
        assert queue.dropped_count == 1
        assert storage.delivered_calls == []

    asyncio.run(scenario())


def test_enqueue_fans_out_to_active_resolvable_destinations() -> None:
    async def scenario() -> None:
        destinations = [
            DestinationConfig(id="g1", name="One", username="group1", message_template="{bonusCode}"),
            DestinationConfig(id="g2", name="Two", username="group2", message_template="{websiteUrl}"),
            DestinationConfig(id="g3", name="Off", username="group3", active=False),
            DestinationConfig(id="g4", name="Gone", username="missing"),
        ]
        queue, client, storage, _ = _queue(destinations=destinations)
        client.unresolvable.add("missing")

        added = await queue.enqueue(_stored(storage, "CODEA111", 1))

        assert added == 2
        await queue.drain()
        assert client.sent == [("group1", "CODEA111"), ("group2", "https://codea111.com")]

    asyncio.run(scenario())


def test_drain_connects_when_client_dropped() -> None:
    async def scenario() -> None:
        queue, client, storage, _ = _queue()
        await queue.enqueue(_stored(storage, "CODEA111", 1))
        client.connected = False

        await queue.drain()

        assert client.connect_calls == 1
        assert len(client.sent) == 1

    asyncio.run(scenario())


def test_is_pending_and_stop() -> None:
    async def scenario() -> None:
        queue, _, storage, _ = _queue()
        message = _stored(storage, "CODEA111", 1)
        await queue.enqueue(message)

        assert queue.is_pending(message.key)
        assert not queue.is_pending("promos#msg:99")

        await queue.stop()
        assert len(queue) == 0
        assert not queue.is_pending(message.key)
        assert queue.stats()["destinations"] == 0

    asyncio.run(scenario())


def test_send_test_message_bypasses_queue() -> None:
    async def scenario() -> None:
        queue, client, _, _ = _queue()
        await queue.send_test_message("g1", "hello")
        assert client.sent == [("group1", "hello")]
        assert len(queue) == 0

    asyncio.run(scenario())


class BlockingClient(FakeClient):
    """Holds every send until `release` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def send(self, destination, text: str) -> None:
        self.started.set()
        await self.release.wait()
        await super().send(destination, text)


def _blocking_queue(messaging: MessagingSettings = None):
    client = BlockingClient()
    storage = FakeStorage()
    clock = FakeClock()
    queue = DeliveryQueue(client, storage, make_config(messaging=messaging), clock)
    return queue, client, storage, clock


def test_second_drain_returns_while_first_is_sending() -> None:
    async def scenario() -> None:
        queue, client, storage, _ = _blocking_queue(MessagingSettings(send_delay=0, batch_size=1))
        await queue.enqueue(_stored(storage, "CODEA111", 1))
        await queue.enqueue(_stored(storage, "CODEB222", 2))

        first = asyncio.ensure_future(queue.drain())
        await client.started.wait()
        assert queue.draining

        await queue.drain()
        assert [job.message.message_id for job in queue.pending_jobs()] == [2]
        assert client.sent == []

        client.release.set()
        await first
        assert [text for _, text in client.sent] == ["CODEA111 https://codea111.com"]
        assert len(queue) == 1

    asyncio.run(scenario())


def test_stop_during_send_discards_the_rest_of_the_batch() -> None:
    async def scenario() -> None:
        queue, client, storage, _ = _blocking_queue()
        for index, code in enumerate(("CODEA111", "CODEB222", "CODEC333"), start=1):
            await queue.enqueue(_stored(storage, code, index))

        draining = asyncio.ensure_future(queue.drain())
        await client.started.wait()
        await queue.stop()
        assert len(queue) == 0
        assert not queue.is_pending("promos#msg:2")

        client.release.set()
        await draining

        assert [text for _, text in client.sent] == ["CODEA111 https://codea111.com"]
        assert len(queue) == 0

    asyncio.run(scenario())


def test_stop_during_rate_limited_send_does_not_requeue() -> None:
    async def scenario() -> None:
        queue, client, storage, clock = _blocking_queue()
        for index, code in enumerate(("CODEA111", "CODEB222", "CODEC333"), start=1):
            await queue.enqueue(_stored(storage, code, index))
        client.send_errors = [RateLimitedError("FLOOD_WAIT_3")]

        draining = asyncio.ensure_future(queue.drain())
        await client.started.wait()
        await queue.stop()
        client.release.set()
        await draining

        assert len(queue) == 0
        assert queue.pending_jobs() == []
        assert client.sent == []
        assert clock.sleeps == []

        await queue.drain()
        assert client.sent == []

    asyncio.run(scenario())


def test_storage_failure_after_send_is_not_a_dropped_job() -> None:
    class BrokenStorage(FakeStorage):
        def mark_delivered(self, message_pk: int) -> None:
            raise RuntimeError("database is locked")

    async def scenario() -> None:
        client = FakeClient()
        storage = BrokenStorage()
        queue = DeliveryQueue(client, storage, make_config(), FakeClock())
        await queue.enqueue(_stored(storage, "CODEA111", 1))
        await queue.enqueue(_stored(storage, "CODEB222", 2))

        await queue.drain()

        assert len(client.sent) == 2
        assert queue.sent_count == 2
        assert queue.dropped_count == 0
        assert len(queue) == 0

    asyncio.run(scenario())
