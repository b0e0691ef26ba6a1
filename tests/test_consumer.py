"""Tests for QueueConsumer: ack on success, requeue on failure, event wake-up."""
import asyncio

import pytest

from broker.consumer import QueueConsumer
from config.settings import ConsumerConfig


class TestQueueConsumer:
    @pytest.mark.asyncio
    async def test_processes_and_acknowledges(self, orders):
        seen = []
        done = asyncio.Event()

        async def handle(message):
            seen.append(message.body)
            if len(seen) == 3:
                done.set()

        consumer = QueueConsumer(orders, "orders", handle, batch_size=2, concurrency=1)
        await consumer.start_background()
        for body in ["A", "B", "C"]:
            await orders.send_message("orders", body)

        await asyncio.wait_for(done.wait(), timeout=2)
        await consumer.stop()

        assert seen == ["A", "B", "C"]
        assert consumer.processed == 3
        assert consumer.failed == 0
        stats = (await orders.get_queue_attributes("orders")).stats
        assert stats.message_count == 0
        assert stats.total_acknowledged == 3

    @pytest.mark.asyncio
    async def test_wakes_on_send_without_polling(self, orders):
        done = asyncio.Event()
        consumer = QueueConsumer(orders, "orders", lambda m: done.set(), poll_interval=60)
        await consumer.start_background()
        for _ in range(3):
            await asyncio.sleep(0)  # let the consumer go idle

        await orders.send_message("orders", "A")
        await asyncio.wait_for(done.wait(), timeout=2)
        await consumer.stop()
        assert consumer.processed == 1

    @pytest.mark.asyncio
    async def test_failed_handler_requeues(self, orders):
        attempts = []
        done = asyncio.Event()

        def handle(message):
            attempts.append(message.receive_count)
            if len(attempts) == 1:
                raise RuntimeError("transient")
            done.set()

        consumer = QueueConsumer(orders, "orders", handle)
        await consumer.start_background()
        await orders.send_message("orders", "A")

        await asyncio.wait_for(done.wait(), timeout=2)
        await consumer.stop()

        assert attempts == [0, 1]
        assert consumer.failed == 1
        assert consumer.processed == 1
        stats = (await orders.get_queue_attributes("orders")).stats
        assert stats.total_requeued == 1
        assert stats.message_count == 0

    @pytest.mark.asyncio
    async def test_lost_lease_is_not_counted(self, orders, clock):
        calls = []
        done = asyncio.Event()

        async def handle(message):
            calls.append(message.id)
            if len(calls) == 1:
                # lease lapses and is reclaimed while the handler runs
                clock.advance(31)
                await orders.run_maintenance()
            else:
                done.set()

        consumer = QueueConsumer(orders, "orders", handle)
        await consumer.start_background()
        await orders.send_message("orders", "A")

        await asyncio.wait_for(done.wait(), timeout=2)
        await consumer.stop()

        assert len(calls) == 2
        assert consumer.processed == 1
        assert (await orders.get_queue_attributes("orders")).stats.message_count == 0

    @pytest.mark.asyncio
    async def test_missing_queue_stops_consumer(self, system):
        consumer = QueueConsumer(system, "ghost", lambda m: None)
        await asyncio.wait_for(consumer.start(), timeout=2)
        assert consumer.running is False

    @pytest.mark.asyncio
    async def test_deleted_queue_stops_consumer(self, orders):
        consumer = QueueConsumer(orders, "orders", lambda m: None, poll_interval=0.01)
        task = await consumer.start_background()
        await orders.delete_queue("orders")

        await asyncio.wait_for(task, timeout=2)
        assert consumer.running is False

    def test_from_settings(self):
        config = ConsumerConfig(batch_size=4, concurrency=8, poll_interval=0.5)
        consumer = QueueConsumer.from_settings(None, "orders", print, config)
        assert (consumer.batch_size, consumer.concurrency, consumer.poll_interval) == (4, 8, 0.5)

    def test_rejects_bad_limits(self):
        with pytest.raises(ValueError):
            QueueConsumer(None, "orders", print, concurrency=0)
