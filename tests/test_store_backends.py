"""
Tests for all queue store backends.

Covers:
  - InMemoryQueueStore
  - FileQueueStore (JSON snapshots, atomic writes)
  - Store factory
  - Restart round-trip of a file-backed MessageQueueSystem
"""
import json
import os

import pytest

from broker.errors import QueueValidationError, StorageError
from broker.system import MessageQueueSystem
from models.schemas import MessageStatus, QueueType


def sample_document(*bodies):
    return {
        "type": "fifo",
        "options": {"visibility_timeout_seconds": 30},
        "deadLetterQueueName": None,
        "nextSequence": len(bodies) + 1,
        "stats": {"total_sent": len(bodies)},
        "messages": [
            {
                "id": f"m{i}",
                "body": body,
                "bodyEncoding": "text",
                "attributes": {},
                "enqueueSequence": i,
                "priority": 0,
                "availableAt": 100.0,
                "visibilityDeadline": None,
                "receiveCount": 0,
                "status": "Available",
                "sentAt": 100.0,
            }
            for i, body in enumerate(bodies, start=1)
        ],
    }


# ──────────────────────────────────────────────────────────────
#  InMemoryQueueStore
# ──────────────────────────────────────────────────────────────

class TestInMemoryQueueStore:
    @pytest.fixture
    def store(self):
        from storage.store_memory import InMemoryQueueStore
        return InMemoryQueueStore()

    @pytest.mark.asyncio
    async def test_save_and_load(self, store):
        await store.save_queue("orders", sample_document("A", "B"))
        doc = await store.load_queue("orders")
        assert [m["body"] for m in doc["messages"]] == ["A", "B"]

    @pytest.mark.asyncio
    async def test_load_missing(self, store):
        assert await store.load_queue("nope") is None

    @pytest.mark.asyncio
    async def test_documents_are_copied(self, store):
        doc = sample_document("A")
        await store.save_queue("orders", doc)
        doc["messages"].clear()

        loaded = await store.load_queue("orders")
        loaded["messages"].clear()
        assert len((await store.load_queue("orders"))["messages"]) == 1

    @pytest.mark.asyncio
    async def test_list_and_delete(self, store):
        await store.save_queue("orders", sample_document())
        await store.save_queue("payments", sample_document())

        assert await store.list_queues() == ["orders", "payments"]
        assert await store.list_queues("pay") == ["payments"]
        assert await store.delete_queue("orders") is True
        assert await store.delete_queue("orders") is False
        assert await store.list_queues() == ["payments"]

    @pytest.mark.asyncio
    async def test_is_available(self, store):
        assert await store.is_available() is True


# ──────────────────────────────────────────────────────────────
#  FileQueueStore
# ──────────────────────────────────────────────────────────────

class TestFileQueueStore:
    @pytest.fixture
    def store(self, data_dir):
        from storage.store_file import FileQueueStore
        return FileQueueStore(data_dir=data_dir)

    @pytest.mark.asyncio
    async def test_save_and_load(self, store):
        await store.save_queue("orders", sample_document("A", "B"))
        doc = await store.load_queue("orders")
        assert doc["type"] == "fifo"
        assert [m["id"] for m in doc["messages"]] == ["m1", "m2"]

    @pytest.mark.asyncio
    async def test_atomic_write_leaves_no_temp_file(self, store, data_dir):
        await store.save_queue("orders", sample_document("A"))
        await store.save_queue("orders", sample_document("A", "B"))

        assert sorted(os.listdir(data_dir)) == ["orders.json"]
        with open(os.path.join(data_dir, "orders.json")) as f:
            assert len(json.load(f)["messages"]) == 2

    @pytest.mark.asyncio
    async def test_names_map_inside_data_dir(self, store, data_dir):
        await store.save_queue("../escape/orders", sample_document("A"))

        files = os.listdir(data_dir)
        assert len(files) == 1
        assert "/" not in files[0]
        assert await store.list_queues() == ["../escape/orders"]
        assert (await store.load_queue("../escape/orders"))["messages"][0]["body"] == "A"

    @pytest.mark.asyncio
    async def test_list_with_prefix(self, store):
        for name in ["orders", "orders-dlq", "payments"]:
            await store.save_queue(name, sample_document())
        assert await store.list_queues("orders") == ["orders", "orders-dlq"]

    @pytest.mark.asyncio
    async def test_delete(self, store, data_dir):
        await store.save_queue("orders", sample_document("A"))
        assert await store.delete_queue("orders") is True
        assert await store.delete_queue("orders") is False
        assert os.listdir(data_dir) == []

    @pytest.mark.asyncio
    async def test_corrupt_file_raises_storage_error(self, store, data_dir):
        with open(os.path.join(data_dir, "broken.json"), "w") as f:
            f.write("{not json")
        with pytest.raises(StorageError):
            await store.load_queue("broken")

    @pytest.mark.asyncio
    async def test_unserializable_document(self, store):
        with pytest.raises(StorageError):
            await store.save_queue("orders", {"messages": [object()]})

    @pytest.mark.asyncio
    async def test_is_available(self, store):
        assert await store.is_available() is True


# ──────────────────────────────────────────────────────────────
#  Store factory
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:
    def test_default_is_memory(self):
        from storage import create_store, InMemoryQueueStore
        assert isinstance(create_store(), InMemoryQueueStore)

    def test_create_file_store(self, data_dir):
        from storage import create_store, FileQueueStore
        store = create_store("file", {"data_dir": data_dir})
        assert isinstance(store, FileQueueStore)
        assert str(store.data_dir) == data_dir

    def test_unknown_backend(self):
        from storage import create_store
        with pytest.raises(QueueValidationError):
            create_store("redis")


# ──────────────────────────────────────────────────────────────
#  Restart round-trip
# ──────────────────────────────────────────────────────────────

class TestRestart:
    def make_system(self, data_dir, clock):
        return MessageQueueSystem(
            storage_type="file",
            storage_options={"data_dir": data_dir},
            auto_start=False,
            clock=clock,
        )

    @pytest.mark.asyncio
    async def test_groups_and_deduplication_survive_restart(self, data_dir, clock):
        mq = await self.make_system(data_dir, clock).initialize()
        await mq.create_queue("orders", {"content_based_deduplication": True})
        first = await mq.send_message("orders", "A", message_group_id="g1")
        await mq.send_message("orders", "B", message_group_id="g2")
        await mq.close()

        mq = await self.make_system(data_dir, clock).initialize()
        assert (await mq.get_queue_attributes("orders")).options.content_based_deduplication
        assert await mq.send_message("orders", "A", message_group_id="g1") == first

        [msg] = await mq.receive_messages("orders", message_group_id="g2")
        assert msg.body == "B"
        assert msg.message_group_id == "g2"
        assert msg.deduplication_id
        await mq.close()

    @pytest.mark.asyncio
    async def test_contents_and_order_survive_restart(self, data_dir, clock):
        mq = await self.make_system(data_dir, clock).initialize()
        await mq.create_queue("jobs", {"type": "priority", "max_receive_count": 4})
        await mq.create_queue("orders")
        await mq.create_queue("later", {"type": "delayed"})
        await mq.set_dead_letter_queue("jobs", "orders")
        await mq.send_message("jobs", "low", priority=1)
        await mq.send_message("jobs", "high", priority=9)
        await mq.send_message("jobs", "mid", priority=5)
        await mq.send_message("jobs", "mid2", priority=5)
        await mq.send_message("orders", b"\x01\x02")
        await mq.send_message("orders", "second")
        await mq.send_message("later", "wait", delay_seconds=60)
        [leased] = await mq.receive_messages("orders")
        before = {name: (await mq.get_queue_attributes(name)).stats for name in ["jobs", "orders", "later"]}
        await mq.close()

        mq = await self.make_system(data_dir, clock).initialize()
        assert await mq.list_queues() == ["jobs", "later", "orders"]
        for name, stats in before.items():
            assert (await mq.get_queue_attributes(name)).stats == stats

        attrs = await mq.get_queue_attributes("jobs")
        assert attrs.type == QueueType.PRIORITY
        assert attrs.options.max_receive_count == 4
        assert attrs.dead_letter_queue_name == "orders"

        got = await mq.receive_messages("jobs", max_messages=10)
        assert [m.body for m in got] == ["high", "mid", "mid2", "low"]

        # the lease taken before shutdown is still held
        assert [m.body for m in await mq.receive_messages("orders")] == ["second"]
        clock.advance(31)
        await mq.run_maintenance()
        [again] = await mq.receive_messages("orders")
        assert again.id == leased.id
        assert again.body == b"\x01\x02"
        assert again.receive_count == 1

        assert await mq.receive_messages("later") == []
        clock.advance(30)
        assert [m.body for m in await mq.receive_messages("later")] == ["wait"]
        await mq.close()

    @pytest.mark.asyncio
    async def test_sequence_continues_after_restart(self, data_dir, clock):
        mq = await self.make_system(data_dir, clock).initialize()
        await mq.create_queue("orders")
        await mq.send_message("orders", "A")
        await mq.send_message("orders", "B")
        await mq.purge_queue("orders")
        await mq.close()

        mq = await self.make_system(data_dir, clock).initialize()
        await mq.send_message("orders", "C")
        [msg] = await mq.receive_messages("orders")
        assert msg.enqueue_sequence == 3
        await mq.close()

    @pytest.mark.asyncio
    async def test_interrupted_dead_letter_move_resumes(self, data_dir, clock):
        mq = await self.make_system(data_dir, clock).initialize()
        await mq.create_queue("orders")
        await mq.create_queue("orders-dlq")
        await mq.set_dead_letter_queue("orders", "orders-dlq")
        msg_id = await mq.send_message("orders", "A")
        await mq.close()

        # simulate a crash between marking and moving
        path = os.path.join(data_dir, "orders.json")
        with open(path) as f:
            doc = json.load(f)
        doc["messages"][0]["status"] = MessageStatus.DEAD_LETTERED.value
        with open(path, "w") as f:
            json.dump(doc, f)

        mq = await self.make_system(data_dir, clock).initialize()
        assert await mq.receive_messages("orders") == []

        results = await mq.run_maintenance()
        assert results["orders"]["dead_lettered"] == 1
        [dead] = await mq.receive_messages("orders-dlq")
        assert dead.id == msg_id
        assert dead.attributes["original_queue"] == "orders"
        assert (await mq.get_queue_attributes("orders")).stats.message_count == 0
        await mq.close()

    @pytest.mark.asyncio
    async def test_corrupt_snapshot_fails_startup(self, data_dir, clock):
        with open(os.path.join(data_dir, "broken.json"), "w") as f:
            json.dump({"type": "stack", "messages": []}, f)

        with pytest.raises(StorageError):
            await self.make_system(data_dir, clock).initialize()

    @pytest.mark.asyncio
    async def test_deleted_queue_is_gone_after_restart(self, data_dir, clock):
        mq = await self.make_system(data_dir, clock).initialize()
        await mq.create_queue("orders")
        await mq.create_queue("scratch")
        await mq.delete_queue("scratch")
        await mq.close()

        mq = await self.make_system(data_dir, clock).initialize()
        assert await mq.list_queues() == ["orders"]
        assert not mq.has_queue("scratch")
        await mq.close()
