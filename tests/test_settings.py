"""Tests for YAML settings loading and building a system from settings."""
import os

import pytest

from broker.system import MessageQueueSystem
from config.settings import BrokerConfig, Settings, QueueDefinition, load_settings


CONFIG = """
app_name: test-broker
broker:
  storage_type: ${CONVEYOR_TEST_BACKEND}
  storage_dir: ${CONVEYOR_TEST_DIR}
  maintenance_interval: 5
  auto_start_maintenance: "false"
consumer:
  batch_size: 10
  concurrency: 2
queues:
  - name: automation
    type: priority
    options:
      max_receive_count: 2
    dead_letter_queue: automation-dlq
  - name: automation-dlq
"""


@pytest.fixture
def config_file(data_dir, monkeypatch):
    monkeypatch.setenv("CONVEYOR_TEST_BACKEND", "file")
    monkeypatch.setenv("CONVEYOR_TEST_DIR", os.path.join(data_dir, "queues"))
    path = os.path.join(data_dir, "settings.yaml")
    with open(path, "w") as f:
        f.write(CONFIG)
    return path


class TestLoadSettings:
    def test_loads_yaml_with_env_substitution(self, config_file, data_dir):
        settings = load_settings(config_file)

        assert settings.app_name == "test-broker"
        assert settings.broker.storage_type == "file"
        assert settings.broker.storage_dir == os.path.join(data_dir, "queues")
        assert settings.broker.maintenance_interval == 5.0
        assert settings.broker.auto_start_maintenance is False
        assert settings.consumer.batch_size == 10
        assert settings.consumer.concurrency == 2
        assert settings.consumer.poll_interval == 1.0

    def test_queue_definitions(self, config_file):
        settings = load_settings(config_file)
        automation, dlq = settings.queues

        assert automation.type == "priority"
        assert automation.options == {"max_receive_count": 2}
        assert automation.dead_letter_queue == "automation-dlq"
        assert dlq.type == "fifo"
        assert dlq.dead_letter_queue == ""

    def test_unset_env_var_left_as_is(self, config_file, monkeypatch):
        monkeypatch.delenv("CONVEYOR_TEST_BACKEND")
        settings = load_settings(config_file)
        assert settings.broker.storage_type == "${CONVEYOR_TEST_BACKEND}"

    def test_path_from_environment(self, config_file, monkeypatch):
        monkeypatch.setenv("CONVEYOR_CONFIG", config_file)
        assert load_settings().app_name == "test-broker"

    def test_missing_file_gives_defaults(self, data_dir):
        settings = load_settings(os.path.join(data_dir, "absent.yaml"))
        assert settings == Settings()
        assert settings.broker.storage_type == "memory"

    def test_bundled_defaults(self, monkeypatch):
        monkeypatch.delenv("CONVEYOR_CONFIG", raising=False)
        settings = load_settings()
        assert settings.app_name == "MessageConveyor"
        assert settings.broker.maintenance_interval == 60.0
        assert settings.queues == []


class TestSystemFromSettings:
    @pytest.mark.asyncio
    async def test_declared_queues_created(self, config_file, clock):
        settings = load_settings(config_file)
        mq = await MessageQueueSystem.from_settings(settings, clock=clock)

        assert mq.storage_type == "file"
        assert mq.maintenance_active is False
        assert await mq.list_queues() == ["automation", "automation-dlq"]
        attrs = await mq.get_queue_attributes("automation")
        assert attrs.options.max_receive_count == 2
        assert attrs.dead_letter_queue_name == "automation-dlq"
        await mq.send_message("automation", "job", priority=3)
        await mq.close()

        # second start finds the queues already persisted
        mq = await MessageQueueSystem.from_settings(settings, clock=clock)
        attrs = await mq.get_queue_attributes("automation")
        assert attrs.stats.available == 1
        await mq.close()

    @pytest.mark.asyncio
    async def test_memory_settings(self, clock):
        settings = Settings(
            broker=BrokerConfig(auto_start_maintenance=False),
            queues=[QueueDefinition(name="jobs", type="delayed")],
        )
        mq = await MessageQueueSystem.from_settings(settings, clock=clock)
        attrs = await mq.get_queue_attributes("jobs")
        assert attrs.type.value == "delayed"
        await mq.close()
