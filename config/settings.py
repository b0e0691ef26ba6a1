"""
Configuration loader for the message broker.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class BrokerConfig:
    storage_type: str = "memory"            # "memory" | "file"
    storage_dir: str = "./data/queues"      # directory for file backend
    maintenance_interval: float = 60.0      # seconds between maintenance sweeps
    auto_start_maintenance: bool = True


@dataclass
class ConsumerConfig:
    batch_size: int = 1                     # messages per receive
    concurrency: int = 5                    # max handlers running at once
    poll_interval: float = 1.0              # max idle wait between receives


@dataclass
class QueueDefinition:
    """A queue declared in configuration and created at startup if missing."""
    name: str
    type: str = "fifo"
    options: dict[str, Any] = field(default_factory=dict)
    dead_letter_queue: str = ""


@dataclass
class Settings:
    app_name: str = "MessageConveyor"
    debug: bool = False
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    consumer: ConsumerConfig = field(default_factory=ConsumerConfig)
    queues: list[QueueDefinition] = field(default_factory=list)


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _as_bool(value: Any) -> bool:
    # env substitution leaves strings behind
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file. Missing file means all defaults."""
    if config_path is None:
        config_path = os.environ.get(
            "CONVEYOR_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if not Path(config_path).exists():
        return settings

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}
    raw = _process_values(raw)

    settings.app_name = raw.get("app_name", settings.app_name)
    settings.debug = _as_bool(raw.get("debug", settings.debug))

    if "broker" in raw:
        b = raw["broker"] or {}
        defaults = BrokerConfig()
        settings.broker = BrokerConfig(
            storage_type=b.get("storage_type", defaults.storage_type),
            storage_dir=b.get("storage_dir", defaults.storage_dir),
            maintenance_interval=float(b.get("maintenance_interval", defaults.maintenance_interval)),
            auto_start_maintenance=_as_bool(b.get("auto_start_maintenance", defaults.auto_start_maintenance)),
        )

    if "consumer" in raw:
        c = raw["consumer"] or {}
        defaults = ConsumerConfig()
        settings.consumer = ConsumerConfig(
            batch_size=int(c.get("batch_size", defaults.batch_size)),
            concurrency=int(c.get("concurrency", defaults.concurrency)),
            poll_interval=float(c.get("poll_interval", defaults.poll_interval)),
        )

    for q in raw.get("queues") or []:
        settings.queues.append(QueueDefinition(
            name=q["name"],
            type=q.get("type", "fifo"),
            options=q.get("options") or {},
            dead_letter_queue=q.get("dead_letter_queue", ""),
        ))

    return settings
