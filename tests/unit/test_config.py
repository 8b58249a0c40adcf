"""Tests for configuration loading."""

import pytest
from pydantic import ValidationError

from journeyflow.config import IdempotencyConfig, load_config
from journeyflow.idempotency import InMemoryIdempotencyStore, get_idempotency_store
from journeyflow.transports import get_transport
from journeyflow.transports.inmemory import InMemoryTransport
from journeyflow.transports.redis import RedisTransport


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "JOURNEYFLOW_CONFIG",
        "JOURNEYFLOW_DATABASE_URL",
        "DATABASE_URL",
        "JOURNEYFLOW_TRANSPORT",
    ):
        monkeypatch.delenv(name, raising=False)


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: testhost
    port: 1234
queues:
  execute_step: custom:execute
engine:
  max_attempts: 3
"""
    )
    monkeypatch.setenv("JOURNEYFLOW_CONFIG", str(config_path))

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.queues.execute_step == "custom:execute"
    assert config.queues.delayed_steps == "journey:delayed-steps"
    assert config.engine.max_attempts == 3


def test_missing_config_file_gives_defaults(tmp_path):
    config = load_config(str(tmp_path / "absent.yaml"))
    assert config.transport.backend == "inmemory"
    assert config.idempotency.ttl_seconds == 7 * 86400
    assert config.database_url is None


def test_database_url_env_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite:///from-file.db\n")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///from-env.db")

    assert load_config(str(config_path)).database_url == "sqlite:///from-env.db"

    monkeypatch.setenv("JOURNEYFLOW_DATABASE_URL", "sqlite:///preferred.db")
    assert load_config(str(config_path)).database_url == "sqlite:///preferred.db"


def test_delay_ttl_must_cover_a_week():
    with pytest.raises(ValidationError):
        IdempotencyConfig(delay_ttl_seconds=3600)


def test_get_transport_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("JOURNEYFLOW_CONFIG", str(config_path))

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380


def test_transport_env_override(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("JOURNEYFLOW_TRANSPORT", "inmemory")
    assert isinstance(get_transport(), InMemoryTransport)

    with pytest.raises(ValueError):
        get_transport("carrier-pigeon")


def test_default_idempotency_store_is_in_memory(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert isinstance(get_idempotency_store(), InMemoryIdempotencyStore)
