import pytest

from async_message_dispatcher.cache import MemoryMetadataCache, RedisMetadataCache
from async_message_dispatcher.config_loader import load_settings
from main import build_dispatcher


def make_settings(tmp_path, **env):
    environ = {
        "SMD_DB_PATH": str(tmp_path / "main.db"),
        "SMD_WEBHOOK_URL": "https://hooks.example.com/send",
        **env,
    }
    return load_settings(str(tmp_path / "missing.ini"), environ=environ)


def test_build_dispatcher_without_redis_uses_memory_cache(tmp_path):
    dispatcher = build_dispatcher(make_settings(tmp_path, SMD_BATCH_SIZE="3"))
    assert isinstance(dispatcher.cache, MemoryMetadataCache)
    assert dispatcher.batch_size == 3
    assert dispatcher.interval_seconds == 120.0
    assert dispatcher.channel.url == "https://hooks.example.com/send"


def test_build_dispatcher_with_redis(tmp_path):
    dispatcher = build_dispatcher(make_settings(tmp_path, SMD_REDIS_HOST="localhost", SMD_CACHE_TTL="60"))
    assert isinstance(dispatcher.cache, RedisMetadataCache)
    assert dispatcher.cache.ttl_seconds == 60


def test_build_dispatcher_requires_webhook_url(tmp_path):
    settings = make_settings(tmp_path)
    settings["webhook_url"] = None
    with pytest.raises(ValueError):
        build_dispatcher(settings)
