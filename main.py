import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from async_message_dispatcher.api import create_app
from async_message_dispatcher.cache import MemoryMetadataCache, RedisMetadataCache
from async_message_dispatcher.config_loader import load_settings
from async_message_dispatcher.core import MessageDispatcher
from async_message_dispatcher.delivery import WebhookClient
from async_message_dispatcher.persistence import MessageRepository
from async_message_dispatcher.sql import create_adapter

# Configure logging level from environment
log_level = os.getenv("SMD_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='[%(asctime)s] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True  # Force reconfiguration to avoid duplicate handlers
)


def build_dispatcher(settings: dict[str, object]) -> MessageDispatcher:
    """Wire storage, webhook and cache into a dispatcher from resolved settings."""
    redis_host = settings.get("redis_host")
    if redis_host:
        cache = RedisMetadataCache.from_settings(
            host=str(redis_host),
            port=int(settings["redis_port"]),
            password=settings.get("redis_password"),
            db=int(settings["redis_db"]),
            ttl_seconds=int(settings["cache_ttl_seconds"]),
        )
    else:
        logging.getLogger("MessageDispatcher").warning("No Redis host configured, using in-memory delivery cache")
        cache = MemoryMetadataCache(ttl_seconds=int(settings["cache_ttl_seconds"]))

    return MessageDispatcher(
        repository=MessageRepository(create_adapter(str(settings["db_path"]))),
        channel=WebhookClient(
            str(settings.get("webhook_url") or ""),
            settings.get("webhook_auth_key"),
            timeout=float(settings["webhook_timeout"]),
        ),
        cache=cache,
        interval_seconds=float(settings["interval_seconds"]),
        batch_size=int(settings["batch_size"]),
        log_delivery_activity=bool(settings.get("log_delivery_activity")),
    )


if __name__ == "__main__":
    settings = load_settings()
    logging.getLogger().setLevel(getattr(logging, str(settings["log_level"]), logging.INFO))
    # Create service instance but don't start it yet - let uvicorn handle the event loop
    service = build_dispatcher(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.init()
        if settings.get("start_active"):
            await service.start()
        yield
        await service.close()

    app = create_app(service, lifespan=lifespan)

    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
