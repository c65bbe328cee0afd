"""Settings loader: INI file first, ``SMD_*`` environment variables as fallbacks."""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .logger import get_logger

logger = get_logger("MessageDispatcher.config")

ENV_PREFIX = "SMD_"
DEFAULT_CONFIG_PATH = "config.ini"

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


class SettingsLoader:
    """Resolve typed settings from a config file and the environment.

    Config file sections/keys:
      [storage] db_path
      [server] host, port
      [webhook] url, auth_key, timeout_seconds
      [redis] host, port, password, db
      [dispatch] interval_seconds, batch_size, start_active, cache_ttl_seconds
      [logging] level, delivery_activity
    """

    def __init__(self, config_path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None):
        self.environ = os.environ if environ is None else environ
        self.config_path = Path(config_path or self.environ.get(f"{ENV_PREFIX}CONFIG", DEFAULT_CONFIG_PATH))
        self.parser = configparser.ConfigParser(interpolation=None)
        if self.config_path.exists():
            self.parser.read(self.config_path)
            logger.debug("Loaded settings from %s", self.config_path)
        else:
            logger.debug("No config file at %s, using defaults and environment variables", self.config_path)

    def env(self, name: str) -> Optional[str]:
        return self.environ.get(f"{ENV_PREFIX}{name}")

    def get(self, section: str, option: str, env: str, default: Optional[str] = None) -> Optional[str]:
        if self.parser.has_option(section, option):
            return self.parser.get(section, option)
        value = self.env(env)
        if value is None or value == "":
            return default
        return value

    def get_int(self, section: str, option: str, env: str, default: int) -> int:
        value = self.get(section, option, env)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise ValueError(f"Invalid integer for [{section}] {option}: {value!r}") from exc

    def get_float(self, section: str, option: str, env: str, default: float) -> float:
        value = self.get(section, option, env)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError as exc:
            raise ValueError(f"Invalid number for [{section}] {option}: {value!r}") from exc

    def get_bool(self, section: str, option: str, env: str, default: bool) -> bool:
        value = self.get(section, option, env)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in TRUE_VALUES:
            return True
        if normalized in FALSE_VALUES:
            return False
        return default

    def load(self) -> Dict[str, Any]:
        settings: Dict[str, Any] = {
            "db_path": self.get("storage", "db_path", "DB_PATH", "/data/message_dispatcher.db"),
            "http_host": self.get("server", "host", "HOST", "0.0.0.0"),
            "http_port": self.get_int("server", "port", "PORT", 8080),
            "webhook_url": self.get("webhook", "url", "WEBHOOK_URL"),
            "webhook_auth_key": self.get("webhook", "auth_key", "WEBHOOK_AUTH_KEY"),
            "webhook_timeout": self.get_float("webhook", "timeout_seconds", "WEBHOOK_TIMEOUT", 30.0),
            "redis_host": self.get("redis", "host", "REDIS_HOST"),
            "redis_port": self.get_int("redis", "port", "REDIS_PORT", 6379),
            "redis_password": self.get("redis", "password", "REDIS_PASSWORD"),
            "redis_db": self.get_int("redis", "db", "REDIS_DB", 0),
            "interval_seconds": self.get_float("dispatch", "interval_seconds", "DISPATCH_INTERVAL", 120.0),
            "batch_size": self.get_int("dispatch", "batch_size", "BATCH_SIZE", 2),
            "start_active": self.get_bool("dispatch", "start_active", "START_ACTIVE", False),
            "cache_ttl_seconds": self.get_int("dispatch", "cache_ttl_seconds", "CACHE_TTL", 24 * 3600),
            "log_level": (self.get("logging", "level", "LOG_LEVEL", "INFO") or "INFO").upper(),
            "log_delivery_activity": self.get_bool("logging", "delivery_activity", "LOG_DELIVERY_ACTIVITY", False),
        }

        db_path = settings["db_path"]
        if isinstance(db_path, str) and db_path != ":memory:" and not db_path.startswith("sqlite:"):
            settings["db_path"] = os.path.expanduser(db_path)
        for key in ("webhook_url", "webhook_auth_key", "redis_host", "redis_password"):
            value = settings.get(key)
            if isinstance(value, str):
                settings[key] = value.strip() or None
        if settings["batch_size"] < 1:
            raise ValueError("[dispatch] batch_size must be at least 1")
        if settings["interval_seconds"] <= 0:
            raise ValueError("[dispatch] interval_seconds must be positive")
        return settings


def load_settings(config_path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Convenience function returning the resolved settings dictionary.

    Environment variables (all prefixed with SMD_):
      SMD_CONFIG - Path to config.ini file (default: config.ini)
      SMD_LOG_LEVEL - Logging level (default: INFO)
      SMD_DB_PATH - Database path (default: /data/message_dispatcher.db)
      SMD_HOST / SMD_PORT - Server address (default: 0.0.0.0:8080)
      SMD_WEBHOOK_URL - Delivery webhook endpoint
      SMD_WEBHOOK_AUTH_KEY - Value of the x-ins-auth-key header
      SMD_WEBHOOK_TIMEOUT - Webhook timeout in seconds (default: 30)
      SMD_REDIS_HOST / _PORT / _PASSWORD / _DB - Redis metadata cache
      SMD_DISPATCH_INTERVAL - Seconds between cycles (default: 120)
      SMD_BATCH_SIZE - Messages per cycle (default: 2)
      SMD_START_ACTIVE - Start the loop on boot (default: False)
      SMD_CACHE_TTL - Metadata cache expiry in seconds (default: 86400)
      SMD_LOG_DELIVERY_ACTIVITY - Log every delivery attempt (default: False)
    """
    return SettingsLoader(config_path, environ).load()
