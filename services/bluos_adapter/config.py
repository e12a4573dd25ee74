"""
Shared configuration loader for the BluOS adapter.

Loads a single JSON config file per host.  Search order:
  1. $BLUOS_ADAPTER_CONFIG           (explicit override)
  2. /etc/bluos-adapter/config.json  (deployed install)
  3. config.json                     (CWD, handy for local dev)
  4. ../../config/default.json       (repo fallback)

Secrets (MQTT_USER, MQTT_PASSWORD) stay in environment variables.

Usage:
    from bluos_adapter.config import cfg

    namespace     = cfg("adapter", "namespace", default="bluos.0")
    poll_interval = cfg("adapter", "poll_interval", default=1.0)
    seed_devices  = cfg("devices", default=[])
"""

import json
import logging
import os

logger = logging.getLogger("bluos-adapter.config")

_config: dict | None = None

STORE_TYPES = ("memory", "mqtt")


def _search_paths() -> list[str]:
    paths = [
        "/etc/bluos-adapter/config.json",
        "config.json",
        os.path.join(os.path.dirname(__file__), "..", "..", "config", "default.json"),
    ]
    override = os.environ.get("BLUOS_ADAPTER_CONFIG")
    if override:
        paths.insert(0, override)
    return paths


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    adapter = config.get("adapter") or {}
    if not adapter.get("namespace"):
        logger.warning("Config %s: missing adapter.namespace, using 'bluos.0'", path)
    interval = adapter.get("poll_interval", 1.0)
    if not isinstance(interval, (int, float)) or interval <= 0:
        logger.warning("Config %s: adapter.poll_interval must be positive, got %r", path, interval)
    store = config.get("store") or {}
    store_type = store.get("type", "memory")
    if store_type not in STORE_TYPES:
        logger.warning("Config %s: unknown store.type '%s'", path, store_type)
    devices = config.get("devices")
    if devices is not None:
        if not isinstance(devices, list) or not all(
            isinstance(d, dict) and d.get("name") and "ip" in d for d in devices
        ):
            logger.warning("Config %s: 'devices' should be a list of {name, ip}", path)


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    for path in _search_paths():
        try:
            with open(path) as f:
                _config = json.load(f)
                logger.info("Config loaded from %s", path)
                _validate(_config, path)
                return _config
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s", path, e)
            continue

    logger.warning("No config.json found, using empty config")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("devices")                        → config["devices"]
    cfg("adapter", "namespace")           → config["adapter"]["namespace"]
    cfg("store", "type", default="memory") → config["store"]["type"] or "memory"
    """
    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        return val.get(key, default)
    return default


def reload_config():
    """Force re-read from disk (for testing or hot-reload)."""
    global _config
    _config = None
    return load_config()
