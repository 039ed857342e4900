"""
Shared configuration loader for the scrobbler.

Loads a single JSON config file.  Search order:
  1. $SCROBBLER_CONFIG                    (explicit path, e.g. --config)
  2. /etc/sonos-scrobbler/config.json     (system install)
  3. config.json                          (CWD — handy for local dev)
  4. ../config/default.json               (repo fallback)

Secrets (LASTFM_API_KEY, LASTFM_PASSWORD, etc.) stay in environment
variables, optionally loaded from a .env file next to the working directory.

Usage:
    from scrobbler.lib.config import cfg

    rooms         = cfg("player", "rooms", default=[])
    poll_interval = cfg("monitor", "poll_interval", default=5)
    window        = cfg("dedup", "window", default=3600)
"""

import json
import logging
import os

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_config: dict | None = None

_SEARCH_PATHS = [
    "/etc/sonos-scrobbler/config.json",
    "config.json",
    os.path.join(os.path.dirname(__file__), "..", "..", "config", "default.json"),
]

_POSITIVE_NUMBERS = {
    "monitor": ("poll_interval", "retry_delay", "max_retry_delay"),
    "discovery": ("search_timeout", "response_timeout",
                  "rediscover_search_timeout", "rediscover_response_timeout"),
    "dedup": ("window",),
}


def _search_paths() -> list[str]:
    explicit = os.environ.get("SCROBBLER_CONFIG")
    return ([explicit] if explicit else []) + _SEARCH_PATHS


def _section(config: dict, section: str, path: str) -> dict:
    values = config.get(section)
    if values is None:
        return {}
    if not isinstance(values, dict):
        logger.warning("Config %s: %s should be an object, got %r (ignored)",
                       path, section, values)
        return {}
    return values


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    sections = {name: _section(config, name, path)
                for name in (*_POSITIVE_NUMBERS, "player")}
    for section, keys in _POSITIVE_NUMBERS.items():
        values = sections[section]
        for key in keys:
            val = values.get(key)
            if val is not None and (not isinstance(val, (int, float)) or val <= 0):
                logger.warning("Config %s: %s.%s must be a positive number, got %r",
                               path, section, key, val)
    retries = sections["monitor"].get("max_retries")
    if retries is not None and (not isinstance(retries, int) or retries < 0):
        logger.warning("Config %s: monitor.max_retries must be a non-negative integer", path)
    rooms = sections["player"].get("rooms")
    if rooms is not None and not isinstance(rooms, list):
        logger.warning("Config %s: player.rooms should be a list of room names", path)


def load_env(path: str = ".env") -> None:
    """Load secrets from a .env file without overriding the real environment."""
    if load_dotenv(path, override=False):
        logger.debug("Loaded environment from %s", path)


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    for path in _search_paths():
        try:
            with open(path) as f:
                data = json.load(f)
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s", path, e)
            continue
        if not isinstance(data, dict):
            logger.error("Config %s must be a JSON object, got %s", path, type(data).__name__)
            continue
        _config = data
        logger.info("Config loaded from %s", path)
        _validate(_config, path)
        return _config

    logger.info("No config.json found — using built-in defaults")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("player")                     → config["player"]
    cfg("monitor", "max_retries")     → config["monitor"]["max_retries"]
    cfg("dedup", "window", default=3600)  → config["dedup"]["window"] or 3600
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
