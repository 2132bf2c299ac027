"""
Shared configuration loader for the jukebox now-playing client.

Loads a single JSON config file.  Search order:
  1. $JUKEBOX_CONFIG               (explicit path)
  2. /etc/jukebox/config.json      (deployed)
  3. config.json                   (CWD — handy for local dev)

Server addresses can also come from environment variables
(JUKEBOX_BASE_URL, JUKEBOX_WS_URL), which win over the file.

Usage:
    from nowplaying.lib.config import cfg

    base_url      = cfg("server", "base_url", default="http://localhost:8080")
    poll_interval = cfg("sync", "poll_interval", default=5)
    sync          = cfg("sync")  # returns the whole dict
"""

import json
import logging
import os
from urllib.parse import urlsplit, urlunsplit

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8080"
PUSH_PATH = "/api/ws/current-song"

_config: dict | None = None


def _search_paths() -> list[str]:
    paths = []
    explicit = os.environ.get("JUKEBOX_CONFIG")
    if explicit:
        paths.append(explicit)
    paths += [
        "/etc/jukebox/config.json",
        "config.json",
    ]
    return paths


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    server = config.get("server") or {}
    base_url = server.get("base_url")
    if not base_url:
        logger.warning("Config %s: missing server.base_url — using %s", path, DEFAULT_BASE_URL)
    else:
        parts = urlsplit(base_url)
        if not parts.scheme or not parts.netloc:
            logger.warning("Config %s: server.base_url '%s' has no scheme/host", path, base_url)
    sync = config.get("sync") or {}
    for key in ("poll_interval", "reconnect_delay", "tick_interval"):
        val = sync.get(key)
        if val is not None and (not isinstance(val, (int, float)) or val <= 0):
            logger.warning("Config %s: sync.%s must be a positive number (got %r)", path, key, val)


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

    logger.warning("No config.json found — using empty config")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("server")                       → config["server"]
    cfg("server", "base_url")           → config["server"]["base_url"]
    cfg("sync", "poll_interval", default=5)  → config["sync"]["poll_interval"] or 5
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


def resolve_base_url(override: str | None = None) -> str:
    """Base URL of the jukebox HTTP API (no trailing slash)."""
    url = (override
           or os.environ.get("JUKEBOX_BASE_URL")
           or cfg("server", "base_url", default=DEFAULT_BASE_URL))
    return url.rstrip("/")


def resolve_push_url(override: str | None = None, base_url: str | None = None) -> str:
    """Push channel URL: explicit override first, else derived from the base URL.

    Derivation keeps the host and port and maps https → wss, anything else → ws.
    """
    explicit = override or os.environ.get("JUKEBOX_WS_URL") or cfg("server", "ws_url")
    if explicit:
        return explicit

    parts = urlsplit(base_url or resolve_base_url())
    scheme = "wss" if parts.scheme == "https" else "ws"
    return urlunsplit((scheme, parts.netloc, PUSH_PATH, "", ""))
