"""
HTTP transport for talking to the jukebox server.

One shared aiohttp session per client.  Every failure surfaces as a
JukeboxError subclass so callers only need to handle one family.

Usage:
    client = JukeboxClient("http://jukebox.local:8080")
    await client.start()
    snapshot = await client.fetch_now_playing()
    queue = await client.fetch_queue()
    status = await client.request("POST", "/api/media/pause")
    await client.stop()
"""

import asyncio
import json
import logging
from urllib.parse import unquote

import aiohttp

from ..models import QueueEntry, Snapshot
from ..normalizer import normalize
from ..queue import parse_queue
from .config import resolve_base_url

logger = logging.getLogger(__name__)

NOW_PLAYING_PATH = "/api/queue/playing"
QUEUE_PATH = "/api/queue/list"
PLAY_PATH = "/api/media/play"

# Live-poll target: no intermediary may answer from cache
NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store",
    "Pragma": "no-cache",
}


class JukeboxError(Exception):
    """Base class for every error raised talking to the server."""


class RequestError(JukeboxError):
    """Server answered with a non-success status."""

    def __init__(self, path: str, status: int):
        super().__init__(f"Request failed for {path} ({status})")
        self.path = path
        self.status = status


class DecodeError(JukeboxError):
    """Response body was not valid JSON."""


class NoCompatibleEndpointError(JukeboxError):
    """Every candidate endpoint for a command answered 404/405."""

    def __init__(self, action: str = ""):
        super().__init__("No compatible media endpoint found")
        self.action = action


class JukeboxClient:
    """Thin async client for the jukebox HTTP API."""

    def __init__(self, base_url: str | None = None, *, timeout: float = 5.0):
        self.base_url = resolve_base_url(base_url)
        self.timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def start(self):
        if self._session:
            return
        connector = aiohttp.TCPConnector(
            limit=10,
            ttl_dns_cache=300,
            keepalive_timeout=60,
            force_close=False,
        )
        self._session = aiohttp.ClientSession(
            connector=connector,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            headers={"User-Agent": "Jukebox-NowPlaying/0.1"},
        )
        logger.info("HTTP transport ready -> %s", self.base_url)

    async def stop(self):
        if self._session:
            await self._session.close()
            self._session = None
        logger.info("HTTP transport stopped")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *exc):
        await self.stop()

    def _require_session(self) -> aiohttp.ClientSession:
        if not self._session:
            raise JukeboxError("HTTP session not started")
        return self._session

    # --- Raw requests ----------------------------------------------------------

    async def request(self, method: str, path: str, *, json_body=None,
                      headers: dict | None = None) -> int:
        """Send a request and return only the status (body is discarded)."""
        session = self._require_session()
        try:
            async with session.request(
                method, self.url(path), json=json_body, headers=headers,
            ) as resp:
                await resp.read()
                logger.debug("%s %s -> HTTP %d", method, path, resp.status)
                return resp.status
        except asyncio.TimeoutError as e:
            raise JukeboxError(f"Timeout for {method} {path}") from e
        except aiohttp.ClientError as e:
            raise JukeboxError(f"{method} {path} failed: {e}") from e

    async def fetch_json(self, path: str, *, method: str = "GET", json_body=None,
                         no_cache: bool = False):
        """Request *path* and decode the JSON body.

        Non-2xx → RequestError.  204/205 and empty bodies → None.
        """
        session = self._require_session()
        headers = dict(NO_CACHE_HEADERS) if no_cache else None
        try:
            async with session.request(
                method, self.url(path), json=json_body, headers=headers,
            ) as resp:
                if resp.status < 200 or resp.status >= 300:
                    raise RequestError(path, resp.status)
                if resp.status in (204, 205):
                    return None
                body = await resp.read()
        except asyncio.TimeoutError as e:
            raise JukeboxError(f"Timeout for {method} {path}") from e
        except aiohttp.ClientError as e:
            raise JukeboxError(f"{method} {path} failed: {e}") from e

        if not body:
            return None
        try:
            return json.loads(body.decode("utf-8"))
        except (ValueError, RecursionError) as e:
            # ValueError: bad UTF-8, bad JSON, integers past the digit limit
            raise DecodeError(f"Invalid JSON from {path}: {e}") from e

    # --- Jukebox API -----------------------------------------------------------

    async def fetch_now_playing(self) -> Snapshot:
        payload = await self.fetch_json(NOW_PLAYING_PATH, no_cache=True)
        return normalize(payload)

    async def fetch_queue(self) -> list[QueueEntry]:
        payload = await self.fetch_json(QUEUE_PATH)
        return parse_queue(payload)

    async def play(self, mrl: str | None) -> None:
        """Start a specific item by MRL."""
        normalized = unquote(mrl or "").strip()
        if not normalized:
            raise ValueError("Missing song MRL for play action")
        await self.fetch_json(PLAY_PATH, method="POST", json_body={"mrl": normalized})
        logger.info("Play requested: %s", normalized)
