# Jukebox Now-Playing
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
NowPlayingBridge — the face the presentation layer talks to.

Owns one LiveSyncSession and one MediaActionGateway, and exposes them over
HTTP + WebSocket:

    GET  /ws               — now_playing feed (current view on connect, then
                             every update incl. display ticks)
    POST /player/pause     — \\
    POST /player/resume    —  |  gateway commands; a successful command
    POST /player/stop      —  |  triggers session.resync()
    POST /player/next      —  |
    POST /player/empty     — /
    POST /player/play      — {"mrl": ...} start a specific item
    GET  /player/status    — connection state, snapshot, position, queue

Command responses are ``{"status": "ok"}`` or
``{"status": "error", "message": ...}`` (HTTP 502).
"""

import asyncio
import json
import logging
import signal

from aiohttp import web

from .actions import ACTIONS, MediaActionGateway
from .lib.config import cfg, resolve_base_url, resolve_push_url
from .lib.transport import JukeboxClient, JukeboxError
from .live_sync import (
    POLL_INTERVAL,
    RECONNECT_DELAY,
    STALE_FACTOR,
    TICK_INTERVAL,
    LiveSyncSession,
    SyncUpdate,
)
from .models import format_clock

log = logging.getLogger(__name__)

DEFAULT_PORT = 8766


class NowPlayingBridge:
    def __init__(self, session: LiveSyncSession, gateway: MediaActionGateway,
                 port: int = DEFAULT_PORT, host: str = "0.0.0.0"):
        self.session = session
        self.gateway = gateway
        self.port = port
        self.host = host
        self.running: bool = False
        self._ws_clients: set[web.WebSocketResponse] = set()
        self._runner: web.AppRunner | None = None
        self._unsubscribe = None
        self._background: set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, base_url: str | None = None, ws_url: str | None = None,
                    port: int | None = None, poll_interval: float | None = None):
        """Build client, session and gateway from config.json + overrides."""
        base_url = resolve_base_url(base_url)
        client = JukeboxClient(base_url)
        session = LiveSyncSession(
            client,
            resolve_push_url(ws_url, base_url),
            poll_interval=poll_interval or cfg("sync", "poll_interval", default=POLL_INTERVAL),
            reconnect_delay=cfg("sync", "reconnect_delay", default=RECONNECT_DELAY),
            stale_factor=cfg("sync", "stale_factor", default=STALE_FACTOR),
            tick_interval=cfg("sync", "tick_interval", default=TICK_INTERVAL),
        )
        return cls(session, MediaActionGateway(client),
                   port=port or cfg("bridge", "port", default=DEFAULT_PORT))

    # ── App ──

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/ws", self._handle_ws)
        for action in ACTIONS:
            app.router.add_post(f"/player/{action}", self._command_handler(action))
        app.router.add_post("/player/play", self._handle_play)
        app.router.add_get("/player/status", self._handle_status)
        return app

    async def start_sync(self):
        """Start HTTP client + live sync without serving (used by tests too)."""
        self.running = True
        await self.session.client.start()
        self._unsubscribe = self.session.subscribe(self.broadcast_update)
        await self.session.start()

    async def start(self):
        await self.start_sync()
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        log.info("Now-playing bridge: HTTP + WebSocket on port %d", self.port)

    async def run(self):
        """Convenience entry-point: start + wait for signal + stop."""
        await self.start()
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop_event.set)
        try:
            await stop_event.wait()
        finally:
            await self.shutdown()

    async def shutdown(self):
        """Clean up resources."""
        self.running = False
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()

        await self.session.stop()
        await self.session.client.stop()

        for ws in list(self._ws_clients):
            await ws.close()
        self._ws_clients.clear()
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # ── WebSocket feed ──

    @staticmethod
    def _message(update: SyncUpdate) -> dict:
        data = update.to_dict()
        if update.position:
            data["display"] = {
                "current": format_clock(update.position.current_seconds),
                "duration": format_clock(update.position.duration_seconds),
                "percent": update.position.percent,
            }
        return {"type": "now_playing", "reason": update.reason, "data": data}

    async def broadcast_update(self, update: SyncUpdate):
        """Push an update to all connected WebSocket clients."""
        if not self._ws_clients:
            return

        message = json.dumps(self._message(update))
        disconnected = set()
        for ws in self._ws_clients:
            try:
                await ws.send_str(message)
            except Exception:
                disconnected.add(ws)
        self._ws_clients -= disconnected

        if update.reason != "tick":
            log.debug("Broadcast %s to %d clients", update.reason, len(self._ws_clients))

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        self._ws_clients.add(ws)
        log.info("WebSocket client connected (%d total)", len(self._ws_clients))

        try:
            await ws.send_json(self._message(self.session.view("client_connect")))
            # Push-only feed; client messages are ignored
            async for _msg in ws:
                pass
        finally:
            self._ws_clients.discard(ws)
            log.info("WebSocket client disconnected (%d remaining)", len(self._ws_clients))

        return ws

    # ── HTTP handlers ──

    def _cors_headers(self):
        return {
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
            "Access-Control-Allow-Headers": "Content-Type",
        }

    def _error(self, message: str, status: int = 502) -> web.Response:
        return web.json_response(
            {"status": "error", "message": message},
            status=status, headers=self._cors_headers())

    def _schedule_resync(self) -> asyncio.Task:
        task = asyncio.create_task(self.session.resync(), name="bridge-resync")
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _command_handler(self, action: str):
        async def handler(request: web.Request) -> web.Response:
            try:
                await self.gateway.dispatch(action)
            except JukeboxError as e:
                return self._error(str(e) or "Unable to run media action")
            self._schedule_resync()
            return web.json_response({"status": "ok"}, headers=self._cors_headers())
        return handler

    async def _handle_play(self, request: web.Request) -> web.Response:
        try:
            data = await request.json()
        except Exception:
            data = {}
        try:
            await self.session.client.play(data.get("mrl") if isinstance(data, dict) else None)
        except ValueError as e:
            return self._error(str(e), status=400)
        except JukeboxError as e:
            return self._error(str(e))
        self._schedule_resync()
        return web.json_response({"status": "ok"}, headers=self._cors_headers())

    async def _handle_status(self, request: web.Request) -> web.Response:
        session = self.session
        age = session.last_update_age
        status = session.view().to_dict()
        status.update({
            "attempt": session.attempt,
            "last_update_age": round(age, 1) if age is not None else None,
            "ws_clients": len(self._ws_clients),
        })
        return web.json_response(status, headers=self._cors_headers())
