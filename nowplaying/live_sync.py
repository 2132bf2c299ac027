# Jukebox Now-Playing
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
LiveSyncSession — keeps a fresh (song, progress) view of the jukebox.

The push channel (WebSocket) is the preferred source.  Around it run three
independent timers:

  staleness watchdog  every poll_interval; when nothing was applied for
                      stale_factor × poll_interval, poll the now-playing
                      endpoint, apply the result and report "fallback"
  queue refresh       every poll_interval regardless of push health (the
                      push channel only carries now-playing data)
  display tick        every tick_interval; republishes the interpolated
                      position, never touches the network

Connection states:

    connecting ──open──▶ connected ──close──▶ reconnecting
        ▲                                          │
        └──────────── reconnect_delay ─────────────┘

The watchdog may stamp "fallback" from any state.  A push message always
puts the state back to "connected".

Whatever arrives last wins, push or poll.  Each push attempt gets a number;
a continuation only commits while the session is running and its attempt is
still current, so nothing from a superseded attempt or a stopped session is
applied.

Usage:
    session = LiveSyncSession(client, push_url)
    unsubscribe = session.subscribe(on_update)
    await session.start()
    ...
    await session.stop()
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Callable

import websockets

from .interpolator import ProgressInterpolator
from .lib.transport import JukeboxClient, JukeboxError
from .models import EMPTY_SNAPSHOT, ConnectionState, Progress, QueueEntry, Snapshot
from .normalizer import normalize, unwrap_envelope
from .queue import upcoming as upcoming_entries

log = logging.getLogger(__name__)

POLL_INTERVAL = 5.0      # seconds — fallback/queue poll period
RECONNECT_DELAY = 3.0    # seconds — flat, no backoff growth
STALE_FACTOR = 3         # stale after STALE_FACTOR × POLL_INTERVAL without an update
TICK_INTERVAL = 1.0      # seconds — display refresh
OPEN_TIMEOUT = 10        # seconds — push handshake


def connect_push_channel(url: str):
    """Open the push channel; system proxy settings are not applied."""
    return websockets.connect(url, open_timeout=OPEN_TIMEOUT, proxy=None)


@dataclass(frozen=True)
class SyncUpdate:
    """What subscribers receive on every change (and every display tick)."""

    reason: str
    snapshot: Snapshot
    connection_state: ConnectionState
    position: Progress | None = None
    queue: tuple[QueueEntry, ...] = ()
    upcoming: tuple[QueueEntry, ...] = ()

    def to_dict(self) -> dict:
        return {
            "reason": self.reason,
            "snapshot": self.snapshot.to_dict(),
            "connectionState": self.connection_state.value,
            "position": self.position.to_dict() if self.position else None,
            "queue": [entry.to_dict() for entry in self.queue],
            "upcoming": [entry.to_dict() for entry in self.upcoming],
        }


def decode_push_message(message):
    """Text, bytes or an already-parsed object → mapping, or None if unusable."""
    if isinstance(message, (bytes, bytearray, memoryview)):
        try:
            message = bytes(message).decode("utf-8")
        except UnicodeDecodeError:
            return None
    if isinstance(message, str):
        try:
            message = json.loads(message)
        except (ValueError, RecursionError):
            return None
    if not isinstance(message, Mapping):
        return None
    return message


class LiveSyncSession:
    def __init__(
        self,
        client: JukeboxClient,
        push_url: str,
        *,
        poll_interval: float = POLL_INTERVAL,
        reconnect_delay: float = RECONNECT_DELAY,
        stale_factor: float = STALE_FACTOR,
        tick_interval: float = TICK_INTERVAL,
        connect: Callable | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.push_url = push_url
        self.poll_interval = poll_interval
        self.reconnect_delay = reconnect_delay
        self.stale_factor = stale_factor
        self.tick_interval = tick_interval
        self._connect = connect or connect_push_channel
        self._clock = clock

        self.running: bool = False
        self.interpolator = ProgressInterpolator(clock=clock)
        self._state = ConnectionState.CONNECTING
        self._snapshot: Snapshot = EMPTY_SNAPSHOT
        self._queue: tuple[QueueEntry, ...] = ()
        self._last_update_at: float | None = None
        self._has_connected = False
        self._attempt = 0
        self._ws = None
        self._subscribers: list[Callable] = []
        self._tasks: set[asyncio.Task] = set()

    # ── Read-only view ──

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    @property
    def queue(self) -> tuple[QueueEntry, ...]:
        return self._queue

    @property
    def upcoming(self) -> list[QueueEntry]:
        return upcoming_entries(self._queue, self._snapshot.song)

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def last_update_age(self) -> float | None:
        if self._last_update_at is None:
            return None
        return self._clock() - self._last_update_at

    def is_stale(self) -> bool:
        age = self.last_update_age
        return age is None or age > self.stale_factor * self.poll_interval

    def view(self, reason: str = "status") -> SyncUpdate:
        return SyncUpdate(
            reason=reason,
            snapshot=self._snapshot,
            connection_state=self._state,
            position=self.interpolator.position(),
            queue=self._queue,
            upcoming=tuple(self.upcoming),
        )

    # ── Subscribers ──

    def subscribe(self, callback: Callable) -> Callable[[], None]:
        """Register ``callback(update)`` (sync or async).  Returns an unsubscribe."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def _publish(self, reason: str):
        if not self.running or not self._subscribers:
            return
        update = self.view(reason)
        for callback in list(self._subscribers):
            try:
                result = callback(update)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error("Subscriber error (%s): %s", reason, e)

    # ── Lifecycle ──

    async def start(self):
        if self.running:
            return
        self.running = True
        self._state = ConnectionState.CONNECTING
        log.info("Live sync starting (push=%s, poll=%.1fs)", self.push_url, self.poll_interval)
        self._spawn(self._seed(), "seed")
        self._spawn(self._push_loop(), "push")
        self._spawn(self._watchdog_loop(), "watchdog")
        self._spawn(self._queue_loop(), "queue")
        self._spawn(self._tick_loop(), "tick")

    async def stop(self):
        """Close the push channel and cancel every timer.  Idempotent."""
        if not self.running and not self._tasks:
            return
        self.running = False
        self._attempt += 1

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                log.debug("Error closing push channel: %s", e)

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        log.info("Live sync stopped")

    async def run(self):
        """Start and wait until cancelled."""
        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"live-sync-{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ── Applying updates ──

    async def apply_snapshot(self, snapshot: Snapshot, source: str) -> bool:
        """Commit *snapshot* as the current truth.  Returns True if it changed."""
        if not self.running:
            return False
        self._last_update_at = self._clock()
        self.interpolator.update(snapshot)
        if snapshot == self._snapshot:
            return False
        previous, self._snapshot = self._snapshot, snapshot
        if previous.song != snapshot.song:
            song = snapshot.song
            log.info("Now playing (%s): %s", source,
                     f"{song.artist_name} — {song.name} [{song.play_state.value}]" if song else "nothing")
        await self._publish(source)
        return True

    async def _set_state(self, state: ConnectionState):
        if not self.running or state is self._state:
            return
        log.info("Connection state: %s -> %s", self._state.value, state.value)
        self._state = state
        await self._publish("connection")

    async def _set_queue(self, queue: list[QueueEntry]):
        if not self.running:
            return
        queue = tuple(queue)
        if queue == self._queue:
            return
        self._queue = queue
        await self._publish("queue")

    # ── Polling ──

    async def poll_now_playing(self, source: str = "poll") -> bool:
        """Fetch the now-playing endpoint once and apply it."""
        snapshot = await self.client.fetch_now_playing()
        return await self.apply_snapshot(snapshot, source)

    async def refresh_queue(self):
        await self._set_queue(await self.client.fetch_queue())

    async def resync(self):
        """Out-of-band refresh (e.g. after a successful command)."""
        if not self.running:
            return
        try:
            await self.poll_now_playing("resync")
        except JukeboxError as e:
            log.warning("Resync of now playing failed: %s", e)
        try:
            await self.refresh_queue()
        except JukeboxError as e:
            log.warning("Resync of queue failed: %s", e)

    async def _seed(self):
        try:
            await self.poll_now_playing("seed")
        except asyncio.CancelledError:
            raise
        except JukeboxError as e:
            # Push channel stays the source of truth
            log.debug("Initial now-playing fetch failed: %s", e)
        except Exception as e:
            log.error("Initial now-playing fetch error: %s", e)

    # ── Push channel ──

    def _is_live(self, attempt: int) -> bool:
        return self.running and attempt == self._attempt

    async def _push_loop(self):
        while self.running:
            self._attempt += 1
            attempt = self._attempt
            await self._set_state(ConnectionState.CONNECTING)
            log.info("Connecting to push channel %s (attempt %d)", self.push_url, attempt)
            try:
                async with self._connect(self.push_url) as ws:
                    if not self._is_live(attempt):
                        return
                    self._ws = ws
                    self._has_connected = True
                    self._last_update_at = self._clock()
                    await self._set_state(ConnectionState.CONNECTED)

                    async for message in ws:
                        if not self._is_live(attempt):
                            return
                        try:
                            await self._handle_push_message(message, attempt)
                        except asyncio.CancelledError:
                            raise
                        except Exception as e:
                            log.error("Error processing push message: %s", e)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                age = self.last_update_age
                log.warning("Push channel error (url=%s, attempt=%d, last update %s ago): %s",
                            self.push_url, attempt,
                            f"{age:.1f}s" if age is not None else "never", e)
            finally:
                if self._ws is not None and attempt == self._attempt:
                    self._ws = None

            if not self._is_live(attempt):
                return
            await self._set_state(ConnectionState.RECONNECTING if self._has_connected
                                  else ConnectionState.CONNECTING)
            log.info("Push channel closed, reconnecting in %.1fs", self.reconnect_delay)
            await asyncio.sleep(self.reconnect_delay)

    async def _handle_push_message(self, message, attempt: int):
        payload = decode_push_message(message)
        if payload is None:
            log.debug("Dropping malformed push message: %r", message)
            return
        snapshot = normalize(unwrap_envelope(payload))
        if not self._is_live(attempt):
            return
        await self.apply_snapshot(snapshot, "push")
        await self._set_state(ConnectionState.CONNECTED)

    # ── Timers ──

    async def _watchdog_loop(self):
        while self.running:
            await asyncio.sleep(self.poll_interval)
            if not self.running or not self.is_stale():
                continue
            log.debug("No update for %s, polling", self.last_update_age)
            try:
                snapshot = await self.client.fetch_now_playing()
            except asyncio.CancelledError:
                raise
            except JukeboxError as e:
                log.debug("Fallback poll failed: %s", e)
                continue
            except Exception as e:
                log.error("Fallback poll error: %s", e)
                continue
            if not self.running:
                return
            await self.apply_snapshot(snapshot, "fallback")
            await self._set_state(ConnectionState.FALLBACK)

    async def _queue_loop(self):
        while self.running:
            try:
                await self.refresh_queue()
            except asyncio.CancelledError:
                raise
            except JukeboxError as e:
                log.warning("Unable to load queue: %s", e)
            except Exception as e:
                log.error("Queue refresh error: %s", e)
            await asyncio.sleep(self.poll_interval)

    async def _tick_loop(self):
        while self.running:
            await asyncio.sleep(self.tick_interval)
            if self.interpolator.anchor is not None:
                await self._publish("tick")
