# Jukebox Now-Playing
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Media action gateway — playback commands that survive endpoint renames.

Server versions disagree on command paths ("/api/media/next" vs
"/api/media/next-song" ...) and on verbs.  Each logical action is a row in
ACTIONS: an ordered list of (verb, path) attempts.  One dispatcher walks it:

  * 2xx       → done
  * 404 / 405 → wrong endpoint, try the next attempt
  * other     → terminal RequestError (no further attempts)

Exhausting the list with only 404/405 raises NoCompatibleEndpointError.

The gateway does not refresh state; the caller asks the sync session for
a resync after a successful command.
"""

import logging

from .lib.transport import JukeboxClient, NoCompatibleEndpointError, RequestError

log = logging.getLogger(__name__)

WRONG_ENDPOINT = (404, 405)

# POST first, GET when the server rejects the verb or path
VERBS = ("POST", "GET")


def attempts(*paths: str) -> tuple[tuple[str, str], ...]:
    """Expand candidate paths into (verb, path) attempts, verbs innermost."""
    return tuple((verb, path) for path in paths for verb in VERBS)


ACTIONS: dict[str, tuple[tuple[str, str], ...]] = {
    "pause": attempts("/api/media/pause"),
    "resume": attempts("/api/media/resume", "/api/media/play"),
    "stop": attempts("/api/media/stop"),
    "next": attempts("/api/media/next", "/api/media/next-song", "/api/media/nextSong"),
    "empty": attempts("/api/queue/empty"),
}


class MediaActionGateway:
    def __init__(self, client: JukeboxClient, actions: dict | None = None):
        self.client = client
        self.actions = dict(ACTIONS if actions is None else actions)

    async def dispatch(self, action: str) -> str:
        """Run *action*; return the path that accepted it."""
        try:
            plan = self.actions[action]
        except KeyError:
            raise ValueError(f"Unknown media action: {action}") from None

        for verb, path in plan:
            status = await self.client.request(verb, path)
            if 200 <= status < 300:
                log.info("Media action %s -> %s %s (HTTP %d)", action, verb, path, status)
                return path
            if status in WRONG_ENDPOINT:
                log.debug("Media action %s: %s %s answered %d, trying next",
                          action, verb, path, status)
                continue
            log.error("Media action %s failed: %s %s (HTTP %d)", action, verb, path, status)
            raise RequestError(path, status)

        log.error("Media action %s: no compatible endpoint", action)
        raise NoCompatibleEndpointError(action)

    async def pause(self) -> str:
        return await self.dispatch("pause")

    async def resume(self) -> str:
        return await self.dispatch("resume")

    async def stop(self) -> str:
        return await self.dispatch("stop")

    async def next_track(self) -> str:
        return await self.dispatch("next")

    async def empty_queue(self) -> str:
        return await self.dispatch("empty")
