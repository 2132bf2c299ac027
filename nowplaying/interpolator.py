# Jukebox Now-Playing
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Local progress interpolation between authoritative snapshots.

The server only reports position every few seconds (or when something
changes), so the displayed position is extrapolated from the last anchor:

    displayed = min(anchor.current + (now - anchor.taken_at), duration)

Extrapolation only runs while the song is PLAYING; a paused or stopped song
holds at its anchor.  Every authoritative snapshot replaces the anchor, even
when it reports a position behind the extrapolated one.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from .models import PlayState, Progress, Snapshot


@dataclass(frozen=True)
class Anchor:
    progress: Progress
    taken_at: float
    advancing: bool


class ProgressInterpolator:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._anchor: Anchor | None = None

    @property
    def anchor(self) -> Anchor | None:
        return self._anchor

    def update(self, snapshot: Snapshot) -> None:
        """Re-anchor on an authoritative snapshot."""
        if snapshot.song is None or snapshot.progress is None:
            self._anchor = None
            return
        self._anchor = Anchor(
            progress=snapshot.progress,
            taken_at=self._clock(),
            advancing=snapshot.song.play_state is PlayState.PLAYING,
        )

    def clear(self) -> None:
        self._anchor = None

    def position(self) -> Progress | None:
        """Interpolated progress for display, or None without an anchor."""
        anchor = self._anchor
        if anchor is None:
            return None
        current = anchor.progress.current_seconds
        if anchor.advancing:
            elapsed = max(0.0, self._clock() - anchor.taken_at)
            current = min(current + elapsed, anchor.progress.duration_seconds)
        return Progress(
            current_seconds=current,
            duration_seconds=anchor.progress.duration_seconds,
        )
