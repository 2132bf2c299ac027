# Jukebox Now-Playing
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""Canonical data produced by the normalizer and consumed by the sync core."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

UNKNOWN_ARTIST = "Unknown Artist"
UNKNOWN_ALBUM = "Unknown Album"


class PlayState(str, Enum):
    PLAYING = "PLAYING"
    PAUSED = "PAUSED"
    STOPPED = "STOPPED"


class ConnectionState(str, Enum):
    """Push channel health as shown to the user."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class Song:
    mrl: str
    name: str
    artist_name: str = UNKNOWN_ARTIST
    album_name: str = UNKNOWN_ALBUM
    play_state: PlayState = PlayState.STOPPED

    def to_dict(self) -> dict:
        return {
            "mrl": self.mrl,
            "name": self.name,
            "artistName": self.artist_name,
            "albumName": self.album_name,
            "playState": self.play_state.value,
        }


@dataclass(frozen=True)
class Progress:
    current_seconds: float
    duration_seconds: float

    @property
    def percent(self) -> float:
        if self.duration_seconds <= 0:
            return 0.0
        return min(100.0, self.current_seconds / self.duration_seconds * 100)

    def to_dict(self) -> dict:
        return {
            "currentSeconds": self.current_seconds,
            "durationSeconds": self.duration_seconds,
        }


@dataclass(frozen=True)
class Snapshot:
    """One atomic (song, progress) reading. Progress is only kept with a song."""

    song: Song | None = None
    progress: Progress | None = None

    def __post_init__(self):
        if self.song is None and self.progress is not None:
            object.__setattr__(self, "progress", None)

    @property
    def is_empty(self) -> bool:
        return self.song is None

    def to_dict(self) -> dict:
        return {
            "song": self.song.to_dict() if self.song else None,
            "progress": self.progress.to_dict() if self.progress else None,
        }


EMPTY_SNAPSHOT = Snapshot()


@dataclass(frozen=True)
class QueueEntry:
    mrl: str
    name: str
    artist_name: str = UNKNOWN_ARTIST
    album_name: str = UNKNOWN_ALBUM

    def to_dict(self) -> dict:
        return {
            "mrl": self.mrl,
            "name": self.name,
            "artistName": self.artist_name,
            "albumName": self.album_name,
        }


def format_clock(seconds: float | None) -> str:
    """Seconds → ``M:SS`` (or ``H:MM:SS`` past an hour). Invalid input → ``0:00``."""
    try:
        total = int(float(seconds))
    except (TypeError, ValueError, OverflowError):
        return "0:00"
    if total < 0:
        return "0:00"
    if total >= 3600:
        h = total // 3600
        m = (total % 3600) // 60
        s = total % 60
        return f"{h}:{m:02d}:{s:02d}"
    return f"{total // 60}:{total % 60:02d}"
