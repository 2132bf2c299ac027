# Jukebox Now-Playing
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Payload normalizer — turns whatever the jukebox server sends into a Snapshot.

The server emits the now-playing record in several shapes depending on the
endpoint and version: progress may live at the root or under ``playing``,
``nowPlaying``, ``tag`` ... and each field has a handful of aliases.  Every
alias list below is ordered; the first usable value wins.

Nothing in this module raises for JSON-decodable input.  Unknown shapes
degrade to ``Snapshot(None, None)``.

Known limitation: there is no unit tag on durations, so any value above
``MS_THRESHOLD`` is read as milliseconds.  A short track reported in ms
(e.g. ``9000`` for 9 s) is taken as 9000 s.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from urllib.parse import unquote

from .models import (
    UNKNOWN_ALBUM,
    UNKNOWN_ARTIST,
    EMPTY_SNAPSHOT,
    PlayState,
    Progress,
    Snapshot,
    Song,
)

log = logging.getLogger(__name__)

MS_THRESHOLD = 10_000

# Envelope key used by the push channel ({"type": ..., "data": {...}})
ENVELOPE_KEY = "data"

# Sub-objects consulted for progress after the root payload, in order:
# now-playing style objects first, then tag/metadata objects.
PROGRESS_SOURCE_KEYS = (
    "playing",
    "nowPlaying",
    "current",
    "data",
    "tag",
    "meta",
    "metadata",
)

DURATION_ALIASES = (
    "durationSeconds",
    "duration",
    "durationMs",
    "lengthSeconds",
    "length",
    "lengthMs",
    "totalSeconds",
    "total",
    "totalMs",
    "trackLength",
    "trackLengthMs",
    "trackDuration",
    "trackDurationMs",
)

CURRENT_ALIASES = (
    "currentSeconds",
    "current",
    "currentMs",
    "currentTime",
    "elapsedTime",
    "elapsedTimeMs",
    "positionSeconds",
    "positionMs",
    "elapsedSeconds",
    "elapsed",
    "elapsedMs",
    "progressSeconds",
    "progressMs",
    "time",
    "timeMs",
)

# 0–1 ratios, or 0–100 percentages (rescaled)
RATIO_ALIASES = (
    "position",
    "progress",
    "positionRatio",
    "progressRatio",
    "positionPercent",
    "progressPercent",
)

TITLE_ALIASES = ("title", "name")
ARTIST_ALIASES = ("artist", "artistName")
ALBUM_ALIASES = ("album", "albumName")


# ── Scalars ──

def parse_clock(value) -> float | None:
    """Parse ``H:MM:SS`` or ``M:SS`` into seconds.  Anything else → None."""
    if not isinstance(value, str) or ":" not in value:
        return None
    parts = []
    for part in value.split(":"):
        try:
            number = float(part)
        except ValueError:
            return None
        if not math.isfinite(number) or number < 0:
            return None
        parts.append(number)
    if len(parts) == 3:
        return parts[0] * 3600 + parts[1] * 60 + parts[2]
    if len(parts) == 2:
        return parts[0] * 60 + parts[1]
    return None


def coerce_number(value) -> float | None:
    """Finite, non-negative number from an int/float/numeric or clock string."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        clock = parse_clock(value)
        if clock is not None:
            return clock
        if not value.strip():
            return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(number) or number < 0:
        return None
    return number


def pick_number(source: Mapping, aliases) -> float | None:
    """First alias in *source* that coerces to a usable number."""
    for alias in aliases:
        if alias not in source:
            continue
        number = coerce_number(source[alias])
        if number is not None:
            return number
    return None


def to_seconds(value: float | None) -> float | None:
    """Apply the millisecond heuristic: values above MS_THRESHOLD are ms."""
    if value is None or not math.isfinite(value) or value < 0:
        return None
    return value / 1000 if value > MS_THRESHOLD else value


def normalize_ratio(value: float | None) -> float | None:
    if value is None:
        return None
    if 1 < value <= 100:
        value = value / 100
    if 0 <= value <= 1:
        return value
    return None


# ── Song ──

def decode_mrl_name(mrl) -> str:
    """Filename-like label for an MRL: last path segment, percent-decoded."""
    if not mrl or not isinstance(mrl, str):
        return ""
    trimmed = mrl[:-1] if mrl.endswith("/") else mrl
    segment = trimmed.split("/")[-1]
    try:
        return unquote(segment, errors="strict")
    except UnicodeDecodeError:
        return segment


def pick_text(source: Mapping, aliases) -> str | None:
    """First alias holding a non-blank string, stripped."""
    for alias in aliases:
        value = source.get(alias)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def normalize_play_state(value) -> PlayState:
    if isinstance(value, str):
        try:
            return PlayState(value.strip().upper())
        except ValueError:
            pass
    return PlayState.STOPPED


def normalize_song(payload) -> Song | None:
    if not isinstance(payload, Mapping):
        return None
    mrl = payload.get("mrl")
    if not isinstance(mrl, str) or not mrl.strip():
        return None
    return Song(
        mrl=mrl,
        name=pick_text(payload, TITLE_ALIASES) or decode_mrl_name(mrl),
        artist_name=pick_text(payload, ARTIST_ALIASES) or UNKNOWN_ARTIST,
        album_name=pick_text(payload, ALBUM_ALIASES) or UNKNOWN_ALBUM,
        play_state=normalize_play_state(payload.get("playState")),
    )


# ── Progress ──

def progress_sources(payload) -> list[Mapping]:
    """Candidate objects for progress, root first."""
    if not isinstance(payload, Mapping):
        return []
    sources = [payload]
    for key in PROGRESS_SOURCE_KEYS:
        nested = payload.get(key)
        if isinstance(nested, Mapping):
            sources.append(nested)
    return sources


def progress_from_source(source: Mapping) -> Progress | None:
    duration = to_seconds(pick_number(source, DURATION_ALIASES))
    if duration is None or duration <= 0:
        return None

    current = to_seconds(pick_number(source, CURRENT_ALIASES))
    if current is None:
        ratio = normalize_ratio(pick_number(source, RATIO_ALIASES))
        if ratio is not None:
            current = ratio * duration

    current = min(max(current or 0.0, 0.0), duration)
    return Progress(current_seconds=current, duration_seconds=duration)


def normalize_progress(payload) -> Progress | None:
    for source in progress_sources(payload):
        progress = progress_from_source(source)
        if progress is not None:
            return progress
    return None


# ── Entry points ──

def unwrap_envelope(payload):
    """Push messages may wrap the record as ``{"data": {...}}``."""
    if isinstance(payload, Mapping):
        inner = payload.get(ENVELOPE_KEY)
        if inner is not None:
            return inner
    return payload


def normalize(payload) -> Snapshot:
    """Raw server JSON → Snapshot.  Never raises."""
    try:
        song = normalize_song(payload)
        if song is None:
            return EMPTY_SNAPSHOT
        return Snapshot(song=song, progress=normalize_progress(payload))
    except Exception as e:
        log.debug("Unable to normalize payload (%s): %r", e, payload)
        return EMPTY_SNAPSHOT
