# Jukebox Now-Playing
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""Play queue decoding and the played / current / upcoming split."""

from __future__ import annotations

from collections.abc import Mapping, Sequence

from .models import UNKNOWN_ALBUM, UNKNOWN_ARTIST, QueueEntry, Song
from .normalizer import decode_mrl_name, pick_text


def parse_queue_entry(item, index: int) -> QueueEntry | None:
    if not isinstance(item, Mapping):
        return None
    mrl = item.get("mrl") if isinstance(item.get("mrl"), str) else ""
    name = pick_text(item, ("title",)) or decode_mrl_name(mrl)
    return QueueEntry(
        mrl=mrl,
        name=name or f"Song {index + 1}",
        artist_name=pick_text(item, ("artist",)) or UNKNOWN_ARTIST,
        album_name=pick_text(item, ("album",)) or UNKNOWN_ALBUM,
    )


def parse_queue(payload) -> list[QueueEntry]:
    """``{"queue": [{mrl, title?, artist?, album?}, ...]}`` → entries.

    Anything that isn't that shape yields an empty queue.
    """
    items = payload.get("queue") if isinstance(payload, Mapping) else None
    if not isinstance(items, list):
        return []
    entries = []
    for index, item in enumerate(items):
        entry = parse_queue_entry(item, index)
        if entry is not None:
            entries.append(entry)
    return entries


def current_index(queue: Sequence[QueueEntry], song: Song | None) -> int:
    """Index of the playing entry (matched by MRL), or -1."""
    if song is None:
        return -1
    for i, entry in enumerate(queue):
        if entry.mrl == song.mrl:
            return i
    return -1


def upcoming(queue: Sequence[QueueEntry], song: Song | None) -> list[QueueEntry]:
    """Entries strictly after the current one; the whole queue if no match."""
    index = current_index(queue, song)
    if index == -1:
        return list(queue)
    return list(queue[index + 1:])
