"""
Jukebox now-playing client.

Tracks what a jukebox media server is playing and keeps a local view of the
song, its position and the upcoming queue in sync:

  normalizer.py    — shape-tolerant decoding of server payloads into Snapshots
  interpolator.py  — smooth local position between authoritative updates
  live_sync.py     — push channel + polling fallback + staleness watchdog
  actions.py       — pause/resume/stop/next/empty with endpoint fallback
  bridge.py        — HTTP + WebSocket face for the presentation layer
"""

__version__ = "0.1.0"
