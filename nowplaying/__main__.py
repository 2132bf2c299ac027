#!/usr/bin/env python3
"""
Jukebox now-playing bridge (jukebox-nowplaying)

Follows the jukebox server's push channel (with polling fallback) and serves
the live now-playing view plus playback commands on the bridge port.

Usage:
    python3 -m nowplaying [--base-url URL] [--ws-url URL] [--port N]
                          [--poll-interval S] [--log-level LEVEL]
"""

import argparse
import asyncio
import logging

from .bridge import NowPlayingBridge
from .lib.config import cfg


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Jukebox now-playing bridge")
    parser.add_argument("--base-url", help="Jukebox HTTP API base URL")
    parser.add_argument("--ws-url", help="Push channel URL (default: derived from base URL)")
    parser.add_argument("--port", type=int, help="Bridge HTTP/WebSocket port")
    parser.add_argument("--poll-interval", type=float, help="Fallback/queue poll interval (seconds)")
    parser.add_argument("--log-level", default=None,
                        help="DEBUG, INFO, WARNING ... (default from config, else INFO)")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    level = (args.log_level or cfg("logging", "level", default="INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    bridge = NowPlayingBridge.from_config(
        base_url=args.base_url,
        ws_url=args.ws_url,
        port=args.port,
        poll_interval=args.poll_interval,
    )
    asyncio.run(bridge.run())


if __name__ == "__main__":
    main()
