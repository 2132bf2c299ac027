import asyncio

import pytest

from nowplaying.lib import config
from nowplaying.lib.transport import JukeboxError
from nowplaying.live_sync import LiveSyncSession
from nowplaying.models import EMPTY_SNAPSHOT

CLOSE = object()


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """No config file, no env overrides — every test starts from defaults."""
    monkeypatch.setenv("JUKEBOX_CONFIG", str(tmp_path / "missing.json"))
    monkeypatch.delenv("JUKEBOX_BASE_URL", raising=False)
    monkeypatch.delenv("JUKEBOX_WS_URL", raising=False)
    monkeypatch.chdir(tmp_path)
    config._config = None
    yield
    config._config = None


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class FakeChannel:
    """Stands in for a websockets connection: async context manager + async iterator."""

    def __init__(self, url: str, refuse: bool = False):
        self.url = url
        self.refuse = refuse
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.opened = False
        self.closed = False

    async def __aenter__(self):
        if self.refuse:
            raise ConnectionRefusedError("connection refused")
        self.opened = True
        return self

    async def __aexit__(self, *exc):
        self.closed = True

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.inbox.get()
        if item is CLOSE:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    def push(self, message):
        self.inbox.put_nowait(message)

    def hang_up(self):
        self.inbox.put_nowait(CLOSE)

    async def close(self):
        self.closed = True
        self.inbox.put_nowait(CLOSE)


class FakePushServer:
    def __init__(self):
        self.channels: list[FakeChannel] = []
        self.refuse = False

    def connect(self, url: str) -> FakeChannel:
        channel = FakeChannel(url, refuse=self.refuse)
        self.channels.append(channel)
        return channel

    @property
    def latest(self) -> FakeChannel:
        return self.channels[-1]


@pytest.fixture
def push_server():
    return FakePushServer()


class FakeClient:
    """Duck-typed JukeboxClient for the sync session."""

    def __init__(self):
        self.snapshot = EMPTY_SNAPSHOT
        self.queue = []
        self.fail = False
        self.now_playing_calls = 0
        self.queue_calls = 0
        self.played = []
        self.started = False

    async def start(self):
        self.started = True

    async def stop(self):
        self.started = False

    async def fetch_now_playing(self):
        self.now_playing_calls += 1
        if self.fail:
            raise JukeboxError("server down")
        return self.snapshot

    async def fetch_queue(self):
        self.queue_calls += 1
        if self.fail:
            raise JukeboxError("server down")
        return list(self.queue)

    async def play(self, mrl):
        if not mrl:
            raise ValueError("Missing song MRL for play action")
        self.played.append(mrl)


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
async def make_session(fake_client, push_server):
    sessions = []

    def factory(**kwargs) -> LiveSyncSession:
        kwargs.setdefault("poll_interval", 10)
        kwargs.setdefault("reconnect_delay", 0.02)
        kwargs.setdefault("tick_interval", 10)
        kwargs.setdefault("connect", push_server.connect)
        session = LiveSyncSession(fake_client, "ws://jukebox.test/api/ws/current-song", **kwargs)
        sessions.append(session)
        return session

    yield factory
    for session in sessions:
        await session.stop()


async def _wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def wait_until():
    return _wait_until
