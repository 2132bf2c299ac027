import asyncio
import json

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from nowplaying.lib.config import resolve_push_url
from nowplaying.lib.transport import JukeboxClient
from nowplaying.live_sync import LiveSyncSession, decode_push_message
from nowplaying.models import ConnectionState, PlayState, Progress, QueueEntry, Snapshot, Song


def song_payload(mrl="file:///m/a.mp3", **extra):
    return {"mrl": mrl, "title": "A", "playState": "PLAYING", "duration": 200, "current": 10, **extra}


def make_snapshot(mrl="file:///m/a.mp3", current=10):
    return Snapshot(
        song=Song(mrl=mrl, name="polled", play_state=PlayState.PLAYING),
        progress=Progress(current_seconds=current, duration_seconds=200),
    )


def record_states(session):
    states = []

    def on_update(update):
        if update.reason == "connection":
            states.append(update.connection_state)

    session.subscribe(on_update)
    return states


def test_decode_push_message():
    assert decode_push_message('{"mrl": "x"}') == {"mrl": "x"}
    assert decode_push_message(b'{"mrl": "x"}') == {"mrl": "x"}
    assert decode_push_message(bytearray(b'{"mrl": "x"}')) == {"mrl": "x"}
    assert decode_push_message({"mrl": "x"}) == {"mrl": "x"}
    assert decode_push_message("not json") is None
    assert decode_push_message(b"\xff\xfe") is None
    assert decode_push_message("[1, 2]") is None
    assert decode_push_message(42) is None
    assert decode_push_message('{"mrl": "x", "n": ' + "1" * 5000 + "}") is None


async def test_starts_connecting(make_session):
    session = make_session()
    assert session.state is ConnectionState.CONNECTING


async def test_connection_state_cycle(make_session, push_server, wait_until):
    session = make_session()
    states = record_states(session)
    await session.start()

    await wait_until(lambda: session.state is ConnectionState.CONNECTED)
    push_server.latest.push(json.dumps(song_payload()))
    await wait_until(lambda: session.snapshot.song is not None)

    push_server.latest.hang_up()
    await wait_until(lambda: len(push_server.channels) == 2
                     and session.state is ConnectionState.CONNECTED)

    assert states == [
        ConnectionState.CONNECTED,
        ConnectionState.RECONNECTING,
        ConnectionState.CONNECTING,
        ConnectionState.CONNECTED,
    ]
    assert session.attempt == 2


async def test_never_connected_stays_connecting(make_session, push_server, wait_until):
    push_server.refuse = True
    session = make_session()
    states = record_states(session)
    await session.start()

    await wait_until(lambda: len(push_server.channels) >= 3)
    assert session.state is ConnectionState.CONNECTING
    assert ConnectionState.RECONNECTING not in states


async def test_push_message_applied(make_session, push_server, wait_until):
    session = make_session()
    await session.start()
    await wait_until(lambda: session.state is ConnectionState.CONNECTED)

    push_server.latest.push(json.dumps({"type": "now_playing", "data": song_payload()}))
    await wait_until(lambda: session.snapshot.song is not None)

    assert session.snapshot.song.name == "A"
    assert session.snapshot.progress.current_seconds == 10
    assert session.interpolator.anchor is not None


async def test_binary_and_structured_messages(make_session, push_server, wait_until):
    session = make_session()
    await session.start()
    await wait_until(lambda: session.state is ConnectionState.CONNECTED)

    push_server.latest.push(json.dumps(song_payload(mrl="file:///m/b.mp3")).encode())
    await wait_until(lambda: session.snapshot.song is not None
                     and session.snapshot.song.mrl == "file:///m/b.mp3")

    push_server.latest.push(song_payload(mrl="file:///m/c.mp3"))
    await wait_until(lambda: session.snapshot.song.mrl == "file:///m/c.mp3")


async def test_malformed_messages_are_dropped(make_session, push_server, wait_until):
    session = make_session()
    states = record_states(session)
    await session.start()
    await wait_until(lambda: session.state is ConnectionState.CONNECTED)

    push_server.latest.push(json.dumps(song_payload()))
    await wait_until(lambda: session.snapshot.song is not None)
    before = session.snapshot

    push_server.latest.push("{{ not json")
    push_server.latest.push(b"\xff\xfe")
    push_server.latest.push("[]")
    push_server.latest.push(json.dumps(song_payload(mrl="file:///m/after.mp3")))
    await wait_until(lambda: session.snapshot.song.mrl == "file:///m/after.mp3")

    assert before.song.mrl == "file:///m/a.mp3"
    assert session.state is ConnectionState.CONNECTED
    assert states == [ConnectionState.CONNECTED]
    assert len(push_server.channels) == 1


async def test_oversized_number_frame_keeps_connection(make_session, push_server, wait_until):
    session = make_session()
    states = record_states(session)
    await session.start()
    await wait_until(lambda: session.state is ConnectionState.CONNECTED)

    push_server.latest.push('{"mrl": "file:///m/a.mp3", "duration": ' + "9" * 5000 + "}")
    push_server.latest.push(json.dumps(song_payload(mrl="file:///m/after.mp3")))
    await wait_until(lambda: session.snapshot.song is not None
                     and session.snapshot.song.mrl == "file:///m/after.mp3")

    assert states == [ConnectionState.CONNECTED]
    assert len(push_server.channels) == 1


async def test_channel_error_reconnects(make_session, push_server, wait_until):
    session = make_session()
    await session.start()
    await wait_until(lambda: session.state is ConnectionState.CONNECTED)

    push_server.latest.push(ConnectionResetError("boom"))
    await wait_until(lambda: len(push_server.channels) == 2
                     and session.state is ConnectionState.CONNECTED)
    assert push_server.channels[0].closed


async def test_stale_push_falls_back_to_polling(make_session, fake_client, push_server, wait_until):
    session = make_session(poll_interval=0.03)
    await session.start()
    await wait_until(lambda: session.state is ConnectionState.CONNECTED)

    fake_client.snapshot = make_snapshot(current=42)
    await wait_until(lambda: session.state is ConnectionState.FALLBACK)

    assert session.snapshot == make_snapshot(current=42)
    assert len(push_server.channels) == 1


async def test_push_message_ends_fallback(make_session, fake_client, push_server, wait_until):
    session = make_session(poll_interval=0.03)
    await session.start()
    fake_client.snapshot = make_snapshot()
    await wait_until(lambda: session.state is ConnectionState.FALLBACK)

    push_server.latest.push(json.dumps(song_payload(mrl="file:///m/pushed.mp3")))
    await wait_until(lambda: session.state is ConnectionState.CONNECTED)
    assert session.snapshot.song.mrl == "file:///m/pushed.mp3"


async def test_fresh_push_does_not_poll(make_session, fake_client, push_server, wait_until):
    session = make_session(poll_interval=0.05)
    await session.start()
    await wait_until(lambda: session.state is ConnectionState.CONNECTED)
    calls = fake_client.now_playing_calls

    for i in range(8):
        push_server.latest.push(json.dumps(song_payload(current=i)))
        await asyncio.sleep(0.03)

    assert fake_client.now_playing_calls == calls
    assert session.state is ConnectionState.CONNECTED


async def test_fallback_poll_failure_keeps_running(make_session, fake_client, push_server, wait_until):
    push_server.refuse = True
    fake_client.fail = True
    session = make_session(poll_interval=0.02)
    await session.start()

    await wait_until(lambda: fake_client.now_playing_calls >= 3)
    assert session.state is ConnectionState.CONNECTING

    fake_client.fail = False
    fake_client.snapshot = make_snapshot()
    await wait_until(lambda: session.state is ConnectionState.FALLBACK)
    assert session.snapshot == make_snapshot()


async def test_seed_poll_on_start(make_session, fake_client, push_server, wait_until):
    push_server.refuse = True
    fake_client.snapshot = make_snapshot()
    session = make_session()
    await session.start()
    await wait_until(lambda: session.snapshot == make_snapshot())


async def test_queue_refresh_and_upcoming(make_session, fake_client, push_server, wait_until):
    fake_client.queue = [
        QueueEntry(mrl="file:///m/a.mp3", name="a"),
        QueueEntry(mrl="file:///m/b.mp3", name="b"),
    ]
    session = make_session(poll_interval=0.02)
    await session.start()
    await wait_until(lambda: len(session.queue) == 2)
    assert session.upcoming == list(session.queue)

    push_server.latest.push(json.dumps(song_payload(mrl="file:///m/a.mp3")))
    await wait_until(lambda: session.snapshot.song is not None)
    assert [e.name for e in session.upcoming] == ["b"]


async def test_queue_refreshed_while_push_is_healthy(make_session, fake_client, push_server, wait_until):
    session = make_session(poll_interval=0.02)
    await session.start()
    await wait_until(lambda: session.state is ConnectionState.CONNECTED)
    await wait_until(lambda: fake_client.queue_calls >= 3)


async def test_display_tick(make_session, push_server, wait_until):
    session = make_session(tick_interval=0.01)
    reasons = []
    session.subscribe(lambda update: reasons.append(update.reason))
    await session.start()
    await wait_until(lambda: session.state is ConnectionState.CONNECTED)
    calls_before = len(push_server.channels)

    push_server.latest.push(json.dumps(song_payload()))
    await wait_until(lambda: reasons.count("tick") >= 3)
    assert len(push_server.channels) == calls_before


async def test_same_snapshot_published_once(make_session, push_server, wait_until):
    session = make_session()
    reasons = []
    session.subscribe(lambda update: reasons.append(update.reason))
    await session.start()
    await wait_until(lambda: session.state is ConnectionState.CONNECTED)

    push_server.latest.push(json.dumps(song_payload()))
    push_server.latest.push(json.dumps(song_payload()))
    push_server.latest.push(json.dumps(song_payload(mrl="file:///m/z.mp3")))
    await wait_until(lambda: session.snapshot.song is not None
                     and session.snapshot.song.mrl == "file:///m/z.mp3")
    assert reasons.count("push") == 2


async def test_async_subscriber_and_failing_subscriber(make_session, push_server, wait_until):
    session = make_session()
    received = []

    def broken(update):
        raise RuntimeError("subscriber bug")

    async def collector(update):
        received.append(update)

    session.subscribe(broken)
    session.subscribe(collector)
    await session.start()
    await wait_until(lambda: session.state is ConnectionState.CONNECTED)
    push_server.latest.push(json.dumps(song_payload()))
    await wait_until(lambda: any(u.reason == "push" for u in received))


async def test_unsubscribe(make_session, push_server, wait_until):
    session = make_session()
    received = []
    unsubscribe = session.subscribe(received.append)
    unsubscribe()
    await session.start()
    await wait_until(lambda: session.state is ConnectionState.CONNECTED)
    assert received == []


async def test_stop_is_total(make_session, push_server, wait_until):
    session = make_session(poll_interval=0.02, tick_interval=0.01)
    received = []
    session.subscribe(received.append)
    await session.start()
    await wait_until(lambda: session.state is ConnectionState.CONNECTED)
    channel = push_server.latest

    await session.stop()
    count = len(received)
    assert channel.closed
    assert not session.running
    assert session._tasks == set()

    channel.push(json.dumps(song_payload()))
    await asyncio.sleep(0.1)
    assert len(received) == count
    assert session.snapshot.song is None


async def test_stop_cancels_pending_reconnect(make_session, push_server, wait_until):
    session = make_session(reconnect_delay=0.05)
    await session.start()
    await wait_until(lambda: session.state is ConnectionState.CONNECTED)

    push_server.latest.hang_up()
    await wait_until(lambda: session.state is ConnectionState.RECONNECTING)
    await session.stop()

    await asyncio.sleep(0.15)
    assert len(push_server.channels) == 1


async def test_superseded_attempt_is_ignored(make_session, push_server, wait_until):
    session = make_session()
    await session.start()
    await wait_until(lambda: session.state is ConnectionState.CONNECTED)
    old_attempt = session.attempt

    push_server.latest.hang_up()
    await wait_until(lambda: session.attempt == old_attempt + 1
                     and session.state is ConnectionState.CONNECTED)

    await session._handle_push_message(json.dumps(song_payload()), old_attempt)
    assert session.snapshot.song is None


async def test_resync(make_session, fake_client, push_server, wait_until):
    session = make_session()
    await session.start()
    await wait_until(lambda: session.state is ConnectionState.CONNECTED)
    fake_client.snapshot = make_snapshot()
    fake_client.queue = [QueueEntry(mrl="file:///m/next.mp3", name="next")]

    await session.resync()
    assert session.snapshot == make_snapshot()
    assert session.queue == (QueueEntry(mrl="file:///m/next.mp3", name="next"),)


async def test_resync_after_stop_is_noop(make_session, fake_client):
    session = make_session()
    await session.start()
    await session.stop()
    calls = fake_client.now_playing_calls
    await session.resync()
    assert fake_client.now_playing_calls == calls


@pytest.fixture
async def live_jukebox():
    """Real HTTP + WebSocket jukebox server; the test pushes through ``sockets``."""
    sockets = []

    async def playing(request):
        return web.json_response({})

    async def queue(request):
        return web.json_response({"queue": [{"mrl": "file:///m/a.mp3", "title": "A"}]})

    async def current_song(request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        sockets.append(ws)
        async for _msg in ws:
            pass
        return ws

    app = web.Application()
    app.router.add_get("/api/queue/playing", playing)
    app.router.add_get("/api/queue/list", queue)
    app.router.add_get("/api/ws/current-song", current_song)
    server = TestServer(app)
    await server.start_server()
    yield str(server.make_url("/")), sockets
    for ws in sockets:
        await ws.close()
    await server.close()


async def test_against_real_websocket(live_jukebox, wait_until):
    base_url, sockets = live_jukebox
    async with JukeboxClient(base_url) as client:
        session = LiveSyncSession(
            client,
            resolve_push_url(None, client.base_url),
            poll_interval=10,
            reconnect_delay=0.05,
        )
        await session.start()
        try:
            await wait_until(lambda: session.state is ConnectionState.CONNECTED and sockets)
            await sockets[-1].send_str(json.dumps({"data": song_payload()}))
            await wait_until(lambda: session.snapshot.song is not None)
            assert session.snapshot.song.name == "A"
            await wait_until(lambda: len(session.queue) == 1)
            assert session.upcoming == []

            await sockets[-1].close()
            await wait_until(lambda: len(sockets) == 2
                             and session.state is ConnectionState.CONNECTED)
        finally:
            await session.stop()


@pytest.fixture
async def garbled_jukebox():
    """HTTP-only jukebox whose bodies are not UTF-8 until ``state["garbled"]`` is cleared."""
    state = {"garbled": True, "playing": 0, "queue": 0}

    async def playing(request):
        state["playing"] += 1
        if state["garbled"]:
            return web.Response(body=b"\xff\xfe", content_type="application/json")
        return web.json_response(song_payload())

    async def queue(request):
        state["queue"] += 1
        if state["garbled"]:
            return web.Response(body=b"\xff\xfe", content_type="application/json")
        return web.json_response({"queue": [{"mrl": "file:///m/a.mp3", "title": "A"}]})

    app = web.Application()
    app.router.add_get("/api/queue/playing", playing)
    app.router.add_get("/api/queue/list", queue)
    server = TestServer(app)
    await server.start_server()
    yield str(server.make_url("/")), state
    await server.close()


async def test_undecodable_responses_do_not_end_timers(garbled_jukebox, push_server, wait_until):
    base_url, state = garbled_jukebox
    push_server.refuse = True
    async with JukeboxClient(base_url) as client:
        session = LiveSyncSession(
            client,
            "ws://jukebox.test/api/ws/current-song",
            poll_interval=0.03,
            reconnect_delay=0.02,
            connect=push_server.connect,
        )
        await session.start()
        try:
            await wait_until(lambda: state["playing"] >= 3 and state["queue"] >= 3)
            assert session.snapshot.song is None

            state["garbled"] = False
            await wait_until(lambda: session.snapshot.song is not None and len(session.queue) == 1)
            assert session.snapshot.song.mrl == "file:///m/a.mp3"
            assert session.running
        finally:
            await session.stop()
