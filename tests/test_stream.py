# tests/test_stream.py

import asyncio
import base64
import json
import os
import sys

import pytest
from fastapi.testclient import TestClient
from websockets.exceptions import ConnectionClosedError

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from errors import StreamProtocolError
from main import app
from routers import stream as stream_router
from stream import (
    DittoStreamClient,
    StreamComplete,
    StreamError,
    StreamFrame,
    build_audio_chunk_message,
    build_init_message,
    iter_pcm_chunks,
    parse_client_message,
    parse_server_message,
    pcm_to_bytes,
)

AUDIO_B64 = base64.b64encode(b"\x00" * 16).decode("ascii")


class FakeUpstream:
    """Stands in for the Ditto socket; replies once the client sends `end`."""

    def __init__(self, replies=None, drop_after_end=False, refuse=False):
        self.replies = replies if replies is not None else [
            {"type": "frame", "data": "/9j/AAA", "format": "jpeg"},
            {"type": "complete"},
        ]
        self.drop_after_end = drop_after_end
        self.refuse = refuse
        self.sent = []
        self.closed = False

    async def __aenter__(self):
        if self.refuse:
            raise OSError("Connection refused")
        self.queue = asyncio.Queue()
        return self

    async def __aexit__(self, *exc):
        self.closed = True
        return False

    async def send(self, raw):
        message = json.loads(raw)
        self.sent.append(message)
        if message["type"] == "end":
            for reply in self.replies:
                await self.queue.put(json.dumps(reply))
            if self.drop_after_end:
                await self.queue.put(ConnectionClosedError(None, None))

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.queue.get()
        if isinstance(item, Exception):
            raise item
        return item


async def no_sleep(_):
    return None


def collect(client, *args):
    async def run():
        return [event async for event in client.stream(*args)]
    return asyncio.run(run())


# --- protocol ---

def test_init_message_defaults():
    message = build_init_message("aW1n")

    assert message == {"type": "init", "image_b64": "aW1n", "avatar_id": None, "max_size": 1024, "crop_scale": 2.0}


def test_audio_chunk_message():
    message = build_audio_chunk_message(b"\x00\x00\x80\x3f")

    assert message["sample_rate"] == 16000
    assert message["chunksize"] == [4, 8, 2]
    assert base64.b64decode(message["audio_b64"]) == b"\x00\x00\x80\x3f"


def test_pcm_is_sent_in_6400_sample_pieces():
    pcm = pcm_to_bytes([0.0] * (6400 * 2 + 10))

    pieces = list(iter_pcm_chunks(pcm))

    assert [len(p) for p in pieces] == [6400 * 4, 6400 * 4, 10 * 4]


def test_server_messages():
    assert parse_server_message('{"type": "frame", "data": "abc"}') == StreamFrame(data="abc", format="jpeg")
    assert parse_server_message(b'{"type": "complete"}') == StreamComplete()
    assert parse_server_message('{"type": "error", "message": "GPU busy"}') == StreamError(message="GPU busy")


@pytest.mark.parametrize("raw", ['{"type": "nope"}', "not json", "[1, 2]", '{"type": "frame"}'])
def test_bad_server_messages(raw):
    with pytest.raises(StreamProtocolError):
        parse_server_message(raw)


def test_client_audio_chunk_gets_defaults():
    message = parse_client_message(json.dumps({"type": "audio_chunk", "audio_b64": AUDIO_B64}))

    assert message["sample_rate"] == 16000
    assert message["chunksize"] == [4, 8, 2]


@pytest.mark.parametrize("message", [
    {"type": "init"},
    {"type": "audio_chunk"},
    {"type": "audio_chunk", "audio_b64": "%%%"},
    {"type": "audio_chunk", "audio_b64": AUDIO_B64, "sample_rate": -1},
    {"type": "reset"},
])
def test_bad_client_messages(message):
    with pytest.raises(StreamProtocolError):
        parse_client_message(json.dumps(message))


# --- Ditto stream client ---

def test_stream_sends_init_audio_end_and_yields_frames():
    upstream = FakeUpstream()
    client = DittoStreamClient("ws://ditto", connect=lambda url: upstream, sleep=no_sleep)

    events = collect(client, "aW1n", [0.0] * (6400 * 2 + 10))

    assert events == [StreamFrame(data="/9j/AAA"), StreamComplete()]
    assert [m["type"] for m in upstream.sent] == ["init", "audio_chunk", "audio_chunk", "audio_chunk", "end"]
    assert upstream.closed


def test_stream_stops_on_error_event():
    upstream = FakeUpstream(replies=[{"type": "error", "message": "GPU busy"}, {"type": "frame", "data": "late"}])
    client = DittoStreamClient("ws://ditto", connect=lambda url: upstream, sleep=no_sleep)

    events = collect(client, "aW1n", b"\x00" * 8)

    assert events == [StreamError(message="GPU busy")]


def test_stream_reports_dropped_connection():
    upstream = FakeUpstream(replies=[{"type": "frame", "data": "a"}], drop_after_end=True)
    client = DittoStreamClient("ws://ditto", connect=lambda url: upstream, sleep=no_sleep)

    events = collect(client, "aW1n", b"\x00" * 8)

    assert events[0] == StreamFrame(data="a")
    assert isinstance(events[1], StreamError)
    assert events[1].message.startswith("WebSocket connection failed")


def test_stream_skips_unparseable_messages():
    upstream = FakeUpstream(replies=[{"type": "heartbeat"}, {"type": "complete"}])
    client = DittoStreamClient("ws://ditto", connect=lambda url: upstream, sleep=no_sleep)

    assert collect(client, "aW1n", b"\x00" * 8) == [StreamComplete()]


# --- relay endpoint ---

def test_relay_forwards_both_ways(monkeypatch):
    upstream = FakeUpstream()
    monkeypatch.setattr(stream_router, "connect_upstream", lambda url=None: upstream)

    with TestClient(app).websocket_connect("/ws/avatar-stream") as ws:
        ws.send_text(json.dumps({"type": "init", "image_b64": "aW1n"}))
        ws.send_text(json.dumps({"type": "audio_chunk", "audio_b64": AUDIO_B64}))
        ws.send_text(json.dumps({"type": "end"}))

        assert ws.receive_json() == {"type": "frame", "data": "/9j/AAA", "format": "jpeg"}
        assert ws.receive_json() == {"type": "complete"}

    assert [m["type"] for m in upstream.sent] == ["init", "audio_chunk", "end"]
    assert upstream.sent[1]["sample_rate"] == 16000


def test_relay_rejects_invalid_messages(monkeypatch):
    upstream = FakeUpstream()
    monkeypatch.setattr(stream_router, "connect_upstream", lambda url=None: upstream)

    with TestClient(app).websocket_connect("/ws/avatar-stream") as ws:
        ws.send_text(json.dumps({"type": "bogus"}))
        error = ws.receive_json()
        ws.send_text(json.dumps({"type": "end"}))
        ws.receive_json()
        assert ws.receive_json() == {"type": "complete"}

    assert error["type"] == "error"
    assert "bogus" in error["message"]
    assert [m["type"] for m in upstream.sent] == ["end"]


def test_relay_reports_upstream_failure(monkeypatch):
    monkeypatch.setattr(stream_router, "connect_upstream", lambda url=None: FakeUpstream(refuse=True))

    with TestClient(app).websocket_connect("/ws/avatar-stream") as ws:
        message = ws.receive_json()

    assert message["type"] == "error"
    assert "Connection refused" in message["message"]
