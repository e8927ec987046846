"""
Avatar streaming protocol and the client for the Ditto streaming socket.

Client -> server: init, a series of audio_chunk messages, end.
Server -> client: frame messages, then a terminal complete or error.
"""

import asyncio
import base64
import binascii
import json
import logging
from array import array
from dataclasses import dataclass
from typing import AsyncIterator, Iterator, Optional, Sequence, Union

import websockets
from websockets.exceptions import ConnectionClosedError

from config import (
    DITTO_WS_URL,
    STREAM_CHUNK_DELAY_SEC,
    STREAM_CHUNKSIZE,
    STREAM_CROP_SCALE,
    STREAM_INIT_DELAY_SEC,
    STREAM_MAX_SIZE,
    STREAM_SAMPLE_RATE,
    STREAM_SAMPLES_PER_MESSAGE,
)
from errors import StreamProtocolError

logger = logging.getLogger(__name__)

FLOAT32_BYTES = 4


@dataclass(frozen=True)
class StreamFrame:
    data: str
    format: str = "jpeg"


@dataclass(frozen=True)
class StreamComplete:
    pass


@dataclass(frozen=True)
class StreamError:
    message: str


StreamEvent = Union[StreamFrame, StreamComplete, StreamError]
TERMINAL_EVENTS = (StreamComplete, StreamError)


def build_init_message(image_b64: str, avatar_id: Optional[str] = None,
                       max_size: int = STREAM_MAX_SIZE, crop_scale: float = STREAM_CROP_SCALE) -> dict:
    return {
        "type": "init",
        "image_b64": image_b64,
        "avatar_id": avatar_id,
        "max_size": max_size,
        "crop_scale": crop_scale,
    }


def build_audio_chunk_message(pcm: bytes, sample_rate: int = STREAM_SAMPLE_RATE,
                              chunksize: Sequence[int] = STREAM_CHUNKSIZE) -> dict:
    return {
        "type": "audio_chunk",
        "audio_b64": base64.b64encode(pcm).decode("ascii"),
        "sample_rate": sample_rate,
        "chunksize": list(chunksize),
    }


def build_end_message() -> dict:
    return {"type": "end"}


def pcm_to_bytes(samples) -> bytes:
    """float32 PCM as raw bytes; accepts bytes-like input or a sequence of floats."""
    if isinstance(samples, (bytes, bytearray, memoryview)):
        return bytes(samples)
    if isinstance(samples, array) and samples.typecode == "f":
        return samples.tobytes()
    return array("f", samples).tobytes()


def iter_pcm_chunks(pcm: bytes, samples_per_message: int = STREAM_SAMPLES_PER_MESSAGE) -> Iterator[bytes]:
    step = samples_per_message * FLOAT32_BYTES
    for offset in range(0, len(pcm), step):
        yield pcm[offset:offset + step]


def _decode(raw) -> dict:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    try:
        message = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise StreamProtocolError(f"Message is not JSON: {e}")
    if not isinstance(message, dict):
        raise StreamProtocolError("Message must be a JSON object")
    return message


def parse_server_message(raw) -> StreamEvent:
    message = _decode(raw)
    kind = message.get("type")
    if kind == "frame":
        data = message.get("data")
        if not isinstance(data, str) or not data:
            raise StreamProtocolError("Frame message without data")
        return StreamFrame(data=data, format=message.get("format") or "jpeg")
    if kind == "complete":
        return StreamComplete()
    if kind == "error":
        return StreamError(message=message.get("message") or "Unknown Ditto error")
    raise StreamProtocolError(f"Unknown stream message type: {kind!r}")


def parse_client_message(raw) -> dict:
    """Validate a message sent by a browser client before it is relayed upstream."""
    message = _decode(raw)
    kind = message.get("type")
    if kind == "init":
        if not message.get("image_b64") and not message.get("avatar_id"):
            raise StreamProtocolError("init requires image_b64 or avatar_id")
    elif kind == "audio_chunk":
        audio = message.get("audio_b64")
        if not isinstance(audio, str) or not audio:
            raise StreamProtocolError("audio_chunk requires audio_b64")
        try:
            base64.b64decode(audio, validate=True)
        except (binascii.Error, ValueError):
            raise StreamProtocolError("audio_b64 is not valid base64")
        sample_rate = message.setdefault("sample_rate", STREAM_SAMPLE_RATE)
        if not isinstance(sample_rate, int) or sample_rate <= 0:
            raise StreamProtocolError("sample_rate must be a positive integer")
        message.setdefault("chunksize", list(STREAM_CHUNKSIZE))
    elif kind != "end":
        raise StreamProtocolError(f"Unknown stream message type: {kind!r}")
    return message


class DittoStreamClient:
    """Streams a portrait plus speech PCM to Ditto and yields rendered frames."""

    def __init__(self, ws_url: str = DITTO_WS_URL, connect=None, sleep=asyncio.sleep,
                 init_delay: float = STREAM_INIT_DELAY_SEC, chunk_delay: float = STREAM_CHUNK_DELAY_SEC):
        self.ws_url = ws_url
        self._connect = connect or websockets.connect
        self._sleep = sleep
        self.init_delay = init_delay
        self.chunk_delay = chunk_delay

    async def _send_audio(self, ws, pcm: bytes):
        await self._sleep(self.init_delay)
        for chunk in iter_pcm_chunks(pcm):
            await ws.send(json.dumps(build_audio_chunk_message(chunk)))
            await self._sleep(self.chunk_delay)
        await ws.send(json.dumps(build_end_message()))

    async def stream(self, image_b64: str, pcm, avatar_id: Optional[str] = None) -> AsyncIterator[StreamEvent]:
        """
        Yield server events until the stream completes, fails or the socket closes.
        Closing the generator closes the socket, which is how a stream is cancelled.
        """
        pcm = pcm_to_bytes(pcm)
        async with self._connect(self.ws_url) as ws:
            logger.info("🔌 Ditto WebSocket connected")
            await ws.send(json.dumps(build_init_message(image_b64, avatar_id)))
            sender = asyncio.create_task(self._send_audio(ws, pcm))
            try:
                async for raw in ws:
                    try:
                        event = parse_server_message(raw)
                    except StreamProtocolError as e:
                        logger.warning(f"Error parsing WebSocket message: {e}")
                        continue
                    yield event
                    if isinstance(event, TERMINAL_EVENTS):
                        break
            except ConnectionClosedError as e:
                yield StreamError(message=f"WebSocket connection failed: {e}")
            finally:
                sender.cancel()
                results = await asyncio.gather(sender, return_exceptions=True)
                for result in results:
                    if isinstance(result, Exception):
                        logger.warning(f"Audio sender stopped with error: {result}")
        logger.info("🔌 Ditto WebSocket closed")
