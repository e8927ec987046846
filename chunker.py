"""
Splits a synthesized speech track (as a data URL) into fixed-duration chunks
that can be sent to the avatar provider independently.
"""

import base64
import binascii
import io
import logging
import math
import wave
from dataclasses import dataclass, field
from typing import List, Tuple

from config import AUDIO_BYTES_PER_SECOND, DEFAULT_AUDIO_DURATION_SEC, MAX_CHUNK_DURATION_SEC
from errors import AudioParseError


@dataclass(frozen=True)
class ChunkPolicy:
    max_chunk_seconds: float = MAX_CHUNK_DURATION_SEC
    bytes_per_second: int = AUDIO_BYTES_PER_SECOND

    def __post_init__(self):
        if self.max_chunk_seconds <= 0:
            raise ValueError("max_chunk_seconds must be positive")
        if self.bytes_per_second <= 0:
            raise ValueError("bytes_per_second must be positive")


@dataclass(frozen=True)
class AudioChunk:
    index: int
    data_url: str
    start_offset_ms: int
    duration_ms: int

    @property
    def duration_sec(self) -> float:
        return self.duration_ms / 1000.0


@dataclass(frozen=True)
class ChunkConfig:
    should_chunk: bool
    chunks: List[AudioChunk] = field(default_factory=list)
    total_duration: float = 0.0


def parse_data_url(data_url: str) -> Tuple[str, bytes]:
    """Decode a base64 data URL into (mime type, bytes)."""
    if not data_url or not data_url.startswith("data:") or "," not in data_url:
        raise AudioParseError("Audio payload is not a data URL")

    header, payload = data_url.split(",", 1)
    mime = header[len("data:"):].split(";")[0] or "application/octet-stream"
    if ";base64" not in header:
        raise AudioParseError("Only base64 data URLs are supported")

    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise AudioParseError(f"Malformed base64 audio payload: {e}")
    return mime, data


def build_data_url(mime: str, data: bytes) -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def is_wav(data: bytes) -> bool:
    return len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WAVE"


def _read_wav(data: bytes):
    """Returns (params, frames) or None when the RIFF payload is not plain PCM."""
    try:
        with wave.open(io.BytesIO(data), "rb") as reader:
            params = reader.getparams()
            frames = reader.readframes(params.nframes)
    except (wave.Error, EOFError) as e:
        logging.warning(f"⚠️ WAV header unreadable, falling back to byte-rate estimate: {e}")
        return None
    if params.framerate <= 0:
        raise AudioParseError("WAV header has no sample rate")
    return params, frames


def _write_wav(params, frames: bytes) -> bytes:
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as writer:
        writer.setnchannels(params.nchannels)
        writer.setsampwidth(params.sampwidth)
        writer.setframerate(params.framerate)
        writer.writeframes(frames)
    return buffer.getvalue()


def _exact_duration(data: bytes, policy: ChunkPolicy) -> float:
    if is_wav(data):
        wav = _read_wav(data)
        if wav is not None:
            params, _ = wav
            return params.nframes / float(params.framerate)
    return len(data) / float(policy.bytes_per_second)


def estimate_audio_duration(audio_data_url: str, policy: ChunkPolicy = ChunkPolicy()) -> float:
    """Estimates the duration in seconds of a base64 audio data URL."""
    if not audio_data_url or not audio_data_url.startswith("data:"):
        return DEFAULT_AUDIO_DURATION_SEC
    _, data = parse_data_url(audio_data_url)
    return max(1.0, _exact_duration(data, policy))


def should_chunk_audio(audio_data_url: str, policy: ChunkPolicy = ChunkPolicy()) -> bool:
    return estimate_audio_duration(audio_data_url, policy) > policy.max_chunk_seconds


def _chunk_wav(mime: str, params, frames: bytes, policy: ChunkPolicy) -> List[AudioChunk]:
    frame_size = params.sampwidth * params.nchannels
    frames_per_chunk = max(1, int(round(policy.max_chunk_seconds * params.framerate)))
    total_frames = len(frames) // frame_size

    chunks = []
    for index, start in enumerate(range(0, total_frames, frames_per_chunk)):
        end = min(start + frames_per_chunk, total_frames)
        body = _write_wav(params, frames[start * frame_size:end * frame_size])
        chunks.append(AudioChunk(
            index=index,
            data_url=build_data_url(mime, body),
            start_offset_ms=int(round(start * 1000.0 / params.framerate)),
            duration_ms=int(round((end - start) * 1000.0 / params.framerate)),
        ))
    return chunks


def _chunk_bytes(mime: str, data: bytes, policy: ChunkPolicy) -> List[AudioChunk]:
    # byte-based split; good enough for constant bitrate streams
    bytes_per_chunk = max(1, int(policy.max_chunk_seconds * policy.bytes_per_second))
    chunks = []
    for index, start in enumerate(range(0, len(data), bytes_per_chunk)):
        piece = data[start:start + bytes_per_chunk]
        chunks.append(AudioChunk(
            index=index,
            data_url=build_data_url(mime, piece),
            start_offset_ms=int(round(start * 1000.0 / policy.bytes_per_second)),
            duration_ms=int(round(len(piece) * 1000.0 / policy.bytes_per_second)),
        ))
    return chunks


def chunk_audio_data(audio_data_url: str, policy: ChunkPolicy = ChunkPolicy()) -> List[AudioChunk]:
    """
    Split an audio data URL into fixed-duration chunks.

    - Every chunk but the last is exactly `max_chunk_seconds` long
    - WAV input is split on frame boundaries and each chunk gets its own header
    - Other formats are split on decoded bytes at the configured byte rate
    - Audio no longer than one chunk comes back as a single chunk
    """
    if not audio_data_url or not audio_data_url.startswith("data:"):
        # remote URL, nothing to split
        return [AudioChunk(0, audio_data_url, 0, int(DEFAULT_AUDIO_DURATION_SEC * 1000))]

    mime, data = parse_data_url(audio_data_url)
    total_duration = _exact_duration(data, policy)
    if total_duration <= policy.max_chunk_seconds:
        return [AudioChunk(0, audio_data_url, 0, int(round(total_duration * 1000)))]

    wav = _read_wav(data) if is_wav(data) else None
    if wav is not None:
        params, frames = wav
        chunks = _chunk_wav(mime, params, frames, policy)
    else:
        chunks = _chunk_bytes(mime, data, policy)

    logging.info(
        f"🎵 Split audio into {len(chunks)} chunks of ~{policy.max_chunk_seconds:g}s each "
        f"({math.ceil(total_duration)}s total)"
    )
    return chunks


def get_chunk_config(audio_data_url: str, policy: ChunkPolicy = ChunkPolicy()) -> ChunkConfig:
    """Returns the chunk layout for chunked video generation."""
    total_duration = estimate_audio_duration(audio_data_url, policy)
    should_chunk = total_duration > policy.max_chunk_seconds
    if should_chunk:
        chunks = chunk_audio_data(audio_data_url, policy)
    else:
        chunks = [AudioChunk(0, audio_data_url, 0, int(round(total_duration * 1000)))]
    return ChunkConfig(should_chunk=should_chunk, chunks=chunks, total_duration=total_duration)
