"""
Chunked talking-video generation.

Audio is split into chunks, at most `max_concurrent` chunks are generating at
any time, and results are handed back strictly in chunk order even when the
provider finishes them out of order. A slow early chunk holds back the later
ones (head-of-line blocking).
"""

import itertools
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from chunker import AudioChunk, ChunkPolicy, get_chunk_config
from config import CHUNK_LOOP_DELAY_SEC, MAX_CONCURRENT_CHUNKS
from errors import TalkingFiguresError
from polling import RetryPolicy, VideoFailed, VideoOutcome, VideoReady, VideoTimedOut

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobHandle:
    key: str
    job_id: str
    figure_id: Optional[str] = None
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class JobRegistry:
    """In-flight jobs keyed by request identity. Register on submit, deregister on a terminal state."""

    def __init__(self):
        self._handles: Dict[str, JobHandle] = {}

    def register(self, handle: JobHandle):
        if handle.key in self._handles:
            raise ValueError(f"Job already registered under {handle.key}")
        self._handles[handle.key] = handle

    def deregister(self, key: str) -> Optional[JobHandle]:
        return self._handles.pop(key, None)

    def get(self, key: str) -> Optional[JobHandle]:
        return self._handles.get(key)

    def in_flight(self, prefix: str = "") -> List[JobHandle]:
        return [h for k, h in self._handles.items() if k.startswith(prefix)]

    def clear_figure(self, figure_id: str):
        for key in [k for k, h in self._handles.items() if h.figure_id == figure_id]:
            del self._handles[key]

    def clear(self):
        self._handles.clear()

    def __len__(self):
        return len(self._handles)


@dataclass(frozen=True)
class ChunkResult:
    """One chunk's outcome; on failure the caller can still play `chunk` as audio only."""
    index: int
    chunk: AudioChunk
    outcome: VideoOutcome

    @property
    def ok(self) -> bool:
        return isinstance(self.outcome, VideoReady)


class ChunkedVideoGenerator:
    """
    `loop_delay` is the scheduler tick; each job is polled only once
    `poll_policy.delay_for(attempt)` has passed since its previous poll.
    """

    def __init__(self, client, max_concurrent: int = MAX_CONCURRENT_CHUNKS,
                 poll_policy: RetryPolicy = RetryPolicy(),
                 loop_delay: float = CHUNK_LOOP_DELAY_SEC,
                 sleep: Callable[[float], None] = time.sleep,
                 registry: Optional[JobRegistry] = None,
                 clock: Callable[[], float] = time.monotonic):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.client = client
        self.max_concurrent = max_concurrent
        self.poll_policy = poll_policy
        self.loop_delay = loop_delay
        self.sleep = sleep
        self.clock = clock
        self.registry = registry if registry is not None else JobRegistry()

    def generate(self, image_url: str, audio_data_url: str, figure_id: Optional[str], figure_name: str,
                 chunk_policy: ChunkPolicy = ChunkPolicy()) -> Iterator[ChunkResult]:
        config = get_chunk_config(audio_data_url, chunk_policy)
        logger.info(f"🎬 Video generation: {len(config.chunks)} chunk(s), ~{config.total_duration:.0f}s total")
        return self.run(config.chunks, image_url, figure_id, figure_name)

    def run(self, chunks: List[AudioChunk], image_url: str, figure_id: Optional[str],
            figure_name: str) -> Iterator[ChunkResult]:
        run_id = uuid.uuid4().hex
        chunks = sorted(chunks, key=lambda c: c.index)
        by_index = {c.index: c for c in chunks}
        order = [c.index for c in chunks]

        pending = iter(chunks)
        # the run's own view of its jobs; the registry only mirrors it
        in_flight: Dict[int, JobHandle] = {}
        completed: Dict[int, VideoOutcome] = {}
        attempts: Dict[int, int] = {}
        next_poll_at: Dict[int, float] = {}
        play_cursor = 0

        try:
            while play_cursor < len(order):
                # 1) fill free slots
                for chunk in itertools.islice(pending, max(0, self.max_concurrent - len(in_flight))):
                    handle, outcome = self._submit(chunk, run_id, image_url, figure_id, figure_name)
                    if handle is None:
                        completed[chunk.index] = outcome
                    else:
                        in_flight[chunk.index] = handle
                        attempts[chunk.index] = 0
                        next_poll_at[chunk.index] = self.clock() + self.poll_policy.interval

                # 2) hand over the next chunk in order
                due = order[play_cursor]
                if due in completed:
                    logger.info(f"▶️ Chunk {due} ready for playback")
                    yield ChunkResult(index=due, chunk=by_index[due], outcome=completed.pop(due))
                    play_cursor += 1
                    continue

                # 3) poll the jobs whose interval has passed, then wait one tick
                for index, handle in list(in_flight.items()):
                    if self.clock() < next_poll_at[index]:
                        continue
                    attempts[index] += 1
                    outcome = self._poll(handle, index, attempts[index])
                    if outcome is None:
                        next_poll_at[index] = self.clock() + self.poll_policy.delay_for(attempts[index])
                    else:
                        completed[index] = outcome
                        del in_flight[index]
                        self.registry.deregister(handle.key)

                self.sleep(self.loop_delay)
        finally:
            # abandoned runs leave their backend jobs running, forget them here
            for handle in in_flight.values():
                self.registry.deregister(handle.key)

    def _submit(self, chunk: AudioChunk, run_id: str, image_url: str, figure_id: Optional[str],
                figure_name: str) -> Tuple[Optional[JobHandle], Optional[VideoOutcome]]:
        """Start one chunk; returns (handle, None) for a job in flight, else (None, outcome)."""
        logger.info(f"🎬 Starting chunk {chunk.index} video generation...")
        try:
            submission = self.client.start(image_url, chunk.data_url, figure_id,
                                           f"{figure_name}_chunk{chunk.index}")
        except TalkingFiguresError as e:
            logger.error(f"❌ Chunk {chunk.index} start error: {e}")
            return None, VideoFailed(error=f"submission failed for chunk {chunk.index}: {e.message}")

        if submission.is_immediate:
            return None, VideoReady(video_url=submission.video_url, job_id=submission.job_id)
        handle = JobHandle(key=f"{run_id}:{chunk.index}", job_id=submission.job_id, figure_id=figure_id)
        self.registry.register(handle)
        return handle, None

    def _poll(self, handle: JobHandle, index: int, attempt: int) -> Optional[VideoOutcome]:
        try:
            outcome = self.client.status(handle.job_id).as_result(handle.job_id)
        except TalkingFiguresError as e:
            logger.error(f"❌ Chunk {index} poll error: {e}")
            outcome = None

        if outcome is None and attempt >= self.poll_policy.max_attempts:
            logger.warning(f"⏰ Chunk {index} timed out after {attempt} polls")
            return VideoTimedOut(job_id=handle.job_id, attempts=attempt)
        if outcome is not None:
            logger.info(f"✅ Chunk {index} finished: {type(outcome).__name__}")
        return outcome
