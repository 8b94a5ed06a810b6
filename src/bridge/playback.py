"""
Outbound audio pacer.

Synthesized audio arrives in arbitrarily sized chunks; Twilio wants 160-byte mu-law
frames at (roughly) real-time rate. The pacer reframes, queues and releases frames on
a drift-corrected 20ms clock. A short prebuffer keeps speech continuous, and when the
queue backs up it sends small bursts to catch up instead of growing latency forever.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

import structlog

from src.bridge.audio import FRAME_DURATION_MS, pad_frame, split_frames
from src.bridge.twilio_protocol import TwilioProtocolHandler

logger = structlog.get_logger(__name__)

_DROP_LOG_EVERY = 50


@dataclass(frozen=True)
class _PlaybackMark:
    """Queued marker: send a Twilio mark once every frame before it is sent."""
    label: Optional[str] = None


_QueueItem = Union[bytes, _PlaybackMark]


class PlaybackPacer:
    """
    Paced frame queue for one call.

    Args:
        send_message: Coroutine that writes one JSON message to the Twilio socket.
        protocol: Builds media / mark messages for the current stream.
        frame_ms: Pacing interval.
        prebuffer_frames: Frames to accumulate before an utterance starts playing.
        high_water_frames: Queue depth above which a tick sends a burst.
        max_burst_frames: Max frames per tick when bursting.
        max_queue_frames: Hard cap; the oldest frames are dropped beyond it.
        on_mark_sent: Called with (mark_name, label) after each mark goes out.
    """

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        protocol: TwilioProtocolHandler,
        *,
        frame_ms: int = FRAME_DURATION_MS,
        prebuffer_frames: int = 6,
        high_water_frames: int = 25,
        max_burst_frames: int = 3,
        max_queue_frames: int = 500,
        on_mark_sent: Optional[Callable[[str, Optional[str]], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._send_message = send_message
        self._protocol = protocol
        self.frame_ms = frame_ms
        self.prebuffer_frames = max(0, prebuffer_frames)
        self.high_water_frames = high_water_frames
        self.max_burst_frames = max(1, max_burst_frames)
        self.max_queue_frames = max(1, max_queue_frames)
        self._on_mark_sent = on_mark_sent
        self._clock = clock

        self._queue: deque[_QueueItem] = deque()
        self._frame_count = 0
        self._marks_queued = 0
        self._remainder = b""

        self.prebuffer_started = False
        self.utterance_active = False

        self._task: Optional[asyncio.Task] = None
        self._closed = False

        self.frames_sent = 0
        self.marks_sent = 0
        self.dropped_frames = 0
        self.late_resets = 0
        self.tick_errors = 0

    @property
    def queue_depth(self) -> int:
        """Queued frames (marks not counted)."""
        return self._frame_count

    @property
    def is_playing(self) -> bool:
        return bool(self._frame_count or self._marks_queued or self._remainder)

    @property
    def is_closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(self, chunk: bytes) -> int:
        """Reframe `chunk` into the queue. Returns the number of whole frames added."""
        if self._closed or not chunk:
            return 0

        frames, self._remainder = split_frames(self._remainder + chunk)
        for frame in frames:
            self._push_frame(frame)
        if frames or self._remainder:
            self.utterance_active = True
        return len(frames)

    def flush(self) -> None:
        """Pad and queue the trailing partial frame, if any."""
        if self._closed or not self._remainder:
            return
        self._push_frame(pad_frame(self._remainder))
        self._remainder = b""

    def mark_utterance_done(self, label: Optional[str] = None) -> None:
        """Close the current utterance: flush, then queue a mark after its last frame."""
        if self._closed:
            return
        self.flush()
        self._queue.append(_PlaybackMark(label=label))
        self._marks_queued += 1

    def clear(self) -> int:
        """Discard everything not yet sent. Returns the number of frames discarded."""
        discarded = self._frame_count
        self._queue.clear()
        self._frame_count = 0
        self._marks_queued = 0
        self._remainder = b""
        self.prebuffer_started = False
        self.utterance_active = False
        if discarded:
            logger.info("Playback queue cleared", discarded_frames=discarded)
        return discarded

    def _push_frame(self, frame: bytes) -> None:
        if self._frame_count >= self.max_queue_frames:
            self._drop_oldest_frame()
        self._queue.append(frame)
        self._frame_count += 1

    def _drop_oldest_frame(self) -> None:
        for index, item in enumerate(self._queue):
            if isinstance(item, bytes):
                del self._queue[index]
                self._frame_count -= 1
                self.dropped_frames += 1
                if self.dropped_frames == 1 or self.dropped_frames % _DROP_LOG_EVERY == 0:
                    logger.warning(
                        "Playback queue full; dropping oldest frames",
                        dropped_frames=self.dropped_frames,
                        max_queue_frames=self.max_queue_frames,
                    )
                return

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def tick(self) -> int:
        """
        One pacing step. Returns the number of audio frames sent.

        Marks at the head of the queue go out without using the frame budget.
        """
        if self._closed:
            return 0

        if not self._queue:
            self.prebuffer_started = False
            return 0

        if not self.prebuffer_started:
            if self._frame_count < self.prebuffer_frames and not self._marks_queued:
                return 0
            self.prebuffer_started = True

        budget = self.max_burst_frames if self._frame_count > self.high_water_frames else 1
        sent = 0
        while self._queue:
            head = self._queue[0]
            if isinstance(head, _PlaybackMark):
                self._queue.popleft()
                self._marks_queued -= 1
                await self._send_mark(head)
                # Next utterance prebuffers again.
                self.prebuffer_started = False
                if not self._frame_count:
                    self.utterance_active = False
                break

            if sent >= budget:
                break
            self._queue.popleft()
            self._frame_count -= 1
            await self._send_message(self._protocol.create_media(head))
            self.frames_sent += 1
            sent += 1

        return sent

    async def _send_mark(self, mark: _PlaybackMark) -> None:
        name = self._protocol.next_mark_name()
        if not name:
            return
        message = self._protocol.create_mark(name)
        await self._send_message(message)
        self.marks_sent += 1
        if self._on_mark_sent:
            self._on_mark_sent(name, mark.label)

    # ------------------------------------------------------------------
    # Task lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._closed:
            return
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def destroy(self) -> None:
        self._closed = True
        self.clear()
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _run(self) -> None:
        interval = self.frame_ms / 1000.0
        next_tick = self._clock()

        try:
            while not self._closed:
                try:
                    await self.tick()
                except Exception as e:
                    self.tick_errors += 1
                    logger.error("Playback tick failed", error=str(e), tick_errors=self.tick_errors)

                next_tick += interval
                delay = next_tick - self._clock()
                if delay < -2 * interval:
                    # More than two frames behind: resync instead of bursting silence.
                    self.late_resets += 1
                    if self.late_resets % 10 == 0:
                        logger.warning(
                            "Playback pacer reset timing",
                            late_resets=self.late_resets,
                            behind_ms=round(-delay * 1000, 1),
                        )
                    next_tick = self._clock()
                    delay = 0.0
                await asyncio.sleep(max(0.0, delay))
        except asyncio.CancelledError:
            pass
