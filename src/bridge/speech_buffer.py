"""
Caller speech buffering and the commit gate.

Inbound frames are accumulated locally and handed to the Realtime engine in one
`append` + `commit` pair per segment. The gate decides *whether* a commit may happen
(health, cooldown, in-flight, backoff, size); the orchestrator decides *when* (silence,
max turn duration, trickle cadence, stop).
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol

import structlog

from src.bridge.audio import PROTOCOL_MIN_COMMIT_MS, duration_ms_to_bytes, get_audio_duration_ms

logger = structlog.get_logger(__name__)


class CommitCause(str, Enum):
    TRICKLE = "trickle"
    SILENCE = "silence"
    MAX_DURATION = "max_duration"
    STOP = "stop"

    @property
    def ends_turn(self) -> bool:
        return self is not CommitCause.TRICKLE


@dataclass(frozen=True)
class SpeechSegment:
    """Snapshot of the buffered caller audio."""
    audio: bytes
    started_at: Optional[float]

    @property
    def byte_length(self) -> int:
        return len(self.audio)

    @property
    def duration_ms(self) -> float:
        return get_audio_duration_ms(self.audio)


@dataclass(frozen=True)
class CommitEvent:
    """One flush of a speech segment into the engine."""
    cause: CommitCause
    respond: bool
    timestamp: float
    byte_length: int
    duration_ms: float


class CommitSink(Protocol):
    """What the gate needs from the AI session."""

    @property
    def is_healthy(self) -> bool: ...

    @property
    def response_active(self) -> bool: ...

    def append_audio(self, audio: bytes) -> bool: ...

    def commit_audio(self) -> bool: ...

    def request_response(self, instructions: Optional[str] = None) -> bool: ...


class SpeechBuffer:
    """
    Accumulates caller audio for the current turn.

    Before a turn opens, non-speech frames only feed a short pre-roll ring so the
    first syllable is not clipped; they never count toward commit size. The first
    speech frame opens the turn and everything after it is kept until a commit.
    """

    def __init__(self, *, preroll_bytes: int = 0, max_bytes: Optional[int] = None):
        self._preroll_bytes = max(0, preroll_bytes)
        self._max_bytes = max_bytes
        self._audio = bytearray()
        self._preroll = bytearray()
        self.turn_started_at: Optional[float] = None
        self.segment_started_at: Optional[float] = None
        self.bytes_since_commit = 0
        self.dropped_bytes = 0

    @property
    def turn_open(self) -> bool:
        return self.turn_started_at is not None

    @property
    def byte_length(self) -> int:
        return len(self._audio)

    @property
    def duration_ms(self) -> float:
        return get_audio_duration_ms(self._audio)

    def append(self, frame: bytes, *, speech: bool, now: float) -> None:
        if not frame:
            return

        if not self.turn_open:
            if not speech:
                if self._preroll_bytes:
                    self._preroll.extend(frame)
                    excess = len(self._preroll) - self._preroll_bytes
                    if excess > 0:
                        del self._preroll[:excess]
                return
            self.turn_started_at = now
            added = bytes(self._preroll) + frame
            self._preroll.clear()
        else:
            added = frame

        if not self._audio:
            self.segment_started_at = now
        self._audio.extend(added)
        self.bytes_since_commit += len(added)

        if self._max_bytes is not None and len(self._audio) > self._max_bytes:
            excess = len(self._audio) - self._max_bytes
            del self._audio[:excess]
            self.dropped_bytes += excess

    def snapshot(self) -> SpeechSegment:
        return SpeechSegment(audio=bytes(self._audio), started_at=self.segment_started_at)

    def clear(self, *, end_turn: bool) -> None:
        self._audio.clear()
        self.segment_started_at = None
        self.bytes_since_commit = 0
        if end_turn:
            self.turn_started_at = None
            self._preroll.clear()


class CommitGate:
    """
    Owns the speech buffer and every rule about committing it.

    All methods are synchronous; the session adapter only queues messages, so a
    commit never yields to the event loop half-way through.
    """

    def __init__(
        self,
        session: CommitSink,
        *,
        min_commit_bytes: int,
        cooldown_ms: int,
        backoff_ms: int,
        ack_timeout_ms: int = 2000,
        preroll_ms: int = 0,
        max_buffer_ms: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._session = session
        self._min_commit_bytes = min_commit_bytes
        self._protocol_min_ms = float(PROTOCOL_MIN_COMMIT_MS)
        self._cooldown_s = cooldown_ms / 1000.0
        self._backoff_s = backoff_ms / 1000.0
        self._ack_timeout_s = ack_timeout_ms / 1000.0
        self._clock = clock

        self.buffer = SpeechBuffer(
            preroll_bytes=duration_ms_to_bytes(preroll_ms),
            max_bytes=duration_ms_to_bytes(max_buffer_ms) if max_buffer_ms else None,
        )

        self._in_flight = False
        self._in_flight_since: Optional[float] = None
        self._last_commit_at: Optional[float] = None
        self._backoff_until: Optional[float] = None

        self.commit_count = 0
        self.rejected_count = 0
        self.last_commit: Optional[CommitEvent] = None

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def turn_open(self) -> bool:
        return self.buffer.turn_open

    @property
    def last_commit_at(self) -> Optional[float]:
        return self._last_commit_at

    def accumulate(self, frame: bytes, *, speech: bool) -> None:
        self.buffer.append(frame, speech=speech, now=self._clock())

    def turn_elapsed_ms(self, now: Optional[float] = None) -> float:
        if self.buffer.turn_started_at is None:
            return 0.0
        now = self._clock() if now is None else now
        return (now - self.buffer.turn_started_at) * 1000

    def ms_since_last_commit(self, now: Optional[float] = None) -> Optional[float]:
        if self._last_commit_at is None:
            return None
        now = self._clock() if now is None else now
        return (now - self._last_commit_at) * 1000

    def in_backoff(self, now: Optional[float] = None) -> bool:
        if self._backoff_until is None:
            return False
        now = self._clock() if now is None else now
        if now >= self._backoff_until:
            self._backoff_until = None
            logger.info("Empty-commit backoff elapsed")
            return False
        return True

    def cooldown_elapsed(self, now: Optional[float] = None) -> bool:
        if self._last_commit_at is None:
            return True
        now = self._clock() if now is None else now
        return (now - self._last_commit_at) >= self._cooldown_s

    def can_commit(self, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        self._expire_in_flight(now)
        return (
            self._session.is_healthy
            and not self._in_flight
            and self.cooldown_elapsed(now)
            and not self.in_backoff(now)
            and self.buffer.byte_length >= self._min_commit_bytes
        )

    def commit(self, cause: CommitCause, *, respond: bool) -> Optional[CommitEvent]:
        """
        Flush the buffered segment into the engine.

        Returns the CommitEvent, or None when nothing was committed. A segment below
        the protocol minimum is kept so it can keep growing.
        """
        now = self._clock()
        segment = self.buffer.snapshot()

        if segment.duration_ms < self._protocol_min_ms:
            self.rejected_count += 1
            logger.debug(
                "Commit rejected (segment below protocol minimum)",
                cause=cause.value,
                duration_ms=round(segment.duration_ms, 1),
                min_ms=self._protocol_min_ms,
            )
            return None

        event: Optional[CommitEvent] = None
        try:
            if self._session.append_audio(segment.audio) and self._session.commit_audio():
                requested = False
                if respond and cause != CommitCause.TRICKLE and not self._session.response_active:
                    requested = self._session.request_response()
                event = CommitEvent(
                    cause=cause,
                    respond=requested,
                    timestamp=now,
                    byte_length=segment.byte_length,
                    duration_ms=segment.duration_ms,
                )
                self._in_flight = True
                self._in_flight_since = now
                self.commit_count += 1
                self.last_commit = event
            else:
                logger.warning("Commit not sent (session unavailable)", cause=cause.value)
        finally:
            self.buffer.clear(end_turn=cause.ends_turn)
            self._last_commit_at = now

        if event:
            logger.info(
                "Committed caller audio",
                cause=cause.value,
                respond=event.respond,
                bytes=event.byte_length,
                duration_ms=round(event.duration_ms, 1),
            )
        return event

    def flush_on_stop(self) -> Optional[CommitEvent]:
        """
        Final commit at call end.

        The tail goes out only if a regular commit could be sent right now apart from
        the size floor (it only needs the protocol minimum). Otherwise it is discarded.
        """
        now = self._clock()
        self._expire_in_flight(now)
        event = None
        if (
            self.buffer.byte_length
            and self._session.is_healthy
            and not self._in_flight
            and self.cooldown_elapsed(now)
            and not self.in_backoff(now)
            and self.buffer.duration_ms >= self._protocol_min_ms
        ):
            event = self.commit(CommitCause.STOP, respond=False)
        elif self.buffer.byte_length:
            logger.debug(
                "Final segment discarded",
                bytes=self.buffer.byte_length,
                in_flight=self._in_flight,
            )
        self.discard()
        return event

    def on_commit_acknowledged(self) -> None:
        self._in_flight = False
        self._in_flight_since = None

    def on_commit_failed(self) -> None:
        self._in_flight = False
        self._in_flight_since = None

    def on_empty_commit_error(self) -> None:
        now = self._clock()
        self._backoff_until = now + self._backoff_s
        self._in_flight = False
        self._in_flight_since = None
        discarded = self.buffer.byte_length
        self.buffer.clear(end_turn=False)
        logger.warning(
            "Empty commit reported; backing off",
            backoff_ms=int(self._backoff_s * 1000),
            discarded_bytes=discarded,
        )

    def discard(self) -> None:
        self.buffer.clear(end_turn=True)

    def _expire_in_flight(self, now: float) -> None:
        if not self._in_flight or self._in_flight_since is None:
            return
        if (now - self._in_flight_since) >= self._ack_timeout_s:
            logger.warning(
                "Commit acknowledgment timed out",
                waited_ms=int((now - self._in_flight_since) * 1000),
            )
            self._in_flight = False
            self._in_flight_since = None
