"""
Tests for the speech buffer and commit gate.
"""

from typing import Optional

import pytest

from src.bridge.speech_buffer import CommitCause, CommitGate, SpeechBuffer

SILENCE = b"\xff" * 160
SPEECH = b"\x10" * 160


class FakeSession:
    """Records what the gate sends; mimics the adapter's response gating."""

    def __init__(self):
        self.is_healthy = True
        self.response_active = False
        self.appended: list[bytes] = []
        self.commits = 0
        self.requests = 0

    def append_audio(self, audio: bytes) -> bool:
        if not self.is_healthy:
            return False
        self.appended.append(audio)
        return True

    def commit_audio(self) -> bool:
        self.commits += 1
        return True

    def request_response(self, instructions: Optional[str] = None) -> bool:
        if self.response_active:
            return False
        self.requests += 1
        self.response_active = True
        return True


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def gate(session, clock):
    return CommitGate(
        session,
        min_commit_bytes=1600,
        cooldown_ms=300,
        backoff_ms=1500,
        ack_timeout_ms=2000,
        clock=clock,
    )


def speak(gate, clock, frames: int, frame=SPEECH):
    for _ in range(frames):
        gate.accumulate(frame, speech=frame is SPEECH)
        clock.advance_ms(20)


class TestSpeechBuffer:
    def test_silence_never_opens_turn(self):
        buffer = SpeechBuffer(preroll_bytes=800)

        for i in range(50):
            buffer.append(SILENCE, speech=False, now=float(i))

        assert buffer.turn_open is False
        assert buffer.byte_length == 0

    def test_preroll_prepended_on_first_speech(self):
        buffer = SpeechBuffer(preroll_bytes=320)
        for i in range(5):
            buffer.append(bytes([0xF0 + i]) * 160, speech=False, now=float(i))

        buffer.append(SPEECH, speech=True, now=10.0)

        audio = buffer.snapshot().audio
        assert buffer.turn_open is True
        assert buffer.turn_started_at == 10.0
        assert len(audio) == 480
        assert audio[:160] == bytes([0xF3]) * 160
        assert audio[-160:] == SPEECH

    def test_silence_inside_turn_is_kept(self):
        buffer = SpeechBuffer()
        buffer.append(SPEECH, speech=True, now=0.0)
        buffer.append(SILENCE, speech=False, now=0.02)

        assert buffer.byte_length == 320
        assert buffer.bytes_since_commit == 320

    def test_max_bytes_drops_oldest(self):
        buffer = SpeechBuffer(max_bytes=320)
        for i in range(3):
            buffer.append(bytes([i]) * 160, speech=True, now=float(i))

        assert buffer.byte_length == 320
        assert buffer.dropped_bytes == 160
        assert buffer.snapshot().audio[:160] == bytes([1]) * 160

    def test_clear_keeps_turn_unless_asked(self):
        buffer = SpeechBuffer()
        buffer.append(SPEECH, speech=True, now=0.0)

        buffer.clear(end_turn=False)
        assert buffer.turn_open is True
        assert buffer.byte_length == 0

        buffer.clear(end_turn=True)
        assert buffer.turn_open is False


class TestCanCommit:
    def test_silent_caller_never_commits(self, gate, session, clock):
        speak(gate, clock, 500, frame=SILENCE)

        assert gate.can_commit() is False
        assert session.commits == 0

    def test_needs_min_bytes(self, gate, clock):
        speak(gate, clock, 9)
        assert gate.can_commit() is False

        speak(gate, clock, 1)
        assert gate.can_commit() is True

    def test_unhealthy_session_blocks(self, gate, session, clock):
        speak(gate, clock, 20)
        session.is_healthy = False

        assert gate.can_commit() is False

    def test_in_flight_blocks_until_ack(self, gate, clock):
        speak(gate, clock, 20)
        gate.commit(CommitCause.TRICKLE, respond=False)
        speak(gate, clock, 20)

        assert gate.in_flight is True
        assert gate.can_commit() is False

        gate.on_commit_acknowledged()
        assert gate.can_commit() is True

    def test_in_flight_expires_after_ack_timeout(self, gate, clock):
        speak(gate, clock, 20)
        gate.commit(CommitCause.TRICKLE, respond=False)
        speak(gate, clock, 20)

        clock.advance_ms(2000)

        assert gate.can_commit() is True
        assert gate.in_flight is False

    def test_cooldown_between_commits(self, gate, clock):
        speak(gate, clock, 10)
        gate.commit(CommitCause.TRICKLE, respond=False)
        gate.on_commit_acknowledged()
        speak(gate, clock, 10)  # 200ms later

        assert gate.can_commit() is False
        clock.advance_ms(101)
        assert gate.can_commit() is True


class TestCommit:
    def test_below_protocol_minimum_is_rejected_and_kept(self, gate, session, clock):
        speak(gate, clock, 4)  # 80ms

        assert gate.commit(CommitCause.SILENCE, respond=True) is None
        assert session.commits == 0
        assert gate.rejected_count == 1
        assert gate.buffer.byte_length == 640

    def test_turn_commit_requests_response(self, gate, session, clock):
        speak(gate, clock, 20)

        event = gate.commit(CommitCause.SILENCE, respond=True)

        assert event is not None
        assert event.cause == CommitCause.SILENCE
        assert event.respond is True
        assert event.byte_length == 3200
        assert event.duration_ms == 400
        assert session.appended == [SPEECH * 20]
        assert session.commits == 1
        assert session.requests == 1
        assert gate.buffer.byte_length == 0
        assert gate.turn_open is False
        assert gate.in_flight is True
        assert gate.last_commit is event

    def test_no_second_response_while_one_is_outstanding(self, gate, session, clock):
        session.response_active = True
        speak(gate, clock, 20)

        event = gate.commit(CommitCause.MAX_DURATION, respond=True)

        assert event.respond is False
        assert session.requests == 0

    def test_trickle_never_requests_response(self, gate, session, clock):
        speak(gate, clock, 20)

        event = gate.commit(CommitCause.TRICKLE, respond=True)

        assert event.respond is False
        assert session.requests == 0
        # Trickle keeps the turn (and its timer) open.
        assert gate.turn_open is True
        assert gate.turn_elapsed_ms() == pytest.approx(400)

    def test_failed_send_clears_buffer_without_in_flight(self, gate, session, clock):
        speak(gate, clock, 20)
        session.is_healthy = False

        assert gate.commit(CommitCause.SILENCE, respond=True) is None
        assert gate.buffer.byte_length == 0
        assert gate.in_flight is False
        assert gate.last_commit_at == clock.now


class TestEmptyCommitBackoff:
    def test_backoff_blocks_then_resumes(self, gate, session, clock):
        speak(gate, clock, 20)
        gate.commit(CommitCause.SILENCE, respond=False)

        gate.on_empty_commit_error()
        assert gate.in_flight is False

        speak(gate, clock, 20)
        assert gate.in_backoff() is True
        assert gate.can_commit() is False

        clock.advance_ms(1200)
        assert gate.can_commit() is True
        assert gate.commit(CommitCause.SILENCE, respond=False) is not None
        assert session.commits == 2

    def test_backoff_discards_buffer_but_keeps_turn(self, gate, clock):
        speak(gate, clock, 20)

        gate.on_empty_commit_error()

        assert gate.buffer.byte_length == 0
        assert gate.turn_open is True


class TestFlushOnStop:
    def test_flushes_usable_audio(self, gate, session, clock):
        speak(gate, clock, 6)  # 120ms: below min_commit_bytes, above protocol minimum

        event = gate.flush_on_stop()

        assert event is not None
        assert event.cause == CommitCause.STOP
        assert event.respond is False
        assert session.requests == 0
        assert gate.buffer.byte_length == 0

    def test_discards_tiny_tail(self, gate, session, clock):
        speak(gate, clock, 3)

        assert gate.flush_on_stop() is None
        assert session.commits == 0
        assert gate.buffer.byte_length == 0
        assert gate.turn_open is False

    def test_respects_backoff(self, gate, session, clock):
        gate.on_empty_commit_error()
        speak(gate, clock, 20)

        assert gate.flush_on_stop() is None
        assert session.commits == 0

    def test_discards_tail_while_previous_commit_unacknowledged(self, gate, session, clock):
        speak(gate, clock, 20)
        gate.commit(CommitCause.TRICKLE, respond=False)
        speak(gate, clock, 6)

        assert gate.flush_on_stop() is None
        assert session.commits == 1
        assert gate.buffer.byte_length == 0

    def test_discards_tail_inside_cooldown(self, gate, session, clock):
        speak(gate, clock, 20)
        gate.commit(CommitCause.TRICKLE, respond=False)
        gate.on_commit_acknowledged()
        speak(gate, clock, 6)  # 120ms later

        assert gate.flush_on_stop() is None
        assert session.commits == 1

    def test_flushes_after_ack_and_cooldown(self, gate, session, clock):
        speak(gate, clock, 20)
        gate.commit(CommitCause.TRICKLE, respond=False)
        gate.on_commit_acknowledged()
        speak(gate, clock, 16)  # 320ms later

        event = gate.flush_on_stop()

        assert event is not None
        assert event.cause == CommitCause.STOP
        assert session.commits == 2
