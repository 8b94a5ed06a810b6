"""
Tests for the outbound playback pacer.
"""

import asyncio
import base64
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.bridge.playback import PlaybackPacer
from src.bridge.twilio_protocol import TwilioProtocolHandler, TwilioStartEvent


def _protocol() -> TwilioProtocolHandler:
    protocol = TwilioProtocolHandler()
    protocol.handle_start(TwilioStartEvent(
        stream_sid="MZ123",
        call_sid="CA456",
        account_sid="AC789",
        tracks=["inbound"],
    ))
    return protocol


def _sent(send_message: AsyncMock) -> list[dict]:
    return [json.loads(c.args[0]) for c in send_message.await_args_list]


def _frames(send_message: AsyncMock) -> list[bytes]:
    return [
        base64.b64decode(m["media"]["payload"])
        for m in _sent(send_message)
        if m["event"] == "media"
    ]


@pytest.fixture
def send_message():
    return AsyncMock()


@pytest.fixture
def pacer(send_message):
    return PlaybackPacer(
        send_message,
        _protocol(),
        prebuffer_frames=3,
        high_water_frames=5,
        max_burst_frames=3,
        max_queue_frames=10,
    )


async def drain(pacer: PlaybackPacer, ticks: int = 50) -> None:
    for _ in range(ticks):
        await pacer.tick()


class TestReframing:
    @pytest.mark.asyncio
    async def test_unaligned_chunks_pad_only_last_frame(self, pacer, send_message):
        audio = bytes(range(100)) + bytes(range(100, 200)) + bytes(range(50)) * 3
        pacer.enqueue(audio[:100])
        pacer.enqueue(audio[100:200])
        pacer.enqueue(audio[200:])
        assert pacer.queue_depth == 2

        pacer.mark_utterance_done()
        await drain(pacer)

        frames = _frames(send_message)
        assert [len(f) for f in frames] == [160, 160, 160]
        assert frames[0] + frames[1] == audio[:320]
        assert frames[2][:30] == audio[320:]
        assert frames[2][30:] == b"\xff" * 130

    def test_flush_without_remainder_is_noop(self, pacer):
        pacer.enqueue(b"\x01" * 320)
        pacer.flush()

        assert pacer.queue_depth == 2


class TestPacing:
    @pytest.mark.asyncio
    async def test_waits_for_prebuffer(self, pacer, send_message):
        pacer.enqueue(b"\x01" * 320)

        assert await pacer.tick() == 0
        assert pacer.prebuffer_started is False

        pacer.enqueue(b"\x01" * 160)
        assert await pacer.tick() == 1
        assert pacer.prebuffer_started is True

    @pytest.mark.asyncio
    async def test_short_finished_utterance_still_plays(self, pacer, send_message):
        pacer.enqueue(b"\x01" * 160)
        pacer.mark_utterance_done()

        assert await pacer.tick() == 1
        events = [m["event"] for m in _sent(send_message)]
        assert events == ["media", "mark"]
        assert pacer.is_playing is False

    @pytest.mark.asyncio
    async def test_burst_above_high_water(self, pacer):
        pacer.enqueue(b"\x01" * 160 * 8)

        assert await pacer.tick() == 3
        assert await pacer.tick() == 1

    @pytest.mark.asyncio
    async def test_tick_never_exceeds_burst(self, pacer):
        pacer.enqueue(b"\x01" * 160 * 40)

        while pacer.queue_depth:
            assert await pacer.tick() <= pacer.max_burst_frames

    @pytest.mark.asyncio
    async def test_mark_does_not_use_frame_budget(self, pacer, send_message):
        pacer.enqueue(b"\x01" * 160 * 3)
        pacer.mark_utterance_done()

        await drain(pacer, 3)

        events = [m["event"] for m in _sent(send_message)]
        assert events == ["media", "media", "media", "mark"]
        assert pacer.marks_sent == 1

    @pytest.mark.asyncio
    async def test_next_utterance_prebuffers_again(self, pacer, send_message):
        pacer.enqueue(b"\x01" * 160 * 3)
        pacer.mark_utterance_done()
        await drain(pacer, 3)

        pacer.enqueue(b"\x02" * 160)
        assert await pacer.tick() == 0

    @pytest.mark.asyncio
    async def test_mark_callback_gets_name_and_label(self, send_message):
        on_mark_sent = MagicMock()
        pacer = PlaybackPacer(send_message, _protocol(), prebuffer_frames=1, on_mark_sent=on_mark_sent)

        pacer.enqueue(b"\x01" * 160)
        pacer.mark_utterance_done(label="goodbye")
        await drain(pacer, 2)

        on_mark_sent.assert_called_once_with("g0_m1", "goodbye")
        assert _sent(send_message)[-1]["mark"]["name"] == "g0_m1"


class TestCapacity:
    def test_queue_never_exceeds_cap(self, pacer):
        pacer.enqueue(b"\x01" * 160 * 15)

        assert pacer.queue_depth == 10
        assert pacer.dropped_frames == 5

    @pytest.mark.asyncio
    async def test_oldest_frames_dropped(self, pacer, send_message):
        for i in range(12):
            pacer.enqueue(bytes([i]) * 160)

        await drain(pacer)

        frames = _frames(send_message)
        assert len(frames) == 10
        assert frames[0] == bytes([2]) * 160

    def test_marks_survive_overflow(self, pacer):
        pacer.enqueue(b"\x01" * 160)
        pacer.mark_utterance_done()
        pacer.enqueue(b"\x02" * 160 * 12)

        assert pacer.queue_depth == 10
        assert pacer.is_playing is True


class TestClearAndDestroy:
    def test_clear(self, pacer):
        pacer.enqueue(b"\x01" * 500)
        pacer.mark_utterance_done()

        assert pacer.clear() == 4
        assert pacer.queue_depth == 0
        assert pacer.is_playing is False

    @pytest.mark.asyncio
    async def test_destroy_empties_and_rejects_new_audio(self, pacer, send_message):
        pacer.start()
        pacer.enqueue(b"\x01" * 160 * 2)

        await pacer.destroy()

        assert pacer.is_closed is True
        assert pacer.queue_depth == 0
        assert pacer.enqueue(b"\x01" * 160 * 5) == 0
        assert pacer.queue_depth == 0
        assert await pacer.tick() == 0

    @pytest.mark.asyncio
    async def test_run_loop_plays_queue(self, send_message):
        pacer = PlaybackPacer(send_message, _protocol(), frame_ms=5, prebuffer_frames=2)
        pacer.start()
        pacer.enqueue(b"\x01" * 160 * 4)
        pacer.mark_utterance_done()

        for _ in range(100):
            if not pacer.is_playing:
                break
            await asyncio.sleep(0.01)

        await pacer.destroy()
        assert pacer.frames_sent == 4
        assert pacer.marks_sent == 1

    @pytest.mark.asyncio
    async def test_run_loop_survives_send_failure(self):
        calls = []

        async def flaky_send(message: str) -> None:
            calls.append(message)
            if len(calls) == 1:
                raise RuntimeError("socket write failed")

        pacer = PlaybackPacer(AsyncMock(side_effect=flaky_send), _protocol(), frame_ms=5, prebuffer_frames=2)
        pacer.start()
        pacer.enqueue(b"\x01" * 160 * 4)
        pacer.mark_utterance_done()

        for _ in range(100):
            if not pacer.is_playing:
                break
            await asyncio.sleep(0.01)

        await pacer.destroy()
        assert pacer.tick_errors == 1
        assert pacer.frames_sent == 3
        assert pacer.marks_sent == 1
