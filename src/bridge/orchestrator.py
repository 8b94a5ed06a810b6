"""
Per-call turn-taking orchestrator.

`CallBridge` is the only object `server/app.py` talks to. It owns, for one call:

- the Twilio protocol handler (call session, marks, clear)
- VAD + commit gate for the inbound leg
- the Realtime session (engine WebSocket)
- the playback pacer for the outbound leg
- the reply dedup guard and the local intent fallback

Two periodic tasks run while the call is live: the commit scheduler (`evaluate()`
every `scheduler_interval_ms`) and the pacer loop. Both are cancelled on teardown.

Engine replies stream audio before their transcript is complete, so a repeated engine
reply is only recognised when its transcript finishes. The frames already played by
then stay audible; everything still queued is cleared and the response is cancelled.
Local replies are checked before synthesis and are never partly spoken.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

import structlog

from src.bridge.config import BridgeConfig, get_config
from src.bridge.dedup import ReplyDedupGuard
from src.bridge.intents import IntentResult, LocalIntentClassifier, is_filler
from src.bridge.playback import PlaybackPacer
from src.bridge.prompt_utils import greeting_instructions, resolve_instructions
from src.bridge.realtime_session import (
    ErrorKind,
    RealtimeSession,
    SessionConnectError,
    SessionListener,
)
from src.bridge.speech_buffer import CommitCause, CommitEvent, CommitGate
from src.bridge.tts import SpeechSynthesizer
from src.bridge.twilio_protocol import (
    CallLifecycle,
    TwilioEventType,
    TwilioMarkEvent,
    TwilioMediaEvent,
    TwilioProtocolHandler,
    TwilioStartEvent,
    parse_twilio_message,
)
from src.bridge.vad import EnergyVAD

logger = structlog.get_logger(__name__)

_GOODBYE_LABEL = "goodbye"

SessionFactory = Callable[[BridgeConfig, SessionListener], RealtimeSession]


def _default_session_factory(config: BridgeConfig, listener: SessionListener) -> RealtimeSession:
    return RealtimeSession(config, listener, instructions=resolve_instructions(config))


class CallBridge(SessionListener):
    """
    Twilio Media Streams <-> OpenAI Realtime bridge for a single call.

    Interface used by `server/app.py`:
    - `handle_message(raw_message)`
    - `stop()`
    """

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        *,
        config: Optional[BridgeConfig] = None,
        close_transport: Optional[Callable[[], Awaitable[None]]] = None,
        session_factory: Optional[SessionFactory] = None,
        synthesizer: Optional[SpeechSynthesizer] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or get_config()
        self._send_message = send_message
        self._close_transport = close_transport
        self._clock = clock
        self._log = logger

        cfg = self.config
        self._protocol = TwilioProtocolHandler()
        self.session = (session_factory or _default_session_factory)(cfg, self)
        self.vad = EnergyVAD(
            threshold=cfg.vad_energy_threshold,
            hangover_ms=cfg.vad_hangover_ms,
            calibration_ms=cfg.vad_calibration_ms,
            calibration_offset=cfg.vad_calibration_offset,
            clock=clock,
        )
        self.gate = CommitGate(
            self.session,
            min_commit_bytes=cfg.min_commit_bytes,
            cooldown_ms=cfg.commit_cooldown_ms,
            backoff_ms=cfg.empty_commit_backoff_ms,
            ack_timeout_ms=cfg.commit_ack_timeout_ms,
            preroll_ms=cfg.preroll_ms,
            max_buffer_ms=cfg.max_turn_ms + cfg.silence_duration_ms,
            clock=clock,
        )
        self.pacer = PlaybackPacer(
            self._send_twilio,
            self._protocol,
            frame_ms=cfg.playback_frame_ms,
            prebuffer_frames=cfg.prebuffer_frames,
            high_water_frames=cfg.high_water_frames,
            max_burst_frames=cfg.max_burst_frames,
            max_queue_frames=cfg.max_queue_frames,
            on_mark_sent=self._on_mark_sent,
        )
        self.dedup = ReplyDedupGuard(cfg.reply_cooldown_ms, clock=clock)
        self.intents = LocalIntentClassifier(
            heard_check_cooldown_ms=cfg.heard_check_cooldown_ms,
            greet_on_hello=cfg.greet_on_hello,
            clock=clock,
        )
        self.synthesizer = synthesizer or SpeechSynthesizer(cfg)

        self._is_running = False
        self._stopping = False
        self._scheduler_task: Optional[asyncio.Task] = None
        self._teardown_task: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()

        # Engine audio handling
        self._ignore_audio = False
        self._utterance_open = False
        self._speech_run = 0
        self._hangup_mark: Optional[str] = None

        self.commits: dict[str, int] = {cause.value: 0 for cause in CommitCause}
        self.barge_ins = 0
        self.local_replies = 0

    @property
    def call_sid(self) -> str:
        return self._protocol.call_sid

    @property
    def stream_sid(self) -> str:
        return self._protocol.stream_sid

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def lifecycle(self) -> Optional[CallLifecycle]:
        return self._protocol.call.lifecycle if self._protocol.call else None

    # ------------------------------------------------------------------
    # Twilio inbound
    # ------------------------------------------------------------------

    async def handle_message(self, raw_message: str) -> None:
        try:
            event_type, event = parse_twilio_message(raw_message)
        except ValueError as e:
            self._log.warning("Failed to parse Twilio message", error=str(e))
            return

        if event_type == TwilioEventType.START:
            await self._handle_start(event)
        elif event_type == TwilioEventType.MEDIA:
            await self._handle_media(event)
        elif event_type == TwilioEventType.MARK:
            await self._handle_mark(event)
        elif event_type == TwilioEventType.STOP:
            self._log.info("Twilio stream stopped")
            await self.stop("twilio_stop")
        else:
            self._log.debug("Twilio connected")

    async def _handle_start(self, event: TwilioStartEvent) -> None:
        if self._protocol.call is not None:
            self._log.warning("Duplicate start event ignored", stream_sid=event.stream_sid)
            return

        self._protocol.handle_start(event)
        self._log = logger.bind(call_sid=event.call_sid, stream_sid=event.stream_sid)
        self._is_running = True

        self.pacer.start()
        self._scheduler_task = asyncio.create_task(self._run_scheduler())

        try:
            await self.session.connect()
        except SessionConnectError as e:
            self._log.error("Realtime session unavailable; ending call", error=str(e))
            await self._shutdown("engine_connect_failed", hang_up=True)
            return

        if self._is_running:
            self._protocol.set_lifecycle(CallLifecycle.ACTIVE)

    async def _handle_media(self, event: TwilioMediaEvent) -> None:
        if not self._is_running or not event.payload:
            return
        if event.track and event.track != "inbound":
            return

        speech = self.vad.classify(event.payload)
        self.gate.accumulate(event.payload, speech=speech)

        self._speech_run = self._speech_run + 1 if speech else 0
        if (
            self.config.barge_in_enabled
            and self._speech_run >= self.config.barge_in_frames
            and self.pacer.is_playing
        ):
            self._speech_run = 0
            await self._barge_in()

    async def _handle_mark(self, event: TwilioMarkEvent) -> None:
        self._protocol.handle_mark(event)
        if self._hangup_mark and event.name == self._hangup_mark:
            self._log.info("Goodbye played; hanging up")
            self._hangup_mark = None
            await self._shutdown("goodbye", hang_up=True)

    # ------------------------------------------------------------------
    # Turn-taking
    # ------------------------------------------------------------------

    def evaluate(self, now: Optional[float] = None) -> Optional[CommitEvent]:
        """
        One scheduler step: decide whether buffered caller audio should be committed.

        A turn commit (silence or max duration) takes precedence over a trickle commit.
        """
        if not self._is_running:
            return None

        cfg = self.config
        gate = self.gate
        now = self._clock() if now is None else now

        if not gate.turn_open:
            return None

        silence_ms = self.vad.ms_since_speech(now)
        silence_reached = silence_ms is not None and silence_ms >= cfg.silence_duration_ms
        max_reached = gate.turn_elapsed_ms(now) >= cfg.max_turn_ms

        if silence_reached or max_reached:
            if not gate.can_commit(now):
                return None
            cause = CommitCause.SILENCE if silence_reached else CommitCause.MAX_DURATION
            respond = cfg.reply_mode == "engine" and not self.session.response_active
            return self._record(gate.commit(cause, respond=respond))

        if not self._trickle_enabled:
            return None
        if not self.vad.is_speaking(now) or self.session.response_active:
            return None

        since_commit = gate.ms_since_last_commit(now)
        if since_commit is None:
            since_commit = gate.turn_elapsed_ms(now)
        if since_commit < cfg.trickle_interval_ms:
            return None
        if gate.buffer.bytes_since_commit < cfg.trickle_min_bytes:
            return None
        if not gate.can_commit(now):
            return None
        return self._record(gate.commit(CommitCause.TRICKLE, respond=False))

    @property
    def _trickle_enabled(self) -> bool:
        # Local-first replies act on one transcript per turn, so partial commits are off.
        return self.config.trickle_enabled and self.config.reply_mode == "engine"

    def _record(self, event: Optional[CommitEvent]) -> Optional[CommitEvent]:
        if event:
            self.commits[event.cause.value] += 1
            if event.cause.ends_turn:
                self._speech_run = 0
        return event

    async def _run_scheduler(self) -> None:
        interval = self.config.scheduler_interval_ms / 1000.0
        try:
            while self._is_running:
                try:
                    self.evaluate()
                except Exception as e:
                    self._log.error("Commit scheduler step failed", error=str(e))
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            pass

    # ------------------------------------------------------------------
    # Playback control
    # ------------------------------------------------------------------

    async def _send_twilio(self, message: str) -> None:
        if not message:
            return
        await self._send_message(message)

    async def _clear_playback(self) -> int:
        """Drop queued audio locally and on Twilio's side."""
        dropped = self.pacer.clear()
        self._utterance_open = False
        if self._protocol.is_active:
            self._protocol.bump_playback_generation()
            await self._send_twilio(self._protocol.create_clear())
        return dropped

    async def _barge_in(self) -> None:
        self.barge_ins += 1
        self._ignore_audio = True
        self._hangup_mark = None
        self.synthesizer.cancel()
        dropped = await self._clear_playback()
        cancelled = self.session.cancel_response()
        self._log.info("Barge-in", dropped_frames=dropped, response_cancelled=cancelled)

    def _on_mark_sent(self, name: str, label: Optional[str]) -> None:
        if label == _GOODBYE_LABEL:
            self._hangup_mark = name

    # ------------------------------------------------------------------
    # Local replies
    # ------------------------------------------------------------------

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _handle_local_intent(self, result: IntentResult) -> None:
        if result.reply:
            self._spawn(self.speak_local(result.reply, end_call=result.end_call))
            return
        if result.intent == "engine" and not self.session.response_active:
            self.session.request_response()

    async def speak_local(self, text: str, *, end_call: bool = False) -> bool:
        """Synthesize and play a locally chosen reply. Returns True if it was queued."""
        if not self._is_running:
            return False
        if self.session.response_active or self.pacer.is_playing:
            self._log.debug("Local reply skipped (assistant speaking)", text=text)
            return False
        if not self.dedup.admit(text):
            return False

        audio = await self.synthesizer.synthesize(text)
        if not audio or not self._is_running:
            return False

        self.pacer.enqueue(audio)
        self.pacer.mark_utterance_done(label=_GOODBYE_LABEL if end_call else None)
        self.local_replies += 1
        self._log.info("Local reply queued", text=text, end_call=end_call)
        return True

    # ------------------------------------------------------------------
    # SessionListener
    # ------------------------------------------------------------------

    def on_session_ready(self) -> None:
        instructions = greeting_instructions(self.config)
        if not instructions:
            return
        self.intents.mark_greeted()
        if self.session.request_response(instructions):
            self._log.info("Greeting requested")

    def on_commit_acknowledged(self) -> None:
        self.gate.on_commit_acknowledged()

    def on_error(self, kind: ErrorKind, error: dict[str, Any]) -> None:
        if kind == ErrorKind.EMPTY_COMMIT:
            self.gate.on_empty_commit_error()
            return
        if kind == ErrorKind.FATAL:
            self._schedule_teardown("engine_config_error")
            return
        if str(error.get("code") or "").startswith("input_audio_buffer"):
            self.gate.on_commit_failed()

    def on_response_started(self, response_id: Optional[str]) -> None:
        self._ignore_audio = False
        self._utterance_open = False

    def on_response_completed(self, response_id: Optional[str], status: str) -> None:
        if self._utterance_open:
            self._utterance_open = False
            self.pacer.mark_utterance_done()
        self._log.debug("Response finished", response_id=response_id, status=status)

    def on_caller_transcript(self, text: str) -> None:
        if self.config.reply_mode != "local_first" or not self._is_running:
            return
        if is_filler(text):
            self._log.debug("Filler ignored", text=text)
            return
        result = self.intents.classify(text)
        if result.intent == "noop":
            self._log.debug("Caller utterance ignored", reason=result.entities.get("reason"))
            return
        self._handle_local_intent(result)

    def on_assistant_transcript(self, text: str, response_id: Optional[str]) -> None:
        if self.dedup.admit(text):
            return
        # Same reply as last time: silence the rest of it.
        self._ignore_audio = True
        self.session.cancel_response()
        self._spawn(self._clear_playback())

    def on_audio_delta(self, audio: bytes, response_id: Optional[str]) -> None:
        if self._ignore_audio or not self._is_running:
            return
        self.pacer.enqueue(audio)
        self._utterance_open = True

    def on_audio_done(self, response_id: Optional[str]) -> None:
        if self._ignore_audio or not self._utterance_open:
            return
        self._utterance_open = False
        self.pacer.mark_utterance_done()

    def on_transport_closed(self) -> None:
        self._schedule_teardown("engine_disconnected")

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _schedule_teardown(self, reason: str) -> None:
        if self._stopping or self._teardown_task is not None:
            return
        self._teardown_task = asyncio.create_task(self._shutdown(reason, hang_up=True))

    async def _shutdown(self, reason: str, *, hang_up: bool) -> None:
        await self.stop(reason)
        if hang_up and self._close_transport:
            try:
                await self._close_transport()
            except (RuntimeError, OSError) as e:
                self._log.debug("Transport already closed", error=str(e))

    async def stop(self, reason: str = "stop") -> None:
        """Tear the call down. Safe to call more than once."""
        if self._stopping:
            return
        self._stopping = True
        self._protocol.set_lifecycle(CallLifecycle.CLOSING)

        # Final flush goes out before the session closes; nothing new starts after it.
        if self._is_running:
            self._record(self.gate.flush_on_stop())
        self._is_running = False

        if self._scheduler_task and not self._scheduler_task.done():
            self._scheduler_task.cancel()
        pending = [t for t in self._tasks if not t.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(
            *[t for t in (self._scheduler_task, *pending) if t],
            return_exceptions=True,
        )
        self._scheduler_task = None

        await self.pacer.destroy()
        await self.session.close()
        self.gate.discard()
        self.vad.reset()
        self._protocol.set_lifecycle(CallLifecycle.CLOSED)

        self._log.info("Call bridge stopped", reason=reason, **self.stats())

    def stats(self) -> dict[str, Any]:
        return {
            "commits": dict(self.commits),
            "rejected_commits": self.gate.rejected_count,
            "responses_requested": self.session.responses_requested,
            "suppressed_replies": self.dedup.suppressed_count,
            "local_replies": self.local_replies,
            "barge_ins": self.barge_ins,
            "frames_sent": self.pacer.frames_sent,
            "dropped_frames": self.pacer.dropped_frames,
            "mark_rtt_ms": round(self._protocol.call.avg_mark_rtt_ms, 1) if self._protocol.call else 0.0,
        }


async def create_bridge(
    send_message: Callable[[str], Awaitable[None]],
    *,
    close_transport: Optional[Callable[[], Awaitable[None]]] = None,
    config: Optional[BridgeConfig] = None,
) -> CallBridge:
    """Create a bridge for one Twilio WebSocket connection."""
    return CallBridge(send_message, config=config, close_transport=close_transport)
