"""
OpenAI Realtime session adapter.

Owns the engine WebSocket for one call and tracks two small state machines:

- session health: DISCONNECTED -> CONNECTING -> CONFIGURING -> HEALTHY -> {ERROR, CLOSED}
- response lifecycle: IDLE -> REQUESTED -> ACTIVE -> COMPLETED -> IDLE (or -> ERROR -> IDLE)

Turn detection is done locally (see `orchestrator.py`), so the session is configured
with `turn_detection: null` and audio only reaches the engine through explicit
append + commit pairs. Outbound messages are queued and written by a send task so
callers never block on engine backpressure.
"""

from __future__ import annotations

import asyncio
import base64
import json
from enum import Enum
from typing import Any, Optional

import structlog
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from src.bridge.config import BridgeConfig

logger = structlog.get_logger(__name__)

_SEND_QUEUE_MAXSIZE = 2000
_CLOSE_DRAIN_TIMEOUT_S = 1.0


class SessionHealth(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONFIGURING = "configuring"
    HEALTHY = "healthy"
    ERROR = "error"
    CLOSED = "closed"


class ResponseState(str, Enum):
    IDLE = "idle"
    REQUESTED = "requested"
    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"


class ErrorKind(str, Enum):
    FATAL = "fatal"
    EMPTY_COMMIT = "empty_commit"
    RECOVERABLE = "recoverable"


class InvalidTransition(Exception):
    """Raised when a state machine is asked to make a move its table forbids."""
    pass


class SessionConnectError(Exception):
    """Raised when the engine socket cannot be opened."""
    pass


HEALTH_TRANSITIONS: dict[SessionHealth, frozenset[SessionHealth]] = {
    SessionHealth.DISCONNECTED: frozenset({SessionHealth.CONNECTING, SessionHealth.CLOSED}),
    SessionHealth.CONNECTING: frozenset({SessionHealth.CONFIGURING, SessionHealth.ERROR, SessionHealth.CLOSED}),
    SessionHealth.CONFIGURING: frozenset({SessionHealth.HEALTHY, SessionHealth.ERROR, SessionHealth.CLOSED}),
    SessionHealth.HEALTHY: frozenset({SessionHealth.ERROR, SessionHealth.CLOSED}),
    SessionHealth.ERROR: frozenset({SessionHealth.CLOSED}),
    SessionHealth.CLOSED: frozenset(),
}

# IDLE -> ACTIVE covers responses the engine starts without a local request.
RESPONSE_TRANSITIONS: dict[ResponseState, frozenset[ResponseState]] = {
    ResponseState.IDLE: frozenset({ResponseState.REQUESTED, ResponseState.ACTIVE}),
    ResponseState.REQUESTED: frozenset({ResponseState.ACTIVE, ResponseState.COMPLETED, ResponseState.ERROR}),
    ResponseState.ACTIVE: frozenset({ResponseState.COMPLETED, ResponseState.ERROR}),
    ResponseState.COMPLETED: frozenset({ResponseState.IDLE}),
    ResponseState.ERROR: frozenset({ResponseState.IDLE}),
}

EMPTY_COMMIT_ERROR_CODES = frozenset({"input_audio_buffer_commit_empty"})
CONFIG_ERROR_CODES = frozenset({
    "invalid_value",
    "invalid_type",
    "unknown_parameter",
    "missing_required_parameter",
    "unsupported_value",
})


def classify_error(error: dict[str, Any], health: SessionHealth) -> ErrorKind:
    """
    Sort an engine `error` payload into fatal / empty-commit / recoverable.

    Fatal means the session configuration itself was rejected: the engine will never
    produce usable turns for this call.
    """
    code = str(error.get("code") or "")
    message = str(error.get("message") or "").lower()
    param = str(error.get("param") or "")

    if code in EMPTY_COMMIT_ERROR_CODES or "buffer too small" in message:
        return ErrorKind.EMPTY_COMMIT
    if param.startswith("session"):
        return ErrorKind.FATAL
    if code in CONFIG_ERROR_CODES and health == SessionHealth.CONFIGURING:
        return ErrorKind.FATAL
    return ErrorKind.RECOVERABLE


class TranscriptAccumulator:
    """Rolling text built from streaming transcript deltas."""

    def __init__(self, role: str):
        self.role = role
        self._parts: list[str] = []

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def append(self, delta: str) -> None:
        if delta:
            self._parts.append(delta)

    def flush(self, final: Optional[str] = None) -> str:
        """Return the finished text (engine's final transcript wins) and reset."""
        text = final if isinstance(final, str) and final.strip() else self.text
        self._parts.clear()
        return text.strip()

    def clear(self) -> None:
        self._parts.clear()


class SessionListener:
    """
    Receives what the session learns from the engine.

    All callbacks run synchronously on the receive task, one event at a time.
    """

    def on_session_ready(self) -> None:
        pass

    def on_commit_acknowledged(self) -> None:
        pass

    def on_error(self, kind: ErrorKind, error: dict[str, Any]) -> None:
        pass

    def on_response_started(self, response_id: Optional[str]) -> None:
        pass

    def on_response_completed(self, response_id: Optional[str], status: str) -> None:
        pass

    def on_caller_transcript(self, text: str) -> None:
        pass

    def on_assistant_transcript(self, text: str, response_id: Optional[str]) -> None:
        pass

    def on_audio_delta(self, audio: bytes, response_id: Optional[str]) -> None:
        pass

    def on_audio_done(self, response_id: Optional[str]) -> None:
        pass

    def on_transport_closed(self) -> None:
        pass


_EVENT_HANDLERS: dict[str, str] = {
    "session.created": "_on_session_created",
    "session.updated": "_on_session_updated",
    "error": "_on_error",
    "input_audio_buffer.committed": "_on_audio_committed",
    "response.created": "_on_response_created",
    "response.done": "_on_response_done",
    "conversation.item.input_audio_transcription.delta": "_on_caller_transcript_delta",
    "conversation.item.input_audio_transcription.completed": "_on_caller_transcript_completed",
    "conversation.item.input_audio_transcription.failed": "_on_caller_transcript_failed",
    "response.audio_transcript.delta": "_on_assistant_transcript_delta",
    "response.output_audio_transcript.delta": "_on_assistant_transcript_delta",
    "response.audio_transcript.done": "_on_assistant_transcript_done",
    "response.output_audio_transcript.done": "_on_assistant_transcript_done",
    "response.audio.delta": "_on_audio_delta",
    "response.output_audio.delta": "_on_audio_delta",
    "response.audio.done": "_on_audio_done",
    "response.output_audio.done": "_on_audio_done",
}


class RealtimeSession:
    """Conversational-AI engine session for one call."""

    def __init__(
        self,
        config: BridgeConfig,
        listener: SessionListener,
        *,
        instructions: str,
    ):
        self.config = config
        self._listener = listener
        self._instructions = instructions

        self._health = SessionHealth.DISCONNECTED
        self._response_state = ResponseState.IDLE
        self.active_response_id: Optional[str] = None

        self._ws: Optional[Any] = None
        self._send_task: Optional[asyncio.Task] = None
        self._recv_task: Optional[asyncio.Task] = None
        self._send_queue: asyncio.Queue[Optional[dict]] = asyncio.Queue(maxsize=_SEND_QUEUE_MAXSIZE)

        self.caller_transcript = TranscriptAccumulator("caller")
        self.assistant_transcript = TranscriptAccumulator("assistant")

        self.responses_requested = 0
        self.responses_completed = 0
        self.error_count = 0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def health(self) -> SessionHealth:
        return self._health

    @property
    def response_state(self) -> ResponseState:
        return self._response_state

    @property
    def is_healthy(self) -> bool:
        return self._health == SessionHealth.HEALTHY

    @property
    def response_active(self) -> bool:
        return self._response_state in (ResponseState.REQUESTED, ResponseState.ACTIVE)

    def _set_health(self, new: SessionHealth) -> None:
        if new not in HEALTH_TRANSITIONS[self._health]:
            raise InvalidTransition(f"session health {self._health.value} -> {new.value}")
        logger.debug("Realtime session health", previous=self._health.value, health=new.value)
        self._health = new

    def _set_response_state(self, new: ResponseState) -> None:
        if new not in RESPONSE_TRANSITIONS[self._response_state]:
            raise InvalidTransition(f"response {self._response_state.value} -> {new.value}")
        self._response_state = new

    def _finish_response(self, terminal: ResponseState) -> None:
        if not self.response_active:
            return
        self._set_response_state(terminal)
        self._set_response_state(ResponseState.IDLE)
        self.active_response_id = None

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the engine socket and send the session configuration."""
        self._set_health(SessionHealth.CONNECTING)

        headers = {
            "Authorization": f"Bearer {self.config.openai_api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        try:
            self._ws = await websockets.connect(
                self.config.realtime_ws_url,
                additional_headers=headers,
                open_timeout=self.config.connect_timeout_seconds,
            )
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            logger.error("OpenAI Realtime connect failed", error=str(e))
            self._set_health(SessionHealth.ERROR)
            raise SessionConnectError(str(e)) from e

        self._send_task = asyncio.create_task(self._send_loop())
        self._recv_task = asyncio.create_task(self._receive_loop())
        self._configure()

        logger.info(
            "OpenAI Realtime connected",
            model=self.config.openai_realtime_model,
            voice=self.config.openai_realtime_voice,
            transcription_model=self.config.openai_transcription_model,
        )

    def session_payload(self) -> dict[str, Any]:
        return {
            "modalities": ["audio", "text"],
            "instructions": self._instructions,
            "voice": self.config.openai_realtime_voice,
            "input_audio_format": self.config.input_audio_format,
            "output_audio_format": self.config.output_audio_format,
            "input_audio_transcription": {
                "model": self.config.openai_transcription_model,
                "language": self.config.transcription_language,
            },
            "turn_detection": None,
        }

    def _configure(self) -> None:
        self._set_health(SessionHealth.CONFIGURING)
        self._enqueue({"type": "session.update", "session": self.session_payload()})

    async def close(self) -> None:
        if self._health == SessionHealth.CLOSED:
            return
        self._set_health(SessionHealth.CLOSED)
        self._response_state = ResponseState.IDLE
        self.active_response_id = None

        # Let already-queued messages (e.g. the final commit) go out.
        if self._send_task and not self._send_task.done():
            try:
                self._send_queue.put_nowait(None)
                await asyncio.wait_for(asyncio.shield(self._send_task), timeout=_CLOSE_DRAIN_TIMEOUT_S)
            except (asyncio.QueueFull, asyncio.TimeoutError):
                pass

        tasks = [t for t in (self._send_task, self._recv_task) if t]
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self._ws:
            try:
                await self._ws.close()
            except (OSError, WebSocketException) as e:
                logger.debug("OpenAI Realtime close failed", error=str(e))

        self._ws = None
        self._send_task = None
        self._recv_task = None
        self.caller_transcript.clear()
        self.assistant_transcript.clear()
        logger.info("OpenAI Realtime session closed")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def _enqueue(self, message: dict) -> bool:
        try:
            self._send_queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            logger.warning("OpenAI send queue full; dropping event", type=message.get("type"))
            return False

    def _send_if_healthy(self, message: dict) -> bool:
        if not self.is_healthy:
            logger.debug("Realtime session not healthy; dropping event", type=message.get("type"), health=self._health.value)
            return False
        return self._enqueue(message)

    def append_audio(self, audio: bytes) -> bool:
        if not audio:
            return False
        return self._send_if_healthy({
            "type": "input_audio_buffer.append",
            "audio": base64.b64encode(audio).decode("utf-8"),
        })

    def commit_audio(self) -> bool:
        return self._send_if_healthy({"type": "input_audio_buffer.commit"})

    def request_response(self, instructions: Optional[str] = None) -> bool:
        """Ask the engine to reply. Refused while another response is outstanding."""
        if not self.is_healthy:
            return False
        if self.response_active:
            logger.debug("Response already in progress", response_state=self._response_state.value)
            return False

        response: dict[str, Any] = {"modalities": ["audio", "text"]}
        if instructions:
            response["instructions"] = instructions
        if not self._enqueue({"type": "response.create", "response": response}):
            return False

        self._set_response_state(ResponseState.REQUESTED)
        self.responses_requested += 1
        return True

    def cancel_response(self) -> bool:
        if not self.response_active:
            return False
        return self._send_if_healthy({"type": "response.cancel"})

    async def _send_loop(self) -> None:
        ws = self._ws
        if not ws:
            return

        try:
            while True:
                item = await self._send_queue.get()
                if item is None:
                    break
                try:
                    payload = json.dumps(item)
                except (TypeError, ValueError) as e:
                    logger.error("Unserializable Realtime message dropped", error=str(e), type=item.get("type"))
                    continue
                try:
                    await ws.send(payload)
                except (ConnectionClosed, OSError) as e:
                    logger.error("OpenAI send failed", error=str(e), type=item.get("type"))
                    break
        except asyncio.CancelledError:
            pass

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _receive_loop(self) -> None:
        ws = self._ws
        if not ws:
            return

        try:
            async for raw in ws:
                try:
                    event = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Non-JSON Realtime frame ignored")
                    continue
                if not isinstance(event, dict):
                    continue
                try:
                    self.handle_event(event)
                except InvalidTransition as e:
                    logger.warning("Realtime event rejected", type=event.get("type"), error=str(e))
                except Exception as e:
                    logger.error("Realtime event handler failed", type=event.get("type"), error=str(e))
        except asyncio.CancelledError:
            return
        except ConnectionClosed as e:
            logger.warning("OpenAI Realtime connection closed", code=getattr(e.rcvd, "code", None))
        except Exception as e:
            logger.error("OpenAI receive loop failed", error=str(e))

        if self._health not in (SessionHealth.CLOSED, SessionHealth.ERROR):
            self._set_health(SessionHealth.ERROR)
        if self._health != SessionHealth.CLOSED:
            self._listener.on_transport_closed()

    def handle_event(self, event: dict[str, Any]) -> None:
        """Dispatch one decoded engine event."""
        event_type = event.get("type")
        handler_name = _EVENT_HANDLERS.get(event_type) if isinstance(event_type, str) else None
        if not handler_name:
            return
        if self._health == SessionHealth.CLOSED:
            return
        getattr(self, handler_name)(event)

    def _on_session_created(self, event: dict[str, Any]) -> None:
        session = event.get("session")
        logger.debug("Realtime session created", session_id=session.get("id") if isinstance(session, dict) else None)

    def _on_session_updated(self, event: dict[str, Any]) -> None:
        if self._health != SessionHealth.CONFIGURING:
            return
        self._set_health(SessionHealth.HEALTHY)
        logger.info("Realtime session ready")
        self._listener.on_session_ready()

    def _on_error(self, event: dict[str, Any]) -> None:
        error = event.get("error") or {}
        if not isinstance(error, dict):
            error = {"message": str(error)}
        kind = classify_error(error, self._health)
        self.error_count += 1

        log = logger.error if kind == ErrorKind.FATAL else logger.warning
        log(
            "OpenAI Realtime error",
            kind=kind.value,
            code=error.get("code"),
            param=error.get("param"),
            message=error.get("message"),
        )

        if kind == ErrorKind.FATAL and self._health in (SessionHealth.CONFIGURING, SessionHealth.HEALTHY):
            self._set_health(SessionHealth.ERROR)
        if kind != ErrorKind.EMPTY_COMMIT and self._response_state == ResponseState.REQUESTED:
            # The request most likely bounced; don't wait forever for response.created.
            self._finish_response(ResponseState.ERROR)

        self._listener.on_error(kind, error)

    def _on_audio_committed(self, event: dict[str, Any]) -> None:
        self._listener.on_commit_acknowledged()

    def _on_response_created(self, event: dict[str, Any]) -> None:
        response = event.get("response") or {}
        response_id = response.get("id") or event.get("response_id")
        if self._response_state == ResponseState.IDLE:
            logger.info("Engine started an unrequested response", response_id=response_id)
        if self._response_state != ResponseState.ACTIVE:
            self._set_response_state(ResponseState.ACTIVE)
        self.active_response_id = response_id
        self.assistant_transcript.clear()
        self._listener.on_response_started(response_id)

    def _on_response_done(self, event: dict[str, Any]) -> None:
        response = event.get("response") or {}
        response_id = response.get("id") or event.get("response_id")
        status = str(response.get("status") or "completed")

        pending = self.assistant_transcript.flush()
        if pending:
            self._listener.on_assistant_transcript(pending, response_id)

        if status == "failed":
            self._finish_response(ResponseState.ERROR)
        else:
            self._finish_response(ResponseState.COMPLETED)
        self.responses_completed += 1
        self._listener.on_response_completed(response_id, status)

    def _on_caller_transcript_delta(self, event: dict[str, Any]) -> None:
        delta = event.get("delta")
        if isinstance(delta, str):
            self.caller_transcript.append(delta)

    def _on_caller_transcript_completed(self, event: dict[str, Any]) -> None:
        text = self.caller_transcript.flush(event.get("transcript"))
        logger.info("Caller transcript", text=text[:200])
        self._listener.on_caller_transcript(text)

    def _on_caller_transcript_failed(self, event: dict[str, Any]) -> None:
        self.caller_transcript.clear()
        logger.warning("Caller transcription failed", error=event.get("error"))

    def _on_assistant_transcript_delta(self, event: dict[str, Any]) -> None:
        delta = event.get("delta")
        if isinstance(delta, str):
            self.assistant_transcript.append(delta)

    def _on_assistant_transcript_done(self, event: dict[str, Any]) -> None:
        text = self.assistant_transcript.flush(event.get("transcript"))
        if not text:
            return
        logger.info("Assistant transcript", text=text[:200])
        self._listener.on_assistant_transcript(text, event.get("response_id"))

    def _on_audio_delta(self, event: dict[str, Any]) -> None:
        delta = event.get("delta") or event.get("audio")
        if not isinstance(delta, str) or not delta:
            return
        try:
            audio = base64.b64decode(delta)
        except ValueError:
            logger.warning("Undecodable audio delta dropped")
            return
        self._listener.on_audio_delta(audio, event.get("response_id"))

    def _on_audio_done(self, event: dict[str, Any]) -> None:
        self._listener.on_audio_done(event.get("response_id"))
