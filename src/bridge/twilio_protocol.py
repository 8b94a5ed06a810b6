"""
Twilio Media Streams WebSocket protocol handler.

Twilio sends JSON messages with events:
- connected: Initial connection
- start: Stream started, contains streamSid and callSid
- media: Audio data as base64 mu-law 8kHz (160 bytes per 20ms frame)
- mark: Playback marker acknowledgment
- stop: Stream stopped

Outbound messages:
- media: Send audio as base64 mu-law 8kHz
- mark: Request playback acknowledgment
- clear: Clear buffered audio (barge-in / suppressed replies)
"""

import base64
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import msgspec
import structlog

logger = structlog.get_logger(__name__)

# Create global msgspec encoder/decoder
decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()

_MAX_RTT_SAMPLES = 20


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    STOP = "stop"


class CallLifecycle(str, Enum):
    """Lifecycle of one call on this bridge."""
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class TwilioStartEvent:
    """Parsed Twilio start event."""
    stream_sid: str
    call_sid: str
    account_sid: str
    tracks: List[str]
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        """Parse from Twilio message."""
        start = message.get("start", {}) or {}
        return cls(
            # streamSid is top-level in current payloads; older ones nest it in `start`.
            stream_sid=message.get("streamSid") or start.get("streamSid", ""),
            call_sid=start.get("callSid", ""),
            account_sid=start.get("accountSid", ""),
            tracks=start.get("tracks", []),
            custom_parameters=start.get("customParameters", {}),
        )


@dataclass
class TwilioMediaEvent:
    """Parsed Twilio media event."""
    stream_sid: str
    track: str
    chunk: int
    timestamp: str
    payload: bytes  # Decoded audio bytes (mu-law)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        """Parse from Twilio message."""
        media = message.get("media", {}) or {}
        payload_b64 = media.get("payload", "")

        try:
            payload = base64.b64decode(payload_b64)
        except (ValueError, TypeError):
            payload = b""

        return cls(
            stream_sid=message.get("streamSid", ""),
            track=media.get("track", "inbound"),
            chunk=int(media.get("chunk", 0)),
            timestamp=media.get("timestamp", ""),
            payload=payload,
        )


@dataclass
class TwilioMarkEvent:
    """Parsed Twilio mark event."""
    stream_sid: str
    name: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMarkEvent":
        """Parse from Twilio message."""
        mark = message.get("mark", {}) or {}
        return cls(
            stream_sid=message.get("streamSid", ""),
            name=mark.get("name", ""),
        )


@dataclass
class CallSession:
    """State for one active call."""
    stream_sid: str = ""
    call_sid: str = ""
    account_sid: str = ""
    lifecycle: CallLifecycle = CallLifecycle.CONNECTING
    created_at: float = field(default_factory=time.time)
    closed_at: Optional[float] = None
    playback_generation_id: int = 0
    mark_sequence: int = 0
    pending_marks: Dict[str, float] = field(default_factory=dict)  # mark_name -> send_time
    mark_rtt_samples: List[float] = field(default_factory=list)  # RTT samples in ms

    @property
    def is_open(self) -> bool:
        """True while the call accepts media and playback."""
        return self.lifecycle in (CallLifecycle.CONNECTING, CallLifecycle.ACTIVE)

    @property
    def avg_mark_rtt_ms(self) -> float:
        """Average mark round-trip time in ms."""
        if not self.mark_rtt_samples:
            return 0.0
        return sum(self.mark_rtt_samples) / len(self.mark_rtt_samples)


def parse_twilio_message(raw_message: str | bytes) -> tuple[TwilioEventType, Any]:
    """
    Parse a raw Twilio WebSocket message.

    Args:
        raw_message: Raw JSON string from Twilio

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If message cannot be parsed
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        logger.error("Failed to parse Twilio message", error=str(e))
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Invalid message: expected a JSON object")

    event_type_str = message.get("event", "")

    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        logger.warning("Unknown Twilio event type", event_type=event_type_str)
        raise ValueError(f"Unknown event type: {event_type_str}")

    if event_type == TwilioEventType.START:
        return event_type, TwilioStartEvent.from_message(message)
    if event_type == TwilioEventType.MEDIA:
        return event_type, TwilioMediaEvent.from_message(message)
    if event_type == TwilioEventType.MARK:
        return event_type, TwilioMarkEvent.from_message(message)
    return event_type, message


def create_media_message(stream_sid: str, audio_payload: bytes) -> str:
    """
    Create a Twilio media message.

    Args:
        stream_sid: The stream SID
        audio_payload: Raw mu-law audio bytes (160 bytes for 20ms)

    Returns:
        JSON string to send to Twilio
    """
    payload_b64 = base64.b64encode(audio_payload).decode("utf-8")

    message = {
        "event": "media",
        "streamSid": stream_sid,
        "media": {
            "payload": payload_b64
        }
    }

    return encoder.encode(message).decode("utf-8")


def create_mark_message(stream_sid: str, name: str) -> str:
    """
    Create a Twilio mark message.

    Twilio echoes the mark back once every frame sent before it has been played.
    """
    message = {
        "event": "mark",
        "streamSid": stream_sid,
        "mark": {
            "name": name
        }
    }

    return encoder.encode(message).decode("utf-8")


def create_clear_message(stream_sid: str) -> str:
    """
    Create a Twilio clear message.

    This clears any buffered audio on Twilio's side, used for interruption.
    """
    message = {
        "event": "clear",
        "streamSid": stream_sid
    }

    return encoder.encode(message).decode("utf-8")


class TwilioProtocolHandler:
    """
    High-level handler for the Twilio side of one call.

    Owns the CallSession and builds outbound messages for it.
    """

    def __init__(self):
        self.call: Optional[CallSession] = None

    @property
    def stream_sid(self) -> str:
        """Get the current stream SID."""
        return self.call.stream_sid if self.call else ""

    @property
    def call_sid(self) -> str:
        """Get the current call SID."""
        return self.call.call_sid if self.call else ""

    @property
    def is_active(self) -> bool:
        """Check if the call is accepting media."""
        return self.call is not None and self.call.is_open

    def handle_start(self, event: TwilioStartEvent) -> CallSession:
        """Handle a start event and create the call session."""
        self.call = CallSession(
            stream_sid=event.stream_sid,
            call_sid=event.call_sid,
            account_sid=event.account_sid,
        )
        logger.info(
            "Call started",
            stream_sid=event.stream_sid,
            call_sid=event.call_sid,
        )
        return self.call

    def set_lifecycle(self, lifecycle: CallLifecycle) -> None:
        """Move the call to a new lifecycle state."""
        if not self.call or self.call.lifecycle == lifecycle:
            return
        previous = self.call.lifecycle
        self.call.lifecycle = lifecycle
        if lifecycle == CallLifecycle.CLOSED:
            self.call.closed_at = time.time()
            self.call.pending_marks.clear()
        logger.debug(
            "Call lifecycle changed",
            call_sid=self.call.call_sid,
            previous=previous.value,
            lifecycle=lifecycle.value,
        )

    def handle_mark(self, event: TwilioMarkEvent) -> Optional[float]:
        """
        Handle a mark acknowledgment and calculate RTT.

        Returns:
            Round-trip time in ms, or None for unknown or stale marks
        """
        if not self.call:
            return None

        mark_gen = self._parse_mark_generation(event.name)
        if mark_gen is not None and mark_gen != self.call.playback_generation_id:
            logger.debug(
                "Ignoring stale mark acknowledgment",
                mark_name=event.name,
                mark_generation=mark_gen,
                current_generation=self.call.playback_generation_id,
            )
            return None

        send_time = self.call.pending_marks.pop(event.name, None)
        if send_time is None:
            return None

        rtt_ms = (time.time() - send_time) * 1000
        self.call.mark_rtt_samples.append(rtt_ms)
        if len(self.call.mark_rtt_samples) > _MAX_RTT_SAMPLES:
            self.call.mark_rtt_samples.pop(0)
        logger.debug("Mark acknowledged", mark_name=event.name, rtt_ms=round(rtt_ms, 2))
        return rtt_ms

    def create_media(self, frame: bytes) -> str:
        """Create a media message for one outbound frame."""
        return create_media_message(self.stream_sid, frame)

    def create_mark(self, name: Optional[str] = None) -> str:
        """
        Create a mark message.

        Args:
            name: Optional mark name (auto-generated if not provided)

        Returns:
            JSON message to send, or "" without an active call
        """
        if not self.call:
            return ""

        if name is None:
            name = self.next_mark_name()

        self.call.pending_marks[name] = time.time()
        return create_mark_message(self.call.stream_sid, name)

    def next_mark_name(self) -> str:
        """Allocate the next auto-generated mark name: `g{gen}_m{seq}`."""
        if not self.call:
            return ""
        self.call.mark_sequence += 1
        return f"g{self.call.playback_generation_id}_m{self.call.mark_sequence}"

    def bump_playback_generation(self) -> int:
        """
        Bump the playback generation id.

        Used to ignore stale marks after a Twilio `clear`.
        """
        if not self.call:
            return 0

        self.call.playback_generation_id += 1
        self.call.mark_sequence = 0
        self.call.pending_marks.clear()
        logger.info(
            "Playback generation bumped",
            playback_generation_id=self.call.playback_generation_id,
        )
        return self.call.playback_generation_id

    def create_clear(self) -> str:
        """Create a clear message to flush buffered audio."""
        if not self.call:
            return ""

        logger.info("Clearing Twilio audio buffer", stream_sid=self.call.stream_sid)
        return create_clear_message(self.call.stream_sid)

    @staticmethod
    def _parse_mark_generation(mark_name: str) -> Optional[int]:
        """
        Parse a playback generation id from a mark name.

        Expected format for auto-generated marks: `g{gen}_m{seq}`.
        Returns None if the format doesn't match.
        """
        if not isinstance(mark_name, str) or not mark_name.startswith("g"):
            return None
        gen_part = mark_name.split("_", 1)[0]
        try:
            return int(gen_part[1:])
        except ValueError:
            return None
