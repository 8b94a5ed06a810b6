"""
Filler filter and local intent fallback.

Short, rule-based replies for a few stock caller utterances (hearing checks, goodbye,
thanks, "who are you"). Anything else is left to the Realtime engine.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)

_NON_WORD = re.compile(r"[^\w\s']", re.UNICODE)
_FILLER = re.compile(r"^(ya|uh|um|mm+|ah+|hmm+|yeah|yep|ok|okay|right|huh)$", re.IGNORECASE)

_HEARING_CHECKS = (
    re.compile(r"(can|could)\s+(you|ya)\s+hear\s+(me|us)"),
    re.compile(r"(any(one|body))\s+hear\s+(me|us)"),
    re.compile(r"\b(am\s*i|are\s*you)\s+(audible|hearing|heard)\b"),
)
_GOODBYE = re.compile(r"\b(bye|goodbye|see\s*you|talk\s*to\s*you\s*later)\b")
_THANKS = re.compile(r"\b(thanks|thank you|appreciate it)\b")
_INTRODUCE = re.compile(r"\b(who are you|what can you do|what do you do)\b")
_HELLO = re.compile(r"\b(hello|hi|hey|good\s*(morning|afternoon|evening))\b")

HEARD_REPLY = "Yep, I can hear you."
GOODBYE_REPLY = "Thanks for calling. I'll hang up now. Bye."
THANKS_REPLY = "You're welcome. Anything else?"
INTRODUCE_REPLY = "I can take a message, schedule a call, or answer simple questions."
HELLO_REPLY = "Hi."


def normalize(text: str) -> str:
    text = _NON_WORD.sub(" ", (text or "").lower()).replace("_", " ")
    return " ".join(text.split())


def is_filler(text: str) -> bool:
    """True for empty text, two characters or less, or a stock filler token."""
    n = normalize(text)
    return not n or len(n) <= 2 or bool(_FILLER.match(n))


@dataclass(frozen=True)
class IntentResult:
    intent: str
    reply: Optional[str] = None
    end_call: bool = False
    entities: dict[str, Any] = field(default_factory=dict)

    @property
    def is_noop(self) -> bool:
        return self.reply is None


class LocalIntentClassifier:
    """
    Classifies a finished caller transcript.

    `classify()` returns an IntentResult with `reply=None` when nothing should be
    said locally: filler ("noop"), a debounced hearing check ("noop"), or an utterance
    the engine should answer ("engine").
    """

    def __init__(
        self,
        *,
        heard_check_cooldown_ms: int = 8000,
        greet_on_hello: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._heard_check_cooldown_s = heard_check_cooldown_ms / 1000.0
        self._greet_on_hello = greet_on_hello
        self._clock = clock
        self._last_heard_check_at: Optional[float] = None
        self._greeted = False

    def classify(self, text: str) -> IntentResult:
        n = normalize(text)

        if is_filler(n):
            return IntentResult("noop", entities={"reason": "filler_or_silence"})

        if any(p.search(n) for p in _HEARING_CHECKS):
            now = self._clock()
            if (
                self._last_heard_check_at is not None
                and (now - self._last_heard_check_at) < self._heard_check_cooldown_s
            ):
                return IntentResult("noop", entities={"reason": "debounced_heard_check"})
            self._last_heard_check_at = now
            return IntentResult("check_audio", reply=HEARD_REPLY)

        if self._greet_on_hello and _HELLO.search(n):
            if self._greeted:
                return IntentResult("noop", entities={"reason": "already_greeted"})
            self._greeted = True
            return IntentResult("greet", reply=HELLO_REPLY)

        if _GOODBYE.search(n):
            return IntentResult("goodbye", reply=GOODBYE_REPLY, end_call=True)
        if _THANKS.search(n):
            return IntentResult("ack_thanks", reply=THANKS_REPLY)
        if _INTRODUCE.search(n):
            return IntentResult("introduce", reply=INTRODUCE_REPLY)

        return IntentResult("engine")

    def mark_greeted(self) -> None:
        self._greeted = True
