"""
Anti-repetition guard for spoken replies.

A reply identical (after whitespace/case normalisation) to the one spoken immediately
before it is suppressed while the cooldown window is open. Exact match only.
"""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


def normalize_reply(text: str) -> str:
    return " ".join((text or "").lower().split())


def fingerprint(text: str) -> str:
    return hashlib.sha1(normalize_reply(text).encode("utf-8")).hexdigest()


@dataclass
class ReplyDedupState:
    fingerprint: Optional[str] = None
    spoken_at: Optional[float] = None


class ReplyDedupGuard:
    def __init__(self, cooldown_ms: int, clock: Callable[[], float] = time.monotonic):
        self._cooldown_s = max(0, cooldown_ms) / 1000.0
        self._clock = clock
        self.state = ReplyDedupState()
        self.suppressed_count = 0

    def is_duplicate(self, text: str, now: Optional[float] = None) -> bool:
        if self.state.fingerprint is None or self.state.spoken_at is None:
            return False
        now = self._clock() if now is None else now
        return (
            fingerprint(text) == self.state.fingerprint
            and (now - self.state.spoken_at) < self._cooldown_s
        )

    def admit(self, text: str, now: Optional[float] = None) -> bool:
        """
        Record `text` as the reply about to be spoken.

        Returns False (and records nothing) for empty text or a duplicate inside the
        cooldown window; a suppressed attempt does not extend the window.
        """
        if not normalize_reply(text):
            return False
        now = self._clock() if now is None else now
        if self.is_duplicate(text, now):
            self.suppressed_count += 1
            logger.info("Duplicate reply suppressed", text=text[:120], suppressed=self.suppressed_count)
            return False
        self.state = ReplyDedupState(fingerprint=fingerprint(text), spoken_at=now)
        return True

    def reset(self) -> None:
        self.state = ReplyDedupState()
