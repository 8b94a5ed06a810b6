"""
Tests for reply dedup and the local intent fallback.
"""

import pytest

from src.bridge.dedup import ReplyDedupGuard, fingerprint, normalize_reply
from src.bridge.intents import (
    GOODBYE_REPLY,
    HEARD_REPLY,
    INTRODUCE_REPLY,
    THANKS_REPLY,
    LocalIntentClassifier,
    is_filler,
    normalize,
)


class TestReplyDedup:
    def test_fingerprint_ignores_case_and_spacing(self):
        assert normalize_reply("  Hello   THERE ") == "hello there"
        assert fingerprint("Hello there") == fingerprint("hello   there")
        assert fingerprint("Hello there") != fingerprint("Hello there!")

    def test_same_reply_within_window_is_noop(self, clock):
        guard = ReplyDedupGuard(8000, clock=clock)

        assert guard.admit("You're welcome. Anything else?") is True
        clock.advance_ms(3000)
        assert guard.admit("You're welcome.  anything else?") is False
        assert guard.suppressed_count == 1

    def test_same_reply_after_window_is_spoken(self, clock):
        guard = ReplyDedupGuard(8000, clock=clock)
        guard.admit("Okay.")

        clock.advance_ms(8001)

        assert guard.admit("Okay.") is True

    def test_suppressed_attempt_does_not_extend_window(self, clock):
        guard = ReplyDedupGuard(8000, clock=clock)
        guard.admit("Okay.")
        clock.advance_ms(7000)
        guard.admit("Okay.")

        clock.advance_ms(1001)

        assert guard.admit("Okay.") is True

    def test_only_immediately_prior_reply_counts(self, clock):
        guard = ReplyDedupGuard(8000, clock=clock)

        assert guard.admit("A") is True
        assert guard.admit("B") is True
        assert guard.admit("A") is True

    def test_empty_reply_rejected(self, clock):
        guard = ReplyDedupGuard(8000, clock=clock)

        assert guard.admit("   ") is False
        assert guard.state.fingerprint is None

    def test_reset(self, clock):
        guard = ReplyDedupGuard(8000, clock=clock)
        guard.admit("Okay.")
        guard.reset()

        assert guard.is_duplicate("Okay.") is False


class TestFiller:
    @pytest.mark.parametrize("text", ["", "  ", "ok", "Um.", "hmmm", "Yeah!", "right", "mmm", "ahh"])
    def test_filler(self, text):
        assert is_filler(text) is True

    @pytest.mark.parametrize("text", ["hello there", "book a table", "yes please"])
    def test_not_filler(self, text):
        assert is_filler(text) is False

    def test_normalize_strips_punctuation(self):
        assert normalize("Can you HEAR me?!") == "can you hear me"
        assert normalize("it's fine") == "it's fine"


class TestLocalIntentClassifier:
    def test_filler_is_noop(self, clock):
        result = LocalIntentClassifier(clock=clock).classify("uh")

        assert result.intent == "noop"
        assert result.is_noop is True
        assert result.entities["reason"] == "filler_or_silence"

    def test_hearing_check_debounced(self, clock):
        classifier = LocalIntentClassifier(heard_check_cooldown_ms=8000, clock=clock)

        first = classifier.classify("Hello, can you hear me?")
        clock.advance_ms(2000)
        second = classifier.classify("can you hear me")
        clock.advance_ms(6001)
        third = classifier.classify("anybody hear me")

        assert first.reply == HEARD_REPLY
        assert second.is_noop and second.entities["reason"] == "debounced_heard_check"
        assert third.reply == HEARD_REPLY

    def test_goodbye_ends_call(self, clock):
        result = LocalIntentClassifier(clock=clock).classify("Okay, bye now")

        assert result.intent == "goodbye"
        assert result.reply == GOODBYE_REPLY
        assert result.end_call is True

    def test_thanks(self, clock):
        result = LocalIntentClassifier(clock=clock).classify("Thank you so much")

        assert result.reply == THANKS_REPLY
        assert result.end_call is False

    def test_introduce(self, clock):
        result = LocalIntentClassifier(clock=clock).classify("So who are you exactly?")

        assert result.reply == INTRODUCE_REPLY

    def test_everything_else_goes_to_engine(self, clock):
        result = LocalIntentClassifier(clock=clock).classify("I'd like to book a table for two")

        assert result.intent == "engine"
        assert result.reply is None

    def test_hello_greeting_only_once_when_enabled(self, clock):
        classifier = LocalIntentClassifier(greet_on_hello=True, clock=clock)

        assert classifier.classify("hey there").intent == "greet"
        assert classifier.classify("hello again").intent == "noop"

    def test_hello_ignored_after_engine_greeting(self, clock):
        classifier = LocalIntentClassifier(greet_on_hello=True, clock=clock)
        classifier.mark_greeted()

        assert classifier.classify("hi there").is_noop
