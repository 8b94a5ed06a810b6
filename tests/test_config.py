"""
Tests for configuration loading and validation.
"""

import dataclasses
import os
from unittest.mock import patch

import pytest

from src.bridge.config import BridgeConfig, ConfigError, get_config, init_config
from src.bridge.prompt_utils import greeting_instructions, resolve_instructions


class TestGetConfig:
    def test_defaults(self):
        config = get_config()

        assert config.public_host == "test.ngrok.io"
        assert config.port == 7860
        assert config.stream_path == "/call"
        assert config.ws_url == "wss://test.ngrok.io/call"
        assert config.openai_realtime_voice == "shimmer"
        assert config.min_commit_bytes == 1600
        assert config.reply_mode == "engine"
        assert config.greeting_enabled is False

    def test_realtime_url_includes_model(self):
        config = get_config()

        assert config.realtime_ws_url == (
            "wss://api.openai.com/v1/realtime?model=gpt-4o-realtime-preview-2024-12-17"
        )

    def test_env_overrides(self):
        with patch.dict(os.environ, {
            "SILENCE_DURATION_MS": "500",
            "TRICKLE_ENABLED": "no",
            "VAD_ENERGY_THRESHOLD": "20.5",
            "REPLY_MODE": " Local_First ",
            "GREET_ON_HELLO": "true",
        }):
            get_config.cache_clear()
            config = get_config()

        assert config.silence_duration_ms == 500
        assert config.trickle_enabled is False
        assert config.vad_energy_threshold == 20.5
        assert config.reply_mode == "local_first"
        assert config.greet_on_hello is True

    def test_bad_numbers_fall_back_to_defaults(self):
        with patch.dict(os.environ, {"MAX_TURN_MS": "lots", "VAD_HANGOVER_MS": ""}):
            get_config.cache_clear()
            config = get_config()

        assert config.max_turn_ms == 8000
        assert config.vad_hangover_ms == 300

    def test_config_is_cached(self):
        assert get_config() is get_config()


class TestValidate:
    def _config(self, **overrides) -> BridgeConfig:
        return dataclasses.replace(get_config(), **overrides)

    def test_valid_config_passes(self):
        init_config()

    def test_missing_required(self):
        with pytest.raises(ConfigError, match="PUBLIC_HOST"):
            self._config(public_host="").validate()
        with pytest.raises(ConfigError, match="OPENAI_API_KEY"):
            self._config(openai_api_key="").validate()

    def test_min_commit_below_protocol_minimum(self):
        with pytest.raises(ConfigError, match="MIN_COMMIT_BYTES"):
            self._config(min_commit_bytes=799).validate()

    def test_unknown_reply_mode(self):
        with pytest.raises(ConfigError, match="REPLY_MODE"):
            self._config(reply_mode="chatty").validate()

    def test_playback_limits(self):
        with pytest.raises(ConfigError):
            self._config(max_burst_frames=0).validate()
        with pytest.raises(ConfigError):
            self._config(high_water_frames=500, max_queue_frames=500).validate()
        with pytest.raises(ConfigError):
            self._config(prebuffer_frames=10, max_queue_frames=5, high_water_frames=1).validate()

    def test_playback_frame_must_match_twilio_frame(self):
        with pytest.raises(ConfigError, match="PLAYBACK_FRAME_MS"):
            self._config(playback_frame_ms=10).validate()
        with pytest.raises(ConfigError, match="SCHEDULER_INTERVAL_MS"):
            self._config(scheduler_interval_ms=0).validate()
        self._config(playback_frame_ms=20).validate()


class TestPrompts:
    def test_default_instructions_use_agent_name(self):
        text = resolve_instructions(get_config())

        assert "You are Anna" in text

    def test_inline_instructions_with_placeholder(self):
        config = dataclasses.replace(get_config(), persona_instructions="I am {AGENT_NAME}.", agent_name="Max")

        assert resolve_instructions(config) == "I am Max."

    def test_instructions_file(self, tmp_path):
        prompt = tmp_path / "persona.txt"
        prompt.write_text("  From a file, {agent_name}.  ", encoding="utf-8")
        config = dataclasses.replace(get_config(), persona_instructions_file=str(prompt))

        assert resolve_instructions(config) == "From a file, Anna."

    def test_missing_file_falls_back_to_default(self, tmp_path):
        config = dataclasses.replace(get_config(), persona_instructions_file=str(tmp_path / "nope.txt"))

        assert "You are Anna" in resolve_instructions(config)

    def test_greeting_disabled(self):
        assert greeting_instructions(get_config()) == ""

    def test_greeting_enabled(self):
        config = dataclasses.replace(get_config(), greeting_enabled=True)

        assert "Hi, this is Anna." in greeting_instructions(config)
