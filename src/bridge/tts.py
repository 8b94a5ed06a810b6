from __future__ import annotations

import asyncio
import wave
from typing import Optional

import structlog

from src.bridge.audio import wav_bytes_to_twilio_ulaw
from src.bridge.config import BridgeConfig

logger = structlog.get_logger(__name__)


class SpeechSynthesizer:
    """
    OpenAI text-to-speech for locally generated replies (non-streaming).

    Synthesizes a full WAV and converts it to Twilio mu-law. Failures return b"".
    """

    def __init__(self, config: BridgeConfig):
        self.config = config
        self._client = None
        self._inflight: Optional[asyncio.Task] = None

    def _get_client(self):
        if self._client is None:
            from openai import OpenAI  # Local import to keep module import light

            self._client = OpenAI(api_key=self.config.openai_api_key)
        return self._client

    async def _generate_wav(self, text: str) -> bytes:
        client = self._get_client()

        def _call() -> bytes:
            resp = client.audio.speech.create(
                model=self.config.openai_tts_model,
                voice=self.config.openai_tts_voice,
                input=text,
                response_format="wav",
            )
            data = getattr(resp, "content", None)
            if isinstance(data, (bytes, bytearray)):
                return bytes(data)
            read = getattr(resp, "read", None)
            if callable(read):
                return read()
            return bytes(resp)

        return await asyncio.to_thread(_call)

    async def synthesize(self, text: str) -> bytes:
        if not text or not text.strip():
            return b""

        task = asyncio.create_task(self._generate_wav(text))
        self._inflight = task
        try:
            wav_bytes = await task
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("OpenAI TTS failed", error=str(e))
            return b""
        finally:
            if self._inflight is task:
                self._inflight = None

        try:
            return wav_bytes_to_twilio_ulaw(wav_bytes)
        except (ValueError, EOFError, wave.Error) as e:
            logger.warning("TTS audio conversion failed", error=str(e))
            return b""

    def cancel(self) -> None:
        if self._inflight and not self._inflight.done():
            self._inflight.cancel()
