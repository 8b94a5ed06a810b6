"""
Audio primitives for the Twilio <-> Realtime bridge.

Everything on the call leg is 8kHz G.711 mu-law, one byte per sample, sent as
20ms frames (160 bytes). The Realtime engine is configured for the same format, so
the hot path never transcodes; conversion only happens for locally synthesized
replies (OpenAI TTS returns PCM16 WAV).
"""

import audioop
import io
import wave
from typing import List

import numpy as np

TWILIO_SAMPLE_RATE = 8000
FRAME_DURATION_MS = 20
TWILIO_FRAME_SIZE = int(TWILIO_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms
BYTES_PER_MS = TWILIO_SAMPLE_RATE // 1000  # mu-law: 1 byte per sample

# 0xFF is the mu-law encoding for silence (0 amplitude)
ULAW_SILENCE = 0xFF

# The Realtime engine rejects commits holding less than 100ms of audio.
PROTOCOL_MIN_COMMIT_MS = 100


def duration_ms_to_bytes(duration_ms: float) -> int:
    """Number of mu-law bytes holding `duration_ms` of 8kHz audio."""
    return int(duration_ms * BYTES_PER_MS)


def get_audio_duration_ms(audio_bytes: bytes, sample_rate: int = TWILIO_SAMPLE_RATE, is_ulaw: bool = True) -> float:
    """
    Calculate the duration of audio in milliseconds.

    Args:
        audio_bytes: Audio bytes
        sample_rate: Sample rate in Hz
        is_ulaw: Whether the audio is mu-law (1 byte per sample) or PCM (2 bytes per sample)

    Returns:
        Duration in milliseconds
    """
    if not audio_bytes:
        return 0.0

    bytes_per_sample = 1 if is_ulaw else 2
    num_samples = len(audio_bytes) // bytes_per_sample
    duration_seconds = num_samples / sample_rate

    return duration_seconds * 1000


def pad_frame(frame: bytes, frame_size: int = TWILIO_FRAME_SIZE) -> bytes:
    """Pad a partial frame with mu-law silence."""
    if len(frame) >= frame_size:
        return frame
    return frame + bytes([ULAW_SILENCE]) * (frame_size - len(frame))


def split_frames(audio_bytes: bytes, frame_size: int = TWILIO_FRAME_SIZE) -> tuple[List[bytes], bytes]:
    """
    Split audio into whole frames without padding.

    Returns:
        (frames, remainder) where remainder is shorter than one frame.
    """
    whole = len(audio_bytes) - (len(audio_bytes) % frame_size)
    frames = [audio_bytes[i:i + frame_size] for i in range(0, whole, frame_size)]
    return frames, audio_bytes[whole:]


def ulaw_energy(frame: bytes) -> float:
    """
    Cheap energy proxy computed directly on mu-law codes.

    A mu-law byte stores the inverted sign+magnitude; `(~code) & 0x7F` is the
    magnitude segment/step, which is 0 for both zero levels (0xFF and 0x7F). The mean
    over the frame is the average absolute deviation from the zero level in code space.
    """
    if not frame:
        return 0.0
    codes = np.frombuffer(frame, dtype=np.uint8)
    magnitudes = np.bitwise_and(np.invert(codes), 0x7F)
    return float(magnitudes.mean())


def linear16_to_ulaw(pcm_bytes: bytes) -> bytes:
    """Convert linear PCM 16-bit to mu-law."""
    if not pcm_bytes:
        return b""
    return audioop.lin2ulaw(pcm_bytes, 2)


def resample_pcm16(pcm_bytes: bytes, source_rate: int, target_rate: int) -> bytes:
    """
    Resample mono 16-bit PCM from `source_rate` to `target_rate` using `audioop.ratecv`.
    """
    if not pcm_bytes or source_rate == target_rate:
        return pcm_bytes
    converted, _ = audioop.ratecv(pcm_bytes, 2, 1, int(source_rate), int(target_rate), None)
    return converted


def read_wav_mono_pcm16(wav_bytes: bytes) -> tuple[int, bytes]:
    """
    Read a WAV byte string and return (sample_rate, mono PCM16 bytes).

    - If input is stereo, it is downmixed to mono.
    - If sample width is not 16-bit, raises ValueError.
    """
    if not wav_bytes:
        raise ValueError("Empty WAV")

    with wave.open(io.BytesIO(wav_bytes), "rb") as wf:
        channels = wf.getnchannels()
        sample_width = wf.getsampwidth()
        sample_rate = wf.getframerate()
        frames = wf.readframes(wf.getnframes())

    if sample_width != 2:
        raise ValueError(f"Unsupported WAV sample width: {sample_width * 8} bits")

    if channels == 1:
        return int(sample_rate), frames

    if channels == 2:
        mono = audioop.tomono(frames, 2, 0.5, 0.5)
        return int(sample_rate), mono

    raise ValueError(f"Unsupported WAV channel count: {channels}")


def wav_bytes_to_twilio_ulaw(wav_bytes: bytes) -> bytes:
    """
    Convert a PCM16 WAV byte string (any rate) into Twilio 8kHz mu-law bytes.
    """
    sr, pcm = read_wav_mono_pcm16(wav_bytes)
    pcm_8k = resample_pcm16(pcm, sr, TWILIO_SAMPLE_RATE)
    return linear16_to_ulaw(pcm_8k)
