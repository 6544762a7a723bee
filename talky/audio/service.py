# talky/audio/service.py
"""
Transcript normalization for inbound messages.

A text message passes through stripped. A voice note is checked before it
is sent to speech-to-text:
- payload size within [VOICE_NOTE_MIN_BYTES, VOICE_NOTE_MAX_BYTES],
- MIME type mapped to its canonical form,
- for WAV payloads, a minimum duration and (optionally) a silence check.

normalize_inbound() never raises: a rejected or failed voice note yields
None so the controller can ask the user to send it again.
"""

from __future__ import annotations

import hashlib
import io
import os
import time
import uuid
import wave
from dataclasses import dataclass
from typing import Any, Optional

import numpy as np

from talky.core.messages import InboundMessage
from talky.utils.logging import get_logger

logger = get_logger(__name__)


class VoiceNoteError(Exception):
    """A voice note could not be turned into text."""


class VoiceNoteRejected(VoiceNoteError, ValueError):
    """Payload refused before transcription (size, duration, silence)."""


class TranscriptionFailed(VoiceNoteError, RuntimeError):
    """The oracle failed to transcribe, or returned nothing."""


VOICE_NOTE_MAX_BYTES = 10 * 1024 * 1024

# WhatsApp-style notes are small opus files; anything under 1 KiB has no speech in it
VOICE_NOTE_MIN_BYTES = 1024
VOICE_NOTE_MIN_SECONDS = 0.35

KNOWN_MIME_TYPES = frozenset({"audio/wav", "audio/mpeg", "audio/ogg", "audio/webm", "audio/mp4"})

MIME_ALIASES = {
    "audio/wave": "audio/wav",
    "audio/x-wav": "audio/wav",
    "audio/mp3": "audio/mpeg",
    "audio/opus": "audio/ogg",
    "audio/oga": "audio/ogg",
    "audio/m4a": "audio/mp4",
    "audio/x-m4a": "audio/mp4",
}

REJECT_SILENT_WAV = os.getenv("TALKY_REJECT_SILENT_WAV", "1").strip() != "0"

# PCM16 amplitude levels
SILENCE_RMS = 120.0
SPEECH_SAMPLE_LEVEL = SILENCE_RMS * 3.0
MIN_SPEECH_RATIO = 0.03


def canonical_mime(mime_type: Optional[str]) -> Optional[str]:
    """'audio/ogg; codecs=opus' -> 'audio/ogg'; aliases folded; blank -> None."""
    if not mime_type:
        return None
    base = mime_type.split(";", 1)[0].strip().lower()
    return MIME_ALIASES.get(base, base) or None


@dataclass(frozen=True)
class WavStats:
    duration_sec: float
    sample_rate: int
    channels: int
    # None when the samples are not PCM16
    rms: Optional[float] = None
    speech_ratio: Optional[float] = None

    @property
    def mostly_silent(self) -> bool:
        if self.rms is None or self.speech_ratio is None:
            return False
        return self.rms < SILENCE_RMS and self.speech_ratio < MIN_SPEECH_RATIO


def encode_wav(samples: np.ndarray, sample_rate: int, channels: int = 1) -> bytes:
    """PCM16 samples (any shape) -> WAV bytes."""
    out = io.BytesIO()
    with wave.open(out, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(np.asarray(samples, dtype="<i2").tobytes())
    return out.getvalue()


def wav_stats(payload: bytes) -> Optional[WavStats]:
    """Header and loudness figures of a WAV payload, or None if it is not WAV."""
    try:
        with wave.open(io.BytesIO(payload), "rb") as wf:
            rate = wf.getframerate()
            channels = wf.getnchannels()
            width = wf.getsampwidth()
            frames = wf.readframes(wf.getnframes())
            n_frames = wf.getnframes()
    except (wave.Error, EOFError):
        return None

    duration = n_frames / float(rate) if rate else 0.0
    if width != 2:
        return WavStats(duration, rate, channels)

    # a data chunk cut off mid-sample leaves one stray byte
    frames = frames[: len(frames) - len(frames) % 2]
    samples = np.frombuffer(frames, dtype="<i2").astype("float32")
    if samples.size == 0:
        return WavStats(duration, rate, channels, rms=0.0, speech_ratio=0.0)

    rms = float(np.sqrt(np.mean(samples * samples)))
    speech_ratio = float(np.mean(np.abs(samples) > SPEECH_SAMPLE_LEVEL))
    return WavStats(duration, rate, channels, rms=rms, speech_ratio=speech_ratio)


def check_voice_note(payload: bytes, mime_type: Optional[str], request_id: str = "-") -> Optional[str]:
    """
    Refuse payloads that should never reach speech-to-text.
    Returns the canonical MIME type; raises VoiceNoteRejected.
    """
    size = len(payload or b"")
    if size < VOICE_NOTE_MIN_BYTES:
        logger.warning("[voice] request_id=%s payload too small bytes=%d", request_id, size)
        raise VoiceNoteRejected(f"voice note too small ({size} bytes)")
    if size > VOICE_NOTE_MAX_BYTES:
        raise VoiceNoteRejected(f"voice note too large ({size} bytes, max {VOICE_NOTE_MAX_BYTES})")

    mime = canonical_mime(mime_type)
    if mime is not None and mime not in KNOWN_MIME_TYPES:
        logger.warning("[voice] request_id=%s unexpected mime=%s, sending anyway", request_id, mime)

    stats = wav_stats(payload)
    fingerprint = hashlib.sha256(payload).hexdigest()[:16]
    if stats is None:
        logger.info("[voice] request_id=%s bytes=%d mime=%s fp=%s", request_id, size, mime, fingerprint)
        return mime

    logger.info("[voice] request_id=%s wav duration=%.2fs rate=%d channels=%d rms=%s speech_ratio=%s fp=%s",
                request_id, stats.duration_sec, stats.sample_rate, stats.channels,
                stats.rms, stats.speech_ratio, fingerprint)
    if stats.duration_sec < VOICE_NOTE_MIN_SECONDS:
        raise VoiceNoteRejected(f"voice note too short ({stats.duration_sec:.2f}s)")
    if REJECT_SILENT_WAV and stats.mostly_silent:
        raise VoiceNoteRejected("voice note is mostly silence")
    return mime or "audio/wav"


def transcribe_voice_note(
    oracle: Any,
    payload: bytes,
    mime_type: Optional[str] = None,
    language: Optional[str] = None,
) -> str:
    """
    Check the payload, then transcribe it with `oracle.transcribe`.
    Raises VoiceNoteRejected or TranscriptionFailed.
    """
    request_id = uuid.uuid4().hex[:8]
    started = time.monotonic()
    mime = check_voice_note(payload, mime_type, request_id)

    try:
        text = oracle.transcribe(payload, mime_type=mime, language=language)
    except Exception as e:
        logger.error("[voice] request_id=%s transcription error: %s", request_id, e)
        raise TranscriptionFailed("transcription failed") from e

    text = (text or "").strip()
    if not text:
        raise TranscriptionFailed("empty transcription")

    logger.info("[voice] request_id=%s transcribed chars=%d latency_ms=%d",
                request_id, len(text), int((time.monotonic() - started) * 1000))
    return text


def normalize_inbound(
    message: InboundMessage,
    oracle: Any,
    default_language: Optional[str] = None,
) -> Optional[str]:
    """
    Plain text of an inbound message, or None when there is none to be had
    (blank text, rejected or failed voice note).
    """
    if not message.is_voice:
        return (message.text or "").strip() or None

    try:
        return transcribe_voice_note(
            oracle,
            message.audio_bytes or b"",
            mime_type=message.mime_type,
            language=message.language or default_language,
        )
    except VoiceNoteError as e:
        logger.warning("[normalize] voice note dropped: %s", e)
        return None
    except Exception as e:
        logger.exception("[normalize] voice note dropped on unexpected error: %s", e)
        return None
