# talky/clients/openai_client.py
#
# The language oracle: chat completions for the classifier, synthesizer and
# responder, and Whisper for voice notes.
# Chat calls make exactly one attempt; callers degrade on failure.

import io
import random
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

from openai import OpenAI

from talky.config.settings import Settings
from talky.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_API_BASE = "https://api.openai.com"

STT_MAX_ATTEMPTS = 3

TRANSIENT_STATUS = frozenset({408, 409, 425, 429, 500, 502, 503, 504})

# First match wins; each entry is (code, substrings of the lowercased message)
ERROR_CODES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("openai_auth", ("401", "incorrect api key", "authentication")),
    ("openai_rate_limit", ("429", "rate limit")),
    ("openai_timeout", ("timeout", "timed out")),
    ("openai_502", ("502", "bad gateway")),
    ("openai_503", ("503", "service unavailable")),
    ("openai_network", ("connection", "dns")),
)

TRANSIENT_CODES = frozenset({"openai_rate_limit", "openai_timeout", "openai_502", "openai_503", "openai_network"})

AUDIO_EXTENSIONS = {
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "audio/ogg": ".ogg",
    "audio/webm": ".webm",
    "audio/mp4": ".m4a",
    "audio/m4a": ".m4a",
    "audio/x-m4a": ".m4a",
}


class OracleCallError(RuntimeError):
    """An oracle invocation failed or returned nothing usable."""

    def __init__(self, message: str, code: str = "openai_unknown") -> None:
        super().__init__(message)
        self.code = code


def normalize_api_base(raw: Optional[str]) -> str:
    """
    Base URL the SDK should use, always ending in /v1.

    Tolerates surrounding quotes (copied straight from a .env file), a bare
    host, or a full endpoint such as .../v1/audio/transcriptions.
    """
    base = (raw or DEFAULT_API_BASE).strip()
    if len(base) >= 2 and base[0] == base[-1] and base[0] in "'\"":
        base = base[1:-1].strip()

    if not base.startswith(("http://", "https://")):
        raise RuntimeError(f"OPENAI_BASE_URL is invalid (missing scheme): {base!r}")

    return base.rstrip("/").partition("/v1")[0] + "/v1"


def classify_openai_error(e: BaseException) -> str:
    """Short code for logs and OracleCallError.code."""
    msg = (str(e) or "").lower()
    if "404" in msg or "notfound" in type(e).__name__.lower():
        # an HTML 404 page usually means the base URL points at the wrong host
        return "openai_404_bad_base_url" if ("<html" in msg or "nginx" in msg) else "openai_404_not_found"
    for code, needles in ERROR_CODES:
        if any(n in msg for n in needles):
            return code
    return "openai_unknown"


def is_transient(e: BaseException) -> bool:
    status = getattr(e, "status_code", None)
    if isinstance(status, int):
        return status in TRANSIENT_STATUS
    return classify_openai_error(e) in TRANSIENT_CODES


def backoff_delay(attempt: int) -> float:
    """0.4s, 0.8s, 1.6s, ... plus jitter, capped at 3s."""
    return min(3.0, 0.4 * 2 ** (attempt - 1) + random.uniform(0.0, 0.25))


def audio_filename(mime_type: Optional[str]) -> str:
    # Whisper infers the container from the extension
    base = (mime_type or "").split(";", 1)[0].strip().lower()
    return "voice_note" + AUDIO_EXTENSIONS.get(base, ".wav")


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class OpenAIOracle:
    """
    Black-box text oracle backed by the OpenAI SDK.

    complete()   : system instruction + message list -> reply text
    transcribe() : audio bytes -> transcript text

    Both raise OracleCallError; callers decide how to degrade.
    """

    def __init__(self, settings: Settings, client: Optional[Any] = None) -> None:
        self.settings = settings
        self.api_base = normalize_api_base(settings.openai_base_url)
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            # retries are ours to decide, not the SDK's
            self._client = OpenAI(
                api_key=self.settings.openai_api_key,
                base_url=self.api_base,
                timeout=self.settings.openai_timeout_seconds,
                max_retries=0,
            )
            logger.info("[oracle] client ready base=%s model=%s", self.api_base, self.settings.openai_model)
        return self._client

    def complete(
        self,
        system: str,
        messages: List[Dict[str, str]],
        temperature: float = 0.7,
    ) -> str:
        req_id = "chat_" + uuid.uuid4().hex[:8]
        model = (self.settings.openai_model or "").strip() or "gpt-4"

        bad = [i for i, m in enumerate(messages) if not (isinstance(m, dict) and "role" in m and "content" in m)]
        if bad:
            raise OracleCallError(f"complete: malformed message at index {bad[0]}", code="invalid_request")

        payload = [{"role": "system", "content": system}]
        payload.extend({"role": m["role"], "content": m["content"]} for m in messages)
        logger.info("[chat] req_id=%s model=%s messages=%d temperature=%.2f",
                    req_id, model, len(payload), temperature)

        started = time.monotonic()
        try:
            resp = self.client.chat.completions.create(model=model, messages=payload, temperature=temperature)
        except Exception as e:
            code = classify_openai_error(e)
            logger.warning("[chat] req_id=%s failed latency_ms=%d code=%s err=%s",
                           req_id, int((time.monotonic() - started) * 1000), code, e)
            raise OracleCallError("The language model call failed.", code=code) from e

        latency_ms = int((time.monotonic() - started) * 1000)
        choices = getattr(resp, "choices", None) or []
        content = ((choices[0].message.content if choices else None) or "").strip()
        if not content:
            logger.warning("[chat] req_id=%s empty reply latency_ms=%d", req_id, latency_ms)
            raise OracleCallError("The language model returned an empty reply.", code="empty_reply")

        logger.info("[chat] req_id=%s ok latency_ms=%d reply=%r", req_id, latency_ms, _clip(content, 240))
        return content

    def transcribe(
        self,
        audio_bytes: bytes,
        mime_type: Optional[str] = None,
        language: Optional[str] = None,
    ) -> str:
        """
        Whisper transcription. Transient provider errors (rate limits,
        timeouts, 5xx) are retried up to STT_MAX_ATTEMPTS times.
        """
        if not audio_bytes:
            raise OracleCallError("Empty audio payload.", code="invalid_request")

        req_id = "stt_" + uuid.uuid4().hex[:8]
        model = (self.settings.openai_stt_model or "").strip() or "whisper-1"
        extra: Dict[str, Any] = {"language": language} if language else {}
        upload = io.BytesIO(audio_bytes)
        upload.name = audio_filename(mime_type)

        logger.info("[stt] req_id=%s model=%s bytes=%d file=%s lang=%s",
                    req_id, model, len(audio_bytes), upload.name, language)

        attempt = 0
        while True:
            attempt += 1
            upload.seek(0)
            try:
                result = self.client.audio.transcriptions.create(model=model, file=upload, **extra)
            except Exception as e:
                code = classify_openai_error(e)
                retry = attempt < STT_MAX_ATTEMPTS and is_transient(e)
                logger.warning("[stt] req_id=%s attempt=%d/%d code=%s retry=%s err=%s",
                               req_id, attempt, STT_MAX_ATTEMPTS, code, retry, e)
                if not retry:
                    raise OracleCallError("Failed to transcribe the audio input.", code=code) from e
                time.sleep(backoff_delay(attempt))
                continue

            text = str(getattr(result, "text", "") or "").strip()
            if not text:
                logger.warning("[stt] req_id=%s empty transcription", req_id)
                raise OracleCallError("Empty transcription.", code="empty_reply")
            logger.info("[stt] req_id=%s ok attempt=%d transcript=%r", req_id, attempt, _clip(text, 180))
            return text

