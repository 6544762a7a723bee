# talky/config/settings.py

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Expose BASE_DIR for other modules
BASE_DIR = Path(__file__).resolve().parents[2]
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)

DEFAULT_DB_PATH = BASE_DIR / "talky" / "data" / "talky.db"
DEFAULT_USER_ID = "default"


@dataclass
class Settings:
    # Core OpenAI config
    openai_api_key: str
    openai_model: str = "gpt-4"
    openai_base_url: Optional[str] = None

    # speech-to-text (Whisper) model for voice notes
    openai_stt_model: str = "whisper-1"
    stt_language: Optional[str] = None  # None = let Whisper auto-detect

    # Transport timeout for a single oracle call; the controller adds none of its own
    openai_timeout_seconds: float = 60.0

    # Durable prompt store
    db_path: str = str(DEFAULT_DB_PATH)
    default_user_id: str = DEFAULT_USER_ID

    # Flush policy
    flush_threshold: int = 3
    flush_max_backoff: int = 8
    flush_warn_failures: int = 3

    # Training sessions left untouched this long are discarded
    session_idle_timeout_seconds: float = 1800.0

    # HTTP server bind address (talky-server)
    api_host: str = "127.0.0.1"
    api_port: int = 8000


def _parse_float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
        # safeguard: enforce positive
        return value if value > 0 else default
    except ValueError:
        return default


def _parse_int_env(name: str, default: int, min_val: int = 0, max_val: int = 10) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
        # safeguard: clamp into sane range
        return max(min_val, min(max_val, value))
    except ValueError:
        return default


def load_settings() -> Settings:
    """
    Load configuration from environment variables (and defaults).
    Raises a RuntimeError if required settings are missing.
    Also ensures the DB directory exists.
    """
    # --- Required: API key ---
    api_key = os.getenv("OPENAI_API_KEY", "").strip()
    if not api_key:
        raise RuntimeError("OPENAI_API_KEY is not set in .env or environment")

    openai_model = os.getenv("OPENAI_MODEL", "gpt-4").strip() or "gpt-4"
    base_url = os.getenv("OPENAI_BASE_URL", "").strip() or None
    openai_stt_model = os.getenv("OPENAI_STT_MODEL", "whisper-1").strip() or "whisper-1"
    stt_language = os.getenv("TALKY_STT_LANGUAGE", "").strip().lower() or None

    # --- DB path (optional override) ---
    db_path_env = os.getenv("TALKY_DB_PATH", str(DEFAULT_DB_PATH)).strip() or str(DEFAULT_DB_PATH)
    db_path = Path(db_path_env)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    # The single-user deployment is only a default; callers may pass any user id.
    user_id = os.getenv("TALKY_USER_ID", DEFAULT_USER_ID).strip() or DEFAULT_USER_ID

    timeout_seconds = _parse_float_env("OPENAI_TIMEOUT_SECONDS", 60.0)
    flush_threshold = _parse_int_env("TALKY_FLUSH_THRESHOLD", 3, min_val=1, max_val=50)
    flush_max_backoff = _parse_int_env("TALKY_FLUSH_MAX_BACKOFF", 8, min_val=1, max_val=64)
    flush_warn_failures = _parse_int_env("TALKY_FLUSH_WARN_FAILURES", 3, min_val=1, max_val=100)
    idle_timeout = _parse_float_env("TALKY_SESSION_IDLE_TIMEOUT_SECONDS", 1800.0)
    api_host = os.getenv("TALKY_HOST", "127.0.0.1").strip() or "127.0.0.1"
    api_port = _parse_int_env("TALKY_PORT", 8000, min_val=1, max_val=65535)

    return Settings(
        openai_api_key=api_key,
        openai_model=openai_model,
        openai_base_url=base_url,
        openai_stt_model=openai_stt_model,
        stt_language=stt_language,
        openai_timeout_seconds=timeout_seconds,
        db_path=str(db_path),
        default_user_id=user_id,
        flush_threshold=flush_threshold,
        flush_max_backoff=flush_max_backoff,
        flush_warn_failures=flush_warn_failures,
        session_idle_timeout_seconds=idle_timeout,
        api_host=api_host,
        api_port=api_port,
    )
