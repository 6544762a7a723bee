# talky/utils/logging.py

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from talky.config.settings import BASE_DIR

LOG_DIR = Path(os.getenv("TALKY_LOG_DIR", "").strip() or (BASE_DIR / "talky" / "logs"))
LOG_DIR.mkdir(parents=True, exist_ok=True)
LOG_FILE = LOG_DIR / "talky.log"
LOG_LEVEL = getattr(logging, os.getenv("TALKY_LOG_LEVEL", "INFO").strip().upper(), logging.INFO)


def get_logger(name: str = "talky") -> logging.Logger:
    """
    Return a logger that logs both to file and console.
    Avoids adding duplicate handlers on repeated imports.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger  # avoid duplicate handlers

    logger.setLevel(LOG_LEVEL)

    # File handler
    fh = logging.FileHandler(LOG_FILE, encoding="utf-8")
    fh.setLevel(LOG_LEVEL)

    # Console handler
    ch = logging.StreamHandler()
    ch.setLevel(LOG_LEVEL)

    fmt = logging.Formatter(
        "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    fh.setFormatter(fmt)
    ch.setFormatter(fmt)

    logger.addHandler(fh)
    logger.addHandler(ch)
    return logger


def _render_data(data: Any, max_chars: int = 600) -> str:
    try:
        text = json.dumps(data, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        text = repr(data)
    if len(text) > max_chars:
        text = text[:max_chars] + "..."
    return text


def log_event(
    logger: logging.Logger,
    context: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
    level: int = logging.INFO,
) -> None:
    """
    Log a one-line event as "[context] message data={...}".

    `data` is rendered as compact JSON (truncated) so prompts and oracle
    replies stay greppable without flooding the log file.
    """
    if data:
        logger.log(level, "[%s] %s data=%s", context, message, _render_data(data))
    else:
        logger.log(level, "[%s] %s", context, message)
