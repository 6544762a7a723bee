# talky/api/server.py
"""
FastAPI server for the training flow:

- /message              : one inbound chat message (text or base64 voice note)
- /records/{user_id}    : durable prompt record (prompt, pending, history)
- /records/{id}/prompt  : seed or override the governing prompt
- /health               : basic health check

The transport in front of this server (WhatsApp bridge, test client, ...) posts
every message here; `handled=false` tells it to route the message elsewhere.
"""

import base64
import binascii
import time
import uuid
from functools import lru_cache
from typing import List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field, constr

from talky.config.settings import load_settings
from talky.core.messages import InboundMessage
from talky.core.training import TrainingController
from talky.memory.models import PromptRecord, StoredModification
from talky.memory.repository import StoreError
from talky.utils.logging import get_logger

logger = get_logger(__name__)

app = FastAPI(
    title="Talky Trainer API",
    description="Refine a chatbot's system prompt through conversational feedback.",
    version="1.0.0",
)


@lru_cache(maxsize=1)
def get_controller() -> TrainingController:
    """Single controller per process; sessions live in its registry."""
    return TrainingController.from_settings(load_settings())


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class MessageRequest(BaseModel):
    """
    session_id   : transport-level conversation id
    text         : message body (ignored when audio_base64 is present)
    audio_base64 : optional base64-encoded voice note
    mime_type    : optional MIME hint for the voice note, e.g. "audio/ogg"
    language     : optional STT language hint
    user_id      : optional prompt owner; defaults to TALKY_USER_ID
    """
    session_id: constr(min_length=1) = Field(..., description="Conversation id.")
    text: Optional[str] = Field(default=None, description="Plain-text message body.")
    audio_base64: Optional[str] = Field(default=None, description="Base64-encoded voice note.")
    mime_type: Optional[str] = None
    language: Optional[str] = None
    user_id: Optional[str] = None


class OutboundMessageModel(BaseModel):
    lines: List[str]
    text: str


class MessageResponse(BaseModel):
    handled: bool
    messages: List[OutboundMessageModel]
    mode: str
    latency_ms: int


class ModificationModel(BaseModel):
    id: int
    created_at: str
    type: str
    description: str
    pending: bool


class RecordResponse(BaseModel):
    user_id: str
    prompt: str
    pending_modifications: List[ModificationModel]
    history: List[ModificationModel]
    flush_failures: int


class PromptUpdateRequest(BaseModel):
    prompt: str = Field(..., description="New governing prompt.")


def _mod_model(m: StoredModification) -> ModificationModel:
    return ModificationModel(
        id=m.id,
        created_at=m.created_at,
        type=m.type,
        description=m.description,
        pending=m.pending,
    )


def _record_response(record: PromptRecord) -> RecordResponse:
    return RecordResponse(
        user_id=record.user_id,
        prompt=record.prompt,
        pending_modifications=[_mod_model(m) for m in record.pending_modifications],
        history=[_mod_model(m) for m in record.history],
        flush_failures=record.flush_failures,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.post("/message", response_model=MessageResponse)
def post_message(
    req: MessageRequest,
    controller: TrainingController = Depends(get_controller),
) -> MessageResponse:
    request_id = str(uuid.uuid4())
    start_time = time.monotonic()
    session_id = req.session_id.strip()

    audio_bytes: Optional[bytes] = None
    if req.audio_base64 and req.audio_base64.strip():
        try:
            audio_bytes = base64.b64decode(req.audio_base64, validate=True)
        except (binascii.Error, ValueError) as exc:
            logger.warning("[message] request_id=%s invalid base64: %s", request_id, exc)
            raise HTTPException(status_code=400, detail="Invalid 'audio_base64' payload: could not decode base64.")
    elif not (req.text or "").strip():
        raise HTTPException(status_code=400, detail="Either 'text' or 'audio_base64' must be provided.")

    logger.info("[message] request_id=%s session_id=%s voice=%s text_len=%d",
                request_id, session_id, audio_bytes is not None, len(req.text or ""))

    inbound = InboundMessage(
        text=req.text or "",
        audio_bytes=audio_bytes,
        mime_type=req.mime_type,
        language=req.language,
    )
    result = controller.handle_message(session_id, inbound, user_id=req.user_id)

    latency_ms = int((time.monotonic() - start_time) * 1000)
    mode = controller.mode(session_id).value
    logger.info("[message] request_id=%s session_id=%s handled=%s mode=%s latency_ms=%d",
                request_id, session_id, result.handled, mode, latency_ms)

    return MessageResponse(
        handled=result.handled,
        messages=[OutboundMessageModel(lines=m.lines, text=m.text) for m in result.messages],
        mode=mode,
        latency_ms=latency_ms,
    )


@app.get("/records/{user_id}", response_model=RecordResponse)
def get_record(
    user_id: str,
    controller: TrainingController = Depends(get_controller),
) -> RecordResponse:
    try:
        record = controller.repository.get_record(user_id)
    except StoreError as e:
        logger.error("[records] user_id=%s read failed: %s", user_id, e)
        raise HTTPException(status_code=503, detail="Prompt store unavailable.")
    return _record_response(record)


@app.put("/records/{user_id}/prompt", response_model=RecordResponse)
def put_prompt(
    user_id: str,
    req: PromptUpdateRequest,
    controller: TrainingController = Depends(get_controller),
) -> RecordResponse:
    try:
        controller.repository.update_prompt(user_id, req.prompt)
        record = controller.repository.get_record(user_id)
    except StoreError as e:
        logger.error("[records] user_id=%s prompt update failed: %s", user_id, e)
        raise HTTPException(status_code=503, detail="Prompt store unavailable.")
    return _record_response(record)


@app.get("/health")
def health_check(controller: TrainingController = Depends(get_controller)) -> dict:
    return {"status": "ok", "active_sessions": controller.sessions.active_count()}


def run() -> None:
    """Serve the API with uvicorn on TALKY_HOST:TALKY_PORT (`talky-server`)."""
    settings = load_settings()
    logger.info("[server] listening on %s:%d", settings.api_host, settings.api_port)
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    run()
