# talky/core/synthesizer.py
"""
Prompt regeneration from accumulated modifications.

Modifications are saved one by one; once enough of them are pending, the
whole batch is handed to the oracle together with the current prompt and the
revised prompt replaces the old one. The batch is cleared only after the new
prompt is stored, so a failed regeneration is retried on a later save.

Retries are spaced out in saves rather than time: after k consecutive
failures, the next attempt waits for min(2**(k-1), max_backoff) new
modifications since the previous attempt.
"""

from typing import Any, Dict, List, Optional, Sequence

from talky.core.results import Result
from talky.memory.models import Modification
from talky.memory.repository import PromptRepository, StoreError
from talky.utils.logging import get_logger, log_event

logger = get_logger(__name__)

SYNTHESIS_TEMPERATURE = 0.7

TRAILER_SENTENCE = "Estos son los datos actualizados al día de hoy del restaurante:"

SYNTHESIS_SYSTEM = (
    "Eres una IA que mejora los prompts de chatbots basándose en el feedback "
    "y modificaciones de los usuarios."
)


def render_modifications(batch: Sequence[Modification]) -> str:
    return "\n\n".join(f"Tipo: {m.type}\nDescripción: {m.description}" for m in batch)


def ensure_trailer(prompt: str) -> str:
    text = (prompt or "").rstrip()
    if text.endswith(TRAILER_SENTENCE):
        return text
    return f"{text}\n\n{TRAILER_SENTENCE}"


def flush_due(
    pending_count: int,
    failures: int,
    last_attempt_size: int,
    threshold: int = 3,
    max_backoff: int = 8,
) -> bool:
    if pending_count < threshold:
        return False
    if failures <= 0:
        return True
    gap = min(2 ** (failures - 1), max_backoff)
    return pending_count - last_attempt_size >= gap


class PromptSynthesizer:

    def __init__(
        self,
        oracle: Any,
        repository: PromptRepository,
        threshold: int = 3,
        max_backoff: int = 8,
        warn_failures: int = 3,
    ) -> None:
        self.oracle = oracle
        self.repository = repository
        self.threshold = threshold
        self.max_backoff = max_backoff
        self.warn_failures = warn_failures

    def build_request(self, current_prompt: str, batch: Sequence[Modification]) -> Dict[str, Any]:
        user_content = (
            f"Prompt actual:\n{current_prompt}\n\n"
            f"Modificaciones a incorporar:\n{render_modifications(batch)}\n\n"
            "Crea un prompt mejorado que incorpore estas modificaciones manteniendo la "
            "funcionalidad principal. Importante: siempre al final del prompt añade esta frase: "
            f"{TRAILER_SENTENCE}"
        )
        messages: List[Dict[str, str]] = [{"role": "user", "content": user_content}]
        return {"system": SYNTHESIS_SYSTEM, "messages": messages, "temperature": SYNTHESIS_TEMPERATURE}

    def synthesize(self, current_prompt: str, batch: Sequence[Modification]) -> Result[str]:
        """
        Ask the oracle for a revised prompt. Does not touch the store.
        """
        if not batch:
            return Result.failure("empty batch")
        try:
            reply = self.oracle.complete(**self.build_request(current_prompt, batch))
        except Exception as e:
            log_event(logger, "synthesizer", "oracle call failed",
                      {"error": str(e), "batch_size": len(batch)})
            return Result.failure(f"oracle error: {e}")

        new_prompt = (reply or "").strip()
        if not new_prompt:
            return Result.failure("oracle returned an empty prompt")
        return Result.success(ensure_trailer(new_prompt))

    def flush_if_due(self, user_id: str) -> Optional[Result[str]]:
        """
        Regenerate the prompt if the pending batch is large enough and the
        backoff allows it. Returns None when no attempt was made.
        StoreError propagates.
        """
        record = self.repository.get_record(user_id)
        pending = record.pending_modifications
        if not flush_due(
            len(pending),
            record.flush_failures,
            record.last_flush_size,
            threshold=self.threshold,
            max_backoff=self.max_backoff,
        ):
            if len(pending) >= self.threshold:
                logger.info("[flush] user_id=%s deferred pending=%d failures=%d last_attempt=%d",
                            user_id, len(pending), record.flush_failures, record.last_flush_size)
            return None

        # pending is newest-first; the oracle reads the batch in the order it was given
        batch = [m.to_modification() for m in reversed(pending)]
        logger.info("[flush] user_id=%s regenerating prompt batch=%d", user_id, len(batch))

        result = self.synthesize(record.prompt, batch)
        if not result.ok:
            failures = self.repository.record_flush_failure(user_id, len(pending))
            level_msg = "[flush] user_id=%s regeneration failed failures=%d pending=%d error=%s"
            if failures >= self.warn_failures:
                logger.warning(level_msg, user_id, failures, len(pending), result.error)
            else:
                logger.info(level_msg, user_id, failures, len(pending), result.error)
            return result

        self.repository.commit_regeneration(user_id, result.value or "", [m.id for m in pending])
        log_event(logger, "flush", "new prompt generated", {"user_id": user_id, "prompt": result.value})
        return result

    def save_and_flush(self, user_id: str, modification: Modification) -> Optional[Result[str]]:
        """
        Persist a modification, then flush if due.

        The save itself raises StoreError. A store failure during the flush is
        reported as a failed Result: the modification is already saved and the
        batch will be retried on a later save.
        """
        self.repository.save_modification(user_id, modification)
        try:
            return self.flush_if_due(user_id)
        except StoreError as e:
            logger.error("[flush] user_id=%s store error during flush: %s", user_id, e)
            return Result.failure(f"store error: {e}")
