# talky/core/responder.py

from typing import Any, Dict, Sequence

from talky.core.classifier import render_transcript
from talky.core.results import Result
from talky.memory.repository import PromptRepository
from talky.utils.logging import get_logger

logger = get_logger(__name__)

RESPONSE_TEMPERATURE = 0.7

APOLOGY_MESSAGE = "Lo siento, ha ocurrido un error. ¿Podrías repetir tu mensaje?"


class ConversationResponder:
    """
    Plays the chatbot being trained: answers the operator with the user's
    current governing prompt so they can judge its behaviour.
    """

    def __init__(self, oracle: Any, repository: PromptRepository) -> None:
        self.oracle = oracle
        self.repository = repository

    def generate(self, user_id: str, conversation: Sequence[Dict[str, str]]) -> Result[str]:
        # Store errors propagate; only the oracle call is folded into the Result.
        base_prompt = self.repository.get_prompt(user_id)
        system = f"{base_prompt}\nHistorial de la conversación:\n{render_transcript(conversation)}"

        try:
            reply = self.oracle.complete(
                system=system,
                messages=[{"role": m["role"], "content": m["content"]} for m in conversation],
                temperature=RESPONSE_TEMPERATURE,
            )
        except Exception as e:
            logger.error("[responder] user_id=%s oracle call failed: %s", user_id, e)
            return Result.failure(str(e))

        reply = (reply or "").strip()
        if not reply:
            return Result.failure("empty reply")
        return Result.success(reply)

    def next_interaction(self, user_id: str, conversation: Sequence[Dict[str, str]]) -> str:
        """
        Next chatbot reply for the conversation, or the apology text if the
        oracle could not produce one.
        """
        return self.generate(user_id, conversation).unwrap_or(APOLOGY_MESSAGE)
