# talky/core/classifier.py

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Union

from talky.memory.models import Modification
from talky.utils.logging import get_logger, log_event

logger = get_logger(__name__)

CLASSIFIER_TEMPERATURE = 0.3

CLASSIFIER_INSTRUCTION = (
    "Por favor, analiza la conversación anterior y determina si hay sugerencias para mejorar "
    "el chatbot. Responde exclusivamente con un objeto JSON que contenga las siguientes "
    "propiedades: 'is_modification' (booleano). Si 'is_modification' es verdadero, incluye "
    "también 'modification_type' (cadena) y 'description' (cadena). No incluyas ningún otro texto."
)


@dataclass(frozen=True)
class NotAModification:
    reason: str = "no_modification"


Verdict = Union[NotAModification, Modification]


def render_transcript(conversation: Sequence[Dict[str, str]]) -> str:
    return "\n".join(f"{m['role']}: {m['content']}" for m in conversation)


def parse_verdict(raw: str) -> Verdict:
    """
    Strictly parse the oracle's reply into a verdict.

    The reply must be a single JSON object (surrounding whitespace only).
    Anything that does not match the expected shape degrades to
    NotAModification; nothing here raises.
    """
    text = (raw or "").strip()
    if not text:
        return NotAModification(reason="empty_reply")

    try:
        data = json.loads(text)
    except (ValueError, RecursionError):
        # JSONDecodeError, oversized integer literals, absurd nesting
        return NotAModification(reason="invalid_json")

    if not isinstance(data, dict):
        return NotAModification(reason="not_an_object")

    flag = data.get("is_modification")
    if not isinstance(flag, bool):
        return NotAModification(reason="missing_flag")
    if not flag:
        return NotAModification()

    mod_type = data.get("modification_type")
    description = data.get("description")
    if not isinstance(mod_type, str) or not mod_type.strip():
        return NotAModification(reason="missing_type")
    if not isinstance(description, str) or not description.strip():
        return NotAModification(reason="missing_description")

    return Modification(type=mod_type.strip(), description=description.strip())


class ModificationClassifier:
    """
    Decides whether the latest turn of a training conversation is a suggested
    change to the governing prompt. A failed classification never blocks the
    conversation: it is reported as NotAModification.
    """

    def __init__(self, oracle: Any) -> None:
        self.oracle = oracle

    def build_request(self, conversation: Sequence[Dict[str, str]]) -> Dict[str, Any]:
        system = f"\nConversación:\n{render_transcript(conversation)}\n\n{CLASSIFIER_INSTRUCTION}"
        messages: List[Dict[str, str]] = [{"role": "user", "content": conversation[-1]["content"]}]
        return {"system": system, "messages": messages, "temperature": CLASSIFIER_TEMPERATURE}

    def classify(self, conversation: Sequence[Dict[str, str]]) -> Verdict:
        if not conversation:
            return NotAModification(reason="empty_conversation")

        request = self.build_request(conversation)
        try:
            raw = self.oracle.complete(**request)
        except Exception as e:
            log_event(logger, "classifier", "oracle call failed; treating as no modification",
                      {"error": str(e), "error_type": e.__class__.__name__})
            return NotAModification(reason="oracle_error")

        verdict = parse_verdict(raw)
        if isinstance(verdict, NotAModification) and verdict.reason != "no_modification":
            log_event(logger, "classifier", "unparseable verdict; treating as no modification",
                      {"reason": verdict.reason, "raw": raw})
        else:
            log_event(logger, "classifier", "verdict", {"raw": raw})
        return verdict
