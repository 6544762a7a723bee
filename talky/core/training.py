# talky/core/training.py
"""
Training-session controller.

Per session id:
  Idle     --"entrenar"-->  Training (fresh buffer, welcome block)
  Training --"salir"----->  Idle     (buffer discarded, durable record untouched)
  Training --other------->  Training (modification saved, or next chatbot reply)

Idle sessions ignore everything else (the message is reported as not handled
so other flows can claim it). Within Training, a turn is committed to the
session buffer only after every step succeeded; any failure leaves the
session exactly as it was.
"""

import uuid
from typing import Any, Dict, List, Optional

from talky.audio.service import normalize_inbound
from talky.config.settings import Settings
from talky.core.classifier import ModificationClassifier
from talky.core.messages import InboundMessage, TurnResult
from talky.core.responder import ConversationResponder
from talky.core.session import SessionMode, SessionRegistry, SessionState
from talky.core.synthesizer import PromptSynthesizer
from talky.memory.models import Modification
from talky.memory.repository import PromptRepository
from talky.utils.logging import get_logger, log_event

logger = get_logger(__name__)

TRAIN_KEYWORD = "entrenar"
EXIT_KEYWORD = "salir"

# hard cap on a single user message
MAX_USER_TEXT_CHARS = 8000

WELCOME_BLOCK = [
    "🤖 *Modo de Entrenamiento Iniciado*",
    "",
    "Puedes interactuar normalmente con el bot o sugerir modificaciones.",
    f'Para salir, simplemente escribe "{EXIT_KEYWORD}".',
    "",
    "¿En qué puedo ayudarte?",
]

CLOSING_BLOCK = [
    "✅ Entrenamiento finalizado.",
    "Todas las modificaciones han sido guardadas.",
    "¡Hasta pronto!",
]

RETRY_MESSAGE = "Hubo un error al procesar el mensaje. Por favor, intenta nuevamente."
FAILURE_MESSAGE = "Ha ocurrido un error. Por favor, intenta de nuevo."
TOO_LONG_MESSAGE = (
    f"El mensaje es demasiado largo (máximo {MAX_USER_TEXT_CHARS} caracteres). "
    "Por favor, envíalo en partes más cortas."
)
PROMPT_UPDATED_LINE = "🔄 El prompt del bot se ha actualizado con las últimas modificaciones."


def is_keyword(text: str, keyword: str) -> bool:
    return (text or "").strip().lower() == keyword


def acknowledgment_entry(modification: Modification) -> str:
    return f"Modificación registrada: {modification.description}"


def acknowledgment_block(modification: Modification, prompt_updated: bool = False) -> List[str]:
    lines = [
        "✅ He detectado una sugerencia de modificación:",
        f"**Tipo:** {modification.type}",
        f"**Descripción:** {modification.description}",
        "",
        "La modificación ha sido registrada. ¿Hay algo más en lo que pueda ayudarte?",
    ]
    if prompt_updated:
        lines.insert(3, PROMPT_UPDATED_LINE)
    return lines


class TrainingController:

    def __init__(
        self,
        oracle: Any,
        classifier: ModificationClassifier,
        synthesizer: PromptSynthesizer,
        responder: ConversationResponder,
        sessions: Optional[SessionRegistry] = None,
        default_user_id: str = "default",
        stt_language: Optional[str] = None,
    ) -> None:
        self.oracle = oracle
        self.classifier = classifier
        self.synthesizer = synthesizer
        self.responder = responder
        self.sessions = sessions if sessions is not None else SessionRegistry()
        self.default_user_id = default_user_id
        self.stt_language = stt_language

    @classmethod
    def from_settings(cls, settings: Settings, oracle: Any = None) -> "TrainingController":
        """
        Wire the controller with the SQLite store and (unless given) the
        OpenAI-backed oracle.
        """
        if oracle is None:
            from talky.clients.openai_client import OpenAIOracle
            oracle = OpenAIOracle(settings)

        repository = PromptRepository(settings.db_path)
        return cls(
            oracle=oracle,
            classifier=ModificationClassifier(oracle),
            synthesizer=PromptSynthesizer(
                oracle,
                repository,
                threshold=settings.flush_threshold,
                max_backoff=settings.flush_max_backoff,
                warn_failures=settings.flush_warn_failures,
            ),
            responder=ConversationResponder(oracle, repository),
            sessions=SessionRegistry(idle_timeout_seconds=settings.session_idle_timeout_seconds),
            default_user_id=settings.default_user_id,
            stt_language=settings.stt_language,
        )

    @property
    def repository(self) -> PromptRepository:
        return self.synthesizer.repository

    def mode(self, session_id: str) -> SessionMode:
        return self.sessions.mode(session_id)

    def buffer(self, session_id: str) -> List[Dict[str, str]]:
        state = self.sessions.get(session_id)
        return list(state.buffer) if state is not None else []

    # ---------- MAIN ENTRY POINT ----------

    def handle_message(
        self,
        session_id: str,
        message: InboundMessage,
        user_id: Optional[str] = None,
    ) -> TurnResult:
        request_id = str(uuid.uuid4())[:8]
        uid = (user_id or "").strip() or self.default_user_id

        text = normalize_inbound(message, self.oracle, default_language=self.stt_language)
        if text is None:
            logger.warning("[training] request_id=%s session_id=%s no text extracted (voice=%s)",
                           request_id, session_id, message.is_voice)
            return TurnResult.reply(RETRY_MESSAGE)

        with self.sessions.turn(session_id):
            state = self.sessions.get(session_id)

            if state is None:
                if is_keyword(text, TRAIN_KEYWORD):
                    self.sessions.start(session_id)
                    logger.info("[training] request_id=%s session_id=%s user_id=%s entered training",
                                request_id, session_id, uid)
                    return TurnResult.reply(WELCOME_BLOCK)
                return TurnResult.not_handled()

            if is_keyword(text, EXIT_KEYWORD):
                self.sessions.end(session_id)
                logger.info("[training] request_id=%s session_id=%s left training turns=%d",
                            request_id, session_id, len(state.buffer))
                return TurnResult.reply(CLOSING_BLOCK)

            # over-long messages are refused whole, never truncated
            if len(text) > MAX_USER_TEXT_CHARS:
                logger.warning("[training] request_id=%s session_id=%s text length %d exceeds %d; refused",
                               request_id, session_id, len(text), MAX_USER_TEXT_CHARS)
                return TurnResult.reply(TOO_LONG_MESSAGE)

            try:
                return self._training_turn(request_id, state, uid, text)
            except Exception as e:
                logger.exception("[training] request_id=%s session_id=%s turn failed: %s",
                                 request_id, session_id, e)
                return TurnResult.reply(FAILURE_MESSAGE)

    def _training_turn(self, request_id: str, state: SessionState, user_id: str, text: str) -> TurnResult:
        # Work on a copy; state.buffer is replaced only once the turn fully succeeded.
        working = list(state.buffer)
        working.append({"role": "user", "content": text})

        verdict = self.classifier.classify(working)

        if isinstance(verdict, Modification):
            log_event(logger, "training", "modification detected",
                      {"request_id": request_id, "session_id": state.session_id,
                       "type": verdict.type, "description": verdict.description})
            flush = self.synthesizer.save_and_flush(user_id, verdict)
            prompt_updated = flush is not None and flush.ok

            working.append({"role": "assistant", "content": acknowledgment_entry(verdict)})
            self._commit(state, working)
            return TurnResult.reply(acknowledgment_block(verdict, prompt_updated=prompt_updated))

        reply = self.responder.next_interaction(user_id, working)
        working.append({"role": "assistant", "content": reply})
        self._commit(state, working)
        return TurnResult.reply(reply)

    def _commit(self, state: SessionState, working: List[Dict[str, str]]) -> None:
        state.buffer = working
        self.sessions.touch(state)
