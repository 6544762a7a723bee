# talky/core/session.py

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional

from talky.utils.logging import get_logger

logger = get_logger(__name__)


class SessionMode(str, Enum):
    IDLE = "idle"
    TRAINING = "training"


@dataclass
class SessionState:
    """
    Working memory of one training session. Never persisted: it exists from
    "entrenar" until "salir" (or idle expiry).
    """
    session_id: str
    mode: SessionMode = SessionMode.TRAINING
    buffer: List[Dict[str, str]] = field(default_factory=list)
    started_at: float = 0.0
    last_seen: float = 0.0


@dataclass
class _TurnLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class SessionRegistry:
    """
    Mapping of session id -> SessionState for sessions currently in training.
    A session id with no entry is Idle.
    """

    def __init__(
        self,
        idle_timeout_seconds: Optional[float] = 1800.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.idle_timeout_seconds = idle_timeout_seconds
        self._clock = clock
        self._sessions: Dict[str, SessionState] = {}
        self._turn_locks: Dict[str, _TurnLock] = {}
        self._lock = threading.Lock()

    @contextmanager
    def turn(self, session_id: str) -> Iterator[None]:
        """
        Serialize turns of one session.

        The lock entry lives only while someone holds or waits on it, or
        while the session is in training; Idle ids leave nothing behind.
        """
        with self._lock:
            entry = self._turn_locks.get(session_id)
            if entry is None:
                entry = self._turn_locks[session_id] = _TurnLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._lock:
                entry.holders -= 1
                if session_id not in self._sessions:
                    self._drop_turn_lock(session_id)

    def _drop_turn_lock(self, session_id: str) -> None:
        # caller holds self._lock
        entry = self._turn_locks.get(session_id)
        if entry is not None and entry.holders == 0:
            del self._turn_locks[session_id]

    def _is_stale(self, state: SessionState, now: float) -> bool:
        if not self.idle_timeout_seconds:
            return False
        return now - state.last_seen > self.idle_timeout_seconds

    def expire_stale(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [sid for sid, st in self._sessions.items() if self._is_stale(st, now)]
            for sid in stale:
                del self._sessions[sid]
                self._drop_turn_lock(sid)
        for sid in stale:
            logger.info("[session] session_id=%s expired after idle timeout", sid)
        return len(stale)

    def get(self, session_id: str) -> Optional[SessionState]:
        """Return the live training state, or None if the session is Idle."""
        self.expire_stale()
        with self._lock:
            return self._sessions.get(session_id)

    def mode(self, session_id: str) -> SessionMode:
        state = self.get(session_id)
        return state.mode if state is not None else SessionMode.IDLE

    def start(self, session_id: str) -> SessionState:
        now = self._clock()
        state = SessionState(session_id=session_id, started_at=now, last_seen=now)
        with self._lock:
            self._sessions[session_id] = state
        logger.info("[session] session_id=%s training started", session_id)
        return state

    def touch(self, state: SessionState) -> None:
        state.last_seen = self._clock()

    def end(self, session_id: str) -> bool:
        with self._lock:
            existed = self._sessions.pop(session_id, None) is not None
            self._drop_turn_lock(session_id)
        if existed:
            logger.info("[session] session_id=%s training ended", session_id)
        return existed

    def active_count(self) -> int:
        self.expire_stale()
        with self._lock:
            return len(self._sessions)
