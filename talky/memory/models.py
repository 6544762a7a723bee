# talky/memory/models.py

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

ISO_FMT = "%Y-%m-%dT%H:%M:%S"


def now_iso() -> str:
    return datetime.now(timezone.utc).strftime(ISO_FMT)


@dataclass(frozen=True)
class Modification:
    """A classified piece of feedback meant to change the governing prompt."""
    type: str
    description: str


@dataclass(frozen=True)
class StoredModification:
    id: int
    created_at: str
    type: str
    description: str
    pending: bool
    consumed_at: Optional[str] = None

    def to_modification(self) -> Modification:
        return Modification(type=self.type, description=self.description)


@dataclass
class PromptRecord:
    user_id: str
    prompt: str = ""
    pending_modifications: List[StoredModification] = field(default_factory=list)  # newest first
    history: List[StoredModification] = field(default_factory=list)  # oldest first
    flush_failures: int = 0
    last_flush_size: int = 0
