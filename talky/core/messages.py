# talky/core/messages.py

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union


@dataclass(frozen=True)
class InboundMessage:
    """
    One message as received from the transport.

    text        : message body (may be empty for voice notes)
    audio_bytes : voice-note payload, if any; takes precedence over text
    mime_type   : MIME hint for the audio payload
    language    : optional STT language hint ("es", "en", ...)
    """
    text: str = ""
    audio_bytes: Optional[bytes] = None
    mime_type: Optional[str] = None
    language: Optional[str] = None

    @property
    def is_voice(self) -> bool:
        return bool(self.audio_bytes)


@dataclass(frozen=True)
class OutboundMessage:
    """A single message bubble; multi-line blocks are sent as one message."""
    lines: List[str]

    @classmethod
    def of(cls, content: Union[str, Sequence[str]]) -> "OutboundMessage":
        if isinstance(content, str):
            return cls(lines=[content])
        return cls(lines=list(content))

    @property
    def text(self) -> str:
        return "\n".join(self.lines)


@dataclass
class TurnResult:
    """
    handled=False means the training flow did not claim the message and
    another flow may handle it.
    """
    handled: bool
    messages: List[OutboundMessage] = field(default_factory=list)

    @classmethod
    def not_handled(cls) -> "TurnResult":
        return cls(handled=False)

    @classmethod
    def reply(cls, *contents: Union[str, Sequence[str]]) -> "TurnResult":
        return cls(handled=True, messages=[OutboundMessage.of(c) for c in contents])
