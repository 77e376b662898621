"""State definition for the message orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Tuple, Union

from chat_core.domain.models import Message


class OrchestratorState(str, Enum):
    """Pipeline stages of a single submission."""

    IDLE = "idle"
    VALIDATING = "validating"
    QUOTA_CHECK = "quota_check"
    CONVERSATION_RESOLVE = "conversation_resolve"
    STREAMING = "streaming"
    PERSISTING = "persisting"


# submit/regenerate are no-ops while the pipeline sits in one of these
BUSY_STATES = frozenset(
    {
        OrchestratorState.VALIDATING,
        OrchestratorState.QUOTA_CHECK,
        OrchestratorState.CONVERSATION_RESOLVE,
        OrchestratorState.STREAMING,
        OrchestratorState.PERSISTING,
    }
)


@dataclass(frozen=True)
class ChatSnapshot:
    """Immutable view handed to subscribers after every change."""

    state: OrchestratorState
    messages: Tuple[Message, ...]
    conversation_id: Optional[str]
    last_error: Optional[str] = None

    @property
    def is_generating(self) -> bool:
        return self.state in BUSY_STATES


@dataclass(frozen=True)
class MessagesAppended:
    messages: Tuple[Message, ...]


@dataclass(frozen=True)
class ChunkAppended:
    message_id: str
    text: str


@dataclass(frozen=True)
class MessageReplaced:
    message_id: str
    message: Message


@dataclass(frozen=True)
class MessageRemoved:
    message_id: str


MessageEvent = Union[MessagesAppended, ChunkAppended, MessageReplaced, MessageRemoved]


def reduce_messages(messages: Tuple[Message, ...], event: MessageEvent) -> Tuple[Message, ...]:
    """Return a new message tuple with the event applied.

    Events that reference an id no longer in the list leave it unchanged.
    """
    if isinstance(event, MessagesAppended):
        return messages + tuple(event.messages)
    if isinstance(event, ChunkAppended):
        return tuple(
            replace(m, content=m.content + event.text) if m.id == event.message_id else m
            for m in messages
        )
    if isinstance(event, MessageReplaced):
        return tuple(event.message if m.id == event.message_id else m for m in messages)
    if isinstance(event, MessageRemoved):
        return tuple(m for m in messages if m.id != event.message_id)
    raise TypeError(f"Unknown message event: {event!r}")
