"""Events flowing out of a completion stream and out of a coordinator turn.

Provider streams yield ``Token`` events followed by exactly one terminal
event: ``StreamEnd`` (clean), ``StreamFailed`` (error) or ``StreamCancelled``.
A coordinator turn forwards tokens, may lead with ``Citations``, and always
ends with ``TurnFinished``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Union

from threadline.db.vector_store import ScoredChunk
from threadline.errors import StreamError


@dataclass(frozen=True)
class Token:
    text: str
    terminal = False


@dataclass(frozen=True)
class StreamEnd:
    terminal = True


@dataclass(frozen=True)
class StreamFailed:
    error: StreamError
    terminal = True


@dataclass(frozen=True)
class StreamCancelled:
    terminal = True


TokenEvent = Union[Token, StreamEnd, StreamFailed, StreamCancelled]


class TurnState(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (TurnState.COMPLETED, TurnState.ABORTED, TurnState.CANCELLED)


@dataclass(frozen=True)
class Citations:
    chunks: list[ScoredChunk] = field(default_factory=list)


@dataclass(frozen=True)
class TurnFinished:
    """Last event of a turn.

    ``message_id`` is the persisted assistant message (None when cancelled);
    ``error`` is set for aborted turns.
    """

    state: TurnState
    message_id: int | None = None
    error: StreamError | None = None


TurnEvent = Union[Citations, Token, TurnFinished]
