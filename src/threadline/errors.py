"""Exception taxonomy shared by the ingest, retrieval and streaming layers.

ConfigError lives in threadline.config (raised at load time) and is
re-exported here so callers can import every error from one place.
"""

from __future__ import annotations

from enum import Enum

from threadline.config import ConfigError

__all__ = [
    "ConfigError",
    "DimensionMismatch",
    "EmbedError",
    "EmbedErrorKind",
    "NotFoundError",
    "ScopeViolation",
    "StreamError",
    "StreamErrorKind",
    "ThreadBusy",
    "VectorSearchError",
]


class EmbedErrorKind(str, Enum):
    PROVIDER_FAILURE = "provider_failure"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"


class EmbedError(Exception):
    """An embedding request failed after the retry budget was spent."""

    def __init__(self, kind: EmbedErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message or kind.value

    def __repr__(self) -> str:
        return f"EmbedError({self.kind.value}: {self.message})"


class VectorSearchError(Exception):
    """Base for vector store failures."""


class ScopeViolation(VectorSearchError):
    """A search returned a chunk outside the queried project.

    Never expected in practice; raised instead of returning the row.
    """


class DimensionMismatch(VectorSearchError):
    """A vector's length does not match the active embedding dimension."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"expected a {expected}-dimension vector, got {actual}")
        self.expected = expected
        self.actual = actual


class StreamErrorKind(str, Enum):
    TRANSPORT = "transport"
    PROVIDER_REJECTED = "provider_rejected"
    CANCELLED = "cancelled"


class StreamError(Exception):
    """A completion stream ended abnormally."""

    def __init__(self, kind: StreamErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message or kind.value

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class ThreadBusy(Exception):
    """Another completion is already streaming on this thread. Retry later."""

    def __init__(self, thread_id: str) -> None:
        super().__init__(f"thread '{thread_id}' already has an active completion")
        self.thread_id = thread_id


class NotFoundError(LookupError):
    """A project, document or thread lookup found nothing."""
