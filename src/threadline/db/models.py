"""Domain models for the threadline database layer."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field

ROLES: tuple[str, ...] = ("user", "assistant", "system")

STATUS_COMPLETE = "complete"
STATUS_ABORTED = "aborted"


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Project:
    owner: str
    name: str
    description: str | None = None
    instructions: str | None = None
    id: str = field(default_factory=new_id)
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Document:
    project_id: str
    filename: str
    content: str
    content_type: str = "text/plain"
    id: str = field(default_factory=new_id)
    created_at: str | None = None

    @property
    def file_size(self) -> int:
        """Size of the decoded text in UTF-8 bytes."""
        return len(self.content.encode("utf-8"))


@dataclass
class Chunk:
    document_id: str
    chunk_index: int
    text: str
    start_char: int
    end_char: int
    metadata: str = field(default_factory=lambda: "{}")
    id: str = field(default_factory=new_id)
    created_at: str | None = None

    @property
    def metadata_dict(self) -> dict:
        return json.loads(self.metadata)


@dataclass
class Thread:
    id: str = field(default_factory=new_id)
    user_id: str | None = None
    project_id: str | None = None
    title: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Message:
    thread_id: str
    role: str
    content: str
    lab: str
    model: str
    status: str = STATUS_COMPLETE
    error: str | None = None
    user_id: str | None = None
    id: int | None = None  # set after insert
    created_at: str | None = None

    @property
    def aborted(self) -> bool:
        return self.status == STATUS_ABORTED
