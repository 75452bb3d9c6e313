"""Shared pytest fixtures."""

from __future__ import annotations

import math
from types import SimpleNamespace

import pytest

from threadline.db.connection import ConnectionPool, Database
from threadline.db.migrations import initialize
from threadline.db.models import Project
from threadline.db.repository import Repository
from threadline.db.vector_store import VectorStore

EMBED_MODEL = "openai/text-embedding-3-small"
DIMS = 2


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / ".threadline.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
async def pool(tmp_path):
    """Open ConnectionPool over a fresh file DB in tmp_path."""
    p = ConnectionPool(Database(tmp_path / ".threadline.db"), size=2)
    await p.open()
    yield p
    await p.close()


@pytest.fixture
def store(pool):
    return VectorStore(pool, EMBED_MODEL, DIMS)


@pytest.fixture
async def project(pool):
    return await pool.run(
        lambda conn: Repository(conn).add_project(Project(owner="u1", name="Manuals"))
    )


def unit_vector(similarity: float) -> list[float]:
    """2-d unit vector whose cosine similarity with [1, 0] is *similarity*."""
    angle = math.acos(similarity)
    return [math.cos(angle), math.sin(angle)]


class FakeEmbeddingProvider:
    """EmbeddingProvider returning canned vectors.

    ``vectors`` maps text → vector; unknown texts get ``default``. Queue
    exceptions in ``errors`` to make the next calls raise.
    """

    def __init__(self, vectors=None, default=None, errors=None):
        self.vectors = dict(vectors or {})
        self.default = default if default is not None else [1.0, 0.0]
        self.errors = list(errors or [])
        self.calls: list[list[str]] = []

    async def embed(self, texts):
        self.calls.append(list(texts))
        if self.errors:
            raise self.errors.pop(0)
        return [self.vectors.get(t, self.default) for t in texts]


@pytest.fixture
def fake_provider():
    return FakeEmbeddingProvider()


def stream_chunk(text: str):
    """One LiteLLM-shaped streaming chunk carrying *text*."""
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])


class FakeStream:
    """Async iterator over LiteLLM-shaped chunks.

    Raises *error* after *fail_after* chunks when given. ``closed`` records
    whether ``aclose`` was called.
    """

    def __init__(self, texts, error=None, fail_after=None):
        self.texts = list(texts)
        self.error = error
        self.fail_after = len(self.texts) if fail_after is None else fail_after
        self.closed = False
        self._i = 0

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.error is not None and self._i >= self.fail_after:
            raise self.error
        if self._i >= len(self.texts):
            raise StopAsyncIteration
        text = self.texts[self._i]
        self._i += 1
        return stream_chunk(text)

    async def aclose(self):
        self.closed = True
