"""Tests for VectorStore: upsert, thresholded project-scoped search."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from conftest import DIMS, EMBED_MODEL, unit_vector
from threadline.db.models import Chunk, Document, Project
from threadline.db.repository import Repository
from threadline.db.vector_store import VectorStore
from threadline.errors import DimensionMismatch, ScopeViolation

QUERY = [1.0, 0.0]


async def _add_doc(pool, project_id: str, texts: list[str], filename: str = "doc.txt") -> list[Chunk]:
    doc = Document(project_id=project_id, filename=filename, content=" ".join(texts))
    chunks = [
        Chunk(document_id=doc.id, chunk_index=i, text=t, start_char=0, end_char=len(t))
        for i, t in enumerate(texts)
    ]
    await pool.run(lambda conn: Repository(conn).add_document(doc, chunks))
    return chunks


async def _embed(store: VectorStore, chunks: list[Chunk], sims: list[float]) -> None:
    await store.upsert_many([(c.id, unit_vector(s)) for c, s in zip(chunks, sims)])


# ------------------------------------------------------------------
# Threshold + top-k
# ------------------------------------------------------------------


async def test_threshold_then_top_k(pool, store, project):
    chunks = await _add_doc(pool, project.id, ["s90", "s80", "s75", "s70"])
    await _embed(store, chunks, [0.9, 0.8, 0.75, 0.70])

    results = await store.search(project.id, QUERY, threshold=0.72, top_k=2)

    assert [r.text for r in results] == ["s90", "s80"]
    assert results[0].similarity == pytest.approx(0.9, abs=1e-5)
    assert results[1].similarity == pytest.approx(0.8, abs=1e-5)


async def test_threshold_excludes_below_and_equal(pool, store, project):
    chunks = await _add_doc(pool, project.id, ["s90", "s80", "s75", "s70"])
    await _embed(store, chunks, [0.9, 0.8, 0.75, 0.70])

    results = await store.search(project.id, QUERY, threshold=0.72, top_k=10)
    assert [r.text for r in results] == ["s90", "s80", "s75"]
    assert all(r.similarity > 0.72 for r in results)


async def test_empty_project_returns_empty(store, project):
    assert await store.search(project.id, QUERY) == []


async def test_stored_vector_finds_itself_first(pool, store, project):
    chunks = await _add_doc(pool, project.id, ["a", "b", "c"])
    vectors = [[0.6, 0.8], [1.0, 0.0], [0.0, 1.0]]
    await store.upsert_many([(c.id, v) for c, v in zip(chunks, vectors)])

    results = await store.search(project.id, [0.6, 0.8], threshold=-1.0, top_k=3)
    assert results[0].chunk_id == chunks[0].id
    assert results[0].similarity == pytest.approx(1.0, abs=1e-5)
    sims = [r.similarity for r in results]
    assert sims == sorted(sims, reverse=True)


async def test_ties_break_by_chunk_index_then_document_age(pool, store, project):
    first = await _add_doc(pool, project.id, ["d1-c0", "d1-c1"], filename="one.txt")
    second = await _add_doc(pool, project.id, ["d2-c0"], filename="two.txt")
    # Insert embeddings in reverse so insertion order cannot explain the result.
    for chunk in [second[0], first[1], first[0]]:
        await store.upsert(chunk.id, [1.0, 0.0])

    results = await store.search(project.id, QUERY, threshold=0.5, top_k=3)
    assert [r.text for r in results] == ["d1-c0", "d2-c0", "d1-c1"]


# ------------------------------------------------------------------
# Scope
# ------------------------------------------------------------------


async def test_search_never_returns_other_projects(pool, store, project):
    other = await pool.run(
        lambda conn: Repository(conn).add_project(Project(owner="u2", name="Other"))
    )
    mine = await _add_doc(pool, project.id, ["mine"])
    theirs = await _add_doc(pool, other.id, ["theirs"])
    await _embed(store, mine, [0.8])
    await _embed(store, theirs, [0.99])

    results = await store.search(project.id, QUERY, threshold=0.0, top_k=5)
    assert [r.text for r in results] == ["mine"]
    assert all(r.project_id == project.id for r in results)


async def test_foreign_row_raises_scope_violation(store, project):
    foreign = {
        "chunk_id": "c1", "document_id": "d1", "project_id": "someone-else",
        "filename": "x.txt", "chunk_index": 0, "chunk_text": "leak",
        "start_char": 0, "end_char": 4, "similarity": 0.99,
        "document_created_at": "2026-01-01T00:00:00.000",
    }
    with patch("threadline.db.vector_store._search_rows", return_value=[foreign]):
        with pytest.raises(ScopeViolation):
            await store.search(project.id, QUERY)


async def test_other_model_embeddings_are_ignored(pool, store, project):
    chunks = await _add_doc(pool, project.id, ["a"])
    other_model = VectorStore(pool, "openai/text-embedding-3-large", DIMS)
    await other_model.upsert(chunks[0].id, [1.0, 0.0])

    assert await store.search(project.id, QUERY, threshold=0.0) == []
    assert await store.count_embeddings(chunks[0].document_id) == 0


# ------------------------------------------------------------------
# Writes
# ------------------------------------------------------------------


async def test_upsert_rejects_wrong_dimension(pool, store, project):
    chunks = await _add_doc(pool, project.id, ["a"])
    with pytest.raises(DimensionMismatch) as exc_info:
        await store.upsert(chunks[0].id, [1.0, 0.0, 0.0])
    assert exc_info.value.expected == DIMS
    assert exc_info.value.actual == 3


async def test_search_rejects_wrong_query_dimension(store, project):
    with pytest.raises(DimensionMismatch):
        await store.search(project.id, [1.0])


async def test_upsert_replaces_existing_vector(pool, store, project):
    chunks = await _add_doc(pool, project.id, ["a"])
    await store.upsert(chunks[0].id, [0.0, 1.0])
    await store.upsert(chunks[0].id, [1.0, 0.0])

    results = await store.search(project.id, QUERY, threshold=0.9)
    assert len(results) == 1
    assert await store.count_embeddings(chunks[0].document_id) == 1


async def test_pending_chunks_lists_unembedded(pool, store, project):
    chunks = await _add_doc(pool, project.id, ["a", "b", "c"])
    await store.upsert(chunks[1].id, [1.0, 0.0])

    pending = await store.pending_chunks(project.id)
    assert [c.text for c in pending] == ["a", "c"]


async def test_delete_document_cascades_embeddings(pool, store, project):
    chunks = await _add_doc(pool, project.id, ["a"])
    await store.upsert(chunks[0].id, [1.0, 0.0])

    assert await store.delete_document(chunks[0].document_id) is True
    assert await store.search(project.id, QUERY, threshold=0.0) == []
    assert await store.delete_document(chunks[0].document_id) is False


def test_store_uses_configured_model(store):
    assert store.model == EMBED_MODEL
    assert store.dimensions == DIMS
