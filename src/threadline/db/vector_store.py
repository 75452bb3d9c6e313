"""Chunk embeddings and thresholded, project-scoped similarity search.

Embeddings are stored as float32 blobs in ``chunk_embeddings`` and compared
with sqlite-vec's ``vec_distance_cosine``. The search query applies its
steps in a fixed order:

  1. filter to the queried project (and the active embedding model)
  2. similarity = 1 - cosine_distance
  3. keep rows with similarity > threshold
  4. order by similarity desc, chunk_index asc, document created_at asc
  5. cap at top_k
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass

import sqlite_vec

from threadline.db.connection import ConnectionPool
from threadline.db.models import Chunk
from threadline.db.repository import _row_to_chunk
from threadline.errors import DimensionMismatch, ScopeViolation

DEFAULT_THRESHOLD = 0.72
DEFAULT_TOP_K = 5

_SEARCH_SQL = """
SELECT * FROM (
    SELECT
        dc.rowid        AS chunk_rowid,
        dc.id           AS chunk_id,
        dc.document_id  AS document_id,
        dc.chunk_text   AS chunk_text,
        dc.chunk_index  AS chunk_index,
        dc.start_char   AS start_char,
        dc.end_char     AS end_char,
        pd.project_id   AS project_id,
        pd.filename     AS filename,
        pd.created_at   AS document_created_at,
        1.0 - vec_distance_cosine(ce.embedding, :query) AS similarity
    FROM document_chunks dc
    JOIN chunk_embeddings ce ON ce.chunk_id = dc.id
    JOIN project_documents pd ON pd.id = dc.document_id
    WHERE pd.project_id = :project_id
      AND ce.embedding_model = :model
      AND ce.dimensions = :dimensions
)
WHERE similarity > :threshold
ORDER BY similarity DESC, chunk_index ASC, document_created_at ASC, chunk_rowid ASC
LIMIT :top_k
"""


@dataclass
class ScoredChunk:
    """A retrieved chunk with its similarity to the query and its provenance.

    Attributes:
        chunk_id: ID of the chunk row.
        document_id: ID of the parent document.
        project_id: Project the parent document belongs to.
        filename: Parent document's filename (for citations).
        chunk_index: 0-based position of the chunk within its document.
        text: Chunk text.
        start_char: Start offset of the chunk in the document (characters).
        end_char: End offset (exclusive).
        similarity: 1 - cosine distance to the query vector.
        document_created_at: Creation timestamp of the parent document.
    """

    chunk_id: str
    document_id: str
    project_id: str
    filename: str
    chunk_index: int
    text: str
    start_char: int
    end_char: int
    similarity: float
    document_created_at: str


class VectorStore:
    """Persist chunk embeddings and answer project-scoped top-K queries.

    Args:
        pool: Open ConnectionPool.
        model: Identifier of the active embedding model. Only embeddings
            recorded under this model are searched.
        dimensions: Vector length the active model produces.
    """

    def __init__(self, pool: ConnectionPool, model: str, dimensions: int) -> None:
        if dimensions < 1:
            raise ValueError(f"dimensions must be >= 1, got {dimensions}")
        self._pool = pool
        self.model = model
        self.dimensions = dimensions

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(self, chunk_id: str, vector: list[float]) -> None:
        """Store (or replace) the embedding for *chunk_id*."""
        await self.upsert_many([(chunk_id, vector)])

    async def upsert_many(self, items: list[tuple[str, list[float]]]) -> None:
        """Store several embeddings in one transaction.

        Raises:
            DimensionMismatch: If any vector has the wrong length; nothing
                is written in that case.
        """
        if not items:
            return
        rows = []
        for chunk_id, vector in items:
            self._check_dimensions(vector)
            rows.append(
                (chunk_id, sqlite_vec.serialize_float32(vector), self.model, self.dimensions)
            )
        await self._pool.run(_upsert_rows, rows)

    async def delete_document(self, document_id: str) -> bool:
        """Delete a document; its chunks and embeddings go with it (cascade).

        Returns:
            True if a document was deleted.
        """
        return await self._pool.run(_delete_document, document_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def search(
        self,
        project_id: str,
        query_vector: list[float],
        threshold: float = DEFAULT_THRESHOLD,
        top_k: int = DEFAULT_TOP_K,
    ) -> list[ScoredChunk]:
        """Return up to *top_k* chunks of *project_id* with similarity > *threshold*.

        Raises:
            DimensionMismatch: If *query_vector* has the wrong length.
            ScopeViolation: If a row from another project comes back.
        """
        self._check_dimensions(query_vector)
        if top_k < 1:
            return []
        params = {
            "query": sqlite_vec.serialize_float32(query_vector),
            "project_id": project_id,
            "model": self.model,
            "dimensions": self.dimensions,
            "threshold": threshold,
            "top_k": top_k,
        }
        rows = await self._pool.run(_search_rows, params)

        results: list[ScoredChunk] = []
        for row in rows:
            if row["project_id"] != project_id:
                raise ScopeViolation(
                    f"search for project '{project_id}' returned chunk "
                    f"'{row['chunk_id']}' from project '{row['project_id']}'"
                )
            results.append(_row_to_scored(row))
        return results

    async def pending_chunks(
        self, project_id: str, document_id: str | None = None
    ) -> list[Chunk]:
        """Return chunks in *project_id* with no embedding for the active model."""
        return await self._pool.run(_pending_rows, project_id, document_id, self.model)

    async def count_embeddings(self, document_id: str) -> int:
        return await self._pool.run(_count_embeddings, document_id, self.model)

    def _check_dimensions(self, vector: list[float]) -> None:
        if len(vector) != self.dimensions:
            raise DimensionMismatch(self.dimensions, len(vector))


# ------------------------------------------------------------------
# SQL run on pooled connections (worker thread side)
# ------------------------------------------------------------------


def _upsert_rows(conn: sqlite3.Connection, rows: list[tuple]) -> None:
    with conn:
        conn.executemany(
            """
            INSERT INTO chunk_embeddings (chunk_id, embedding, embedding_model, dimensions)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(chunk_id) DO UPDATE SET
                embedding       = excluded.embedding,
                embedding_model = excluded.embedding_model,
                dimensions      = excluded.dimensions,
                created_at      = strftime('%Y-%m-%dT%H:%M:%f', 'now')
            """,
            rows,
        )


def _delete_document(conn: sqlite3.Connection, document_id: str) -> bool:
    with conn:
        cur = conn.execute("DELETE FROM project_documents WHERE id = ?", (document_id,))
    return cur.rowcount > 0


def _search_rows(conn: sqlite3.Connection, params: dict) -> list[sqlite3.Row]:
    return conn.execute(_SEARCH_SQL, params).fetchall()


def _pending_rows(
    conn: sqlite3.Connection, project_id: str, document_id: str | None, model: str
) -> list[Chunk]:
    sql = """
        SELECT dc.* FROM document_chunks dc
        JOIN project_documents pd ON pd.id = dc.document_id
        LEFT JOIN chunk_embeddings ce
            ON ce.chunk_id = dc.id AND ce.embedding_model = ?
        WHERE pd.project_id = ? AND ce.chunk_id IS NULL
    """
    params: list = [model, project_id]
    if document_id is not None:
        sql += " AND dc.document_id = ?"
        params.append(document_id)
    sql += " ORDER BY pd.created_at, dc.document_id, dc.chunk_index"
    return [_row_to_chunk(r) for r in conn.execute(sql, params).fetchall()]


def _count_embeddings(conn: sqlite3.Connection, document_id: str, model: str) -> int:
    return conn.execute(
        """
        SELECT COUNT(*) FROM chunk_embeddings ce
        JOIN document_chunks dc ON dc.id = ce.chunk_id
        WHERE dc.document_id = ? AND ce.embedding_model = ?
        """,
        (document_id, model),
    ).fetchone()[0]


def _row_to_scored(row: sqlite3.Row) -> ScoredChunk:
    return ScoredChunk(
        chunk_id=row["chunk_id"],
        document_id=row["document_id"],
        project_id=row["project_id"],
        filename=row["filename"],
        chunk_index=row["chunk_index"],
        text=row["chunk_text"],
        start_char=row["start_char"],
        end_char=row["end_char"],
        similarity=float(row["similarity"]),
        document_created_at=row["document_created_at"],
    )
