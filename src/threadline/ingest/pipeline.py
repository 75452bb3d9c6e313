"""Document ingestion: chunk → store → embed, one document at a time.

The document row and all of its chunks are written in one transaction
before any embedding call. Chunks whose embedding fails stay stored without
a vector; search skips them until ``reembed`` fills the gap.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from threadline.db.connection import ConnectionPool
from threadline.db.models import Chunk, Document
from threadline.db.repository import Repository
from threadline.db.vector_store import VectorStore
from threadline.errors import EmbedError, NotFoundError
from threadline.ingest.chunker import TextChunker
from threadline.ingest.embedder import Embedder

logger = logging.getLogger(__name__)


@dataclass
class IngestReport:
    """Per-document ingestion outcome.

    Attributes:
        document_id: ID of the stored document.
        filename: Original filename.
        chunk_count: Chunks covered by this run.
        embedded_count: Chunks that received an embedding in this run.
        failures: chunk_id → EmbedError for chunks left without a vector.
    """

    document_id: str
    filename: str
    chunk_count: int = 0
    embedded_count: int = 0
    failures: dict[str, EmbedError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


class Ingestor:
    """Write path for project documents.

    Args:
        pool: Open ConnectionPool.
        chunker: Splits document text into chunks.
        embedder: Produces chunk vectors.
        store: Persists vectors for the active embedding model.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        chunker: TextChunker,
        embedder: Embedder,
        store: VectorStore,
    ) -> None:
        self._pool = pool
        self._chunker = chunker
        self._embedder = embedder
        self._store = store

    async def ingest(
        self,
        project_id: str,
        filename: str,
        content: str,
        content_type: str = "text/plain",
    ) -> IngestReport:
        """Store *content* as a new document of *project_id* and embed its chunks.

        Raises:
            NotFoundError: If the project does not exist.
        """
        project = await self._pool.run(lambda conn: Repository(conn).get_project(project_id))
        if project is None:
            raise NotFoundError(f"project '{project_id}' not found")

        document = Document(
            project_id=project_id,
            filename=filename,
            content=content,
            content_type=content_type,
        )
        chunks = self._chunker.chunk(document.id, content)
        await self._pool.run(lambda conn: Repository(conn).add_document(document, chunks))
        logger.info("Stored %s: %d chunk(s)", filename, len(chunks))

        return await self._embed_chunks(document.id, filename, chunks)

    async def reembed(
        self, project_id: str, document_id: str | None = None
    ) -> list[IngestReport]:
        """Embed every chunk in the project (or one document) still lacking a vector."""
        pending = await self._store.pending_chunks(project_id, document_id)
        by_document: dict[str, list[Chunk]] = {}
        for chunk in pending:
            by_document.setdefault(chunk.document_id, []).append(chunk)

        reports: list[IngestReport] = []
        for doc_id, chunks in by_document.items():
            document = await self._pool.run(lambda conn, d=doc_id: Repository(conn).get_document(d))
            filename = document.filename if document else doc_id
            reports.append(await self._embed_chunks(doc_id, filename, chunks))
        return reports

    async def remove(self, document_id: str) -> bool:
        """Delete a document with its chunks and embeddings."""
        return await self._store.delete_document(document_id)

    async def _embed_chunks(
        self, document_id: str, filename: str, chunks: list[Chunk]
    ) -> IngestReport:
        report = IngestReport(document_id=document_id, filename=filename, chunk_count=len(chunks))
        if not chunks:
            return report

        result = await self._embedder.embed_batch([c.text for c in chunks])
        await self._store.upsert_many(
            [(chunks[i].id, vector) for i, vector in sorted(result.vectors.items())]
        )
        report.embedded_count = len(result.vectors)
        report.failures = {chunks[i].id: err for i, err in result.failures.items()}

        if report.failures:
            logger.warning(
                "%s: %d of %d chunk(s) not embedded; run reembed later",
                filename, len(report.failures), len(chunks),
            )
        return report
