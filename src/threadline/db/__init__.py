"""threadline database layer."""

from threadline.db.connection import ConnectionPool, Database
from threadline.db.migrations import MIGRATIONS, initialize, run_migrations
from threadline.db.repository import Repository
from threadline.db.vector_store import ScoredChunk, VectorStore

__all__ = [
    "ConnectionPool",
    "Database",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "Repository",
    "ScoredChunk",
    "VectorStore",
]
