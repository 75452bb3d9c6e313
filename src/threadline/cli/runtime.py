"""Shared command plumbing: config + logging, and the async component graph."""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator

import typer
from rich.console import Console

from threadline.cli.errors import err_config, err_no_db, err_project_not_found
from threadline.config import ConfigError, ThreadlineConfig, load_config
from threadline.db.connection import ConnectionPool, Database
from threadline.db.models import Project
from threadline.db.repository import Repository
from threadline.db.vector_store import VectorStore
from threadline.ingest.chunker import ChunkConfig, TextChunker
from threadline.ingest.embedder import Embedder
from threadline.ingest.pipeline import Ingestor
from threadline.log import configure_logging
from threadline.rag.assembler import ContextAssembler
from threadline.rag.coordinator import StreamCoordinator
from threadline.rag.providers import ProviderRouter

console = Console()


def load_settings() -> ThreadlineConfig:
    """Load config and set up logging, or exit 1 with an actionable message."""
    try:
        cfg = load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1)
    configure_logging(cfg.logging.level)
    return cfg


def resolve_db(db: Path | None, cfg: ThreadlineConfig, *, must_exist: bool = True) -> Path:
    path = db if db is not None else Path(cfg.database.path)
    if must_exist and not path.exists():
        console.print(err_no_db(str(path)))
        raise typer.Exit(1)
    return path


@dataclass
class Runtime:
    """Components wired for one CLI invocation."""

    cfg: ThreadlineConfig
    pool: ConnectionPool
    embedder: Embedder
    store: VectorStore

    def ingestor(self) -> Ingestor:
        chunker = TextChunker(ChunkConfig.from_cfg(self.cfg.chunking))
        return Ingestor(self.pool, chunker, self.embedder, self.store)

    def assembler(self) -> ContextAssembler:
        return ContextAssembler.from_cfg(self.embedder, self.store, self.cfg.retrieval)

    def coordinator(self) -> StreamCoordinator:
        router = ProviderRouter.from_cfg(self.cfg.generation)
        return StreamCoordinator.from_cfg(self.pool, self.assembler(), router, self.cfg.generation)

    async def project(self, ref: str) -> Project:
        """Look up a project by id, then by name; exit 1 if neither matches."""
        project = await self.pool.run(lambda conn: find_project(Repository(conn), ref))
        if project is None:
            console.print(err_project_not_found(ref))
            raise typer.Exit(1)
        return project


def find_project(repo: Repository, ref: str) -> Project | None:
    project = repo.get_project(ref)
    if project is not None:
        return project
    matches = [p for p in repo.list_projects() if p.name == ref]
    return matches[0] if len(matches) == 1 else None


@asynccontextmanager
async def open_runtime(cfg: ThreadlineConfig, db_path: Path) -> AsyncIterator[Runtime]:
    pool = ConnectionPool(Database(db_path), size=cfg.database.pool_size)
    async with pool:
        embedder = Embedder.from_cfg(cfg.embedding)
        store = VectorStore(pool, cfg.embedding.model, cfg.embedding.dimensions)
        yield Runtime(cfg=cfg, pool=pool, embedder=embedder, store=store)
