"""threadline search: similarity search over one project's chunks."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from threadline.cli.errors import err_no_api_key
from threadline.cli.runtime import load_settings, open_runtime, resolve_db
from threadline.config import ConfigError, RetrievalCfg, ThreadlineConfig, validate_retrieval
from threadline.db.vector_store import ScoredChunk
from threadline.errors import EmbedError
from threadline.rag.llm_client import provider_of, validate_api_key

console = Console()

_PREVIEW_CHARS = 160


def search_cmd(
    project_ref: Annotated[str, typer.Argument(metavar="PROJECT", help="Project id or name.")],
    query: Annotated[str, typer.Argument(help="Text to search for.")],
    top_k: Annotated[int | None, typer.Option("--top-k", "-k", help="Maximum results.")] = None,
    threshold: Annotated[
        float | None, typer.Option("--threshold", "-t", help="Minimum similarity (exclusive).")
    ] = None,
    db: Annotated[Path | None, typer.Option("--db", help="Path to .threadline.db.")] = None,
) -> None:
    """Show the chunks of PROJECT most similar to QUERY."""
    cfg = load_settings()
    db_path = resolve_db(db, cfg)

    retrieval = RetrievalCfg(
        threshold=cfg.retrieval.threshold if threshold is None else threshold,
        top_k=cfg.retrieval.top_k if top_k is None else top_k,
    )
    try:
        validate_retrieval(retrieval)
    except ConfigError as exc:
        console.print(f"[red]Error:[/] {exc}")
        raise typer.Exit(1)

    try:
        validate_api_key(cfg.embedding.model)
    except EnvironmentError:
        console.print(err_no_api_key(provider_of(cfg.embedding.model)))
        raise typer.Exit(1)

    try:
        results = asyncio.run(_search(cfg, db_path, project_ref, query, retrieval))
    except EmbedError as exc:
        console.print(f"[red]Error:[/] Could not embed the query ({exc.kind.value}): {exc}")
        raise typer.Exit(1)

    if not results:
        console.print(f"[yellow]No chunks above similarity {retrieval.threshold:g}.[/]")
        raise typer.Exit(0)
    _print_results(results)


async def _search(
    cfg: ThreadlineConfig, db_path: Path, project_ref: str, query: str, retrieval: RetrievalCfg
) -> list[ScoredChunk]:
    async with open_runtime(cfg, db_path) as rt:
        project = await rt.project(project_ref)
        vector = await rt.embedder.embed_one(query)
        return await rt.store.search(
            project.id, vector, threshold=retrieval.threshold, top_k=retrieval.top_k
        )


def _print_results(results: list[ScoredChunk]) -> None:
    table = Table(show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Similarity", justify="right")
    table.add_column("Source")
    table.add_column("Text")
    for rank, sc in enumerate(results, start=1):
        preview = " ".join(sc.text.split())
        if len(preview) > _PREVIEW_CHARS:
            preview = preview[:_PREVIEW_CHARS] + "…"
        table.add_row(
            str(rank), f"{sc.similarity:.3f}", f"{sc.filename} #{sc.chunk_index}", preview
        )
    console.print(table)
