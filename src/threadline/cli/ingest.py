"""threadline ingest / reembed / remove: the document write path.

Only UTF-8 text is accepted; content type follows the file extension:
  .md .markdown  → text/markdown
  anything else  → text/plain
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from threadline.cli.errors import (
    err_document_not_found,
    err_no_api_key,
    err_unreadable_file,
    warn_embed_failures,
)
from threadline.cli.runtime import load_settings, open_runtime, resolve_db
from threadline.config import ThreadlineConfig
from threadline.db.repository import Repository
from threadline.ingest.pipeline import IngestReport
from threadline.rag.llm_client import provider_of, validate_api_key

console = Console()

_MARKDOWN_EXTS = {".md", ".markdown"}

_DbOption = Annotated[Path | None, typer.Option("--db", help="Path to .threadline.db.")]
_ProjectArg = Annotated[str, typer.Argument(metavar="PROJECT", help="Project id or name.")]


def ingest_cmd(
    project_ref: _ProjectArg,
    files: Annotated[
        list[Path] | None,
        typer.Option("--file", "-f", help="Text file to ingest (repeatable)."),
    ] = None,
    replace: Annotated[
        bool,
        typer.Option("--replace", help="Replace a document that has the same filename."),
    ] = False,
    db: _DbOption = None,
) -> None:
    """Chunk, store and embed text files into a project."""
    if not files:
        console.print("[red]Error:[/] No --file specified. Use --file PATH.")
        raise typer.Exit(1)

    cfg = load_settings()
    db_path = resolve_db(db, cfg)
    _require_embedding_key(cfg)
    failed = asyncio.run(_ingest(cfg, db_path, project_ref, files, replace))
    if failed:
        raise typer.Exit(1)


def reembed_cmd(
    project_ref: _ProjectArg,
    document: Annotated[
        str | None, typer.Option("--document", help="Only this document id.")
    ] = None,
    db: _DbOption = None,
) -> None:
    """Embed every chunk of a project that has no vector yet."""
    cfg = load_settings()
    db_path = resolve_db(db, cfg)
    _require_embedding_key(cfg)
    failed = asyncio.run(_reembed(cfg, db_path, project_ref, document))
    if failed:
        raise typer.Exit(1)


def remove_cmd(
    document_id: Annotated[str, typer.Argument(metavar="DOCUMENT", help="Document id.")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt.")] = False,
    db: _DbOption = None,
) -> None:
    """Remove a document with its chunks and embeddings."""
    cfg = load_settings()
    db_path = resolve_db(db, cfg)
    asyncio.run(_remove(cfg, db_path, document_id, yes))


# ------------------------------------------------------------------
# Async bodies
# ------------------------------------------------------------------


async def _ingest(
    cfg: ThreadlineConfig, db_path: Path, project_ref: str, files: list[Path], replace: bool
) -> int:
    failed = 0
    async with open_runtime(cfg, db_path) as rt:
        project = await rt.project(project_ref)
        ingestor = rt.ingestor()

        for path in files:
            console.print(f"\n[bold]→ {path.name}[/]")
            try:
                content = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                console.print(err_unreadable_file(str(path), str(exc)))
                failed += 1
                continue

            existing = await rt.pool.run(
                lambda conn, name=path.name: Repository(conn).get_document_by_filename(project.id, name)
            )
            if existing is not None:
                if not replace:
                    console.print(
                        f"  [yellow]Already ingested[/] ({existing.id}). Use --replace to re-ingest."
                    )
                    continue
                await ingestor.remove(existing.id)
                console.print(f"  [dim]Replaced previous version {existing.id}[/]")

            report = await ingestor.ingest(
                project.id, path.name, content, content_type=_content_type(path)
            )
            _print_report(report, project.name)
            if not report.ok:
                failed += 1
    return failed


async def _reembed(
    cfg: ThreadlineConfig, db_path: Path, project_ref: str, document_id: str | None
) -> int:
    async with open_runtime(cfg, db_path) as rt:
        project = await rt.project(project_ref)
        reports = await rt.ingestor().reembed(project.id, document_id)

    if not reports:
        console.print("[green]✓[/] Every chunk already has an embedding.")
        return 0
    for report in reports:
        _print_report(report, project.name)
    return sum(1 for r in reports if not r.ok)


async def _remove(cfg: ThreadlineConfig, db_path: Path, document_id: str, yes: bool) -> None:
    async with open_runtime(cfg, db_path) as rt:
        document = await rt.pool.run(lambda conn: Repository(conn).get_document(document_id))
        if document is None:
            console.print(err_document_not_found(document_id))
            raise typer.Exit(0)
        chunk_count = await rt.pool.run(lambda conn: Repository(conn).count_chunks(document_id))

        console.print(f"\nRemove document: [bold]{document.filename}[/] ({chunk_count} chunk(s))")
        if not yes and not typer.confirm("Confirm removal?", default=False):
            console.print("[dim]Cancelled.[/]")
            raise typer.Exit(0)

        await rt.ingestor().remove(document_id)
    console.print(f"[green]✓[/] Removed: {document.filename}")


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _require_embedding_key(cfg: ThreadlineConfig) -> None:
    try:
        validate_api_key(cfg.embedding.model)
    except EnvironmentError:
        console.print(err_no_api_key(provider_of(cfg.embedding.model)))
        raise typer.Exit(1)


def _content_type(path: Path) -> str:
    return "text/markdown" if path.suffix.lower() in _MARKDOWN_EXTS else "text/plain"


def _print_report(report: IngestReport, project_name: str) -> None:
    console.print(
        f"  [green]✓[/] {report.filename}: {report.embedded_count}/{report.chunk_count} "
        f"chunk(s) embedded  [dim]({report.document_id})[/]"
    )
    if report.failures:
        console.print(
            warn_embed_failures(
                report.filename, len(report.failures), report.chunk_count, project_name
            )
        )
