"""threadline chat / threads / history / thread: conversations on the command line.

``chat`` sends one message and streams the answer to stdout. Pass
``--thread`` to continue a conversation; without it a new thread is started
and its id printed at the end.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from threadline.cli.errors import (
    err_no_api_key,
    err_thread_busy,
    err_thread_not_found,
    err_unknown_provider,
    warn_retrieval_skipped,
)
from threadline.cli.runtime import load_settings, open_runtime, resolve_db
from threadline.config import ThreadlineConfig
from threadline.db.models import new_id
from threadline.db.repository import Repository
from threadline.errors import StreamError, StreamErrorKind, ThreadBusy
from threadline.rag.coordinator import CompletionRequest
from threadline.rag.events import Citations, Token, TurnFinished, TurnState
from threadline.rag.llm_client import provider_of, validate_api_key
from threadline.rag.providers import PROVIDERS

console = Console()

_DbOption = Annotated[Path | None, typer.Option("--db", help="Path to .threadline.db.")]


def chat_cmd(
    message: Annotated[str, typer.Argument(help="Your message.")],
    project_ref: Annotated[
        str | None,
        typer.Option("--project", "-p", help="Answer from this project's documents (new threads)."),
    ] = None,
    thread: Annotated[
        str | None, typer.Option("--thread", "-t", help="Continue this thread.")
    ] = None,
    provider: Annotated[
        str | None, typer.Option("--provider", help="openai, anthropic or ollama.")
    ] = None,
    model: Annotated[str | None, typer.Option("--model", "-m", help="Model id.")] = None,
    user: Annotated[str, typer.Option("--user", help="User id stored on messages.")] = "local",
    db: _DbOption = None,
) -> None:
    """Send MESSAGE and stream the answer."""
    cfg = load_settings()
    db_path = resolve_db(db, cfg)
    provider = (provider or cfg.generation.provider).lower()
    model = model or cfg.generation.model

    if provider not in PROVIDERS:
        console.print(err_unknown_provider(provider, sorted(PROVIDERS)))
        raise typer.Exit(1)
    required = [provider]
    if project_ref:
        required.append(provider_of(cfg.embedding.model))
    for needed in required:
        try:
            validate_api_key(needed)
        except EnvironmentError:
            console.print(err_no_api_key(needed))
            raise typer.Exit(1)

    state = asyncio.run(
        _chat(cfg, db_path, message, thread or new_id(), project_ref, provider, model, user)
    )
    if state is not TurnState.COMPLETED:
        raise typer.Exit(1)


def threads_cmd(
    user: Annotated[str | None, typer.Option("--user", help="Only this user's threads.")] = None,
    search: Annotated[
        str | None,
        typer.Option("--search", "-s", help="Only threads whose id or messages contain this text."),
    ] = None,
    db: _DbOption = None,
) -> None:
    """List threads, most recent first."""
    cfg = load_settings()
    db_path = resolve_db(db, cfg)
    threads = asyncio.run(_list_threads(cfg, db_path, user, search))
    if not threads:
        if search:
            console.print(f"[yellow]No threads match[/] '{search}'.")
        else:
            console.print("[yellow]No threads yet.[/]  Run:  threadline chat \"hello\"")
        raise typer.Exit(0)

    title = f"Threads matching '{search}'" if search else "Threads"
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Title", style="bold")
    table.add_column("Project")
    table.add_column("Updated")
    for t in threads:
        table.add_row(t.id, t.title or "(untitled)", t.project_id or "-", t.updated_at or "")
    console.print(table)


def history_cmd(
    thread_id: Annotated[str, typer.Argument(metavar="THREAD", help="Thread id.")],
    db: _DbOption = None,
) -> None:
    """Print a thread's messages in order."""
    cfg = load_settings()
    db_path = resolve_db(db, cfg)
    messages = asyncio.run(_list_messages(cfg, db_path, thread_id))
    if not messages:
        console.print(f"[yellow]Thread '{thread_id}' has no messages.[/]")
        raise typer.Exit(0)

    for m in messages:
        who = "[bold cyan]you[/]" if m.role == "user" else f"[bold green]{m.lab}/{m.model}[/]"
        console.print(f"\n{who}")
        console.print(m.content, markup=False, highlight=False)
        if m.aborted:
            console.print(f"[red]✗ interrupted:[/] {m.error}")


thread_app = typer.Typer(name="thread", help="Manage stored threads.", add_completion=False)


@thread_app.command("delete")
def thread_delete_cmd(
    thread_id: Annotated[str, typer.Argument(metavar="THREAD", help="Thread id.")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt.")] = False,
    db: _DbOption = None,
) -> None:
    """Delete a thread and all of its messages."""
    cfg = load_settings()
    db_path = resolve_db(db, cfg)
    thread, message_count = asyncio.run(_thread_summary(cfg, db_path, thread_id))
    if thread is None:
        console.print(err_thread_not_found(thread_id))
        raise typer.Exit(1)

    label = thread.title or thread.id
    console.print(f"\nDelete thread: [bold]{label}[/] ({message_count} message(s))")
    if not yes and not typer.confirm("Confirm deletion?", default=False):
        console.print("[dim]Cancelled.[/]")
        raise typer.Exit(0)

    asyncio.run(_delete_thread(cfg, db_path, thread_id))
    console.print(f"[green]✓[/] Deleted thread {thread_id}.")


# ------------------------------------------------------------------
# Async bodies
# ------------------------------------------------------------------


async def _chat(
    cfg: ThreadlineConfig,
    db_path: Path,
    message: str,
    thread_id: str,
    project_ref: str | None,
    provider: str,
    model: str,
    user: str,
) -> TurnState:
    async with open_runtime(cfg, db_path) as rt:
        project_id = (await rt.project(project_ref)).id if project_ref else None
        coordinator = rt.coordinator()
        request = CompletionRequest(
            thread_id=thread_id,
            user_text=message,
            provider=provider,
            model=model,
            user_id=user,
            project_id=project_id,
        )
        try:
            turn = coordinator.open(request)
        except ThreadBusy:
            console.print(err_thread_busy(thread_id))
            return TurnState.CANCELLED

        async with turn:
            async for event in turn:
                if isinstance(event, Citations):
                    sources = ", ".join(
                        f"{sc.filename} #{sc.chunk_index}" for sc in event.chunks
                    )
                    console.print(f"[dim]Sources: {sources}[/]\n")
                elif isinstance(event, Token):
                    console.out(event.text, end="", highlight=False)
                elif isinstance(event, TurnFinished):
                    console.out("")
                    _print_finish(event)

        if turn.prompt is not None and turn.prompt.retrieval_error:
            console.print(warn_retrieval_skipped(turn.prompt.retrieval_error))
        await coordinator.drain()

    console.print(f"\n[dim]thread: {thread_id}[/]")
    return turn.state


def _print_finish(event: TurnFinished) -> None:
    if event.state is TurnState.ABORTED and event.error is not None:
        console.print(f"[red]✗ Answer interrupted[/] ({_describe(event.error)}). Partial text saved.")
    elif event.state is TurnState.CANCELLED:
        console.print("[yellow]Cancelled.[/] Nothing saved.")


def _describe(error: StreamError) -> str:
    if error.kind is StreamErrorKind.PROVIDER_REJECTED:
        return f"provider rejected the request: {error.message}"
    return error.message


async def _list_threads(
    cfg: ThreadlineConfig, db_path: Path, user: str | None, search: str | None = None
) -> list:
    async with open_runtime(cfg, db_path) as rt:
        if search:
            return await rt.pool.run(lambda conn: Repository(conn).search_threads(search, user))
        return await rt.pool.run(lambda conn: Repository(conn).list_threads(user))


async def _list_messages(cfg: ThreadlineConfig, db_path: Path, thread_id: str) -> list:
    async with open_runtime(cfg, db_path) as rt:
        return await rt.pool.run(lambda conn: Repository(conn).list_messages(thread_id))


async def _thread_summary(cfg: ThreadlineConfig, db_path: Path, thread_id: str) -> tuple:
    def load(conn):
        repo = Repository(conn)
        thread = repo.get_thread(thread_id)
        return thread, len(repo.list_messages(thread_id)) if thread else 0

    async with open_runtime(cfg, db_path) as rt:
        return await rt.pool.run(load)


async def _delete_thread(cfg: ThreadlineConfig, db_path: Path, thread_id: str) -> bool:
    async with open_runtime(cfg, db_path) as rt:
        return await rt.pool.run(lambda conn: Repository(conn).delete_thread(thread_id))
