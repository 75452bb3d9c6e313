"""threadline project commands.

Commands:
  threadline project create <name>         create a project
  threadline project list                  list projects
  threadline project show <project>        show a project and its documents
  threadline project instructions <project> --file FILE | --clear
  threadline project delete <project>      delete a project and its documents
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from threadline.cli.errors import err_project_not_found
from threadline.cli.runtime import find_project, load_settings, resolve_db
from threadline.db.connection import Database
from threadline.db.migrations import initialize
from threadline.db.models import Project
from threadline.db.repository import Repository

console = Console()

project_app = typer.Typer(
    name="project",
    help="Manage projects (create, list, show, instructions, delete).",
    add_completion=False,
)

_DbOption = Annotated[Path | None, typer.Option("--db", help="Path to .threadline.db.")]


@project_app.command("create")
def project_create_cmd(
    name: Annotated[str, typer.Argument(help="Project name.")],
    owner: Annotated[str, typer.Option("--owner", help="Owning user id.")] = "local",
    description: Annotated[
        str | None, typer.Option("--description", "-d", help="Short description.")
    ] = None,
    instructions_file: Annotated[
        Path | None,
        typer.Option("--instructions", help="File with instructions added to every prompt."),
    ] = None,
    db: _DbOption = None,
) -> None:
    """Create a project."""
    cfg = load_settings()
    db_path = resolve_db(db, cfg)
    instructions = (
        instructions_file.read_text(encoding="utf-8") if instructions_file else None
    )

    conn = _open_db(db_path)
    try:
        project = Repository(conn).add_project(
            Project(owner=owner, name=name, description=description, instructions=instructions)
        )
    finally:
        conn.close()
    console.print(f"[green]✓[/] Created project [bold]{project.name}[/] ({project.id})")


@project_app.command("list")
def project_list_cmd(
    owner: Annotated[str | None, typer.Option("--owner", help="Only this owner's projects.")] = None,
    db: _DbOption = None,
) -> None:
    """List projects."""
    cfg = load_settings()
    conn = _open_db(resolve_db(db, cfg))
    try:
        repo = Repository(conn)
        projects = repo.list_projects(owner)
        rows = [(p, len(repo.list_documents(p.id))) for p in projects]
    finally:
        conn.close()

    if not rows:
        console.print("[yellow]No projects yet.[/]  Run:  threadline project create <name>")
        raise typer.Exit(0)

    table = Table(title="Projects", show_header=True, header_style="bold")
    table.add_column("Name", style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Owner")
    table.add_column("Documents", justify="right")
    for project, doc_count in rows:
        table.add_row(project.name, project.id, project.owner, str(doc_count))
    console.print(table)


@project_app.command("show")
def project_show_cmd(
    project_ref: Annotated[str, typer.Argument(metavar="PROJECT", help="Project id or name.")],
    db: _DbOption = None,
) -> None:
    """Show a project's instructions and documents."""
    cfg = load_settings()
    conn = _open_db(resolve_db(db, cfg))
    try:
        repo = Repository(conn)
        project = _require_project(repo, project_ref)
        documents = [(d, repo.count_chunks(d.id)) for d in repo.list_documents(project.id)]
    finally:
        conn.close()

    console.print(f"[bold]{project.name}[/] ({project.id})")
    if project.description:
        console.print(f"  {project.description}")
    if project.instructions:
        console.print(f"\n[bold]Instructions[/]\n{project.instructions.strip()}")

    if not documents:
        console.print("\n[dim]No documents.[/]")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("Document", style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Size", justify="right")
    table.add_column("Chunks", justify="right")
    for document, chunk_count in documents:
        table.add_row(document.filename, document.id, f"{document.file_size:,} B", str(chunk_count))
    console.print(table)


@project_app.command("instructions")
def project_instructions_cmd(
    project_ref: Annotated[str, typer.Argument(metavar="PROJECT", help="Project id or name.")],
    file: Annotated[
        Path | None, typer.Option("--file", "-f", help="File with the new instructions.")
    ] = None,
    clear: Annotated[bool, typer.Option("--clear", help="Remove the instructions.")] = False,
    db: _DbOption = None,
) -> None:
    """Replace or clear a project's instructions."""
    if (file is None) == (not clear):
        console.print("[red]Error:[/] Pass exactly one of --file or --clear.")
        raise typer.Exit(1)

    cfg = load_settings()
    conn = _open_db(resolve_db(db, cfg))
    try:
        repo = Repository(conn)
        project = _require_project(repo, project_ref)
        instructions = None if clear else file.read_text(encoding="utf-8")
        repo.update_instructions(project.id, instructions)
    finally:
        conn.close()
    console.print(f"[green]✓[/] Instructions {'cleared' if clear else 'updated'} for {project.name}")


@project_app.command("delete")
def project_delete_cmd(
    project_ref: Annotated[str, typer.Argument(metavar="PROJECT", help="Project id or name.")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt.")] = False,
    db: _DbOption = None,
) -> None:
    """Delete a project with its documents, chunks and embeddings."""
    cfg = load_settings()
    conn = _open_db(resolve_db(db, cfg))
    try:
        repo = Repository(conn)
        project = _require_project(repo, project_ref)
        doc_count = len(repo.list_documents(project.id))

        console.print(f"\nDelete project: [bold]{project.name}[/] ({doc_count} document(s))")
        if not yes and not typer.confirm("Confirm deletion?", default=False):
            console.print("[dim]Cancelled.[/]")
            raise typer.Exit(0)

        repo.delete_project(project.id)
    finally:
        conn.close()
    console.print(f"[green]✓[/] Deleted {project.name}. Its threads are kept, unlinked.")


def _require_project(repo: Repository, ref: str) -> Project:
    project = find_project(repo, ref)
    if project is None:
        console.print(err_project_not_found(ref))
        raise typer.Exit(1)
    return project


def _open_db(db_path: Path) -> sqlite3.Connection:
    conn = Database(db_path).connect()
    initialize(conn)
    return conn
