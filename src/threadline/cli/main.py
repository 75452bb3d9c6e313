"""threadline CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from threadline.cli.chat import chat_cmd, history_cmd, thread_app, threads_cmd
from threadline.cli.ingest import ingest_cmd, reembed_cmd, remove_cmd
from threadline.cli.init import init_cmd
from threadline.cli.project import project_app
from threadline.cli.search import search_cmd


def _installed_version() -> str:
    try:
        return importlib.metadata.version("threadline")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"threadline {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="threadline",
    help=(
        "threadline: project documents in, grounded streaming answers out.\n\n"
        "  threadline ingest  Chunk and embed text files into a project.\n"
        "  threadline chat    Ask a question; answers cite the project's documents."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """threadline: retrieval-augmented chat over project documents."""


app.command("init")(init_cmd)
app.add_typer(project_app, name="project")
app.command("ingest")(ingest_cmd)
app.command("reembed")(reembed_cmd)
app.command("remove")(remove_cmd)
app.command("search")(search_cmd)
app.command("chat")(chat_cmd)
app.command("threads")(threads_cmd)
app.command("history")(history_cmd)
app.add_typer(thread_app, name="thread")


@app.command("version")
def version_cmd() -> None:
    """Show the installed threadline version."""
    typer.echo(f"threadline {_installed_version()}")


if __name__ == "__main__":
    app()
