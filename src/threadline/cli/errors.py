"""Rich error messages for the threadline CLI.

Every message names what went wrong and the command or setting that fixes it.

Usage:
    from threadline.cli.errors import err_no_db
    console.print(err_no_db(".threadline.db"))
    raise typer.Exit(1)
"""

from __future__ import annotations

from threadline.rag.llm_client import api_key_env


def err_no_db(db_path: str = ".threadline.db") -> str:
    return (
        f"[red]Error:[/] No database found at '{db_path}'.\n"
        "  Run:  threadline init"
    )


def err_no_api_key(provider: str) -> str:
    """No API key for *provider*.

    Example:
        No API key for 'openai'. Set:  export OPENAI_API_KEY=sk-...
    """
    env_var = api_key_env(provider) or f"{provider.upper()}_API_KEY"
    return (
        f"[red]Error:[/] No API key for '{provider}'.\n"
        f"  Set:  export {env_var}=sk-..."
    )


def err_config(message: str) -> str:
    return (
        f"[red]Error:[/] Invalid configuration: {message}\n"
        "  Fix threadline.yaml or ~/.threadline/config.yaml and retry."
    )


def err_project_not_found(ref: str) -> str:
    return (
        f"[red]Error:[/] Project '{ref}' not found.\n"
        "  Run:  threadline project list"
    )


def err_document_not_found(ref: str) -> str:
    return (
        f"[yellow]Document not found:[/] '{ref}'.\n"
        "  Run:  threadline project show <project>  to list its documents."
    )


def err_thread_busy(thread_id: str) -> str:
    return (
        f"[red]Error:[/] Thread '{thread_id}' is already answering another message.\n"
        "  Wait for it to finish, then retry."
    )


def err_thread_not_found(thread_id: str) -> str:
    return (
        f"[red]Error:[/] Thread '{thread_id}' not found.\n"
        "  Run:  threadline threads"
    )


def err_unknown_provider(provider: str, known: list[str]) -> str:
    return (
        f"[red]Error:[/] Unknown provider '{provider}'.\n"
        f"  Known providers: {', '.join(known)}"
    )


def err_unreadable_file(path: str, reason: str) -> str:
    return (
        f"  [red]✗ Cannot read[/] {path}: {reason}\n"
        "    Only UTF-8 text files can be ingested."
    )


def warn_embed_failures(filename: str, failed: int, total: int, project: str) -> str:
    return (
        f"  [yellow]⚠[/] {filename}: {failed} of {total} chunk(s) have no embedding yet.\n"
        f"    Run:  threadline reembed {project}"
    )


def warn_retrieval_skipped(reason: str) -> str:
    return f"[yellow]⚠[/] Answering without project documents: {reason}"
