"""threadline init: create the database and config scaffold.

Creates:
  .threadline.db             database with the current schema
  threadline.yaml            per-project config with the defaults spelled out
  ~/.threadline/config.yaml  global defaults (created once, mode 0o600)
  .gitignore                 gains a .threadline.db entry
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from threadline.config import ensure_global_config
from threadline.db.connection import Database
from threadline.db.migrations import initialize

console = Console()

_PROJECT_YAML = """\
# threadline project configuration. API keys belong in environment variables.
database:
  path: .threadline.db

embedding:
  model: openai/text-embedding-3-small
  dimensions: 1536

chunking:
  max_chars: 1000
  overlap_chars: 200
  boundary: paragraph   # paragraph | sentence | char

retrieval:
  threshold: 0.72
  top_k: 5

generation:
  provider: openai      # openai | anthropic | ollama
  model: gpt-4o
  token_budget: 8192
  # title_model: openai/gpt-4o-mini
"""


def init_cmd(
    project_dir: Annotated[
        Path,
        typer.Argument(help="Directory to initialize. Defaults to current directory."),
    ] = Path("."),
) -> None:
    """Create .threadline.db and threadline.yaml in PROJECT_DIR."""
    project_dir = project_dir.resolve()
    project_dir.mkdir(parents=True, exist_ok=True)

    db_path = project_dir / ".threadline.db"
    existed = db_path.exists()
    with Database(db_path) as conn:
        initialize(conn)
    if existed:
        console.print(f"  [green]✓[/] {db_path.name} (schema up to date, data kept)")
    else:
        console.print(f"  [green]✓[/] {db_path.name}")

    yaml_path = project_dir / "threadline.yaml"
    if yaml_path.exists():
        console.print(f"  [dim]-[/] {yaml_path.name} exists, left unchanged")
    else:
        yaml_path.write_text(_PROJECT_YAML, encoding="utf-8")
        console.print(f"  [green]✓[/] {yaml_path.name}")

    _update_gitignore(project_dir)

    cfg_path = ensure_global_config()
    console.print(f"  [green]✓[/] {cfg_path} (global config)")

    console.print("\nNext steps:")
    console.print("  1. threadline project create <name>")
    console.print("  2. threadline ingest <project> --file notes.md")
    console.print("  3. threadline chat \"question\" --project <project>")


def _update_gitignore(project_dir: Path) -> None:
    gitignore = project_dir / ".gitignore"
    lines = gitignore.read_text(encoding="utf-8").splitlines() if gitignore.exists() else []
    if ".threadline.db" in lines:
        return
    lines.append(".threadline.db")
    gitignore.write_text("\n".join(lines) + "\n", encoding="utf-8")
    console.print("  [green]✓[/] .gitignore")
