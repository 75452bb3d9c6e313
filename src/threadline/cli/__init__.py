"""threadline command-line interface (typer + rich)."""
