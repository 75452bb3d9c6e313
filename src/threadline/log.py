"""Logging setup: stdlib loggers rendered through rich."""

from __future__ import annotations

import logging

import litellm
from rich.console import Console
from rich.logging import RichHandler

_ROOT = "threadline"


def configure_logging(level: str = "INFO", console: Console | None = None) -> logging.Logger:
    """Attach a RichHandler to the ``threadline`` logger (idempotent).

    Output goes to stderr so streamed completions on stdout stay clean.
    """
    logger = logging.getLogger(_ROOT)
    logger.setLevel(level.upper())

    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
        handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
        logger.addHandler(handler)
        logger.propagate = False

    # LiteLLM prints its own banners and debug lines unless told not to.
    litellm.suppress_debug_info = True
    return logger
