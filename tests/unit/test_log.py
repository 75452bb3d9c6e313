"""Tests for logging setup."""

from __future__ import annotations

import io
import logging

from rich.console import Console
from rich.logging import RichHandler

from threadline.log import configure_logging


def _reset():
    logger = logging.getLogger("threadline")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.propagate = True


def test_configure_logging_installs_one_rich_handler():
    _reset()
    try:
        configure_logging("debug")
        configure_logging("info")
        logger = logging.getLogger("threadline")
        rich_handlers = [h for h in logger.handlers if isinstance(h, RichHandler)]
        assert len(rich_handlers) == 1
        assert logger.level == logging.INFO
        assert logger.propagate is False
    finally:
        _reset()


def test_child_loggers_render_through_console():
    _reset()
    buf = io.StringIO()
    try:
        configure_logging("INFO", console=Console(file=buf, width=200))
        logging.getLogger("threadline.ingest.pipeline").warning("3 chunk(s) not embedded")
        logging.getLogger("threadline.rag").debug("hidden")
        out = buf.getvalue()
        assert "3 chunk(s) not embedded" in out
        assert "hidden" not in out
    finally:
        _reset()
