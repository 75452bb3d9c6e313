"""Boundary-aware text chunker with character-offset provenance.

Windows hold at most ``max_chars`` characters. A window that stops short of
the end of the text backs off to the last acceptable boundary inside it:

  paragraph  blank line → sentence end → whitespace
  sentence   sentence end → whitespace
  char       no back-off

If no boundary is found the window is hard-split at ``max_chars``. Each
chunk is the window with surrounding whitespace stripped; ``start``/``end``
are the character offsets of the stripped span. The next window starts
``overlap_chars`` before the previous end, or at the end when that would
not move the cursor forward.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Iterator, NamedTuple

from threadline.config import ChunkingCfg, validate_chunking
from threadline.db.models import Chunk

_PARAGRAPH_RE = re.compile(r"\n[ \t]*\n")
# Terminal punctuation, optional closing quote/bracket, then whitespace.
_SENTENCE_RE = re.compile(r"[.!?]+[\"'”’)\]]*(?=\s)")
_WHITESPACE_RE = re.compile(r"\s")


class ChunkSpan(NamedTuple):
    text: str
    start: int
    end: int


@dataclass(frozen=True)
class ChunkConfig:
    """Window size, overlap and boundary preference for ``chunk()``."""

    max_chars: int = 1000
    overlap_chars: int = 200
    boundary: str = "paragraph"

    @classmethod
    def from_cfg(cls, cfg: ChunkingCfg) -> ChunkConfig:
        return cls(
            max_chars=cfg.max_chars,
            overlap_chars=cfg.overlap_chars,
            boundary=cfg.boundary,
        )

    def validate(self) -> None:
        """Raise ConfigError if the window could not advance or the mode is unknown."""
        validate_chunking(
            ChunkingCfg(
                max_chars=self.max_chars,
                overlap_chars=self.overlap_chars,
                boundary=self.boundary,
            )
        )


def chunk(text: str, config: ChunkConfig) -> list[ChunkSpan]:
    """Split *text* into ordered ChunkSpans. Empty input yields ``[]``.

    Raises:
        ConfigError: If *config* is invalid.
    """
    return list(iter_spans(text, config))


def iter_spans(text: str, config: ChunkConfig) -> Iterator[ChunkSpan]:
    """Lazily yield the spans ``chunk()`` returns."""
    config.validate()
    length = len(text)
    pos = 0

    while pos < length:
        window_end = min(pos + config.max_chars, length)
        end = window_end
        if window_end < length and config.boundary != "char":
            end = _find_boundary(text, pos, window_end, config.boundary) or window_end

        span = _strip_span(text, pos, end)
        if span is not None:
            yield span

        if end >= length:
            break
        next_pos = end - config.overlap_chars
        pos = next_pos if next_pos > pos else end


def _find_boundary(text: str, start: int, stop: int, mode: str) -> int | None:
    """Return the end offset of the last acceptable boundary in ``text[start:stop]``.

    The separator that follows the boundary (blank line, whitespace) must
    lie inside the window too. Returns None when nothing qualifies.
    """
    window = text[start:stop]

    if mode == "paragraph":
        end = _last_match_end(_PARAGRAPH_RE, window, use_start=True)
        if end:
            return start + end

    end = _last_match_end(_SENTENCE_RE, window, use_start=False)
    if end:
        return start + end

    end = _last_match_end(_WHITESPACE_RE, window, use_start=True)
    if end:
        return start + end
    return None


def _last_match_end(pattern: re.Pattern[str], window: str, use_start: bool) -> int:
    """Offset (within *window*) where the chunk should end for the last match.

    ``use_start`` ends the chunk before the match (separators); otherwise the
    match itself belongs to the chunk (sentence punctuation). Zero means no
    usable match.
    """
    best = 0
    for m in pattern.finditer(window):
        candidate = m.start() if use_start else m.end()
        if candidate > 0:
            best = candidate
    return best


def _strip_span(text: str, start: int, end: int) -> ChunkSpan | None:
    segment = text[start:end]
    stripped = segment.strip()
    if not stripped:
        return None
    lead = len(segment) - len(segment.lstrip())
    s = start + lead
    return ChunkSpan(stripped, s, s + len(stripped))


class TextChunker:
    """Turn a document's text into sequentially indexed Chunk rows.

    Args:
        config: Chunk window configuration; validated on construction.
    """

    def __init__(self, config: ChunkConfig | None = None) -> None:
        self.config = config or ChunkConfig()
        self.config.validate()

    def chunk(self, document_id: str, content: str) -> list[Chunk]:
        """Split *content* into Chunk objects for *document_id*.

        Returns:
            Ordered list of Chunks with ``chunk_index`` 0..n-1 and
            ``{"word_count": n}`` metadata.
        """
        return [
            Chunk(
                document_id=document_id,
                chunk_index=i,
                text=span.text,
                start_char=span.start,
                end_char=span.end,
                metadata=json.dumps({"word_count": len(span.text.split())}),
            )
            for i, span in enumerate(iter_spans(content, self.config))
        ]
