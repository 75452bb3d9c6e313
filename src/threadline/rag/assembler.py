"""Context assembler: retrieved chunks + instructions + history, within a token budget.

Pipeline:
  1. If the thread belongs to a project, embed the new user text and search
     that project's chunks. Any embedding or database failure here skips
     retrieval; the turn goes on without it.
  2. Render retrieved chunks into one context block with provenance.
  3. Drop the oldest history messages until everything fits the budget.
     The new user message is never dropped.
  4. Return a PromptContext whose messages() are ordered:
     context block → project instructions → history → new user message.

Token counts use the 4-chars-per-token approximation.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field

from threadline.config import RetrievalCfg
from threadline.db.models import Message, Project
from threadline.db.vector_store import DEFAULT_THRESHOLD, DEFAULT_TOP_K, ScoredChunk, VectorStore
from threadline.errors import EmbedError
from threadline.ingest.embedder import Embedder

logger = logging.getLogger(__name__)

_CONTEXT_HEADER = (
    "You are answering with access to documents uploaded to this project. "
    "Use the excerpts below when they are relevant and cite them as "
    "**[filename - chunk N]**. If they do not contain the answer, say so "
    "rather than guessing.\n\n"
    "PROJECT DOCUMENT EXCERPTS:"
)


def count_tokens(text: str) -> int:
    """Approximate token count: 4 characters ≈ 1 token."""
    return max(1, len(text) // 4)


@dataclass
class PromptContext:
    """Provider-neutral prompt for one completion turn.

    Attributes:
        user_text: The new user message (always last, never trimmed).
        context_block: Rendered retrieved chunks, or None.
        instructions: Project instructions, or None.
        history: Prior messages kept after trimming, oldest first, as
            ``{"role", "content"}`` dicts.
        citations: The chunks rendered into ``context_block``.
        dropped_history: How many of the oldest history messages were trimmed.
        retrieval_error: Why retrieval was skipped, if it was.
        total_tokens: Approximate size of ``messages()``.
    """

    user_text: str
    context_block: str | None = None
    instructions: str | None = None
    history: list[dict] = field(default_factory=list)
    citations: list[ScoredChunk] = field(default_factory=list)
    dropped_history: int = 0
    retrieval_error: str | None = None
    total_tokens: int = 0

    def system_blocks(self) -> list[str]:
        return [b for b in (self.context_block, self.instructions) if b]

    def messages(self) -> list[dict]:
        """OpenAI-style message list in precedence order."""
        messages = [{"role": "system", "content": block} for block in self.system_blocks()]
        messages.extend(dict(m) for m in self.history)
        messages.append({"role": "user", "content": self.user_text})
        return messages


class ContextAssembler:
    """Build PromptContexts for a thread.

    Args:
        embedder: Embeds the query text.
        store: Project-scoped similarity search.
        threshold: Minimum similarity (exclusive) for retrieved chunks.
        top_k: Maximum retrieved chunks.
    """

    def __init__(
        self,
        embedder: Embedder,
        store: VectorStore,
        threshold: float = DEFAULT_THRESHOLD,
        top_k: int = DEFAULT_TOP_K,
    ) -> None:
        self._embedder = embedder
        self._store = store
        self.threshold = threshold
        self.top_k = top_k

    @classmethod
    def from_cfg(cls, embedder: Embedder, store: VectorStore, cfg: RetrievalCfg) -> ContextAssembler:
        return cls(embedder, store, threshold=cfg.threshold, top_k=cfg.top_k)

    async def assemble(
        self,
        history: list[Message],
        project: Project | None,
        new_user_text: str,
        token_budget: int,
    ) -> PromptContext:
        """Assemble the prompt for *new_user_text* following *history*."""
        ctx = PromptContext(user_text=new_user_text)

        if project is not None:
            ctx.citations, ctx.retrieval_error = await self._retrieve(project.id, new_user_text)
            if ctx.citations:
                ctx.context_block = render_context_block(ctx.citations)
            if project.instructions and project.instructions.strip():
                ctx.instructions = f"PROJECT INSTRUCTIONS:\n{project.instructions.strip()}"

        fixed = sum(count_tokens(b) for b in ctx.system_blocks()) + count_tokens(new_user_text)
        ctx.history, ctx.dropped_history = _fit_history(history, token_budget - fixed)
        ctx.total_tokens = fixed + sum(count_tokens(m["content"]) for m in ctx.history)

        if ctx.dropped_history:
            logger.info("Trimmed %d oldest message(s) to fit %d tokens", ctx.dropped_history, token_budget)
        return ctx

    async def _retrieve(self, project_id: str, query: str) -> tuple[list[ScoredChunk], str | None]:
        try:
            vector = await self._embedder.embed_one(query)
            chunks = await self._store.search(
                project_id, vector, threshold=self.threshold, top_k=self.top_k
            )
        except (EmbedError, sqlite3.Error) as exc:
            logger.warning("Retrieval skipped for project %s: %s", project_id, exc)
            return [], str(exc)
        logger.debug("Retrieved %d chunk(s) for project %s", len(chunks), project_id)
        return chunks, None


def render_context_block(chunks: list[ScoredChunk]) -> str:
    parts = [_CONTEXT_HEADER]
    for sc in chunks:
        parts.append(
            f"[{sc.filename} - chunk {sc.chunk_index}] (similarity {sc.similarity:.2f})\n{sc.text}"
        )
    return "\n\n---\n\n".join(parts)


def _fit_history(history: list[Message], budget: int) -> tuple[list[dict], int]:
    """Keep the newest messages that fit *budget*. Returns (kept, dropped_count)."""
    usable = [m for m in history if m.content]
    kept: list[dict] = []
    used = 0
    for message in reversed(usable):
        tokens = count_tokens(message.content)
        if used + tokens > budget:
            break
        kept.append({"role": message.role, "content": message.content})
        used += tokens
    kept.reverse()
    return kept, len(usable) - len(kept)
