"""Batched text embedding with per-item retry and failure reporting.

``embed_batch`` splits inputs into provider-sized batches. Items whose batch
raised, that the provider left out of its response, or that came back with
the wrong dimension are retried (only those) with exponential backoff.
Whatever is still failing when the retry budget runs out is reported per
item as an EmbedError; nothing is dropped silently.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol

from threadline.config import EmbeddingCfg
from threadline.errors import EmbedError, EmbedErrorKind
from threadline.rag.llm_client import ProviderCredentials, aembed, classify_embed_error

logger = logging.getLogger(__name__)


class EmbeddingProvider(Protocol):
    """Anything that turns a list of texts into one vector (or None) per text."""

    async def embed(self, texts: list[str]) -> list[list[float] | None]: ...


class LiteLLMEmbeddingProvider:
    """EmbeddingProvider backed by ``litellm.aembedding``."""

    def __init__(
        self,
        model: str,
        timeout: float = 30.0,
        credentials: ProviderCredentials | None = None,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self.credentials = credentials

    async def embed(self, texts: list[str]) -> list[list[float] | None]:
        return await aembed(
            self.model, texts, timeout=self.timeout, credentials=self.credentials
        )


@dataclass
class BatchEmbedding:
    """Outcome of ``embed_batch``: vectors and failures keyed by input position."""

    vectors: dict[int, list[float]] = field(default_factory=dict)
    failures: dict[int, EmbedError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


class Embedder:
    """Embed texts through an EmbeddingProvider with batching and retries.

    Args:
        provider: The embedding backend.
        dimensions: Expected vector length; other lengths count as failures.
        batch_size: Maximum texts per provider request.
        max_retries: Retry rounds for failed items after the first attempt.
        backoff_base: Seconds to wait before the first retry; doubles each round.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        dimensions: int,
        batch_size: int = 64,
        max_retries: int = 3,
        backoff_base: float = 0.5,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._provider = provider
        self.dimensions = dimensions
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.backoff_base = backoff_base

    @classmethod
    def from_cfg(
        cls, cfg: EmbeddingCfg, credentials: ProviderCredentials | None = None
    ) -> Embedder:
        return cls(
            LiteLLMEmbeddingProvider(cfg.model, timeout=cfg.timeout, credentials=credentials),
            dimensions=cfg.dimensions,
            batch_size=cfg.batch_size,
            max_retries=cfg.max_retries,
            backoff_base=cfg.backoff_base,
        )

    async def embed_one(self, text: str) -> list[float]:
        """Embed a single text (query time).

        Raises:
            EmbedError: If the text could not be embedded within the retry budget.
        """
        result = await self.embed_batch([text])
        if 0 in result.failures:
            raise result.failures[0]
        return result.vectors[0]

    async def embed_batch(self, texts: list[str]) -> BatchEmbedding:
        """Embed *texts*; see the module docstring for the retry policy."""
        result = BatchEmbedding()
        pending = list(range(len(texts)))
        last_error: dict[int, EmbedError] = {}

        for attempt in range(self.max_retries + 1):
            if not pending:
                break
            if attempt:
                delay = self.backoff_base * (2 ** (attempt - 1))
                logger.info(
                    "Retrying %d failed embedding(s) in %.2fs (attempt %d/%d)",
                    len(pending), delay, attempt, self.max_retries,
                )
                await asyncio.sleep(delay)

            failed: list[int] = []
            for start in range(0, len(pending), self.batch_size):
                batch = pending[start : start + self.batch_size]
                try:
                    vectors = await self._provider.embed([texts[i] for i in batch])
                except Exception as exc:  # every provider failure is reported per item
                    kind = classify_embed_error(exc)
                    logger.warning("Embedding batch of %d failed: %s", len(batch), exc)
                    for i in batch:
                        last_error[i] = EmbedError(kind, str(exc))
                    failed.extend(batch)
                    continue

                for offset, i in enumerate(batch):
                    vector = vectors[offset] if offset < len(vectors) else None
                    if vector is None:
                        last_error[i] = EmbedError(
                            EmbedErrorKind.PROVIDER_FAILURE, "provider returned no vector"
                        )
                        failed.append(i)
                    elif len(vector) != self.dimensions:
                        last_error[i] = EmbedError(
                            EmbedErrorKind.PROVIDER_FAILURE,
                            f"expected {self.dimensions} dimensions, got {len(vector)}",
                        )
                        failed.append(i)
                    else:
                        result.vectors[i] = vector
                        last_error.pop(i, None)
            pending = failed

        for i in pending:
            result.failures[i] = last_error[i]
        if result.failures:
            logger.warning(
                "%d of %d text(s) could not be embedded", len(result.failures), len(texts)
            )
        return result
