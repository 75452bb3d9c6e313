"""Provider router: one PromptContext in, one cancellable token stream out.

Each provider variant knows its LiteLLM route, what a given model can do
(streaming, system role) and how to reshape the prompt for its wire format.
The router holds no per-thread state, so every call may pick a different
provider.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable

from threadline.config import GenerationCfg
from threadline.errors import StreamError, StreamErrorKind
from threadline.rag.assembler import PromptContext
from threadline.rag.events import StreamCancelled, StreamEnd, StreamFailed, Token, TokenEvent
from threadline.rag.llm_client import (
    ProviderCredentials,
    acomplete,
    aopen_stream,
    classify_stream_error,
    delta_text,
)

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Provider variants
# ------------------------------------------------------------------


@dataclass(frozen=True)
class Capabilities:
    streaming: bool = True
    system_role: bool = True


class ProviderVariant:
    """Base provider: OpenAI-compatible message list, streaming, system role."""

    provider_id: str = ""
    route: str = ""

    def capabilities(self, model_id: str) -> Capabilities:
        return Capabilities()

    def litellm_model(self, model_id: str) -> str:
        if model_id.startswith(f"{self.route}/"):
            return model_id
        return f"{self.route}/{model_id}"

    def request_options(self, model_id: str, max_tokens: int, temperature: float) -> dict:
        return {"max_tokens": max_tokens, "temperature": temperature}

    def adapt(self, prompt: PromptContext, caps: Capabilities) -> list[dict]:
        messages = prompt.messages()
        if not caps.system_role:
            messages = _fold_system(messages)
        return messages


class OpenAIProvider(ProviderVariant):
    provider_id = "openai"
    route = "openai"

    def capabilities(self, model_id: str) -> Capabilities:
        # o1 reasoning models reject both streaming and system messages.
        if _bare_model(model_id).startswith("o1"):
            return Capabilities(streaming=False, system_role=False)
        return Capabilities()

    def request_options(self, model_id: str, max_tokens: int, temperature: float) -> dict:
        if _bare_model(model_id).startswith("o1"):
            return {"max_tokens": max_tokens, "temperature": 1.0}
        return super().request_options(model_id, max_tokens, temperature)


class AnthropicProvider(ProviderVariant):
    """Anthropic: one leading system message, then strictly alternating turns."""

    provider_id = "anthropic"
    route = "anthropic"

    def adapt(self, prompt: PromptContext, caps: Capabilities) -> list[dict]:
        system_text = "\n\n".join(prompt.system_blocks())
        turns = [dict(m) for m in prompt.history]
        turns.append({"role": "user", "content": prompt.user_text})
        turns = _merge_roles(turns)
        # The conversation must open with a user turn.
        while turns and turns[0]["role"] != "user":
            turns.pop(0)
        if system_text:
            return [{"role": "system", "content": system_text}, *turns]
        return turns


class OllamaProvider(ProviderVariant):
    """Local models through Ollama's chat endpoint. No API key."""

    provider_id = "ollama"
    route = "ollama_chat"


PROVIDERS: dict[str, type[ProviderVariant]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "ollama": OllamaProvider,
}


def _bare_model(model_id: str) -> str:
    return model_id.split("/", 1)[1] if "/" in model_id else model_id


def _fold_system(messages: list[dict]) -> list[dict]:
    """Move system text into the first user message."""
    system = [m["content"] for m in messages if m["role"] == "system"]
    rest = [dict(m) for m in messages if m["role"] != "system"]
    if not system:
        return rest
    preamble = "\n\n".join(system)
    for message in rest:
        if message["role"] == "user":
            message["content"] = f"{preamble}\n\n{message['content']}"
            break
    return rest


def _merge_roles(messages: list[dict]) -> list[dict]:
    """Join consecutive messages that share a role."""
    merged: list[dict] = []
    for message in messages:
        if merged and merged[-1]["role"] == message["role"]:
            merged[-1]["content"] = f"{merged[-1]['content']}\n\n{message['content']}"
        else:
            merged.append(dict(message))
    return merged


# ------------------------------------------------------------------
# Completion stream
# ------------------------------------------------------------------


class CompletionStream:
    """Lazy, cancellable async iterator of TokenEvents.

    Nothing is sent to the provider until the first ``__anext__``. A producer
    task then reads the provider stream into an unbounded queue. Iteration
    yields ``Token`` events and exactly one terminal event, then stops.

    Args:
        opener: Coroutine factory. Returns LiteLLM's chunk iterator when
            ``streaming`` is True, otherwise the full completion text.
        timeout: Seconds allowed for each chunk read.
        streaming: Whether the opener produces a stream.
        total_timeout: Seconds allowed for the whole completion, or None.
    """

    def __init__(
        self,
        opener: Callable[[], Awaitable[Any]],
        *,
        timeout: float,
        streaming: bool = True,
        total_timeout: float | None = None,
    ) -> None:
        self._opener = opener
        self._timeout = timeout
        self._total_timeout = total_timeout
        self._streaming = streaming
        self._queue: asyncio.Queue[TokenEvent] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._cancelled = False
        self._done = False

    def __aiter__(self) -> CompletionStream:
        return self

    async def __anext__(self) -> TokenEvent:
        if self._done:
            raise StopAsyncIteration
        if self._cancelled and self._queue.empty():
            self._done = True
            return StreamCancelled()
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._produce())
            self._task.add_done_callback(self._on_producer_done)
        event = await self._queue.get()
        if event.terminal:
            self._done = True
        return event

    @property
    def done(self) -> bool:
        return self._done

    def cancel(self) -> None:
        """Stop the producer and close the provider call. Idempotent."""
        if self._done or self._cancelled:
            return
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def aclose(self) -> None:
        """Cancel and wait for the producer to finish."""
        self.cancel()
        if self._task is not None and not self._task.done():
            await asyncio.wait({self._task})

    def _on_producer_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            self._queue.put_nowait(StreamCancelled())

    async def _produce(self) -> None:
        provider_stream = None
        deadline = asyncio.timeout(self._total_timeout)
        try:
            async with deadline:
                if not self._streaming:
                    text = await self._opener()
                    if text:
                        self._queue.put_nowait(Token(text))
                else:
                    provider_stream = await self._opener()
                    chunks = provider_stream.__aiter__()
                    while True:
                        try:
                            chunk = await asyncio.wait_for(chunks.__anext__(), timeout=self._timeout)
                        except StopAsyncIteration:
                            break
                        text = delta_text(chunk)
                        if text:
                            self._queue.put_nowait(Token(text))
        except asyncio.TimeoutError:
            if deadline.expired():
                message = f"completion not finished within {self._total_timeout:g}s"
            else:
                message = f"no response within {self._timeout:g}s"
            logger.warning("Provider stream timed out: %s", message)
            self._queue.put_nowait(StreamFailed(StreamError(StreamErrorKind.TRANSPORT, message)))
            return
        except Exception as exc:  # mapped to a terminal event, never raised to the consumer
            kind = classify_stream_error(exc)
            logger.warning("Provider stream failed (%s): %s", kind.value, exc)
            self._queue.put_nowait(StreamFailed(StreamError(kind, str(exc))))
            return
        finally:
            if provider_stream is not None:
                await _close_quietly(provider_stream)
        self._queue.put_nowait(StreamEnd())


async def _close_quietly(provider_stream: Any) -> None:
    close = getattr(provider_stream, "aclose", None)
    if close is None:
        return
    try:
        await close()
    except Exception as exc:
        logger.debug("Closing provider stream failed: %s", exc)


# ------------------------------------------------------------------
# Router
# ------------------------------------------------------------------


class ProviderRouter:
    """Dispatch completions to the provider variant named by each call.

    Args:
        max_tokens: Completion length cap.
        temperature: Sampling temperature.
        timeout: Seconds for the opening request and for each chunk read.
        stream_timeout: Seconds for a whole completion.
        providers: provider id → variant class (defaults to PROVIDERS).
    """

    def __init__(
        self,
        *,
        max_tokens: int = 1500,
        temperature: float = 0.7,
        timeout: float = 60.0,
        stream_timeout: float = 600.0,
        providers: dict[str, type[ProviderVariant]] | None = None,
    ) -> None:
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self.stream_timeout = stream_timeout
        self._variants = {pid: cls() for pid, cls in (providers or PROVIDERS).items()}

    @classmethod
    def from_cfg(cls, cfg: GenerationCfg) -> ProviderRouter:
        return cls(
            max_tokens=cfg.max_tokens,
            temperature=cfg.temperature,
            timeout=cfg.timeout,
            stream_timeout=cfg.stream_timeout,
        )

    @property
    def provider_ids(self) -> list[str]:
        return sorted(self._variants)

    def variant(self, provider_id: str) -> ProviderVariant:
        """Raises StreamError(PROVIDER_REJECTED) for an unknown provider id."""
        try:
            return self._variants[provider_id.lower()]
        except KeyError:
            raise StreamError(
                StreamErrorKind.PROVIDER_REJECTED,
                f"unknown provider '{provider_id}' (known: {', '.join(self.provider_ids)})",
            ) from None

    def stream_completion(
        self,
        provider_id: str,
        model_id: str,
        prompt: PromptContext,
        credentials: ProviderCredentials | None = None,
    ) -> CompletionStream:
        variant = self.variant(provider_id)
        caps = variant.capabilities(model_id)
        messages = variant.adapt(prompt, caps)
        model = variant.litellm_model(model_id)
        options = variant.request_options(model_id, self.max_tokens, self.temperature)

        call = aopen_stream if caps.streaming else acomplete
        opener = partial(
            call, model, messages, timeout=self.timeout, credentials=credentials, **options
        )
        logger.debug("Completion via %s (%d messages, streaming=%s)", model, len(messages), caps.streaming)
        return CompletionStream(
            opener,
            timeout=self.timeout,
            streaming=caps.streaming,
            total_timeout=self.stream_timeout,
        )
