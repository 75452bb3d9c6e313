"""LiteLLM client wrapper: async calls, credentials, error classification.

All embedding and completion calls route through this module. Retries are
owned by the callers (the embedder retries failed items; completions are
never retried mid-stream), so LiteLLM's own retry loop stays off.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from typing import Any

import litellm

from threadline.errors import EmbedErrorKind, StreamErrorKind

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True


# ------------------------------------------------------------------
# Provider → env var mapping for API key validation
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "groq": "GROQ_API_KEY",
    "ollama": None,  # Local, no key required
    "ollama_chat": None,
}

# Exceptions that mean the provider refused the request itself; retrying or
# reconnecting will not help.
_REJECTED = (
    litellm.AuthenticationError,
    litellm.PermissionDeniedError,
    litellm.BadRequestError,
    litellm.NotFoundError,
    litellm.ContentPolicyViolationError,
)


@dataclass(frozen=True)
class ProviderCredentials:
    """Caller-supplied credentials for one provider call.

    Fields left as None fall back to LiteLLM's environment lookup.
    """

    api_key: str | None = None
    api_base: str | None = None

    def as_kwargs(self) -> dict[str, str]:
        kwargs: dict[str, str] = {}
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        return kwargs


def provider_of(model: str) -> str:
    """Return the provider prefix of a ``provider/model`` string ('openai' if none)."""
    return model.split("/")[0].lower() if "/" in model else "openai"


def api_key_env(provider: str) -> str | None:
    """Name of the env var holding *provider*'s key (None if it needs none)."""
    provider = provider.lower()
    return _PROVIDER_ENV.get(provider, f"{provider.upper()}_API_KEY")


def validate_api_key(model_or_provider: str) -> None:
    """Check that the required API key env var is set.

    Args:
        model_or_provider: LiteLLM model string in 'provider/model' format,
            or a bare provider id such as 'anthropic'.

    Raises:
        EnvironmentError: If the required key is missing from environment.
    """
    if "/" in model_or_provider or model_or_provider.lower() not in _PROVIDER_ENV:
        provider = provider_of(model_or_provider)
    else:
        provider = model_or_provider.lower()
    env_var = api_key_env(provider)

    if env_var is None:
        return  # No key required (e.g. ollama)

    if not os.getenv(env_var):
        raise EnvironmentError(
            f"API key not found for provider '{provider}'. "
            f"Set the {env_var} environment variable."
        )


# ------------------------------------------------------------------
# Calls
# ------------------------------------------------------------------


async def aembed(
    model: str,
    texts: list[str],
    *,
    timeout: float,
    credentials: ProviderCredentials | None = None,
) -> list[list[float] | None]:
    """Embed *texts* in one request. Returns one entry per input, in order.

    Entries the provider did not return come back as None.
    """
    response = await asyncio.wait_for(
        litellm.aembedding(
            model=model,
            input=texts,
            timeout=timeout,
            **(credentials.as_kwargs() if credentials else {}),
        ),
        timeout=timeout,
    )
    vectors: list[list[float] | None] = [None] * len(texts)
    for position, item in enumerate(response.data):
        index = _field(item, "index", position)
        if 0 <= index < len(texts):
            vectors[index] = list(_field(item, "embedding", None) or []) or None
    return vectors


async def acomplete(
    model: str,
    messages: list[dict],
    *,
    max_tokens: int = 1500,
    temperature: float = 0.7,
    timeout: float = 60.0,
    credentials: ProviderCredentials | None = None,
) -> str:
    """Single non-streaming completion. Returns the content string."""
    response = await asyncio.wait_for(
        litellm.acompletion(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            timeout=timeout,
            **(credentials.as_kwargs() if credentials else {}),
        ),
        timeout=timeout,
    )
    return response.choices[0].message.content or ""


async def aopen_stream(
    model: str,
    messages: list[dict],
    *,
    max_tokens: int = 1500,
    temperature: float = 0.7,
    timeout: float = 60.0,
    credentials: ProviderCredentials | None = None,
    **extra: Any,
) -> Any:
    """Open a streaming completion and return LiteLLM's async chunk iterator."""
    return await asyncio.wait_for(
        litellm.acompletion(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            timeout=timeout,
            stream=True,
            **(credentials.as_kwargs() if credentials else {}),
            **extra,
        ),
        timeout=timeout,
    )


def delta_text(chunk: Any) -> str:
    """Extract the text delta from one streamed chunk ('' if none)."""
    try:
        return chunk.choices[0].delta.content or ""
    except (AttributeError, IndexError, TypeError):
        return ""


# ------------------------------------------------------------------
# Error classification
# ------------------------------------------------------------------


def classify_embed_error(exc: BaseException) -> EmbedErrorKind:
    if isinstance(exc, litellm.RateLimitError):
        return EmbedErrorKind.RATE_LIMITED
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, litellm.Timeout)):
        return EmbedErrorKind.TIMEOUT
    return EmbedErrorKind.PROVIDER_FAILURE


def classify_stream_error(exc: BaseException) -> StreamErrorKind:
    if isinstance(exc, _REJECTED):
        return StreamErrorKind.PROVIDER_REJECTED
    return StreamErrorKind.TRANSPORT


def _field(item: Any, name: str, default: Any) -> Any:
    if isinstance(item, dict):
        return item.get(name, default)
    return getattr(item, name, default)
