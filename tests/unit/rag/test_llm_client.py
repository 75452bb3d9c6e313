"""Tests for the LiteLLM client wrapper."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import litellm
import pytest

from threadline.errors import EmbedErrorKind, StreamErrorKind
from threadline.rag.llm_client import (
    ProviderCredentials,
    acomplete,
    aembed,
    aopen_stream,
    api_key_env,
    classify_embed_error,
    classify_stream_error,
    delta_text,
    provider_of,
    validate_api_key,
)


# ------------------------------------------------------------------
# validate_api_key
# ------------------------------------------------------------------


def test_validate_api_key_raises_if_missing(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(EnvironmentError, match="OPENAI_API_KEY"):
        validate_api_key("openai/gpt-4o")


def test_validate_api_key_passes_if_set(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-key")
    validate_api_key("openai/gpt-4o")  # should not raise


def test_validate_api_key_bare_provider(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    with pytest.raises(EnvironmentError, match="ANTHROPIC_API_KEY"):
        validate_api_key("anthropic")


def test_validate_api_key_ollama_no_key_required(monkeypatch):
    # Ollama is local, no env var needed
    validate_api_key("ollama")
    validate_api_key("ollama_chat/llama3")


def test_api_key_env_unknown_provider():
    assert api_key_env("acme") == "ACME_API_KEY"
    assert api_key_env("ollama") is None


def test_provider_of():
    assert provider_of("anthropic/claude-3-5-sonnet") == "anthropic"
    assert provider_of("gpt-4o") == "openai"


def test_credentials_as_kwargs():
    assert ProviderCredentials().as_kwargs() == {}
    creds = ProviderCredentials(api_key="sk-1", api_base="http://localhost:11434")
    assert creds.as_kwargs() == {"api_key": "sk-1", "api_base": "http://localhost:11434"}


# ------------------------------------------------------------------
# aembed
# ------------------------------------------------------------------


async def test_aembed_orders_by_index():
    response = MagicMock()
    response.data = [
        {"index": 1, "embedding": [0.0, 1.0]},
        {"index": 0, "embedding": [1.0, 0.0]},
    ]
    with patch("threadline.rag.llm_client.litellm.aembedding", new=AsyncMock(return_value=response)):
        vectors = await aembed("openai/text-embedding-3-small", ["a", "b"], timeout=5)
    assert vectors == [[1.0, 0.0], [0.0, 1.0]]


async def test_aembed_missing_items_are_none():
    response = MagicMock()
    response.data = [SimpleNamespace(index=0, embedding=[1.0, 0.0])]
    with patch("threadline.rag.llm_client.litellm.aembedding", new=AsyncMock(return_value=response)):
        vectors = await aembed("m", ["a", "b"], timeout=5)
    assert vectors == [[1.0, 0.0], None]


async def test_aembed_passes_credentials():
    response = MagicMock()
    response.data = [{"index": 0, "embedding": [1.0]}]
    mock = AsyncMock(return_value=response)
    with patch("threadline.rag.llm_client.litellm.aembedding", new=mock):
        await aembed("m", ["a"], timeout=5, credentials=ProviderCredentials(api_key="sk-x"))
    assert mock.call_args.kwargs["api_key"] == "sk-x"
    assert mock.call_args.kwargs["input"] == ["a"]


# ------------------------------------------------------------------
# acomplete / aopen_stream
# ------------------------------------------------------------------


async def test_acomplete_returns_content():
    response = MagicMock()
    response.choices[0].message.content = "Hello, world!"
    with patch("threadline.rag.llm_client.litellm.acompletion", new=AsyncMock(return_value=response)):
        result = await acomplete("openai/gpt-4o", [{"role": "user", "content": "Hi"}])
    assert result == "Hello, world!"


async def test_acomplete_none_content_is_empty_string():
    response = MagicMock()
    response.choices[0].message.content = None
    with patch("threadline.rag.llm_client.litellm.acompletion", new=AsyncMock(return_value=response)):
        assert await acomplete("openai/gpt-4o", []) == ""


async def test_acomplete_times_out():
    async def never(**kwargs):
        await asyncio.sleep(10)

    with patch("threadline.rag.llm_client.litellm.acompletion", new=never):
        with pytest.raises(asyncio.TimeoutError):
            await acomplete("openai/gpt-4o", [], timeout=0.01)


async def test_aopen_stream_requests_streaming():
    mock = AsyncMock(return_value="stream")
    with patch("threadline.rag.llm_client.litellm.acompletion", new=mock):
        result = await aopen_stream("anthropic/claude", [{"role": "user", "content": "Hi"}], max_tokens=10)
    assert result == "stream"
    assert mock.call_args.kwargs["stream"] is True
    assert mock.call_args.kwargs["max_tokens"] == 10


def test_delta_text():
    chunk = SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="tok"))])
    empty = SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=None))])
    assert delta_text(chunk) == "tok"
    assert delta_text(empty) == ""
    assert delta_text(SimpleNamespace(choices=[])) == ""


# ------------------------------------------------------------------
# Error classification
# ------------------------------------------------------------------


def test_classify_embed_error():
    rate = litellm.RateLimitError(message="x", llm_provider="openai", model="m")
    assert classify_embed_error(rate) is EmbedErrorKind.RATE_LIMITED
    assert classify_embed_error(asyncio.TimeoutError()) is EmbedErrorKind.TIMEOUT
    assert classify_embed_error(RuntimeError()) is EmbedErrorKind.PROVIDER_FAILURE


def test_classify_stream_error():
    auth = litellm.AuthenticationError(message="bad key", llm_provider="openai", model="m")
    assert classify_stream_error(auth) is StreamErrorKind.PROVIDER_REJECTED
    assert classify_stream_error(ConnectionResetError()) is StreamErrorKind.TRANSPORT
