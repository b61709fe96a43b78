"""
Unit tests for AI provider clients.

SDK clients are mocked; only the requests we build are checked.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from siftstream.core.enums import MessageRole, ProviderType
from siftstream.core.exceptions import ProviderUnavailableError
from siftstream.services.providers import (
    AnthropicProvider,
    OpenAIProvider,
    PromptMessage,
    ProviderRegistry,
)


class FakeAnthropicStream:
    """Stands in for the SDK's MessageStream context manager."""

    def __init__(self, texts):
        self._texts = texts

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    @property
    async def text_stream(self):
        for text in self._texts:
            yield text


class FakeCompletionStream:
    """Stands in for the SDK's AsyncStream of chat completion chunks."""

    def __init__(self, contents):
        self._contents = contents
        self.close = AsyncMock()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for content in self._contents:
            chunk = MagicMock()
            if content is None:
                chunk.choices = []
            else:
                chunk.choices = [MagicMock()]
                chunk.choices[0].delta.content = content
            yield chunk


class TestAnthropicProvider:
    """Tests for AnthropicProvider."""

    @pytest.mark.asyncio
    async def test_streams_text(self):
        """Test request shape and streamed text."""
        client = MagicMock()
        client.messages.stream.return_value = FakeAnthropicStream(["Hello", " world"])
        provider = AnthropicProvider(client=client)

        chunks = [
            c async for c in provider.stream_text(
                "claude-sonnet-4-5-20250929",
                "system",
                [PromptMessage(role=MessageRole.USER, text="claim X")],
                {"temperature": 0.3, "top_p": 0.9, "top_k": 20},
            )
        ]

        assert chunks == ["Hello", " world"]
        request = client.messages.stream.call_args.kwargs
        assert request["system"] == "system"
        assert request["messages"] == [{"role": "user", "content": "claim X"}]
        assert request["temperature"] == 0.3
        assert "top_p" not in request
        assert request["top_k"] == 20

    def test_data_url_image_becomes_base64_block(self):
        """Test data URLs are sent inline."""
        message = PromptMessage(role=MessageRole.USER, text="what is this?", image_ref="data:image/png;base64,AAAA")
        content = AnthropicProvider._content(message)

        assert content[0] == {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": "AAAA"}}
        assert content[1] == {"type": "text", "text": "what is this?"}

    def test_https_image_becomes_url_block(self):
        """Test remote images are sent by URL."""
        message = PromptMessage(role=MessageRole.USER, text="", image_ref="https://example.com/a.jpg")
        assert AnthropicProvider._content(message) == [
            {"type": "image", "source": {"type": "url", "url": "https://example.com/a.jpg"}}
        ]


class TestOpenAIProvider:
    """Tests for OpenAIProvider."""

    @pytest.mark.asyncio
    async def test_streams_deltas_and_closes(self):
        """Empty chunks are skipped and the stream is closed."""
        stream = FakeCompletionStream(["Hel", None, "", "lo"])
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=stream)
        provider = OpenAIProvider(client=client)

        chunks = [
            c async for c in provider.stream_text(
                "gpt-4o", "system", [PromptMessage(role=MessageRole.USER, text="hi")], {"max_tokens": 100}
            )
        ]

        assert chunks == ["Hel", "lo"]
        request = client.chat.completions.create.call_args.kwargs
        assert request["stream"] is True
        assert request["max_tokens"] == 100
        assert request["messages"][0] == {"role": "system", "content": "system"}
        stream.close.assert_awaited_once()

    def test_image_content_blocks(self):
        """Test images become image_url blocks."""
        message = PromptMessage(role=MessageRole.USER, text="look", image_ref="https://example.com/a.jpg")
        assert OpenAIProvider._content(message) == [
            {"type": "text", "text": "look"},
            {"type": "image_url", "image_url": {"url": "https://example.com/a.jpg"}},
        ]


class TestProviderRegistry:
    """Tests for ProviderRegistry."""

    def test_registered_provider_is_configured(self):
        """Test registering a provider makes it available."""
        registry = ProviderRegistry()
        provider = OpenAIProvider(client=MagicMock(), provider_type=ProviderType.OPENROUTER)
        registry.register(provider)

        assert registry.is_configured(ProviderType.OPENROUTER)
        assert registry.get(ProviderType.OPENROUTER) is provider

    def test_missing_key_is_unavailable(self, monkeypatch):
        """Test providers without a key cannot be built."""
        from siftstream.core.config import settings

        monkeypatch.setattr(settings, "openrouter_api_key", "")
        with pytest.raises(ProviderUnavailableError):
            ProviderRegistry().get(ProviderType.OPENROUTER)
