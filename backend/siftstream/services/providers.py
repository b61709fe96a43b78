"""
AI provider clients.

Each provider turns a prompt into an async iterator of text chunks. The
relay treats that iterator as opaque; closing it (``aclose()``) closes the
underlying HTTP stream.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from siftstream.core.config import settings
from siftstream.core.enums import MessageRole, ProviderType
from siftstream.core.exceptions import ProviderUnavailableError
from siftstream.core.logging import get_logger

logger = get_logger(__name__)

DATA_URL_PATTERN = re.compile(r"^data:(?P<media_type>[\w/+.-]+);base64,(?P<data>.+)$", re.DOTALL)


@dataclass
class PromptMessage:
    """One provider-neutral conversation turn."""

    role: MessageRole
    text: str
    image_ref: Optional[str] = None


class TextProvider(ABC):
    """Source of incremental text chunks for one provider."""

    provider_type: ProviderType

    @abstractmethod
    def stream_text(
        self,
        model_id: str,
        system_prompt: str,
        messages: List[PromptMessage],
        params: Dict[str, Any],
    ) -> AsyncIterator[str]:
        """Yield text chunks as the provider produces them."""


class AnthropicProvider(TextProvider):
    """Streams completions from the Anthropic Messages API."""

    provider_type = ProviderType.ANTHROPIC

    def __init__(self, api_key: Optional[str] = None, client: Optional[AsyncAnthropic] = None):
        self.client = client or AsyncAnthropic(api_key=api_key or settings.anthropic_api_key)

    @staticmethod
    def _content(message: PromptMessage) -> Any:
        if not message.image_ref:
            return message.text

        match = DATA_URL_PATTERN.match(message.image_ref)
        if match:
            source = {"type": "base64", "media_type": match["media_type"], "data": match["data"]}
        else:
            source = {"type": "url", "url": message.image_ref}

        blocks: List[Dict[str, Any]] = [{"type": "image", "source": source}]
        if message.text:
            blocks.append({"type": "text", "text": message.text})
        return blocks

    async def stream_text(self, model_id, system_prompt, messages, params):
        request: Dict[str, Any] = {
            "model": model_id,
            "max_tokens": int(params.get("max_tokens", settings.provider_max_tokens)),
            "system": system_prompt,
            "messages": [{"role": m.role.value, "content": self._content(m)} for m in messages],
        }
        # Anthropic rejects temperature and top_p together on newer models
        if "temperature" in params:
            request["temperature"] = float(params["temperature"])
        elif "top_p" in params:
            request["top_p"] = float(params["top_p"])
        if "top_k" in params:
            request["top_k"] = int(params["top_k"])

        async with self.client.messages.stream(**request) as stream:
            async for text in stream.text_stream:
                yield text


class OpenAIProvider(TextProvider):
    """Streams chat completions from OpenAI or an OpenAI-compatible endpoint."""

    provider_type = ProviderType.OPENAI

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
        provider_type: ProviderType = ProviderType.OPENAI,
    ):
        self.provider_type = provider_type
        self.client = client or AsyncOpenAI(api_key=api_key or settings.openai_api_key, base_url=base_url)

    @staticmethod
    def _content(message: PromptMessage) -> Any:
        if not message.image_ref:
            return message.text
        blocks: List[Dict[str, Any]] = []
        if message.text:
            blocks.append({"type": "text", "text": message.text})
        blocks.append({"type": "image_url", "image_url": {"url": message.image_ref}})
        return blocks

    async def stream_text(self, model_id, system_prompt, messages, params):
        chat_messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        chat_messages.extend({"role": m.role.value, "content": self._content(m)} for m in messages)

        request: Dict[str, Any] = {
            "model": model_id,
            "messages": chat_messages,
            "stream": True,
            "max_tokens": int(params.get("max_tokens", settings.provider_max_tokens)),
        }
        if "temperature" in params:
            request["temperature"] = float(params["temperature"])
        if "top_p" in params:
            request["top_p"] = float(params["top_p"])

        stream = await self.client.chat.completions.create(**request)
        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        finally:
            await stream.close()


class ProviderRegistry:
    """Lazily builds one client per configured provider."""

    def __init__(self):
        self._providers: Dict[ProviderType, TextProvider] = {}

    def is_configured(self, provider_type: ProviderType) -> bool:
        return provider_type in self._providers or provider_type.value in settings.configured_providers

    def register(self, provider: TextProvider) -> None:
        """Install a provider instance (used for custom endpoints and tests)."""
        self._providers[provider.provider_type] = provider

    def get(self, provider_type: ProviderType) -> TextProvider:
        """Return the provider client, raising if its API key is not configured."""
        if provider_type in self._providers:
            return self._providers[provider_type]
        if not self.is_configured(provider_type):
            raise ProviderUnavailableError(provider_type.value, "API key not configured")

        if provider_type == ProviderType.ANTHROPIC:
            provider = AnthropicProvider()
        elif provider_type == ProviderType.OPENROUTER:
            provider = OpenAIProvider(
                api_key=settings.openrouter_api_key,
                base_url=settings.openrouter_base_url,
                provider_type=ProviderType.OPENROUTER,
            )
        else:
            provider = OpenAIProvider()

        logger.info(f"Initialized {provider_type.value} provider client")
        self._providers[provider_type] = provider
        return provider

    def clear(self) -> None:
        self._providers.clear()


# Global provider registry
provider_registry = ProviderRegistry()
