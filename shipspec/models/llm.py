# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Chat model adapters.

OpenRouter and Ollama both expose an OpenAI-compatible chat completions API,
so one adapter built on the ``openai`` SDK serves both. Workflow nodes depend
on the ``ChatModel`` protocol only, which keeps them testable with fakes.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol, TypeVar, runtime_checkable
from collections.abc import AsyncIterator, Sequence

from openai import APIError, APIStatusError, AsyncOpenAI, AuthenticationError
from pydantic import BaseModel, ValidationError

from shipspec.config.secrets import OPENROUTER_API_KEY, SecretsStore
from shipspec.config.settings import ShipSpecSettings
from shipspec.core.errors import (
    ErrorCategory,
    ProviderAuthError,
    ProviderError,
    ShipSpecUsageError,
)

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
OLLAMA_BASE_URL = "http://localhost:11434/v1"

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass(frozen=True)
class ChatMessage:
    """One chat message."""

    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


def system_message(content: str) -> ChatMessage:
    return ChatMessage(role="system", content=content)


def user_message(content: str) -> ChatMessage:
    return ChatMessage(role="user", content=content)


@runtime_checkable
class ChatModel(Protocol):
    """Minimal chat model surface used by flows and workflow nodes."""

    async def invoke(self, messages: Sequence[ChatMessage]) -> str:
        """Return the full completion text."""
        ...

    def stream(self, messages: Sequence[ChatMessage]) -> AsyncIterator[str]:
        """Yield completion text incrementally."""
        ...

    async def invoke_structured(
        self, messages: Sequence[ChatMessage], schema: type[ModelT]
    ) -> ModelT:
        """Return the completion parsed into ``schema``."""
        ...


class OpenAICompatibleChatModel:
    """Chat model for OpenAI-compatible endpoints (OpenRouter, Ollama)."""

    def __init__(
        self,
        model: str,
        *,
        provider: str = "openrouter",
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        temperature: float = 0.0,
        timeout: float = 120.0,
        max_retries: int = 2,
    ):
        """Initialize the adapter.

        Args:
            model: Model identifier (e.g. "google/gemini-3-flash-preview")
            provider: Provider name used in errors
            api_key: API key (Ollama ignores it)
            base_url: Endpoint base URL
            temperature: Sampling temperature
            timeout: Request timeout in seconds
            max_retries: Maximum retry attempts
        """
        self.model = model
        self.provider = provider
        self.temperature = temperature
        self.client = AsyncOpenAI(
            api_key=api_key or "unused",
            base_url=base_url,
            timeout=timeout,
            max_retries=max_retries,
        )

    def _request(self, messages: Sequence[ChatMessage], **kwargs: Any) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [m.to_dict() for m in messages],
            "temperature": self.temperature,
            **kwargs,
        }

    async def invoke(self, messages: Sequence[ChatMessage]) -> str:
        try:
            response = await self.client.chat.completions.create(**self._request(messages))
        except APIError as e:
            raise self._convert_error(e) from e
        if not response.choices:
            raise ProviderError(
                "Model returned no choices",
                provider=self.provider,
                category=ErrorCategory.PROVIDER_INVALID_RESPONSE,
            )
        return response.choices[0].message.content or ""

    async def stream(self, messages: Sequence[ChatMessage]) -> AsyncIterator[str]:
        try:
            stream = await self.client.chat.completions.create(
                **self._request(messages, stream=True)
            )
            async for chunk in stream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        except APIError as e:
            raise self._convert_error(e) from e

    async def invoke_structured(
        self, messages: Sequence[ChatMessage], schema: type[ModelT]
    ) -> ModelT:
        instructions = system_message(
            "Respond with a single JSON object matching this JSON schema:\n"
            + json.dumps(schema.model_json_schema())
        )
        try:
            response = await self.client.chat.completions.create(
                **self._request(
                    [*messages, instructions], response_format={"type": "json_object"}
                )
            )
        except APIError as e:
            raise self._convert_error(e) from e

        content = response.choices[0].message.content if response.choices else None
        try:
            return schema.model_validate_json(_strip_code_fence(content or ""))
        except ValidationError as e:
            raise ProviderError(
                f"Model output did not match {schema.__name__}",
                provider=self.provider,
                category=ErrorCategory.PROVIDER_INVALID_RESPONSE,
                cause=e,
            ) from e

    def _convert_error(self, error: APIError) -> ProviderError:
        if isinstance(error, AuthenticationError):
            return ProviderAuthError(f"Authentication failed: {error.message}", provider=self.provider)
        status = error.status_code if isinstance(error, APIStatusError) else None
        return ProviderError(
            f"{self.provider} API error: {error.message}",
            provider=self.provider,
            status_code=status,
            cause=error,
        )

    async def close(self) -> None:
        """Close HTTP client."""
        await self.client.close()


def _strip_code_fence(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
        if stripped.rstrip().endswith("```"):
            stripped = stripped.rstrip()[:-3]
    return stripped.strip()


def create_chat_model(
    settings: ShipSpecSettings, secrets: Optional[SecretsStore] = None
) -> OpenAICompatibleChatModel:
    """Build the configured chat model.

    Raises:
        ShipSpecUsageError: If OpenRouter is selected and no key is available
    """
    if settings.llm_provider == "openrouter":
        secrets = secrets or SecretsStore(settings.project_root)
        api_key = secrets.get(OPENROUTER_API_KEY)
        if not api_key:
            raise ShipSpecUsageError(
                "OpenRouter API key not found. Run `shipspec connect` or set OPENROUTER_API_KEY."
            )
        base_url = settings.llm_base_url or OPENROUTER_BASE_URL
    else:
        api_key = None
        base_url = settings.llm_base_url or OLLAMA_BASE_URL

    logger.debug(f"Creating chat model {settings.llm_model} via {settings.llm_provider}")
    return OpenAICompatibleChatModel(
        settings.llm_model,
        provider=settings.llm_provider,
        api_key=api_key,
        base_url=base_url,
        temperature=settings.llm_temperature,
        timeout=settings.llm_timeout_seconds,
    )


__all__ = [
    "ChatMessage",
    "ChatModel",
    "OLLAMA_BASE_URL",
    "OPENROUTER_BASE_URL",
    "OpenAICompatibleChatModel",
    "create_chat_model",
    "system_message",
    "user_message",
]
