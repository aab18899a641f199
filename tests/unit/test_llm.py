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

"""Tests for shipspec.models.llm."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest
from pydantic import BaseModel

from shipspec.config.settings import ShipSpecSettings
from shipspec.core.errors import ProviderAuthError, ProviderError, ShipSpecUsageError
from shipspec.models.llm import (
    OLLAMA_BASE_URL,
    OPENROUTER_BASE_URL,
    OpenAICompatibleChatModel,
    create_chat_model,
    system_message,
    user_message,
)


class Verdict(BaseModel):
    ok: bool
    reason: str


def completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def chunk(content):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


class FakeStream:
    def __init__(self, chunks):
        self._chunks = list(chunks)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._chunks:
            raise StopAsyncIteration
        return self._chunks.pop(0)


@pytest.fixture
def model():
    chat = OpenAICompatibleChatModel("test/model", api_key="k", base_url="http://localhost")
    chat.client = MagicMock()
    chat.client.chat.completions.create = AsyncMock()
    return chat


def http_response(status):
    return httpx.Response(status, request=httpx.Request("POST", "http://localhost/chat"))


class TestInvoke:
    """Tests for invoke and stream."""

    @pytest.mark.asyncio
    async def test_invoke_returns_content(self, model):
        """The first choice's content is returned."""
        model.client.chat.completions.create.return_value = completion("hello")
        result = await model.invoke([system_message("sys"), user_message("hi")])

        assert result == "hello"
        kwargs = model.client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "test/model"
        assert kwargs["messages"] == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "hi"},
        ]
        assert kwargs["temperature"] == 0.0

    @pytest.mark.asyncio
    async def test_invoke_without_choices(self, model):
        """An empty choices list is a provider error."""
        model.client.chat.completions.create.return_value = SimpleNamespace(choices=[])
        with pytest.raises(ProviderError):
            await model.invoke([user_message("hi")])

    @pytest.mark.asyncio
    async def test_stream_yields_fragments(self, model):
        """Streamed deltas are yielded in order, skipping empty ones."""
        model.client.chat.completions.create.return_value = FakeStream(
            [chunk("Hel"), chunk(None), SimpleNamespace(choices=[]), chunk("lo")]
        )
        parts = [part async for part in model.stream([user_message("hi")])]
        assert parts == ["Hel", "lo"]
        assert model.client.chat.completions.create.call_args.kwargs["stream"] is True


class TestStructured:
    """Tests for invoke_structured."""

    @pytest.mark.asyncio
    async def test_parses_json(self, model):
        """JSON output is validated into the schema."""
        model.client.chat.completions.create.return_value = completion(
            '{"ok": true, "reason": "fine"}'
        )
        result = await model.invoke_structured([user_message("judge")], Verdict)
        assert result == Verdict(ok=True, reason="fine")
        kwargs = model.client.chat.completions.create.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    async def test_strips_code_fence(self, model):
        """Fenced JSON is accepted."""
        model.client.chat.completions.create.return_value = completion(
            '```json\n{"ok": false, "reason": "nope"}\n```'
        )
        result = await model.invoke_structured([user_message("judge")], Verdict)
        assert result.ok is False

    @pytest.mark.asyncio
    async def test_invalid_output(self, model):
        """Output that does not match the schema is a provider error."""
        model.client.chat.completions.create.return_value = completion('{"ok": "maybe"}')
        with pytest.raises(ProviderError, match="Verdict"):
            await model.invoke_structured([user_message("judge")], Verdict)


class TestErrors:
    """Tests for API error conversion."""

    @pytest.mark.asyncio
    async def test_auth_error(self, model):
        """401 responses become ProviderAuthError."""
        model.client.chat.completions.create.side_effect = openai.AuthenticationError(
            "bad key", response=http_response(401), body=None
        )
        with pytest.raises(ProviderAuthError):
            await model.invoke([user_message("hi")])

    @pytest.mark.asyncio
    async def test_status_error(self, model):
        """Other status errors keep their status code."""
        model.client.chat.completions.create.side_effect = openai.RateLimitError(
            "slow down", response=http_response(429), body=None
        )
        with pytest.raises(ProviderError) as exc_info:
            await model.invoke([user_message("hi")])
        assert exc_info.value.status_code == 429


class TestCreateChatModel:
    """Tests for create_chat_model."""

    def test_openrouter_requires_key(self, tmp_path):
        """A missing OpenRouter key is a usage error."""
        settings = ShipSpecSettings(project_root=tmp_path)
        secrets = MagicMock()
        secrets.get.return_value = None
        with pytest.raises(ShipSpecUsageError, match="shipspec connect"):
            create_chat_model(settings, secrets=secrets)

    def test_openrouter(self, tmp_path):
        """OpenRouter models use the stored key and base URL."""
        settings = ShipSpecSettings(project_root=tmp_path)
        secrets = MagicMock()
        secrets.get.return_value = "sk-or-key"
        with patch("shipspec.models.llm.AsyncOpenAI") as mock_client:
            chat = create_chat_model(settings, secrets=secrets)
        assert chat.model == settings.llm_model
        kwargs = mock_client.call_args.kwargs
        assert kwargs["api_key"] == "sk-or-key"
        assert kwargs["base_url"] == OPENROUTER_BASE_URL

    def test_ollama_needs_no_key(self, tmp_path):
        """Ollama runs without credentials."""
        settings = ShipSpecSettings(project_root=tmp_path, llm_provider="ollama", llm_model="llama3")
        with patch("shipspec.models.llm.AsyncOpenAI") as mock_client:
            chat = create_chat_model(settings)
        assert chat.provider == "ollama"
        assert mock_client.call_args.kwargs["base_url"] == OLLAMA_BASE_URL
