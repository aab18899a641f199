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

"""Tests for shipspec.flows.ask."""

import asyncio

import pytest

from shipspec.config.settings import ShipSpecSettings
from shipspec.core.errors import ProviderError, ShipSpecRuntimeError, ShipSpecUsageError
from shipspec.flows.ask import AskContext, ask_flow, context_budget, create_ask_context
from shipspec.utils.tokens import TokenBudget
from shipspec.workflows.prompts import NO_CONTEXT_RESPONSE


class FailingModel:
    """Chat model whose stream fails after one fragment."""

    async def stream(self, messages):
        yield "partial "
        raise ProviderError("upstream 502", provider="openrouter", status_code=502)


def make_context(tmp_path, model, search):
    settings = ShipSpecSettings(project_root=tmp_path, llm_provider="ollama")
    return AskContext(settings=settings, search=search, model=model, budget=TokenBudget())


async def collect(events):
    return [event async for event in events]


class TestContextBudget:
    """Tests for context_budget."""

    def test_never_below_minimum(self):
        """A tiny window still leaves the minimum for code context."""
        budget = TokenBudget(max_context_tokens=1200, reserved_output_tokens=100)
        assert context_budget(budget, "q", "") == 1000

    def test_subtracts_fixed_parts(self):
        """Longer history leaves less room for code."""
        budget = TokenBudget()
        assert context_budget(budget, "q", "h" * 4000) < context_budget(budget, "q", "")


class TestAskFlow:
    """Tests for ask_flow."""

    @pytest.mark.asyncio
    async def test_streams_tokens(self, tmp_path, chat_model_factory, fake_search):
        """Tokens are streamed and joined into the final answer."""
        model = chat_model_factory(texts=["It returns one"])
        events = await collect(
            ask_flow("What does handler return?", make_context(tmp_path, model, fake_search))
        )

        assert [e["type"] for e in events] == [
            "status",
            "status",
            "token",
            "token",
            "token",
            "complete",
        ]
        assert events[-1]["result"] == {"answer": "It returns one "}
        prompt = model.calls[0][1][-1].content
        assert "src/app.py" in prompt
        assert "## Current Question\nWhat does handler return?" in prompt

    @pytest.mark.asyncio
    async def test_history_included(self, tmp_path, chat_model_factory, fake_search):
        """Earlier turns are summarized into the prompt."""
        model = chat_model_factory(texts=["ok"])
        history = [{"question": "Where is login?", "answer": "In src/app.py."}]
        await collect(
            ask_flow("And logout?", make_context(tmp_path, model, fake_search), history=history)
        )
        assert "Where is login?" in model.calls[0][1][-1].content

    @pytest.mark.asyncio
    async def test_no_context(self, tmp_path, chat_model_factory, search_factory):
        """No retrieved code short-circuits without calling the model."""
        model = chat_model_factory()
        events = await collect(ask_flow("anything", make_context(tmp_path, model, search_factory([]))))

        assert events[-1] == {
            "type": "complete",
            "result": {"answer": NO_CONTEXT_RESPONSE, "noContext": True},
        }
        assert model.calls == []

    @pytest.mark.asyncio
    async def test_cancel_stops_stream(self, tmp_path, chat_model_factory, fake_search):
        """A set cancel event stops at the next fragment."""
        model = chat_model_factory(texts=["one two three"])
        cancel = asyncio.Event()
        tokens = []
        with pytest.raises(ShipSpecRuntimeError, match="Request canceled"):
            async for event in ask_flow(
                "q", make_context(tmp_path, model, fake_search), cancel_event=cancel
            ):
                if event["type"] == "token":
                    tokens.append(event["content"])
                    cancel.set()
        assert tokens == ["one "]

    @pytest.mark.asyncio
    async def test_provider_error_wrapped(self, tmp_path, fake_search):
        """Provider failures become runtime errors with a sanitized cause."""
        with pytest.raises(ShipSpecRuntimeError) as exc_info:
            await collect(ask_flow("q", make_context(tmp_path, FailingModel(), fake_search)))
        assert str(exc_info.value) == "Failed to generate response"
        assert "upstream 502" in exc_info.value.to_public_string()


class TestCreateAskContext:
    """Tests for create_ask_context."""

    @pytest.mark.asyncio
    async def test_requires_consent_for_cloud(self, project_root):
        """The default cloud provider needs consent."""
        with pytest.raises(ShipSpecUsageError, match="consent"):
            await create_ask_context(project_root=project_root)
