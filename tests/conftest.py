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

"""Shared pytest fixtures and configuration."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator, Sequence
from pathlib import Path
from typing import Any, Optional

import pytest
from pydantic import BaseModel

from shipspec.models.llm import ChatMessage
from shipspec.retrieval.search import CodeChunk


class FakeChatModel:
    """Scripted chat model.

    ``texts`` feeds ``invoke``/``stream`` in order; ``structured`` maps a schema
    class name to the queue of outputs returned for it. Every call is recorded
    in ``calls`` as ``(method, messages)``.
    """

    def __init__(
        self,
        texts: Optional[Sequence[str]] = None,
        structured: Optional[dict[str, Sequence[Any]]] = None,
    ):
        self.texts = list(texts or [])
        self.structured = {name: list(items) for name, items in (structured or {}).items()}
        self.calls: list[tuple[str, list[ChatMessage]]] = []

    def _next_text(self) -> str:
        if not self.texts:
            raise AssertionError("FakeChatModel ran out of text responses")
        return self.texts.pop(0)

    async def invoke(self, messages: Sequence[ChatMessage]) -> str:
        self.calls.append(("invoke", list(messages)))
        return self._next_text()

    async def stream(self, messages: Sequence[ChatMessage]) -> AsyncIterator[str]:
        self.calls.append(("stream", list(messages)))
        for word in self._next_text().split(" "):
            yield word + " "

    async def invoke_structured(self, messages: Sequence[ChatMessage], schema: type[BaseModel]):
        self.calls.append((f"structured:{schema.__name__}", list(messages)))
        queue = self.structured.get(schema.__name__)
        if not queue:
            raise AssertionError(f"FakeChatModel has no output scripted for {schema.__name__}")
        item = queue.pop(0)
        return item if isinstance(item, BaseModel) else schema.model_validate(item)

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)


class FakeCodeSearch:
    """Code search returning a fixed list of chunks."""

    def __init__(self, chunks: Optional[list[CodeChunk]] = None):
        self.chunks = chunks if chunks is not None else []
        self.queries: list[str] = []

    async def hybrid_search(self, query: str, k: int = 10) -> list[CodeChunk]:
        self.queries.append(query)
        return self.chunks[:k]


def make_chunk(
    filepath: str = "src/app.py",
    content: str = "def handler():\n    return 1\n",
    start_line: int = 1,
    end_line: int = 2,
) -> CodeChunk:
    return CodeChunk(
        id=f"{filepath}:{start_line}-{end_line}",
        filepath=filepath,
        content=content,
        start_line=start_line,
        end_line=end_line,
        language="python",
        type="function",
        symbol_name="handler",
    )


@pytest.fixture(autouse=True)
def isolate_environment_variables(monkeypatch):
    """Isolate tests from environment variables, .env files and API keys."""
    monkeypatch.setenv("SHIPSPEC_SKIP_ENV_FILE", "1")
    for var in ("OPENROUTER_API_KEY", "TAVILY_API_KEY"):
        monkeypatch.delenv(var, raising=False)
    for var in list(os.environ):
        if var.startswith("SHIPSPEC_") and var != "SHIPSPEC_SKIP_ENV_FILE":
            monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    """A minimal project with a couple of source files."""
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text(
        "def login(user, password):\n"
        "    token = create_token(user)\n"
        "    return token\n"
        "\n"
        "\n"
        "class SessionStore:\n"
        "    def get(self, key):\n"
        "        return None\n",
        encoding="utf-8",
    )
    (tmp_path / "package.json").write_text('{"name": "demo"}', encoding="utf-8")
    return tmp_path


@pytest.fixture
def fake_model() -> FakeChatModel:
    return FakeChatModel()


@pytest.fixture
def fake_search() -> FakeCodeSearch:
    return FakeCodeSearch([make_chunk()])


@pytest.fixture
def chat_model_factory():
    """Build a FakeChatModel from scripted outputs."""
    return FakeChatModel


@pytest.fixture
def search_factory():
    """Build a FakeCodeSearch over the given chunks."""
    return FakeCodeSearch


@pytest.fixture
def chunk_factory():
    return make_chunk


@pytest.fixture(autouse=True)
def reset_shipspec_logger():
    """Undo configure_logging() so caplog keeps seeing shipspec records."""
    yield
    logger = logging.getLogger("shipspec")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
