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

"""Ask flow: answer one question about the codebase with streamed tokens."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Mapping, Optional, Sequence

from shipspec.config.settings import ShipSpecSettings
from shipspec.core.errors import ProviderError, ShipSpecRuntimeError
from shipspec.flows.shared import (
    Event,
    check_cloud_consent,
    complete_event,
    create_code_search,
    load_settings,
    status_event,
)
from shipspec.models.llm import ChatModel, create_chat_model, system_message, user_message
from shipspec.retrieval.search import CodeSearchProtocol
from shipspec.utils.tokens import TokenBudget, available_budget, estimate_tokens, prune_by_budget
from shipspec.workflows.prompts import (
    ASK_SYSTEM_TEMPLATE,
    NO_CONTEXT_RESPONSE,
    build_ask_prompt,
    format_code_context,
    summarize_history,
)

logger = logging.getLogger(__name__)

ASK_SEARCH_K = 10
HISTORY_ENTRIES = 3
PROMPT_OVERHEAD_TOKENS = 500
MIN_CONTEXT_TOKENS = 1000


@dataclass
class AskContext:
    """Collaborators reused across questions in one session."""

    settings: ShipSpecSettings
    search: CodeSearchProtocol
    model: ChatModel
    budget: TokenBudget


async def create_ask_context(
    *,
    reindex: bool = False,
    cloud_ok: bool = False,
    local_only: bool = False,
    project_root: Optional[Path] = None,
) -> AskContext:
    settings = load_settings(project_root)
    check_cloud_consent(settings, command="ask", cloud_ok=cloud_ok, local_only=local_only)
    model = create_chat_model(settings)
    search = await create_code_search(settings, reindex=reindex)
    return AskContext(settings=settings, search=search, model=model, budget=settings.token_budget)


def context_budget(budget: TokenBudget, question: str, history_context: str) -> int:
    """Tokens left for code context after the fixed parts of the prompt."""
    remaining = (
        available_budget(budget)
        - estimate_tokens(ASK_SYSTEM_TEMPLATE)
        - estimate_tokens(question)
        - estimate_tokens(history_context)
        - PROMPT_OVERHEAD_TOKENS
    )
    return max(remaining, MIN_CONTEXT_TOKENS)


async def ask_flow(
    question: str,
    context: AskContext,
    history: Optional[Sequence[Mapping[str, str]]] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> AsyncIterator[Event]:
    """Stream the answer to ``question``.

    Yields status events, one token event per streamed fragment and a final
    complete event carrying ``{"answer": ...}``. Setting ``cancel_event``
    stops the stream at the next fragment.

    Raises:
        ShipSpecRuntimeError: If generation fails or is canceled
    """
    yield status_event("Searching codebase...")
    chunks = await context.search.hybrid_search(question, k=ASK_SEARCH_K)
    if not chunks:
        yield complete_event({"answer": NO_CONTEXT_RESPONSE, "noContext": True})
        return

    history_context = summarize_history(history or [], HISTORY_ENTRIES)
    pruned = prune_by_budget(chunks, context_budget(context.budget, question, history_context))
    logger.debug(f"Using {len(pruned)} of {len(chunks)} retrieved chunk(s)")
    user_content = f"{format_code_context(pruned)}\n\n{build_ask_prompt(question, history_context)}"

    yield status_event("Generating answer...")
    parts: list[str] = []
    try:
        async for content in context.model.stream(
            [system_message(ASK_SYSTEM_TEMPLATE), user_message(user_content)]
        ):
            if cancel_event is not None and cancel_event.is_set():
                raise ShipSpecRuntimeError("Request canceled")
            if content:
                parts.append(content)
                yield {"type": "token", "content": content}
    except ProviderError as e:
        raise ShipSpecRuntimeError("Failed to generate response", cause=e) from e

    result: dict[str, Any] = {"answer": "".join(parts)}
    yield complete_event(result)


__all__ = ["AskContext", "ask_flow", "context_budget", "create_ask_context"]
