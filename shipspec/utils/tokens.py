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

"""Token budget helpers for context assembly.

All estimates use a fixed 4-characters-per-token heuristic so that pruning
decisions are deterministic and never depend on a provider tokenizer.

Example:
    budget = TokenBudget(max_context_tokens=16000, reserved_output_tokens=4000)
    limit = int(available_budget(budget) * WORKER_CONTEXT_FRACTION)
    kept = prune_by_budget(chunks, limit, key=lambda c: c.content)
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Optional, TypeVar
from collections.abc import Callable, Iterable

T = TypeVar("T")

CHARS_PER_TOKEN = 4
TRUNCATION_MARKER = "\n\n[... content truncated due to token budget ...]"

# Share of the available budget spent on retrieved context inside workers
WORKER_CONTEXT_FRACTION = 0.7
# Share of the available budget spent on merged findings inside aggregators
AGGREGATOR_FINDINGS_FRACTION = 0.6


@dataclass(frozen=True)
class TokenBudget:
    """Context window budget for a single model call.

    Attributes:
        max_context_tokens: Total context window of the model
        reserved_output_tokens: Tokens held back for the completion
    """

    max_context_tokens: int = 16000
    reserved_output_tokens: int = 4000

    @property
    def available(self) -> int:
        return available_budget(self)


def estimate_tokens(text: Optional[str]) -> int:
    """Estimate tokens for text as ceil(len / 4)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def available_budget(budget: TokenBudget) -> int:
    """Return the tokens left for prompt content after the output reservation."""
    return max(0, budget.max_context_tokens - budget.reserved_output_tokens)


def _default_key(item: Any) -> str:
    if isinstance(item, str):
        return item
    content = getattr(item, "content", None)
    if content is None and isinstance(item, dict):
        content = item.get("content")
    return content or ""


def prune_by_budget(
    items: Iterable[T],
    budget: int,
    key: Optional[Callable[[T], str]] = None,
) -> list[T]:
    """Keep a prefix of items whose estimated tokens fit in the budget.

    Iteration stops at the first item that would overflow, later items are
    never considered even if they would fit. The result is order preserving
    and pruning an already pruned list with the same budget is a no-op.

    Args:
        items: Items in priority order
        budget: Maximum total estimated tokens
        key: Extracts the text of an item (defaults to ``item.content``)

    Returns:
        The kept prefix
    """
    key = key or _default_key
    total = 0
    kept: list[T] = []
    for item in items:
        tokens = estimate_tokens(key(item))
        if total + tokens > budget:
            break
        kept.append(item)
        total += tokens
    return kept


def total_tokens(items: Iterable[T], key: Optional[Callable[[T], str]] = None) -> int:
    key = key or _default_key
    return sum(estimate_tokens(key(item)) for item in items)


def truncate_text(text: str, budget: int) -> str:
    """Truncate text to fit the token budget at a natural boundary.

    The text is cut at ``budget * 4`` characters, then moved back to the last
    paragraph break, sentence end or word boundary found late enough in the
    slice (newline or sentence past 80%, word past 90%), in that order of
    preference. A marker is appended whenever anything was cut. Slicing works
    on code points so multi-byte characters are never split.
    """
    if estimate_tokens(text) <= budget:
        return text

    char_limit = max(0, budget) * CHARS_PER_TOKEN
    truncated = text[:char_limit]

    last_newline = truncated.rfind("\n")
    last_period = truncated.rfind(". ")
    last_space = truncated.rfind(" ")

    if last_newline > char_limit * 0.8:
        break_point = last_newline
    elif last_period > char_limit * 0.8:
        break_point = last_period + 1
    elif last_space > char_limit * 0.9:
        break_point = last_space
    else:
        break_point = -1

    if break_point > 0:
        truncated = truncated[:break_point]
    return truncated + TRUNCATION_MARKER


__all__ = [
    "AGGREGATOR_FINDINGS_FRACTION",
    "CHARS_PER_TOKEN",
    "TRUNCATION_MARKER",
    "TokenBudget",
    "WORKER_CONTEXT_FRACTION",
    "available_budget",
    "estimate_tokens",
    "prune_by_budget",
    "total_tokens",
    "truncate_text",
]
