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

"""Retrieval tool: code search results as a JSON string for prompts."""

from __future__ import annotations

import json

from shipspec.retrieval.search import CodeChunk, CodeSearchProtocol

DEFAULT_K = 10


def format_chunks(chunks: list[CodeChunk]) -> str:
    return json.dumps(
        [
            {
                "filepath": c.filepath,
                "content": c.content,
                "type": c.type,
                "symbolName": c.symbol_name,
                "lines": f"{c.start_line}-{c.end_line}",
            }
            for c in chunks
        ]
    )


class RetrieverTool:
    """Search the codebase for code chunks relevant to a query."""

    name = "retrieve_code"

    def __init__(self, search: CodeSearchProtocol):
        self.search = search

    async def __call__(self, query: str, k: int = DEFAULT_K) -> str:
        chunks = await self.search.hybrid_search(query, k)
        return format_chunks(chunks)


__all__ = ["DEFAULT_K", "RetrieverTool", "format_chunks"]
