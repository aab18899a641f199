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

"""Web search for security standards, compliance requirements and best practices.

Tavily is used when an API key is available and the provider is not forced
to DuckDuckGo. Any Tavily failure falls back to the DuckDuckGo HTML endpoint.
The tool never raises for network failures; it returns a
"Web search failed: ..." string the prompt can carry instead.
"""

from __future__ import annotations

import html
import json
import logging
import re
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

TAVILY_SEARCH_URL = "https://api.tavily.com/search"
DUCKDUCKGO_HTML_URL = "https://html.duckduckgo.com/html/"
DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_RESULTS = 5

_RESULT_LINK = re.compile(
    r'<a[^>]+class="result__a"[^>]+href="(?P<url>[^"]+)"[^>]*>(?P<title>.*?)</a>', re.S
)
_RESULT_SNIPPET = re.compile(r'<a[^>]+class="result__snippet"[^>]*>(?P<snippet>.*?)</a>', re.S)
_TAGS = re.compile(r"<[^>]+>")


def _clean(fragment: str) -> str:
    return html.unescape(_TAGS.sub("", fragment)).strip()


def parse_duckduckgo_html(body: str, limit: int) -> list[dict[str, str]]:
    """Extract ``{title, url, content}`` records from a DuckDuckGo HTML page."""
    links = list(_RESULT_LINK.finditer(body))
    snippets = list(_RESULT_SNIPPET.finditer(body))
    results: list[dict[str, str]] = []
    for index, link in enumerate(links[:limit]):
        snippet = snippets[index].group("snippet") if index < len(snippets) else ""
        results.append(
            {
                "title": _clean(link.group("title")),
                "url": html.unescape(link.group("url")),
                "content": _clean(snippet),
            }
        )
    return results


class WebSearchTool:
    """Search the web, preferring Tavily and falling back to DuckDuckGo."""

    name = "web_search"

    def __init__(
        self,
        api_key: Optional[str] = None,
        provider: str = "tavily",
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.provider = provider
        self.timeout = timeout
        self._client = client

    async def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        if self._client is not None:
            response = await self._client.post(url, **kwargs)
        else:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                response = await client.post(url, **kwargs)
        response.raise_for_status()
        return response

    async def _tavily(self, query: str, max_results: int) -> str:
        response = await self._post(
            TAVILY_SEARCH_URL,
            json={"api_key": self.api_key, "query": query, "max_results": max_results},
        )
        data = response.json()
        return json.dumps(
            [
                {"title": r.get("title", ""), "url": r.get("url", ""), "content": r.get("content", "")}
                for r in data.get("results", [])[:max_results]
            ]
        )

    async def _duckduckgo(self, query: str, max_results: int) -> str:
        response = await self._post(
            DUCKDUCKGO_HTML_URL,
            data={"q": query, "kp": "1"},
            headers={"User-Agent": "Mozilla/5.0 (compatible; shipspec)"},
        )
        return json.dumps(parse_duckduckgo_html(response.text, max_results))

    async def __call__(self, query: str, max_results: int = DEFAULT_MAX_RESULTS) -> str:
        if self.api_key and self.provider != "duckduckgo":
            try:
                return await self._tavily(query, max_results)
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"Tavily search failed, falling back to DuckDuckGo: {e}")

        try:
            return await self._duckduckgo(query, max_results)
        except httpx.HTTPError as e:
            return f"Web search failed: {e}"


__all__ = ["WebSearchTool", "parse_duckduckgo_html"]
