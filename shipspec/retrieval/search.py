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

"""Code search over the project tree.

The retrieval contract is ``hybrid_search(query, k)`` returning relevance
ranked ``CodeChunk`` records. ``LexicalCodeSearch`` implements it without an
embedding service: files are split at top-level definitions (or fixed line
windows when no definitions are found) and ranked with a BM25 score over
identifier-aware terms, with a bonus for symbol and path matches.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import os
import re
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

SKIP_DIRS = frozenset(
    {
        ".git",
        ".hg",
        ".svn",
        ".ship-spec",
        ".venv",
        "venv",
        "env",
        "__pycache__",
        ".mypy_cache",
        ".pytest_cache",
        ".tox",
        "node_modules",
        "dist",
        "build",
        "target",
        "vendor",
        "coverage",
    }
)

EXTENSION_LANGUAGES: dict[str, str] = {
    ".py": "python",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".kt": "kotlin",
    ".rb": "ruby",
    ".php": "php",
    ".cs": "csharp",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".md": "markdown",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
    ".json": "json",
    ".sql": "sql",
    ".sh": "shell",
    ".tf": "terraform",
}

# Top-level definition patterns per language: (regex, chunk type).
DEFINITION_PATTERNS: dict[str, list[tuple[re.Pattern[str], str]]] = {
    "python": [
        (re.compile(r"^(?:async\s+)?def\s+([A-Za-z_]\w*)"), "function"),
        (re.compile(r"^class\s+([A-Za-z_]\w*)"), "class"),
    ],
    "typescript": [
        (re.compile(r"^(?:export\s+)?(?:default\s+)?(?:async\s+)?function\s+([A-Za-z_$][\w$]*)"), "function"),
        (re.compile(r"^(?:export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+([A-Za-z_$][\w$]*)"), "class"),
        (re.compile(r"^(?:export\s+)?interface\s+([A-Za-z_$][\w$]*)"), "interface"),
        (re.compile(r"^(?:export\s+)?const\s+([A-Za-z_$][\w$]*)\s*=\s*(?:async\s*)?\("), "function"),
    ],
    "go": [
        (re.compile(r"^func\s+(?:\([^)]*\)\s*)?([A-Za-z_]\w*)"), "function"),
        (re.compile(r"^type\s+([A-Za-z_]\w*)\s+(?:struct|interface)"), "class"),
    ],
    "rust": [
        (re.compile(r"^(?:pub(?:\([^)]*\))?\s+)?(?:async\s+)?fn\s+([A-Za-z_]\w*)"), "function"),
        (re.compile(r"^(?:pub(?:\([^)]*\))?\s+)?(?:struct|enum|trait)\s+([A-Za-z_]\w*)"), "class"),
        (re.compile(r"^impl(?:<[^>]*>)?\s+(?:[\w:]+\s+for\s+)?([A-Za-z_]\w*)"), "impl"),
    ],
}
DEFINITION_PATTERNS["javascript"] = DEFINITION_PATTERNS["typescript"]

TERM_PATTERN = re.compile(r"[A-Za-z][A-Za-z0-9]*|\d+")
CAMEL_PATTERN = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|\d+")

BM25_K1 = 1.2
BM25_B = 0.75


@dataclass
class CodeChunk:
    """A retrievable fragment of a source file.

    Attributes:
        id: Stable identifier derived from path and line range
        filepath: Path relative to the project root
        content: Fragment text
        start_line: First line (1-based)
        end_line: Last line (inclusive)
        language: Language inferred from the file extension
        type: function, class, interface, impl, module or window
        symbol_name: Defined symbol, when the fragment starts at a definition
    """

    id: str
    filepath: str
    content: str
    start_line: int
    end_line: int
    language: str
    type: str
    symbol_name: Optional[str] = None
    terms: Counter[str] = field(default_factory=Counter, repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "filepath": self.filepath,
            "content": self.content,
            "startLine": self.start_line,
            "endLine": self.end_line,
            "language": self.language,
            "type": self.type,
            "symbolName": self.symbol_name,
        }


@runtime_checkable
class CodeSearchProtocol(Protocol):
    """Retrieval collaborator used by the ask flow and workflow workers."""

    async def hybrid_search(self, query: str, k: int = 10) -> list[CodeChunk]:
        ...


def tokenize(text: str) -> list[str]:
    """Split text into lowercase terms, expanding camelCase and snake_case."""
    terms: list[str] = []
    for word in TERM_PATTERN.findall(text):
        lowered = word.lower()
        terms.append(lowered)
        parts = CAMEL_PATTERN.findall(word)
        if len(parts) > 1:
            terms.extend(p.lower() for p in parts)
    return [t for t in terms if len(t) > 1]


def _chunk_id(filepath: str, start: int, end: int) -> str:
    return hashlib.sha1(f"{filepath}:{start}-{end}".encode()).hexdigest()[:16]


def chunk_file(
    filepath: str, text: str, language: str, window_lines: int = 60
) -> list[CodeChunk]:
    """Split a file into chunks at top-level definitions.

    Lines before the first definition become a ``module`` chunk. Files in
    languages without definition patterns, or with no definitions, are split
    into fixed windows. Definitions longer than ``window_lines * 2`` are
    split further so a single chunk stays within worker budgets.
    """
    lines = text.splitlines()
    if not lines:
        return []

    patterns = DEFINITION_PATTERNS.get(language, [])
    starts: list[tuple[int, str, Optional[str]]] = []
    for index, line in enumerate(lines):
        for pattern, kind in patterns:
            match = pattern.match(line)
            if match:
                starts.append((index, kind, match.group(1)))
                break

    spans: list[tuple[int, int, str, Optional[str]]] = []
    if starts:
        if starts[0][0] > 0:
            spans.append((0, starts[0][0], "module", None))
        for position, (start, kind, name) in enumerate(starts):
            end = starts[position + 1][0] if position + 1 < len(starts) else len(lines)
            spans.append((start, end, kind, name))
    else:
        for start in range(0, len(lines), window_lines):
            spans.append((start, min(start + window_lines, len(lines)), "window", None))

    chunks: list[CodeChunk] = []
    max_span = window_lines * 2
    for start, end, kind, name in spans:
        for piece_start in range(start, end, max_span):
            piece_end = min(piece_start + max_span, end)
            content = "\n".join(lines[piece_start:piece_end]).strip("\n")
            if not content.strip():
                continue
            chunk = CodeChunk(
                id=_chunk_id(filepath, piece_start + 1, piece_end),
                filepath=filepath,
                content=content,
                start_line=piece_start + 1,
                end_line=piece_end,
                language=language,
                type=kind,
                symbol_name=name,
            )
            chunk.terms = Counter(tokenize(content))
            chunks.append(chunk)
    return chunks


class LexicalCodeSearch:
    """BM25 search over chunked project files.

    The index is built lazily on the first search and reused until
    ``reindex()`` is called. Building runs in the default executor so the
    event loop stays responsive on large trees.
    """

    def __init__(
        self,
        project_root: str | Path,
        *,
        max_file_bytes: int = 256_000,
        window_lines: int = 60,
        exclude_dirs: Optional[set[str]] = None,
    ):
        self.project_root = Path(project_root).resolve()
        self.max_file_bytes = max_file_bytes
        self.window_lines = window_lines
        self.skip_dirs = set(SKIP_DIRS) | set(exclude_dirs or ())
        self._chunks: Optional[list[CodeChunk]] = None
        self._doc_freq: Counter[str] = Counter()
        self._avg_len = 0.0
        self._lock = asyncio.Lock()

    @property
    def indexed(self) -> bool:
        return self._chunks is not None

    def _iter_source_files(self) -> list[Path]:
        files: list[Path] = []
        for dirpath, dirnames, filenames in os.walk(self.project_root):
            dirnames[:] = sorted(
                d for d in dirnames if d not in self.skip_dirs and not d.startswith(".")
            )
            for name in sorted(filenames):
                path = Path(dirpath, name)
                if path.suffix.lower() in EXTENSION_LANGUAGES:
                    files.append(path)
        return files

    def _build_index(self) -> list[CodeChunk]:
        chunks: list[CodeChunk] = []
        for path in self._iter_source_files():
            try:
                if path.is_symlink() or path.stat().st_size > self.max_file_bytes:
                    continue
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.debug(f"Skipping {path}: {e}")
                continue
            rel = path.relative_to(self.project_root).as_posix()
            language = EXTENSION_LANGUAGES[path.suffix.lower()]
            chunks.extend(chunk_file(rel, text, language, self.window_lines))

        doc_freq: Counter[str] = Counter()
        for chunk in chunks:
            doc_freq.update(chunk.terms.keys())
        self._doc_freq = doc_freq
        total = sum(sum(c.terms.values()) for c in chunks)
        self._avg_len = total / len(chunks) if chunks else 0.0
        logger.info(f"Indexed {len(chunks)} chunks under {self.project_root}")
        return chunks

    async def reindex(self) -> int:
        """Rebuild the index. Returns the number of chunks."""
        async with self._lock:
            loop = asyncio.get_running_loop()
            self._chunks = await loop.run_in_executor(None, self._build_index)
            return len(self._chunks)

    async def ensure_index(self) -> None:
        if self._chunks is None:
            await self.reindex()

    def _score(self, chunk: CodeChunk, query_terms: list[str]) -> float:
        n = len(self._chunks or ())
        length = sum(chunk.terms.values()) or 1
        score = 0.0
        for term in query_terms:
            tf = chunk.terms.get(term, 0)
            if not tf:
                continue
            df = self._doc_freq.get(term, 0)
            idf = math.log(1 + (n - df + 0.5) / (df + 0.5))
            norm = tf + BM25_K1 * (1 - BM25_B + BM25_B * length / (self._avg_len or 1))
            score += idf * tf * (BM25_K1 + 1) / norm

        path_terms = set(tokenize(chunk.filepath))
        symbol_terms = set(tokenize(chunk.symbol_name or ""))
        for term in set(query_terms):
            if term in symbol_terms:
                score += 1.5
            if term in path_terms:
                score += 0.5
        return score

    async def hybrid_search(self, query: str, k: int = 10) -> list[CodeChunk]:
        await self.ensure_index()
        query_terms = tokenize(query)
        if not query_terms or not self._chunks or k <= 0:
            return []
        scored = [(self._score(c, query_terms), c) for c in self._chunks]
        ranked = sorted((s for s in scored if s[0] > 0), key=lambda s: s[0], reverse=True)
        return [chunk for _, chunk in ranked[:k]]


__all__ = [
    "CodeChunk",
    "CodeSearchProtocol",
    "LexicalCodeSearch",
    "chunk_file",
    "tokenize",
]
