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

"""Pieces shared by the ask, planning and productionalize flows.

Flows are async generators of wire events (plain dicts with a ``type`` key).
They raise ``ShipSpecUsageError`` / ``ShipSpecRuntimeError``; the transport
turns those into ``error`` events.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from shipspec.config.settings import ShipSpecSettings
from shipspec.core.errors import (
    ResumeResponseError,
    ShipSpecError,
    ShipSpecRuntimeError,
    ShipSpecUsageError,
)
from shipspec.framework.checkpointer import create_checkpointer
from shipspec.framework.errors import GraphError, InvalidResumeResponse
from shipspec.framework.graph import CheckpointerProtocol, EventSink, GraphExecutionResult
from shipspec.retrieval.search import LexicalCodeSearch
from shipspec.utils.files import read_json, write_json_atomic
from shipspec.utils.redaction import sanitize_error

logger = logging.getLogger(__name__)

CONSENT_FILE = "consent.json"
CONSENT_VERSION = 1

Event = dict[str, Any]


def status_event(message: str) -> Event:
    return {"type": "status", "message": message}


def progress_event(stage: str, percent: Optional[float] = None) -> Event:
    event: Event = {"type": "progress", "stage": stage}
    if percent is not None:
        event["percent"] = percent
    return event


def complete_event(result: Any) -> Event:
    return {"type": "complete", "result": result}


# =============================================================================
# Settings and consent
# =============================================================================


def load_settings(
    project_root: Optional[Path] = None, cli_args: Optional[dict[str, Any]] = None
) -> ShipSpecSettings:
    try:
        return ShipSpecSettings.from_sources(cli_args=cli_args, project_root=project_root)
    except ValueError as e:
        raise ShipSpecUsageError(f"Invalid configuration: {sanitize_error(e)}") from e


def has_saved_consent(settings: ShipSpecSettings) -> bool:
    path = settings.state_dir / CONSENT_FILE
    try:
        data = read_json(path)
    except (OSError, json.JSONDecodeError) as e:
        logger.debug(f"Ignoring unreadable consent file {path}: {e}")
        return False
    return isinstance(data, dict) and data.get("cloudOk") is True


def check_cloud_consent(
    settings: ShipSpecSettings,
    *,
    command: str,
    cloud_ok: bool = False,
    local_only: bool = False,
    cloud_search: bool = False,
) -> None:
    """Enforce the data-sharing rules for cloud providers.

    Raises:
        ShipSpecUsageError: On ``local_only`` with a cloud dependency, or a
            cloud dependency without saved or supplied consent
    """
    cloud_deps = []
    if settings.is_cloud_llm:
        cloud_deps.append(f"LLM ({settings.llm_provider})")
    if cloud_search:
        cloud_deps.append("Web Search (Tavily)")

    if local_only and cloud_deps:
        raise ShipSpecUsageError(
            f"--local-only provided but cloud-based services are configured: {', '.join(cloud_deps)}. "
            "Please use local-only providers (e.g., Ollama) or remove --local-only."
        )

    saved = has_saved_consent(settings)
    if cloud_deps and not cloud_ok and not saved:
        raise ShipSpecUsageError(
            f"Data sharing consent required. Run `shipspec {command} --cloud-ok` to persist consent."
        )

    if cloud_ok and not saved:
        try:
            write_json_atomic(
                settings.state_dir / CONSENT_FILE,
                {
                    "cloudOk": True,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "version": CONSENT_VERSION,
                },
            )
            logger.info("Cloud data sharing consent saved to .ship-spec/consent.json")
        except OSError as e:
            logger.warning(f"Failed to save consent: {sanitize_error(e)}")


# =============================================================================
# Collaborators
# =============================================================================


async def create_code_search(settings: ShipSpecSettings, reindex: bool = False) -> LexicalCodeSearch:
    search = LexicalCodeSearch(settings.project_root, exclude_dirs={settings.state_dir.name})
    try:
        if reindex:
            await search.reindex()
        else:
            await search.ensure_index()
    except OSError as e:
        raise ShipSpecRuntimeError("Indexing failed", cause=e) from e
    return search


def open_checkpointer(settings: ShipSpecSettings) -> CheckpointerProtocol:
    try:
        return create_checkpointer(settings.checkpoint_type, settings.resolved_checkpoint_path())
    except (OSError, ValueError) as e:
        raise ShipSpecRuntimeError("Failed to initialize checkpointer", cause=e) from e


def raise_for_result(result: GraphExecutionResult, workflow: str) -> None:
    """Turn a failed run into the error the transport reports."""
    if result.success:
        return
    if isinstance(result.exception, ShipSpecError):
        raise result.exception
    cause = result.exception or RuntimeError(result.error or "unknown error")
    raise ShipSpecRuntimeError(f"{workflow} workflow failed", cause=cause)


# =============================================================================
# Streaming a graph run
# =============================================================================


def engine_event_to_wire(kind: str, data: dict[str, Any]) -> Optional[Event]:
    """Map an engine notification to a wire event, or None to drop it."""
    if kind == "node_start":
        return progress_event(data["node"])
    if kind == "fanout_start":
        return status_event(f"Running {data['count']} subtask(s) in parallel...")
    if kind == "subtask_complete":
        return progress_event(f"{data['node']}:{data['id']}")
    return None


class GraphRun:
    """Run one graph call in a task and stream its engine events.

    Iterate ``events()`` to receive progress events while the run is in
    flight; ``result`` is set once iteration finishes. Closing the iterator
    early cancels the run. Engine errors raised before the run starts
    (busy thread, no pending interrupt, wrong resume shape) surface as
    ``ShipSpecUsageError``.
    """

    def __init__(self, call: Callable[[EventSink], Awaitable[GraphExecutionResult]]):
        self._call = call
        self._queue: asyncio.Queue[Event] = asyncio.Queue()
        self.result: Optional[GraphExecutionResult] = None

    async def _sink(self, kind: str, data: dict[str, Any]) -> None:
        event = engine_event_to_wire(kind, data)
        if event is not None:
            await self._queue.put(event)

    async def events(self) -> AsyncIterator[Event]:
        task = asyncio.create_task(self._call(self._sink))
        try:
            while not task.done():
                getter = asyncio.ensure_future(self._queue.get())
                await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                if getter.done():
                    yield getter.result()
                else:
                    getter.cancel()
            while not self._queue.empty():
                yield self._queue.get_nowait()
            try:
                self.result = task.result()
            except InvalidResumeResponse as e:
                raise ResumeResponseError(str(e), e.expected, e.received) from e
            except GraphError as e:
                raise ShipSpecUsageError(str(e)) from e
        finally:
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)


__all__ = [
    "CONSENT_FILE",
    "GraphRun",
    "check_cloud_consent",
    "complete_event",
    "create_code_search",
    "engine_event_to_wire",
    "has_saved_consent",
    "load_settings",
    "open_checkpointer",
    "progress_event",
    "raise_for_result",
    "status_event",
]
