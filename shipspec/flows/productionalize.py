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

"""Productionalize sessions: production-readiness report plus task prompts."""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Optional

from shipspec.config.secrets import TAVILY_API_KEY, SecretsStore
from shipspec.config.settings import SAST_TOOLS, ShipSpecSettings
from shipspec.core.errors import ShipSpecRuntimeError, ShipSpecUsageError
from shipspec.flows.shared import (
    Event,
    GraphRun,
    check_cloud_consent,
    complete_event,
    create_code_search,
    load_settings,
    open_checkpointer,
    raise_for_result,
    status_event,
)
from shipspec.framework.graph import CompiledGraph, GraphExecutionResult
from shipspec.models.llm import ChatModel, create_chat_model
from shipspec.tools.retriever import RetrieverTool
from shipspec.tools.sast_scanner import SASTScanner
from shipspec.tools.web_search import WebSearchTool
from shipspec.utils.files import UNTRUSTED_BANNER, write_text_atomic
from shipspec.utils.redaction import redact_text, sanitize_error
from shipspec.workflows.productionalize import DEFAULT_USER_QUERY, create_productionalize_graph

logger = logging.getLogger(__name__)

SAFE_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,64}$")
TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
OUTPUT_PREFIXES = ("report-", "task-prompts-")


def validate_session_id(session_id: str) -> None:
    if not SAFE_SESSION_ID_PATTERN.match(session_id):
        raise ShipSpecUsageError(
            "Invalid session ID. Must be 1-64 characters and contain only alphanumeric, "
            "'.', '_', or '-'."
        )


def parse_categories(categories: Optional[str]) -> list[str]:
    if not categories:
        return []
    return [c.strip() for c in categories.split(",") if c.strip()]


def prune_outputs(outputs_dir: Path, limit: int) -> list[Path]:
    """Keep the newest ``limit`` reports and prompt files; return what was deleted."""
    if limit < 1:
        logger.warning(f"Invalid keep-outputs limit ({limit}), skipping pruning")
        return []
    removed = []
    for prefix in OUTPUT_PREFIXES:
        files = sorted(outputs_dir.glob(f"{prefix}*.md"), reverse=True)
        for path in files[limit:]:
            try:
                path.unlink()
                removed.append(path)
            except OSError as e:
                logger.warning(f"Failed to prune {path.name}: {sanitize_error(e)}")
    return removed


def write_outputs(
    settings: ShipSpecSettings, report: str, task_prompts: str, now: Optional[datetime] = None
) -> dict[str, Path]:
    """Write the timestamped report and prompts plus the ``latest-*`` copies."""
    timestamp = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
    redacted_report = UNTRUSTED_BANNER + redact_text(report)
    redacted_prompts = UNTRUSTED_BANNER + redact_text(task_prompts)

    paths = {
        "report": settings.outputs_dir / f"report-{timestamp}.md",
        "taskPrompts": settings.outputs_dir / f"task-prompts-{timestamp}.md",
        "latestReport": settings.state_dir / "latest-report.md",
        "latestTaskPrompts": settings.state_dir / "latest-task-prompts.md",
    }
    write_text_atomic(paths["report"], redacted_report)
    write_text_atomic(paths["taskPrompts"], redacted_prompts)
    write_text_atomic(paths["latestReport"], redacted_report)
    write_text_atomic(paths["latestTaskPrompts"], redacted_prompts)
    prune_outputs(settings.outputs_dir, settings.keep_outputs)
    return paths


class ProductionalizeSession:
    """A production-readiness analysis bound to a compiled graph."""

    def __init__(
        self,
        session_id: str,
        graph: CompiledGraph,
        settings: ShipSpecSettings,
        *,
        user_query: str = DEFAULT_USER_QUERY,
        interactive: bool = True,
        no_save: bool = False,
    ):
        self.session_id = session_id
        self.graph = graph
        self.settings = settings
        self.user_query = user_query
        self.interactive = interactive
        self.no_save = no_save

    @classmethod
    async def create(
        cls,
        *,
        context: Optional[str] = None,
        session_id: Optional[str] = None,
        reindex: bool = False,
        enable_scans: bool = False,
        categories: Optional[str] = None,
        cloud_ok: bool = False,
        local_only: bool = False,
        no_save: bool = False,
        interactive: bool = True,
        project_root: Optional[Path] = None,
        settings: Optional[ShipSpecSettings] = None,
        model: Optional[ChatModel] = None,
        secrets: Optional[SecretsStore] = None,
    ) -> "ProductionalizeSession":
        settings = settings or load_settings(project_root)
        secrets = secrets or SecretsStore(settings.project_root)

        if session_id is not None:
            validate_session_id(session_id)
        resolved_id = session_id or str(uuid.uuid4())

        tavily_key = None
        if settings.web_search_provider != "duckduckgo":
            tavily_key = secrets.get(TAVILY_API_KEY)
        check_cloud_consent(
            settings,
            command="productionalize",
            cloud_ok=cloud_ok,
            local_only=local_only,
            cloud_search=bool(tavily_key),
        )
        model = model or create_chat_model(settings, secrets)

        sast_enabled = settings.sast_enabled or enable_scans
        scanner = None
        if sast_enabled:
            scanner = SASTScanner(
                settings.project_root,
                tools=list(settings.sast_tools or SAST_TOOLS),
                timeout=settings.sast_timeout_seconds,
            )

        search = await create_code_search(settings, reindex=reindex)
        graph = create_productionalize_graph(
            model,
            RetrieverTool(search),
            WebSearchTool(
                api_key=tavily_key,
                provider=settings.web_search_provider,
                timeout=settings.web_search_timeout_seconds,
            ),
            settings.project_root,
            scanner=scanner,
            sast_enabled=sast_enabled,
            budget=settings.token_budget,
            categories=parse_categories(categories),
            redact_for_cloud=settings.is_cloud_llm,
            checkpointer=open_checkpointer(settings),
        )
        return cls(
            resolved_id,
            graph,
            settings,
            user_query=context or DEFAULT_USER_QUERY,
            interactive=interactive,
            no_save=no_save,
        )

    def _handle_result(self, result: Optional[GraphExecutionResult]) -> Event:
        if result is None:
            raise ShipSpecRuntimeError("Productionalize run ended without a result.")
        raise_for_result(result, "Productionalize")
        if result.interrupt is not None:
            return {"type": "interrupt", "payload": result.interrupt.payload}

        state = result.state
        report = state.get("finalReport") or ""
        task_prompts = state.get("taskPrompts") or ""
        if not self.no_save:
            paths = write_outputs(self.settings, report, task_prompts)
            logger.info(f"Report saved to {paths['report']}")
        return complete_event(
            {
                "sessionId": self.session_id,
                "finalReport": report,
                "taskPrompts": task_prompts,
                "sastSkipped": state.get("sastSkipped") or [],
            }
        )

    async def start(self) -> AsyncIterator[Event]:
        yield status_event("Starting production-readiness analysis...")
        run = GraphRun(
            lambda sink: self.graph.invoke(
                {"userQuery": self.user_query, "interactiveMode": self.interactive},
                thread_id=self.session_id,
                event_sink=sink,
            )
        )
        async for event in run.events():
            yield event
        yield self._handle_result(run.result)

    async def resume(self, response: Any) -> AsyncIterator[Event]:
        run = GraphRun(
            lambda sink: self.graph.resume(self.session_id, response, event_sink=sink)
        )
        async for event in run.events():
            yield event
        yield self._handle_result(run.result)


__all__ = [
    "ProductionalizeSession",
    "parse_categories",
    "prune_outputs",
    "validate_session_id",
    "write_outputs",
]
