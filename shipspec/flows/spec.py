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

"""Spec flow: decompose a request, analyze each part in parallel, synthesize one document."""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import AsyncIterator, Optional

from shipspec.core.errors import ShipSpecRuntimeError
from shipspec.flows.shared import (
    Event,
    GraphRun,
    check_cloud_consent,
    complete_event,
    create_code_search,
    load_settings,
    raise_for_result,
    status_event,
)
from shipspec.models.llm import ChatModel, create_chat_model
from shipspec.tools.retriever import RetrieverTool
from shipspec.workflows.spec import create_spec_graph

logger = logging.getLogger(__name__)


async def spec_flow(
    query: str,
    *,
    reindex: bool = False,
    cloud_ok: bool = False,
    local_only: bool = False,
    project_root: Optional[Path] = None,
    model: Optional[ChatModel] = None,
) -> AsyncIterator[Event]:
    settings = load_settings(project_root)
    check_cloud_consent(settings, command="spec", cloud_ok=cloud_ok, local_only=local_only)
    model = model or create_chat_model(settings)
    search = await create_code_search(settings, reindex=reindex)
    graph = create_spec_graph(model, RetrieverTool(search), budget=settings.token_budget)

    yield status_event("Planning analysis...")
    run = GraphRun(
        lambda sink: graph.invoke({"userQuery": query}, thread_id=uuid.uuid4().hex, event_sink=sink)
    )
    async for event in run.events():
        yield event
    if run.result is None:
        raise ShipSpecRuntimeError("Spec run ended without a result.")
    raise_for_result(run.result, "Spec")

    state = run.result.state
    logger.info(f"Spec generated from {len(state.get('subtasks') or [])} subtask(s)")
    yield complete_event(
        {
            "finalSpec": state.get("finalSpec") or "",
            "subtasks": state.get("subtasks") or [],
        }
    )


__all__ = ["spec_flow"]
