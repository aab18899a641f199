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

"""Spec workflow: planner -> worker per subtask (parallel) -> aggregator.

The planner decomposes the request into subtasks; the fan-out edge launches
one worker instance per subtask, or goes straight to the aggregator when the
plan is empty. Workers write back through the ``subtasks`` upsert-by-id
channel so concurrent completions never clobber each other.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from shipspec.framework.graph import (
    END,
    CheckpointerProtocol,
    CompiledGraph,
    NodeContext,
    Send,
    StateGraph,
)
from shipspec.framework.state import Channel, StateSchema, append, concat_list, upsert_by_id
from shipspec.models.llm import ChatModel, system_message, user_message
from shipspec.tools.retriever import DEFAULT_K, RetrieverTool
from shipspec.utils.tokens import (
    AGGREGATOR_FINDINGS_FRACTION,
    WORKER_CONTEXT_FRACTION,
    TokenBudget,
    available_budget,
    prune_by_budget,
    truncate_text,
)
from shipspec.workflows.prompts import (
    SPEC_AGGREGATOR_TEMPLATE,
    SPEC_PLANNER_TEMPLATE,
    SPEC_WORKER_TEMPLATE,
    build_spec_findings,
)
from shipspec.workflows.schemas import SpecPlan, SpecWorkerOutput

logger = logging.getLogger(__name__)


def spec_state_schema() -> StateSchema:
    return StateSchema(
        Channel("userQuery", default=str),
        Channel("subtasks", upsert_by_id, default=list),
        Channel("messages", append, default=list),
        Channel("context", concat_list, default=list),
        Channel("finalSpec"),
    )


def prune_retrieved_context(tool_result: str, budget: Optional[TokenBudget]) -> tuple[str, list[Any]]:
    """Prune a retriever JSON result to the worker share of the budget.

    Returns the context string for the prompt and the kept fragments. A
    result that is not a JSON list is passed through unchanged.
    """
    try:
        chunks = json.loads(tool_result)
    except json.JSONDecodeError:
        return tool_result, []
    if not isinstance(chunks, list):
        return tool_result, []
    if budget is not None:
        chunks = prune_by_budget(chunks, int(available_budget(budget) * WORKER_CONTEXT_FRACTION))
    return json.dumps(chunks, indent=2), chunks


def create_planner_node(model: ChatModel):
    async def planner(state: dict[str, Any]) -> dict[str, Any]:
        plan = await model.invoke_structured(
            [
                system_message(SPEC_PLANNER_TEMPLATE),
                user_message(f"User Query: {state['userQuery']}"),
            ],
            SpecPlan,
        )
        logger.info(f"Planner produced {len(plan.subtasks)} subtask(s)")
        return {
            "subtasks": [
                {"id": s.id, "query": s.query, "status": "pending"} for s in plan.subtasks
            ],
            "messages": [{"role": "planner", "content": plan.reasoning}] if plan.reasoning else [],
        }

    return planner


def create_worker_node(
    model: ChatModel, retriever: RetrieverTool, budget: Optional[TokenBudget] = None
):
    async def worker(state: dict[str, Any], ctx: NodeContext) -> dict[str, Any]:
        subtask = ctx.send_arg["subtask"]
        tool_result = await retriever(subtask["query"], k=DEFAULT_K)
        context, chunks = prune_retrieved_context(tool_result, budget)

        output = await model.invoke_structured(
            [
                system_message(SPEC_WORKER_TEMPLATE),
                user_message(f'Query: "{subtask["query"]}"\n\nCode Context:\n{context}'),
            ],
            SpecWorkerOutput,
        )
        await ctx.emit("subtask_complete", {"id": subtask["id"]})
        return {
            "subtasks": [{**subtask, "status": "complete", "result": output.summary}],
            "context": chunks,
        }

    return worker


def create_aggregator_node(model: ChatModel, budget: Optional[TokenBudget] = None):
    async def aggregator(state: dict[str, Any]) -> dict[str, Any]:
        findings = build_spec_findings(state["subtasks"])
        if budget is not None:
            findings = truncate_text(
                findings, int(available_budget(budget) * AGGREGATOR_FINDINGS_FRACTION)
            )
        final_spec = await model.invoke(
            [
                system_message(SPEC_AGGREGATOR_TEMPLATE),
                user_message(f"Original Request: {state['userQuery']}\n\nFindings:\n{findings}"),
            ]
        )
        return {
            "finalSpec": final_spec,
            "messages": [{"role": "aggregator", "content": final_spec}],
        }

    return aggregator


def route_subtasks(state: dict[str, Any]) -> list[Send]:
    return [Send("worker", {"subtask": s}) for s in state.get("subtasks") or []]


def create_spec_graph(
    model: ChatModel,
    retriever: RetrieverTool,
    budget: Optional[TokenBudget] = None,
    checkpointer: Optional[CheckpointerProtocol] = None,
) -> CompiledGraph:
    """Build the compiled spec workflow."""
    graph = StateGraph(spec_state_schema())
    graph.add_node("planner", create_planner_node(model), writes=("subtasks", "messages"))
    graph.add_node(
        "worker", create_worker_node(model, retriever, budget), writes=("subtasks", "context")
    )
    graph.add_node(
        "aggregator", create_aggregator_node(model, budget), writes=("finalSpec", "messages")
    )
    graph.set_entry_point("planner")
    graph.add_fan_out("planner", route_subtasks, "worker", fallback="aggregator")
    graph.add_edge("worker", "aggregator")
    graph.add_edge("aggregator", END)
    return graph.compile(checkpointer=checkpointer)


__all__ = [
    "create_aggregator_node",
    "create_planner_node",
    "create_spec_graph",
    "create_worker_node",
    "prune_retrieved_context",
    "route_subtasks",
    "spec_state_schema",
]
