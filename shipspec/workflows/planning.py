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

"""Planning workflow: gather context, clarify, draft and review PRD and tech spec, emit task prompts.

Every human checkpoint uses a two-phase node. The first entry generates the
artifact and stores it in a ``pending*`` channel; the next entry finds the
pending value, interrupts for review, and consumes the response. Generation
and review therefore run in separate steps, so a resume never re-calls the
model for an artifact the user has already seen.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

from shipspec.analysis.project_signals import gather_project_signals
from shipspec.framework.graph import (
    END,
    EXPECT_MAPPING,
    EXPECT_TEXT,
    CheckpointerProtocol,
    CompiledGraph,
    NodeContext,
    StateGraph,
)
from shipspec.framework.state import Channel, StateSchema, append
from shipspec.models.llm import ChatModel, system_message, user_message
from shipspec.retrieval.search import CodeSearchProtocol
from shipspec.workflows.prompts import (
    CLARIFIER_TEMPLATE,
    PLANNING_TASK_TEMPLATE,
    PRD_TEMPLATE,
    TECH_SPEC_TEMPLATE,
    build_clarifier_prompt,
    build_prd_prompt,
    build_task_prompt,
    build_tech_spec_prompt,
    format_task_prompts,
)
from shipspec.workflows.schemas import ClarificationOutput, PromptsOutput

logger = logging.getLogger(__name__)

PHASES = ("clarifying", "prd_review", "spec_review", "complete")
CONTEXT_SEARCH_K = 15

PRD_REVIEW_INSTRUCTIONS = (
    "Review the PRD. Reply 'approve' to continue or provide feedback for revision."
)
SPEC_REVIEW_INSTRUCTIONS = (
    "Review the technical specification. Reply 'approve' to continue or provide feedback for revision."
)


def planning_state_schema() -> StateSchema:
    return StateSchema(
        Channel("initialIdea", default=str),
        Channel("phase", default=lambda: "clarifying"),
        Channel("signals"),
        Channel("codeContext", default=str),
        Channel("clarificationHistory", append, default=list),
        Channel("clarificationComplete", default=lambda: False),
        Channel("pendingQuestions", default=list),
        Channel("pendingPrd", default=str),
        Channel("pendingTechSpec", default=str),
        Channel("prd", default=str),
        Channel("techSpec", default=str),
        Channel("taskPrompts", default=str),
        Channel("userFeedback", default=str),
        Channel("messages", append, default=list),
    )


def is_approval(response: Any) -> bool:
    return isinstance(response, str) and response.strip().lower() == "approve"


def format_code_blocks(chunks: list[Any]) -> str:
    return "\n\n".join(
        f"### {c.filepath}:{c.start_line}-{c.end_line}\n```{c.language}\n{c.content}\n```"
        for c in chunks
    )


# =============================================================================
# Nodes
# =============================================================================


def create_context_gatherer_node(
    project_root: Path | str, search: Optional[CodeSearchProtocol] = None
):
    async def context_gatherer(state: dict[str, Any]) -> dict[str, Any]:
        update: dict[str, Any] = {}
        try:
            update["signals"] = gather_project_signals(project_root).to_dict()
        except OSError as e:
            logger.warning(f"Failed to gather project signals: {e}")

        if search is not None:
            try:
                chunks = await search.hybrid_search(state["initialIdea"], k=CONTEXT_SEARCH_K)
                update["codeContext"] = format_code_blocks(chunks)
            except (OSError, ValueError) as e:
                logger.warning(f"Code search failed, continuing without context: {e}")
        return update

    return context_gatherer


def create_clarifier_node(model: ChatModel):
    async def clarifier(state: dict[str, Any], ctx: NodeContext) -> dict[str, Any]:
        if state.get("clarificationComplete"):
            return {"phase": "prd_review"}

        pending = state.get("pendingQuestions") or []
        if pending:
            answers = ctx.interrupt(
                {"kind": "clarification", "questions": pending}, expects=EXPECT_MAPPING
            )
            entries = []
            for i, question in enumerate(pending):
                answer = answers.get(str(i), "")
                if isinstance(answer, list):
                    answer = ", ".join(answer)
                entries.append({"question": question, "answer": answer})
            return {"clarificationHistory": entries, "pendingQuestions": []}

        output = await model.invoke_structured(
            [
                system_message(CLARIFIER_TEMPLATE),
                user_message(
                    build_clarifier_prompt(
                        state["initialIdea"],
                        state.get("clarificationHistory") or [],
                        state.get("signals"),
                        state.get("codeContext") or "",
                    )
                ),
            ],
            ClarificationOutput,
        )
        if output.satisfied or not output.follow_up_questions:
            logger.info("Clarification complete")
            return {"clarificationComplete": True, "phase": "prd_review"}
        return {"pendingQuestions": list(output.follow_up_questions)}

    return clarifier


def create_prd_generator_node(model: ChatModel):
    async def prd_generator(state: dict[str, Any], ctx: NodeContext) -> dict[str, Any]:
        pending = state.get("pendingPrd") or ""
        if pending:
            response = ctx.interrupt(
                {
                    "kind": "document_review",
                    "docType": "prd",
                    "content": pending,
                    "instructions": PRD_REVIEW_INSTRUCTIONS,
                },
                expects=EXPECT_TEXT,
            )
            if is_approval(response):
                return {
                    "prd": pending,
                    "pendingPrd": "",
                    "phase": "spec_review",
                    "userFeedback": "",
                }
            return {"prd": pending, "pendingPrd": "", "userFeedback": response}

        feedback = state.get("userFeedback") or ""
        prd = await model.invoke(
            [
                system_message(PRD_TEMPLATE),
                user_message(
                    build_prd_prompt(
                        state["initialIdea"],
                        state.get("clarificationHistory") or [],
                        state.get("signals"),
                        state.get("codeContext") or "",
                        state.get("prd") or "",
                        feedback,
                    )
                ),
            ]
        )
        return {
            "pendingPrd": prd,
            "userFeedback": "",
            "messages": [{"role": "prdGenerator", "content": "PRD drafted"}],
        }

    return prd_generator


def create_spec_generator_node(model: ChatModel):
    async def spec_generator(state: dict[str, Any], ctx: NodeContext) -> dict[str, Any]:
        pending = state.get("pendingTechSpec") or ""
        if pending:
            response = ctx.interrupt(
                {
                    "kind": "document_review",
                    "docType": "spec",
                    "content": pending,
                    "instructions": SPEC_REVIEW_INSTRUCTIONS,
                },
                expects=EXPECT_TEXT,
            )
            if is_approval(response):
                return {
                    "techSpec": pending,
                    "pendingTechSpec": "",
                    "phase": "complete",
                    "userFeedback": "",
                }
            return {"techSpec": pending, "pendingTechSpec": "", "userFeedback": response}

        feedback = state.get("userFeedback") or ""
        spec = await model.invoke(
            [
                system_message(TECH_SPEC_TEMPLATE),
                user_message(
                    build_tech_spec_prompt(
                        state.get("prd") or "",
                        state.get("signals"),
                        state.get("codeContext") or "",
                        state.get("techSpec") or "",
                        feedback,
                    )
                ),
            ]
        )
        return {
            "pendingTechSpec": spec,
            "userFeedback": "",
            "messages": [{"role": "specGenerator", "content": "Tech spec drafted"}],
        }

    return spec_generator


def create_task_generator_node(model: ChatModel):
    async def task_generator(state: dict[str, Any]) -> dict[str, Any]:
        output = await model.invoke_structured(
            [
                system_message(PLANNING_TASK_TEMPLATE),
                user_message(build_task_prompt(state.get("techSpec") or "", state.get("signals"))),
            ],
            PromptsOutput,
        )
        logger.info(f"Generated {len(output.prompts)} task prompt(s)")
        return {
            "taskPrompts": format_task_prompts(p.model_dump() for p in output.prompts),
            "phase": "complete",
        }

    return task_generator


# =============================================================================
# Routers
# =============================================================================


def route_after_clarifier(state: dict[str, Any]) -> str:
    return "prdGenerator" if state.get("clarificationComplete") else "clarifier"


def route_after_prd(state: dict[str, Any]) -> str:
    return "specGenerator" if state.get("phase") == "spec_review" else "prdGenerator"


def route_after_spec(state: dict[str, Any]) -> str:
    return "taskGenerator" if state.get("phase") == "complete" else "specGenerator"


def create_planning_graph(
    model: ChatModel,
    project_root: Path | str,
    search: Optional[CodeSearchProtocol] = None,
    checkpointer: Optional[CheckpointerProtocol] = None,
) -> CompiledGraph:
    """Build the compiled planning workflow.

    Args:
        model: Chat model for every generation step
        project_root: Directory scanned for project signals
        search: Optional code search used to seed the code context
        checkpointer: Persistence for interrupts across processes
    """
    graph = StateGraph(planning_state_schema())
    graph.add_node(
        "contextGatherer",
        create_context_gatherer_node(project_root, search),
        writes=("signals", "codeContext"),
    )
    graph.add_node(
        "clarifier",
        create_clarifier_node(model),
        writes=("clarificationHistory", "clarificationComplete", "pendingQuestions", "phase"),
    )
    graph.add_node(
        "prdGenerator",
        create_prd_generator_node(model),
        writes=("prd", "pendingPrd", "phase", "userFeedback", "messages"),
    )
    graph.add_node(
        "specGenerator",
        create_spec_generator_node(model),
        writes=("techSpec", "pendingTechSpec", "phase", "userFeedback", "messages"),
    )
    graph.add_node(
        "taskGenerator", create_task_generator_node(model), writes=("taskPrompts", "phase")
    )

    graph.set_entry_point("contextGatherer")
    graph.add_edge("contextGatherer", "clarifier")
    graph.add_conditional_edge("clarifier", route_after_clarifier, ["clarifier", "prdGenerator"])
    graph.add_conditional_edge("prdGenerator", route_after_prd, ["prdGenerator", "specGenerator"])
    graph.add_conditional_edge(
        "specGenerator", route_after_spec, ["specGenerator", "taskGenerator"]
    )
    graph.add_edge("taskGenerator", END)
    return graph.compile(checkpointer=checkpointer)


__all__ = [
    "PHASES",
    "create_clarifier_node",
    "create_context_gatherer_node",
    "create_planning_graph",
    "create_prd_generator_node",
    "create_spec_generator_node",
    "create_task_generator_node",
    "format_code_blocks",
    "is_approval",
    "planning_state_schema",
    "route_after_clarifier",
    "route_after_prd",
    "route_after_spec",
]
