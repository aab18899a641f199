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

"""Productionalize workflow: a production-readiness review of the project.

Topology::

    gatherSignals -> interviewer (loops until complete) -> researcher -> scanner
        -> planner -> worker x N (parallel) -> aggregator <-> reportReviewer
        -> promptGenerator -> END

The interviewer and report reviewer are two-phase interrupt nodes. Workers
run as fan-out instances and merge their findings through upsert-by-id
channels; they never interrupt.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional, Sequence

from shipspec.analysis.project_signals import gather_project_signals
from shipspec.framework.graph import (
    END,
    EXPECT_MAPPING,
    EXPECT_TEXT,
    CheckpointerProtocol,
    CompiledGraph,
    NodeContext,
    Send,
    StateGraph,
)
from shipspec.framework.state import Channel, StateSchema, upsert_by_id
from shipspec.models.llm import ChatModel, system_message, user_message
from shipspec.tools.retriever import DEFAULT_K, RetrieverTool
from shipspec.tools.sast_scanner import SASTScanner
from shipspec.tools.web_search import WebSearchTool
from shipspec.utils.redaction import redact_text
from shipspec.utils.tokens import TokenBudget
from shipspec.workflows.prompts import (
    INTERVIEWER_TEMPLATE,
    PRODUCTIONALIZE_AGGREGATOR_TEMPLATE,
    PRODUCTIONALIZE_PLANNER_TEMPLATE,
    PRODUCTIONALIZE_WORKER_TEMPLATE,
    PROMPT_GENERATOR_TEMPLATE,
    RESEARCHER_TEMPLATE,
    build_interviewer_prompt,
    build_productionalize_plan_prompt,
    build_productionalize_worker_prompt,
    build_prompt_generator_prompt,
    build_report_prompt,
    build_researcher_prompt,
    format_task_prompts,
    research_queries,
)
from shipspec.workflows.schemas import (
    InterviewerOutput,
    ProductionalizePlan,
    ProductionalizeWorkerOutput,
    PromptsOutput,
)
from shipspec.workflows.spec import prune_retrieved_context

logger = logging.getLogger(__name__)

DEFAULT_USER_QUERY = "Perform a full production-readiness analysis of this codebase."
REPORT_REVIEW_INSTRUCTIONS = "Review the report and reply with 'approve' or feedback."
REPORT_APPROVAL_WORDS = frozenset({"", "approve", "approved", "yes", "y", "ok", "lgtm"})
RESEARCH_MAX_RESULTS = 3

EVIDENCE_SOURCES = {
    "code": "Codebase Analysis",
    "web": "Web Research",
    "scan": "SAST Scanners (Semgrep/Gitleaks/Trivy)",
}


def productionalize_state_schema() -> StateSchema:
    return StateSchema(
        Channel("userQuery", default=lambda: DEFAULT_USER_QUERY),
        Channel("interactiveMode", default=lambda: True),
        Channel("signals", default=dict),
        Channel("userContext"),
        Channel("interviewComplete", default=lambda: False),
        Channel("pendingInterviewQuestions", default=list),
        Channel("researchDigest", default=str),
        Channel("sastResults", default=list),
        Channel("sastSkipped", default=list),
        Channel("subtasks", upsert_by_id, default=list),
        Channel("findings", upsert_by_id, default=list),
        Channel("finalReport", default=str),
        Channel("reportNeedsReview", default=lambda: False),
        Channel("reportApproved", default=lambda: False),
        Channel("reportFeedback", default=str),
        Channel("taskPrompts", default=str),
    )


# =============================================================================
# User context
# =============================================================================


def _empty_user_context(additional: str = "") -> dict[str, Any]:
    return {
        "primaryConcerns": [],
        "deploymentTarget": None,
        "complianceRequirements": [],
        "priorityCategories": [],
        "additionalContext": additional,
    }


def _compliance_from_text(text: str) -> list[str]:
    lowered = text.lower()
    found = []
    if "soc" in lowered:
        found.append("soc2")
    if "hipaa" in lowered:
        found.append("hipaa")
    if "gdpr" in lowered:
        found.append("gdpr")
    if "pci" in lowered:
        found.append("pci-dss")
    return found


def infer_context_from_signals(signals: dict[str, Any], user_query: str) -> dict[str, Any]:
    """Derive the analysis context without asking the user anything."""
    context = _empty_user_context(user_query or "")
    iac_tool = (signals.get("iac_tool") or "").lower()
    if signals.get("has_iac") and "terraform" in iac_tool:
        context["deploymentTarget"] = "aws"
    if signals.get("has_docker"):
        context["priorityCategories"].append("container-security")
    context["complianceRequirements"] = _compliance_from_text(user_query or "")
    context["primaryConcerns"] = ["security", "compliance"]
    return context


def _deployment_target(answer: str) -> Optional[str]:
    lowered = answer.lower()
    if "aws" in lowered:
        return "aws"
    if "gcp" in lowered or "google" in lowered:
        return "gcp"
    if "azure" in lowered:
        return "azure"
    if "on-prem" in lowered:
        return "on-premises"
    if "hybrid" in lowered:
        return "hybrid"
    return None


def parse_interview_answers(
    answers: dict[str, Any], questions: Sequence[dict[str, Any]]
) -> dict[str, Any]:
    """Map interview answers onto the analysis context by question topic."""
    context = _empty_user_context()
    additional: list[str] = []

    for question in questions:
        answer = answers.get(question["id"])
        if not answer:
            continue
        values = answer if isinstance(answer, list) else [answer]
        topic = question["question"].lower()

        if any(word in topic for word in ("deployment", "cloud", "infrastructure")):
            if isinstance(answer, str):
                context["deploymentTarget"] = _deployment_target(answer)
        elif any(word in topic for word in ("compliance", "regulation", "standard")):
            for value in values:
                context["complianceRequirements"].extend(_compliance_from_text(value))
                if "iso" in value.lower():
                    context["complianceRequirements"].append("iso27001")
        elif any(word in topic for word in ("concern", "priority", "focus")):
            for value in values:
                lowered = value.lower()
                for concern in ("security", "performance", "compliance", "cost", "reliability"):
                    if concern in lowered:
                        context["primaryConcerns"].append(concern)
        elif "category" in topic or "area" in topic:
            context["priorityCategories"].extend(values)
        elif isinstance(answer, str):
            additional.append(answer)

    context["additionalContext"] = "\n".join(additional)
    if not context["primaryConcerns"]:
        context["primaryConcerns"].append("security")
    return context


def filter_by_categories(
    subtasks: list[dict[str, Any]], categories: Sequence[str]
) -> list[dict[str, Any]]:
    """Keep subtasks whose category matches one of ``categories``; all when none given."""
    wanted = [c.strip().lower() for c in categories if c.strip()]
    if not wanted:
        return subtasks
    return [s for s in subtasks if any(w in s["category"].lower() for w in wanted)]


# =============================================================================
# Nodes
# =============================================================================


def create_gather_signals_node(project_root: Path | str):
    async def gather_signals(state: dict[str, Any]) -> dict[str, Any]:
        return {"signals": gather_project_signals(project_root).to_dict()}

    return gather_signals


def create_interviewer_node(model: ChatModel):
    async def interviewer(state: dict[str, Any], ctx: NodeContext) -> dict[str, Any]:
        signals = state.get("signals") or {}
        user_query = state.get("userQuery") or ""

        if not state.get("interactiveMode"):
            logger.info("Non-interactive mode: skipping interview")
            return {
                "interviewComplete": True,
                "userContext": infer_context_from_signals(signals, user_query),
            }
        if state.get("interviewComplete"):
            return {}

        pending = state.get("pendingInterviewQuestions") or []
        if pending:
            answers = ctx.interrupt(
                {"kind": "interview", "questions": pending}, expects=EXPECT_MAPPING
            )
            return {
                "userContext": parse_interview_answers(answers, pending),
                "interviewComplete": True,
                "pendingInterviewQuestions": [],
            }

        output = await model.invoke_structured(
            [
                system_message(INTERVIEWER_TEMPLATE),
                user_message(build_interviewer_prompt(signals, user_query)),
            ],
            InterviewerOutput,
        )
        logger.info(f"Interviewer reasoning: {output.reasoning}")
        if output.satisfied or not output.questions:
            return {
                "interviewComplete": True,
                "userContext": infer_context_from_signals(signals, user_query),
                "pendingInterviewQuestions": [],
            }
        return {"pendingInterviewQuestions": [q.model_dump() for q in output.questions]}

    return interviewer


def create_researcher_node(model: ChatModel, web_search: WebSearchTool):
    async def researcher(state: dict[str, Any]) -> dict[str, Any]:
        signals = state.get("signals") or {}
        results = []
        for query in research_queries(signals.get("detected_languages") or []):
            results.append(await web_search(query, max_results=RESEARCH_MAX_RESULTS))

        digest = await model.invoke(
            [
                system_message(RESEARCHER_TEMPLATE),
                user_message(build_researcher_prompt(signals, "\n\n".join(results))),
            ]
        )
        return {"researchDigest": digest}

    return researcher


def create_scanner_node(scanner: Optional[SASTScanner], enabled: bool):
    async def scan(state: dict[str, Any]) -> dict[str, Any]:
        if not enabled or scanner is None:
            return {"sastResults": [], "sastSkipped": []}
        results = await scanner.scan()
        for reason in results.skipped:
            logger.warning(f"SAST scanner skipped: {reason}")
        return {
            "sastResults": [f.model_dump(by_alias=True, exclude_none=True) for f in results.findings],
            "sastSkipped": list(results.skipped),
        }

    return scan


def create_planner_node(model: ChatModel, categories: Sequence[str] = ()):
    async def planner(state: dict[str, Any]) -> dict[str, Any]:
        plan = await model.invoke_structured(
            [
                system_message(PRODUCTIONALIZE_PLANNER_TEMPLATE),
                user_message(
                    build_productionalize_plan_prompt(
                        state.get("signals") or {},
                        state.get("researchDigest") or "",
                        state.get("sastResults") or [],
                        state.get("userQuery") or "",
                        state.get("userContext"),
                        categories,
                    )
                ),
            ],
            ProductionalizePlan,
        )
        subtasks = [{**s.model_dump(), "status": "pending"} for s in plan.subtasks]
        subtasks = filter_by_categories(subtasks, categories)
        logger.info(f"Planner produced {len(subtasks)} subtask(s)")
        return {"subtasks": subtasks}

    return planner


def _scan_context(sast_results: list[dict[str, Any]], category: str) -> list[dict[str, Any]]:
    needle = category.lower()
    return [
        r
        for r in sast_results
        if needle in r.get("rule", "").lower() or needle in r.get("message", "").lower()
    ]


def create_worker_node(
    model: ChatModel,
    retriever: RetrieverTool,
    web_search: WebSearchTool,
    budget: Optional[TokenBudget] = None,
):
    async def worker(state: dict[str, Any], ctx: NodeContext) -> dict[str, Any]:
        subtask = ctx.send_arg["subtask"]
        source = subtask["source"]
        scan_results: list[dict[str, Any]] = []

        if source == "code":
            tool_result = await retriever(subtask["query"], k=DEFAULT_K)
            context, _ = prune_retrieved_context(tool_result, budget)
        elif source == "web":
            context = await web_search(subtask["query"])
        else:
            scan_results = _scan_context(state.get("sastResults") or [], subtask["category"])
            context = json.dumps(scan_results, indent=2)

        output = await model.invoke_structured(
            [
                system_message(PRODUCTIONALIZE_WORKER_TEMPLATE),
                user_message(
                    build_productionalize_worker_prompt(
                        subtask,
                        state.get("signals") or {},
                        state.get("researchDigest") or "",
                        EVIDENCE_SOURCES[source],
                        context,
                    )
                ),
            ],
            ProductionalizeWorkerOutput,
        )

        findings = []
        for finding in output.findings:
            record = finding.model_dump(by_alias=True)
            record["id"] = f"{subtask['id']}:{record['id']}"
            if source == "scan":
                record["evidence"]["scanResults"] = scan_results
            findings.append(record)

        await ctx.emit("subtask_complete", {"id": subtask["id"], "findings": len(findings)})
        return {
            "subtasks": [
                {**subtask, "status": "complete", "result": output.summary, "findings": findings}
            ],
            "findings": findings,
        }

    return worker


def create_aggregator_node(model: ChatModel):
    async def aggregator(state: dict[str, Any]) -> dict[str, Any]:
        report = await model.invoke(
            [
                system_message(PRODUCTIONALIZE_AGGREGATOR_TEMPLATE),
                user_message(
                    build_report_prompt(
                        state.get("signals") or {},
                        state.get("researchDigest") or "",
                        state.get("findings") or [],
                        state.get("finalReport") or "",
                        state.get("reportFeedback") or "",
                    )
                ),
            ]
        )
        return {"finalReport": report, "reportFeedback": "", "reportNeedsReview": True}

    return aggregator


def create_report_reviewer_node():
    async def report_reviewer(state: dict[str, Any], ctx: NodeContext) -> dict[str, Any]:
        report = state.get("finalReport") or ""
        if not state.get("interactiveMode") or not report:
            return {"reportApproved": True, "reportNeedsReview": False}

        response = ctx.interrupt(
            {
                "kind": "document_review",
                "docType": "report",
                "content": report,
                "instructions": REPORT_REVIEW_INSTRUCTIONS,
            },
            expects=EXPECT_TEXT,
        )
        feedback = response.strip()
        if feedback.lower() in REPORT_APPROVAL_WORDS:
            return {"reportApproved": True, "reportFeedback": "", "reportNeedsReview": False}
        return {"reportApproved": False, "reportFeedback": feedback, "reportNeedsReview": False}

    return report_reviewer


def create_prompt_generator_node(model: ChatModel, redact_for_cloud: bool = False):
    async def prompt_generator(state: dict[str, Any]) -> dict[str, Any]:
        report = state.get("finalReport") or ""
        findings = state.get("findings") or []
        prompt = build_prompt_generator_prompt(report, state.get("signals") or {}, findings)
        if redact_for_cloud:
            prompt = redact_text(prompt)

        output = await model.invoke_structured(
            [system_message(PROMPT_GENERATOR_TEMPLATE), user_message(prompt)],
            PromptsOutput,
        )
        return {"taskPrompts": format_task_prompts(p.model_dump() for p in output.prompts)}

    return prompt_generator


# =============================================================================
# Routers
# =============================================================================


def route_after_interviewer(state: dict[str, Any]) -> str:
    return "researcher" if state.get("interviewComplete") else "interviewer"


def route_subtasks(state: dict[str, Any]) -> list[Send]:
    return [Send("worker", {"subtask": s}) for s in state.get("subtasks") or []]


def route_after_aggregator(state: dict[str, Any]) -> str:
    if state.get("interactiveMode") and state.get("reportNeedsReview"):
        return "reportReviewer"
    return "promptGenerator"


def route_after_review(state: dict[str, Any]) -> str:
    return "promptGenerator" if state.get("reportApproved") else "aggregator"


def create_productionalize_graph(
    model: ChatModel,
    retriever: RetrieverTool,
    web_search: WebSearchTool,
    project_root: Path | str,
    *,
    scanner: Optional[SASTScanner] = None,
    sast_enabled: bool = False,
    budget: Optional[TokenBudget] = None,
    categories: Sequence[str] = (),
    redact_for_cloud: bool = False,
    checkpointer: Optional[CheckpointerProtocol] = None,
) -> CompiledGraph:
    """Build the compiled productionalize workflow."""
    graph = StateGraph(productionalize_state_schema())
    graph.add_node("gatherSignals", create_gather_signals_node(project_root), writes=("signals",))
    graph.add_node(
        "interviewer",
        create_interviewer_node(model),
        writes=("userContext", "interviewComplete", "pendingInterviewQuestions"),
    )
    graph.add_node(
        "researcher", create_researcher_node(model, web_search), writes=("researchDigest",)
    )
    graph.add_node(
        "scanner", create_scanner_node(scanner, sast_enabled), writes=("sastResults", "sastSkipped")
    )
    graph.add_node("planner", create_planner_node(model, categories), writes=("subtasks",))
    graph.add_node(
        "worker",
        create_worker_node(model, retriever, web_search, budget),
        writes=("subtasks", "findings"),
    )
    graph.add_node(
        "aggregator",
        create_aggregator_node(model),
        writes=("finalReport", "reportFeedback", "reportNeedsReview"),
    )
    graph.add_node(
        "reportReviewer",
        create_report_reviewer_node(),
        writes=("reportApproved", "reportFeedback", "reportNeedsReview"),
    )
    graph.add_node(
        "promptGenerator",
        create_prompt_generator_node(model, redact_for_cloud),
        writes=("taskPrompts",),
    )

    graph.set_entry_point("gatherSignals")
    graph.add_edge("gatherSignals", "interviewer")
    graph.add_conditional_edge(
        "interviewer", route_after_interviewer, ["interviewer", "researcher"]
    )
    graph.add_edge("researcher", "scanner")
    graph.add_edge("scanner", "planner")
    graph.add_fan_out("planner", route_subtasks, "worker", fallback="aggregator")
    graph.add_edge("worker", "aggregator")
    graph.add_conditional_edge(
        "aggregator", route_after_aggregator, ["reportReviewer", "promptGenerator"]
    )
    graph.add_conditional_edge(
        "reportReviewer", route_after_review, ["promptGenerator", "aggregator"]
    )
    graph.add_edge("promptGenerator", END)
    return graph.compile(checkpointer=checkpointer)


__all__ = [
    "DEFAULT_USER_QUERY",
    "create_productionalize_graph",
    "filter_by_categories",
    "infer_context_from_signals",
    "parse_interview_answers",
    "productionalize_state_schema",
    "route_after_aggregator",
    "route_after_interviewer",
    "route_after_review",
    "route_subtasks",
]
