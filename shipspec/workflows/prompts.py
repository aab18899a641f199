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

"""Prompt templates and prompt-building helpers.

Templates are plain strings; builders assemble the per-call user message from
state. Helpers accept plain dicts (as stored in workflow state) rather than
model objects.
"""

from __future__ import annotations

import json
from typing import Any, Iterable, Mapping, Optional, Sequence

from shipspec.retrieval.search import CodeChunk

# =============================================================================
# Ask
# =============================================================================

ASK_SYSTEM_TEMPLATE = """You are an expert software engineer assistant helping users understand their codebase.

Answer questions about the codebase accurately and concisely, using only the provided code context.

Guidelines:
- Base your answers ONLY on the provided code context
- Cite sources as [filepath:startLine-endLine] whenever you reference code
- If the context does not contain enough information, say so clearly
- Prefer specific, actionable insights and short code excerpts from the context
"""

NO_CONTEXT_RESPONSE = """I couldn't find relevant code context to answer your question. This could mean:
- The question might be about code that wasn't indexed
- The search terms might need to be more specific
- The codebase might not contain relevant information

Try rephrasing your question or run `shipspec ask --reindex` to ensure the index is up to date."""


def format_code_context(chunks: Sequence[CodeChunk]) -> str:
    """Render chunks as a citation-headed context block."""
    if not chunks:
        return ""
    rendered = []
    for chunk in chunks:
        citation = f"[{chunk.filepath}:{chunk.start_line}-{chunk.end_line}]"
        symbol = f": {chunk.symbol_name}" if chunk.symbol_name else ""
        rendered.append(f"--- {citation} ({chunk.language}, {chunk.type}{symbol}) ---\n{chunk.content}")
    return "## Relevant Code Context\n\n" + "\n\n".join(rendered)


def build_ask_prompt(question: str, history_context: str = "") -> str:
    prompt = ""
    if history_context:
        prompt += f"## Previous Conversation Context\n{history_context}\n\n"
    return prompt + f"## Current Question\n{question}"


def _truncate_answer(answer: str, max_length: int) -> str:
    if len(answer) <= max_length:
        return answer
    truncated = answer[:max_length]
    last_period = truncated.rfind(". ")
    if last_period > max_length * 0.6:
        return truncated[: last_period + 1] + " [...]"
    return truncated + " [...]"


def summarize_history(history: Sequence[Mapping[str, str]], max_entries: int = 3) -> str:
    """Summarize the most recent Q&A turns, answers capped at 500 characters."""
    if not history:
        return ""
    recent = list(history)[-max_entries:]
    return "\n\n".join(
        f"Q{i}: {entry['question']}\nA{i}: {_truncate_answer(entry['answer'], 500)}"
        for i, entry in enumerate(recent, start=1)
    )


# =============================================================================
# Spec
# =============================================================================

SPEC_PLANNER_TEMPLATE = """You are a senior software architect specializing in code analysis.
Decompose the analysis request into focused, orthogonal subtasks.

Good subtasks:
1. Are answerable from code context alone.
2. Do not overlap significantly in scope.
3. Together cover the full scope of the request.
4. Each produce actionable insights.

Identify the key technical domains first, then produce 3-7 subtasks that can be investigated independently.
"""

SPEC_WORKER_TEMPLATE = """You are a code analysis specialist investigating one aspect of a codebase.

1. Assess whether the retrieved code is sufficient to answer the query.
2. Identify relevant patterns, implementations, or gaps.
3. Cite specific files and line numbers as evidence.
4. List anything that could not be analyzed because context was missing.

Do not speculate beyond the provided context.
"""

SPEC_AGGREGATOR_TEMPLATE = """You are a technical writer synthesizing code analysis findings into one specification document.

Do not concatenate findings. Identify themes, deduplicate, prioritize by importance, and answer the original request.

Required sections:
## Executive Summary
## Key Findings
## Technical Details
## Recommendations
"""


def build_spec_findings(subtasks: Iterable[Mapping[str, Any]]) -> str:
    """Join completed subtask results as ``## query`` sections."""
    return "\n\n---\n\n".join(
        f"## {s['query']}\n\n{s['result']}"
        for s in subtasks
        if s.get("status") == "complete" and s.get("result") is not None
    )


# =============================================================================
# Planning
# =============================================================================

CLARIFIER_TEMPLATE = """You are a product discovery expert helping users clarify an idea before it becomes a formal specification.

Decide whether you understand the core problem, target users, key features, success criteria and constraints well enough to write a PRD.
If not, ask at most 3 focused follow-up questions that build on earlier answers. When you have enough context, say you are satisfied.
"""

PRD_TEMPLATE = """You are a senior product manager writing a Product Requirements Document.

Structure:
# Product Requirements Document
## 1. Problem Statement
## 2. Target Users
## 3. User Stories
## 4. Features & Requirements
## 5. Success Metrics
## 6. Non-Goals / Out of Scope
## 7. Constraints & Assumptions
## 8. Open Questions

Be specific and actionable, and reference the existing codebase context when provided.
"""

TECH_SPEC_TEMPLATE = """You are a senior software architect writing a Technical Specification from an approved PRD.

Structure:
# Technical Specification
## 1. Overview
## 2. Architecture
## 3. Data Models
## 4. API Design
## 5. Implementation Plan
## 6. Dependencies
## 7. Testing Strategy
## 8. Risks & Mitigations
## 9. Security Considerations
## 10. Performance Considerations

Reference existing code patterns and file locations, and address error handling explicitly.
"""

PLANNING_TASK_TEMPLATE = """You are a technical lead turning a technical specification into prompts for coding agents.

Each prompt starts with an action verb, names the files involved, explains the context, gives step-by-step guidance,
and ends with acceptance criteria. Order prompts by dependency, foundations first and tests and docs last.
"""


def _signals_block(signals: Optional[Mapping[str, Any]]) -> str:
    if not signals:
        return ""
    return f"## Project Signals\n```json\n{json.dumps(signals, indent=2)}\n```\n\n"


def _history_block(title: str, history: Sequence[Mapping[str, str]]) -> str:
    if not history:
        return ""
    lines = "".join(f"**Q:** {e['question']}\n**A:** {e['answer']}\n\n" for e in history)
    return f"## {title}\n{lines}"


def build_clarifier_prompt(
    initial_idea: str,
    history: Sequence[Mapping[str, str]],
    signals: Optional[Mapping[str, Any]],
    code_context: str,
) -> str:
    prompt = f"## User's Initial Idea\n{initial_idea}\n\n"
    prompt += _history_block("Previous Q&A", history)
    prompt += _signals_block(signals)
    if code_context:
        prompt += f"## Relevant Code Context\n{code_context}\n\n"
    prompt += (
        "Based on the above, do you have enough information to write a comprehensive PRD? "
        "If not, what specific questions would help clarify the requirements?"
    )
    return prompt


def build_prd_prompt(
    initial_idea: str,
    history: Sequence[Mapping[str, str]],
    signals: Optional[Mapping[str, Any]],
    code_context: str,
    previous_prd: str,
    feedback: str,
) -> str:
    prompt = f"## User's Initial Idea\n{initial_idea}\n\n"
    prompt += _history_block("Clarification History", history)
    prompt += _signals_block(signals)
    if code_context:
        prompt += f"## Relevant Code Context\n{code_context}\n\n"
    if feedback:
        if previous_prd:
            prompt += f"## Previous PRD (needs revision)\n{previous_prd}\n\n"
        prompt += f"## User Feedback\n{feedback}\n\nPlease revise the PRD based on the feedback above."
    else:
        prompt += "Please write a comprehensive PRD based on the above information."
    return prompt


def build_tech_spec_prompt(
    prd: str,
    signals: Optional[Mapping[str, Any]],
    code_context: str,
    previous_spec: str,
    feedback: str,
) -> str:
    prompt = f"## Approved PRD\n{prd}\n\n"
    prompt += _signals_block(signals)
    if code_context:
        prompt += f"## Relevant Code Context\n{code_context}\n\n"
    if feedback:
        if previous_spec:
            prompt += f"## Previous Tech Spec (needs revision)\n{previous_spec}\n\n"
        prompt += (
            f"## User Feedback\n{feedback}\n\n"
            "Please revise the technical specification based on the feedback above."
        )
    else:
        prompt += "Please write a comprehensive technical specification based on the PRD and codebase context."
    return prompt


def build_task_prompt(tech_spec: str, signals: Optional[Mapping[str, Any]]) -> str:
    return (
        f"## Technical Specification\n{tech_spec}\n\n"
        + _signals_block(signals)
        + "Convert this technical specification into a series of agent-ready task prompts. "
        "Order them by dependency and include all necessary context for each task."
    )


def format_task_prompts(prompts: Iterable[Mapping[str, Any]]) -> str:
    return "\n\n".join(f"### Task {p['id']}:\n```\n{p['prompt']}\n```" for p in prompts)


# =============================================================================
# Productionalize
# =============================================================================

SEVERITY_DEFINITIONS = """Severity Definitions:
- Critical: Exploitable in production, data breach risk, or major compliance blocker.
- High: Significant security gap, missing critical functionality, or major tech debt.
- Medium: Best practice violation, maintainability concern, or minor security gap.
- Low: Code smell, optimization opportunity, or documentation gap.
- Info: Observation, recommendation, or minor improvement.
"""

INTERVIEWER_TEMPLATE = """You are a production-readiness consultant preparing a targeted analysis.

Review the project signals and the user's request. Ask up to 4 questions only for information that is not
already clear from the signals or the request and that changes how the analysis should be tailored
(deployment target, compliance requirements, primary concerns, priority areas).
Prefer select or multiselect questions with concrete options. If the context is already sufficient, say you are satisfied.
"""

RESEARCHER_TEMPLATE = """You are a technical researcher. Condense the research results into a compact
"Compliance and Best Practices Digest" that will ground a production-readiness analysis.

Prioritize official sources (NIST, OWASP, cloud providers), flag outdated material, and separate
stack-specific requirements from universal ones. Keep the digest structured and relevant to the project signals.
"""

PRODUCTIONALIZE_PLANNER_TEMPLATE = """You are a production-readiness planner. Decompose the analysis into 6-10 subtasks.

Always include the core categories: security, soc2, code-quality, dependencies, testing, configuration.
Add categories suggested by the project signals (for example container security when Docker is present).

Sources:
- "code": deep analysis of the project's source code
- "web": external standards or stack-specific best practices
- "scan": results from the SAST tools that already ran

Ground the plan in the research digest and project signals.
"""

PRODUCTIONALIZE_WORKER_TEMPLATE = f"""You are a production-readiness worker analyzing one category.
Identify findings (risks, gaps, or best practice violations) supported by the provided context.

{SEVERITY_DEFINITIONS}
For each finding explain why it matters, reference compliance controls (e.g. "SOC 2 CC6.1", "OWASP A03:2021"),
and give concrete evidence with file:line citations or links. Discard false positives and findings already mitigated elsewhere.
"""

PRODUCTIONALIZE_AGGREGATOR_TEMPLATE = """You are a production-readiness report aggregator writing for a CTO or Engineering Manager.

Report structure:
1. Executive Summary: readiness score (0-100) and top risks.
2. Category Breakdown: findings per category with severity and evidence.
3. Compliance Alignment: SOC 2, OWASP, NIST and SRE alignment.
4. Recommendations Timeline: "Must Fix Before Production", "Next 7 Days", "Next 30 Days".

Readiness score: start at 100; critical -20 each (max 3), high -10 each (max 5), medium -5 each (max 10); minimum 0.
Where findings conflict, take the more conservative position. Citations are mandatory.
"""

PROMPT_GENERATOR_TEMPLATE = """You are a technical task architect converting a production-readiness report into prompts for coding agents.

Deduplicate similar findings, group related ones, and order the prompts by the report's priorities and dependencies.
Each prompt is self-contained: the problem, the files involved, step-by-step fix guidance, and how to verify the fix.
"""

RESEARCH_QUERIES = (
    "SOC 2 Trust Services Criteria summary for security and availability",
    "Production readiness best practices for {languages} applications",
    "OWASP ASVS key security verification requirements for web applications",
    "NIST SSDF key secure software development practices overview",
    "Google SRE production readiness launch checklist summary",
)


def research_queries(languages: Sequence[str]) -> list[str]:
    joined = ", ".join(languages) or "software"
    return [q.format(languages=joined) for q in RESEARCH_QUERIES]


def build_interviewer_prompt(signals: Mapping[str, Any], user_query: str) -> str:
    return (
        f"## Project Signals\n{json.dumps(signals, indent=2)}\n\n"
        f"## User Query (if provided)\n{user_query or '(No specific focus provided)'}\n\n"
        "Determine whether you have enough context for a targeted production-readiness analysis. "
        "Only ask about information that is missing from the signals and the query."
    )


def build_researcher_prompt(signals: Mapping[str, Any], research: str) -> str:
    return (
        f"## Project Signals\n{json.dumps(signals, indent=2)}\n\n"
        f"## Research Results\n{research}\n\n"
        "Write the Compliance and Best Practices Digest."
    )


def build_productionalize_plan_prompt(
    signals: Mapping[str, Any],
    research_digest: str,
    sast_results: Sequence[Mapping[str, Any]],
    user_query: str,
    user_context: Optional[Mapping[str, Any]],
    categories: Sequence[str] = (),
) -> str:
    tools = sorted({r["tool"] for r in sast_results})
    prompt = (
        f"Project Signals:\n{json.dumps(signals, indent=2)}\n\n"
        f"Research Digest:\n{research_digest}\n\n"
        f"SAST Results Summary:\n{len(sast_results)} findings detected from "
        f"{', '.join(tools) or 'no tools'}.\n\n"
    )
    if user_context:
        prompt += f"User Context:\n{json.dumps(user_context, indent=2)}\n\n"
    if categories:
        prompt += f"Restrict the plan to these categories: {', '.join(categories)}.\n\n"
    prompt += (
        "User Request:\n"
        + (user_query or "Perform a full production-readiness analysis of this codebase.")
    )
    return prompt


def build_productionalize_worker_prompt(
    subtask: Mapping[str, Any],
    signals: Mapping[str, Any],
    research_digest: str,
    evidence_source: str,
    context: str,
) -> str:
    return (
        f"Category: {subtask['category']}\n\n"
        f"Project Signals:\n{json.dumps(signals, indent=2)}\n\n"
        f"Compliance Digest:\n{research_digest}\n\n"
        f"Analysis Context ({evidence_source}):\n{context}\n\n"
        f"Subtask Query:\n{subtask['query']}"
    )


def build_report_prompt(
    signals: Mapping[str, Any],
    research_digest: str,
    findings: Sequence[Mapping[str, Any]],
    previous_report: str = "",
    feedback: str = "",
) -> str:
    prompt = (
        f"Project Signals:\n{json.dumps(signals, indent=2)}\n\n"
        f"Research Digest:\n{research_digest}\n\n"
        f"Findings:\n{json.dumps(list(findings), indent=2)}"
    )
    if feedback:
        if previous_report:
            prompt += f"\n\n## Previous Report\n{previous_report}"
        prompt += (
            f"\n\n## User Feedback\n{feedback}\n\n"
            "Regenerate the Production Readiness Report, addressing the user's feedback above."
        )
    else:
        prompt += "\n\nGenerate the final Production Readiness Report in Markdown format."
    return prompt


def build_prompt_generator_prompt(
    report: str, signals: Mapping[str, Any], findings: Sequence[Mapping[str, Any]]
) -> str:
    return (
        f"## Production Readiness Report\n{report or '(No report available)'}\n\n"
        f"## Project Signals\n{json.dumps(signals, indent=2)}\n\n"
        f"## Detailed Findings\n{json.dumps(list(findings), indent=2)}\n\n"
        "Generate agent-ready task prompts based on the report's recommendations and priorities."
    )


__all__ = [
    "ASK_SYSTEM_TEMPLATE",
    "CLARIFIER_TEMPLATE",
    "INTERVIEWER_TEMPLATE",
    "NO_CONTEXT_RESPONSE",
    "PLANNING_TASK_TEMPLATE",
    "PRD_TEMPLATE",
    "PRODUCTIONALIZE_AGGREGATOR_TEMPLATE",
    "PRODUCTIONALIZE_PLANNER_TEMPLATE",
    "PRODUCTIONALIZE_WORKER_TEMPLATE",
    "PROMPT_GENERATOR_TEMPLATE",
    "RESEARCHER_TEMPLATE",
    "RESEARCH_QUERIES",
    "SEVERITY_DEFINITIONS",
    "SPEC_AGGREGATOR_TEMPLATE",
    "SPEC_PLANNER_TEMPLATE",
    "SPEC_WORKER_TEMPLATE",
    "TECH_SPEC_TEMPLATE",
    "build_ask_prompt",
    "build_clarifier_prompt",
    "build_interviewer_prompt",
    "build_prd_prompt",
    "build_productionalize_plan_prompt",
    "build_productionalize_worker_prompt",
    "build_prompt_generator_prompt",
    "build_report_prompt",
    "build_researcher_prompt",
    "build_spec_findings",
    "build_task_prompt",
    "build_tech_spec_prompt",
    "format_code_context",
    "format_task_prompts",
    "research_queries",
    "summarize_history",
]
