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

"""Tests for shipspec.workflows.productionalize."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from shipspec.framework.graph import MemoryCheckpointer, Send
from shipspec.tools.retriever import RetrieverTool
from shipspec.tools.sast_scanner import SASTFinding, ScannerResults
from shipspec.workflows.productionalize import (
    create_productionalize_graph,
    filter_by_categories,
    infer_context_from_signals,
    parse_interview_answers,
    route_after_aggregator,
    route_after_interviewer,
    route_after_review,
    route_subtasks,
)
from shipspec.workflows.schemas import (
    Finding,
    InterviewerOutput,
    InterviewQuestion,
    ProductionalizePlan,
    ProductionalizeSubtask,
    ProductionalizeWorkerOutput,
    PromptsOutput,
    TaskPrompt,
)


class FakeWebSearch:
    """Web search returning a canned string per query."""

    def __init__(self):
        self.queries = []

    async def __call__(self, query, max_results=5):
        self.queries.append(query)
        return f"results for {query}"


def worker_output():
    return ProductionalizeWorkerOutput(
        summary="checked",
        findings=[
            Finding(
                id="f1",
                severity="high",
                category="security",
                title="Hardcoded secret",
                description="A token is committed",
            )
        ],
    )


def prompts_output():
    return PromptsOutput(prompts=[TaskPrompt(id=1, prompt="Rotate the token")])


# =============================================================================
# Helpers
# =============================================================================


class TestInferContext:
    """Tests for infer_context_from_signals."""

    def test_terraform_and_docker(self):
        """Terraform implies AWS and Docker adds container security."""
        context = infer_context_from_signals(
            {"has_iac": True, "iac_tool": "Terraform", "has_docker": True}, "Need SOC2 and GDPR"
        )
        assert context["deploymentTarget"] == "aws"
        assert context["priorityCategories"] == ["container-security"]
        assert context["complianceRequirements"] == ["soc2", "gdpr"]
        assert context["primaryConcerns"] == ["security", "compliance"]
        assert context["additionalContext"] == "Need SOC2 and GDPR"

    def test_empty_signals(self):
        """No signals yields no deployment target."""
        context = infer_context_from_signals({}, "")
        assert context["deploymentTarget"] is None
        assert context["complianceRequirements"] == []


class TestParseInterviewAnswers:
    """Tests for parse_interview_answers."""

    QUESTIONS = [
        {"id": "deploy", "question": "What is your deployment target?"},
        {"id": "comp", "question": "Which compliance standards apply?"},
        {"id": "focus", "question": "What is your main concern?"},
        {"id": "areas", "question": "Which category should we prioritize?"},
        {"id": "notes", "question": "Anything else?"},
    ]

    def test_maps_answers_by_topic(self):
        """Each answer lands in the context field its question is about."""
        context = parse_interview_answers(
            {
                "deploy": "Google Cloud",
                "comp": ["SOC 2", "ISO 27001"],
                "focus": ["Performance", "Cost"],
                "areas": ["logging"],
                "notes": "Team of three",
            },
            self.QUESTIONS,
        )
        assert context["deploymentTarget"] == "gcp"
        assert context["complianceRequirements"] == ["soc2", "iso27001"]
        assert context["primaryConcerns"] == ["performance", "cost"]
        assert context["priorityCategories"] == ["logging"]
        assert context["additionalContext"] == "Team of three"

    def test_defaults_to_security(self):
        """Without a stated concern, security is assumed."""
        context = parse_interview_answers({}, self.QUESTIONS)
        assert context["primaryConcerns"] == ["security"]
        assert context["deploymentTarget"] is None


class TestFilterByCategories:
    """Tests for filter_by_categories."""

    SUBTASKS = [{"id": "1", "category": "Security"}, {"id": "2", "category": "Observability"}]

    def test_no_categories_keeps_all(self):
        """An empty filter keeps every subtask."""
        assert filter_by_categories(self.SUBTASKS, []) == self.SUBTASKS
        assert filter_by_categories(self.SUBTASKS, [" "]) == self.SUBTASKS

    def test_case_insensitive_substring(self):
        """Categories match case-insensitively as substrings."""
        assert [s["id"] for s in filter_by_categories(self.SUBTASKS, ["secur"])] == ["1"]


class TestRouters:
    """Tests for the conditional edge routers."""

    def test_interviewer(self):
        """The interviewer loops until complete."""
        assert route_after_interviewer({}) == "interviewer"
        assert route_after_interviewer({"interviewComplete": True}) == "researcher"

    def test_subtasks(self):
        """One Send per subtask."""
        sends = route_subtasks({"subtasks": [{"id": "a"}, {"id": "b"}]})
        assert all(isinstance(s, Send) for s in sends)
        assert [s.arg["subtask"]["id"] for s in sends] == ["a", "b"]
        assert route_subtasks({}) == []

    def test_aggregator_and_review(self):
        """Review only happens in interactive mode."""
        assert route_after_aggregator({"interactiveMode": False, "reportNeedsReview": True}) == (
            "promptGenerator"
        )
        assert route_after_aggregator({"interactiveMode": True, "reportNeedsReview": True}) == (
            "reportReviewer"
        )
        assert route_after_review({"reportApproved": True}) == "promptGenerator"
        assert route_after_review({"reportApproved": False}) == "aggregator"


# =============================================================================
# Graph
# =============================================================================


class TestProductionalizeGraph:
    """End-to-end runs with a fake model."""

    @pytest.mark.asyncio
    async def test_non_interactive_run(self, project_root, chat_model_factory, fake_search):
        """Every source type is analyzed and findings are namespaced by subtask."""
        model = chat_model_factory(
            texts=["research digest", "# Report"],
            structured={
                "ProductionalizePlan": [
                    ProductionalizePlan(
                        subtasks=[
                            ProductionalizeSubtask(
                                id="code", category="security", query="auth", source="code"
                            ),
                            ProductionalizeSubtask(
                                id="web", category="security", query="owasp", source="web"
                            ),
                            ProductionalizeSubtask(
                                id="scan", category="secrets", query="leaks", source="scan"
                            ),
                        ]
                    )
                ],
                "ProductionalizeWorkerOutput": [worker_output() for _ in range(3)],
                "PromptsOutput": [prompts_output()],
            },
        )
        scanner = MagicMock()
        scanner.scan = AsyncMock(
            return_value=ScannerResults(
                findings=[
                    SASTFinding(
                        tool="gitleaks",
                        severity="high",
                        rule="generic-secrets",
                        message="secret found",
                        filepath="src/app.py",
                    )
                ],
                skipped=["trivy failed: trivy not found"],
            )
        )
        web = FakeWebSearch()
        graph = create_productionalize_graph(
            model,
            RetrieverTool(fake_search),
            web,
            project_root,
            scanner=scanner,
            sast_enabled=True,
        )

        result = await graph.invoke({"interactiveMode": False, "userQuery": "Check for HIPAA"})

        assert result.status == "complete"
        state = result.state
        assert state["userContext"]["complianceRequirements"] == ["hipaa"]
        assert state["researchDigest"] == "research digest"
        assert state["sastSkipped"] == ["trivy failed: trivy not found"]
        assert state["sastResults"][0]["rule"] == "generic-secrets"
        assert sorted(f["id"] for f in state["findings"]) == ["code:f1", "scan:f1", "web:f1"]
        scan_finding = next(f for f in state["findings"] if f["id"] == "scan:f1")
        assert scan_finding["evidence"]["scanResults"][0]["rule"] == "generic-secrets"
        assert all(s["status"] == "complete" for s in state["subtasks"])
        assert state["finalReport"] == "# Report"
        assert "Rotate the token" in state["taskPrompts"]
        assert fake_search.queries == ["auth"]
        assert len(web.queries) == 6
        assert "owasp" in web.queries
        assert model.count("structured:InterviewerOutput") == 0

    @pytest.mark.asyncio
    async def test_categories_filter_plan(self, project_root, chat_model_factory, fake_search):
        """Subtasks outside the requested categories never reach a worker."""
        model = chat_model_factory(
            texts=["digest", "# Report"],
            structured={
                "ProductionalizePlan": [
                    ProductionalizePlan(
                        subtasks=[
                            ProductionalizeSubtask(
                                id="a", category="security", query="auth", source="code"
                            ),
                            ProductionalizeSubtask(
                                id="b", category="performance", query="cache", source="code"
                            ),
                        ]
                    )
                ],
                "ProductionalizeWorkerOutput": [worker_output()],
                "PromptsOutput": [prompts_output()],
            },
        )
        graph = create_productionalize_graph(
            model,
            RetrieverTool(fake_search),
            FakeWebSearch(),
            project_root,
            categories=["security"],
        )
        result = await graph.invoke({"interactiveMode": False})

        assert [s["id"] for s in result.state["subtasks"]] == ["a"]
        assert fake_search.queries == ["auth"]
        assert result.state["sastResults"] == []

    @pytest.mark.asyncio
    async def test_interactive_run(self, project_root, chat_model_factory, fake_search):
        """Interview, revise the report once, then approve it."""
        model = chat_model_factory(
            texts=["digest", "Report v1", "Report v2"],
            structured={
                "InterviewerOutput": [
                    InterviewerOutput(
                        satisfied=False,
                        questions=[
                            InterviewQuestion(
                                id="deploy",
                                question="What is your deployment target?",
                                type="select",
                                options=["AWS", "GCP"],
                            ),
                            InterviewQuestion(
                                id="comp",
                                question="Which compliance standards apply?",
                                type="multiselect",
                                options=["SOC 2", "HIPAA"],
                            ),
                        ],
                    )
                ],
                "ProductionalizePlan": [ProductionalizePlan()],
                "PromptsOutput": [prompts_output()],
            },
        )
        graph = create_productionalize_graph(
            model,
            RetrieverTool(fake_search),
            FakeWebSearch(),
            project_root,
            checkpointer=MemoryCheckpointer(),
        )

        result = await graph.invoke({"interactiveMode": True}, thread_id="session")
        assert result.status == "interrupted"
        payload = result.interrupt.payload
        assert payload["kind"] == "interview"
        assert [q["id"] for q in payload["questions"]] == ["deploy", "comp"]
        assert payload["questions"][0]["options"] == ["AWS", "GCP"]

        result = await graph.resume("session", {"deploy": "AWS", "comp": ["SOC 2", "HIPAA"]})
        assert result.state["userContext"]["deploymentTarget"] == "aws"
        assert result.state["userContext"]["complianceRequirements"] == ["soc2", "hipaa"]
        assert result.interrupt.payload["docType"] == "report"
        assert result.interrupt.payload["content"] == "Report v1"

        result = await graph.resume("session", "Add a logging section")
        assert result.interrupt.payload["content"] == "Report v2"
        revision_prompt = model.calls[-1][1][-1].content
        assert "## Previous Report\nReport v1" in revision_prompt
        assert "## User Feedback\nAdd a logging section" in revision_prompt

        result = await graph.resume("session", " LGTM ")
        assert result.status == "complete"
        assert result.state["reportApproved"] is True
        assert result.state["finalReport"] == "Report v2"
        assert model.count("structured:InterviewerOutput") == 1
        assert model.count("invoke") == 3
