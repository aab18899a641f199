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

"""Tests for shipspec.workflows.planning."""

import pytest

from shipspec.framework.errors import InvalidResumeResponse
from shipspec.framework.graph import MemoryCheckpointer
from shipspec.workflows.planning import (
    create_planning_graph,
    format_code_blocks,
    is_approval,
    route_after_prd,
)
from shipspec.workflows.schemas import ClarificationOutput, PromptsOutput, TaskPrompt


def scripted_model(factory):
    return factory(
        texts=["PRD v1", "PRD v2", "Spec v1"],
        structured={
            "ClarificationOutput": [
                ClarificationOutput(satisfied=False, follow_up_questions=["Who uses it?", "Scale?"]),
                ClarificationOutput(satisfied=True),
            ],
            "PromptsOutput": [
                PromptsOutput(prompts=[TaskPrompt(id=1, prompt="Add the endpoint")])
            ],
        },
    )


class TestHelpers:
    """Tests for planning helpers."""

    @pytest.mark.parametrize(
        "response,expected",
        [("approve", True), ("  Approve \n", True), ("approved", False), ({"0": "approve"}, False)],
    )
    def test_is_approval(self, response, expected):
        """Only the exact word approve, case-insensitively, approves."""
        assert is_approval(response) is expected

    def test_format_code_blocks(self, chunk_factory):
        """Chunks render as fenced blocks with a location header."""
        text = format_code_blocks([chunk_factory("src/a.py", "x = 1", 1, 1)])
        assert text == "### src/a.py:1-1\n```python\nx = 1\n```"

    def test_route_after_prd(self):
        """The PRD loop continues until the phase moves on."""
        assert route_after_prd({"phase": "prd_review"}) == "prdGenerator"
        assert route_after_prd({"phase": "spec_review"}) == "specGenerator"


class TestPlanningGraph:
    """End-to-end planning run with interrupts."""

    @pytest.mark.asyncio
    async def test_full_run(self, project_root, chat_model_factory, fake_search):
        """Clarify, revise the PRD once, approve both documents, emit tasks."""
        model = scripted_model(chat_model_factory)
        graph = create_planning_graph(
            model, project_root, search=fake_search, checkpointer=MemoryCheckpointer()
        )

        result = await graph.invoke({"initialIdea": "Add SSO login"}, thread_id="track")
        assert result.status == "interrupted"
        assert result.interrupt.payload == {
            "kind": "clarification",
            "questions": ["Who uses it?", "Scale?"],
        }
        assert result.state["signals"]["package_manager"] is None
        assert "### src/app.py:1-2" in result.state["codeContext"]

        result = await graph.resume("track", {"0": "internal staff", "1": ["small", "medium"]})
        assert result.interrupt.payload["kind"] == "document_review"
        assert result.interrupt.payload["docType"] == "prd"
        assert result.interrupt.payload["content"] == "PRD v1"
        assert result.state["clarificationHistory"] == [
            {"question": "Who uses it?", "answer": "internal staff"},
            {"question": "Scale?", "answer": "small, medium"},
        ]

        result = await graph.resume("track", "Make it shorter")
        assert result.interrupt.payload["content"] == "PRD v2"
        revision_prompt = model.calls[-1][1][-1].content
        assert "## Previous PRD (needs revision)\nPRD v1" in revision_prompt
        assert "## User Feedback\nMake it shorter" in revision_prompt

        result = await graph.resume("track", "approve")
        assert result.interrupt.payload["docType"] == "spec"
        assert result.state["prd"] == "PRD v2"
        assert result.state["phase"] == "spec_review"

        result = await graph.resume("track", "APPROVE")
        assert result.status == "complete"
        assert result.state["phase"] == "complete"
        assert result.state["techSpec"] == "Spec v1"
        assert "Add the endpoint" in result.state["taskPrompts"]

        assert model.count("invoke") == 3
        assert model.count("structured:ClarificationOutput") == 2

    @pytest.mark.asyncio
    async def test_resume_does_not_regenerate(self, project_root, chat_model_factory):
        """Answering a review never calls the model for the reviewed document."""
        model = chat_model_factory(
            texts=["PRD v1"],
            structured={"ClarificationOutput": [ClarificationOutput(satisfied=True)]},
        )
        graph = create_planning_graph(model, project_root, checkpointer=MemoryCheckpointer())
        await graph.invoke({"initialIdea": "idea"}, thread_id="t")

        with pytest.raises(InvalidResumeResponse):
            await graph.resume("t", {"0": "wrong shape"})
        assert model.count("invoke") == 1
        assert (await graph.get_state("t")).pending_interrupt["payload"]["content"] == "PRD v1"

    @pytest.mark.asyncio
    async def test_runs_without_search(self, project_root, chat_model_factory):
        """A missing code search leaves the code context empty."""
        model = chat_model_factory(
            texts=["PRD"],
            structured={"ClarificationOutput": [ClarificationOutput(satisfied=True)]},
        )
        graph = create_planning_graph(model, project_root, checkpointer=MemoryCheckpointer())
        result = await graph.invoke({"initialIdea": "idea"}, thread_id="t")
        assert result.state["codeContext"] == ""
        assert result.interrupt.payload["docType"] == "prd"
