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

"""Tests for shipspec.workflows.spec."""

import json

import pytest

from shipspec.framework.graph import MemoryCheckpointer
from shipspec.tools.retriever import RetrieverTool
from shipspec.utils.tokens import TokenBudget
from shipspec.workflows.schemas import SpecPlan, SpecSubtask, SpecWorkerOutput
from shipspec.workflows.spec import create_spec_graph, prune_retrieved_context


def plan(*queries):
    return SpecPlan(
        reasoning="split by concern",
        subtasks=[SpecSubtask(id=str(i), query=q) for i, q in enumerate(queries, start=1)],
    )


class TestPruneRetrievedContext:
    """Tests for prune_retrieved_context."""

    def test_prunes_to_worker_share(self):
        """Fragments beyond 70% of the available budget are dropped."""
        chunks = [{"content": "x" * 400} for _ in range(10)]  # 100 tokens each
        budget = TokenBudget(max_context_tokens=1000, reserved_output_tokens=500)  # 350 for context
        _, kept = prune_retrieved_context(json.dumps(chunks), budget)
        assert len(kept) == 3

    def test_non_json_passthrough(self):
        """Non-JSON tool output is passed through unchanged."""
        assert prune_retrieved_context("Error: index unavailable", None) == (
            "Error: index unavailable",
            [],
        )


class TestSpecGraph:
    """End-to-end tests for the spec workflow with a fake model."""

    @pytest.mark.asyncio
    async def test_planner_workers_aggregator(self, chat_model_factory, fake_search):
        """Each subtask gets a worker and the aggregator writes the spec."""
        model = chat_model_factory(
            texts=["# Final Spec"],
            structured={
                "SpecPlan": [plan("How is auth done?", "Where is data stored?")],
                "SpecWorkerOutput": [
                    SpecWorkerOutput(summary="summary A"),
                    SpecWorkerOutput(summary="summary B"),
                ],
            },
        )
        graph = create_spec_graph(model, RetrieverTool(fake_search), budget=TokenBudget())

        result = await graph.invoke({"userQuery": "Document the backend"})

        assert result.status == "complete"
        assert result.state["finalSpec"] == "# Final Spec"
        subtasks = result.state["subtasks"]
        assert [s["id"] for s in subtasks] == ["1", "2"]
        assert all(s["status"] == "complete" for s in subtasks)
        assert {s["result"] for s in subtasks} == {"summary A", "summary B"}
        assert sorted(fake_search.queries) == ["How is auth done?", "Where is data stored?"]
        assert len(result.state["context"]) == 2

        aggregator_prompt = model.calls[-1][1][-1].content
        assert "Original Request: Document the backend" in aggregator_prompt
        assert "## How is auth done?" in aggregator_prompt

    @pytest.mark.asyncio
    async def test_empty_plan_goes_to_aggregator(self, chat_model_factory, fake_search):
        """A plan with no subtasks skips the workers."""
        model = chat_model_factory(texts=["Nothing to analyze"], structured={"SpecPlan": [plan()]})
        graph = create_spec_graph(model, RetrieverTool(fake_search))

        result = await graph.invoke({"userQuery": "q"})

        assert result.status == "complete"
        assert result.state["finalSpec"] == "Nothing to analyze"
        assert model.count("structured:SpecWorkerOutput") == 0

    @pytest.mark.asyncio
    async def test_subtask_events(self, chat_model_factory, fake_search):
        """Workers emit subtask_complete with their id."""
        events = []

        async def sink(kind, data):
            events.append((kind, data))

        model = chat_model_factory(
            texts=["spec"],
            structured={
                "SpecPlan": [plan("one")],
                "SpecWorkerOutput": [SpecWorkerOutput(summary="s")],
            },
        )
        graph = create_spec_graph(model, RetrieverTool(fake_search), checkpointer=MemoryCheckpointer())
        await graph.invoke({"userQuery": "q"}, thread_id="t", event_sink=sink)

        assert ("subtask_complete", {"node": "worker", "id": "1"}) in events
        assert graph.audit_warnings == []
