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

"""Tests for shipspec.flows.productionalize."""

import os
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from shipspec.config.settings import ShipSpecSettings
from shipspec.core.errors import ShipSpecUsageError
from shipspec.flows.productionalize import (
    ProductionalizeSession,
    parse_categories,
    prune_outputs,
    validate_session_id,
    write_outputs,
)
from shipspec.utils.files import UNTRUSTED_BANNER
from shipspec.workflows.schemas import InterviewerOutput, InterviewQuestion


@pytest.fixture
def settings(project_root):
    return ShipSpecSettings(project_root=project_root, llm_provider="ollama", keep_outputs=2)


@pytest.fixture
def secrets():
    store = MagicMock()
    store.get.return_value = None
    return store


class TestHelpers:
    """Tests for session id, category and output helpers."""

    @pytest.mark.parametrize("session_id", ["abc", "a.b_c-1", "x" * 64])
    def test_valid_session_id(self, session_id):
        """Safe ids up to 64 characters pass."""
        validate_session_id(session_id)

    @pytest.mark.parametrize("session_id", ["", "x" * 65, "a/b", "a b"])
    def test_invalid_session_id(self, session_id):
        """Empty, overlong and unsafe ids are usage errors."""
        with pytest.raises(ShipSpecUsageError, match="Invalid session ID"):
            validate_session_id(session_id)

    def test_parse_categories(self):
        """Comma-separated categories are trimmed and blanks dropped."""
        assert parse_categories(None) == []
        assert parse_categories(" security, ,performance ") == ["security", "performance"]

    def test_prune_outputs(self, tmp_path):
        """Only the newest files of each prefix are kept."""
        for stamp in ("20250101-000000", "20250102-000000", "20250103-000000"):
            (tmp_path / f"report-{stamp}.md").write_text("r")
            (tmp_path / f"task-prompts-{stamp}.md").write_text("t")
        (tmp_path / "notes.md").write_text("keep me")

        removed = prune_outputs(tmp_path, 2)

        assert sorted(p.name for p in removed) == [
            "report-20250101-000000.md",
            "task-prompts-20250101-000000.md",
        ]
        assert (tmp_path / "notes.md").exists()
        assert prune_outputs(tmp_path, 0) == []

    def test_write_outputs(self, settings):
        """Report and prompts are written twice: timestamped and latest."""
        paths = write_outputs(
            settings, "# Report", "### Task 1:", now=datetime(2025, 6, 1, 12, 30, 0)
        )
        assert paths["report"].name == "report-20250601-123000.md"
        assert paths["report"].read_text() == UNTRUSTED_BANNER + "# Report"
        assert paths["latestTaskPrompts"].read_text() == UNTRUSTED_BANNER + "### Task 1:"
        assert paths["latestReport"].parent == settings.state_dir

    def test_write_outputs_prunes(self, settings):
        """Older outputs beyond keep_outputs are removed."""
        for day in (1, 2, 3):
            write_outputs(settings, "r", "t", now=datetime(2025, 6, day))
        reports = sorted(os.listdir(settings.outputs_dir))
        assert reports == [
            "report-20250602-000000.md",
            "report-20250603-000000.md",
            "task-prompts-20250602-000000.md",
            "task-prompts-20250603-000000.md",
        ]


class TestProductionalizeSession:
    """Tests for ProductionalizeSession."""

    @pytest.mark.asyncio
    async def test_invalid_session_id(self, settings, fake_model, secrets):
        """A bad --session value is refused before any work."""
        with pytest.raises(ShipSpecUsageError):
            await ProductionalizeSession.create(
                session_id="../x", settings=settings, model=fake_model, secrets=secrets
            )

    @pytest.mark.asyncio
    async def test_interactive_start_interviews(self, settings, chat_model_factory, secrets):
        """An interactive run suspends on the interview first."""
        model = chat_model_factory(
            structured={
                "InterviewerOutput": [
                    InterviewerOutput(
                        satisfied=False,
                        questions=[InterviewQuestion(id="q1", question="Any deadlines?")],
                    )
                ]
            }
        )
        session = await ProductionalizeSession.create(
            context="Focus on auth",
            session_id="s1",
            settings=settings,
            model=model,
            secrets=secrets,
        )
        events = [event async for event in session.start()]

        assert events[0]["type"] == "status"
        assert {"type": "progress", "stage": "gatherSignals"} in events
        assert events[-1] == {
            "type": "interrupt",
            "payload": {
                "kind": "interview",
                "questions": [
                    {
                        "id": "q1",
                        "question": "Any deadlines?",
                        "type": "text",
                        "options": None,
                        "required": False,
                    }
                ],
            },
        }
        assert "Focus on auth" in model.calls[0][1][-1].content
        secrets.get.assert_called_once_with("TAVILY_API_KEY")
