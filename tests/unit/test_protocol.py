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

"""Tests for shipspec.backend.protocol."""

import pytest
from pydantic import ValidationError

from shipspec.backend.protocol import (
    METHODS,
    AskCancelRequest,
    AskStartRequest,
    PlanningResumeRequest,
    error_event,
    format_validation_issues,
    parse_request,
    serialize_event,
)


class TestParseRequest:
    """Tests for request validation."""

    def test_ask_start(self):
        """camelCase params are accepted and typed."""
        request = parse_request(
            {
                "method": "ask.start",
                "params": {
                    "question": "Where is auth?",
                    "history": [{"question": "q", "answer": "a"}],
                    "cloudOk": True,
                },
            }
        )
        assert isinstance(request, AskStartRequest)
        assert request.params.cloud_ok is True
        assert request.params.history[0].answer == "a"

    def test_paramless_method(self):
        """Control methods carry no params."""
        assert isinstance(parse_request({"method": "ask.cancel"}), AskCancelRequest)

    @pytest.mark.parametrize("response", ["approve", {"0": "yes", "1": ["a", "b"]}])
    def test_resume_response_shapes(self, response):
        """Resume responses are text or a mapping of strings and string lists."""
        request = parse_request(
            {"method": "planning.resume", "params": {"trackId": "t1", "response": response}}
        )
        assert isinstance(request, PlanningResumeRequest)
        assert request.params.response == response

    def test_missing_field(self):
        """Missing required params fail validation with a readable message."""
        with pytest.raises(ValidationError) as exc_info:
            parse_request({"method": "ask.start", "params": {}})
        assert "params.question: Field required" in format_validation_issues(exc_info.value)

    def test_extra_field_rejected(self):
        """Unknown params are rejected."""
        with pytest.raises(ValidationError):
            parse_request({"method": "model.set", "params": {"model": "x", "force": True}})

    def test_methods_cover_union(self):
        """Every advertised method parses."""
        assert "planning.list" in METHODS
        assert "productionalize.list" in METHODS
        assert isinstance(parse_request({"method": "model.list"}).method, str)


class TestSerializeEvent:
    """Tests for event validation and serialization."""

    def test_progress_drops_missing_percent(self):
        """Absent optional fields are omitted."""
        assert serialize_event({"type": "progress", "stage": "planner"}) == {
            "type": "progress",
            "stage": "planner",
        }

    def test_interrupt_camel_case(self):
        """Interrupt payloads and ids serialize in camelCase."""
        event = serialize_event(
            {
                "type": "interrupt",
                "payload": {
                    "kind": "document_review",
                    "docType": "prd",
                    "content": "# PRD",
                    "instructions": "Reply approve",
                },
                "track_id": "t1",
            }
        )
        assert event == {
            "type": "interrupt",
            "payload": {
                "kind": "document_review",
                "docType": "prd",
                "content": "# PRD",
                "instructions": "Reply approve",
            },
            "trackId": "t1",
        }

    def test_interview_payload(self):
        """Interview questions keep their options."""
        event = serialize_event(
            {
                "type": "interrupt",
                "payload": {
                    "kind": "interview",
                    "questions": [
                        {"id": "q", "question": "Cloud?", "type": "select", "options": ["AWS"]}
                    ],
                },
                "sessionId": "s1",
            }
        )
        assert event["payload"]["questions"][0]["options"] == ["AWS"]
        assert event["sessionId"] == "s1"

    def test_complete_result_passthrough(self):
        """complete carries any JSON result."""
        assert serialize_event({"type": "complete", "result": {"answer": "x"}}) == {
            "type": "complete",
            "result": {"answer": "x"},
        }

    def test_error_event(self):
        """error_event builds a valid error."""
        assert serialize_event(error_event("busy", "Ask session already running.")) == {
            "type": "error",
            "code": "busy",
            "message": "Ask session already running.",
        }

    @pytest.mark.parametrize(
        "event",
        [
            {"type": "unknown"},
            {"type": "status"},
            {"type": "interrupt", "payload": {"kind": "survey"}},
        ],
    )
    def test_invalid_events(self, event):
        """Malformed events fail validation."""
        with pytest.raises(ValidationError):
            serialize_event(event)
