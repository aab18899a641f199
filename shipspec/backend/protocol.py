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

"""Wire protocol: one JSON request per input line, one JSON event per output line.

Requests, events and interrupt payloads are closed tagged unions. Adding a
method means adding a request model here and a handler arm in
``backend.handlers``.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from shipspec.workflows.schemas import InterviewQuestion


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


# =============================================================================
# Shared shapes
# =============================================================================


class ConversationEntry(_WireModel):
    question: str
    answer: str


class ClarificationPayload(_WireModel):
    kind: Literal["clarification"]
    questions: list[str]


class DocumentReviewPayload(_WireModel):
    kind: Literal["document_review"]
    doc_type: Literal["prd", "spec", "report"]
    content: str
    instructions: Optional[str] = None


class InterviewPayload(_WireModel):
    kind: Literal["interview"]
    questions: list[InterviewQuestion]


InterruptPayload = Annotated[
    Union[ClarificationPayload, DocumentReviewPayload, InterviewPayload],
    Field(discriminator="kind"),
]

InterruptResponse = Union[str, dict[str, Union[str, list[str]]]]


# =============================================================================
# Requests
# =============================================================================


class AskStartParams(_WireModel):
    question: str
    history: Optional[list[ConversationEntry]] = None
    reindex: Optional[bool] = None
    cloud_ok: Optional[bool] = None
    local_only: Optional[bool] = None


class PlanningStartParams(_WireModel):
    idea: str
    track_id: Optional[str] = None
    reindex: Optional[bool] = None
    no_save: Optional[bool] = None
    cloud_ok: Optional[bool] = None
    local_only: Optional[bool] = None


class PlanningResumeParams(_WireModel):
    track_id: str
    response: InterruptResponse


class ProductionalizeStartParams(_WireModel):
    context: Optional[str] = None
    session_id: Optional[str] = None
    reindex: Optional[bool] = None
    enable_scans: Optional[bool] = None
    categories: Optional[str] = None
    cloud_ok: Optional[bool] = None
    local_only: Optional[bool] = None
    no_save: Optional[bool] = None


class ProductionalizeResumeParams(_WireModel):
    session_id: str
    response: InterruptResponse


class ConnectParams(_WireModel):
    openrouter_key: str
    tavily_key: Optional[str] = None


class ModelSetParams(_WireModel):
    model: str


class AskStartRequest(_WireModel):
    method: Literal["ask.start"]
    params: AskStartParams


class AskCancelRequest(_WireModel):
    method: Literal["ask.cancel"]


class PlanningStartRequest(_WireModel):
    method: Literal["planning.start"]
    params: PlanningStartParams


class PlanningResumeRequest(_WireModel):
    method: Literal["planning.resume"]
    params: PlanningResumeParams


class PlanningListRequest(_WireModel):
    method: Literal["planning.list"]


class ProductionalizeStartRequest(_WireModel):
    method: Literal["productionalize.start"]
    params: ProductionalizeStartParams


class ProductionalizeResumeRequest(_WireModel):
    method: Literal["productionalize.resume"]
    params: ProductionalizeResumeParams


class ProductionalizeListRequest(_WireModel):
    method: Literal["productionalize.list"]


class ConnectRequest(_WireModel):
    method: Literal["connect"]
    params: ConnectParams


class ModelListRequest(_WireModel):
    method: Literal["model.list"]


class ModelCurrentRequest(_WireModel):
    method: Literal["model.current"]


class ModelSetRequest(_WireModel):
    method: Literal["model.set"]
    params: ModelSetParams


RpcRequest = Annotated[
    Union[
        AskStartRequest,
        AskCancelRequest,
        PlanningStartRequest,
        PlanningResumeRequest,
        PlanningListRequest,
        ProductionalizeStartRequest,
        ProductionalizeResumeRequest,
        ProductionalizeListRequest,
        ConnectRequest,
        ModelListRequest,
        ModelCurrentRequest,
        ModelSetRequest,
    ],
    Field(discriminator="method"),
]

CONTROL_METHODS = frozenset({"ask.cancel"})

METHODS = frozenset(
    {
        "ask.start",
        "ask.cancel",
        "planning.start",
        "planning.resume",
        "planning.list",
        "productionalize.start",
        "productionalize.resume",
        "productionalize.list",
        "connect",
        "model.list",
        "model.current",
        "model.set",
    }
)


# =============================================================================
# Events
# =============================================================================


class StatusEvent(_WireModel):
    type: Literal["status"]
    message: str


class ProgressEvent(_WireModel):
    type: Literal["progress"]
    stage: str
    percent: Optional[float] = None


class TokenEvent(_WireModel):
    type: Literal["token"]
    content: str


class InterruptEvent(_WireModel):
    type: Literal["interrupt"]
    payload: InterruptPayload
    track_id: Optional[str] = None
    session_id: Optional[str] = None


class CompleteEvent(_WireModel):
    type: Literal["complete"]
    result: Any = None


class ErrorEvent(_WireModel):
    type: Literal["error"]
    code: str
    message: str


RpcEvent = Annotated[
    Union[StatusEvent, ProgressEvent, TokenEvent, InterruptEvent, CompleteEvent, ErrorEvent],
    Field(discriminator="type"),
]

request_adapter: TypeAdapter[Any] = TypeAdapter(RpcRequest)
event_adapter: TypeAdapter[Any] = TypeAdapter(RpcEvent)


def error_event(code: str, message: str) -> dict[str, Any]:
    return {"type": "error", "code": code, "message": message}


def format_validation_issues(error: ValidationError) -> str:
    """Flatten pydantic issues into ``loc: message`` pairs joined by ', '."""
    issues = []
    for issue in error.errors():
        loc = ".".join(str(part) for part in issue["loc"])
        issues.append(f"{loc}: {issue['msg']}" if loc else issue["msg"])
    return ", ".join(issues)


def parse_request(data: Any) -> Any:
    """Validate a decoded JSON object as a request.

    Raises:
        ValidationError: If it matches no request variant
    """
    return request_adapter.validate_python(data)


def serialize_event(event: dict[str, Any]) -> dict[str, Any]:
    """Validate an outgoing event and return its wire form."""
    model = event_adapter.validate_python(event)
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


__all__ = [
    "CONTROL_METHODS",
    "ClarificationPayload",
    "ConversationEntry",
    "DocumentReviewPayload",
    "InterruptPayload",
    "InterruptResponse",
    "InterviewPayload",
    "METHODS",
    "RpcEvent",
    "RpcRequest",
    "error_event",
    "event_adapter",
    "format_validation_issues",
    "parse_request",
    "request_adapter",
    "serialize_event",
]
