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

"""Structured output schemas for workflow nodes.

Nodes call ``ChatModel.invoke_structured`` with these models and write the
``model_dump()`` of the result into state, so checkpoints stay plain JSON.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Severity = Literal["critical", "high", "medium", "low", "info"]
Confidence = Literal["high", "medium", "low"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Spec workflow
# =============================================================================


class SpecSubtask(BaseModel):
    id: str
    query: str = Field(description="Specific question to investigate")
    reasoning: str = Field(default="", description="Why this subtask is necessary")


class SpecPlan(BaseModel):
    reasoning: str = Field(default="", description="Overall decomposition strategy")
    subtasks: list[SpecSubtask] = Field(default_factory=list)


class SpecWorkerOutput(_CamelModel):
    reasoning: str = ""
    summary: str = Field(description="Concise technical summary answering the query")
    confidence_level: Confidence = "medium"
    missing_context: list[str] = Field(default_factory=list)


# =============================================================================
# Planning workflow
# =============================================================================


class ClarificationOutput(_CamelModel):
    satisfied: bool = Field(description="Whether there is enough information to write a PRD")
    follow_up_questions: list[str] = Field(default_factory=list, max_length=3)
    reasoning: str = ""


class TaskPrompt(BaseModel):
    id: int
    prompt: str


class PromptsOutput(BaseModel):
    reasoning: str = ""
    prompts: list[TaskPrompt] = Field(default_factory=list)


# =============================================================================
# Productionalize workflow
# =============================================================================


class InterviewQuestion(BaseModel):
    id: str
    question: str
    type: Literal["select", "multiselect", "text"] = "text"
    options: Optional[list[str]] = None
    required: bool = False


class InterviewerOutput(BaseModel):
    satisfied: bool
    questions: list[InterviewQuestion] = Field(default_factory=list, max_length=4)
    reasoning: str = ""


class ProductionalizeSubtask(BaseModel):
    id: str
    category: str
    query: str
    source: Literal["code", "web", "scan"]
    rationale: str = ""


class ProductionalizePlan(BaseModel):
    reasoning: str = ""
    subtasks: list[ProductionalizeSubtask] = Field(default_factory=list)


class CodeRef(BaseModel):
    filepath: str
    lines: str
    content: str


class Evidence(_CamelModel):
    code_refs: list[CodeRef] = Field(default_factory=list)
    links: list[str] = Field(default_factory=list)


class Finding(_CamelModel):
    id: str
    severity: Severity
    category: str
    title: str
    description: str
    compliance_refs: list[str] = Field(default_factory=list)
    evidence: Evidence = Field(default_factory=Evidence)


class ProductionalizeWorkerOutput(_CamelModel):
    reasoning: str = ""
    findings: list[Finding] = Field(default_factory=list)
    summary: str = ""
    confidence_level: Confidence = "medium"


__all__ = [
    "ClarificationOutput",
    "CodeRef",
    "Evidence",
    "Finding",
    "InterviewQuestion",
    "InterviewerOutput",
    "ProductionalizePlan",
    "ProductionalizeSubtask",
    "ProductionalizeWorkerOutput",
    "PromptsOutput",
    "SpecPlan",
    "SpecSubtask",
    "SpecWorkerOutput",
    "TaskPrompt",
]
