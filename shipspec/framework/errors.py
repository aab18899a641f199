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

"""Exceptions raised by the graph workflow engine.

The engine reports ordinary node failures through ``GraphExecutionResult``.
The classes here cover control signals (interrupts), resume protocol
violations and cancellation, which callers need to tell apart.
"""

from __future__ import annotations

from typing import Any, Optional


class GraphError(Exception):
    """Base exception for graph engine errors.

    Attributes:
        message: Human-readable error description
        recoverable: Whether the caller can retry the operation
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        *,
        recoverable: bool = True,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.recoverable = recoverable
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class GraphInterrupt(GraphError):
    """Raised inside a node to suspend the run until a response arrives.

    Attributes:
        payload: Object shown to the caller
        expects: Shape of the response the node accepts ("text" or "mapping")
    """

    def __init__(self, payload: Any, expects: str = "text") -> None:
        super().__init__("Graph interrupted", details={"expects": expects})
        self.payload = payload
        self.expects = expects


class InvalidResumeResponse(GraphError):
    """Resume response does not match the shape the pending interrupt expects.

    The persisted checkpoint is left untouched, so the caller may retry.
    """

    def __init__(self, expected: str, received: str) -> None:
        super().__init__(
            f"Invalid resume response: expected {expected}, got {received}",
            details={"expected": expected, "received": received},
        )
        self.expected = expected
        self.received = received


class NoPendingInterrupt(GraphError):
    """Resume was called for a thread that is not waiting on an interrupt."""

    def __init__(self, thread_id: str) -> None:
        super().__init__(f"No pending interrupt for thread: {thread_id}", recoverable=False)
        self.thread_id = thread_id


class NodeExecutionError(GraphError):
    """A node raised or returned an update the state schema rejects."""

    def __init__(self, node_id: str, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Node '{node_id}' failed: {message}", recoverable=False)
        self.node_id = node_id
        self.cause = cause


__all__ = [
    "GraphError",
    "GraphInterrupt",
    "InvalidResumeResponse",
    "NoPendingInterrupt",
    "NodeExecutionError",
]
