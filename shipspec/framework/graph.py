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

"""StateGraph - graph workflow engine with fan-out and human-in-the-loop.

Workflows are declared as nodes joined by edges over a channel-based state
(see ``shipspec.framework.state``). The compiled graph executes one node at a
time per thread, persists a checkpoint after every node, and can suspend a
run when a node asks for external input.

Key Concepts:
    - Node: async or sync function ``(state)`` or ``(state, ctx)`` returning a
      partial update applied through the channel reducers
    - Conditional edge: router returning a node name, END, or a list of
      ``Send`` records launching parallel node instances (fan-out)
    - Fan-in: all instances are awaited, then their updates are folded into
      the shared state in dispatch order before routing continues
    - Interrupt: ``ctx.interrupt(payload)`` suspends the run; ``resume()``
      re-enters the node and the same call returns the supplied response

Example:
    from shipspec.framework.graph import StateGraph, Send, END

    graph = StateGraph(schema)
    graph.add_node("planner", plan)
    graph.add_node("worker", work, writes=["subtasks"])
    graph.add_node("aggregator", aggregate)
    graph.add_fan_out(
        "planner",
        lambda s: [Send("worker", t) for t in s["subtasks"]],
        target="worker",
        fallback="aggregator",
    )
    graph.add_edge("worker", "aggregator")
    graph.add_edge("aggregator", END)
    graph.set_entry_point("planner")

    app = graph.compile(checkpointer=MemoryCheckpointer())
    result = await app.invoke({"userQuery": "..."}, thread_id="t1")
"""

from __future__ import annotations

import asyncio
import contextvars
import copy
import inspect
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable
from collections.abc import Awaitable, Callable, Mapping

from shipspec.framework.errors import (
    GraphError,
    GraphInterrupt,
    InvalidResumeResponse,
    NoPendingInterrupt,
    NodeExecutionError,
)
from shipspec.framework.state import (
    ChannelAuditWarning,
    StateSchema,
    UnknownChannelError,
    audit_fanout_channels,
)

logger = logging.getLogger(__name__)

# Sentinels for graph boundaries
END = "__end__"
START = "__start__"

# Response shapes an interrupt can expect
EXPECT_TEXT = "text"
EXPECT_MAPPING = "mapping"

EventSink = Callable[[str, dict[str, Any]], Awaitable[None]]


class EdgeType(Enum):
    """Types of edges in the graph."""

    NORMAL = "normal"
    CONDITIONAL = "conditional"
    FANOUT = "fanout"


@dataclass(frozen=True)
class Send:
    """Dispatch record for one parallel node instance.

    Attributes:
        node: Target node ID
        arg: Per-instance input exposed as ``ctx.send_arg``
    """

    node: str
    arg: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"node": self.node, "arg": self.arg}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Send":
        return cls(node=data["node"], arg=data.get("arg"))


Route = str | list[Send]


# =============================================================================
# Node Context and Interrupts
# =============================================================================

_current_context: contextvars.ContextVar[Optional["NodeContext"]] = contextvars.ContextVar(
    "shipspec_node_context", default=None
)


@dataclass
class NodeContext:
    """Per-invocation context handed to nodes.

    Attributes:
        thread_id: Thread the run belongs to
        node_id: Executing node
        send_arg: Per-instance input for fan-out instances
        resume_values: Responses for interrupts already answered in this node
    """

    thread_id: str
    node_id: str
    send_arg: Any = None
    resume_values: list[Any] = field(default_factory=list)
    sink: Optional[EventSink] = None
    in_fanout: bool = False
    _interrupt_index: int = 0

    def interrupt(self, payload: Any, expects: str = EXPECT_TEXT) -> Any:
        """Suspend the run until a response is supplied.

        On first entry this raises ``GraphInterrupt``. When the node is
        re-entered after ``resume()``, the call at the same position returns
        the stored response instead.
        """
        if expects not in (EXPECT_TEXT, EXPECT_MAPPING):
            raise ValueError(f"Unsupported interrupt response kind: {expects}")
        index = self._interrupt_index
        self._interrupt_index += 1
        if index < len(self.resume_values):
            return self.resume_values[index]
        if self.in_fanout:
            raise GraphError(
                f"Node '{self.node_id}' cannot interrupt while running as a fan-out instance",
                recoverable=False,
            )
        raise GraphInterrupt(payload, expects=expects)

    async def emit(self, kind: str, data: Optional[dict[str, Any]] = None) -> None:
        """Forward a custom event to the run's event sink."""
        if self.sink is not None:
            await self.sink(kind, {"node": self.node_id, **(data or {})})


def interrupt(payload: Any, expects: str = EXPECT_TEXT) -> Any:
    """Suspend the currently executing node. See ``NodeContext.interrupt``."""
    ctx = _current_context.get()
    if ctx is None:
        raise GraphError("interrupt() called outside of a running graph node")
    return ctx.interrupt(payload, expects=expects)


def get_node_context() -> Optional[NodeContext]:
    return _current_context.get()


# =============================================================================
# Nodes and Edges
# =============================================================================


def _accepts_context(func: Callable[..., Any]) -> bool:
    try:
        params = inspect.signature(func).parameters.values()
    except (TypeError, ValueError):
        return False
    positional = [
        p
        for p in params
        if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD, p.VAR_POSITIONAL)
    ]
    return len(positional) >= 2 or any(p.kind == p.VAR_POSITIONAL for p in positional)


@dataclass
class Node:
    """Represents a node in the graph.

    Attributes:
        id: Unique node identifier
        func: Node execution function
        metadata: Additional node metadata (``writes`` lists written channels)
    """

    id: str
    func: Callable[..., Any]
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._takes_context = _accepts_context(self.func)

    async def execute(self, state: dict[str, Any], ctx: NodeContext) -> Optional[dict[str, Any]]:
        """Execute node function with ``ctx`` bound as the active context.

        Args:
            state: Private copy of the current state
            ctx: Node context

        Returns:
            Partial state update (or None)
        """
        token = _current_context.set(ctx)
        try:
            result = self.func(state, ctx) if self._takes_context else self.func(state)
            if inspect.isawaitable(result):
                result = await result
        finally:
            _current_context.reset(token)
        return result


@dataclass
class Edge:
    """Represents an edge leaving a node.

    Attributes:
        source: Source node ID
        target: Target node ID, branch mapping, or list of possible targets
        edge_type: Normal, conditional, or fan-out
        condition: Router function for conditional and fan-out edges
        fallback: Route taken when a router dispatches no instances
    """

    source: str
    target: str | dict[str, str] | list[str]
    edge_type: EdgeType = EdgeType.NORMAL
    condition: Optional[Callable[[Any], Any]] = None
    fallback: Optional[str] = None

    def possible_targets(self) -> list[str]:
        if isinstance(self.target, str):
            targets = [self.target]
        elif isinstance(self.target, dict):
            targets = list(self.target.values())
        else:
            targets = list(self.target)
        if self.fallback:
            targets.append(self.fallback)
        return targets

    def route(self, state: Any) -> Route:
        """Resolve the route for the state after the source node ran.

        Returns:
            Target node ID (or END), or a list of Send records
        """
        if self.edge_type == EdgeType.NORMAL:
            return self.target if isinstance(self.target, str) else END

        if self.condition is None:
            raise GraphError(f"Edge from '{self.source}' has no router")

        decision = self.condition(state)
        if isinstance(decision, Send):
            decision = [decision]
        if isinstance(decision, (list, tuple)):
            sends = list(decision)
            if not sends:
                if self.fallback is None:
                    raise GraphError(
                        f"Router for '{self.source}' dispatched nothing and has no fallback"
                    )
                logger.debug(f"Empty dispatch from {self.source}, taking fallback {self.fallback}")
                return self.fallback
            for send in sends:
                if not isinstance(send, Send):
                    raise GraphError(f"Router for '{self.source}' returned a non-Send record")
            return sends

        if isinstance(self.target, dict):
            if decision in self.target:
                return self.target[decision]
            if decision == END:
                return END
            raise GraphError(f"Router for '{self.source}' returned unknown branch: {decision}")
        return decision


# =============================================================================
# Checkpoints
# =============================================================================


@dataclass(frozen=True)
class WorkflowCheckpoint:
    """Immutable snapshot of a run.

    Attributes:
        checkpoint_id: Unique checkpoint identifier
        thread_id: Thread/execution identifier
        node_id: Pending position (next node to run, or END)
        state: State snapshot at the checkpoint
        timestamp: When the checkpoint was created
        metadata: Status, pending fan-out sends and interrupt continuation
    """

    checkpoint_id: str
    thread_id: str
    node_id: str
    state: dict[str, Any]
    timestamp: float
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> str:
        return self.metadata.get("status", "running")

    @property
    def pending_interrupt(self) -> Optional[dict[str, Any]]:
        return self.metadata.get("interrupt")

    @property
    def pending_sends(self) -> list[Send]:
        return [Send.from_dict(s) for s in self.metadata.get("sends", [])]

    def to_dict(self) -> dict[str, Any]:
        """Serialize checkpoint to dictionary."""
        return {
            "checkpoint_id": self.checkpoint_id,
            "thread_id": self.thread_id,
            "node_id": self.node_id,
            "state": self.state,
            "timestamp": self.timestamp,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkflowCheckpoint":
        """Deserialize checkpoint from dictionary."""
        return cls(
            checkpoint_id=data["checkpoint_id"],
            thread_id=data["thread_id"],
            node_id=data["node_id"],
            state=data["state"],
            timestamp=data["timestamp"],
            metadata=data.get("metadata", {}),
        )


@runtime_checkable
class CheckpointerProtocol(Protocol):
    """Protocol for checkpoint persistence."""

    async def put(self, thread_id: str, checkpoint: WorkflowCheckpoint) -> None:
        """Persist a checkpoint for the thread."""
        ...

    async def get(self, thread_id: str) -> Optional[WorkflowCheckpoint]:
        """Load the latest checkpoint for the thread."""
        ...

    async def list(self, thread_id: str) -> list[WorkflowCheckpoint]:
        """List all checkpoints for the thread, oldest first."""
        ...


class MemoryCheckpointer:
    """In-memory checkpoint storage.

    Volatile, lives as long as the process. Suitable for development and testing.
    """

    def __init__(self) -> None:
        self._checkpoints: dict[str, list[WorkflowCheckpoint]] = {}

    async def put(self, thread_id: str, checkpoint: WorkflowCheckpoint) -> None:
        """Save checkpoint to memory."""
        self._checkpoints.setdefault(thread_id, []).append(checkpoint)

    async def get(self, thread_id: str) -> Optional[WorkflowCheckpoint]:
        """Load latest checkpoint."""
        checkpoints = self._checkpoints.get(thread_id, [])
        return checkpoints[-1] if checkpoints else None

    async def list(self, thread_id: str) -> list[WorkflowCheckpoint]:
        """List all checkpoints."""
        return list(self._checkpoints.get(thread_id, []))


# =============================================================================
# Execution Results
# =============================================================================


@dataclass
class InterruptInfo:
    """Pending interrupt returned to the caller."""

    node_id: str
    payload: Any
    expects: str = EXPECT_TEXT


@dataclass
class GraphExecutionResult:
    """Result from graph execution.

    Attributes:
        state: Final (or suspended) state
        success: Whether execution succeeded
        error: Error message if failed
        exception: Exception that ended the run, if any
        interrupt: Pending interrupt when the run suspended
        iterations: Number of node executions
        duration: Total execution time
        node_history: Sequence of executed nodes
    """

    state: dict[str, Any]
    success: bool
    error: Optional[str] = None
    exception: Optional[BaseException] = None
    interrupt: Optional[InterruptInfo] = None
    iterations: int = 0
    duration: float = 0.0
    node_history: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        if not self.success:
            return "error"
        if self.interrupt is not None:
            return "interrupted"
        return "complete"


# =============================================================================
# Graph Execution Helpers
# =============================================================================


class IterationController:
    """Controls graph iteration logic.

    Manages iteration limits and per-node visit counts to stop runaway cycles.
    """

    def __init__(self, max_iterations: int, recursion_limit: int):
        """Initialize iteration controller.

        Args:
            max_iterations: Maximum total node executions allowed
            recursion_limit: Maximum visits to the same node
        """
        self.max_iterations = max_iterations
        self.recursion_limit = recursion_limit
        self.iterations = 0
        self.visited_count: dict[str, int] = {}

    def should_continue(self, current_node: str) -> tuple[bool, Optional[str]]:
        """Check if execution should continue.

        Returns:
            Tuple of (should_continue, error_message)
        """
        self.iterations += 1
        if self.iterations > self.max_iterations:
            return False, f"Max iterations ({self.max_iterations}) exceeded"

        self.visited_count[current_node] = self.visited_count.get(current_node, 0) + 1
        if self.visited_count[current_node] > self.recursion_limit:
            return False, f"Recursion limit exceeded at node: {current_node}"

        return True, None


class GraphCheckpointManager:
    """Builds and persists checkpoints for one compiled graph."""

    def __init__(self, checkpointer: Optional[CheckpointerProtocol], schema: StateSchema):
        self.checkpointer = checkpointer
        self.schema = schema

    async def load(self, thread_id: str) -> Optional[WorkflowCheckpoint]:
        if self.checkpointer is None:
            return None
        return await self.checkpointer.get(thread_id)

    async def save(
        self,
        thread_id: str,
        node_id: str,
        state: dict[str, Any],
        *,
        status: str = "running",
        sends: Optional[list[Send]] = None,
        interrupt: Optional[dict[str, Any]] = None,
        source: Optional[str] = None,
    ) -> Optional[WorkflowCheckpoint]:
        """Persist a checkpoint at the pending position ``node_id``."""
        if self.checkpointer is None:
            return None
        metadata: dict[str, Any] = {"status": status}
        if source:
            metadata["source"] = source
        if sends:
            metadata["sends"] = [s.to_dict() for s in sends]
        if interrupt is not None:
            metadata["interrupt"] = interrupt
        now = time.time()
        checkpoint = WorkflowCheckpoint(
            checkpoint_id=f"{thread_id}_{node_id}_{now}_{uuid.uuid4().hex[:6]}",
            thread_id=thread_id,
            node_id=node_id,
            state=self.schema.snapshot(state),
            timestamp=now,
            metadata=metadata,
        )
        await self.checkpointer.put(thread_id, checkpoint)
        logger.debug(f"Saved checkpoint for {thread_id} at {node_id} ({status})")
        return checkpoint


def _response_kind(response: Any) -> str:
    if isinstance(response, str):
        return EXPECT_TEXT
    if isinstance(response, Mapping):
        return EXPECT_MAPPING
    return type(response).__name__


def validate_resume_response(expects: str, response: Any) -> None:
    """Raise InvalidResumeResponse when ``response`` has the wrong shape."""
    received = _response_kind(response)
    if received != expects:
        raise InvalidResumeResponse(expected=expects, received=received)
    if expects == EXPECT_MAPPING:
        for key, value in response.items():
            if not isinstance(key, str):
                raise InvalidResumeResponse(expected=expects, received="mapping with non-string keys")
            if not isinstance(value, str) and not (
                isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value)
            ):
                raise InvalidResumeResponse(
                    expected=expects, received=f"mapping with invalid value for '{key}'"
                )


# =============================================================================
# Compiled Graph
# =============================================================================


class CompiledGraph:
    """Compiled graph ready for execution.

    Runs are single-flight per thread id; different threads may run
    concurrently on the same compiled graph.
    """

    def __init__(
        self,
        nodes: dict[str, Node],
        edges: dict[str, list[Edge]],
        entry_point: str,
        schema: StateSchema,
        checkpointer: Optional[CheckpointerProtocol] = None,
        max_iterations: int = 100,
        recursion_limit: int = 25,
        audit_warnings: Optional[list[ChannelAuditWarning]] = None,
    ):
        self._nodes = nodes
        self._edges = edges
        self._entry_point = entry_point
        self.schema = schema
        self.checkpointer = checkpointer
        self.max_iterations = max_iterations
        self.recursion_limit = recursion_limit
        self.audit_warnings = audit_warnings or []
        self._checkpoints = GraphCheckpointManager(checkpointer, schema)
        self._running: set[str] = set()

    @property
    def nodes(self) -> dict[str, Node]:
        return dict(self._nodes)

    async def invoke(
        self,
        input_state: Optional[Mapping[str, Any]] = None,
        *,
        thread_id: Optional[str] = None,
        event_sink: Optional[EventSink] = None,
    ) -> GraphExecutionResult:
        """Start a fresh run from the entry point.

        Args:
            input_state: Initial channel values
            thread_id: Thread ID for checkpointing (generated if omitted)
            event_sink: Optional async callback receiving engine events

        Returns:
            GraphExecutionResult; ``status`` is complete, interrupted or error
        """
        thread_id = thread_id or uuid.uuid4().hex
        state = self.schema.initial_state(input_state)
        with self._claim(thread_id):
            return await self._run(
                thread_id,
                state,
                node=self._entry_point,
                sends=None,
                resume_values=[],
                sink=event_sink,
            )

    async def resume(
        self,
        thread_id: str,
        response: Any,
        *,
        event_sink: Optional[EventSink] = None,
    ) -> GraphExecutionResult:
        """Continue a suspended run with the caller's response.

        The response shape is checked against the pending interrupt before
        anything runs; a mismatch raises InvalidResumeResponse and leaves the
        stored checkpoint untouched.

        Raises:
            NoPendingInterrupt: If the thread is not suspended
            InvalidResumeResponse: If the response has the wrong shape
        """
        with self._claim(thread_id):
            checkpoint = await self._checkpoints.load(thread_id)
            pending = checkpoint.pending_interrupt if checkpoint else None
            if checkpoint is None or pending is None or checkpoint.status != "interrupted":
                raise NoPendingInterrupt(thread_id)

            validate_resume_response(pending.get("expects", EXPECT_TEXT), response)

            logger.info(f"Resuming thread {thread_id} at node: {checkpoint.node_id}")
            resume_values = list(pending.get("resume_values", [])) + [response]
            state = self.schema.restore(checkpoint.state)
            return await self._run(
                thread_id,
                state,
                node=checkpoint.node_id,
                sends=None,
                resume_values=resume_values,
                sink=event_sink,
            )

    async def recover(
        self,
        thread_id: str,
        *,
        event_sink: Optional[EventSink] = None,
    ) -> GraphExecutionResult:
        """Continue a run that failed or crashed between two checkpoints.

        Execution re-enters at the pending position of the latest checkpoint;
        a pending fan-out is dispatched again with its stored sends.

        Raises:
            GraphError: If the thread has no checkpoint left in ``running`` status
        """
        with self._claim(thread_id):
            checkpoint = await self._checkpoints.load(thread_id)
            if checkpoint is None or checkpoint.status != "running":
                status = checkpoint.status if checkpoint else "missing"
                raise GraphError(
                    f"Thread '{thread_id}' has no run to recover (checkpoint {status})",
                    details={"thread_id": thread_id, "status": status},
                )

            logger.info(f"Recovering thread {thread_id} at node: {checkpoint.node_id}")
            return await self._run(
                thread_id,
                self.schema.restore(checkpoint.state),
                node=checkpoint.node_id,
                sends=checkpoint.pending_sends or None,
                resume_values=[],
                sink=event_sink,
            )

    async def get_state(self, thread_id: str) -> Optional[WorkflowCheckpoint]:
        """Latest checkpoint for the thread, if any."""
        return await self._checkpoints.load(thread_id)

    def _claim(self, thread_id: str) -> "_ThreadClaim":
        return _ThreadClaim(self._running, thread_id)

    async def _run(
        self,
        thread_id: str,
        state: dict[str, Any],
        *,
        node: str,
        sends: Optional[list[Send]],
        resume_values: list[Any],
        sink: Optional[EventSink],
    ) -> GraphExecutionResult:
        controller = IterationController(self.max_iterations, self.recursion_limit)
        node_history: list[str] = []
        start = time.time()
        current: Route = sends if sends else node

        def result(**kwargs: Any) -> GraphExecutionResult:
            return GraphExecutionResult(
                state=state,
                iterations=controller.iterations,
                duration=time.time() - start,
                node_history=node_history,
                **kwargs,
            )

        try:
            while current != END:
                if isinstance(current, list):
                    state, current = await self._run_fanout(
                        thread_id, state, current, controller, node_history, sink
                    )
                    continue

                ok, limit_error = controller.should_continue(current)
                if not ok:
                    logger.warning(f"Iteration limit reached: {limit_error}")
                    return result(success=False, error=limit_error)

                node_id = current
                ctx = NodeContext(
                    thread_id=thread_id,
                    node_id=node_id,
                    resume_values=resume_values,
                    sink=sink,
                )
                resume_values = []
                await _notify(sink, "node_start", {"node": node_id})

                try:
                    update = await self._execute_node(node_id, state, ctx)
                except GraphInterrupt as gi:
                    logger.info(f"Interrupt in node: {node_id}")
                    await self._checkpoints.save(
                        thread_id,
                        node_id,
                        state,
                        status="interrupted",
                        interrupt={
                            "payload": gi.payload,
                            "expects": gi.expects,
                            "resume_values": ctx.resume_values,
                        },
                    )
                    info = InterruptInfo(node_id=node_id, payload=gi.payload, expects=gi.expects)
                    await _notify(sink, "interrupt", {"node": node_id, "payload": gi.payload})
                    return result(success=True, interrupt=info)

                state = self._apply_update(node_id, state, update)
                node_history.append(node_id)
                logger.debug(f"Executed node: {node_id}")
                await _notify(sink, "node_complete", {"node": node_id, "update": update or {}})

                current = self._get_next(node_id, state)
                if isinstance(current, list):
                    await self._checkpoints.save(
                        thread_id, current[0].node, state, sends=current, source=node_id
                    )
                else:
                    await self._checkpoints.save(
                        thread_id,
                        current,
                        state,
                        status="complete" if current == END else "running",
                        source=node_id,
                    )

            return result(success=True)

        except asyncio.CancelledError:
            logger.info(f"Run cancelled for thread {thread_id}")
            raise
        except Exception as e:
            logger.error(f"Graph execution failed: {e}", exc_info=True)
            return result(success=False, error=str(e), exception=e)

    async def _execute_node(
        self, node_id: str, state: dict[str, Any], ctx: NodeContext
    ) -> Optional[dict[str, Any]]:
        node = self._nodes.get(node_id)
        if node is None:
            raise GraphError(f"Node not found: {node_id}", recoverable=False)
        return await node.execute(copy.deepcopy(state), ctx)

    def _apply_update(
        self, node_id: str, state: dict[str, Any], update: Any
    ) -> dict[str, Any]:
        if update is None:
            return state
        if not isinstance(update, Mapping):
            raise NodeExecutionError(node_id, f"expected a mapping update, got {type(update).__name__}")
        try:
            return self.schema.apply(state, update)
        except UnknownChannelError as e:
            raise NodeExecutionError(node_id, str(e), cause=e) from e

    async def _run_fanout(
        self,
        thread_id: str,
        state: dict[str, Any],
        sends: list[Send],
        controller: IterationController,
        node_history: list[str],
        sink: Optional[EventSink],
    ) -> tuple[dict[str, Any], Route]:
        """Run all dispatched instances concurrently and fold their updates.

        Each instance reads its own copy of the state. If one instance fails
        or the run is cancelled, every sibling still in flight is cancelled.
        """
        for send in sends:
            ok, limit_error = controller.should_continue(send.node)
            if not ok:
                raise GraphError(limit_error or "Iteration limit reached", recoverable=False)

        logger.debug(f"Fanning out {len(sends)} instance(s): {[s.node for s in sends]}")
        await _notify(sink, "fanout_start", {"count": len(sends), "nodes": [s.node for s in sends]})

        async def run_instance(send: Send) -> Optional[dict[str, Any]]:
            ctx = NodeContext(
                thread_id=thread_id,
                node_id=send.node,
                send_arg=send.arg,
                sink=sink,
                in_fanout=True,
            )
            update = await self._execute_node(send.node, state, ctx)
            await _notify(sink, "node_complete", {"node": send.node, "update": update or {}})
            return update

        tasks = [asyncio.create_task(run_instance(send)) for send in sends]
        try:
            updates = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        # Fold per-instance slots into the shared state in dispatch order
        for send, update in zip(sends, updates):
            state = self._apply_update(send.node, state, update)
            node_history.append(send.node)

        targets = {s.node for s in sends}
        routes = [self._get_next(t, state) for t in sorted(targets)]
        if any(r != routes[0] for r in routes[1:]):
            raise GraphError("Fan-out instances converge on different nodes", recoverable=False)
        next_route = routes[0]

        source = ",".join(sorted(targets))
        if isinstance(next_route, list):
            await self._checkpoints.save(
                thread_id, next_route[0].node, state, sends=next_route, source=source
            )
        else:
            await self._checkpoints.save(
                thread_id,
                next_route,
                state,
                status="complete" if next_route == END else "running",
                source=source,
            )
        return state, next_route

    def _get_next(self, current_node: str, state: dict[str, Any]) -> Route:
        """Determine the route after ``current_node`` ran."""
        edges = self._edges.get(current_node, [])
        if not edges:
            return END
        return edges[0].route(state)

    def get_graph_schema(self) -> dict[str, Any]:
        """Describe nodes and edges (used by CLI diagnostics and tests)."""
        return {
            "nodes": sorted(self._nodes),
            "entry_point": self._entry_point,
            "edges": {
                source: [
                    {"type": e.edge_type.value, "targets": e.possible_targets()} for e in edges
                ]
                for source, edges in self._edges.items()
            },
        }


class _ThreadClaim:
    """Context manager enforcing one active run per thread id."""

    def __init__(self, running: set[str], thread_id: str):
        self._running = running
        self._thread_id = thread_id

    def __enter__(self) -> None:
        if self._thread_id in self._running:
            raise GraphError(f"Thread '{self._thread_id}' is already running")
        self._running.add(self._thread_id)

    def __exit__(self, *exc: Any) -> None:
        self._running.discard(self._thread_id)


async def _notify(sink: Optional[EventSink], kind: str, data: dict[str, Any]) -> None:
    if sink is not None:
        await sink(kind, data)


# =============================================================================
# Graph Builder
# =============================================================================


class StateGraph:
    """StateGraph builder for creating stateful workflows.

    Example:
        graph = StateGraph(schema)
        graph.add_node("clarifier", clarify)
        graph.add_node("prd", generate_prd)
        graph.add_conditional_edge(
            "clarifier",
            lambda s: "done" if s["clarificationComplete"] else "again",
            {"again": "clarifier", "done": "prd"},
        )
        graph.set_entry_point("clarifier")
        app = graph.compile()
    """

    def __init__(self, schema: StateSchema):
        """Initialize StateGraph.

        Args:
            schema: Channel declarations for the workflow state
        """
        self._schema = schema
        self._nodes: dict[str, Node] = {}
        self._edges: dict[str, list[Edge]] = {}
        self._entry_point: Optional[str] = None

    def add_node(
        self,
        node_id: str,
        func: Callable[..., Any],
        **metadata: Any,
    ) -> "StateGraph":
        """Add a node to the graph.

        Args:
            node_id: Unique node identifier
            func: Node function taking ``state`` or ``(state, ctx)``
            **metadata: Additional metadata; ``writes`` declares written channels

        Raises:
            ValueError: If node already exists or uses a reserved name
        """
        if node_id in (START, END):
            raise ValueError(f"Node name '{node_id}' is reserved")
        if node_id in self._nodes:
            raise ValueError(f"Node '{node_id}' already exists")

        self._nodes[node_id] = Node(id=node_id, func=func, metadata=metadata)
        logger.debug(f"Added node: {node_id}")
        return self

    def _add(self, edge: Edge) -> "StateGraph":
        if self._edges.get(edge.source):
            raise ValueError(f"Node '{edge.source}' already has an outgoing edge")
        self._edges[edge.source] = [edge]
        return self

    def add_edge(self, source: str, target: str) -> "StateGraph":
        """Add a normal edge between nodes.

        Args:
            source: Source node ID (or START to set the entry point)
            target: Target node ID (or END)
        """
        if source == START:
            return self.set_entry_point(target)
        self._add(Edge(source=source, target=target, edge_type=EdgeType.NORMAL))
        logger.debug(f"Added edge: {source} -> {target}")
        return self

    def add_conditional_edge(
        self,
        source: str,
        condition: Callable[[dict[str, Any]], Any],
        branches: dict[str, str] | list[str],
        fallback: Optional[str] = None,
    ) -> "StateGraph":
        """Add a conditional edge.

        Args:
            source: Source node ID
            condition: Router returning a branch key, a node ID, END, or Send records
            branches: Mapping from branch keys to node IDs, or the list of
                node IDs the router may return directly
            fallback: Route for an empty Send list
        """
        self._add(
            Edge(
                source=source,
                target=branches,
                edge_type=EdgeType.CONDITIONAL,
                condition=condition,
                fallback=fallback,
            )
        )
        logger.debug(f"Added conditional edge: {source} -> {branches}")
        return self

    def add_fan_out(
        self,
        source: str,
        router: Callable[[dict[str, Any]], list[Send]],
        target: str,
        fallback: str,
    ) -> "StateGraph":
        """Add an edge that launches one ``target`` instance per Send record.

        Args:
            source: Source node ID
            router: Returns the Send records to dispatch
            target: Node the Send records address
            fallback: Route taken when the router dispatches nothing
        """
        self._add(
            Edge(
                source=source,
                target=[target],
                edge_type=EdgeType.FANOUT,
                condition=router,
                fallback=fallback,
            )
        )
        logger.debug(f"Added fan-out edge: {source} -> {target} (fallback: {fallback})")
        return self

    def set_entry_point(self, node_id: str) -> "StateGraph":
        """Set the entry point node."""
        if node_id not in self._nodes:
            raise ValueError(f"Node '{node_id}' not found")
        self._entry_point = node_id
        return self

    def set_finish_point(self, node_id: str) -> "StateGraph":
        """Set a node as finish point (adds edge to END)."""
        return self.add_edge(node_id, END)

    def compile(
        self,
        checkpointer: Optional[CheckpointerProtocol] = None,
        max_iterations: int = 100,
        recursion_limit: int = 25,
    ) -> CompiledGraph:
        """Compile the graph for execution.

        Validates the structure and audits channels written by fan-out nodes.

        Raises:
            ValueError: If graph is invalid
        """
        errors = self._validate()
        if errors:
            raise ValueError(f"Invalid graph: {'; '.join(errors)}")

        fanout_nodes = {
            t
            for edges in self._edges.values()
            for e in edges
            if e.edge_type == EdgeType.FANOUT
            for t in e.target
        }
        writes = {nid: n.metadata.get("writes", ()) for nid, n in self._nodes.items()}
        warnings = audit_fanout_channels(self._schema, writes, fanout_nodes)

        return CompiledGraph(
            nodes=self._nodes.copy(),
            edges={k: list(v) for k, v in self._edges.items()},
            entry_point=self._entry_point or "",
            schema=self._schema,
            checkpointer=checkpointer,
            max_iterations=max_iterations,
            recursion_limit=recursion_limit,
            audit_warnings=warnings,
        )

    def _validate(self) -> list[str]:
        """Validate graph structure.

        Returns:
            List of error messages
        """
        errors = []

        if not self._nodes:
            errors.append("Graph has no nodes")

        if not self._entry_point:
            errors.append("No entry point set")

        for source, edges in self._edges.items():
            if source not in self._nodes:
                errors.append(f"Edge source '{source}' not found")
            for edge in edges:
                for target in edge.possible_targets():
                    if target != END and target not in self._nodes:
                        errors.append(f"Edge target '{target}' not found")

        for node_id, node in self._nodes.items():
            for channel in node.metadata.get("writes", ()):
                if channel not in self._schema:
                    errors.append(f"Node '{node_id}' writes unknown channel '{channel}'")

        reachable = self._find_reachable()
        for node_id in self._nodes:
            if node_id not in reachable:
                errors.append(f"Node '{node_id}' is unreachable")

        return errors

    def _find_reachable(self) -> set[str]:
        """Find all reachable nodes from entry point."""
        if not self._entry_point:
            return set()

        reachable: set[str] = set()
        to_visit = [self._entry_point]

        while to_visit:
            node_id = to_visit.pop()
            if node_id in reachable or node_id == END:
                continue
            reachable.add(node_id)
            for edge in self._edges.get(node_id, []):
                to_visit.extend(edge.possible_targets())

        return reachable


__all__ = [
    "END",
    "EXPECT_MAPPING",
    "EXPECT_TEXT",
    "START",
    "CheckpointerProtocol",
    "CompiledGraph",
    "Edge",
    "EdgeType",
    "EventSink",
    "GraphCheckpointManager",
    "GraphExecutionResult",
    "InterruptInfo",
    "IterationController",
    "MemoryCheckpointer",
    "Node",
    "NodeContext",
    "Send",
    "StateGraph",
    "WorkflowCheckpoint",
    "get_node_context",
    "interrupt",
    "validate_resume_response",
]
